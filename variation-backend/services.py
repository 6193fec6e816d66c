"""
Service classes for the Video Variation Backend.
Contains ConfigSynthesizer, TransformPipeline, FfmpegRenderer and SimilarityScorer.
"""

import os
import random
import logging
import subprocess
from typing import Any, Dict, List, Optional, Tuple

import ffmpeg
from pydantic import BaseModel, ConfigDict, Field

from config import (
    FFMPEG_AUDIO_BITRATE,
    FFMPEG_AUDIO_CODEC,
    FFMPEG_CRF,
    FFMPEG_MOVFLAGS,
    FFMPEG_PIX_FMT,
    FFMPEG_PRESET,
    FFMPEG_TIMEOUT_SECONDS,
    FFMPEG_VIDEO_CODEC,
)
from errors import PipelineError
from schemas import VariationConfig


# --------------------------------------------------------------------------
# --- Configuration Synthesis ---
# --------------------------------------------------------------------------

# Each family defines which parameters exist and their legal ranges.
# Flags map to the probability of being set.
CONFIG_FAMILIES = [
    {
        "name": "Speed Variation",
        "ranges": {
            "speed": (0.95, 1.05),
            "brightness": (-0.05, 0.05),
            "contrast": (0.95, 1.05),
            "saturation": (0.9, 1.1),
            "volume": (0.9, 1.1),
        },
        "flags": {"flip": 0.3},
    },
    {
        "name": "Color Variation",
        "ranges": {
            "speed": (0.97, 1.03),
            "brightness": (-0.03, 0.03),
            "contrast": (0.97, 1.03),
            "saturation": (0.95, 1.05),
            "gamma": (0.95, 1.05),
        },
        "flags": {"noise": 0.4},
    },
    {
        "name": "Structure Variation",
        "ranges": {
            "speed": (0.96, 1.04),
            "brightness": (-0.04, 0.04),
            "scale": (0.98, 1.02),
            "crop_margins": (0.0, 2.0),
        },
        "flags": {"flip": 0.5},
    },
]

NOISE_STRENGTH_RANGE = (1.0, 3.0)

# (mode, amount): "mul" scales by 1 +/- amount, "add" shifts by +/- amount.
JITTER = {
    "speed": ("mul", 0.01),
    "brightness": ("add", 0.01),
    "contrast": ("mul", 0.01),
}


class ConfigSynthesizer:
    """Produces a randomized VariationConfig for a variation index."""

    def __init__(self, rng: Optional[random.Random] = None, families: Optional[List[Dict[str, Any]]] = None):
        self.rng = rng or random.Random()
        self.families = families or CONFIG_FAMILIES

    def family_for(self, variation_index: int) -> Dict[str, Any]:
        return self.families[variation_index % len(self.families)]

    def _jitter(self, name: str, value: float, bounds: Tuple[float, float]) -> float:
        mode, amount = JITTER[name]
        delta = self.rng.uniform(-amount, amount)
        value = value * (1 + delta) if mode == "mul" else value + delta
        low, high = bounds
        return min(max(value, low), high)

    def synthesize(self, variation_index: int) -> VariationConfig:
        family = self.family_for(variation_index)
        params: Dict[str, Any] = {"family": family["name"]}

        for name, (low, high) in family["ranges"].items():
            params[name] = self.rng.uniform(low, high)

        for flag, probability in family["flags"].items():
            if self.rng.random() < probability:
                params[flag] = True

        if params.get("noise"):
            low, high = NOISE_STRENGTH_RANGE
            params["noise_strength"] = low + self.rng.random() * (high - low)

        # Second pass so that no two variations come out identical.
        for name in JITTER:
            if name in family["ranges"]:
                params[name] = self._jitter(name, params[name], family["ranges"][name])

        return VariationConfig(**params)


# --------------------------------------------------------------------------
# --- Transform Pipeline ---
# --------------------------------------------------------------------------

SPEED_THRESHOLD = 0.01
SCALE_THRESHOLD = 0.005
CROP_THRESHOLD = 0.5
VOLUME_THRESHOLD = 0.05
DEFAULT_NOISE_STRENGTH = 2.0
ATEMPO_RANGE = (0.5, 2.0)


class FilterSpec(BaseModel):
    """A single ffmpeg filter applied to one stream of the input."""
    model_config = ConfigDict(frozen=True)

    stream: str  # "video" | "audio"
    filter_name: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = Field(default_factory=dict)


class Stage(BaseModel):
    """A named transform; the temporal stage carries one filter per stream."""
    model_config = ConfigDict(frozen=True)

    name: str
    filters: Tuple[FilterSpec, ...]


def _fmt(value: float) -> str:
    return f"{value:.4f}"


def _even_dimension(axis: str, factor: float) -> str:
    # libx264 with yuv420p needs even frame dimensions.
    return f"trunc({axis}*{_fmt(factor)}/2)*2"


class FfmpegRenderer:
    """Renders a stage list with ffmpeg-python using the fixed output settings."""

    def __init__(self, timeout: int = FFMPEG_TIMEOUT_SECONDS):
        self.timeout = timeout

    def has_audio(self, input_path: str) -> bool:
        try:
            probe = ffmpeg.probe(input_path)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode("utf8", errors="replace").strip() if e.stderr else ""
            last_line = stderr.splitlines()[-1] if stderr else "Unknown ffprobe error"
            raise PipelineError(f"Cannot read input video: {last_line}")
        return any(s.get("codec_type") == "audio" for s in probe.get("streams", []))

    def rendered_stages(self, stages: List[Stage], has_audio: bool) -> List[Stage]:
        """Stages that still touch the output. Audio-only stages drop out when the input is silent."""
        return [
            stage for stage in stages
            if has_audio or any(spec.stream == "video" for spec in stage.filters)
        ]

    def build(self, input_path: str, output_path: str, stages: List[Stage], has_audio: bool = True):
        source = ffmpeg.input(input_path)
        video = source.video
        audio = source.audio if has_audio else None

        for stage in stages:
            for spec in stage.filters:
                if spec.stream == "video":
                    video = video.filter(spec.filter_name, *spec.args, **spec.kwargs)
                elif audio is not None:
                    audio = audio.filter(spec.filter_name, *spec.args, **spec.kwargs)

        streams = [video] if audio is None else [video, audio]
        output_kwargs = {
            "vcodec": FFMPEG_VIDEO_CODEC,
            "preset": FFMPEG_PRESET,
            "crf": FFMPEG_CRF,
            "pix_fmt": FFMPEG_PIX_FMT,
            "movflags": FFMPEG_MOVFLAGS,
        }
        if audio is not None:
            output_kwargs["acodec"] = FFMPEG_AUDIO_CODEC
            output_kwargs["audio_bitrate"] = FFMPEG_AUDIO_BITRATE
        return ffmpeg.output(*streams, output_path, **output_kwargs).overwrite_output()

    def compile(self, input_path: str, output_path: str, stages: List[Stage], has_audio: bool = True) -> List[str]:
        """Return the ffmpeg argv without running it."""
        return self.build(input_path, output_path, stages, has_audio).compile()

    def render(self, input_path: str, output_path: str, stages: List[Stage]) -> List[Stage]:
        """Run ffmpeg and return the stages that made it into the output."""
        has_audio = self.has_audio(input_path)
        stream = self.build(input_path, output_path, stages, has_audio)
        logging.info(f"🎬 Running FFmpeg command: {' '.join(stream.compile())}")

        process = stream.run_async(pipe_stdout=True, pipe_stderr=True)
        try:
            _, stderr = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            logging.error("❌ FFmpeg rendering timed out.")
            raise PipelineError(f"Rendering timed out after {self.timeout} seconds.")

        if process.returncode != 0:
            details = stderr.decode("utf8", errors="replace").strip() if stderr else ""
            logging.error(f"❌ FFmpeg rendering failed. Stderr:\n{details}")
            last_line = details.splitlines()[-1] if details else "Unknown FFmpeg error"
            raise PipelineError(f"FFmpeg rendering failed: {last_line}")

        return self.rendered_stages(stages, has_audio)


class TransformPipeline:
    """Turns a VariationConfig into ordered stages and renders them into a new file."""

    def __init__(self, renderer=None):
        self.renderer = renderer or FfmpegRenderer()

    def build_stages(self, config: VariationConfig) -> List[Stage]:
        stages: List[Stage] = []

        # 1. Temporal: video and audio stay in sync.
        if config.speed is not None and abs(config.speed - 1) > SPEED_THRESHOLD:
            low, high = ATEMPO_RANGE
            if not low <= config.speed <= high:
                raise PipelineError(f"Speed {config.speed} is outside the supported range {low}-{high}")
            stages.append(Stage(name="speed", filters=(
                FilterSpec(stream="video", filter_name="setpts", args=(f"{_fmt(1 / config.speed)}*PTS",)),
                FilterSpec(stream="audio", filter_name="atempo", args=(_fmt(config.speed),)),
            )))

        # 2. Visual correction: one combined eq filter.
        eq = {}
        for name in ("brightness", "contrast", "saturation", "gamma"):
            value = getattr(config, name)
            if value is not None:
                eq[name] = _fmt(value)
        if eq:
            if config.gamma is not None and config.gamma <= 0:
                raise PipelineError(f"Gamma must be positive, got {config.gamma}")
            stages.append(Stage(name="color", filters=(
                FilterSpec(stream="video", filter_name="eq", kwargs=eq),
            )))

        # 3. Scale.
        if config.scale is not None and abs(config.scale - 1) > SCALE_THRESHOLD:
            if config.scale <= 0:
                raise PipelineError(f"Scale must be positive, got {config.scale}")
            stages.append(Stage(name="scale", filters=(
                FilterSpec(stream="video", filter_name="scale", args=(
                    _even_dimension("iw", config.scale), _even_dimension("ih", config.scale),
                )),
            )))

        # 4. Crop, after scale.
        if config.crop_margins is not None and config.crop_margins > CROP_THRESHOLD:
            if config.crop_margins >= 100:
                raise PipelineError(f"Crop margin must be below 100%, got {config.crop_margins}")
            keep = (100 - config.crop_margins) / 100
            stages.append(Stage(name="crop", filters=(
                FilterSpec(stream="video", filter_name="crop", args=(
                    _even_dimension("iw", keep), _even_dimension("ih", keep),
                )),
            )))

        # 5. Orientation.
        if config.flip:
            stages.append(Stage(name="flip", filters=(
                FilterSpec(stream="video", filter_name="hflip"),
            )))

        # 6. Noise, last among visual stages.
        if config.noise:
            strength = config.noise_strength if config.noise_strength is not None else DEFAULT_NOISE_STRENGTH
            stages.append(Stage(name="noise", filters=(
                FilterSpec(stream="video", filter_name="noise", kwargs={"alls": int(strength), "allf": "u"}),
            )))

        # 7. Audio gain, independent of the tempo compensation.
        if config.volume is not None and abs(config.volume - 1) > VOLUME_THRESHOLD:
            if config.volume < 0:
                raise PipelineError(f"Volume must not be negative, got {config.volume}")
            stages.append(Stage(name="volume", filters=(
                FilterSpec(stream="audio", filter_name="volume", args=(_fmt(config.volume),)),
            )))

        return stages

    def apply(self, input_path: str, output_path: str, config: VariationConfig) -> List[Stage]:
        """Render input_path into the new file output_path. Returns the stages that were applied."""
        if not os.path.isfile(input_path) or not os.access(input_path, os.R_OK):
            raise PipelineError(f"Cannot read input video: {os.path.basename(input_path)}")

        stages = self.build_stages(config)
        try:
            applied = self.renderer.render(input_path, output_path, stages)
        except PipelineError:
            self._cleanup(output_path)
            raise
        except Exception as e:
            self._cleanup(output_path)
            raise PipelineError(f"Rendering failed: {e}") from e

        if not os.path.exists(output_path):
            raise PipelineError("Renderer finished without producing an output file.")
        return applied

    def _cleanup(self, output_path: str):
        try:
            if os.path.exists(output_path):
                os.remove(output_path)
        except OSError as e:
            logging.warning(f"Could not delete partial output: {e}")


# --------------------------------------------------------------------------
# --- Similarity Scoring ---
# --------------------------------------------------------------------------

MIN_SIMILARITY = 50
MAX_SIMILARITY = 70


class SimilarityScorer:
    """Heuristic score of how far a config strays from the source. Always within 50-70."""

    def score(self, config: VariationConfig) -> int:
        similarity = 100

        if config.speed is not None and abs(config.speed - 1) > 0.04:
            similarity -= 5
        if config.brightness is not None and abs(config.brightness) > 0.02:
            similarity -= 4
        if config.contrast is not None and abs(config.contrast - 1) > 0.02:
            similarity -= 4
        if config.saturation is not None and abs(config.saturation - 1) > 0.05:
            similarity -= 3
        if config.flip:
            similarity -= 8
        if config.noise:
            similarity -= 3
        if config.scale is not None and abs(config.scale - 1) > 0.01:
            similarity -= 3
        if config.crop_margins is not None and config.crop_margins > 1:
            similarity -= round(config.crop_margins)
        if config.volume is not None and abs(config.volume - 1) > 0.05:
            similarity -= 2

        return max(MIN_SIMILARITY, min(MAX_SIMILARITY, similarity))
