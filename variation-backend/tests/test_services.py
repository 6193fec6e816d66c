# variation-backend/tests/test_services.py

import random
import subprocess

import ffmpeg
import pytest

from config import FFMPEG_CRF, FFMPEG_VIDEO_CODEC
from errors import PipelineError
from schemas import VariationConfig
from services import (
    CONFIG_FAMILIES,
    ConfigSynthesizer,
    FfmpegRenderer,
    SimilarityScorer,
    TransformPipeline,
)
from conftest import CopyRenderer, FailingRenderer

PARAMETERS = ["speed", "brightness", "contrast", "saturation", "gamma", "volume", "scale", "crop_margins"]


# --- ConfigSynthesizer ---

def test_synthesizer_picks_family_by_index():
    synthesizer = ConfigSynthesizer(random.Random(7))
    names = [synthesizer.synthesize(i).family for i in range(6)]
    assert names == [
        "Speed Variation", "Color Variation", "Structure Variation",
        "Speed Variation", "Color Variation", "Structure Variation",
    ]


def test_synthesized_parameters_stay_in_family_ranges():
    """
    Every defined parameter lies within its family range, and parameters the
    family does not define are absent rather than set to identity.
    """
    synthesizer = ConfigSynthesizer(random.Random(2024))
    for i in range(300):
        config = synthesizer.synthesize(i)
        family = CONFIG_FAMILIES[i % len(CONFIG_FAMILIES)]
        for name in PARAMETERS:
            value = getattr(config, name)
            if name in family["ranges"]:
                low, high = family["ranges"][name]
                assert low <= value <= high, (i, name, value)
            else:
                assert value is None, (i, name, value)
        for flag in ("flip", "noise"):
            value = getattr(config, flag)
            if flag in family["flags"]:
                assert value in (True, None)
            else:
                assert value is None
        if config.noise:
            assert 1 <= config.noise_strength < 3
        else:
            assert config.noise_strength is None


def test_same_index_never_repeats_a_config():
    synthesizer = ConfigSynthesizer(random.Random(99))
    first = synthesizer.synthesize(0)
    second = synthesizer.synthesize(0)
    assert first != second
    assert first.speed != second.speed


def test_seeded_synthesizers_agree():
    a = ConfigSynthesizer(random.Random(5)).synthesize(2)
    b = ConfigSynthesizer(random.Random(5)).synthesize(2)
    assert a == b


def test_flags_follow_family_probability():
    synthesizer = ConfigSynthesizer(random.Random(11))
    flips = sum(1 for i in range(0, 3000, 3) if synthesizer.synthesize(i).flip)
    # Family A flips with probability 0.3 over 1000 samples
    assert 230 < flips < 370


# --- TransformPipeline ---

def test_empty_config_has_no_stages():
    assert TransformPipeline(CopyRenderer()).build_stages(VariationConfig()) == []


def test_stage_order_is_fixed():
    config = VariationConfig(
        speed=1.04, brightness=0.03, contrast=1.02, saturation=1.05, gamma=0.97,
        scale=1.02, crop_margins=1.5, flip=True, noise=True, noise_strength=2.5, volume=1.08,
    )
    stages = TransformPipeline(CopyRenderer()).build_stages(config)
    assert [s.name for s in stages] == ["speed", "color", "scale", "crop", "flip", "noise", "volume"]


@pytest.mark.parametrize("config, expected", [
    (VariationConfig(speed=1.009), []),
    (VariationConfig(speed=0.989), ["speed"]),
    (VariationConfig(scale=1.004), []),
    (VariationConfig(scale=0.99), ["scale"]),
    (VariationConfig(crop_margins=0.5), []),
    (VariationConfig(crop_margins=0.6), ["crop"]),
    (VariationConfig(volume=1.04), []),
    (VariationConfig(volume=0.9), ["volume"]),
    (VariationConfig(gamma=1.0), ["color"]),
])
def test_skip_thresholds(config, expected):
    stages = TransformPipeline(CopyRenderer()).build_stages(config)
    assert [s.name for s in stages] == expected


def test_speed_stage_changes_video_and_audio_together():
    stage = TransformPipeline(CopyRenderer()).build_stages(VariationConfig(speed=1.03))[0]
    video, audio = stage.filters
    assert (video.stream, video.filter_name, video.args) == ("video", "setpts", ("0.9709*PTS",))
    assert (audio.stream, audio.filter_name, audio.args) == ("audio", "atempo", ("1.0300",))


def test_color_stage_combines_present_parameters_only():
    stages = TransformPipeline(CopyRenderer()).build_stages(VariationConfig(brightness=-0.02, saturation=1.1))
    assert len(stages) == 1
    assert stages[0].filters[0].kwargs == {"brightness": "-0.0200", "saturation": "1.1000"}


@pytest.mark.parametrize("config", [
    VariationConfig(speed=3.0),
    VariationConfig(crop_margins=100),
    VariationConfig(scale=-1.0),
    VariationConfig(gamma=0.0),
])
def test_unbuildable_stage_raises_pipeline_error(config):
    with pytest.raises(PipelineError):
        TransformPipeline(CopyRenderer()).build_stages(config)


def test_apply_writes_new_file_and_leaves_input_alone(tmp_path):
    source = tmp_path / "in.mp4"
    source.write_bytes(b"\x00source-bytes")
    output = tmp_path / "out.mp4"

    stages = TransformPipeline(CopyRenderer()).apply(str(source), str(output), VariationConfig(flip=True))

    assert [s.name for s in stages] == ["flip"]
    assert source.read_bytes() == b"\x00source-bytes"
    assert output.read_bytes().startswith(b"\x00source-bytes")


def test_apply_with_all_parameters_absent_applies_nothing(tmp_path):
    source = tmp_path / "in.mp4"
    source.write_bytes(b"abc")
    stages = TransformPipeline(CopyRenderer()).apply(str(source), str(tmp_path / "out.mp4"), VariationConfig())
    assert stages == []


def test_apply_rejects_missing_input(tmp_path):
    with pytest.raises(PipelineError):
        TransformPipeline(CopyRenderer()).apply(str(tmp_path / "nope.mp4"), str(tmp_path / "out.mp4"), VariationConfig())


def test_apply_removes_partial_output_on_render_failure(tmp_path):
    source = tmp_path / "in.mp4"
    source.write_bytes(b"abc")
    output = tmp_path / "out.mp4"
    with pytest.raises(PipelineError):
        TransformPipeline(FailingRenderer()).apply(str(source), str(output), VariationConfig())
    assert not output.exists()


def test_apply_wraps_unexpected_renderer_errors(tmp_path):
    class BrokenRenderer:
        def render(self, input_path, output_path, stages):
            raise OSError("disk full")

    source = tmp_path / "in.mp4"
    source.write_bytes(b"abc")
    with pytest.raises(PipelineError, match="disk full"):
        TransformPipeline(BrokenRenderer()).apply(str(source), str(tmp_path / "out.mp4"), VariationConfig())


def test_ffmpeg_command_contains_every_filter():
    config = VariationConfig(
        speed=1.03, brightness=0.02, scale=1.02, crop_margins=2.0,
        flip=True, noise=True, noise_strength=2.4, volume=1.1,
    )
    stages = TransformPipeline(CopyRenderer()).build_stages(config)
    args = FfmpegRenderer().compile("in.mp4", "out.mp4", stages, has_audio=True)
    graph = args[args.index("-filter_complex") + 1]

    for fragment in ("setpts=0.9709*PTS", "atempo=1.0300", "brightness=0.0200",
                     "scale=", "crop=", "hflip", "alls=2", "allf=u", "volume=1.1000"):
        assert fragment in graph
    assert graph.index("scale=") < graph.index("crop=") < graph.index("hflip") < graph.index("noise=")
    assert args[args.index("-vcodec") + 1] == FFMPEG_VIDEO_CODEC
    assert args[args.index("-crf") + 1] == str(FFMPEG_CRF)
    assert "-acodec" in args
    assert "out.mp4" in args


def test_ffmpeg_command_without_audio_drops_audio_filters():
    stages = TransformPipeline(CopyRenderer()).build_stages(VariationConfig(speed=1.03, volume=1.2))
    args = FfmpegRenderer().compile("in.mp4", "out.mp4", stages, has_audio=False)
    command = " ".join(args)
    assert "setpts" in command
    assert "atempo" not in command
    assert "volume" not in command
    assert "-acodec" not in args


class FakeProcess:
    """Stands in for the Popen object ffmpeg-python returns from run_async."""

    def __init__(self, returncode=0, stderr=b"", timeout=False, output_path=None):
        self.returncode = returncode
        self.stderr = stderr
        self.timeout = timeout
        self.output_path = output_path
        self.killed = False

    def communicate(self, timeout=None):
        if self.timeout and not self.killed:
            raise subprocess.TimeoutExpired("ffmpeg", timeout)
        if self.output_path and self.returncode == 0:
            with open(self.output_path, "wb") as f:
                f.write(b"rendered")
        return b"", self.stderr

    def kill(self):
        self.killed = True


def fake_ffmpeg(monkeypatch, process, streams=("video", "audio")):
    monkeypatch.setattr(ffmpeg, "probe", lambda path: {"streams": [{"codec_type": s} for s in streams]})
    monkeypatch.setattr(ffmpeg.nodes.OutputStream, "run_async", lambda self, **kwargs: process)


def test_silent_input_reports_only_rendered_stages(tmp_path, monkeypatch):
    """Audio-only stages are not reported as effects when the input has no audio track."""
    source = tmp_path / "in.mp4"
    source.write_bytes(b"silent")
    output = tmp_path / "out.mp4"
    fake_ffmpeg(monkeypatch, FakeProcess(output_path=str(output)), streams=("video",))

    stages = TransformPipeline(FfmpegRenderer()).apply(
        str(source), str(output), VariationConfig(speed=1.03, volume=1.1, flip=True))

    assert [s.name for s in stages] == ["speed", "flip"]


def test_input_with_audio_reports_every_stage(tmp_path, monkeypatch):
    source = tmp_path / "in.mp4"
    source.write_bytes(b"loud")
    output = tmp_path / "out.mp4"
    fake_ffmpeg(monkeypatch, FakeProcess(output_path=str(output)))

    stages = TransformPipeline(FfmpegRenderer()).apply(
        str(source), str(output), VariationConfig(speed=1.03, volume=1.1))

    assert [s.name for s in stages] == ["speed", "volume"]


def test_ffmpeg_failure_reports_last_stderr_line(tmp_path, monkeypatch):
    source = tmp_path / "in.mp4"
    source.write_bytes(b"garbage")
    output = tmp_path / "out.mp4"
    stderr = b"ffmpeg version 6.0\n[mov] moov atom not found\nin.mp4: Invalid data found when processing input\n"
    fake_ffmpeg(monkeypatch, FakeProcess(returncode=1, stderr=stderr))

    with pytest.raises(PipelineError, match="FFmpeg rendering failed: in.mp4: Invalid data found"):
        TransformPipeline(FfmpegRenderer()).apply(str(source), str(output), VariationConfig(flip=True))
    assert not output.exists()


def test_ffmpeg_timeout_kills_the_process(tmp_path, monkeypatch):
    source = tmp_path / "in.mp4"
    source.write_bytes(b"slow")
    process = FakeProcess(timeout=True)
    fake_ffmpeg(monkeypatch, process)

    with pytest.raises(PipelineError, match="timed out after 5 seconds"):
        FfmpegRenderer(timeout=5).render(str(source), str(tmp_path / "out.mp4"), [])
    assert process.killed


def test_unreadable_input_fails_before_rendering(tmp_path, monkeypatch):
    def unreadable(path):
        raise ffmpeg.Error("ffprobe", b"", b"ffprobe version 6.0\nin.mp4: moov atom not found\n")

    def must_not_run(self, **kwargs):
        raise AssertionError("ffmpeg should not start")

    monkeypatch.setattr(ffmpeg, "probe", unreadable)
    monkeypatch.setattr(ffmpeg.nodes.OutputStream, "run_async", must_not_run)

    with pytest.raises(PipelineError, match="Cannot read input video: in.mp4: moov atom not found"):
        FfmpegRenderer().render(str(tmp_path / "in.mp4"), str(tmp_path / "out.mp4"), [])


# --- SimilarityScorer ---

def test_score_of_untouched_config_is_capped_at_70():
    assert SimilarityScorer().score(VariationConfig()) == 70


def test_score_never_drops_below_50():
    config = VariationConfig(
        speed=2.0, brightness=1.0, contrast=2.0, saturation=3.0, scale=2.0,
        crop_margins=99, flip=True, noise=True, volume=5.0,
    )
    assert SimilarityScorer().score(config) == 50


def test_scores_at_family_extremes_stay_in_bounds():
    scorer = SimilarityScorer()
    for family in CONFIG_FAMILIES:
        for pick in (0, 1):
            params = {name: bounds[pick] for name, bounds in family["ranges"].items()}
            params.update({flag: True for flag in family["flags"]})
            assert 50 <= scorer.score(VariationConfig(**params)) <= 70


def test_scores_of_synthesized_configs_stay_in_bounds():
    synthesizer = ConfigSynthesizer(random.Random(3))
    scorer = SimilarityScorer()
    for i in range(500):
        assert 50 <= scorer.score(synthesizer.synthesize(i)) <= 70


def test_crop_penalty_scales_with_margin():
    # 100 - 99 = 1, clamped to 50; 100 - 2 = 98, clamped to 70
    assert SimilarityScorer().score(VariationConfig(crop_margins=99)) == 50
    assert SimilarityScorer().score(VariationConfig(crop_margins=2)) == 70
