"""
Pydantic models for data validation in the Video Variation Backend.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import DEFAULT_VARIATION_COUNT


class VariationConfig(BaseModel):
    """
    Randomized transform parameters for one variation.

    A parameter left as None means its stage is skipped. Flags are either
    True or None, never False.
    """
    model_config = ConfigDict(frozen=True)

    family: str = ""
    speed: Optional[float] = None
    brightness: Optional[float] = None
    contrast: Optional[float] = None
    saturation: Optional[float] = None
    gamma: Optional[float] = None
    volume: Optional[float] = None
    scale: Optional[float] = None
    crop_margins: Optional[float] = None
    flip: Optional[bool] = None
    noise: Optional[bool] = None
    noise_strength: Optional[float] = None


class UploadResponse(BaseModel):
    """Response model for an uploaded video."""
    success: bool = True
    video_id: str
    original_name: Optional[str] = None
    size_bytes: int
    size: str
    message: str


class ProcessRequest(BaseModel):
    """Request model for starting a variation job. Accepts camelCase keys too."""
    model_config = ConfigDict(populate_by_name=True)

    video_id: Optional[str] = Field(default=None, alias="videoId")
    variation_count: int = Field(default=DEFAULT_VARIATION_COUNT, alias="variationCount")


class ProcessResponse(BaseModel):
    """Response when submitting a background variation job."""
    success: bool = True
    job_id: int
    message: str
    estimated_time: str


class VariationResult(BaseModel):
    id: str
    name: str
    method: str
    similarity: int
    size_bytes: int
    size: str
    effects: List[str] = Field(default_factory=list)
    download_url: str
    processed_at: datetime


class JobStatus(BaseModel):
    """Snapshot of a job as seen by a polling client."""
    job_id: int
    status: str  # "active" | "completed" | "failed"
    progress: int
    video_id: str
    variation_count: int
    results: List[VariationResult] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None


class NotFoundStatus(BaseModel):
    status: str = "not_found"


def format_megabytes(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.2f} MB"
