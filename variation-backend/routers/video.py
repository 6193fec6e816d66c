"""
Router for video variation endpoints.
Handles upload, job submission, status polling and variation download.
"""

import os
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse

from config import ESTIMATED_SECONDS_PER_VARIATION, MAX_UPLOAD_BYTES
from errors import NotFound, UnsupportedMediaError, VariationServiceError
from schemas import NotFoundStatus, ProcessRequest, ProcessResponse, UploadResponse, format_megabytes
from storage import DERIVED, UPLOADED, ArtifactStore
from tasks import JobEngine


# Create the router
router = APIRouter(prefix="/api/video", tags=["video"])


def get_store(request: Request) -> ArtifactStore:
    return request.app.state.store


def get_engine(request: Request) -> JobEngine:
    return request.app.state.engine


@router.post("/upload", response_model=UploadResponse)
async def upload_video(
    video: Optional[UploadFile] = File(None),
    store: ArtifactStore = Depends(get_store),
):
    """Receives a video from the client and stores it as an uploaded artifact."""
    if video is None:
        raise HTTPException(status_code=400, detail="No video file uploaded")

    try:
        if not (video.content_type or "").startswith("video/"):
            raise UnsupportedMediaError("Only video files allowed")
        artifact = await run_in_threadpool(store.put_stream, video.file, UPLOADED, MAX_UPLOAD_BYTES)
    except VariationServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logging.error(f"Upload error: {e}")
        raise HTTPException(status_code=500, detail="Upload failed.")

    logging.info(f"📁 Video {artifact.id} saved ({format_megabytes(artifact.size_bytes)}) from '{video.filename}'")
    return UploadResponse(
        video_id=artifact.id,
        original_name=video.filename,
        size_bytes=artifact.size_bytes,
        size=format_megabytes(artifact.size_bytes),
        message="Video uploaded - ready for processing!",
    )


@router.post("/process", response_model=ProcessResponse)
async def process_video(request: ProcessRequest, engine: JobEngine = Depends(get_engine)):
    """
    Creates a job record and starts producing variations in the background,
    immediately returning the job ID.
    """
    try:
        job_id = engine.create_job(request.video_id, request.variation_count)
    except VariationServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logging.error(f"Failed to start job: {e}")
        raise HTTPException(status_code=500, detail="Failed to start the variation job.")

    count = request.variation_count
    return ProcessResponse(
        job_id=job_id,
        message=f"Processing {count} variations",
        estimated_time=f"{count * ESTIMATED_SECONDS_PER_VARIATION} seconds",
    )


@router.get("/status/{job_id}")
async def get_job_status(job_id: str, engine: JobEngine = Depends(get_engine)):
    """
    Returns a snapshot of the job. Unknown ids get a `not_found` status
    rather than an error, which polling clients rely on.
    """
    try:
        status = engine.get_status(int(job_id))
    except ValueError:
        status = None
    return status if status is not None else NotFoundStatus()


@router.get("/download/{variation_id}")
async def download_variation(variation_id: str, store: ArtifactStore = Depends(get_store)):
    """Streams a produced variation."""
    try:
        artifact = store.get_artifact(variation_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="File not found")
    if artifact.origin != DERIVED:
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(artifact.path, media_type="video/mp4", filename=os.path.basename(artifact.path))
