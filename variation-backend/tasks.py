# tasks.py

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from fastapi.concurrency import run_in_threadpool

from errors import InvalidRequest
from models import Job, Variation
from schemas import JobStatus, VariationResult, format_megabytes
from services import ConfigSynthesizer, SimilarityScorer, TransformPipeline
from storage import DERIVED, ArtifactStore

# Largest id SQLite can store in an INTEGER PRIMARY KEY.
MAX_JOB_ID = 2 ** 63 - 1

ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


def _now():
    return datetime.now(timezone.utc)


def progress_after(done: int, total: int) -> int:
    """Percentage of variations done, rounded half up. Only a finished job reports 100."""
    if done >= total:
        return 100
    return min(99, int(done * 100 / total + 0.5))


def download_url(variation_id: str) -> str:
    return f"/api/video/download/{variation_id}"


def to_status(job: Job) -> JobStatus:
    return JobStatus(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        video_id=job.video_id,
        variation_count=job.variation_count,
        results=[
            VariationResult(
                id=v.id,
                name=v.name,
                method=v.method,
                similarity=v.similarity,
                size_bytes=v.size_bytes,
                size=format_megabytes(v.size_bytes),
                effects=list(v.effects or []),
                download_url=download_url(v.id),
                processed_at=v.processed_at,
            )
            for v in job.results
        ],
        error=job.error,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


class JobEngine:
    """
    Owns the job lifecycle: active -> completed | failed.

    Each job is driven by one asyncio task, which is the only writer of that
    job's row. Every update is committed on its own, so a concurrent
    get_status always reads a consistent snapshot.
    """

    def __init__(
        self,
        session_factory,
        store: ArtifactStore,
        synthesizer: Optional[ConfigSynthesizer] = None,
        pipeline: Optional[TransformPipeline] = None,
        scorer: Optional[SimilarityScorer] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.synthesizer = synthesizer or ConfigSynthesizer()
        self.pipeline = pipeline or TransformPipeline()
        self.scorer = scorer or SimilarityScorer()
        self._tasks: Set[asyncio.Task] = set()

    def create_job(self, video_id: Optional[str], variation_count) -> int:
        """Record a new job and start processing it in the background. Must be called on the event loop."""
        if isinstance(variation_count, bool) or not isinstance(variation_count, int) or variation_count < 1:
            raise InvalidRequest("variation_count must be a positive integer")
        if not video_id:
            raise InvalidRequest("video_id is required")
        # Raises NotFound before any job row exists.
        self.store.get_artifact(video_id)

        db = self.session_factory()
        try:
            job = Job(
                status=ACTIVE,
                progress=0,
                video_id=video_id,
                variation_count=variation_count,
                started_at=_now(),
            )
            db.add(job)
            db.commit()
            job_id = job.id
        finally:
            db.close()

        task = asyncio.create_task(self.run_job(job_id), name=f"variation-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logging.info(f"✨ Job {job_id} submitted: {variation_count} variations of {video_id}")
        return job_id

    def get_status(self, job_id: int) -> Optional[JobStatus]:
        if not 0 < job_id <= MAX_JOB_ID:
            return None
        db = self.session_factory()
        try:
            job = db.query(Job).filter(Job.id == job_id).first()
            return to_status(job) if job else None
        finally:
            db.close()

    async def run_job(self, job_id: int):
        """Background loop: variations are processed one at a time, never concurrently."""
        db = self.session_factory()
        try:
            job = db.query(Job).filter(Job.id == job_id).first()
            if job is None:
                logging.error(f"❌ Job {job_id} vanished before it started")
                return
            video_id, total = job.video_id, job.variation_count
        finally:
            db.close()

        self.store.hold(video_id)
        try:
            source_path = self.store.path_for(video_id)
            for i in range(total):
                await self._process_variation(job_id, video_id, source_path, i, total)
            logging.info(f"🎉 Job {job_id} completed with {total} variations")
        except Exception as e:
            logging.error(f"❌ Job {job_id} failed. Error: {e}")
            self._fail(job_id, str(e) or e.__class__.__name__)
        finally:
            self.store.release(video_id)

    async def _process_variation(self, job_id: int, video_id: str, source_path: str, index: int, total: int):
        logging.info(f"🎬 Job {job_id}: processing variation {index + 1}/{total}")
        config = self.synthesizer.synthesize(index)
        artifact_id, output_path = self.store.allocate(DERIVED, f"{video_id}_{job_id}_variation_{index + 1}")

        stages = await run_in_threadpool(self.pipeline.apply, source_path, output_path, config)
        try:
            artifact = self.store.register(artifact_id, DERIVED)
            similarity = self.scorer.score(config)
            self._publish(job_id, artifact, config, stages, index, total, similarity)
        except Exception:
            # The file is not referenced by any committed result.
            self.store.discard(artifact_id, DERIVED)
            raise
        logging.info(f"✅ Job {job_id}: variation {index + 1} done ({format_megabytes(artifact.size_bytes)}, similarity {similarity})")

    def _publish(self, job_id, artifact, config, stages, index, total, similarity):
        db = self.session_factory()
        try:
            job = db.query(Job).filter(Job.id == job_id).first()
            job.results.append(Variation(
                id=artifact.id,
                position=index,
                name=f"variation_{index + 1}.mp4",
                method=config.family,
                similarity=similarity,
                size_bytes=artifact.size_bytes,
                effects=[stage.name for stage in stages],
                processed_at=_now(),
            ))
            job.progress = progress_after(index + 1, total)
            if index + 1 == total:
                # Last result and the terminal status are published together.
                job.status = COMPLETED
                job.finished_at = _now()
            db.commit()
        finally:
            db.close()

    def _fail(self, job_id: int, error: str):
        """Mark the job failed; results and progress recorded so far are kept."""
        db = self.session_factory()
        try:
            job = db.query(Job).filter(Job.id == job_id).first()
            if job is None:
                return
            job.status = FAILED
            job.error = error
            job.finished_at = _now()
            db.commit()
        finally:
            db.close()

    async def drain(self):
        """Wait for every job task currently in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
