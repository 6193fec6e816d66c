import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import (
    ARTIFACT_MAX_AGE_SECONDS,
    CORS_ORIGINS,
    PROCESSED_DIR,
    SWEEP_INTERVAL_SECONDS,
    UPLOADS_DIR,
)
from database import SessionLocal, engine as db_engine
from init_db import init_database
from routers.video import router as video_router
from storage import ArtifactStore, sweep_periodically
from tasks import JobEngine

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


def create_app(store: ArtifactStore = None, job_engine: JobEngine = None, sweep_interval: float = SWEEP_INTERVAL_SECONDS) -> FastAPI:
    """Build the application; tests pass their own store and engine."""
    store = store or ArtifactStore(UPLOADS_DIR, PROCESSED_DIR)
    store.ensure_dirs()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if job_engine is None:
            init_database(db_engine)
        app.state.store = store
        app.state.engine = job_engine or JobEngine(SessionLocal, store)
        sweeper = asyncio.create_task(sweep_periodically(store, sweep_interval, ARTIFACT_MAX_AGE_SECONDS))
        logging.info(f"🎬 Video Variation Backend ready. Uploads: {store.uploads_dir} Output: {store.processed_dir}")
        try:
            yield
        finally:
            sweeper.cancel()
            await app.state.engine.shutdown()

    app = FastAPI(
        title="Video Variation Backend",
        description="Uploads a video and renders randomized variations of it in the background.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials="*" not in CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(video_router)
    app.mount("/downloads", StaticFiles(directory=store.processed_dir), name="downloads")

    @app.get("/")
    @app.get("/health")
    def read_root():
        return {
            "status": "ok",
            "message": "🚀 Video Variation Backend is running!",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/test")
    def readiness():
        return {"message": "Variation API ready!", "success": True}

    return app


app = create_app()
