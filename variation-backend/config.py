"""
Configuration file for the Video Variation Backend.
Contains all global constants; each one can be overridden from the environment.
"""

import os

# --- Paths ---
PROJECT_ROOT = os.getcwd()
MEDIA_DIR = os.getenv("MEDIA_DIR", os.path.join(PROJECT_ROOT, "media"))
UPLOADS_DIR = os.getenv("UPLOADS_DIR", os.path.join(MEDIA_DIR, "uploads"))
PROCESSED_DIR = os.getenv("PROCESSED_DIR", os.path.join(MEDIA_DIR, "processed"))
ARTIFACT_EXTENSION = ".mp4"

# In-process SQLite by default: job state does not survive a restart.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite://")

# --- Server ---
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# --- Upload & job limits ---
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
UPLOAD_CHUNK_BYTES = 1024 * 1024
DEFAULT_VARIATION_COUNT = int(os.getenv("DEFAULT_VARIATION_COUNT", "5"))
ESTIMATED_SECONDS_PER_VARIATION = 8

# --- Retention ---
ARTIFACT_MAX_AGE_SECONDS = int(os.getenv("ARTIFACT_MAX_AGE_SECONDS", str(2 * 60 * 60)))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", str(60 * 60)))

# --- FFmpeg output settings ---
# Fixed for every run; a job's variability comes only from its filter stages.
FFMPEG_VIDEO_CODEC = os.getenv("FFMPEG_VIDEO_CODEC", "libx264")
FFMPEG_PRESET = os.getenv("FFMPEG_PRESET", "fast")
FFMPEG_CRF = int(os.getenv("FFMPEG_CRF", "23"))
FFMPEG_PIX_FMT = "yuv420p"
FFMPEG_AUDIO_CODEC = os.getenv("FFMPEG_AUDIO_CODEC", "aac")
FFMPEG_AUDIO_BITRATE = os.getenv("FFMPEG_AUDIO_BITRATE", "128k")
FFMPEG_MOVFLAGS = "+faststart"
FFMPEG_TIMEOUT_SECONDS = int(os.getenv("FFMPEG_TIMEOUT_SECONDS", "600"))
