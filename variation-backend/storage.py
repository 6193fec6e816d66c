"""
Artifact storage for uploaded and derived videos.

Artifacts are files named `<id>.mp4` under the uploads or processed
directory. The id -> Artifact index is shared by the upload, download and
job paths, so every access goes through one lock.
"""

import os
import time
import uuid
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import BinaryIO, Dict, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from config import (
    ARTIFACT_EXTENSION,
    ARTIFACT_MAX_AGE_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    UPLOAD_CHUNK_BYTES,
)
from errors import NotFound, PayloadTooLarge

UPLOADED = "uploaded"
DERIVED = "derived"


class Artifact(BaseModel):
    id: str
    origin: str  # uploaded | derived
    size_bytes: int
    created_at: datetime
    path: str


def new_artifact_id() -> str:
    return f"video_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


class ArtifactStore:
    """Immutable blobs on disk, indexed by id."""

    def __init__(self, uploads_dir: str, processed_dir: str):
        self.uploads_dir = uploads_dir
        self.processed_dir = processed_dir
        self._index: Dict[str, Artifact] = {}
        self._holds: Dict[str, int] = {}
        self._lock = threading.Lock()

    def ensure_dirs(self):
        os.makedirs(self.uploads_dir, exist_ok=True)
        os.makedirs(self.processed_dir, exist_ok=True)

    def _dir_for(self, origin: str) -> str:
        return self.uploads_dir if origin == UPLOADED else self.processed_dir

    # --- Writers ---

    def allocate(self, origin: str, artifact_id: Optional[str] = None) -> Tuple[str, str]:
        """Reserve an id and a path for a producer that writes the file itself."""
        artifact_id = artifact_id or new_artifact_id()
        path = os.path.join(self._dir_for(origin), f"{artifact_id}{ARTIFACT_EXTENSION}")
        if os.path.exists(path):
            raise FileExistsError(f"Artifact {artifact_id} already exists")
        return artifact_id, path

    def register(self, artifact_id: str, origin: str) -> Artifact:
        """Index a file that has been fully written at its allocated path."""
        path = os.path.join(self._dir_for(origin), f"{artifact_id}{ARTIFACT_EXTENSION}")
        stat = os.stat(path)
        artifact = Artifact(
            id=artifact_id,
            origin=origin,
            size_bytes=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            path=path,
        )
        with self._lock:
            self._index[artifact_id] = artifact
        return artifact

    def discard(self, artifact_id: str, origin: str):
        """Drop an artifact nobody will reference, whether or not it was registered."""
        path = os.path.join(self._dir_for(origin), f"{artifact_id}{ARTIFACT_EXTENSION}")
        with self._lock:
            self._index.pop(artifact_id, None)
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def put(self, data: bytes, origin: str) -> Artifact:
        artifact_id, path = self.allocate(origin)
        with open(path, "wb") as f:
            f.write(data)
        return self.register(artifact_id, origin)

    def put_stream(self, fileobj: BinaryIO, origin: str, max_bytes: Optional[int] = None) -> Artifact:
        """Copy a file-like object into the store, enforcing an optional size limit."""
        artifact_id, path = self.allocate(origin)
        written = 0
        try:
            with open(path, "wb") as buffer:
                while True:
                    chunk = fileobj.read(UPLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise PayloadTooLarge(f"File exceeds the {max_bytes} byte upload limit")
                    buffer.write(chunk)
        except BaseException:
            if os.path.exists(path):
                os.remove(path)
            raise
        return self.register(artifact_id, origin)

    # --- Readers ---

    def get_artifact(self, artifact_id: str) -> Artifact:
        with self._lock:
            artifact = self._index.get(artifact_id)
        if artifact is None or not os.path.exists(artifact.path):
            raise NotFound(f"Artifact {artifact_id} not found")
        return artifact

    def path_for(self, artifact_id: str) -> str:
        return self.get_artifact(artifact_id).path

    def get(self, artifact_id: str) -> bytes:
        with open(self.path_for(artifact_id), "rb") as f:
            return f.read()

    def exists(self, artifact_id: str) -> bool:
        try:
            self.get_artifact(artifact_id)
        except NotFound:
            return False
        return True

    # --- Retention ---

    def hold(self, artifact_id: str):
        """Protect an artifact from the sweep while a job reads it."""
        with self._lock:
            self._holds[artifact_id] = self._holds.get(artifact_id, 0) + 1

    def release(self, artifact_id: str):
        with self._lock:
            count = self._holds.get(artifact_id, 0) - 1
            if count > 0:
                self._holds[artifact_id] = count
            else:
                self._holds.pop(artifact_id, None)

    def sweep(self, max_age_seconds: float = ARTIFACT_MAX_AGE_SECONDS, now: Optional[float] = None) -> int:
        """Delete every unheld artifact file whose last write is older than max_age_seconds."""
        now = time.time() if now is None else now
        cleaned = 0
        for directory in (self.uploads_dir, self.processed_dir):
            if not os.path.isdir(directory):
                continue
            dir_cleaned = 0
            for fname in os.listdir(directory):
                path = os.path.join(directory, fname)
                if not os.path.isfile(path):
                    continue
                artifact_id = os.path.splitext(fname)[0]
                with self._lock:
                    if artifact_id in self._holds:
                        continue
                    try:
                        if now - os.path.getmtime(path) <= max_age_seconds:
                            continue
                        os.remove(path)
                    except FileNotFoundError:
                        self._index.pop(artifact_id, None)
                        continue
                    self._index.pop(artifact_id, None)
                dir_cleaned += 1
            if dir_cleaned:
                logging.info(f"🧹 Cleaned {dir_cleaned} files from {os.path.basename(directory)}")
            cleaned += dir_cleaned
        return cleaned


async def sweep_periodically(
    store: ArtifactStore,
    interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    max_age_seconds: float = ARTIFACT_MAX_AGE_SECONDS,
):
    """Run store.sweep forever on a fixed interval, independent of any job."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(store.sweep, max_age_seconds)
        except Exception as e:
            logging.error(f"Cleanup error: {e}")
