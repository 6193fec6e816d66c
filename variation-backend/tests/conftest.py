# variation-backend/tests/conftest.py

import os
import sys
import random
import shutil
import tempfile

import pytest

# Keep media created at import time out of the working tree
os.environ.setdefault("MEDIA_DIR", tempfile.mkdtemp(prefix="variation-media-"))

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import make_engine, make_session_factory  # noqa: E402
from errors import PipelineError  # noqa: E402
from init_db import init_database  # noqa: E402
from services import ConfigSynthesizer, TransformPipeline  # noqa: E402
from storage import ArtifactStore  # noqa: E402
from tasks import JobEngine  # noqa: E402


class CopyRenderer:
    """Stands in for ffmpeg: copies the input and appends a marker."""

    def __init__(self):
        self.calls = []

    def render(self, input_path, output_path, stages):
        self.calls.append([stage.name for stage in stages])
        shutil.copyfile(input_path, output_path)
        with open(output_path, "ab") as f:
            f.write(b"variation-%d" % len(self.calls))
        return stages


class FailingRenderer(CopyRenderer):
    """Succeeds `succeed` times, then fails like a non-zero ffmpeg exit."""

    def __init__(self, succeed=0):
        super().__init__()
        self.succeed = succeed

    def render(self, input_path, output_path, stages):
        if len(self.calls) >= self.succeed:
            self.calls.append(None)
            with open(output_path, "wb") as f:
                f.write(b"partial")
            raise PipelineError("FFmpeg rendering failed: Invalid data found when processing input")
        return super().render(input_path, output_path, stages)


@pytest.fixture
def store(tmp_path):
    artifact_store = ArtifactStore(str(tmp_path / "uploads"), str(tmp_path / "processed"))
    artifact_store.ensure_dirs()
    return artifact_store


@pytest.fixture
def session_factory():
    db_engine = make_engine("sqlite://")
    init_database(db_engine)
    yield make_session_factory(db_engine)
    db_engine.dispose()


@pytest.fixture
def renderer():
    return CopyRenderer()


@pytest.fixture
def job_engine(session_factory, store, renderer):
    return JobEngine(
        session_factory,
        store,
        synthesizer=ConfigSynthesizer(random.Random(1234)),
        pipeline=TransformPipeline(renderer),
    )
