import io
import os
import shutil
import tempfile

from pathlib import Path

import pytest

from PIL import Image


_DATA_DIR = Path(tempfile.mkdtemp(prefix="mapxion-tests-"))

os.environ["MAPXION_DATA_DIR"] = str(_DATA_DIR)
os.environ["MAPXION_DATABASE_URL"] = f"sqlite:///{(_DATA_DIR / 'test.db').as_posix()}"
os.environ["MAPXION_PRICE_PER_UNIT"] = "0.07"
os.environ["MAPXION_ARCHIVE_PREFIX"] = "mapxion"
os.environ.pop("MAPXION_BROKER_URL", None)

os.environ["MAPXION_WORKER_API_BASE"] = "http://testserver"
os.environ["MAPXION_WORKER_BROKER_URL"] = "memory://"
os.environ["MAPXION_WORKER_STAGE_DELAY_SECONDS"] = "0"


from fastapi.testclient import TestClient  # noqa: E402

from mapxion.db import SessionLocal, engine  # noqa: E402
from mapxion.deps import get_work_queue  # noqa: E402
from mapxion.lifecycle import JobLifecycle  # noqa: E402
from mapxion.main import app  # noqa: E402
from mapxion.models import Base  # noqa: E402
from mapxion.settings import settings  # noqa: E402
from mapxion.storage import FileAreaManager  # noqa: E402


class FakeWorkQueue:
    def __init__(self) -> None:
        self.ready = True
        self.fail_publish = False
        self.published = []

    def is_ready(self) -> bool:
        return self.ready

    def publish(self, message, policy) -> None:
        if self.fail_publish:
            raise ConnectionError("broker went away")
        self.published.append((message, policy))


def image_bytes(fmt: str = "PNG", size=(16, 12), color=(200, 40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(autouse=True)
def _clean_state():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    shutil.rmtree(settings.jobs_dir, ignore_errors=True)


@pytest.fixture
def queue():
    return FakeWorkQueue()


@pytest.fixture
def client(queue):
    app.dependency_overrides[get_work_queue] = lambda: queue
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def files(tmp_path):
    return FileAreaManager(tmp_path / "jobs", settings.allowed_image_extensions, max_upload_bytes=64 * 1024)


@pytest.fixture
def lifecycle(db, files):
    return JobLifecycle(db, files)


@pytest.fixture
def make_image():
    return image_bytes


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(_DATA_DIR, ignore_errors=True)
