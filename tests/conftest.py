import tempfile
from pathlib import Path

import pytest

from video_converter.queue import SQLiteBroker, SQLiteDatabase, SQLiteVideoStore
from video_converter.queue.models import RetryPolicy


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_converter.db")


@pytest.fixture
def database(temp_db):
    db = SQLiteDatabase(temp_db, busy_timeout_s=5.0)
    yield db
    db.close()


@pytest.fixture
def store(database):
    return SQLiteVideoStore(database)


@pytest.fixture
def broker(database):
    policy = RetryPolicy(max_attempts=3, backoff_base_s=0.0, dead_letter_queue="dlq")
    return SQLiteBroker(database, retry_policy=policy)


@pytest.fixture
def make_upload(tmp_path):
    """Factory writing {file_name: bytes} chunks into a fresh upload directory."""

    def _make(chunks: dict, name: str = "upload") -> Path:
        directory = tmp_path / name
        directory.mkdir(parents=True, exist_ok=True)
        for file_name, data in chunks.items():
            (directory / file_name).write_bytes(data)
        return directory

    return _make
