"""Shared fixtures and in-memory fakes for the exporter tests."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from bizarchive.core.errors import CheckpointIOError, UploadError
from bizarchive.core.timeutil import format_timestamp, parse_timestamp
from bizarchive.models.checkpoint import Checkpoint, initial_checkpoint
from bizarchive.models.integration import Integration
from bizarchive.models.query import QueryPage

NOW = datetime(2024, 5, 1, 5, 30, tzinfo=timezone.utc)


def make_events(start: datetime, count: int, step: timedelta = timedelta(milliseconds=100)):
    """Events with strictly increasing timestamps starting at ``start``."""
    return [
        {"timestamp": format_timestamp(start + i * step), "seq": i, "event.type": "sox"}
        for i in range(count)
    ]


class FakeTokenProvider:
    def __init__(self, token: str = "test-token"):
        self.token = token
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        return self.token


class MemoryBlobStore:
    """Dict-backed stand-in for S3BlobStore."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.fail_puts = False
        self.fail_gets = False
        self._lock = threading.Lock()

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        self.put_bytes(key, Path(path).read_bytes(), content_type)

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        if self.fail_puts:
            raise RuntimeError("simulated put failure")
        with self._lock:
            self.objects[key] = data
            self.content_types[key] = content_type

    def get_bytes(self, key: str) -> Optional[bytes]:
        if self.fail_gets:
            raise RuntimeError("simulated get failure")
        return self.objects.get(key)

    def list_recent(self, prefix: str, limit: int = 10) -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))[:limit]

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))


class MemoryCheckpointStore:
    """In-memory CheckpointStore that records every save."""

    def __init__(self, initial: Callable[[str], Checkpoint] | None = None, journal=None):
        self.checkpoints: Dict[str, Checkpoint] = {}
        self.saves: List[Checkpoint] = []
        self.initial = initial or (lambda iid: initial_checkpoint(iid, 24, now=NOW))
        self.fail_saves = 0
        self.journal = journal if journal is not None else []

    def seed(self, integration_id: str, timestamp: datetime) -> None:
        self.checkpoints[integration_id] = Checkpoint(
            integration_id=integration_id, last_processed_timestamp=timestamp
        )

    async def load(self, integration_id: str) -> Checkpoint:
        return self.checkpoints.get(integration_id) or self.initial(integration_id)

    async def save(self, checkpoint: Checkpoint) -> Checkpoint:
        if self.fail_saves:
            self.fail_saves -= 1
            raise CheckpointIOError("simulated checkpoint failure")
        stamped = checkpoint.stamped(NOW)
        self.checkpoints[checkpoint.integration_id] = stamped
        self.saves.append(stamped)
        self.journal.append(("checkpoint", stamped.last_processed_timestamp))
        return stamped


class FakeQueryClient:
    """Serves count/fetch from an in-memory, timestamp-ordered event list."""

    def __init__(self, events: List[Dict[str, Any]]):
        self.events = sorted(events, key=lambda e: parse_timestamp(e["timestamp"]))
        self.count_calls: List[tuple] = []
        self.fetch_calls: List[tuple] = []

    def _in_range(self, start: datetime, end: datetime):
        return [e for e in self.events if start <= parse_timestamp(e["timestamp"]) < end]

    async def count(self, integration, window, cursor=None) -> int:
        start = cursor or window.start
        self.count_calls.append((start, window.end))
        return len(self._in_range(start, window.end))

    async def fetch(self, integration, window, cursor, page_size) -> QueryPage:
        events = self._in_range(cursor, window.end)[:page_size]
        self.fetch_calls.append((cursor, len(events)))
        next_cursor = parse_timestamp(events[-1]["timestamp"]) if events else None
        return QueryPage(events=events, next_cursor=next_cursor)


class RecordingUploader:
    """Wraps a real uploader and journals each upload."""

    def __init__(self, inner, journal):
        self.inner = inner
        self.journal = journal
        self.fail_on_call: Optional[int] = None
        self.calls = 0

    def upload(self, part):
        self.calls += 1
        if self.fail_on_call == self.calls:
            raise UploadError("simulated upload failure")
        key = self.inner.upload(part)
        self.journal.append(("upload", key))
        return key


@pytest.fixture
def integration() -> Integration:
    return Integration(code="IC-01", source="INT03-1", destination="INT04")


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def journal() -> list:
    return []


@pytest.fixture
def checkpoint_store(journal) -> MemoryCheckpointStore:
    return MemoryCheckpointStore(journal=journal)


@pytest.fixture
def token_provider() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def staging_dir(tmp_path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path
