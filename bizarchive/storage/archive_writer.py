"""BizArchive - Rolling Archive Writer.

Streams events of one window into ZIP parts holding a single JSONL entry.
A part rolls over before a line would push its payload past
``max_part_bytes``, so every part but the last stays within the limit
(unless a single event is itself larger).
"""

import json
import os
import tempfile
import threading
import zipfile
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional

from bizarchive.config import settings
from bizarchive.core.errors import ArchiveIOError
from bizarchive.core.logging import get_logger
from bizarchive.models.archive import ArchivePart
from bizarchive.models.integration import Integration
from bizarchive.models.window import Window

logger = get_logger("storage.archive_writer")


def serialize_event(event: Dict[str, Any]) -> bytes:
    """One compact JSON line, newline included."""
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False).encode("utf-8") + b"\n"


class ArchiveWriter:
    """Single-use writer for one (integration, window).

    Use as a context manager: leaving the block removes every staging file
    this writer created, whether or not it was uploaded.
    """

    def __init__(
        self,
        integration: Integration,
        window: Window,
        staging_dir: str | Path | None = None,
        max_part_bytes: int | None = None,
    ):
        self.integration = integration
        self.window = window
        self.staging_dir = Path(staging_dir or settings.temp_local_dir or tempfile.gettempdir())
        self.max_part_bytes = max_part_bytes or settings.max_archive_bytes
        self.part_index = 0
        self.records_written = 0
        self.bytes_written = 0
        self._part: Optional[ArchivePart] = None
        self._zip: Optional[zipfile.ZipFile] = None
        self._entry: Optional[IO[bytes]] = None
        self._staged: List[Path] = []
        self._sealed = False
        self._closed = False
        # Guards staging files against close() running while a worker thread rolls over.
        self._lock = threading.Lock()

    @property
    def entry_name(self) -> str:
        return f"{self.integration.id}_events.jsonl"

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Parts ──

    def _open_part(self) -> None:
        with self._lock:
            if self._closed:
                raise ArchiveIOError(f"[{self.integration.id}] Archive writer already closed")
            self._create_part()

    def _create_part(self) -> None:
        self.part_index += 1
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(
                prefix=f"bizevents-{self.integration.id}-part{self.part_index}-",
                suffix=".zip",
                dir=self.staging_dir,
            )
            os.close(fd)
            path = Path(name)
            self._staged.append(path)
            self._zip = zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED)
            self._entry = self._zip.open(self.entry_name, "w", force_zip64=True)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveIOError(
                f"[{self.integration.id}] Could not open archive part {self.part_index}: {e}"
            ) from e
        self._part = ArchivePart(
            integration_id=self.integration.id,
            window_start=self.window.start,
            part_index=self.part_index,
            path=path,
        )

    def _close_part(self) -> ArchivePart:
        part = self._part
        try:
            self._entry.close()
            self._zip.close()
            compressed = part.path.stat().st_size
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveIOError(
                f"[{self.integration.id}] Could not seal archive part {part.part_index}: {e}"
            ) from e
        finally:
            self._entry = None
            self._zip = None
            self._part = None
        sealed = part.model_copy(update={"compressed_size": compressed})
        logger.info(
            f"[{self.integration.id}] Sealed part {sealed.part_index} "
            f"({sealed.record_count} records, {sealed.byte_size} bytes, {compressed} compressed)",
            extra={
                "integration_id": self.integration.id,
                "part_index": sealed.part_index,
                "byte_size": sealed.byte_size,
                "record_count": sealed.record_count,
            },
        )
        return sealed

    # ── Writing ──

    def write(self, event: Dict[str, Any]) -> Optional[ArchivePart]:
        """Append one event. Returns the previous part if this write rolled over."""
        if self._closed:
            raise ArchiveIOError(f"[{self.integration.id}] Archive writer already closed")
        if self._sealed:
            raise ArchiveIOError(f"[{self.integration.id}] Archive writer already sealed")

        line = serialize_event(event)
        rolled = None
        if self._part is not None and self._part.byte_size > 0 and (
            self._part.byte_size + len(line) > self.max_part_bytes
        ):
            rolled = self._close_part()
        if self._part is None:
            self._open_part()

        try:
            self._entry.write(line)
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise ArchiveIOError(
                f"[{self.integration.id}] Write to part {self.part_index} failed: {e}"
            ) from e

        self._part.byte_size += len(line)
        self._part.record_count += 1
        self.bytes_written += len(line)
        self.records_written += 1
        return rolled

    def write_all(self, events: Iterable[Dict[str, Any]]) -> List[ArchivePart]:
        """Append a batch; returns every part sealed by rolling over."""
        rolled = []
        for event in events:
            part = self.write(event)
            if part is not None:
                rolled.append(part)
        return rolled

    def seal(self) -> Optional[ArchivePart]:
        """Close the open part. None when nothing was ever written."""
        self._sealed = True
        if self._part is None:
            return None
        return self._close_part()

    # ── Cleanup ──

    def release(self, part: ArchivePart) -> None:
        """Drop the staging file of a part that has been uploaded."""
        part.path.unlink(missing_ok=True)
        if part.path in self._staged:
            self._staged.remove(part.path)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._discard()

    def _discard(self) -> None:
        if self._zip is not None:
            try:
                if self._entry is not None:
                    self._entry.close()
                self._zip.close()
            except (OSError, zipfile.BadZipFile, ValueError) as e:
                logger.warning(f"[{self.integration.id}] Discarding unsealed part: {e}")
            self._entry = None
            self._zip = None
            self._part = None
        for path in self._staged:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[{self.integration.id}] Could not remove staging file {path}: {e}")
        self._staged.clear()
