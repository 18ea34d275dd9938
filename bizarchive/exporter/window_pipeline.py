"""BizArchive - Window Pipeline.

Exports one integration hour by hour, from its checkpoint up to the last
complete hour before now:

  ADVANCING → COUNTING → NO_DATA ─────────────────────────────────→ ADVANCING
                       ↘ FETCHING → SEALING → UPLOADING → CHECKPOINTING ↗

A window's checkpoint is written only after every one of its parts has been
uploaded. Any failure leaves the checkpoint where it was, so the window is
exported again on the next run (at-least-once).
"""

import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from bizarchive.config import settings
from bizarchive.connectors.dynatrace.pager import Pager
from bizarchive.core.blocking import run_blocking
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import WINDOW_GRANULARITY, floor_hour, utcnow
from bizarchive.models.archive import ArchivePart
from bizarchive.models.checkpoint import Checkpoint
from bizarchive.models.integration import Integration
from bizarchive.models.window import Window
from bizarchive.storage.archive_writer import ArchiveWriter

logger = get_logger("exporter.window_pipeline")


class PipelineState(str, Enum):
    ADVANCING = "ADVANCING"
    COUNTING = "COUNTING"
    NO_DATA = "NO_DATA"
    FETCHING = "FETCHING"
    SEALING = "SEALING"
    UPLOADING = "UPLOADING"
    CHECKPOINTING = "CHECKPOINTING"
    DONE = "DONE"
    FAILED = "FAILED"


class PipelineStats(BaseModel):
    """Outcome of one pipeline run."""

    integration_id: str
    windows_processed: int = 0
    windows_empty: int = 0
    records: int = 0
    parts_uploaded: int = 0
    last_checkpoint: Optional[datetime] = None


class WindowPipeline:
    """Sequential export of one integration's pending windows."""

    def __init__(
        self,
        integration: Integration,
        query_client,
        checkpoint_store,
        uploader,
        page_size: int | None = None,
        staging_dir: str | None = None,
        max_part_bytes: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.integration = integration
        self.query_client = query_client
        self.checkpoints = checkpoint_store
        self.uploader = uploader
        self.page_size = page_size or settings.bizevents_page_size
        self.staging_dir = staging_dir or settings.temp_local_dir or None
        self.max_part_bytes = max_part_bytes or settings.max_archive_bytes
        self.clock = clock
        self.state = PipelineState.ADVANCING
        self.stats = PipelineStats(integration_id=integration.id)

    def _log(self, message: str, window: Optional[Window] = None, level: str = "info", **extra):
        ctx = {"integration_id": self.integration.id, "state": self.state.value, **extra}
        if window is not None:
            ctx["window_start"] = window.start.isoformat()
            ctx["window_end"] = window.end.isoformat()
        getattr(logger, level)(f"[{self.integration.id}] {message}", extra=ctx)

    def _enter(self, state: PipelineState) -> None:
        self.state = state

    def horizon(self) -> datetime:
        """Windows must start before this; the newest hour is left for late data."""
        return floor_hour(self.clock()) - WINDOW_GRANULARITY

    # ── Run ──

    async def run(self) -> PipelineStats:
        started = time.monotonic()
        try:
            checkpoint = await self.checkpoints.load(self.integration.id)
            window = Window.starting_at(checkpoint.last_processed_timestamp)
            self._log(f"Resuming from {window.start.isoformat()}", window)

            while window.start < self.horizon():
                self._enter(PipelineState.ADVANCING)
                await self.process_window(window)
                window = window.next()
        except BaseException:
            self._enter(PipelineState.FAILED)
            raise

        self._enter(PipelineState.DONE)
        self._log(
            f"Completed: {self.stats.windows_processed} window(s) archived, "
            f"{self.stats.windows_empty} empty, {self.stats.records} records, "
            f"{self.stats.parts_uploaded} part(s)",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return self.stats

    async def process_window(self, window: Window) -> bool:
        """Export one window. Returns True when data was archived and checkpointed."""
        self._enter(PipelineState.COUNTING)
        self._log(f"Processing window {window}", window)
        total = await self.query_client.count(self.integration, window)

        if total == 0:
            self._enter(PipelineState.NO_DATA)
            self.stats.windows_empty += 1
            self._log("No records in window", window)
            return False

        self._enter(PipelineState.FETCHING)
        with ArchiveWriter(
            self.integration, window, self.staging_dir, self.max_part_bytes
        ) as writer:
            pager = Pager(
                self.query_client, self.integration, window, self.page_size, first_count=total
            )
            async for batch in pager:
                rolled = await run_blocking(writer.write_all, batch)
                for part in rolled:
                    self._enter(PipelineState.UPLOADING)
                    await self._upload(writer, part)
                    self._enter(PipelineState.FETCHING)

            self._enter(PipelineState.SEALING)
            final = await run_blocking(writer.seal)
            if final is not None:
                self._enter(PipelineState.UPLOADING)
                await self._upload(writer, final)
            written = writer.records_written

        if written == 0:
            self._log(f"Count reported {total} records but none were written", window, "warning")
            return False

        self._enter(PipelineState.CHECKPOINTING)
        saved = await self.checkpoints.save(
            Checkpoint(integration_id=self.integration.id, last_processed_timestamp=window.end)
        )
        self.stats.windows_processed += 1
        self.stats.records += written
        self.stats.last_checkpoint = saved.last_processed_timestamp
        self._log(
            f"Window {window} archived ({written} records, {pager.pages} page(s)) and checkpoint updated",
            window,
            record_count=written,
        )
        return True

    async def _upload(self, writer: ArchiveWriter, part: ArchivePart) -> None:
        await run_blocking(self.uploader.upload, part)
        writer.release(part)
        self.stats.parts_uploaded += 1
