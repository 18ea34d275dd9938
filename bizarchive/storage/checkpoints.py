"""BizArchive - Checkpoint Store.

Key layout::

    checkpoints/integration=<integration-id>/checkpoint.json

Saves are unconditional overwrites. Only one pipeline per integration runs at
a time, so no versioning is needed.
"""

from datetime import datetime
from typing import Callable, Optional, Protocol

from pydantic import ValidationError

from bizarchive.config import settings
from bizarchive.core.blocking import run_blocking
from bizarchive.core.errors import CheckpointIOError
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import utcnow
from bizarchive.models.checkpoint import Checkpoint, initial_checkpoint

logger = get_logger("storage.checkpoints")

CHECKPOINT_PREFIX = "checkpoints"
JSON_CONTENT_TYPE = "application/json"


class CheckpointStore(Protocol):
    async def load(self, integration_id: str) -> Checkpoint: ...

    async def save(self, checkpoint: Checkpoint) -> Checkpoint: ...


def checkpoint_key(integration_id: str, prefix: str = CHECKPOINT_PREFIX) -> str:
    return f"{prefix}/integration={integration_id}/checkpoint.json"


def default_checkpoint_factory(
    lookback_hours: int | None = None,
    from_epoch: bool | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Callable[[str], Checkpoint]:
    """Factory for the checkpoint of an integration that was never exported."""
    hours = settings.initial_lookback_hours if lookback_hours is None else lookback_hours
    epoch = settings.backfill_from_epoch if from_epoch is None else from_epoch

    def factory(integration_id: str) -> Checkpoint:
        return initial_checkpoint(integration_id, hours, epoch, now=clock())

    return factory


class S3CheckpointStore:
    """Checkpoint per integration as a JSON object in the checkpoint bucket."""

    def __init__(
        self,
        blob_store,
        initial: Optional[Callable[[str], Checkpoint]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.blob_store = blob_store
        self.initial = initial or default_checkpoint_factory(clock=clock)
        self.clock = clock

    def load_sync(self, integration_id: str) -> Checkpoint:
        key = checkpoint_key(integration_id)
        try:
            payload = self.blob_store.get_bytes(key)
        except Exception as e:
            raise CheckpointIOError(
                f"Failed to load checkpoint for integration {integration_id}: {e}"
            ) from e

        if payload is None:
            checkpoint = self.initial(integration_id)
            logger.info(
                f"[{integration_id}] No checkpoint found, starting from "
                f"{checkpoint.last_processed_timestamp.isoformat()}",
                extra={"integration_id": integration_id},
            )
            return checkpoint

        try:
            return Checkpoint.from_json(payload)
        except ValidationError as e:
            raise CheckpointIOError(
                f"Checkpoint for integration {integration_id} is corrupt: {e}"
            ) from e

    def save_sync(self, checkpoint: Checkpoint) -> Checkpoint:
        updated = checkpoint.stamped(self.clock())
        key = checkpoint_key(updated.integration_id)
        try:
            self.blob_store.put_bytes(key, updated.to_json(), JSON_CONTENT_TYPE)
        except Exception as e:
            raise CheckpointIOError(
                f"Failed to save checkpoint for integration {updated.integration_id}: {e}"
            ) from e
        return updated

    async def load(self, integration_id: str) -> Checkpoint:
        return await run_blocking(self.load_sync, integration_id)

    async def save(self, checkpoint: Checkpoint) -> Checkpoint:
        return await run_blocking(self.save_sync, checkpoint)
