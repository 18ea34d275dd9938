"""BizArchive - SQL Checkpoint Store.

Alternative backend for deployments that keep checkpoints in a database
instead of the checkpoint bucket. One row per integration.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel

from bizarchive.core.blocking import run_blocking
from bizarchive.core.errors import CheckpointIOError
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import utcnow
from bizarchive.database import init_db
from bizarchive.models.checkpoint import Checkpoint
from bizarchive.storage.checkpoints import default_checkpoint_factory

logger = get_logger("storage.sql_checkpoints")


class CheckpointRecord(SQLModel, table=True):
    """Persisted checkpoint row."""

    __tablename__ = "checkpoints"

    integration_id: str = Field(primary_key=True)
    last_processed_timestamp: datetime
    updated_at: datetime = Field(default_factory=utcnow)


class SqlCheckpointStore:
    def __init__(
        self,
        engine: Engine,
        initial: Optional[Callable[[str], Checkpoint]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.initial = initial or default_checkpoint_factory(clock=clock)
        self.clock = clock
        init_db(engine)

    def load_sync(self, integration_id: str) -> Checkpoint:
        try:
            with Session(self.engine) as session:
                row = session.get(CheckpointRecord, integration_id)
        except SQLAlchemyError as e:
            raise CheckpointIOError(
                f"Failed to load checkpoint for integration {integration_id}: {e}"
            ) from e

        if row is None:
            return self.initial(integration_id)
        return Checkpoint(
            integration_id=row.integration_id,
            last_processed_timestamp=row.last_processed_timestamp,
            updated_at=row.updated_at,
        )

    def save_sync(self, checkpoint: Checkpoint) -> Checkpoint:
        updated = checkpoint.stamped(self.clock())
        try:
            with Session(self.engine) as session:
                session.merge(
                    CheckpointRecord(
                        integration_id=updated.integration_id,
                        last_processed_timestamp=updated.last_processed_timestamp,
                        updated_at=updated.updated_at,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise CheckpointIOError(
                f"Failed to save checkpoint for integration {updated.integration_id}: {e}"
            ) from e
        return updated

    async def load(self, integration_id: str) -> Checkpoint:
        return await run_blocking(self.load_sync, integration_id)

    async def save(self, checkpoint: Checkpoint) -> Checkpoint:
        return await run_blocking(self.save_sync, checkpoint)
