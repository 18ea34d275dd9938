"""BizArchive - Archive Part Model."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel


class ArchivePart(BaseModel):
    """One sealed ZIP container staged on local disk, waiting for upload.

    ``byte_size`` is the uncompressed JSONL payload size, which is what the
    roll-over threshold is measured against.
    """

    integration_id: str
    window_start: datetime
    part_index: int
    path: Path
    byte_size: int = 0
    record_count: int = 0
    compressed_size: int = 0

    @property
    def file_name(self) -> str:
        return self.path.name
