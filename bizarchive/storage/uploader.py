"""BizArchive - Archive Uploader.

Object key layout (partitioned by the window start hour, UTC)::

    bizevents/integration=<id>/year=YYYY/month=MM/day=DD/hour=HH/<staging file name>
"""

from bizarchive.core.errors import ArchiveIOError, UploadError
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import ensure_utc
from bizarchive.models.archive import ArchivePart

logger = get_logger("storage.uploader")

ARCHIVE_PREFIX = "bizevents"
ZIP_CONTENT_TYPE = "application/zip"


def archive_key(part: ArchivePart, prefix: str = ARCHIVE_PREFIX) -> str:
    ts = ensure_utc(part.window_start)
    return (
        f"{prefix}/integration={part.integration_id}/"
        f"year={ts.year}/month={ts.month:02d}/day={ts.day:02d}/hour={ts.hour:02d}/"
        f"{part.file_name}"
    )


class ArchiveUploader:
    """Puts sealed archive parts into the data bucket."""

    def __init__(self, blob_store, prefix: str = ARCHIVE_PREFIX):
        self.blob_store = blob_store
        self.prefix = prefix

    def upload(self, part: ArchivePart) -> str:
        if not part.path.exists():
            raise ArchiveIOError(f"Archive part {part.path} does not exist")
        key = archive_key(part, self.prefix)
        try:
            self.blob_store.put_file(key, part.path, ZIP_CONTENT_TYPE)
        except Exception as e:
            raise UploadError(f"Upload of {key} failed: {e}") from e
        logger.info(
            f"[{part.integration_id}] Uploaded part {part.part_index} to {key}",
            extra={
                "integration_id": part.integration_id,
                "part_index": part.part_index,
                "byte_size": part.byte_size,
            },
        )
        return key

