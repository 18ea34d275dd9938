"""BizArchive - Storage Verification.

Optional startup check that both buckets are writable and listable with the
configured credentials. Writes under a dedicated ``verify-integration`` id so
real checkpoints are never touched.
"""

import io
import zipfile
from datetime import datetime
from typing import Callable, Dict, List

from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import floor_hour, utcnow
from bizarchive.models.archive import ArchivePart
from bizarchive.models.checkpoint import Checkpoint
from bizarchive.storage.checkpoints import CHECKPOINT_PREFIX, JSON_CONTENT_TYPE, checkpoint_key
from bizarchive.storage.uploader import ARCHIVE_PREFIX, ZIP_CONTENT_TYPE, archive_key

logger = get_logger("storage.verify")

VERIFY_INTEGRATION_ID = "verify-integration"


def _test_zip(now: datetime) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("verify.txt", f"sox verify {now.isoformat()}")
    return buffer.getvalue()


def verify_storage(
    archive_store,
    checkpoint_blob_store,
    clock: Callable[[], datetime] = utcnow,
    limit: int = 10,
) -> Dict[str, List[str]]:
    """Upload a test archive and checkpoint, then list recent keys of both buckets."""
    now = clock()
    name = f"sox-verify-{now.strftime('%Y%m%d%H%M%S')}.zip"
    part = ArchivePart(
        integration_id=VERIFY_INTEGRATION_ID,
        window_start=floor_hour(now),
        part_index=1,
        path=name,
    )
    key = archive_key(part)
    archive_store.put_bytes(key, _test_zip(now), ZIP_CONTENT_TYPE)
    logger.info(f"Uploaded test archive: {key}")

    checkpoint = Checkpoint(
        integration_id=VERIFY_INTEGRATION_ID,
        last_processed_timestamp=now,
        updated_at=now,
    )
    checkpoint_blob_store.put_bytes(
        checkpoint_key(VERIFY_INTEGRATION_ID), checkpoint.to_json(), JSON_CONTENT_TYPE
    )
    logger.info(f"Uploaded test checkpoint for integration={VERIFY_INTEGRATION_ID}")

    recent = {
        "archives": archive_store.list_recent(f"{ARCHIVE_PREFIX}/", limit),
        "checkpoints": checkpoint_blob_store.list_recent(f"{CHECKPOINT_PREFIX}/", limit),
    }
    for label, keys in recent.items():
        logger.info(f"Recent {label}: {', '.join(keys) if keys else '(none)'}")
    return recent
