"""Filesystem blob store for original uploaded documents."""

import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from proclog.domain.ports import BlobStoragePort, Result, StorageError
from proclog.infrastructure.config_manager import BlobStorageConfig

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_component(value: str, fallback: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned or fallback


class LocalBlobStore(BlobStoragePort):
    """Stores documents under ``<root>/<owner>/<timestamp>-<id>-<filename>``.

    Owner ids and filenames are sanitised so neither can escape the root.
    """

    def __init__(self, root_dir: Optional[str] = None, config: Optional[BlobStorageConfig] = None):
        self.root = Path(root_dir or (config.root_dir if config else "data/uploads"))

    def store(self, owner_id: str, filename: str, data: bytes) -> Result[str]:
        try:
            owner_dir = self.root / _safe_component(owner_id, "owner")
            owner_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
            name = f"{stamp}-{uuid.uuid4().hex[:8]}-{_safe_component(filename, 'document.pdf')}"
            path = owner_dir / name
            path.write_bytes(data)
            logger.info(f"Retained document ({len(data)} bytes) as {name}")
            return Result.success_result(str(path))
        except OSError as e:
            error_msg = f"Failed to store document: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="store_blob", details={"filename": filename}),
                error_type="StorageError"
            )
