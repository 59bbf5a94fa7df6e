from pathlib import Path
import logging
import os

from uploadshield.filenames import create_secure_upload_directory, validate_and_sanitize_path
from uploadshield.results import Err

logger = logging.getLogger("uploadshield.storage")


class StorageError(RuntimeError):
    pass


class LocalBlobStore:
    """Final storage for accepted uploads: ``<root>/<owner hash>/<date>/<secure filename>``."""

    def __init__(self, root: str | Path):
        Path(root).mkdir(parents=True, exist_ok=True)
        self.root = Path(root).resolve()

    def put(self, owner_id: str, secure_filename: str, data: bytes) -> Path:
        directory = create_secure_upload_directory(owner_id, self.root)
        if isinstance(directory, Err):
            raise StorageError(directory.reason)

        target = validate_and_sanitize_path(str(directory.value / secure_filename), self.root)
        if isinstance(target, Err):
            raise StorageError(target.reason)

        # O_EXCL: secure filenames are unique, an existing file means something is wrong.
        fd = os.open(target.value, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        logger.info("Stored upload %s (%d bytes)", target.value.relative_to(self.root), len(data))
        return target.value
