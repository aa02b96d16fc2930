"""
Managed file directories under the store root.

Entities record a path relative to the root ("images/2024-05-01-Ab3x_Z.jpg"),
never an absolute one, so a store can be moved without rewriting rows.
"""

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath

from .errors import StorageIOError

logger = logging.getLogger(__name__)


class FileStorage:
    """Reads and writes managed files relative to a store root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def resolve(self, storage_path: str) -> Path:
        """
        Absolute location of a stored relative path.

        Raises:
            StorageIOError: If the path is absolute or escapes the root
        """
        relative = PurePosixPath(storage_path.lstrip("/"))
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise StorageIOError(f"Invalid storage path: {storage_path!r}")
        return self.root.joinpath(*relative.parts)

    def write(self, directory: str, filename: str, data: bytes) -> str:
        """
        Store bytes under a managed directory.

        The file appears atomically: it is written to a temporary name and
        renamed into place, so a failure never leaves a partial file.

        Returns:
            The relative storage path

        Raises:
            StorageIOError: If the file cannot be written
        """
        storage_path = f"{directory}/{filename}"
        target = self.resolve(storage_path)
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageIOError(f"Failed to write {storage_path}: {e}") from e
        logger.debug("Wrote %s (%d bytes)", storage_path, len(data))
        return storage_path

    def remove(self, storage_path: str) -> bool:
        """
        Delete a stored file. A file that is already gone is not an error.

        Returns:
            True if a file was removed

        Raises:
            StorageIOError: If the file exists but cannot be removed
        """
        target = self.resolve(storage_path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.debug("Backing file already absent: %s", storage_path)
            return False
        except OSError as e:
            raise StorageIOError(f"Failed to remove {storage_path}: {e}") from e
        logger.info("Deleted file %s", storage_path)
        return True

    def exists(self, storage_path: str) -> bool:
        return self.resolve(storage_path).is_file()
