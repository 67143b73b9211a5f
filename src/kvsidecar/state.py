"""Local copy of the secret on disk.

Writes are atomic: content goes to a temp file in the target directory,
which is then renamed over the target. A reader sharing the directory sees
either the old file or the new one in full, never a partial write, even if
the sidecar is killed mid-write.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from .config import DEFAULT_FILE_MODE
from .errors import PersistenceError

logger = logging.getLogger(__name__)

TEMP_FILE_PREFIX = ".kvsidecar-"
TEMP_FILE_SUFFIX = ".tmp"


class LocalStateStore:
    """Reads and atomically writes one secret file per target."""

    def read(self, directory: Path, name: str) -> bytes | None:
        """Read the current local copy.

        Returns:
            File content, or None if the file does not exist yet.

        Raises:
            PersistenceError: If the directory is missing or the file is unreadable.
        """
        if not directory.is_dir():
            raise PersistenceError(f"failed to get directory {directory}")

        path = directory / name
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"failed to read {path}: {e}") from e

    def write(
        self,
        directory: Path,
        name: str,
        data: bytes,
        mode: int = DEFAULT_FILE_MODE,
    ) -> Path:
        """Atomically replace ``directory/name`` with ``data``.

        The temp file gets ``mode`` before any content is written, so the
        secret is never readable by other principals, not even briefly.

        Returns:
            Path of the written file.

        Raises:
            PersistenceError: If the write fails. The previous file, if any,
                is left untouched and no temp file remains.
        """
        path = directory / name
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=directory,
                prefix=TEMP_FILE_PREFIX,
                suffix=TEMP_FILE_SUFFIX,
            )
        except OSError as e:
            raise PersistenceError(f"failed to create temp file in {directory}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                os.fchmod(f.fileno(), mode)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise PersistenceError(f"failed to write secret {name} at {directory}: {e}") from e

        logger.debug("Wrote file", extra={"path": str(path), "mode": oct(mode)})
        return path
