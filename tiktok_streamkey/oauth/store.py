"""Session/token cache for the Streamlabs authorization result.

The cache is a plain JSON object (at minimum ``{"oauth_token": ...}``) so
other tools can read the token directly. Saves merge into the existing
object rather than replacing it. Access is guarded by:
- File locking to prevent torn reads and lost merges
- File permissions (0600), since the file holds a bearer credential
"""

import json
import logging
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl).

        Args:
            filepath: Path to the file to lock
            exclusive: If True, acquire exclusive lock; otherwise shared lock
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                if exclusive:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                else:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers take the exclusive lock too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


TOKEN_FIELD = "oauth_token"


class SessionCacheError(Exception):
    """Error in session cache operations."""

    pass


def has_usable_token(record: dict[str, Any] | None) -> bool:
    """Check whether a cached record carries a token worth reusing."""
    if not record:
        return False
    token = record.get(TOKEN_FIELD)
    return isinstance(token, str) and len(token) > 0


class SessionCache:
    """JSON file cache of the last successful authorization result."""

    def __init__(self, path: Path):
        self.path = path

    def _read(self) -> dict[str, Any]:
        """Read the cache object under a shared lock."""
        if not self.path.exists():
            return {}

        try:
            with _file_lock(self.path, exclusive=False):
                return self._read_unlocked()
        except OSError as e:
            raise SessionCacheError(f"Cannot lock session cache {self.path}: {e}") from e

    def _read_unlocked(self) -> dict[str, Any]:
        """Read the cache object; the caller holds the lock.

        Raises:
            SessionCacheError: If the file is unreadable or not a JSON object
        """
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise SessionCacheError(f"Cannot read session cache {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise SessionCacheError(f"Session cache {self.path} is corrupted: {e}") from e

        if not isinstance(data, dict):
            raise SessionCacheError(
                f"Session cache {self.path} must contain a JSON object, got {type(data).__name__}"
            )
        return data

    def load(self) -> dict[str, Any] | None:
        """Load the cached record.

        Returns:
            The cached record, or None if absent or unreadable
        """
        try:
            data = self._read()
        except SessionCacheError as e:
            logger.warning(f"Failed to load saved tokens: {e}")
            return None

        return data or None

    def get_token(self) -> str | None:
        """Get the cached oauth_token, if any."""
        record = self.load()
        if not has_usable_token(record):
            return None
        return record[TOKEN_FIELD]  # type: ignore[index]

    def save(self, record: dict[str, Any]) -> None:
        """Merge fields into the cached record.

        Keys not present in ``record`` are kept as they are on disk.

        Args:
            record: Fields to write

        Raises:
            SessionCacheError: If the file cannot be written
        """
        try:
            with _file_lock(self.path, exclusive=True):
                try:
                    existing = self._read_unlocked()
                except SessionCacheError as e:
                    logger.warning(f"{e}. Overwriting with the new record.")
                    existing = {}

                existing.update(record)
                self.path.write_text(json.dumps(existing, indent=2), encoding="utf-8")
        except OSError as e:
            raise SessionCacheError(f"Cannot write session cache {self.path}: {e}") from e

        try:
            self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

        logger.debug(f"Saved session cache to {self.path}")

    def clear(self) -> bool:
        """Delete the cached record.

        Returns:
            True if a cache file was removed
        """
        existed = self.path.exists()
        if existed:
            self.path.unlink()
        lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        if lock_path.exists():
            lock_path.unlink()

        if existed:
            logger.info(f"Cleared session cache {self.path}")
        return existed
