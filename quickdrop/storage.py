import logging
import os
import time
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

from .errors import StorageError

logger = logging.getLogger("quickdrop.storage")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
PARTIAL_SUFFIX = ".part"
STALE_PARTIAL_AGE_SECONDS = 24 * 3600


class UnsafeStoragePathError(StorageError):
    """Raised when a derived path would escape the upload root."""

    def __init__(self, message: str = "Invalid file path") -> None:
        super().__init__(message)


class StorageWriter:
    """Streams bytes into a temporary sibling of *path*.

    The final path only appears once :meth:`finalize` renames the temporary
    file into place, so readers never observe a half-written file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.temp_path = path.with_name(f"{path.name}{PARTIAL_SUFFIX}")
        self.bytes_written = 0
        self.closed = False
        fd = os.open(self.temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        self._handle: Optional[BinaryIO] = os.fdopen(fd, "wb")

    def write(self, data: bytes) -> int:
        if self._handle is None:
            raise StorageError("Writer is closed")
        # Blocks until the data is handed to the OS; the caller does not read
        # more from its source in the meantime.
        self._handle.write(data)
        self.bytes_written += len(data)
        return len(data)

    def finalize(self) -> int:
        if self._handle is None:
            raise StorageError("Writer is closed")
        handle, self._handle = self._handle, None
        try:
            handle.flush()
            os.fsync(handle.fileno())
        finally:
            handle.close()
        os.replace(self.temp_path, self.path)
        self.closed = True
        return self.bytes_written

    def abort(self) -> None:
        """Close the writer and discard anything written so far."""

        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.close()
            except OSError as error:
                logger.warning("writer_close_failed path=%s error=%s", self.temp_path, error)
        self.temp_path.unlink(missing_ok=True)
        self.closed = True


class ContentStorage:
    """Filesystem content store addressed by generated identifiers."""

    def __init__(self, root: Path, chunk_size: int = CHUNK_SIZE_BYTES) -> None:
        self.root = Path(root)
        self.chunk_size = chunk_size

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve_path(self, file_id: str) -> Path:
        """Return the canonical path for *file_id* inside the upload root."""

        root = self.root.resolve()
        candidate = (root / file_id).resolve()
        if candidate.parent != root or candidate == root:
            logger.error("storage_path_rejected file_id=%r root=%s", file_id, root)
            raise UnsafeStoragePathError()
        return candidate

    def open_writer(self, path: Path) -> StorageWriter:
        self.ensure_root()
        try:
            return StorageWriter(Path(path))
        except OSError as error:
            raise StorageError("Failed to open storage writer") from error

    def open_reader(self, path: Path) -> Tuple[BinaryIO, int]:
        """Open *path* for streaming and return the handle with its size.

        The size comes from the open descriptor so it matches the bytes the
        handle will yield even if the path is unlinked concurrently.
        """

        handle = Path(path).open("rb")
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError:
            handle.close()
            raise
        return handle, size

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def delete(self, path: Path) -> bool:
        """Delete *path*; a missing file counts as success."""

        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        return True

    def cleanup_partial_files(self, max_age_seconds: float = STALE_PARTIAL_AGE_SECONDS) -> int:
        """Remove ``.part`` files abandoned by a crashed process."""

        if not self.root.exists():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in self.root.glob(f"*{PARTIAL_SUFFIX}"):
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError as error:
                logger.warning("partial_cleanup_failed path=%s error=%s", entry, error)
        if removed:
            logger.info("partial_cleanup_completed removed=%d", removed)
        return removed
