"""Local directory walking for push and sync operations."""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..exceptions import DeconfigValidationError
from ..utils import to_remote_path
from .ignore import IgnoreFilter

logger = logging.getLogger(__name__)


@dataclass
class LocalFile:
    """Represents a local file with metadata."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes"""

    mtime: float = 0.0
    """Last modification time (Unix timestamp)"""

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> "LocalFile":
        """Create LocalFile from a path.

        Args:
            file_path: Absolute path to the file
            base_path: Base path for calculating relative paths

        Returns:
            LocalFile instance
        """
        stat = file_path.stat()
        # Use as_posix() to ensure forward slashes on all platforms
        relative_path = file_path.relative_to(base_path).as_posix()
        return cls(
            path=file_path,
            relative_path=relative_path,
            size=stat.st_size,
            mtime=stat.st_mtime,
        )

    @property
    def remote_path(self) -> str:
        """Path of this file on the remote branch (``/`` + relative path)."""
        return to_remote_path(self.relative_path)


class DirectoryScanner:
    """Walks a local tree, skipping what the ignore filter excludes.

    Ignored directories are pruned: the walker never descends into them.

    Examples:
        >>> scanner = DirectoryScanner(IgnoreFilter.load(Path("/project")))
        >>> for f in scanner.walk(Path("/project")):
        ...     print(f.remote_path, f.size)
    """

    def __init__(self, ignore_filter: Optional[IgnoreFilter] = None):
        self.ignore_filter = ignore_filter

    def should_ignore(self, path: Path, is_dir: bool = False) -> bool:
        if self.ignore_filter is None:
            return False
        if self.ignore_filter.is_ignored(path, is_dir=is_dir):
            logger.debug(f"Ignoring (from rules): {path}")
            return True
        return False

    def walk(self, root: Path) -> Iterator[LocalFile]:
        """Lazily yield every non-ignored regular file under ``root``.

        Files are yielded depth-first in name order.

        Raises:
            DeconfigValidationError: If ``root`` is not a directory
        """
        root = Path(root).resolve()
        if not root.is_dir():
            raise DeconfigValidationError(f"Path is not a directory: {root}")
        if self.ignore_filter is None:
            self.ignore_filter = IgnoreFilter.load(root)
        yield from self._walk_dir(root, root)

    def _walk_dir(self, directory: Path, base_path: Path) -> Iterator[LocalFile]:
        try:
            items = sorted(directory.iterdir(), key=lambda p: p.name)
        except PermissionError as e:
            logger.warning(f"Permission denied: {e}")
            return

        for item in items:
            is_dir = item.is_dir()
            if self.should_ignore(item, is_dir=is_dir):
                continue

            if is_dir:
                yield from self._walk_dir(item, base_path)
            elif item.is_file():
                try:
                    yield LocalFile.from_path(item, base_path)
                except OSError as e:
                    # Vanished or unreadable between listing and stat
                    logger.debug(f"Skipping {item}: {e}")


def walk_local_tree(
    root: Path, ignore_filter: Optional[IgnoreFilter] = None
) -> Iterator[LocalFile]:
    """Walk ``root`` with ``ignore_filter`` (loaded from ``root`` if omitted)."""
    return DirectoryScanner(ignore_filter).walk(root)
