"""Utility functions for pydeconfig."""

from pathlib import Path, PurePosixPath
from typing import Optional

from .exceptions import DeconfigValidationError

# =============================================================================
# Remote path utilities
# =============================================================================


def to_remote_path(relative_path: str) -> str:
    """Convert a root-relative local path to a remote path.

    Args:
        relative_path: Path relative to the local root (either separator)

    Returns:
        Remote path with a leading slash and forward slashes

    Examples:
        >>> to_remote_path("sub/b.txt")
        '/sub/b.txt'
        >>> to_remote_path("sub\\\\b.txt")
        '/sub/b.txt'
    """
    return "/" + relative_path.replace("\\", "/").lstrip("/")


def local_to_remote_path(local_root: Path, file_path: Path) -> Optional[str]:
    """Compute the remote path for a file under ``local_root``.

    Returns:
        Remote path, or None if the file is outside the root
    """
    try:
        relative = Path(file_path).resolve().relative_to(Path(local_root).resolve())
    except ValueError:
        return None
    if not relative.parts:
        return None
    return to_remote_path(relative.as_posix())


def remote_to_local_path(local_root: Path, remote_path: str) -> Path:
    """Map a remote path onto the local tree.

    The leading separator is stripped and the rest is joined with
    ``local_root``.

    Raises:
        DeconfigValidationError: If the path is empty or escapes the root
    """
    stripped = remote_path.replace("\\", "/").lstrip("/")
    parts = PurePosixPath(stripped).parts
    if not parts or any(part == ".." for part in parts):
        raise DeconfigValidationError(f"Invalid remote path: {remote_path!r}")
    return Path(local_root).joinpath(*parts)


def normalize_path_filter(path_filter: Optional[str]) -> Optional[str]:
    """Normalize a path filter to the remote form (leading slash).

    Examples:
        >>> normalize_path_filter("docs")
        '/docs'
        >>> normalize_path_filter(None) is None
        True
    """
    if path_filter is None or path_filter == "":
        return None
    if "\x00" in path_filter:
        raise DeconfigValidationError(f"Invalid path filter: {path_filter!r}")
    return to_remote_path(path_filter)


def matches_path_filter(remote_path: str, path_filter: Optional[str]) -> bool:
    """Check whether a remote path falls under a path filter (prefix match)."""
    return path_filter is None or remote_path.startswith(path_filter)


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"
