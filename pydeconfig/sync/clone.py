"""Download of a branch (or a prefix of it) into a local directory."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from ..api import RemoteStore
from ..exceptions import (
    DeconfigAuthenticationError,
    DeconfigError,
    DeconfigValidationError,
)
from ..models import FileRecord
from ..utils import (
    format_size,
    matches_path_filter,
    normalize_path_filter,
    remote_to_local_path,
)
from .ignore import IgnoreFilter

logger = logging.getLogger(__name__)


class CloneStatus(str, Enum):
    PENDING = "pending"
    WRITTEN = "written"
    WOULD_WRITE = "would_write"
    FAILED = "failed"


@dataclass
class CloneEntry:
    """Outcome for a single remote file."""

    remote_path: str
    local_path: Optional[Path]
    size: int = 0
    status: CloneStatus = CloneStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_path": self.remote_path,
            "local_path": str(self.local_path) if self.local_path else None,
            "size": self.size,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class CloneResult:
    dry_run: bool = False
    listed: int = 0
    entries: list[CloneEntry] = field(default_factory=list)

    @property
    def count(self) -> int:
        """Number of files written (or that would be written on a dry run)."""
        done = (CloneStatus.WRITTEN, CloneStatus.WOULD_WRITE)
        return sum(1 for e in self.entries if e.status in done)

    @property
    def failures(self) -> list[CloneEntry]:
        return [e for e in self.entries if e.status is CloneStatus.FAILED]

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "listed": self.listed,
            "count": self.count,
            "failed": len(self.failures),
            "entries": [e.to_dict() for e in self.entries],
        }


def _write_local(local_path: Path, content: bytes) -> None:
    local_path.parent.mkdir(parents=True, exist_ok=True)
    local_path.write_bytes(content)


class CloneEngine:
    """Lists a branch and writes each file into a local tree."""

    def __init__(
        self,
        store: RemoteStore,
        max_workers: int = 1,
        on_entry: Optional[Callable[[CloneEntry], None]] = None,
    ):
        if max_workers < 1:
            raise DeconfigValidationError("max_workers must be at least 1")
        self.store = store
        self.max_workers = max_workers
        self.on_entry = on_entry

    async def clone(
        self,
        branch: str,
        local_root: Path,
        path_filter: Optional[str] = None,
        dry_run: bool = False,
        respect_ignore: bool = False,
    ) -> CloneResult:
        """Clone ``branch`` into ``local_root``.

        Args:
            branch: Branch to read from
            local_root: Destination directory (created if missing)
            path_filter: Only clone remote paths starting with this prefix
            dry_run: List what would be written without touching disk
            respect_ignore: Skip remote paths excluded by the local ignore rules

        Returns:
            CloneResult with per-file entries

        Raises:
            DeconfigValidationError: If ``local_root`` exists and is not a directory
            DeconfigRemoteError: If the branch cannot be listed
        """
        local_root = Path(local_root)
        if local_root.exists() and not local_root.is_dir():
            raise DeconfigValidationError(f"Path is not a directory: {local_root}")
        if not branch:
            raise DeconfigValidationError("Branch name is required")

        path_filter = normalize_path_filter(path_filter)
        listing = await self.store.list_files(branch, path_filter)
        logger.info(f"Found {listing.count} remote file(s) on {branch}")

        ignore_filter = IgnoreFilter.load(local_root) if respect_ignore else None
        if not dry_run:
            local_root.mkdir(parents=True, exist_ok=True)

        result = CloneResult(dry_run=dry_run, listed=listing.count)
        semaphore = asyncio.Semaphore(self.max_workers)
        tasks: list[asyncio.Task[None]] = []

        try:
            for remote_path in sorted(listing.files):
                record = listing.files[remote_path]
                if not matches_path_filter(remote_path, path_filter):
                    continue
                if ignore_filter is not None and ignore_filter.is_remote_ignored(
                    remote_path
                ):
                    logger.debug(f"Skipping ignored remote file {remote_path}")
                    continue

                entry = CloneEntry(
                    remote_path=remote_path, local_path=None, size=record.size
                )
                result.entries.append(entry)

                try:
                    local_path = remote_to_local_path(local_root, remote_path)
                except DeconfigValidationError as e:
                    self._fail(entry, e)
                    continue
                entry.local_path = local_path

                if dry_run:
                    entry.status = CloneStatus.WOULD_WRITE
                    self._notify(entry)
                    continue

                await semaphore.acquire()
                tasks.append(
                    asyncio.create_task(
                        self._download(entry, local_path, record, branch, semaphore)
                    )
                )

            await asyncio.gather(*tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if result.failures:
            logger.warning(
                f"Clone of {branch} completed with errors: "
                f"{result.count} written, {len(result.failures)} failed"
            )
        else:
            logger.info(
                f"Cloned {result.count} file(s) from {branch} to {local_root}"
            )
        return result

    async def _download(
        self,
        entry: CloneEntry,
        local_path: Path,
        record: FileRecord,
        branch: str,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            content = await self.store.read_file(branch, record.path)
            await asyncio.to_thread(_write_local, local_path, content)
            entry.size = len(content)
            entry.status = CloneStatus.WRITTEN
            logger.info(f"Downloaded {record.path} ({format_size(entry.size)})")
        except DeconfigAuthenticationError:
            raise
        except (DeconfigError, OSError) as e:
            self._fail(entry, e)
            return
        finally:
            semaphore.release()
        self._notify(entry)

    def _fail(self, entry: CloneEntry, error: Exception) -> None:
        entry.status = CloneStatus.FAILED
        entry.error = str(error)
        logger.error(f"Failed to clone {entry.remote_path}: {error}")
        self._notify(entry)

    def _notify(self, entry: CloneEntry) -> None:
        if self.on_entry is not None:
            self.on_entry(entry)
