"""Batch upload of a local tree to a branch."""

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
from ..utils import format_size, matches_path_filter, normalize_path_filter
from .ignore import IgnoreFilter
from .scanner import DirectoryScanner

logger = logging.getLogger(__name__)


class PushStatus(str, Enum):
    PENDING = "pending"
    PUSHED = "pushed"
    WOULD_PUSH = "would_push"
    FAILED = "failed"


@dataclass
class PushEntry:
    """Outcome for a single file of a push."""

    remote_path: str
    local_path: Path
    size: int
    status: PushStatus = PushStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_path": self.remote_path,
            "local_path": str(self.local_path),
            "size": self.size,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class PushResult:
    """Aggregated push outcome.

    ``attempted`` counts every selected file, including dry-run entries.
    """

    dry_run: bool = False
    entries: list[PushEntry] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.entries)

    @property
    def succeeded(self) -> int:
        return sum(1 for e in self.entries if e.status is PushStatus.PUSHED)

    @property
    def failed(self) -> int:
        return sum(1 for e in self.entries if e.status is PushStatus.FAILED)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "entries": [e.to_dict() for e in self.entries],
        }


class PushEngine:
    """Uploads every non-ignored file under a local root to a branch.

    Files are uploaded unconditionally; remote content is never compared.
    A failing file is logged and counted, and the push moves on.
    """

    def __init__(
        self,
        store: RemoteStore,
        max_workers: int = 1,
        on_entry: Optional[Callable[[PushEntry], None]] = None,
    ):
        """Initialize push engine.

        Args:
            store: Remote store client
            max_workers: Maximum number of uploads in flight (default: 1)
            on_entry: Optional callback invoked when a file's outcome is known
        """
        if max_workers < 1:
            raise DeconfigValidationError("max_workers must be at least 1")
        self.store = store
        self.max_workers = max_workers
        self.on_entry = on_entry

    async def push(
        self,
        local_root: Path,
        branch: str,
        path_filter: Optional[str] = None,
        dry_run: bool = False,
        ignore_filter: Optional[IgnoreFilter] = None,
    ) -> PushResult:
        """Push a local tree to ``branch``.

        Args:
            local_root: Directory to push
            branch: Target branch name
            path_filter: Only push files whose remote path starts with this
            dry_run: Compute the file set without writing anything
            ignore_filter: Filter to apply (loaded from ``local_root`` if omitted)

        Returns:
            PushResult with per-file entries

        Raises:
            DeconfigValidationError: If ``local_root`` is not a directory
            DeconfigAuthenticationError: If credentials are rejected
        """
        local_root = Path(local_root)
        if not local_root.exists():
            raise DeconfigValidationError(
                f"Local directory does not exist: {local_root}"
            )
        if not local_root.is_dir():
            raise DeconfigValidationError(f"Path is not a directory: {local_root}")
        if not branch:
            raise DeconfigValidationError("Branch name is required")

        path_filter = normalize_path_filter(path_filter)
        if ignore_filter is None:
            ignore_filter = IgnoreFilter.load(local_root)
        scanner = DirectoryScanner(ignore_filter)

        result = PushResult(dry_run=dry_run)
        semaphore = asyncio.Semaphore(self.max_workers)
        tasks: list[asyncio.Task[None]] = []

        try:
            for local_file in scanner.walk(local_root):
                remote_path = local_file.remote_path
                if not matches_path_filter(remote_path, path_filter):
                    continue

                entry = PushEntry(
                    remote_path=remote_path,
                    local_path=local_file.path,
                    size=local_file.size,
                )
                result.entries.append(entry)

                if dry_run:
                    entry.status = PushStatus.WOULD_PUSH
                    logger.info(f"Would push {remote_path} ({format_size(entry.size)})")
                    self._notify(entry)
                    continue

                await semaphore.acquire()
                tasks.append(
                    asyncio.create_task(self._upload(entry, branch, semaphore))
                )

            await asyncio.gather(*tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if result.failed:
            logger.warning(
                f"Push to {branch} completed with errors: "
                f"{result.succeeded} succeeded, {result.failed} failed"
            )
        else:
            logger.info(f"Pushed {result.succeeded} file(s) to {branch}")
        return result

    async def _upload(
        self, entry: PushEntry, branch: str, semaphore: asyncio.Semaphore
    ) -> None:
        try:
            content = await asyncio.to_thread(entry.local_path.read_bytes)
            await self.store.write_file(branch, entry.remote_path, content)
            entry.status = PushStatus.PUSHED
            logger.info(f"Pushed {entry.remote_path} ({format_size(len(content))})")
        except DeconfigAuthenticationError:
            raise
        except (DeconfigError, OSError) as e:
            entry.status = PushStatus.FAILED
            entry.error = str(e)
            logger.error(f"Failed to push {entry.remote_path}: {e}")
        finally:
            semaphore.release()
        self._notify(entry)

    def _notify(self, entry: PushEntry) -> None:
        if self.on_entry is not None:
            self.on_entry(entry)
