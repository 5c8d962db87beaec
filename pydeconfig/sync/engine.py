"""Continuous local-to-remote sync driven by filesystem notifications."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from watchfiles import Change, awatch

from ..api import RemoteStore
from ..config import DEFAULT_DEBOUNCE_SECONDS
from ..exceptions import (
    DeconfigAuthenticationError,
    DeconfigError,
    DeconfigValidationError,
)
from ..utils import (
    format_size,
    local_to_remote_path,
    matches_path_filter,
    normalize_path_filter,
)
from .ignore import IGNORE_FILE_NAME, IgnoreFilter
from .push import PushEngine

logger = logging.getLogger(__name__)

ChangeBatch = set[tuple[Change, str]]
ChangeSource = Callable[[Path, asyncio.Event], AsyncIterator[ChangeBatch]]


def watch_directory(
    root: Path, stop_event: asyncio.Event
) -> AsyncIterator[ChangeBatch]:
    """Default change source: recursive notifications from watchfiles."""
    return awatch(root, stop_event=stop_event, recursive=True)


@dataclass
class SyncSession:
    """State of one running sync: the pending debounce timers and uploads.

    Every timer and upload task started for the session is owned here, and
    :meth:`shutdown` releases all of them.
    """

    local_root: Path
    branch: str
    path_filter: Optional[str] = None
    cursor: Optional[int] = None
    pending: dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    uploads: set["asyncio.Task[None]"] = field(default_factory=set)
    stop_event: Optional[asyncio.Event] = None
    error: Optional[DeconfigError] = None

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        """(Re)start the timer for ``key``; the previous one is cancelled."""
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self.pending[key] = loop.call_later(delay, self._fire, key, callback)

    def cancel(self, key: str) -> bool:
        handle = self.pending.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def pending_count(self) -> int:
        return len(self.pending)

    def abort(self, error: DeconfigError) -> None:
        """Record a fatal error and ask the session to stop."""
        if self.error is None:
            self.error = error
        if self.stop_event is not None:
            self.stop_event.set()

    def _fire(self, key: str, callback: Callable[[], Awaitable[None]]) -> None:
        self.pending.pop(key, None)
        task = asyncio.ensure_future(callback())
        self.uploads.add(task)
        task.add_done_callback(self.uploads.discard)

    async def shutdown(self) -> None:
        """Cancel every pending timer and in-flight upload."""
        for handle in self.pending.values():
            handle.cancel()
        self.pending.clear()

        tasks = list(self.uploads)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.uploads.clear()


class SyncEngine:
    """Pushes local edits to a branch as they happen.

    Each changed file is uploaded once its path has been quiet for the
    debounce window. Local deletions are not propagated.
    """

    def __init__(
        self,
        store: RemoteStore,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        change_source: Optional[ChangeSource] = None,
        initial_push: bool = False,
    ):
        """Initialize sync engine.

        Args:
            store: Remote store client
            debounce: Quiet period in seconds before a changed file is pushed
            change_source: Factory for the change notification stream
                (defaults to watchfiles)
            initial_push: Push the whole tree once before watching
        """
        self.store = store
        self.debounce = debounce
        self.change_source = change_source or watch_directory
        self.initial_push = initial_push

        self.session: Optional[SyncSession] = None
        self.ignore_filter: Optional[IgnoreFilter] = None
        self.pushed = 0
        self.failed = 0

    async def sync(
        self,
        local_root: Path,
        branch: str,
        path_filter: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Mirror local edits under ``local_root`` to ``branch`` until cancelled.

        Per-file failures are logged and counted. Rejected credentials stop
        the session.

        Raises:
            DeconfigValidationError: If ``local_root`` is not a directory
            DeconfigAuthenticationError: If the remote rejects the credentials
        """
        local_root = Path(local_root)
        if not local_root.is_dir():
            raise DeconfigValidationError(f"Path is not a directory: {local_root}")
        if not branch:
            raise DeconfigValidationError("Branch name is required")
        local_root = local_root.resolve()

        path_filter = normalize_path_filter(path_filter)
        stop_event = cancel_event or asyncio.Event()
        session = SyncSession(
            local_root=local_root,
            branch=branch,
            path_filter=path_filter,
            stop_event=stop_event,
        )
        self.session = session
        ignore_filter = IgnoreFilter.load(local_root)
        self.ignore_filter = ignore_filter

        if self.initial_push:
            result = await PushEngine(self.store).push(
                local_root,
                branch,
                path_filter=path_filter,
                ignore_filter=ignore_filter,
            )
            self.pushed += result.succeeded
            self.failed += result.failed

        logger.info(f"Syncing {local_root} to {branch}")
        try:
            async for changes in self.change_source(local_root, stop_event):
                for change, raw_path in sorted(changes, key=lambda c: c[1]):
                    path = Path(raw_path)
                    if path.name == IGNORE_FILE_NAME and path.parent == local_root:
                        ignore_filter = self._reload_ignore(local_root, ignore_filter)
                        continue
                    self._handle_change(session, ignore_filter, change, path)
                if stop_event.is_set():
                    break
        finally:
            await session.shutdown()
            logger.info(
                f"Sync of {local_root} stopped: "
                f"{self.pushed} pushed, {self.failed} failed"
            )

        if session.error is not None:
            raise session.error

    def _reload_ignore(self, local_root: Path, current: IgnoreFilter) -> IgnoreFilter:
        """Re-read the pattern file, keeping ``current`` if it is malformed."""
        try:
            reloaded = IgnoreFilter.load(local_root)
        except DeconfigValidationError as e:
            logger.error(f"Keeping previous ignore rules, {IGNORE_FILE_NAME}: {e}")
            return current
        logger.info(f"Reloaded {IGNORE_FILE_NAME}")
        self.ignore_filter = reloaded
        return reloaded

    def _handle_change(
        self,
        session: SyncSession,
        ignore_filter: IgnoreFilter,
        change: Change,
        path: Path,
    ) -> None:
        key = str(path)

        if change == Change.deleted or not path.is_file():
            # Deletions are not propagated; drop a push that is still waiting
            if session.cancel(key):
                logger.debug(f"Dropped pending push of removed file {path}")
            return

        remote_path = local_to_remote_path(session.local_root, path)
        if remote_path is None:
            return
        if not matches_path_filter(remote_path, session.path_filter):
            return
        if ignore_filter.is_ignored(path):
            logger.debug(f"Ignoring change to {remote_path}")
            return

        session.schedule(
            key,
            self.debounce,
            lambda: self._push_one(session, path, remote_path),
        )

    async def _push_one(
        self, session: SyncSession, path: Path, remote_path: str
    ) -> None:
        try:
            content = await asyncio.to_thread(path.read_bytes)
            await self.store.write_file(session.branch, remote_path, content)
        except DeconfigAuthenticationError as e:
            logger.error(f"Authentication failed while pushing {remote_path}: {e}")
            session.abort(e)
            return
        except (DeconfigError, OSError) as e:
            self.failed += 1
            logger.error(f"Failed to push {remote_path}: {e}")
            return
        self.pushed += 1
        logger.info(f"Pushed {remote_path} ({format_size(len(content))})")
