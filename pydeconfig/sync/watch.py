"""Resumable subscription to remote branch changes."""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from ..api import RemoteStore
from ..config import (
    DEFAULT_FROM_CTIME,
    DEFAULT_RECONNECT_DELAY,
    MAX_RECONNECT_DELAY,
)
from ..exceptions import (
    DeconfigAuthenticationError,
    DeconfigError,
    DeconfigTransportError,
)
from ..models import WatchEvent
from ..utils import normalize_path_filter, remote_to_local_path

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class WatchEngine:
    """Delivers remote change events in order and survives dropped streams.

    The engine tracks the ``ctime`` of the last delivered event. After a
    transport failure it resubscribes from that cursor plus one, so nothing
    already applied is requested again. All files of one patch share a
    ``ctime``, so events at the cursor are still delivered unless the same
    ``(patchId, path)`` was already seen there. Older events the server
    resends are dropped.

    One instance serves one subscription at a time.
    """

    def __init__(
        self,
        store: RemoteStore,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_delay: float = MAX_RECONNECT_DELAY,
        fetch_content: bool = False,
    ):
        """Initialize watch engine.

        Args:
            store: Remote store client
            reconnect_delay: Base delay before the first reconnect attempt
            max_reconnect_delay: Upper bound for the reconnect delay
            fetch_content: Read file content for add/modify events
        """
        self.store = store
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.fetch_content = fetch_content

        self.state = WatchState.IDLE
        self.cursor: Optional[int] = None
        self.reconnects = 0

    def _backoff(self, attempt: int) -> float:
        return min(self.reconnect_delay * (2**attempt), self.max_reconnect_delay)

    async def events(
        self,
        branch: str,
        path_filter: Optional[str] = None,
        from_ctime: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[WatchEvent]:
        """Yield change events until cancelled or the source ends.

        Args:
            branch: Branch to watch
            path_filter: Only report paths starting with this prefix
            from_ctime: First ctime to request (default: start of history)
            cancel_event: Setting this event stops the watch

        Yields:
            WatchEvent objects with strictly increasing ``ctime``

        Raises:
            DeconfigProtocolError: If the stream carries a malformed event
            DeconfigAuthenticationError: If credentials are rejected
        """
        path_filter = normalize_path_filter(path_filter)
        cancel_event = cancel_event or asyncio.Event()
        attempt = 0
        # (patchId, path) of the events delivered at the current cursor
        seen_at_cursor: set[tuple[int, str]] = set()

        try:
            while not cancel_event.is_set():
                request_from = (
                    self.cursor + 1
                    if self.cursor is not None
                    else (from_ctime if from_ctime is not None else DEFAULT_FROM_CTIME)
                )
                logger.info(f"Watching {branch} from ctime {request_from}")
                stream = self.store.subscribe(branch, path_filter, request_from)
                self.state = WatchState.SUBSCRIBED

                try:
                    while True:
                        event = await self._next_or_cancel(stream, cancel_event)
                        if event is None:
                            return
                        attempt = 0
                        key = (event.patch_id, event.path)
                        if self.cursor is not None and (
                            event.ctime < self.cursor
                            or (event.ctime == self.cursor and key in seen_at_cursor)
                        ):
                            logger.debug(
                                f"Dropping already applied event {event.path} "
                                f"(ctime {event.ctime}, cursor {self.cursor})"
                            )
                            continue
                        if self.fetch_content and not event.is_deletion:
                            await self._load_content(branch, event)
                            if cancel_event.is_set():
                                return
                        if self.cursor is None or event.ctime > self.cursor:
                            seen_at_cursor = set()
                        seen_at_cursor.add(key)
                        self.cursor = event.ctime
                        yield event
                        if cancel_event.is_set():
                            return
                except DeconfigTransportError as e:
                    self.state = WatchState.RECONNECTING
                    self.reconnects += 1
                    delay = self._backoff(attempt)
                    attempt += 1
                    logger.warning(
                        f"Watch on {branch} interrupted ({e}), "
                        f"reconnecting in {delay:.1f}s"
                    )
                    try:
                        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                finally:
                    await _close_stream(stream)
        finally:
            self.state = WatchState.CLOSED
            logger.info(f"Watch on {branch} closed at cursor {self.cursor}")

    async def watch(
        self,
        branch: str,
        on_event: Callable[[WatchEvent], Any],
        path_filter: Optional[str] = None,
        from_ctime: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Run the watch loop, invoking ``on_event`` for every event.

        ``on_event`` may be a plain function or a coroutine function. It may
        see the same change more than once across reconnects and must be
        idempotent.

        Returns:
            Number of events delivered
        """
        delivered = 0
        async for event in self.events(
            branch,
            path_filter=path_filter,
            from_ctime=from_ctime,
            cancel_event=cancel_event,
        ):
            result = on_event(event)
            if inspect.isawaitable(result):
                await result
            delivered += 1
        return delivered

    @staticmethod
    async def _next_or_cancel(
        stream: AsyncIterator[WatchEvent], cancel_event: asyncio.Event
    ) -> Optional[WatchEvent]:
        """Wait for the next event, or None on cancellation or end of stream."""
        if cancel_event.is_set():
            return None

        next_task = asyncio.ensure_future(stream.__anext__())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait(
                {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (next_task, cancel_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(next_task, cancel_task, return_exceptions=True)

        if cancel_event.is_set():
            return None
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None

    async def _load_content(self, branch: str, event: WatchEvent) -> None:
        if event.content is not None:
            return
        try:
            event.content = await self.store.read_file(branch, event.path)
        except DeconfigAuthenticationError:
            raise
        except DeconfigError as e:
            logger.warning(f"Could not fetch content for {event.path}: {e}")


async def _close_stream(stream: AsyncIterator[WatchEvent]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as e:
        # aclose() on a generator that is still running
        logger.debug(f"Could not close watch stream: {e}")


def apply_event_to_directory(event: WatchEvent, local_root: Path) -> bool:
    """Mirror one event into a local directory.

    Writes the content on add/modify and removes the file on delete.
    Applying the same event twice leaves the same result.

    Returns:
        True if the local tree was changed or already matched the event,
        False if an add/modify event carried no content

    Raises:
        DeconfigValidationError: If the event path escapes ``local_root``
    """
    local_path = remote_to_local_path(local_root, event.path)

    if event.is_deletion:
        local_path.unlink(missing_ok=True)
        logger.debug(f"Removed {local_path}")
        return True

    if event.content is None:
        logger.debug(f"Skipping {event.path}: event has no content")
        return False

    local_path.parent.mkdir(parents=True, exist_ok=True)
    local_path.write_bytes(event.content)
    logger.debug(f"Wrote {local_path} ({len(event.content)} bytes)")
    return True
