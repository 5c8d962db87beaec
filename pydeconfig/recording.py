"""Call recording for remote store operations.

``RecordingRemoteStore`` wraps any :class:`~pydeconfig.api.RemoteStore` and
forwards each operation explicitly, keeping a bounded history of what was
called, with which arguments, and how it ended.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Optional

from .api import RemoteStore
from .models import ListFilesResult, WatchEvent, WriteAck

logger = logging.getLogger(__name__)


@dataclass
class CallRecord:
    """A single forwarded call."""

    operation: str
    arguments: dict[str, Any]
    timestamp: float = field(default_factory=time.time)
    result: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class RecordingRemoteStore:
    """RemoteStore decorator that records every call."""

    def __init__(self, inner: RemoteStore, max_records: int = 1000):
        self.inner = inner
        self._records: deque[CallRecord] = deque(maxlen=max_records)

    @property
    def records(self) -> list[CallRecord]:
        return list(self._records)

    def clear(self) -> None:
        self._records.clear()

    def _start(self, operation: str, **arguments: Any) -> CallRecord:
        record = CallRecord(operation=operation, arguments=arguments)
        self._records.append(record)
        return record

    def _finish(
        self,
        record: CallRecord,
        started: float,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        record.duration = time.monotonic() - started
        record.result = result
        record.error = error
        if error is None:
            logger.debug(
                f"{record.operation}({record.arguments}) -> {result!r} "
                f"in {record.duration * 1000:.0f}ms"
            )
        else:
            logger.debug(f"{record.operation}({record.arguments}) failed: {error}")

    async def list_files(
        self, branch: str, prefix: Optional[str] = None
    ) -> ListFilesResult:
        record = self._start("list_files", branch=branch, prefix=prefix)
        started = time.monotonic()
        try:
            result = await self.inner.list_files(branch, prefix)
        except Exception as e:
            self._finish(record, started, error=e)
            raise
        self._finish(record, started, result={"count": result.count})
        return result

    async def read_file(self, branch: str, path: str) -> bytes:
        record = self._start("read_file", branch=branch, path=path)
        started = time.monotonic()
        try:
            content = await self.inner.read_file(branch, path)
        except Exception as e:
            self._finish(record, started, error=e)
            raise
        self._finish(record, started, result={"size": len(content)})
        return content

    async def write_file(
        self,
        branch: str,
        path: str,
        content: bytes,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WriteAck:
        record = self._start(
            "write_file", branch=branch, path=path, size=len(content), metadata=metadata
        )
        started = time.monotonic()
        try:
            ack = await self.inner.write_file(branch, path, content, metadata)
        except Exception as e:
            self._finish(record, started, error=e)
            raise
        self._finish(record, started, result=ack)
        return ack

    async def delete_file(self, branch: str, path: str) -> bool:
        record = self._start("delete_file", branch=branch, path=path)
        started = time.monotonic()
        try:
            deleted = await self.inner.delete_file(branch, path)
        except Exception as e:
            self._finish(record, started, error=e)
            raise
        self._finish(record, started, result={"deleted": deleted})
        return deleted

    async def subscribe(
        self,
        branch: str,
        path_filter: Optional[str] = None,
        from_ctime: Optional[int] = None,
    ) -> AsyncIterator[WatchEvent]:
        """Forward a subscription, recording its lifetime and event count."""
        record = self._start(
            "subscribe", branch=branch, path_filter=path_filter, from_ctime=from_ctime
        )
        started = time.monotonic()
        delivered = 0
        error: Optional[BaseException] = None
        try:
            async for event in self.inner.subscribe(branch, path_filter, from_ctime):
                delivered += 1
                yield event
        except Exception as e:
            error = e
            raise
        finally:
            self._finish(record, started, result={"events": delivered}, error=error)
