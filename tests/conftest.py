"""Shared fixtures: an in-memory remote store with a monotonic change log."""

import asyncio
import hashlib
from typing import Any, Optional

import pytest

from pydeconfig.exceptions import (
    DeconfigNotFoundError,
    DeconfigRemoteError,
    DeconfigTransportError,
)
from pydeconfig.models import (
    ChangeType,
    FileRecord,
    ListFilesResult,
    WatchEvent,
    WriteAck,
)


class FakeRemoteStore:
    """In-memory RemoteStore.

    Every write or delete advances a per-store ``ctime`` clock and patch
    counter and appends a change to the log that ``subscribe`` replays.
    A subscription ends once it has replayed the log.
    """

    workspace = "acme/site"

    def __init__(self) -> None:
        self.branches: dict[str, dict[str, FileRecord]] = {}
        self.contents: dict[tuple[str, str], bytes] = {}
        self.log: list[tuple[str, WatchEvent]] = []
        self.clock = 0
        self.patch_id = 0

        self.write_calls: list[tuple[str, str]] = []
        self.read_calls: list[tuple[str, str]] = []
        self.subscribe_calls: list[Optional[int]] = []

        self.fail_writes: set[str] = set()
        self.fail_reads: set[str] = set()
        # Raise a transport error after this many events, once
        self.drop_stream_after: Optional[int] = None
        # Replay every event from the start, ignoring from_ctime, once
        self.replay_all_once = False

    async def __aenter__(self) -> "FakeRemoteStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    def _record(
        self, branch: str, change: ChangeType, path: str, advance: bool = True
    ) -> int:
        if advance:
            self.clock += 1
            self.patch_id += 1
        self.log.append(
            (
                branch,
                WatchEvent(
                    type=change,
                    path=path,
                    ctime=self.clock,
                    patch_id=self.patch_id,
                    metadata={"ctime": self.clock},
                ),
            )
        )
        return self.clock

    def put(
        self, branch: str, path: str, content: bytes, advance: bool = True
    ) -> None:
        """Seed a file (recorded in the log like a normal write)."""
        files = self.branches.setdefault(branch, {})
        change = ChangeType.MODIFY if path in files else ChangeType.ADD
        ctime = self._record(branch, change, path, advance)
        files[path] = FileRecord(
            path=path,
            address=hashlib.sha256(content).hexdigest(),
            size=len(content),
            mtime=ctime,
            ctime=ctime,
        )
        self.contents[(branch, path)] = content

    def put_patch(self, branch: str, files: dict[str, bytes]) -> None:
        """Seed several files as one patch sharing a ctime and patchId."""
        for index, (path, content) in enumerate(files.items()):
            self.put(branch, path, content, advance=index == 0)

    async def list_files(
        self, branch: str, prefix: Optional[str] = None
    ) -> ListFilesResult:
        files = {
            path: record
            for path, record in self.branches.get(branch, {}).items()
            if prefix is None or path.startswith(prefix)
        }
        return ListFilesResult(files=files, count=len(files))

    async def read_file(self, branch: str, path: str) -> bytes:
        self.read_calls.append((branch, path))
        await asyncio.sleep(0)
        if path in self.fail_reads:
            raise DeconfigRemoteError(f"Cannot read {path}")
        try:
            return self.contents[(branch, path)]
        except KeyError:
            raise DeconfigNotFoundError(f"File not found: {path}") from None

    async def write_file(
        self,
        branch: str,
        path: str,
        content: bytes,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WriteAck:
        self.write_calls.append((branch, path))
        await asyncio.sleep(0)
        if path in self.fail_writes:
            raise DeconfigRemoteError(f"Cannot write {path}")
        self.put(branch, path, content)
        return WriteAck()

    async def delete_file(self, branch: str, path: str) -> bool:
        files = self.branches.get(branch, {})
        if path not in files:
            return False
        del files[path]
        del self.contents[(branch, path)]
        self._record(branch, ChangeType.DELETE, path)
        return True

    async def subscribe(
        self,
        branch: str,
        path_filter: Optional[str] = None,
        from_ctime: Optional[int] = None,
    ):
        self.subscribe_calls.append(from_ctime)
        start = from_ctime if from_ctime is not None else 1
        if self.replay_all_once:
            self.replay_all_once = False
            start = 1

        delivered = 0
        for event_branch, event in list(self.log):
            if event_branch != branch or event.ctime < start:
                continue
            if path_filter and not event.path.startswith(path_filter):
                continue
            drop_at = self.drop_stream_after
            if drop_at is not None and delivered >= drop_at:
                self.drop_stream_after = None
                raise DeconfigTransportError("connection reset")
            await asyncio.sleep(0)
            delivered += 1
            yield WatchEvent(
                type=event.type,
                path=event.path,
                ctime=event.ctime,
                patch_id=event.patch_id,
                metadata=event.metadata,
            )


@pytest.fixture
def store():
    """Provide an empty in-memory remote store."""
    return FakeRemoteStore()


@pytest.fixture
def sample_tree(tmp_path):
    """Create a local tree with two pushable files and one ignored file."""
    root = tmp_path / "project"
    (root / "sub").mkdir(parents=True)
    (root / "node_modules").mkdir()
    (root / "a.txt").write_bytes(b"0123456789")
    (root / "sub" / "b.txt").write_bytes(b"hello")
    (root / "node_modules" / "ignored.js").write_bytes(b"module.exports = 1")
    return root
