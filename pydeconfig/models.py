"""Data models for DECONFIG API responses."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .exceptions import DeconfigProtocolError


class ChangeType(str, Enum):
    """Kind of change carried by a watch event."""

    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"

    @classmethod
    def from_wire(cls, value: Any) -> "ChangeType":
        """Parse the server's spelling ("added", "modified", "deleted")."""
        aliases = {
            "add": cls.ADD,
            "added": cls.ADD,
            "modify": cls.MODIFY,
            "modified": cls.MODIFY,
            "delete": cls.DELETE,
            "deleted": cls.DELETE,
        }
        try:
            return aliases[str(value).lower()]
        except KeyError:
            raise DeconfigProtocolError(f"Unknown change type: {value!r}") from None


@dataclass(frozen=True)
class FileRecord:
    """Read-only copy of a file's remote metadata."""

    path: str
    address: str
    metadata: dict[str, Any] = field(default_factory=dict)
    size: int = 0
    mtime: int = 0
    ctime: int = 0

    @classmethod
    def from_api(cls, path: str, data: dict[str, Any]) -> "FileRecord":
        if not isinstance(data, dict):
            raise DeconfigProtocolError(f"Invalid file record for {path}: {data!r}")
        return cls(
            path=path,
            address=str(data.get("address", "")),
            metadata=dict(data.get("metadata") or {}),
            size=int(data.get("sizeInBytes", 0) or 0),
            mtime=int(data.get("mtime", 0) or 0),
            ctime=int(data.get("ctime", 0) or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "address": self.address,
            "metadata": self.metadata,
            "sizeInBytes": self.size,
            "mtime": self.mtime,
            "ctime": self.ctime,
        }


@dataclass
class ListFilesResult:
    """Result of LIST_FILES: records keyed by path plus the server count."""

    files: dict[str, FileRecord]
    count: int

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ListFilesResult":
        raw_files = data.get("files")
        if not isinstance(raw_files, dict):
            raise DeconfigProtocolError("LIST_FILES response has no 'files' map")
        files = {
            path: FileRecord.from_api(path, meta) for path, meta in raw_files.items()
        }
        return cls(files=files, count=int(data.get("count", len(files))))

    def __len__(self) -> int:
        return len(self.files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": {path: rec.to_dict() for path, rec in self.files.items()},
            "count": self.count,
        }


@dataclass(frozen=True)
class WriteAck:
    """Acknowledgement of a PUT_FILE call."""

    conflict: bool = False


@dataclass
class WatchEvent:
    """One remote change delivered by a watch subscription."""

    type: ChangeType
    path: str
    ctime: int
    patch_id: int
    metadata: Optional[dict[str, Any]] = None
    content: Optional[bytes] = None

    @classmethod
    def from_api(cls, data: Any) -> "WatchEvent":
        """Build an event from a decoded server-sent event payload.

        ``ctime`` is the patch clock: the top-level ``ctime`` field, then
        ``timestamp``, then ``metadata.ctime`` for servers that send neither.
        Every event of one patch carries the same value.

        Raises:
            DeconfigProtocolError: If required fields are missing
        """
        if not isinstance(data, dict):
            raise DeconfigProtocolError(f"Watch event is not an object: {data!r}")

        path = data.get("path")
        if not isinstance(path, str) or not path:
            raise DeconfigProtocolError(f"Watch event has no path: {data!r}")

        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise DeconfigProtocolError(f"Watch event metadata is invalid: {data!r}")

        ctime = data.get("ctime")
        if ctime is None:
            ctime = data.get("timestamp")
        if ctime is None and metadata:
            ctime = metadata.get("ctime")

        try:
            return cls(
                type=ChangeType.from_wire(data.get("type")),
                path=path,
                ctime=int(ctime),
                patch_id=int(data.get("patchId", 0)),
                metadata=metadata,
            )
        except (TypeError, ValueError) as e:
            raise DeconfigProtocolError(f"Malformed watch event {data!r}: {e}") from e

    @property
    def is_deletion(self) -> bool:
        return self.type is ChangeType.DELETE

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "path": self.path,
            "ctime": self.ctime,
            "patchId": self.patch_id,
        }
        if self.metadata is not None:
            result["metadata"] = self.metadata
        if self.content is not None:
            result["size"] = len(self.content)
        return result
