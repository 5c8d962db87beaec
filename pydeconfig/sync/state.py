"""Persisted head records for local directories.

A head record remembers which workspace and branch a local directory was
cloned from, so later ``push``, ``watch`` and ``sync`` runs in the same
directory do not need the branch repeated on the command line.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class HeadRecord:
    """The branch session bound to a local directory."""

    workspace: str
    """Workspace slug"""

    branch: str
    """Branch the directory tracks"""

    path: str
    """Absolute local directory path"""

    path_filter: Optional[str] = None
    """Remote path prefix the directory mirrors, if any"""

    local: bool = False
    """Whether the record targets the local development server"""

    updated_at: Optional[str] = None
    """ISO timestamp of the last save"""

    def to_dict(self) -> dict[str, Any]:
        """Convert record to dictionary for JSON serialization."""
        return {
            "workspace": self.workspace,
            "branch": self.branch,
            "path": self.path,
            "pathFilter": self.path_filter,
            "local": self.local,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HeadRecord":
        """Create HeadRecord from dictionary."""
        return cls(
            workspace=data["workspace"],
            branch=data["branch"],
            path=data["path"],
            path_filter=data.get("pathFilter"),
            local=bool(data.get("local", False)),
            updated_at=data.get("updatedAt"),
        )


class HeadStateManager:
    """Stores head records as JSON files keyed by a hash of the local path."""

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize state manager.

        Args:
            state_dir: Directory to store head files. Defaults to
                      ~/.config/pydeconfig/heads/
        """
        if state_dir is None:
            state_dir = Path.home() / ".config" / "pydeconfig" / "heads"
        self.state_dir = state_dir

    def _get_state_file(self, local_path: Path) -> Path:
        local_abs = str(Path(local_path).resolve())
        key = hashlib.sha256(local_abs.encode()).hexdigest()[:16]
        return self.state_dir / f"{key}.json"

    def load(self, local_path: Path) -> Optional[HeadRecord]:
        """Load the head record for a directory.

        Returns:
            HeadRecord if found and readable, None otherwise
        """
        state_file = self._get_state_file(local_path)

        if not state_file.exists():
            logger.debug(f"No head record found at {state_file}")
            return None

        try:
            with open(state_file, encoding="utf-8") as f:
                data = json.load(f)
            record = HeadRecord.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load head record {state_file}: {e}")
            return None

        logger.debug(f"Loaded head record {record.workspace}/{record.branch}")
        return record

    def save(self, record: HeadRecord) -> Path:
        """Save a head record, replacing any previous one for the directory.

        Returns:
            Path of the written file
        """
        record.path = str(Path(record.path).resolve())
        record.updated_at = datetime.now().isoformat()

        self.state_dir.mkdir(parents=True, exist_ok=True)
        state_file = self._get_state_file(Path(record.path))
        with open(state_file, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, indent=2)
        logger.debug(f"Saved head record for {record.path} to {state_file}")
        return state_file

    def clear(self, local_path: Path) -> bool:
        """Remove the head record for a directory.

        Returns:
            True if a record was removed, False if none existed
        """
        state_file = self._get_state_file(local_path)

        if state_file.exists():
            state_file.unlink()
            logger.debug(f"Cleared head record at {state_file}")
            return True
        return False
