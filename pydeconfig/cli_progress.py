"""CLI progress display for push and clone operations.

The engines report each file's outcome through an ``on_entry`` callback;
this module turns those callbacks into a Rich progress line.
"""

from typing import Optional, Union

from rich.console import Console
from rich.progress import (
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .sync.clone import CloneEntry, CloneStatus
from .sync.push import PushEntry, PushStatus
from .utils import format_size

TransferEntry = Union[PushEntry, CloneEntry]

_FAILED = (PushStatus.FAILED, CloneStatus.FAILED)


class TransferProgressDisplay:
    """Rich-based progress display fed by per-file engine callbacks.

    Shows the number of files done, failures, and bytes moved so far.
    """

    def __init__(self, description: str, console: Optional[Console] = None):
        """Initialize the progress display.

        Args:
            description: Label shown while the transfer runs
            console: Console to render on (defaults to stderr)
        """
        self.description = description
        self.console = console or Console(stderr=True)
        self.files_done = 0
        self.files_failed = 0
        self.bytes_done = 0
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def _summary(self) -> str:
        text = f"{self.files_done} files, {format_size(self.bytes_done)}"
        if self.files_failed:
            text += f", [red]{self.files_failed} failed[/red]"
        return text

    def handle_entry(self, entry: TransferEntry) -> None:
        """Record one file outcome; pass this as the engine's ``on_entry``."""
        if entry.status in _FAILED:
            self.files_failed += 1
        else:
            self.files_done += 1
            self.bytes_done += entry.size

        if self._progress is not None and self._task is not None:
            self._progress.update(
                self._task,
                current=entry.remote_path,
                summary=self._summary(),
            )

    def __enter__(self) -> "TransferProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            TextColumn("[cyan]{task.fields[summary]}"),
            TextColumn("[dim]{task.fields[current]}"),
            TimeElapsedColumn(),
            console=self.console,
            refresh_per_second=4,
            transient=True,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task(
            self.description, total=None, summary=self._summary(), current=""
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None
