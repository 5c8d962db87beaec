"""Console output formatting for the CLI."""

import json
from typing import Any

from rich.console import Console
from rich.table import Table


class OutputFormatter:
    """Prints human-readable or JSON output, honouring quiet mode."""

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False)
        self.err_console = Console(stderr=True, highlight=False)

    def print(self, message: str = "") -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, markup=False)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, style="green", markup=False)

    def progress_message(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, style="dim", markup=False)

    def warning(self, message: str) -> None:
        """Print a warning to stderr (shown even in quiet mode)."""
        self.err_console.print(message, style="yellow", markup=False)

    def error(self, message: str) -> None:
        """Print an error to stderr (always shown)."""
        self.err_console.print(f"Error: {message}", style="bold red", markup=False)

    def output_json(self, data: Any) -> None:
        self.console.print_json(json.dumps(data, default=str))

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a two-column summary table."""
        if self.quiet or self.json_output:
            return
        table = Table(title=title, show_header=False, box=None)
        table.add_column("key", style="bold")
        table.add_column("value")
        for key, value in items:
            table.add_row(key, value)
        self.console.print(table)
