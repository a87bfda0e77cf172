"""Terminal output helpers for commands."""

import json
import sys

from rich.console import Console
from rich.table import Table

console = Console()


def print_json(data) -> None:
    """Machine-readable output on stdout, unstyled."""
    sys.stdout.write(json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n")


def print_error(error: dict) -> None:
    sys.stderr.write(json.dumps(error, ensure_ascii=False, default=str) + "\n")


def table(title: str, columns: list[str], rows: list[list]) -> None:
    t = Table(title=title, title_justify="left")
    for column in columns:
        t.add_column(column)
    for row in rows:
        t.add_row(*["" if v is None else str(v) for v in row])
    console.print(t)
