"""Library for formatting command output."""

from collections.abc import Generator, Iterable
import sys
from typing import Any, TextIO

import yaml

from component_installer.conditions import READY
from component_installer.manifest import BaseManifest, Component, Platform

__all__ = [
    "PrintFormatter",
    "YamlFormatter",
    "status_row",
]

PADDING = 3


def column_widths(rows: list[list[str]]) -> list[int]:
    """Return the width of the widest value in each column."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    return widths


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the header and rows aligned in columns."""
    data = [headers] + rows
    widths = column_widths(data)
    for row in data:
        yield "".join(
            value.ljust(width + PADDING) for value, width in zip(row, widths)
        ).rstrip()


class PrintFormatter:
    """A formatter that prints human readable console output."""

    def __init__(self, keys: list[str]) -> None:
        """Initialize the PrintFormatter with the keys to print."""
        self._keys = keys

    def format(self, data: Iterable[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""
        rows = [
            ["" if row.get(key) is None else str(row[key]) for key in self._keys]
            for row in data
        ]
        if not rows:
            return
        yield from format_columns([key.upper() for key in self._keys], rows)

    def print(
        self, data: Iterable[dict[str, Any]], file: TextIO | None = None
    ) -> None:
        """Output the data objects."""
        for result in self.format(data):
            print(result, file=file or sys.stdout)


class YamlFormatter:
    """A formatter that prints a list of objects as a YAML document."""

    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data objects."""
        yield from yaml.dump(data, sort_keys=False, explicit_start=True).splitlines()

    def print(self, data: Any, file: TextIO | None = None) -> None:
        """Output the data objects."""
        print(
            yaml.dump(data, sort_keys=False, explicit_start=True),
            end="",
            file=file or sys.stdout,
        )


def status_row(obj: BaseManifest) -> dict[str, Any]:
    """Return the printable status of a Platform or Component."""
    if isinstance(obj, Platform):
        status = obj.status
        version = obj.spec.version
        installer_set = None
    elif isinstance(obj, Component):
        status = obj.status
        version = obj.status.version or obj.spec.version
        installer_set = obj.status.installer_set
    else:
        raise ValueError(f"Unexpected object {obj}")
    message = ""
    for condition in status.conditions:
        if condition.type == READY and not condition.is_true:
            message = condition.message or condition.reason
    return {
        "kind": obj.kind,
        "name": obj.name,
        "phase": str(status.phase),
        "version": version,
        "installerset": installer_set,
        "message": message,
    }
