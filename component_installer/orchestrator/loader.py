"""Resource loader for the bootstrap process.

This module provides the ResourceLoader class which reads the declarative
`Platform` and `Component` resources from the filesystem so they can be added
to the store before the controllers start.

Key Characteristics:
- Used only during bootstrap to populate the initial state
- Handles YAML parsing and validation of the installer resources
- Skips documents that are not installer resources
- Stateless apart from de-duplicating files that were already read
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncGenerator
import asyncio

import yaml

from component_installer.manifest import (
    BaseManifest,
    Component,
    Platform,
    parse_raw_obj,
)
from component_installer.exceptions import InputException

__all__ = ["ResourceLoader", "LoadOptions"]

_LOGGER = logging.getLogger(__name__)

# Type for YAML documents
document = dict[str, Any]


@dataclass
class LoadOptions:
    """Options for configuring resource loading during bootstrap.

    Attributes:
        path: Filesystem path to load resources from. Can be a file or directory.
        recursive: If True and path is a directory, load resources from all
                  subdirectories as well.
    """

    path: Path
    recursive: bool = True

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


class ResourceLoader:
    """Loads Platform and Component resources from the filesystem."""

    def __init__(self, component_kinds: set[str]) -> None:
        """Initialize the resource loader."""
        self._component_kinds = component_kinds
        self._processed_files: set[Path] = set()

    async def load(
        self, options: LoadOptions
    ) -> AsyncGenerator[Platform | Component, None]:
        """Load resources from the given options.

        Raises:
            InputException: If the path or a file cannot be read.
        """
        _LOGGER.info("Loading resources from %s", options.path)

        if not options.path.exists():
            raise InputException(f"Path does not exist: {options.path}")

        if options.path.is_file():
            async for resource in self._load_file(options.path):
                yield resource
        elif options.path.is_dir():
            async for resource in self._load_directory(options.path, options):
                yield resource
        else:
            raise InputException(f"Path is not a file or directory: {options.path}")

        _LOGGER.info("Finished loading resources")

    async def _load_directory(
        self, path: Path, options: LoadOptions
    ) -> AsyncGenerator[Platform | Component, None]:
        _LOGGER.debug("Loading directory: %s", path)

        # Process files first, then recurse into subdirectories if enabled
        for entry in sorted(path.iterdir()):
            if entry.is_file() and entry.suffix.lower() in (".yaml", ".yml", ".json"):
                async for resource in self._load_file(entry):
                    yield resource
            elif options.recursive and entry.is_dir():
                async for resource in self._load_directory(entry, options):
                    yield resource

    async def _load_file(self, path: Path) -> AsyncGenerator[Platform | Component, None]:
        """Load resources from a file.

        Raises:
            InputException: If there's an error reading the file.
        """
        if path in self._processed_files:
            _LOGGER.debug("Skipping already processed file: %s", path)
            return

        _LOGGER.debug("Processing file: %s", path)
        self._processed_files.add(path)

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise InputException(f"Failed to read file {path}: {e}") from e

        try:
            docs: list[document] = [doc for doc in yaml.safe_load_all(content) if doc]
        except yaml.YAMLError as e:
            raise InputException(f"Invalid YAML in file {path}: {e}") from e

        for doc in docs:
            if not isinstance(doc, dict):
                _LOGGER.info("Skipping non-mapping document in %s", path)
                continue
            try:
                resource: BaseManifest = parse_raw_obj(
                    doc, component_kinds=self._component_kinds
                )
            except InputException as e:
                _LOGGER.info("Skipping document in %s: %s", path, e)
                continue
            if isinstance(resource, (Platform, Component)):
                yield resource
            else:
                _LOGGER.debug("Skipping %s in %s", doc.get("kind"), path)
