"""Command line action that installs components into a local store."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import Any, cast

from component_installer.cluster import WorkloadSimulator
from component_installer.config import OperatorConfig
from component_installer.exceptions import InstallerException
from component_installer.manifest import PLATFORM_KIND
from component_installer.orchestrator import BootstrapOptions, Orchestrator
from component_installer.store import InMemoryStore, Store

from .format import PrintFormatter, YamlFormatter, status_row

_LOGGER = logging.getLogger(__name__)

COLUMNS = ["kind", "name", "phase", "version", "installerset", "message"]


def add_config_flags(args: ArgumentParser) -> None:
    """Add flags for loading the operator configuration."""
    args.add_argument(
        "--config",
        help="Path to the operator configuration YAML file",
        type=pathlib.Path,
        default=None,
    )


def load_config(config: pathlib.Path | None) -> OperatorConfig:
    if config is None:
        return OperatorConfig()
    return OperatorConfig.from_yaml(config)


async def status_rows(store: Store, kinds: list[str]) -> list[dict[str, Any]]:
    """Return the status of every Platform and Component in the store."""
    rows = []
    for kind in [PLATFORM_KIND, *kinds]:
        for obj, _ in await store.list(kind):
            rows.append(status_row(obj))
    return rows


class RunAction:
    """Install components from local resources until they are Ready."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Install Platform and Component resources",
                description=(
                    "Load Platform and Component resources from a path and run "
                    "the controllers against an in-memory cluster until every "
                    "resource is Ready."
                ),
            ),
        )
        args.add_argument(
            "path",
            help="File or directory containing Platform and Component resources",
            type=pathlib.Path,
        )
        args.add_argument(
            "--manifests",
            help="Directory of raw manifests laid out as <kind>/<version>/*.yaml",
            type=pathlib.Path,
            default=None,
        )
        add_config_flags(args)
        args.add_argument(
            "--timeout",
            help="Seconds to wait for the resources to become Ready",
            type=float,
            default=300.0,
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "yaml"],
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        manifests: pathlib.Path | None,
        config: pathlib.Path | None,
        timeout: float,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        operator_config = load_config(config)
        if manifests is not None:
            operator_config.manifest_root = str(manifests)
        if not operator_config.manifest_root:
            raise InstallerException("A manifest directory is required (--manifests)")

        store = InMemoryStore()
        orchestrator = Orchestrator(store, operator_config)
        simulator = WorkloadSimulator(store)
        simulator.start()
        try:
            ready = await orchestrator.bootstrap(
                BootstrapOptions(path=path, timeout=timeout)
            )
        finally:
            await simulator.stop()

        rows = await status_rows(store, orchestrator.graph.topological_order())
        if output == "yaml":
            YamlFormatter().print(rows)
        else:
            PrintFormatter(COLUMNS).print(rows)
        if not ready:
            raise InstallerException("Resources did not become Ready")
