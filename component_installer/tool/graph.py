"""Command line action that prints the component install order."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import cast

from component_installer.orchestrator import DependencyGraph

from .format import PrintFormatter
from .run import add_config_flags, load_config

_LOGGER = logging.getLogger(__name__)


class GraphAction:
    """Print the component kinds in install order."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "graph",
                help="Print the component dependency graph",
                description=(
                    "Validate the component dependency graph and print the kinds "
                    "in the order they are installed."
                ),
            ),
        )
        add_config_flags(args)
        args.add_argument(
            "--reverse",
            action="store_true",
            help="Print the removal order instead",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config,
        reverse: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        graph = DependencyGraph(load_config(config).dependencies)
        order = graph.reverse_order() if reverse else graph.topological_order()
        PrintFormatter(["order", "kind", "prerequisites"]).print(
            [
                {
                    "order": i + 1,
                    "kind": kind,
                    "prerequisites": ",".join(graph.prerequisites(kind)) or "-",
                }
                for i, kind in enumerate(order)
            ]
        )
