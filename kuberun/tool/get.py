"""Kuberun get action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast

from kuberun.manifest import APP_LABEL

from . import common
from .format import FORMATTERS, PrintFormatter

_LOGGER = logging.getLogger(__name__)


def _add_output_flag(args: ArgumentParser) -> None:
    args.add_argument(
        "--output",
        "-o",
        choices=sorted(FORMATTERS),
        default=None,
        help="Output format of the command, defaults to a table",
    )


def _print(results: list[dict[str, Any]], cols: list[str], output: str | None) -> None:
    if output is not None:
        FORMATTERS[output]().print(results)
        return
    PrintFormatter(cols).print(results)


class GetPodsAction:
    """Get the pods of an application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "pods",
                aliases=["pod", "po"],
                help="Get the pods in a namespace",
            ),
        )
        common.add_namespace_flag(args)
        args.add_argument(
            "--selector",
            "-l",
            type=str,
            default=None,
            help="Label selector to filter pods, e.g. run=myapp",
        )
        _add_output_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        namespace: str,
        selector: str | None,
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        client = common.make_client(**kwargs)
        pods = await client.pod_list(namespace, selector)
        if not pods:
            print(f"No pods found in namespace {namespace}")
            return
        results = [pod.to_dict() for pod in pods]
        for result in results:
            result["age"] = f"{int(result['age'])}s"
        _print(results, ["name", "state", "restarts", "ready", "age"], output)


class GetRevisionsAction:
    """Get the revisions of a deployment."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "revisions",
                aliases=["revision", "rs"],
                help="Get the revisions of a deployment",
            ),
        )
        args.add_argument("name", help="Name of the deployment")
        common.add_namespace_flag(args)
        _add_output_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        namespace: str,
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        client = common.make_client(**kwargs)
        revisions = await client.replica_set_list_by_label(namespace, APP_LABEL, name)
        if not revisions:
            print(f"No revisions found for deployment {name}")
            return
        results = sorted(
            (revision.to_dict() for revision in revisions),
            key=lambda result: int(result["revision"] or 0),
        )
        for result in results:
            result["age"] = f"{int(result['age'])}s"
        _print(results, ["revision", "current", "age", "description"], output)


class GetAction:
    """Kuberun get action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get",
                help="Print information about objects in the cluster",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        GetPodsAction.register(subcmds)
        GetRevisionsAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
