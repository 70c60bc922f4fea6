"""Kuberun actions that patch objects already running in the cluster."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast

from kuberun.exceptions import InputException
from kuberun.manifest import (
    CRON_JOB_KIND,
    DEPLOYMENT_KIND,
    NAMESPACE_KIND,
    POD_KIND,
    SERVICE_KIND,
    EnvVar,
    NamedResource,
)
from kuberun.patch import PatchIntent, PatchPayload, build_patch

from . import common
from .format import JsonFormatter

_LOGGER = logging.getLogger(__name__)

KINDS = {
    "deployment": DEPLOYMENT_KIND,
    "deploy": DEPLOYMENT_KIND,
    "cronjob": CRON_JOB_KIND,
    "service": SERVICE_KIND,
    "svc": SERVICE_KIND,
    "namespace": NAMESPACE_KIND,
    "ns": NAMESPACE_KIND,
    "pod": POD_KIND,
}


async def send_patch(payload: PatchPayload, dry_run: bool, **kwargs: Any) -> None:
    """Send a patch to the cluster, or only print it for a dry run."""
    if dry_run:
        print(f"# {payload.target}")
        JsonFormatter().print(payload.body)
        return
    client = common.make_client(**kwargs)
    await client.patch(payload)
    print(f"{payload.target} patched")


class ScaleAction:
    """Set the number of replicas of a deployment."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "scale",
                help="Set the number of replicas of a deployment",
            ),
        )
        args.add_argument("name", help="Name of the deployment")
        args.add_argument("replicas", type=int, help="Desired number of replicas")
        common.add_namespace_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        replicas: int,
        namespace: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        target = NamedResource(DEPLOYMENT_KIND, namespace, name)
        await send_patch(build_patch(target, PatchIntent.REPLICAS, replicas), **kwargs)


class RollbackAction:
    """Roll a deployment back to a prior revision."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "rollback",
                help="Roll a deployment back to a prior revision",
            ),
        )
        args.add_argument("name", help="Name of the deployment")
        args.add_argument("revision", help="Revision to roll back to")
        common.add_namespace_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        revision: str,
        namespace: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        target = NamedResource(DEPLOYMENT_KIND, namespace, name)
        await send_patch(build_patch(target, PatchIntent.ROLLBACK, revision), **kwargs)


def _add_env_flags(args: ArgumentParser) -> None:
    args.add_argument("name", help="Name of the deployment or cronjob")
    args.add_argument(
        "--kind",
        choices=["deployment", "cronjob"],
        default="deployment",
        help="Kind of the workload to change",
    )
    common.add_namespace_flag(args)


class EnvSetAction:
    """Set environment variables of a workload."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "set",
                help="Add or replace environment variables",
            ),
        )
        _add_env_flags(args)
        args.add_argument("env", nargs="+", help="Variables in KEY=VALUE format")
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        kind: str,
        namespace: str,
        env: list[str],
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        target = NamedResource(KINDS[kind], namespace, name)
        evs = [EnvVar.from_str(value) for value in env]
        await send_patch(build_patch(target, PatchIntent.ENV, evs), **kwargs)


class EnvUnsetAction:
    """Remove environment variables of a workload."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "unset",
                help="Remove environment variables",
            ),
        )
        _add_env_flags(args)
        args.add_argument("keys", nargs="+", help="Names of the variables")
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        kind: str,
        namespace: str,
        keys: list[str],
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        target = NamedResource(KINDS[kind], namespace, name)
        await send_patch(build_patch(target, PatchIntent.DELETE_ENV, keys), **kwargs)


class EnvAction:
    """Change the environment variables of a workload."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "env",
                help="Change the environment variables of a workload",
                description=(
                    "Change the environment variables of a deployment or "
                    "cronjob, triggering a rollout of its pods."
                ),
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        EnvSetAction.register(subcmds)
        EnvUnsetAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target


class AnnotateAction:
    """Replace the annotations of an object."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "annotate",
                help="Replace all annotations of an object",
                description=(
                    "Replace all annotations of an object. Annotations that "
                    "are not given are removed."
                ),
            ),
        )
        args.add_argument("kind", choices=sorted(KINDS), help="Kind of the object")
        args.add_argument("name", help="Name of the object")
        args.add_argument(
            "annotations", nargs="*", help="Annotations in KEY=VALUE format"
        )
        common.add_namespace_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        kind: str,
        name: str,
        annotations: list[str],
        namespace: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        values: dict[str, str] = {}
        for annotation in annotations:
            key, sep, value = annotation.partition("=")
            if not key or not sep:
                raise InputException(f"Expected KEY=VALUE format from '{annotation}'")
            values[key] = value
        target = NamedResource(KINDS[kind], namespace, name)
        if target.kind == NAMESPACE_KIND:
            target = NamedResource(NAMESPACE_KIND, None, name)
        await send_patch(build_patch(target, PatchIntent.ANNOTATIONS, values), **kwargs)
