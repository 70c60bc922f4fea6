"""Kuberun apply action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
from typing import cast

from kuberun.manifest import NamedResource, read_manifests

from . import common
from .format import FORMATTERS

_LOGGER = logging.getLogger(__name__)


class ApplyAction:
    """Create or update the objects in a manifest file."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "apply",
                help="Create or update the objects in a manifest file",
                description=(
                    "Update every object in a multi-document yaml file, "
                    "creating the objects that do not exist yet."
                ),
            ),
        )
        args.add_argument(
            "--file",
            "-f",
            type=pathlib.Path,
            required=True,
            help="Path to a yaml file of kubernetes objects",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=sorted(FORMATTERS),
            default="yaml",
            help="Output format of the objects printed with --dry-run",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        file: pathlib.Path,
        output: str,
        dry_run: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        manifests = await read_manifests(file)
        _LOGGER.debug("Read %d objects from %s", len(manifests), file)
        if dry_run:
            FORMATTERS[output]().print(manifests)
            return
        client = common.make_client(**kwargs)
        for manifest in manifests:
            await client.apply_manifest(manifest)
            print(f"{NamedResource.from_doc(manifest)} applied")
