"""Kuberun run action."""

import asyncio
import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import pathlib
import sys
from typing import cast

import aiofiles

from kuberun.exceptions import InputException
from kuberun.manifest import EnvVar, PodSpec
from kuberun.task import task_service_context

from . import common
from .format import YamlFormatter

_LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 4096


async def _read_spec(path: pathlib.Path) -> PodSpec:
    async with aiofiles.open(str(path)) as spec_file:
        content = await spec_file.read()
    return cast(PodSpec, PodSpec.parse_yaml(content))


async def build_spec(
    name: str | None,
    file: pathlib.Path | None,
    image: str | None,
    namespace: str,
    env: list[str],
    cmd: list[str],
) -> PodSpec:
    """Build the pod to run from a spec file and the command line flags.

    Flags given on the command line take precedence over the spec file.
    """
    if file is not None:
        spec = await _read_spec(file)
    elif name and image:
        spec = PodSpec(namespace=namespace, name=name, image=image)
    else:
        raise InputException("Either --file or both NAME and --image are required")
    if name:
        spec.name = name
    if image:
        spec.image = image
    if namespace != common.DEFAULT_NAMESPACE or not spec.namespace:
        spec.namespace = namespace
    spec.env.extend(EnvVar.from_str(value) for value in env)
    if cmd:
        spec.command = list(cmd)
    return spec


class RunAction:
    """Run a pod to completion, streaming its output."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Run a pod to completion",
                description=(
                    "Run a pod to completion, printing its output and exiting "
                    "with its exit code. The command to run follows `--`."
                ),
            ),
        )
        args.add_argument("name", nargs="?", help="Name of the pod")
        args.add_argument(
            "--file",
            "-f",
            type=pathlib.Path,
            default=None,
            help="Path to a yaml pod spec with the image, command and env",
        )
        args.add_argument(
            "--image",
            type=str,
            default=None,
            help="Container image to run",
        )
        common.add_namespace_flag(args)
        args.add_argument(
            "--env",
            "-e",
            type=str,
            action="append",
            default=[],
            help="Environment variable of the container in KEY=VALUE format",
        )
        args.add_argument(
            "--run-timeout",
            type=float,
            default=None,
            help="Seconds to wait for the pod to finish once it is running",
        )
        args.add_argument(
            "--no-cleanup",
            default=False,
            action="store_true",
            help="Keep the pod once it has finished",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str | None,
        file: pathlib.Path | None,
        image: str | None,
        namespace: str,
        env: list[str],
        run_timeout: float | None,
        no_cleanup: bool,
        dry_run: bool,
        cmd: list[str] | None = None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        spec = await build_spec(name, file, image, namespace, env, cmd or [])
        if dry_run:
            YamlFormatter().print([spec.to_manifest()])
            return 0

        config = common.client_config(**kwargs)
        if run_timeout is not None:
            config.runner.pod_run_timeout = run_timeout
        config.runner.cleanup = not no_cleanup
        with task_service_context() as task_service:
            client = common.make_client(config, task_service)
            session = await client.run_to_completion(spec)
            try:
                sys.stdout.flush()
                while chunk := await session.output.read(_CHUNK_SIZE):
                    sys.stdout.buffer.write(chunk)
                    sys.stdout.buffer.flush()
                exit_code = await session.wait()
            except asyncio.CancelledError:
                session.cancel()
                raise
            finally:
                await task_service.block_till_done(include_background=True)
        _LOGGER.info("Pod %s exited with code %d", session.pod, exit_code)
        return exit_code
