"""Command line tool for deploying and running applications in a cluster."""

import argparse
import asyncio
import logging
import sys
import traceback

from kuberun.exceptions import KubeRunException
from . import apply, common, get, patch, run

_LOGGER = logging.getLogger(__name__)

# Separates the arguments of kuberun from the command run in a pod
COMMAND_SEPARATOR = "--"


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for deploying and running applications.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    common.add_cluster_flags(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    apply.ApplyAction.register(subparsers)
    run.RunAction.register(subparsers)
    patch.ScaleAction.register(subparsers)
    patch.RollbackAction.register(subparsers)
    patch.EnvAction.register(subparsers)
    patch.AnnotateAction.register(subparsers)
    get.GetAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Kuberun command line tool main entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    cmd: list[str] = []
    if COMMAND_SEPARATOR in argv:
        index = argv.index(COMMAND_SEPARATOR)
        argv, cmd = argv[:index], argv[index + 1 :]

    parser = _make_parser()
    args = parser.parse_args(argv)
    if cmd and args.command != "run":
        parser.error(f"unexpected arguments after '{COMMAND_SEPARATOR}'")
    args.cmd = cmd

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        result = asyncio.run(action.run(**vars(args)))
    except KubeRunException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("kuberun error: ", err, file=sys.stderr)
        sys.exit(1)
    if result:
        sys.exit(result)


if __name__ == "__main__":
    main()
