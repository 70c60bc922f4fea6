"""Flags and helpers shared by the kuberun actions."""

from argparse import ArgumentParser
import pathlib
from typing import Any

from kuberun.client import Client
from kuberun.config import ClientConfig, KubectlConfig
from kuberun.task import TaskService

DEFAULT_NAMESPACE = "default"


def add_namespace_flag(args: ArgumentParser) -> None:
    """Add the flag selecting the namespace of the target objects."""
    args.add_argument(
        "--namespace",
        "-n",
        type=str,
        default=DEFAULT_NAMESPACE,
        help="Namespace of the target objects",
    )


def add_cluster_flags(parser: ArgumentParser) -> None:
    """Add the flags selecting how the cluster is reached."""
    parser.add_argument(
        "--kubeconfig",
        type=pathlib.Path,
        default=None,
        help="Path to the kubeconfig file, defaults to the kubectl default",
    )
    parser.add_argument(
        "--context",
        type=str,
        default=None,
        help="Name of the kubeconfig context to use",
    )
    parser.add_argument(
        "--kubectl",
        type=str,
        default="kubectl",
        help="Name or path of the kubectl binary",
    )
    parser.add_argument(
        "--dry-run",
        default=False,
        action="store_true",
        help="Print the objects or patches that would be sent instead of sending them",
    )


def client_config(
    kubeconfig: pathlib.Path | None = None,
    context: str | None = None,
    kubectl: str = "kubectl",
    **kwargs: Any,  # pylint: disable=unused-argument
) -> ClientConfig:
    """Build the client configuration from the command line flags."""
    return ClientConfig(
        kubectl=KubectlConfig(
            kubectl_bin=kubectl,
            kubeconfig=kubeconfig,
            context=context,
        )
    )


def make_client(
    config: ClientConfig | None = None,
    task_service: TaskService | None = None,
    **kwargs: Any,
) -> Client:
    """Create a client from the command line flags."""
    return Client(config or client_config(**kwargs), task_service=task_service)
