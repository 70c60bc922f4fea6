"""Configuration objects for kuberun."""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class KubectlConfig:
    """Configuration for talking to the cluster through kubectl."""

    kubectl_bin: str = "kubectl"
    """Name or path of the kubectl binary."""

    kubeconfig: Path | None = None
    """Path to a kubeconfig file, or None for the in-cluster/default config."""

    context: str | None = None
    """Optional kubeconfig context to use."""

    request_timeout: float = 60.0
    """Timeout in seconds for a single non-streaming request."""


@dataclass
class RunnerConfig:
    """Configuration for run-to-completion pods."""

    start_check_interval: float = 1.0
    """Seconds between checks while waiting for the pod to start."""

    start_timeout: float = 5 * 60.0
    """Seconds to wait for the pod to start running."""

    end_check_interval: float = 3.0
    """Seconds between checks while waiting for the pod to end."""

    pod_run_timeout: float = 30 * 60.0
    """Seconds to wait for the pod to finish once running."""

    log_tail_lines: int = 10
    """Number of backlog lines to include when the log stream is opened."""

    log_drain_timeout: float = 10.0
    """Seconds to let the log stream finish once the pod has ended."""

    output_buffer_size: int = 2**16
    """Bytes of output held for the caller before the log copy waits."""

    cleanup: bool = True
    """Delete the pod once the exit code has been delivered."""


@dataclass
class ClientConfig:
    """Configuration for the Client facade."""

    kubectl: KubectlConfig = field(default_factory=KubectlConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)

    ingress: bool = False
    """Create an Ingress in addition to the Service when exposing a deploy."""
