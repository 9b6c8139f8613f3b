from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_IMAGE = "registry.k8s.io/e2e-test-images/agnhost:2.47"
DEFAULT_IMAGE_ARGS: tuple[str, ...] = ("serve-hostname",)

NAMESPACE_PREFIX = "serve-hostnames-"
SERVICE_NAME = "serve-hostnames"
REPLICA_LABELS: dict[str, str] = {"name": "serve-hostname"}
SERVICE_PORT = 9376


@dataclass(frozen=True)
class RetryPolicy:
    """Poll interval and overall time budget for one retried call site."""

    interval: float
    deadline: float


@dataclass(frozen=True)
class Timeouts:
    """Retry policies for every provisioning, readiness and teardown step."""

    node_list: RetryPolicy = RetryPolicy(interval=2.0, deadline=120.0)
    namespace_create: RetryPolicy = RetryPolicy(interval=2.0, deadline=120.0)
    service_create: RetryPolicy = RetryPolicy(interval=2.0, deadline=120.0)
    replica_create: RetryPolicy = RetryPolicy(interval=2.0, deadline=120.0)
    replica_start: RetryPolicy = RetryPolicy(interval=5.0, deadline=30 * 60.0)
    endpoint: RetryPolicy = RetryPolicy(interval=10.0, deadline=5 * 60.0)
    delete: RetryPolicy = RetryPolicy(interval=1.0, deadline=120.0)
    namespace_delete: RetryPolicy = RetryPolicy(interval=1.0, deadline=5 * 60.0)


@dataclass(frozen=True)
class SoakConfig:
    """Tunables for a soak run, passed explicitly to each component."""

    queries_per_replica: int = 100
    replicas_per_node: int = 1
    iterations: int = 1
    max_in_flight: int = 100
    query_timeout: float = 30.0
    image: str = DEFAULT_IMAGE
    image_args: tuple[str, ...] = DEFAULT_IMAGE_ARGS
    output_dir: Path | None = None
    timeouts: Timeouts = field(default_factory=Timeouts)

    def __post_init__(self) -> None:
        if self.queries_per_replica < 1:
            raise ValueError("queries_per_replica must be >= 1")
        if self.replicas_per_node < 1:
            raise ValueError("replicas_per_node must be >= 1")
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if self.query_timeout <= 0:
            raise ValueError("query_timeout must be > 0")

    @property
    def unbounded(self) -> bool:
        return self.iterations < 0

    def total_queries(self, node_count: int) -> int:
        return self.queries_per_replica * node_count * self.replicas_per_node


def service_address(namespace: str) -> str:
    return f"http://{SERVICE_NAME}.{namespace}:{SERVICE_PORT}"
