from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Sequence

import requests

from .cluster import KubernetesCluster, ReplicaDescriptor
from .config import Timeouts
from .retry import RetryExhausted, retry_until_deadline

LOGGER = logging.getLogger("hostname_soak.readiness")

POD_RUNNING = "Running"


class ReplicaNotRunning(Exception):
    def __init__(self, phase: str) -> None:
        super().__init__(f"phase is {phase or '<unknown>'}")
        self.phase = phase


@dataclass(frozen=True)
class ReplicaReadiness:
    replica: ReplicaDescriptor
    phase: str

    @property
    def running(self) -> bool:
        return self.phase == POD_RUNNING


class ReadinessWaiter:
    """Wait for replica pods to run and for the service address to answer.

    Neither wait is fatal: a pod that never reaches ``Running`` shows up later
    as an unresponsive replica, and per-replica responses are what the soak
    loop actually checks.
    """

    def __init__(
        self,
        cluster: KubernetesCluster,
        timeouts: Timeouts,
        probe_timeout: float,
        http_get: Callable[..., object] = requests.get,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._cluster = cluster
        self._timeouts = timeouts
        self._probe_timeout = probe_timeout
        self._http_get = http_get
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    def wait_for_replicas(self, namespace: str, replicas: Sequence[ReplicaDescriptor]) -> List[ReplicaReadiness]:
        LOGGER.info("Waiting for the serve-hostname pods to be ready")
        return [self._wait_for_replica(namespace, replica) for replica in replicas]

    def _wait_for_replica(self, namespace: str, replica: ReplicaDescriptor) -> ReplicaReadiness:
        last_phase = ""

        def check() -> None:
            nonlocal last_phase
            last_phase = self._cluster.get_replica_phase(namespace, replica.name)
            if last_phase != POD_RUNNING:
                raise ReplicaNotRunning(last_phase)

        try:
            retry_until_deadline(
                check,
                self._timeouts.replica_start,
                f"see pod {namespace}/{replica.name} running",
                **self._retry_kwargs,
            )
        except RetryExhausted:
            LOGGER.warning(
                "Gave up waiting on pod %s/%s to be running (saw %s)",
                namespace,
                replica.name,
                last_phase or "<unknown>",
            )
            return ReplicaReadiness(replica=replica, phase=last_phase)
        LOGGER.info("%s/%s is running", namespace, replica.name)
        return ReplicaReadiness(replica=replica, phase=POD_RUNNING)

    def wait_for_service(self, address: str) -> bool:
        try:
            retry_until_deadline(
                lambda: self._http_get(address, timeout=self._probe_timeout),
                self._timeouts.endpoint,
                f"get a response from {address}",
                **self._retry_kwargs,
            )
        except RetryExhausted as exc:
            LOGGER.error("Failed to get a response from service: %s", exc.last_error)
            return False
        LOGGER.info("Service %s is answering", address)
        return True
