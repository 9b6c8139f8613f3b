"""
Shared fixtures: an in-memory cluster and zero-wait retry policies.
"""

import dataclasses
import itertools
import threading
from typing import Dict, List, Optional, Set

import pytest

from hostname_soak.cluster import ClusterError, NotFoundError, ReplicaDescriptor
from hostname_soak.config import RetryPolicy, SoakConfig, Timeouts


ONE_SHOT = RetryPolicy(interval=0.0, deadline=0.0)


def one_shot_timeouts() -> Timeouts:
    """Every call site gets a single attempt."""
    return Timeouts(**{f.name: ONE_SHOT for f in dataclasses.fields(Timeouts)})


class FakeCluster:
    """In-memory stand-in for KubernetesCluster that records every call."""

    def __init__(self, nodes=("node-a", "node-b")) -> None:
        self.nodes: List[str] = list(nodes)
        self.calls: List[tuple] = []
        self.namespaces: Set[str] = set()
        self.services: Set[tuple] = set()
        self.pods: Dict[tuple, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.failing_pods: Set[str] = set()
        self.pod_phase = "Running"
        self.keep_namespaces = False
        self._ids = itertools.count()
        self._lock = threading.Lock()

    def _record(self, op: str, *args) -> None:
        with self._lock:
            self.calls.append((op,) + args)
        if op in self.failures:
            raise self.failures[op]

    def ops(self) -> List[str]:
        return [call[0] for call in self.calls]

    def list_nodes(self) -> List[str]:
        self._record("list_nodes")
        return list(self.nodes)

    def create_namespace(self, prefix: str) -> str:
        self._record("create_namespace", prefix)
        name = f"{prefix}{next(self._ids)}"
        self.namespaces.add(name)
        return name

    def get_namespace(self, name: str) -> str:
        self._record("get_namespace", name)
        if name not in self.namespaces:
            raise NotFoundError(f"namespace {name} not found", status=404)
        return "Terminating"

    def delete_namespace(self, name: str) -> None:
        self._record("delete_namespace", name)
        if name not in self.namespaces:
            raise NotFoundError(f"namespace {name} not found", status=404)
        if not self.keep_namespaces:
            self.namespaces.discard(name)

    def create_service(self, namespace: str, name: str, labels, port=9376) -> None:
        self._record("create_service", namespace, name)
        self.services.add((namespace, name))

    def delete_service(self, namespace: str, name: str) -> None:
        self._record("delete_service", namespace, name)
        if (namespace, name) not in self.services:
            raise NotFoundError(f"service {name} not found", status=404)
        self.services.discard((namespace, name))

    def create_replica(self, namespace: str, replica: ReplicaDescriptor, image, args, labels, port=9376) -> None:
        self._record("create_replica", namespace, replica.name)
        if replica.name in self.failing_pods:
            raise ClusterError(f"pods {replica.name} is forbidden", status=403)
        self.pods[(namespace, replica.name)] = replica.node

    def get_replica_phase(self, namespace: str, name: str) -> str:
        self._record("get_replica_phase", namespace, name)
        if (namespace, name) not in self.pods:
            raise NotFoundError(f"pod {name} not found", status=404)
        return self.pod_phase

    def delete_replica(self, namespace: str, name: str) -> None:
        self._record("delete_replica", namespace, name)
        if (namespace, name) not in self.pods:
            raise NotFoundError(f"pod {name} not found", status=404)
        del self.pods[(namespace, name)]


class RoundRobinFetch:
    """Thread-safe fake HTTP fetch answering with each identity in turn."""

    def __init__(self, identities: List[str], failing_calls: Optional[Set[int]] = None) -> None:
        self._identities = list(identities)
        self._failing = failing_calls or set()
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self.timeouts: List[float] = []

    def __call__(self, address: str, timeout: float) -> str:
        with self._lock:
            call = next(self._counter)
            self.timeouts.append(timeout)
        if call in self._failing:
            raise ConnectionError(f"connection refused on call {call}")
        return self._identities[call % len(self._identities)]


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fast_config() -> SoakConfig:
    return SoakConfig(
        queries_per_replica=10,
        replicas_per_node=1,
        iterations=1,
        max_in_flight=4,
        query_timeout=1.0,
        timeouts=one_shot_timeouts(),
    )
