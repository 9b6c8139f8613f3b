from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, TypeVar

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .config import SERVICE_PORT

LOGGER = logging.getLogger("hostname_soak.cluster")

T = TypeVar("T")


class ClusterError(Exception):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterError):
    """Raised when the requested object does not exist."""


@dataclass(frozen=True)
class ReplicaDescriptor:
    name: str
    node: str


def replica_name(node_index: int, slot: int) -> str:
    return f"serve-hostname-{node_index}-{slot}"


def build_replicas(nodes: Sequence[str], replicas_per_node: int) -> List[ReplicaDescriptor]:
    return [
        ReplicaDescriptor(name=replica_name(node_index, slot), node=node)
        for node_index, node in enumerate(nodes)
        for slot in range(replicas_per_node)
    ]


def _translate_errors(func: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> T:
        started = time.monotonic()
        try:
            return func(*args, **kwargs)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"{func.__name__}: not found", status=404) from exc
            raise ClusterError(f"{func.__name__}: {exc.status} {exc.reason}", status=exc.status) from exc
        finally:
            LOGGER.debug("%s took %.3fs", func.__name__, time.monotonic() - started)

    return wrapper


class KubernetesCluster:
    """Thin wrapper over the core/v1 API with typed failures."""

    def __init__(self, core_v1: client.CoreV1Api) -> None:
        self._core_v1 = core_v1

    @classmethod
    def from_environment(cls) -> "KubernetesCluster":
        try:
            config.load_incluster_config()
            LOGGER.info("Using in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                config.load_kube_config()
            except config.ConfigException as exc:
                raise ClusterError(f"failed to load Kubernetes configuration: {exc}") from exc
            LOGGER.info("Using kubeconfig file")
        return cls(client.CoreV1Api())

    @_translate_errors
    def list_nodes(self) -> List[str]:
        nodes = self._core_v1.list_node()
        return [node.metadata.name for node in nodes.items]

    @_translate_errors
    def create_namespace(self, prefix: str) -> str:
        created = self._core_v1.create_namespace(
            body=client.V1Namespace(metadata=client.V1ObjectMeta(generate_name=prefix))
        )
        return created.metadata.name

    @_translate_errors
    def get_namespace(self, name: str) -> str:
        namespace = self._core_v1.read_namespace(name=name)
        return namespace.status.phase if namespace.status else ""

    @_translate_errors
    def delete_namespace(self, name: str) -> None:
        self._core_v1.delete_namespace(name=name)

    @_translate_errors
    def create_service(self, namespace: str, name: str, labels: Dict[str, str], port: int = SERVICE_PORT) -> None:
        body = client.V1Service(
            metadata=client.V1ObjectMeta(name=name, labels=dict(labels)),
            spec=client.V1ServiceSpec(
                ports=[client.V1ServicePort(protocol="TCP", port=port, target_port=port)],
                selector=dict(labels),
            ),
        )
        self._core_v1.create_namespaced_service(namespace=namespace, body=body)

    @_translate_errors
    def delete_service(self, namespace: str, name: str) -> None:
        self._core_v1.delete_namespaced_service(name=name, namespace=namespace)

    @_translate_errors
    def create_replica(
        self,
        namespace: str,
        replica: ReplicaDescriptor,
        image: str,
        args: Sequence[str],
        labels: Dict[str, str],
        port: int = SERVICE_PORT,
    ) -> None:
        body = client.V1Pod(
            metadata=client.V1ObjectMeta(name=replica.name, labels=dict(labels)),
            spec=client.V1PodSpec(
                containers=[
                    client.V1Container(
                        name="serve-hostname",
                        image=image,
                        args=list(args) or None,
                        ports=[client.V1ContainerPort(container_port=port)],
                    )
                ],
                node_name=replica.node,
            ),
        )
        self._core_v1.create_namespaced_pod(namespace=namespace, body=body)

    @_translate_errors
    def get_replica_phase(self, namespace: str, name: str) -> str:
        pod = self._core_v1.read_namespaced_pod(name=name, namespace=namespace)
        return pod.status.phase if pod.status else ""

    @_translate_errors
    def delete_replica(self, namespace: str, name: str) -> None:
        self._core_v1.delete_namespaced_pod(name=name, namespace=namespace)
