from __future__ import annotations

import contextlib
import enum
import functools
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Sequence, Tuple

from .cluster import KubernetesCluster, NotFoundError, ReplicaDescriptor, build_replicas
from .config import (
    NAMESPACE_PREFIX,
    REPLICA_LABELS,
    SERVICE_NAME,
    SERVICE_PORT,
    RetryPolicy,
    SoakConfig,
    service_address,
)
from .retry import RetryExhausted, retry_until_deadline

LOGGER = logging.getLogger("hostname_soak.lifecycle")


class SoakError(Exception):
    """Base class for conditions that end a soak run."""


class NoNodesError(SoakError):
    """Raised when the cluster reports no nodes."""


class ProvisioningError(SoakError):
    """Raised when a resource could not be created before its deadline."""


class ResourceState(enum.Enum):
    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    DELETING = "deleting"


@dataclass
class ManagedResource:
    kind: str
    name: str
    state: ResourceState = ResourceState.ABSENT

    def transition(self, state: ResourceState) -> None:
        LOGGER.info("%s %s: %s -> %s", self.kind, self.name, self.state.value, state.value)
        self.state = state


@dataclass
class SoakEnvironment:
    """Resources the load runs against once provisioning has finished."""

    namespace: str
    service_address: str
    replicas: List[ReplicaDescriptor] = field(default_factory=list)


class _NamespaceStillPresent(Exception):
    pass


def _not_found(exc: Exception) -> bool:
    return isinstance(exc, NotFoundError)


class ResourceLifecycleManager:
    """Create the namespace, service and replica pods, and tear them down in reverse.

    Teardown callbacks are pushed onto an :class:`contextlib.ExitStack` as soon
    as the namespace exists, so they unwind replicas first, then the service,
    then the namespace, whether provisioning finished, failed part way, or the
    soak loop raised.
    """

    def __init__(
        self,
        cluster: KubernetesCluster,
        config: SoakConfig,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._cluster = cluster
        self._config = config
        self._timeouts = config.timeouts
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.resources: List[ManagedResource] = []

    def discover_nodes(self) -> List[str]:
        try:
            nodes = self._retry(self._cluster.list_nodes, self._timeouts.node_list, "list nodes")
        except RetryExhausted as exc:
            raise ProvisioningError(f"giving up trying to list nodes: {exc.last_error}") from exc
        if not nodes:
            raise NoNodesError("failed to find any nodes")
        LOGGER.info("Found %d nodes on this cluster:", len(nodes))
        for idx, node in enumerate(nodes):
            LOGGER.info("%d: %s", idx, node)
        return list(nodes)

    def build_replicas(self, nodes: Sequence[str]) -> List[ReplicaDescriptor]:
        return build_replicas(nodes, self._config.replicas_per_node)

    @contextlib.contextmanager
    def provision(self, nodes: Sequence[str]) -> Iterator[SoakEnvironment]:
        replicas = self.build_replicas(nodes)
        with contextlib.ExitStack() as teardown:
            namespace = self._create_namespace()
            teardown.callback(self._delete_namespace, namespace)

            LOGGER.info("Creating service %s/%s", namespace.name, SERVICE_NAME)
            service = self._track("service", f"{namespace.name}/{SERVICE_NAME}")
            teardown.callback(
                self._delete,
                service,
                functools.partial(self._cluster.delete_service, namespace.name, SERVICE_NAME),
            )
            self._create(
                service,
                functools.partial(
                    self._cluster.create_service, namespace.name, SERVICE_NAME, REPLICA_LABELS, SERVICE_PORT
                ),
                self._timeouts.service_create,
            )

            # appended before each create so a pod whose create failed is still deleted
            attempted: List[Tuple[ManagedResource, ReplicaDescriptor]] = []
            teardown.callback(self._delete_replicas, namespace.name, attempted)
            for replica in replicas:
                resource = self._track("pod", f"{namespace.name}/{replica.name}")
                attempted.append((resource, replica))
                LOGGER.info("Creating pod %s on node %s", resource.name, replica.node)
                self._create(
                    resource,
                    functools.partial(
                        self._cluster.create_replica,
                        namespace.name,
                        replica,
                        self._config.image,
                        self._config.image_args,
                        REPLICA_LABELS,
                        SERVICE_PORT,
                    ),
                    self._timeouts.replica_create,
                )

            yield SoakEnvironment(
                namespace=namespace.name,
                service_address=service_address(namespace.name),
                replicas=replicas,
            )

    def _track(self, kind: str, name: str) -> ManagedResource:
        resource = ManagedResource(kind=kind, name=name)
        self.resources.append(resource)
        return resource

    def _create(self, resource: ManagedResource, create: Callable[[], None], policy: RetryPolicy) -> None:
        resource.transition(ResourceState.CREATING)
        try:
            self._retry(create, policy, f"create {resource.kind} {resource.name}")
        except RetryExhausted as exc:
            raise ProvisioningError(
                f"unable to create {resource.kind} {resource.name}: {exc.last_error}"
            ) from exc
        resource.transition(ResourceState.READY)

    def _create_namespace(self) -> ManagedResource:
        # The name is generated server side, so tracking starts once it is known.
        try:
            name = self._retry(
                functools.partial(self._cluster.create_namespace, NAMESPACE_PREFIX),
                self._timeouts.namespace_create,
                "create namespace",
            )
        except RetryExhausted as exc:
            raise ProvisioningError(f"failed to create namespace: {exc.last_error}") from exc
        resource = self._track("namespace", name)
        resource.transition(ResourceState.READY)
        LOGGER.info("Created namespace %s", name)
        return resource

    def _delete(self, resource: ManagedResource, delete: Callable[[], None]) -> bool:
        if resource.state is ResourceState.ABSENT:
            return True
        resource.transition(ResourceState.DELETING)
        try:
            self._retry(
                delete,
                self._timeouts.delete,
                f"delete {resource.kind} {resource.name}",
                accept=_not_found,
            )
        except RetryExhausted as exc:
            LOGGER.warning("Unable to delete %s %s: %s", resource.kind, resource.name, exc.last_error)
            return False
        resource.transition(ResourceState.ABSENT)
        return True

    def _delete_replicas(
        self, namespace: str, attempted: List[Tuple[ManagedResource, ReplicaDescriptor]]
    ) -> None:
        LOGGER.info("Cleaning up %d pod(s)", len(attempted))
        for resource, replica in attempted:
            self._delete(resource, functools.partial(self._cluster.delete_replica, namespace, replica.name))

    def _delete_namespace(self, resource: ManagedResource) -> None:
        namespace = resource.name
        resource.transition(ResourceState.DELETING)
        try:
            self._retry(
                functools.partial(self._cluster.delete_namespace, namespace),
                self._timeouts.delete,
                f"delete namespace {namespace}",
                accept=_not_found,
            )
        except RetryExhausted as exc:
            LOGGER.warning("Failed to delete namespace %s: %s", namespace, exc.last_error)
            return
        try:
            self._retry(
                functools.partial(self._raise_if_present, namespace),
                self._timeouts.namespace_delete,
                f"observe removal of namespace {namespace}",
                accept=_not_found,
            )
        except RetryExhausted:
            LOGGER.warning("Namespace %s still present after deletion", namespace)
            return
        resource.transition(ResourceState.ABSENT)

    def _raise_if_present(self, namespace: str) -> None:
        phase = self._cluster.get_namespace(namespace)
        raise _NamespaceStillPresent(f"namespace {namespace} is {phase or 'present'}")

    def _retry(self, operation, policy: RetryPolicy, description: str, **kwargs):
        return retry_until_deadline(operation, policy, description, **self._retry_kwargs, **kwargs)
