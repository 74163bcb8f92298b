"""Node readiness, cordon and drain."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

from kubernetes.client import V1Node, V1Pod
from kubernetes.client.exceptions import ApiException
from loguru import logger

from kuberoll.conc import gather_outcomes, raise_for_failures
from kuberoll.errors import DrainError, NodeReadyTimeoutError, ProviderError
from kuberoll.wait import PollExhausted, poll_until

from .client import KubeClient

if TYPE_CHECKING:
    from loguru import Logger

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
DRAIN_POLL_INTERVAL = 5.0


def is_node_ready(node: V1Node) -> bool:
    """True if the node reports a Ready condition with status True."""
    conditions = (node.status and node.status.conditions) or []
    for condition in conditions:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


# =============================================================================
# Readiness
# =============================================================================


class NodeReadiness:
    def __init__(self, kube: KubeClient, log: Logger | None = None) -> None:
        self.kube = kube
        self.log = log or logger.bind(component="nodes")

    async def _expected_nodes(self, node_names: Sequence[str]) -> list[V1Node]:
        try:
            nodes = await self.kube.list_nodes()
        except ApiException as e:
            raise ProviderError(f"Error listing nodes: {e.reason}", cause=e) from e
        wanted = set(node_names)
        return [n for n in nodes if n.metadata.name in wanted]

    async def wait_ready(
        self,
        node_names: Sequence[str],
        max_retries: int,
        sleep_between_retries: float,
    ) -> None:
        """Poll until every named node is registered and Ready.

        Raises:
            NodeReadyTimeoutError: After max_retries polls, once the nodes
                still not ready have been logged.
        """
        self.log.info("Waiting for {n} nodes in Kubernetes to reach ready state", n=len(node_names))
        expected = len(set(node_names))

        def all_ready(nodes: list[V1Node]) -> bool:
            registered = len(nodes) == expected
            ready = all(is_node_ready(n) for n in nodes)
            if not registered:
                self.log.info("Not all nodes are registered yet ({n}/{expected})", n=len(nodes), expected=expected)
            if not ready:
                self.log.info("Not all nodes are ready yet")
            return registered and ready

        try:
            await poll_until(
                lambda: self._expected_nodes(node_names),
                all_ready,
                max_attempts=max_retries,
                interval=sleep_between_retries,
                description="nodes ready",
                log=self.log,
            )
        except PollExhausted as e:
            self.log.error("Timed out waiting for nodes to reach ready state")
            await self._report_not_ready(node_names)
            raise NodeReadyTimeoutError(expected) from e

    async def _report_not_ready(self, node_names: Sequence[str]) -> None:
        nodes = await self._expected_nodes(node_names)
        seen = {n.metadata.name for n in nodes}
        for node in nodes:
            if not is_node_ready(node):
                self.log.error("Node {node} is not ready", node=node.metadata.name)
        for name in sorted(set(node_names) - seen):
            self.log.error("Node {node} is not registered", node=name)


# =============================================================================
# Cordon / Drain
# =============================================================================


def _is_daemonset_pod(pod: V1Pod) -> bool:
    owners = (pod.metadata and pod.metadata.owner_references) or []
    return any(owner.kind == "DaemonSet" for owner in owners)


def _is_mirror_pod(pod: V1Pod) -> bool:
    annotations = (pod.metadata and pod.metadata.annotations) or {}
    return MIRROR_POD_ANNOTATION in annotations


def _is_finished(pod: V1Pod) -> bool:
    return bool(pod.status and pod.status.phase in ("Succeeded", "Failed"))


def _uses_local_storage(pod: V1Pod) -> bool:
    volumes = (pod.spec and pod.spec.volumes) or []
    return any(v.empty_dir is not None for v in volumes)


def _is_unmanaged(pod: V1Pod) -> bool:
    owners = (pod.metadata and pod.metadata.owner_references) or []
    return not any(owner.controller for owner in owners)


def evictable_pods(pods: Sequence[V1Pod]) -> list[V1Pod]:
    """Pods a drain must evict: everything except DaemonSet, mirror and finished pods."""
    return [
        p for p in pods
        if not (_is_daemonset_pod(p) or _is_mirror_pod(p) or _is_finished(p))
    ]


def _pod_key(pod: V1Pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


class NodeLifecycle:
    """Cordons and drains nodes concurrently, one unit per node."""

    def __init__(
        self,
        kube: KubeClient,
        log: Logger | None = None,
        poll_interval: float = DRAIN_POLL_INTERVAL,
    ) -> None:
        self.kube = kube
        self.log = log or logger.bind(component="nodes")
        self.poll_interval = poll_interval

    async def cordon(self, node_names: Sequence[str]) -> None:
        """Mark every node unschedulable.

        Raises:
            PartialFailureError: Naming only the nodes that failed.
        """
        outcomes = await gather_outcomes(self._cordon_one, node_names)
        raise_for_failures("cordoning nodes", outcomes)

    async def _cordon_one(self, node_name: str) -> None:
        try:
            await self.kube.cordon(node_name)
        except ApiException as e:
            raise ProviderError(f"Error cordoning node {node_name}: {e.reason}", cause=e) from e
        self.log.bind(node=node_name).info("Cordoned node {node}", node=node_name)

    async def drain(
        self,
        node_names: Sequence[str],
        timeout: float,
        delete_local_data: bool,
    ) -> None:
        """Evict all evictable pods from every node.

        Args:
            node_names: Nodes to drain.
            timeout: Seconds allowed per node; 0 means no limit.
            delete_local_data: Allow evicting pods that use emptyDir volumes.

        Raises:
            PartialFailureError: Naming only the nodes that failed.
        """

        async def drain_one(node_name: str) -> None:
            await self._drain_one(node_name, timeout, delete_local_data)

        outcomes = await gather_outcomes(drain_one, node_names)
        raise_for_failures("draining nodes", outcomes)

    async def _drain_one(self, node_name: str, timeout: float, delete_local_data: bool) -> None:
        log = self.log.bind(node=node_name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout > 0 else None

        def expired() -> bool:
            return deadline is not None and loop.time() >= deadline

        pods = evictable_pods(await self._pods(node_name))
        unmanaged = [_pod_key(p) for p in pods if _is_unmanaged(p)]
        if unmanaged:
            raise DrainError(
                node_name,
                f"cannot delete pods not managed by a controller: {', '.join(unmanaged)}",
            )
        if not delete_local_data:
            local = [_pod_key(p) for p in pods if _uses_local_storage(p)]
            if local:
                raise DrainError(
                    node_name,
                    f"cannot delete pods with local storage (use --delete-local-data): {', '.join(local)}",
                )

        log.info("Evicting {n} pods from node {node}", n=len(pods), node=node_name)
        pending = list(pods)
        while pending:
            still_pending: list[V1Pod] = []
            for pod in pending:
                try:
                    await self.kube.evict(pod)
                except ApiException as e:
                    match e.status:
                        case 404:
                            continue
                        case 429:
                            # Blocked by a PodDisruptionBudget; try again later.
                            still_pending.append(pod)
                        case _:
                            raise DrainError(node_name, f"error evicting pod {_pod_key(pod)}: {e.reason}") from e
            pending = still_pending
            if pending:
                if expired():
                    raise DrainError(node_name, f"timed out evicting {len(pending)} pods")
                await asyncio.sleep(self.poll_interval)

        evicted = {_pod_key(p) for p in pods}
        while True:
            remaining = [p for p in await self._pods(node_name) if _pod_key(p) in evicted]
            if not remaining:
                break
            if expired():
                raise DrainError(node_name, f"timed out waiting for {len(remaining)} pods to terminate")
            await asyncio.sleep(self.poll_interval)

        log.info("Drained node {node}", node=node_name)

    async def _pods(self, node_name: str) -> list[V1Pod]:
        try:
            return await self.kube.list_pods_on_node(node_name)
        except ApiException as e:
            raise ProviderError(f"Error listing pods on node {node_name}: {e.reason}", cause=e) from e
