"""Async facade over the Kubernetes API client.

The official ``kubernetes`` client is blocking, so every call is pushed to a
worker thread with ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from injector import Module, provider, singleton
from kubernetes import client, config
from kubernetes.client import V1Node, V1Pod, V1Service


@dataclass(frozen=True, slots=True)
class KubeOptions:
    """How to authenticate with the Kubernetes API.

    Direct authentication (server + ca_data + token) takes precedence over
    the kubeconfig based scheme; all three values must be set to use it.

    Args:
        kubeconfig: Path to the kubeconfig file. Defaults to ~/.kube/config.
        context: Context in the kubeconfig. Defaults to the current context.
        server: API server endpoint.
        ca_data: Base64 encoded PEM certificate authority data.
        token: Bearer token.
    """

    kubeconfig: str | None = None
    context: str | None = None
    server: str | None = None
    ca_data: str | None = None
    token: str | None = None

    @property
    def direct(self) -> bool:
        return bool(self.server and self.ca_data and self.token)

    def to_config_dict(self) -> dict[str, Any]:
        """Inline kubeconfig for the direct authentication scheme."""
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [{
                "name": "kuberoll",
                "cluster": {"server": self.server, "certificate-authority-data": self.ca_data},
            }],
            "users": [{"name": "kuberoll", "user": {"token": self.token}}],
            "contexts": [{"name": "kuberoll", "context": {"cluster": "kuberoll", "user": "kuberoll"}}],
            "current-context": "kuberoll",
        }


def new_api_client(options: KubeOptions) -> client.ApiClient:
    if options.direct:
        return config.new_client_from_config_dict(options.to_config_dict())
    return config.new_client_from_config(config_file=options.kubeconfig, context=options.context)


class KubeClient:
    """The subset of the Kubernetes API used by the rollout."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._core = client.CoreV1Api(api_client)
        self._policy = client.PolicyV1Api(api_client)

    async def list_nodes(self) -> list[V1Node]:
        response = await asyncio.to_thread(self._core.list_node)
        return list(response.items)

    async def cordon(self, node_name: str) -> None:
        await asyncio.to_thread(self._core.patch_node, node_name, {"spec": {"unschedulable": True}})

    async def list_pods_on_node(self, node_name: str) -> list[V1Pod]:
        response = await asyncio.to_thread(
            self._core.list_pod_for_all_namespaces,
            field_selector=f"spec.nodeName={node_name}",
        )
        return list(response.items)

    async def evict(self, pod: V1Pod, grace_period_seconds: int | None = None) -> None:
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=pod.metadata.name, namespace=pod.metadata.namespace),
            delete_options=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds),
        )
        await asyncio.to_thread(
            self._policy.create_namespaced_pod_eviction,
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
            body=body,
        )

    async def list_services(self) -> list[V1Service]:
        services: list[V1Service] = []
        params: dict[str, Any] = {}
        while True:
            response = await asyncio.to_thread(self._core.list_service_for_all_namespaces, **params)
            services.extend(response.items)
            token = response.metadata._continue if response.metadata else None
            if not token:
                return services
            params["_continue"] = token


class KubeModule(Module):
    """DI module that provides the Kubernetes facade."""

    def __init__(self, options: KubeOptions) -> None:
        self._options = options

    @singleton
    @provider
    def provide_options(self) -> KubeOptions:
        return self._options

    @singleton
    @provider
    def provide_client(self, options: KubeOptions) -> KubeClient:
        return KubeClient(new_api_client(options))
