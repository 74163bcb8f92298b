"""Kubernetes side of the rollout: nodes and LoadBalancer Services."""

from kuberoll.kube.client import KubeClient, KubeModule, KubeOptions
from kuberoll.kube.nodes import NodeLifecycle, NodeReadiness, is_node_ready
from kuberoll.kube.services import discover_load_balancers

__all__ = [
    "KubeClient",
    "KubeModule",
    "KubeOptions",
    "NodeLifecycle",
    "NodeReadiness",
    "discover_load_balancers",
    "is_node_ready",
]
