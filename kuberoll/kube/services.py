"""Discovery of the cloud load balancers fronting LoadBalancer Services."""

from __future__ import annotations

from typing import TYPE_CHECKING

from kubernetes.client import V1Service
from kubernetes.client.exceptions import ApiException
from loguru import logger

from kuberoll.errors import (
    LoadBalancerNameFormatError,
    LoadBalancerNotReadyError,
    ProviderError,
    UnknownLoadBalancerTypeError,
)
from kuberoll.models import LoadBalancerDescriptor, LoadBalancerKind, TargetKind

from .client import KubeClient

if TYPE_CHECKING:
    from loguru import Logger

LB_TYPE_ANNOTATION = "service.beta.kubernetes.io/aws-load-balancer-type"
LB_TARGET_ANNOTATION = "service.beta.kubernetes.io/aws-load-balancer-nlb-target-type"


def load_balancer_name(hostname: str) -> str:
    """Extract the load balancer name from its DNS hostname.

    The first label is ``NAME-HASH`` or ``internal-NAME-HASH``; NAME itself
    may contain dashes.

    >>> load_balancer_name("my-svc-1234567890.us-east-1.elb.amazonaws.com")
    'my-svc'
    >>> load_balancer_name("internal-my-svc-1234567890.us-east-1.elb.amazonaws.com")
    'my-svc'
    """
    subdomain = hostname.split(".", 1)[0]
    parts = subdomain.split("-")
    if parts and parts[0] == "internal":
        parts = parts[1:]
    if len(parts) < 2 or not all(parts):
        raise LoadBalancerNameFormatError(hostname)
    return "-".join(parts[:-1])


def _target_kind(annotations: dict[str, str]) -> TargetKind:
    value = annotations.get(LB_TARGET_ANNOTATION)
    match value:
        case None | "instance":
            return TargetKind.INSTANCE
        case "ip" | "nlb-ip":
            return TargetKind.IP
        case _:
            raise UnknownLoadBalancerTypeError(LB_TARGET_ANNOTATION, value)


def classify(annotations: dict[str, str]) -> tuple[LoadBalancerKind, TargetKind]:
    """Load balancer and target kind implied by a Service's annotations."""
    value = annotations.get(LB_TYPE_ANNOTATION)
    match value:
        case None:
            return LoadBalancerKind.CLASSIC, TargetKind.INSTANCE
        case "nlb":
            return LoadBalancerKind.NETWORK, TargetKind.INSTANCE
        case "external":
            return LoadBalancerKind.NETWORK, _target_kind(annotations)
        case _:
            raise UnknownLoadBalancerTypeError(LB_TYPE_ANNOTATION, value)


def describe_service(service: V1Service) -> LoadBalancerDescriptor:
    meta = service.metadata
    service_name = f"{meta.namespace}/{meta.name}"

    ingress = (service.status and service.status.load_balancer and service.status.load_balancer.ingress) or []
    hostname = ingress[0].hostname if ingress else None
    if not hostname:
        raise LoadBalancerNotReadyError(service_name)

    kind, target = classify(meta.annotations or {})
    return LoadBalancerDescriptor(name=load_balancer_name(hostname), kind=kind, target=target)


async def discover_load_balancers(
    kube: KubeClient,
    log: Logger | None = None,
) -> list[LoadBalancerDescriptor]:
    """Descriptors for every Service of type LoadBalancer, across all namespaces."""
    log = log or logger.bind(component="services")
    log.info("Looking up load balancers of LoadBalancer Services")

    try:
        services = await kube.list_services()
    except ApiException as e:
        raise ProviderError(f"Error listing services: {e.reason}", cause=e) from e

    descriptors: list[LoadBalancerDescriptor] = []
    for service in services:
        if not service.spec or service.spec.type != "LoadBalancer":
            continue
        descriptor = describe_service(service)
        log.debug(
            "Service {ns}/{name} uses {lb}",
            ns=service.metadata.namespace, name=service.metadata.name, lb=descriptor.describe(),
        )
        descriptors.append(descriptor)

    log.info("Found {n} load balancers", n=len(descriptors))
    return descriptors
