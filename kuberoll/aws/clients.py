"""AWS client factories with dependency injection.

Provides typed client factories that can be injected into components.
Each factory returns an async context manager wrapping an aioboto3 client.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import aioboto3
from injector import Module, provider, singleton

# =============================================================================
# Client Type
# =============================================================================

type Client[T] = Callable[[], AbstractAsyncContextManager[T]]
"""Factory that returns an async context manager for a client."""


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS connection settings.

    Args:
        region: AWS region where the ASG and EKS cluster live.
    """

    region: str = "us-east-1"


# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class _ClientFactory:
    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class AutoScalingClientFactory(_ClientFactory):
    """Wrapper for Auto Scaling client factory."""


class EC2ClientFactory(_ClientFactory):
    """Wrapper for EC2 client factory."""


class ELBClientFactory(_ClientFactory):
    """Wrapper for classic ELB client factory."""


class ELBv2ClientFactory(_ClientFactory):
    """Wrapper for ELBv2 (ALB/NLB) client factory."""


def _session_client(
    session: aioboto3.Session, service: str, region: str,
) -> Callable[[], AbstractAsyncContextManager[Any]]:
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        async with session.client(service, region_name=region) as client:  # type: ignore[reportGeneralTypeIssues]
            yield client
    return factory


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> from kuberoll.aws.clients import AWS, AWSModule
        >>>
        >>> injector = Injector([AWSModule(AWS(region="us-west-2"))])
        >>> asg = injector.get(AutoScalingClientFactory)
        >>> async with asg() as client:
        ...     await client.describe_auto_scaling_groups(AutoScalingGroupNames=["workers"])
    """

    def __init__(self, config: AWS) -> None:
        self._config = config

    @singleton
    @provider
    def provide_config(self) -> AWS:
        return self._config

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_autoscaling(self, session: aioboto3.Session, config: AWS) -> AutoScalingClientFactory:
        return AutoScalingClientFactory(_session_client(session, "autoscaling", config.region))

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: AWS) -> EC2ClientFactory:
        return EC2ClientFactory(_session_client(session, "ec2", config.region))

    @singleton
    @provider
    def provide_elb(self, session: aioboto3.Session, config: AWS) -> ELBClientFactory:
        return ELBClientFactory(_session_client(session, "elb", config.region))

    @singleton
    @provider
    def provide_elbv2(self, session: aioboto3.Session, config: AWS) -> ELBv2ClientFactory:
        return ELBv2ClientFactory(_session_client(session, "elbv2", config.region))


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "AWS",
    "AWSModule",
    "AutoScalingClientFactory",
    "Client",
    "EC2ClientFactory",
    "ELBClientFactory",
    "ELBv2ClientFactory",
]
