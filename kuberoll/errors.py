"""Error taxonomy for kuberoll.

Every error raised by the rollout engine is a ``RolloutError`` carrying an
explicit ``ErrorKind``. Callers branch on ``error.kind`` rather than on the
exception class:

    >>> try:
    ...     await rollout.run()
    ... except RolloutError as e:
    ...     if e.kind is ErrorKind.TIMEOUT:
    ...         ...
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kuberoll.models import UnitOutcome


class ErrorKind(StrEnum):
    LOOKUP = "lookup"
    TIMEOUT = "timeout"
    PARTIAL = "partial"
    INTERNAL = "internal"
    PROVIDER = "provider"
    CONFIG = "config"


class RolloutError(Exception):
    """Base error: kind + message + optional underlying cause."""

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def fatal(self) -> bool:
        return self.kind in (ErrorKind.LOOKUP, ErrorKind.INTERNAL, ErrorKind.CONFIG)


# =============================================================================
# Lookup
# =============================================================================


class GroupNotFoundError(RolloutError, LookupError):
    kind = ErrorKind.LOOKUP

    def __init__(self, group_name: str) -> None:
        super().__init__(f"Failed to look up detailed data for ASG with id {group_name}.")
        self.group_name = group_name


class LoadBalancerNotFoundError(RolloutError, LookupError):
    kind = ErrorKind.LOOKUP

    def __init__(self, name: str) -> None:
        super().__init__(f"Could not find load balancer with name {name}.")
        self.name = name


# =============================================================================
# Timeouts
# =============================================================================


class CapacityTimeoutError(RolloutError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, group_name: str, message: str) -> None:
        super().__init__(f"Could not reach desired capacity of ASG {group_name}: {message}")
        self.group_name = group_name


class NodeReadyTimeoutError(RolloutError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, num_nodes: int) -> None:
        super().__init__(f"Timed out waiting for {num_nodes} nodes to reach ready state")
        self.num_nodes = num_nodes


class RegistrationTimeoutError(RolloutError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, subject: str, attempts: int) -> None:
        super().__init__(
            f"No expected instances registered to {subject} after {attempts} attempts"
        )
        self.subject = subject
        self.attempts = attempts


# =============================================================================
# Partial failures
# =============================================================================


class PartialFailureError(RolloutError):
    """One entry per failing unit (node, target group, chunk)."""

    kind = ErrorKind.PARTIAL

    def __init__(self, operation: str, failures: Sequence[UnitOutcome]) -> None:
        self.operation = operation
        self.failures = tuple(failures)
        lines = [f"{len(self.failures)} errors found while {operation}:"]
        lines.extend(f"  {f.unit}: {f.error}" for f in self.failures)
        super().__init__("\n".join(lines))

    @property
    def units(self) -> tuple[str, ...]:
        return tuple(f.unit for f in self.failures)


# =============================================================================
# Internal invariants
# =============================================================================


class ImpossibleError(RolloutError):
    """A condition that should never happen; always a bug in kuberoll."""

    kind = ErrorKind.INTERNAL

    def __init__(self, code: str) -> None:
        super().__init__(
            "You reached a point in kuberoll that should not happen and is almost "
            f"certainly a bug. Please report it with this error message. Code: {code}"
        )
        self.code = code


# =============================================================================
# Provider / API
# =============================================================================


class ProviderError(RolloutError):
    kind = ErrorKind.PROVIDER


class DrainError(RolloutError):
    kind = ErrorKind.PROVIDER

    def __init__(self, node: str, message: str) -> None:
        super().__init__(f"Error draining node {node}: {message}")
        self.node = node


class LoadBalancerNotReadyError(RolloutError):
    kind = ErrorKind.PROVIDER

    def __init__(self, service_name: str) -> None:
        super().__init__(f"LoadBalancer is not ready on service {service_name}")
        self.service_name = service_name


class LoadBalancerNameFormatError(RolloutError):
    kind = ErrorKind.INTERNAL

    def __init__(self, hostname: str) -> None:
        super().__init__(f"LoadBalancer hostname is in an unexpected format: {hostname}")
        self.hostname = hostname


class UnknownLoadBalancerTypeError(RolloutError):
    kind = ErrorKind.CONFIG

    def __init__(self, annotation: str, value: str) -> None:
        super().__init__(f"Unknown value for annotation {annotation} (value: {value})")
        self.annotation = annotation
        self.value = value


# =============================================================================
# Configuration / persistence
# =============================================================================


class ConfigError(RolloutError):
    kind = ErrorKind.CONFIG


class StateSchemaError(RolloutError):
    kind = ErrorKind.CONFIG

    def __init__(self, path: str, found: object, expected: int) -> None:
        super().__init__(
            f"State file {path} has schema version {found!r}, expected {expected}. "
            "Delete it or rerun with --ignore-recovery-file."
        )
        self.path = path


__all__ = [
    "ErrorKind",
    "RolloutError",
    "GroupNotFoundError",
    "LoadBalancerNotFoundError",
    "CapacityTimeoutError",
    "NodeReadyTimeoutError",
    "RegistrationTimeoutError",
    "PartialFailureError",
    "ImpossibleError",
    "ProviderError",
    "DrainError",
    "LoadBalancerNotReadyError",
    "LoadBalancerNameFormatError",
    "UnknownLoadBalancerTypeError",
    "ConfigError",
    "StateSchemaError",
]
