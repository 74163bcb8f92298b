"""Core value types shared across the rollout engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


# =============================================================================
# Instance Group
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceGroupSnapshot:
    """Capacity and membership of an Auto Scaling Group.

    ``original_instances`` is captured before any mutation and never changes.
    ``new_instances`` stays empty until the scale up stage completes.
    """

    name: str
    original_capacity: int
    original_max_size: int
    original_instances: tuple[str, ...]
    max_capacity_for_update: int = 0
    new_instances: tuple[str, ...] = ()

    @property
    def scale_up_count(self) -> int:
        return self.max_capacity_for_update - self.original_capacity

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "original_capacity": self.original_capacity,
            "original_max_size": self.original_max_size,
            "max_capacity_for_update": self.max_capacity_for_update,
            "original_instances": list(self.original_instances),
            "new_instances": list(self.new_instances),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstanceGroupSnapshot:
        return cls(
            name=str(data["name"]),
            original_capacity=int(data["original_capacity"]),
            original_max_size=int(data["original_max_size"]),
            max_capacity_for_update=int(data.get("max_capacity_for_update", 0)),
            original_instances=tuple(str(i) for i in data.get("original_instances", [])),
            new_instances=tuple(str(i) for i in data.get("new_instances", [])),
        )


# =============================================================================
# Load Balancers
# =============================================================================


class LoadBalancerKind(StrEnum):
    CLASSIC = "classic"
    NETWORK = "network"
    APPLICATION = "application"
    UNKNOWN = "unknown"


class TargetKind(StrEnum):
    INSTANCE = "instance"
    IP = "ip"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class LoadBalancerDescriptor:
    name: str
    kind: LoadBalancerKind
    target: TargetKind

    @property
    def is_v2(self) -> bool:
        return self.kind in (LoadBalancerKind.NETWORK, LoadBalancerKind.APPLICATION)

    def describe(self) -> str:
        return f"{self.kind} load balancer {self.name} ({self.target} targets)"


# =============================================================================
# Fan-out outcomes
# =============================================================================


@dataclass(frozen=True, slots=True)
class UnitOutcome:
    """Result of one concurrent unit of work (a node, target group or chunk)."""

    unit: str
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunked[T](items: list[T] | tuple[T, ...], size: int) -> list[list[T]]:
    """Split items into consecutive groups of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("size must be > 0")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
