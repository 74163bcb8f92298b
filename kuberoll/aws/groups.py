"""Auto Scaling Group inspection and capacity control."""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from kuberoll.errors import CapacityTimeoutError, GroupNotFoundError, ProviderError
from kuberoll.models import InstanceGroupSnapshot
from kuberoll.wait import PollExhausted, poll_until

from .clients import AutoScalingClientFactory

if TYPE_CHECKING:
    from loguru import Logger

# The ASG launches in waves of roughly 10 instances; each wave gets 5 minutes.
INSTANCES_PER_WAVE = 10
SECONDS_PER_WAVE = 300


def default_max_retries(scale_up_count: int, sleep_between_retries: float) -> int:
    """Heuristic retry budget for capacity waits.

    ``ceil(scale_up_count / 10) * 300s / sleep_between_retries``, at least 1.

    >>> default_max_retries(10, 15)
    20
    >>> default_max_retries(11, 15)
    40
    """
    if sleep_between_retries <= 0:
        raise ValueError("sleep_between_retries must be > 0")
    waves = math.ceil(scale_up_count / INSTANCES_PER_WAVE)
    return max(1, int(waves * SECONDS_PER_WAVE / sleep_between_retries))


class AutoScalingGroups:
    """Reads and mutates Auto Scaling Groups.

    Combines the read side (snapshot, membership diff) with capacity control
    (desired capacity, max size, waiting for capacity).
    """

    def __init__(self, asg: AutoScalingClientFactory, log: Logger | None = None) -> None:
        self.asg = asg
        self.log = log or logger.bind(component="asg")

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def describe(self, group_name: str) -> dict[str, Any]:
        try:
            async with self.asg() as client:
                response = await client.describe_auto_scaling_groups(
                    AutoScalingGroupNames=[group_name],
                )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Error describing ASG {group_name}: {e}", cause=e) from e

        groups = response.get("AutoScalingGroups", [])
        if not groups:
            raise GroupNotFoundError(group_name)
        return groups[0]

    async def snapshot(self, group_name: str) -> InstanceGroupSnapshot:
        self.log.info("Retrieving current ASG info for {group}", group=group_name)
        group = await self.describe(group_name)
        instance_ids = tuple(_instance_ids(group))
        snapshot = InstanceGroupSnapshot(
            name=group_name,
            original_capacity=int(group["DesiredCapacity"]),
            original_max_size=int(group["MaxSize"]),
            original_instances=instance_ids,
        )
        self.log.info(
            "ASG {group}: desired capacity {desired}, max size {max_size}, current capacity {current}",
            group=group_name,
            desired=snapshot.original_capacity,
            max_size=snapshot.original_max_size,
            current=len(instance_ids),
        )
        return snapshot

    async def diff_new(self, group_name: str, prior_ids: Iterable[str]) -> set[str]:
        """Instance IDs currently in the group that were not in ``prior_ids``."""
        group = await self.describe(group_name)
        return set(_instance_ids(group)) - set(prior_ids)

    # -------------------------------------------------------------------------
    # Capacity control
    # -------------------------------------------------------------------------

    async def set_desired_capacity(self, group_name: str, desired: int) -> None:
        """Request a new desired capacity. Does not wait for the group to scale."""
        self.log.info("Updating ASG {group} desired capacity to {n}", group=group_name, n=desired)
        try:
            async with self.asg() as client:
                await client.set_desired_capacity(
                    AutoScalingGroupName=group_name,
                    DesiredCapacity=desired,
                )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(
                f"Error setting desired capacity of ASG {group_name} to {desired}: {e}", cause=e,
            ) from e

    async def set_max_size(self, group_name: str, max_size: int) -> None:
        """Change only the group ceiling; this never triggers scaling by itself."""
        self.log.info("Updating ASG {group} max size to {n}", group=group_name, n=max_size)
        try:
            async with self.asg() as client:
                await client.update_auto_scaling_group(
                    AutoScalingGroupName=group_name,
                    MaxSize=max_size,
                )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(
                f"Error setting max size of ASG {group_name} to {max_size}: {e}", cause=e,
            ) from e

    async def wait_for_capacity(
        self,
        group_name: str,
        max_retries: int,
        sleep_between_retries: float,
    ) -> None:
        self.log.info("Waiting for ASG {group} to reach desired capacity", group=group_name)

        def at_capacity(group: dict[str, Any]) -> bool:
            current = len(group.get("Instances", []))
            desired = int(group["DesiredCapacity"])
            if current != desired:
                self.log.info(
                    "ASG {group} not yet at desired capacity {desired} (current {current})",
                    group=group_name, desired=desired, current=current,
                )
            return current == desired

        try:
            await poll_until(
                lambda: self.describe(group_name),
                at_capacity,
                max_attempts=max_retries,
                interval=sleep_between_retries,
                description=f"ASG {group_name} capacity",
                log=self.log,
            )
        except PollExhausted as e:
            raise CapacityTimeoutError(
                group_name, "Timed out waiting for desired capacity to be reached.",
            ) from e
        self.log.info("ASG {group} met desired capacity", group=group_name)

    async def scale_up(
        self,
        group_name: str,
        prior_ids: Iterable[str],
        desired: int,
        max_retries: int,
        sleep_between_retries: float,
    ) -> set[str]:
        """Set desired capacity, wait for it, and return the newly launched IDs."""
        prior = set(prior_ids)
        await self.set_desired_capacity(group_name, desired)
        await self.wait_for_capacity(group_name, max_retries, sleep_between_retries)
        new_ids = await self.diff_new(group_name, prior)
        self.log.info(
            "Launched {n} new instances in ASG {group}: {ids}",
            n=len(new_ids), group=group_name, ids=",".join(sorted(new_ids)),
        )
        return new_ids


def _instance_ids(group: dict[str, Any]) -> list[str]:
    return [inst["InstanceId"] for inst in group.get("Instances", [])]
