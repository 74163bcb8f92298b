"""EC2 instance lookups and retirement (detach + terminate)."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError, WaiterError
from loguru import logger

from kuberoll.conc import raise_for_failures
from kuberoll.errors import ProviderError
from kuberoll.models import UnitOutcome, chunked

from .clients import AutoScalingClientFactory, EC2ClientFactory

if TYPE_CHECKING:
    from loguru import Logger

# Provider limits on the number of instance IDs per call.
DETACH_BATCH_SIZE = 20
TERMINATE_BATCH_SIZE = 1000


class Instances:
    """EC2 instance details and node-name resolution."""

    def __init__(self, ec2: EC2ClientFactory, log: Logger | None = None) -> None:
        self.ec2 = ec2
        self.log = log or logger.bind(component="ec2")

    async def describe(self, instance_ids: Sequence[str]) -> list[dict[str, Any]]:
        if not instance_ids:
            return []

        instances: list[dict[str, Any]] = []
        params: dict[str, Any] = {"InstanceIds": list(instance_ids)}
        try:
            async with self.ec2() as client:
                while True:
                    response = await client.describe_instances(**params)
                    for reservation in response.get("Reservations", []):
                        instances.extend(reservation.get("Instances", []))
                    token = response.get("NextToken")
                    if not token:
                        break
                    params["NextToken"] = token
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Error describing instances: {e}", cause=e) from e
        return instances

    async def node_names(self, instance_ids: Sequence[str]) -> list[str]:
        """Kubernetes node names for the instances.

        EKS registers nodes under the instance's private DNS name.
        """
        instances = await self.describe(instance_ids)
        return [inst["PrivateDnsName"] for inst in instances if inst.get("PrivateDnsName")]


class InstanceRetirement:
    """Detaches instances from their group and terminates them in batches."""

    def __init__(
        self,
        asg: AutoScalingClientFactory,
        ec2: EC2ClientFactory,
        log: Logger | None = None,
        waiter_delay: float = 15.0,
        waiter_max_attempts: int = 40,
    ) -> None:
        self.asg = asg
        self.ec2 = ec2
        self.log = log or logger.bind(component="retirement")
        self.waiter_delay = waiter_delay
        self.waiter_max_attempts = waiter_max_attempts

    async def detach(self, group_name: str, instance_ids: Sequence[str]) -> None:
        """Detach instances, decrementing desired capacity so they are not replaced.

        Batches are sent sequentially; the first failing batch aborts the rest.
        """
        self.log.info("Detaching {n} instances from ASG {group}", n=len(instance_ids), group=group_name)

        for batch in chunked(list(instance_ids), DETACH_BATCH_SIZE):
            try:
                async with self.asg() as client:
                    await client.detach_instances(
                        AutoScalingGroupName=group_name,
                        InstanceIds=batch,
                        ShouldDecrementDesiredCapacity=True,
                    )
            except (ClientError, BotoCoreError) as e:
                raise ProviderError(
                    f"Error detaching instances {','.join(batch)} from ASG {group_name}: {e}",
                    cause=e,
                ) from e

        self.log.info("Detached {n} instances from ASG {group}", n=len(instance_ids), group=group_name)

    async def terminate(self, instance_ids: Sequence[str]) -> None:
        """Terminate instances in batches, waiting for each batch to shut down.

        A failing batch is recorded and the next batch is still attempted.

        Raises:
            PartialFailureError: One entry per failing batch.
        """
        self.log.info(
            "Terminating {n} instances, in groups of up to {size} instances",
            n=len(instance_ids), size=TERMINATE_BATCH_SIZE,
        )

        outcomes: list[UnitOutcome] = []
        for idx, batch in enumerate(chunked(list(instance_ids), TERMINATE_BATCH_SIZE)):
            unit = f"batch {idx} ({len(batch)} instances)"
            try:
                await self._terminate_batch(idx, batch)
            except (ClientError, BotoCoreError, WaiterError) as e:
                self.log.error(
                    "Error terminating instances in batch {idx}: {err}. Instance ids: {ids}",
                    idx=idx, err=e, ids=",".join(batch),
                )
                outcomes.append(UnitOutcome(unit=unit, error=e))
                continue
            outcomes.append(UnitOutcome(unit=unit))

        raise_for_failures("terminating instances", outcomes)
        self.log.info("Successfully shut down all {n} instances", n=len(instance_ids))

    async def _terminate_batch(self, idx: int, batch: list[str]) -> None:
        async with self.ec2() as client:
            await client.terminate_instances(InstanceIds=batch)
            self.log.info("Terminated {n} instances from batch {idx}, waiting for shutdown", n=len(batch), idx=idx)

            waiter = client.get_waiter("instance_terminated")
            await waiter.wait(
                InstanceIds=batch,
                WaiterConfig={"Delay": self.waiter_delay, "MaxAttempts": self.waiter_max_attempts},
            )
        self.log.info("Successfully shut down {n} instances from batch {idx}", n=len(batch), idx=idx)
