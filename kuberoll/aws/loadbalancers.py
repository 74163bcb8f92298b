"""Waiting for new instances to register with service load balancers.

We wait for *any* of the new instances to be registered and healthy rather
than all of them. A single registered instance is enough to keep the service
up while the old nodes are drained; waiting for every instance would lengthen
the rollout considerably for little extra safety.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from kuberoll.conc import gather_outcomes, raise_for_failures
from kuberoll.errors import (
    ImpossibleError,
    LoadBalancerNotFoundError,
    ProviderError,
    RegistrationTimeoutError,
    RolloutError,
)
from kuberoll.models import LoadBalancerDescriptor, LoadBalancerKind, TargetKind, UnitOutcome

from .clients import ELBClientFactory, ELBv2ClientFactory

if TYPE_CHECKING:
    from loguru import Logger


@dataclass(frozen=True, slots=True)
class RegistrationPolicy:
    """Polling budget for load balancer registration.

    Independent of the rollout's max_retries / sleep_between_retries.
    The default is 40 attempts, 15 seconds apart (10 minutes).
    """

    max_attempts: int = 40
    interval: float = 15.0


class _NotRegisteredYet(Exception):
    """No expected instance registered yet - retry."""


class LoadBalancerRegistration:
    def __init__(
        self,
        elb: ELBClientFactory,
        elbv2: ELBv2ClientFactory,
        policy: RegistrationPolicy | None = None,
        log: Logger | None = None,
    ) -> None:
        self.elb = elb
        self.elbv2 = elbv2
        self.policy = policy or RegistrationPolicy()
        self.log = log or logger.bind(component="elb")

    async def wait_for_any_registered(
        self,
        load_balancers: Sequence[LoadBalancerDescriptor],
        instance_ids: Sequence[str],
    ) -> None:
        """Wait until at least one of ``instance_ids`` is healthy on every load balancer.

        Load balancers with IP targets route straight to pods and are skipped.

        Raises:
            PartialFailureError: One entry per load balancer that failed.
        """
        self.log.info("Verifying new nodes are registered to external load balancers")

        outcomes: list[UnitOutcome] = []
        for lb in load_balancers:
            match lb.target:
                case TargetKind.IP:
                    self.log.debug("Skipping {lb}", lb=lb.describe())
                    continue
                case TargetKind.UNKNOWN:
                    outcomes.append(UnitOutcome(
                        unit=lb.name, error=ImpossibleError("UNKNOWN_ELB_TARGET_TYPE_IN_WAIT"),
                    ))
                    continue

            try:
                match lb.kind:
                    case LoadBalancerKind.CLASSIC:
                        await self.wait_classic(lb.name, instance_ids)
                    case LoadBalancerKind.NETWORK | LoadBalancerKind.APPLICATION:
                        await self.wait_v2(lb.name, instance_ids)
                    case _:
                        raise ImpossibleError("UNKNOWN_ELB_TYPE_IN_WAIT")
            except RolloutError as e:
                outcomes.append(UnitOutcome(unit=lb.name, error=e))
                continue
            outcomes.append(UnitOutcome(unit=lb.name))

        raise_for_failures("waiting for load balancer registration", outcomes)

    # -------------------------------------------------------------------------
    # Classic
    # -------------------------------------------------------------------------

    async def wait_classic(self, lb_name: str, instance_ids: Sequence[str]) -> None:
        self.log.info("Waiting for at least one instance to be in service for elb {lb}", lb=lb_name)
        instances = [{"InstanceId": i} for i in instance_ids]

        @retry(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_fixed(self.policy.interval),
            retry=retry_if_exception_type(_NotRegisteredYet),
            reraise=True,
        )
        async def poll() -> None:
            try:
                async with self.elb() as client:
                    response = await client.describe_instance_health(
                        LoadBalancerName=lb_name,
                        Instances=instances,
                    )
            except ClientError as e:
                # Instances not yet registered to the ELB are reported as invalid.
                if _error_code(e) == "InvalidInstance":
                    raise _NotRegisteredYet() from e
                raise
            states = response.get("InstanceStates", [])
            if not any(s.get("State") == "InService" for s in states):
                raise _NotRegisteredYet()

        try:
            await poll()
        except _NotRegisteredYet as e:
            raise RegistrationTimeoutError(f"elb {lb_name}", self.policy.max_attempts) from e
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Error describing instance health for elb {lb_name}: {e}", cause=e) from e
        self.log.info("At least one instance in service for elb {lb}", lb=lb_name)

    # -------------------------------------------------------------------------
    # ALB / NLB
    # -------------------------------------------------------------------------

    async def target_groups(self, lb_name: str) -> list[dict[str, Any]]:
        """Target groups of a v2 load balancer; a service with several ports has several."""
        try:
            async with self.elbv2() as client:
                response = await client.describe_load_balancers(Names=[lb_name])
                lbs = response.get("LoadBalancers", [])
                if not lbs:
                    raise LoadBalancerNotFoundError(lb_name)
                if len(lbs) > 1:
                    raise ImpossibleError("MORE_THAN_ONE_ELB_IN_LOOKUP")

                tg_response = await client.describe_target_groups(
                    LoadBalancerArn=lbs[0]["LoadBalancerArn"],
                )
        except ClientError as e:
            if _error_code(e) == "LoadBalancerNotFound":
                raise LoadBalancerNotFoundError(lb_name) from e
            raise ProviderError(f"Error looking up target groups of {lb_name}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise ProviderError(f"Error looking up target groups of {lb_name}: {e}", cause=e) from e

        groups = tg_response.get("TargetGroups", [])
        if not groups:
            raise ImpossibleError("ELB_HAS_UNEXPECTED_NUMBER_OF_TARGET_GROUPS")
        return groups

    async def wait_v2(self, lb_name: str, instance_ids: Sequence[str]) -> None:
        target_groups = await self.target_groups(lb_name)
        expected = set(instance_ids)

        async def wait_one(target_group: dict[str, Any]) -> None:
            await self._wait_target_group(lb_name, target_group, expected)

        outcomes = await gather_outcomes(
            wait_one,
            target_groups,
            unit=lambda tg: tg.get("TargetGroupName", tg["TargetGroupArn"]),
        )
        for outcome in outcomes:
            if not outcome.ok:
                self.log.error(
                    "Error waiting for instance to register to target group {tg}: {err}",
                    tg=outcome.unit, err=outcome.error,
                )
        raise_for_failures(f"waiting for target groups of {lb_name}", outcomes)

    async def _wait_target_group(
        self,
        lb_name: str,
        target_group: dict[str, Any],
        expected: set[str],
    ) -> None:
        tg_name = target_group.get("TargetGroupName", target_group["TargetGroupArn"])
        log = self.log.bind(target_group=tg_name)
        log.info(
            "Waiting for expected targets to be registered to target group {tg} of load balancer {lb}",
            tg=tg_name, lb=lb_name,
        )

        # API errors are raised as-is: they are fatal and not retried.
        @retry(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_fixed(self.policy.interval),
            retry=retry_if_exception_type(_NotRegisteredYet),
            reraise=True,
        )
        async def poll() -> None:
            async with self.elbv2() as client:
                response = await client.describe_target_health(
                    TargetGroupArn=target_group["TargetGroupArn"],
                )
            for description in response.get("TargetHealthDescriptions", []):
                target_id = description.get("Target", {}).get("Id")
                state = description.get("TargetHealth", {}).get("State")
                if target_id in expected and state == "healthy":
                    return
            raise _NotRegisteredYet()

        try:
            await poll()
        except _NotRegisteredYet as e:
            raise RegistrationTimeoutError(f"target group {tg_name}", self.policy.max_attempts) from e
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Error describing target health of {tg_name}: {e}", cause=e) from e
        log.info("Instance registered to target group {tg}", tg=tg_name)


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")
