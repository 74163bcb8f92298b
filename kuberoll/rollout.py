"""The rollout state machine.

A rollout replaces every worker in an Auto Scaling Group without downtime:

    gather_info -> set_max_capacity -> scale_up -> wait_for_nodes
      -> cordon_nodes -> drain_nodes -> detach_instances
      -> terminate_instances -> restore_capacity

Progress is saved after every stage. A failed stage aborts the run and leaves
the state file on disk, so rerunning the same command picks up where it
stopped. Nothing already applied is undone.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from injector import Injector
from loguru import logger

from kuberoll.aws.clients import (
    AutoScalingClientFactory,
    EC2ClientFactory,
    ELBClientFactory,
    ELBv2ClientFactory,
)
from kuberoll.aws.groups import AutoScalingGroups, default_max_retries
from kuberoll.aws.instances import InstanceRetirement, Instances
from kuberoll.aws.loadbalancers import LoadBalancerRegistration, RegistrationPolicy
from kuberoll.errors import ConfigError, RolloutError
from kuberoll.kube.client import KubeClient
from kuberoll.kube.nodes import NodeLifecycle, NodeReadiness
from kuberoll.kube.services import discover_load_balancers
from kuberoll.state import DeploymentState, StateStore

if TYPE_CHECKING:
    from loguru import Logger


# =============================================================================
# Components
# =============================================================================


@dataclass(frozen=True, slots=True)
class Components:
    """Everything a rollout talks to."""

    groups: AutoScalingGroups
    instances: Instances
    retirement: InstanceRetirement
    readiness: NodeReadiness
    lifecycle: NodeLifecycle
    registration: LoadBalancerRegistration
    kube: KubeClient

    @classmethod
    def from_injector(
        cls,
        injector: Injector,
        policy: RegistrationPolicy | None = None,
    ) -> Components:
        asg = injector.get(AutoScalingClientFactory)
        ec2 = injector.get(EC2ClientFactory)
        kube = injector.get(KubeClient)
        return cls(
            groups=AutoScalingGroups(asg),
            instances=Instances(ec2),
            retirement=InstanceRetirement(asg, ec2),
            readiness=NodeReadiness(kube),
            lifecycle=NodeLifecycle(kube),
            registration=LoadBalancerRegistration(
                injector.get(ELBClientFactory),
                injector.get(ELBv2ClientFactory),
                policy=policy,
            ),
            kube=kube,
        )


# =============================================================================
# Rollout
# =============================================================================


class Rollout:
    """Runs the rollout stages for one group against a DeploymentState.

    Args:
        group_name: Auto Scaling Group to roll.
        state: Loaded or fresh state; mutated in place.
        store: Where the state is persisted after each stage.
        components: AWS and Kubernetes components.
        drain_timeout: Seconds allowed to drain each node; 0 means no limit.
        delete_local_data: Allow evicting pods that use emptyDir volumes.
    """

    def __init__(
        self,
        group_name: str,
        state: DeploymentState,
        store: StateStore,
        components: Components,
        drain_timeout: float = 900.0,
        delete_local_data: bool = False,
        log: Logger | None = None,
    ) -> None:
        self.group_name = group_name
        self.state = state
        self.store = store
        self.c = components
        self.drain_timeout = drain_timeout
        self.delete_local_data = delete_local_data
        self.log = (log or logger.bind(component="rollout")).bind(group=group_name)

    async def run(self) -> None:
        self.log.info("Beginning roll out for ASG {group}", group=self.group_name)
        if self.state.gather_info_done and self.state.group.name != self.group_name:
            raise ConfigError(
                f"State file {self.store.path} belongs to ASG {self.state.group.name}, not {self.group_name}; "
                "finish that rollout or rerun with --ignore-recovery-file"
            )

        await self.gather_info()
        await self.set_max_capacity()
        await self.scale_up()
        await self.wait_for_nodes()
        await self.cordon_nodes()
        await self.drain_nodes()
        await self.detach_instances()
        await self.terminate_instances()
        await self.restore_capacity()

        self.store.clear()
        self.log.info("Successfully finished roll out for ASG {group}", group=self.group_name)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def retries_for(self, capacity: int) -> int:
        """Operator supplied retry count, or the heuristic for ``capacity``."""
        if self.state.max_retries > 0:
            return self.state.max_retries
        retries = default_max_retries(capacity, self.state.sleep_between_retries)
        self.log.debug(
            "No max retries set. Defaulted to {n} based on sleep between retries of {sleep}s and scale up count {count}",
            n=retries, sleep=self.state.sleep_between_retries, count=capacity,
        )
        return retries

    @property
    def max_retries(self) -> int:
        return self.retries_for(self.state.group.original_capacity)

    def _skip(self, flag: str, message: str) -> bool:
        if getattr(self.state, flag):
            self.log.info("{message} - skipping", message=message)
            return True
        return False

    def _complete(self, flag: str) -> None:
        setattr(self.state, flag, True)
        self.store.save(self.state)

    def _remediate(self, *lines: str) -> None:
        for line in lines:
            self.log.error(line)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def gather_info(self) -> None:
        """Snapshot the group once it is in a steady state."""
        if self._skip("gather_info_done", "ASG info already gathered"):
            return

        snapshot = await self.c.groups.snapshot(self.group_name)
        if snapshot.original_capacity != len(snapshot.original_instances):
            self.log.info("Ensuring ASG is in steady state (current capacity = desired capacity)")
            try:
                await self.c.groups.wait_for_capacity(
                    self.group_name,
                    self.retries_for(snapshot.original_capacity),
                    self.state.sleep_between_retries,
                )
            except RolloutError:
                self._remediate("Error waiting for ASG to reach steady state. Try again after the ASG is in a steady state.")
                raise
            self.log.info("Verified ASG is in steady state (current capacity = desired capacity)")
            snapshot = await self.c.groups.snapshot(self.group_name)

        self.state.group = snapshot
        self._complete("gather_info_done")

    async def set_max_capacity(self) -> None:
        """Make room for twice the original capacity."""
        if self._skip("set_max_capacity_done", "Max capacity already set"):
            return

        group = self.state.group
        ceiling = group.original_capacity * 2
        if group.original_max_size < ceiling:
            await self.c.groups.set_max_size(group.name, ceiling)
        else:
            self.log.info(
                "ASG {group} max size {max_size} already allows {n} instances",
                group=group.name, max_size=group.original_max_size, n=ceiling,
            )

        self.state.group = replace(group, max_capacity_for_update=ceiling)
        self._complete("set_max_capacity_done")

    async def scale_up(self) -> None:
        if self._skip("scale_up_done", "Scale up already done"):
            return

        group = self.state.group
        self.log.info(
            "Starting with the following list of instances in ASG: {ids}",
            ids=",".join(group.original_instances),
        )
        self.log.info("Launching {n} new nodes on ASG {group}", n=group.scale_up_count, group=group.name)
        new_ids = await self.c.groups.scale_up(
            group.name,
            group.original_instances,
            group.max_capacity_for_update,
            self.max_retries,
            self.state.sleep_between_retries,
        )
        self.log.info("Successfully launched new nodes on ASG {group}", group=group.name)

        self.state.group = replace(group, new_instances=tuple(sorted(new_ids)))
        self._complete("scale_up_done")

    async def wait_for_nodes(self) -> None:
        """Wait until the new nodes are Ready and registered with load balancers."""
        if self._skip("wait_for_nodes_done", "Wait for nodes already done"):
            return

        group = self.state.group
        try:
            node_names = await self.c.instances.node_names(group.new_instances)
            await self.c.readiness.wait_ready(node_names, self.max_retries, self.state.sleep_between_retries)

            load_balancers = await discover_load_balancers(self.c.kube, log=self.log)
            await self.c.registration.wait_for_any_registered(load_balancers, group.new_instances)
        except RolloutError:
            self._remediate(
                "Error while waiting for new nodes to be ready.",
                "Either resume with the recovery file or terminate the new instances.",
            )
            raise

        self.log.info("Successfully confirmed new nodes were launched on ASG {group}", group=group.name)
        self._complete("wait_for_nodes_done")

    async def cordon_nodes(self) -> None:
        if self._skip("cordon_nodes_done", "Nodes already cordoned"):
            return

        group = self.state.group
        self.log.info("Cordoning old instances in ASG {group} to prevent Pod scheduling", group=group.name)
        try:
            node_names = await self.c.instances.node_names(group.original_instances)
            await self.c.lifecycle.cordon(node_names)
        except RolloutError:
            self._remediate(
                "Error while cordoning nodes.",
                "Either resume with the recovery file or continue to cordon nodes that failed manually, "
                "and then terminate the underlying instances to complete the rollout.",
            )
            raise

        self.log.info("Successfully cordoned old instances in ASG {group}", group=group.name)
        self._complete("cordon_nodes_done")

    async def drain_nodes(self) -> None:
        if self._skip("drain_nodes_done", "Nodes already drained"):
            return

        group = self.state.group
        self.log.info("Draining Pods on old instances in ASG {group}", group=group.name)
        try:
            node_names = await self.c.instances.node_names(group.original_instances)
            await self.c.lifecycle.drain(node_names, self.drain_timeout, self.delete_local_data)
        except RolloutError:
            self._remediate(
                "Error while draining nodes.",
                "Either resume with the recovery file or continue to drain nodes that failed manually, "
                "and then terminate the underlying instances to complete the rollout.",
            )
            raise

        self.log.info("Successfully drained all scheduled Pods on old instances in ASG {group}", group=group.name)
        self._complete("drain_nodes_done")

    async def detach_instances(self) -> None:
        if self._skip("detach_instances_done", "Instances already detached"):
            return

        group = self.state.group
        self.log.info(
            "Removing old nodes from ASG {group}: {ids}",
            group=group.name, ids=",".join(group.original_instances),
        )
        try:
            await self.c.retirement.detach(group.name, group.original_instances)
        except RolloutError:
            self._remediate(
                "Error while detaching the old instances.",
                "Either resume with the recovery file or continue to detach the old instances "
                "and then terminate the underlying instances to complete the rollout.",
            )
            raise

        self._complete("detach_instances_done")

    async def terminate_instances(self) -> None:
        if self._skip("terminate_instances_done", "Instances already terminated"):
            return

        group = self.state.group
        self.log.info("Terminating old nodes: {ids}", ids=",".join(group.original_instances))
        try:
            await self.c.retirement.terminate(group.original_instances)
        except RolloutError:
            self._remediate(
                "Error while terminating the old instances.",
                "Either resume with the recovery file or continue to terminate the underlying instances "
                "to complete the rollout.",
            )
            raise

        self.log.info("Successfully removed old nodes from ASG {group}", group=group.name)
        self._complete("terminate_instances_done")

    async def restore_capacity(self) -> None:
        if self._skip("restore_capacity_done", "Capacity already restored"):
            return

        group = self.state.group
        try:
            await self.c.groups.set_max_size(group.name, group.original_max_size)
        except RolloutError:
            self._remediate(
                f"Error while restoring ASG {group.name} max size to {group.original_max_size}.",
                "Either resume with the recovery file or adjust ASG max size manually to complete the rollout.",
            )
            raise

        self._complete("restore_capacity_done")


# =============================================================================
# Drain
# =============================================================================


async def drain_groups(
    components: Components,
    group_names: Sequence[str],
    drain_timeout: float = 900.0,
    delete_local_data: bool = False,
    log: Logger | None = None,
) -> None:
    """Cordon and drain every instance of the given groups.

    Unlike a rollout, this keeps no state and never touches capacity.
    """
    log = log or logger.bind(component="drain")

    instance_ids: list[str] = []
    for name in group_names:
        snapshot = await components.groups.snapshot(name)
        instance_ids.extend(snapshot.original_instances)
    log.info(
        "Found {n} instances across ASGs {groups}",
        n=len(instance_ids), groups=",".join(group_names),
    )

    node_names = await components.instances.node_names(instance_ids)

    log.info("Cordoning nodes to prevent Pod scheduling")
    await components.lifecycle.cordon(node_names)
    log.info("Draining Pods from nodes")
    await components.lifecycle.drain(node_names, drain_timeout, delete_local_data)
    log.info("Successfully drained all nodes of ASGs {groups}", groups=",".join(group_names))
