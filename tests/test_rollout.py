from __future__ import annotations

from pathlib import Path

import pytest

from kuberoll.errors import CapacityTimeoutError, ConfigError, PartialFailureError
from kuberoll.kube.services import LB_TYPE_ANNOTATION
from kuberoll.models import InstanceGroupSnapshot
from kuberoll.rollout import Components, Rollout, drain_groups
from kuberoll.state import STAGE_FLAGS, DeploymentState, StateStore, load_state

from tests.fakes import FakeAutoScaling, FakeEC2, FakeELB, FakeELBv2, FakeKube, dns_name, make_pod, make_service

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


@pytest.fixture
def workers(asg: FakeAutoScaling, kube: FakeKube, ec2: FakeEC2) -> None:
    """Group "workers" at desired=2/max=4 with instances i-1 and i-2."""
    asg.add_group("workers", desired=2, max_size=4, instance_ids=["i-1", "i-2"])
    kube.auto_nodes_from = ec2


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / ".kuberoll.state"


def make_rollout(components: Components, path: Path, max_retries: int = 5) -> Rollout:
    state, store = load_state(path, False, max_retries, 0.01)
    return Rollout("workers", state, store, components, drain_timeout=0)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_replaces_workers(
        self,
        workers: None,
        components: Components,
        state_path: Path,
        asg: FakeAutoScaling,
        ec2: FakeEC2,
        elb: FakeELB,
        elbv2: FakeELBv2,
        kube: FakeKube,
    ):
        kube.services = [
            make_service("web", "web-123.us-east-1.elb.amazonaws.com"),
            make_service("api", "api-456.elb.us-east-1.amazonaws.com", {LB_TYPE_ANNOTATION: "nlb"}),
        ]
        elb.in_service["web"] = {"i-3"}
        elbv2.add_load_balancer("api", ["api-80"])
        elbv2.set_health("api-80", "i-4", "healthy")
        kube.pods[dns_name("i-1")] = [make_pod("web-1"), make_pod("kube-proxy", daemonset=True)]
        kube.pods[dns_name("i-2")] = [make_pod("web-2")]

        await make_rollout(components, state_path).run()

        assert ("set_desired_capacity", {"AutoScalingGroupName": "workers", "DesiredCapacity": 4}) in asg.calls
        assert sorted(kube.cordoned) == [dns_name("i-1"), dns_name("i-2")]
        assert sorted(kube.evicted) == ["default/web-1", "default/web-2"]

        detaches = [kw["InstanceIds"] for name, kw in asg.calls if name == "detach_instances"]
        assert detaches == [["i-1", "i-2"]]
        assert ec2.terminated == [["i-1", "i-2"]]
        assert ec2.waits == [["i-1", "i-2"]]

        max_sizes = [kw["MaxSize"] for name, kw in asg.calls if name == "update_auto_scaling_group"]
        assert max_sizes == [4]
        assert asg.groups["workers"]["MaxSize"] == 4
        assert asg.groups["workers"]["DesiredCapacity"] == 2
        assert [i["InstanceId"] for i in asg.groups["workers"]["Instances"]] == ["i-3", "i-4"]

        assert not state_path.exists()

    @pytest.mark.asyncio
    async def test_raises_max_size_when_too_low(
        self, components: Components, state_path: Path, asg: FakeAutoScaling, kube: FakeKube, ec2: FakeEC2,
    ):
        asg.add_group("workers", desired=3, max_size=3, instance_ids=["i-1", "i-2", "i-3"])
        kube.auto_nodes_from = ec2

        await make_rollout(components, state_path).run()

        max_sizes = [kw["MaxSize"] for name, kw in asg.calls if name == "update_auto_scaling_group"]
        assert max_sizes == [6, 3]


class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_at_scale_up(
        self, workers: None, components: Components, state_path: Path, asg: FakeAutoScaling,
    ):
        StateStore(state_path).save(DeploymentState(
            groups=[InstanceGroupSnapshot("workers", 2, 4, ("i-1", "i-2"), max_capacity_for_update=4)],
            gather_info_done=True,
            set_max_capacity_done=True,
        ))

        await make_rollout(components, state_path).run()

        assert asg.calls[0] == ("set_desired_capacity", {"AutoScalingGroupName": "workers", "DesiredCapacity": 4})
        assert not state_path.exists()

    @pytest.mark.asyncio
    async def test_completed_stages_never_rerun(
        self, workers: None, components: Components, state_path: Path, asg: FakeAutoScaling,
        kube: FakeKube, ec2: FakeEC2,
    ):
        done = {flag: True for flag in STAGE_FLAGS if flag != "restore_capacity_done"}
        StateStore(state_path).save(DeploymentState(
            groups=[InstanceGroupSnapshot("workers", 2, 4, ("i-1", "i-2"), 4, ("i-3", "i-4"))],
            **done,
        ))

        await make_rollout(components, state_path).run()

        assert asg.calls == [("update_auto_scaling_group", {"AutoScalingGroupName": "workers", "MaxSize": 4})]
        assert kube.cordoned == []
        assert ec2.terminated == []

    @pytest.mark.asyncio
    async def test_stage_failure_keeps_progress(
        self, workers: None, components: Components, state_path: Path, asg: FakeAutoScaling, kube: FakeKube,
    ):
        kube.fail_cordon = {dns_name("i-2")}

        with pytest.raises(PartialFailureError) as exc:
            await make_rollout(components, state_path).run()

        assert exc.value.units == (dns_name("i-2"),)
        saved = StateStore(state_path).load()
        assert saved.wait_for_nodes_done
        assert not saved.cordon_nodes_done
        assert saved.group.new_instances == ("i-3", "i-4")
        assert asg.call_count("detach_instances") == 0

        kube.fail_cordon = set()
        await make_rollout(components, state_path).run()

        assert asg.call_count("set_desired_capacity") == 1
        assert not state_path.exists()

    @pytest.mark.asyncio
    async def test_refuses_state_of_another_group(
        self, workers: None, components: Components, state_path: Path, asg: FakeAutoScaling, ec2: FakeEC2,
    ):
        StateStore(state_path).save(DeploymentState(
            groups=[InstanceGroupSnapshot("batch", 1, 2, ("i-7",), max_capacity_for_update=2)],
            gather_info_done=True,
            set_max_capacity_done=True,
        ))

        with pytest.raises(ConfigError, match="batch"):
            await make_rollout(components, state_path).run()

        assert asg.calls == []
        assert ec2.terminated == []
        assert StateStore(state_path).load().group.name == "batch"

    @pytest.mark.asyncio
    async def test_unsteady_group_times_out_before_snapshot(
        self, components: Components, state_path: Path, asg: FakeAutoScaling,
    ):
        asg.launch_per_poll = 0
        asg.add_group("workers", desired=3, max_size=6, instance_ids=["i-1", "i-2"])

        with pytest.raises(CapacityTimeoutError):
            await make_rollout(components, state_path, max_retries=2).run()

        assert not state_path.exists()


class TestRetryBudget:
    def test_operator_value_wins(self, components: Components, state_path: Path):
        rollout = make_rollout(components, state_path, max_retries=7)
        rollout.state.group = InstanceGroupSnapshot("workers", 30, 60, ())
        assert rollout.max_retries == 7

    def test_derived_from_original_capacity(self, components: Components, state_path: Path):
        state, store = load_state(state_path, False, 0, 15.0)
        rollout = Rollout("workers", state, store, components)
        rollout.state.group = InstanceGroupSnapshot("workers", 11, 22, ())
        assert rollout.max_retries == 40


class TestDrainGroups:
    @pytest.mark.asyncio
    async def test_cordons_and_drains_every_group(
        self, components: Components, asg: FakeAutoScaling, kube: FakeKube, ec2: FakeEC2,
    ):
        asg.add_group("workers", desired=1, max_size=2, instance_ids=["i-1"])
        asg.groups["spot"] = {
            "AutoScalingGroupName": "spot",
            "DesiredCapacity": 1,
            "MaxSize": 1,
            "Instances": [{"InstanceId": "i-9"}],
        }
        ec2.add_instance("i-9")
        kube.pods[dns_name("i-9")] = [make_pod("batch")]

        await drain_groups(components, ["workers", "spot"], drain_timeout=0)

        assert sorted(kube.cordoned) == [dns_name("i-1"), dns_name("i-9")]
        assert kube.evicted == ["default/batch"]
        assert asg.call_count("set_desired_capacity") == 0
        assert ec2.terminated == []
