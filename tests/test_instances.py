from __future__ import annotations

import pytest

from kuberoll.aws.clients import AutoScalingClientFactory, EC2ClientFactory
from kuberoll.aws.instances import InstanceRetirement, Instances
from kuberoll.errors import ErrorKind, PartialFailureError, ProviderError

from tests.fakes import FakeAutoScaling, FakeEC2, dns_name, factory

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def ids(n: int) -> list[str]:
    return [f"i-{k}" for k in range(1, n + 1)]


@pytest.fixture
def retirement(asg: FakeAutoScaling, ec2: FakeEC2) -> InstanceRetirement:
    return InstanceRetirement(factory(AutoScalingClientFactory, asg), factory(EC2ClientFactory, ec2))


class TestNodeNames:
    @pytest.mark.asyncio
    async def test_resolves_private_dns_names(self, ec2: FakeEC2):
        for i in ids(3):
            ec2.add_instance(i)
        instances = Instances(factory(EC2ClientFactory, ec2))
        assert await instances.node_names(ids(3)) == [dns_name(i) for i in ids(3)]

    @pytest.mark.asyncio
    async def test_follows_next_token(self):
        ec2 = FakeEC2(page_size=2)
        for i in ids(5):
            ec2.add_instance(i)
        instances = Instances(factory(EC2ClientFactory, ec2))

        names = await instances.node_names(ids(5))

        assert len(names) == 5
        assert ec2.describe_calls == 3

    @pytest.mark.asyncio
    async def test_no_ids_makes_no_call(self, ec2: FakeEC2):
        instances = Instances(factory(EC2ClientFactory, ec2))
        assert await instances.node_names([]) == []
        assert ec2.describe_calls == 0


class TestDetach:
    @pytest.mark.asyncio
    async def test_chunks_of_twenty(self, retirement: InstanceRetirement, asg: FakeAutoScaling):
        asg.add_group("workers", desired=25, max_size=50, instance_ids=ids(25))

        await retirement.detach("workers", ids(25))

        calls = [kw for name, kw in asg.calls if name == "detach_instances"]
        assert [len(c["InstanceIds"]) for c in calls] == [20, 5]
        assert all(c["ShouldDecrementDesiredCapacity"] for c in calls)
        assert asg.groups["workers"]["DesiredCapacity"] == 0

    @pytest.mark.asyncio
    async def test_first_failure_aborts_remaining_chunks(self, retirement: InstanceRetirement, asg: FakeAutoScaling):
        asg.add_group("workers", desired=25, max_size=50, instance_ids=ids(25))
        asg.fail_detach_calls = {0}

        with pytest.raises(ProviderError):
            await retirement.detach("workers", ids(25))

        assert asg.call_count("detach_instances") == 1


class TestTerminate:
    @pytest.mark.asyncio
    async def test_chunks_of_one_thousand(self, retirement: InstanceRetirement, ec2: FakeEC2):
        await retirement.terminate(ids(1500))

        assert [len(batch) for batch in ec2.terminated] == [1000, 500]
        assert [len(batch) for batch in ec2.waits] == [1000, 500]

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_the_next(self, retirement: InstanceRetirement, ec2: FakeEC2):
        ec2.fail_terminate_calls = {0}

        with pytest.raises(PartialFailureError) as exc:
            await retirement.terminate(ids(1500))

        assert len(ec2.terminated) == 2
        assert exc.value.kind is ErrorKind.PARTIAL
        assert exc.value.units == ("batch 0 (1000 instances)",)

    @pytest.mark.asyncio
    async def test_names_every_failing_chunk(self, retirement: InstanceRetirement, ec2: FakeEC2):
        ec2.fail_terminate_calls = {0}
        ec2.fail_wait_for = {"i-1001"}

        with pytest.raises(PartialFailureError) as exc:
            await retirement.terminate(ids(1500))

        assert exc.value.units == ("batch 0 (1000 instances)", "batch 1 (500 instances)")

    @pytest.mark.asyncio
    async def test_waits_for_each_chunk(self, retirement: InstanceRetirement, ec2: FakeEC2):
        await retirement.terminate(["i-1", "i-2"])
        assert ec2.terminated == [["i-1", "i-2"]]
        assert ec2.waits == [["i-1", "i-2"]]
