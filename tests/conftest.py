from __future__ import annotations

import pytest

from kuberoll.aws.clients import (
    AutoScalingClientFactory,
    EC2ClientFactory,
    ELBClientFactory,
    ELBv2ClientFactory,
)
from kuberoll.aws.groups import AutoScalingGroups
from kuberoll.aws.instances import InstanceRetirement, Instances
from kuberoll.aws.loadbalancers import LoadBalancerRegistration, RegistrationPolicy
from kuberoll.kube.nodes import NodeLifecycle, NodeReadiness
from kuberoll.rollout import Components

from tests.fakes import FakeAutoScaling, FakeEC2, FakeELB, FakeELBv2, FakeKube, factory


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def asg(ec2: FakeEC2) -> FakeAutoScaling:
    return FakeAutoScaling(ec2)


@pytest.fixture
def elb() -> FakeELB:
    return FakeELB()


@pytest.fixture
def elbv2() -> FakeELBv2:
    return FakeELBv2()


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def policy() -> RegistrationPolicy:
    return RegistrationPolicy(max_attempts=3, interval=0)


@pytest.fixture
def components(
    asg: FakeAutoScaling,
    ec2: FakeEC2,
    elb: FakeELB,
    elbv2: FakeELBv2,
    kube: FakeKube,
    policy: RegistrationPolicy,
) -> Components:
    asg_factory = factory(AutoScalingClientFactory, asg)
    ec2_factory = factory(EC2ClientFactory, ec2)
    return Components(
        groups=AutoScalingGroups(asg_factory),
        instances=Instances(ec2_factory),
        retirement=InstanceRetirement(asg_factory, ec2_factory),
        readiness=NodeReadiness(kube),  # type: ignore[arg-type]
        lifecycle=NodeLifecycle(kube, poll_interval=0),  # type: ignore[arg-type]
        registration=LoadBalancerRegistration(
            factory(ELBClientFactory, elb),
            factory(ELBv2ClientFactory, elbv2),
            policy=policy,
        ),
        kube=kube,  # type: ignore[arg-type]
    )
