"""AWS side of the rollout: Auto Scaling Groups, EC2 instances and load balancers."""

from kuberoll.aws.clients import AWS, AWSModule
from kuberoll.aws.groups import AutoScalingGroups, default_max_retries
from kuberoll.aws.instances import InstanceRetirement, Instances
from kuberoll.aws.loadbalancers import LoadBalancerRegistration, RegistrationPolicy

__all__ = [
    "AWS",
    "AWSModule",
    "AutoScalingGroups",
    "InstanceRetirement",
    "Instances",
    "LoadBalancerRegistration",
    "RegistrationPolicy",
    "default_max_retries",
]
