"""kuberoll - zero-downtime rollout of EKS worker Auto Scaling Groups.

Example:

    from injector import Injector
    from kuberoll import AWS, AWSModule, Components, KubeModule, KubeOptions, Rollout, load_state

    injector = Injector([AWSModule(AWS(region="us-west-2")), KubeModule(KubeOptions())])
    state, store = load_state(".kuberoll.state", False, 0, 15.0)
    await Rollout("workers", state, store, Components.from_injector(injector)).run()
"""

from kuberoll.aws.clients import AWS, AWSModule
from kuberoll.errors import ErrorKind, PartialFailureError, RolloutError
from kuberoll.kube.client import KubeModule, KubeOptions
from kuberoll.models import InstanceGroupSnapshot, LoadBalancerDescriptor, UnitOutcome
from kuberoll.rollout import Components, Rollout, drain_groups
from kuberoll.state import DeploymentState, StateStore, load_state

__version__ = "0.1.0"

__all__ = [
    "AWS",
    "AWSModule",
    "Components",
    "DeploymentState",
    "ErrorKind",
    "InstanceGroupSnapshot",
    "KubeModule",
    "KubeOptions",
    "LoadBalancerDescriptor",
    "PartialFailureError",
    "Rollout",
    "RolloutError",
    "StateStore",
    "UnitOutcome",
    "drain_groups",
    "load_state",
]
