"""validatorvm - Provision and operate a Solana testnet validator on AWS."""

from .cli import app
from .config import Settings
from .providers import AWSProvider, CloudProvider, ProviderError, get_provider
from .reconciler import Decision, Lifecycle, StatusReport, Transition, decide
from .state import StateStore
from .terraform import InfraTool, Terraform
from .types import (
    Action,
    ActionRequest,
    ActionResult,
    DeploymentRecord,
    InstanceAttributes,
    Outcome,
    ResourceState,
)
from .utils import error, log, run_cmd, warn

__all__ = [
    "AWSProvider",
    "CloudProvider",
    "ProviderError",
    "get_provider",
    "Decision",
    "Lifecycle",
    "StatusReport",
    "Transition",
    "decide",
    "Settings",
    "StateStore",
    "InfraTool",
    "Terraform",
    "app",
    "log",
    "warn",
    "error",
    "run_cmd",
    "Action",
    "ActionRequest",
    "ActionResult",
    "DeploymentRecord",
    "InstanceAttributes",
    "Outcome",
    "ResourceState",
]
