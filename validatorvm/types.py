"""Type definitions for validatorvm."""

from dataclasses import dataclass
from enum import Enum
from typing import TypedDict


class ResourceState(str, Enum):
    """Live state of the validator instance as reported by EC2."""

    ABSENT = "absent"
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def from_ec2(cls, name: str | None) -> "ResourceState":
        """Decode an EC2 ``State.Name`` value.

        ``shutting-down`` can only end in ``terminated``, so it decodes as such.
        """
        if not name:
            return cls.UNKNOWN
        if name == "shutting-down":
            return cls.TERMINATED
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


class Action(str, Enum):
    DEPLOY = "deploy"
    START = "start"
    STOP = "stop"
    DESTROY = "destroy"
    STATUS = "status"


@dataclass(frozen=True)
class ActionRequest:
    action: Action
    force: bool = False


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return 0 if self in (Outcome.APPLIED, Outcome.NOOP, Outcome.DECLINED) else 1


@dataclass(frozen=True)
class ActionResult:
    outcome: Outcome
    message: str
    hint: str | None = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


class InstanceAttributes(TypedDict, total=False):
    """Attributes read from a describe-instances response."""

    instance_id: str
    state: str
    public_ip: str | None
    private_ip: str | None
    instance_type: str
    launch_time: str  # ISO-8601 UTC
    availability_zone: str
    tags: dict[str, str]


class AwsRecord(TypedDict, total=False):
    instance_id: str
    public_ip: str | None
    region: str
    instance_type: str
    ssh_key_file: str
    auto_stop_time: str


class DeploymentInfo(TypedDict, total=False):
    created_at: str
    method: str


class ValidatorInfo(TypedDict, total=False):
    deployed: bool


class DeploymentRecord(TypedDict, total=False):
    """Layout of the deployment.state file. Extra keys are preserved."""

    deployment: DeploymentInfo
    aws: AwsRecord
    validator: ValidatorInfo
