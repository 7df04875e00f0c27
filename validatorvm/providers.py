"""EC2 access for the validator instance: probe, start, stop, auto-stop tags."""

import configparser
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from .config import Settings
from .cost import parse_timestamp
from .types import InstanceAttributes, ResourceState
from .utils import error, log, poll_until, retry, warn

AUTO_STOP_TAG = "AutoStopTime"

NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}
AUTH_ERROR_CODES = {
    "AuthFailure",
    "UnauthorizedOperation",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "RequestExpired",
}
TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalError",
    "ServiceUnavailable",
    "Unavailable",
}
NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

Probe = Callable[[str], tuple[ResourceState, InstanceAttributes | None]]


class ProviderError(Exception):
    """An EC2 call that changes state was rejected."""


class TransientProviderError(Exception):
    """A retryable EC2 failure: throttling, 5xx, or network trouble."""


class CloudProvider(Protocol):
    region: str

    def probe(self, instance_id: str) -> tuple[ResourceState, InstanceAttributes | None]: ...

    def start_instance(self, instance_id: str) -> None: ...

    def stop_instance(self, instance_id: str) -> None: ...

    def wait_until(
        self,
        instance_id: str,
        target: ResourceState,
        *,
        attempts: int,
        delay: float,
        cancel: threading.Event | None = None,
    ) -> tuple[ResourceState, InstanceAttributes | None] | None: ...

    def schedule_auto_stop(
        self, instance_id: str, hours: int, now: datetime
    ) -> str | None: ...


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _is_transient(e: ClientError) -> bool:
    status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return _error_code(e) in TRANSIENT_CODES or status >= 500


def _auth_failure(code: str, detail: object, profile: str | None) -> None:
    if code in ("ExpiredToken", "ExpiredTokenException", "RequestExpired"):
        login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
        error(f"AWS credentials expired. Run:\n  {login_cmd}")
    error(f"AWS authentication failed ({code}): {detail}\nCheck credentials with: aws sts get-caller-identity")


def instance_attributes(instance: dict) -> InstanceAttributes:
    """Flatten a describe-instances Instance entry."""
    launch_time = instance.get("LaunchTime")
    if isinstance(launch_time, datetime):
        launch_time = launch_time.astimezone(timezone.utc).isoformat()
    return {
        "instance_id": instance["InstanceId"],
        "state": instance.get("State", {}).get("Name", ""),
        "public_ip": instance.get("PublicIpAddress"),
        "private_ip": instance.get("PrivateIpAddress"),
        "instance_type": instance.get("InstanceType", ""),
        "launch_time": launch_time or "",
        "availability_zone": instance.get("Placement", {}).get("AvailabilityZone", ""),
        "tags": {t["Key"]: t["Value"] for t in instance.get("Tags", [])},
    }


def wait_for_state(
    probe: Probe,
    instance_id: str,
    target: ResourceState,
    *,
    attempts: int,
    delay: float,
    cancel: threading.Event | None = None,
) -> tuple[ResourceState, InstanceAttributes | None] | None:
    """Poll until the instance reaches target.

    Stops early if the instance is gone, since target can no longer be reached.

    :return: The last observed state and its attributes, or None if attempts
        ran out (the transition may still be in progress)
    """
    observed: list = [ResourceState.UNKNOWN, None]

    def reached() -> bool:
        state, attrs = probe(instance_id)
        observed[:] = [state, attrs]
        if state == target or state in (ResourceState.TERMINATED, ResourceState.ABSENT):
            return True
        log(f"Instance '{instance_id}' is '{state.value}', waiting for '{target.value}'...")
        return False

    if not poll_until(reached, attempts=attempts, delay=delay, cancel=cancel):
        return None
    return observed[0], observed[1]


def get_auto_stop(attrs: InstanceAttributes | None) -> str | None:
    if not attrs:
        return None
    return attrs.get("tags", {}).get(AUTO_STOP_TAG) or None


def auto_stop_due(attrs: InstanceAttributes | None, now: datetime) -> bool:
    stop_time = get_auto_stop(attrs)
    if not stop_time:
        return False
    try:
        return parse_timestamp(now) >= parse_timestamp(stop_time)
    except ValueError:
        warn(f"Ignoring malformed {AUTO_STOP_TAG} tag: '{stop_time}'")
        return False


def get_aws_config(profile: str | None = None, region: str | None = None) -> dict:
    """Build boto3.Session kwargs from the profile and region.

    Falls back to the default credential chain when the named profile is not
    present in ~/.aws/credentials or ~/.aws/config.
    """
    aws_config = {}
    available_profiles = set()
    for path in ["~/.aws/credentials", "~/.aws/config"]:
        path = os.path.expanduser(path)
        if os.path.exists(path):
            cfg = configparser.ConfigParser()
            cfg.read(path)
            for section in cfg.sections():
                available_profiles.add(section.removeprefix("profile "))

    if profile:
        if profile in available_profiles:
            aws_config["profile_name"] = profile
        else:
            log(f"AWS profile '{profile}' not found, using default credential chain...")
    if region:
        aws_config["region_name"] = region
    return aws_config


def check_aws_auth(profile: str | None = None, region: str | None = None) -> str:
    """Validate AWS credentials, fail fast with clear error if expired or invalid.

    :return: AWS account id
    """
    try:
        session = boto3.Session(**get_aws_config(profile, region))
        identity = session.client("sts").get_caller_identity()
    except NoCredentialsError:
        error("AWS credentials not configured. Run:\n  aws configure")
    except ClientError as e:
        _auth_failure(_error_code(e), e, profile)
    except NETWORK_ERRORS as e:
        error(f"Cannot reach AWS STS to validate credentials: {e}")
    return identity.get("Account", "unknown")


class AWSProvider:
    """The validator instance as seen through the EC2 API."""

    def __init__(
        self,
        region: str,
        aws_profile: str | None = None,
        *,
        probe_attempts: int = 3,
        probe_delay: float = 2.0,
        ec2_client=None,
    ):
        self.region = region
        self.aws_profile = aws_profile
        self.probe_attempts = probe_attempts
        self.probe_delay = probe_delay
        self._ec2 = ec2_client

    def validate_auth(self) -> None:
        account_id = check_aws_auth(self.aws_profile, self.region)
        profile = self.aws_profile or "default"
        log(f"AWS: region={self.region}  profile={profile}  account={account_id}")

    def _get_ec2_client(self):
        if self._ec2 is None:
            session = boto3.Session(**get_aws_config(self.aws_profile, self.region))
            self._ec2 = session.client("ec2")
        return self._ec2

    def _describe(self, instance_id: str) -> dict | None:
        try:
            return self._get_ec2_client().describe_instances(InstanceIds=[instance_id])
        except NoCredentialsError:
            error("AWS credentials not configured. Run:\n  aws configure")
        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_CODES:
                return None
            if code in AUTH_ERROR_CODES:
                _auth_failure(code, e, self.aws_profile)
            if _is_transient(e):
                raise TransientProviderError(f"{code}: {e}") from e
            raise
        except NETWORK_ERRORS as e:
            raise TransientProviderError(str(e)) from e

    def probe(self, instance_id: str) -> tuple[ResourceState, InstanceAttributes | None]:
        """Fetch the live state of instance_id.

        A missing instance is ABSENT. Transient failures are retried and then
        reported as UNKNOWN; authentication failures exit immediately.
        """
        try:
            response = retry(
                lambda: self._describe(instance_id),
                attempts=self.probe_attempts,
                delay=self.probe_delay,
                retry_on=(TransientProviderError,),
                describe=f"describe-instances '{instance_id}'",
            )
        except TransientProviderError:
            return ResourceState.UNKNOWN, None
        except ClientError as e:
            warn(f"Unexpected EC2 error for '{instance_id}': {e}")
            return ResourceState.UNKNOWN, None

        if response is None:
            return ResourceState.ABSENT, None
        reservations = response.get("Reservations") or []
        instances = reservations[0].get("Instances") if reservations else None
        if not instances:
            return ResourceState.ABSENT, None

        attrs = instance_attributes(instances[0])
        return ResourceState.from_ec2(attrs["state"]), attrs

    def wait_until(
        self,
        instance_id: str,
        target: ResourceState,
        *,
        attempts: int = 40,
        delay: float = 15.0,
        cancel: threading.Event | None = None,
    ) -> tuple[ResourceState, InstanceAttributes | None] | None:
        """Poll probe() until target; see wait_for_state."""
        return wait_for_state(
            self.probe, instance_id, target, attempts=attempts, delay=delay, cancel=cancel
        )

    def start_instance(self, instance_id: str) -> None:
        try:
            self._get_ec2_client().start_instances(InstanceIds=[instance_id])
        except ClientError as e:
            raise ProviderError(f"start-instances failed ({_error_code(e)}): {e}") from e

    def stop_instance(self, instance_id: str) -> None:
        try:
            self._get_ec2_client().stop_instances(InstanceIds=[instance_id])
        except ClientError as e:
            raise ProviderError(f"stop-instances failed ({_error_code(e)}): {e}") from e

    def schedule_auto_stop(self, instance_id: str, hours: int, now: datetime) -> str | None:
        """Tag the instance with the time it should be stopped.

        :return: The tag value (ISO UTC), or None if tagging failed
        """
        stop_time = (now.astimezone(timezone.utc) + timedelta(hours=hours)).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        try:
            self._get_ec2_client().create_tags(
                Resources=[instance_id],
                Tags=[{"Key": AUTO_STOP_TAG, "Value": stop_time}],
            )
        except ClientError as e:
            warn(f"Could not tag auto-stop time on '{instance_id}': {e}")
            return None
        log(f"Scheduled auto-stop for {stop_time} ({hours}h from now)")
        return stop_time


def get_provider(settings: Settings, region: str | None = None) -> AWSProvider:
    """Build the EC2 provider for the configured (or recorded) region."""
    return AWSProvider(
        region or settings.region,
        settings.aws_profile,
        probe_attempts=settings.probe_attempts,
        probe_delay=settings.probe_delay,
    )
