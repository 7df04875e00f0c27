"""Reconcile the recorded deployment with live EC2 state.

decide() is the whole transition table and does no I/O. Lifecycle runs a
request end to end: load record, probe, decide, disclose cost, confirm,
invoke terraform or EC2, then update the record.

Every request that finds the instance already in (or moving toward) the
requested state is a no-op, so re-running after a partial failure is safe.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable

from . import state as st
from .config import Settings
from .cost import (
    HOURS_PER_DAY,
    HOURS_PER_MONTH,
    CostEstimate,
    elapsed_hours,
    estimate_cost,
    storage_cost_monthly,
)
from .gate import Disclosure, Gate
from .providers import (
    CloudProvider,
    ProviderError,
    auto_stop_due,
    get_auto_stop,
)
from .state import StateStore
from .terraform import InfraTool
from .types import (
    Action,
    ActionRequest,
    ActionResult,
    DeploymentRecord,
    InstanceAttributes,
    Outcome,
    ResourceState,
)
from .utils import log, warn

S = ResourceState

DEPLOY_CMD = "validatorvm infra deploy"
START_CMD = "validatorvm infra start"
STOP_CMD = "validatorvm infra stop"
DESTROY_CMD = "validatorvm infra destroy"
STATUS_CMD = "validatorvm infra status"


class Transition(str, Enum):
    PROVISION = "provision"
    START = "start"
    STOP = "stop"
    TEARDOWN = "teardown"
    NOOP = "noop"
    FATAL = "fatal"


@dataclass(frozen=True)
class Decision:
    transition: Transition
    message: str
    hint: str | None = None
    warning: bool = False


def _unknown(instance_id: str) -> Decision:
    return Decision(
        Transition.FATAL,
        f"Could not determine the live state of instance '{instance_id}'",
        f"Check AWS connectivity, then re-run: {STATUS_CMD}",
    )


def decide(action: Action, instance_id: str | None, live: ResourceState) -> Decision:
    """Pick the transition for action given the recorded id and live state."""
    if action == Action.DEPLOY:
        if not instance_id:
            return Decision(Transition.PROVISION, "No instance recorded, provisioning")
        if live in (S.ABSENT, S.TERMINATED):
            return Decision(
                Transition.PROVISION,
                f"Recorded instance '{instance_id}' is {live.value}, record is stale; provisioning",
                warning=True,
            )
        if live == S.RUNNING:
            return Decision(
                Transition.NOOP, f"Instance '{instance_id}' is already deployed and running"
            )
        if live == S.STOPPED:
            return Decision(
                Transition.NOOP,
                f"Instance '{instance_id}' is already deployed but stopped",
                START_CMD,
            )
        if live in (S.PENDING, S.STOPPING):
            return Decision(
                Transition.NOOP,
                f"Instance '{instance_id}' is {live.value}, wait for it to settle",
                STATUS_CMD,
            )
        return _unknown(instance_id)

    if action == Action.START:
        if not instance_id:
            return Decision(Transition.FATAL, "No instance recorded, nothing to start", DEPLOY_CMD)
        if live == S.RUNNING:
            return Decision(Transition.NOOP, f"Instance '{instance_id}' is already running")
        if live == S.STOPPED:
            return Decision(Transition.START, f"Starting instance '{instance_id}'")
        if live in (S.PENDING, S.STOPPING):
            return Decision(
                Transition.NOOP,
                f"Instance '{instance_id}' is {live.value}, wait for it to settle before starting",
                STATUS_CMD,
            )
        if live in (S.TERMINATED, S.ABSENT):
            return Decision(
                Transition.FATAL,
                f"Instance '{instance_id}' is {live.value} and cannot be started",
                f"Re-provision with: {DEPLOY_CMD}",
            )
        return _unknown(instance_id)

    if action == Action.STOP:
        if not instance_id:
            return Decision(Transition.NOOP, "No instance recorded, nothing to stop")
        if live == S.RUNNING:
            return Decision(Transition.STOP, f"Stopping instance '{instance_id}'")
        if live == S.PENDING:
            return Decision(
                Transition.NOOP,
                f"Instance '{instance_id}' is still starting, wait and stop it again",
                STOP_CMD,
            )
        if live in (S.STOPPED, S.STOPPING):
            return Decision(Transition.NOOP, f"Instance '{instance_id}' is already {live.value}")
        if live in (S.TERMINATED, S.ABSENT):
            return Decision(
                Transition.NOOP,
                f"Instance '{instance_id}' is {live.value}, nothing to stop",
                DEPLOY_CMD,
                warning=True,
            )
        return _unknown(instance_id)

    if action == Action.DESTROY:
        if not instance_id:
            return Decision(Transition.NOOP, "No instance recorded, nothing to destroy")
        return Decision(Transition.TEARDOWN, f"Destroying infrastructure for '{instance_id}'")

    return Decision(Transition.NOOP, "Status is read-only")


@dataclass
class StatusReport:
    record: DeploymentRecord
    instance_id: str | None
    live: ResourceState
    attrs: InstanceAttributes | None
    uptime_hours: Decimal | None
    cost: CostEstimate | None
    auto_stop_time: str | None
    auto_stop_due: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lifecycle:
    """Execute deploy/start/stop/destroy/status against one instance.

    :param settings: Paths, polling bounds and auto-stop hours
    :param store: Deployment record
    :param cloud: EC2 probe and start/stop
    :param infra: Terraform wrapper
    :param gate: Confirmation prompt
    :param clock: Returns the current aware datetime
    :param cancel: Set to abandon a state wait early
    """

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        cloud: CloudProvider,
        infra: InfraTool,
        gate: Gate,
        clock: Callable[[], datetime] = _utcnow,
        cancel: threading.Event | None = None,
    ):
        self.settings = settings
        self.store = store
        self.cloud = cloud
        self.infra = infra
        self.gate = gate
        self.clock = clock
        self.cancel = cancel

    def run(self, request: ActionRequest) -> ActionResult:
        if request.action == Action.DEPLOY:
            return self.deploy(force=request.force)
        if request.action == Action.START:
            return self.start(force=request.force)
        if request.action == Action.STOP:
            return self.stop(force=request.force)
        if request.action == Action.DESTROY:
            return self.destroy(force=request.force)
        report = self.status()
        return ActionResult(Outcome.NOOP, f"Instance state: {report.live.value}")

    def _load(self) -> DeploymentRecord:
        """Load the record, adopting the terraform instance id if the record lost it."""
        record = self.store.load()
        if st.instance_id(record):
            return record
        recovered = self.infra.output("instance_id")
        if not recovered:
            return record
        warn(f"State file has no instance id, recovered '{recovered}' from terraform outputs")
        fields = {
            st.INSTANCE_ID: recovered,
            st.PUBLIC_IP: self.infra.output("public_ip") or None,
            st.INSTANCE_TYPE: self.infra.output("instance_type") or None,
            st.METHOD: "terraform",
        }
        region = self.infra.output("region")
        if region:
            fields[st.REGION] = region
        ssh_key_file = self.infra.output("ssh_key_file")
        if ssh_key_file:
            fields[st.SSH_KEY_FILE] = ssh_key_file
        return self.store.update(fields)

    def _probe(self, instance_id: str | None) -> tuple[ResourceState, InstanceAttributes | None]:
        if not instance_id:
            return S.ABSENT, None
        return self.cloud.probe(instance_id)

    def _settle(self, decision: Decision) -> ActionResult:
        if decision.transition == Transition.FATAL:
            return ActionResult(Outcome.FAILED, decision.message, decision.hint)
        if decision.warning:
            warn(decision.message)
        else:
            log(decision.message)
        return ActionResult(Outcome.NOOP, decision.message, decision.hint)

    def _instance_type(self, record: DeploymentRecord, attrs: InstanceAttributes | None) -> str | None:
        if attrs and attrs.get("instance_type"):
            return attrs["instance_type"]
        return st.instance_field(record, st.INSTANCE_TYPE)

    def _uptime(self, record: DeploymentRecord, attrs: InstanceAttributes | None) -> Decimal | None:
        since = (attrs or {}).get("launch_time") or st.instance_field(record, st.CREATED_AT)
        if not since:
            return None
        try:
            return elapsed_hours(since, self.clock())
        except ValueError:
            warn(f"Ignoring malformed launch time: '{since}'")
            return None

    def _schedule_auto_stop(self, instance_id: str) -> None:
        hours = self.settings.auto_stop_hours
        if hours <= 0:
            warn("No auto-stop configured, remember to stop the instance when done")
            return
        stop_time = self.cloud.schedule_auto_stop(instance_id, hours, self.clock())
        if stop_time:
            self.store.set_field(st.AUTO_STOP_TIME, stop_time)

    def _running_costs(self, disclosure: Disclosure, hourly: CostEstimate) -> None:
        disclosure.add_estimate("Per hour", hourly)
        disclosure.add_estimate("Per day", hourly.over(HOURS_PER_DAY))
        hours = self.settings.auto_stop_hours
        if hours > 0:
            disclosure.add_estimate(f"This session ({hours}h auto-stop)", hourly.over(hours))
        else:
            disclosure.notes.append("No auto-stop configured, remember to stop the instance when done")

    def deploy(self, force: bool = False) -> ActionResult:
        record = self._load()
        iid = st.instance_id(record)
        live, _ = self._probe(iid)
        decision = decide(Action.DEPLOY, iid, live)
        if decision.transition != Transition.PROVISION:
            return self._settle(decision)
        if decision.warning:
            warn(decision.message)

        instance_type = self.infra.read_tfvar("instance_type")
        disclosure = Disclosure(
            "You are about to create AWS resources that will incur costs",
            affected=[
                f"EC2 instance ({instance_type or 'type from terraform config'})",
                f"{self.settings.volume_size_gb}GB gp3 volume",
            ],
        )
        hourly = estimate_cost(instance_type, 1)
        self._running_costs(disclosure, hourly)
        disclosure.add_estimate("Per month", hourly.over(HOURS_PER_MONTH))
        disclosure.costs.append(("Storage per month", storage_cost_monthly(self.settings.volume_size_gb)))
        if not self.gate.confirm("Apply the Terraform configuration?", disclosure, force):
            return ActionResult(Outcome.DECLINED, "Deploy cancelled")

        if not self.infra.initialized() and not self.infra.init():
            return ActionResult(Outcome.FAILED, "terraform init failed", "validatorvm infra init")
        if not self.infra.plan():
            return ActionResult(Outcome.FAILED, "terraform plan failed", "validatorvm infra plan")
        if not self.infra.apply():
            return ActionResult(
                Outcome.FAILED,
                "terraform apply failed, state file not updated",
                f"Fix the error above and re-run: {DEPLOY_CMD}",
            )
        self.infra.cleanup()

        new_id = self.infra.output("instance_id")
        if not new_id:
            return ActionResult(
                Outcome.FAILED,
                "terraform apply succeeded but produced no 'instance_id' output",
                "Check the outputs in the terraform configuration",
            )

        fields = {
            st.INSTANCE_ID: new_id,
            st.PUBLIC_IP: self.infra.output("public_ip") or None,
            st.REGION: self.infra.output("region") or self.cloud.region,
            st.INSTANCE_TYPE: self.infra.output("instance_type") or instance_type,
            st.SSH_KEY_FILE: self.infra.output("ssh_key_file") or None,
            st.CREATED_AT: self.clock().isoformat(),
            st.METHOD: "terraform",
            st.VALIDATOR_DEPLOYED: False,
        }
        _, attrs = self.cloud.probe(new_id)
        if attrs and attrs.get("public_ip"):
            fields[st.PUBLIC_IP] = attrs["public_ip"]
        self.store.update(fields)
        self._schedule_auto_stop(new_id)

        return ActionResult(
            Outcome.APPLIED,
            f"Provisioned instance '{new_id}' ({fields[st.PUBLIC_IP] or 'no public IP yet'})",
        )

    def start(self, force: bool = False) -> ActionResult:
        record = self._load()
        iid = st.instance_id(record)
        live, attrs = self._probe(iid)
        decision = decide(Action.START, iid, live)
        if decision.transition != Transition.START:
            return self._settle(decision)

        instance_type = self._instance_type(record, attrs)
        disclosure = Disclosure(
            "Starting the instance resumes compute charges",
            affected=[f"EC2 instance '{iid}' ({instance_type or 'unknown type'})"],
        )
        self._running_costs(disclosure, estimate_cost(instance_type, 1))
        if not self.gate.confirm("Start the instance?", disclosure, force):
            return ActionResult(Outcome.DECLINED, "Start cancelled")

        log(decision.message)
        try:
            self.cloud.start_instance(iid)
        except ProviderError as e:
            return ActionResult(Outcome.FAILED, str(e), f"Retry with: {START_CMD}")

        reached = self.cloud.wait_until(
            iid,
            S.RUNNING,
            attempts=self.settings.poll_attempts,
            delay=self.settings.poll_delay,
            cancel=self.cancel,
        )
        if reached is None:
            return ActionResult(
                Outcome.TIMED_OUT,
                f"Instance '{iid}' did not report running in time, it may still be starting",
                f"Check again with: {STATUS_CMD}",
            )
        state, attrs = reached
        if state != S.RUNNING:
            return ActionResult(
                Outcome.FAILED,
                f"Instance '{iid}' became {state.value} while starting",
                f"Re-provision with: {DEPLOY_CMD}",
            )

        public_ip = (attrs or {}).get("public_ip")
        self.store.set_field(st.PUBLIC_IP, public_ip)
        self._schedule_auto_stop(iid)
        return ActionResult(Outcome.APPLIED, f"Instance '{iid}' is running at {public_ip or 'no public IP'}")

    def stop(self, force: bool = False) -> ActionResult:
        record = self._load()
        iid = st.instance_id(record)
        live, attrs = self._probe(iid)
        decision = decide(Action.STOP, iid, live)
        if decision.transition != Transition.STOP:
            return self._settle(decision)

        instance_type = self._instance_type(record, attrs)
        disclosure = Disclosure(
            "Stopping ends compute charges, storage charges continue",
            affected=[f"EC2 instance '{iid}' ({instance_type or 'unknown type'})"],
            notes=["Ledger and accounts are preserved on the EBS volume"],
        )
        hourly = estimate_cost(instance_type, 1)
        uptime = self._uptime(record, attrs)
        if uptime is not None:
            disclosure.add_estimate("Spent this session", hourly.over(uptime))
        disclosure.add_estimate("Saved per hour", hourly)
        disclosure.add_estimate("Saved per day", hourly.over(HOURS_PER_DAY))
        disclosure.costs.append(("Storage per month", storage_cost_monthly(self.settings.volume_size_gb)))
        if not self.gate.confirm("Stop the instance?", disclosure, force):
            return ActionResult(Outcome.DECLINED, "Stop cancelled")

        log(decision.message)
        try:
            self.cloud.stop_instance(iid)
        except ProviderError as e:
            return ActionResult(Outcome.FAILED, str(e), f"Retry with: {STOP_CMD}")

        reached = self.cloud.wait_until(
            iid,
            S.STOPPED,
            attempts=self.settings.poll_attempts,
            delay=self.settings.poll_delay,
            cancel=self.cancel,
        )
        if reached is None:
            return ActionResult(
                Outcome.TIMED_OUT,
                f"Instance '{iid}' did not report stopped in time, it may still be stopping",
                f"Check again with: {STATUS_CMD}",
            )
        state, _ = reached
        if state != S.STOPPED:
            return ActionResult(Outcome.FAILED, f"Instance '{iid}' became {state.value} while stopping")

        # EC2 releases the ephemeral public IP on stop
        self.store.set_field(st.PUBLIC_IP, None)
        return ActionResult(Outcome.APPLIED, f"Instance '{iid}' stopped", f"Restart with: {START_CMD}")

    def destroy(self, force: bool = False) -> ActionResult:
        record = self._load()
        iid = st.instance_id(record)
        decision = decide(Action.DESTROY, iid, S.UNKNOWN)
        if decision.transition != Transition.TEARDOWN:
            return self._settle(decision)

        live, attrs = self._probe(iid)
        instance_type = self._instance_type(record, attrs)
        ip = (attrs or {}).get("public_ip") or st.instance_field(record, st.PUBLIC_IP)
        disclosure = Disclosure(
            "This destroys ALL Terraform-managed infrastructure",
            affected=[
                f"EC2 instance '{iid}' ({instance_type or 'unknown type'}, {live.value}, {ip or 'no IP'})",
                f"Terraform resources in '{self.settings.terraform_dir}'",
                f"State file '{self.store.path}'",
            ],
        )
        if live == S.RUNNING:
            hourly = estimate_cost(instance_type, 1)
            uptime = self._uptime(record, attrs)
            if uptime is not None:
                disclosure.add_estimate("Spent this session", hourly.over(uptime))
            disclosure.add_estimate("Saved per day", hourly.over(HOURS_PER_DAY))
        if not self.gate.confirm("Destroy ALL infrastructure?", disclosure, force):
            return ActionResult(Outcome.DECLINED, "Destroy cancelled")

        log(decision.message)
        if not self.infra.destroy():
            return ActionResult(
                Outcome.FAILED,
                "terraform destroy failed, state file left untouched",
                f"Fix the error above and re-run: {DESTROY_CMD}",
            )
        self.store.delete()
        self.infra.cleanup()
        return ActionResult(Outcome.APPLIED, f"Destroyed instance '{iid}' and its infrastructure")

    def status(self) -> StatusReport:
        record = self._load()
        iid = st.instance_id(record)
        live, attrs = self._probe(iid)
        uptime = cost = None
        if live == S.RUNNING:
            uptime = self._uptime(record, attrs)
            if uptime is not None:
                cost = estimate_cost(self._instance_type(record, attrs), uptime)
        now = self.clock()
        return StatusReport(
            record=record,
            instance_id=iid,
            live=live,
            attrs=attrs,
            uptime_hours=uptime,
            cost=cost,
            auto_stop_time=get_auto_stop(attrs) or st.instance_field(record, st.AUTO_STOP_TIME),
            auto_stop_due=live == S.RUNNING and auto_stop_due(attrs, now),
        )
