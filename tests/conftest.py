"""Fakes for the cloud and terraform, plus the opt-in live AWS fixture."""

import io
from datetime import datetime, timedelta, timezone

import pytest
from rich.console import Console

from validatorvm.config import Settings
from validatorvm.gate import Gate
from validatorvm.providers import ProviderError, wait_for_state
from validatorvm.reconciler import Lifecycle
from validatorvm.state import StateStore
from validatorvm.types import ResourceState

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def pytest_addoption(parser):
    parser.addoption(
        "--terraform-dir",
        default=None,
        help="Terraform directory for integration tests (default: VALIDATORVM_TERRAFORM_DIR)",
    )


class FakeCloud:
    """In-memory EC2: instances move straight to the requested state."""

    region = "us-west-1"

    def __init__(self):
        self.instances: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.unknown = False
        self.stuck = False
        self.fail_start = False
        # probes beyond this many report UNKNOWN
        self.probe_budget: int | None = None
        self._ips = iter(f"54.1.1.{n}" for n in range(10, 250))

    def add(self, instance_id, state=ResourceState.RUNNING, public_ip=None,
            instance_type="m7i.4xlarge", launch_time=None):
        self.instances[instance_id] = {
            "state": state,
            "public_ip": public_ip,
            "instance_type": instance_type,
            "launch_time": launch_time or (NOW - timedelta(hours=2)).isoformat(),
            "tags": {},
        }

    def probe(self, instance_id):
        self.calls.append(("probe", instance_id))
        if self.probe_budget is not None:
            self.probe_budget -= 1
            if self.probe_budget < 0:
                self.unknown = True
        if self.unknown:
            return ResourceState.UNKNOWN, None
        inst = self.instances.get(instance_id)
        if inst is None:
            return ResourceState.ABSENT, None
        attrs = {
            "instance_id": instance_id,
            "state": inst["state"].value,
            "public_ip": inst["public_ip"],
            "private_ip": "10.0.0.5",
            "instance_type": inst["instance_type"],
            "launch_time": inst["launch_time"],
            "availability_zone": "us-west-1a",
            "tags": dict(inst["tags"]),
        }
        return inst["state"], attrs

    def start_instance(self, instance_id):
        self.calls.append(("start", instance_id))
        if self.fail_start:
            raise ProviderError("start-instances failed (IncorrectInstanceState)")
        if not self.stuck:
            inst = self.instances[instance_id]
            inst["state"] = ResourceState.RUNNING
            inst["public_ip"] = next(self._ips)
            inst["launch_time"] = NOW.isoformat()

    def stop_instance(self, instance_id):
        self.calls.append(("stop", instance_id))
        if not self.stuck:
            inst = self.instances[instance_id]
            inst["state"] = ResourceState.STOPPED
            inst["public_ip"] = None

    def wait_until(self, instance_id, target, *, attempts, delay, cancel=None):
        self.calls.append(("wait", instance_id))
        return wait_for_state(
            self.probe, instance_id, target, attempts=attempts, delay=delay, cancel=cancel
        )

    def schedule_auto_stop(self, instance_id, hours, now):
        self.calls.append(("tag", instance_id))
        stop_time = (now + timedelta(hours=hours)).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.instances[instance_id]["tags"]["AutoStopTime"] = stop_time
        return stop_time

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)


class FakeInfra:
    """Terraform stand-in that creates and removes FakeCloud instances."""

    def __init__(self, cloud: FakeCloud, new_id="i-0abc123", public_ip="54.1.1.1"):
        self.cloud = cloud
        self.new_id = new_id
        self.public_ip = public_ip
        self.is_initialized = False
        self.apply_ok = True
        self.destroy_ok = True
        self.emit_id = True
        self.outputs: dict[str, str] = {}
        self.tfvars = {"instance_type": "m7i.4xlarge", "volume_size": "2048"}
        self.calls: list[str] = []

    def initialized(self):
        return self.is_initialized

    def init(self):
        self.calls.append("init")
        self.is_initialized = True
        return True

    def plan(self):
        self.calls.append("plan")
        return True

    def apply(self):
        self.calls.append("apply")
        if not self.apply_ok:
            return False
        self.cloud.add(self.new_id, ResourceState.RUNNING, self.public_ip, launch_time=NOW.isoformat())
        self.outputs = {
            "public_ip": self.public_ip,
            "instance_type": "m7i.4xlarge",
            "region": "us-west-1",
            "ssh_key_file": "~/.ssh/validator-key",
        }
        if self.emit_id:
            self.outputs["instance_id"] = self.new_id
        return True

    def destroy(self):
        self.calls.append("destroy")
        if not self.destroy_ok:
            return False
        self.cloud.instances.clear()
        self.outputs = {}
        return True

    def output(self, key):
        return self.outputs.get(key, "")

    def read_tfvar(self, key):
        return self.tfvars.get(key)

    def cleanup(self):
        self.calls.append("cleanup")


class ScriptedAsk:
    """Prompt function returning a fixed answer and recording prompts."""

    def __init__(self, answer="y"):
        self.answer = answer
        self.prompts: list[str] = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if self.answer is EOFError:
            raise EOFError
        return self.answer


@pytest.fixture
def settings(tmp_path):
    return Settings(
        project_root=tmp_path,
        terraform_dir=tmp_path / "terraform",
        keys_dir=tmp_path / "keys",
        state_file=tmp_path / "deployment.state",
        poll_attempts=3,
        poll_delay=0,
        probe_delay=0,
    )


@pytest.fixture
def store(settings):
    return StateStore(settings.state_file)


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def infra(cloud):
    return FakeInfra(cloud)


@pytest.fixture
def ask():
    return ScriptedAsk("y")


@pytest.fixture
def console_out():
    return io.StringIO()


@pytest.fixture
def lifecycle(settings, store, cloud, infra, ask, console_out):
    gate = Gate(ask=ask, console=Console(file=console_out, width=120))
    return Lifecycle(settings, store, cloud, infra, gate, clock=lambda: NOW)


@pytest.fixture(scope="session")
def live_lifecycle(request):
    """Provision a real instance with terraform, yield its Lifecycle, destroy on teardown."""
    from validatorvm.providers import get_provider
    from validatorvm.terraform import Terraform

    settings = Settings.from_env()
    terraform_dir = request.config.getoption("--terraform-dir")
    if terraform_dir:
        settings.terraform_dir = terraform_dir
    settings.state_file = settings.project_root / "integration.state"

    tf = Terraform(settings.terraform_dir)
    tf.require()
    tf.ensure_tfvars()
    p = get_provider(settings)
    p.validate_auth()
    lc = Lifecycle(settings, StateStore(settings.state_file), p, tf, Gate(ask=lambda _: "y"))
    try:
        yield lc
    finally:
        try:
            lc.destroy(force=True)
        except SystemExit:
            print("[WARN] Destroy failed, clean up with: validatorvm infra destroy")
