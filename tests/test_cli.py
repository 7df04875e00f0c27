"""Exit codes and status rendering of the command line."""

from decimal import Decimal

import pytest

from validatorvm import cli, server, solana
from validatorvm import state as st
from validatorvm.cost import estimate_cost
from validatorvm.reconciler import StatusReport
from validatorvm.state import StateStore
from validatorvm.types import ActionResult, Outcome, ResourceState


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("VALIDATORVM_ROOT", str(tmp_path))
    monkeypatch.setenv("VALIDATORVM_STATE_FILE", str(tmp_path / "deployment.state"))
    monkeypatch.setenv("VALIDATORVM_TERRAFORM_DIR", str(tmp_path / "terraform"))
    monkeypatch.setenv("VALIDATORVM_KEYS_DIR", str(tmp_path / "keys"))
    (tmp_path / "terraform").mkdir()
    (tmp_path / "terraform" / "terraform.tfvars.example").write_text('instance_type = "m7i.4xlarge"\n')
    return tmp_path


def _must_not_call(*args, **kwargs):
    pytest.fail("unexpected call")


def _record_instance(project):
    StateStore(project / "deployment.state").update(
        {st.INSTANCE_ID: "i-0abc123", st.PUBLIC_IP: "54.1.1.1"}
    )


@pytest.mark.parametrize("outcome", [Outcome.APPLIED, Outcome.NOOP, Outcome.DECLINED])
def test_finish_success_outcomes_do_not_exit(outcome):
    cli._finish(ActionResult(outcome, "done"))


@pytest.mark.parametrize("outcome", [Outcome.FAILED, Outcome.TIMED_OUT])
def test_finish_failures_exit_1(outcome):
    with pytest.raises(SystemExit) as exc:
        cli._finish(ActionResult(outcome, "broken", "validatorvm infra status"))
    assert exc.value.code == 1


def test_finish_prints_next_command(capsys):
    cli._finish(ActionResult(Outcome.APPLIED, "Instance stopped", "Restart with: validatorvm infra start"))
    assert "validatorvm infra start" in capsys.readouterr().out


def test_print_status(capsys):
    report = StatusReport(
        record={"aws": {"instance_id": "i-1", "instance_type": "m7i.4xlarge"}},
        instance_id="i-1",
        live=ResourceState.RUNNING,
        attrs={"public_ip": "54.1.1.1", "instance_type": "m7i.4xlarge"},
        uptime_hours=Decimal("2.5"),
        cost=estimate_cost("m7i.4xlarge", Decimal("2.5")),
        auto_stop_time="2026-03-01T20:00:00Z",
        auto_stop_due=False,
    )
    cli._print_status(report)
    out = capsys.readouterr().out
    assert "i-1" in out
    assert "54.1.1.1" in out
    assert "2h 30m" in out
    assert "$2.02" in out


def test_print_status_without_instance(capsys):
    report = StatusReport({}, None, ResourceState.ABSENT, None, None, None, None, False)
    cli._print_status(report)
    assert "validatorvm infra deploy" in capsys.readouterr().out


def test_destroy_with_nothing_deployed_is_noop(project, monkeypatch):
    monkeypatch.setattr("validatorvm.terraform.shutil.which", lambda cmd: None)
    monkeypatch.setattr(cli, "get_provider", _must_not_call)

    cli.infra_destroy(force=True)

    assert not (project / "terraform" / "terraform.tfvars").exists()
    assert not (project / "deployment.state").exists()


def test_destroy_with_only_terraform_state_runs_lifecycle(project, monkeypatch):
    monkeypatch.setattr(cli.Terraform, "has_state", lambda self: True)
    monkeypatch.setattr(cli.Terraform, "require", lambda self: None)
    requests = []

    class RecordingLifecycle:
        def run(self, request):
            requests.append(request)
            return ActionResult(Outcome.NOOP, "nothing recorded")

    monkeypatch.setattr(cli, "_lifecycle", lambda *args: RecordingLifecycle())

    cli.infra_destroy(force=True)

    assert [r.action for r in requests] == [cli.Action.DESTROY]
    assert requests[0].force
    assert not (project / "terraform" / "terraform.tfvars").exists()


HEALTH = server.ValidatorHealth(
    service="active",
    process=server.ProcessInfo(4242, "02:13:07", "87.5", "41.2"),
    rpc_healthy=True,
    disk=server.DiskUsage("2.0T", "612G", "32%"),
    logs=server.LogSummary(120345, 812, 3),
    connectivity={"Testnet RPC": ("200", True), "Jito block engine": ("000", False)},
)


def test_validator_status_quick(project, monkeypatch, capsys):
    _record_instance(project)
    calls = []
    monkeypatch.setattr(server, "collect_health", lambda *args: calls.append(args) or HEALTH)

    cli.validator_status()

    out = capsys.readouterr().out
    assert calls == [("54.1.1.1", None, "ubuntu", False)]
    assert "running, up 02:13:07" in out
    assert "healthy" in out
    assert "612G of 2.0T (32%)" in out
    assert "Testnet RPC" not in out


def test_validator_status_full(project, monkeypatch, capsys):
    _record_instance(project)
    for path in solana.keypair_paths(project / "keys").values():
        path.parent.mkdir(exist_ok=True)
        path.write_text("[]")
    monkeypatch.setattr(server, "collect_health", lambda *args: HEALTH)
    monkeypatch.setattr(solana, "check_solana_cli", lambda: None)
    monkeypatch.setattr(solana, "get_pubkey", lambda path: f"pk-{path.name.split('-')[0]}")
    monkeypatch.setattr(
        solana, "get_vote_account", lambda *args: solana.VoteAccount(Decimal("0.5"), 9001, "10%", 301234567)
    )
    monkeypatch.setattr(solana, "in_gossip", lambda *args: True)
    monkeypatch.setattr(solana, "catchup_status", lambda *args: "pk-validator has caught up (us:1 them:1)")

    cli.validator_status(full=True)

    out = capsys.readouterr().out
    assert "pid 4242" in out
    assert "0.5 SOL" in out
    assert "9001" in out
    assert "10%" in out
    assert "301234567" in out
    assert "812 warnings" in out
    assert "Jito block engine" in out
    assert "visible" in out
    assert "caught up" in out


def test_validator_status_rejects_both_modes(project):
    with pytest.raises(SystemExit):
        cli.validator_status(quick=True, full=True)


def test_keys_upload_refuses_corrupt_keypair(project, monkeypatch):
    _record_instance(project)
    monkeypatch.setattr(solana, "check_solana_cli", lambda: None)
    monkeypatch.setattr(solana, "verify_keypair", lambda path: False)
    monkeypatch.setattr(server, "wait_for_ssh", _must_not_call)

    with pytest.raises(SystemExit):
        cli.keys_upload()
