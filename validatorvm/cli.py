#!/usr/bin/env python3
"""Provision and operate a Solana testnet validator on AWS.

Prerequisites: terraform, AWS credentials, solana CLI.

Usage: uv run validatorvm <noun> <verb> [options]

Examples:
    uv run validatorvm keys generate
    uv run validatorvm infra deploy
    uv run validatorvm keys upload
    uv run validatorvm validator start
    uv run validatorvm infra stop
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from rich import print
from rich.table import Table

from . import server, solana
from . import state as st
from .config import Settings
from .cost import format_duration, format_usd
from .gate import Gate
from .providers import get_provider
from .reconciler import Lifecycle, StatusReport
from .state import StateStore
from .terraform import Terraform
from .types import Action, ActionRequest, ActionResult, Outcome
from .utils import error, log, setup_logging, warn

app = cyclopts.App(
    name="validatorvm", help="Provision and operate a Solana validator on AWS", sort_key=None
)

infra_app = cyclopts.App(name="infra", help="Manage the EC2 instance and its infrastructure", sort_key=1)
keys_app = cyclopts.App(name="keys", help="Generate, fund and upload keypairs", sort_key=2)
validator_app = cyclopts.App(name="validator", help="Control the validator on the instance", sort_key=3)

app.command(infra_app)
app.command(keys_app)
app.command(validator_app)


def _lifecycle(settings: Settings, store: StateStore, tf: Terraform) -> Lifecycle:
    region = st.instance_field(store.load(), st.REGION) or settings.region
    p = get_provider(settings, region)
    p.validate_auth()
    return Lifecycle(settings, store, p, tf, Gate())


def _finish(result: ActionResult) -> None:
    """Print the result; failures and timeouts exit with status 1."""
    if result.exit_code != 0:
        hint = f"\n  Next: {result.hint}" if result.hint else ""
        error(f"{result.message}{hint}")
    if result.outcome == Outcome.DECLINED:
        log(result.message)
    elif result.outcome == Outcome.APPLIED:
        print(f"[green]{result.message}[/green]")
    if result.hint:
        print(f"  Next: {result.hint}")


def _run_action(action: Action, force: bool) -> None:
    settings = Settings.from_env()
    tf = Terraform(settings.terraform_dir)
    store = StateStore(settings.state_file)
    if action == Action.DEPLOY:
        tf.require()
        tf.ensure_tfvars()
    elif action == Action.DESTROY:
        if not st.instance_id(store.load()) and not tf.has_state():
            log("No instance recorded and no terraform state, nothing to destroy")
            return
        tf.require()
    _finish(_lifecycle(settings, store, tf).run(ActionRequest(action, force=force)))


def _instance_host(settings: Settings) -> tuple[str, str | None]:
    """Public IP and SSH key of the recorded instance; exits if there is none."""
    record = StateStore(settings.state_file).load()
    if not st.instance_id(record):
        error("No instance recorded\n  Next: validatorvm infra deploy")
    ip = st.instance_field(record, st.PUBLIC_IP)
    if not ip:
        error("Instance has no public IP, it is probably stopped\n  Next: validatorvm infra start")
    return ip, st.instance_field(record, st.SSH_KEY_FILE)


@infra_app.command(name="init")
def infra_init():
    """Initialize terraform and create terraform.tfvars from the example."""
    settings = Settings.from_env()
    tf = Terraform(settings.terraform_dir)
    tf.require()
    tf.ensure_tfvars()
    if not tf.init():
        error("terraform init failed\n  Next: fix the error above and re-run: validatorvm infra init")
    if not tf.validate():
        error("terraform validate failed\n  Next: fix the configuration in the terraform directory")
    log("Terraform initialized")
    print("  Next: validatorvm infra plan")


@infra_app.command(name="plan")
def infra_plan():
    """Show what deploy would change and save the plan."""
    settings = Settings.from_env()
    tf = Terraform(settings.terraform_dir)
    tf.require()
    tf.ensure_tfvars()
    if not tf.initialized() and not tf.init():
        error("terraform init failed\n  Next: validatorvm infra init")
    if not tf.plan():
        error("terraform plan failed\n  Next: fix the error above and re-run: validatorvm infra plan")
    print(f"  Plan saved to '{tf.plan_file}'\n  Next: validatorvm infra deploy")


@infra_app.command(name="deploy")
def infra_deploy(*, force: bool = False):
    """Provision the validator instance with terraform.

    :param force: Skip confirmation prompt
    """
    _run_action(Action.DEPLOY, force)
    settings = Settings.from_env()
    record = StateStore(settings.state_file).load()
    ip = st.instance_field(record, st.PUBLIC_IP)
    if ip:
        key = st.instance_field(record, st.SSH_KEY_FILE)
        key_opt = f"-i {key} " if key else ""
        print(f"  SSH: ssh {key_opt}{settings.ssh_user}@{ip}")


@infra_app.command(name="start")
def infra_start(*, force: bool = False):
    """Start the stopped instance and refresh its public IP.

    :param force: Skip confirmation prompt
    """
    _run_action(Action.START, force)


@infra_app.command(name="stop")
def infra_stop(*, force: bool = False):
    """Stop the instance; the EBS volume and its ledger are kept.

    :param force: Skip confirmation prompt
    """
    _run_action(Action.STOP, force)


@infra_app.command(name="destroy")
def infra_destroy(*, force: bool = False):
    """Destroy all terraform-managed infrastructure and the state file.

    :param force: Skip confirmation prompt
    """
    _run_action(Action.DESTROY, force)


def _print_status(report: StatusReport) -> None:
    if not report.instance_id:
        print("No instance recorded. Run: validatorvm infra deploy")
        return
    attrs = report.attrs or {}
    record = report.record
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Instance", report.instance_id)
    table.add_row("State", report.live.value)
    table.add_row("Type", attrs.get("instance_type") or st.instance_field(record, st.INSTANCE_TYPE) or "")
    table.add_row("Public IP", attrs.get("public_ip") or "")
    table.add_row("Zone", attrs.get("availability_zone") or "")
    table.add_row("Created", st.get_path(record, st.CREATED_AT) or "")
    if report.uptime_hours is not None:
        table.add_row("Uptime", format_duration(report.uptime_hours))
    if report.cost is not None:
        flag = " (fallback rate)" if report.cost.fallback else ""
        table.add_row("Cost so far", f"{format_usd(report.cost.total)}{flag}")
    if report.auto_stop_time:
        due = " [red](overdue)[/red]" if report.auto_stop_due else ""
        table.add_row("Auto-stop", f"{report.auto_stop_time}{due}")
    print(table)
    if report.auto_stop_due:
        warn("Auto-stop time has passed, run: validatorvm infra stop")


@infra_app.command(name="status")
def infra_status(*, watch: bool = False, interval: int = 30):
    """Show the live instance state, uptime and cost so far.

    :param watch: Refresh until interrupted
    :param interval: Seconds between refreshes with --watch
    """
    settings = Settings.from_env()
    store = StateStore(settings.state_file)
    lifecycle = _lifecycle(settings, store, Terraform(settings.terraform_dir))
    try:
        while True:
            _print_status(lifecycle.status())
            if not watch:
                return
            time.sleep(interval)
    except KeyboardInterrupt:
        log("Stopped watching")


@keys_app.command(name="generate")
def keys_generate(*, force: bool = False):
    """Generate validator identity, vote and withdrawer keypairs.

    :param force: Overwrite existing keypairs
    """
    settings = Settings.from_env()
    pubkeys = solana.generate_keys(settings.keys_dir, force)
    for name, pubkey in pubkeys.items():
        print(f"  {name}: {pubkey}")
    print("  Next: validatorvm keys fund")


@keys_app.command(name="fund")
def keys_fund(*, minimum: str | None = None):
    """Fund the validator identity with testnet SOL.

    :param minimum: Minimum SOL balance (default: VALIDATORVM_MIN_BALANCE or 5)
    """
    settings = Settings.from_env()
    solana.check_solana_cli()
    try:
        target = Decimal(minimum) if minimum else settings.min_balance_sol
    except InvalidOperation:
        error(f"Invalid --minimum '{minimum}'")
    identity = solana.get_pubkey(solana.keypair_paths(settings.keys_dir)["validator"])
    if not solana.fund_account(identity, target, settings.cluster):
        error(f"'{identity}' not funded to {target} SOL\n  Next: use a web faucet, then re-run: validatorvm keys fund")
    print("  Next: validatorvm validator create-vote-account")


@keys_app.command(name="upload")
def keys_upload(*, force: bool = False):
    """Upload validator and vote keypairs to the instance (never the withdrawer).

    :param force: Overwrite keypairs already on the instance
    """
    settings = Settings.from_env()
    ip, key_file = _instance_host(settings)
    keypairs = solana.keypair_paths(settings.keys_dir)
    solana.check_solana_cli()
    for name in ("validator", "vote"):
        solana.require_valid_keypair(keypairs[name])
    server.wait_for_ssh(ip, settings.ssh_user, key_file, timeout=settings.ssh_connect_timeout)
    server.upload_keys(ip, keypairs, key_file, settings.ssh_user, overwrite=force)


@validator_app.command(name="start")
def validator_start():
    """Start the jito-validator service."""
    settings = Settings.from_env()
    ip, key_file = _instance_host(settings)
    server.validator_start(ip, key_file, settings.ssh_user)
    StateStore(settings.state_file).set_field(st.VALIDATOR_DEPLOYED, True)


@validator_app.command(name="stop")
def validator_stop():
    """Stop the jito-validator service."""
    settings = Settings.from_env()
    ip, key_file = _instance_host(settings)
    server.validator_stop(ip, key_file, settings.ssh_user)


def _validator_table(settings: Settings, ip: str, key_file: str | None, full: bool) -> Table:
    health = server.collect_health(ip, key_file, settings.ssh_user, full)
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Service", health.service)
    proc = health.process
    if proc is None:
        table.add_row("Process", "[red]not running[/red]")
    elif full:
        table.add_row(
            "Process",
            f"pid {proc.pid}, up {proc.elapsed}, CPU {proc.cpu_percent}%, memory {proc.mem_percent}%",
        )
    else:
        table.add_row("Process", f"running, up {proc.elapsed}")
    if health.rpc_healthy:
        table.add_row("RPC", "[green]healthy[/green]")
    else:
        table.add_row("RPC", "[yellow]unavailable (may still be catching up)[/yellow]")
    disk = health.disk
    table.add_row("Ledger disk", f"{disk.used} of {disk.total} ({disk.percent})" if disk else "unknown")

    keys = solana.keypair_paths(settings.keys_dir)
    if keys["vote"].exists():
        solana.check_solana_cli()
        vote = solana.get_vote_account(solana.get_pubkey(keys["vote"]), settings.cluster)
        if vote is None:
            table.add_row("Vote account", "not found or RPC unavailable")
        else:
            balance = f"{vote.balance} SOL" if vote.balance is not None else "unknown"
            table.add_row("Vote balance", balance)
            table.add_row("Vote credits", str(vote.credits) if vote.credits is not None else "unknown")
            if full:
                table.add_row("Commission", vote.commission or "unknown")
                table.add_row("Root slot", str(vote.root_slot) if vote.root_slot is not None else "unknown")

    if not full:
        return table
    if health.logs:
        logs = health.logs
        table.add_row("Log", f"{logs.lines} lines, {logs.warnings} warnings, {logs.errors} errors")
    else:
        table.add_row("Log", "no log file yet")
    for name, (code, ok) in health.connectivity.items():
        table.add_row(name, f"[green]reachable[/green] (HTTP {code})" if ok else f"[yellow]HTTP {code}[/yellow]")
    if keys["validator"].exists():
        solana.check_solana_cli()
        identity = solana.get_pubkey(keys["validator"])
        table.add_row("Identity", identity)
        gossip = solana.in_gossip(identity, settings.cluster)
        table.add_row("Gossip", {True: "visible", False: "not visible yet", None: "lookup failed"}[gossip])
        caught_up = solana.is_caught_up(solana.catchup_status(identity, settings.cluster))
        table.add_row("Catchup", "[green]caught up[/green]" if caught_up else "[yellow]catching up[/yellow]")
    return table


@validator_app.command(name="status")
def validator_status(*, quick: bool = False, full: bool = False, watch: bool = False, interval: int = 30):
    """Show validator health on the instance and its vote account.

    :param quick: Service, process uptime, RPC health, disk and vote credits (default)
    :param full: Also process stats, log summary, connectivity, gossip and catchup
    :param watch: Refresh until interrupted
    :param interval: Seconds between refreshes with --watch
    """
    if quick and full:
        error("Use either --quick or --full")
    settings = Settings.from_env()
    ip, key_file = _instance_host(settings)
    try:
        while True:
            print(_validator_table(settings, ip, key_file, full))
            if not watch:
                return
            time.sleep(interval)
    except KeyboardInterrupt:
        log("Stopped watching")


@validator_app.command(name="logs")
def validator_logs(*, lines: int = 100):
    """Show recent validator log lines.

    :param lines: Number of lines
    """
    settings = Settings.from_env()
    ip, key_file = _instance_host(settings)
    server.validator_logs(ip, lines, key_file, settings.ssh_user)


@validator_app.command(name="create-vote-account")
def validator_create_vote_account():
    """Create the vote account, paid for by the validator identity."""
    settings = Settings.from_env()
    solana.check_solana_cli()
    vote = solana.create_vote_account(solana.keypair_paths(settings.keys_dir), settings.cluster)
    print(f"  Vote account: {vote}")


@validator_app.command(name="catchup")
def validator_catchup():
    """Check whether the validator has caught up with the cluster."""
    settings = Settings.from_env()
    solana.check_solana_cli()
    identity = solana.get_pubkey(solana.keypair_paths(settings.keys_dir)["validator"])
    output = solana.catchup_status(identity, settings.cluster)
    print(output or "No catchup output")
    if not solana.is_caught_up(output):
        warn("Validator has not caught up yet")


@app.meta.default
def launcher(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: str = "INFO",
):
    """Global options.

    :param log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    setup_logging(log_level)
    app(tokens)


def main():
    app.meta()


if __name__ == "__main__":
    main()
