"""Server operations over SSH: reachability, key upload, validator service control."""

import time
from dataclasses import dataclass, field
from pathlib import Path

from fabric import Connection
from paramiko.ssh_exception import SSHException

from .utils import LogStream, error, log, warn

VALIDATOR_SERVICE = "jito-validator"
REMOTE_KEYS_DIR = "validator/keys"
VALIDATOR_LOG = "/home/sol/jito-validator.log"
VALIDATOR_PROCESS = "agave-validator"
LEDGER_DIR = "validator"
RPC_HEALTH_REQUEST = '{"jsonrpc":"2.0","id":1,"method":"getHealth"}'
# name -> (url, HTTP codes that count as reachable)
CONNECTIVITY_CHECKS = {
    "Testnet RPC": ("https://api.testnet.solana.com/health", {"200"}),
    "Jito block engine": ("https://ny.testnet.block-engine.jito.wtf/api/v1/bundles", {"200", "405"}),
}

SSH_WAIT_ATTEMPTS = 30
SSH_WAIT_DELAY = 10


def connect(host: str, user: str = "ubuntu", key_file: str | None = None, timeout: int = 10) -> Connection:
    """Open a fabric connection, preferring the deployment's key file."""
    connect_kwargs: dict = {"timeout": timeout}
    if key_file:
        connect_kwargs["key_filename"] = str(Path(key_file).expanduser())
    else:
        connect_kwargs["look_for_keys"] = True
    return Connection(host, user=user, connect_kwargs=connect_kwargs)


def check_instance_reachable(
    host: str, user: str = "ubuntu", key_file: str | None = None, timeout: int = 10
) -> bool:
    """Quick check if instance is reachable via SSH.

    :param host: Instance IP address
    :param user: SSH user for connection
    :param key_file: Private key, None to use the agent and ~/.ssh
    :param timeout: Connection timeout in seconds
    :return: True if reachable, False otherwise
    """
    try:
        with connect(host, user, key_file, timeout) as c:
            c.run("echo ping", hide=True, in_stream=False)
        return True
    except (SSHException, OSError, EOFError) as e:
        log(f"SSH to '{host}' not ready: {type(e).__name__}")
        return False


def wait_for_ssh(
    host: str,
    user: str = "ubuntu",
    key_file: str | None = None,
    attempts: int = SSH_WAIT_ATTEMPTS,
    delay: float = SSH_WAIT_DELAY,
    timeout: int = 5,
) -> None:
    log(f"Waiting for SSH on '{host}'...")
    for attempt in range(1, attempts + 1):
        if check_instance_reachable(host, user, key_file, timeout=timeout):
            log("SSH ready")
            return
        if attempt < attempts:
            time.sleep(delay)
    error(
        f"SSH on '{host}' not reachable after {attempts} attempts. "
        "Check the security group allows port 22, then run: validatorvm infra status"
    )


def _run_ssh(host: str, cmd: str, user: str, key_file: str | None, show_output: bool) -> str:
    """Single SSH attempt - open connection, run cmd, return stdout."""
    with connect(host, user, key_file) as c:
        if show_output:
            stream = LogStream()
            result = c.run(cmd, hide=True, warn=True, in_stream=False,
                           out_stream=stream, err_stream=stream)
            stream.flush()
        else:
            result = c.run(cmd, hide=True, warn=True, in_stream=False)
        if result.failed:
            raise RuntimeError(result.stderr or f"exit status {result.exited}")
        return result.stdout


def ssh(
    host: str,
    cmd: str,
    key_file: str | None = None,
    user: str = "ubuntu",
    show_output: bool = False,
) -> str:
    """Run cmd on host and return stdout; failure exits.

    Retries up to 3 times when sshd drops the connection during the banner
    exchange, which happens while a freshly started instance is booting.
    """
    for attempt in range(3):
        try:
            return _run_ssh(host, cmd, user, key_file, show_output)
        except RuntimeError as e:
            error(f"SSH command failed: {e}")
        except SSHException as e:
            if "Error reading SSH protocol banner" in str(e) and attempt < 2:
                time.sleep(5)
                continue
            error(f"SSH connection to '{host}' failed: {e}")
        except OSError as e:
            error(f"SSH connection to '{host}' failed: {e}\nCheck the instance is running: validatorvm infra status")
    error(f"SSH connection to '{host}' failed after retries")


def upload_keys(
    host: str,
    keypairs: dict[str, Path],
    key_file: str | None = None,
    user: str = "ubuntu",
    remote_dir: str = REMOTE_KEYS_DIR,
    overwrite: bool = False,
) -> list[str]:
    """Copy validator keypairs to the instance over SFTP.

    Only the validator identity and vote keypairs are uploaded; the
    authorized withdrawer stays on the operator's machine.

    :param keypairs: Name to local path, as returned by solana.keypair_paths()
    :param overwrite: Replace keypairs already on the instance
    :return: Remote paths written
    """
    uploads = [keypairs["validator"], keypairs["vote"]]
    for path in uploads:
        if not path.exists():
            error(f"Keypair not found: '{path}'\nGenerate keys with: validatorvm keys generate")

    remote_paths = []
    with connect(host, user, key_file) as c:
        c.run(f"mkdir -p {remote_dir} && chmod 700 {remote_dir}", hide=True, in_stream=False)
        for path in uploads:
            remote = f"{remote_dir}/{path.name}"
            if not overwrite and c.run(f"test -e {remote}", hide=True, warn=True, in_stream=False).ok:
                log(f"'{remote}' already on instance, skipping (use --force to overwrite)")
                continue
            log(f"Uploading '{path.name}' to {host}:{remote}")
            c.put(str(path), remote=remote)
            remote_paths.append(remote)
        if remote_paths:
            c.run(f"chmod 600 {remote_dir}/*.json", hide=True, in_stream=False)
    log(f"Uploaded {len(remote_paths)} keypairs (withdrawer kept local)")
    return remote_paths


def validator_start(host: str, key_file: str | None = None, user: str = "ubuntu") -> None:
    log(f"Starting {VALIDATOR_SERVICE} on '{host}'...")
    ssh(host, f"sudo systemctl start {VALIDATOR_SERVICE}", key_file, user)
    state = validator_status(host, key_file, user)
    if state != "active":
        warn(f"{VALIDATOR_SERVICE} is '{state}' after start, check: validatorvm validator logs")
    else:
        log(f"{VALIDATOR_SERVICE} is active")


def validator_stop(host: str, key_file: str | None = None, user: str = "ubuntu") -> None:
    log(f"Stopping {VALIDATOR_SERVICE} on '{host}'...")
    ssh(host, f"sudo systemctl stop {VALIDATOR_SERVICE}", key_file, user)


def validator_status(host: str, key_file: str | None = None, user: str = "ubuntu") -> str:
    """Return the systemd ActiveState of the validator unit, e.g. 'active'."""
    # is-active exits non-zero for inactive units, so never fail on it
    out = ssh(host, f"systemctl is-active {VALIDATOR_SERVICE} || true", key_file, user)
    return out.strip() or "unknown"


def validator_logs(host: str, lines: int = 100, key_file: str | None = None, user: str = "ubuntu") -> None:
    ssh(
        host,
        f"sudo tail -n {lines} {VALIDATOR_LOG} 2>/dev/null || "
        f"sudo journalctl -u {VALIDATOR_SERVICE} -n {lines} --no-pager",
        key_file,
        user,
        show_output=True,
    )


@dataclass
class ProcessInfo:
    pid: int
    elapsed: str
    cpu_percent: str
    mem_percent: str


@dataclass
class DiskUsage:
    total: str
    used: str
    percent: str


@dataclass
class LogSummary:
    lines: int
    warnings: int
    errors: int


@dataclass
class ValidatorHealth:
    """What `validator status` reports from the instance itself.

    logs and connectivity are only collected for a full report.
    """

    service: str
    process: ProcessInfo | None
    rpc_healthy: bool
    disk: DiskUsage | None
    logs: LogSummary | None = None
    connectivity: dict[str, tuple[str, bool]] = field(default_factory=dict)


def parse_process_info(output: str) -> ProcessInfo | None:
    """Parse `ps -o pid=,etime=,%cpu=,%mem=` output."""
    parts = output.split()
    if len(parts) < 4 or not parts[0].isdigit():
        return None
    return ProcessInfo(int(parts[0]), parts[1], parts[2], parts[3])


def parse_disk_usage(output: str) -> DiskUsage | None:
    """Parse the data line of `df -h`."""
    parts = output.split()
    if len(parts) < 5 or not (parts[4].endswith("%") and parts[4][:-1].isdigit()):
        return None
    return DiskUsage(total=parts[1], used=parts[2], percent=parts[4])


def parse_log_summary(output: str) -> LogSummary | None:
    parts = output.split()
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    return LogSummary(*(int(p) for p in parts))


def validator_process(host: str, key_file: str | None = None, user: str = "ubuntu") -> ProcessInfo | None:
    """Pid, elapsed time, CPU and memory share of the validator process, None if not running."""
    out = ssh(
        host,
        f"pid=$(pgrep -o -x {VALIDATOR_PROCESS}); "
        '[ -n "$pid" ] && ps -p "$pid" -o pid=,etime=,%cpu=,%mem= || true',
        key_file,
        user,
    )
    return parse_process_info(out)


def rpc_healthy(host: str, key_file: str | None = None, user: str = "ubuntu") -> bool:
    """True if the local RPC endpoint answers getHealth with ok."""
    out = ssh(
        host,
        "curl -s -m 5 -X POST -H 'Content-Type: application/json' "
        f"-d '{RPC_HEALTH_REQUEST}' http://localhost:8899 || true",
        key_file,
        user,
    )
    return '"ok"' in out


def disk_usage(host: str, key_file: str | None = None, user: str = "ubuntu") -> DiskUsage | None:
    out = ssh(host, f"df -h {LEDGER_DIR} 2>/dev/null | tail -1 || true", key_file, user)
    return parse_disk_usage(out)


def log_summary(host: str, key_file: str | None = None, user: str = "ubuntu") -> LogSummary | None:
    """Line, WARN and ERROR counts of the validator log, None if there is no log yet."""
    out = ssh(
        host,
        f"sudo sh -c 'f={VALIDATOR_LOG}; [ -f $f ] && "
        "echo $(wc -l < $f) $(grep -c WARN $f) $(grep -c ERROR $f); true'",
        key_file,
        user,
    )
    return parse_log_summary(out)


def network_connectivity(
    host: str, key_file: str | None = None, user: str = "ubuntu"
) -> dict[str, tuple[str, bool]]:
    """HTTP status of each endpoint as seen from the instance, and whether it counts as reachable."""
    results = {}
    for name, (url, ok_codes) in CONNECTIVITY_CHECKS.items():
        out = ssh(
            host,
            f"timeout 5 curl -s -o /dev/null -w '%{{http_code}}' {url} || echo 000",
            key_file,
            user,
        )
        code = out.strip()[-3:] or "000"
        results[name] = (code, code in ok_codes)
    return results


def collect_health(
    host: str, key_file: str | None = None, user: str = "ubuntu", full: bool = False
) -> ValidatorHealth:
    health = ValidatorHealth(
        service=validator_status(host, key_file, user),
        process=validator_process(host, key_file, user),
        rpc_healthy=rpc_healthy(host, key_file, user),
        disk=disk_usage(host, key_file, user),
    )
    if full:
        health.logs = log_summary(host, key_file, user)
        health.connectivity = network_connectivity(host, key_file, user)
    return health
