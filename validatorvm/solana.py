"""Local key material and funding through the solana CLI."""

import os
import re
import subprocess
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable

from .utils import error, log, poll_until, require_command, run_cmd, warn

KEYPAIRS = {
    "validator": "validator-keypair.json",
    "vote": "vote-account-keypair.json",
    "withdrawer": "authorized-withdrawer-keypair.json",
}
INSTALL_HINT = 'sh -c "$(curl -sSfL https://release.anza.xyz/stable/install)"'
FAUCET_URLS = [
    "https://faucet.solana.com",
    "https://faucet.quicknode.com/solana/testnet",
]
AIRDROP_AMOUNT = Decimal("2")
AIRDROP_ATTEMPTS = 3
CATCHUP_TIMEOUT = 60
GOSSIP_TIMEOUT = 30

_CREDITS_RE = re.compile(r"^\s*Credits:?\s+([\d,]+)", re.MULTILINE)


@dataclass
class VoteAccount:
    balance: Decimal | None
    credits: int | None
    commission: str | None
    root_slot: int | None


def _run(*args: str, timeout: float | None = None) -> tuple[int, str]:
    """Run a solana command without failing; return (status, stdout+stderr)."""
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        out = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        return -1, out
    return result.returncode, (result.stdout + result.stderr).strip()


def check_solana_cli() -> None:
    require_command("solana", INSTALL_HINT)
    require_command("solana-keygen", INSTALL_HINT)


def keypair_paths(keys_dir: str | Path) -> dict[str, Path]:
    keys_dir = Path(keys_dir)
    return {name: keys_dir / filename for name, filename in KEYPAIRS.items()}


def get_pubkey(path: str | Path) -> str:
    if not Path(path).exists():
        error(f"Keypair not found: '{path}'\nGenerate keys with: validatorvm keys generate")
    return run_cmd("solana-keygen", "pubkey", str(path))


def verify_keypair(path: str | Path) -> bool:
    """True if path holds a keypair whose secret matches its public key."""
    if not Path(path).exists():
        return False
    status, pubkey = _run("solana-keygen", "pubkey", str(path))
    if status != 0 or not pubkey:
        return False
    status, out = _run("solana-keygen", "verify", pubkey, str(path))
    return status == 0 and "Success" in out


def require_valid_keypair(path: str | Path) -> None:
    if not verify_keypair(path):
        error(
            f"Keypair '{path}' is missing or corrupt\n"
            "  Next: restore it from backup, or regenerate with: validatorvm keys generate --force"
        )


def generate_keypair(path: str | Path, force: bool = False) -> str:
    """Create a keypair at path unless one exists.

    :param force: Overwrite an existing keypair
    :return: Public key of the keypair now at path
    """
    path = Path(path)
    if path.exists() and not force:
        require_valid_keypair(path)
        pubkey = get_pubkey(path)
        log(f"Keypair exists, keeping it (use --force to overwrite): '{path}' {pubkey}")
        return pubkey
    if path.exists():
        warn(f"Overwriting existing keypair '{path}'")
    path.parent.mkdir(parents=True, exist_ok=True)
    run_cmd(
        "solana-keygen", "new", "--no-bip39-passphrase", "--silent", "--force",
        "--outfile", str(path),
    )
    os.chmod(path, 0o600)
    pubkey = get_pubkey(path)
    log(f"Generated '{path.name}': {pubkey}")
    return pubkey


def generate_keys(keys_dir: str | Path, force: bool = False) -> dict[str, str]:
    """Generate validator identity, vote and withdrawer keypairs.

    :return: Keypair name to public key
    """
    check_solana_cli()
    keys_dir = Path(keys_dir)
    keys_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(keys_dir, 0o700)
    pubkeys = {name: generate_keypair(path, force) for name, path in keypair_paths(keys_dir).items()}
    warn("Keep the authorized withdrawer keypair offline, it is never uploaded to the instance")
    return pubkeys


def get_balance(address: str, cluster: str = "testnet") -> Decimal | None:
    """Balance in SOL, or None if the RPC call failed."""
    status, out = _run("solana", "balance", address, "--url", cluster)
    if status != 0 or not out:
        return None
    try:
        return Decimal(out.split()[0])
    except (InvalidOperation, IndexError):
        warn(f"Unexpected balance output for '{address}': {out}")
        return None


def request_airdrop(amount: Decimal, address: str, cluster: str = "testnet") -> bool:
    log(f"Requesting airdrop of {amount} SOL to '{address}'...")
    status, out = _run("solana", "airdrop", str(amount), address, "--url", cluster)
    if status != 0 or re.search(r"error|rate", out, re.IGNORECASE):
        warn(f"Airdrop failed (likely rate limited): {out.splitlines()[-1] if out else status}")
        return False
    return True


def wait_for_balance(
    address: str,
    minimum: Decimal,
    attempts: int = 30,
    delay: float = 5,
    cluster: str = "testnet",
) -> bool:
    log(f"Waiting for balance of '{address}' to reach {minimum} SOL...")

    def funded() -> bool:
        balance = get_balance(address, cluster)
        log(f"Balance: {balance if balance is not None else 'unavailable'} SOL")
        return balance is not None and balance >= minimum

    return poll_until(funded, attempts=attempts, delay=delay)


def fund_account(
    address: str,
    minimum: Decimal,
    cluster: str = "testnet",
    ask: Callable[[str], str] = input,
) -> bool:
    """Bring address to at least minimum SOL.

    Tries the CLI airdrop first, then asks the operator to use a web faucet
    and waits for the balance to arrive.
    """
    balance = get_balance(address, cluster)
    if balance is not None and balance >= minimum:
        log(f"'{address}' already has {balance} SOL")
        return True

    for attempt in range(AIRDROP_ATTEMPTS):
        if request_airdrop(AIRDROP_AMOUNT, address, cluster):
            time.sleep(5)
            balance = get_balance(address, cluster)
            if balance is not None and balance >= minimum:
                log(f"Funded via airdrop: {balance} SOL")
                return True
        if attempt < AIRDROP_ATTEMPTS - 1:
            time.sleep(10)

    warn("Automated airdrop did not reach the minimum balance")
    log("Fund the account with one of these web faucets:")
    for url in FAUCET_URLS:
        log(f"  {url}")
    log(f"Account to fund: {address}")
    try:
        answer = ask("Have you funded the account? [y/N]: ")
    except EOFError:
        return False
    if answer.strip().lower() not in ("y", "yes"):
        return False
    return wait_for_balance(address, minimum, cluster=cluster)


def vote_account_exists(vote_pubkey: str, cluster: str = "testnet") -> bool:
    status, _ = _run("solana", "vote-account", vote_pubkey, "--url", cluster)
    return status == 0


def create_vote_account(keypairs: dict[str, Path], cluster: str = "testnet") -> str:
    """Create the vote account, paid for by the validator identity.

    :return: Vote account public key
    """
    for path in keypairs.values():
        if not path.exists():
            error(f"Keypair not found: '{path}'\nGenerate keys with: validatorvm keys generate")
    vote_pubkey = get_pubkey(keypairs["vote"])
    if vote_account_exists(vote_pubkey, cluster):
        log(f"Vote account '{vote_pubkey}' already exists")
        return vote_pubkey

    log(f"Creating vote account '{vote_pubkey}' for identity '{get_pubkey(keypairs['validator'])}'")
    run_cmd(
        "solana", "create-vote-account", "--url", cluster,
        "--fee-payer", str(keypairs["validator"]),
        str(keypairs["vote"]), str(keypairs["validator"]), str(keypairs["withdrawer"]),
    )
    log(f"Vote account created: {vote_pubkey}")
    return vote_pubkey


def parse_vote_credits(output: str) -> int | None:
    match = _CREDITS_RE.search(output)
    return int(match.group(1).replace(",", "")) if match else None


def _vote_field(output: str, label: str) -> str | None:
    match = re.search(rf"^\s*{label}:\s+(\S+)", output, re.MULTILINE)
    return match.group(1) if match else None


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.replace(",", ""))
    except ValueError:
        return None


def parse_vote_account(output: str) -> VoteAccount:
    """Pick the summary fields out of `solana vote-account` output.

    Fields missing from the output are None.
    """
    text = _vote_field(output, "Account Balance")
    try:
        balance = Decimal(text) if text else None
    except InvalidOperation:
        balance = None
    return VoteAccount(
        balance=balance,
        credits=parse_vote_credits(output),
        commission=_vote_field(output, "Commission"),
        root_slot=_to_int(_vote_field(output, "Root Slot")),
    )


def get_vote_account(vote_pubkey: str, cluster: str = "testnet") -> VoteAccount | None:
    """Vote account summary, or None if the account does not exist or RPC failed."""
    status, out = _run("solana", "vote-account", vote_pubkey, "--url", cluster)
    if status != 0:
        return None
    return parse_vote_account(out)


def in_gossip(identity_pubkey: str, cluster: str = "testnet") -> bool | None:
    """Whether the identity is visible in cluster gossip, None if the lookup failed."""
    status, out = _run("solana", "gossip", "--url", cluster, timeout=GOSSIP_TIMEOUT)
    if status != 0:
        return None
    return identity_pubkey in out


def catchup_status(identity_pubkey: str, cluster: str = "testnet") -> str:
    _, out = _run("solana", "catchup", identity_pubkey, "--url", cluster, timeout=CATCHUP_TIMEOUT)
    return out


def is_caught_up(catchup_output: str) -> bool:
    """True if `solana catchup` output reports the node has caught up."""
    return "has caught up" in catchup_output or bool(re.search(r"\b0 slot\(s\) behind", catchup_output))
