"""Runtime settings loaded from environment variables and .env."""

import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

DEFAULT_REGION = "us-west-1"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'")


@dataclass
class Settings:
    """Paths, AWS target and timing knobs shared by every command.

    Built once per invocation and passed to each component.
    """

    project_root: Path
    terraform_dir: Path
    keys_dir: Path
    state_file: Path
    region: str = DEFAULT_REGION
    aws_profile: str | None = None
    ssh_user: str = "ubuntu"
    ssh_connect_timeout: int = 10
    poll_attempts: int = 40
    poll_delay: float = 15.0
    probe_attempts: int = 3
    probe_delay: float = 2.0
    auto_stop_hours: int = 8
    volume_size_gb: int = 2048
    cluster: str = "testnet"
    min_balance_sol: Decimal = Decimal("5")

    @classmethod
    def from_env(cls, root: str | Path | None = None) -> "Settings":
        """Load settings from VALIDATORVM_* variables, falling back to defaults.

        :param root: Project root (default: VALIDATORVM_ROOT or cwd)
        """
        load_dotenv(find_dotenv(usecwd=True))

        project_root = Path(root or os.getenv("VALIDATORVM_ROOT") or Path.cwd())
        terraform_dir = Path(
            os.getenv("VALIDATORVM_TERRAFORM_DIR") or project_root / "terraform"
        )
        keys_dir = Path(os.getenv("VALIDATORVM_KEYS_DIR") or project_root / "keys")
        state_file = Path(
            os.getenv("VALIDATORVM_STATE_FILE") or project_root / "deployment.state"
        )

        return cls(
            project_root=project_root,
            terraform_dir=terraform_dir,
            keys_dir=keys_dir,
            state_file=state_file,
            region=os.getenv("AWS_REGION") or DEFAULT_REGION,
            aws_profile=os.getenv("AWS_PROFILE") or None,
            ssh_user=os.getenv("VALIDATORVM_SSH_USER", "ubuntu"),
            ssh_connect_timeout=_env_int("VALIDATORVM_SSH_TIMEOUT", 10),
            poll_attempts=_env_int("VALIDATORVM_POLL_ATTEMPTS", 40),
            poll_delay=float(os.getenv("VALIDATORVM_POLL_DELAY", "15")),
            probe_attempts=_env_int("VALIDATORVM_PROBE_ATTEMPTS", 3),
            probe_delay=float(os.getenv("VALIDATORVM_PROBE_DELAY", "2")),
            auto_stop_hours=_env_int("VALIDATORVM_AUTO_STOP_HOURS", 8),
            volume_size_gb=_env_int("VALIDATORVM_VOLUME_SIZE_GB", 2048),
            cluster=os.getenv("VALIDATORVM_CLUSTER", "testnet"),
            min_balance_sol=Decimal(os.getenv("VALIDATORVM_MIN_BALANCE", "5")),
        )
