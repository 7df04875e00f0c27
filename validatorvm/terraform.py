"""Thin wrapper over the terraform CLI for the validator stack."""

import json
import re
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from .utils import LogStream, error, log, require_command, warn

PLAN_FILE = "tfplan"
TFVARS_FILE = "terraform.tfvars"
INSTALL_HINT = "https://developer.hashicorp.com/terraform/downloads"

_TFVAR_RE = re.compile(r'^\s*([A-Za-z0-9_]+)\s*=\s*"?([^"#\n]*?)"?\s*(?:#.*)?$')


class InfraTool(Protocol):
    def initialized(self) -> bool: ...

    def init(self) -> bool: ...

    def plan(self) -> bool: ...

    def apply(self) -> bool: ...

    def destroy(self) -> bool: ...

    def output(self, key: str) -> str: ...

    def read_tfvar(self, key: str) -> str | None: ...

    def cleanup(self) -> None: ...


class Terraform:
    """Run terraform in a fixed working directory.

    Mutating commands return True/False from the exit code and stream their
    output through the logger. Reads never raise.
    """

    def __init__(self, terraform_dir: str | Path, binary: str = "terraform"):
        self.dir = Path(terraform_dir)
        self.binary = binary

    @property
    def plan_file(self) -> Path:
        return self.dir / PLAN_FILE

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _readable(self) -> bool:
        return self.available() and self.dir.is_dir()

    def require(self) -> None:
        """Fail fast if terraform or its working directory is missing."""
        require_command(self.binary, INSTALL_HINT)
        if not self.dir.is_dir():
            error(f"Terraform directory not found: '{self.dir}'")

    def _run(self, *args: str) -> bool:
        cmd = [self.binary, *args]
        log(f"Running: {' '.join(cmd)}")
        stream = LogStream()
        proc = subprocess.Popen(
            cmd,
            cwd=self.dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        assert proc.stdout is not None
        for line in proc.stdout:
            stream.write(line)
        stream.flush()
        returncode = proc.wait()
        if returncode != 0:
            warn(f"terraform {args[0]} exited with status {returncode}")
        return returncode == 0

    def _capture(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.binary, *args], cwd=self.dir, capture_output=True, text=True
        )

    def initialized(self) -> bool:
        return (self.dir / ".terraform").is_dir()

    def ensure_tfvars(self) -> None:
        """Create terraform.tfvars from the example file on first use."""
        tfvars = self.dir / TFVARS_FILE
        if tfvars.exists():
            return
        example = self.dir / f"{TFVARS_FILE}.example"
        if not example.exists():
            error(f"'{tfvars}' not found and no '{example.name}' to copy from")
        shutil.copy(example, tfvars)
        warn(f"Created '{tfvars}' from example, review it before deploying")

    def init(self) -> bool:
        return self._run("init", "-input=false")

    def validate(self) -> bool:
        return self._run("validate")

    def plan(self) -> bool:
        return self._run("plan", "-input=false", f"-out={PLAN_FILE}")

    def apply(self) -> bool:
        if not self.plan_file.exists():
            log("No saved plan found, creating one first...")
            if not self.plan():
                return False
        return self._run("apply", "-input=false", "-auto-approve", PLAN_FILE)

    def destroy(self) -> bool:
        return self._run("destroy", "-input=false", "-auto-approve")

    def output(self, key: str) -> str:
        """Read a single output; missing or empty outputs return ''."""
        if not self._readable():
            return ""
        result = self._capture("output", "-raw", key)
        if result.returncode != 0:
            return ""
        value = result.stdout.strip()
        return "" if value in ("null", "None") else value

    def has_state(self) -> bool:
        """True if terraform state holds any resources."""
        if not self._readable():
            return False
        result = self._capture("show", "-json")
        if result.returncode != 0 or not result.stdout.strip():
            return False
        try:
            state = json.loads(result.stdout)
        except json.JSONDecodeError:
            return False
        return bool(state.get("values"))

    def read_tfvar(self, key: str) -> str | None:
        """Read a simple ``key = value`` assignment from terraform.tfvars."""
        tfvars = self.dir / TFVARS_FILE
        if not tfvars.exists():
            return None
        for line in tfvars.read_text().splitlines():
            match = _TFVAR_RE.match(line)
            if match and match.group(1) == key:
                return match.group(2).strip()
        return None

    def cleanup(self) -> None:
        if self.plan_file.exists():
            self.plan_file.unlink()
            log(f"Removed '{self.plan_file}'")
