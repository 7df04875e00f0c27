"""Local deployment record: what we believe we provisioned.

The record lives in a JSON file (``deployment.state``) addressed by dotted
keys, e.g. ``aws.instance_id``. It can go stale relative to EC2; the
reconciler resolves that, the store never consults the cloud.

Only one operator may run against a store at a time. There is no file
locking; concurrent writers can lose each other's updates.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from .types import DeploymentRecord
from .utils import error, log

INSTANCE_ID = "aws.instance_id"
PUBLIC_IP = "aws.public_ip"
REGION = "aws.region"
INSTANCE_TYPE = "aws.instance_type"
SSH_KEY_FILE = "aws.ssh_key_file"
AUTO_STOP_TIME = "aws.auto_stop_time"
CREATED_AT = "deployment.created_at"
METHOD = "deployment.method"
VALIDATOR_DEPLOYED = "validator.deployed"


def get_path(data: dict, key: str, default: Any = None) -> Any:
    node: Any = data
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_path(data: dict, key: str, value: Any) -> None:
    """Set a dotted key in place, creating intermediate objects as needed."""
    parts = key.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def instance_id(record: DeploymentRecord) -> str | None:
    return get_path(record, INSTANCE_ID) or None


def instance_field(record: DeploymentRecord, key: str, default: Any = None) -> Any:
    """Read a field that only means something once an instance was recorded."""
    if not instance_id(record):
        return default
    return get_path(record, key, default)


class StateStore:
    """JSON-file backed deployment record with atomic writes."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DeploymentRecord:
        """Load the record; a missing file is an empty record."""
        if not self.exists():
            return {}
        text = self.path.read_text()
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            error(
                f"State file '{self.path}' is not valid JSON ({e}).\n"
                f"Fix or move it aside before re-running."
            )
        if not isinstance(data, dict):
            error(f"State file '{self.path}' must contain a JSON object")
        return data

    def get_field(self, key: str, default: Any = None) -> Any:
        return get_path(self.load(), key, default)

    def set_field(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, fields: dict[str, Any]) -> DeploymentRecord:
        """Merge several dotted keys in a single atomic write.

        Keys not named in fields, including ones this version does not know
        about, are kept as they are.
        """
        data = self.load()
        for key, value in fields.items():
            set_path(data, key, value)
        self._write(data)
        return data

    def delete(self) -> None:
        if self.exists():
            self.path.unlink()
            log(f"Removed '{self.path}'")

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
