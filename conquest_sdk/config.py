"""
Conquest SDK - Configuration

Agent settings from a JSON file, CONQUEST_* environment variables or a
.env file. The private key is only ever read, never generated or written.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from .errors import InputError

log = logging.getLogger(__name__)

ENV_PREFIX = "CONQUEST_"


@dataclass
class AgentConfig:
    # Ledger
    rpc_url: str = "http://localhost:8545"
    contract_address: str = ""
    private_key: str = ""
    chain_id: Optional[int] = None
    request_timeout: int = 30  # seconds
    receipt_timeout: int = 120  # seconds
    wait_for_receipt: bool = True

    # Local state
    data_dir: str = "data"

    # Sweep daemon
    poll_interval: int = 60  # seconds
    cleanup_age: int = 7 * 24 * 3600  # seconds

    # REST server
    http_port: int = 8090

    log_level: str = "INFO"

    @classmethod
    def from_file(cls, path: str) -> "AgentConfig":
        """Load from a JSON file; unknown keys are rejected."""
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text())
        except (OSError, ValueError) as e:
            raise InputError(f"Cannot read config {config_path}: {e}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InputError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_env(cls, environ=None) -> "AgentConfig":
        """Build from CONQUEST_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            setattr(config, f.name, _coerce(f.name, getattr(cls, f.name), raw))
        return config

    def validate(self):
        if not self.contract_address:
            raise InputError("contract_address is required")
        if not self.rpc_url:
            raise InputError("rpc_url is required")

    def masked_key(self) -> str:
        key = self.private_key
        return key[:6] + "..." + key[-4:] if len(key) > 10 else "***"


def _coerce(name: str, default, raw: str):
    if isinstance(default, bool):
        return raw.strip().lower() not in ("0", "false", "no")
    if isinstance(default, int) or name == "chain_id":
        try:
            return int(raw)
        except ValueError:
            raise InputError(f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}")
    return raw


def load_env_file(path: str):
    """Load KEY=VALUE lines into os.environ without overriding existing values (chmod 600 recommended!)."""
    if not os.path.exists(path):
        return
    log.info(f"Loading config from {path}")
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
