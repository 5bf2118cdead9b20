"""
Connection and workflow configuration.

Values resolve in precedence order: environment variables, then an
optional YAML file, then built-in defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Final, Mapping, Optional

import yaml

from zkmember_client.constants import (
    DEFAULT_BACKFILL_BACKOFF,
    DEFAULT_BACKFILL_MAX_ATTEMPTS,
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_MIRROR_PATH,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PORT,
    DEFAULT_PROVER_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
)
from zkmember_client.errors import ConfigurationError
from zkmember_client.workflow.coordinator import SubmissionPolicy

_REQUIRED: Final[tuple[str, ...]] = ("rpc_url", "contract_address", "abi_path")

# config field -> environment variable
_ENV_NAMES: Final[Dict[str, str]] = {
    "rpc_url": "RPC_URL",
    "contract_address": "CONTRACT_ADDRESS",
    "abi_path": "ABI_PATH",
    "port": "PORT",
    "server_url": "SERVER_URL",
    "mirror_path": "MIRROR_PATH",
    "from_block": "FROM_BLOCK",
    "poll_interval": "POLL_INTERVAL",
    "confirmation_timeout": "CONFIRMATION_TIMEOUT",
    "backfill_max_attempts": "BACKFILL_MAX_ATTEMPTS",
    "backfill_backoff": "BACKFILL_BACKOFF",
    "request_timeout": "REQUEST_TIMEOUT",
    "submission_policy": "SUBMISSION_POLICY",
    "prover_command": "PROVER_COMMAND",
    "prover_timeout": "PROVER_TIMEOUT",
}


@dataclass(frozen=True)
class ClientConfig:
    rpc_url: str
    contract_address: str
    abi_path: Path
    server_url: str = f"http://localhost:{DEFAULT_PORT}"
    mirror_path: Path = Path(DEFAULT_MIRROR_PATH)
    from_block: int = 0
    poll_interval: float = DEFAULT_POLL_INTERVAL
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    backfill_max_attempts: int = DEFAULT_BACKFILL_MAX_ATTEMPTS
    backfill_backoff: float = DEFAULT_BACKFILL_BACKOFF
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    submission_policy: SubmissionPolicy = SubmissionPolicy.LOG_AND_CONTINUE
    prover_command: Optional[str] = None
    prover_timeout: float = DEFAULT_PROVER_TIMEOUT


def _read_file(path: Path | str) -> Dict[str, Any]:
    file_path = Path(path)
    try:
        data = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot read config file {file_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {file_path} must hold a mapping")
    unknown = set(data) - set(_ENV_NAMES)
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(sorted(unknown))}")
    return dict(data)


def _convert(name: str, value: Any, kind: Callable[[Any], Any]) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid value for {name}: {value!r}") from exc


def load_config(
    path: Optional[Path | str] = None, environ: Optional[Mapping[str, str]] = None
) -> ClientConfig:
    """
    Build the client configuration.

    Args:
        path: Optional YAML file with lower-case keys (e.g. ``rpc_url``)
        environ: Environment mapping (defaults to ``os.environ``)

    Raises:
        ConfigurationError: if required values are missing or malformed
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = _read_file(path) if path is not None else {}

    for field_name, env_name in _ENV_NAMES.items():
        env_value = env.get(env_name)
        if env_value not in (None, ""):
            values[field_name] = env_value

    missing = [_ENV_NAMES[name] for name in _REQUIRED if not values.get(name)]
    if missing:
        raise ConfigurationError(f"Environment variables not found: {', '.join(missing)}")

    port = values.pop("port", None)
    if not values.get("server_url"):
        port = DEFAULT_PORT if port is None else _convert("port", port, int)
        values["server_url"] = f"http://localhost:{port}"

    converters: Dict[str, Callable[[Any], Any]] = {
        "rpc_url": str,
        "contract_address": str,
        "abi_path": Path,
        "server_url": str,
        "mirror_path": Path,
        "from_block": int,
        "poll_interval": float,
        "confirmation_timeout": float,
        "backfill_max_attempts": int,
        "backfill_backoff": float,
        "request_timeout": float,
        "submission_policy": SubmissionPolicy.parse,
        "prover_command": str,
        "prover_timeout": float,
    }
    kwargs = {
        name: _convert(name, value, converters[name])
        for name, value in values.items()
        if value is not None
    }
    if kwargs.get("from_block", 0) < 0:
        raise ConfigurationError("from_block must be >= 0")
    if kwargs.get("backfill_max_attempts", 1) < 1:
        raise ConfigurationError("backfill_max_attempts must be >= 1")
    return ClientConfig(**kwargs)
