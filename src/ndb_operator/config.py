"""Operator configuration: YAML file plus environment overrides.

Searches for ``ndb-operator.yaml`` in the current directory and parent
directories, parses it, then applies ``NDB_OPERATOR_*`` environment
variables on top (e.g. ``NDB_OPERATOR_WORKERS=10``).
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ndb_operator.workqueue.ratelimit import BackoffConfig

CONFIG_FILENAME = "ndb-operator.yaml"
ENV_PREFIX = "NDB_OPERATOR_"


class ConfigError(Exception):
    """Raised when the config file or an override cannot be parsed."""


@dataclass(frozen=True)
class OperatorConfig:
    """Parsed operator configuration."""

    config_path: Path | None = None

    # Cluster access
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    namespace: str = ""

    # Controller
    workers: int = 5
    resync_period_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    backoff_base_seconds: float = 0.005
    backoff_max_seconds: float = 1000.0
    queue_qps: float = 10.0
    queue_burst: int = 100

    # Admission webhook
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 9443
    webhook_certfile: str | None = None
    webhook_keyfile: str | None = None

    log_level: str = "INFO"

    def backoff_config(self) -> BackoffConfig:
        return BackoffConfig(
            base_delay_seconds=self.backoff_base_seconds,
            max_delay_seconds=self.backoff_max_seconds,
            qps=self.queue_qps,
            burst=self.queue_burst,
        )


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``ndb-operator.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: dict[str, str] | None = None,
) -> OperatorConfig:
    """Load the operator config.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Defaults.

    Environment overrides are applied last in every case.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    values: dict[str, Any] = {}
    if config_path is not None:
        values = _parse_file(config_path)
        values["config_path"] = config_path

    values.update(_env_overrides(os.environ if environ is None else environ))
    return OperatorConfig(**values)


def _fields() -> dict[str, dataclasses.Field[Any]]:
    return {f.name: f for f in dataclasses.fields(OperatorConfig) if f.name != "config_path"}


def _parse_file(config_path: Path) -> dict[str, Any]:
    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    fields = _fields()
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise ConfigError(f"Unknown keys in {config_path}: {', '.join(unknown)}")

    values = {key: _coerce(key, fields[key].type, value) for key, value in data.items()}
    if values.get("kubeconfig"):
        values["kubeconfig"] = str((config_path.parent / Path(values["kubeconfig"]).expanduser()).resolve())
    return values


def _env_overrides(environ: Any) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, fld in _fields().items():
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = _coerce(name, fld.type, raw)
    return values


def _coerce(name: str, type_name: Any, value: Any) -> Any:
    """Convert *value* to the field's declared type (annotations are strings)."""
    if value is None:
        return None
    type_name = str(type_name)
    try:
        if type_name == "bool":
            if isinstance(value, bool):
                return value
            return str(value).lower() in ("1", "true", "yes")
        if type_name == "int":
            return int(value)
        if type_name == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
    return str(value)
