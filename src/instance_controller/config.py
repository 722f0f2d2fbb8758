"""Controller configuration.

Defaults < YAML file (``--config``) < environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from instance_controller.events import PartitionKey

# environment variable -> config field
ENV_VARS = {
    "INSTANCE_NAMESPACE": "namespace",
    "KAFKA_BROKERS": "kafka_brokers",
    "KAFKA_TOPIC": "kafka_topic",
    "KAFKA_CLIENT_ID": "client_id",
    "EVENT_SOURCE": "event_source",
    "PARTITION_KEY": "partition_key",
    "WORKERS": "workers",
    "REQUEST_TIMEOUT_SEC": "request_timeout_sec",
    "FLUSH_TIMEOUT_SEC": "flush_timeout_sec",
    "MAX_BACKOFF_SEC": "max_backoff_sec",
    "STATUS_SUBRESOURCE": "status_subresource",
    "TRACK_STATE_CHANGES": "track_state_changes",
    "NOTIFY_WEBHOOK_URL": "notify_webhook_url",
    "LOG_LEVEL": "log_level",
}


@dataclass
class ControllerConfig:
    namespace: str = "default"
    kafka_brokers: str = "localhost:9092"
    kafka_topic: str = "cow.instance.events"
    client_id: str = "instance-controller"
    event_source: str = "instance-controller"
    partition_key: str = PartitionKey.INSTANCE.value
    workers: int = 4
    request_timeout_sec: float = 10.0
    flush_timeout_sec: float = 10.0
    max_backoff_sec: float = 300.0
    status_subresource: bool = True
    track_state_changes: bool = True
    notify_webhook_url: str = ""
    log_level: str = "INFO"

    def __post_init__(self):
        for f in fields(self):
            setattr(self, f.name, _coerce(f.name, f.type, getattr(self, f.name)))
        PartitionKey(self.partition_key)
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")

    @classmethod
    def load(cls, path: Optional[str | Path] = None, environ: Optional[Mapping[str, str]] = None) -> "ControllerConfig":
        values: Dict[str, Any] = {}
        if path:
            values.update(load_yaml(path))
        env = os.environ if environ is None else environ
        for var, name in ENV_VARS.items():
            if env.get(var):
                values[name] = env[var]

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**values)


def _coerce(name: str, type_name: str, value: Any) -> Any:
    # annotations are strings under `from __future__ import annotations`
    try:
        if type_name == "bool":
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(value)
        if type_name == "int":
            return int(value)
        if type_name == "float":
            return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {name}: {value!r}") from None
    return str(value)


def load_yaml(path: str | Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
