import os
from dataclasses import dataclass, fields
from typing import Mapping

from .utils import parse_delay_to_seconds

DB_FILE = os.environ.get("MASKCTL_DB", "maskctl.db")
BLOB_DIR = os.environ.get("MASKCTL_BLOBS", "blobs")

DEFAULT_CONFIG = {
    "backoff_base": "2",
    "max_stage_attempts": "3",
    "lease_seconds": "120",
    "heartbeat_seconds": "30",
    "lease_wait_seconds": "5",
    "max_deliveries": "5",
    "worker_idle_timeout_seconds": "300",
    "scale_up_threshold": "10",
    "scale_down_threshold": "5",
    "jobs_per_worker": "2",
    "min_workers": "1",
    "max_workers": "50",
    "scale_cooldown_seconds": "240",
    "control_interval_seconds": "60",
    "default_batch_size": "16",
    "artifact_ttl_seconds": "86400",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())


@dataclass(frozen=True)
class Settings:
    """Typed view over the string config table."""

    backoff_base: int = 2
    max_stage_attempts: int = 3
    lease_seconds: float = 120
    heartbeat_seconds: float = 30
    lease_wait_seconds: float = 5
    max_deliveries: int = 5
    worker_idle_timeout_seconds: float = 300
    scale_up_threshold: int = 10
    scale_down_threshold: int = 5
    jobs_per_worker: int = 2
    min_workers: int = 1
    max_workers: int = 50
    scale_cooldown_seconds: float = 240
    control_interval_seconds: float = 60
    default_batch_size: int = 16
    artifact_ttl_seconds: int = 86400

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "Settings":
        values = {}
        for f in fields(cls):
            raw = cfg.get(f.name, DEFAULT_CONFIG[f.name])
            values[f.name] = coerce_value(f.name, raw)
        settings = cls(**values)
        settings.check()
        return settings

    def check(self):
        if self.heartbeat_seconds >= self.lease_seconds:
            raise ValueError("heartbeat_seconds must be shorter than lease_seconds")
        if not 0 <= self.min_workers <= self.max_workers:
            raise ValueError("require 0 <= min_workers <= max_workers")
        if self.max_stage_attempts < 1 or self.max_deliveries < 1:
            raise ValueError("max_stage_attempts and max_deliveries must be >= 1")
        if self.jobs_per_worker < 1 or self.default_batch_size < 1:
            raise ValueError("jobs_per_worker and default_batch_size must be >= 1")


_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def coerce_value(key: str, raw: str):
    """Parse a stored config value. `*_seconds` keys also take durations like "2m" or "1h30m"."""
    kind = _FIELD_TYPES[key]
    try:
        if kind in (int, "int"):
            return int(raw)
        return float(raw)
    except (TypeError, ValueError):
        if key.endswith("_seconds") and isinstance(raw, str):
            return parse_delay_to_seconds(raw)
        raise ValueError(f"{key} must be a number, got {raw!r}")
