"""Engine configuration with sensible defaults.

Three layers, later wins: dataclass defaults, a YAML file
(EngineConfig.from_yaml), then FRAUD_* environment variables
(EngineConfig.from_env / apply_env).  main.py adds CLI flags on top.

Example YAML:

    max_lateness_seconds: 600
    distinct_cap: 128
    high_risk_cities: [Unknown, Outside India, Lagos]
    rules:
      velocity_burst: {threshold: 15, cooldown_seconds: 300}
      merchant_exposure: {enabled: false}
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from fraud_detector.reference import DEFAULT_HIGH_RISK_CITIES, DEFAULT_HIGH_RISK_MCCS


@dataclass
class EngineConfig:
    # Aggregation store
    shards: int = 16
    max_lateness_seconds: float = 300.0
    distinct_cap: int = 64
    dedup_capacity: int = 100_000
    retention_grace_seconds: float | None = None  # None -> max_lateness_seconds
    session_idle_seconds: float = 86_400.0

    # Workers and expiry
    workers: int = 4
    eviction_interval_seconds: float = 30.0

    # Alert sink
    sink_buffer_size: int = 10_000
    sink_max_retries: int = 5
    sink_backoff_seconds: float = 0.5
    sink_backoff_max_seconds: float = 30.0
    max_trigger_refs: int = 20

    # Reference lists used when no reference file overrides them
    high_risk_mccs: tuple = DEFAULT_HIGH_RISK_MCCS
    high_risk_cities: tuple = DEFAULT_HIGH_RISK_CITIES

    # rule id -> {threshold, window_seconds, score, severity, cooldown_seconds, enabled}
    rules: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.shards < 1:
            raise ValueError("shards must be >= 1")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.max_lateness_seconds < 0:
            raise ValueError("max_lateness_seconds must be >= 0")
        if self.distinct_cap < 1:
            raise ValueError("distinct_cap must be >= 1")
        if self.sink_buffer_size < 1:
            raise ValueError("sink_buffer_size must be >= 1")
        self.high_risk_mccs = tuple(str(m) for m in self.high_risk_mccs)
        self.high_risk_cities = tuple(self.high_risk_cities)
        for rule_id, overrides in self.rules.items():
            if not isinstance(overrides, dict):
                raise ValueError(f"rules.{rule_id} must be a mapping")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path.name}: config must be a mapping")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"{path.name}: unknown setting(s) {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_env(cls, path: str | Path | None = None) -> "EngineConfig":
        """Defaults (or *path*) with FRAUD_* environment overrides applied."""
        config = cls.from_yaml(path) if path else cls()
        config.apply_env()
        return config

    def apply_env(self, environ=None) -> "EngineConfig":
        env = os.environ if environ is None else environ

        if v := env.get("FRAUD_SHARDS"):
            self.shards = int(v)
        if v := env.get("FRAUD_WORKERS"):
            self.workers = int(v)
        if v := env.get("FRAUD_MAX_LATENESS_SECONDS"):
            self.max_lateness_seconds = float(v)
        if v := env.get("FRAUD_DISTINCT_CAP"):
            self.distinct_cap = int(v)
        if v := env.get("FRAUD_SESSION_IDLE_SECONDS"):
            self.session_idle_seconds = float(v)
        if v := env.get("FRAUD_EVICTION_INTERVAL_SECONDS"):
            self.eviction_interval_seconds = float(v)
        if v := env.get("FRAUD_SINK_BUFFER_SIZE"):
            self.sink_buffer_size = int(v)
        if v := env.get("FRAUD_HIGH_RISK_MCCS"):
            self.high_risk_mccs = tuple(m.strip() for m in v.split(",") if m.strip())
        if v := env.get("FRAUD_HIGH_RISK_CITIES"):
            self.high_risk_cities = tuple(c.strip() for c in v.split(",") if c.strip())

        self.__post_init__()
        return self
