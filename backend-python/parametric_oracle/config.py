"""Engine configuration: defaults, environment overrides and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields

from dotenv import load_dotenv

ENV_PREFIX = "ORACLE_"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for evaluation, adapter calls, sweeps and payout retries.

    ``confidence_floor`` is the minimum aggregate confidence for an automatic
    approve/reject; anything below lands the claim in ``investigating``.
    """
    confidence_floor: float = 0.5
    adapter_timeout_s: float = 5.0
    adapter_retries: int = 2
    backoff_base_s: float = 0.25
    fanout_workers: int = 8
    sweep_workers: int = 4
    sweep_horizon_days: int = 0
    payout_max_attempts: int = 5
    payout_retry_base_s: float = 30.0
    auto_dispatch: bool = True

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_floor <= 1.0:
            raise ValueError("confidence_floor must be within [0, 1]")
        if self.adapter_retries < 0:
            raise ValueError("adapter_retries must be >= 0")
        if self.adapter_timeout_s <= 0:
            raise ValueError("adapter_timeout_s must be > 0")
        if self.sweep_workers < 1 or self.fanout_workers < 1:
            raise ValueError("worker counts must be >= 1")

    @classmethod
    def from_env(cls, env: dict | None = None) -> "EngineConfig":
        """Build a config from ``ORACLE_*`` variables (``.env`` is loaded first)."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)
        overrides = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(raw, f.type)
        return cls(**overrides)


def _coerce(raw: str, type_name) -> object:
    type_name = getattr(type_name, "__name__", type_name)
    if type_name == "bool":
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if type_name == "int":
        return int(raw)
    if type_name == "float":
        return float(raw)
    return raw


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a stream handler to the package logger (idempotent)."""
    level = level or os.getenv(ENV_PREFIX + "LOG_LEVEL", "INFO")
    logger = logging.getLogger("parametric_oracle")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
