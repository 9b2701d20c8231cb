from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(
    env: Mapping[str, str],
    name: str,
    *,
    default: float,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    return _as_bool(raw)


@dataclass(frozen=True)
class PipelineSettings:
    max_retries: int = 3
    ledger_backend: str = "memory"
    postgres_dsn: str = ""
    simulation_recent_hours: int = 24
    cost_ratio_min: float = 0.5
    cost_ratio_max: float = 1.5
    k_factor: float = 0.93
    record_sli: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineSettings":
        env = os.environ if environ is None else environ
        backend = env.get("PIPELINE_LEDGER_BACKEND", "memory").strip().lower() or "memory"
        if backend not in {"memory", "postgres"}:
            raise ValueError(f"unsupported PIPELINE_LEDGER_BACKEND: {backend}")
        return cls(
            max_retries=_env_int(env, "PIPELINE_MAX_RETRIES", default=3, minimum=0),
            ledger_backend=backend,
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            simulation_recent_hours=_env_int(env, "SIMULATION_RECENT_HOURS", default=24, minimum=1),
            cost_ratio_min=_env_float(env, "COST_RATIO_MIN", default=0.5),
            cost_ratio_max=_env_float(env, "COST_RATIO_MAX", default=1.5),
            k_factor=_env_float(env, "KIK_K_FACTOR", default=0.93, maximum=1.0),
            record_sli=_env_bool(env, "PIPELINE_RECORD_SLI", default=True),
            log_level=env.get("PIPELINE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )
