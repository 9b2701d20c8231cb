"""Service level indicators for the tender pipeline.

Recording is record-and-forget: a failing metric sink is logged and never
changes the outcome of the pipeline call that produced the measurement.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SliDefinition:
    name: str
    description: str
    target: float
    unit: str
    time_window: str = "24h"


SLI_DEFINITIONS: dict[str, SliDefinition] = {
    "pipeline_availability": SliDefinition(
        name="pipeline_availability",
        description="Pipeline step completion rate (successful / total attempts)",
        target=0.99,
        unit="percentage",
    ),
    "pipeline_latency_p95": SliDefinition(
        name="pipeline_latency_p95",
        description="95th percentile pipeline step execution time",
        target=30.0,
        unit="seconds",
    ),
    "guard_success_rate": SliDefinition(
        name="guard_success_rate",
        description="Guard condition validation success rate",
        target=0.95,
        unit="percentage",
    ),
    "cost_accuracy": SliDefinition(
        name="cost_accuracy",
        description="Cost simulations within reasonable bounds of the tender estimate",
        target=0.90,
        unit="percentage",
    ),
    "idempotency_compliance": SliDefinition(
        name="idempotency_compliance",
        description="Duplicate requests handled without re-execution",
        target=1.0,
        unit="percentage",
    ),
    "pt_equality_compliance": SliDefinition(
        name="pt_equality_compliance",
        description="Project total equals the sum of its cost components",
        target=0.98,
        unit="percentage",
    ),
}

TIME_WINDOWS: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


class MetricSink(Protocol):
    def append_sli_metric(self, *, metric: dict[str, Any]) -> dict[str, Any]: ...

    def list_sli_metrics(self, *, name: str | None = None, since: str | None = None) -> list[dict[str, Any]]: ...


def _percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    if ratio <= 0:
        return min(values)
    if ratio >= 1:
        return max(values)
    ordered = sorted(values)
    rank = max(1, math.ceil(ratio * len(ordered)))
    return float(ordered[rank - 1])


def sli_value(definition: SliDefinition, values: list[float]) -> float:
    if not values:
        return 0.0
    if definition.unit == "seconds":
        return _percentile(values, 0.95)
    return sum(1 for v in values if v >= 1) / len(values)


def evaluate_slo(definition: SliDefinition, current: float) -> tuple[str, float]:
    """Return ``(status, burn_rate)`` for one SLI value."""
    if definition.unit == "seconds":
        burn_rate = current / definition.target if definition.target > 0 else 0.0
        if current > definition.target / 0.9:
            return "CRITICAL", burn_rate
        if current > definition.target:
            return "WARNING", burn_rate
        return "HEALTHY", burn_rate

    error_budget = 1 - definition.target
    error_rate = max(0.0, definition.target - current)
    if error_budget > 0:
        burn_rate = error_rate / error_budget
    else:
        burn_rate = math.inf if error_rate > 0 else 0.0
    if current < definition.target * 0.9:
        return "CRITICAL", burn_rate
    if current < definition.target * 0.95:
        return "WARNING", burn_rate
    return "HEALTHY", burn_rate


class SliRecorder:
    def __init__(
        self,
        sink: MetricSink,
        *,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._enabled = enabled
        self._clock = clock or (lambda: datetime.now(UTC))

    def record(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not self._enabled:
            return
        metric = {
            "name": name,
            "value": float(value),
            "timestamp": self._clock().isoformat(),
            "labels": dict(labels or {}),
            "details": dict(details or {}),
        }
        try:
            self._sink.append_sli_metric(metric=metric)
        except Exception:
            logger.exception("sli_record_failed name=%s value=%s", name, value)
            return
        logger.debug("sli_recorded name=%s value=%s labels=%s", name, value, metric["labels"])

    def record_pipeline_step(
        self,
        *,
        step: str,
        success: bool,
        duration_ms: float,
        doc_hash: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        labels = {"step": step, "doc_hash": doc_hash}
        self.record(
            "pipeline_availability",
            1 if success else 0,
            labels,
            {"duration_ms": duration_ms, **(details or {})},
        )
        if success:
            self.record("pipeline_latency_p95", duration_ms / 1000, labels, details)

    def record_guard_evaluation(
        self,
        *,
        step: str,
        passed: bool,
        confidence: float,
        doc_hash: str,
        blockers_count: int = 0,
    ) -> None:
        self.record(
            "guard_success_rate",
            1 if passed else 0,
            {"step": step, "doc_hash": doc_hash},
            {"confidence": confidence, "blockers_count": blockers_count},
        )

    def record_cost_accuracy(
        self,
        *,
        tender_id: str,
        ratio: float,
        doc_hash: str,
        lower: float = 0.5,
        upper: float = 1.5,
    ) -> bool:
        reasonable = lower <= ratio <= upper
        self.record(
            "cost_accuracy",
            1 if reasonable else 0,
            {"tender_id": tender_id, "doc_hash": doc_hash},
            {"cost_ratio": ratio, "reasonable_bounds": f"{lower}-{upper}"},
        )
        return reasonable

    def record_idempotency_check(self, *, doc_hash: str, step: str, idempotent: bool, action: str) -> None:
        self.record(
            "idempotency_compliance",
            1 if idempotent else 0,
            {"step": step, "doc_hash": doc_hash, "action": action},
            {"action": action},
        )

    def record_pt_equality(self, *, doc_hash: str, step: str, held: bool, details: dict[str, Any] | None = None) -> None:
        self.record(
            "pt_equality_compliance",
            1 if held else 0,
            {"step": step, "doc_hash": doc_hash},
            {"pt_equality": held, **(details or {})},
        )

    def calculate_slo_status(self, name: str, window: str = "24h") -> dict[str, Any] | None:
        definition = SLI_DEFINITIONS.get(name)
        if definition is None:
            logger.warning("sli_unknown name=%s", name)
            return None
        span = TIME_WINDOWS.get(window)
        if span is None:
            raise ValueError(f"unsupported time window: {window}")
        since = (self._clock() - span).isoformat()
        measurements = self._sink.list_sli_metrics(name=name, since=since)
        if not measurements:
            return {
                "sli": name,
                "description": definition.description,
                "unit": definition.unit,
                "current_value": 0.0,
                "target": definition.target,
                "status": "CRITICAL",
                "burn_rate": 1.0,
                "measurement_count": 0,
                "measurements": [],
            }
        current = sli_value(definition, [float(m["value"]) for m in measurements])
        status, burn_rate = evaluate_slo(definition, current)
        logger.info(
            "slo_status name=%s current=%s target=%s status=%s burn_rate=%s count=%s",
            name,
            current,
            definition.target,
            status,
            burn_rate,
            len(measurements),
        )
        return {
            "sli": name,
            "description": definition.description,
            "unit": definition.unit,
            "current_value": current,
            "target": definition.target,
            "status": status,
            "burn_rate": burn_rate,
            "measurement_count": len(measurements),
            "measurements": measurements,
        }

    def slo_dashboard(self, window: str = "24h") -> dict[str, Any]:
        slos = [s for s in (self.calculate_slo_status(n, window) for n in SLI_DEFINITIONS) if s is not None]
        summary = {
            "healthy": sum(1 for s in slos if s["status"] == "HEALTHY"),
            "warning": sum(1 for s in slos if s["status"] == "WARNING"),
            "critical": sum(1 for s in slos if s["status"] == "CRITICAL"),
        }
        overall = "HEALTHY"
        if summary["critical"]:
            overall = "CRITICAL"
        elif summary["warning"]:
            overall = "WARNING"
        return {"overall": overall, "window": window, "summary": summary, "slos": slos}
