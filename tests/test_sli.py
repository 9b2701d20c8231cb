from __future__ import annotations

import logging
import math
from datetime import UTC, datetime, timedelta

import pytest

from tender_pipeline.sli import SLI_DEFINITIONS, SliRecorder, _percentile, evaluate_slo, sli_value

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class BrokenSink:
    def append_sli_metric(self, *, metric):
        raise RuntimeError("metrics table locked")

    def list_sli_metrics(self, *, name=None, since=None):
        return []


def test_sink_failure_never_reaches_caller(caplog):
    recorder = SliRecorder(BrokenSink(), clock=lambda: NOW)

    with caplog.at_level(logging.ERROR, logger="tender_pipeline.sli"):
        recorder.record_pipeline_step(step="SIMULATION_DONE", success=True, duration_ms=1200, doc_hash="d")
        recorder.record_guard_evaluation(step="SIMULATION_DONE", passed=False, confidence=0.2, doc_hash="d")

    assert any("sli_record_failed" in r.getMessage() for r in caplog.records)


def test_disabled_recorder_does_not_touch_sink():
    recorder = SliRecorder(BrokenSink(), enabled=False)

    recorder.record("pipeline_availability", 1)


def test_pipeline_step_records_latency_only_on_success(store):
    recorder = SliRecorder(store, clock=lambda: NOW)

    recorder.record_pipeline_step(step="CHECKLIST_DONE", success=True, duration_ms=2500, doc_hash="d1")
    recorder.record_pipeline_step(step="CHECKLIST_DONE", success=False, duration_ms=300, doc_hash="d1")

    latency = store.list_sli_metrics(name="pipeline_latency_p95")
    assert [m["value"] for m in latency] == [2.5]
    availability = store.list_sli_metrics(name="pipeline_availability")
    assert [m["value"] for m in availability] == [1.0, 0.0]
    assert availability[1]["details"]["duration_ms"] == 300
    assert availability[0]["labels"] == {"step": "CHECKLIST_DONE", "doc_hash": "d1"}
    assert availability[0]["timestamp"] == NOW.isoformat()


def test_cost_accuracy_bounds(store):
    recorder = SliRecorder(store, clock=lambda: NOW)

    assert recorder.record_cost_accuracy(tender_id="t", ratio=0.96, doc_hash="d") is True
    assert recorder.record_cost_accuracy(tender_id="t", ratio=1.7, doc_hash="d") is False
    assert recorder.record_cost_accuracy(tender_id="t", ratio=0.45, doc_hash="d", lower=0.4, upper=2.0) is True
    assert [m["value"] for m in store.list_sli_metrics(name="cost_accuracy")] == [1.0, 0.0, 1.0]


def test_percentile_uses_nearest_rank():
    values = [float(x) for x in range(1, 21)]

    assert _percentile(values, 0.95) == 19.0
    assert _percentile(values, 0.5) == 10.0
    assert _percentile([], 0.95) == 0.0
    assert _percentile([3.0, 1.0], 1.0) == 3.0


def test_rate_slo_status_and_burn_rate():
    definition = SLI_DEFINITIONS["pipeline_availability"]

    assert evaluate_slo(definition, 1.0) == ("HEALTHY", 0.0)
    status, burn = evaluate_slo(definition, 0.9)
    assert status == "WARNING"
    assert burn == pytest.approx(9.0)
    status, _ = evaluate_slo(definition, 0.8)
    assert status == "CRITICAL"


def test_zero_budget_slo_burns_infinitely_on_any_error():
    definition = SLI_DEFINITIONS["idempotency_compliance"]

    assert evaluate_slo(definition, 1.0) == ("HEALTHY", 0.0)
    status, burn = evaluate_slo(definition, 0.99)
    assert status == "HEALTHY"
    assert math.isinf(burn)


def test_latency_slo_compares_against_ceiling():
    definition = SLI_DEFINITIONS["pipeline_latency_p95"]

    assert evaluate_slo(definition, 12.0) == ("HEALTHY", pytest.approx(0.4))
    assert evaluate_slo(definition, 32.0)[0] == "WARNING"
    assert evaluate_slo(definition, 40.0)[0] == "CRITICAL"


def test_sli_value_by_unit():
    assert sli_value(SLI_DEFINITIONS["pipeline_latency_p95"], [1.0, 2.0, 3.0]) == 3.0
    assert sli_value(SLI_DEFINITIONS["guard_success_rate"], [1.0, 0.0, 1.0, 1.0]) == 0.75


def test_slo_status_filters_by_window(store):
    recorder = SliRecorder(store, clock=lambda: NOW)
    for hours in (30, 48):
        store.append_sli_metric(
            metric={
                "name": "guard_success_rate",
                "value": 0.0,
                "timestamp": (NOW - timedelta(hours=hours)).isoformat(),
                "labels": {},
                "details": {},
            }
        )
    for _ in range(19):
        recorder.record_guard_evaluation(step="ANALYZE_COMPLETED", passed=True, confidence=0.9, doc_hash="d")
    recorder.record_guard_evaluation(step="ANALYZE_COMPLETED", passed=False, confidence=0.1, doc_hash="d")

    day = recorder.calculate_slo_status("guard_success_rate", "24h")
    week = recorder.calculate_slo_status("guard_success_rate", "7d")

    assert day["measurement_count"] == 20
    assert day["current_value"] == pytest.approx(0.95)
    assert day["status"] == "HEALTHY"
    assert week["measurement_count"] == 22
    assert week["status"] == "WARNING"


def test_slo_status_without_data_is_critical(store):
    recorder = SliRecorder(store, clock=lambda: NOW)

    status = recorder.calculate_slo_status("cost_accuracy")

    assert status["status"] == "CRITICAL"
    assert status["burn_rate"] == 1.0
    assert status["measurement_count"] == 0


def test_slo_status_rejects_unknown_inputs(store):
    recorder = SliRecorder(store, clock=lambda: NOW)

    assert recorder.calculate_slo_status("made_up_sli") is None
    with pytest.raises(ValueError, match="unsupported time window"):
        recorder.calculate_slo_status("cost_accuracy", "90d")


def test_dashboard_rolls_up_statuses(store):
    recorder = SliRecorder(store, clock=lambda: NOW)
    for name in SLI_DEFINITIONS:
        recorder.record(name, 1)

    dashboard = recorder.slo_dashboard("1h")

    assert dashboard["overall"] == "HEALTHY"
    assert dashboard["summary"] == {"healthy": len(SLI_DEFINITIONS), "warning": 0, "critical": 0}
    assert dashboard["window"] == "1h"

    recorder.record("pt_equality_compliance", 0)
    recorder.record("pt_equality_compliance", 0)
    assert recorder.slo_dashboard("1h")["overall"] == "CRITICAL"
