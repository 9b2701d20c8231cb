from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tender_pipeline.guard_layer import (
    GuardCondition,
    GuardContext,
    GuardLayer,
    GuardReader,
    GuardResult,
    can_proceed_with_step,
)
from tender_pipeline.market_prices import StaticPriceProvider
from tender_pipeline.settings import PipelineSettings

VALID_HASH = "a" * 64


def _tender(store, **overrides) -> dict:
    tender = {
        "doc_hash": VALID_HASH,
        "title": "Hastane yemek hizmeti",
        "person_count": 300,
        "estimated_value": 250000,
        "requirements": {
            "specifications": {
                "meal_types": ["lunch"],
                "service_days": 60,
                "portion_sizes": {"et": 150, "pilav": 100},
                "market_prices": {"et": 400},
            }
        },
    }
    tender.update(overrides)
    return store.create_tender(tender=tender)


def _passing(confidence: float):
    def _validator(context, reader):
        return GuardResult(passed=True, confidence=confidence, message="ok")

    return _validator


def _failing(confidence: float, *, missing: list[str] | None = None):
    def _validator(context, reader):
        return GuardResult(
            passed=False,
            confidence=confidence,
            message="failed",
            evidence={"missing": missing or []},
            blocking_issues=["needs input"],
            recommendations=["add input"],
        )

    return _validator


def _exploding(context, reader):
    raise RuntimeError("lookup backend down")


@pytest.mark.parametrize(
    "doc_hash,passed",
    [(VALID_HASH, True), ("0123456789abcdefABCDEF0123456789", True), ("short", False), ("", False), ("g" * 31 + "!", False)],
)
def test_document_integrity_guard(store, doc_hash, passed):
    evaluation = GuardLayer().evaluate(
        GuardContext(doc_hash=doc_hash, step="ANALYZE_COMPLETED", metadata={"personCount": 10, "estimatedValue": 1}),
        GuardReader(store),
    )

    assert evaluation.can_proceed is passed
    integrity = [r for r in [*evaluation.passed, *evaluation.blockers] if r.guard_id == "document_integrity"][0]
    assert integrity.passed is passed


def test_structured_data_guard_reports_missing_fields(store):
    evaluation = GuardLayer().evaluate(
        GuardContext(doc_hash=VALID_HASH, step="ANALYZE_COMPLETED", metadata={"title": "x"}),
        GuardReader(store),
    )

    assert evaluation.can_proceed is False
    assert evaluation.missing() == ["persons", "estimated_value"]
    assert "Missing persons" in evaluation.blocking_issues()


def test_validator_exception_becomes_zero_confidence_blocker(store):
    layer = GuardLayer(
        {
            "ANALYZE_COMPLETED": (
                GuardCondition("stable", "always passes", True, "prerequisites", _passing(1.0)),
                GuardCondition("flaky", "raises", True, "validation", _exploding),
            )
        }
    )

    evaluation = layer.evaluate(GuardContext(doc_hash=VALID_HASH, step="ANALYZE_COMPLETED"), GuardReader(store))

    assert evaluation.can_proceed is False
    [blocker] = evaluation.blockers
    assert blocker.guard_id == "flaky"
    assert blocker.confidence == 0.0
    assert "lookup backend down" in blocker.message
    assert blocker.evidence["error_type"] == "RuntimeError"
    assert evaluation.overall_confidence == pytest.approx(0.5)


def test_optional_guard_failure_is_only_a_warning(store):
    layer = GuardLayer(
        {
            "CHECKLIST_DONE": (
                GuardCondition("required_ok", "passes", True, "prerequisites", _passing(0.9)),
                GuardCondition("optional_bad", "fails", False, "safety", _failing(0.3)),
            )
        }
    )

    evaluation = layer.evaluate(GuardContext(doc_hash=VALID_HASH, step="CHECKLIST_DONE"), GuardReader(store))

    assert evaluation.can_proceed is True
    assert [r.guard_id for r in evaluation.warnings] == ["optional_bad"]
    assert evaluation.overall_confidence == pytest.approx(0.6)
    assert "failed" in evaluation.warning_messages()
    assert evaluation.summary()["warnings"] == ["optional_bad"]


def test_step_without_guards_proceeds_with_zero_confidence(store):
    evaluation = GuardLayer({}).evaluate(GuardContext(doc_hash=VALID_HASH, step="OFFER_DRAFTED"), GuardReader(store))

    assert evaluation.can_proceed is True
    assert evaluation.overall_confidence == 0.0


def test_unknown_guard_category_is_rejected():
    with pytest.raises(ValueError, match="unknown guard category"):
        GuardLayer({"ANALYZE_COMPLETED": (GuardCondition("x", "x", True, "billing", _passing(1.0)),)})


def test_service_profile_guard_lists_missing_inputs(store):
    tender = _tender(store, person_count=None)

    evaluation = GuardLayer().evaluate(
        GuardContext(doc_hash=VALID_HASH, step="SIMULATION_DONE", tender_id=tender["tender_id"]),
        GuardReader(store),
    )

    assert evaluation.can_proceed is False
    assert evaluation.missing() == ["persons"]
    blocker = [r for r in evaluation.blockers if r.guard_id == "service_profile_complete"][0]
    assert blocker.evidence["error_code"] == "WAITING_INPUT"
    assert "Provide person count (personCount > 0)" in evaluation.recommendations()


def test_market_data_guard_falls_back_to_tender_prices(store):
    tender = _tender(store)
    context = GuardContext(doc_hash=VALID_HASH, step="SIMULATION_DONE", tender_id=tender["tender_id"])

    without_provider = GuardLayer().evaluate(context, GuardReader(store))
    market = [r for r in without_provider.warnings if r.guard_id == "market_data_available"][0]
    assert market.evidence["unpriced"] == ["pilav"]
    assert without_provider.can_proceed is True

    provider = StaticPriceProvider(
        [
            {"source": "hal", "product": "et", "price": 420},
            {"source": "market", "product": "et", "price": 380},
            {"source": "hal", "product": "pilav", "unit": "g", "price": 0.05},
        ]
    )
    with_provider = GuardLayer().evaluate(context, GuardReader(store, price_provider=provider))
    market = [r for r in with_provider.passed if r.guard_id == "market_data_available"][0]
    assert market.confidence == 0.9
    assert market.evidence["provider_priced"] == ["et", "pilav"]


def test_tender_upsert_requires_completed_analysis(store):
    context = GuardContext(
        doc_hash=VALID_HASH,
        step="TENDER_UPSERTED",
        metadata={"title": "t", "personCount": 10, "estimatedValue": 1000},
    )

    blocked = GuardLayer().evaluate(context, GuardReader(store))
    assert [r.guard_id for r in blocked.blockers] == ["analysis_completed"]

    store.upsert_job(
        job={
            "job_id": "job_1",
            "doc_hash": VALID_HASH,
            "step": "ANALYZE_COMPLETED",
            "status": "COMPLETED",
            "retry_count": 0,
        }
    )
    assert GuardLayer().evaluate(context, GuardReader(store)).can_proceed is True


def _simulation(store, tender_id: str, *, project_total: float, created_at: str | None = None) -> None:
    record = {
        "tender_id": tender_id,
        "outputs": {"project_total": project_total, "kik_analysis": {"explanation_required": False}},
        "adt_explanation": None,
    }
    if created_at is not None:
        record["created_at"] = created_at
    store.create_simulation(simulation=record)


def test_offer_guards_block_unreasonable_cost(store):
    tender = _tender(store)
    _simulation(store, tender["tender_id"], project_total=900000)

    allowed, evaluation = can_proceed_with_step(
        GuardReader(store),
        doc_hash=VALID_HASH,
        step="OFFER_DRAFTED",
        tender_id=tender["tender_id"],
    )

    assert allowed is False
    [blocker] = evaluation.blockers
    assert blocker.guard_id == "cost_validation"
    assert blocker.evidence["ratio"] == pytest.approx(3.6)
    assert blocker.warnings == ["Cost significantly above estimate - review pricing assumptions"]


def test_stale_simulation_still_passes_with_lower_confidence(store):
    tender = _tender(store)
    created = datetime(2025, 1, 1, tzinfo=UTC)
    _simulation(store, tender["tender_id"], project_total=240000, created_at=created.isoformat())
    reader = GuardReader(
        store,
        settings=PipelineSettings(simulation_recent_hours=24),
        now=lambda: created + timedelta(hours=30),
    )

    allowed, evaluation = can_proceed_with_step(
        reader,
        doc_hash=VALID_HASH,
        step="OFFER_DRAFTED",
        tender_id=tender["tender_id"],
    )

    assert allowed is True
    completed = [r for r in evaluation.passed if r.guard_id == "simulation_completed"][0]
    assert completed.confidence == 0.7
    assert completed.warnings == ["Simulation is older than 24 hours"]


def test_final_kik_check_requires_attached_explanation(store):
    tender = _tender(store)
    store.create_simulation(
        simulation={
            "tender_id": tender["tender_id"],
            "outputs": {"project_total": 240000, "kik_analysis": {"explanation_required": True, "risk_level": "HIGH"}},
            "adt_explanation": None,
        }
    )

    allowed, evaluation = can_proceed_with_step(
        GuardReader(store),
        doc_hash=VALID_HASH,
        step="OFFER_DRAFTED",
        tender_id=tender["tender_id"],
    )

    assert allowed is False
    assert [r.guard_id for r in evaluation.blockers] == ["kik_final_check"]


def test_guard_evaluation_does_not_write(store):
    tender = _tender(store)
    before = (dict(store.jobs), dict(store.tenders), list(store.simulations))

    GuardLayer().evaluate(
        GuardContext(doc_hash=VALID_HASH, step="SIMULATION_DONE", tender_id=tender["tender_id"]),
        GuardReader(store),
    )

    assert (dict(store.jobs), dict(store.tenders), list(store.simulations)) == before
