from __future__ import annotations

import logging

import pytest

from tender_pipeline.cost_simulation import (
    CostSimulationEngine,
    SimulationConfig,
    assert_project_total,
    run_cost_simulation,
)
from tender_pipeline.errors import PipelineError
from tender_pipeline.schemas import SimulationInput

STAMP = "2025-01-15T10:00:00+00:00"


def _payload(**overrides) -> dict:
    payload = {
        "persons": 500,
        "meals_per_day": 3,
        "duration_days": 30,
        "portion_specs": [
            {"category": "et", "gram_per_portion": 200, "market_price_per_kg": 45, "waste_percentage": 6},
        ],
    }
    payload.update(overrides)
    return payload


def test_material_daily_cost_follows_portion_formula():
    output = run_cost_simulation(_payload(), calculated_at=STAMP)

    # 500 persons * 3 meals * (0.2 kg * 45 TL) * 1.06 waste
    assert output.material_cost.daily == 14310.0
    assert output.material_cost.details["et"] == 14310.0
    assert output.material_cost.details["waste_applied"] == 810.0
    assert output.material_cost.details["total_service_days"] == 30.0
    assert output.material_cost.total == 429300.0
    assert output.material_cost.per_person == 858.6


def test_labor_uses_generated_staffing_when_none_given():
    output = run_cost_simulation(_payload(), calculated_at=STAMP)

    assert output.labor_cost.details["Aşçı"] == 840.0
    assert output.labor_cost.details["Yardımcı"] == 806.4
    assert output.labor_cost.details["Temizlik"] == 252.0
    assert output.labor_cost.details["sgk_multiplier"] == 1.4
    assert output.labor_cost.daily == 1898.4
    assert output.labor_cost.total == 56952.0


def test_project_total_is_sum_of_rounded_components():
    output = run_cost_simulation(_payload(), calculated_at=STAMP)

    assert output.risk_level == "LOW"
    assert output.overhead_cost.details["base_amount"] == 486252.0
    assert output.overhead_cost.details["overhead_percentage"] == 12.0
    assert output.overhead_cost.total == 58350.24
    assert output.project_total == pytest.approx(544602.24, abs=0.001)
    assert output.project_total == pytest.approx(sum(output.component_totals().values()), abs=0.01)
    assert output.profit_percentage == 10.0
    assert output.profit_margin == 54460.22
    assert output.recommended_price == pytest.approx(599062.46, abs=0.001)
    assert output.maintenance_cost is None


def test_kik_threshold_excludes_profit_and_maintenance():
    output = run_cost_simulation(_payload(duration_days=400, persons=100), calculated_at=STAMP)

    assert output.maintenance_cost is not None
    assert output.maintenance_cost.total == 2800.0
    assert output.maintenance_cost.details["total_months"] == 14.0
    assert "maintenance" in output.component_totals()

    base = output.material_cost.total + output.labor_cost.total + output.overhead_cost.total
    assert output.kik_analysis.base_value == pytest.approx(base, abs=0.01)
    assert output.kik_analysis.threshold_value_try == pytest.approx(round(base * 0.93, 2), abs=0.01)
    assert output.kik_analysis.explanation_required is False
    assert output.kik_summary.compliant is True
    assert output.kik_summary.audit_version == "kik-2025-v1"


def test_explicit_zero_waste_is_not_replaced_by_default():
    payload = _payload(
        portion_specs=[{"category": "et", "gram_per_portion": 200, "market_price_per_kg": 45, "waste_percentage": 0}]
    )
    output = run_cost_simulation(payload, calculated_at=STAMP)

    assert output.material_cost.daily == 13500.0
    assert output.material_cost.details["waste_applied"] == 0.0


def test_default_waste_applies_when_unspecified():
    payload = _payload(portion_specs=[{"category": "et", "gram_per_portion": 200, "market_price_per_kg": 45}])
    output = run_cost_simulation(payload, calculated_at=STAMP)

    assert output.material_cost.daily == 14310.0


def test_service_days_per_week_scales_totals():
    output = run_cost_simulation(_payload(duration_days=28, service_days_per_week=5), calculated_at=STAMP)

    assert output.material_cost.details["total_service_days"] == 20.0
    assert output.material_cost.total == pytest.approx(14310.0 * 20, abs=0.01)


def test_generate_staffing_respects_ratios_and_minimums():
    engine = CostSimulationEngine()

    counts = {s.role: s.count for s in engine.generate_staffing(500)}
    assert counts == {"Aşçı": 3, "Yardımcı": 4, "Temizlik": 2}

    small = {s.role: s.count for s in engine.generate_staffing(50)}
    assert small == {"Aşçı": 1, "Yardımcı": 1, "Temizlik": 1}


def test_explicit_staffing_overrides_generated_roster():
    payload = _payload(staffing=[{"role": "Şef", "count": 2, "hours_per_day": 10, "hourly_wage": 40}])
    output = run_cost_simulation(payload, calculated_at=STAMP)

    assert set(output.labor_cost.details) == {"Şef", "total_service_days", "sgk_multiplier"}
    assert output.labor_cost.daily == 1120.0


def test_high_risk_profile_raises_overhead_and_profit():
    engine = CostSimulationEngine()
    data = SimulationInput.model_validate(_payload(persons=1200, duration_days=400, confidence=0.5))

    assert engine.assess_risk_level(data) == "HIGH"
    output = engine.simulate(data, calculated_at=STAMP)
    assert output.overhead_cost.details["overhead_percentage"] == 18.0
    assert output.overhead_cost.details["risk_assessment"] == 1
    assert output.profit_percentage == 20.0


def test_medium_risk_profile():
    engine = CostSimulationEngine()
    data = SimulationInput.model_validate(_payload(persons=600, duration_days=200, confidence=0.95))

    assert engine.assess_risk_level(data) == "MEDIUM"


def test_confidence_bonuses_are_capped():
    engine = CostSimulationEngine()
    portions = [
        {"category": c, "gram_per_portion": 100, "market_price_per_kg": 20}
        for c in ("et", "sebze", "pilav")
    ]
    data = SimulationInput.model_validate(
        _payload(
            portion_specs=portions,
            staffing=[{"role": "Aşçı", "count": 1, "hours_per_day": 8, "hourly_wage": 25}],
            location="Ankara",
            confidence=0.95,
        )
    )

    assert engine.calculate_confidence(data) == 1.0
    assert engine.calculate_confidence(SimulationInput.model_validate(_payload())) == 0.8


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"persons": 0}, "persons"),
        ({"meals_per_day": None}, "meals_per_day"),
        ({"duration_days": -5}, "duration_days"),
        ({"portion_specs": []}, "portion_specs"),
    ],
)
def test_invalid_input_is_rejected_without_retry(overrides, field):
    with pytest.raises(PipelineError) as exc_info:
        run_cost_simulation(_payload(**overrides))

    assert exc_info.value.code == "SIMULATION_INPUT_INVALID"
    assert exc_info.value.retryable is False
    assert exc_info.value.details["field"] == field


def test_malformed_portion_reports_validation_errors():
    payload = _payload(portion_specs=[{"category": "et", "gram_per_portion": -1, "market_price_per_kg": 45}])

    with pytest.raises(PipelineError) as exc_info:
        run_cost_simulation(payload)

    assert exc_info.value.code == "SIMULATION_INPUT_INVALID"
    assert exc_info.value.details["errors"]


def test_tampered_project_total_is_critical(caplog):
    output = run_cost_simulation(_payload(), calculated_at=STAMP)
    tampered = output.model_copy(update={"project_total": output.project_total + 5})

    with caplog.at_level(logging.CRITICAL, logger="tender_pipeline.cost_simulation"):
        with pytest.raises(PipelineError) as exc_info:
            assert_project_total(tampered)

    assert exc_info.value.code == "PT_MISMATCH"
    assert exc_info.value.retryable is False
    assert exc_info.value.error_class == "critical"
    assert any("pt_mismatch" in r.getMessage() for r in caplog.records)


def test_simulation_is_deterministic_for_fixed_timestamp():
    first = run_cost_simulation(_payload(), calculated_at=STAMP)
    second = run_cost_simulation(_payload(), calculated_at=STAMP)

    assert first.model_dump() == second.model_dump()


def test_custom_config_changes_defaults():
    config = SimulationConfig(default_waste_percentage=10.0, overhead_base_percentage=15.0)
    payload = _payload(portion_specs=[{"category": "et", "gram_per_portion": 200, "market_price_per_kg": 45}])
    output = run_cost_simulation(payload, config, calculated_at=STAMP)

    assert output.material_cost.daily == 14850.0
    assert output.overhead_cost.details["overhead_percentage"] == 15.0
