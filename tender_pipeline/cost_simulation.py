"""Cost simulation engine for catering tenders.

The engine is pure: it reads a ``SimulationInput`` and returns a
``SimulationOutput`` without touching storage. Every monetary component is
rounded half-up to kuruş before it is summed into the project total, and the
additive identity ``PT == MM + İM + GG (+ BM)`` is checked before returning.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from tender_pipeline.errors import PipelineError
from tender_pipeline.kik_compliance import KIK_AUDIT_VERSION, KikComplianceAnalyzer
from tender_pipeline.money import PT_TOLERANCE, as_float, round_money, round_ratio, to_decimal, within_tolerance
from tender_pipeline.schemas import (
    CostBreakdown,
    KikAnalysis,
    KikSummary,
    SimulationInput,
    SimulationOutput,
    StaffMember,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaffingRule:
    ratio_per_person: float
    min_count: int
    default_hours: float
    default_wage: float


DEFAULT_STAFFING_RULES: dict[str, StaffingRule] = {
    "Aşçı": StaffingRule(ratio_per_person=1 / 200, min_count=1, default_hours=8, default_wage=25),
    "Yardımcı": StaffingRule(ratio_per_person=1 / 150, min_count=1, default_hours=8, default_wage=18),
    "Temizlik": StaffingRule(ratio_per_person=1 / 300, min_count=1, default_hours=6, default_wage=15),
}


@dataclass(frozen=True)
class SimulationConfig:
    default_waste_percentage: float = 6.0
    default_service_days_per_week: int = 7
    default_shift_multiplier: float = 1.0
    default_benefits_multiplier: float = 1.4
    default_confidence: float = 0.8
    k_factor: float = 0.93
    overhead_base_percentage: float = 12.0
    overhead_high_risk_percentage: float = 18.0
    profit_competitive_percentage: float = 10.0
    profit_standard_percentage: float = 15.0
    profit_high_risk_percentage: float = 20.0
    approval_gate_confidence: float = 0.75
    high_confidence: float = 0.90
    maintenance_per_person_monthly: float = 2.0
    staffing_rules: Mapping[str, StaffingRule] = field(default_factory=lambda: dict(DEFAULT_STAFFING_RULES))


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _invalid(message: str, **details: Any) -> PipelineError:
    return PipelineError(code="SIMULATION_INPUT_INVALID", message=message, details=details)


def assert_project_total(output: SimulationOutput) -> None:
    components = sum((to_decimal(v) for v in output.component_totals().values()), Decimal("0"))
    if within_tolerance(output.project_total, components, PT_TOLERANCE):
        return
    logger.critical(
        "pt_mismatch project_total=%s component_sum=%s components=%s",
        output.project_total,
        components,
        output.component_totals(),
    )
    raise PipelineError(
        code="PT_MISMATCH",
        message=f"project_total {output.project_total} != component sum {components}",
        details={
            "project_total": output.project_total,
            "component_sum": as_float(components),
            "components": output.component_totals(),
        },
    )


class CostSimulationEngine:
    def __init__(
        self,
        config: SimulationConfig | None = None,
        *,
        analyzer: KikComplianceAnalyzer | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self.config = config or SimulationConfig()
        self.analyzer = analyzer or KikComplianceAnalyzer(k_factor=self.config.k_factor)
        self._clock = clock or _utcnow_iso

    def simulate(
        self,
        payload: SimulationInput | Mapping[str, Any],
        *,
        calculated_at: str | None = None,
    ) -> SimulationOutput:
        data = self._validate(payload)
        stamp = calculated_at or self._clock()

        persons = int(data.persons)  # type: ignore[arg-type]
        service_days = self._service_days(data)
        risk_level = self.assess_risk_level(data)

        material = self._material_cost(data, service_days)
        labor = self._labor_cost(data, service_days)
        overhead = self._overhead_cost(material, labor, persons, service_days, risk_level)
        maintenance = self._maintenance_cost(data)

        project_total = (
            round_money(material.total)
            + round_money(labor.total)
            + round_money(overhead.total)
            + (round_money(maintenance.total) if maintenance is not None else Decimal("0"))
        )
        profit_pct = to_decimal(self._profit_percentage(risk_level))
        margin = round_money(project_total * profit_pct / 100)
        recommended = project_total + margin

        threshold = self.analyzer.threshold_for(
            material_total=material.total,
            labor_total=labor.total,
            overhead_total=overhead.total,
        )
        audit_trail = self.analyzer.build_audit_trail(
            material_total=material.total,
            labor_total=labor.total,
            overhead_total=overhead.total,
            recommended_price=recommended,
            calculated_at=stamp,
        )
        result = audit_trail["result"]

        output = SimulationOutput(
            material_cost=material,
            labor_cost=labor,
            overhead_cost=overhead,
            maintenance_cost=maintenance,
            project_total=as_float(project_total),
            recommended_price=as_float(recommended),
            profit_margin=as_float(margin),
            profit_percentage=float(profit_pct),
            risk_level=risk_level,
            kik_analysis=KikAnalysis(
                k_factor=threshold.k_factor,
                threshold_value_try=threshold.threshold_value_try,
                base_value=threshold.base_value,
                explanation_required=bool(result["explanation_required"]),
                risk_level=result["risk_level"],
                audit_trail=audit_trail,
            ),
            kik_summary=KikSummary(
                compliant=not bool(result["explanation_required"]),
                risk_level=result["risk_level"],
                threshold_ratio=str(result["price_ratio"]),
                audit_version=str(audit_trail.get("version") or KIK_AUDIT_VERSION),
            ),
            confidence=self.calculate_confidence(data),
            calculated_at=stamp,
        )
        assert_project_total(output)
        logger.info(
            "cost_simulation_done doc_hash=%s project_total=%s recommended_price=%s risk_level=%s kik_risk=%s",
            data.doc_hash,
            output.project_total,
            output.recommended_price,
            risk_level,
            output.kik_analysis.risk_level,
        )
        return output

    def _validate(self, payload: SimulationInput | Mapping[str, Any]) -> SimulationInput:
        if isinstance(payload, SimulationInput):
            data = payload
        else:
            try:
                data = SimulationInput.model_validate(dict(payload))
            except ValidationError as exc:
                raise _invalid(
                    "simulation payload is malformed",
                    errors=[{"loc": [str(x) for x in err["loc"]], "msg": err["msg"]} for err in exc.errors()],
                ) from exc
            except TypeError as exc:
                raise _invalid("simulation payload must be a mapping") from exc
        if data.persons is None or data.persons <= 0:
            raise _invalid("persons must be a positive integer", field="persons")
        if data.meals_per_day is None or data.meals_per_day <= 0:
            raise _invalid("meals_per_day must be a positive integer", field="meals_per_day")
        if data.duration_days is None or data.duration_days <= 0:
            raise _invalid("duration_days must be a positive integer", field="duration_days")
        if not data.portion_specs:
            raise _invalid("portion_specs must not be empty", field="portion_specs")
        return data

    def _service_days(self, data: SimulationInput) -> Decimal:
        per_week = data.service_days_per_week or self.config.default_service_days_per_week
        return to_decimal(data.duration_days) / 7 * per_week

    def _input_confidence(self, data: SimulationInput) -> float:
        return self.config.default_confidence if data.confidence is None else data.confidence

    def assess_risk_level(self, data: SimulationInput) -> str:
        score = 0
        persons = int(data.persons or 0)
        duration = int(data.duration_days or 0)
        if persons > 1000:
            score += 2
        elif persons > 500:
            score += 1
        if duration > 365:
            score += 2
        elif duration > 180:
            score += 1
        confidence = self._input_confidence(data)
        if confidence < self.config.approval_gate_confidence:
            score += 3
        elif confidence < self.config.high_confidence:
            score += 1
        if score >= 4:
            return "HIGH"
        if score >= 2:
            return "MEDIUM"
        return "LOW"

    def calculate_confidence(self, data: SimulationInput) -> float:
        confidence = to_decimal(self._input_confidence(data))
        if data.staffing:
            confidence += Decimal("0.1")
        if len(data.portion_specs) >= 3:
            confidence += Decimal("0.05")
        if data.location:
            confidence += Decimal("0.05")
        return float(min(confidence, Decimal("1.0")))

    def generate_staffing(self, persons: int) -> list[StaffMember]:
        staffing: list[StaffMember] = []
        for role, rule in self.config.staffing_rules.items():
            count = max(math.ceil(persons * rule.ratio_per_person), rule.min_count)
            staffing.append(
                StaffMember(
                    role=role,
                    count=count,
                    hours_per_day=rule.default_hours,
                    hourly_wage=rule.default_wage,
                    shift_multiplier=self.config.default_shift_multiplier,
                    benefits_multiplier=self.config.default_benefits_multiplier,
                )
            )
        return staffing

    def _material_cost(self, data: SimulationInput, service_days: Decimal) -> CostBreakdown:
        persons = to_decimal(data.persons)
        meals = to_decimal(data.meals_per_day)
        per_category: dict[str, Decimal] = {}
        raw_total = Decimal("0")
        for portion in data.portion_specs:
            cost_per_portion = to_decimal(portion.gram_per_portion) / 1000 * to_decimal(portion.market_price_per_kg)
            waste = (
                self.config.default_waste_percentage
                if portion.waste_percentage is None
                else portion.waste_percentage
            )
            raw = persons * meals * cost_per_portion
            raw_total += raw
            daily = raw * (1 + to_decimal(waste) / 100)
            per_category[portion.category] = per_category.get(portion.category, Decimal("0")) + daily

        daily_total = sum(per_category.values(), Decimal("0"))
        total = round_money(daily_total * service_days)
        details: dict[str, float] = {k: as_float(round_money(v)) for k, v in per_category.items()}
        details["total_service_days"] = float(round_ratio(service_days, 4))
        details["waste_applied"] = as_float(round_money(daily_total - raw_total))
        return CostBreakdown(
            daily=as_float(round_money(daily_total)),
            total=as_float(total),
            per_person=as_float(round_money(total / persons)),
            details=details,
        )

    def _labor_cost(self, data: SimulationInput, service_days: Decimal) -> CostBreakdown:
        staffing = data.staffing or self.generate_staffing(int(data.persons))  # type: ignore[arg-type]
        persons = to_decimal(data.persons)
        per_role: dict[str, Decimal] = {}
        for staff in staffing:
            shift = self.config.default_shift_multiplier if staff.shift_multiplier is None else staff.shift_multiplier
            benefits = (
                self.config.default_benefits_multiplier
                if staff.benefits_multiplier is None
                else staff.benefits_multiplier
            )
            daily = (
                to_decimal(staff.count)
                * to_decimal(staff.hours_per_day)
                * to_decimal(staff.hourly_wage)
                * to_decimal(shift)
                * to_decimal(benefits)
            )
            per_role[staff.role] = per_role.get(staff.role, Decimal("0")) + daily

        daily_total = sum(per_role.values(), Decimal("0"))
        total = round_money(daily_total * service_days)
        details: dict[str, float] = {k: as_float(round_money(v)) for k, v in per_role.items()}
        details["total_service_days"] = float(round_ratio(service_days, 4))
        details["sgk_multiplier"] = float(self.config.default_benefits_multiplier)
        return CostBreakdown(
            daily=as_float(round_money(daily_total)),
            total=as_float(total),
            per_person=as_float(round_money(total / persons)),
            details=details,
        )

    def _overhead_cost(
        self,
        material: CostBreakdown,
        labor: CostBreakdown,
        persons: int,
        service_days: Decimal,
        risk_level: str,
    ) -> CostBreakdown:
        base = round_money(material.total) + round_money(labor.total)
        pct = (
            self.config.overhead_high_risk_percentage
            if risk_level == "HIGH"
            else self.config.overhead_base_percentage
        )
        total = round_money(base * to_decimal(pct) / 100)
        return CostBreakdown(
            daily=as_float(round_money(total / service_days)),
            total=as_float(total),
            per_person=as_float(round_money(total / persons)),
            details={
                "base_amount": as_float(base),
                "overhead_percentage": float(pct),
                "risk_assessment": {"HIGH": 1, "MEDIUM": 2, "LOW": 3}[risk_level],
            },
        )

    def _maintenance_cost(self, data: SimulationInput) -> CostBreakdown | None:
        duration = int(data.duration_days)  # type: ignore[arg-type]
        if duration <= 365:
            return None
        persons = to_decimal(data.persons)
        monthly = persons * to_decimal(self.config.maintenance_per_person_monthly)
        months = math.ceil(duration / 30)
        total = round_money(monthly * months)
        return CostBreakdown(
            daily=as_float(round_money(total / duration)),
            total=as_float(total),
            per_person=as_float(round_money(total / persons)),
            details={
                "monthly_rate": as_float(round_money(monthly)),
                "total_months": float(months),
                "per_person_monthly": float(self.config.maintenance_per_person_monthly),
            },
        )

    def _profit_percentage(self, risk_level: str) -> float:
        if risk_level == "HIGH":
            return self.config.profit_high_risk_percentage
        if risk_level == "LOW":
            return self.config.profit_competitive_percentage
        return self.config.profit_standard_percentage


def run_cost_simulation(
    payload: SimulationInput | Mapping[str, Any],
    config: SimulationConfig | None = None,
    *,
    calculated_at: str | None = None,
) -> SimulationOutput:
    return CostSimulationEngine(config).simulate(payload, calculated_at=calculated_at)
