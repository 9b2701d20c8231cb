from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]
EvidenceType = Literal["PRICE_LIST", "INVOICE", "CONTRACT", "REGULATION", "BENCHMARK"]

# breakdown detail keys that are not per-category / per-role amounts
MATERIAL_META_KEYS = frozenset({"total_service_days", "waste_applied"})
LABOR_META_KEYS = frozenset({"total_service_days", "sgk_multiplier"})


class PortionSpec(BaseModel):
    category: str = Field(min_length=1)
    gram_per_portion: float = Field(gt=0)
    market_price_per_kg: float = Field(ge=0)
    waste_percentage: float | None = Field(default=None, ge=0, le=100)


class StaffMember(BaseModel):
    role: str = Field(min_length=1)
    count: int = Field(ge=0)
    hours_per_day: float = Field(gt=0, le=24)
    hourly_wage: float = Field(ge=0)
    shift_multiplier: float | None = Field(default=None, gt=0)
    benefits_multiplier: float | None = Field(default=None, gt=0)


class SimulationInput(BaseModel):
    # positivity of the three scalars is checked by the engine so callers get
    # one error code for every malformed profile
    persons: int | None = None
    meals_per_day: int | None = None
    duration_days: int | None = None
    portion_specs: list[PortionSpec] = Field(default_factory=list)

    staffing: list[StaffMember] | None = None
    service_days_per_week: int | None = Field(default=None, ge=1, le=7)
    hygiene_standards: list[str] = Field(default_factory=list)
    location: str | None = None

    doc_hash: str | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)


class CostBreakdown(BaseModel):
    daily: float
    total: float
    per_person: float
    details: dict[str, float] = Field(default_factory=dict)


class KikAnalysis(BaseModel):
    k_factor: float
    threshold_value_try: float
    base_value: float
    explanation_required: bool
    risk_level: RiskLevel
    audit_trail: dict[str, Any]


class KikSummary(BaseModel):
    compliant: bool
    risk_level: RiskLevel
    threshold_ratio: str
    audit_version: str


class SimulationOutput(BaseModel):
    material_cost: CostBreakdown
    labor_cost: CostBreakdown
    overhead_cost: CostBreakdown
    maintenance_cost: CostBreakdown | None = None

    project_total: float
    recommended_price: float
    profit_margin: float
    profit_percentage: float
    risk_level: RiskLevel

    kik_analysis: KikAnalysis
    kik_summary: KikSummary

    confidence: float = Field(ge=0, le=1)
    calculated_at: str
    version: str = "1.0"

    def component_totals(self) -> dict[str, float]:
        totals = {
            "material": self.material_cost.total,
            "labor": self.labor_cost.total,
            "overhead": self.overhead_cost.total,
        }
        if self.maintenance_cost is not None:
            totals["maintenance"] = self.maintenance_cost.total
        return totals


class KikThreshold(BaseModel):
    threshold_value_try: float
    k_factor: float
    base_value: float


class AdtStatus(BaseModel):
    is_adt: bool
    explanation_required: bool
    full_justification_required: bool
    risk_level: RiskLevel
    deviation_percentage: float
    price_ratio: float


class PriceReference(BaseModel):
    source: str
    date: str
    item: str
    price_per_unit: float
    unit: str
    verification_method: str


class CostJustification(BaseModel):
    category: str
    calculation_method: str
    source_documentation: list[str] = Field(min_length=1)
    rationale: str
    amounts: dict[str, float] = Field(default_factory=dict)
    evidence_records: list[PriceReference] = Field(min_length=1)


class EvidenceCitation(BaseModel):
    type: EvidenceType
    title: str
    source: str
    page_reference: str | None = None
    line_reference: str | None = None
    relevance: str


class ADTExplanation(BaseModel):
    schema_version: str
    risk_level: RiskLevel
    justifications: dict[str, CostJustification]
    evidence: list[EvidenceCitation]
    compliance_statement: str
    risk_mitigation: list[str]


class KikAnalysisReport(BaseModel):
    threshold: KikThreshold
    adt_status: AdtStatus
    explanation: ADTExplanation | None = None
    compliance_score: int
