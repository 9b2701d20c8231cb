"""Admission-control guards evaluated before every pipeline step.

Validators only read state. A required guard that fails blocks the step; an
optional one only contributes a warning. A validator that raises is turned
into a failed, zero-confidence result so evaluation always completes.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from tender_pipeline.market_prices import PriceProvider, resolve_category_prices
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.store import Repository
from tender_pipeline.tender_profile import (
    SERVICE_PROFILE_RECOMMENDATIONS,
    deep_merge,
    normalize_analysis_metadata,
    portion_categories,
    positive_number,
    service_profile_missing,
    specifications,
    unpriced_categories,
)

logger = logging.getLogger(__name__)

GUARD_CATEGORIES = frozenset({"prerequisites", "validation", "safety", "compliance"})
_DOC_HASH_PATTERN = re.compile(r"[A-Za-z0-9]{32,}")


@dataclass
class GuardContext:
    doc_hash: str
    step: str
    tender_id: str | None = None
    user_id: str = "system"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GuardResult:
    passed: bool
    confidence: float
    message: str
    evidence: dict[str, Any] = field(default_factory=dict)
    blocking_issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    guard_id: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "guard_id": self.guard_id,
            "passed": self.passed,
            "confidence": self.confidence,
            "message": self.message,
            "evidence": dict(self.evidence),
            "blocking_issues": list(self.blocking_issues),
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
        }


class GuardReader:
    """Read-only view of the state a validator may consult."""

    def __init__(
        self,
        store: Repository,
        *,
        settings: PipelineSettings | None = None,
        price_provider: PriceProvider | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self.settings = settings or PipelineSettings()
        self.price_provider = price_provider
        self._now = now or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._now()

    def get_job(self, *, doc_hash: str, step: str) -> dict[str, Any] | None:
        return self._store.get_job(doc_hash=doc_hash, step=step)

    def get_tender(self, *, tender_id: str) -> dict[str, Any] | None:
        return self._store.get_tender(tender_id=tender_id)

    def find_tender_by_doc_hash(self, *, doc_hash: str) -> dict[str, Any] | None:
        return self._store.find_tender_by_doc_hash(doc_hash=doc_hash)

    def get_latest_simulation(self, *, tender_id: str) -> dict[str, Any] | None:
        return self._store.get_latest_simulation(tender_id=tender_id)

    def resolve_tender(self, context: GuardContext) -> dict[str, Any] | None:
        if context.tender_id:
            return self.get_tender(tender_id=context.tender_id)
        return self.find_tender_by_doc_hash(doc_hash=context.doc_hash)


Validator = Callable[[GuardContext, GuardReader], GuardResult]


@dataclass(frozen=True)
class GuardCondition:
    guard_id: str
    description: str
    required: bool
    category: str
    validator: Validator


@dataclass
class GuardEvaluation:
    can_proceed: bool
    overall_confidence: float
    blockers: list[GuardResult]
    warnings: list[GuardResult]
    passed: list[GuardResult]
    evaluated_at: str
    context: GuardContext

    def missing(self) -> list[str]:
        out: list[str] = []
        for result in self.blockers:
            for item in result.evidence.get("missing") or []:
                if item not in out:
                    out.append(item)
        return out

    def blocking_issues(self) -> list[str]:
        issues: list[str] = []
        for result in self.blockers:
            issues.extend(result.blocking_issues or [result.message])
        return issues

    def recommendations(self) -> list[str]:
        out: list[str] = []
        for result in [*self.blockers, *self.warnings]:
            for item in result.recommendations:
                if item not in out:
                    out.append(item)
        return out

    def warning_messages(self) -> list[str]:
        out: list[str] = []
        for result in [*self.passed, *self.warnings]:
            out.extend(result.warnings)
        out.extend(r.message for r in self.warnings)
        return out

    def summary(self) -> dict[str, Any]:
        return {
            "can_proceed": self.can_proceed,
            "overall_confidence": self.overall_confidence,
            "evaluated_at": self.evaluated_at,
            "passed": [r.guard_id for r in self.passed],
            "blockers": [r.guard_id for r in self.blockers],
            "warnings": [r.guard_id for r in self.warnings],
        }


def _tender_missing(context: GuardContext, message: str) -> GuardResult:
    return GuardResult(
        passed=False,
        confidence=0.0,
        message=message,
        evidence={"tender_id": context.tender_id, "doc_hash": context.doc_hash},
        blocking_issues=["Tender record must exist"],
    )


def validate_document_integrity(context: GuardContext, reader: GuardReader) -> GuardResult:
    doc_hash = context.doc_hash or ""
    if not doc_hash:
        return GuardResult(
            passed=False,
            confidence=0.0,
            message="Document hash missing",
            blocking_issues=["Document hash required for integrity verification"],
        )
    valid = _DOC_HASH_PATTERN.fullmatch(doc_hash) is not None
    return GuardResult(
        passed=valid,
        confidence=0.95 if valid else 0.0,
        message="Document integrity verified" if valid else "Invalid document hash format",
        evidence={"doc_hash": doc_hash, "hash_length": len(doc_hash)},
        blocking_issues=[] if valid else ["Document hash must be at least 32 alphanumeric characters"],
    )


def validate_structured_data_extracted(context: GuardContext, reader: GuardReader) -> GuardResult:
    profile = normalize_analysis_metadata(context.metadata)
    missing: list[str] = []
    if positive_number(profile.get("person_count")) is None:
        missing.append("persons")
    if positive_number(profile.get("estimated_value")) is None:
        missing.append("estimated_value")
    ok = not missing
    return GuardResult(
        passed=ok,
        confidence=0.9 if ok else 0.3,
        message="Structured data extracted successfully" if ok else "Missing critical data fields from document",
        evidence={"metadata_keys": sorted(context.metadata), "missing": missing},
        blocking_issues=[f"Missing {m}" for m in missing],
        warnings=["Some required fields missing from extracted data"] if context.metadata and not ok else [],
    )


def validate_analysis_completed(context: GuardContext, reader: GuardReader) -> GuardResult:
    job = reader.get_job(doc_hash=context.doc_hash, step="ANALYZE_COMPLETED")
    status = job.get("status") if job else None
    ok = status == "COMPLETED"
    return GuardResult(
        passed=ok,
        confidence=1.0 if ok else 0.0,
        message="Analysis completed and validated" if ok else "Document analysis has not completed",
        evidence={"analyze_status": status},
        blocking_issues=[] if ok else ["ANALYZE_COMPLETED must succeed before the tender is upserted"],
    )


def validate_tender_data_completeness(context: GuardContext, reader: GuardReader) -> GuardResult:
    existing = reader.resolve_tender(context) or {}
    merged = deep_merge(existing, normalize_analysis_metadata(context.metadata))
    missing: list[str] = []
    if not str(merged.get("title") or "").strip():
        missing.append("title")
    if positive_number(merged.get("person_count")) is None:
        missing.append("persons")
    if positive_number(merged.get("estimated_value")) is None:
        missing.append("estimated_value")
    ok = not missing
    return GuardResult(
        passed=ok,
        confidence=0.95 if ok else max(0.2, 1 - len(missing) * 0.3),
        message="Tender data is complete" if ok else f"Missing required fields: {', '.join(missing)}",
        evidence={"tender_id": existing.get("tender_id"), "missing": missing},
        blocking_issues=[f"Missing {m}" for m in missing],
    )


def validate_tender_exists(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context)
    if tender is None:
        return _tender_missing(context, "Tender not found")
    return GuardResult(
        passed=True,
        confidence=1.0,
        message="Tender exists",
        evidence={"tender_id": tender.get("tender_id")},
    )


def validate_basic_requirements(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context)
    if tender is None:
        return _tender_missing(context, "Cannot validate requirements without tender")
    requirements = tender.get("requirements")
    ok = isinstance(requirements, dict) and bool(requirements)
    return GuardResult(
        passed=ok,
        confidence=0.8 if ok else 0.1,
        message="Basic requirements identified" if ok else "No requirements data found",
        evidence={"requirements_keys": sorted(requirements) if ok else []},
        blocking_issues=[] if ok else ["Tender requirements are empty"],
        warnings=[] if ok else ["Requirements may need manual input"],
    )


def validate_service_profile_complete(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context)
    if tender is None:
        result = _tender_missing(context, "Tender not found - simulation cannot proceed")
        result.evidence["error_code"] = "WAITING_INPUT"
        return result
    missing = service_profile_missing(tender)
    if missing:
        logger.warning(
            "service_profile_incomplete tender_id=%s doc_hash=%s missing=%s",
            tender.get("tender_id"),
            context.doc_hash,
            ",".join(missing),
        )
        return GuardResult(
            passed=False,
            confidence=0.0,
            message=(
                f"Service profile incomplete. Missing: {', '.join(missing)}. "
                "Simulation blocked until input provided."
            ),
            evidence={
                "error_code": "WAITING_INPUT",
                "missing": missing,
                "available_fields": {
                    "person_count": tender.get("person_count"),
                    "estimated_value": tender.get("estimated_value"),
                    "specifications": specifications(tender),
                },
            },
            blocking_issues=[f"Missing critical simulation inputs: {', '.join(missing)}"],
            recommendations=list(SERVICE_PROFILE_RECOMMENDATIONS),
        )
    return GuardResult(
        passed=True,
        confidence=0.95,
        message="Service profile is complete and ready for simulation",
        evidence={"tender_id": tender.get("tender_id"), "missing": []},
    )


def validate_kik_compliance_ready(context: GuardContext, reader: GuardReader) -> GuardResult:
    k_factor = reader.settings.k_factor
    tender = reader.resolve_tender(context) or {}
    problems: list[str] = []
    if not 0 < k_factor <= 1:
        problems.append(f"k_factor {k_factor} outside (0, 1]")
    if positive_number(tender.get("estimated_value")) is None:
        problems.append("estimated value must be positive for the ADT threshold")
    ok = not problems
    return GuardResult(
        passed=ok,
        confidence=0.9 if ok else 0.0,
        message="KİK compliance data ready for calculation" if ok else "KİK threshold inputs invalid",
        evidence={"k_factor": k_factor, "estimated_value": tender.get("estimated_value")},
        blocking_issues=problems,
    )


def validate_market_data_available(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context) or {}
    categories = portion_categories(tender)
    provider_prices = resolve_category_prices(reader.price_provider, categories)
    unpriced = unpriced_categories(tender, provider_prices)
    if unpriced:
        return GuardResult(
            passed=False,
            confidence=0.3,
            message=f"No market price for: {', '.join(unpriced)}",
            evidence={"unpriced": unpriced, "provider_priced": sorted(provider_prices)},
            warnings=["Simulation will wait until every portion category is priced"],
            recommendations=["Add marketPrices for the unpriced categories or refresh the price provider"],
        )
    from_provider = bool(categories) and all(c in provider_prices for c in categories)
    return GuardResult(
        passed=True,
        confidence=0.9 if from_provider else 0.7,
        message="Market data available" if from_provider else "Market data available (tender fallback)",
        evidence={"provider_priced": sorted(provider_prices), "categories": categories},
        warnings=[] if from_provider else ["Consider updating market price data"],
    )


def validate_simulation_completed(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context)
    if tender is None:
        return _tender_missing(context, "Cannot validate simulation without tender")
    simulation = reader.get_latest_simulation(tender_id=str(tender["tender_id"]))
    if simulation is None:
        return GuardResult(
            passed=False,
            confidence=0.0,
            message="No simulation found for tender",
            evidence={"tender_id": tender["tender_id"]},
            blocking_issues=["Cost simulation must be completed"],
        )
    hours = reader.settings.simulation_recent_hours
    created_at = datetime.fromisoformat(str(simulation["created_at"]))
    recent = created_at > reader.now() - timedelta(hours=hours)
    return GuardResult(
        passed=True,
        confidence=0.95 if recent else 0.7,
        message="Recent simulation found" if recent else f"Simulation found (older than {hours}h)",
        evidence={
            "simulation_id": simulation.get("simulation_id"),
            "created_at": simulation.get("created_at"),
            "is_recent": recent,
        },
        warnings=[] if recent else [f"Simulation is older than {hours} hours"],
    )


def validate_cost_reasonableness(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context)
    if tender is None:
        return _tender_missing(context, "Cannot validate costs without tender")
    simulation = reader.get_latest_simulation(tender_id=str(tender["tender_id"]))
    if simulation is None:
        return GuardResult(
            passed=False,
            confidence=0.0,
            message="No simulation found",
            blocking_issues=["Simulation required for cost validation"],
        )
    total = positive_number((simulation.get("outputs") or {}).get("project_total"))
    estimated = positive_number(tender.get("estimated_value"))
    if total is None or estimated is None:
        return GuardResult(
            passed=False,
            confidence=0.0,
            message="Missing cost data for validation",
            evidence={"project_total": None if total is None else float(total), "estimated_value": tender.get("estimated_value")},
            blocking_issues=["Cost data incomplete"],
        )
    ratio = float(total / estimated)
    lower, upper = reader.settings.cost_ratio_min, reader.settings.cost_ratio_max
    ok = lower <= ratio <= upper
    warnings: list[str] = []
    if not ok:
        warnings.append(
            "Cost significantly below estimate - verify calculations"
            if ratio < lower
            else "Cost significantly above estimate - review pricing assumptions"
        )
    return GuardResult(
        passed=ok,
        confidence=0.9 if ok else max(0.1, 1 - abs(1 - ratio)),
        message=(
            f"Cost is reasonable ({round(ratio * 100)}% of estimate)"
            if ok
            else f"Cost outside reasonable bounds ({round(ratio * 100)}% of estimate)"
        ),
        evidence={
            "project_total": float(total),
            "estimated_value": float(estimated),
            "ratio": ratio,
            "reasonable_bounds": f"{lower}-{upper}",
        },
        blocking_issues=[] if ok else [f"Cost ratio {ratio:.3f} outside {lower}-{upper}"],
        warnings=warnings,
    )


def validate_final_kik_compliance(context: GuardContext, reader: GuardReader) -> GuardResult:
    tender = reader.resolve_tender(context)
    if tender is None:
        return _tender_missing(context, "Cannot verify KİK compliance without tender")
    simulation = reader.get_latest_simulation(tender_id=str(tender["tender_id"]))
    if simulation is None:
        return GuardResult(
            passed=False,
            confidence=0.0,
            message="No simulation found",
            blocking_issues=["Simulation required for KİK verification"],
        )
    kik = (simulation.get("outputs") or {}).get("kik_analysis") or {}
    required = bool(kik.get("explanation_required"))
    attached = simulation.get("adt_explanation") is not None
    ok = attached or not required
    return GuardResult(
        passed=ok,
        confidence=(0.9 if required else 0.95) if ok else 0.0,
        message="Final KİK compliance verified" if ok else "ADT explanation required but not attached",
        evidence={
            "explanation_required": required,
            "explanation_attached": attached,
            "risk_level": kik.get("risk_level"),
        },
        blocking_issues=[] if ok else ["Offer price is below the ADT threshold without a justification"],
    )


GUARD_REGISTRY: dict[str, tuple[GuardCondition, ...]] = {
    "ANALYZE_COMPLETED": (
        GuardCondition(
            "document_integrity",
            "PDF document integrity and readability verified",
            True,
            "prerequisites",
            validate_document_integrity,
        ),
        GuardCondition(
            "structured_data_extracted",
            "Structured data successfully extracted from document",
            True,
            "validation",
            validate_structured_data_extracted,
        ),
    ),
    "TENDER_UPSERTED": (
        GuardCondition(
            "analysis_completed",
            "Document analysis completed successfully",
            True,
            "prerequisites",
            validate_analysis_completed,
        ),
        GuardCondition(
            "tender_data_completeness",
            "Tender data contains minimum required fields",
            True,
            "validation",
            validate_tender_data_completeness,
        ),
    ),
    "CHECKLIST_DONE": (
        GuardCondition("tender_exists", "Tender record exists", True, "prerequisites", validate_tender_exists),
        GuardCondition(
            "basic_requirements_identified",
            "Basic service requirements identified",
            True,
            "validation",
            validate_basic_requirements,
        ),
    ),
    "SIMULATION_DONE": (
        GuardCondition(
            "service_profile_complete",
            "Service profile has all required parameters",
            True,
            "prerequisites",
            validate_service_profile_complete,
        ),
        GuardCondition(
            "kik_compliance_ready",
            "KİK compliance data available for calculation",
            True,
            "compliance",
            validate_kik_compliance_ready,
        ),
        GuardCondition(
            "market_data_available",
            "Market price data available for cost calculation",
            False,
            "safety",
            validate_market_data_available,
        ),
    ),
    "OFFER_DRAFTED": (
        GuardCondition(
            "simulation_completed",
            "Cost simulation completed successfully",
            True,
            "prerequisites",
            validate_simulation_completed,
        ),
        GuardCondition(
            "cost_validation",
            "Calculated costs are within reasonable bounds",
            True,
            "safety",
            validate_cost_reasonableness,
        ),
        GuardCondition(
            "kik_final_check",
            "Final KİK compliance verification",
            True,
            "compliance",
            validate_final_kik_compliance,
        ),
    ),
}


class GuardLayer:
    def __init__(self, registry: dict[str, tuple[GuardCondition, ...]] | None = None) -> None:
        self._registry = GUARD_REGISTRY if registry is None else registry
        for step, conditions in self._registry.items():
            for condition in conditions:
                if condition.category not in GUARD_CATEGORIES:
                    raise ValueError(f"unknown guard category {condition.category} for {step}")

    def guards_for(self, step: str) -> tuple[GuardCondition, ...]:
        return self._registry.get(step, ())

    def evaluate(self, context: GuardContext, reader: GuardReader) -> GuardEvaluation:
        conditions = self.guards_for(context.step)
        blockers: list[GuardResult] = []
        warnings: list[GuardResult] = []
        passed: list[GuardResult] = []
        confidences: list[float] = []

        for condition in conditions:
            try:
                result = condition.validator(context, reader)
            except Exception as exc:
                logger.exception(
                    "guard_validator_failed guard_id=%s step=%s doc_hash=%s",
                    condition.guard_id,
                    context.step,
                    context.doc_hash,
                )
                result = GuardResult(
                    passed=False,
                    confidence=0.0,
                    message=f"Guard evaluation failed: {exc}",
                    evidence={"error": str(exc), "error_type": type(exc).__name__},
                    blocking_issues=[str(exc)],
                )
            result.guard_id = condition.guard_id
            confidences.append(result.confidence)
            if result.passed:
                passed.append(result)
            elif condition.required:
                blockers.append(result)
            else:
                warnings.append(result)

        evaluation = GuardEvaluation(
            can_proceed=not blockers,
            overall_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            blockers=blockers,
            warnings=warnings,
            passed=passed,
            evaluated_at=reader.now().isoformat(),
            context=context,
        )
        logger.info(
            "guard_evaluation_completed step=%s doc_hash=%s can_proceed=%s confidence=%.3f blockers=%s warnings=%s",
            context.step,
            context.doc_hash,
            evaluation.can_proceed,
            evaluation.overall_confidence,
            len(blockers),
            len(warnings),
        )
        return evaluation


def can_proceed_with_step(
    reader: GuardReader,
    *,
    doc_hash: str,
    step: str,
    tender_id: str | None = None,
    user_id: str = "system",
    metadata: dict[str, Any] | None = None,
    layer: GuardLayer | None = None,
) -> tuple[bool, GuardEvaluation]:
    context = GuardContext(
        doc_hash=doc_hash,
        step=step,
        tender_id=tender_id,
        user_id=user_id,
        metadata=dict(metadata or {}),
    )
    evaluation = (layer or GuardLayer()).evaluate(context, reader)
    return evaluation.can_proceed, evaluation
