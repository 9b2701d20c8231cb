from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tender_pipeline.cost_simulation import CostSimulationEngine, assert_project_total
from tender_pipeline.errors import PipelineError
from tender_pipeline.kik_compliance import KikComplianceAnalyzer, audit_digest
from tender_pipeline.market_prices import PriceProvider, resolve_category_prices
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.sli import SliRecorder
from tender_pipeline.store import Repository
from tender_pipeline.tender_profile import (
    build_simulation_input,
    normalize_analysis_metadata,
    portion_categories,
    positive_number,
)

logger = logging.getLogger(__name__)

PIPELINE_STEPS: tuple[str, ...] = (
    "ANALYZE_COMPLETED",
    "TENDER_UPSERTED",
    "CHECKLIST_DONE",
    "SIMULATION_DONE",
    "OFFER_DRAFTED",
)


@dataclass
class JobContext:
    tender_id: str | None = None
    user_id: str = "system"
    metadata: dict[str, Any] = field(default_factory=dict)
    pipeline_id: str | None = None


@dataclass
class StepOutput:
    output: dict[str, Any]
    evidence: dict[str, Any] = field(default_factory=dict)
    tender_id: str | None = None


StepExecutor = Callable[[str, str, JobContext], StepOutput]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _checklist_templates(flags: dict[str, Any]) -> list[dict[str, Any]]:
    items = [
        {"type": "document_validation", "title": "İhale dokümanı analiz edildi", "status": "COMPLETED"},
        {"type": "kik_compliance", "title": "KİK uyumluluk kontrolü", "status": "PENDING"},
        {"type": "cost_calculation", "title": "Maliyet hesaplaması", "status": "PENDING"},
        {"type": "market_prices", "title": "Piyasa fiyatları güncellemesi", "status": "PENDING"},
    ]
    if flags.get("has_high_risk"):
        items.append({"type": "risk_assessment", "title": "Yüksek risk analizi", "status": "PENDING"})
    if flags.get("has_technical_specs"):
        items.append({"type": "technical_specs", "title": "Teknik şartname incelemesi", "status": "PENDING"})
    return items


class StepExecutors:
    """Side-effecting work behind each pipeline step."""

    def __init__(
        self,
        store: Repository,
        *,
        settings: PipelineSettings,
        engine: CostSimulationEngine,
        analyzer: KikComplianceAnalyzer,
        sli: SliRecorder,
        price_provider: PriceProvider | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._engine = engine
        self._analyzer = analyzer
        self._sli = sli
        self._price_provider = price_provider
        self._executors: dict[str, StepExecutor] = {
            "ANALYZE_COMPLETED": self.analyze_completed,
            "TENDER_UPSERTED": self.tender_upserted,
            "CHECKLIST_DONE": self.checklist_done,
            "SIMULATION_DONE": self.simulation_done,
            "OFFER_DRAFTED": self.offer_drafted,
        }

    def executor_for(self, step: str) -> StepExecutor | None:
        return self._executors.get(step)

    def register(self, step: str, executor: StepExecutor) -> None:
        if step not in PIPELINE_STEPS:
            raise ValueError(f"unknown pipeline step: {step}")
        self._executors[step] = executor

    def _require_tender(self, doc_hash: str, context: JobContext) -> dict[str, Any]:
        tender = None
        if context.tender_id:
            tender = self._store.get_tender(tender_id=context.tender_id)
        if tender is None:
            tender = self._store.find_tender_by_doc_hash(doc_hash=doc_hash)
        if tender is None:
            raise PipelineError(
                code="TENDER_NOT_FOUND",
                message=f"no tender for doc_hash={doc_hash} tender_id={context.tender_id}",
                details={"doc_hash": doc_hash, "tender_id": context.tender_id},
            )
        return tender

    def analyze_completed(self, doc_hash: str, job_id: str, context: JobContext) -> StepOutput:
        profile = normalize_analysis_metadata(context.metadata)
        return StepOutput(
            output={
                "doc_hash": doc_hash,
                "analysis_completed_at": _utcnow_iso(),
                "job_id": job_id,
                "extracted_fields": sorted(context.metadata),
                "profile": profile,
            },
            evidence={"source": "document_analysis", "user_id": context.user_id},
            tender_id=context.tender_id,
        )

    def tender_upserted(self, doc_hash: str, job_id: str, context: JobContext) -> StepOutput:
        patch = normalize_analysis_metadata(context.metadata)
        patch["doc_hash"] = doc_hash
        existing = self._store.find_tender_by_doc_hash(doc_hash=doc_hash)
        if existing is None and context.tender_id:
            existing = self._store.get_tender(tender_id=context.tender_id)
        if existing is not None:
            tender = self._store.update_tender(tender_id=str(existing["tender_id"]), patch=patch)
            action = "updated_existing"
        else:
            if context.tender_id:
                patch["tender_id"] = context.tender_id
            tender = self._store.create_tender(tender=patch)
            action = "created_new"
        logger.info("tender_upserted doc_hash=%s tender_id=%s action=%s", doc_hash, tender["tender_id"], action)
        return StepOutput(
            output={"tender_id": tender["tender_id"], "action": action, "job_id": job_id},
            evidence={"fields": sorted(k for k in patch if k != "doc_hash")},
            tender_id=str(tender["tender_id"]),
        )

    def checklist_done(self, doc_hash: str, job_id: str, context: JobContext) -> StepOutput:
        tender = self._require_tender(doc_hash, context)
        flags = {**tender, **normalize_analysis_metadata(context.metadata)}
        templates = _checklist_templates(flags)
        tender_id = str(tender["tender_id"])
        created = self._store.create_checklist_items(tender_id=tender_id, items=templates)
        return StepOutput(
            output={
                "tender_id": tender_id,
                "checklist_items_created": len(created),
                "skipped_duplicates": len(templates) - len(created),
                "items": [{"type": x["type"], "title": x["title"]} for x in templates],
                "job_id": job_id,
            },
            tender_id=tender_id,
        )

    def simulation_done(self, doc_hash: str, job_id: str, context: JobContext) -> StepOutput:
        tender = self._require_tender(doc_hash, context)
        tender_id = str(tender["tender_id"])
        provider_prices = resolve_category_prices(self._price_provider, portion_categories(tender))
        payload = build_simulation_input(tender, provider_prices=provider_prices, doc_hash=doc_hash)

        output = self._engine.simulate(payload)
        try:
            assert_project_total(output)
        except PipelineError:
            self._sli.record_pt_equality(doc_hash=doc_hash, step="SIMULATION_DONE", held=False)
            raise
        self._sli.record_pt_equality(
            doc_hash=doc_hash,
            step="SIMULATION_DONE",
            held=True,
            details={"project_total": output.project_total},
        )
        report = self._analyzer.analyze(output)

        estimated = positive_number(tender.get("estimated_value"))
        cost_ratio = None
        if estimated is not None:
            cost_ratio = output.project_total / float(estimated)
            self._sli.record_cost_accuracy(
                tender_id=tender_id,
                ratio=cost_ratio,
                doc_hash=doc_hash,
                lower=self._settings.cost_ratio_min,
                upper=self._settings.cost_ratio_max,
            )

        explanation = report.explanation.model_dump() if report.explanation is not None else None
        digest = audit_digest(output.kik_analysis.audit_trail)
        simulation = self._store.create_simulation(
            simulation={
                "tender_id": tender_id,
                "doc_hash": doc_hash,
                "inputs": payload.model_dump(),
                "outputs": output.model_dump(),
                "adt_explanation": explanation,
                "kik_report": {
                    "threshold": report.threshold.model_dump(),
                    "adt_status": report.adt_status.model_dump(),
                    "compliance_score": report.compliance_score,
                },
                "audit_digest": digest,
                "version": output.version,
            }
        )
        logger.info(
            "simulation_stored simulation_id=%s tender_id=%s project_total=%s kik_risk=%s explanation_required=%s",
            simulation["simulation_id"],
            tender_id,
            output.project_total,
            report.adt_status.risk_level,
            report.adt_status.explanation_required,
        )
        return StepOutput(
            output={
                "simulation_id": simulation["simulation_id"],
                "tender_id": tender_id,
                "project_total": output.project_total,
                "recommended_price": output.recommended_price,
                "kik_status": report.adt_status.risk_level,
                "explanation_required": report.adt_status.explanation_required,
                "compliance_score": report.compliance_score,
                "cost_ratio": cost_ratio,
                "simulation": output.model_dump(),
                "job_id": job_id,
            },
            evidence={
                "adt_explanation": explanation,
                "audit_digest": digest,
                "audit_version": output.kik_summary.audit_version,
                "provider_priced": sorted(provider_prices),
            },
            tender_id=tender_id,
        )

    def offer_drafted(self, doc_hash: str, job_id: str, context: JobContext) -> StepOutput:
        tender = self._require_tender(doc_hash, context)
        tender_id = str(tender["tender_id"])
        simulation = self._store.get_latest_simulation(tender_id=tender_id)
        if simulation is None:
            raise PipelineError(
                code="SIMULATION_NOT_FOUND",
                message=f"no simulation for tender {tender_id}",
                details={"tender_id": tender_id},
            )
        outputs = simulation.get("outputs") or {}
        total = outputs.get("recommended_price") or 0
        offer = self._store.create_offer(
            offer={
                "tender_id": tender_id,
                "simulation_id": simulation["simulation_id"],
                "title": f"Otomatik Teklif - {tender.get('title') or tender_id}",
                "description": "Maliyet simülasyonundan oluşturulan taslak teklif",
                "total_amount": total,
                "status": "DRAFT",
                "breakdown": {
                    "material": outputs.get("material_cost") or {},
                    "labor": outputs.get("labor_cost") or {},
                    "overhead": outputs.get("overhead_cost") or {},
                    "maintenance": outputs.get("maintenance_cost") or {},
                    "profit": outputs.get("profit_margin") or 0,
                    "total": total,
                },
            }
        )
        return StepOutput(
            output={
                "offer_id": offer["offer_id"],
                "simulation_id": simulation["simulation_id"],
                "tender_id": tender_id,
                "total_amount": offer["total_amount"],
                "status": offer["status"],
                "item_count": 0,
                "job_id": job_id,
            },
            evidence={"audit_digest": simulation.get("audit_digest")},
            tender_id=tender_id,
        )
