"""Guarded, idempotent step orchestration over the pipeline ledger.

One ledger row exists per ``(doc_hash, step)``. A step is admitted by the
guard layer first; a blocked step returns ``WAITING_INPUT`` and leaves the
ledger untouched. COMPLETED rows are replayed and never re-executed.
Ledger read and write errors come back as FAILED results; only an unknown
step name raises.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tender_pipeline.cost_simulation import CostSimulationEngine, SimulationConfig
from tender_pipeline.errors import PipelineError
from tender_pipeline.guard_layer import GuardContext, GuardEvaluation, GuardLayer, GuardReader
from tender_pipeline.kik_compliance import KikComplianceAnalyzer
from tender_pipeline.market_prices import PriceProvider
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.sli import SliRecorder
from tender_pipeline.step_executors import PIPELINE_STEPS, JobContext, StepExecutors, StepOutput
from tender_pipeline.store import Repository, create_store_from_env

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    success: bool
    job_id: str
    step: str
    status: str
    output: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    duration_ms: float = 0.0
    confidence: float | None = None
    blocking_issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "job_id": self.job_id,
            "step": self.step,
            "status": self.status,
            "duration_ms": self.duration_ms,
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error is not None:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        for key in ("blocking_issues", "recommendations", "missing", "warnings"):
            value = getattr(self, key)
            if value:
                payload[key] = list(value)
        return payload


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _coerce_context(context: JobContext | Mapping[str, Any] | None) -> JobContext:
    if context is None:
        return JobContext()
    if isinstance(context, JobContext):
        return context
    return JobContext(
        tender_id=context.get("tender_id") or context.get("tenderId"),
        user_id=str(context.get("user_id") or context.get("userId") or "system"),
        metadata=dict(context.get("metadata") or {}),
        pipeline_id=context.get("pipeline_id") or context.get("pipelineId"),
    )


def _new_pipeline_id(doc_hash: str) -> str:
    return f"pipeline_{doc_hash[:12]}_{uuid.uuid4().hex[:8]}"


class PipelineOrchestrator:
    def __init__(
        self,
        store: Repository,
        *,
        executors: StepExecutors,
        settings: PipelineSettings | None = None,
        guard_layer: GuardLayer | None = None,
        sli: SliRecorder | None = None,
        price_provider: PriceProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or PipelineSettings()
        self.executors = executors
        self.guard_layer = guard_layer or GuardLayer()
        self.sli = sli or SliRecorder(store, enabled=self.settings.record_sli)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._reader = GuardReader(
            store,
            settings=self.settings,
            price_provider=price_provider,
            now=self._clock,
        )

    def _elapsed_ms(self, started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def _evaluate_guards(self, doc_hash: str, step: str, context: JobContext) -> GuardEvaluation:
        guard_context = GuardContext(
            doc_hash=doc_hash,
            step=step,
            tender_id=context.tender_id,
            user_id=context.user_id,
            metadata=dict(context.metadata),
        )
        evaluation = self.guard_layer.evaluate(guard_context, self._reader)
        self.sli.record_guard_evaluation(
            step=step,
            passed=evaluation.can_proceed,
            confidence=evaluation.overall_confidence,
            doc_hash=doc_hash,
            blockers_count=len(evaluation.blockers),
        )
        return evaluation

    def execute_step(
        self,
        doc_hash: str,
        step: str,
        context: JobContext | Mapping[str, Any] | None = None,
    ) -> JobResult:
        if step not in PIPELINE_STEPS:
            raise PipelineError(
                code="PIPELINE_STEP_UNKNOWN",
                message=f"unknown pipeline step: {step}",
                details={"step": step, "known_steps": list(PIPELINE_STEPS)},
            )
        ctx = _coerce_context(context)
        started = time.perf_counter()
        logger.info("pipeline_step_started doc_hash=%s step=%s tender_id=%s", doc_hash, step, ctx.tender_id)

        evaluation = self._evaluate_guards(doc_hash, step, ctx)
        if not evaluation.can_proceed:
            blocking = evaluation.blocking_issues()
            logger.warning(
                "pipeline_step_blocked doc_hash=%s step=%s blockers=%s",
                doc_hash,
                step,
                ",".join(r.guard_id for r in evaluation.blockers),
            )
            return JobResult(
                success=False,
                job_id="blocked",
                step=step,
                status="WAITING_INPUT",
                error=f"Blocked by guard conditions: {'; '.join(blocking)}",
                error_code="GUARD_BLOCKED",
                duration_ms=self._elapsed_ms(started),
                confidence=evaluation.overall_confidence,
                blocking_issues=blocking,
                recommendations=evaluation.recommendations(),
                missing=evaluation.missing(),
                warnings=evaluation.warning_messages(),
            )

        try:
            existing = self.store.get_job(doc_hash=doc_hash, step=step)
            if existing is not None:
                settled = self._settled_result(existing, evaluation, started)
                if settled is not None:
                    return settled

            job = self._running_job(doc_hash, step, ctx, existing, evaluation)
            claimed = self.store.claim_job(job=job, previous_status=existing.get("status") if existing else None)
        except Exception as exc:
            return self._ledger_failure(doc_hash, step, exc, started)
        if claimed is None:
            return JobResult(
                success=False,
                job_id=str(job["job_id"]),
                step=step,
                status="CANCELLED",
                error="Job claimed concurrently by another caller",
                error_code="PIPELINE_RACE_CONFLICT",
                duration_ms=self._elapsed_ms(started),
            )

        executor = self.executors.executor_for(step)
        try:
            if executor is None:
                raise PipelineError(code="PIPELINE_STEP_UNKNOWN", message=f"no executor for step {step}")
            produced = executor(doc_hash, str(claimed["job_id"]), ctx)
        except PipelineError as exc:
            return self._fail(claimed, existing, exc, evaluation, started)
        except Exception as exc:
            logger.exception("pipeline_step_crashed doc_hash=%s step=%s job_id=%s", doc_hash, step, claimed["job_id"])
            wrapped = PipelineError(
                code="STEP_EXECUTION_ERROR",
                message=str(exc) or type(exc).__name__,
                details={"error_type": type(exc).__name__},
            )
            return self._fail(claimed, existing, wrapped, evaluation, started)
        return self._complete(claimed, produced, evaluation, started)

    def _settled_result(
        self,
        existing: dict[str, Any],
        evaluation: GuardEvaluation,
        started: float,
    ) -> JobResult | None:
        status = existing.get("status")
        doc_hash = str(existing["doc_hash"])
        step = str(existing["step"])
        job_id = str(existing["job_id"])
        if status == "COMPLETED":
            logger.info("pipeline_step_replayed doc_hash=%s step=%s job_id=%s", doc_hash, step, job_id)
            self.sli.record_idempotency_check(doc_hash=doc_hash, step=step, idempotent=True, action="found_existing")
            return JobResult(
                success=True,
                job_id=job_id,
                step=step,
                status="COMPLETED",
                output=existing.get("metadata") or {},
                duration_ms=self._elapsed_ms(started),
                confidence=evaluation.overall_confidence,
                warnings=evaluation.warning_messages(),
            )
        if status == "RUNNING":
            logger.warning("pipeline_race_conflict doc_hash=%s step=%s job_id=%s", doc_hash, step, job_id)
            return JobResult(
                success=False,
                job_id=job_id,
                step=step,
                status="CANCELLED",
                error="Job already running",
                error_code="PIPELINE_RACE_CONFLICT",
                duration_ms=self._elapsed_ms(started),
            )
        if status == "FAILED":
            retry_count = int(existing.get("retry_count") or 0)
            stored_max = existing.get("max_retries")
            max_retries = self.settings.max_retries if stored_max is None else int(stored_max)
            exhausted = retry_count >= max_retries
            if exhausted or existing.get("retryable") is False:
                logger.warning(
                    "pipeline_step_terminal doc_hash=%s step=%s retry_count=%s max_retries=%s error_code=%s",
                    doc_hash,
                    step,
                    retry_count,
                    max_retries,
                    existing.get("error_code"),
                )
                code = "RETRIES_EXHAUSTED" if exhausted else str(existing.get("error_code") or "STEP_EXECUTION_ERROR")
                return JobResult(
                    success=False,
                    job_id=job_id,
                    step=step,
                    status="FAILED",
                    error=str(existing.get("error_message") or "Max retries exceeded"),
                    error_code=code,
                    duration_ms=self._elapsed_ms(started),
                )
        return None

    def _running_job(
        self,
        doc_hash: str,
        step: str,
        context: JobContext,
        existing: dict[str, Any] | None,
        evaluation: GuardEvaluation,
    ) -> dict[str, Any]:
        now = _utcnow_iso()
        evidence = {
            "guard_evaluation": evaluation.summary(),
            "created_by": context.user_id,
            "correlation_id": uuid.uuid4().hex,
        }
        if existing is None:
            return {
                "job_id": f"job_{uuid.uuid4().hex[:16]}",
                "doc_hash": doc_hash,
                "pipeline_id": context.pipeline_id or _new_pipeline_id(doc_hash),
                "step": step,
                "status": "RUNNING",
                "retry_count": 0,
                "max_retries": self.settings.max_retries,
                "retryable": True,
                "error_code": None,
                "error_message": None,
                "metadata": {},
                "evidence": evidence,
                "tender_id": context.tender_id,
                "started_at": now,
                "completed_at": None,
                "created_at": now,
            }
        retry_count = int(existing.get("retry_count") or 0)
        if existing.get("status") == "FAILED":
            retry_count += 1
        job = dict(existing)
        job.update(
            {
                "status": "RUNNING",
                "retry_count": retry_count,
                "retryable": True,
                "error_code": None,
                "error_message": None,
                "evidence": evidence,
                "tender_id": context.tender_id or existing.get("tender_id"),
                "started_at": now,
                "completed_at": None,
            }
        )
        logger.info(
            "pipeline_step_reentered doc_hash=%s step=%s previous_status=%s retry_count=%s",
            doc_hash,
            step,
            existing.get("status"),
            retry_count,
        )
        return job

    def _complete(
        self,
        claimed: dict[str, Any],
        produced: StepOutput,
        evaluation: GuardEvaluation,
        started: float,
    ) -> JobResult:
        doc_hash = str(claimed["doc_hash"])
        step = str(claimed["step"])
        duration_ms = self._elapsed_ms(started)
        job = dict(claimed)
        job.update(
            {
                "status": "COMPLETED",
                "metadata": produced.output,
                "evidence": {
                    **(claimed.get("evidence") or {}),
                    "provenance": {"step": step, "duration_ms": duration_ms, **produced.evidence},
                },
                "tender_id": produced.tender_id or claimed.get("tender_id"),
                "completed_at": _utcnow_iso(),
            }
        )
        try:
            self.store.upsert_job(job=job)
        except Exception as exc:
            return self._ledger_failure(doc_hash, step, exc, started, claimed=claimed)
        self.sli.record_pipeline_step(step=step, success=True, duration_ms=duration_ms, doc_hash=doc_hash)
        action = "retry" if int(claimed.get("retry_count") or 0) > 0 else "created_new"
        self.sli.record_idempotency_check(doc_hash=doc_hash, step=step, idempotent=True, action=action)
        logger.info(
            "pipeline_step_completed doc_hash=%s step=%s job_id=%s duration_ms=%s",
            doc_hash,
            step,
            claimed["job_id"],
            duration_ms,
        )
        return JobResult(
            success=True,
            job_id=str(claimed["job_id"]),
            step=step,
            status="COMPLETED",
            output=produced.output,
            duration_ms=duration_ms,
            confidence=evaluation.overall_confidence,
            warnings=evaluation.warning_messages(),
        )

    def _fail(
        self,
        claimed: dict[str, Any],
        existing: dict[str, Any] | None,
        error: PipelineError,
        evaluation: GuardEvaluation,
        started: float,
    ) -> JobResult:
        doc_hash = str(claimed["doc_hash"])
        step = str(claimed["step"])
        duration_ms = self._elapsed_ms(started)
        waiting = error.code == "WAITING_INPUT"
        job = dict(claimed)
        job.update(
            {
                "status": "WAITING_INPUT" if waiting else "FAILED",
                "retryable": error.retryable,
                "error_code": error.code,
                "error_message": error.message,
                "evidence": {**(claimed.get("evidence") or {}), "error": error.as_dict()},
            }
        )
        if waiting and existing is not None:
            job["retry_count"] = int(existing.get("retry_count") or 0)
        try:
            self.store.upsert_job(job=job)
        except Exception as exc:
            return self._ledger_failure(doc_hash, step, exc, started, claimed=claimed)
        self.sli.record_pipeline_step(
            step=step,
            success=False,
            duration_ms=duration_ms,
            doc_hash=doc_hash,
            details={"error_code": error.code},
        )
        log = logger.info if waiting else logger.error
        log(
            "pipeline_step_failed doc_hash=%s step=%s job_id=%s error_code=%s retryable=%s retry_count=%s",
            doc_hash,
            step,
            claimed["job_id"],
            error.code,
            error.retryable,
            job["retry_count"],
        )
        missing = error.details.get("missing") if waiting else None
        return JobResult(
            success=False,
            job_id=str(claimed["job_id"]),
            step=step,
            status=str(job["status"]),
            error=error.message,
            error_code=error.code,
            duration_ms=duration_ms,
            confidence=evaluation.overall_confidence,
            missing=list(missing or []),
            warnings=evaluation.warning_messages(),
        )

    def _ledger_failure(
        self,
        doc_hash: str,
        step: str,
        exc: Exception,
        started: float,
        *,
        claimed: dict[str, Any] | None = None,
    ) -> JobResult:
        """Turn a ledger read/write error into a FAILED result.

        A claimed row is released as FAILED so later calls can retry it
        instead of seeing a RUNNING row forever.
        """
        job_id = str(claimed["job_id"]) if claimed else "unclaimed"
        logger.exception("pipeline_ledger_error doc_hash=%s step=%s job_id=%s", doc_hash, step, job_id)
        if isinstance(exc, PipelineError):
            error = exc
        else:
            error = PipelineError(
                code="STEP_EXECUTION_ERROR",
                message=str(exc) or type(exc).__name__,
                details={"error_type": type(exc).__name__, "stage": "ledger"},
            )
        if claimed is not None:
            job = dict(claimed)
            job.update(
                {
                    "status": "FAILED",
                    "retryable": error.retryable,
                    "error_code": error.code,
                    "error_message": error.message,
                    "evidence": {**(claimed.get("evidence") or {}), "error": error.as_dict()},
                }
            )
            try:
                self.store.upsert_job(job=job)
            except Exception:
                logger.exception("pipeline_ledger_release_failed doc_hash=%s step=%s job_id=%s", doc_hash, step, job_id)
        duration_ms = self._elapsed_ms(started)
        self.sli.record_pipeline_step(
            step=step,
            success=False,
            duration_ms=duration_ms,
            doc_hash=doc_hash,
            details={"error_code": error.code},
        )
        return JobResult(
            success=False,
            job_id=job_id,
            step=step,
            status="FAILED",
            error=error.message,
            error_code=error.code,
            duration_ms=duration_ms,
        )

    def execute_full_pipeline(
        self,
        doc_hash: str,
        tender_id: str | None = None,
        user_id: str = "system",
        analysis_data: Mapping[str, Any] | None = None,
    ) -> list[JobResult]:
        context = JobContext(
            tender_id=tender_id,
            user_id=user_id,
            metadata=dict(analysis_data or {}),
            pipeline_id=_new_pipeline_id(doc_hash),
        )
        results: list[JobResult] = []
        for step in PIPELINE_STEPS:
            result = self.execute_step(doc_hash, step, context)
            results.append(result)
            if not result.success:
                logger.warning(
                    "pipeline_stopped doc_hash=%s step=%s status=%s error_code=%s",
                    doc_hash,
                    step,
                    result.status,
                    result.error_code,
                )
                break
            produced_tender = (result.output or {}).get("tender_id")
            if produced_tender:
                context.tender_id = str(produced_tender)
        logger.info(
            "pipeline_finished doc_hash=%s steps=%s success=%s",
            doc_hash,
            len(results),
            all(r.success for r in results),
        )
        return results


def build_pipeline(
    store: Repository | None = None,
    settings: PipelineSettings | None = None,
    *,
    price_provider: PriceProvider | None = None,
    guard_layer: GuardLayer | None = None,
) -> PipelineOrchestrator:
    resolved = settings or PipelineSettings.from_env()
    backing: Repository = store if store is not None else create_store_from_env(settings=resolved)
    analyzer = KikComplianceAnalyzer(k_factor=resolved.k_factor)
    engine = CostSimulationEngine(SimulationConfig(k_factor=resolved.k_factor), analyzer=analyzer)
    sli = SliRecorder(backing, enabled=resolved.record_sli)
    executors = StepExecutors(
        backing,
        settings=resolved,
        engine=engine,
        analyzer=analyzer,
        sli=sli,
        price_provider=price_provider,
    )
    return PipelineOrchestrator(
        backing,
        executors=executors,
        settings=resolved,
        guard_layer=guard_layer,
        sli=sli,
        price_provider=price_provider,
    )


__all__ = [
    "JobResult",
    "PipelineOrchestrator",
    "build_pipeline",
]
