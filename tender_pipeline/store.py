from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from tender_pipeline.db.postgres import PostgresTxRunner
from tender_pipeline.errors import PipelineError
from tender_pipeline.repositories.checklist_items import (
    InMemoryChecklistItemsRepository,
    PostgresChecklistItemsRepository,
)
from tender_pipeline.repositories.offers import InMemoryOffersRepository, PostgresOffersRepository
from tender_pipeline.repositories.pipeline_jobs import (
    InMemoryPipelineJobsRepository,
    PostgresPipelineJobsRepository,
)
from tender_pipeline.repositories.simulations import InMemorySimulationsRepository, PostgresSimulationsRepository
from tender_pipeline.repositories.sli_metrics import InMemorySliMetricsRepository, PostgresSliMetricsRepository
from tender_pipeline.repositories.tenders import InMemoryTendersRepository, PostgresTendersRepository
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.tender_profile import deep_merge

logger = logging.getLogger(__name__)


class Repository(Protocol):
    def get_job(self, *, doc_hash: str, step: str) -> dict[str, Any] | None: ...

    def upsert_job(self, *, job: dict[str, Any]) -> dict[str, Any]: ...

    def claim_job(self, *, job: dict[str, Any], previous_status: str | None) -> dict[str, Any] | None: ...

    def get_tender(self, *, tender_id: str) -> dict[str, Any] | None: ...

    def find_tender_by_doc_hash(self, *, doc_hash: str) -> dict[str, Any] | None: ...

    def create_tender(self, *, tender: dict[str, Any]) -> dict[str, Any]: ...

    def update_tender(self, *, tender_id: str, patch: dict[str, Any]) -> dict[str, Any]: ...

    def create_simulation(self, *, simulation: dict[str, Any]) -> dict[str, Any]: ...

    def get_latest_simulation(self, *, tender_id: str) -> dict[str, Any] | None: ...

    def create_checklist_items(self, *, tender_id: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    def create_offer(self, *, offer: dict[str, Any]) -> dict[str, Any]: ...

    def append_sli_metric(self, *, metric: dict[str, Any]) -> dict[str, Any]: ...

    def list_sli_metrics(self, *, name: str | None = None, since: str | None = None) -> list[dict[str, Any]]: ...


class InMemoryStore:
    def __init__(self) -> None:
        self.jobs: dict[tuple[str, str], dict[str, Any]] = {}
        self.tenders: dict[str, dict[str, Any]] = {}
        self.simulations: list[dict[str, Any]] = []
        self.checklist_items: dict[str, list[dict[str, Any]]] = {}
        self.offers: dict[str, dict[str, Any]] = {}
        self.sli_metrics: list[dict[str, Any]] = []
        self._claim_lock = threading.Lock()
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.jobs_repository = InMemoryPipelineJobsRepository(self.jobs, lock=self._claim_lock)
        self.tenders_repository = InMemoryTendersRepository(self.tenders)
        self.simulations_repository = InMemorySimulationsRepository(self.simulations)
        self.checklist_repository = InMemoryChecklistItemsRepository(self.checklist_items)
        self.offers_repository = InMemoryOffersRepository(self.offers)
        self.sli_repository = InMemorySliMetricsRepository(self.sli_metrics)

    def reset(self) -> None:
        self.jobs.clear()
        self.tenders.clear()
        self.simulations.clear()
        self.checklist_items.clear()
        self.offers.clear()
        self.sli_metrics.clear()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    def get_job(self, *, doc_hash: str, step: str) -> dict[str, Any] | None:
        return self.jobs_repository.get(doc_hash=doc_hash, step=step)

    def list_jobs(self, *, doc_hash: str | None = None) -> list[dict[str, Any]]:
        return self.jobs_repository.list(doc_hash=doc_hash)

    def upsert_job(self, *, job: dict[str, Any]) -> dict[str, Any]:
        item = dict(job)
        item["updated_at"] = self._utcnow_iso()
        return self.jobs_repository.update(job=item)

    def claim_job(self, *, job: dict[str, Any], previous_status: str | None) -> dict[str, Any] | None:
        item = dict(job)
        item["updated_at"] = self._utcnow_iso()
        claimed = self.jobs_repository.claim(job=item, previous_status=previous_status)
        if claimed is None:
            logger.info(
                "ledger_claim_lost doc_hash=%s step=%s previous_status=%s",
                item.get("doc_hash"),
                item.get("step"),
                previous_status,
            )
        return claimed

    def get_tender(self, *, tender_id: str) -> dict[str, Any] | None:
        return self.tenders_repository.get(tender_id=tender_id)

    def find_tender_by_doc_hash(self, *, doc_hash: str) -> dict[str, Any] | None:
        return self.tenders_repository.find_by_doc_hash(doc_hash=doc_hash)

    def create_tender(self, *, tender: dict[str, Any]) -> dict[str, Any]:
        now = self._utcnow_iso()
        item = dict(tender)
        item.setdefault("tender_id", self._new_id("tnd"))
        item.setdefault("created_at", now)
        item["updated_at"] = now
        return self.tenders_repository.create(tender=item)

    def update_tender(self, *, tender_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        existing = self.tenders_repository.get(tender_id=tender_id)
        if existing is None:
            raise PipelineError(
                code="TENDER_NOT_FOUND",
                message=f"tender {tender_id} not found",
                details={"tender_id": tender_id},
            )
        merged = deep_merge(existing, patch)
        merged["tender_id"] = tender_id
        merged["updated_at"] = self._utcnow_iso()
        return self.tenders_repository.update(tender=merged)

    def create_simulation(self, *, simulation: dict[str, Any]) -> dict[str, Any]:
        item = dict(simulation)
        item.setdefault("simulation_id", self._new_id("sim"))
        item.setdefault("created_at", self._utcnow_iso())
        return self.simulations_repository.create(simulation=item)

    def get_latest_simulation(self, *, tender_id: str) -> dict[str, Any] | None:
        return self.simulations_repository.get_latest(tender_id=tender_id)

    def create_checklist_items(self, *, tender_id: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        prepared = []
        for raw in items:
            item = dict(raw)
            item.setdefault("item_id", self._new_id("chk"))
            prepared.append(item)
        return self.checklist_repository.create_many(tender_id=tender_id, items=prepared)

    def list_checklist_items(self, *, tender_id: str) -> list[dict[str, Any]]:
        return self.checklist_repository.list(tender_id=tender_id)

    def create_offer(self, *, offer: dict[str, Any]) -> dict[str, Any]:
        item = dict(offer)
        item.setdefault("offer_id", self._new_id("ofr"))
        item.setdefault("created_at", self._utcnow_iso())
        return self.offers_repository.create(offer=item)

    def list_offers(self, *, tender_id: str) -> list[dict[str, Any]]:
        return self.offers_repository.list(tender_id=tender_id)

    def append_sli_metric(self, *, metric: dict[str, Any]) -> dict[str, Any]:
        item = dict(metric)
        item.setdefault("timestamp", self._utcnow_iso())
        return self.sli_repository.append(metric=item)

    def list_sli_metrics(self, *, name: str | None = None, since: str | None = None) -> list[dict[str, Any]]:
        return self.sli_repository.list(name=name, since=since)


class PostgresBackedStore(InMemoryStore):
    """Store whose repositories all write through PostgreSQL tables."""

    def __init__(self, *, dsn: str, apply_schema: bool = False) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres ledger backend")
        self._tx_runner = PostgresTxRunner(dsn)
        super().__init__()
        if apply_schema:
            self._tx_runner.apply_schema()

    def _bind_repositories(self) -> None:
        self.jobs_repository = PostgresPipelineJobsRepository(tx_runner=self._tx_runner)
        self.tenders_repository = PostgresTendersRepository(tx_runner=self._tx_runner)
        self.simulations_repository = PostgresSimulationsRepository(tx_runner=self._tx_runner)
        self.checklist_repository = PostgresChecklistItemsRepository(tx_runner=self._tx_runner)
        self.offers_repository = PostgresOffersRepository(tx_runner=self._tx_runner)
        self.sli_repository = PostgresSliMetricsRepository(tx_runner=self._tx_runner)

    def reset(self) -> None:
        raise RuntimeError("reset is only supported for the in-memory store")


def create_store_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    settings: PipelineSettings | None = None,
) -> InMemoryStore:
    env = os.environ if environ is None else environ
    resolved = settings or PipelineSettings.from_env(env)
    if resolved.ledger_backend == "postgres":
        if not resolved.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when PIPELINE_LEDGER_BACKEND=postgres")
        apply_schema = env.get("POSTGRES_APPLY_SCHEMA", "false").strip().lower() in {"1", "true", "yes", "on"}
        return PostgresBackedStore(dsn=resolved.postgres_dsn, apply_schema=apply_schema)
    return InMemoryStore()
