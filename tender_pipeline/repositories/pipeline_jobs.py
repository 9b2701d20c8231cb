from __future__ import annotations

import copy
import json
import re
import threading
from typing import Any

from tender_pipeline.db.postgres import PostgresTxRunner
from tender_pipeline.errors import PipelineError

JOB_COLUMNS: tuple[str, ...] = (
    "job_id",
    "doc_hash",
    "pipeline_id",
    "step",
    "status",
    "retry_count",
    "max_retries",
    "retryable",
    "error_code",
    "error_message",
    "metadata",
    "evidence",
    "tender_id",
    "started_at",
    "completed_at",
    "created_at",
    "updated_at",
)
_JSON_COLUMNS = {"metadata", "evidence"}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _immutable(job: dict[str, Any]) -> PipelineError:
    return PipelineError(
        code="LEDGER_ROW_IMMUTABLE",
        message=f"ledger row {job.get('doc_hash')}/{job.get('step')} is COMPLETED",
        details={"doc_hash": job.get("doc_hash"), "step": job.get("step")},
    )


class InMemoryPipelineJobsRepository:
    def __init__(
        self,
        jobs: dict[tuple[str, str], dict[str, Any]],
        *,
        lock: threading.Lock | None = None,
    ) -> None:
        self._jobs = jobs
        self._lock = lock or threading.Lock()

    def get(self, *, doc_hash: str, step: str) -> dict[str, Any] | None:
        row = self._jobs.get((doc_hash, step))
        if row is None:
            return None
        return copy.deepcopy(row)

    def claim(self, *, job: dict[str, Any], previous_status: str | None) -> dict[str, Any] | None:
        """Insert ``job`` if absent, or swap it in if the row still has ``previous_status``.

        Returns ``None`` when another caller won the claim.
        """
        key = (str(job["doc_hash"]), str(job["step"]))
        with self._lock:
            existing = self._jobs.get(key)
            if previous_status is None:
                if existing is not None:
                    return None
            elif existing is None or existing.get("status") != previous_status:
                return None
            self._jobs[key] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def update(self, *, job: dict[str, Any]) -> dict[str, Any]:
        key = (str(job["doc_hash"]), str(job["step"]))
        with self._lock:
            existing = self._jobs.get(key)
            if existing is not None and existing.get("status") == "COMPLETED":
                raise _immutable(existing)
            self._jobs[key] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def list(self, *, doc_hash: str | None = None) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(x) for x in self._jobs.values() if doc_hash is None or x.get("doc_hash") == doc_hash
        ]
        rows.sort(key=lambda x: str(x.get("created_at") or ""))
        return rows


class PostgresPipelineJobsRepository:
    """Ledger on PostgreSQL; (doc_hash, step) is the unique claim key."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _params(job: dict[str, Any]) -> list[Any]:
        values: list[Any] = []
        for column in JOB_COLUMNS:
            value = job.get(column)
            if column in _JSON_COLUMNS:
                value = json.dumps(value or {}, ensure_ascii=True, sort_keys=True)
            elif column in {"retry_count", "max_retries"}:
                value = int(value or 0)
            values.append(value)
        return values

    @staticmethod
    def _row_to_job(row: tuple[Any, ...]) -> dict[str, Any]:
        job = dict(zip(JOB_COLUMNS, row))
        for column in _JSON_COLUMNS:
            if not isinstance(job.get(column), dict):
                job[column] = {}
        job["retry_count"] = int(job.get("retry_count") or 0)
        job["max_retries"] = int(job.get("max_retries") or 0)
        return job

    def _placeholders(self) -> str:
        return ", ".join("%s::jsonb" if c in _JSON_COLUMNS else "%s" for c in JOB_COLUMNS)

    def get(self, *, doc_hash: str, step: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(JOB_COLUMNS)}
            FROM {self._table_name}
            WHERE doc_hash = %s AND step = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (doc_hash, step))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_job(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def claim(self, *, job: dict[str, Any], previous_status: str | None) -> dict[str, Any] | None:
        item = dict(job)
        if previous_status is None:
            sql = f"""
                INSERT INTO {self._table_name} ({", ".join(JOB_COLUMNS)})
                VALUES ({self._placeholders()})
                ON CONFLICT (doc_hash, step) DO NOTHING
                RETURNING job_id
            """
            params: tuple[Any, ...] = tuple(self._params(item))
        else:
            assignments = ", ".join(
                f"{c} = %s::jsonb" if c in _JSON_COLUMNS else f"{c} = %s"
                for c in JOB_COLUMNS
                if c not in {"doc_hash", "step"}
            )
            sql = f"""
                UPDATE {self._table_name}
                SET {assignments}
                WHERE doc_hash = %s AND step = %s AND status = %s
                RETURNING job_id
            """
            values = [v for c, v in zip(JOB_COLUMNS, self._params(item)) if c not in {"doc_hash", "step"}]
            params = (*values, item["doc_hash"], item["step"], previous_status)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            if row is None:
                return None
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def update(self, *, job: dict[str, Any]) -> dict[str, Any]:
        item = dict(job)
        assignments = ", ".join(
            f"{c} = EXCLUDED.{c}" for c in JOB_COLUMNS if c not in {"doc_hash", "step", "created_at"}
        )
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(JOB_COLUMNS)})
            VALUES ({self._placeholders()})
            ON CONFLICT (doc_hash, step) DO UPDATE SET {assignments}
            WHERE {self._table_name}.status <> 'COMPLETED'
            RETURNING job_id
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(self._params(item)))
                row = cur.fetchone()
            if row is None:
                raise _immutable(item)
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, doc_hash: str | None = None) -> list[dict[str, Any]]:
        where = "WHERE doc_hash = %s" if doc_hash is not None else ""
        sql = f"""
            SELECT {", ".join(JOB_COLUMNS)}
            FROM {self._table_name}
            {where}
            ORDER BY created_at ASC
        """
        params: tuple[Any, ...] = (doc_hash,) if doc_hash is not None else ()

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [self._row_to_job(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)
