from __future__ import annotations

import threading

import pytest

from tender_pipeline.errors import PipelineError
from tender_pipeline.repositories.pipeline_jobs import (
    JOB_COLUMNS,
    InMemoryPipelineJobsRepository,
    PostgresPipelineJobsRepository,
)


def _job_dict(**overrides) -> dict:
    job = {
        "job_id": "job_repo_1",
        "doc_hash": "d" * 64,
        "pipeline_id": "pipeline_repo_1",
        "step": "SIMULATION_DONE",
        "status": "RUNNING",
        "retry_count": 0,
        "max_retries": 3,
        "retryable": True,
        "error_code": None,
        "error_message": None,
        "metadata": {},
        "evidence": {"created_by": "system"},
        "tender_id": "tnd_1",
        "started_at": "2025-01-01T00:00:00+00:00",
        "completed_at": None,
        "created_at": "2025-01-01T00:00:00+00:00",
        "updated_at": "2025-01-01T00:00:00+00:00",
    }
    job.update(overrides)
    return job


class FakeCursor:
    def __init__(self, statements: list, rows: list):
        self._statements = statements
        self._rows = rows
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._statements.append((query, params))
        self._row = self._rows.pop(0) if self._rows else None

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row is not None else []


class FakeConnection:
    def __init__(self, statements: list, rows: list):
        self._statements = statements
        self._rows = rows

    def cursor(self):
        return FakeCursor(self._statements, self._rows)


class FakeRunner:
    def __init__(self, rows: list | None = None):
        self.statements: list[tuple[str, tuple | None]] = []
        self.rows = list(rows or [])
        self.actors: list[str] = []

    def run_in_tx(self, *, fn, actor: str = "tender_pipeline"):
        self.actors.append(actor)
        return fn(FakeConnection(self.statements, self.rows))


def test_inmemory_claim_inserts_only_once():
    jobs: dict = {}
    repo = InMemoryPipelineJobsRepository(jobs)

    first = repo.claim(job=_job_dict(), previous_status=None)
    second = repo.claim(job=_job_dict(job_id="job_repo_2"), previous_status=None)

    assert first is not None
    assert second is None
    assert repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")["job_id"] == "job_repo_1"


def test_inmemory_claim_compares_previous_status():
    jobs: dict = {}
    repo = InMemoryPipelineJobsRepository(jobs)
    repo.update(job=_job_dict(status="FAILED", retry_count=1))

    assert repo.claim(job=_job_dict(retry_count=2), previous_status="WAITING_INPUT") is None
    claimed = repo.claim(job=_job_dict(retry_count=2), previous_status="FAILED")
    assert claimed is not None
    assert repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")["retry_count"] == 2


def test_inmemory_claim_has_single_winner_under_threads():
    jobs: dict = {}
    repo = InMemoryPipelineJobsRepository(jobs)
    barrier = threading.Barrier(8)
    winners: list[str] = []

    def _attempt(index: int) -> None:
        barrier.wait()
        if repo.claim(job=_job_dict(job_id=f"job_{index}"), previous_status=None) is not None:
            winners.append(f"job_{index}")

    threads = [threading.Thread(target=_attempt, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")["job_id"] == winners[0]


def test_inmemory_completed_row_rejects_update():
    repo = InMemoryPipelineJobsRepository({})
    repo.update(job=_job_dict(status="COMPLETED"))

    with pytest.raises(PipelineError) as exc_info:
        repo.update(job=_job_dict(status="FAILED"))
    assert exc_info.value.code == "LEDGER_ROW_IMMUTABLE"


def test_inmemory_get_returns_copies():
    repo = InMemoryPipelineJobsRepository({})
    repo.update(job=_job_dict())

    row = repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")
    row["status"] = "COMPLETED"

    assert repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")["status"] == "RUNNING"


def test_postgres_repository_rejects_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresPipelineJobsRepository(tx_runner=FakeRunner(), table_name="pipeline_jobs;drop table x")


def test_postgres_first_claim_uses_insert_on_conflict():
    runner = FakeRunner(rows=[("job_repo_1",)])
    repo = PostgresPipelineJobsRepository(tx_runner=runner)

    claimed = repo.claim(job=_job_dict(), previous_status=None)

    assert claimed is not None
    sql, params = runner.statements[0]
    assert "INSERT INTO pipeline_jobs" in sql
    assert "ON CONFLICT (doc_hash, step) DO NOTHING" in sql
    assert "RETURNING job_id" in sql
    assert len(params) == len(JOB_COLUMNS)
    assert params[JOB_COLUMNS.index("evidence")] == '{"created_by": "system"}'


def test_postgres_claim_lost_when_no_row_returned():
    runner = FakeRunner(rows=[])
    repo = PostgresPipelineJobsRepository(tx_runner=runner)

    assert repo.claim(job=_job_dict(retry_count=1), previous_status="FAILED") is None
    sql, params = runner.statements[0]
    assert sql.strip().startswith("UPDATE pipeline_jobs")
    assert "WHERE doc_hash = %s AND step = %s AND status = %s" in sql
    assert params[-3:] == ("d" * 64, "SIMULATION_DONE", "FAILED")


def test_postgres_update_refuses_completed_rows():
    runner = FakeRunner(rows=[])
    repo = PostgresPipelineJobsRepository(tx_runner=runner)

    with pytest.raises(PipelineError) as exc_info:
        repo.update(job=_job_dict(status="FAILED"))

    assert exc_info.value.code == "LEDGER_ROW_IMMUTABLE"
    sql, _ = runner.statements[0]
    assert "ON CONFLICT (doc_hash, step) DO UPDATE" in sql
    assert "status <> 'COMPLETED'" in sql


def test_postgres_get_maps_row_to_job():
    row = tuple(_job_dict(status="COMPLETED", metadata={"project_total": 1.0}).get(c) for c in JOB_COLUMNS)
    runner = FakeRunner(rows=[row])
    repo = PostgresPipelineJobsRepository(tx_runner=runner)

    job = repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")

    assert job["status"] == "COMPLETED"
    assert job["metadata"] == {"project_total": 1.0}
    assert job["retry_count"] == 0
    assert runner.actors == ["tender_pipeline"]


def test_inmemory_rows_do_not_share_nested_json():
    repo = InMemoryPipelineJobsRepository({})
    written = _job_dict(status="COMPLETED", metadata={"profile": {"title": "Okul yemeği"}})
    returned = repo.update(job=_job_dict(status="RUNNING", metadata=written["metadata"]))

    written["metadata"]["profile"]["title"] = "changed"
    returned["metadata"]["profile"]["title"] = "changed"
    read = repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")
    read["metadata"]["profile"]["title"] = "changed"

    assert repo.get(doc_hash="d" * 64, step="SIMULATION_DONE")["metadata"] == {"profile": {"title": "Okul yemeği"}}
    assert repo.list()[0]["metadata"]["profile"]["title"] == "Okul yemeği"
