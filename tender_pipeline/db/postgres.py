from __future__ import annotations

from collections.abc import Callable
from typing import Any

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS pipeline_jobs (
      job_id TEXT PRIMARY KEY,
      doc_hash TEXT NOT NULL,
      pipeline_id TEXT NOT NULL,
      step TEXT NOT NULL,
      status TEXT NOT NULL,
      retry_count INTEGER NOT NULL DEFAULT 0,
      max_retries INTEGER NOT NULL DEFAULT 3,
      retryable BOOLEAN,
      error_code TEXT,
      error_message TEXT,
      metadata JSONB,
      evidence JSONB,
      tender_id TEXT,
      started_at TEXT,
      completed_at TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      UNIQUE (doc_hash, step)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenders (
      tender_id TEXT PRIMARY KEY,
      doc_hash TEXT UNIQUE,
      payload JSONB NOT NULL,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cost_simulations (
      simulation_id TEXT PRIMARY KEY,
      tender_id TEXT NOT NULL,
      doc_hash TEXT,
      payload JSONB NOT NULL,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checklist_items (
      item_id TEXT PRIMARY KEY,
      tender_id TEXT NOT NULL,
      item_type TEXT NOT NULL,
      payload JSONB NOT NULL,
      UNIQUE (tender_id, item_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS offers (
      offer_id TEXT PRIMARY KEY,
      tender_id TEXT NOT NULL,
      simulation_id TEXT,
      status TEXT NOT NULL,
      payload JSONB NOT NULL,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sli_metrics (
      metric_id BIGSERIAL PRIMARY KEY,
      name TEXT NOT NULL,
      value DOUBLE PRECISION NOT NULL,
      recorded_at TEXT NOT NULL,
      labels JSONB,
      details JSONB
    )
    """,
)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction tagged with the acting component."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        actor: str = "tender_pipeline",
    ) -> Any:
        if not actor.strip():
            raise ValueError("actor must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_actor', %s, true)", (actor,))
            result = fn(conn)
            conn.commit()
            return result

    def apply_schema(self) -> int:
        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            return len(SCHEMA_STATEMENTS)

        return self.run_in_tx(fn=_op, actor="schema_migration")
