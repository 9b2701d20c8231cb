from __future__ import annotations

import json
import re
from typing import Any

from tender_pipeline.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemorySimulationsRepository:
    def __init__(self, simulations: list[dict[str, Any]]) -> None:
        self._simulations = simulations

    def create(self, *, simulation: dict[str, Any]) -> dict[str, Any]:
        item = dict(simulation)
        self._simulations.append(item)
        return dict(item)

    def get_latest(self, *, tender_id: str) -> dict[str, Any] | None:
        rows = [x for x in self._simulations if x.get("tender_id") == tender_id]
        if not rows:
            return None
        rows.sort(key=lambda x: str(x.get("created_at") or ""))
        return dict(rows[-1])

    def list(self, *, tender_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._simulations if x.get("tender_id") == tender_id]


class PostgresSimulationsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "cost_simulations") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create(self, *, simulation: dict[str, Any]) -> dict[str, Any]:
        item = dict(simulation)
        sql = f"""
            INSERT INTO {self._table_name} (
                simulation_id, tender_id, doc_hash, payload, created_at
            ) VALUES (%s, %s, %s, %s::jsonb, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["simulation_id"],
                        item["tender_id"],
                        item.get("doc_hash"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                        item.get("created_at"),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get_latest(self, *, tender_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tender_id = %s
            ORDER BY created_at DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tender_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return dict(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, tender_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tender_id = %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tender_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
