from __future__ import annotations

import json
import re
from typing import Any

from tender_pipeline.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryOffersRepository:
    def __init__(self, offers: dict[str, dict[str, Any]]) -> None:
        self._offers = offers

    def create(self, *, offer: dict[str, Any]) -> dict[str, Any]:
        item = dict(offer)
        self._offers[str(item["offer_id"])] = item
        return dict(item)

    def list(self, *, tender_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._offers.values() if x.get("tender_id") == tender_id]


class PostgresOffersRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "offers") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create(self, *, offer: dict[str, Any]) -> dict[str, Any]:
        item = dict(offer)
        sql = f"""
            INSERT INTO {self._table_name} (
                offer_id, tender_id, simulation_id, status, payload, created_at
            ) VALUES (%s, %s, %s, %s, %s::jsonb, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["offer_id"],
                        item["tender_id"],
                        item.get("simulation_id"),
                        item.get("status", "DRAFT"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                        item.get("created_at"),
                    ),
                )
            return item

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
