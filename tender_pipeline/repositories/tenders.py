from __future__ import annotations

import json
import re
from typing import Any

from tender_pipeline.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryTendersRepository:
    def __init__(self, tenders: dict[str, dict[str, Any]]) -> None:
        self._tenders = tenders

    def create(self, *, tender: dict[str, Any]) -> dict[str, Any]:
        item = dict(tender)
        self._tenders[str(item["tender_id"])] = item
        return dict(item)

    def update(self, *, tender: dict[str, Any]) -> dict[str, Any]:
        return self.create(tender=tender)

    def get(self, *, tender_id: str) -> dict[str, Any] | None:
        row = self._tenders.get(tender_id)
        if row is None:
            return None
        return dict(row)

    def find_by_doc_hash(self, *, doc_hash: str) -> dict[str, Any] | None:
        for row in self._tenders.values():
            if row.get("doc_hash") == doc_hash:
                return dict(row)
        return None


class PostgresTendersRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "tenders") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create(self, *, tender: dict[str, Any]) -> dict[str, Any]:
        item = dict(tender)
        sql = f"""
            INSERT INTO {self._table_name} (
                tender_id, doc_hash, payload, created_at, updated_at
            ) VALUES (%s, %s, %s::jsonb, %s, %s)
            ON CONFLICT(tender_id) DO UPDATE SET
                doc_hash = EXCLUDED.doc_hash,
                payload = EXCLUDED.payload,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["tender_id"],
                        item.get("doc_hash"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                        item.get("created_at"),
                        item.get("updated_at"),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def update(self, *, tender: dict[str, Any]) -> dict[str, Any]:
        return self.create(tender=tender)

    def _select_one(self, column: str, value: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE {_validate_identifier(column)} = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (value,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return dict(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, tender_id: str) -> dict[str, Any] | None:
        return self._select_one("tender_id", tender_id)

    def find_by_doc_hash(self, *, doc_hash: str) -> dict[str, Any] | None:
        return self._select_one("doc_hash", doc_hash)
