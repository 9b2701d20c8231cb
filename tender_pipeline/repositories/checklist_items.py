from __future__ import annotations

import json
import re
from typing import Any

from tender_pipeline.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryChecklistItemsRepository:
    def __init__(self, items: dict[str, list[dict[str, Any]]]) -> None:
        self._items = items

    def create_many(self, *, tender_id: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Append items whose ``type`` is not on the tender's checklist yet."""
        bucket = self._items.setdefault(tender_id, [])
        seen = {str(x.get("type")) for x in bucket}
        created: list[dict[str, Any]] = []
        for raw in items:
            item = dict(raw)
            item["tender_id"] = tender_id
            if str(item.get("type")) in seen:
                continue
            seen.add(str(item.get("type")))
            bucket.append(item)
            created.append(dict(item))
        return created

    def list(self, *, tender_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._items.get(tender_id, [])]


class PostgresChecklistItemsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "checklist_items") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create_many(self, *, tender_id: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        sql = f"""
            INSERT INTO {self._table_name} (
                item_id, tender_id, item_type, payload
            ) VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT (tender_id, item_type) DO NOTHING
            RETURNING item_id
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            created: list[dict[str, Any]] = []
            with conn.cursor() as cur:
                for raw in items:
                    item = dict(raw)
                    item["tender_id"] = tender_id
                    cur.execute(
                        sql,
                        (
                            item["item_id"],
                            tender_id,
                            item.get("type"),
                            json.dumps(item, ensure_ascii=True, sort_keys=True),
                        ),
                    )
                    if cur.fetchone() is not None:
                        created.append(item)
            return created

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, tender_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tender_id = %s
            ORDER BY item_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tender_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
