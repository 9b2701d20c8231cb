from __future__ import annotations

import json
import re
from typing import Any

from tender_pipeline.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemorySliMetricsRepository:
    def __init__(self, metrics: list[dict[str, Any]]) -> None:
        self._metrics = metrics

    def append(self, *, metric: dict[str, Any]) -> dict[str, Any]:
        item = dict(metric)
        self._metrics.append(item)
        return dict(item)

    def list(self, *, name: str | None = None, since: str | None = None, limit: int = 10000) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._metrics
            if (name is None or x.get("name") == name)
            and (since is None or str(x.get("timestamp") or "") >= since)
        ]
        rows.sort(key=lambda x: str(x.get("timestamp") or ""))
        return rows[-max(1, limit):]


class PostgresSliMetricsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "sli_metrics") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, metric: dict[str, Any]) -> dict[str, Any]:
        item = dict(metric)
        sql = f"""
            INSERT INTO {self._table_name} (
                name, value, recorded_at, labels, details
            ) VALUES (%s, %s, %s, %s::jsonb, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["name"],
                        float(item["value"]),
                        item.get("timestamp"),
                        json.dumps(item.get("labels") or {}, ensure_ascii=True, sort_keys=True),
                        json.dumps(item.get("details") or {}, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op, actor="sli_recorder")

    def list(self, *, name: str | None = None, since: str | None = None, limit: int = 10000) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if name is not None:
            clauses.append("name = %s")
            params.append(name)
        if since is not None:
            clauses.append("recorded_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT name, value, recorded_at, labels, details
            FROM {self._table_name}
            {where}
            ORDER BY recorded_at DESC
            LIMIT %s
        """
        params.append(max(1, limit))

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            out = [
                {
                    "name": row[0],
                    "value": float(row[1]),
                    "timestamp": row[2],
                    "labels": row[3] if isinstance(row[3], dict) else {},
                    "details": row[4] if isinstance(row[4], dict) else {},
                }
                for row in rows
            ]
            out.reverse()
            return out

        return self._tx_runner.run_in_tx(fn=_op, actor="sli_recorder")
