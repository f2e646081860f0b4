# provisioning/core/request_context.py
"""
Per-request state carried in context variables.

asyncio.to_thread copies the current context into the worker thread, so SQL
executed by the repositories still records into the request's DbMetrics.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Dict, Optional

SQL_HEAD_MAX = 240

request_id_var: ContextVar[Optional[str]] = ContextVar("provisioning_request_id", default=None)


@dataclass
class DbMetrics:
    query_count: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    slowest_sql_head: str = ""

    def record(self, duration_ms: float, sql_head: str = "") -> None:
        duration_ms = float(duration_ms)
        self.query_count += 1
        self.total_ms += duration_ms
        if duration_ms > self.slowest_ms:
            self.slowest_ms = duration_ms
            self.slowest_sql_head = (sql_head or "")[:SQL_HEAD_MAX]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "db_query_count": self.query_count,
            "db_total_ms": self.total_ms,
            "db_slowest_ms": self.slowest_ms,
        }


db_metrics_var: ContextVar[Optional[DbMetrics]] = ContextVar("provisioning_db_metrics", default=None)


def get_request_id() -> str:
    return request_id_var.get() or "-"


def begin_request(rid: str) -> DbMetrics:
    """Bind a request id and fresh DB metrics to the current context."""
    request_id_var.set(rid)
    metrics = DbMetrics()
    db_metrics_var.set(metrics)
    return metrics


def end_request() -> None:
    request_id_var.set(None)
    db_metrics_var.set(None)


def record_db_query(duration_ms: float, sql_head: str = "") -> None:
    # Outside a request (CLI, migrations, tests) there is nothing to record into.
    metrics = db_metrics_var.get()
    if metrics is not None:
        metrics.record(duration_ms, sql_head)
