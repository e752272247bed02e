# auditflow/audit/record.py
"""
Persistence for job snapshots and page audits.

Stores take plain dict records: `{"kind": "job", ...}` upserts the job's
latest snapshot, `{"kind": "page", ...}` appends a page audit row.
`query(url, within)` returns the newest successful page audit younger than
`within`, which the batch runner uses as a cache.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class AuditStore(Protocol):
    async def save(self, record: Dict[str, Any]) -> None: ...

    async def query(self, url: str, within: timedelta) -> Optional[Dict[str, Any]]: ...


def _naive_utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InMemoryAuditStore:
    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.pages: List[Dict[str, Any]] = []

    async def save(self, record: Dict[str, Any]) -> None:
        kind = record.get("kind")
        if kind == "job":
            self.jobs[record["id"]] = dict(record)
        elif kind == "page":
            self.pages.append({**record, "created_at": _now()})
        else:
            raise ValueError(f"unknown record kind: {kind!r}")

    async def query(self, url: str, within: timedelta) -> Optional[Dict[str, Any]]:
        cutoff = _now() - within
        for row in reversed(self.pages):
            if row["url"] == url and row.get("ok") and row["created_at"] >= cutoff:
                return row
        return None


class SqlAuditStore:
    """SQLAlchemy-backed store; blocking session work runs in a worker thread."""

    def __init__(self, engine: Optional[Engine] = None, create_tables: bool = False):
        self._engine = engine
        self._create_tables = create_tables
        self._ready = False

    def _session(self) -> Session:
        """A session from the shared SessionLocal, bound to this store's engine when one was given."""
        from auditflow.database import SessionLocal, get_engine, init_db

        if not self._ready:
            engine = self._engine or get_engine()
            if self._create_tables:
                init_db(engine)
            self._ready = True
        if self._engine is None:
            return SessionLocal()
        return SessionLocal(bind=self._engine)

    async def save(self, record: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._save_sync, dict(record))

    async def query(self, url: str, within: timedelta) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._query_sync, url, within)

    def _save_sync(self, record: Dict[str, Any]) -> None:
        from auditflow.models import AuditJob, PageAudit

        kind = record.get("kind")
        with self._session() as db:
            if kind == "job":
                row = db.get(AuditJob, record["id"]) or AuditJob(id=record["id"])
                row.status = record.get("status")
                row.priority = record.get("priority", "medium")
                row.targets = record.get("targets") or []
                row.options = record.get("options") or {}
                row.progress = record.get("progress") or {}
                row.result_count = record.get("result_count") or 0
                row.error = record.get("error")
                row.started_at = _naive_utc(record.get("started_at"))
                row.completed_at = _naive_utc(record.get("completed_at"))
                db.add(row)
            elif kind == "page":
                db.add(PageAudit(
                    job_id=record.get("job_id"),
                    url=record["url"],
                    ok=bool(record.get("ok")),
                    payload=record.get("payload"),
                    error=record.get("error"),
                ))
            else:
                raise ValueError(f"unknown record kind: {kind!r}")
            db.commit()

    def _query_sync(self, url: str, within: timedelta) -> Optional[Dict[str, Any]]:
        from auditflow.models import PageAudit

        cutoff = _now() - within
        stmt = (
            select(PageAudit)
            .where(PageAudit.url == url, PageAudit.ok.is_(True), PageAudit.created_at >= cutoff)
            .order_by(PageAudit.created_at.desc(), PageAudit.id.desc())
            .limit(1)
        )
        with self._session() as db:
            row = db.execute(stmt).scalars().first()
            if row is None:
                return None
            return {
                "kind": "page",
                "job_id": row.job_id,
                "url": row.url,
                "ok": row.ok,
                "payload": row.payload,
                "error": row.error,
                "created_at": row.created_at,
            }
