from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    """Mixin to add automatic created/updated timestamps (naive UTC)"""
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class AuditJob(Base, TimestampMixin):
    __tablename__ = "audit_jobs"

    id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, index=True)  # queued, processing, completed, failed, cancelled
    priority = Column(String(10), nullable=False, default="medium")
    targets = Column(JSON, default=list, nullable=False)
    options = Column(JSON, default=dict, nullable=False)
    progress = Column(JSON, default=dict, nullable=False)
    result_count = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<AuditJob(id='{self.id}', status='{self.status}', priority='{self.priority}')>"


class PageAudit(Base, TimestampMixin):
    __tablename__ = "page_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(64), nullable=True, index=True)
    url = Column(String(2048), nullable=False)
    ok = Column(Boolean, nullable=False, default=False)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_page_audits_url_created", "url", "created_at"),
    )

    def __repr__(self):
        return f"<PageAudit(id={self.id}, url='{self.url}', ok={self.ok})>"
