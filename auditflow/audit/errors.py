# auditflow/audit/errors.py
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from auditflow.audit.models import CombinedAuditResult


class AuditflowError(RuntimeError):
    pass


class InvalidJobOptions(ValueError):
    """Raised at admission when a job cannot be accepted as configured."""


class JobNotFound(AuditflowError, LookupError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class AggregationError(AuditflowError):
    """
    No usable combined result could be built for a target.

    `errors` holds one "<source>: <message>" entry per failed source and
    `result` the failed-quality provenance (which sources answered) so callers
    can still record what happened.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        result: Optional["CombinedAuditResult"] = None,
    ):
        super().__init__(message)
        self.errors = list(errors or [])
        self.result = result
