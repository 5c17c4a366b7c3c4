from __future__ import annotations

"""Error taxonomy for the publish orchestrator.

Every failure carries a stable `code` (the class of failure), a `reason`
(machine-readable detail) and optional `details`. UI/CLI layers key their
guidance off `code` and, where present, `step`.

  validation_error      malformed input, raised before any external call
  external_unavailable  transient read/network failure (retryable)
  readiness_timeout     program never became queryable (fatal)
  upload_failed         upload phase failed before a durable reservation
  partial_commit        register succeeded, a later phase failed
  atomic_rejection      the ledger rejected the whole batch (no partial effect)
  stale_plan            plan was built against an older registry snapshot
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Press3Error(Exception):
    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


@dataclass
class ValidationError(Press3Error):
    code: str = "validation_error"
    reason: str = "invalid_input"
    details: Any | None = None


def invalid(reason: str, value: Any = None) -> ValidationError:
    return ValidationError(reason=reason, details=value)


@dataclass
class ExternalUnavailable(Press3Error):
    code: str = "external_unavailable"
    reason: str = "read_failed"
    details: Any | None = None
    retryable: bool = True


@dataclass
class ReadinessTimeout(ExternalUnavailable):
    code: str = "readiness_timeout"
    reason: str = "program_not_indexed"
    details: Any | None = None
    retryable: bool = False
    attempts: int = 0


@dataclass
class UploadFailed(Press3Error):
    code: str = "upload_failed"
    reason: str = "upload_failed"
    details: Any | None = None
    step: str = "register"


@dataclass
class PartialCommit(Press3Error):
    """Register landed but a later phase did not.

    The reservation is not rolled back. `handle` and `register_tx_id` are
    enough to resume the failed phase.
    """

    code: str = "partial_commit"
    reason: str = "certify_failed"
    details: Any | None = None
    step: str = "certify"
    handle: Any | None = None
    register_tx_id: Optional[str] = None


@dataclass
class AtomicRejection(Press3Error):
    code: str = "atomic_rejection"
    reason: str = "transaction_rejected"
    details: Any | None = None
    calls: int = 0


@dataclass
class StalePlan(AtomicRejection):
    code: str = "stale_plan"
    reason: str = "snapshot_changed"
    details: Any | None = None
    mismatches: list = field(default_factory=list)


@dataclass
class BatchUploadFailed(UploadFailed):
    """One or more uploads of a concurrent batch failed.

    `failures` maps each failed path to its error, in input order. `flows`
    holds the failed UploadFlow objects; the resumable ones still carry their
    handle and register tx id. `records` are the uploads that certified and
    can be committed as they are.
    """

    code: str = "upload_failed"
    reason: str = "batch_upload_failed"
    details: Any | None = None
    step: str = "register"
    failures: dict = field(default_factory=dict)
    flows: list = field(default_factory=list)
    records: list = field(default_factory=list)

    @property
    def partial_commits(self) -> list:
        return [e for e in self.failures.values() if isinstance(e, PartialCommit)]
