from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

Json = Dict[str, Any]

Address = str
ContentRef = str
TxId = str


# ---------------------------------------------------------------------
# Registry state
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PageRecord:
    path: str
    content_ref: ContentRef
    editors: Tuple[Address, ...] = ()


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    """One read of the on-ledger registry object.

    `version` is the ledger object version; any write to the registry bumps it,
    which makes every index captured from this snapshot suspect.
    """

    object_id: str
    version: int
    admins: frozenset = frozenset()
    pages: Tuple[PageRecord, ...] = ()

    def index_of(self, path: str) -> Optional[int]:
        for i, p in enumerate(self.pages):
            if p.path == path:
                return i
        return None

    def page(self, path: str) -> Optional[PageRecord]:
        i = self.index_of(path)
        return None if i is None else self.pages[i]


# ---------------------------------------------------------------------
# Upload results
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UploadReceipt:
    content_ref: ContentRef
    register_tx_id: TxId
    certify_tx_id: TxId


@dataclass(frozen=True, slots=True)
class UploadRecord:
    logical_path: str
    content_ref: ContentRef
    source_bytes: bytes = b""
    register_tx_id: Optional[TxId] = None
    certify_tx_id: Optional[TxId] = None


# ---------------------------------------------------------------------
# Mutation plan
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Register:
    path: str
    content_ref: ContentRef
    initial_editors: Tuple[Address, ...] = ()

    kind = "register"


@dataclass(frozen=True, slots=True)
class Update:
    index: int
    path: str
    content_ref: ContentRef

    kind = "update"


@dataclass(frozen=True, slots=True)
class SetEditors:
    index: int
    path: str
    editors: Tuple[Address, ...]

    kind = "set_editors"


MutationPlanEntry = Union[Register, Update, SetEditors]


@dataclass(frozen=True, slots=True)
class MutationPlan:
    """Entries plus the snapshot they were derived from.

    A plan is consumed once. After a rejection, re-read and re-reconcile.
    """

    registry_id: str
    snapshot_version: int
    entries: Tuple[MutationPlanEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


# ---------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MoveCall:
    target: str
    arguments: Tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class TransactionPlan:
    """A single atomic multi-call ledger transaction."""

    calls: Tuple[MoveCall, ...]
    gas_budget: int
    sender: Address = ""

    def to_json(self) -> Json:
        return {
            "sender": self.sender,
            "gas_budget": int(self.gas_budget),
            "calls": [{"target": c.target, "arguments": list(c.arguments)} for c in self.calls],
        }


@dataclass(frozen=True, slots=True)
class BatchResult:
    digest: TxId
    plan: MutationPlan
    uploads: Tuple[UploadRecord, ...] = ()


# ---------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class BlobHealthRecord:
    path: str
    content_ref: ContentRef
    current_epoch: int
    end_epoch: Optional[int]
    status: HealthStatus

    @property
    def epochs_remaining(self) -> Optional[int]:
        if self.end_epoch is None:
            return None
        return int(self.end_epoch) - int(self.current_epoch)


# ---------------------------------------------------------------------
# Progress / results for single-page saves
# ---------------------------------------------------------------------


class SaveStep(str, Enum):
    VALIDATING = "validating"
    REGISTERING = "registering"
    CERTIFYING = "certifying"
    COMMITTING = "committing"
    UPDATING = "updating"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    step: SaveStep
    path: str = ""
    detail: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SaveResult:
    success: bool
    digest: Optional[TxId] = None
    content_ref: Optional[ContentRef] = None
    register_tx_id: Optional[TxId] = None
    certify_tx_id: Optional[TxId] = None
    error: Optional[Exception] = None
    failed_step: Optional[SaveStep] = None


@dataclass(frozen=True, slots=True)
class PublishItem:
    """Raw content for one page, as supplied by a front-end collaborator."""

    path: str
    data: bytes
    content_type: Optional[str] = None
