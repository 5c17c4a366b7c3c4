"""
press3: external collaborator interfaces

The orchestrator never talks to a network directly. It is handed three
capabilities at construction time:

  - BlobNetworkClient: the content-addressed blob network (Walrus)
  - LedgerClient: the ledger holding the page registry (Sui)
  - Signer: an identity able to sign transaction bytes; may block on a human

Concrete SDK-backed clients live outside this package; press3.rpc has the
read-only HTTP pieces and press3.testing.fakes has in-memory versions.

This module is pure structure: no I/O here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from press3.types import RegistrySnapshot, TransactionPlan


@dataclass(frozen=True, slots=True)
class BlobHandle:
    """
    Result of the local encode phase.

    - content_ref is known as soon as the bytes are encoded (content-addressed).
    - identifier is the logical path the blob was encoded under.
    - meta holds the blob tags ("content-type") and any backend-specific
      state (shard layout, pending blob object id).
    """
    content_ref: str
    identifier: str
    size: int
    meta: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign(self, payload: bytes) -> str: ...


@runtime_checkable
class BlobNetworkClient(Protocol):
    def encode(self, data: bytes, identifier: str, *, content_type: str = "application/octet-stream") -> BlobHandle: ...

    def register_storage(
        self, handle: BlobHandle, *, epochs: int, owner: str, signer: Signer, deletable: bool = True
    ) -> str: ...

    def store(self, handle: BlobHandle, *, register_tx_id: str) -> None: ...

    def certify(self, handle: BlobHandle, *, signer: Signer) -> str: ...

    def get_expiry(self, content_ref: str) -> Optional[int]: ...

    def current_epoch(self) -> int: ...

    def read_blob(self, content_ref: str) -> bytes: ...


@runtime_checkable
class LedgerReader(Protocol):
    def read_object(self, object_id: str) -> RegistrySnapshot: ...

    def object_exists(self, object_id: str) -> bool: ...


@runtime_checkable
class LedgerClient(LedgerReader, Protocol):
    def submit_transaction(self, tx: TransactionPlan, *, signer: Signer) -> str: ...
