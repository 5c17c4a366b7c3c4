from __future__ import annotations

import base64
import hashlib
import json
import threading
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from press3.clients import BlobHandle, Signer
from press3.crypto.signer import Ed25519Signer
from press3.errors import AtomicRejection, ExternalUnavailable
from press3.types import PageRecord, RegistrySnapshot, TransactionPlan
from press3.util.ids import normalize_address


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def content_ref_for(data: bytes) -> str:
    """Deterministic 43-char urlsafe content reference (TEST ONLY)."""
    return base64.urlsafe_b64encode(_sha256(bytes(data))).decode("ascii").rstrip("=")


class _Script:
    """Per-key countdown of scripted failures."""

    def __init__(self) -> None:
        self._remaining: Dict[str, int] = {}
        self._lock = threading.Lock()

    def arm(self, key: str, times: int = 1) -> None:
        with self._lock:
            self._remaining[key] = self._remaining.get(key, 0) + int(times)

    def take(self, key: str) -> bool:
        with self._lock:
            n = self._remaining.get(key, 0)
            if n <= 0:
                return False
            self._remaining[key] = n - 1
            return True


class FakeSigner(Ed25519Signer):
    """Deterministic signer derived from a stable label.

    TEST ONLY. Records every payload it signs; `decline(times)` makes the
    next signature requests fail the way a user rejecting a wallet prompt
    would.
    """

    def __init__(self, label: str = "publisher") -> None:
        seed = _sha256(("press3-test-ed25519:" + (label or "")).encode("utf-8"))
        super().__init__(Ed25519PrivateKey.from_private_bytes(seed))
        self.label = label
        self.signed: List[bytes] = []
        self._script = _Script()

    def decline(self, times: int = 1) -> None:
        self._script.arm("sign", times)

    def sign(self, payload: bytes) -> str:
        if self._script.take("sign"):
            raise PermissionError(f"signature declined: {self.label}")
        self.signed.append(bytes(payload))
        return super().sign(payload)


class FakeBlobNetwork:
    """
    In-memory blob network used for unit tests.

    - encode is pure: content_ref depends on the bytes only
    - register reserves an end epoch (current_epoch + epochs)
    - store is idempotent per content_ref
    - certify requires a prior store
    - the content type each blob was encoded with is kept in `content_types`
    - phases can be scripted to fail N times with `fail(phase, times)`
    """

    PHASES = ("encode", "register", "store", "certify", "expiry", "epoch", "read")

    def __init__(self, *, epoch: int = 0, latency_s: float = 0.0) -> None:
        self.epoch = int(epoch)
        self.latency_s = float(latency_s)

        self.expiry: Dict[str, int] = {}
        self.stored: Dict[str, bytes] = {}
        self.certified: Dict[str, str] = {}
        self.content_types: Dict[str, str] = {}
        self.store_calls: Dict[str, int] = {}
        self.calls: List[Tuple[str, str]] = []

        self._pending: Dict[str, bytes] = {}
        self._script = _Script()
        self._lock = threading.Lock()
        self._tx_seq = 0

    # ---- scripting ----

    def fail(self, phase: str, times: int = 1) -> None:
        if phase not in self.PHASES:
            raise ValueError(f"unknown phase: {phase}")
        self._script.arm(phase, times)

    def _enter(self, phase: str, key: str) -> None:
        if self.latency_s > 0:
            time.sleep(self.latency_s)
        with self._lock:
            self.calls.append((phase, key))
        if self._script.take(phase):
            raise ExternalUnavailable(reason=f"fake_{phase}_failure", details=key)

    def _next_tx(self, prefix: str) -> str:
        with self._lock:
            self._tx_seq += 1
            return f"{prefix}-{self._tx_seq}"

    # ---- BlobNetworkClient ----

    def encode(self, data: bytes, identifier: str, *, content_type: str = "application/octet-stream") -> BlobHandle:
        self._enter("encode", identifier)
        ref = content_ref_for(data)
        with self._lock:
            self._pending[ref] = bytes(data)
            self.content_types[ref] = content_type
        return BlobHandle(content_ref=ref, identifier=identifier, size=len(data), meta={"content-type": content_type})

    def register_storage(
        self, handle: BlobHandle, *, epochs: int, owner: str, signer: Signer, deletable: bool = True
    ) -> str:
        self._enter("register", handle.content_ref)
        signer.sign(f"register:{handle.content_ref}:{epochs}:{owner}".encode("utf-8"))
        with self._lock:
            end = self.epoch + int(epochs)
            self.expiry[handle.content_ref] = max(end, self.expiry.get(handle.content_ref, end))
        return self._next_tx("reg")

    def store(self, handle: BlobHandle, *, register_tx_id: str) -> None:
        self._enter("store", handle.content_ref)
        with self._lock:
            data = self._pending.get(handle.content_ref)
            if data is None:
                data = self.stored.get(handle.content_ref)
            if data is None:
                raise ExternalUnavailable(reason="unknown_blob_handle", details=handle.content_ref)
            self.stored[handle.content_ref] = data
            self.store_calls[handle.content_ref] = self.store_calls.get(handle.content_ref, 0) + 1

    def certify(self, handle: BlobHandle, *, signer: Signer) -> str:
        self._enter("certify", handle.content_ref)
        if handle.content_ref not in self.stored:
            raise ExternalUnavailable(reason="blob_not_stored", details=handle.content_ref)
        signer.sign(f"certify:{handle.content_ref}".encode("utf-8"))
        tx = self._next_tx("cert")
        with self._lock:
            self.certified[handle.content_ref] = tx
        return tx

    def get_expiry(self, content_ref: str) -> Optional[int]:
        self._enter("expiry", content_ref)
        return self.expiry.get(content_ref)

    def current_epoch(self) -> int:
        self._enter("epoch", "")
        return self.epoch

    def read_blob(self, content_ref: str) -> bytes:
        self._enter("read", content_ref)
        data = self.stored.get(content_ref)
        if data is None or content_ref not in self.certified:
            raise ExternalUnavailable(reason="blob_not_found", details=content_ref, retryable=False)
        return data

    # ---- helpers for tests ----

    def phase_calls(self, phase: str) -> List[str]:
        return [k for p, k in self.calls if p == phase]


class FakeLedger:
    """
    In-memory ledger holding one or more registry objects.

    submit_transaction validates every call against a working copy and only
    swaps it in when all of them pass; any failure raises AtomicRejection and
    leaves the registry untouched.
    """

    def __init__(
        self,
        *,
        registry_id: str = "0x" + "11" * 32,
        package_id: str = "0x" + "22" * 32,
        admins: Iterable[str] = (),
        pages: Sequence[PageRecord] = (),
        version: int = 1,
        gas_per_call: int = 10_000_000,
        gas_base: int = 0,
        latency_s: float = 0.0,
    ) -> None:
        self.registry_id = normalize_address(registry_id)
        self.package_id = normalize_address(package_id)
        self.gas_per_call = int(gas_per_call)
        self.gas_base = int(gas_base)
        self.latency_s = float(latency_s)

        self._registries: Dict[str, RegistrySnapshot] = {
            self.registry_id: RegistrySnapshot(
                object_id=self.registry_id,
                version=int(version),
                admins=frozenset(normalize_address(a) for a in admins),
                pages=tuple(pages),
            )
        }
        self._objects: Dict[str, int] = {self.package_id: 0, self.registry_id: 0}

        self.submitted: List[TransactionPlan] = []
        self.exists_calls = 0
        self._script = _Script()
        self._lock = threading.Lock()
        self._tx_seq = 0

    # ---- scripting ----

    def hide_until(self, object_id: str, queries: int) -> None:
        """Make `object_exists` answer False for the next `queries` polls."""
        self._objects[normalize_address(object_id)] = int(queries)

    def fail_reads(self, times: int = 1) -> None:
        self._script.arm("read", times)

    def fail_exists(self, times: int = 1) -> None:
        self._script.arm("exists", times)

    def reject_next(self, times: int = 1) -> None:
        self._script.arm("submit", times)

    def lose_next_response(self, times: int = 1) -> None:
        """Apply the next submitted transaction, then fail as if the response was lost."""
        self._script.arm("lost", times)

    def external_write(
        self,
        *,
        pages: Optional[Sequence[PageRecord]] = None,
        admins: Optional[Iterable[str]] = None,
        registry_id: Optional[str] = None,
    ) -> RegistrySnapshot:
        """Simulate a concurrent writer; bumps the object version."""
        rid = normalize_address(registry_id or self.registry_id)
        with self._lock:
            cur = self._registries[rid]
            nxt = replace(
                cur,
                version=cur.version + 1,
                pages=tuple(pages) if pages is not None else cur.pages,
                admins=frozenset(normalize_address(a) for a in admins) if admins is not None else cur.admins,
            )
            self._registries[rid] = nxt
            return nxt

    # ---- LedgerClient ----

    def read_object(self, object_id: str) -> RegistrySnapshot:
        if self.latency_s > 0:
            time.sleep(self.latency_s)
        if self._script.take("read"):
            raise ExternalUnavailable(reason="fake_read_failure", details=object_id)
        snap = self._registries.get(normalize_address(object_id))
        if snap is None:
            raise ExternalUnavailable(reason="registry_object_missing", details=object_id)
        return snap

    def object_exists(self, object_id: str) -> bool:
        self.exists_calls += 1
        if self._script.take("exists"):
            raise ExternalUnavailable(reason="fake_exists_failure", details=object_id)
        oid = normalize_address(object_id)
        hidden = self._objects.get(oid)
        if hidden is None:
            return False
        if hidden > 0:
            self._objects[oid] = hidden - 1
            return False
        return True

    def submit_transaction(self, tx: TransactionPlan, *, signer: Signer) -> str:
        if self.latency_s > 0:
            time.sleep(self.latency_s)
        payload = json.dumps(tx.to_json(), sort_keys=True, separators=(",", ":")).encode("utf-8")
        signer.sign(payload)

        with self._lock:
            self.submitted.append(tx)
            if self._script.take("submit"):
                raise AtomicRejection(reason="fake_rejection", details="scripted")

            needed = self.gas_per_call * len(tx.calls) + self.gas_base
            if int(tx.gas_budget) < needed:
                raise AtomicRejection(reason="insufficient_gas", details=f"budget={tx.gas_budget} needed={needed}")

            sender = normalize_address(signer.address)
            work: Dict[str, RegistrySnapshot] = dict(self._registries)
            touched = set()
            for i, call in enumerate(tx.calls):
                rid, snap = self._apply_call(work, call.target, call.arguments, sender, i)
                work[rid] = snap
                touched.add(rid)

            for rid in touched:
                work[rid] = replace(work[rid], version=self._registries[rid].version + 1)
            self._registries = work
            self._tx_seq += 1
            if self._script.take("lost"):
                raise TimeoutError("response lost after execution")
            return base64.urlsafe_b64encode(_sha256(payload + str(self._tx_seq).encode())).decode("ascii").rstrip("=")

    # ---- internals ----

    def _apply_call(
        self, work: Dict[str, RegistrySnapshot], target: str, args: Tuple[Any, ...], sender: str, i: int
    ) -> Tuple[str, RegistrySnapshot]:
        pkg, _, rest = target.partition("::")
        if normalize_address(pkg) != self.package_id:
            raise AtomicRejection(reason="unknown_package", details=f"call[{i}]:{pkg}")
        if not args:
            raise AtomicRejection(reason="missing_registry_arg", details=f"call[{i}]")
        rid = normalize_address(str(args[0]))
        snap = work.get(rid)
        if snap is None:
            raise AtomicRejection(reason="unknown_registry", details=f"call[{i}]:{rid}")
        pages = list(snap.pages)

        if rest == "press3::register_page":
            _, path, ref = args
            if sender not in snap.admins:
                raise AtomicRejection(reason="not_admin", details=f"call[{i}]:{sender}")
            if any(p.path == path for p in pages):
                raise AtomicRejection(reason="path_already_registered", details=f"call[{i}]:{path}")
            pages.append(PageRecord(path=path, content_ref=ref, editors=()))
        elif rest in ("press3::update_page_walrus_id", "press3::set_page_editors"):
            _, index, path, value = args
            idx = int(index)
            if idx < 0 or idx >= len(pages) or pages[idx].path != path:
                raise AtomicRejection(reason="index_mismatch", details=f"call[{i}]:{idx}:{path}")
            page = pages[idx]
            if rest == "press3::update_page_walrus_id":
                editors = {normalize_address(e) for e in page.editors}
                if sender not in snap.admins and sender not in editors:
                    raise AtomicRejection(reason="not_editor", details=f"call[{i}]:{sender}")
                pages[idx] = replace(page, content_ref=value)
            else:
                if sender not in snap.admins:
                    raise AtomicRejection(reason="not_admin", details=f"call[{i}]:{sender}")
                pages[idx] = replace(page, editors=tuple(value))
        else:
            raise AtomicRejection(reason="unknown_function", details=f"call[{i}]:{rest}")

        return rid, replace(snap, pages=tuple(pages))
