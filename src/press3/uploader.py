from __future__ import annotations

"""Blob content uploader.

The upload protocol has four phases, each a network round-trip except the
first:

    encode -> register (signed) -> store (idempotent) -> certify (signed)

An UploadFlow is an explicit state machine over those phases:

    idle -> uploading -> awaiting_signature(register) -> uploading(store)
         -> awaiting_signature(certify) -> success | failed(step)

Callers either drive it one phase at a time with `BlobUploader.step()` (a UI
that shows each wallet prompt) or run it to completion with `upload()`.

Failure semantics:
  - encode/register failures raise UploadFailed: nothing durable was reserved.
  - store/certify failures raise PartialCommit: the register transaction
    landed and is NOT rolled back. The flow keeps its handle and register tx
    id so `resume()` can re-run just the failed phase.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from press3 import metrics
from press3.clients import BlobHandle, BlobNetworkClient, Signer
from press3.errors import BatchUploadFailed, PartialCommit, Press3Error, UploadFailed, ValidationError
from press3.structured_logging import log_event
from press3.types import ProgressEvent, PublishItem, SaveStep, UploadReceipt, UploadRecord
from press3.util.ids import DEFAULT_CONTENT_TYPE, content_type_for, normalize_address, require_path

log = logging.getLogger("press3.uploader")

ProgressCallback = Callable[[ProgressEvent], None]


class FlowState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    AWAITING_SIGNATURE = "awaiting_signature"
    SUCCESS = "success"
    FAILED = "failed"


class UploadPhase(str, Enum):
    ENCODE = "encode"
    REGISTER = "register"
    STORE = "store"
    CERTIFY = "certify"


@dataclass
class UploadFlow:
    data: bytes
    logical_path: str
    owner: str
    epochs: int
    deletable: bool = True
    content_type: str = DEFAULT_CONTENT_TYPE

    state: FlowState = FlowState.IDLE
    next_phase: Optional[UploadPhase] = UploadPhase.ENCODE
    handle: Optional[BlobHandle] = None
    register_tx_id: Optional[str] = None
    certify_tx_id: Optional[str] = None
    failed_step: Optional[UploadPhase] = None
    error: Optional[Press3Error] = None

    @property
    def done(self) -> bool:
        return self.state in (FlowState.SUCCESS, FlowState.FAILED)

    @property
    def resumable(self) -> bool:
        return (
            self.state == FlowState.FAILED
            and self.failed_step in (UploadPhase.STORE, UploadPhase.CERTIFY)
            and self.handle is not None
            and bool(self.register_tx_id)
        )

    def receipt(self) -> UploadReceipt:
        if self.state != FlowState.SUCCESS or self.handle is None:
            raise ValidationError(reason="upload_not_complete", details=self.state.value)
        return UploadReceipt(
            content_ref=self.handle.content_ref,
            register_tx_id=str(self.register_tx_id),
            certify_tx_id=str(self.certify_tx_id),
        )

    def record(self) -> UploadRecord:
        r = self.receipt()
        return UploadRecord(
            logical_path=self.logical_path,
            content_ref=r.content_ref,
            source_bytes=self.data,
            register_tx_id=r.register_tx_id,
            certify_tx_id=r.certify_tx_id,
        )


class BlobUploader:
    def __init__(
        self,
        blobs: BlobNetworkClient,
        signer: Signer,
        *,
        store_attempts: int = 3,
        certify_retries: int = 0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.blobs = blobs
        self.signer = signer
        self.store_attempts = max(1, int(store_attempts))
        self.certify_retries = max(0, int(certify_retries))
        self.on_progress = on_progress

    def _emit(self, step: SaveStep, flow: UploadFlow, detail: Optional[str] = None) -> None:
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(step=step, path=flow.logical_path, detail=detail))

    def start(
        self,
        data: bytes,
        logical_path: str,
        *,
        epochs: int,
        owner: Optional[str] = None,
        deletable: bool = True,
        content_type: Optional[str] = None,
    ) -> UploadFlow:
        """Validate inputs and return an idle flow.

        Without an explicit `content_type` the MIME type is guessed from the
        path, falling back to application/octet-stream.
        """
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationError(reason="content_not_bytes", details=type(data).__name__)
        if int(epochs) < 1:
            raise ValidationError(reason="invalid_epochs", details=epochs)
        path = require_path(logical_path)
        return UploadFlow(
            data=bytes(data),
            logical_path=path,
            owner=normalize_address(owner or self.signer.address),
            epochs=int(epochs),
            deletable=bool(deletable),
            content_type=(content_type or "").strip() or content_type_for(path),
        )

    # ----------------------------
    # Phases
    # ----------------------------

    def _fail(self, flow: UploadFlow, phase: UploadPhase, err: Press3Error) -> None:
        flow.state = FlowState.FAILED
        flow.failed_step = phase
        flow.error = err
        if isinstance(err, PartialCommit):
            metrics.inc_counter("partial_commits")
        metrics.inc_counter("uploads_failed")
        log_event(
            log,
            "upload_failed",
            path=flow.logical_path,
            step=phase.value,
            code=err.code,
            reason=err.reason,
            register_tx_id=flow.register_tx_id,
        )
        self._emit(SaveStep.FAILED, flow, phase.value)

    def _encode(self, flow: UploadFlow) -> None:
        flow.state = FlowState.UPLOADING
        try:
            flow.handle = self.blobs.encode(flow.data, flow.logical_path, content_type=flow.content_type)
        except Exception as e:
            self._fail(flow, UploadPhase.ENCODE, UploadFailed(reason="encode_failed", details=str(e), step="encode"))
            return
        flow.next_phase = UploadPhase.REGISTER
        flow.state = FlowState.AWAITING_SIGNATURE

    def _register(self, flow: UploadFlow) -> None:
        assert flow.handle is not None
        self._emit(SaveStep.REGISTERING, flow)
        try:
            flow.register_tx_id = self.blobs.register_storage(
                flow.handle,
                epochs=flow.epochs,
                owner=flow.owner,
                signer=self.signer,
                deletable=flow.deletable,
            )
        except Exception as e:
            self._fail(flow, UploadPhase.REGISTER, UploadFailed(reason="register_failed", details=str(e), step="register"))
            return
        log_event(log, "blob_registered", path=flow.logical_path, register_tx_id=flow.register_tx_id)
        flow.next_phase = UploadPhase.STORE
        flow.state = FlowState.UPLOADING

    def _store(self, flow: UploadFlow) -> None:
        assert flow.handle is not None
        last: Optional[Exception] = None
        for attempt in range(1, self.store_attempts + 1):
            try:
                self.blobs.store(flow.handle, register_tx_id=str(flow.register_tx_id))
                last = None
                break
            except Exception as e:
                last = e
                log_event(log, "blob_store_retry", path=flow.logical_path, attempt=attempt, error=str(e)[:300])
        if last is not None:
            self._fail(
                flow,
                UploadPhase.STORE,
                PartialCommit(
                    reason="store_failed",
                    details=str(last),
                    step="store",
                    handle=flow.handle,
                    register_tx_id=flow.register_tx_id,
                ),
            )
            return
        flow.next_phase = UploadPhase.CERTIFY
        flow.state = FlowState.AWAITING_SIGNATURE

    def _certify(self, flow: UploadFlow) -> None:
        assert flow.handle is not None
        self._emit(SaveStep.CERTIFYING, flow)
        last: Optional[Exception] = None
        for attempt in range(self.certify_retries + 1):
            try:
                flow.certify_tx_id = self.blobs.certify(flow.handle, signer=self.signer)
                last = None
                break
            except Exception as e:
                last = e
                if attempt < self.certify_retries:
                    log_event(log, "blob_certify_retry", path=flow.logical_path, attempt=attempt + 1, error=str(e)[:300])
        if last is not None:
            self._fail(
                flow,
                UploadPhase.CERTIFY,
                PartialCommit(
                    reason="certify_failed",
                    details=str(last),
                    step="certify",
                    handle=flow.handle,
                    register_tx_id=flow.register_tx_id,
                ),
            )
            return
        flow.next_phase = None
        flow.state = FlowState.SUCCESS
        metrics.inc_counter("uploads_ok")
        log_event(
            log,
            "blob_certified",
            path=flow.logical_path,
            content_ref=flow.handle.content_ref,
            register_tx_id=flow.register_tx_id,
            certify_tx_id=flow.certify_tx_id,
        )

    # ----------------------------
    # Driving the flow
    # ----------------------------

    def step(self, flow: UploadFlow) -> UploadFlow:
        """Run exactly one phase. No-op once the flow is done."""
        if flow.done:
            return flow
        phase = flow.next_phase
        if phase == UploadPhase.ENCODE:
            self._encode(flow)
        elif phase == UploadPhase.REGISTER:
            self._register(flow)
        elif phase == UploadPhase.STORE:
            self._store(flow)
        elif phase == UploadPhase.CERTIFY:
            self._certify(flow)
        return flow

    def run(self, flow: UploadFlow) -> UploadReceipt:
        while not flow.done:
            self.step(flow)
        if flow.state == FlowState.FAILED:
            assert flow.error is not None
            raise flow.error
        return flow.receipt()

    def upload(
        self,
        data: bytes,
        logical_path: str,
        *,
        epochs: int,
        owner: Optional[str] = None,
        deletable: bool = True,
        content_type: Optional[str] = None,
    ) -> UploadReceipt:
        flow = self.start(
            data, logical_path, epochs=epochs, owner=owner, deletable=deletable, content_type=content_type
        )
        return self.run(flow)

    def resume(self, flow: UploadFlow) -> UploadReceipt:
        """Re-run the failed store/certify phase with the same blob handle.

        The register transaction is not repeated.
        """
        if not flow.resumable:
            raise ValidationError(
                reason="flow_not_resumable",
                details=f"state={flow.state.value} failed_step={getattr(flow.failed_step, 'value', None)}",
            )
        flow.next_phase = flow.failed_step
        flow.state = FlowState.AWAITING_SIGNATURE if flow.failed_step == UploadPhase.CERTIFY else FlowState.UPLOADING
        flow.failed_step = None
        flow.error = None
        log_event(log, "upload_resume", path=flow.logical_path, phase=flow.next_phase.value, register_tx_id=flow.register_tx_id)
        return self.run(flow)

    def restore(
        self,
        data: bytes,
        logical_path: str,
        err: PartialCommit,
        *,
        epochs: int,
        owner: Optional[str] = None,
        deletable: bool = True,
        content_type: Optional[str] = None,
    ) -> UploadFlow:
        """Rebuild a failed flow from the PartialCommit it raised."""
        flow = self.start(
            data, logical_path, epochs=epochs, owner=owner, deletable=deletable, content_type=content_type
        )
        if err.handle is None or not err.register_tx_id:
            raise ValidationError(reason="partial_commit_without_handle", details=err.step)
        encoded = self.blobs.encode(flow.data, flow.logical_path, content_type=flow.content_type)
        if err.handle.content_ref != encoded.content_ref:
            raise ValidationError(reason="content_changed_since_register", details=err.handle.content_ref)
        flow.handle = err.handle
        flow.register_tx_id = err.register_tx_id
        flow.state = FlowState.FAILED
        flow.failed_step = UploadPhase(err.step)
        flow.next_phase = None
        flow.error = err
        return flow

    def upload_many(
        self,
        items: Sequence[PublishItem],
        *,
        epochs: int,
        owner: Optional[str] = None,
        deletable: bool = True,
        max_workers: int = 4,
    ) -> List[UploadRecord]:
        """Upload independent pages concurrently; results keep input order.

        All flows are validated before any network call. Once every in-flight
        upload has settled, any failure raises BatchUploadFailed carrying each
        failed flow and each certified record, so reservations already paid
        for can be resumed or committed instead of uploaded again.
        """
        flows = [
            self.start(
                it.data,
                it.path,
                epochs=epochs,
                owner=owner,
                deletable=deletable,
                content_type=it.content_type,
            )
            for it in items
        ]
        if not flows:
            return []
        self._run_all([(self.run, f) for f in flows], max_workers)
        return self._settle(flows, [])

    def resume_many(self, err: BatchUploadFailed, *, max_workers: int = 4) -> List[UploadRecord]:
        """Finish a batch that raised BatchUploadFailed.

        Resumable flows re-run only their failed store/certify phase. Flows
        that failed before register start over, since nothing was reserved
        for them. Returns the earlier certified records followed by the
        finished ones; failures raise a new BatchUploadFailed.
        """
        jobs = []
        flows: List[UploadFlow] = []
        for f in err.flows:
            if f.resumable:
                jobs.append((self.resume, f))
                flows.append(f)
            else:
                fresh = self.start(
                    f.data,
                    f.logical_path,
                    epochs=f.epochs,
                    owner=f.owner,
                    deletable=f.deletable,
                    content_type=f.content_type,
                )
                jobs.append((self.run, fresh))
                flows.append(fresh)
        if jobs:
            self._run_all(jobs, max_workers)
        return self._settle(flows, list(err.records))

    def _run_all(self, jobs: Sequence, max_workers: int) -> None:
        workers = max(1, min(int(max_workers), len(jobs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="press3-upload") as pool:
            futures = [pool.submit(fn, f) for fn, f in jobs]
            for fut in futures:
                exc = fut.exception()
                if exc is not None and not isinstance(exc, Press3Error):
                    raise exc

    def _settle(self, flows: Sequence[UploadFlow], done: List[UploadRecord]) -> List[UploadRecord]:
        records = done + [f.record() for f in flows if f.state == FlowState.SUCCESS]
        failed = [f for f in flows if f.state != FlowState.SUCCESS]
        if not failed:
            return records
        first = failed[0].error
        err = BatchUploadFailed(
            details=[f.logical_path for f in failed],
            step=str(getattr(first, "step", "register")),
            failures={f.logical_path: f.error for f in failed},
            flows=failed,
            records=records,
        )
        log_event(
            log,
            "upload_batch_failed",
            failed=len(failed),
            certified=len(records),
            partial_commits=len(err.partial_commits),
        )
        raise err from first

    def read(self, content_ref: str) -> bytes:
        return self.blobs.read_blob(content_ref)
