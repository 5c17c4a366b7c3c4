from __future__ import annotations

"""Publish orchestration.

One reconciliation unit runs strictly in order:

    uploads (bounded concurrency) -> read registry -> reconcile
        -> re-read registry + freshness check -> one atomic transaction

The registry is never cached between calls; every entrypoint reads it fresh.
"""

import logging
from typing import Callable, List, Optional, Sequence

from press3.batch import DEFAULT_GAS_BASE, DEFAULT_GAS_PER_CALL, BatchTransactionBuilder
from press3.clients import BlobNetworkClient, LedgerClient, Signer
from press3.config import Press3Config
from press3.crypto.signer import load_publisher_signer
from press3.editors import mutate_editors, validate_editor_changes
from press3.errors import BatchUploadFailed, PartialCommit, ValidationError
from press3.health import DEFAULT_EXPIRING_THRESHOLD, HealthReport, check_registry_health
from press3.readiness import DEFAULT_DELAY_MS, DEFAULT_MAX_ATTEMPTS, await_ready
from press3.reconciler import DuplicatePolicy, ensure_plan_fresh, reconcile
from press3.structured_logging import configure_structured_logging, log_event
from press3.types import (
    BatchResult,
    MutationPlanEntry,
    ProgressEvent,
    PublishItem,
    Register,
    RegistrySnapshot,
    SaveResult,
    SaveStep,
    SetEditors,
    Update,
    UploadRecord,
)
from press3.uploader import BlobUploader, FlowState, UploadFlow, UploadPhase
from press3.util.ids import normalize_address, require_path, validate_address

log = logging.getLogger("press3.publish")

ProgressCallback = Callable[[ProgressEvent], None]


def can_edit(snapshot: RegistrySnapshot, address: str, path: str) -> bool:
    """Admins may edit any page; editors only the pages listing them."""
    v = validate_address(address)
    if not v.ok:
        return False
    if v.value in snapshot.admins:
        return True
    page = snapshot.page(require_path(path))
    if page is None:
        return False
    return any(validate_address(e).value == v.value for e in page.editors)


def _failed_step(flow: Optional[UploadFlow], committing: bool, err: Exception) -> SaveStep:
    if committing:
        return SaveStep.UPDATING
    if flow is None and isinstance(err, ValidationError):
        return SaveStep.VALIDATING
    if flow is not None and flow.failed_step in (UploadPhase.STORE, UploadPhase.CERTIFY):
        return SaveStep.CERTIFYING
    return SaveStep.REGISTERING


class Publisher:
    """Orchestrates uploads and registry mutations for one registry object.

    Clients and the signer are injected and owned by the caller.
    """

    def __init__(
        self,
        *,
        blobs: BlobNetworkClient,
        ledger: LedgerClient,
        signer: Signer,
        package_id: str,
        registry_id: str,
        epochs: int = 1,
        deletable: bool = True,
        store_attempts: int = 3,
        certify_retries: int = 0,
        upload_concurrency: int = 4,
        gas_per_call: int = DEFAULT_GAS_PER_CALL,
        gas_base: int = DEFAULT_GAS_BASE,
        ready_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        ready_delay_ms: int = DEFAULT_DELAY_MS,
        fresh_deploy: bool = False,
        duplicates: DuplicatePolicy = DuplicatePolicy.REJECT,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.blobs = blobs
        self.ledger = ledger
        self.signer = signer
        self.package_id = normalize_address(package_id)
        self.registry_id = normalize_address(registry_id)
        self.epochs = int(epochs)
        self.deletable = bool(deletable)
        self.upload_concurrency = max(1, int(upload_concurrency))
        self.ready_max_attempts = int(ready_max_attempts)
        self.ready_delay_ms = int(ready_delay_ms)
        self.duplicates = duplicates
        self.on_progress = on_progress
        self._sleep = sleep
        self._ready = not fresh_deploy

        self.uploader = BlobUploader(
            blobs,
            signer,
            store_attempts=store_attempts,
            certify_retries=certify_retries,
            on_progress=on_progress,
        )
        self.builder = BatchTransactionBuilder(
            ledger,
            package_id=self.package_id,
            gas_per_call=gas_per_call,
            gas_base=gas_base,
        )

    @classmethod
    def from_config(
        cls,
        cfg: Press3Config,
        *,
        blobs: BlobNetworkClient,
        ledger: LedgerClient,
        signer: Optional[Signer] = None,
        **kwargs,
    ) -> "Publisher":
        if not cfg.package_id:
            raise ValidationError(reason="missing_package_id")
        if not cfg.registry_object_id:
            raise ValidationError(reason="missing_registry_object_id")
        configure_structured_logging(cfg.log_level)
        return cls(
            blobs=blobs,
            ledger=ledger,
            signer=signer if signer is not None else load_publisher_signer(cfg.publish_secret),
            package_id=cfg.package_id,
            registry_id=cfg.registry_object_id,
            epochs=cfg.epochs,
            deletable=cfg.deletable,
            store_attempts=cfg.store_attempts,
            certify_retries=cfg.certify_retries,
            upload_concurrency=cfg.upload_concurrency,
            gas_per_call=cfg.gas_per_call,
            gas_base=cfg.gas_base,
            ready_max_attempts=cfg.ready_max_attempts,
            ready_delay_ms=cfg.ready_delay_ms,
            **kwargs,
        )

    # ----------------------------
    # Helpers
    # ----------------------------

    def _emit(self, step: SaveStep, path: str = "", detail: Optional[str] = None) -> None:
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(step=step, path=path, detail=detail))

    def _ensure_ready(self) -> None:
        if self._ready:
            return
        await_ready(
            self.ledger,
            self.package_id,
            max_attempts=self.ready_max_attempts,
            delay_ms=self.ready_delay_ms,
            sleep=self._sleep,
        )
        self._ready = True

    def snapshot(self) -> RegistrySnapshot:
        return self.ledger.read_object(self.registry_id)

    def _require_admin(self, snapshot: RegistrySnapshot) -> None:
        if normalize_address(self.signer.address) not in snapshot.admins:
            raise ValidationError(reason="not_admin", details=self.signer.address)

    # ----------------------------
    # Batch publish
    # ----------------------------

    def publish_batch(self, items: Sequence[PublishItem]) -> BatchResult:
        """Upload every item, then register/update them in one transaction."""
        if not items:
            raise ValidationError(reason="empty_batch")
        paths = [require_path(it.path) for it in items]
        if self.duplicates == DuplicatePolicy.REJECT and len(set(paths)) != len(paths):
            dupes = sorted({p for p in paths if paths.count(p) > 1})
            raise ValidationError(reason="duplicate_path", details=dupes)

        self._ensure_ready()
        log_event(log, "publish_batch_started", registry_id=self.registry_id, items=len(items))
        uploads = self.uploader.upload_many(
            items,
            epochs=self.epochs,
            deletable=self.deletable,
            max_workers=self.upload_concurrency,
        )
        return self.commit_uploads(uploads)

    def resume_batch(self, err: BatchUploadFailed) -> BatchResult:
        """Finish a publish_batch whose uploads partly failed, then commit.

        Certified uploads carried by `err` are committed as they are; paid
        reservations resume from their failed phase.
        """
        log_event(
            log,
            "publish_batch_resumed",
            registry_id=self.registry_id,
            failed=len(err.flows),
            certified=len(err.records),
        )
        uploads = self.uploader.resume_many(err, max_workers=self.upload_concurrency)
        return self.commit_uploads(uploads)

    def commit_uploads(self, uploads: Sequence[UploadRecord]) -> BatchResult:
        """Reconcile already-uploaded content and submit it.

        Also the retry path after an AtomicRejection: the blobs are still
        certified, only the registry mutation needs to run again.
        """
        self._ensure_ready()
        snapshot = self.snapshot()
        plan = reconcile(snapshot, uploads, duplicates=self.duplicates)

        self._emit(SaveStep.COMMITTING, detail=f"{len(plan)} calls")
        try:
            ensure_plan_fresh(plan, self.snapshot())
            result = self.builder.build_and_submit(plan, self.signer)
        except Exception as e:
            self._emit(SaveStep.FAILED, detail=SaveStep.COMMITTING.value)
            log_event(log, "publish_batch_failed", registry_id=self.registry_id, error=str(e)[:300])
            raise

        self._emit(SaveStep.SUCCESS, detail=result.digest)
        log_event(log, "publish_batch_committed", registry_id=self.registry_id, digest=result.digest, calls=len(plan))
        return BatchResult(digest=result.digest, plan=plan, uploads=tuple(uploads))

    # ----------------------------
    # Single-page saves
    # ----------------------------

    def save_page(self, path: str, content: bytes) -> SaveResult:
        """Upload and register-or-update one page. Never raises."""
        return self._save(path, content, create=False)

    def create_page(self, path: str, content: bytes) -> SaveResult:
        """Like save_page, but the path must be new and the signer an admin.

        Both are checked against a fresh snapshot before anything is uploaded.
        """
        return self._save(path, content, create=True)

    def _save(self, path: str, content: bytes, *, create: bool) -> SaveResult:
        flow: Optional[UploadFlow] = None
        committing = False
        try:
            p = require_path(path)
            self._ensure_ready()

            if create:
                before = self.snapshot()
                self._require_admin(before)
                if before.index_of(p) is not None:
                    raise ValidationError(reason="page_exists", details=p)

            flow = self.uploader.start(content, p, epochs=self.epochs, deletable=self.deletable)
            receipt = self.uploader.run(flow)

            committing = True
            snapshot = self.snapshot()
            idx = snapshot.index_of(p)
            entry: MutationPlanEntry
            if idx is None:
                entry = Register(path=p, content_ref=receipt.content_ref, initial_editors=())
            elif create:
                raise ValidationError(reason="page_exists", details=p)
            else:
                entry = Update(index=idx, path=p, content_ref=receipt.content_ref)

            self._emit(SaveStep.COMMITTING, path=p, detail=entry.kind)
            result = self.builder.submit_single(
                entry,
                self.signer,
                registry_id=snapshot.object_id,
                snapshot_version=snapshot.version,
            )
        except Exception as e:
            step = _failed_step(flow, committing, e)
            if flow is None or flow.state != FlowState.FAILED:
                # The uploader reports its own failures.
                self._emit(SaveStep.FAILED, path=str(path), detail=step.value)
            log_event(
                log,
                "save_failed",
                path=str(path),
                create=create,
                step=step.value,
                error=str(e)[:300],
                register_tx_id=flow.register_tx_id if flow is not None else None,
            )
            return SaveResult(
                success=False,
                content_ref=flow.handle.content_ref if flow is not None and flow.handle is not None else None,
                register_tx_id=flow.register_tx_id if flow is not None else None,
                certify_tx_id=flow.certify_tx_id if flow is not None else None,
                error=e,
                failed_step=step,
            )

        self._emit(SaveStep.SUCCESS, path=p, detail=result.digest)
        log_event(log, "page_saved", path=p, digest=result.digest, kind=entry.kind)
        return SaveResult(
            success=True,
            digest=result.digest,
            content_ref=receipt.content_ref,
            register_tx_id=receipt.register_tx_id,
            certify_tx_id=receipt.certify_tx_id,
        )

    def resume_save(self, path: str, content: bytes, err: PartialCommit) -> SaveResult:
        """Finish a save whose store/certify phase failed, without re-registering.

        `err` is the PartialCommit from the failed SaveResult. Never raises.
        """
        flow: Optional[UploadFlow] = None
        try:
            flow = self.uploader.restore(content, require_path(path), err, epochs=self.epochs, deletable=self.deletable)
            self.uploader.resume(flow)
        except Exception as e:
            return SaveResult(
                success=False,
                content_ref=flow.handle.content_ref if flow is not None and flow.handle is not None else None,
                register_tx_id=err.register_tx_id,
                error=e,
                failed_step=SaveStep.VALIDATING if flow is None and isinstance(e, ValidationError) else SaveStep.CERTIFYING,
            )
        return self.save_uploaded(flow.record())

    def save_uploaded(self, upload: UploadRecord) -> SaveResult:
        """Commit one already-certified upload. Never raises."""
        try:
            result = self.commit_uploads([upload])
        except Exception as e:
            return SaveResult(
                success=False,
                content_ref=upload.content_ref,
                register_tx_id=upload.register_tx_id,
                certify_tx_id=upload.certify_tx_id,
                error=e,
                failed_step=SaveStep.UPDATING,
            )
        return SaveResult(
            success=True,
            digest=result.digest,
            content_ref=upload.content_ref,
            register_tx_id=upload.register_tx_id,
            certify_tx_id=upload.certify_tx_id,
        )

    # ----------------------------
    # Editors
    # ----------------------------

    def set_page_editors(self, path: str, add: Sequence[str] = (), remove: Sequence[str] = ()) -> BatchResult:
        p = require_path(path)
        validate_editor_changes(add, remove)
        self._ensure_ready()

        snapshot = self.snapshot()
        self._require_admin(snapshot)
        idx = snapshot.index_of(p)
        if idx is None:
            raise ValidationError(reason="page_not_found", details=p)

        editors = mutate_editors(snapshot.pages[idx].editors, add, remove)
        entry = SetEditors(index=idx, path=p, editors=tuple(editors))

        self._emit(SaveStep.COMMITTING, path=p, detail=entry.kind)
        try:
            result = self.builder.submit_single(
                entry,
                self.signer,
                registry_id=snapshot.object_id,
                snapshot_version=snapshot.version,
            )
        except Exception:
            self._emit(SaveStep.FAILED, path=p, detail=SaveStep.COMMITTING.value)
            raise
        self._emit(SaveStep.SUCCESS, path=p, detail=result.digest)
        log_event(log, "editors_set", path=p, editors=len(editors), digest=result.digest)
        return result

    def can_edit(self, path: str, address: Optional[str] = None) -> bool:
        return can_edit(self.snapshot(), address or self.signer.address, path)

    # ----------------------------
    # Reads
    # ----------------------------

    def fetch_page(self, path: str) -> bytes:
        p = require_path(path)
        page = self.snapshot().page(p)
        if page is None:
            raise ValidationError(reason="page_not_found", details=p)
        return self.uploader.read(page.content_ref)

    def list_pages(self) -> List[str]:
        return [p.path for p in self.snapshot().pages]

    def health(self, *, threshold: int = DEFAULT_EXPIRING_THRESHOLD) -> HealthReport:
        return check_registry_health(self.ledger, self.blobs, self.registry_id, threshold=threshold)
