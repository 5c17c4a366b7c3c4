from __future__ import annotations

import logging
from typing import List, Sequence

from press3 import metrics
from press3.clients import LedgerClient, Signer
from press3.errors import AtomicRejection, ExternalUnavailable, ValidationError
from press3.structured_logging import log_event
from press3.types import (
    BatchResult,
    MoveCall,
    MutationPlan,
    MutationPlanEntry,
    Register,
    SetEditors,
    TransactionPlan,
    Update,
)

log = logging.getLogger("press3.batch")

MODULE_NAME = "press3"

DEFAULT_GAS_PER_CALL = 10_000_000  # 0.01 SUI
DEFAULT_GAS_BASE = 10_000_000


def gas_budget_for(calls: int, *, per_call: int = DEFAULT_GAS_PER_CALL, base: int = DEFAULT_GAS_BASE) -> int:
    return int(per_call) * int(calls) + int(base)


def compile_entry(entry: MutationPlanEntry, *, package_id: str, registry_id: str) -> MoveCall:
    prefix = f"{package_id}::{MODULE_NAME}"
    if isinstance(entry, Register):
        return MoveCall(
            target=f"{prefix}::register_page",
            arguments=(registry_id, entry.path, entry.content_ref),
        )
    if isinstance(entry, Update):
        return MoveCall(
            target=f"{prefix}::update_page_walrus_id",
            arguments=(registry_id, int(entry.index), entry.path, entry.content_ref),
        )
    if isinstance(entry, SetEditors):
        return MoveCall(
            target=f"{prefix}::set_page_editors",
            arguments=(registry_id, int(entry.index), entry.path, list(entry.editors)),
        )
    raise ValidationError(reason="unknown_plan_entry", details=type(entry).__name__)


class BatchTransactionBuilder:
    """Compile a mutation plan into one atomic multi-call transaction.

    Either every call lands or none does. The gas budget scales with the
    number of calls; an under-provisioned budget makes the ledger reject the
    whole batch, which surfaces as AtomicRejection and is never retried here.
    Any other submit failure (timeout, dropped connection) leaves the outcome
    unknown and surfaces as ExternalUnavailable; re-read the registry before
    submitting again.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        package_id: str,
        gas_per_call: int = DEFAULT_GAS_PER_CALL,
        gas_base: int = DEFAULT_GAS_BASE,
    ) -> None:
        if not str(package_id or "").strip():
            raise ValidationError(reason="missing_package_id")
        self.ledger = ledger
        self.package_id = str(package_id).strip()
        self.gas_per_call = int(gas_per_call)
        self.gas_base = int(gas_base)

    def build(self, plan: MutationPlan, *, sender: str = "") -> TransactionPlan:
        if not plan.entries:
            raise ValidationError(reason="empty_plan", details=plan.registry_id)
        calls: List[MoveCall] = [
            compile_entry(e, package_id=self.package_id, registry_id=plan.registry_id) for e in plan.entries
        ]
        return TransactionPlan(
            calls=tuple(calls),
            gas_budget=gas_budget_for(len(calls), per_call=self.gas_per_call, base=self.gas_base),
            sender=sender,
        )

    def build_and_submit(self, plan: MutationPlan, signer: Signer) -> BatchResult:
        tx = self.build(plan, sender=signer.address)
        log_event(
            log,
            "batch_submit",
            registry_id=plan.registry_id,
            calls=len(tx.calls),
            gas_budget=tx.gas_budget,
            sender=tx.sender,
        )
        try:
            digest = self.ledger.submit_transaction(tx, signer=signer)
        except AtomicRejection as e:
            e.calls = len(tx.calls)
            self._rejected(plan, e)
            raise
        except ExternalUnavailable as e:
            self._outcome_unknown(plan, e)
            raise
        except Exception as e:
            err = ExternalUnavailable(reason="submit_outcome_unknown", details=str(e)[:500], retryable=False)
            self._outcome_unknown(plan, err)
            raise err from e

        metrics.inc_counter("batches_submitted")
        log_event(log, "batch_committed", registry_id=plan.registry_id, calls=len(tx.calls), digest=digest)
        return BatchResult(digest=digest, plan=plan)

    def submit_single(self, entry: MutationPlanEntry, signer: Signer, *, registry_id: str, snapshot_version: int) -> BatchResult:
        plan = MutationPlan(registry_id=registry_id, snapshot_version=snapshot_version, entries=(entry,))
        return self.build_and_submit(plan, signer)

    def _outcome_unknown(self, plan: MutationPlan, err: ExternalUnavailable) -> None:
        metrics.inc_counter("batches_outcome_unknown")
        log_event(
            log,
            "batch_outcome_unknown",
            registry_id=plan.registry_id,
            calls=len(plan.entries),
            reason=err.reason,
            details=str(err.details)[:300] if err.details is not None else None,
        )

    def _rejected(self, plan: MutationPlan, err: AtomicRejection) -> None:
        metrics.inc_counter("batches_rejected")
        log_event(
            log,
            "batch_rejected",
            registry_id=plan.registry_id,
            calls=len(plan.entries),
            code=err.code,
            reason=err.reason,
            details=str(err.details)[:300] if err.details is not None else None,
        )


def describe_plan(entries: Sequence[MutationPlanEntry]) -> List[str]:
    out: List[str] = []
    for e in entries:
        if isinstance(e, Register):
            out.append(f"register {e.path} -> {e.content_ref}")
        elif isinstance(e, Update):
            out.append(f"update [{e.index}] {e.path} -> {e.content_ref}")
        elif isinstance(e, SetEditors):
            out.append(f"set_editors [{e.index}] {e.path} ({len(e.editors)})")
    return out
