from __future__ import annotations

"""Registry reconciliation.

Turns freshly uploaded content into a mutation plan against one registry
snapshot:

  - path already registered -> Update(index, path, content_ref)
  - path unknown            -> Register(path, content_ref, editors=())

Indices are positions in the snapshot's page sequence and are only valid for
that snapshot. `ensure_plan_fresh` re-checks a plan against a newer read
before the plan is committed.
"""

import logging
from enum import Enum
from typing import Dict, List, Sequence

from press3.errors import StalePlan, ValidationError
from press3.structured_logging import log_event
from press3.types import MutationPlan, MutationPlanEntry, Register, RegistrySnapshot, SetEditors, Update, UploadRecord
from press3.util.ids import normalize_path

log = logging.getLogger("press3.reconciler")


class DuplicatePolicy(str, Enum):
    REJECT = "reject"
    LAST_WINS = "last_wins"


def _path_index(snapshot: RegistrySnapshot) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for i, page in enumerate(snapshot.pages):
        # First occurrence wins; the registry program keeps paths unique.
        out.setdefault(page.path, i)
    return out


def _dedupe(uploads: Sequence[UploadRecord], policy: DuplicatePolicy) -> List[UploadRecord]:
    seen: Dict[str, int] = {}
    out: List[UploadRecord] = []
    for u in uploads:
        path = normalize_path(u.logical_path)
        if path in seen:
            if policy == DuplicatePolicy.REJECT:
                raise ValidationError(reason="duplicate_path", details=path)
            # Keep the position of the first occurrence, the content of the last.
            out[seen[path]] = u
            continue
        seen[path] = len(out)
        out.append(u)
    return out


def reconcile(
    snapshot: RegistrySnapshot,
    uploads: Sequence[UploadRecord],
    *,
    duplicates: DuplicatePolicy = DuplicatePolicy.REJECT,
) -> MutationPlan:
    """Diff uploads against `snapshot`, in input order. Pure and deterministic."""
    by_path = _path_index(snapshot)
    entries: List[MutationPlanEntry] = []

    for u in _dedupe(uploads, duplicates):
        path = normalize_path(u.logical_path)
        if not u.content_ref:
            raise ValidationError(reason="missing_content_ref", details=path)
        idx = by_path.get(path)
        if idx is None:
            entries.append(Register(path=path, content_ref=u.content_ref, initial_editors=()))
        else:
            entries.append(Update(index=idx, path=path, content_ref=u.content_ref))

    plan = MutationPlan(registry_id=snapshot.object_id, snapshot_version=snapshot.version, entries=tuple(entries))
    log_event(
        log,
        "reconciled",
        registry_id=snapshot.object_id,
        snapshot_version=snapshot.version,
        registers=sum(1 for e in entries if isinstance(e, Register)),
        updates=sum(1 for e in entries if isinstance(e, Update)),
    )
    return plan


def plan_mismatches(plan: MutationPlan, fresh: RegistrySnapshot) -> List[str]:
    """Entries whose assumptions no longer hold in `fresh`."""
    out: List[str] = []
    if plan.registry_id != fresh.object_id:
        out.append(f"registry:{plan.registry_id}!={fresh.object_id}")
        return out

    by_path = _path_index(fresh)
    for e in plan.entries:
        if isinstance(e, (Update, SetEditors)):
            if e.index >= len(fresh.pages) or fresh.pages[e.index].path != e.path:
                out.append(f"index:{e.index}:{e.path}")
        elif isinstance(e, Register):
            if e.path in by_path:
                out.append(f"registered:{e.path}")
    return out


def ensure_plan_fresh(plan: MutationPlan, fresh: RegistrySnapshot) -> None:
    """Raise StalePlan unless `plan` was built against `fresh`.

    An unchanged object version is authoritative. When the version moved,
    every captured index is suspect and the plan is rejected; the mismatch
    list says which entries actually drifted.
    """
    if plan.registry_id == fresh.object_id and plan.snapshot_version == fresh.version:
        return
    mismatches = plan_mismatches(plan, fresh)
    log_event(
        log,
        "stale_plan",
        registry_id=plan.registry_id,
        plan_version=plan.snapshot_version,
        fresh_version=fresh.version,
        mismatches=mismatches,
    )
    raise StalePlan(
        details=f"plan built at version {plan.snapshot_version}, registry now at {fresh.version}",
        calls=len(plan.entries),
        mismatches=mismatches,
    )
