from __future__ import annotations

"""Blob health classification.

Only blobs with an on-ledger storage record expose an end epoch. Content
uploaded without one (e.g. by external site builders) reads as `unknown`;
it may still be retrievable, its expiry just cannot be determined.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from press3.clients import BlobNetworkClient, LedgerReader
from press3.structured_logging import log_event
from press3.types import BlobHealthRecord, HealthStatus
from press3.util.ids import short_id

log = logging.getLogger("press3.health")

DEFAULT_EXPIRING_THRESHOLD = 2


def classify(
    path: str,
    content_ref: str,
    current_epoch: int,
    end_epoch: Optional[int] = None,
    threshold: int = DEFAULT_EXPIRING_THRESHOLD,
) -> BlobHealthRecord:
    if end_epoch is None:
        status = HealthStatus.UNKNOWN
    else:
        remaining = int(end_epoch) - int(current_epoch)
        if remaining < 0:
            status = HealthStatus.EXPIRED
        elif remaining <= int(threshold):
            status = HealthStatus.EXPIRING
        else:
            status = HealthStatus.HEALTHY
    return BlobHealthRecord(
        path=path,
        content_ref=content_ref,
        current_epoch=int(current_epoch),
        end_epoch=None if end_epoch is None else int(end_epoch),
        status=status,
    )


@dataclass(frozen=True)
class HealthReport:
    registry_id: str
    current_epoch: int
    threshold: int
    records: List[BlobHealthRecord]

    def by_status(self, status: HealthStatus) -> List[BlobHealthRecord]:
        return [r for r in self.records if r.status == status]

    def counts(self) -> Dict[str, int]:
        return {s.value: len(self.by_status(s)) for s in HealthStatus}

    def renewal_candidates(self) -> List[BlobHealthRecord]:
        return [r for r in self.records if r.status in (HealthStatus.EXPIRING, HealthStatus.EXPIRED)]

    def format_lines(self) -> List[str]:
        """Human-readable report, most urgent first."""
        c = self.counts()
        lines = [
            "=== Blob Health Report ===",
            "",
            "Summary:",
            f"  Healthy: {c['healthy']}",
            f"  Expiring (<={self.threshold} epochs): {c['expiring']}",
            f"  Expired: {c['expired']}",
            f"  Unknown: {c['unknown']}",
        ]

        expired = self.by_status(HealthStatus.EXPIRED)
        if expired:
            lines += ["", "EXPIRED:"]
            for r in expired:
                lines.append(
                    f"  {r.path} ({short_id(r.content_ref)}): expired {abs(int(r.epochs_remaining or 0))} epochs ago"
                )

        expiring = self.by_status(HealthStatus.EXPIRING)
        if expiring:
            lines += ["", "EXPIRING SOON:"]
            for r in expiring:
                lines.append(f"  {r.path} ({short_id(r.content_ref)}): {r.epochs_remaining} epochs remaining")

        healthy = self.by_status(HealthStatus.HEALTHY)
        if healthy:
            lines += ["", "HEALTHY:"]
            for r in healthy:
                lines.append(f"  {r.path} ({short_id(r.content_ref)}): {r.epochs_remaining} epochs remaining")

        unknown = self.by_status(HealthStatus.UNKNOWN)
        if unknown:
            lines += ["", "UNKNOWN STATUS:"]
            for r in unknown:
                lines.append(f"  {r.path} ({short_id(r.content_ref)}): no on-ledger storage record")
        return lines


def check_registry_health(
    ledger: LedgerReader,
    blobs: BlobNetworkClient,
    registry_id: str,
    *,
    threshold: int = DEFAULT_EXPIRING_THRESHOLD,
) -> HealthReport:
    """Classify every page in the registry.

    A failed expiry read for one page is recorded as unknown; it never aborts
    the report. Registry and epoch read failures propagate.
    """
    snapshot = ledger.read_object(registry_id)
    current_epoch = int(blobs.current_epoch())

    records: List[BlobHealthRecord] = []
    for page in snapshot.pages:
        end_epoch: Optional[int]
        try:
            end_epoch = blobs.get_expiry(page.content_ref)
        except Exception as e:
            log_event(log, "expiry_read_failed", path=page.path, content_ref=page.content_ref, error=str(e)[:300])
            end_epoch = None
        records.append(classify(page.path, page.content_ref, current_epoch, end_epoch, threshold))

    report = HealthReport(registry_id=registry_id, current_epoch=current_epoch, threshold=int(threshold), records=records)
    log_event(log, "health_checked", registry_id=registry_id, current_epoch=current_epoch, **report.counts())
    return report
