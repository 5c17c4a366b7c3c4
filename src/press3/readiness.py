from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from press3 import metrics
from press3.clients import LedgerReader
from press3.errors import ReadinessTimeout
from press3.structured_logging import log_event

log = logging.getLogger("press3.readiness")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_DELAY_MS = 1_000


def _sleep_ms(ms: int) -> None:
    if ms <= 0:
        return
    time.sleep(ms / 1000.0)


def await_ready(
    ledger: LedgerReader,
    program_id: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_ms: int = DEFAULT_DELAY_MS,
    sleep: Optional[Callable[[int], None]] = None,
) -> int:
    """Block until `program_id` is queryable on the ledger.

    A freshly published program is not visible to every fullnode at once, so
    the first entrypoint call after a deployment must go through this guard.
    Any read error or a "not found" answer counts as one failed attempt; the
    waiter sleeps `delay_ms` between attempts (not after the last one).

    Returns the number of attempts used. Raises ReadinessTimeout (fatal, not
    retryable) after `max_attempts` consecutive failures.
    """
    attempts = max(1, int(max_attempts))
    nap = sleep or _sleep_ms
    last_error: Optional[str] = None

    for attempt in range(1, attempts + 1):
        try:
            if ledger.object_exists(program_id):
                if attempt > 1:
                    log_event(log, "ledger_ready", program_id=program_id, attempts=attempt)
                return attempt
            last_error = "not_found"
        except Exception as e:
            last_error = str(e)[:300] or type(e).__name__

        metrics.inc_counter("readiness_retries")
        if attempt < attempts:
            nap(int(delay_ms))

    log_event(log, "ledger_not_ready", program_id=program_id, attempts=attempts, error=last_error)
    raise ReadinessTimeout(
        details=f"{program_id} not indexed after {attempts} attempts: {last_error}",
        attempts=attempts,
    )
