from __future__ import annotations

import threading

from common.utils import now_utc_iso

from notifier.models import DeliveryStatsSnapshot, DispatchSummary


class DeliveryStats:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {
            "events": 0,
            "accounts": 0,
            "tokens": 0,
            "batches": 0,
            "success": 0,
            "failure": 0,
            "skipped": 0,
            "pruned": 0,
            "handler_errors": 0,
        }
        self._error_codes: dict[str, int] = {}

    def observe(self, summary: DispatchSummary) -> None:
        with self._lock:
            self._totals["events"] += 1
            self._totals["accounts"] += summary.accounts
            self._totals["tokens"] += summary.tokens_total
            self._totals["batches"] += summary.batches
            self._totals["success"] += summary.success
            self._totals["failure"] += summary.failure
            self._totals["skipped"] += summary.skipped
            self._totals["pruned"] += summary.pruned
            for code, count in summary.error_codes.items():
                self._error_codes[code] = self._error_codes.get(code, 0) + count

    def observe_handler_error(self) -> None:
        with self._lock:
            self._totals["handler_errors"] += 1

    def snapshot(self) -> DeliveryStatsSnapshot:
        with self._lock:
            return DeliveryStatsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                error_codes=dict(self._error_codes),
            )
