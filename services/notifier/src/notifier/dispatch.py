from __future__ import annotations

import logging
from collections import Counter
from typing import Protocol

from common.utils import log_event

from notifier.models import (
    Audience,
    DeliveryOutcome,
    DispatchSummary,
    JobEvent,
    NotificationPayload,
)
from notifier.stats import DeliveryStats
from notifier.tokens import DEFAULT_BATCH_SIZE, batch, collect_tokens, partition_valid

LOGGER = logging.getLogger("jobboard.notifier.dispatch")

NEW_JOB_TITLE = "New job created"


class DeliveryClient(Protocol):
    async def send(self, tokens: list[str], payload: NotificationPayload) -> DeliveryOutcome: ...


class TokenPruner(Protocol):
    async def prune_tokens(self, tokens: list[str]) -> int: ...


def build_job_payload(job: JobEvent) -> NotificationPayload:
    so_number = job.so_number or ""
    if job.vendor_name:
        body = f"{job.vendor_name}: {so_number or 'SO'} in {job.city or 'your area'}"
    elif so_number:
        body = f"Job {so_number} added"
    else:
        body = "Job added"
    return NotificationPayload(
        title=NEW_JOB_TITLE,
        body=body,
        data={
            "type": "new_job",
            "jobId": job.id,
            "soNumber": so_number,
            "city": job.city,
            "zip": job.zip,
            "applianceType": job.appliance_type,
        },
    )


class NotificationDispatcher:
    """Collects, dedupes, filters and batches an audience's tokens, then sends batch by batch."""

    def __init__(
        self,
        client: DeliveryClient,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        token_filter: bool = True,
        prune_invalid: bool = False,
        pruner: TokenPruner | None = None,
        stats: DeliveryStats | None = None,
    ) -> None:
        if prune_invalid and pruner is None:
            raise ValueError("Pruning invalid tokens requires a token pruner.")
        self.client = client
        self.batch_size = batch_size
        self.token_filter = token_filter
        self.prune_invalid = prune_invalid
        self.pruner = pruner
        self.stats = stats or DeliveryStats()

    async def dispatch(
        self,
        job: JobEvent | None,
        audience: Audience,
        payload: NotificationPayload | None = None,
    ) -> DispatchSummary:
        if payload is None:
            if job is None:
                raise ValueError("A payload is required when no job is given.")
            payload = build_job_payload(job)

        tokens = collect_tokens(audience.accounts)
        skipped: list[str] = []
        if self.token_filter:
            tokens, skipped = partition_valid(tokens)

        log_event(
            LOGGER,
            "audience_resolved",
            job_id=job.id if job else None,
            accounts=len(audience.accounts),
            vendors=len(audience.vendor_ids),
            filtered=audience.filtered,
            tokens=len(tokens),
            skipped=len(skipped),
        )

        batches = batch(tokens, self.batch_size)
        success = 0
        failure = 0
        skipped_count = len(skipped)
        error_codes: Counter[str] = Counter()
        invalid_tokens: list[str] = []

        for index, chunk in enumerate(batches, start=1):
            log_event(
                LOGGER,
                "batch_dispatched",
                job_id=job.id if job else None,
                batch=index,
                batches=len(batches),
                tokens=len(chunk),
            )
            outcome = await self.client.send(chunk, payload)
            success += outcome.success_count
            failure += outcome.failure_count
            skipped_count += outcome.skipped_count
            error_codes.update(outcome.error_codes)
            invalid_tokens.extend(outcome.invalid_tokens)
            log_event(
                LOGGER,
                "batch_result",
                job_id=job.id if job else None,
                batch=index,
                success=outcome.success_count,
                failure=outcome.failure_count,
                skipped=outcome.skipped_count,
                error_codes=outcome.error_codes,
                failure_sample=[item.model_dump() for item in outcome.failure_sample],
            )

        pruned = 0
        if self.prune_invalid and invalid_tokens and self.pruner is not None:
            try:
                pruned = await self.pruner.prune_tokens(invalid_tokens)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "tokens_prune_failed",
                    level=logging.ERROR,
                    exc_info=True,
                    job_id=job.id if job else None,
                    tokens=len(invalid_tokens),
                    error=str(exc),
                )

        summary = DispatchSummary(
            job_id=job.id if job else None,
            so_number=job.so_number if job else None,
            accounts=len(audience.accounts),
            tokens_total=len(tokens),
            skipped=skipped_count,
            batches=len(batches),
            success=success,
            failure=failure,
            error_codes=dict(error_codes),
            pruned=pruned,
        )
        log_event(LOGGER, "dispatch_summary", **summary.model_dump())
        self.stats.observe(summary)
        return summary
