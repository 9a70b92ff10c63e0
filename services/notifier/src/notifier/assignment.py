from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from common.utils import log_event, now_utc

from notifier.models import Audience, JobEvent
from notifier.store import parse_object_id

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

LOGGER = logging.getLogger("jobboard.notifier.assignment")

ASSIGNED = "assigned"


class AssignmentStore(Protocol):
    async def assign(self, job_id: str, vendor_id: str) -> str: ...


class MongoAssignmentStore:
    def __init__(self, assignments: AsyncCollection, jobs: AsyncCollection) -> None:
        self.assignments = assignments
        self.jobs = jobs

    async def assign(self, job_id: str, vendor_id: str) -> str:
        job_oid = parse_object_id(job_id)
        vendor_oid = parse_object_id(vendor_id)

        existing = await self.assignments.find_one(
            {"jobId": job_oid, "vendorId": vendor_oid}, {"_id": 1}
        )
        if existing is not None:
            return str(existing["_id"])

        now = now_utc()
        result = await self.assignments.insert_one(
            {
                "jobId": job_oid,
                "vendorId": vendor_oid,
                "status": ASSIGNED,
                "action": ASSIGNED,
                "assignedAt": now,
                "createdAt": now,
                "updatedAt": now,
            }
        )
        await self.jobs.update_one(
            {"_id": job_oid},
            {
                "$set": {
                    "status": ASSIGNED,
                    "vendorId": vendor_oid,
                    "assignmentId": result.inserted_id,
                    "updatedAt": now,
                }
            },
        )
        return str(result.inserted_id)


async def assign_on_unambiguous_match(
    job: JobEvent,
    audience: Audience,
    store: AssignmentStore,
) -> str | None:
    """Assigns the job when zip and appliance matching produced exactly one vendor."""
    if not (job.zip and job.appliance_type):
        return None
    if not audience.filtered or len(audience.vendor_ids) != 1:
        return None

    vendor_id = audience.vendor_ids[0]
    assignment_id = await store.assign(job.id, vendor_id)
    log_event(
        LOGGER,
        "job_auto_assigned",
        job_id=job.id,
        so_number=job.so_number,
        vendor_id=vendor_id,
        assignment_id=assignment_id,
    )
    return assignment_id
