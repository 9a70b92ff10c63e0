from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from bson import ObjectId
from bson.errors import InvalidId
from common.utils import now_utc
from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError

from notifier.config import NotifierSettings
from notifier.models import JobCreateRequest, JobEvent

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection
    from pymongo.asynchronous.database import AsyncDatabase

JOBS_COLLECTION = "jobs"
USERS_COLLECTION = "users"
VENDORS_COLLECTION = "vendors"
ASSIGNMENTS_COLLECTION = "jobassignments"
SERVER_SELECTION_TIMEOUT_MS = 10_000


class InvalidObjectIdError(ValueError):
    pass


class DuplicateJobError(Exception):
    def __init__(self, so_number: str) -> None:
        super().__init__(f"Job with soNumber {so_number!r} already exists")
        self.so_number = so_number


def parse_object_id(value: str | ObjectId) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError) as exc:
        raise InvalidObjectIdError(f"Invalid id: {value!r}") from exc


def build_mongo_uri(url: str, db_name: str) -> str:
    """Append the database name unless the URL already names one or carries options."""
    parsed = urlsplit(url)
    has_path = len(parsed.path) > 1
    if has_path or parsed.query:
        return url
    return f"{url}{db_name}" if url.endswith("/") else f"{url}/{db_name}"


def create_mongo_client(settings: NotifierSettings) -> AsyncMongoClient:
    return AsyncMongoClient(
        build_mongo_uri(settings.mongo_url, settings.mongo_db),
        serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
    )


def get_database(client: AsyncMongoClient, settings: NotifierSettings) -> AsyncDatabase:
    return client.get_default_database(default=settings.mongo_db)


def build_job_document(request: JobCreateRequest) -> dict[str, Any]:
    fields = {
        "soNumber": request.so_number.strip(),
        "vendorName": request.vendor_name,
        "customerName": request.customer_name,
        "customerAddress": request.customer_address,
        "customerCity": request.customer_city,
        "customerState": request.customer_state,
        "customerZip": request.customer_zip,
        "customerPhone": request.customer_phone,
        "applianceType": request.appliance_type,
        "manufacturerBrand": request.manufacturer_brand,
        "serviceDescription": request.service_description,
        "scheduledDate": request.scheduled_date,
        "priority": request.priority,
    }
    return {key: value for key, value in fields.items() if value is not None}


class MongoJobStore:
    def __init__(self, jobs: AsyncCollection) -> None:
        self.jobs = jobs

    async def ensure_indexes(self) -> None:
        await self.jobs.create_index([("soNumber", ASCENDING)], unique=True, sparse=True)

    async def create(self, request: JobCreateRequest) -> JobEvent:
        document = build_job_document(request)
        so_number = document["soNumber"]
        if await self.jobs.find_one({"soNumber": so_number}, {"_id": 1}) is not None:
            raise DuplicateJobError(so_number)

        now = now_utc()
        document.update({"status": "available", "createdAt": now, "updatedAt": now})
        try:
            result = await self.jobs.insert_one(document)
        except DuplicateKeyError as exc:
            raise DuplicateJobError(so_number) from exc
        document["_id"] = result.inserted_id
        return JobEvent.from_document(document)

    async def get(self, job_id: str) -> dict[str, Any] | None:
        return await self.jobs.find_one({"_id": parse_object_id(job_id)})

    async def upsert_by_so_number(self, document: dict[str, Any]) -> tuple[JobEvent, bool]:
        now = now_utc()
        so_number = document.get("soNumber")
        if not so_number:
            # Stored, but not reported as created: only soNumber upserts count as new jobs.
            created_doc = {**document, "status": "available", "createdAt": now, "updatedAt": now}
            result = await self.jobs.insert_one(created_doc)
            created_doc["_id"] = result.inserted_id
            return JobEvent.from_document(created_doc), False

        result = await self.jobs.update_one(
            {"soNumber": so_number},
            {
                "$set": {**document, "updatedAt": now},
                "$setOnInsert": {"createdAt": now, "status": "available"},
            },
            upsert=True,
        )
        if result.upserted_id is not None:
            return JobEvent.from_document({**document, "_id": result.upserted_id}), True

        existing = await self.jobs.find_one({"soNumber": so_number}) or document
        return JobEvent.from_document(existing), False
