from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import sys
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from common.utils import log_event

from notifier.config import NotifierSettings
from notifier.delivery import PushDeliveryClient
from notifier.dispatch import NotificationDispatcher
from notifier.hooks import AudienceResolver
from notifier.models import DispatchSummary, JobEvent, NotificationPayload
from notifier.registry import MongoTokenRegistry
from notifier.store import (
    JOBS_COLLECTION,
    USERS_COLLECTION,
    VENDORS_COLLECTION,
    MongoJobStore,
    create_mongo_client,
    get_database,
)

LOGGER = logging.getLogger("jobboard.notifier.importer")

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "soNumber": ("SO_NO", "so_number", "SO#", "SO", "SO Number"),
    "serviceUnitNumber": ("SVC_UN_NO", "service_unit_number"),
    "vendorName": ("VENDOR", "Vendor", "vendor"),
    "customerCity": ("CUS_CTY_NM", "customer_city", "City"),
    "customerState": ("CUS_ST_CD", "customer_state", "State"),
    "customerZip": ("ZIP_CD", "CN_ZIP_PC", "customer_zip", "Zip"),
    "scheduledDate": ("SVC_SCH_DT", "scheduled_date", "Scheduled Date"),
    "customerName": ("Customer Name", "CUS_NM", "customer_name"),
    "customerAddress": ("Address", "CUS_ADDR", "customer_address"),
    "customerPhone": ("Phone", "CUS_PH_NO", "customer_phone"),
    "applianceType": ("Appliance Type", "APPL_TYP"),
    "manufacturerBrand": ("Brand", "MFR_BRND"),
    "serviceDescription": ("Problem Description", "SVC_DESC"),
}
BULK_TITLE = "New jobs available"


class JobUpserter(Protocol):
    async def upsert_by_so_number(self, document: dict[str, Any]) -> tuple[JobEvent, bool]: ...


def pick_first(row: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    for parser in (datetime.fromisoformat, lambda raw: datetime.strptime(raw, "%m/%d/%Y")):
        try:
            return parser(value)
        except ValueError:
            continue
    return None


def parse_row(row: Mapping[str, Any]) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for field, aliases in COLUMN_ALIASES.items():
        value = pick_first(row, aliases)
        if value is None:
            continue
        document[field] = parse_date(value) if field == "scheduledDate" else value
    return {key: value for key, value in document.items() if value is not None}


def parse_rows(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [document for document in (parse_row(row) for row in rows) if document]


def read_csv(path: Path) -> list[dict[str, str]]:
    with path.open(newline="", encoding="utf-8-sig") as handle:
        return list(csv.DictReader(handle))


def build_bulk_payload(created: list[JobEvent]) -> NotificationPayload:
    return NotificationPayload(
        title=BULK_TITLE,
        body=f"{len(created)} new job(s) added",
        data={"type": "new_jobs", "count": len(created)},
    )


async def import_jobs(
    rows: Iterable[Mapping[str, Any]],
    store: JobUpserter,
    *,
    notify: bool = False,
    registry: AudienceResolver | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> tuple[int, DispatchSummary | None]:
    created: list[JobEvent] = []
    count = 0
    for document in parse_rows(rows):
        job, was_created = await store.upsert_by_so_number(document)
        count += 1
        if was_created:
            created.append(job)

    log_event(LOGGER, "jobs_imported", upserted=count, created=len(created))
    if not notify or not created:
        return count, None
    if registry is None or dispatcher is None:
        raise ValueError("Notifying requires a registry and a dispatcher.")

    audience = await registry.resolve_audience(None)
    summary = await dispatcher.dispatch(None, audience, payload=build_bulk_payload(created))
    return count, summary


async def run_import(path: Path, *, notify: bool, settings: NotifierSettings) -> int:
    client = create_mongo_client(settings)
    try:
        database = get_database(client, settings)
        store = MongoJobStore(database[JOBS_COLLECTION])
        registry = MongoTokenRegistry(database[USERS_COLLECTION], database[VENDORS_COLLECTION])
        dispatcher = NotificationDispatcher(
            PushDeliveryClient.from_settings(settings),
            batch_size=settings.batch_size,
            token_filter=settings.token_filter,
        )
        count, _ = await import_jobs(
            read_csv(path),
            store,
            notify=notify,
            registry=registry,
            dispatcher=dispatcher,
        )
        return count
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import jobs from a CSV export into MongoDB.")
    parser.add_argument("path", type=Path, help="CSV file to import")
    parser.add_argument(
        "--notify",
        action="store_true",
        help="push one notification for the jobs this import created",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    if not args.path.exists():
        print(f"Source file not found: {args.path}", file=sys.stderr)
        return 1

    settings = NotifierSettings.from_env()
    count = asyncio.run(run_import(args.path, notify=args.notify, settings=settings))
    print(f"Imported/Upserted {count} jobs from {args.path.name} into '{JOBS_COLLECTION}'")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
