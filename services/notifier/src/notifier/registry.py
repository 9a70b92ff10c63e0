from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from common.utils import log_event

from notifier.models import Account, Audience, JobEvent
from notifier.store import parse_object_id
from notifier.tokens import normalize_token

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

LOGGER = logging.getLogger("jobboard.notifier.registry")

TOKEN_PRESENT_QUERY: dict[str, Any] = {
    "$or": [
        {"fcmTokens": {"$exists": True, "$ne": []}},
        {"fcmToken": {"$exists": True, "$nin": [None, ""]}},
    ]
}
ACCOUNT_PROJECTION = {"_id": 1, "vendorId": 1, "fcmTokens": 1, "fcmToken": 1}


@dataclass(frozen=True)
class VendorMatch:
    zip: str | None = None
    appliance_type: str | None = None

    @classmethod
    def for_job(cls, job: JobEvent) -> VendorMatch:
        return cls(zip=job.zip, appliance_type=job.appliance_type)


def build_vendor_query(match: VendorMatch) -> dict[str, Any]:
    query: dict[str, Any] = {"isActive": {"$ne": False}}
    zip_code = (match.zip or "").strip()
    appliance_type = (match.appliance_type or "").strip()
    # A missing clause widens the match instead of matching nothing.
    if zip_code:
        query["serviceAreas"] = zip_code
    if appliance_type:
        query["appliances"] = appliance_type
    return query


def build_account_query(vendor_ids: list[Any] | None = None) -> dict[str, Any]:
    if vendor_ids is None:
        return TOKEN_PRESENT_QUERY
    return {"$and": [{"vendorId": {"$in": vendor_ids}}, TOKEN_PRESENT_QUERY]}


class MongoTokenRegistry:
    """Reads push tokens for an audience; the write side serves login and logout."""

    def __init__(self, accounts: AsyncCollection, vendors: AsyncCollection) -> None:
        self.accounts = accounts
        self.vendors = vendors

    async def _find_accounts(self, query: dict[str, Any]) -> list[Account]:
        documents = await self.accounts.find(query, ACCOUNT_PROJECTION).to_list(None)
        return [Account.from_document(document) for document in documents]

    async def resolve_audience(self, match: VendorMatch | None = None) -> Audience:
        if match is None:
            accounts = await self._find_accounts(build_account_query())
            return Audience(accounts=accounts, filtered=False)

        vendor_docs = await self.vendors.find(build_vendor_query(match), {"_id": 1}).to_list(
            None
        )
        vendor_ids = [document["_id"] for document in vendor_docs]
        if not vendor_ids:
            return Audience(filtered=True)

        accounts = await self._find_accounts(build_account_query(vendor_ids))
        return Audience(
            accounts=accounts,
            vendor_ids=[str(vendor_id) for vendor_id in vendor_ids],
            filtered=True,
        )

    async def add_token(self, account_id: str, token: str) -> bool:
        normalized = normalize_token(token)
        if not normalized:
            raise ValueError("Token must be a non-empty string.")
        result = await self.accounts.update_one(
            {"_id": parse_object_id(account_id)},
            {"$addToSet": {"fcmTokens": normalized}, "$set": {"fcmToken": normalized}},
        )
        return result.matched_count > 0

    async def remove_token(self, account_id: str, token: str) -> bool:
        normalized = normalize_token(token)
        object_id = parse_object_id(account_id)
        result = await self.accounts.update_one(
            {"_id": object_id},
            {"$pull": {"fcmTokens": normalized}},
        )
        await self.accounts.update_one(
            {"_id": object_id, "fcmToken": normalized},
            {"$unset": {"fcmToken": ""}},
        )
        return result.matched_count > 0

    async def prune_tokens(self, tokens: list[str]) -> int:
        if not tokens:
            return 0
        pulled = await self.accounts.update_many(
            {"fcmTokens": {"$in": tokens}},
            {"$pull": {"fcmTokens": {"$in": tokens}}},
        )
        await self.accounts.update_many(
            {"fcmToken": {"$in": tokens}},
            {"$unset": {"fcmToken": ""}},
        )
        log_event(
            LOGGER,
            "tokens_pruned",
            tokens=len(tokens),
            accounts=pulled.modified_count,
        )
        return pulled.modified_count
