from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from common.utils import stringify_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _first_present(doc: Mapping[str, Any], *paths: str) -> str | None:
    raw = doc.get("raw") or {}
    for path in paths:
        source: Mapping[str, Any] = doc
        key = path
        if path.startswith("raw."):
            source = raw if isinstance(raw, Mapping) else {}
            key = path[len("raw.") :]
        value = source.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class JobEvent(BaseModel):
    """Read-only view of a newly created job; unknown document fields are ignored."""

    model_config = ConfigDict(frozen=True)

    id: str
    so_number: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    vendor_name: str | None = None
    appliance_type: str | None = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> JobEvent:
        return cls(
            id=str(doc.get("_id") or doc.get("id") or ""),
            so_number=_first_present(doc, "soNumber", "raw.SO_NO"),
            city=_first_present(doc, "customerCity", "raw.CUS_CTY_NM"),
            state=_first_present(doc, "customerState", "raw.CUS_ST_CD"),
            zip=_first_present(doc, "customerZip", "raw.ZIP_CD", "raw.CN_ZIP_PC"),
            vendor_name=_first_present(doc, "vendorName"),
            appliance_type=_first_present(
                doc, "applianceType", "raw.HS_SP_CD", "raw.SPECIALTY"
            ),
        )


class JobCreateRequest(BaseModel):
    so_number: str = Field(..., min_length=1, max_length=64)
    vendor_name: str | None = None
    customer_name: str | None = None
    customer_address: str | None = None
    customer_city: str | None = None
    customer_state: str | None = None
    customer_zip: str | None = None
    customer_phone: str | None = None
    appliance_type: str | None = None
    manufacturer_brand: str | None = None
    service_description: str | None = None
    scheduled_date: str | None = None
    priority: str = "medium"


class JobCreatedResponse(BaseModel):
    id: str
    so_number: str
    status: str
    notification_scheduled: bool


class TokenRegistrationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class Account(BaseModel):
    id: str
    vendor_id: str | None = None
    tokens: list[str] = Field(default_factory=list)
    last_token: str | None = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Account:
        tokens = doc.get("fcmTokens") or []
        vendor_id = doc.get("vendorId")
        return cls(
            id=str(doc.get("_id")),
            vendor_id=str(vendor_id) if vendor_id is not None else None,
            tokens=[str(token) for token in tokens if token],
            last_token=str(doc["fcmToken"]) if doc.get("fcmToken") else None,
        )


class Audience(BaseModel):
    accounts: list[Account] = Field(default_factory=list)
    vendor_ids: list[str] = Field(default_factory=list)
    filtered: bool = False


class NotificationPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def coerce_data(cls, value: Any) -> dict[str, str]:
        return stringify_values(value)


class TokenResponse(BaseModel):
    token: str
    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class TokenFailure(BaseModel):
    index: int
    code: str
    message: str


class DeliveryOutcome(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    responses: list[TokenResponse] = Field(default_factory=list)
    error_codes: dict[str, int] = Field(default_factory=dict)
    failure_sample: list[TokenFailure] = Field(default_factory=list)
    invalid_tokens: list[str] = Field(default_factory=list)


class DispatchSummary(BaseModel):
    job_id: str | None = None
    so_number: str | None = None
    accounts: int = 0
    tokens_total: int = 0
    skipped: int = 0
    batches: int = 0
    success: int = 0
    failure: int = 0
    error_codes: dict[str, int] = Field(default_factory=dict)
    pruned: int = 0


class DeliveryStatsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    error_codes: dict[str, int]
