from __future__ import annotations

from dataclasses import dataclass, field

import pytest
from bson import ObjectId
from fakes import FakeCollection, FakeMongoClient, make_token
from fastapi.testclient import TestClient
from notifier.assignment import MongoAssignmentStore
from notifier.config import NotifierSettings
from notifier.main import create_app
from notifier.models import DeliveryOutcome, NotificationPayload
from notifier.registry import MongoTokenRegistry
from notifier.store import MongoJobStore
from pymongo.errors import OperationFailure

pytestmark = pytest.mark.integration

ACCOUNT_ID = ObjectId()
VENDOR_ID = ObjectId()


class RecordingDeliveryClient:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], NotificationPayload]] = []
        self.initialized = False

    def initialize(self) -> bool:
        self.initialized = True
        return True

    async def send(self, tokens: list[str], payload: NotificationPayload) -> DeliveryOutcome:
        self.calls.append((list(tokens), payload))
        return DeliveryOutcome(success_count=len(tokens))


class ExplodingDeliveryClient(RecordingDeliveryClient):
    async def send(self, tokens: list[str], payload: NotificationPayload) -> DeliveryOutcome:
        raise RuntimeError("push provider unreachable")


class UnauthorizedCollection(FakeCollection):
    async def watch(self, pipeline, **options):
        raise OperationFailure("not authorized on qa to execute command { aggregate: 1 }")


@dataclass
class Backend:
    jobs: FakeCollection = field(default_factory=FakeCollection)
    users: FakeCollection = field(
        default_factory=lambda: FakeCollection(
            [{"_id": ACCOUNT_ID, "vendorId": VENDOR_ID, "fcmTokens": [make_token("acct")]}]
        )
    )
    vendors: FakeCollection = field(
        default_factory=lambda: FakeCollection(
            [{"_id": VENDOR_ID, "serviceAreas": ["30301"], "appliances": ["Washer"]}]
        )
    )
    assignments: FakeCollection = field(default_factory=FakeCollection)

    def build_app(self, settings: NotifierSettings, delivery_client, mongo_client=None):
        return create_app(
            settings,
            job_store=MongoJobStore(self.jobs),
            registry=MongoTokenRegistry(self.users, self.vendors),
            assignments=MongoAssignmentStore(self.assignments, self.jobs),
            delivery_client=delivery_client,
            mongo_client=mongo_client,
        )


@pytest.fixture
def backend() -> Backend:
    return Backend()


def test_health_and_request_id(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(), RecordingDeliveryClient())
    with TestClient(app) as client:
        response = client.get("/health")
        echoed = client.get("/health", headers={"x-request-id": "manual-request-id"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "notifier"}
    assert response.headers.get("x-request-id")
    assert echoed.headers.get("x-request-id") == "manual-request-id"


def test_create_job_notifies_matching_vendor_after_response(backend: Backend) -> None:
    delivery = RecordingDeliveryClient()
    app = backend.build_app(NotifierSettings(), delivery)

    with TestClient(app) as client:
        response = client.post(
            "/jobs",
            json={
                "so_number": "SO-5001",
                "vendor_name": "Peach State Repair",
                "customer_city": "Atlanta",
                "customer_zip": "30301",
                "appliance_type": "Washer",
            },
        )

    body = response.json()
    assert response.status_code == 201
    assert body["so_number"] == "SO-5001"
    assert body["notification_scheduled"] is True
    assert delivery.initialized
    tokens, payload = delivery.calls[0]
    assert tokens == [make_token("acct")]
    assert payload.body == "Peach State Repair: SO-5001 in Atlanta"
    assert payload.data["jobId"] == body["id"]
    stored = backend.jobs.documents[0]
    assert stored["status"] == "assigned"
    assert stored["vendorId"] == VENDOR_ID


def test_delivery_failure_never_fails_job_creation(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(), ExplodingDeliveryClient())

    with TestClient(app) as client:
        response = client.post("/jobs", json={"so_number": "SO-5002", "customer_zip": "30301"})

    assert response.status_code == 201
    assert [document["soNumber"] for document in backend.jobs.documents] == ["SO-5002"]
    assert app.state.stats.snapshot().totals["handler_errors"] == 1


def test_duplicate_so_number_is_rejected(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(trigger="off"), RecordingDeliveryClient())

    with TestClient(app) as client:
        first = client.post("/jobs", json={"so_number": "SO-7"})
        second = client.post("/jobs", json={"so_number": "SO-7"})

    assert first.status_code == 201
    assert first.json()["notification_scheduled"] is False
    assert second.status_code == 409
    assert len(backend.jobs.documents) == 1


def test_token_registration_and_revocation(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(), RecordingDeliveryClient())
    token = make_token("phone")

    with TestClient(app) as client:
        registered = client.post(f"/accounts/{ACCOUNT_ID}/tokens", json={"token": token})
        after_register = dict(backend.users.documents[0])
        revoked = client.post(f"/accounts/{ACCOUNT_ID}/tokens/revoke", json={"token": token})
        unknown = client.post(f"/accounts/{ObjectId()}/tokens", json={"token": token})
        malformed = client.post("/accounts/not-an-id/tokens", json={"token": token})
        blank = client.post(f"/accounts/{ACCOUNT_ID}/tokens", json={"token": "   "})

    assert registered.status_code == 200
    assert registered.json() == {"registered": True}
    assert token in after_register["fcmTokens"]
    assert after_register["fcmToken"] == token
    assert revoked.json() == {"removed": True}
    assert token not in backend.users.documents[0]["fcmTokens"]
    assert "fcmToken" not in backend.users.documents[0]
    assert unknown.status_code == 404
    assert malformed.status_code == 400
    assert blank.status_code == 400


def test_api_key_guards_write_routes(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(api_key="s3cret"), RecordingDeliveryClient())

    with TestClient(app) as client:
        missing = client.post("/jobs", json={"so_number": "SO-9"})
        allowed = client.post(
            "/jobs", json={"so_number": "SO-9"}, headers={"x-api-key": "s3cret"}
        )
        health = client.get("/health")

    assert missing.status_code == 401
    assert allowed.status_code == 201
    assert health.status_code == 200


def test_metrics_snapshot_reflects_dispatches(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(), RecordingDeliveryClient())

    with TestClient(app) as client:
        client.post("/jobs", json={"so_number": "SO-11", "customer_zip": "30301"})
        metrics = client.get("/metrics")

    assert metrics.status_code == 200
    body = metrics.json()
    assert set(body) == {"generated_at", "totals", "error_codes"}
    assert "handler_errors" in body["totals"]
    assert app.state.stats.snapshot().totals["events"] == 1


def test_watcher_status_reports_standalone_topology(backend: Backend) -> None:
    mongo = FakeMongoClient({"isWritablePrimary": True})
    app = backend.build_app(
        NotifierSettings(trigger="watcher"), RecordingDeliveryClient(), mongo_client=mongo
    )

    with TestClient(app) as client:
        status = client.get("/watcher").json()
        created = client.post("/jobs", json={"so_number": "SO-12"})

    assert status == {"enabled": True, "running": False, "supported": False, "in_flight": 0}
    assert created.json()["notification_scheduled"] is False
    assert not mongo.closed


def test_watcher_runs_on_replica_set_and_stops_on_shutdown(backend: Backend) -> None:
    mongo = FakeMongoClient({"isWritablePrimary": True, "setName": "rs0"})
    app = backend.build_app(
        NotifierSettings(trigger="both"), RecordingDeliveryClient(), mongo_client=mongo
    )

    with TestClient(app) as client:
        status = client.get("/watcher").json()

    assert status["enabled"] is True
    assert status["running"] is True
    assert status["supported"] is True
    assert not app.state.watcher.running
    assert mongo.database["jobs"].stream.closed


def test_watcher_status_when_disabled(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(), RecordingDeliveryClient())

    with TestClient(app) as client:
        status = client.get("/watcher").json()

    assert status == {"enabled": False, "running": False, "supported": None, "in_flight": 0}


def test_change_stream_failure_does_not_block_job_creation(backend: Backend) -> None:
    mongo = FakeMongoClient({"isWritablePrimary": True, "setName": "rs0"})
    mongo.database.collections["jobs"] = UnauthorizedCollection()
    delivery = RecordingDeliveryClient()
    app = backend.build_app(NotifierSettings(trigger="both"), delivery, mongo_client=mongo)

    with TestClient(app) as client:
        status = client.get("/watcher").json()
        created = client.post("/jobs", json={"so_number": "SO-13", "customer_zip": "30301"})

    assert status["running"] is False
    assert status["supported"] is True
    assert created.status_code == 201
    assert created.json()["notification_scheduled"] is True
    assert [document["soNumber"] for document in backend.jobs.documents] == ["SO-13"]
    assert delivery.calls


def test_api_key_is_checked_before_body_validation(backend: Backend) -> None:
    app = backend.build_app(NotifierSettings(api_key="s3cret"), RecordingDeliveryClient())

    with TestClient(app) as client:
        job = client.post("/jobs", json={"customer_zip": "30301"})
        token = client.post(f"/accounts/{ACCOUNT_ID}/tokens", json={})
        revoke = client.post(f"/accounts/{ACCOUNT_ID}/tokens/revoke", json={"token": 42})
        authorized = client.post(
            "/jobs", json={"customer_zip": "30301"}, headers={"x-api-key": "s3cret"}
        )

    assert job.status_code == 401
    assert token.status_code == 401
    assert revoke.status_code == 401
    assert authorized.status_code == 422
