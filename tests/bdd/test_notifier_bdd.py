from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from notifier.config import NotifierSettings
from notifier.dispatch import NotificationDispatcher
from notifier.hooks import JobCreatedHook
from notifier.main import create_app
from notifier.models import (
    Account,
    Audience,
    DeliveryOutcome,
    JobCreateRequest,
    JobEvent,
    NotificationPayload,
)
from pytest_bdd import given, scenario, then, when

pytestmark = pytest.mark.bdd

SHARED_TOKEN = "shared-device:APA91b" + "s" * 90
VENDOR_TOKEN = "vendor-device:APA91b" + "v" * 90
VENDOR_ID = "65a000000000000000000001"


class RecordingClient:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def initialize(self) -> bool:
        return True

    async def send(self, tokens: list[str], payload: NotificationPayload) -> DeliveryOutcome:
        del payload
        self.calls.append(list(tokens))
        return DeliveryOutcome(success_count=len(tokens))


class RejectingClient(RecordingClient):
    async def send(self, tokens: list[str], payload: NotificationPayload) -> DeliveryOutcome:
        raise RuntimeError("provider rejected the request")


class StaticRegistry:
    def __init__(self, audience: Audience) -> None:
        self.audience = audience
        self.matches: list[object] = []

    async def resolve_audience(self, match=None) -> Audience:
        self.matches.append(match)
        return self.audience


class RecordingAssignments:
    def __init__(self) -> None:
        self.assigned: list[tuple[str, str]] = []

    async def assign(self, job_id: str, vendor_id: str) -> str:
        self.assigned.append((job_id, vendor_id))
        return "assignment-1"


class InMemoryJobStore:
    def __init__(self) -> None:
        self.jobs: list[JobEvent] = []

    async def create(self, request: JobCreateRequest) -> JobEvent:
        job = JobEvent(
            id=f"64f00000000000000000000{len(self.jobs) + 1}",
            so_number=request.so_number,
            zip=request.customer_zip,
        )
        self.jobs.append(job)
        return job


@scenario("features/notifier.feature", "A token shared by two accounts is delivered once")
def test_shared_token_is_delivered_once() -> None:
    pass


@scenario("features/notifier.feature", "A job matching exactly one vendor is assigned to it")
def test_single_vendor_match_is_assigned() -> None:
    pass


@scenario("features/notifier.feature", "A failing push provider never fails job creation")
def test_failing_provider_does_not_fail_job_creation() -> None:
    pass


@pytest.fixture
def context() -> dict[str, object]:
    return {}


@given("two accounts that share one device token")
def given_shared_token(context: dict[str, object]) -> None:
    context["audience"] = Audience(
        accounts=[
            Account(id="account-1", tokens=[SHARED_TOKEN]),
            Account(id="account-2", tokens=[SHARED_TOKEN], last_token=SHARED_TOKEN),
        ]
    )
    context["client"] = RecordingClient()


@when("a new job is dispatched to every account")
def when_job_is_dispatched(context: dict[str, object]) -> None:
    dispatcher = NotificationDispatcher(context["client"])
    job = JobEvent(id="job-1", so_number="SO-100", city="Austin")
    context["summary"] = asyncio.run(dispatcher.dispatch(job, context["audience"]))


@then("one batch carrying one token is sent")
def then_one_batch_is_sent(context: dict[str, object]) -> None:
    assert context["client"].calls == [[SHARED_TOKEN]]


@then("the summary counts one successful delivery")
def then_summary_counts_one_success(context: dict[str, object]) -> None:
    summary = context["summary"]
    assert summary.tokens_total == 1
    assert summary.success == 1
    assert summary.failure == 0


@given("one active vendor serving the job's zip code and appliance")
def given_single_vendor(context: dict[str, object]) -> None:
    context["registry"] = StaticRegistry(
        Audience(
            accounts=[Account(id="account-1", vendor_id=VENDOR_ID, tokens=[VENDOR_TOKEN])],
            vendor_ids=[VENDOR_ID],
            filtered=True,
        )
    )
    context["assignments"] = RecordingAssignments()
    context["client"] = RecordingClient()


@when("the job created hook runs")
def when_hook_runs(context: dict[str, object]) -> None:
    hook = JobCreatedHook(
        context["registry"],
        NotificationDispatcher(context["client"]),
        assignments=context["assignments"],
    )
    job = JobEvent(id="job-7", so_number="SO-7", zip="73301", appliance_type="Refrigerator")
    context["summary"] = asyncio.run(hook.run(job))


@then("the job is assigned to that vendor")
def then_job_is_assigned(context: dict[str, object]) -> None:
    assert context["assignments"].assigned == [("job-7", VENDOR_ID)]


@then("only that vendor's accounts are notified")
def then_vendor_is_notified(context: dict[str, object]) -> None:
    assert context["client"].calls == [[VENDOR_TOKEN]]
    assert context["summary"].accounts == 1


@given("a push provider that rejects every call")
def given_rejecting_provider(context: dict[str, object]) -> None:
    context["store"] = InMemoryJobStore()
    context["app"] = create_app(
        NotifierSettings(auto_assign=False),
        job_store=context["store"],
        registry=StaticRegistry(Audience(accounts=[Account(id="a", tokens=[VENDOR_TOKEN])])),
        delivery_client=RejectingClient(),
    )


@when("a job is created through the API", target_fixture="response")
def when_job_is_created(context: dict[str, object]):
    with TestClient(context["app"]) as client:
        return client.post("/jobs", json={"so_number": "SO-404", "customer_zip": "73301"})


@then("the API responds with the created job")
def then_api_responds_created(response, context: dict[str, object]) -> None:
    assert response.status_code == 201
    assert response.json()["so_number"] == "SO-404"
    assert [job.so_number for job in context["store"].jobs] == ["SO-404"]


@then("the failure is counted as a handler error")
def then_failure_is_counted(context: dict[str, object]) -> None:
    assert context["app"].state.stats.snapshot().totals["handler_errors"] == 1
