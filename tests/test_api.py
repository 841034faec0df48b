import time

import pytest
from fastapi.testclient import TestClient

from stefna.config import CreditPolicy, PollingPolicy, Settings
from stefna.job_slots import JobSlots
from stefna.main import Services, create_app
from stefna.metrics import Metrics
from stefna.pipeline.compositor import Compositor
from stefna.pipeline.credits import InMemoryCreditLedger
from stefna.pipeline.job_store import InMemoryJobStore
from stefna.pipeline.models import JobKind
from stefna.pipeline.orchestrator import GenerationService
from stefna.providers.base import ProviderChain

from .conftest import FakeAssets, FakeClock, FakeDownloads, FakeStrategy, write_output

SECRET = "s3cret"
HEADERS = {"X-Worker-Secret": SECRET}


def _settings(**kw):
    values = dict(environment="production", worker_secret=SECRET, backend="memory", max_concurrent_jobs=2)
    values.update(kw)
    return Settings(**values)


def _services_factory(strategies=None):
    def build(settings):
        policy = CreditPolicy(starter_grant=4, generation_cost=2, daily_cap=30)
        ledger = InMemoryCreditLedger(policy)
        clock = FakeClock()
        metrics = Metrics()
        chain = ProviderChain(strategies or [FakeStrategy("primary")])
        service = GenerationService(
            InMemoryJobStore(),
            ledger,
            {kind: chain for kind in JobKind},
            FakeAssets(),
            Compositor(runner=write_output),
            download=FakeDownloads(),
            credits=policy,
            polling=PollingPolicy(interval_seconds=3, image_ceiling_seconds=90),
            metrics=metrics,
            clock=clock,
            sleep=clock.sleep,
        )
        return Services(service=service, ledger=ledger, metrics=metrics,
                        slots=JobSlots(settings.max_concurrent_jobs))

    return build


@pytest.fixture
def client():
    app = create_app(_settings(), services_factory=_services_factory())
    with TestClient(app) as c:
        yield c


def _body(run_id="r1", **kw):
    body = {"run_id": run_id, "user_id": "u1", "source_url": "https://img.test/me.jpg",
            "prompt": "oil painting", "kind": "single-image"}
    body.update(kw)
    return body


class TestAuth:
    def test_health_is_public(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["backend"] == "memory"

    def test_missing_secret(self, client):
        resp = client.get("/jobs/status", params={"job_id": "x"})
        assert resp.status_code == 401
        assert resp.json()["detail"]["error"] == "AUTH_REQUIRED"

    def test_wrong_secret(self, client):
        resp = client.get("/credits/balance", params={"user_id": "u1"}, headers={"X-Worker-Secret": "nope"})
        assert resp.status_code == 401

    def test_expired_forwarded_request(self, client):
        headers = {**HEADERS, "X-Worker-Timestamp": str(int(time.time()) - 3600)}
        resp = client.get("/credits/balance", params={"user_id": "u1"}, headers=headers)
        assert resp.status_code == 401
        assert resp.json()["detail"]["error"] == "TOKEN_EXPIRED"

    def test_fresh_timestamp_passes(self, client):
        headers = {**HEADERS, "X-Worker-Timestamp": str(int(time.time()))}
        assert client.get("/credits/balance", params={"user_id": "u1"}, headers=headers).status_code == 200

    def test_development_without_secret_allows_traffic(self):
        app = create_app(_settings(environment="development", worker_secret=""),
                         services_factory=_services_factory())
        with TestClient(app) as c:
            assert c.get("/credits/balance", params={"user_id": "u1"}).status_code == 200


class TestJobs:
    def test_submit_processes_in_background(self, client):
        resp = client.post("/jobs/submit", json=_body(), headers=HEADERS)

        assert resp.status_code == 200
        payload = resp.json()
        assert payload["status"] == "queued"
        assert payload["duplicate"] is False

        status = client.get("/jobs/status", params={"job_id": payload["job_id"]}, headers=HEADERS).json()
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["result_url"].startswith("https://assets.test/outputs/u1/")
        assert status["error"] is None

    def test_resubmit_replays_completed_job(self, client):
        first = client.post("/jobs/submit", json=_body(), headers=HEADERS).json()
        again = client.post("/jobs/submit", json=_body(), headers=HEADERS).json()

        assert again["duplicate"] is True
        assert again["job_id"] == first["job_id"]
        assert again["status"] == "completed"
        assert again["result_url"]

        by_run = client.get("/jobs/by-run/r1", headers=HEADERS).json()
        assert by_run["job_id"] == first["job_id"]

    def test_insufficient_credits_is_402(self, client):
        client.post("/jobs/submit", json=_body("r1"), headers=HEADERS)
        client.post("/jobs/submit", json=_body("r2"), headers=HEADERS)
        resp = client.post("/jobs/submit", json=_body("r3"), headers=HEADERS)

        assert resp.status_code == 402
        assert resp.json()["detail"]["error"] == "INSUFFICIENT_CREDITS"
        assert client.get("/jobs/by-run/r3", headers=HEADERS).status_code == 404

    def test_invalid_submission_is_422(self, client):
        resp = client.post("/jobs/submit", json=_body(source_url="ftp://nope"), headers=HEADERS)
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "VALIDATION_FAILED"

    def test_unknown_job_is_404(self, client):
        resp = client.get("/jobs/status", params={"job_id": "missing"}, headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "NOT_FOUND"

    def test_no_free_slot_is_503_without_side_effects(self, client):
        slots = client.app.state.slots
        while slots.acquire():
            pass

        resp = client.post("/jobs/submit", json=_body(), headers=HEADERS)

        assert resp.status_code == 503
        assert resp.json()["detail"]["error"] == "CAPACITY_EXHAUSTED"
        assert client.get("/jobs/by-run/r1", headers=HEADERS).status_code == 404

    def test_slot_is_released_after_processing(self, client):
        client.post("/jobs/submit", json=_body(), headers=HEADERS)
        assert client.app.state.slots.active == 0

    def test_failed_job_reports_error_not_500(self):
        app = create_app(_settings(), services_factory=_services_factory(
            [FakeStrategy("a", error=RuntimeError("vendor down"))]
        ))
        with TestClient(app) as c:
            job = c.post("/jobs/submit", json=_body(), headers=HEADERS).json()
            status = c.get("/jobs/status", params={"job_id": job["job_id"]}, headers=HEADERS).json()

        assert status["status"] == "failed"
        assert status["error_code"] == "PROVIDER_ERROR"
        assert "vendor down" in status["error"]


class TestCredits:
    def test_reserve_and_finalize_idempotently(self, client):
        reserved = client.post("/credits/reserve", json={"user_id": "u9", "request_id": "q1",
                                                         "action": "mask.gen", "cost": 1}, headers=HEADERS)
        assert reserved.json()["balance"] == 3

        first = client.post("/credits/finalize", json={"request_id": "q1", "user_id": "u9"}, headers=HEADERS).json()
        second = client.post("/credits/finalize", json={"request_id": "q1", "user_id": "u9"}, headers=HEADERS).json()
        assert first["applied"] is True
        assert second["applied"] is False

    def test_refund_disposition(self, client):
        client.post("/credits/reserve", json={"user_id": "u9", "request_id": "q2", "cost": 2}, headers=HEADERS)
        resp = client.post("/credits/finalize", json={"request_id": "q2", "user_id": "u9", "disposition": "refund"}, headers=HEADERS)

        assert resp.json()["applied"] is True
        assert client.get("/credits/balance", params={"user_id": "u9"}, headers=HEADERS).json()["balance"] == 4

    def test_settling_another_users_reservation_is_422(self, client):
        client.post("/credits/reserve", json={"user_id": "u9", "request_id": "q3", "cost": 2}, headers=HEADERS)
        resp = client.post("/credits/finalize", json={"request_id": "q3", "user_id": "intruder", "disposition": "refund"},
                           headers=HEADERS)

        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "VALIDATION_FAILED"
        assert client.get("/credits/balance", params={"user_id": "u9"}, headers=HEADERS).json()["balance"] == 2

    def test_invalid_action_is_400(self, client):
        resp = client.post("/credits/reserve", json={"user_id": "u9", "action": "teleport", "cost": 1},
                           headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "INVALID_ACTION"

    def test_daily_cap_is_429(self, client):
        resp = client.post("/credits/reserve", json={"user_id": "u9", "cost": 31}, headers=HEADERS)
        assert resp.status_code == 429
        assert resp.json()["detail"]["error"] == "DAILY_CAP_REACHED"

    def test_bad_disposition_is_422(self, client):
        resp = client.post("/credits/finalize", json={"request_id": "q", "user_id": "u9", "disposition": "keep"}, headers=HEADERS)
        assert resp.status_code == 422


def test_metrics_counts_submissions(client):
    client.post("/jobs/submit", json=_body(), headers=HEADERS)
    snapshot = client.get("/metrics").json()

    assert snapshot["counters"]["jobs.submitted"] == 1
    assert snapshot["counters"]["jobs.completed"] == 1
    assert snapshot["gauges"]["active_jobs"] == 0
