import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from backend.app.api.main import create_app
from backend.app.db import models

AUTH = {"Authorization": "Bearer secret"}


class FakePool:
    def __init__(self):
        self.submitted = []
        self.submit_all_calls = 0
        self.busy = set()

    def submit(self, search_id):
        if search_id in self.busy:
            return False
        self.busy.add(search_id)
        self.submitted.append(search_id)
        return True

    def submit_all(self):
        self.submit_all_calls += 1


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def client(database, pool):
    app = create_app(database=database, pool=pool, worker_token="secret", enable_scheduler=False, run_on_start=False)
    with TestClient(app) as test_client:
        yield test_client


def test_health_needs_no_token(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert client.get("/nope").status_code == 404


def test_trigger_requires_bearer_token(client, pool):
    search_id = uuid.uuid4()

    assert client.post(f"/trigger/{search_id}").status_code == 401
    response = client.post(f"/trigger/{search_id}", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}
    assert pool.submitted == []


def test_trigger_accepts_and_reports_duplicates(client, pool):
    search_id = uuid.uuid4()

    first = client.post(f"/trigger/{search_id}", headers=AUTH)
    second = client.post(f"/trigger/{search_id}", headers=AUTH)

    assert first.status_code == 202
    assert first.json() == {"message": "Scrape started", "searchId": str(search_id)}
    assert second.status_code == 202
    assert second.json()["message"] == "Scrape already in progress"
    assert pool.submitted == [search_id]


def test_trigger_all(client, pool):
    response = client.post("/trigger-all", headers=AUTH)

    assert response.status_code == 202
    assert response.json() == {"message": "Scrape of all active searches started"}
    assert pool.submit_all_calls == 1


def test_trigger_rejects_malformed_search_id(client):
    assert client.post("/trigger/not-a-uuid", headers=AUTH).status_code == 422


def test_search_progress(client, database, make_search):
    search_id = make_search(
        scrape_status="running",
        scrape_step=2,
        scrape_total_steps=7,
        scrape_current_site="hemmings",
        last_scraped_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )

    response = client.get(f"/searches/{search_id}/progress", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["searchId"] == str(search_id)
    assert (body["status"], body["step"], body["totalSteps"], body["currentSite"]) == ("running", 2, 7, "hemmings")
    assert body["lastScrapedAt"].startswith("2026-03-01T12:00:00")


def test_search_progress_unknown_search(client):
    response = client.get(f"/searches/{uuid.uuid4()}/progress", headers=AUTH)

    assert response.status_code == 404


def test_run_on_start_submits_all(database, pool):
    app = create_app(database=database, pool=pool, worker_token="secret", enable_scheduler=False, run_on_start=True)

    with TestClient(app):
        pass

    assert pool.submit_all_calls == 1


def test_open_access_when_no_token_configured(database, pool):
    app = create_app(database=database, pool=pool, worker_token="", enable_scheduler=False, run_on_start=False)

    with TestClient(app) as open_client:
        assert open_client.post("/trigger-all").status_code == 202
