from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tests.conftest import FakeExecutionBackend, ManualClock
from webmmb.config.settings import Settings
from webmmb.domain.models import PollResult
from webmmb.presentation.api import create_app
from webmmb.use_cases.job_service import JobService, build_service


@pytest.fixture
def service(
    settings: Settings, fake_backend: FakeExecutionBackend, clock: ManualClock
) -> Generator[JobService, None, None]:
    service = build_service(settings, backend=fake_backend, clock=clock)
    yield service
    service.shutdown()


@pytest.fixture
def client(service: JobService) -> TestClient:
    return TestClient(create_app(service))


def _session(client: TestClient, principal: str = "alice") -> dict[str, str]:
    response = client.post("/api/sessions", json={"principal": principal})
    assert response.status_code == 201
    return {"X-Session-Id": response.json()["session_id"]}


def _submit(client: TestClient, headers: dict[str, str], name: str = "fold") -> str:
    response = client.post(
        "/api/jobs",
        json={"name": name, "parameters": "timesteps 10\n"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["job_id"]


def test_submit_and_query_job(client: TestClient) -> None:
    headers = _session(client)

    job_id = _submit(client, headers)
    response = client.get(f"/api/jobs/{job_id}", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "running"
    assert body["name"] == "fold"
    assert "X-Correlation-Id" in response.headers

    listing = client.get("/api/jobs", headers=headers)
    assert [job["job_id"] for job in listing.json()] == [job_id]


def test_error_kinds_map_to_status_codes(client: TestClient) -> None:
    owner = _session(client)
    stranger = _session(client, "mallory")
    job_id = _submit(client, owner)

    assert client.get(f"/api/jobs/{job_id}", headers=stranger).status_code == 403
    assert client.get("/api/jobs/missing", headers=owner).status_code == 404
    assert (
        client.get(f"/api/jobs/{job_id}", headers={"X-Session-Id": "nope"}).status_code
        == 404
    )
    assert client.get(f"/api/jobs/{job_id}").status_code == 400
    duplicate = client.post(
        "/api/jobs", json={"name": "fold", "parameters": "x"}, headers=owner
    )
    assert duplicate.status_code == 409
    blank = client.post("/api/jobs", json={"name": "", "parameters": "x"}, headers=owner)
    assert blank.status_code == 400
    assert client.get(f"/api/jobs/{job_id}/results", headers=owner).status_code == 409


def test_cancel_then_delete(client: TestClient) -> None:
    headers = _session(client)
    job_id = _submit(client, headers)

    cancelled = client.post(f"/api/jobs/{job_id}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    assert client.delete(f"/api/jobs/{job_id}", headers=headers).status_code == 204
    assert client.get(f"/api/jobs/{job_id}", headers=headers).status_code == 404


def test_results_and_artifact_download(
    client: TestClient,
    service: JobService,
    fake_backend: FakeExecutionBackend,
    settings: Settings,
) -> None:
    headers = _session(client)
    job_id = _submit(client, headers)
    workspace = Path(settings.jobs_root) / job_id
    (workspace / "last.pdb").write_text("ATOM 1\n")
    (workspace / "doutput.txt").write_text("done\n")
    fake_backend.script(job_id, PollResult.succeeded())
    service.sweep()

    results = client.get(f"/api/jobs/{job_id}/results", headers=headers)
    assert results.status_code == 200
    assert results.json()["summary"]["artifacts"] == ["doutput.txt", "last.pdb"]

    download = client.get(f"/api/jobs/{job_id}/results/last.pdb", headers=headers)
    assert download.status_code == 200
    assert download.text == "ATOM 1\n"
    missing = client.get(f"/api/jobs/{job_id}/results/nothing.pdb", headers=headers)
    assert missing.status_code == 404

    diagnostics = client.get(f"/api/jobs/{job_id}/diagnostics", headers=headers)
    assert diagnostics.json() == {"job_id": job_id, "output": "done\n"}


def test_logout_and_health(client: TestClient) -> None:
    headers = _session(client, "carol")

    assert client.delete("/api/sessions", headers=headers).status_code == 204
    assert client.get("/api/jobs", headers=headers).status_code == 404

    health = client.get("/health")
    assert health.json() == {"status": "ok", "backend": "pbs", "active_jobs": 0}


def test_session_requires_principal(client: TestClient) -> None:
    assert client.post("/api/sessions", json={}).status_code == 400
    assert client.post("/api/sessions", json={"principal": "a/b"}).status_code == 400


def test_clone_and_commands(
    client: TestClient, service: JobService, fake_backend: FakeExecutionBackend
) -> None:
    headers = _session(client)
    job_id = _submit(client, headers)

    commands = client.get(f"/api/jobs/{job_id}/commands", headers=headers)
    assert commands.json() == {"job_id": job_id, "parameters": "timesteps 10\n"}

    busy = client.post(f"/api/jobs/{job_id}/clone", json={"name": "again"}, headers=headers)
    assert busy.status_code == 409

    fake_backend.script(job_id, PollResult.succeeded())
    service.sweep()
    cloned = client.post(f"/api/jobs/{job_id}/clone", json={"name": "again"}, headers=headers)

    assert cloned.status_code == 201
    clone_id = cloned.json()["job_id"]
    assert clone_id != job_id
    assert cloned.json()["name"] == "again"
    copied = client.get(f"/api/jobs/{clone_id}/commands", headers=headers)
    assert copied.json()["parameters"] == "timesteps 10\n"


def test_correlation_header_is_echoed_only_when_well_formed(client: TestClient) -> None:
    echoed = client.get("/health", headers={"X-Correlation-Id": "req-42"})
    assert echoed.headers["X-Correlation-Id"] == "req-42"

    replaced = client.get("/health", headers={"X-Correlation-Id": "not an id!"})
    assert replaced.headers["X-Correlation-Id"] != "not an id!"
    assert len(replaced.headers["X-Correlation-Id"]) == 36
