from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from fees import main as app_main


def test_healthz_ok(fees_client: TestClient) -> None:
    response = fees_client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_ok_when_database_ready(fees_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_main, "check_db_ready", lambda: True)
    response = fees_client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"db": "ok"}}


def test_readyz_not_ready_when_database_down(fees_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_main, "check_db_ready", lambda: False)
    response = fees_client.get("/readyz")
    assert response.status_code == 503
    assert response.json()["detail"]["checks"]["db"] == "fail"


def test_requests_without_context_are_unavailable() -> None:
    client = TestClient(app_main.app)
    response = client.get("/bills/bill-missing")
    assert response.status_code == 503
