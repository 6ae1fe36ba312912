from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from crm_backend.app.identity import Identity
from crm_backend.app.main import create_app
from crm_backend.app.services.authorization import register_employee
from crm_backend.app.session import SessionContext
from crm_backend.app.store import InMemoryRecordStore

APPROVED_EMAIL = "asha.rao@institute.test"
PENDING_EMAIL = "ravi@institute.test"
FEDERATED_SECRET = "federated-test-secret"


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("FEDERATED_TOKEN_SECRET", FEDERATED_SECRET)
    monkeypatch.setenv(
        "BOOTSTRAP_EMPLOYEES",
        f"{APPROVED_EMAIL}:Asha Rao:approved,{PENDING_EMAIL}:Ravi Kumar:pending",
    )
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def auth_headers(client: TestClient) -> dict[str, str]:
    response = client.post(
        "/auth/sign-up",
        json={
            "email": APPROVED_EMAIL,
            "password": "secret-1",
            "confirm_password": "secret-1",
        },
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture()
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture()
def session(store: InMemoryRecordStore):
    employee_id = register_employee(store, APPROVED_EMAIL, "Asha Rao", "approved")
    context = SessionContext(
        store, Identity(uid="uid-asha", email=APPROVED_EMAIL), employee_id
    ).open()
    yield context
    context.close()
