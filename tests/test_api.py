from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from formsapi import main as app_main
from formsapi.api.deps import get_webhook_dispatcher
from formsapi.domain.models import AuditLog
from formsapi.infra import db
from formsapi.services.user_service import UserService
from formsapi.services.webhook_dispatcher import WebhookDispatcher

SUPER_EMAIL = "root@example.com"
SUPER_PASSWORD = "root-pass"


class _Outbox:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    def event_types(self) -> list[str]:
        return [json.loads(item.content)["event_type"] for item in self.requests]


@pytest.fixture()
def outbox() -> _Outbox:
    return _Outbox()


@pytest.fixture()
def api_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    outbox: _Outbox,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "api_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    UserService().bootstrap_super_admin(email=SUPER_EMAIL, password=SUPER_PASSWORD)
    app_main.app.dependency_overrides[get_webhook_dispatcher] = lambda: WebhookDispatcher(
        transport=httpx.MockTransport(outbox.handler)
    )
    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()
    test_engine.dispose()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    return body["data"]["access_token"]


def _super_token(client: TestClient) -> str:
    return _login(client, SUPER_EMAIL, SUPER_PASSWORD)


def _create_department(client: TestClient, token: str, name: str, code: str | None = None) -> str:
    payload: dict[str, Any] = {"name": name}
    if code is not None:
        payload["code"] = code
    response = client.post("/api/departments", json=payload, headers=_auth_header(token))
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _create_user(
    client: TestClient,
    token: str,
    department_id: str,
    email: str,
    role_id: str | None = None,
) -> str:
    response = client.post(
        f"/api/departments/{department_id}/users",
        json={"email": email, "password": "member-pass", "role_id": role_id},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _permission_id(client: TestClient, token: str, department_id: str, name: str) -> str:
    response = client.get(
        f"/api/departments/{department_id}/permissions",
        params={"page_size": 100},
        headers=_auth_header(token),
    )
    assert response.status_code == 200
    for item in response.json()["data"]["items"]:
        if item["name"] == name:
            return item["id"]
    raise AssertionError(f"permission {name} not found")


def test_login_failure_uses_envelope(api_client: TestClient) -> None:
    response = api_client.post("/api/auth/login", json={"email": SUPER_EMAIL, "password": "wrong"})
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "invalid credentials"
    assert body["data"] is None


def test_request_validation_errors_are_400_with_field_errors(api_client: TestClient) -> None:
    token = _super_token(api_client)
    response = api_client.post("/api/departments", json={"name": ""}, headers=_auth_header(token))
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "name" in body["errors"]


def test_missing_token_is_unauthorized(api_client: TestClient) -> None:
    response = api_client.get("/api/departments")
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_department_is_seeded_and_code_is_unique(api_client: TestClient) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Finance", code="FIN")

    duplicate = api_client.post(
        "/api/departments",
        json={"name": "Finance 2", "code": "FIN"},
        headers=_auth_header(token),
    )
    assert duplicate.status_code == 409

    exists = api_client.get("/api/departments/code-exists", params={"code": "FIN"}, headers=_auth_header(token))
    assert exists.json()["data"] is True

    roles = api_client.get(f"/api/departments/{department_id}/roles", headers=_auth_header(token))
    assert roles.status_code == 200
    assert [item["name"] for item in roles.json()["data"]["items"]] == ["admin"]

    summary = api_client.get(f"/api/departments/{department_id}", headers=_auth_header(token))
    assert summary.json()["data"]["user_count"] == 0


def test_member_access_follows_effective_permissions(api_client: TestClient) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Support")
    _create_user(api_client, token, department_id, "member@example.com")
    member_token = _login(api_client, "member@example.com", "member-pass")

    denied = api_client.get(f"/api/departments/{department_id}/forms", headers=_auth_header(member_token))
    assert denied.status_code == 403
    assert denied.json()["message"] == "Missing permission: forms.read"

    member_id = api_client.get("/api/auth/me", headers=_auth_header(member_token)).json()["data"]["user_id"]
    forms_read = _permission_id(api_client, token, department_id, "forms.read")
    grant = api_client.post(
        f"/api/departments/{department_id}/users/{member_id}/permissions",
        json={"permission_id": forms_read},
        headers=_auth_header(token),
    )
    assert grant.status_code == 201
    assert grant.json()["data"]["permission_name"] == "forms.read"

    allowed = api_client.get(f"/api/departments/{department_id}/forms", headers=_auth_header(member_token))
    assert allowed.status_code == 200

    again = api_client.post(
        f"/api/departments/{department_id}/users/{member_id}/permissions",
        json={"permission_id": forms_read},
        headers=_auth_header(token),
    )
    assert again.status_code == 409

    revoke = api_client.delete(
        f"/api/departments/{department_id}/users/{member_id}/permissions/{forms_read}",
        headers=_auth_header(token),
    )
    assert revoke.status_code == 200
    missing = api_client.delete(
        f"/api/departments/{department_id}/users/{member_id}/permissions/{forms_read}",
        headers=_auth_header(token),
    )
    assert missing.status_code == 404

    after = api_client.get(f"/api/departments/{department_id}/forms", headers=_auth_header(member_token))
    assert after.status_code == 403


def test_department_admin_role_and_cross_department_isolation(api_client: TestClient) -> None:
    token = _super_token(api_client)
    first = _create_department(api_client, token, "First")
    second = _create_department(api_client, token, "Second")
    roles = api_client.get(f"/api/departments/{first}/roles", headers=_auth_header(token)).json()["data"]["items"]
    admin_role_id = roles[0]["id"]
    _create_user(api_client, token, first, "lead@example.com", role_id=admin_role_id)
    lead_token = _login(api_client, "lead@example.com", "member-pass")

    own = api_client.get(f"/api/departments/{first}/users", headers=_auth_header(lead_token))
    assert own.status_code == 200

    other = api_client.get(f"/api/departments/{second}/users", headers=_auth_header(lead_token))
    assert other.status_code == 403

    listing = api_client.get("/api/departments", headers=_auth_header(lead_token))
    assert [item["id"] for item in listing.json()["data"]["items"]] == [first]

    super_only = api_client.get("/api/super-admins", headers=_auth_header(lead_token))
    assert super_only.status_code == 403


def test_role_reassignment_and_effective_permissions_endpoint(api_client: TestClient) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Ops")
    forms_read = _permission_id(api_client, token, department_id, "forms.read")
    forms_write = _permission_id(api_client, token, department_id, "forms.write")
    role = api_client.post(
        f"/api/departments/{department_id}/roles",
        json={"name": "editor", "permission_ids": [forms_read]},
        headers=_auth_header(token),
    )
    assert role.status_code == 201
    role_id = role.json()["data"]["id"]
    user_id = _create_user(api_client, token, department_id, "editor@example.com", role_id=role_id)

    rejected = api_client.put(
        f"/api/departments/{department_id}/roles/{role_id}/permissions",
        json={"permission_ids": [forms_write, "does-not-exist"]},
        headers=_auth_header(token),
    )
    assert rejected.status_code == 400

    assigned = api_client.put(
        f"/api/departments/{department_id}/roles/{role_id}/permissions",
        json={"permission_ids": [forms_write, forms_read]},
        headers=_auth_header(token),
    )
    assert assigned.status_code == 200
    assert [item["name"] for item in assigned.json()["data"]] == ["forms.write", "forms.read"]

    effective = api_client.get(
        f"/api/departments/{department_id}/users/{user_id}/effective-permissions",
        headers=_auth_header(token),
    )
    assert [item["name"] for item in effective.json()["data"]["permissions"]] == ["forms.read", "forms.write"]

    cleared = api_client.put(
        f"/api/departments/{department_id}/users/{user_id}/role",
        json={"role_id": None},
        headers=_auth_header(token),
    )
    assert cleared.status_code == 200
    assert cleared.json()["data"]["role_id"] is None
    effective = api_client.get(
        f"/api/departments/{department_id}/users/{user_id}/effective-permissions",
        headers=_auth_header(token),
    )
    assert effective.json()["data"]["permissions"] == []


def test_form_and_submission_events_are_dispatched(api_client: TestClient, outbox: _Outbox) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Intake")
    webhook = api_client.post(
        f"/api/departments/{department_id}/webhooks",
        json={"url": "https://hooks.example.com/intake", "headers": {"X-Token": "secret"}},
        headers=_auth_header(token),
    )
    assert webhook.status_code == 201
    assert webhook.json()["data"]["headers"] == {"X-Token": "secret"}

    form = api_client.post(
        f"/api/departments/{department_id}/forms",
        json={"name": "contact", "form_schema": {"fields": ["email"]}},
        headers=_auth_header(token),
    )
    assert form.status_code == 201
    form_id = form.json()["data"]["id"]

    submission = api_client.post(
        f"/api/departments/{department_id}/forms/{form_id}/submissions",
        json={"submission_data": {"email": "someone@example.com"}},
        headers=_auth_header(token),
    )
    assert submission.status_code == 201

    assert outbox.event_types() == ["form.created", "submission.created"]
    assert all(item.headers["x-token"] == "secret" for item in outbox.requests)


def test_failed_webhook_delivery_does_not_fail_the_request(api_client: TestClient, outbox: _Outbox) -> None:
    outbox.status_code = 500
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Claims")
    api_client.post(
        f"/api/departments/{department_id}/webhooks",
        json={"url": "https://hooks.example.com/down"},
        headers=_auth_header(token),
    )
    form = api_client.post(
        f"/api/departments/{department_id}/forms",
        json={"name": "claim"},
        headers=_auth_header(token),
    )
    assert form.status_code == 201
    assert form.json()["success"] is True
    assert outbox.event_types() == ["form.created"]


def test_inactive_form_rejects_submissions(api_client: TestClient) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Events")
    form = api_client.post(
        f"/api/departments/{department_id}/forms",
        json={"name": "rsvp", "is_active": False},
        headers=_auth_header(token),
    )
    form_id = form.json()["data"]["id"]

    response = api_client.post(
        f"/api/departments/{department_id}/forms/{form_id}/submissions",
        json={"submission_data": {"going": True}},
        headers=_auth_header(token),
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_schema_changes_create_versions(api_client: TestClient) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Surveys")
    form = api_client.post(
        f"/api/departments/{department_id}/forms",
        json={"name": "survey", "form_schema": {"fields": ["q1"]}},
        headers=_auth_header(token),
    )
    form_id = form.json()["data"]["id"]

    updated = api_client.put(
        f"/api/departments/{department_id}/forms/{form_id}",
        json={"form_schema": {"fields": ["q1", "q2"]}},
        headers=_auth_header(token),
    )
    assert updated.json()["data"]["version"] == 2

    versions = api_client.get(
        f"/api/departments/{department_id}/forms/{form_id}/versions",
        headers=_auth_header(token),
    )
    data = versions.json()["data"]
    assert [item["version_number"] for item in data] == [2, 1]
    assert data[0]["schema_data"] == {"fields": ["q1", "q2"]}


def test_webhook_test_delivery_reports_outcome(api_client: TestClient, outbox: _Outbox) -> None:
    outbox.status_code = 503
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Alerts")
    webhook = api_client.post(
        f"/api/departments/{department_id}/webhooks",
        json={"url": "https://hooks.example.com/alerts", "is_active": False},
        headers=_auth_header(token),
    )
    webhook_id = webhook.json()["data"]["id"]

    response = api_client.post(
        f"/api/departments/{department_id}/webhooks/{webhook_id}/test",
        json={},
        headers=_auth_header(token),
    )
    assert response.status_code == 200
    result = response.json()["data"][0]
    assert result["ok"] is False
    assert result["status_code"] == 503
    assert outbox.event_types() == ["webhook.test"]

    toggled = api_client.post(
        f"/api/departments/{department_id}/webhooks/{webhook_id}/toggle-status",
        headers=_auth_header(token),
    )
    assert toggled.json()["data"]["is_active"] is True


def test_write_requests_are_audited(api_client: TestClient) -> None:
    token = _super_token(api_client)
    department_id = _create_department(api_client, token, "Audit")
    user_id = _create_user(api_client, token, department_id, "audited@example.com")
    api_client.put(
        f"/api/departments/{department_id}/users/{user_id}/role",
        json={"role_id": None},
        headers=_auth_header(token),
    )

    with Session(db.get_engine()) as session:
        rows = list(
            session.exec(
                select(AuditLog)
                .where(AuditLog.department_id == department_id)
                .where(AuditLog.action == "user.role.set")
            ).all()
        )
    assert len(rows) == 1
    assert rows[0].status_code == 200
    assert rows[0].detail["what"]["role_id"] is None


def test_super_admin_management(api_client: TestClient) -> None:
    token = _super_token(api_client)
    created = api_client.post(
        "/api/super-admins",
        json={"email": "second@example.com", "password": "second-pass"},
        headers=_auth_header(token),
    )
    assert created.status_code == 201
    listing = api_client.get("/api/super-admins", headers=_auth_header(token))
    assert sorted(item["email"] for item in listing.json()["data"]) == [SUPER_EMAIL, "second@example.com"]

    second_id = created.json()["data"]["id"]
    assert api_client.delete(f"/api/super-admins/{second_id}", headers=_auth_header(token)).status_code == 200

    me = api_client.get("/api/auth/me", headers=_auth_header(token)).json()["data"]
    last = api_client.delete(f"/api/super-admins/{me['user_id']}", headers=_auth_header(token))
    assert last.status_code == 409


def test_bootstrap_super_admin_is_idempotent(api_client: TestClient) -> None:
    service = UserService()
    first = service.bootstrap_super_admin(email=SUPER_EMAIL, password="ignored")
    second = service.bootstrap_super_admin(email=SUPER_EMAIL, password="ignored")
    assert first is not None and second is not None
    assert first.id == second.id
    assert len(service.list_super_admins()) == 1
    assert service.bootstrap_super_admin(email="nobody@example.com", password="") is None


def test_change_password(api_client: TestClient) -> None:
    token = _super_token(api_client)
    wrong = api_client.post(
        "/api/auth/change-password",
        json={"current_password": "nope", "new_password": "fresh-pass"},
        headers=_auth_header(token),
    )
    assert wrong.status_code == 401
    changed = api_client.post(
        "/api/auth/change-password",
        json={"current_password": SUPER_PASSWORD, "new_password": "fresh-pass"},
        headers=_auth_header(token),
    )
    assert changed.status_code == 200
    assert _login(api_client, SUPER_EMAIL, "fresh-pass")
