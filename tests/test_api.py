import time

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from playdeck.core.security import create_access_token
from playdeck.main import create_app
from playdeck.models import AuditLog, Run

from conftest import FakeTransport, RecordingNotifier, make_form, make_playbook, make_server


def bearer(role, username="alice"):
    return {"Authorization": f"Bearer {create_access_token(username, role, user_id=f'u-{username}')}"}


OPERATOR = bearer("operator")
WATCHER = bearer("watcher", "walt")
ADMIN = bearer("admin", "root")


@pytest.fixture
def client(engine):
    app = create_app(engine, transport=FakeTransport(), notifier=RecordingNotifier(), start_scheduler=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def form(db, playbook_file):
    server = make_server(db, "web")
    return make_form(
        db, make_playbook(db, playbook_file), server=server,
        fields=[{"name": "version", "required": True}],
        is_quick_action=True,
    )


def poll_run(client, run_id, timeout=3.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/runs/{run_id}", headers=OPERATOR).json()
        if body["status"] in ("success", "failed") or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_submit_run_is_accepted_and_finishes(client, form):
    response = client.post("/api/runs", json={"form_id": form.id, "variables": {"version": "1.2"}}, headers=OPERATOR)
    assert response.status_code == 202
    body = response.json()
    assert len(body["run_ids"]) == 1
    assert body["batch_id"] is None

    run = poll_run(client, body["run_ids"][0])
    assert run["status"] == "success"
    assert run["variables"] == {"version": "1.2"}
    assert run["username"] == "alice"

    listing = client.get("/api/runs", params={"form_id": form.id}, headers=WATCHER)
    assert listing.status_code == 200
    assert listing.headers["X-Total-Count"] == "1"


def test_missing_required_variable_is_rejected(client, engine, form):
    response = client.post("/api/runs", json={"form_id": form.id, "variables": {}}, headers=OPERATOR)
    assert response.status_code == 400
    assert response.json()["details"]["field"] == "version"
    with Session(engine) as session:
        assert session.exec(select(Run)).all() == []


def test_form_without_targets_is_a_configuration_error(client, db, playbook_file):
    form = make_form(db, make_playbook(db, playbook_file))
    response = client.post("/api/runs", json={"form_id": form.id}, headers=OPERATOR)
    assert response.status_code == 422
    assert "error" in response.json()


def test_unknown_resources_are_404(client):
    assert client.get("/api/runs/nope", headers=OPERATOR).status_code == 404
    assert client.get("/api/batches/nope", headers=OPERATOR).status_code == 404
    assert client.post("/api/runs", json={"form_id": "nope"}, headers=OPERATOR).status_code == 404


def test_authentication_and_roles(client, form):
    assert client.get("/api/runs").status_code == 403
    assert client.get("/api/runs", headers={"Authorization": "Bearer garbage"}).status_code == 403
    response = client.post("/api/runs", json={"form_id": form.id, "variables": {"version": "1"}}, headers=WATCHER)
    assert response.status_code == 403
    assert client.get("/api/audit", headers=OPERATOR).status_code == 403


def test_quick_action_uses_defaults(db, client, playbook_file):
    form = make_form(
        db, make_playbook(db, playbook_file), server=make_server(db, "web"),
        fields=[{"name": "env", "default_value": "prod"}], is_quick_action=True,
    )
    response = client.post(f"/api/forms/{form.id}/quick-action", headers=OPERATOR)
    assert response.status_code == 202
    run = poll_run(client, response.json()["run_ids"][0])
    assert run["trigger"] == "quick_action"
    assert run["variables"] == {"env": "prod"}


def test_cancel_finished_run_reports_false(client, form):
    run_id = client.post(
        "/api/runs", json={"form_id": form.id, "variables": {"version": "1"}}, headers=OPERATOR
    ).json()["run_ids"][0]
    poll_run(client, run_id)
    response = client.post(f"/api/runs/{run_id}/cancel", headers=OPERATOR)
    assert response.status_code == 200
    assert response.json() == {"run_id": run_id, "cancelled": False}


def test_schedule_update(client, form):
    response = client.put(
        f"/api/forms/{form.id}/schedule",
        json={"schedule_cron": "0 * * * *", "schedule_enabled": True},
        headers=OPERATOR,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["schedule_enabled"] is True
    assert body["next_run_at"] is not None

    bad = client.put(
        f"/api/forms/{form.id}/schedule",
        json={"schedule_cron": "not a cron", "schedule_enabled": True},
        headers=OPERATOR,
    )
    assert bad.status_code == 400


def test_webhook_flow(client, engine, form):
    rejected = client.post("/api/webhook/forms/wrong-token", json={"version": "3"})
    assert rejected.status_code == 403
    assert rejected.json()["status"] == "rejected"

    token_response = client.post(f"/api/forms/{form.id}/webhook-token", headers=ADMIN)
    assert token_response.status_code == 200
    token = token_response.json()["webhook_token"]

    accepted = client.post(f"/api/webhook/forms/{token}", json={"version": "3"})
    assert accepted.status_code == 202
    body = accepted.json()
    assert body["status"] == "accepted"
    run = poll_run(client, body["run_ids"][0])
    assert run["trigger"] == "webhook"
    assert run["variables"] == {"version": "3"}

    assert client.delete(f"/api/forms/{form.id}/webhook-token", headers=ADMIN).status_code == 200
    assert client.post(f"/api/webhook/forms/{token}", json={"version": "3"}).status_code == 403


def test_audit_listing_for_admin(client, form):
    client.post("/api/webhook/forms/wrong-token")
    response = client.get("/api/audit", params={"action": "webhook_auth_failed"}, headers=ADMIN)
    assert response.status_code == 200
    assert response.headers["X-Total-Count"] == "1"
    assert response.json()[0]["username"] == "webhook"


def test_server_crud_hides_the_private_key(client, engine):
    headers = {**ADMIN, "X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    created = client.post(
        "/api/servers",
        json={"name": "web", "host": "web.example.internal", "ssh_private_key": "-----BEGIN KEY-----"},
        headers=headers,
    )
    assert created.status_code == 201
    server = created.json()
    assert server["has_private_key"] is True
    assert "ssh_private_key" not in server

    updated = client.put(f"/api/servers/{server['id']}", json={"port": 2222, "ssh_private_key": ""}, headers=ADMIN)
    assert updated.status_code == 200
    assert updated.json()["port"] == 2222
    assert updated.json()["has_private_key"] is False
    assert updated.json()["host"] == "web.example.internal"

    assert client.get("/api/servers", headers=WATCHER).json()[0]["id"] == server["id"]
    assert client.delete(f"/api/servers/{server['id']}", headers=ADMIN).status_code == 204
    assert client.get(f"/api/servers/{server['id']}", headers=WATCHER).status_code == 404

    with Session(engine) as session:
        row = session.exec(select(AuditLog).where(AuditLog.resource == "server", AuditLog.action == "create")).one()
    assert row.ip == "203.0.113.7"
    assert row.username == "root"


def test_inventory_writes_need_admin(client):
    assert client.get("/api/servers", headers=WATCHER).status_code == 200
    assert client.post("/api/servers", json={"name": "x", "host": "x"}, headers=OPERATOR).status_code == 403
    assert client.post("/api/server-groups", json={"name": "g"}, headers=WATCHER).status_code == 403
    assert client.post("/api/playbooks", json={"name": "p", "file_path": "/x"}, headers=OPERATOR).status_code == 403
    assert client.post("/api/vaults", json={"name": "v", "password": "p"}, headers=OPERATOR).status_code == 403


def test_group_members(client, db):
    web = make_server(db, "web")
    api = make_server(db, "api")
    group = client.post("/api/server-groups", json={"name": "frontend"}, headers=ADMIN)
    assert group.status_code == 201
    group_id = group.json()["id"]

    members = client.put(
        f"/api/server-groups/{group_id}/members", json={"server_ids": [web.id, api.id]}, headers=ADMIN
    )
    assert members.status_code == 200
    assert [s["name"] for s in members.json()] == ["api", "web"]
    assert len(client.get(f"/api/server-groups/{group_id}/members", headers=WATCHER).json()) == 2

    assert client.delete(f"/api/server-groups/{group_id}", headers=ADMIN).status_code == 204
    assert client.get(f"/api/server-groups/{group_id}/members", headers=WATCHER).status_code == 404


def test_playbook_register_and_delete(client, playbook_file):
    missing = client.post("/api/playbooks", json={"name": "gone", "file_path": "/does/not/exist.yml"}, headers=ADMIN)
    assert missing.status_code == 422

    created = client.post("/api/playbooks", json={"name": "site", "file_path": str(playbook_file)}, headers=ADMIN)
    assert created.status_code == 201
    playbook_id = created.json()["id"]
    assert client.get(f"/api/playbooks/{playbook_id}", headers=WATCHER).json()["name"] == "site"

    deleted = client.delete(f"/api/playbooks/{playbook_id}", headers=ADMIN)
    assert deleted.status_code == 200
    assert deleted.json() == {"id": playbook_id, "soft": False}
    assert client.get("/api/playbooks", params={"include_deleted": True}, headers=WATCHER).json() == []


def test_vault_payload_is_never_returned(client):
    created = client.post("/api/vaults", json={"name": "prod", "password": "s3cret"}, headers=ADMIN)
    assert created.status_code == 201
    vault = created.json()
    assert vault["has_file"] is False
    assert "password" not in vault and "password_enc" not in vault

    rejected = client.put(f"/api/vaults/{vault['id']}/payload", json={"content": "- a\n- list\n"}, headers=ADMIN)
    assert rejected.status_code == 400
    assert rejected.json()["details"]["field"] == "content"

    stored = client.put(
        f"/api/vaults/{vault['id']}/payload",
        json={"content": "db_password: hunter2\n", "file_name": "prod.yml"},
        headers=ADMIN,
    )
    assert stored.status_code == 200
    assert stored.json()["has_file"] is True
    assert stored.json()["vault_file_name"] == "prod.yml"
    assert "hunter2" not in stored.text
    assert "hunter2" not in client.get(f"/api/vaults/{vault['id']}", headers=WATCHER).text

    cleared = client.delete(f"/api/vaults/{vault['id']}/payload", headers=ADMIN)
    assert cleared.json()["has_file"] is False


def test_form_crud(client, db, playbook_file):
    playbook = make_playbook(db, playbook_file)
    server = make_server(db, "web")
    created = client.post(
        "/api/forms",
        json={
            "name": "deploy",
            "playbook_id": playbook.id,
            "server_id": server.id,
            "fields": [
                {"name": "env", "field_type": "select", "options": ["staging", "prod"], "default_value": "staging"},
                {"name": "replicas", "field_type": "number", "required": True},
            ],
        },
        headers=OPERATOR,
    )
    assert created.status_code == 201
    form = created.json()
    assert [f["name"] for f in form["fields"]] == ["env", "replicas"]
    assert form["fields"][0]["options"] == ["staging", "prod"]
    assert form["has_webhook_token"] is False
    assert "webhook_token" not in form

    fetched = client.get(f"/api/forms/{form['id']}", headers=WATCHER)
    assert fetched.status_code == 200
    assert fetched.json()["server_id"] == server.id

    renamed = client.put(f"/api/forms/{form['id']}", json={"name": "deploy-web"}, headers=OPERATOR)
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "deploy-web"
    assert len(renamed.json()["fields"]) == 2

    replaced = client.put(f"/api/forms/{form['id']}", json={"fields": [{"name": "tag"}]}, headers=OPERATOR)
    assert [f["name"] for f in replaced.json()["fields"]] == ["tag"]

    bad = client.put(
        f"/api/forms/{form['id']}",
        json={"fields": [{"name": "n", "field_type": "number", "default_value": "many"}]},
        headers=OPERATOR,
    )
    assert bad.status_code == 400
    assert [f["name"] for f in client.get(f"/api/forms/{form['id']}", headers=WATCHER).json()["fields"]] == ["tag"]

    assert client.delete(f"/api/forms/{form['id']}", headers=WATCHER).status_code == 403
    assert client.delete(f"/api/forms/{form['id']}", headers=OPERATOR).status_code == 204
    assert client.get(f"/api/forms/{form['id']}", headers=WATCHER).status_code == 404
