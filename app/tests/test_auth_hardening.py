import os
from fastapi.testclient import TestClient
from app.main import app

client = TestClient(app)

def _mint_token(user_id="dev-user", role="MANAGER") -> str:
    # /auth/token requires JWT_SECRET
    os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-pytest-only-0000000000000000")
    r = client.post("/auth/token", json={"user_id": user_id, "role": role})
    assert r.status_code == 200, r.text
    return r.json()["access_token"]

def _headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}

def test_missing_authorization_header_401():
    r = client.get("/workflows")
    assert r.status_code == 401

def test_wrong_scheme_401():
    token = _mint_token()
    r = client.get("/workflows", headers={"Authorization": f"Basic {token}"})
    assert r.status_code == 401

def test_garbled_bearer_token_401():
    r = client.get("/workflows", headers={"Authorization": "Bearer not-a-real-token"})
    assert r.status_code == 401

def test_unknown_role_rejected_at_mint_time():
    r = client.post("/auth/token", json={"user_id": "dev-user", "role": "SUPERUSER"})
    assert r.status_code == 400

def test_learner_cannot_manage_workflows_403():
    token = _mint_token(role="LEARNER")
    r = client.get("/workflows", headers=_headers(token))
    assert r.status_code == 403
    assert "Insufficient role" in r.text

def test_manager_cannot_read_outbox_403():
    token = _mint_token(role="MANAGER")
    r = client.get("/outbox", headers=_headers(token))
    assert r.status_code == 403

def test_admin_can_read_outbox():
    token = _mint_token(role="ADMIN")
    r = client.get("/outbox", headers=_headers(token))
    assert r.status_code == 200
    assert r.json()["rows"] == []

def test_manager_can_list_workflows():
    token = _mint_token(role="MANAGER")
    r = client.get("/workflows", headers=_headers(token))
    assert r.status_code == 200
    assert r.json()["total"] == 0
