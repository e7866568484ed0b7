# tests/test_auth.py
import pytest
from jose import jwt as jose_jwt

from app.config import settings
from app.models.user import UserRole
from app.services import auth as auth_svc

SIGNUP = {"name": "Dr Kim", "email": "kim@plab.com", "password": "secret123"}


@pytest.fixture(autouse=True)
def _reset_rate_limit():
    auth_svc._attempts.clear()
    yield
    auth_svc._attempts.clear()


@pytest.fixture
def supabase(monkeypatch):
    monkeypatch.setattr(settings, "supabase_jwt_secret", "supabase-test-secret")
    monkeypatch.setattr(settings, "supabase_issuer", None)

    def _token(sub: str, email: str, name: str = "Supa User") -> str:
        claims = {"sub": sub, "email": email, "aud": "authenticated", "user_metadata": {"full_name": name}}
        return jose_jwt.encode(claims, "supabase-test-secret", algorithm="HS256")
    return _token


def test_signup_and_me(client):
    r = client.post("/api/auth/signup", json=SIGNUP)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "kim@plab.com"
    assert body["user"]["role"] == "USER"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Dr Kim"


def test_duplicate_signup(client):
    client.post("/api/auth/signup", json=SIGNUP)
    r = client.post("/api/auth/signup", json={**SIGNUP, "email": "KIM@plab.com"})
    assert r.status_code == 409
    assert r.json()["error"] == "email_already_registered"


def test_login_and_rate_limit(client):
    client.post("/api/auth/signup", json=SIGNUP)

    ok = client.post("/api/auth/login", json={"email": SIGNUP["email"], "password": SIGNUP["password"]})
    assert ok.status_code == 200

    for _ in range(5):
        bad = client.post("/api/auth/login", json={"email": SIGNUP["email"], "password": "wrong-pass"})
        assert bad.status_code == 401
    blocked = client.post("/api/auth/login", json={"email": SIGNUP["email"], "password": SIGNUP["password"]})
    assert blocked.status_code == 429
    assert blocked.json()["error"] == "too_many_attempts"


def test_refresh_needs_refresh_token(client):
    tokens = client.post("/api/auth/signup", json=SIGNUP).json()

    r = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert r.status_code == 200
    assert r.json()["user"]["email"] == SIGNUP["email"]

    r = client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert r.status_code == 401


def test_refresh_token_is_not_an_access_token(client):
    tokens = client.post("/api/auth/signup", json=SIGNUP).json()
    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert r.status_code == 401


def test_malformed_authorization_header(client):
    assert client.get("/api/auth/me", headers={"Authorization": "Token abc"}).status_code == 401


def test_supabase_token_creates_local_user(client, supabase):
    token = supabase("5b0c1c2e-0000-4000-8000-000000000001", "supa@plab.com")

    first = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert first.status_code == 200, first.text
    assert first.json()["provider"] == "supabase"
    assert first.json()["name"] == "Supa User"

    again = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert again.json()["id"] == first.json()["id"]


def test_supabase_token_links_existing_email(client, supabase, make_user):
    local = make_user("Linked")
    token = supabase("5b0c1c2e-0000-4000-8000-000000000002", local.email)

    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.json()["id"] == local.id
    assert r.json()["provider"] == "local"


def test_supabase_wrong_audience_rejected(client, supabase):
    bad = jose_jwt.encode(
        {"sub": "x", "email": "x@plab.com", "aud": "anon"}, "supabase-test-secret", algorithm="HS256"
    )
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {bad}"}).status_code == 401


def test_admin_only_catalogue_writes(client, make_user, auth_headers):
    admin = make_user("Root", role=UserRole.ADMIN)
    member = make_user("Member")

    r = client.post("/api/categories", json={"name": "Cardiology"}, headers=auth_headers(member))
    assert r.status_code == 403
    assert r.json()["error"] == "admin_only"

    r = client.post("/api/categories", json={"name": "Cardiology", "description": "Heart"},
                    headers=auth_headers(admin))
    assert r.status_code == 201
    category_id = r.json()["id"]

    r = client.post(
        "/api/cases",
        json={"title": "Chest Pain", "categoryId": category_id, "recallDates": ["2024-09-18", "bad", "2024-03-12"]},
        headers=auth_headers(admin),
    )
    assert r.status_code == 201, r.text
    case = r.json()
    assert case["isRecallCase"] is True
    assert case["recallDates"] == ["2024-03-12", "2024-09-18"]
    assert case["category"] == {"id": category_id, "name": "Cardiology"}

    listed = client.get(f"/api/cases?categoryId={category_id}", headers=auth_headers(member)).json()
    assert [c["title"] for c in listed] == ["Chest Pain"]
    assert client.get("/api/cases?categoryId=999", headers=auth_headers(member)).json() == []
    assert client.get("/api/categories/999", headers=auth_headers(member)).status_code == 404
