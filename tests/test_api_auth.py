from conftest import PASSWORD
from extensions import db
from models import AuditLog, User
from utils import security


def test_register_creates_citizen_and_signs_in(app):
    client = app.test_client()
    response = client.post(
        "/api/auth/register",
        json={"name": "New Resident", "email": "New@Example.com", "password": PASSWORD},
    )

    assert response.status_code == 201
    body = response.get_json()["user"]
    assert body["role"] == "CITIZEN"
    assert body["email"] == "new@example.com"
    assert "password_hash" not in body
    assert client.get("/api/auth/me").get_json()["user"]["email"] == "new@example.com"


def test_register_enforces_password_policy_and_unique_email(app, users):
    client = app.test_client()
    weak = client.post("/api/auth/register", json={"name": "W", "email": "w@example.com", "password": "short"})
    assert weak.status_code == 400
    assert "password" in weak.get_json()["details"]["fields"]

    taken = client.post("/api/auth/register", json={"name": "C", "email": "cora@example.com", "password": PASSWORD})
    assert taken.status_code == 409


def test_login_failure_is_generic_and_audited(app, users):
    client = app.test_client()
    response = client.post("/api/auth/login", json={"email": "cora@example.com", "password": "wrong-password"})

    assert response.status_code == 401
    assert response.get_json() == {"error": "Invalid credentials"}
    with app.app_context():
        assert AuditLog.query.filter_by(action_type="LOGIN_FAILED", user_id=users["citizen"]).count() == 1


def test_login_records_last_login_and_logout_clears_session(app, users, login):
    client = login("cora@example.com")
    with app.app_context():
        assert db.session.get(User, users["citizen"]).last_login_at is not None

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_login_attempts_are_rate_limited(app, users):
    app.config["LOGIN_ATTEMPT_LIMIT"] = 2
    client = app.test_client()
    for _ in range(2):
        assert client.post("/api/auth/login", json={"email": "sam@example.com", "password": "nope"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "sam@example.com", "password": PASSWORD}).status_code == 429


def test_anonymous_requests_get_json_401(app):
    response = app.test_client().get("/api/complaints")
    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication required"}


def test_csrf_token_endpoint(app):
    response = app.test_client().get("/api/auth/csrf-token")
    assert response.status_code == 200
    assert response.get_json()["csrf_token"]


def test_health_and_security_headers(app):
    response = app.test_client().get("/health")
    assert response.get_json() == {"status": "ok", "database": "ok"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_unknown_route_is_json_404(app):
    response = app.test_client().get("/api/nowhere")
    assert response.status_code == 404
    assert response.get_json()["error"] == "Not Found"


def test_login_lockout_lifts_after_the_window(app, users, monkeypatch):
    clock = {"now": 1000.0}
    monkeypatch.setattr(security, "_clock", lambda: clock["now"])
    app.config.update(LOGIN_ATTEMPT_LIMIT=2, LOGIN_ATTEMPT_WINDOW_SECONDS=60)
    client = app.test_client()
    for _ in range(2):
        client.post("/api/auth/login", json={"email": "sam@example.com", "password": "nope"})

    clock["now"] += 59
    assert client.post("/api/auth/login", json={"email": "sam@example.com", "password": PASSWORD}).status_code == 429

    clock["now"] += 1
    assert client.post("/api/auth/login", json={"email": "sam@example.com", "password": PASSWORD}).status_code == 200
    assert security._attempts == {}


def test_attempt_windows_expire_and_are_pruned(monkeypatch):
    clock = {"now": 0.0}
    monkeypatch.setattr(security, "_clock", lambda: clock["now"])
    security._attempts.clear()

    assert security.track_attempt("a", limit=1, window=10)
    assert not security.track_attempt("a", limit=1, window=10)
    assert not security.track_attempt("a", limit=1, window=10)
    assert security._attempts["a"] == (1, 0.0)

    clock["now"] = 10.0
    assert security.track_attempt("b", limit=1, window=10)
    assert "a" not in security._attempts


def test_malformed_auth_bodies_are_rejected(app):
    client = app.test_client()
    assert client.post("/api/auth/login", json=["cora@example.com"]).status_code == 400
    response = client.post("/api/auth/register", json={"name": None, "email": 5, "password": PASSWORD})
    assert response.status_code == 400
    assert {"name", "email"} <= set(response.get_json()["details"]["fields"])
