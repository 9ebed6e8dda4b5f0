import io

import pytest
from PIL import Image

from app import create_app
from extensions import db
from models import Department, Solver, User
from utils import notifications, security

PASSWORD = "Sturdy-Passw0rd!"

USER_FIXTURES = {
    "citizen": ("Cora Citizen", "cora@example.com", "CITIZEN"),
    "other_citizen": ("Otto Citizen", "otto@example.com", "CITIZEN"),
    "solver": ("Sam Solver", "sam@example.com", "SOLVER"),
    "other_solver": ("Sky Solver", "sky@example.com", "SOLVER"),
    "admin": ("Ada Admin", "ada@example.com", "ADMIN"),
}


@pytest.fixture
def app(tmp_path):
    security._attempts.clear()
    app = create_app(
        "testing",
        {
            "LOG_DIR": str(tmp_path / "logs"),
            "COMPLAINT_UPLOAD_FOLDER": str(tmp_path / "uploads"),
        },
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_dispatch(subject, text_body, html_body, sender, recipients):
        sent.append(
            {"subject": subject, "text": text_body, "html": html_body, "sender": sender, "to": list(recipients)}
        )
        return f"<{len(sent)}@metronix.test>"

    monkeypatch.setattr(notifications, "_dispatch_email", fake_dispatch)
    return sent


@pytest.fixture
def users(app):
    """Ids of one user per role (plus a second citizen and solver)."""
    ids = {}
    with app.app_context():
        for key, (name, email, role) in USER_FIXTURES.items():
            user = User(name=name, email=email, role=role)
            user.set_password(PASSWORD)
            db.session.add(user)
            if role == "SOLVER":
                db.session.add(Solver(user=user))
            db.session.flush()
            ids[key] = user.id
        db.session.add(Department(name="Public Works", keywords=["road", "pothole"]))
        db.session.commit()
    return ids


@pytest.fixture
def department_id(app, users):
    with app.app_context():
        return Department.query.filter_by(name="Public Works").one().id


@pytest.fixture
def login(app):
    """Return a test client signed in as the user with `email`."""

    def _login(email, password=PASSWORD):
        client = app.test_client()
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.get_json()
        return client

    return _login


@pytest.fixture
def clients(users, login):
    return {key: login(USER_FIXTURES[key][1]) for key in USER_FIXTURES}


def png_bytes(size=(4, 4)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()
