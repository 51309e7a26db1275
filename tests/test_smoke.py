import pytest
from werkzeug.security import generate_password_hash

from app.backoffice import create_app
from app.backoffice.db import session_scope
from app.backoffice.models import AuditEvent, Base, Company, Permission, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p = Permission(key="admin.view", name="Admin: view dashboard")
        r = Role(key="admin", name="Administrator")
        r.permissions.append(p)
        disabled_co = Company(name="Dormant", enabled=False)
        acme = Company(name="Acme", enabled=True)
        globex = Company(name="Globex", enabled=True)
        u = User(name="Admin", email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        u.companies.extend([disabled_co, acme, globex])
        other = Company(name="Initech", enabled=True)
        s.add_all([p, r, disabled_co, acme, globex, other, u])

    client = app.test_client()
    return client


def _company(client, name):
    with session_scope(client.application) as s:
        return s.query(Company).filter(Company.name == name).one().id


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_login_and_admin_access(client):
    # Anonymous is sent to the login form
    r = client.get("/admin/")
    assert r.status_code in (302, 403)

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302

    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"Acme" in r.data


def test_login_selects_first_enabled_company(client):
    client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    with client.session_transaction() as sess:
        assert sess["company_id"] == _company(client, "Acme")


def test_company_switch_limited_to_memberships(client):
    client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})

    r = client.post(f"/auth/companies/{_company(client, 'Globex')}/switch")
    assert r.status_code == 302
    with client.session_transaction() as sess:
        assert sess["company_id"] == _company(client, "Globex")

    r = client.post(f"/auth/companies/{_company(client, 'Initech')}/switch")
    assert r.status_code == 403


def test_failed_login_is_audited(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 302
    with session_scope(client.application) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.entity_id == "admin@example.com"


def test_logout_clears_session(client):
    client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    client.get("/auth/logout")
    with client.session_transaction() as sess:
        assert "user_id" not in sess
        assert "company_id" not in sess


def test_audit_trail_lists_logins(client):
    client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    r = client.get("/admin/audit?action=auth.login")
    assert r.status_code == 200
    assert b"auth.login" in r.data

    r = client.get("/admin/audit?date_from=yesterday")
    assert r.status_code == 200
    assert b"date_from must be YYYY-MM-DD" in r.data
