"""Tests for user management (list, create, edit form, picture upload)."""
import io

import pytest
from werkzeug.security import check_password_hash, generate_password_hash

from app.backoffice import create_app
from app.backoffice.db import session_scope
from app.backoffice.models import Base, Company, Permission, Role, Upload, User

ALL_PERMS = [
    ("admin.view", "Admin: view dashboard"),
    ("users.read", "Users: read"),
    ("users.create", "Users: create"),
    ("users.update", "Users: update"),
    ("companies.read", "Companies: read"),
    ("roles.read", "Roles: read"),
]
EDITOR_PERMS = ("admin.view", "users.read", "users.update")

PNG = b"\x89PNG\r\n\x1a\n" + b"\0" * 32


def _make_app(tmp_path, monkeypatch, *, csrf="0"):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("CSRF_ENABLED", csrf)
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "LOCALES"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in ALL_PERMS}
        admin_role = Role(key="admin", name="Administrator", permissions=list(perms.values()))
        editor_role = Role(key="editor", name="Editor", permissions=[perms[k] for k in EDITOR_PERMS])
        acme = Company(name="Acme", enabled=True)
        globex = Company(name="Globex", enabled=True)
        admin = User(name="Admin", email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(admin_role)
        admin.companies.append(acme)
        editor = User(name="Editor", email="editor@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        editor.roles.append(editor_role)
        editor.companies.append(acme)
        s.add_all([admin_role, editor_role, acme, globex, admin, editor])
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch)


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=True)


def _user(app, email) -> User:
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one()


def _ids(app, model, *names):
    with session_scope(app) as s:
        return [s.query(model).filter(model.name == n).one().id for n in names]


def _form(**overrides):
    data = {
        "name": "Editor",
        "email": "editor@example.com",
        "password": "",
        "password_confirmation": "",
        "locale": "en_GB",
        "enabled": "1",
    }
    data.update(overrides)
    return data


def _flashes(client):
    with client.session_transaction() as sess:
        return list(sess.get("_flashes", []))


def test_users_list_requires_auth(client):
    r = client.get("/admin/users")
    assert r.status_code in (302, 403)


def test_users_list_ok(client):
    _login(client)
    r = client.get("/admin/users")
    assert r.status_code == 200
    assert b"editor@example.com" in r.data


def test_editor_cannot_create_users(client):
    _login(client, "editor@example.com")
    r = client.get("/admin/users/new")
    assert r.status_code == 403


def test_user_create(app, client):
    _login(client)
    acme, = _ids(app, Company, "Acme")
    editor_role, = _ids(app, Role, "Editor")
    r = client.post(
        "/admin/users/new",
        data={
            "name": "New Person",
            "email": "New@Example.com",
            "password": "longpassword",
            "password_confirmation": "longpassword",
            "locale": "fr_FR",
            "companies": [str(acme)],
            "roles": [str(editor_role)],
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "new@example.com").one()
        assert u.name == "New Person"
        assert u.locale == "fr_FR"
        assert [c.name for c in u.companies] == ["Acme"]
        assert [r.key for r in u.roles] == ["editor"]
        assert check_password_hash(u.password_hash, "longpassword")


def test_edit_form_hides_groups_without_read_permissions(app, client):
    editor = _user(app, "editor@example.com")
    _login(client, "editor@example.com")
    r = client.get(f"/admin/users/{editor.id}/edit")
    assert r.status_code == 200
    assert b'id="companies-group"' not in r.data
    assert b'id="roles-group"' not in r.data
    assert b'id="save-buttons"' in r.data
    assert b"No file selected..." in r.data


def test_edit_form_shows_groups_with_read_permissions(app, client):
    editor = _user(app, "editor@example.com")
    _login(client)
    r = client.get(f"/admin/users/{editor.id}/edit")
    assert r.status_code == 200
    assert b'id="companies-group"' in r.data
    assert b'id="roles-group"' in r.data
    assert b"Globex" in r.data
    assert b'value="de_DE"' in r.data


def test_edit_unknown_user_404(client):
    _login(client)
    r = client.get("/admin/users/999/edit")
    assert r.status_code == 404


def test_update_user_fields_and_associations(app, client):
    editor = _user(app, "editor@example.com")
    acme, globex = _ids(app, Company, "Acme", "Globex")
    admin_role, = _ids(app, Role, "Administrator")
    _login(client)

    r = client.post(
        f"/admin/users/{editor.id}/edit",
        data=_form(name="Ed Itor", locale="de_DE", companies=[str(acme), str(globex)], roles=[str(admin_role)]),
    )
    assert r.status_code == 302
    assert ("success", "Account updated for editor@example.com.") in _flashes(client)

    with session_scope(app) as s:
        u = s.get(User, editor.id)
        assert u.name == "Ed Itor"
        assert u.locale == "de_DE"
        assert sorted(c.name for c in u.companies) == ["Acme", "Globex"]
        assert [r.key for r in u.roles] == ["admin"]


def test_update_ignores_associations_without_read_permissions(app, client):
    editor = _user(app, "editor@example.com")
    globex, = _ids(app, Company, "Globex")
    admin_role, = _ids(app, Role, "Administrator")
    _login(client, "editor@example.com")

    r = client.post(f"/admin/users/{editor.id}/edit", data=_form(companies=[str(globex)], roles=[str(admin_role)]))
    assert r.status_code == 302
    with session_scope(app) as s:
        u = s.get(User, editor.id)
        assert [c.name for c in u.companies] == ["Acme"]
        assert [r.key for r in u.roles] == ["editor"]


def test_update_password_mismatch(app, client):
    editor = _user(app, "editor@example.com")
    _login(client)
    r = client.post(
        f"/admin/users/{editor.id}/edit",
        data=_form(password="longpassword", password_confirmation="different1"),
    )
    assert r.status_code == 302
    assert ("danger", "Passwords do not match.") in _flashes(client)
    assert check_password_hash(_user(app, "editor@example.com").password_hash, "pw")


def test_update_rejects_duplicate_email(app, client):
    editor = _user(app, "editor@example.com")
    _login(client)
    client.post(f"/admin/users/{editor.id}/edit", data=_form(email="admin@example.com"))
    assert ("danger", "An account with this email already exists.") in _flashes(client)
    assert _user(app, "editor@example.com").id == editor.id


def test_cannot_disable_own_account(app, client):
    admin = _user(app, "admin@example.com")
    _login(client)
    client.post(f"/admin/users/{admin.id}/edit", data=_form(name="Admin", email="admin@example.com", enabled="0"))
    assert ("danger", "You cannot disable your own account.") in _flashes(client)
    assert _user(app, "admin@example.com").is_active is True


def test_picture_upload_download_and_delete(app, client, tmp_path):
    editor = _user(app, "editor@example.com")
    _login(client)

    data = _form()
    data["picture"] = (io.BytesIO(PNG), "me.png", "image/png")
    r = client.post(f"/admin/users/{editor.id}/edit", data=data, content_type="multipart/form-data")
    assert r.status_code == 302

    with session_scope(app) as s:
        u = s.get(User, editor.id)
        assert u.picture is not None
        upload_id = u.picture.id
        key = u.picture.storage_key
        assert u.picture.basename == "me.png"
        assert u.picture.aggregate_type == "image"
        assert u.picture.size_bytes == len(PNG)
    stored = tmp_path / "storage" / "uploads" / key
    assert stored.read_bytes() == PNG

    r = client.get(f"/admin/users/{editor.id}/edit")
    assert b"me.png" in r.data
    assert f'id="picture-{upload_id}"'.encode() in r.data
    assert b"No file selected..." not in r.data

    r = client.get(f"/admin/uploads/{upload_id}/download")
    assert r.status_code == 200
    assert r.data == PNG

    r = client.post(f"/admin/uploads/{upload_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(User, editor.id).picture_id is None
        assert s.get(Upload, upload_id) is None
    assert not stored.exists()


def test_new_picture_removes_the_replaced_upload(app, client, tmp_path):
    editor = _user(app, "editor@example.com")
    _login(client)

    data = _form()
    data["picture"] = (io.BytesIO(PNG), "old.png", "image/png")
    client.post(f"/admin/users/{editor.id}/edit", data=data, content_type="multipart/form-data")
    with session_scope(app) as s:
        old = s.get(User, editor.id).picture
        old_id, old_key = old.id, old.storage_key
    assert (tmp_path / "storage" / "uploads" / old_key).is_file()

    data = _form()
    data["picture"] = (io.BytesIO(PNG), "new.png", "image/png")
    r = client.post(f"/admin/users/{editor.id}/edit", data=data, content_type="multipart/form-data")
    assert r.status_code == 302

    with session_scope(app) as s:
        assert s.get(User, editor.id).picture.basename == "new.png"
        assert s.get(Upload, old_id) is None
        assert s.query(Upload).count() == 1
    assert not (tmp_path / "storage" / "uploads" / old_key).exists()


def test_picture_must_be_an_image(app, client):
    editor = _user(app, "editor@example.com")
    _login(client)
    data = _form()
    data["picture"] = (io.BytesIO(b"MZ"), "tool.exe", "application/octet-stream")
    client.post(f"/admin/users/{editor.id}/edit", data=data, content_type="multipart/form-data")
    with session_scope(app) as s:
        assert s.get(User, editor.id).picture_id is None
        assert s.query(Upload).count() == 0


def test_csrf_rejects_post_without_token(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch, csrf="1")
    client = app.test_client()
    editor = _user(app, "editor@example.com")
    _login(client)

    r = client.post(f"/admin/users/{editor.id}/edit", data=_form(name="Changed"))
    assert r.status_code == 400
    assert _user(app, "editor@example.com").name == "Editor"

    with client.session_transaction() as sess:
        token = sess["csrf_token"]
    r = client.post(f"/admin/users/{editor.id}/edit", data=_form(name="Changed", csrf_token=token))
    assert r.status_code == 302
    assert _user(app, "editor@example.com").name == "Changed"
