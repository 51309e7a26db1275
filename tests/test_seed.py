from werkzeug.security import check_password_hash

from app.backoffice.models import Base, Company, Permission, Role, User
from app.backoffice.db import engine_for_url
from scripts import init_db
from scripts._db_utils import script_session


def test_seed_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    monkeypatch.setenv("ADMIN_EMAIL", "Boss@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "first-password")
    engine = engine_for_url(db_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    init_db.seed_only(database_url=db_url)
    monkeypatch.setenv("ADMIN_PASSWORD", "second-password")
    init_db.seed_only(database_url=db_url)

    with script_session(db_url) as s:
        assert s.query(Permission).count() == len(init_db.PERMISSIONS)
        assert s.query(Role).count() == 1
        assert s.query(Company).count() == 1
        admin = s.query(User).one()
        assert admin.email == "boss@example.com"
        assert check_password_hash(admin.password_hash, "first-password")
        assert {p.key for r in admin.roles for p in r.permissions} >= {"apps.install", "users.update", "roles.read"}
        assert [c.name for c in admin.companies] == ["My Company"]
