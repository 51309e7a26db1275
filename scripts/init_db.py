import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.backoffice.models import Company, Permission, Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

PERMISSIONS = (
    ("admin.view", "Admin: view dashboard"),
    ("users.read", "Users: read"),
    ("users.create", "Users: create"),
    ("users.update", "Users: update"),
    ("companies.read", "Companies: read"),
    ("roles.read", "Roles: read"),
    ("apps.view", "Apps: view marketplace"),
    ("apps.install", "Apps: install"),
    ("apps.update", "Apps: update / enable / disable"),
    ("apps.uninstall", "Apps: uninstall"),
)


def seed(s) -> User:
    """
    Seed permissions, the admin role, a default company and the admin user.
    Idempotent; never overwrites an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    company_name = (os.environ.get("DEFAULT_COMPANY_NAME") or "My Company").strip()

    perms = []
    for key, name in PERMISSIONS:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms.append(p)

    role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
    if not role_admin:
        role_admin = Role(key="admin", name="Administrator")
        s.add(role_admin)
    for p in perms:
        if p not in role_admin.permissions:
            role_admin.permissions.append(p)

    company = s.query(Company).order_by(Company.id.asc()).first()
    if not company:
        company = Company(name=company_name, enabled=True)
        s.add(company)

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(
            name="Administrator",
            email=admin_email,
            password_hash=generate_password_hash(admin_password),
            locale="en_GB",
            is_active=True,
        )
        s.add(user)
    if role_admin not in user.roles:
        user.roles.append(role_admin)
    if company not in user.companies:
        user.companies.append(company)
    return user


def seed_only(*, database_url: str | None = None) -> None:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///backoffice.db").strip()
    with script_session(db_url) as s:
        user = seed(s)
        email = user.email

    print("Initialized database (seed_only).")
    print(f"Admin email: {email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
