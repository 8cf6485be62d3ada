import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.models import User  # noqa: E402
from app.crm.db import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///crm.db").strip()

    # Throwaway engine; release runs this before any app process exists.
    with script_session(db_url) as s:
        user = s.query(User).filter(User.username == admin_username).one_or_none()
        if not user:
            user = User(
                username=admin_username,
                fullname="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)

    print("Initialized database (seed_only).")
    print(f"Admin username: {admin_username}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
