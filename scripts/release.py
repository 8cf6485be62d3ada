"""
Deploy step: migrate to head, then seed the admin user.

Usage:
  DATABASE_URL=postgresql+psycopg://... python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def run_release() -> None:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production.")

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")
    print("Migrations complete.", flush=True)

    from scripts import init_db

    init_db.seed_only(database_url=db_url)


if __name__ == "__main__":
    run_release()
