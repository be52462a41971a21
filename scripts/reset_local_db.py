"""Utility script to reset the local approval database.

Usage:
    python scripts/reset_local_db.py

Environment:
    Ensure SLACK_SIGNING_SECRET and DATABASE_URL are available in the
    current shell before running this script. Only the SQL store is
    affected; a remote scheduler API is never touched.
"""

from __future__ import annotations

import approval_router.models  # noqa: F401  registers the ORM tables
from approval_router.db import Base, get_engine


def reset_database() -> None:
    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    print(f"Approval database reset ({engine.url.render_as_string(hide_password=True)}).")


if __name__ == "__main__":
    reset_database()
