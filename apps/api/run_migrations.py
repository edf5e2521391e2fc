#!/usr/bin/env python3
"""Database bootstrap: wait for the database, then run Alembic migrations.

- Always run `alembic upgrade head` on startup.
- If migrations fail, fail fast (don't start with an unknown schema).
"""

import os
import sys
import time

from alembic import command
from alembic.config import Config

from core.config import settings
from core.database import build_engine, check_db_connection


def _get_alembic_config() -> Config:
    """Load Alembic config for programmatic migrations."""
    here = os.path.dirname(os.path.abspath(__file__))
    cfg = Config(os.path.join(here, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(here, "alembic"))
    return cfg


def wait_for_database(max_retries: int = 30) -> bool:
    engine = build_engine(settings)
    try:
        for attempt in range(1, max_retries + 1):
            if check_db_connection(engine):
                return True
            print(f"Database is unavailable - sleeping (attempt {attempt}/{max_retries})")
            time.sleep(1)
        return False
    finally:
        engine.dispose()


def main():
    print("Waiting for database to be ready...")
    if not wait_for_database():
        print("ERROR: Database is not ready after maximum retries")
        sys.exit(1)
    print("Database is ready!")

    try:
        command.upgrade(_get_alembic_config(), "head")
    except Exception as e:
        print(f"ERROR: Alembic upgrade failed: {e}")
        sys.exit(1)
    print("Migrations completed successfully!")


if __name__ == '__main__':
    main()
