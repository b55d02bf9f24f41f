# app/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from app.db.session import engine as default_engine
from app.db.base import Base

# Import all models so metadata is complete
from app.models import blood_transfusion, error_log  # noqa: F401

log = logging.getLogger(__name__)


def existing_tables(eng: Engine) -> set:
    return set(inspect(eng).get_table_names())


def init_db(eng: Engine = None) -> None:
    """
    Create missing tables; safe to run multiple times.
    """
    eng = eng or default_engine
    before = existing_tables(eng)
    Base.metadata.create_all(bind=eng)
    created = sorted(existing_tables(eng) - before)
    if created:
        log.info("Created tables: %s", ", ".join(created))


def main() -> None:
    parser = argparse.ArgumentParser(description="Create transfusion tables")
    parser.add_argument("--list", action="store_true", help="print existing tables and exit")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    if args.list:
        print("Existing tables:", sorted(existing_tables(default_engine)))
        return
    init_db()


if __name__ == "__main__":
    main()
