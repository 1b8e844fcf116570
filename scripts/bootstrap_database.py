#!/usr/bin/env python3
"""Bootstrap the dentbill SQLite database with required reference data."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Dict

from platformdirs import user_data_dir
from sqlalchemy import create_engine

from dentbill import db
from dentbill.config import APP_NAME
from dentbill.reference_data import seed_defaults


def parse_args() -> argparse.Namespace:
    default_path = os.getenv("DENTBILL_DB_PATH")
    if not default_path:
        data_dir = user_data_dir(APP_NAME, APP_NAME)
        default_path = os.path.join(data_dir, "dentbill.db")

    parser = argparse.ArgumentParser(
        description="Seed the dentbill database with fee, pattern, drug and material masters.",
    )
    parser.add_argument(
        "--database",
        "-d",
        default=default_path,
        help="Path to the SQLite database file (default: %(default)s)",
    )
    parser.add_argument(
        "--overwrite-reference-data",
        action="store_true",
        help="Replace existing master rows instead of preserving them.",
    )
    return parser.parse_args()


def bootstrap(db_path: Path, *, overwrite: bool = False) -> Dict[str, int]:
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    db.configure(engine)
    db.init_schema(engine)
    try:
        with db.session_scope() as session:
            return seed_defaults(session, overwrite=overwrite)
    finally:
        engine.dispose()


def main() -> int:
    args = parse_args()

    db_path = Path(args.database).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    counts = bootstrap(db_path, overwrite=args.overwrite_reference_data)

    print(f"Database initialised at {db_path}")
    if any(counts.values()):
        print("Inserted reference rows:")
        for table, count in counts.items():
            print(f"  - {table}: {count}")
    else:
        print("Reference data already present; nothing was changed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
