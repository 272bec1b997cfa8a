#!/usr/bin/env python3
"""
Copy operator-facing settings from the environment into system_settings.

Example:
  DB_URL=postgresql+psycopg2://... python scripts/populate_system_settings.py --dry-run
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from sqlalchemy import inspect  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from apps.omw.app.db import Base, engine  # noqa: E402
from apps.omw.app.models import SystemSetting  # noqa: E402
from apps.omw.app.system_settings import populate_from_env  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Upsert system settings from environment variables.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing to the database.",
    )
    args = parser.parse_args(argv)

    if args.dry_run:
        if not inspect(engine).has_table(SystemSetting.__tablename__):
            print("system_settings table does not exist; run migrations first", file=sys.stderr)
            return 2
    else:
        Base.metadata.create_all(engine)
    with Session(engine) as s:
        results = populate_from_env(s)
        if args.dry_run:
            s.rollback()
        else:
            s.commit()

    for key, outcome in results:
        if outcome == "skipped":
            print(f"[SKIP] {key} is not set in the environment", file=sys.stderr)
        else:
            print(f"[{'DRY' if args.dry_run else 'OK'}] {key} {outcome}")
    written = sum(1 for _, o in results if o != "skipped")
    print(f"{written} setting(s) {'would be ' if args.dry_run else ''}written")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
