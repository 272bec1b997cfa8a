import os
import subprocess
import sys
from pathlib import Path

import sqlalchemy as sa

REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_INI = REPO_ROOT / "apps" / "omw" / "alembic.ini"


def _upgrade(db_url: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["DB_URL"] = db_url
    env.pop("DB_SCHEMA", None)
    return subprocess.run(
        [sys.executable, "-m", "alembic", "-c", str(ALEMBIC_INI), "upgrade", "head"],
        cwd=str(REPO_ROOT),
        env=env,
        capture_output=True,
        text=True,
        timeout=120,
    )


def test_upgrade_is_rerunnable(tmp_path):
    url = f"sqlite:///{tmp_path / 'omw.db'}"
    first = _upgrade(url)
    assert first.returncode == 0, first.stderr
    second = _upgrade(url)
    assert second.returncode == 0, second.stderr

    eng = sa.create_engine(url)
    try:
        insp = sa.inspect(eng)
        tables = set(insp.get_table_names())
        for t in ("users", "bookings", "ride_fare_breakdowns", "payments", "payout_batches", "chat_sessions", "audit_logs",
                  "service_subcategories", "cart_items", "booking_requests", "cash_payments"):
            assert t in tables
        assert "ix_provider_earnings_payout_batch_id" in {i["name"] for i in insp.get_indexes("provider_earnings")}
        with eng.connect() as conn:
            roles = conn.execute(sa.text("SELECT COUNT(*) FROM roles")).scalar_one()
            version = conn.execute(sa.text("SELECT version_num FROM alembic_version")).scalar_one()
        assert roles == 4
        assert version == "0004_service_marketplace"
    finally:
        eng.dispose()


def test_upgrade_over_tables_created_by_the_app(tmp_path):
    url = f"sqlite:///{tmp_path / 'existing.db'}"
    from apps.omw.app.db import Base

    eng = sa.create_engine(url)
    try:
        Base.metadata.create_all(eng)
    finally:
        eng.dispose()
    result = _upgrade(url)
    assert result.returncode == 0, result.stderr
