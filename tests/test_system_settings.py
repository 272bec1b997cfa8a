import os
import subprocess
import sys
from pathlib import Path

import sqlalchemy as sa
from sqlalchemy import select

from apps.omw.app.models import AuditLog, SystemSetting
from apps.omw.app.system_settings import CATALOGUE, populate_from_env, stored_value

REPO_ROOT = Path(__file__).resolve().parents[1]

BASE = "/api/superadmin/system-settings"


def test_populate_from_env(session):
    env = {"JWT_SECRET": "s3cret-signing-key", "SMTP_HOST": "smtp.example.com"}
    results = dict(populate_from_env(session, env))
    session.commit()
    assert results["JWT_SECRET"] == "created"
    assert results["JWT_EXPIRATION"] == "created"
    assert results["SMTP_PASSWORD"] == "skipped"

    jwt_row = session.execute(select(SystemSetting).where(SystemSetting.setting_key == "JWT_SECRET")).scalars().one()
    assert jwt_row.is_sensitive is True
    assert jwt_row.setting_value != "s3cret-signing-key"
    assert stored_value(jwt_row) == "s3cret-signing-key"
    host = session.execute(select(SystemSetting).where(SystemSetting.setting_key == "SMTP_HOST")).scalars().one()
    assert host.setting_value == "smtp.example.com"

    again = dict(populate_from_env(session, {"SMTP_HOST": "mail.example.com"}))
    session.commit()
    assert again["SMTP_HOST"] == "updated"
    assert session.execute(select(SystemSetting).where(SystemSetting.setting_key == "SMTP_HOST")).scalars().one().setting_value == "mail.example.com"


def test_list_masks_sensitive_values(client, session, superadmin):
    _, headers = superadmin
    populate_from_env(session, {"RAZORPAY_KEY_SECRET": "rzp_secret_ABCDEFGH", "EMAIL_FROM": "no-reply@omw.test"})
    session.commit()
    rows = {r["key"]: r for r in client.get(BASE, headers=headers).json()["settings"]}
    assert rows["RAZORPAY_KEY_SECRET"]["value"] == "rzp_****EFGH"
    assert rows["EMAIL_FROM"]["value"] == "no-reply@omw.test"
    payment = client.get(BASE, params={"category": "payment"}, headers=headers).json()["settings"]
    assert [r["key"] for r in payment] == ["RAZORPAY_KEY_SECRET"]


def test_update_setting(client, session, superadmin):
    _, headers = superadmin
    populate_from_env(session, {})
    session.commit()
    assert client.put(f"{BASE}/JWT_EXPIRATION", json={}, headers=headers).status_code == 400
    assert client.put(f"{BASE}/NOPE", json={"value": "x"}, headers=headers).status_code == 404

    resp = client.put(f"{BASE}/JWT_EXPIRATION", json={"value": "2h"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["value"] == "2h"
    log = session.execute(select(AuditLog).where(AuditLog.action == "system_setting_updated")).scalars().one()
    assert log.entity_id == "JWT_EXPIRATION"


def _populate(db_url: str, *args: str, **env_over: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    for key in [k for k, *_ in CATALOGUE]:
        env.pop(key, None)
    env.update({"DB_URL": db_url, "ENV": "test"}, **env_over)
    return subprocess.run(
        [sys.executable, str(REPO_ROOT / "scripts" / "populate_system_settings.py"), *args],
        cwd=str(REPO_ROOT),
        env=env,
        capture_output=True,
        text=True,
        timeout=60,
    )


def test_populate_script_dry_run_writes_nothing(tmp_path):
    url = f"sqlite:///{tmp_path / 'settings.db'}"
    dry = _populate(url, "--dry-run", SMTP_HOST="smtp.example.com")
    assert dry.returncode == 2
    assert "run migrations first" in dry.stderr
    eng = sa.create_engine(url)
    try:
        assert sa.inspect(eng).get_table_names() == []
    finally:
        eng.dispose()

    real = _populate(url, SMTP_HOST="smtp.example.com")
    assert real.returncode == 0, real.stderr
    assert "[OK] SMTP_HOST created" in real.stdout

    again = _populate(url, "--dry-run", SMTP_HOST="smtp.other.com")
    assert again.returncode == 0, again.stderr
    assert "[DRY] SMTP_HOST updated" in again.stdout
    eng = sa.create_engine(url)
    try:
        with eng.connect() as conn:
            value = conn.execute(
                sa.text("SELECT setting_value FROM system_settings WHERE setting_key = 'SMTP_HOST'")
            ).scalar_one()
        assert value == "smtp.example.com"
    finally:
        eng.dispose()
