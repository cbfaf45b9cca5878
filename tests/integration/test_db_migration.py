from __future__ import annotations

import os
import sqlite3
import subprocess
import sys
from pathlib import Path

TABLES = {"accounts", "jobs", "job_urls", "job_account_assignments", "profile_results", "company_results"}


def _tables(db_path: Path) -> set[str]:
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute("SELECT name FROM sqlite_master WHERE type='table'")
        return {row[0] for row in cur.fetchall()}
    finally:
        conn.close()


def test_alembic_upgrade_and_downgrade(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[2]
    db_path = tmp_path / "migration_test.db"
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{db_path}"

    subprocess.run(
        [sys.executable, "-m", "alembic", "-c", "alembic.ini", "upgrade", "head"],
        cwd=repo_root,
        env=env,
        check=True,
    )

    assert TABLES <= _tables(db_path)

    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute("PRAGMA table_info(accounts)")
    account_cols = {row[1] for row in cur.fetchall()}
    cur.execute("PRAGMA table_info(jobs)")
    job_cols = {row[1] for row in cur.fetchall()}
    conn.close()
    assert {"cooldown_until", "blocked_until", "requests_today", "requests_reset_at"} <= account_cols
    assert {"processed_urls", "successful_urls", "failed_urls", "auto_restarts"} <= job_cols

    subprocess.run(
        [sys.executable, "-m", "alembic", "-c", "alembic.ini", "downgrade", "base"],
        cwd=repo_root,
        env=env,
        check=True,
    )

    assert not TABLES & _tables(db_path)
