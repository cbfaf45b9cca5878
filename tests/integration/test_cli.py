from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from scralytics.cli.app import app

runner = CliRunner()


def _invoke(*args: str) -> dict | list:
    result = runner.invoke(app, list(args))
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_account_add_list_and_stats(tmp_path: Path) -> None:
    cookies = tmp_path / "cookies.json"
    cookies.write_text(json.dumps({"li_at": "token"}), encoding="utf-8")

    account = _invoke("account", "add", "--user-id", "3", "--email", "ops@example.com", "--cookies-file", str(cookies))
    assert account["validation_status"] == "active"
    assert account["daily_request_limit"] == 100

    listed = _invoke("account", "list", "--user-id", "3")
    assert [row["email"] for row in listed] == ["ops@example.com"]

    stats = _invoke("account", "stats", "--user-id", "3")
    assert (stats["total_accounts"], stats["eligible_accounts"]) == (1, 1)


def test_account_add_rejects_bad_cookie_file(tmp_path: Path) -> None:
    cookies = tmp_path / "cookies.json"
    cookies.write_text("not json", encoding="utf-8")

    result = runner.invoke(
        app, ["account", "add", "--user-id", "1", "--email", "x@example.com", "--cookies-file", str(cookies)]
    )

    assert result.exit_code != 0


def test_job_lifecycle_on_stored_state(add_account) -> None:
    add_account()
    created = _invoke(
        "job", "create", "--user-id", "1", "--url", "https://www.linkedin.com/in/a", "--url", "https://www.linkedin.com/in/b"
    )
    job_id = str(created["id"])
    assert (created["status"], created["total_urls"]) == ("pending", 2)

    assert _invoke("job", "pause", "--job-id", job_id)["status"] == "paused"
    assert _invoke("job", "resume", "--job-id", job_id)["status"] == "pending"

    status = _invoke("job", "status", "--job-id", job_id)
    assert [row["status"] for row in status["urls"]] == ["pending", "pending"]

    assert _invoke("job", "cancel", "--job-id", job_id)["status"] == "cancelled"
    assert runner.invoke(app, ["job", "resume", "--job-id", job_id]).exit_code != 0
    assert runner.invoke(app, ["job", "retry", "--job-id", job_id]).exit_code != 0

    listed = _invoke("job", "list", "--status", "cancelled")
    assert [row["id"] for row in listed] == [created["id"]]


def test_job_create_requires_targets() -> None:
    assert runner.invoke(app, ["job", "create", "--user-id", "1"]).exit_code != 0
    assert runner.invoke(app, ["job", "create", "--user-id", "1", "--kind", "search"]).exit_code != 0
    assert runner.invoke(app, ["job", "status", "--job-id", "404"]).exit_code != 0
