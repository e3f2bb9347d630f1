from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from declutter import cli
from declutter.cli import app
from declutter.ledger import AuditLedger
from declutter.types import RollbackStatus

runner = CliRunner()

RULES = """\
categories:
  - id: news
    name: Newsletters
  - id: bank
    name: Banking
    protected: true
domain_rules:
  news.test: news
  bank.test: bank
policies:
  news: archive_after_days(2)
  bank: move_to_spam
"""


def _write_config(tmp_path: Path) -> Path:
    root = tmp_path / "state"
    config = tmp_path / "config.yaml"
    config.write_text(
        "\n".join(
            [
                f"root_dir: {root}",
                "execution:",
                "  batch_delay: 0",
                "accounts:",
                "  - name: personal",
                "    gmail:",
                f"      credentials_path: {tmp_path}/credentials.json",
                f"      token_path: {tmp_path}/token.json",
                "",
            ]
        ),
        encoding="utf-8",
    )
    (root / "rules").mkdir(parents=True)
    (root / "rules" / "personal.yaml").write_text(RULES, encoding="utf-8")
    return config


@pytest.fixture
def setup(tmp_path: Path, fake_mailbox, write_items, monkeypatch):
    now = datetime.now(timezone.utc)
    records = [
        {"id": "m1", "sender": "a@news.test", "received_at": (now - timedelta(days=5)).isoformat()},
        {"id": "m2", "sender": "b@news.test", "received_at": (now - timedelta(hours=1)).isoformat()},
        {"id": "m3", "sender": "c@bank.test", "received_at": (now - timedelta(days=3)).isoformat()},
        {"id": "m4", "sender": "d@else.test", "received_at": (now - timedelta(days=40)).isoformat()},
    ]
    for record in records:
        record["labels"] = ["INBOX"]
    write_items(tmp_path / "state" / "items", "personal", records)
    fake_mailbox.labels = {record["id"]: {"INBOX"} for record in records}
    monkeypatch.setattr(cli, "GmailMailbox", lambda settings: fake_mailbox)
    return _write_config(tmp_path), fake_mailbox


def test_preview_reports_counts(setup) -> None:
    config_path, mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "preview"])

    assert result.exit_code == 0
    assert "personal: 1 eligible item(s)" in result.stdout
    assert "news: 1" in result.stdout
    assert "blocked by protection: 1" in result.stdout
    assert mailbox.calls == []


def test_run_then_rollback_run(setup, tmp_path: Path) -> None:
    config_path, mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "run"])

    assert result.exit_code == 0
    assert "applied 1 of 1" in result.stdout
    assert "INBOX" not in mailbox.labels["m1"]
    ledger = AuditLedger.in_dir(tmp_path / "state")
    run_id = ledger.entries()[0].run_id

    audit = runner.invoke(app, ["-c", str(config_path), "audit", "--run", run_id])
    assert audit.exit_code == 0
    assert "m1 ARCHIVE applied" in audit.stdout

    rollback = runner.invoke(app, ["-c", str(config_path), "rollback", "--run", run_id])
    assert rollback.exit_code == 0
    assert "reverted 1 entry" in rollback.stdout
    assert mailbox.labels["m1"] == {"INBOX"}

    again = runner.invoke(app, ["-c", str(config_path), "rollback", "--run", run_id])
    assert again.exit_code == 0
    assert "reverted 0 entries" in again.stdout


def test_rollback_entry_twice_is_a_conflict(setup, tmp_path: Path) -> None:
    config_path, _mailbox = setup
    runner.invoke(app, ["-c", str(config_path), "run"])
    entry_id = AuditLedger.in_dir(tmp_path / "state").entries()[0].id

    first = runner.invoke(app, ["-c", str(config_path), "rollback", entry_id])
    second = runner.invoke(app, ["-c", str(config_path), "rollback", entry_id])

    assert first.exit_code == 0
    assert second.exit_code == 1
    assert "already reverted" in second.output
    assert AuditLedger.in_dir(tmp_path / "state").get(entry_id).status is RollbackStatus.REVERTED


def test_rollback_requires_exactly_one_target(setup) -> None:
    config_path, _mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "rollback"])

    assert result.exit_code == 2


def test_dry_run_does_not_mutate(setup) -> None:
    config_path, mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "--dry-run", "run"])

    assert result.exit_code == 0
    assert "1 eligible item(s)" in result.stdout
    assert mailbox.calls == []


def test_explain_prints_trace(setup) -> None:
    config_path, _mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "explain", "m3"])

    assert result.exit_code == 0
    assert "category: Banking" in result.stdout
    assert "action: DIGEST" in result.stdout
    assert "protected_category:" in result.stdout


def test_explain_unknown_item(setup) -> None:
    config_path, _mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "explain", "zzz"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_archive_older_than(setup) -> None:
    config_path, mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "archive-older-than", "30"])

    assert result.exit_code == 0
    assert "applied 1 of 1" in result.stdout
    assert "INBOX" not in mailbox.labels["m4"]
    assert mailbox.count("batch_modify") == 1


def test_archive_older_than_rejects_out_of_range_days(setup) -> None:
    config_path, _mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "archive-older-than", "400"])

    assert result.exit_code == 2


def test_invalid_config_exits_with_code_two(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("accounts: []\n", encoding="utf-8")

    result = runner.invoke(app, ["-c", str(config_path), "preview"])

    assert result.exit_code == 2
    assert "Configuration error" in result.output


def test_unknown_account(setup) -> None:
    config_path, _mailbox = setup

    result = runner.invoke(app, ["-c", str(config_path), "preview", "-a", "work"])

    assert result.exit_code == 1
    assert "Unknown account 'work'" in result.output


def test_authorize_stores_token(setup, monkeypatch, tmp_path: Path) -> None:
    config_path, _mailbox = setup
    calls = []

    def fake_authorize(settings):
        calls.append(settings)
        return settings.token_path

    monkeypatch.setattr(cli, "authorize_gmail", fake_authorize)

    result = runner.invoke(app, ["-c", str(config_path), "authorize"])

    assert result.exit_code == 0
    assert calls[0].token_path == tmp_path / "token.json"
    assert "token stored" in result.stdout
