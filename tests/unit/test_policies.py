from __future__ import annotations

import textwrap
from datetime import datetime, timezone
from pathlib import Path

import pytest

from declutter.config import ClassificationConfig, ConfigError
from declutter.policies import (
    ConfigurationError,
    RuleStore,
    build_context,
    context_factory,
    load_rule_file,
    parse_policy,
    parse_rules,
)
from declutter.types import PolicyKind

NOW = datetime(2026, 2, 20, tzinfo=timezone.utc)

RULES = """
categories:
  - id: news
    name: Newsletters
  - id: bank
    name: Banking
    protected: true
  - id: other
    name: Other
sender_rules:
  "Alice <ALICE@Example.com>": news
domain_rules:
  "@Bank.Test": bank
policies:
  news: archive_after_days(7)
  bank:
    action: archive_after_hours
    hours: 12
"""


def _write_rules(directory: Path, account: str, content: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{account}.yaml"
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def test_load_rule_file_normalizes_keys(tmp_path: Path) -> None:
    path = _write_rules(tmp_path, "personal", RULES)

    rules = load_rule_file(path)

    assert [category.id for category in rules.categories] == ["news", "bank", "other"]
    assert rules.categories[1].protected is True
    assert rules.sender_rules[0].address == "alice@example.com"
    assert rules.domain_rules[0].domain == "bank.test"
    assert rules.source == path


def test_build_context_picks_default_category_by_name(tmp_path: Path) -> None:
    rules = load_rule_file(_write_rules(tmp_path, "personal", RULES))

    context = build_context(
        rules, now=NOW, classification=ClassificationConfig(enabled=True, min_confidence=0.6)
    )

    assert context.default_category_id == "other"
    assert context.sender_rules == {"alice@example.com": "news"}
    assert context.policies["news"].amount == 7
    assert context.classification_enabled is True
    assert context.min_signal_confidence == 0.6


def test_build_context_requires_aware_now(tmp_path: Path) -> None:
    rules = load_rule_file(_write_rules(tmp_path, "personal", RULES))

    with pytest.raises(ConfigurationError):
        build_context(rules, now=datetime(2026, 2, 20))


@pytest.mark.parametrize(
    ("raw", "kind", "amount"),
    [
        ("digest", PolicyKind.DIGEST, None),
        ("label_only", PolicyKind.LABEL_ONLY, None),
        ("move_to_spam", PolicyKind.MOVE_TO_SPAM, None),
        ("archive_after_hours(48)", PolicyKind.ARCHIVE_AFTER_HOURS, 48),
        ("archive_after_days( 3 )", PolicyKind.ARCHIVE_AFTER_DAYS, 3),
        ("archive_after_days(abc)", PolicyKind.ARCHIVE_AFTER_DAYS, "abc"),
        ("archive_after_days", PolicyKind.ARCHIVE_AFTER_DAYS, None),
        ("archive_after_48h", PolicyKind.ARCHIVE_AFTER_HOURS, 48),
        ({"action": "archive_after_days", "days": 0}, PolicyKind.ARCHIVE_AFTER_DAYS, 0),
        ({"kind": "archive_after_n_days", "amount": 9}, PolicyKind.ARCHIVE_AFTER_DAYS, 9),
        ("teleport", PolicyKind.UNKNOWN, None),
    ],
)
def test_parse_policy_forms(raw, kind: PolicyKind, amount) -> None:
    policy = parse_policy("news", raw)

    assert policy.kind is kind
    assert policy.amount == amount


def test_parse_policy_keeps_unknown_spelling() -> None:
    assert parse_policy("news", " Teleport ").raw_kind == "Teleport"


def test_parse_policy_rejects_non_string_values() -> None:
    with pytest.raises(ConfigError):
        parse_policy("news", 5)


def test_policy_for_unknown_category_is_rejected() -> None:
    with pytest.raises(ConfigError, match="unknown category"):
        parse_rules({"categories": [{"id": "a"}], "policies": {"b": "digest"}})


def test_duplicate_category_ids_are_rejected() -> None:
    with pytest.raises(ConfigError, match="duplicates"):
        parse_rules({"categories": [{"id": "a"}, {"id": "a"}]})


def test_duplicate_policy_for_one_category_is_rejected() -> None:
    with pytest.raises(ConfigError, match="more than once"):
        parse_rules({"categories": [{"id": "7"}], "policies": {7: "digest", "7": "archive_after_days(2)"}})


def test_dangling_rule_is_kept_with_warning(caplog) -> None:
    rules = parse_rules({"categories": [{"id": "a"}], "sender_rules": {"x@y.z": "gone"}})

    assert rules.sender_rules[0].category_id == "gone"
    assert "unknown category 'gone'" in caplog.text


def test_rule_store_wraps_errors(tmp_path: Path) -> None:
    store = RuleStore(tmp_path)
    _write_rules(tmp_path, "broken", "categories: {}\n")

    with pytest.raises(ConfigurationError, match="Rule file not found"):
        store.load("missing")
    with pytest.raises(ConfigurationError, match="Invalid rule file"):
        store.load("broken")


def test_context_factory_reloads_rules_each_call(tmp_path: Path) -> None:
    _write_rules(tmp_path, "personal", RULES)
    factory = context_factory(RuleStore(tmp_path))

    first = factory("personal", NOW)
    _write_rules(tmp_path, "personal", RULES.replace("archive_after_days(7)", "digest"))
    second = factory("personal", NOW)

    assert first.policies["news"].kind is PolicyKind.ARCHIVE_AFTER_DAYS
    assert second.policies["news"].kind is PolicyKind.DIGEST
