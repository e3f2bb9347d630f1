"""Per-account rule and policy files, and decision context assembly."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from .addresses import normalize_address, normalize_domain
from .config import ClassificationConfig, ConfigError
from .decision import DEFAULT_CATEGORY_NAME, DecisionContext
from .types import Category, CategoryPolicy, DomainRule, PolicyKind, SenderRule

LOGGER = logging.getLogger(__name__)

RULE_FILE_SUFFIX = ".yaml"
_CALL_RE = re.compile(r"^\s*([A-Za-z0-9_]+)\s*\(\s*([^)]*)\s*\)\s*$")
_LEGACY_KINDS = {
    "archive_after_48h": (PolicyKind.ARCHIVE_AFTER_HOURS, 48),
    "archive_after_n_days": (PolicyKind.ARCHIVE_AFTER_DAYS, None),
}
_AMOUNT_KEYS = {
    PolicyKind.ARCHIVE_AFTER_HOURS: "hours",
    PolicyKind.ARCHIVE_AFTER_DAYS: "days",
}


class ConfigurationError(ConfigError):
    """Raised when a decision context cannot be built for an account."""


@dataclass(frozen=True)
class RuleSet:
    """Everything the rule administrator configured for one account."""

    categories: tuple[Category, ...] = ()
    sender_rules: tuple[SenderRule, ...] = ()
    domain_rules: tuple[DomainRule, ...] = ()
    policies: tuple[CategoryPolicy, ...] = ()
    source: Path | None = field(default=None, compare=False)

    def category_ids(self) -> set[str]:
        return {category.id for category in self.categories}


class RuleStore:
    """Loads rule files from ``<rules_dir>/<account>.yaml``."""

    def __init__(self, rules_dir: Path) -> None:
        self._rules_dir = rules_dir.expanduser()

    def path_for(self, account: str) -> Path:
        return self._rules_dir / f"{account}{RULE_FILE_SUFFIX}"

    def load(self, account: str) -> RuleSet:
        path = self.path_for(account)
        if not path.exists():
            raise ConfigurationError(f"Rule file not found for account '{account}': {path}")
        try:
            return load_rule_file(path)
        except ConfigError as exc:
            raise ConfigurationError(f"Invalid rule file for account '{account}': {exc}") from exc


def load_rule_file(path: Path) -> RuleSet:
    """Parse one rule file. Structural problems raise ConfigError."""

    with path.open("r", encoding="utf-8") as handle:
        try:
            raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Rule file root must be a mapping.")
    rules = parse_rules(raw)
    return RuleSet(
        categories=rules.categories,
        sender_rules=rules.sender_rules,
        domain_rules=rules.domain_rules,
        policies=rules.policies,
        source=path,
    )


def parse_rules(raw: dict[str, Any]) -> RuleSet:
    categories = _parse_categories(raw.get("categories"))
    known = {category.id for category in categories}
    sender_rules = tuple(
        SenderRule(address=key, category_id=value)
        for key, value in _parse_rule_map(raw.get("sender_rules"), "sender_rules", normalize_address)
    )
    domain_rules = tuple(
        DomainRule(domain=key, category_id=value)
        for key, value in _parse_rule_map(raw.get("domain_rules"), "domain_rules", normalize_domain)
    )
    for rule in (*sender_rules, *domain_rules):
        if rule.category_id not in known:
            LOGGER.warning("Rule %s points at unknown category '%s'", rule, rule.category_id)
    policies = _parse_policies(raw.get("policies"), known)
    return RuleSet(
        categories=categories,
        sender_rules=sender_rules,
        domain_rules=domain_rules,
        policies=policies,
    )


def build_context(
    rules: RuleSet,
    *,
    now: datetime,
    classification: ClassificationConfig | None = None,
) -> DecisionContext:
    """Resolve a rule set into the immutable context the engine consumes."""

    classification = classification or ClassificationConfig()
    if now.tzinfo is None:
        raise ConfigurationError("Decision context requires a timezone-aware 'now'.")
    categories = {category.id: category for category in rules.categories}
    return DecisionContext(
        now=now,
        categories=categories,
        policies={policy.category_id: policy for policy in rules.policies},
        sender_rules={rule.address: rule.category_id for rule in rules.sender_rules},
        domain_rules={rule.domain: rule.category_id for rule in rules.domain_rules},
        default_category_id=_default_category_id(rules.categories),
        classification_enabled=classification.enabled,
        signal_provenance=classification.provenance,
        min_signal_confidence=classification.min_confidence,
    )


def context_factory(
    store: RuleStore,
    classification: ClassificationConfig | None = None,
) -> Callable[[str, datetime], DecisionContext]:
    """Return a callable building a fresh context for an account at a given time."""

    def factory(account: str, now: datetime) -> DecisionContext:
        return build_context(store.load(account), now=now, classification=classification)

    return factory


def parse_policy(category_id: str, raw: Any) -> CategoryPolicy:
    """Parse one policy value without rejecting bad amounts or kinds.

    Accepted forms are a bare kind (``digest``), a call (``archive_after_days(7)``)
    or a mapping (``{action: archive_after_hours, hours: 48}``). Unknown kinds
    and malformed amounts are preserved for the engine to report.
    """

    amount: object = None
    if isinstance(raw, dict):
        raw_kind = raw.get("action", raw.get("kind"))
        if not isinstance(raw_kind, str):
            raise ConfigError(f"policies.{category_id} requires an 'action' string.")
        kind = _policy_kind(raw_kind)
        amount_key = _AMOUNT_KEYS.get(kind)
        if amount_key is not None:
            amount = raw.get(amount_key, raw.get("amount"))
    elif isinstance(raw, str):
        raw_kind = raw
        match = _CALL_RE.match(raw)
        if match:
            raw_kind, argument = match.group(1), match.group(2)
            amount = _literal_amount(argument)
        kind = _policy_kind(raw_kind)
    else:
        raise ConfigError(f"policies.{category_id} must be a string or mapping.")

    normalized = raw_kind.strip().lower()
    if normalized in _LEGACY_KINDS:
        kind, default_amount = _LEGACY_KINDS[normalized]
        if amount is None:
            amount = default_amount
    return CategoryPolicy(category_id=category_id, kind=kind, amount=amount, raw_kind=raw_kind.strip())


def _policy_kind(raw_kind: str) -> PolicyKind:
    normalized = raw_kind.strip().lower()
    if normalized in _LEGACY_KINDS:
        return _LEGACY_KINDS[normalized][0]
    try:
        kind = PolicyKind(normalized)
    except ValueError:
        return PolicyKind.UNKNOWN
    return kind


def _literal_amount(text: str) -> object:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return int(stripped)
    except ValueError:
        pass
    try:
        return float(stripped)
    except ValueError:
        return stripped


def _parse_categories(value: Any) -> tuple[Category, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError("categories must be a list.")
    categories: list[Category] = []
    seen: set[str] = set()
    for idx, entry in enumerate(value, start=1):
        if not isinstance(entry, dict):
            raise ConfigError(f"categories[{idx}] must be a mapping.")
        category_id = str(entry.get("id") or "").strip()
        if not category_id:
            raise ConfigError(f"categories[{idx}] requires 'id'.")
        if category_id in seen:
            raise ConfigError(f"categories[{idx}] duplicates id '{category_id}'.")
        seen.add(category_id)
        parent = entry.get("parent")
        categories.append(
            Category(
                id=category_id,
                name=str(entry.get("name") or category_id),
                parent_id=str(parent) if parent else None,
                protected=bool(entry.get("protected", False)),
            )
        )
    return tuple(categories)


def _parse_rule_map(value: Any, field_name: str, normalizer) -> list[tuple[str, str]]:
    if value is None:
        return []
    if not isinstance(value, dict):
        raise ConfigError(f"{field_name} must be a mapping.")
    entries: dict[str, str] = {}
    for raw_key, raw_category in value.items():
        key = normalizer(str(raw_key))
        if not key:
            raise ConfigError(f"{field_name} has an invalid key: {raw_key!r}")
        if raw_category is None or not str(raw_category).strip():
            raise ConfigError(f"{field_name}.{raw_key} must name a category.")
        if key in entries:
            raise ConfigError(f"{field_name} defines '{key}' more than once.")
        entries[key] = str(raw_category).strip()
    return sorted(entries.items())


def _parse_policies(value: Any, known: set[str]) -> tuple[CategoryPolicy, ...]:
    if value is None:
        return ()
    if not isinstance(value, dict):
        raise ConfigError("policies must be a mapping of category id to policy.")
    policies: list[CategoryPolicy] = []
    seen: set[str] = set()
    for category_id, raw in value.items():
        category_id = str(category_id).strip()
        if category_id not in known:
            raise ConfigError(f"policies.{category_id} refers to an unknown category.")
        if category_id in seen:
            raise ConfigError(f"policies defines '{category_id}' more than once.")
        seen.add(category_id)
        policies.append(parse_policy(category_id, raw))
    return tuple(policies)


def _default_category_id(categories: tuple[Category, ...]) -> str | None:
    for category in categories:
        if category.name.strip().lower() == DEFAULT_CATEGORY_NAME.lower():
            return category.id
    return None


__all__ = [
    "ConfigurationError",
    "RuleSet",
    "RuleStore",
    "build_context",
    "context_factory",
    "load_rule_file",
    "parse_policy",
    "parse_rules",
]
