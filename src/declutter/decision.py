"""Deterministic category and disposition selection.

Precedence for the category is sender rule, then domain rule, then a trusted
external signal, then the default category. The disposition is resolved in a
second pass from the winning category's policy only. ``decide`` performs no
I/O and reads nothing outside its arguments, so preview and execution always
agree for the same item and context.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType

from .addresses import domain_from_address, domain_lookup_keys, normalize_address
from .types import (
    Candidate,
    Category,
    CategoryPolicy,
    Decision,
    DecisionSource,
    DispositionAction,
    Item,
    Override,
    PolicyKind,
    Trace,
)

DEFAULT_CATEGORY_NAME = "Other"

_RULE_CONFIDENCE = 1.0
_SOURCE_LABELS = {
    DecisionSource.SENDER_RULE: "sender rule",
    DecisionSource.DOMAIN_RULE: "domain rule",
    DecisionSource.EXTERNAL_SIGNAL: "external signal",
    DecisionSource.DEFAULT: "default category",
}


@dataclass(frozen=True)
class DecisionContext:
    """Everything the engine may consult, resolved once per run."""

    now: datetime
    categories: Mapping[str, Category]
    policies: Mapping[str, CategoryPolicy] = field(default_factory=dict)
    sender_rules: Mapping[str, str] = field(default_factory=dict)
    domain_rules: Mapping[str, str] = field(default_factory=dict)
    default_category_id: str | None = None
    classification_enabled: bool = False
    signal_provenance: str = "classifier"
    min_signal_confidence: float | None = None
    # Applies only when no category resolves; used by age-based archiving.
    uncategorized_policy: CategoryPolicy | None = None

    def __post_init__(self) -> None:
        for name in ("categories", "policies", "sender_rules", "domain_rules"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def category_name(self, category_id: str | None) -> str | None:
        if category_id is None:
            return None
        category = self.categories.get(category_id)
        return category.name if category else None

    def with_age_policy(self, days: int) -> DecisionContext:
        """Return a copy where every category archives after ``days`` days."""

        policies = {
            category_id: CategoryPolicy(
                category_id=category_id,
                kind=PolicyKind.ARCHIVE_AFTER_DAYS,
                amount=days,
                raw_kind=f"archive_older_than_{days}d",
            )
            for category_id in self.categories
        }
        fallback = CategoryPolicy(
            category_id="",
            kind=PolicyKind.ARCHIVE_AFTER_DAYS,
            amount=days,
            raw_kind=f"archive_older_than_{days}d",
        )
        return replace(self, policies=policies, uncategorized_policy=fallback)

    def min_eligibility_horizon(self) -> timedelta | None:
        """Smallest item age at which any active policy can act.

        Returns None when no unprotected category carries a valid archive or
        spam policy, meaning nothing can become eligible.
        """

        horizons: list[timedelta] = []
        policies = list(self.policies.values())
        if self.uncategorized_policy is not None:
            policies.append(self.uncategorized_policy)
        for policy in policies:
            category = self.categories.get(policy.category_id)
            if category is not None and category.protected:
                continue
            delay = policy_delay(policy)
            if delay is not None:
                horizons.append(delay)
        return min(horizons) if horizons else None


def decide(item: Item, context: DecisionContext) -> Decision:
    """Return the fully explained decision for one item."""

    candidates: list[Candidate] = []
    rejected: list[Override] = []

    sender_category = _sender_candidate(item, context, candidates, rejected)
    domain_category = _domain_candidate(item, context, candidates, rejected)
    signal_category = _signal_candidate(item, context, candidates, rejected)

    ranked = [
        (DecisionSource.SENDER_RULE, sender_category),
        (DecisionSource.DOMAIN_RULE, domain_category),
        (DecisionSource.EXTERNAL_SIGNAL, signal_category),
    ]
    winner = DecisionSource.NONE
    category_id: str | None = None
    overrides: list[Override] = list(rejected)
    for source, proposed in ranked:
        if proposed is None:
            continue
        if category_id is None:
            winner, category_id = source, proposed
            continue
        overrides.append(
            Override(
                source=source,
                reason=(
                    f"{_SOURCE_LABELS[source]} proposed '{proposed}' but "
                    f"{_SOURCE_LABELS[winner]} '{category_id}' takes precedence"
                ),
            )
        )

    if category_id is None and context.default_category_id in context.categories:
        winner = DecisionSource.DEFAULT
        category_id = context.default_category_id
        candidates.append(Candidate(source=DecisionSource.DEFAULT, category_id=category_id))

    action, scheduled_at, policy_overrides = _resolve_disposition(item, category_id, context)
    overrides.extend(policy_overrides)

    return Decision(
        category_id=category_id,
        action=action,
        scheduled_at=scheduled_at,
        trace=Trace(winner=winner, candidates=tuple(candidates), overrides=tuple(overrides)),
    )


def is_eligible(decision: Decision, now: datetime) -> bool:
    """True when the decision mutates and its scheduled time has passed."""

    if not decision.action.is_mutating or decision.scheduled_at is None:
        return False
    return decision.scheduled_at <= now


def decision_confidence(decision: Decision) -> float | None:
    winner = decision.trace.winner
    if winner in (DecisionSource.SENDER_RULE, DecisionSource.DOMAIN_RULE):
        return _RULE_CONFIDENCE
    if winner is DecisionSource.EXTERNAL_SIGNAL:
        for candidate in decision.trace.candidates:
            if candidate.source is DecisionSource.EXTERNAL_SIGNAL:
                return candidate.confidence
    return None


def summarize(decision: Decision, context: DecisionContext | None = None) -> str:
    """Compact, stable reason string stored on audit entries."""

    name = context.category_name(decision.category_id) if context else None
    category = decision.category_id or "-"
    if name and name != category:
        category = f"{category} ({name})"
    parts = [
        f"action={decision.action.value}",
        f"category={category}",
        f"winner={decision.trace.winner.value}",
    ]
    if decision.trace.overrides:
        sources = ",".join(override.source.value for override in decision.trace.overrides)
        parts.append(f"overrides={sources}")
    return " ".join(parts)


def _sender_candidate(
    item: Item,
    context: DecisionContext,
    candidates: list[Candidate],
    rejected: list[Override],
) -> str | None:
    address = normalize_address(item.sender)
    if not address:
        return None
    category_id = context.sender_rules.get(address)
    if category_id is None:
        return None
    return _accept_rule(
        DecisionSource.SENDER_RULE, address, category_id, context, candidates, rejected
    )


def _domain_candidate(
    item: Item,
    context: DecisionContext,
    candidates: list[Candidate],
    rejected: list[Override],
) -> str | None:
    domain = item.sender_domain or domain_from_address(item.sender)
    for key in domain_lookup_keys(domain):
        category_id = context.domain_rules.get(key)
        if category_id is not None:
            return _accept_rule(
                DecisionSource.DOMAIN_RULE, key, category_id, context, candidates, rejected
            )
    return None


def _accept_rule(
    source: DecisionSource,
    key: str,
    category_id: str,
    context: DecisionContext,
    candidates: list[Candidate],
    rejected: list[Override],
) -> str | None:
    candidates.append(Candidate(source=source, category_id=category_id, confidence=_RULE_CONFIDENCE))
    if category_id not in context.categories:
        rejected.append(
            Override(
                source=source,
                reason=f"{_SOURCE_LABELS[source]} for '{key}' points at unknown category '{category_id}'",
            )
        )
        return None
    return category_id


def _signal_candidate(
    item: Item,
    context: DecisionContext,
    candidates: list[Candidate],
    rejected: list[Override],
) -> str | None:
    signal = item.signal
    if signal is None or not signal.category_id:
        return None
    candidates.append(
        Candidate(
            source=DecisionSource.EXTERNAL_SIGNAL,
            category_id=signal.category_id,
            confidence=signal.confidence,
        )
    )
    problem: str | None = None
    if not context.classification_enabled:
        problem = "classification is disabled"
    elif signal.provenance != context.signal_provenance:
        problem = f"provenance {signal.provenance!r} is not {context.signal_provenance!r}"
    elif signal.category_id not in context.categories:
        problem = f"unknown category '{signal.category_id}'"
    elif context.min_signal_confidence is not None and (
        signal.confidence is None or signal.confidence < context.min_signal_confidence
    ):
        problem = (
            f"confidence {signal.confidence} is below the "
            f"{context.min_signal_confidence} threshold"
        )
    if problem is not None:
        rejected.append(
            Override(
                source=DecisionSource.EXTERNAL_SIGNAL,
                reason=f"external signal '{signal.category_id}' not trusted: {problem}",
            )
        )
        return None
    return signal.category_id


def _resolve_disposition(
    item: Item,
    category_id: str | None,
    context: DecisionContext,
) -> tuple[DispositionAction, datetime | None, list[Override]]:
    if category_id is None:
        policy = context.uncategorized_policy
        category = None
    else:
        policy = context.policies.get(category_id)
        category = context.categories.get(category_id)
    if policy is None:
        return DispositionAction.NONE, None, []

    overrides: list[Override] = []
    action, scheduled_at, problem = _apply_policy(item, policy)
    if problem is not None:
        overrides.append(Override(source=DecisionSource.POLICY, reason=problem))

    if category is not None and category.protected and action.is_mutating:
        downgraded = DispositionAction.DIGEST
        overrides.append(
            Override(
                source=DecisionSource.PROTECTED_CATEGORY,
                reason=(
                    f"category '{category.name}' is protected; "
                    f"{action.value} downgraded to {downgraded.value}"
                ),
                blocked_action=action,
            )
        )
        return downgraded, None, overrides
    return action, scheduled_at, overrides


def _apply_policy(
    item: Item,
    policy: CategoryPolicy,
) -> tuple[DispositionAction, datetime | None, str | None]:
    kind = policy.kind
    if kind is PolicyKind.NONE:
        return DispositionAction.NONE, None, None
    if kind is PolicyKind.LABEL_ONLY:
        return DispositionAction.LABEL_ONLY, None, None
    if kind is PolicyKind.DIGEST:
        return DispositionAction.DIGEST, None, None
    if kind is PolicyKind.MOVE_TO_SPAM:
        return DispositionAction.SPAM, item.received_at, None
    if kind in (PolicyKind.ARCHIVE_AFTER_HOURS, PolicyKind.ARCHIVE_AFTER_DAYS):
        delay = policy_delay(policy)
        if delay is None:
            return (
                DispositionAction.NONE,
                None,
                f"malformed policy {policy.describe()} for category '{policy.category_id}': "
                "count must be a positive whole number",
            )
        return DispositionAction.ARCHIVE, item.received_at + delay, None
    label = policy.raw_kind if policy.raw_kind is not None else kind.value
    return (
        DispositionAction.NONE,
        None,
        f"unrecognized policy kind {label!r} for category '{policy.category_id}'",
    )


def policy_delay(policy: CategoryPolicy) -> timedelta | None:
    """Age at which ``policy`` acts, or None when it never mutates or is malformed."""

    if policy.kind is PolicyKind.MOVE_TO_SPAM:
        return timedelta(0)
    if policy.kind not in (PolicyKind.ARCHIVE_AFTER_HOURS, PolicyKind.ARCHIVE_AFTER_DAYS):
        return None
    count = _positive_count(policy.amount)
    if count is None:
        return None
    if policy.kind is PolicyKind.ARCHIVE_AFTER_HOURS:
        return timedelta(hours=count)
    return timedelta(days=count)


def _positive_count(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and math.isfinite(value) and value.is_integer() and value > 0:
        return int(value)
    return None


__all__ = [
    "DEFAULT_CATEGORY_NAME",
    "DecisionContext",
    "decide",
    "decision_confidence",
    "is_eligible",
    "policy_delay",
    "summarize",
]
