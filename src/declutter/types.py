"""Core immutable data structures used throughout Declutter."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

INBOX_LABEL = "INBOX"
SPAM_LABEL = "SPAM"


class DispositionAction(str, Enum):
    """Effect chosen for an item by the decision engine."""

    NONE = "NONE"
    LABEL_ONLY = "LABEL_ONLY"
    DIGEST = "DIGEST"
    ARCHIVE = "ARCHIVE"
    SPAM = "SPAM"

    @property
    def is_mutating(self) -> bool:
        return self in (DispositionAction.ARCHIVE, DispositionAction.SPAM)


class PolicyKind(str, Enum):
    """Disposition policy kinds a category may carry."""

    NONE = "none"
    LABEL_ONLY = "label_only"
    DIGEST = "digest"
    ARCHIVE_AFTER_HOURS = "archive_after_hours"
    ARCHIVE_AFTER_DAYS = "archive_after_days"
    MOVE_TO_SPAM = "move_to_spam"
    UNKNOWN = "unknown"


class DecisionSource(str, Enum):
    """Where a candidate category or an override came from."""

    SENDER_RULE = "sender_rule"
    DOMAIN_RULE = "domain_rule"
    EXTERNAL_SIGNAL = "external_signal"
    DEFAULT = "default"
    NONE = "none"
    PROTECTED_CATEGORY = "protected_category"
    POLICY = "policy"


class ActionType(str, Enum):
    """Mutation kinds recorded in the audit ledger."""

    ARCHIVE = "ARCHIVE"
    SPAM = "SPAM"


class RollbackStatus(str, Enum):
    APPLIED = "applied"
    REVERTED = "reverted"


@dataclass(frozen=True)
class Category:
    """Category definition. ``parent_id`` is for display only."""

    id: str
    name: str
    parent_id: str | None = None
    protected: bool = False


@dataclass(frozen=True)
class SenderRule:
    address: str
    category_id: str


@dataclass(frozen=True)
class DomainRule:
    domain: str
    category_id: str


@dataclass(frozen=True)
class ExternalSignal:
    """Opaque classification attached upstream."""

    category_id: str
    confidence: float | None = None
    provenance: str | None = None


@dataclass(frozen=True)
class CategoryPolicy:
    """Disposition policy for one category.

    ``amount`` holds the hour or day count for archiving kinds and is kept
    exactly as configured, so malformed values can be reported instead of
    being coerced away. ``raw_kind`` keeps the configured spelling.
    """

    category_id: str
    kind: PolicyKind
    amount: object = None
    raw_kind: str | None = None

    def describe(self) -> str:
        label = self.raw_kind or self.kind.value
        if self.kind in (PolicyKind.ARCHIVE_AFTER_HOURS, PolicyKind.ARCHIVE_AFTER_DAYS):
            return f"{label}({self.amount!r})"
        return label


@dataclass(frozen=True)
class Item:
    """Inbound mailbox item as seen by the engine."""

    id: str
    account: str
    received_at: datetime
    sender: str
    sender_domain: str | None = None
    labels: frozenset[str] = field(default_factory=frozenset)
    signal: ExternalSignal | None = None

    @property
    def in_inbox(self) -> bool:
        return INBOX_LABEL in self.labels


@dataclass(frozen=True)
class Candidate:
    """A category proposed by one source during precedence resolution."""

    source: DecisionSource
    category_id: str
    confidence: float | None = None


@dataclass(frozen=True)
class Override:
    """A source or action that was set aside, with the reason why."""

    source: DecisionSource
    reason: str
    blocked_action: DispositionAction | None = None


@dataclass(frozen=True)
class Trace:
    winner: DecisionSource
    candidates: tuple[Candidate, ...] = ()
    overrides: tuple[Override, ...] = ()


@dataclass(frozen=True)
class ItemError:
    """A per-item failure reported back to the caller."""

    item_id: str
    message: str
    kind: str = "transient"

    def __str__(self) -> str:
        return f"{self.item_id}: {self.message}"


@dataclass(frozen=True)
class Decision:
    """Engine output for one item. Consumed immediately, never stored."""

    category_id: str | None
    action: DispositionAction
    scheduled_at: datetime | None
    trace: Trace

    @property
    def protection_blocked(self) -> bool:
        return any(
            override.source is DecisionSource.PROTECTED_CATEGORY
            for override in self.trace.overrides
        )


__all__ = [
    "INBOX_LABEL",
    "SPAM_LABEL",
    "ActionType",
    "Candidate",
    "Category",
    "CategoryPolicy",
    "Decision",
    "DecisionSource",
    "DispositionAction",
    "DomainRule",
    "ExternalSignal",
    "Item",
    "ItemError",
    "Override",
    "PolicyKind",
    "RollbackStatus",
    "SenderRule",
    "Trace",
]
