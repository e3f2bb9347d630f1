"""Append-only audit ledger with single-entry and whole-run rollback."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .logging import run_context
from .mailbox import MailboxClient, MailboxError
from .types import ActionType, ItemError, RollbackStatus

LOGGER = logging.getLogger(__name__)

LEDGER_FILENAME = "audit.jsonl"


class RollbackConflictError(RuntimeError):
    """Rollback refused for a reason retrying will not fix."""

    retryable = False

    def __init__(self, message: str, *, entry_id: str) -> None:
        super().__init__(message)
        self.entry_id = entry_id


class EntryNotFoundError(RollbackConflictError):
    pass


class AlreadyRevertedError(RollbackConflictError):
    pass


class RollbackInProgressError(RollbackConflictError):
    pass


class LedgerError(RuntimeError):
    """Raised when the ledger file cannot be read."""


@dataclass(frozen=True)
class AuditEntry:
    """One executed mutation."""

    id: str
    account: str
    item_id: str
    action_type: ActionType
    reason: str
    before_labels: frozenset[str]
    after_labels: frozenset[str]
    created_at: datetime
    run_id: str | None = None
    confidence: float | None = None
    status: RollbackStatus = RollbackStatus.APPLIED
    reverted_at: datetime | None = None

    @property
    def added_labels(self) -> frozenset[str]:
        return self.after_labels - self.before_labels

    def to_record(self) -> dict[str, Any]:
        return {
            "type": "entry",
            "id": self.id,
            "account": self.account,
            "item_id": self.item_id,
            "run_id": self.run_id,
            "action_type": self.action_type.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "before_labels": sorted(self.before_labels),
            "after_labels": sorted(self.after_labels),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AuditEntry:
        confidence = record.get("confidence")
        return cls(
            id=str(record["id"]),
            account=str(record["account"]),
            item_id=str(record["item_id"]),
            run_id=record.get("run_id"),
            action_type=ActionType(record["action_type"]),
            reason=str(record.get("reason") or ""),
            confidence=float(confidence) if confidence is not None else None,
            before_labels=frozenset(record.get("before_labels") or ()),
            after_labels=frozenset(record.get("after_labels") or ()),
            created_at=datetime.fromisoformat(record["created_at"]),
        )


@dataclass(frozen=True)
class PendingEntry:
    """Input for ``record_actions`` when a batch is written at once."""

    account: str
    item_id: str
    action_type: ActionType
    reason: str
    before_labels: frozenset[str]
    after_labels: frozenset[str]
    run_id: str | None = None
    confidence: float | None = None


@dataclass
class RollbackReport:
    run_id: str
    reverted: int = 0
    errors: list[ItemError] = field(default_factory=list)


class AuditLedger:
    """JSON-lines ledger of executed mutations.

    The file holds two record types: ``entry`` lines written once per
    mutation and ``status`` lines written once per rollback. State is rebuilt
    by folding the file on open, so nothing is ever rewritten in place.
    """

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser()
        self._lock = threading.Lock()
        self._entries: dict[str, AuditEntry] = {}
        self._in_progress: set[str] = set()
        self._load_existing()

    @classmethod
    def in_dir(cls, root_dir: Path) -> AuditLedger:
        return cls(root_dir.expanduser() / LEDGER_FILENAME)

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record_action(
        self,
        *,
        account: str,
        item_id: str,
        action_type: ActionType,
        reason: str,
        before_labels: Iterable[str],
        after_labels: Iterable[str],
        run_id: str | None = None,
        confidence: float | None = None,
    ) -> AuditEntry:
        """Append a new ``applied`` entry and return it."""

        pending = PendingEntry(
            account=account,
            item_id=item_id,
            action_type=action_type,
            reason=reason,
            before_labels=frozenset(before_labels),
            after_labels=frozenset(after_labels),
            run_id=run_id,
            confidence=confidence,
        )
        return self.record_actions([pending])[0]

    def record_actions(self, pending: Iterable[PendingEntry]) -> list[AuditEntry]:
        now = _utcnow()
        entries = [
            AuditEntry(
                id=uuid.uuid4().hex,
                account=item.account,
                item_id=item.item_id,
                run_id=item.run_id,
                action_type=item.action_type,
                reason=item.reason,
                confidence=item.confidence,
                before_labels=item.before_labels,
                after_labels=item.after_labels,
                created_at=now,
            )
            for item in pending
        ]
        if not entries:
            return []
        with self._lock:
            self._append_records([entry.to_record() for entry in entries])
            for entry in entries:
                self._entries[entry.id] = entry
        for entry in entries:
            LOGGER.info(
                "Recorded %s of %s (entry=%s, before=%s, after=%s)",
                entry.action_type.value,
                entry.item_id,
                entry.id,
                sorted(entry.before_labels),
                sorted(entry.after_labels),
            )
        return entries

    def get(self, entry_id: str) -> AuditEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def entries(self, account: str | None = None) -> list[AuditEntry]:
        with self._lock:
            selected = [
                entry
                for entry in self._entries.values()
                if account is None or entry.account == account
            ]
        return sorted(selected, key=lambda entry: (entry.created_at, entry.id))

    def entries_for_run(
        self,
        run_id: str,
        status: RollbackStatus | None = None,
    ) -> list[AuditEntry]:
        return [
            entry
            for entry in self.entries()
            if entry.run_id == run_id and (status is None or entry.status is status)
        ]

    def processed_item_ids(self, account: str) -> frozenset[str]:
        """Item ids with an applied archive or spam entry for ``account``."""

        with self._lock:
            return frozenset(
                entry.item_id
                for entry in self._entries.values()
                if entry.account == account and entry.status is RollbackStatus.APPLIED
            )

    def rollback_entry(
        self,
        entry_id: str,
        mailbox: MailboxClient,
        *,
        timeout: float | None = None,
    ) -> AuditEntry:
        """Invert one applied entry against the mailbox's current labels.

        Labels present before the action but missing now are re-added; labels
        the action added are removed; anything else the item gained since is
        left alone.
        """

        entry = self._claim(entry_id)
        try:
            current = mailbox.get_labels(entry.item_id, timeout=timeout)
            add, remove = rollback_delta(entry, current)
            if add or remove:
                mailbox.modify_labels(entry.item_id, add=add, remove=remove, timeout=timeout)
            reverted = replace(entry, status=RollbackStatus.REVERTED, reverted_at=_utcnow())
            with self._lock:
                self._append_records(
                    [
                        {
                            "type": "status",
                            "id": entry.id,
                            "status": RollbackStatus.REVERTED.value,
                            "at": reverted.reverted_at.isoformat(),
                        }
                    ]
                )
                self._entries[entry.id] = reverted
        finally:
            with self._lock:
                self._in_progress.discard(entry_id)
        LOGGER.info(
            "Reverted %s of %s (entry=%s, +%s -%s)",
            entry.action_type.value,
            entry.item_id,
            entry.id,
            sorted(add),
            sorted(remove),
        )
        return reverted

    def rollback_run(
        self,
        run_id: str,
        mailbox: MailboxClient,
        *,
        timeout: float | None = None,
    ) -> RollbackReport:
        """Revert every applied entry of a run, continuing past failures."""

        report = RollbackReport(run_id=run_id)
        with run_context(run_id):
            for entry in self.entries_for_run(run_id, RollbackStatus.APPLIED):
                try:
                    self.rollback_entry(entry.id, mailbox, timeout=timeout)
                except RollbackConflictError as exc:
                    # Reverted concurrently by someone else; nothing left to do.
                    LOGGER.debug("Skipping entry %s of run %s: %s", entry.id, run_id, exc)
                    continue
                except MailboxError as exc:
                    LOGGER.warning("Rollback of %s failed: %s", entry.item_id, exc)
                    report.errors.append(
                        ItemError(item_id=entry.item_id, message=str(exc), kind=exc.kind)
                    )
                    continue
                report.reverted += 1
        LOGGER.info(
            "Rollback of run %s reverted %s entr%s with %s error(s)",
            run_id,
            report.reverted,
            "y" if report.reverted == 1 else "ies",
            len(report.errors),
        )
        return report

    def _claim(self, entry_id: str) -> AuditEntry:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise EntryNotFoundError(f"Audit entry not found: {entry_id}", entry_id=entry_id)
            if entry.status is RollbackStatus.REVERTED:
                raise AlreadyRevertedError(f"Audit entry already reverted: {entry_id}", entry_id=entry_id)
            if entry_id in self._in_progress:
                raise RollbackInProgressError(
                    f"Rollback already in progress for entry: {entry_id}", entry_id=entry_id
                )
            self._in_progress.add(entry_id)
            return entry

    def _append_records(self, records: list[dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = "".join(json.dumps(record, separators=(",", ":")) + "\n" for record in records)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(payload)

    def _load_existing(self) -> None:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    self._apply_record(json.loads(stripped))
                except (ValueError, KeyError, TypeError) as exc:
                    raise LedgerError(f"{self._path}:{lineno}: unreadable ledger record: {exc}") from exc

    def _apply_record(self, record: dict[str, Any]) -> None:
        kind = record.get("type")
        if kind == "entry":
            entry = AuditEntry.from_record(record)
            self._entries[entry.id] = entry
        elif kind == "status":
            entry = self._entries.get(record["id"])
            if entry is None:
                LOGGER.warning("Ledger status record for unknown entry %s", record["id"])
                return
            self._entries[entry.id] = replace(
                entry,
                status=RollbackStatus(record["status"]),
                reverted_at=datetime.fromisoformat(record["at"]),
            )
        else:
            raise ValueError(f"unknown record type {kind!r}")


def rollback_delta(entry: AuditEntry, current: frozenset[str]) -> tuple[set[str], set[str]]:
    """Return (add, remove) restoring ``entry.before_labels`` over ``current``."""

    add = {label for label in entry.before_labels if label not in current}
    remove = {label for label in entry.added_labels if label in current}
    return add, remove


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "AlreadyRevertedError",
    "AuditEntry",
    "AuditLedger",
    "EntryNotFoundError",
    "LedgerError",
    "PendingEntry",
    "RollbackConflictError",
    "RollbackInProgressError",
    "RollbackReport",
    "rollback_delta",
]
