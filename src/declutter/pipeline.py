"""Execution pipeline: preview, bounded execution and age-based bulk archiving."""

from __future__ import annotations

import contextvars
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .config import ConfigError, ExecutionLimits
from .decision import (
    DecisionContext,
    decide,
    decision_confidence,
    is_eligible,
    policy_delay,
    summarize,
)
from .items import ItemSource, ScanResult, scan_items
from .ledger import AuditEntry, AuditLedger, PendingEntry
from .logging import run_context
from .mailbox import MailboxClient, MailboxError
from .policies import ConfigurationError
from .types import (
    INBOX_LABEL,
    SPAM_LABEL,
    ActionType,
    Decision,
    DispositionAction,
    Item,
    ItemError,
)

LOGGER = logging.getLogger(__name__)

MIN_ARCHIVE_DAYS = 1
MAX_ARCHIVE_DAYS = 365

ContextFactory = Callable[[str, datetime], DecisionContext]
MailboxFactory = Callable[[str], MailboxClient]


@dataclass
class PreviewReport:
    """Read-only summary of what ``execute`` would do right now."""

    account: str
    total: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    oldest: datetime | None = None
    newest: datetime | None = None
    protected_blocked: int = 0
    scanned: int = 0
    truncated: bool = False

    def record(self, item: Item, decision: Decision) -> None:
        self.total += 1
        key = decision.category_id or "-"
        self.by_category[key] = self.by_category.get(key, 0) + 1
        if self.oldest is None or item.received_at < self.oldest:
            self.oldest = item.received_at
        if self.newest is None or item.received_at > self.newest:
            self.newest = item.received_at


@dataclass
class RunReport:
    """Outcome of one execution run for one account."""

    account: str
    run_id: str
    processed: int = 0
    eligible: int = 0
    scanned: int = 0
    truncated: bool = False
    remaining: int | None = None
    dry_run: bool = False
    errors: list[ItemError] = field(default_factory=list)
    entries: list[AuditEntry] = field(default_factory=list)


@dataclass(frozen=True)
class AccountRun:
    """Per-account result of ``execute_accounts``; exactly one field is set."""

    account: str
    report: RunReport | None = None
    error: Exception | None = None


class ExecutionPipeline:
    """Turns decisions into audited mailbox mutations for one or more accounts."""

    def __init__(
        self,
        *,
        context_factory: ContextFactory,
        item_source: ItemSource,
        mailbox_for: MailboxFactory,
        ledger: AuditLedger,
        limits: ExecutionLimits | None = None,
        marker_label: str,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._context_factory = context_factory
        self._items = item_source
        self._mailbox_for = mailbox_for
        self._ledger = ledger
        self._limits = limits or ExecutionLimits()
        self._marker_label = marker_label
        self._clock = clock or _utcnow
        self._sleep = sleep

    @property
    def limits(self) -> ExecutionLimits:
        return self._limits

    def context(self, account: str, now: datetime | None = None) -> DecisionContext:
        """Build the decision context for ``account``, raising ConfigurationError."""

        now = now or self._clock()
        try:
            return self._context_factory(account, now)
        except ConfigurationError:
            raise
        except ConfigError as exc:
            raise ConfigurationError(f"Cannot build context for '{account}': {exc}") from exc

    def preview(self, account: str) -> PreviewReport:
        """Count what would be archived or moved to spam, without side effects."""

        now = self._clock()
        context = self.context(account, now)
        report = PreviewReport(account=account)
        scan = ScanResult()
        for item in scan_items(
            self._items,
            account,
            page_size=self._limits.page_size,
            max_scan=self._limits.max_scan,
            result=scan,
            exclude=self._ledger.processed_item_ids(account),
        ):
            decision = decide(item, context)
            if is_eligible(decision, now):
                report.record(item, decision)
            elif decision.protection_blocked and _blocked_is_due(decision, item, context, now):
                report.protected_blocked += 1
        report.scanned = scan.scanned
        report.truncated = scan.truncated
        LOGGER.info(
            "Preview for '%s': %s eligible, %s blocked by protection (%s scanned%s)",
            account,
            report.total,
            report.protected_blocked,
            report.scanned,
            ", truncated" if report.truncated else "",
        )
        return report

    def execute(self, account: str, *, recount: bool = True) -> RunReport:
        """Apply up to ``max_per_run`` eligible actions and audit each one."""

        now = self._clock()
        context = self.context(account, now)
        report = RunReport(account=account, run_id=uuid.uuid4().hex)
        scan = ScanResult()
        selected: list[tuple[Item, Decision]] = []
        for item in scan_items(
            self._items,
            account,
            page_size=self._limits.page_size,
            max_scan=self._limits.max_scan,
            result=scan,
            exclude=self._ledger.processed_item_ids(account),
        ):
            decision = decide(item, context)
            LOGGER.debug("Item %s: %s", item.id, summarize(decision, context))
            if not is_eligible(decision, now):
                continue
            selected.append((item, decision))
            if len(selected) >= self._limits.max_per_run:
                break
        report.scanned = scan.scanned
        report.truncated = scan.truncated
        report.eligible = len(selected)

        if selected:
            with run_context(report.run_id):
                self._apply(account, selected, context, report)
        if recount:
            report.remaining = self.remaining_eligible(account, context)
        LOGGER.info(
            "Run %s for '%s': %s applied, %s failed, %s remaining",
            report.run_id,
            account,
            report.processed,
            len(report.errors),
            "?" if report.remaining is None else report.remaining,
        )
        return report

    def remaining_eligible(self, account: str, context: DecisionContext) -> int:
        """Count unprocessed eligible items, scanning only old enough arrivals."""

        horizon = context.min_eligibility_horizon()
        if horizon is None:
            return 0
        scan = ScanResult()
        remaining = 0
        for item in scan_items(
            self._items,
            account,
            page_size=self._limits.page_size,
            max_scan=self._limits.max_scan,
            result=scan,
            exclude=self._ledger.processed_item_ids(account),
            received_before=context.now - horizon,
        ):
            if is_eligible(decide(item, context), context.now):
                remaining += 1
        return remaining

    def execute_accounts(self, accounts: Iterable[str], *, recount: bool = True) -> list[AccountRun]:
        """Run ``execute`` for several accounts concurrently."""

        names = list(dict.fromkeys(accounts))
        if not names:
            return []
        results: dict[str, AccountRun] = {}
        with ThreadPoolExecutor(max_workers=len(names)) as executor:
            futures = {
                executor.submit(self.execute, name, recount=recount): name for name in names
            }
            for future, name in futures.items():
                try:
                    results[name] = AccountRun(account=name, report=future.result())
                except Exception as exc:
                    LOGGER.error("Run for account '%s' aborted: %s", name, exc)
                    results[name] = AccountRun(account=name, error=exc)
        return [results[name] for name in names]

    def archive_older_than(self, account: str, days: int, *, dry_run: bool = False) -> RunReport:
        """Archive every unprotected inbox item older than ``days`` days."""

        if isinstance(days, bool) or not isinstance(days, int):
            raise ValueError(f"days must be an integer, got {days!r}")
        if not MIN_ARCHIVE_DAYS <= days <= MAX_ARCHIVE_DAYS:
            raise ValueError(
                f"days must be between {MIN_ARCHIVE_DAYS} and {MAX_ARCHIVE_DAYS}, got {days}"
            )

        now = self._clock()
        context = self.context(account, now).with_age_policy(days)
        report = RunReport(account=account, run_id=uuid.uuid4().hex, dry_run=dry_run)
        scan = ScanResult()
        selected: list[tuple[Item, Decision]] = []
        for item in scan_items(
            self._items,
            account,
            page_size=self._limits.page_size,
            max_scan=self._limits.max_scan,
            result=scan,
            exclude=self._ledger.processed_item_ids(account),
            received_before=now - timedelta(days=days),
        ):
            decision = decide(item, context)
            if decision.action is DispositionAction.ARCHIVE and is_eligible(decision, now):
                selected.append((item, decision))
        report.scanned = scan.scanned
        report.truncated = scan.truncated
        report.eligible = len(selected)
        if dry_run or not selected:
            LOGGER.info(
                "Age archive for '%s' (%sd): %s eligible%s",
                account,
                days,
                report.eligible,
                " (dry run)" if dry_run else "",
            )
            return report

        mailbox = self._mailbox_for(account)
        try:
            marker_id = mailbox.resolve_label(self._marker_label, timeout=self._limits.timeout)
        except MailboxError as exc:
            LOGGER.warning("Cannot resolve marker label %s: %s", self._marker_label, exc)
            report.errors.extend(
                ItemError(item_id=item.id, message=str(exc), kind=exc.kind) for item, _ in selected
            )
            return report

        chunk_size = self._limits.bulk_batch_size
        with run_context(report.run_id):
            for start in range(0, len(selected), chunk_size):
                if start:
                    self._sleep(self._limits.batch_delay)
                chunk = selected[start : start + chunk_size]
                self._bulk_archive(account, chunk, marker_id, context, report)
        LOGGER.info(
            "Age archive run %s for '%s' (%sd): %s archived, %s failed",
            report.run_id,
            account,
            days,
            report.processed,
            len(report.errors),
        )
        return report

    def _bulk_archive(
        self,
        account: str,
        chunk: Sequence[tuple[Item, Decision]],
        marker_id: str,
        context: DecisionContext,
        report: RunReport,
    ) -> None:
        mailbox = self._mailbox_for(account)
        ids = [item.id for item, _ in chunk]
        try:
            mailbox.batch_modify(
                ids, add={marker_id}, remove={INBOX_LABEL}, timeout=self._limits.timeout
            )
        except MailboxError as exc:
            LOGGER.warning("Bulk archive of %s items failed: %s", len(ids), exc)
            report.errors.extend(ItemError(item_id=item_id, message=str(exc), kind=exc.kind) for item_id in ids)
            return
        pending = [
            PendingEntry(
                account=account,
                item_id=item.id,
                action_type=ActionType.ARCHIVE,
                reason=summarize(decision, context),
                before_labels=item.labels,
                after_labels=(item.labels - {INBOX_LABEL}) | {marker_id},
                run_id=report.run_id,
                confidence=decision_confidence(decision),
            )
            for item, decision in chunk
        ]
        try:
            entries = self._ledger.record_actions(pending)
        except OSError as exc:
            LOGGER.error("Archived %s items but could not audit them: %s", len(ids), exc)
            report.errors.extend(ItemError(item_id=item_id, message=str(exc), kind="audit") for item_id in ids)
            return
        report.entries.extend(entries)
        report.processed += len(entries)

    def _apply(
        self,
        account: str,
        selected: list[tuple[Item, Decision]],
        context: DecisionContext,
        report: RunReport,
    ) -> None:
        mailbox = self._mailbox_for(account)
        marker_id: str | None = None
        marker_error: MailboxError | None = None
        if any(decision.action is DispositionAction.ARCHIVE for _, decision in selected):
            try:
                marker_id = mailbox.resolve_label(self._marker_label, timeout=self._limits.timeout)
            except MailboxError as exc:
                LOGGER.warning("Cannot resolve marker label %s: %s", self._marker_label, exc)
                marker_error = exc

        workable: list[tuple[Item, Decision]] = []
        for item, decision in selected:
            if decision.action is DispositionAction.ARCHIVE and marker_error is not None:
                report.errors.append(
                    ItemError(item_id=item.id, message=str(marker_error), kind=marker_error.kind)
                )
            else:
                workable.append((item, decision))

        window = self._limits.concurrency
        with ThreadPoolExecutor(max_workers=window) as executor:
            for start in range(0, len(workable), window):
                if start:
                    self._sleep(self._limits.batch_delay)
                batch = workable[start : start + window]
                futures = [
                    executor.submit(
                        contextvars.copy_context().run,
                        self._mutate,
                        mailbox,
                        account,
                        item,
                        decision,
                        marker_id,
                        context,
                        report.run_id,
                    )
                    for item, decision in batch
                ]
                for (item, _), future in zip(batch, futures):
                    try:
                        entry = future.result()
                    except MailboxError as exc:
                        LOGGER.warning("Failed to apply action to %s: %s", item.id, exc)
                        report.errors.append(ItemError(item_id=item.id, message=str(exc), kind=exc.kind))
                        continue
                    except OSError as exc:
                        LOGGER.error("Applied action to %s but could not audit it: %s", item.id, exc)
                        report.errors.append(ItemError(item_id=item.id, message=str(exc), kind="audit"))
                        continue
                    report.entries.append(entry)
                    report.processed += 1

    def _mutate(
        self,
        mailbox: MailboxClient,
        account: str,
        item: Item,
        decision: Decision,
        marker_id: str | None,
        context: DecisionContext,
        run_id: str,
    ) -> AuditEntry:
        timeout = self._limits.timeout
        before = mailbox.get_labels(item.id, timeout=timeout)
        if decision.action is DispositionAction.SPAM:
            action_type = ActionType.SPAM
            add = {SPAM_LABEL}
        else:
            action_type = ActionType.ARCHIVE
            add = {marker_id} if marker_id else set()
        remove = {INBOX_LABEL}
        mailbox.modify_labels(item.id, add=add, remove=remove, timeout=timeout)
        after = (before - remove) | add
        return self._ledger.record_action(
            account=account,
            item_id=item.id,
            action_type=action_type,
            reason=summarize(decision, context),
            before_labels=before,
            after_labels=after,
            run_id=run_id,
            confidence=decision_confidence(decision),
        )


def _blocked_is_due(decision: Decision, item: Item, context: DecisionContext, now: datetime) -> bool:
    """Whether the action protection blocked would have been due by now."""

    policy = context.policies.get(decision.category_id or "")
    delay = policy_delay(policy) if policy is not None else None
    return delay is not None and item.received_at + delay <= now


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "AccountRun",
    "ExecutionPipeline",
    "MAX_ARCHIVE_DAYS",
    "MIN_ARCHIVE_DAYS",
    "PreviewReport",
    "RunReport",
]
