"""Paged access to synced mailbox items."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Collection, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .addresses import domain_from_address, normalize_domain
from .types import ExternalSignal, Item

LOGGER = logging.getLogger(__name__)

ITEMS_FILE_SUFFIX = ".jsonl"


class ItemSourceError(RuntimeError):
    """Raised when candidate items cannot be enumerated."""


@dataclass(frozen=True)
class ItemPage:
    items: list[Item]
    next_cursor: str | None


class ItemSource(Protocol):
    """Cursor-paged enumeration ordered by item id."""

    def fetch_page(
        self,
        account: str,
        *,
        cursor: str | None,
        limit: int,
        inbox_only: bool = True,
        exclude: Collection[str] = (),
        received_before: datetime | None = None,
    ) -> ItemPage: ...


@dataclass
class ScanResult:
    """Items yielded by ``scan_items`` plus bookkeeping about the scan."""

    scanned: int = 0
    truncated: bool = False


def scan_items(
    source: ItemSource,
    account: str,
    *,
    page_size: int,
    max_scan: int,
    result: ScanResult,
    exclude: Collection[str] = (),
    received_before: datetime | None = None,
) -> Iterator[Item]:
    """Walk the source page by page, stopping after ``max_scan`` items."""

    cursor: str | None = None
    while result.scanned < max_scan:
        limit = min(page_size, max_scan - result.scanned)
        try:
            page = source.fetch_page(
                account,
                cursor=cursor,
                limit=limit,
                inbox_only=True,
                exclude=exclude,
                received_before=received_before,
            )
        except ItemSourceError:
            raise
        except Exception as exc:
            raise ItemSourceError(f"Failed to enumerate items for '{account}': {exc}") from exc
        for item in page.items:
            result.scanned += 1
            yield item
        if page.next_cursor is None or not page.items:
            return
        cursor = page.next_cursor
    result.truncated = True
    LOGGER.info("Scan for account '%s' stopped at the %s item ceiling", account, max_scan)


class SnapshotItemSource:
    """Reads ``<items_dir>/<account>.jsonl`` snapshots written by the sync process.

    Each line is one JSON object with ``id``, ``received_at`` (ISO 8601),
    ``sender``, optional ``sender_domain``, ``labels`` and ``signal``. The
    file is re-read when its modification time changes.
    """

    def __init__(self, items_dir: Path) -> None:
        self._items_dir = items_dir.expanduser()
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[float, list[Item]]] = {}

    def path_for(self, account: str) -> Path:
        return self._items_dir / f"{account}{ITEMS_FILE_SUFFIX}"

    def fetch_page(
        self,
        account: str,
        *,
        cursor: str | None,
        limit: int,
        inbox_only: bool = True,
        exclude: Collection[str] = (),
        received_before: datetime | None = None,
    ) -> ItemPage:
        if limit <= 0:
            return ItemPage(items=[], next_cursor=None)
        excluded = exclude if isinstance(exclude, (set, frozenset)) else set(exclude)
        selected: list[Item] = []
        for item in self._load(account):
            if cursor is not None and item.id <= cursor:
                continue
            if inbox_only and not item.in_inbox:
                continue
            if item.id in excluded:
                continue
            if received_before is not None and item.received_at > received_before:
                continue
            selected.append(item)
            if len(selected) >= limit:
                return ItemPage(items=selected, next_cursor=item.id)
        return ItemPage(items=selected, next_cursor=None)

    def get(self, account: str, item_id: str) -> Item | None:
        """Return one item by id regardless of its labels."""

        for item in self._load(account):
            if item.id == item_id:
                return item
        return None

    def _load(self, account: str) -> list[Item]:
        path = self.path_for(account)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError as exc:
            raise ItemSourceError(f"No item snapshot for account '{account}': {path}") from exc
        with self._lock:
            cached = self._cache.get(account)
            if cached is not None and cached[0] == mtime:
                return cached[1]
            items = self._read(path, account)
            self._cache[account] = (mtime, items)
            return items

    def _read(self, path: Path, account: str) -> list[Item]:
        items: dict[str, Item] = {}
        with path.open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    item = item_from_record(json.loads(stripped), account)
                except (ValueError, TypeError, KeyError) as exc:
                    raise ItemSourceError(f"{path}:{lineno}: invalid item record: {exc}") from exc
                items[item.id] = item
        return sorted(items.values(), key=lambda entry: entry.id)


def item_from_record(record: dict[str, Any], account: str) -> Item:
    """Build an Item from a snapshot record."""

    item_id = str(record["id"]).strip()
    if not item_id:
        raise ValueError("item id cannot be empty")
    sender = str(record.get("sender") or record.get("from") or "")
    signal = None
    raw_signal = record.get("signal")
    if isinstance(raw_signal, dict) and raw_signal.get("category_id"):
        confidence = raw_signal.get("confidence")
        signal = ExternalSignal(
            category_id=str(raw_signal["category_id"]),
            confidence=float(confidence) if confidence is not None else None,
            provenance=raw_signal.get("provenance"),
        )
    return Item(
        id=item_id,
        account=str(record.get("account") or account),
        received_at=parse_timestamp(record["received_at"]),
        sender=sender,
        sender_domain=normalize_domain(record.get("sender_domain")) or domain_from_address(sender),
        labels=frozenset(str(label) for label in record.get("labels") or ()),
        signal=signal,
    )


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


__all__ = [
    "ItemPage",
    "ItemSource",
    "ItemSourceError",
    "ScanResult",
    "SnapshotItemSource",
    "item_from_record",
    "parse_timestamp",
    "scan_items",
]
