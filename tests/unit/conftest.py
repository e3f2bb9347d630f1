from __future__ import annotations

import json
import logging
import threading
from collections.abc import Collection, Sequence
from pathlib import Path
from typing import Any

import pytest

from declutter.mailbox import MessageNotFoundError, check_batch_size


class FakeMailbox:
    """In-memory ``MailboxClient`` with per-item failure injection."""

    def __init__(self, labels: dict[str, set[str]] | None = None) -> None:
        self.labels: dict[str, set[str]] = {key: set(value) for key, value in (labels or {}).items()}
        self.label_ids: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.batch_failure: Exception | None = None
        self.resolve_failure: Exception | None = None
        self.calls: list[tuple[Any, ...]] = []
        self._lock = threading.Lock()

    def resolve_label(self, name: str, *, timeout: float | None = None) -> str:
        if self.resolve_failure is not None:
            raise self.resolve_failure
        with self._lock:
            self.calls.append(("resolve_label", name))
            return self.label_ids.setdefault(name, f"Label_{len(self.label_ids) + 1}")

    def get_labels(self, item_id: str, *, timeout: float | None = None) -> frozenset[str]:
        with self._lock:
            self.calls.append(("get_labels", item_id, timeout))
            self._raise_for(item_id)
            return frozenset(self.labels[item_id])

    def modify_labels(
        self,
        item_id: str,
        *,
        add: Collection[str] = (),
        remove: Collection[str] = (),
        timeout: float | None = None,
    ) -> None:
        with self._lock:
            self.calls.append(("modify_labels", item_id, frozenset(add), frozenset(remove)))
            self._raise_for(item_id)
            current = self.labels[item_id]
            current.difference_update(remove)
            current.update(add)

    def batch_modify(
        self,
        item_ids: Sequence[str],
        *,
        add: Collection[str] = (),
        remove: Collection[str] = (),
        timeout: float | None = None,
    ) -> None:
        check_batch_size(item_ids)
        with self._lock:
            self.calls.append(("batch_modify", tuple(item_ids), frozenset(add), frozenset(remove)))
            if self.batch_failure is not None:
                raise self.batch_failure
            for item_id in item_ids:
                current = self.labels.setdefault(item_id, set())
                current.difference_update(remove)
                current.update(add)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def _raise_for(self, item_id: str) -> None:
        failure = self.failures.get(item_id)
        if failure is not None:
            raise failure
        if item_id not in self.labels:
            raise MessageNotFoundError(f"no message {item_id}", item_id=item_id)


class FakeRequest:
    def __init__(self, service: FakeGmailService, name: str, kwargs: dict[str, Any]) -> None:
        self._service = service
        self._name = name
        self._kwargs = kwargs

    def execute(self) -> dict[str, Any]:
        self._service.requests.append((self._name, self._kwargs))
        error = self._service.item_errors.get(self._kwargs.get("id")) or self._service.errors.get(self._name)
        if error is not None:
            raise error
        return self._service.responses.get(self._name, {})


class _Resource:
    def __init__(self, service: FakeGmailService, prefix: str) -> None:
        self._service = service
        self._prefix = prefix

    def __getattr__(self, name: str):
        def call(**kwargs):
            key = f"{self._prefix}.{name}"
            if key in ("users.messages", "users.labels"):
                return _Resource(self._service, key)
            return FakeRequest(self._service, key, kwargs)

        return call


class FakeGmailService:
    """Minimal stand-in for a ``googleapiclient`` Gmail service."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, dict[str, Any]] = {}
        self.errors: dict[str, Exception] = {}
        self.item_errors: dict[str, Exception] = {}

    def users(self) -> _Resource:
        return _Resource(self, "users")


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def gmail_service() -> FakeGmailService:
    return FakeGmailService()


@pytest.fixture
def write_items():
    """Write a JSON-lines item snapshot for one account."""

    def write(items_dir: Path, account: str, records: list[dict[str, Any]]) -> Path:
        items_dir.mkdir(parents=True, exist_ok=True)
        path = items_dir / f"{account}.jsonl"
        path.write_text("".join(json.dumps(record) + "\n" for record in records), encoding="utf-8")
        return path

    return write


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo handlers installed by ``configure_logging`` during a test."""

    loggers = [logging.getLogger(), logging.getLogger("declutter.ledger")]
    saved = [(list(logger.handlers), logger.level) for logger in loggers]
    yield
    for logger, (handlers, level) in zip(loggers, saved):
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)
