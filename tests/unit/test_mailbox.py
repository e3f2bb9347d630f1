from __future__ import annotations

import json
import socket
from pathlib import Path

import httplib2
import pytest
from google.auth.exceptions import TransportError
from googleapiclient.errors import HttpError

from declutter import mailbox as mailbox_module
from declutter.config import GmailAccountConfig
from declutter.mailbox import (
    AuthExpiredError,
    GmailMailbox,
    MailboxTimeoutError,
    MessageNotFoundError,
    RateLimitedError,
    TransientMailboxError,
    authorize,
    check_batch_size,
)


def _mailbox(tmp_path: Path, service) -> GmailMailbox:
    settings = GmailAccountConfig(
        credentials_path=tmp_path / "credentials.json",
        token_path=tmp_path / "token.json",
    )
    return GmailMailbox(settings, service_factory=lambda timeout: service)


def _http_error(status: int, message: str = "boom") -> HttpError:
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(httplib2.Response({"status": str(status)}), content)


def test_get_labels_uses_minimal_format(tmp_path: Path, gmail_service) -> None:
    gmail_service.responses["users.messages.get"] = {"id": "m1", "labelIds": ["INBOX", "UNREAD"]}

    labels = _mailbox(tmp_path, gmail_service).get_labels("m1", timeout=3)

    assert labels == {"INBOX", "UNREAD"}
    name, kwargs = gmail_service.requests[0]
    assert name == "users.messages.get"
    assert kwargs == {"userId": "me", "id": "m1", "format": "minimal"}


def test_modify_labels_sends_sorted_body(tmp_path: Path, gmail_service) -> None:
    _mailbox(tmp_path, gmail_service).modify_labels("m1", add={"SPAM"}, remove={"INBOX", "UNREAD"})

    name, kwargs = gmail_service.requests[0]
    assert name == "users.messages.modify"
    assert kwargs["body"] == {"addLabelIds": ["SPAM"], "removeLabelIds": ["INBOX", "UNREAD"]}


def test_empty_modify_is_skipped(tmp_path: Path, gmail_service) -> None:
    mailbox = _mailbox(tmp_path, gmail_service)

    mailbox.modify_labels("m1")
    mailbox.batch_modify([], remove={"INBOX"})

    assert gmail_service.requests == []


def test_batch_modify_sends_ids(tmp_path: Path, gmail_service) -> None:
    _mailbox(tmp_path, gmail_service).batch_modify(["a", "b"], add={"L1"}, remove={"INBOX"})

    name, kwargs = gmail_service.requests[0]
    assert name == "users.messages.batchModify"
    assert kwargs["body"]["ids"] == ["a", "b"]


def test_batch_modify_rejects_oversized_batches() -> None:
    with pytest.raises(ValueError, match="at most 1000"):
        check_batch_size([str(index) for index in range(1001)])


def test_resolve_label_finds_existing_and_caches(tmp_path: Path, gmail_service) -> None:
    gmail_service.responses["users.labels.list"] = {
        "labels": [{"id": "Label_7", "name": "Declutter/Archived"}]
    }
    mailbox = _mailbox(tmp_path, gmail_service)

    assert mailbox.resolve_label("Declutter/Archived") == "Label_7"
    assert mailbox.resolve_label("Declutter/Archived") == "Label_7"
    assert len(gmail_service.requests) == 1


def test_resolve_label_creates_missing_label(tmp_path: Path, gmail_service) -> None:
    gmail_service.responses["users.labels.list"] = {"labels": []}
    gmail_service.responses["users.labels.create"] = {"id": "Label_9", "name": "Declutter/Archived"}

    label_id = _mailbox(tmp_path, gmail_service).resolve_label("Declutter/Archived")

    assert label_id == "Label_9"
    assert gmail_service.requests[1][1]["body"]["name"] == "Declutter/Archived"


@pytest.mark.parametrize(
    ("error", "expected", "kind"),
    [
        (_http_error(401), AuthExpiredError, "auth"),
        (_http_error(403, "rateLimitExceeded"), RateLimitedError, "rate_limited"),
        (_http_error(404), MessageNotFoundError, "not_found"),
        (_http_error(429), RateLimitedError, "rate_limited"),
        (_http_error(500), TransientMailboxError, "transient"),
        (socket.timeout("timed out"), MailboxTimeoutError, "timeout"),
        (ConnectionResetError("reset"), TransientMailboxError, "transient"),
        (httplib2.ServerNotFoundError("dns"), TransientMailboxError, "transient"),
        (TransportError("connection refused"), TransientMailboxError, "transient"),
    ],
)
def test_errors_are_mapped_per_item(tmp_path: Path, gmail_service, error, expected, kind) -> None:
    gmail_service.errors["users.messages.get"] = error

    with pytest.raises(expected) as excinfo:
        _mailbox(tmp_path, gmail_service).get_labels("m1")

    assert excinfo.value.kind == kind
    assert excinfo.value.item_id == "m1"


def test_missing_token_raises_auth_error(tmp_path: Path) -> None:
    settings = GmailAccountConfig(
        credentials_path=tmp_path / "credentials.json",
        token_path=tmp_path / "token.json",
    )

    with pytest.raises(AuthExpiredError, match="No Gmail token"):
        GmailMailbox(settings).get_labels("m1")


def test_authorize_requires_client_file(tmp_path: Path) -> None:
    settings = GmailAccountConfig(
        credentials_path=tmp_path / "missing.json",
        token_path=tmp_path / "token.json",
    )

    with pytest.raises(AuthExpiredError, match="OAuth client file not found"):
        authorize(settings)


def test_service_build_failure_is_mapped(tmp_path: Path) -> None:
    settings = GmailAccountConfig(
        credentials_path=tmp_path / "credentials.json",
        token_path=tmp_path / "token.json",
    )

    def unreachable(timeout):
        raise httplib2.ServerNotFoundError("Unable to find the server at gmail.googleapis.com")

    with pytest.raises(TransientMailboxError) as excinfo:
        GmailMailbox(settings, service_factory=unreachable).get_labels("m1")

    assert excinfo.value.item_id == "m1"


def test_service_is_built_once_per_timeout(tmp_path: Path, gmail_service) -> None:
    settings = GmailAccountConfig(
        credentials_path=tmp_path / "credentials.json",
        token_path=tmp_path / "token.json",
    )
    built: list[float | None] = []

    def factory(timeout):
        built.append(timeout)
        return gmail_service

    mailbox = GmailMailbox(settings, service_factory=factory)
    mailbox.get_labels("m1", timeout=3)
    mailbox.get_labels("m2", timeout=3)
    mailbox.modify_labels("m1", remove={"INBOX"}, timeout=5)

    assert built == [3, 5]


class _ExpiredCredentials:
    valid = False
    expired = True
    refresh_token = "refresh"

    def refresh(self, request) -> None:
        raise TransportError("connection reset during refresh")


def test_refresh_transport_failure_is_transient(tmp_path: Path, monkeypatch) -> None:
    token_path = tmp_path / "token.json"
    token_path.write_text("{}", encoding="utf-8")
    settings = GmailAccountConfig(credentials_path=tmp_path / "credentials.json", token_path=token_path)
    monkeypatch.setattr(
        mailbox_module.Credentials,
        "from_authorized_user_file",
        lambda path, scopes: _ExpiredCredentials(),
    )

    with pytest.raises(TransientMailboxError, match="refresh failed"):
        GmailMailbox(settings).get_labels("m1")

    assert token_path.read_text(encoding="utf-8") == "{}"
