"""External mailbox access: label reads and label mutations.

``MailboxClient`` is the seam the pipeline and the ledger use. ``GmailMailbox``
implements it over the Gmail REST API, where archiving means removing the
``INBOX`` label and spam means adding the ``SPAM`` label.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable, Collection, Sequence
from pathlib import Path
from typing import Any, Protocol

import google_auth_httplib2
import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import BULK_MODIFY_LIMIT, GmailAccountConfig

LOGGER = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]


class MailboxError(RuntimeError):
    """Base error for a failed mailbox call on one item or batch."""

    kind = "transient"

    def __init__(self, message: str, *, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class AuthExpiredError(MailboxError):
    kind = "auth"


class RateLimitedError(MailboxError):
    kind = "rate_limited"


class MessageNotFoundError(MailboxError):
    kind = "not_found"


class MailboxTimeoutError(MailboxError):
    kind = "timeout"


class TransientMailboxError(MailboxError):
    kind = "transient"


class MailboxClient(Protocol):
    """Operations the engine needs from the remote mailbox."""

    def resolve_label(self, name: str, *, timeout: float | None = None) -> str:
        """Return the label id for ``name``, creating the label if needed."""
        ...

    def get_labels(self, item_id: str, *, timeout: float | None = None) -> frozenset[str]: ...

    def modify_labels(
        self,
        item_id: str,
        *,
        add: Collection[str] = (),
        remove: Collection[str] = (),
        timeout: float | None = None,
    ) -> None: ...

    def batch_modify(
        self,
        item_ids: Sequence[str],
        *,
        add: Collection[str] = (),
        remove: Collection[str] = (),
        timeout: float | None = None,
    ) -> None: ...


def check_batch_size(item_ids: Sequence[str]) -> None:
    if len(item_ids) > BULK_MODIFY_LIMIT:
        raise ValueError(
            f"batch_modify accepts at most {BULK_MODIFY_LIMIT} items, got {len(item_ids)}"
        )


class GmailMailbox:
    """Gmail-backed ``MailboxClient``.

    ``service_factory`` receives the per-call timeout and returns a Gmail
    service object; the default builds one with ``googleapiclient`` over an
    ``httplib2`` transport carrying that timeout. ``httplib2.Http`` is not
    thread-safe, so services are cached per worker thread and timeout.
    """

    def __init__(
        self,
        settings: GmailAccountConfig,
        *,
        service_factory: Any | None = None,
    ) -> None:
        self._settings = settings
        self._service_factory = service_factory or self._build_service
        self._label_ids: dict[str, str] = {}
        self._credentials = None
        self._credentials_lock = threading.Lock()
        self._local = threading.local()

    def resolve_label(self, name: str, *, timeout: float | None = None) -> str:
        cached = self._label_ids.get(name)
        if cached:
            return cached
        user_id = self._settings.user_id
        response = self._execute(
            lambda service: service.users().labels().list(userId=user_id), timeout, None
        )
        for label in response.get("labels", []):
            if label.get("name") == name:
                self._label_ids[name] = label["id"]
                return label["id"]
        body = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        created = self._execute(
            lambda service: service.users().labels().create(userId=user_id, body=body),
            timeout,
            None,
        )
        LOGGER.info("Created Gmail label %s (id=%s)", name, created["id"])
        self._label_ids[name] = created["id"]
        return created["id"]

    def get_labels(self, item_id: str, *, timeout: float | None = None) -> frozenset[str]:
        user_id = self._settings.user_id
        message = self._execute(
            lambda service: service.users()
            .messages()
            .get(userId=user_id, id=item_id, format="minimal"),
            timeout,
            item_id,
        )
        return frozenset(message.get("labelIds", []))

    def modify_labels(
        self,
        item_id: str,
        *,
        add: Collection[str] = (),
        remove: Collection[str] = (),
        timeout: float | None = None,
    ) -> None:
        body = _label_body(add, remove)
        if not body:
            return
        user_id = self._settings.user_id
        self._execute(
            lambda service: service.users().messages().modify(userId=user_id, id=item_id, body=body),
            timeout,
            item_id,
        )

    def batch_modify(
        self,
        item_ids: Sequence[str],
        *,
        add: Collection[str] = (),
        remove: Collection[str] = (),
        timeout: float | None = None,
    ) -> None:
        check_batch_size(item_ids)
        body = _label_body(add, remove)
        if not item_ids or not body:
            return
        body["ids"] = list(item_ids)
        user_id = self._settings.user_id
        self._execute(
            lambda service: service.users().messages().batchModify(userId=user_id, body=body),
            timeout,
            None,
        )

    def _service(self, timeout: float | None) -> Any:
        services = getattr(self._local, "services", None)
        if services is None:
            services = self._local.services = {}
        service = services.get(timeout)
        if service is None:
            service = services[timeout] = self._service_factory(timeout)
        return service

    def _execute(
        self,
        make_request: Callable[[Any], Any],
        timeout: float | None,
        item_id: str | None,
    ) -> dict[str, Any]:
        """Build and run one request, mapping every transport failure to ``MailboxError``."""

        try:
            return make_request(self._service(timeout)).execute() or {}
        except HttpError as exc:
            raise _map_http_error(exc, item_id) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise MailboxTimeoutError(f"Gmail request timed out: {exc}", item_id=item_id) from exc
        except (OSError, httplib2.HttpLib2Error, TransportError) as exc:
            raise TransientMailboxError(f"Gmail transport error: {exc}", item_id=item_id) from exc

    def _build_service(self, timeout: float | None) -> Any:
        credentials = self._load_credentials()
        http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
        return build("gmail", "v1", http=http, cache_discovery=False)

    def _load_credentials(self) -> Any:
        with self._credentials_lock:
            creds = self._credentials
            token_path = self._settings.token_path
            if creds is None:
                if not token_path.exists():
                    raise AuthExpiredError(
                        f"No Gmail token at {token_path}; run `declutter authorize` first."
                    )
                creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
            if not creds.valid:
                if not (creds.expired and creds.refresh_token):
                    raise AuthExpiredError("Gmail credentials are invalid and cannot be refreshed.")
                try:
                    creds.refresh(Request())
                except RefreshError as exc:
                    raise AuthExpiredError(f"Gmail token refresh failed: {exc}") from exc
                except TransportError as exc:
                    raise TransientMailboxError(f"Gmail token refresh failed: {exc}") from exc
                token_path.parent.mkdir(parents=True, exist_ok=True)
                token_path.write_text(creds.to_json(), encoding="utf-8")
            self._credentials = creds
            return creds


def authorize(settings: GmailAccountConfig) -> Path:
    """Run the installed-app OAuth flow and store the token for later runs."""

    if not settings.credentials_path.exists():
        raise AuthExpiredError(f"OAuth client file not found: {settings.credentials_path}")
    flow = InstalledAppFlow.from_client_secrets_file(str(settings.credentials_path), SCOPES)
    creds = flow.run_local_server(port=0)
    settings.token_path.parent.mkdir(parents=True, exist_ok=True)
    settings.token_path.write_text(creds.to_json(), encoding="utf-8")
    LOGGER.info("Stored Gmail token at %s", settings.token_path)
    return settings.token_path


def _label_body(add: Collection[str], remove: Collection[str]) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if add:
        body["addLabelIds"] = sorted(add)
    if remove:
        body["removeLabelIds"] = sorted(remove)
    return body


def _map_http_error(exc: HttpError, item_id: str | None) -> MailboxError:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        status = None
    message = f"Gmail API error {status}: {exc}"
    if status in (401, 403):
        if "rateLimitExceeded" in str(exc) or "userRateLimitExceeded" in str(exc):
            return RateLimitedError(message, item_id=item_id)
        return AuthExpiredError(message, item_id=item_id)
    if status == 404:
        return MessageNotFoundError(message, item_id=item_id)
    if status == 429:
        return RateLimitedError(message, item_id=item_id)
    return TransientMailboxError(message, item_id=item_id)


__all__ = [
    "AuthExpiredError",
    "GmailMailbox",
    "MailboxClient",
    "MailboxError",
    "MailboxTimeoutError",
    "MessageNotFoundError",
    "RateLimitedError",
    "TransientMailboxError",
    "authorize",
    "check_batch_size",
]
