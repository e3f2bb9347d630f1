"""Sender address and domain normalisation used for rule matching."""

from __future__ import annotations

import ipaddress
import re
from email.utils import parseaddr

HOST_RE = re.compile(r"^[A-Za-z0-9.-]+$")


def normalize_address(address: str | None) -> str | None:
    """Return the bare, lower-cased mailbox for a From value."""

    if not address:
        return None
    _display, email_address = parseaddr(address)
    candidate = email_address or address
    normalized = candidate.strip().lower()
    if not normalized:
        return None
    return normalized


def domain_from_address(address: str | None) -> str | None:
    """Return the full normalized host part of a sender address."""

    _, email_addr = parseaddr(address or "")
    if not email_addr and address:
        if "<" in address and ">" in address:
            email_addr = address.split("<", 1)[1].split(">", 1)[0].strip()
        else:
            email_addr = address.strip()
    if not email_addr or "@" not in email_addr:
        return None
    return normalize_domain(email_addr.rsplit("@", 1)[1])


def normalize_domain(host: str | None) -> str | None:
    if not host:
        return None
    candidate = host.strip().lower().rstrip(".")
    if candidate.startswith("@"):
        candidate = candidate[1:]
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    if not candidate:
        return None

    # IPv4/IPv6 literals retain their exact string.
    if _is_ip_literal(candidate):
        return candidate

    if not HOST_RE.match(candidate):
        return None
    labels = [label for label in candidate.split(".") if label]
    if not labels:
        return None
    return ".".join(labels)


def domain_lookup_keys(domain: str | None) -> list[str]:
    """Return lookup keys from most to least specific.

    ``mail.news.example.com`` yields the full host, then each parent down to
    ``example.com``, so a rule for a parent domain covers its subdomains while
    a more specific rule still wins.
    """

    normalized = normalize_domain(domain)
    if not normalized:
        return []
    labels = normalized.split(".")
    if len(labels) < 2 or _is_ip_literal(normalized):
        return [normalized]
    return [".".join(labels[index:]) for index in range(len(labels) - 1)]


def _is_ip_literal(candidate: str) -> bool:
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return True


__all__ = [
    "domain_from_address",
    "domain_lookup_keys",
    "normalize_address",
    "normalize_domain",
]
