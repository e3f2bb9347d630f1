import pytest

from declutter.addresses import (
    domain_from_address,
    domain_lookup_keys,
    normalize_address,
    normalize_domain,
)


def test_normalize_address_strips_display_name() -> None:
    assert normalize_address("Alice Example <Alice@Example.COM>") == "alice@example.com"
    assert normalize_address("") is None


def test_domain_from_address_supports_ip_literals() -> None:
    domain = domain_from_address('"Device" <alerts@[2001:db8::1]>')
    assert domain == "2001:db8::1"


def test_domain_from_address_without_at_sign() -> None:
    assert domain_from_address("No email header") is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("@Example.com.", "example.com"),
        ("  mail.example.org ", "mail.example.org"),
        ("bad host!", None),
        (None, None),
    ],
)
def test_normalize_domain(raw, expected) -> None:
    assert normalize_domain(raw) == expected


def test_domain_lookup_keys_most_specific_first() -> None:
    keys = domain_lookup_keys("a.mail.example.com")

    assert keys == ["a.mail.example.com", "mail.example.com", "example.com"]


def test_domain_lookup_keys_keeps_ip_literal_whole() -> None:
    assert domain_lookup_keys("192.168.1.20") == ["192.168.1.20"]
    assert domain_lookup_keys("localhost") == ["localhost"]
