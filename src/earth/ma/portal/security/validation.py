"""Input validation and log redaction helpers."""

import re

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Alphanumeric labels with inner dashes, at least two labels.
HANDLE_PATTERN = re.compile(
    r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)+$"
)

ETH_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

DID_LOG_PREFIX_LENGTH = 16
LONG_VALUE_THRESHOLD = 20


def validate_email(email: str) -> bool:
    """Practical email check: one ``@``, a dotted domain, and no whitespace."""
    return email is not None and EMAIL_PATTERN.fullmatch(email) is not None


def validate_handle(handle: str) -> bool:
    return handle is not None and HANDLE_PATTERN.fullmatch(handle) is not None


def validate_eth_address(address: str) -> bool:
    return address is not None and ETH_ADDRESS_PATTERN.fullmatch(address) is not None


def sanitize_for_log(value: str) -> str:
    """Redact a sensitive value before it is written to a log.

    DIDs are truncated after a fixed prefix, emails keep only the first character of
    the local part, and other long values keep their first ten and last four characters.

    >>> sanitize_for_log("did:plc:abcdefghijklmnop")
    'did:plc:abcdefgh...'
    >>> sanitize_for_log("alice@example.com")
    'a***@example.com'
    """
    if not value:
        return ""

    if value.startswith("did:"):
        if len(value) > DID_LOG_PREFIX_LENGTH:
            return f"{value[:DID_LOG_PREFIX_LENGTH]}..."
        return value

    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"

    if len(value) > LONG_VALUE_THRESHOLD:
        return f"{value[:10]}...{value[-4:]}"

    return value
