"""Unit tests for input validation and log redaction."""

import pytest

from earth.ma.portal.security.validation import (
    sanitize_for_log,
    validate_email,
    validate_eth_address,
    validate_handle,
)


class TestValidateEmail:
    @pytest.mark.parametrize(
        "email", ["alice@example.com", "a.b+c@sub.example.org", "x@y.io"]
    )
    def test_valid(self, email):
        assert validate_email(email)

    @pytest.mark.parametrize(
        "email",
        ["", "alice", "alice@", "@example.com", "alice@example", "al ice@example.com",
         "alice@@example.com"],
    )
    def test_invalid(self, email):
        assert not validate_email(email)


class TestValidateHandle:
    @pytest.mark.parametrize(
        "handle", ["alice.bsky.social", "a.b", "my-name.example.com", "x1.y2"]
    )
    def test_valid(self, handle):
        assert validate_handle(handle)

    @pytest.mark.parametrize(
        "handle",
        ["", "alice", "-alice.example", "alice-.example", "alice..example",
         "al ice.example", "alice.example.", "alice_b.example"],
    )
    def test_invalid(self, handle):
        assert not validate_handle(handle)


class TestValidateEthAddress:
    def test_valid(self):
        assert validate_eth_address("0x" + "aB" * 20)

    @pytest.mark.parametrize(
        "address", ["", "0x", "0x" + "a" * 39, "0x" + "a" * 41, "1x" + "a" * 40,
                    "0x" + "g" * 40]
    )
    def test_invalid(self, address):
        assert not validate_eth_address(address)


class TestSanitizeForLog:
    def test_did_is_truncated(self):
        assert sanitize_for_log("did:plc:abcdefghijklmnop") == "did:plc:abcdefgh..."

    def test_short_did_is_kept(self):
        assert sanitize_for_log("did:plc:abc") == "did:plc:abc"

    def test_email_is_masked(self):
        assert sanitize_for_log("alice@example.com") == "a***@example.com"

    def test_long_value_keeps_ends(self):
        assert sanitize_for_log("abcdefghijklmnopqrstuvwxyz") == "abcdefghij...wxyz"

    def test_short_value_is_kept(self):
        assert sanitize_for_log("short") == "short"

    def test_empty(self):
        assert sanitize_for_log("") == ""
