"""TOTP secrets, TOTP verification and email one-time codes."""

import secrets

import pyotp

TOTP_ISSUER = "Ma Earth"
TOTP_DIGITS = 6
TOTP_SECRET_LENGTH = 32
EMAIL_OTP_DIGITS = 6


def generate_totp_secret() -> str:
    """Random base32 secret (160 bits)."""
    return pyotp.random_base32(length=TOTP_SECRET_LENGTH)


def get_totp_uri(secret: str, account_label: str) -> str:
    """``otpauth://totp/`` provisioning URI for authenticator apps."""
    return pyotp.TOTP(secret, digits=TOTP_DIGITS).provisioning_uri(
        name=account_label, issuer_name=TOTP_ISSUER
    )


def verify_totp_code(secret: str, code: str) -> bool:
    """Check a TOTP code, accepting one time step of clock skew either way.

    Empty, non-numeric and wrong-length codes are rejected before any HMAC is computed.
    """
    if not secret or not code:
        return False

    code = code.strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False

    return pyotp.TOTP(secret, digits=TOTP_DIGITS).verify(code, valid_window=1)


def generate_email_otp() -> str:
    return f"{secrets.randbelow(10 ** EMAIL_OTP_DIGITS):0{EMAIL_OTP_DIGITS}d}"
