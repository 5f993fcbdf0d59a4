"""
Two-Factor Authentication

This package implements the second factor that can gate a signed-in session.

Key Components:
- codes.py: TOTP secrets and verification (pyotp), email one-time codes
- config.py: Pure add/remove/default transitions over a TwoFactorConfig
- store.py: Redis storage for configurations, pending codes and passkeys
- email.py: Email delivery of one-time codes
- passkey.py: Protocol for the pluggable WebAuthn ceremony

Setup and teardown per method:
1. TOTP: generate secret -> await code -> verify -> enabled
2. Email: enter address -> send code -> await code -> verify -> enabled
3. Passkey: registration ceremony -> enabled

Disabling repeats the proof of possession for TOTP and email. Passkeys only need
confirmation, since possession was already asserted when the session was verified.
Removing the last method removes the configuration entirely.
"""
