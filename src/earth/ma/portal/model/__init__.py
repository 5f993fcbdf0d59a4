"""
Data Models

This package defines the records the portal keeps about users and in-flight logins.
None of them are database rows: sessions live in the process, two-factor
configuration lives in Redis as JSON documents.

Key Models:
- session.py: OAuth flow sessions, user sessions and the tagged session record
- twofa.py: Two-factor configuration and its per-method variants
- health.py: Health gauge backing the readiness probe

The records follow these relationships:
- OAuthFlowSession: Created when a login starts, consumed once by the callback
- UserSession: Created by the callback, marked verified once 2FA passes
- TwoFactorConfig: Per-DID list of enabled methods with one default

Models are pydantic classes, so they validate on construction and serialize to
JSON for cookies and Redis without hand-written codecs.
"""
