"""
Request Security

Primitives the HTTP handlers use to decide whether a request may proceed.

Key Components:
- session.py: HMAC-signed, kind-tagged, in-memory session store
- csrf.py: Stateless CSRF tokens
- ratelimit.py: Token-bucket rate limiter
- validation.py: Input validation and log redaction

The session store and rate limiter each own a periodic sweep task, started with the
application and stopped at shutdown.
"""
