"""
Wallet Proxy

The portal does not hold keys. Wallet lookups and transactions are forwarded to a
wallet microservice authenticated by an API key, with per-transaction and daily
limits enforced here before anything is sent.

Key Components:
- client.py: HTTP client for the wallet service
- limits.py: Amount parsing and the in-memory daily spend tracker
"""
