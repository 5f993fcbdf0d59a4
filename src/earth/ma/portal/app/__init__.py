"""
Portal Application Layer

This package implements the web application layer of the portal using the aiohttp
framework: the AT Protocol OAuth login, the two-factor gate and settings, the wallet
proxy and internal endpoints.

Key Components:
- server.py: Application factory, middlewares and startup/shutdown resources
- config.py: Configuration management using Pydantic settings, and AppKeys
- handlers/: Request handlers for each group of endpoints
- metrics.py: Metrics client abstraction
- tasks.py: Background health monitoring
- cli.py: Entry point for running the server
- util/: Secret and key generation commands

The application uses two middleware layers:
- Metrics middleware for request counts and timings
- Error middleware for Sentry reporting and JSON 500 responses

It provides the following main endpoints:
- OAuth endpoints (/api/oauth/*, /client-metadata.json)
- Session endpoints (/api/csrf, /api/auth/*)
- Two-factor endpoints (/api/twofa/*)
- Wallet endpoints (/api/wallet, /api/wallet/send)
- Internal endpoints (/internal/*)
"""
