"""
AT Protocol Integration

This package signs users in against their Personal Data Server (PDS) using AT Protocol
OAuth as a public client.

Key Components:
- jwt.py: PKCE verifier/challenge, OAuth state, DPoP key pairs and proofs
- oauth.py: Login initialization (PAR) and callback completion (token exchange)
- chain.py: Middleware chain for outbound OAuth requests (DPoP, metrics)
- pds.py: OAuth endpoint discovery for a PDS

Key Features:
- OAuth 2.0 authorization code flow with PKCE
- Pushed Authorization Requests
- DPoP-bound tokens with a single server-nonce retry

The authentication flow follows these steps:
1. Resolve the handle to a DID and PDS, or use the default PDS for email logins
2. Discover the PAR, authorize and token endpoints
3. Push the authorization request and redirect the browser
4. Exchange the authorization code at the callback with the same DPoP key
"""
