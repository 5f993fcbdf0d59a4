"""
Ma Earth Portal - AT Protocol sign-in with second-factor gating

This package implements an AT Protocol OAuth relying party. Users sign in through their
Personal Data Server (PDS), optionally prove a second factor, and then use a small wallet
surface that is proxied to an external wallet service.

Key Components:
- app: Web application layer with request handlers, configuration and server setup
- atproto: PKCE, DPoP and the OAuth authorization flow against a PDS
- resolve: Handle, DID and PDS resolution
- security: CSRF tokens, rate limiting, signed sessions and input validation
- twofa: Two-factor configuration, code generation and the Redis-backed store
- wallet: Wallet service client and spending limits
- model: Session and two-factor data models

Architecture Overview:
1. Authentication Flow:
   - User enters an email or handle
   - Handle logins discover the user's PDS and its OAuth endpoints
   - A Pushed Authorization Request is made with a DPoP proof
   - The callback exchanges the code and creates a signed user session

2. Second Factor:
   - Users with two-factor enabled get an unverified session first
   - TOTP, email codes or passkeys mark the session as verified

3. Abuse Control:
   - State-changing requests require a CSRF token
   - Per-user token buckets limit sensitive operations
"""
