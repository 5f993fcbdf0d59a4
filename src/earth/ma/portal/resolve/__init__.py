"""
Identity Resolution

This package resolves AT Protocol identifiers (handles, DIDs) to the DID, handle
and PDS they name.

Key Components:
- handle.py: Handle and DID resolution
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution, first success wins
   - Public XRPC resolver (com.atproto.identity.resolveHandle)
   - HTTP well-known document (https://{handle}/.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via the PLC directory
   - did:web method resolution via the host's did.json

Every lookup is bounded by a five second timeout and failures surface as
ResolutionError, which the login flow turns into a user-facing message.
"""
