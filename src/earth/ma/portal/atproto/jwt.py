"""
PKCE and DPoP utilities for AT Protocol authentication.

Provides the random values and proof-of-possession JWTs used by the OAuth flow:
PKCE verifier/challenge pairs (RFC 7636), opaque state values, and DPoP key pairs and
proofs as specified in RFC 9449.
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import secrets
from typing import Any, Dict, Optional
import uuid

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException
from ulid import ULID


class DpopProofError(Exception):
    """Raised when a DPoP proof cannot be signed with the given key."""


@dataclass(frozen=True)
class DpopKeyPair:
    """A DPoP key pair with both key-object and JWK serializations.

    Attributes:
        key: The private jwcrypto key used for signing proofs
        public_jwk: Public JWK embedded in every proof header
        private_jwk: Private JWK, stored in the OAuth flow session between PAR and callback
    """

    key: jwk.JWK
    public_jwk: Dict[str, Any]
    private_jwk: Dict[str, Any]


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier with 32 bytes of entropy."""
    return secrets.token_urlsafe(32)


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 PKCE challenge for a verifier.

    The challenge is the unpadded base64url encoding of the SHA-256 digest of the
    verifier, so it is always 43 characters long.
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Generate an opaque OAuth state value."""
    return secrets.token_urlsafe(16)


def generate_dpop_key_pair() -> DpopKeyPair:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair with a unique key identifier. A fresh pair is
    generated for each OAuth flow and never reused across flows.

    Returns:
        DpopKeyPair: The signing key with its public and private JWK exports
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    return DpopKeyPair(
        key=dpop_key,
        public_jwk=dpop_key.export_public(as_dict=True),
        private_jwk=dpop_key.export_private(as_dict=True),
    )


def restore_dpop_key_pair(private_jwk: Dict[str, Any]) -> DpopKeyPair:
    """Rebuild a DPoP key pair from a serialized private JWK.

    The public JWK is re-derived from the private key so that proofs made after the
    callback embed the same key the authorization server saw at PAR time.
    """
    dpop_key = jwk.JWK(**private_jwk)
    return DpopKeyPair(
        key=dpop_key,
        public_jwk=dpop_key.export_public(as_dict=True),
        private_jwk=dpop_key.export_private(as_dict=True),
    )


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key."""
    return {
        "alg": "ES256",
        "typ": "dpop+jwt",
        "jwk": public_key_dict,
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        nonce: Server-provided nonce, included only when given
        access_token: Access token to bind; its SHA-256 becomes the ``ath`` claim

    Returns:
        Dict[str, Any]: DPoP JWT claims with a fresh ``jti``
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "jti": str(uuid.uuid4()),
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": int(issued_at.timestamp()),
    }

    if nonce:
        claims["nonce"] = nonce

    if access_token:
        claims["ath"] = _b64url(hashlib.sha256(access_token.encode("ascii")).digest())

    return claims


def create_dpop_proof(
    key: jwk.JWK,
    jwk_dict: Dict[str, Any],
    method: str,
    url: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> str:
    """Create a signed DPoP proof for a single HTTP request.

    The proof is a compact JWS with three base64url segments. jwcrypto encodes ES256
    signatures in the raw ``r || s`` form required by JWS, not DER.

    Args:
        key: Private key for signing the proof
        jwk_dict: Public JWK embedded in the header
        method: HTTP method for request binding
        url: Target URI for request binding
        nonce: Optional server nonce
        access_token: Optional access token to bind with ``ath``

    Returns:
        str: Serialized DPoP proof ready for use as the ``DPoP`` header value

    Raises:
        DpopProofError: If the key cannot produce an ES256 signature

    Usage:
        ```python
        key_pair = generate_dpop_key_pair()
        headers["DPoP"] = create_dpop_proof(
            key_pair.key, key_pair.public_jwk, "POST", "https://pds.example/oauth/par"
        )
        ```
    """
    if not key.has_private:
        raise DpopProofError("DPoP signing key has no private component")

    header = create_dpop_header(jwk_dict)
    claims = create_dpop_claims(method, url, nonce=nonce, access_token=access_token)

    try:
        dpop_jwt = jwt.JWT(header=header, claims=claims)
        dpop_jwt.make_signed_token(key)
        return dpop_jwt.serialize()
    except (JWException, ValueError, TypeError) as e:
        raise DpopProofError(f"Unable to sign DPoP proof: {e}") from e
