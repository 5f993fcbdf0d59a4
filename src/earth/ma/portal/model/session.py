"""Session data models for the OAuth flow and signed-in users."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel


class SessionKind(str, Enum):
    """Tag identifying which kind of data a stored session record holds."""

    oauth = "oauth"
    user = "user"


class OAuthFlowSession(BaseModel):
    """State captured at PAR time and consumed once at the OAuth callback.

    Holds the PKCE verifier, the private DPoP key and the token endpoint so the
    callback can complete the code exchange with the same key the PDS saw.
    """

    state: str
    code_verifier: str
    dpop_private_jwk: Dict[str, Any]
    token_endpoint: str
    redirect_uri: str
    issuer: Optional[str] = None
    email: Optional[str] = None
    expected_did: Optional[str] = None
    expected_pds_url: Optional[str] = None


class UserSession(BaseModel):
    """An authenticated user.

    ``verified`` stays False until the second factor has been proven, for users
    that have one configured.
    """

    user_did: str
    user_handle: str
    created_at: int
    verified: bool = False


@dataclass(frozen=True)
class SessionRecord:
    """A stored session: kind tag, payload and absolute expiry in milliseconds."""

    kind: SessionKind
    data: Union[OAuthFlowSession, UserSession]
    expires_at: int
