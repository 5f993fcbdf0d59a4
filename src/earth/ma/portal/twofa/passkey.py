"""
Passkey (WebAuthn) ceremonies.

The portal stores challenges and credentials in the two-factor store, while the
attestation and assertion checks are done by ``WebAuthnCeremony`` on top of the
``webauthn`` library. Handlers depend only on the ``PasskeyCeremony`` protocol.

Credential ids, public keys and challenges cross the storage and JSON boundaries as
unpadded base64url strings.
"""

from dataclasses import dataclass, field
import hashlib
import json
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

KNOWN_TRANSPORTS = frozenset(transport.value for transport in AuthenticatorTransport)


class PasskeyVerificationError(Exception):
    pass


@dataclass(frozen=True)
class PasskeyOptions:
    """Options to hand to ``navigator.credentials`` plus the challenge they embed."""

    options: Dict[str, Any]
    challenge: str


@dataclass(frozen=True)
class RegisteredCredential:
    credential_id: str
    public_key: str
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.credential_id,
            "public_key": self.public_key,
            "sign_count": self.sign_count,
            "transports": list(self.transports),
        }


class PasskeyCeremony(Protocol):
    def registration_options(
        self,
        user_did: str,
        user_handle: str,
        existing_credentials: List[Dict[str, Any]],
    ) -> PasskeyOptions: ...

    def verify_registration(
        self, response: Dict[str, Any], expected_challenge: str
    ) -> RegisteredCredential: ...

    def authentication_options(
        self, credentials: List[Dict[str, Any]]
    ) -> PasskeyOptions: ...

    def verify_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        credential: Dict[str, Any],
    ) -> int:
        """Check an assertion and return the authenticator's new signature counter."""
        ...


def _descriptor(credential: Dict[str, Any]) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(
        id=base64url_to_bytes(credential["id"]),
        transports=[
            AuthenticatorTransport(transport)
            for transport in credential.get("transports") or []
            if transport in KNOWN_TRANSPORTS
        ],
    )


def _response_transports(response: Dict[str, Any]) -> List[str]:
    transports = (response.get("response") or {}).get("transports") or []
    return [transport for transport in transports if transport in KNOWN_TRANSPORTS]


class WebAuthnCeremony:
    """
    Registration and authentication ceremonies for a single relying party.

    ``rp_id`` is the host name of the portal and ``origin`` the scheme and host the
    browser reports in client data. User verification is preferred but not required,
    since passkeys are a second factor after the AT Protocol sign-in.
    """

    def __init__(self, rp_id: str, rp_name: str, origin: str) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin

    @staticmethod
    def for_public_url(public_url: str, rp_name: str) -> "WebAuthnCeremony":
        parsed = urlparse(public_url)
        if not parsed.scheme or not parsed.hostname:
            raise ValueError(f"Cannot derive a WebAuthn relying party from {public_url}")
        return WebAuthnCeremony(
            rp_id=parsed.hostname,
            rp_name=rp_name,
            origin=f"{parsed.scheme}://{parsed.netloc}",
        )

    def registration_options(
        self,
        user_did: str,
        user_handle: str,
        existing_credentials: List[Dict[str, Any]],
    ) -> PasskeyOptions:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=hashlib.sha256(user_did.encode("utf-8")).digest(),
            user_name=user_handle,
            user_display_name=user_handle,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[
                _descriptor(credential) for credential in existing_credentials
            ],
        )
        return PasskeyOptions(
            options=json.loads(options_to_json(options)),
            challenge=bytes_to_base64url(options.challenge),
        )

    def verify_registration(
        self, response: Dict[str, Any], expected_challenge: str
    ) -> RegisteredCredential:
        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except (InvalidRegistrationResponse, InvalidJSONStructure, ValueError) as e:
            raise PasskeyVerificationError(str(e)) from e

        return RegisteredCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=verified.sign_count,
            transports=_response_transports(response),
        )

    def authentication_options(
        self, credentials: List[Dict[str, Any]]
    ) -> PasskeyOptions:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=[_descriptor(credential) for credential in credentials],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return PasskeyOptions(
            options=json.loads(options_to_json(options)),
            challenge=bytes_to_base64url(options.challenge),
        )

    def verify_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        credential: Dict[str, Any],
    ) -> int:
        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(credential["public_key"]),
                credential_current_sign_count=int(credential.get("sign_count") or 0),
            )
        except (InvalidAuthenticationResponse, InvalidJSONStructure, ValueError) as e:
            raise PasskeyVerificationError(str(e)) from e
        return verified.new_sign_count


def find_credential(
    credentials: List[Dict[str, Any]], credential_id: Optional[str]
) -> Optional[Dict[str, Any]]:
    if not credential_id:
        return None
    return next(
        (credential for credential in credentials if credential.get("id") == credential_id),
        None,
    )
