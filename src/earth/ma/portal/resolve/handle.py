"""AT Protocol handle and DID resolution utilities.

Resolves handles to DIDs through a public XRPC resolver with an HTTPS well-known
fallback, and DIDs to their DID documents for both did:plc and did:web.
"""

import asyncio
from enum import IntEnum
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import unquote

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel

from earth.ma.portal.security.validation import sanitize_for_log

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT = ClientTimeout(total=5)

PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"
PDS_SERVICE_FRAGMENT = "#atproto_pds"


class ResolutionError(Exception):
    pass


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    ``handle`` is None when the DID document declares no ``at://`` alias.
    """

    did: str
    handle: Optional[str] = None
    pds: str


async def resolve_handle_xrpc(
    session: ClientSession, handle: str, resolver_url: str
) -> Optional[str]:
    """Resolve a handle with ``com.atproto.identity.resolveHandle`` on a public resolver.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve
        resolver_url: Base URL of the XRPC service, e.g. https://bsky.social

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(
            f"{resolver_url}/xrpc/com.atproto.identity.resolveHandle",
            params={"handle": handle},
            timeout=RESOLVE_TIMEOUT,
        ) as resp:
            if resp.status != 200:
                return None
            body = await resp.json()
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug("XRPC handle resolution failed for %s: %s", handle, e)
        return None

    did = body.get("did") if isinstance(body, dict) else None
    if isinstance(did, str) and did:
        return did
    return None


async def resolve_handle_http(
    session: ClientSession, handle: str, resolver_url: str
) -> Optional[str]:
    """Resolve a handle with its ``https://{handle}/.well-known/atproto-did`` document.

    The first non-empty line of the body must be a DID.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve
        resolver_url: Unused; present so every strategy shares one signature

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(
            f"https://{handle}/.well-known/atproto-did", timeout=RESOLVE_TIMEOUT
        ) as resp:
            if resp.status != 200:
                return None
            body = await resp.text()
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug("Well-known handle resolution failed for %s: %s", handle, e)
        return None

    first_line = next(
        (line.strip() for line in body.splitlines() if line.strip()), None
    )
    if first_line is not None and first_line.startswith("did:"):
        return first_line
    return None


HandleStrategy = Callable[[ClientSession, str, str], Awaitable[Optional[str]]]

HANDLE_STRATEGIES: Tuple[HandleStrategy, ...] = (
    resolve_handle_xrpc,
    resolve_handle_http,
)


async def resolve_handle_to_did(
    session: ClientSession,
    handle: str,
    resolver_url: str,
    strategies: Tuple[HandleStrategy, ...] = HANDLE_STRATEGIES,
) -> str:
    """Resolve a handle to a DID, trying each strategy in order.

    The first strategy to produce a DID wins; later strategies are not attempted.

    Raises:
        ResolutionError: If every strategy fails
    """
    for strategy in strategies:
        did = await strategy(session, handle, resolver_url)
        if did is not None:
            return did
    raise ResolutionError(f"Could not resolve handle: {handle}")


def handle_predicate(value: str) -> bool:
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if a DID document service entry is the account's AT Protocol PDS."""
    return (
        isinstance(value, dict)
        and value.get("type", None) == PDS_SERVICE_TYPE
        and str(value.get("id", "")).endswith(PDS_SERVICE_FRAGMENT)
        and bool(value.get("serviceEndpoint"))
    )


def did_web_document_url(did: str) -> str:
    """Map a did:web DID to the URL of its DID document.

    A bare host resolves to ``/.well-known/did.json``; additional colon-separated
    segments become a path.
    """
    parts = [unquote(part) for part in did.removeprefix("did:web:").split(":")]
    if len(parts) == 1:
        parts.append(".well-known")
    return "https://{inner}/did.json".format(inner="/".join(parts))


async def resolve_did_document(
    session: ClientSession, did: str, plc_directory_url: str
) -> Dict[str, Any]:
    """Fetch the DID document for a did:plc or did:web DID.

    Raises:
        ResolutionError: On unsupported methods, failed lookups and malformed documents
    """
    if did.startswith("did:plc:"):
        url = f"{plc_directory_url}/{did}"
        failure = f"PLC directory lookup failed for {sanitize_for_log(did)}"
    elif did.startswith("did:web:"):
        url = did_web_document_url(did)
        failure = f"DID web lookup failed for {sanitize_for_log(did)}"
    else:
        raise ResolutionError(f"Unsupported DID method: {sanitize_for_log(did)}")

    try:
        async with session.get(url, timeout=RESOLVE_TIMEOUT) as resp:
            if resp.status != 200:
                raise ResolutionError(failure)
            body = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise ResolutionError(failure) from e

    if not isinstance(body, dict):
        raise ResolutionError(failure)
    return body


async def resolve_did_to_pds(
    session: ClientSession, did: str, plc_directory_url: str
) -> str:
    """Resolve a DID to the service endpoint of its PDS.

    Raises:
        ResolutionError: If the DID cannot be resolved or declares no PDS
    """
    document = await resolve_did_document(session, did, plc_directory_url)
    pds = next(filter(pds_predicate, document.get("service") or []), None)
    if pds is None:
        raise ResolutionError(
            f"No PDS found in DID document for {sanitize_for_log(did)}"
        )
    return pds["serviceEndpoint"]


async def resolve_did_to_handle(
    session: ClientSession, did: str, plc_directory_url: str
) -> Optional[str]:
    """Return the first ``at://`` alias of the DID document, without the scheme."""
    document = await resolve_did_document(session, did, plc_directory_url)
    handle = next(filter(handle_predicate, document.get("alsoKnownAs") or []), None)
    if handle is None:
        return None
    return handle.removeprefix("at://")


async def resolve_subject(
    session: ClientSession,
    subject: str,
    resolver_url: str,
    plc_directory_url: str,
) -> ResolvedSubject:
    """Resolve a handle or DID to its DID, handle and PDS.

    Raises:
        ResolutionError: If any step fails
    """
    parsed_subject = parse_input(subject)

    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle_to_did(
            session, parsed_subject.subject, resolver_url
        )
    else:
        did = parsed_subject.subject

    document = await resolve_did_document(session, did, plc_directory_url)
    pds = next(filter(pds_predicate, document.get("service") or []), None)
    if pds is None:
        raise ResolutionError(
            f"No PDS found in DID document for {sanitize_for_log(did)}"
        )
    handle = next(filter(handle_predicate, document.get("alsoKnownAs") or []), None)

    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://") if handle else None,
        pds=pds["serviceEndpoint"],
    )


def parse_input(subject: str) -> ParsedSubject:
    """Normalize a user-supplied subject and classify it as a DID or a handle.

    Strips surrounding whitespace, an ``at://`` scheme and a leading ``@``.
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())
