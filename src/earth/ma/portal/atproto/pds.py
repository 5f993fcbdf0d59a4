import asyncio
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel

DISCOVERY_TIMEOUT = ClientTimeout(total=5)


class DiscoveryError(Exception):
    pass


class OAuthEndpoints(BaseModel):
    """Authorization server endpoints needed to run a PAR login."""

    issuer: str
    par_endpoint: str
    auth_endpoint: str
    token_endpoint: str


async def _get_json(session: ClientSession, url: str) -> Optional[Dict[str, Any]]:
    try:
        async with session.get(url, timeout=DISCOVERY_TIMEOUT) as resp:
            if resp.status != 200:
                return None
            body = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError):
        return None
    if not isinstance(body, dict):
        return None
    return body


async def oauth_protected_resource(
    session: ClientSession, pds: str
) -> Optional[Dict[str, Any]]:
    return await _get_json(session, f"{pds}/.well-known/oauth-protected-resource")


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Dict[str, Any]]:
    return await _get_json(
        session, f"{authorization_server}/.well-known/oauth-authorization-server"
    )


async def discover_oauth_endpoints(
    session: ClientSession, pds_url: str
) -> OAuthEndpoints:
    """
    Discover the OAuth endpoints serving a PDS.

    The PDS's protected-resource metadata names its authorization server, and that
    server's metadata lists the PAR, authorize and token endpoints.

    Raises:
        DiscoveryError: If either document is unavailable or lacks a required field
    """
    pds_url = pds_url.rstrip("/")

    protected_resource = await oauth_protected_resource(session, pds_url)
    if protected_resource is None:
        raise DiscoveryError(
            f"Failed to fetch protected resource metadata from {pds_url}"
        )

    issuer = next(iter(protected_resource.get("authorization_servers") or []), None)
    if not issuer:
        raise DiscoveryError(f"No authorization server found for {pds_url}")
    issuer = issuer.rstrip("/")

    metadata = await oauth_authorization_server(session, issuer)
    if metadata is None:
        raise DiscoveryError(
            f"Failed to fetch authorization server metadata from {issuer}"
        )

    par_endpoint = metadata.get("pushed_authorization_request_endpoint")
    auth_endpoint = metadata.get("authorization_endpoint")
    token_endpoint = metadata.get("token_endpoint")
    if not par_endpoint or not auth_endpoint or not token_endpoint:
        raise DiscoveryError(f"Incomplete OAuth metadata from {issuer}")

    return OAuthEndpoints(
        issuer=metadata.get("issuer") or issuer,
        par_endpoint=par_endpoint,
        auth_endpoint=auth_endpoint,
        token_endpoint=token_endpoint,
    )


def default_oauth_endpoints(pds_url: str, auth_endpoint: str) -> OAuthEndpoints:
    """Endpoints of the configured default PDS, used for email-based logins."""
    pds_url = pds_url.rstrip("/")
    return OAuthEndpoints(
        issuer=pds_url,
        par_endpoint=f"{pds_url}/oauth/par",
        auth_endpoint=auth_endpoint,
        token_endpoint=f"{pds_url}/oauth/token",
    )
