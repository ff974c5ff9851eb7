"""
OAuth Module

Provider-generic OAuth 2.0 helpers: authorization URL, code exchange, token
refresh, plus the probes used to validate a token and read an account's
credit balance. Endpoints come from the Provider record.
"""
import secrets
import time
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from chatrelay.core.errors import UpstreamTransportError
from chatrelay.models.provider import Provider


class TokenResponse(BaseModel):
    access_token: str
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    def expires_at(self, now: Optional[float] = None) -> Optional[int]:
        if self.expires_in is None:
            return None
        return int(now if now is not None else time.time()) + self.expires_in


class TokenValidation(BaseModel):
    valid: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class OAuthError(Exception):
    pass


def _require_oauth(provider: Provider) -> None:
    if not provider.token_url:
        raise OAuthError(f"Provider {provider.id} has no token endpoint configured")


def generate_auth_url(provider: Provider, redirect_uri: str, state: Optional[str] = None) -> str:
    """
    Generate the authorization URL for a provider.

    Args:
        provider: Provider with authorize_url and client_id set
        redirect_uri: Where the provider will redirect after authorization
        state: Optional state parameter; a random one is generated otherwise

    Returns:
        The full authorization URL to send the user to
    """
    if not provider.authorize_url or not provider.client_id:
        raise OAuthError(f"Provider {provider.id} does not support browser login")

    params = {
        "client_id": provider.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "state": state or secrets.token_urlsafe(32),
    }
    if provider.scopes:
        params["scope"] = " ".join(provider.scopes)

    return f"{provider.authorize_url}?{urlencode(params)}"


async def _post_token(client: httpx.AsyncClient, provider: Provider, data: dict) -> dict:
    if provider.client_id:
        data["client_id"] = provider.client_id
    if provider.client_secret:
        data["client_secret"] = provider.client_secret

    try:
        response = await client.post(provider.token_url, data=data, timeout=15.0)
    except httpx.HTTPError as exc:
        raise UpstreamTransportError(f"Token endpoint unreachable: {exc}") from exc

    if response.status_code != 200:
        raise OAuthError(f"Token endpoint returned {response.status_code}: {response.text[:200]}")
    return response.json()


async def exchange_code(
    client: httpx.AsyncClient, provider: Provider, code: str, redirect_uri: str
) -> TokenResponse:
    """Exchange an authorization code for access and refresh tokens."""
    _require_oauth(provider)
    payload = await _post_token(client, provider, {
        "code": code,
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    })
    return TokenResponse(**payload)


async def refresh_access_token(
    client: httpx.AsyncClient, provider: Provider, refresh_token: str
) -> TokenResponse:
    """
    Use a refresh token to get a new access token.

    Returns:
        TokenResponse with the new access_token. When the provider does not
        rotate refresh tokens the old one is carried over.
    """
    _require_oauth(provider)
    payload = await _post_token(client, provider, {
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    })
    # Refresh response may not include refresh_token
    payload.setdefault("refresh_token", refresh_token)
    return TokenResponse(**payload)


async def check_token(client: httpx.AsyncClient, provider: Provider, headers: dict) -> TokenValidation:
    """Probe the provider with the given auth headers. Never mutates any state."""
    path = provider.token_check_path or "/models"
    url = provider.base_url.rstrip("/") + path
    try:
        response = await client.get(url, headers={**provider.headers, **headers}, timeout=15.0)
    except httpx.HTTPError as exc:
        return TokenValidation(valid=False, error=str(exc) or exc.__class__.__name__)

    if response.status_code == 200:
        return TokenValidation(valid=True, status_code=200)
    return TokenValidation(
        valid=False,
        status_code=response.status_code,
        error=response.text[:200] or f"HTTP {response.status_code}",
    )


async def fetch_credits(client: httpx.AsyncClient, provider: Provider, headers: dict) -> Optional[float]:
    """
    Read the account balance from the provider's credits endpoint.

    Returns None when the provider has no credits endpoint or the response
    does not carry a recognisable balance.
    """
    if not provider.credits_path:
        return None

    url = provider.base_url.rstrip("/") + provider.credits_path
    try:
        response = await client.get(url, headers={**provider.headers, **headers}, timeout=15.0)
    except httpx.HTTPError as exc:
        raise UpstreamTransportError(f"Credits endpoint unreachable: {exc}") from exc

    if response.status_code != 200:
        raise UpstreamTransportError(
            f"Credits endpoint returned {response.status_code}", status=response.status_code
        )
    return _extract_balance(response.json())


def _extract_balance(data) -> Optional[float]:
    if not isinstance(data, dict):
        return None
    for key in ("balance", "total_balance", "available_balance", "credits", "remaining"):
        if key in data:
            try:
                return float(data[key])
            except (TypeError, ValueError):
                return None
    # e.g. {"balance_infos": [{"total_balance": "12.5", ...}]} or {"data": {...}}
    for key in ("balance_infos", "data"):
        nested = data.get(key)
        if isinstance(nested, list) and nested:
            nested = nested[0]
        if isinstance(nested, dict):
            value = _extract_balance(nested)
            if value is not None:
                return value
    return None
