"""
Upstream Client

Sends chat completion requests to a provider's OpenAI-compatible endpoint
through one shared httpx client. Transport problems (timeouts, refused
connections, DNS) surface as UpstreamTransportError; HTTP error statuses are
returned for the gateway to classify.
"""
import logging
from typing import Any, Dict

import httpx

from chatrelay.core.errors import UpstreamTransportError
from chatrelay.core.vault import AuthCapability
from chatrelay.models.provider import Provider

logger = logging.getLogger(__name__)

USER_AGENT = "chatrelay/1.0"


def chat_url(provider: Provider) -> str:
    return provider.base_url.rstrip("/") + "/" + provider.chat_path.lstrip("/")


class UpstreamClient:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def send(
        self,
        provider: Provider,
        capability: AuthCapability,
        payload: Dict[str, Any],
        timeout: float,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Forward one request.

        Args:
            provider: Target provider
            capability: Applies the account's credential to the headers
            payload: Request body, already carrying the upstream model name
            timeout: Per-attempt timeout in seconds
            stream: Leave the response body unread for the caller to relay

        Returns:
            The upstream response. With stream=True and a 2xx status the
            caller owns the response and must close it.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "User-Agent": USER_AGENT,
            **provider.headers,
        }
        capability.apply(headers)

        request = self._client.build_request(
            "POST", chat_url(provider), json=payload, headers=headers, timeout=timeout
        )
        try:
            response = await self._client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            raise UpstreamTransportError(f"Upstream timed out after {timeout:g}s") from exc
        except httpx.TransportError as exc:
            detail = str(exc) or exc.__class__.__name__
            raise UpstreamTransportError(f"Upstream connection failed: {detail}") from exc

        if stream and response.status_code >= 400:
            # Error bodies are small; read them so the caller can inspect or relay them.
            try:
                await response.aread()
            except httpx.HTTPError as exc:
                raise UpstreamTransportError(
                    f"Upstream error body unreadable: {exc}", status=response.status_code
                ) from exc
            finally:
                await response.aclose()
        return response
