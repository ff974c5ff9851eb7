"""
Gateway

Request lifecycle for one inbound chat completion:

1. Resolve the requested model to a provider (ModelNotSupported otherwise)
2. Pick an eligible account with the configured strategy
3. Make sure its credential is valid, forward, classify the result
4. On a retryable failure exclude the account and try the next one, up to
   1 + retry_count attempts; 401/403 gets one forced refresh and a resend
5. Report the terminal outcome exactly once

Usage is only counted for the attempt that succeeded.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from chatrelay.core.account_pool import AccountPool, HealthOutcome, PooledAccount
from chatrelay.core.config import ConfigManager, LiveConfig
from chatrelay.core.errors import (
    CredentialExpired,
    GatewayError,
    ModelNotSupported,
    NoEligibleAccount,
    NotFound,
    RefreshFailed,
    UpstreamExhausted,
    UpstreamTransportError,
)
from chatrelay.core.load_balancer import LoadBalancer
from chatrelay.core.log_aggregator import LogAggregator
from chatrelay.core.model_mapper import ResolvedRoute, resolve_all
from chatrelay.core.proxy.upstream import UpstreamClient
from chatrelay.core.statistics import RequestOutcome, StatisticsAggregator
from chatrelay.core.token_manager import TokenManager
from chatrelay.models.provider import Provider

logger = logging.getLogger(__name__)

AUTH_REJECTED = (401, 403)
RELAYED_HEADERS = ("content-type", "cache-control")


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


@dataclass
class GatewayResult:
    status_code: int
    headers: Dict[str, str]
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    account_id: Optional[str] = None
    provider_id: Optional[str] = None
    upstream_model: Optional[str] = None
    attempted: List[str] = field(default_factory=list)
    release: Optional[Callable[[], Awaitable[None]]] = None

    async def aclose(self) -> None:
        """Give back the upstream connection of a stream, whether or not it was read to the end."""
        if self.release is not None:
            await self.release()


class _StreamRelay:
    """Relays an upstream body once and releases its connection slot exactly once."""

    def __init__(self, response: httpx.Response, stats: StatisticsAggregator):
        self._response = response
        self._stats = stats
        self._released = False

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_raw():
                yield chunk
        finally:
            await self.release()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._response.aclose()
        finally:
            self._stats.end()


@dataclass
class _Attempt:
    response: Optional[httpx.Response] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    terminal: bool = False


class Gateway:
    def __init__(
        self,
        pool: AccountPool,
        tokens: TokenManager,
        upstream: UpstreamClient,
        config: ConfigManager,
        balancer: Optional[LoadBalancer] = None,
        stats: Optional[StatisticsAggregator] = None,
        logs: Optional[LogAggregator] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._pool = pool
        self._tokens = tokens
        self._upstream = upstream
        self._config = config
        self._balancer = balancer or LoadBalancer()
        self._stats = stats or StatisticsAggregator()
        self._logs = logs or LogAggregator()
        self._clock = clock

    async def handle(self, payload: dict, request_id: Optional[str] = None) -> GatewayResult:
        """
        Serve one chat completion request.

        Returns:
            GatewayResult with either a complete body or a byte stream to relay

        Raises:
            ModelNotSupported: nothing maps or declares the model
            NoEligibleAccount: the provider has no usable account
            UpstreamExhausted: every attempt failed
        """
        request_id = request_id or uuid.uuid4().hex[:12]
        model = payload.get("model", "")
        stream = bool(payload.get("stream"))
        live = self._config.live
        started = self._clock()

        self._stats.begin()
        relaying = False
        try:
            try:
                route, provider = self._route(model, live)
            except GatewayError as exc:
                self._terminal_failure(model, None, [], exc, started, request_id)
                raise

            result = await self._attempt_all(payload, model, stream, route, provider, live, started, request_id)
            relaying = result.stream is not None
            return result
        finally:
            if not relaying:
                self._stats.end()

    def _route(self, model: str, live: LiveConfig):
        routes = resolve_all(model, live.model_mappings, self._pool.list_providers())
        if not routes:
            raise ModelNotSupported(model)
        for route in routes:
            if self._pool.list_eligible(route.provider_id):
                return route, self._pool.get_provider(route.provider_id)
        raise NoEligibleAccount(model, routes[0].provider_id)

    def _pick(self, candidates: List[PooledAccount], route: ResolvedRoute, live: LiveConfig) -> PooledAccount:
        if route.preferred_account_id:
            for account in candidates:
                if account.id == route.preferred_account_id:
                    return account
        return self._balancer.select(
            candidates,
            live.load_balance_strategy,
            group=route.provider_id,
            weights=live.account_weights,
        )

    async def _attempt_all(
        self,
        payload: dict,
        model: str,
        stream: bool,
        route: ResolvedRoute,
        provider: Provider,
        live: LiveConfig,
        started: float,
        request_id: str,
    ) -> GatewayResult:
        ceiling = 1 + live.retry_count
        body = {**payload, "model": route.upstream_model}
        tried: List[str] = []
        last_error: Optional[str] = None

        while len(tried) < ceiling:
            candidates = [a for a in self._pool.list_eligible(route.provider_id) if a.id not in tried]
            if not candidates:
                break
            account = self._pick(candidates, route, live)
            tried.append(account.id)

            attempt = await self._attempt(account, provider, body, stream, live, len(tried), request_id)
            if attempt.response is None:
                last_error = attempt.error
                continue

            response = attempt.response
            latency_ms = (self._clock() - started) * 1000
            if attempt.terminal:
                self._stats.record(RequestOutcome(
                    model=model, success=False, latency_ms=latency_ms, provider_id=provider.id,
                    account_id=account.id, error_type=attempt.error_type,
                ))
                self._logs.error(
                    f"Upstream rejected request for model {model}: HTTP {response.status_code}",
                    account_id=account.id, provider_id=provider.id, request_id=request_id,
                    data={"error": attempt.error_type, "model": model, "attempted": list(tried),
                          "status": response.status_code},
                )
            else:
                await self._pool.record_usage(account.id, 1)
                self._stats.record(RequestOutcome(
                    model=model, success=True, latency_ms=latency_ms,
                    provider_id=provider.id, account_id=account.id,
                ))
                self._logs.info(
                    f"Request for {model} served by {account.name} ({latency_ms:.0f}ms)",
                    account_id=account.id, provider_id=provider.id, request_id=request_id,
                    data={"model": model, "upstream_model": route.upstream_model, "attempts": len(tried)},
                )
            return self._result(response, stream and not attempt.terminal, account, route, tried)

        if not tried:
            error = NoEligibleAccount(model, provider.id)
        else:
            error = UpstreamExhausted(model, tried, last_error)
        self._terminal_failure(model, provider.id, tried, error, started, request_id)
        raise error

    async def _attempt(
        self,
        account: PooledAccount,
        provider: Provider,
        body: dict,
        stream: bool,
        live: LiveConfig,
        number: int,
        request_id: str,
    ) -> _Attempt:
        try:
            capability = await self._tokens.ensure_valid(account.id)
        except RefreshFailed as exc:
            # Logged by the token manager; keep the account out of rotation until it is fixed.
            await self._pool.mark_health(account.id, HealthOutcome.AUTH_FAILURE, exc.message)
            return _Attempt(error=exc.message, error_type=exc.code)
        except (CredentialExpired, NotFound) as exc:
            await self._pool.mark_health(account.id, HealthOutcome.AUTH_FAILURE, exc.message)
            self._attempt_failed(account, number, exc.message, request_id)
            return _Attempt(error=exc.message, error_type=exc.code)

        try:
            response = await self._upstream.send(provider, capability, body, live.timeout_seconds, stream)
            if response.status_code in AUTH_REJECTED:
                await response.aclose()
                try:
                    capability = await self._tokens.refresh(account.id, force=True)
                except CredentialExpired as exc:
                    return _Attempt(error=exc.message, error_type=exc.code)
                response = await self._upstream.send(provider, capability, body, live.timeout_seconds, stream)
        except UpstreamTransportError as exc:
            await self._pool.mark_health(account.id, HealthOutcome.TRANSPORT_FAILURE, exc.message)
            self._attempt_failed(account, number, exc.message, request_id)
            return _Attempt(error=exc.message, error_type=exc.code)

        status = response.status_code
        if status in AUTH_REJECTED:
            await response.aclose()
            message = f"Upstream rejected credential: HTTP {status}"
            await self._pool.mark_health(account.id, HealthOutcome.AUTH_FAILURE, message)
            self._attempt_failed(account, number, message, request_id)
            return _Attempt(error=message, error_type="credential_rejected")

        if is_retryable_status(status):
            await response.aclose()
            message = f"Upstream returned HTTP {status}"
            await self._pool.mark_health(account.id, HealthOutcome.TRANSPORT_FAILURE, message)
            self._attempt_failed(account, number, message, request_id)
            return _Attempt(error=message, error_type="upstream_transport_error")

        if status >= 400:
            # The request itself is bad; another account would fail the same way.
            return _Attempt(response=response, error_type=f"http_{status}", terminal=True)

        await self._pool.mark_health(account.id, HealthOutcome.SUCCESS)
        return _Attempt(response=response)

    def _attempt_failed(self, account: PooledAccount, number: int, error: str, request_id: str) -> None:
        self._logs.warn(
            f"Attempt {number} via {account.name} failed: {error}",
            account_id=account.id,
            provider_id=account.provider_id,
            request_id=request_id,
            data={"attempt": number, "error": error},
        )

    def _terminal_failure(
        self,
        model: str,
        provider_id: Optional[str],
        tried: List[str],
        error: GatewayError,
        started: float,
        request_id: str,
    ) -> None:
        self._stats.record(RequestOutcome(
            model=model,
            success=False,
            latency_ms=(self._clock() - started) * 1000,
            provider_id=provider_id,
            error_type=error.code,
        ))
        self._logs.error(
            f"Request for model {model} failed: {error.message}",
            provider_id=provider_id,
            request_id=request_id,
            data={
                "error": error.__class__.__name__,
                "model": model,
                "attempted": list(tried),
                "last_error": getattr(error, "last_error", None),
            },
        )

    def _result(
        self,
        response: httpx.Response,
        stream: bool,
        account: PooledAccount,
        route: ResolvedRoute,
        tried: List[str],
    ) -> GatewayResult:
        headers = {k: v for k, v in response.headers.items() if k.lower() in RELAYED_HEADERS}
        result = GatewayResult(
            status_code=response.status_code,
            headers=headers,
            account_id=account.id,
            provider_id=route.provider_id,
            upstream_model=route.upstream_model,
            attempted=list(tried),
        )
        if stream and not response.is_stream_consumed:
            relay = _StreamRelay(response, self._stats)
            result.stream = relay.chunks()
            result.release = relay.release
        else:
            result.body = response.content
        return result

