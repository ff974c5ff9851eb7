"""
Runtime

Wires the gateway components together. One Runtime per process; tests build
their own around an in-memory engine and a mocked httpx transport.
"""
import logging
from typing import Optional

import httpx

from chatrelay.core.account_pool import AccountPool
from chatrelay.core.checker import ProviderChecker
from chatrelay.core.config import AppConfig, ConfigManager, get_settings
from chatrelay.core.events import EventBus
from chatrelay.core.gateway import Gateway
from chatrelay.core.load_balancer import LoadBalancer
from chatrelay.core.log_aggregator import LogAggregator
from chatrelay.core.proxy.server import ProxyServer
from chatrelay.core.proxy.upstream import UpstreamClient
from chatrelay.core.statistics import StatisticsAggregator
from chatrelay.core.token_manager import TokenManager
from chatrelay.core.vault import CredentialVault

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        engine=None,
        http_client: Optional[httpx.AsyncClient] = None,
        log_capacity: Optional[int] = None,
    ):
        self.engine = engine
        self.events = EventBus()
        self.logs = LogAggregator(log_capacity or get_settings().log_capacity, self.events)
        self.config = ConfigManager(engine)
        self.vault = CredentialVault(engine)
        self.pool = AccountPool(engine, self.vault, self.logs)
        self.http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        self.tokens = TokenManager(self.pool, self.http, self.logs, self.events)
        self.balancer = LoadBalancer()
        self._strategy = self.config.live.load_balance_strategy
        self.config.on_change(self._on_config_change)
        self.stats = StatisticsAggregator()
        self.upstream = UpstreamClient(self.http)
        self.gateway = Gateway(
            self.pool,
            self.tokens,
            self.upstream,
            self.config,
            balancer=self.balancer,
            stats=self.stats,
            logs=self.logs,
        )
        self.checker = ProviderChecker(self.pool, self.tokens, self.http)
        self.proxy = ProxyServer(self._build_proxy_app, self.config, self.logs, self.events)

    def _on_config_change(self, config: AppConfig, binding_changed: bool) -> None:
        strategy = config.live.load_balance_strategy
        if strategy != self._strategy:
            self._strategy = strategy
            self.balancer.reset()
            logger.info("Load balance strategy switched to %s", strategy.value)

    def _build_proxy_app(self):
        from chatrelay.api.routes_openai import build_proxy_app
        return build_proxy_app(self)

    def load(self) -> None:
        self.vault.load()
        self.pool.load()

    async def aclose(self) -> None:
        await self.proxy.stop()
        await self.http.aclose()


# Global singleton instance
_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Get global Runtime instance."""
    global _runtime
    if _runtime is None:
        from chatrelay.core.database import engine
        _runtime = Runtime(engine)
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


def init_runtime() -> Runtime:
    """Initialize the global Runtime and load providers, accounts and credentials."""
    runtime = get_runtime()
    runtime.load()
    logger.info("Runtime ready: %d accounts in pool", len(runtime.pool.list_accounts()))
    return runtime
