"""
Proxy Server

Runs the OpenAI-compatible proxy app on its own listener, started and
stopped from the control plane. The socket is bound here so a port that is
already taken fails the start call instead of the process.
"""
import asyncio
import contextlib
import logging
import socket
import time
from typing import Callable, Optional

import uvicorn
from pydantic import BaseModel

from chatrelay.core.config import AppConfig, BindingConfig, ConfigManager
from chatrelay.core.events import EventBus, PROXY_STATUS_CHANGED
from chatrelay.core.log_aggregator import LogAggregator

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS = 10.0


class ProxyStatus(BaseModel):
    running: bool
    host: str
    port: int
    uptime: int = 0
    started_at: Optional[int] = None
    restart_required: bool = False


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the hosting process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def _bind(binding: BindingConfig) -> socket.socket:
    family = socket.AF_INET6 if ":" in binding.host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((binding.host, binding.port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


class ProxyServer:
    def __init__(
        self,
        app_factory: Callable,
        config: ConfigManager,
        logs: Optional[LogAggregator] = None,
        events: Optional[EventBus] = None,
    ):
        self._app_factory = app_factory
        self._app = None
        self._config = config
        self._logs = logs or LogAggregator()
        self._events = events
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._bound: Optional[BindingConfig] = None
        self._started_at: Optional[float] = None
        self._lock = asyncio.Lock()
        config.on_change(self._on_config_change)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> ProxyStatus:
        binding = self._bound if self.running else self._config.binding
        uptime = int(time.time() - self._started_at) if self.running and self._started_at else 0
        return ProxyStatus(
            running=self.running,
            host=binding.host,
            port=binding.port,
            uptime=uptime,
            started_at=int(self._started_at) if self.running and self._started_at else None,
            restart_required=self.running and self._bound != self._config.binding,
        )

    async def start(self, port: Optional[int] = None) -> bool:
        """
        Start listening on the configured binding.

        Args:
            port: Optional port override; it is validated and saved to the config

        Returns:
            False if the proxy was already running

        Raises:
            ConfigError: invalid port
            OSError: the address could not be bound
        """
        async with self._lock:
            if self.running:
                return False
            if port is not None and port != self._config.binding.port:
                self._config.update({"port": port})

            binding = self._config.binding
            sock = _bind(binding)
            if self._app is None:
                self._app = self._app_factory()

            server = _EmbeddedServer(uvicorn.Config(
                self._app,
                log_level="warning",
                lifespan="off",
                access_log=False,
            ))
            task = asyncio.create_task(server.serve(sockets=[sock]))
            while not server.started and not task.done():
                await asyncio.sleep(0.05)

            if task.done():
                sock.close()
                exc = task.exception()
                self._logs.error(f"Proxy failed to start on {binding.host}:{binding.port}: {exc}")
                return False

            self._server = server
            self._task = task
            self._bound = binding.model_copy()
            self._started_at = time.time()

        self._logs.info(f"Proxy started on {binding.host}:{binding.port}")
        self._publish()
        return True

    async def stop(self) -> bool:
        async with self._lock:
            if not self.running:
                return False
            server, task = self._server, self._task
            server.should_exit = True
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Proxy did not stop in %ss, forcing exit", STOP_TIMEOUT_SECONDS)
                server.force_exit = True
                await task
            self._server = None
            self._task = None
            self._started_at = None

        self._logs.info("Proxy stopped")
        self._publish()
        return True

    def _on_config_change(self, config: AppConfig, binding_changed: bool) -> None:
        if binding_changed and self.running:
            binding = config.binding
            self._logs.warn(f"Proxy binding changed to {binding.host}:{binding.port}; restart the proxy to apply it")
            self._publish()

    def _publish(self) -> None:
        if self._events is not None:
            self._events.publish(PROXY_STATUS_CHANGED, self.status().model_dump())
