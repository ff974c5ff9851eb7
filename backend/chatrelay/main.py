from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import asyncio
import logging
from logging.handlers import RotatingFileHandler

from chatrelay.core.config import get_settings
from chatrelay.core.errors import ConfigError, GatewayError

# ============================================================================
# Logging Configuration
# ============================================================================
settings = get_settings()

# Create rotating file handler (10MB per file, keep 5 backups)
file_handler = RotatingFileHandler(
    settings.log_file,
    maxBytes=10 * 1024 * 1024,  # 10MB
    backupCount=5,
    encoding="utf-8"
)
file_handler.setLevel(logging.INFO)
file_handler.setFormatter(logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
))

# Also keep console output
console_handler = logging.StreamHandler()
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(logging.Formatter(
    "%(asctime)s - %(levelname)s - %(message)s"
))

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler]
)

# Reduce noise from httpx
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)
logger.info(f"Logging to file: {settings.log_file}")

app = FastAPI(
    title="chatrelay",
    description="Control plane for the chat completion gateway",
    version="1.0.0"
)

# Configure CORS
origins = [
    "http://localhost:5173",  # Vite Dev Server
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ConfigError):
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health_check():
    from chatrelay.core.runtime import get_runtime
    runtime = get_runtime()
    return {
        "status": "ok",
        "version": "1.0.0",
        "accounts_loaded": len(runtime.pool.list_accounts()),
        "proxy_running": runtime.proxy.running,
    }

from chatrelay.core.database import create_db_and_tables
from chatrelay.core.runtime import init_runtime, get_runtime
from chatrelay.api import routes_proxy, routes_providers, routes_accounts, routes_oauth, routes_logs, routes_config, routes_mapping, routes_events

TOKEN_REFRESH_INTERVAL = 240
MAINTENANCE_INTERVAL = 30


# Background task for token refresh (every 240 seconds)
async def background_token_refresh():
    """Background task to refresh tokens before they expire."""
    while True:
        try:
            await asyncio.sleep(TOKEN_REFRESH_INTERVAL)

            runtime = get_runtime()
            if runtime.pool.list_accounts():
                logger.info("Running token refresh check")
                await runtime.tokens.refresh_expiring()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in token refresh: {e}")


# Background task for quota reset, offline recovery and log retention (every 30 seconds)
async def background_maintenance():
    """Rolling 24h quota reset, offline account recovery and log pruning."""
    while True:
        try:
            await asyncio.sleep(MAINTENANCE_INTERVAL)

            runtime = get_runtime()
            await runtime.pool.reset_quotas()
            await runtime.pool.recover_offline()
            runtime.logs.prune(runtime.config.live.log_retention_days)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in maintenance: {e}")


_background_tasks = []


@app.on_event("startup")
async def on_startup():
    runtime = get_runtime()
    create_db_and_tables(runtime.engine)
    init_runtime()
    # Start background token refresh task
    _background_tasks.append(asyncio.create_task(background_token_refresh()))
    logger.info(f"Background token refresh started ({TOKEN_REFRESH_INTERVAL}s interval)")
    # Start background maintenance task
    _background_tasks.append(asyncio.create_task(background_maintenance()))
    logger.info(f"Background maintenance started ({MAINTENANCE_INTERVAL}s interval)")

    if settings.autostart_proxy:
        try:
            await runtime.proxy.start()
        except OSError as e:
            logger.error(f"Proxy autostart failed: {e}")


@app.on_event("shutdown")
async def on_shutdown():
    for task in _background_tasks:
        task.cancel()
    _background_tasks.clear()
    await get_runtime().aclose()

# Proxy control APIs
app.include_router(routes_proxy.router, prefix="/api/proxy", tags=["Proxy"])

# Provider APIs
app.include_router(routes_providers.router, prefix="/api/providers", tags=["Providers"])

# Account APIs
app.include_router(routes_accounts.router, prefix="/api/accounts", tags=["Accounts"])

# OAuth APIs (token login and authorization code flow)
app.include_router(routes_oauth.router, prefix="/api/oauth", tags=["OAuth"])

# Log APIs
app.include_router(routes_logs.router, prefix="/api/logs", tags=["Logs"])

# Configuration APIs
app.include_router(routes_config.router, prefix="/api/config", tags=["Config"])

# Model Mapping APIs
app.include_router(routes_mapping.router, prefix="/api/mappings", tags=["Model Mappings"])

# Push notifications (Server-Sent Events)
app.include_router(routes_events.router, prefix="/api/events", tags=["Events"])

if __name__ == "__main__":
    uvicorn.run("chatrelay.main:app", host="127.0.0.1", port=8000, reload=True)
