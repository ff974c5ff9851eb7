"""
OpenAI Protocol API Routes

The proxy surface: OpenAI-compatible endpoints served on the proxy listener.
Requests go through the gateway for account selection, retry and failover;
responses (streaming or not) are relayed as the upstream sent them.
"""
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ValidationError
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.core.config import ConfigManager
from chatrelay.core.errors import GatewayError, InvalidRequest, Unauthorized
from chatrelay.core.gateway import GatewayResult
from chatrelay.core.model_mapper import available_models, resolve
from chatrelay.core.proxy import OpenAICompletionRequest, OpenAIModel, OpenAIRequest

router = APIRouter()


def _runtime(request: Request):
    return request.app.state.runtime


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def _validate(model: type, body: dict) -> BaseModel:
    try:
        return model.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidRequest(f"Invalid request format: {location}: {first['msg']}")


def _to_response(result: GatewayResult) -> Response:
    headers = dict(result.headers)
    if result.stream is not None:
        headers.setdefault("content-type", "text/event-stream")
        headers["X-Accel-Buffering"] = "no"
        return StreamingResponse(
            result.stream,
            status_code=result.status_code,
            headers=headers,
            background=BackgroundTask(result.aclose),
        )

    headers.setdefault("content-type", "application/json")
    return Response(content=result.body, status_code=result.status_code, headers=headers)


@router.post("/chat/completions")
async def chat_completions(request: Request):
    """
    OpenAI-compatible /v1/chat/completions endpoint.

    Unknown request fields are forwarded to the upstream untouched; only the
    model name is rewritten to what the chosen provider expects.
    """
    body = await _read_body(request)
    _validate(OpenAIRequest, body)
    result = await _runtime(request).gateway.handle(body)
    return _to_response(result)


@router.post("/completions")
async def completions(request: Request):
    """
    Legacy /v1/completions endpoint.

    The prompt is sent upstream as chat messages and the chat response is
    relayed unchanged.
    """
    legacy = _validate(OpenAICompletionRequest, await _read_body(request))
    payload = legacy.to_chat_payload()
    _validate(OpenAIRequest, payload)
    result = await _runtime(request).gateway.handle(payload)
    return _to_response(result)


@router.get("/models")
async def list_models(request: Request):
    """List available models (OpenAI-compatible)."""
    runtime = _runtime(request)
    models = [
        OpenAIModel(**m).model_dump()
        for m in available_models(runtime.config.live.model_mappings, runtime.pool.list_providers())
    ]
    return {"object": "list", "data": models}


@router.get("/models/{model:path}")
async def get_model(model: str, request: Request):
    """Describe one model; 404 model_not_found when nothing maps or declares it."""
    runtime = _runtime(request)
    route = resolve(model, runtime.config.live.model_mappings, runtime.pool.list_providers())
    return OpenAIModel(id=model, owned_by=route.provider_id).model_dump()


class LiveCORSMiddleware:
    """CORS driven by the live config; toggling it needs no restart."""

    def __init__(self, app, config: ConfigManager):
        self.app = app
        self.config = config
        self._origin = None
        self._cors = None

    async def __call__(self, scope, receive, send):
        live = self.config.live
        if scope["type"] != "http" or not live.enable_cors:
            await self.app(scope, receive, send)
            return

        if self._cors is None or self._origin != live.cors_origin:
            origins = [o.strip() for o in live.cors_origin.split(",") if o.strip()] or ["*"]
            self._cors = CORSMiddleware(
                self.app,
                allow_origins=origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
            self._origin = live.cors_origin
        await self._cors(scope, receive, send)


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Validate the API key for /v1/* when key authentication is enabled."""

    def __init__(self, app, config: ConfigManager):
        super().__init__(app)
        self.config = config

    async def dispatch(self, request: Request, call_next):
        live = self.config.live
        if not live.enable_api_key or request.method == "OPTIONS" or not request.url.path.startswith("/v1"):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        api_key = None
        if auth_header.startswith("Bearer "):
            api_key = auth_header[7:]
        elif "x-api-key" in request.headers:
            api_key = request.headers.get("x-api-key")
        else:
            api_key = request.query_params.get("api_key")

        if api_key and api_key in live.api_keys:
            return await call_next(request)

        error = Unauthorized("Invalid or missing API key")
        return JSONResponse(status_code=error.status_code, content=error.to_body())


async def _gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def build_proxy_app(runtime) -> FastAPI:
    app = FastAPI(title="chatrelay proxy", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.runtime = runtime
    app.add_exception_handler(GatewayError, _gateway_error_handler)

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "accounts_loaded": len(runtime.pool.list_accounts()),
            "accounts_eligible": len(runtime.pool.list_eligible()),
        }

    app.include_router(router, prefix="/v1", tags=["OpenAI Proxy"])

    # Added last so it runs first: preflight requests never reach the key check.
    app.add_middleware(APIKeyMiddleware, config=runtime.config)
    app.add_middleware(LiveCORSMiddleware, config=runtime.config)
    return app
