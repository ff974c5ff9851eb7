import json
import time
from typing import Callable, Optional

import httpx

from chatrelay.core.runtime import Runtime
from chatrelay.models.account import AccountCreate
from chatrelay.models.provider import AuthType, ProviderCreate

UPSTREAM_BASE = "http://upstream.test/v1"
CHAT_URL = f"{UPSTREAM_BASE}/chat/completions"
TOKEN_URL = "http://auth.test/oauth/token"


def build_runtime(handler: Callable, engine=None) -> Runtime:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Runtime(engine=engine, http_client=client, log_capacity=1000)


def add_provider(runtime: Runtime, provider_id: str = "p1", models=("test-model",), **extra):
    return runtime.pool.create_provider(ProviderCreate(
        id=provider_id,
        name=provider_id.upper(),
        base_url=UPSTREAM_BASE,
        supported_models=list(models),
        **extra,
    ))


def add_oauth_provider(runtime: Runtime, provider_id: str = "p1", models=("test-model",)):
    return add_provider(
        runtime,
        provider_id,
        models,
        auth_type=AuthType.OAUTH,
        token_url=TOKEN_URL,
        client_id="client-1",
    )


async def add_account(
    runtime: Runtime,
    account_id: str,
    provider_id: str = "p1",
    daily_quota: Optional[int] = None,
    **credentials,
):
    return await runtime.pool.create_account(AccountCreate(
        id=account_id,
        provider_id=provider_id,
        name=account_id,
        daily_quota=daily_quota,
        credentials=credentials or {"api_key": f"key-{account_id}"},
    ))


def expired_oauth_credentials(access_token: str = "old-token") -> dict:
    return {
        "access_token": access_token,
        "refresh_token": "refresh-1",
        "expires_at": str(int(time.time()) - 10),
    }


def chat_body(model: str = "test-model", stream: bool = False) -> dict:
    return {
        "model": model,
        "messages": [{"role": "user", "content": "hello"}],
        "stream": stream,
    }


def completion(model: str, content: str = "hi there") -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
    }


def ok_response(request: httpx.Request, content: str = "hi there") -> httpx.Response:
    payload = json.loads(request.content)
    return httpx.Response(200, json=completion(payload["model"], content))


def bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "").removeprefix("Bearer ")
