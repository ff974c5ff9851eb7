"""
Proxy Control API Routes

Start/stop the proxy listener and read its status and statistics.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from chatrelay.core.proxy import ProxyStatus
from chatrelay.core.runtime import Runtime, get_runtime
from chatrelay.core.statistics import ProxyStatistics

router = APIRouter()


class ProxyStartRequest(BaseModel):
    port: Optional[int] = None


class ProxyActionResponse(BaseModel):
    success: bool
    status: ProxyStatus


@router.post("/start", response_model=ProxyActionResponse)
async def start_proxy(body: Optional[ProxyStartRequest] = None, runtime: Runtime = Depends(get_runtime)):
    try:
        started = await runtime.proxy.start(body.port if body else None)
    except OSError as e:
        raise HTTPException(status_code=409, detail=f"Cannot listen on the configured address: {e}")
    return ProxyActionResponse(success=started, status=runtime.proxy.status())


@router.post("/stop", response_model=ProxyActionResponse)
async def stop_proxy(runtime: Runtime = Depends(get_runtime)):
    stopped = await runtime.proxy.stop()
    return ProxyActionResponse(success=stopped, status=runtime.proxy.status())


@router.get("/status", response_model=ProxyStatus)
async def proxy_status(runtime: Runtime = Depends(get_runtime)):
    return runtime.proxy.status()


@router.get("/statistics", response_model=ProxyStatistics)
async def proxy_statistics(runtime: Runtime = Depends(get_runtime)):
    return runtime.stats.snapshot()


@router.delete("/statistics")
async def reset_statistics(runtime: Runtime = Depends(get_runtime)):
    runtime.stats.clear()
    return {"ok": True}
