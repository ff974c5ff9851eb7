"""
Config API Routes

Read and partially update the proxy configuration. Binding fields (host,
port) take effect on the next proxy start; everything else applies to the
next request.
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from chatrelay.core.runtime import Runtime, get_runtime

router = APIRouter()


def _view(runtime: Runtime) -> Dict[str, Any]:
    return {
        **runtime.config.get().flat(),
        "restart_required": runtime.proxy.status().restart_required,
    }


@router.get("/")
def get_config(runtime: Runtime = Depends(get_runtime)):
    return _view(runtime)


@router.patch("/")
def update_config(updates: Dict[str, Any] = Body(...), runtime: Runtime = Depends(get_runtime)):
    runtime.config.update(updates)
    return _view(runtime)
