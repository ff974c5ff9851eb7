"""
Provider API Routes

CRUD over provider configurations, export/import and duplication, plus the
reachability checks.
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel

from chatrelay.core.builtin_providers import BUILTIN_PROVIDERS
from chatrelay.core.checker import ProviderCheckResult
from chatrelay.core.runtime import Runtime, get_runtime
from chatrelay.models.provider import ProviderCreate, ProviderRead, ProviderUpdate

router = APIRouter()


class DuplicateRequest(BaseModel):
    name: Optional[str] = None


@router.get("/", response_model=List[ProviderRead])
def list_providers(runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.list_providers()


@router.get("/builtin")
def list_builtin_providers():
    return BUILTIN_PROVIDERS


@router.post("/import", response_model=ProviderRead)
def import_provider(data: dict = Body(...), runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.import_provider(data)


@router.post("/check-all", response_model=Dict[str, ProviderCheckResult])
async def check_all_providers(runtime: Runtime = Depends(get_runtime)):
    return await runtime.checker.check_all_providers()


@router.get("/{provider_id}", response_model=ProviderRead)
def get_provider(provider_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.get_provider(provider_id)


@router.post("/", response_model=ProviderRead)
def create_provider(provider: ProviderCreate, runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.create_provider(provider)


@router.patch("/{provider_id}", response_model=ProviderRead)
def update_provider(provider_id: str, updates: ProviderUpdate, runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.update_provider(provider_id, updates)


@router.delete("/{provider_id}")
async def delete_provider(provider_id: str, runtime: Runtime = Depends(get_runtime)):
    if not await runtime.pool.delete_provider(provider_id):
        raise HTTPException(status_code=404, detail="Provider not found")
    return {"ok": True}


@router.post("/{provider_id}/check-status", response_model=ProviderCheckResult)
async def check_provider_status(provider_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.checker.check_provider(provider_id)


@router.post("/{provider_id}/duplicate", response_model=ProviderRead)
def duplicate_provider(
    provider_id: str,
    body: Optional[DuplicateRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.pool.duplicate_provider(provider_id, body.name if body else None)


@router.get("/{provider_id}/export")
def export_provider(provider_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.pool.export_provider(provider_id)
