"""
Model Mapping API Routes

Manage the request-model to provider/model mappings kept in the live config.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from chatrelay.core.config import ModelMapping
from chatrelay.core.runtime import Runtime, get_runtime

router = APIRouter()


@router.get("/", response_model=List[ModelMapping])
def list_mappings(runtime: Runtime = Depends(get_runtime)):
    return list(runtime.config.live.model_mappings.values())


@router.put("/", response_model=ModelMapping)
def upsert_mapping(mapping: ModelMapping, runtime: Runtime = Depends(get_runtime)):
    provider = runtime.pool.get_provider(mapping.provider_id)
    if mapping.preferred_account_id:
        account = runtime.pool.get_account(mapping.preferred_account_id)
        if account.provider_id != provider.id:
            raise HTTPException(
                status_code=400,
                detail=f"Account {account.id} does not belong to provider {provider.id}",
            )
    runtime.config.set_mapping(mapping)
    return mapping


@router.delete("/{request_model:path}")
def delete_mapping(request_model: str, runtime: Runtime = Depends(get_runtime)):
    if not runtime.config.remove_mapping(request_model):
        raise HTTPException(status_code=404, detail="Mapping not found")
    return {"ok": True}
