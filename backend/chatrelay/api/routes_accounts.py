"""
Account API Routes

CRUD over accounts, token validation, health check and credits lookup.
Credentials go in on create/update and never come back out.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from chatrelay.core.account_pool import PooledAccount
from chatrelay.core.checker import AccountCheckResult
from chatrelay.core.oauth import TokenValidation
from chatrelay.core.runtime import Runtime, get_runtime
from chatrelay.models.account import AccountCreate, AccountRead, AccountUpdate

router = APIRouter()


def to_read(runtime: Runtime, account: PooledAccount) -> AccountRead:
    state = runtime.tokens.state(account.id)
    return account.to_read(
        weight=runtime.config.live.account_weights.get(account.id, 1),
        token_state=state.value if state else None,
    )


@router.get("/", response_model=List[AccountRead])
def list_accounts(provider_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    return [to_read(runtime, a) for a in runtime.pool.list_accounts(provider_id)]


@router.get("/{account_id}", response_model=AccountRead)
def get_account(account_id: str, runtime: Runtime = Depends(get_runtime)):
    return to_read(runtime, runtime.pool.get_account(account_id))


@router.post("/", response_model=AccountRead)
async def create_account(account: AccountCreate, runtime: Runtime = Depends(get_runtime)):
    created = await runtime.pool.create_account(account)
    return to_read(runtime, created)


@router.patch("/{account_id}", response_model=AccountRead)
async def update_account(account_id: str, updates: AccountUpdate, runtime: Runtime = Depends(get_runtime)):
    account = await runtime.pool.update_account(account_id, updates)
    if updates.credentials:
        runtime.tokens.reset(account_id)
    return to_read(runtime, account)


@router.delete("/{account_id}")
async def delete_account(account_id: str, runtime: Runtime = Depends(get_runtime)):
    if not await runtime.pool.delete_account(account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    runtime.tokens.reset(account_id)
    return {"ok": True}


@router.post("/{account_id}/check-status", response_model=AccountCheckResult)
async def check_account_status(account_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.checker.check_account(account_id)


@router.post("/{account_id}/validate-token", response_model=TokenValidation)
async def validate_account_token(account_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.tokens.validate_token(account_id)


@router.get("/{account_id}/credits")
async def get_account_credits(account_id: str, runtime: Runtime = Depends(get_runtime)):
    balance = await runtime.checker.fetch_credits(account_id)
    return {"account_id": account_id, "balance": balance}
