"""
OAuth API Routes

Account login flows: paste a token, or run the authorization code flow with
the callback landing on this server. Progress is pushed on the event bus.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from chatrelay.api.routes_accounts import to_read
from chatrelay.core.errors import CredentialExpired, NotFound
from chatrelay.core.oauth import OAuthError, TokenValidation
from chatrelay.core.runtime import Runtime, get_runtime
from chatrelay.models.account import AccountRead

router = APIRouter()


class OAuthStartRequest(BaseModel):
    provider_id: str
    name: Optional[str] = None
    redirect_uri: Optional[str] = None


class OAuthStartResponse(BaseModel):
    auth_url: str
    state: str


class LoginWithTokenRequest(BaseModel):
    provider_id: str
    credentials: Dict[str, str] = Field(default_factory=dict)
    name: Optional[str] = None
    email: Optional[str] = None
    validate_token: bool = True


class ValidateTokenRequest(BaseModel):
    provider_id: Optional[str] = None
    token: Optional[str] = None
    account_id: Optional[str] = None


class RefreshTokenRequest(BaseModel):
    account_id: str


class RefreshTokenResponse(BaseModel):
    success: bool
    expires_at: Optional[int] = None
    error: Optional[str] = None


@router.post("/start", response_model=OAuthStartResponse)
async def start_oauth(body: OAuthStartRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """
    Start the authorization code flow.

    Returns an authorization URL to open in a browser. Unless a redirect_uri
    is given, the provider redirects back to this server's /api/oauth/callback.
    """
    redirect_uri = body.redirect_uri
    if not redirect_uri:
        host = request.headers.get("host", "localhost:8000")
        scheme = request.headers.get("x-forwarded-proto", "http")
        redirect_uri = f"{scheme}://{host}/api/oauth/callback"

    try:
        started = runtime.tokens.start_login(body.provider_id, redirect_uri, body.name)
    except OAuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OAuthStartResponse(**started)


def _result_page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(f"""
        <html>
            <head><title>{title}</title></head>
            <body>
                <h1>{title}</h1>
                <p>{message}</p>
            </body>
        </html>
        """, status_code=status_code)


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
):
    """OAuth callback endpoint; the provider redirects here after the user authorizes."""
    if error:
        return _result_page("OAuth Failed", f"Error: {error}", 400)
    if not code or not state:
        return _result_page("OAuth Failed", "Missing code or state parameter", 400)

    try:
        account = await runtime.tokens.complete_login(state, code)
    except NotFound:
        return _result_page("OAuth Failed", "Invalid or expired state. Please try again.", 400)
    except (OAuthError, ValueError) as e:
        return _result_page("OAuth Failed", str(e), 400)

    return _result_page("OAuth Success", f"Account <strong>{account.name}</strong> has been added.")


@router.post("/login-with-token", response_model=AccountRead)
async def login_with_token(body: LoginWithTokenRequest, runtime: Runtime = Depends(get_runtime)):
    account = await runtime.tokens.login_with_token(
        body.provider_id,
        body.credentials,
        name=body.name,
        email=body.email,
        validate=body.validate_token,
    )
    return to_read(runtime, account)


@router.post("/validate-token", response_model=TokenValidation)
async def validate_token(body: ValidateTokenRequest, runtime: Runtime = Depends(get_runtime)):
    if body.account_id:
        return await runtime.tokens.validate_token(body.account_id)
    if not body.provider_id or not body.token:
        raise HTTPException(status_code=400, detail="Either account_id or provider_id and token are required")
    return await runtime.tokens.validate_raw_token(body.provider_id, body.token)


@router.post("/refresh-token", response_model=RefreshTokenResponse)
async def refresh_token(body: RefreshTokenRequest, runtime: Runtime = Depends(get_runtime)):
    runtime.pool.get_account(body.account_id)
    runtime.tokens.reset(body.account_id)
    try:
        capability = await runtime.tokens.refresh(body.account_id, force=True)
    except CredentialExpired as e:
        return RefreshTokenResponse(success=False, error=e.reason)
    return RefreshTokenResponse(success=True, expires_at=capability.expires_at)
