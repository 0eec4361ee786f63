# routers/auth.py — Signup, login and session-token endpoints
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, SignupRequest, LoginRequest, RefreshRequest, TokenResponse,
    CurrentPrincipal, get_current_principal, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from errors import AuthenticationFailure
from models import AuthIdentity, Sale
from onboarding import create_identity, get_init_state

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _build_token_response(identity: AuthIdentity, sale: Sale) -> TokenResponse:
    """Build token response from an identity and its sales record"""
    token_data = AuthService.token_data(identity)
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": sale.id,
            "user_id": identity.id,
            "email": identity.email,
            "first_name": sale.first_name,
            "last_name": sale.last_name,
            "organization_id": sale.organization_id,
            "administrator": bool(sale.administrator),
        },
    )


@router.post("/signup", response_model=TokenResponse, status_code=201)
async def signup(
    signup_data: SignupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Self-service signup: bootstrap, create an organization, or be rejected"""
    metadata = {
        "first_name": signup_data.first_name,
        "last_name": signup_data.last_name,
    }
    if signup_data.organization_name:
        metadata["organization_name"] = signup_data.organization_name

    sale = await create_identity(
        db,
        email=signup_data.email,
        password_hash=AuthService.hash_password(signup_data.password),
        metadata=metadata,
        request_id=getattr(request.state, "request_id", None),
    )
    identity = await db.get(AuthIdentity, sale.user_id)
    return _build_token_response(identity, sale)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    identity = await AuthService.authenticate(credentials.email, credentials.password, db, request)
    if not identity:
        raise AuthenticationFailure("Invalid credentials")
    sale = await AuthService.get_principal_record(identity.id, db)
    return _build_token_response(identity, sale)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)
    if payload.get("type") != "refresh":
        raise AuthenticationFailure("Invalid token type. Expected refresh token.")

    result = await db.execute(select(AuthIdentity).where(AuthIdentity.id == payload.get("sub")))
    identity = result.scalar_one_or_none()
    if not identity or identity.banned:
        raise AuthenticationFailure("User not found or inactive")

    sale = await AuthService.get_principal_record(identity.id, db)
    if sale is None or sale.disabled:
        raise AuthenticationFailure("User not found or inactive")

    return _build_token_response(identity, sale)


@router.get("/me")
async def get_current_user_info(principal: CurrentPrincipal = Depends(get_current_principal)):
    """Get the current principal and the tenant scope its requests run under"""
    return {
        **principal.model_dump(),
        "scope": {"is_master": False, "organization_id": principal.organization_id},
    }


@router.get("/init-state")
async def init_state(db: AsyncSession = Depends(get_db_session)):
    """1 once any principal exists; drives the first-run signup screen"""
    return {"is_initialized": await get_init_state(db)}
