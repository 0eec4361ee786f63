# auth.py — Identity provider & session-token authentication
# Features:
# - Signed JWT access/refresh tokens with JTI
# - bcrypt password hashing
# - Brute force protection on login
# - Principal (sales record) lookup for every session token
# - Administrator gate for key and user management

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Header, Request
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credentials import is_api_key, strip_bearer
from database import get_db_session
from errors import AuthenticationFailure, AuthorizationFailure, RateLimitExceeded
from models import AuthIdentity, Sale, AuditLog, AuditEventType, utcnow

logger = logging.getLogger("crm-gateway.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning("JWT_SECRET_KEY not set. Generated ephemeral key; sessions will not survive a restart.")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

# In-memory brute force tracker (per process)
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_name: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentPrincipal(BaseModel):
    id: int
    user_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_id: int
    administrator: bool
    is_service_account: bool = False


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and login handling for session clients"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthenticationFailure("Token expired")
        except JWTError:
            raise AuthenticationFailure("Invalid token")

    @staticmethod
    def token_data(identity: AuthIdentity) -> Dict[str, Any]:
        return {"sub": identity.id, "email": identity.email}

    @staticmethod
    def _check_brute_force(email: str) -> None:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise RateLimitExceeded(
                f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes."
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def authenticate(email: str, password: str, db: AsyncSession,
                           request: Optional[Request] = None) -> Optional[AuthIdentity]:
        AuthService._check_brute_force(email)

        stmt = select(AuthIdentity).where(AuthIdentity.email == email)
        result = await db.execute(stmt)
        identity = result.scalar_one_or_none()

        if not identity or not AuthService.verify_password(password, identity.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if identity.banned:
            return None

        sale = await AuthService.get_principal_record(identity.id, db)
        if sale is None or sale.disabled or sale.is_service_account:
            return None

        AuthService._clear_attempts(email)
        identity.last_sign_in_at = utcnow()
        db.add(identity)
        db.add(AuditLog(
            event_type=AuditEventType.USER_LOGIN,
            organization_id=sale.organization_id,
            actor_sales_id=sale.id,
            request_id=getattr(request.state, "request_id", None) if request else None,
        ))
        await db.commit()
        return identity

    @staticmethod
    async def get_principal_record(user_id: str, db: AsyncSession) -> Optional[Sale]:
        stmt = select(Sale).where(Sale.user_id == user_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()


def principal_from_sale(sale: Sale) -> CurrentPrincipal:
    return CurrentPrincipal(
        id=sale.id,
        user_id=sale.user_id,
        email=sale.email,
        first_name=sale.first_name,
        last_name=sale.last_name,
        organization_id=sale.organization_id,
        administrator=bool(sale.administrator),
        is_service_account=bool(sale.is_service_account),
    )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_principal(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentPrincipal:
    if not authorization:
        raise AuthenticationFailure("Missing Authorization header")
    if is_api_key(authorization):
        # API keys only reach the gateway and provisioning endpoints
        raise AuthenticationFailure()

    payload = AuthService.verify_token(strip_bearer(authorization))
    if payload.get("type") != "access":
        raise AuthenticationFailure("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationFailure("Invalid token")

    sale = await AuthService.get_principal_record(user_id, db)
    if sale is None or sale.disabled:
        raise AuthenticationFailure()

    return principal_from_sale(sale)


async def require_admin(principal: CurrentPrincipal = Depends(get_current_principal)) -> CurrentPrincipal:
    if not principal.administrator:
        raise AuthorizationFailure("Only administrators can perform this action")
    return principal
