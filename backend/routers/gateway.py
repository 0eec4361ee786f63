# routers/gateway.py — API-key gateway: generic CRUD for external integrations
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from credentials import ResolvedCredential, get_api_key_credential
from database import get_db_session
from errors import AuthorizationFailure, RateLimitExceeded, ValidationFailure
from gateway import (
    GatewayDispatcher, ROW_METHODS, get_resource, parse_body, parse_filters,
    parse_row_id, required_scope,
)
from rate_limit import RateLimiter, get_rate_limiter
from scope import bind_scope, scope_for_credential

router = APIRouter(prefix="/api/v1/gateway", tags=["Gateway"])


@router.api_route("", methods=["GET", "HEAD", "POST", "PATCH", "PUT", "DELETE"])
async def gateway(
    request: Request,
    credential: ResolvedCredential = Depends(get_api_key_credential),
    db: AsyncSession = Depends(get_db_session),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Dispatch `?resource=<name>` CRUD within the key's tenant scope"""
    decision = await limiter.check(credential.key_hash)
    if not decision.allowed:
        raise RateLimitExceeded(limiter.message)

    method = request.method.upper()
    params = dict(request.query_params)
    resource_name = params.pop("resource", None)
    if not resource_name:
        raise ValidationFailure("Missing resource parameter")

    scope_needed = required_scope(method)
    if not credential.has_scope(scope_needed):
        raise AuthorizationFailure(f"API key lacks {scope_needed} scope")

    resource = get_resource(resource_name, method)

    row_id = None
    filters = {}
    payloads = None
    if method in ROW_METHODS:
        row_id = parse_row_id(params.get("id"), method)
    else:
        filters = parse_filters(resource, params)
    if method in ("POST", "PATCH", "PUT"):
        payloads = parse_body(await request.body(), method)

    scope = scope_for_credential(credential)
    bind_scope(db, scope)
    dispatcher = GatewayDispatcher(
        db, scope,
        request_id=getattr(request.state, "request_id", None),
        api_key_id=credential.key_id,
    )
    data = await dispatcher.dispatch(method, resource, filters=filters, row_id=row_id, payloads=payloads)
    return {"data": data}
