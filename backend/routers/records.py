# routers/records.py — CRM records for signed-in users (session tokens)
# Same resources and dispatcher as the API-key gateway; the organization
# comes from the caller's sales record instead of a key.
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from gateway import GatewayDispatcher, get_resource, parse_body, parse_filters
from scope import SessionScope, get_principal_scope

router = APIRouter(prefix="/api/v1/records", tags=["Records"])


async def _dispatch(request: Request, db: AsyncSession, scope: SessionScope,
                    resource_name: str, row_id=None, with_body=False, filters=None):
    method = request.method.upper()
    resource = get_resource(resource_name, method)
    payloads = parse_body(await request.body(), method) if with_body else None
    dispatcher = GatewayDispatcher(db, scope, request_id=getattr(request.state, "request_id", None))
    parsed_filters = parse_filters(resource, filters) if filters is not None else {}
    data = await dispatcher.dispatch(method, resource, filters=parsed_filters, row_id=row_id, payloads=payloads)
    return {"data": data}


@router.get("/{resource}")
async def list_records(
    resource: str,
    request: Request,
    scope: SessionScope = Depends(get_principal_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """List rows of a resource in the caller's organization (query params filter)"""
    return await _dispatch(request, db, scope, resource, filters=dict(request.query_params))


@router.post("/{resource}")
async def create_records(
    resource: str,
    request: Request,
    scope: SessionScope = Depends(get_principal_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Insert one row (or a list); organization and owner are filled in"""
    return await _dispatch(request, db, scope, resource, with_body=True)


@router.patch("/{resource}/{row_id}")
async def update_record(
    resource: str,
    row_id: int,
    request: Request,
    scope: SessionScope = Depends(get_principal_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await _dispatch(request, db, scope, resource, row_id=row_id, with_body=True)


@router.delete("/{resource}/{row_id}")
async def delete_record(
    resource: str,
    row_id: int,
    request: Request,
    scope: SessionScope = Depends(get_principal_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await _dispatch(request, db, scope, resource, row_id=row_id)
