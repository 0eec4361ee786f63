# gateway.py — Generic CRUD dispatch over tenant-scoped resources
# Shared by the API-key gateway (routers/gateway.py) and the session-token
# records API (routers/records.py). Every read and write goes through the
# TenantRepository, so tenant filtering never depends on the router.

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Boolean, Date, DateTime, Integer, JSON
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import MethodNotAllowed, NotFound, StorageFailure, ValidationFailure
from models import (
    AuditEventType, AuditLog, Company, Contact, ContactNote, Deal, DealNote, Sale, Tag, Task,
)
from policy import TenantRepository
from scope import SessionScope
from telemetry import gateway_span
from views import VIEWS, SummaryView

logger = logging.getLogger("crm-gateway.gateway")

READ_METHODS = ("GET", "HEAD")
WRITE_METHODS = ("POST", "PATCH", "PUT", "DELETE")
ROW_METHODS = ("PATCH", "PUT", "DELETE")
RESERVED_PARAMS = ("resource",)


@dataclass(frozen=True)
class Resource:
    name: str
    model: Any
    writable: bool = True
    view: Optional[SummaryView] = None

    @property
    def columns(self):
        return self.model.__table__.columns


RESOURCES: Dict[str, Resource] = {
    "companies": Resource("companies", Company),
    "contacts": Resource("contacts", Contact),
    "contact_notes": Resource("contact_notes", ContactNote),
    "deals": Resource("deals", Deal),
    "deal_notes": Resource("deal_notes", DealNote),
    "tasks": Resource("tasks", Task),
    "tags": Resource("tags", Tag),
    "sales": Resource("sales", Sale, writable=False),
    "companies_summary": Resource("companies_summary", Company, writable=False, view=VIEWS["companies_summary"]),
    "contacts_summary": Resource("contacts_summary", Contact, writable=False, view=VIEWS["contacts_summary"]),
}


def required_scope(method: str) -> str:
    return "write" if method.upper() in WRITE_METHODS else "read"


def get_resource(name: str, method: str) -> Resource:
    resource = RESOURCES.get(name)
    if resource is None:
        raise NotFound(f"Unknown resource: {name}")
    if method.upper() in WRITE_METHODS and not resource.writable:
        raise MethodNotAllowed(f"Resource {name} is read-only")
    return resource


# ============================================================
# VALUE COERCION
# ============================================================

def coerce_value(column, value, from_query: bool = False):
    """Convert a query-string or JSON value to the column's Python type."""
    if value is None:
        return None
    column_type = column.type
    try:
        if isinstance(column_type, JSON):
            if from_query:
                raise ValidationFailure(f"Cannot filter on column {column.key}")
            return value
        if isinstance(column_type, Boolean):
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
            raise ValueError(value)
        if isinstance(column_type, Integer):
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if isinstance(column_type, DateTime):
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if isinstance(column_type, Date):
            return value if isinstance(value, date) else date.fromisoformat(str(value))
        if not isinstance(value, str) and not from_query:
            raise ValueError(value)
        return str(value)
    except (TypeError, ValueError):
        raise ValidationFailure(f"Invalid value for column {column.key}")


def parse_filters(resource: Resource, params: Mapping[str, str]) -> Dict[str, Any]:
    filters = {}
    columns = resource.columns
    for key, value in params.items():
        if key in RESERVED_PARAMS:
            continue
        if key not in columns:
            raise ValidationFailure(f"Unknown filter column: {key}")
        filters[key] = coerce_value(columns[key], value, from_query=True)
    return filters


def parse_row_id(raw: Optional[str], method: str) -> int:
    if raw is None or raw == "":
        raise ValidationFailure(f"Missing id parameter for {method}")
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailure("Invalid id parameter")


def parse_body(raw: bytes, method: str) -> List[Dict[str, Any]]:
    """Decode a request body into a list of row payloads."""
    try:
        body = json.loads(raw) if raw else None
    except (ValueError, UnicodeDecodeError):
        raise ValidationFailure("Invalid JSON body")
    if isinstance(body, dict):
        return [body]
    if method == "POST" and isinstance(body, list) and body and all(isinstance(r, dict) for r in body):
        return body
    raise ValidationFailure("Invalid JSON body")


def clean_payload(resource: Resource, payload: Dict[str, Any], scope: SessionScope, method: str) -> Dict[str, Any]:
    columns = resource.columns
    unknown = [key for key in payload if key not in columns]
    if unknown:
        raise ValidationFailure(f"Unknown columns: {', '.join(sorted(unknown))}")

    cleaned = {
        key: coerce_value(columns[key], value)
        for key, value in payload.items()
        if key != "id"
    }
    if not scope.is_master:
        if method == "POST":
            # Whatever the client sent, the row lands in the bound organization
            cleaned["organization_id"] = scope.organization_id
        else:
            cleaned.pop("organization_id", None)
    return cleaned


def serialize_row(row) -> Dict[str, Any]:
    return {c.key: getattr(row, c.key) for c in row.__table__.columns}


# ============================================================
# DISPATCHER
# ============================================================

class GatewayDispatcher:
    """Runs one CRUD operation inside the caller's scope and commits it."""

    def __init__(self, db: AsyncSession, scope: SessionScope,
                 request_id: Optional[str] = None, api_key_id: Optional[int] = None):
        self.db = db
        self.scope = scope
        self.repo = TenantRepository(db, scope)
        self.request_id = request_id
        self.api_key_id = api_key_id

    async def dispatch(
        self,
        method: str,
        resource: Resource,
        filters: Optional[Dict[str, Any]] = None,
        row_id: Optional[int] = None,
        payloads: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        method = method.upper()
        with gateway_span(resource.name, method, self.scope.is_master):
            return await self._run(method, resource, filters, row_id, payloads)

    async def _run(self, method, resource, filters, row_id, payloads):
        try:
            if method in READ_METHODS:
                data = await self._read(resource, filters or {})
            elif method == "POST":
                data = await self._insert(resource, payloads or [])
            elif method in ("PATCH", "PUT"):
                data = await self._update(resource, row_id, (payloads or [{}])[0])
            elif method == "DELETE":
                data = await self._delete(resource, row_id)
            else:
                raise MethodNotAllowed()

            if self.scope.is_master:
                self._audit_master_access(method, resource, row_id, data)
            await self.db.commit()
            return data
        except NotFound:
            await self.db.rollback()
            raise
        except StorageFailure as e:
            await self.db.rollback()
            logger.error(f"Gateway {method} {resource.name} rejected: {e.message}")
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            message = str(getattr(e, "orig", None) or e)
            logger.error(f"Gateway {method} {resource.name} failed: {message}")
            raise StorageFailure(message)

    async def _read(self, resource: Resource, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        if resource.view is not None:
            stmt = resource.view.query(self.scope, self.repo.engine, filters)
            result = await self.db.execute(stmt)
            return [resource.view.to_dict(row) for row in result.all()]
        rows = await self.repo.select(resource.model, filters)
        return [serialize_row(row) for row in rows]

    async def _insert(self, resource, payloads):
        cleaned = [clean_payload(resource, p, self.scope, "POST") for p in payloads]
        rows = []
        for payload in cleaned:
            rows.append(await self.repo.insert(resource.model, payload))
        return [serialize_row(row) for row in rows]

    async def _update(self, resource, row_id, payload):
        changes = clean_payload(resource, payload, self.scope, "PATCH")
        rows = await self.repo.update(resource.model, row_id, changes)
        return [serialize_row(row) for row in rows]

    async def _delete(self, resource, row_id):
        rows = await self.repo.delete(resource.model, row_id)
        return [serialize_row(row) for row in rows]

    def _audit_master_access(self, method, resource, row_id, data) -> None:
        organization_ids = sorted({r.get("organization_id") for r in data if r.get("organization_id")})
        self.db.add(AuditLog(
            event_type=AuditEventType.GATEWAY_MASTER_ACCESS,
            organization_id=organization_ids[0] if len(organization_ids) == 1 else None,
            api_key_id=self.api_key_id,
            resource_type=resource.name,
            resource_id=str(row_id) if row_id is not None else None,
            request_id=self.request_id,
            details={"method": method, "rows": len(data), "organizations": organization_ids},
        ))
