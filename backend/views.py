# views.py — Read-only summary views with tenant-aware joins
# Each join between two tenant-scoped tables also matches on organization_id,
# and every joined table is filtered by the caller's policies, so a view can
# never pull rows across tenants even when the base tables are policy-correct.

from typing import Any, Callable, Dict, Optional

from sqlalchemy import and_, distinct, func, select

from models import Company, Contact, Deal, Task
from policy import Operation, PolicyEngine, policy_engine
from scope import SessionScope


class SummaryView:
    def __init__(self, name: str, base_model, builder: Callable, extra_columns):
        self.name = name
        self.base_model = base_model
        self._builder = builder
        self.extra_columns = tuple(extra_columns)

    def query(self, scope: SessionScope, engine: PolicyEngine = None, filters: Optional[Dict[str, Any]] = None):
        engine = engine or policy_engine
        stmt = self._builder(scope, engine)
        stmt = stmt.where(engine.clause(self.base_model, scope, Operation.SELECT))
        for column, value in (filters or {}).items():
            stmt = stmt.where(getattr(self.base_model, column) == value)
        return stmt.order_by(self.base_model.id)

    def to_dict(self, row) -> Dict[str, Any]:
        entity = row[0]
        data = {c.key: getattr(entity, c.key) for c in entity.__table__.columns}
        for index, name in enumerate(self.extra_columns, start=1):
            data[name] = row[index]
        return data


def _companies_summary(scope, engine):
    return (
        select(
            Company,
            func.count(distinct(Deal.id)).label("nb_deals"),
            func.count(distinct(Contact.id)).label("nb_contacts"),
        )
        .select_from(Company)
        .outerjoin(Deal, and_(
            Company.id == Deal.company_id,
            Company.organization_id == Deal.organization_id,
            engine.clause(Deal, scope, Operation.SELECT),
        ))
        .outerjoin(Contact, and_(
            Company.id == Contact.company_id,
            Company.organization_id == Contact.organization_id,
            engine.clause(Contact, scope, Operation.SELECT),
        ))
        .group_by(Company.id)
    )


def _contacts_summary(scope, engine):
    return (
        select(
            Contact,
            Company.name.label("company_name"),
            func.count(distinct(Task.id)).label("nb_tasks"),
        )
        .select_from(Contact)
        .outerjoin(Task, and_(
            Contact.id == Task.contact_id,
            Contact.organization_id == Task.organization_id,
            engine.clause(Task, scope, Operation.SELECT),
        ))
        .outerjoin(Company, and_(
            Contact.company_id == Company.id,
            Contact.organization_id == Company.organization_id,
            engine.clause(Company, scope, Operation.SELECT),
        ))
        .group_by(Contact.id, Company.name)
    )


VIEWS = {
    "companies_summary": SummaryView("companies_summary", Company, _companies_summary, ["nb_deals", "nb_contacts"]),
    "contacts_summary": SummaryView("contacts_summary", Contact, _contacts_summary, ["company_name", "nb_tasks"]),
}
