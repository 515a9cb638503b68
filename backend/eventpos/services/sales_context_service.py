# Overview: Sales-context validator used before an order is created against an event.

from __future__ import annotations

from ..extensions import db
from ..models import SalesContext
from ..models.tenancy import SALES_CONTEXT_ACTIVE
from .errors import NotFoundError, ValidationError


def resolve_sales_context(context_id: int, organization_id: int) -> SalesContext:
    """
    Load a sales context scoped to the organization.

    Contexts belonging to another organization are reported as missing so
    their existence is not revealed.
    """
    context = db.session.query(SalesContext).filter_by(id=context_id).first()
    if context is None or context.organization_id != organization_id:
        raise NotFoundError("Sales context not found", details={"sales_context_id": context_id})
    return context


def require_active_sales_context(context_id: int, organization_id: int) -> SalesContext:
    context = resolve_sales_context(context_id, organization_id)
    if context.status != SALES_CONTEXT_ACTIVE:
        raise ValidationError(
            "Sales context is not active",
            details={"sales_context_id": context_id, "status": context.status},
        )
    return context
