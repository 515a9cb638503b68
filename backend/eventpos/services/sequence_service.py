# Overview: Per-organization, per-day order numbering backed by in-place counters.

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Organization, OrderSequence
from ..models.sequences import SEQUENCE_DAILY_NUMBER, SEQUENCE_ORDER_NUMBER
from ..time_utils import local_date
from .errors import ConflictError, ValidationError


def _order_scope(organization_id: int) -> str:
    return f"org:{organization_id}"


def _daily_scope(organization_id: int, sales_context_id: int) -> str:
    return f"org:{organization_id}:ctx:{sales_context_id}"


def _allocate(organization_id: int, scope_key: str, sequence_type: str, business_date: date) -> int:
    """
    Atomically take the next value of one counter.

    The increment is a single UPDATE on the counter row, so two transactions can
    never read the same value. The first allocation of a day inserts the row
    inside a SAVEPOINT; if a racing transaction inserted it first, the unique
    key rejects ours and the UPDATE is retried against the winner's row.

    Runs inside the caller's transaction and never commits.
    """
    if not organization_id:
        raise ValidationError("organization_id is required")
    if business_date is None:
        raise ValidationError("business_date is required")

    stmt = (
        update(OrderSequence)
        .where(
            OrderSequence.scope_key == scope_key,
            OrderSequence.sequence_type == sequence_type,
            OrderSequence.business_date == business_date,
        )
        .values(last_value=OrderSequence.last_value + 1)
    )
    options = {"synchronize_session": False}

    result = db.session.execute(stmt, execution_options=options)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(
                    OrderSequence(
                        organization_id=organization_id,
                        scope_key=scope_key,
                        sequence_type=sequence_type,
                        business_date=business_date,
                        last_value=1,
                    )
                )
            return 1
        except IntegrityError:
            result = db.session.execute(stmt, execution_options=options)
            if not result.rowcount:
                raise ConflictError(
                    "Could not allocate sequence value",
                    details={"scope_key": scope_key, "sequence_type": sequence_type},
                )

    return db.session.execute(
        db.select(OrderSequence.last_value).where(
            OrderSequence.scope_key == scope_key,
            OrderSequence.sequence_type == sequence_type,
            OrderSequence.business_date == business_date,
        )
    ).scalar_one()


def next_order_number(organization_id: int, business_date: date) -> str:
    """Next human-facing order number for the organization's business day, e.g. "20261019-0007"."""
    value = _allocate(organization_id, _order_scope(organization_id), SEQUENCE_ORDER_NUMBER, business_date)
    return f"{business_date:%Y%m%d}-{value:04d}"


def next_daily_number(organization_id: int, sales_context_id: int, business_date: date) -> int:
    """Next short pickup number, counted per sales context and day."""
    return _allocate(
        organization_id,
        _daily_scope(organization_id, sales_context_id),
        SEQUENCE_DAILY_NUMBER,
        business_date,
    )


def business_date_for(organization: Organization, at=None) -> date:
    """Calendar day 'now' (or at) falls on in the organization's timezone."""
    return local_date(organization.timezone, at)
