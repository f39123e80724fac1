"""
Reads against the Booking / Partner / User collaborators.
Store failures surface as DependencyError, missing rows as NotFoundError.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leadengine.db.models import Booking, Partner, User
from leadengine.errors import DependencyError, NotFoundError


def _parse_id(value):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


async def _get(session: AsyncSession, model, object_id, code: str, label: str):
    parsed = _parse_id(object_id)
    if parsed is None:
        raise NotFoundError(f"{label} {object_id} not found", code=code)
    try:
        obj = await session.get(model, parsed)
    except SQLAlchemyError as exc:
        raise DependencyError(
            f"Could not load {label.lower()} {object_id}",
            details={"reason": str(exc)},
        ) from exc
    if obj is None:
        raise NotFoundError(f"{label} {object_id} not found", code=code)
    return obj


async def get_booking(session: AsyncSession, booking_id) -> Booking:
    return await _get(session, Booking, booking_id, "BOOKING_NOT_FOUND", "Booking")


async def get_partner(session: AsyncSession, partner_id) -> Partner:
    return await _get(session, Partner, partner_id, "PARTNER_NOT_FOUND", "Partner")


async def find_user_by_phone(session: AsyncSession, phone: str):
    try:
        result = await session.execute(select(User).where(User.phone == phone))
    except SQLAlchemyError as exc:
        raise DependencyError("Could not look up user", details={"reason": str(exc)}) from exc
    return result.scalar_one_or_none()


async def list_candidate_partners(session: AsyncSession) -> list[Partner]:
    """Active, approved partners still taking leads, oldest first."""
    try:
        result = await session.execute(
            select(Partner)
            .where(
                Partner.is_active.is_(True),
                Partner.is_approved.is_(True),
                Partner.lead_acceptance_paused.is_(False),
            )
            .order_by(Partner.created_at, Partner.id)
        )
    except SQLAlchemyError as exc:
        raise DependencyError("Could not query partner directory", details={"reason": str(exc)}) from exc
    return list(result.scalars().all())
