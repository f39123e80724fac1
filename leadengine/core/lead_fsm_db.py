"""
Database-Backed FSM
===================
Same transition rules as lead_fsm, applied to stored leads.
Every transition is a conditional update on the lead's current status
plus an immutable event row, so concurrent writers cannot both move
the same lead out of the same state.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from leadengine.core.lead_fsm import is_expired, next_state
from leadengine.core.lead_states import (
    LeadState,
    LeadEvent,
    TERMINAL_STATES,
    UNRESOLVED_STATES,
)
from leadengine.db.models import Lead as LeadModel, LeadBid as BidModel, LeadEvent as EventModel
from leadengine.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class LeadFSM:
    """
    FSM that persists through the given session.
    transition() never commits; callers own the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def load(self, lead_ref, for_update: bool = False) -> LeadModel:
        """Find a lead by internal UUID or by its LD-... reference."""
        query = select(LeadModel).options(selectinload(LeadModel.bids))
        internal_id = _as_uuid(lead_ref)
        if internal_id is not None:
            query = query.where(LeadModel.id == internal_id)
        else:
            query = query.where(LeadModel.lead_id == str(lead_ref))

        if for_update:
            # Row lock on PostgreSQL; the conditional updates below cover SQLite
            query = query.with_for_update()

        result = await self.session.execute(query.execution_options(populate_existing=True))
        lead = result.scalar_one_or_none()
        if not lead:
            raise NotFoundError(f"Lead {lead_ref} not found", code="LEAD_NOT_FOUND")
        return lead

    def record(self, lead: LeadModel, from_state: str, event: LeadEvent, to_state: str,
               payload: Optional[dict] = None, occurred_at: Optional[datetime] = None):
        self.session.add(EventModel(
            id=uuid.uuid4(),
            lead_id=lead.id,
            from_state=from_state,
            event=event.value,
            to_state=to_state,
            payload=payload or {},
            occurred_at=occurred_at or datetime.now(timezone.utc),
        ))

    async def transition(self, lead: LeadModel, event: LeadEvent, payload: Optional[dict] = None,
                         guard=None, **values) -> LeadState:
        """
        Move `lead` along `event` inside the caller's transaction.

        The UPDATE only matches while the row still has the status we read,
        plus any extra `guard` clause; losing that race raises ConflictError.
        """
        current = LeadState(lead.status)
        target = next_state(current, event, lead.lead_id)
        now = datetime.now(timezone.utc)

        values = {"status": target.value, "state_entered_at": now, "updated_at": now, **values}
        stmt = (
            update(LeadModel)
            .where(LeadModel.id == lead.id, LeadModel.status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if guard is not None:
            stmt = stmt.where(guard)

        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConflictError(
                f"Lead {lead.lead_id} changed while applying {event.value}",
                code="LEAD_CHANGED",
                details={"status": current.value, "event": event.value},
            )

        self.record(lead, current.value, event, target.value, payload, occurred_at=now)
        for key, value in values.items():
            set_committed_value(lead, key, value)

        logger.info(
            "Lead %s: %s + %s -> %s", lead.lead_id, current.value, event.value, target.value,
            extra={"lead_id": lead.lead_id, "event": event.value,
                   "from_state": current.value, "to_state": target.value},
        )
        return target

    async def expire_if_elapsed(self, lead: LeadModel, now: Optional[datetime] = None) -> bool:
        """
        Lazy TTL enforcement: an unresolved lead past its expiry_time is
        moved to expired (and committed) the moment anyone touches it.
        """
        now = now or datetime.now(timezone.utc)
        state = LeadState(lead.status)
        if state not in UNRESOLVED_STATES or lead.assigned_partner_id is not None:
            return False
        if not is_expired(lead.expiry_time, now):
            return False

        lead_pk = lead.id
        try:
            await self.transition(
                lead,
                LeadEvent.TTL_ELAPSED,
                {"expiry_time": lead.expiry_time.isoformat()},
                guard=LeadModel.assigned_partner_id.is_(None),
            )
        except ConflictError:
            # Someone else moved it first; their state wins
            await self.session.rollback()
            await self.load(lead_pk)
            return False
        await self.session.commit()
        return True

    async def ensure_mutable(self, lead: LeadModel, now: Optional[datetime] = None):
        """Raise ConflictError unless the lead can still change state."""
        await self.expire_if_elapsed(lead, now)
        state = LeadState(lead.status)
        if state in TERMINAL_STATES:
            raise ConflictError(
                f"Lead {lead.lead_id} is {state.value} and can no longer change",
                code="LEAD_TERMINAL",
                details={"status": state.value},
            )

    async def reload(self, lead_id: uuid.UUID) -> LeadModel:
        return await self.load(lead_id)

    async def delete(self, lead_ref) -> str:
        """Admin cleanup: the lead, its bids and its history go together. Caller commits."""
        lead = await self.load(lead_ref)
        lead_pk, lead_id = lead.id, lead.lead_id

        for stmt in (
            delete(EventModel).where(EventModel.lead_id == lead_pk),
            delete(BidModel).where(BidModel.lead_id == lead_pk),
            delete(LeadModel).where(LeadModel.id == lead_pk),
        ):
            await self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.expunge(lead)

        logger.info("Lead %s deleted", lead_id, extra={"lead_id": lead_id})
        return lead_id

    async def history(self, lead_ref) -> tuple[LeadModel, list[EventModel]]:
        lead = await self.load(lead_ref)
        result = await self.session.execute(
            select(EventModel)
            .where(EventModel.lead_id == lead.id)
            .order_by(EventModel.occurred_at)
        )
        return lead, list(result.scalars().all())
