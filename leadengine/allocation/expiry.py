"""
TTL sweep: unresolved leads past expiry_time move to expired.
Each lead expires in its own transaction so one failure never blocks the rest.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.core.lead_states import UNRESOLVED_STATES
from leadengine.db.models import Lead as LeadModel

logger = logging.getLogger(__name__)


async def sweep_expired_leads(session_factory, now: Optional[datetime] = None) -> int:
    """Returns how many leads were expired by this pass."""
    now = now or datetime.now(timezone.utc)

    async with session_factory() as session:
        result = await session.execute(
            select(LeadModel.id)
            .where(
                LeadModel.status.in_([s.value for s in UNRESOLVED_STATES]),
                LeadModel.assigned_partner_id.is_(None),
                LeadModel.expiry_time.is_not(None),
                LeadModel.expiry_time <= now,
            )
            .order_by(LeadModel.expiry_time)
        )
        due = list(result.scalars().all())

    expired = 0
    for lead_pk in due:
        async with session_factory() as session:
            fsm = LeadFSM(session)
            try:
                lead = await fsm.load(lead_pk)
                if await fsm.expire_if_elapsed(lead, now):
                    expired += 1
            except Exception as e:
                await session.rollback()
                logger.error("Failed to expire lead %s: %s", lead_pk, e)

    if due:
        logger.info("Expiry sweep: %d of %d due leads expired", expired, len(due))
    return expired
