"""Human-readable lead identifiers: LD-<timestamp>-<random>"""

import logging
import random
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leadengine.db.models import Lead as LeadModel

logger = logging.getLogger(__name__)


def generate_lead_id(short: bool = True) -> str:
    millis = int(time.time() * 1000)
    if short:
        return f"LD-{str(millis)[-6:]}-{random.randint(1000, 9999)}"
    return f"LD-{millis}-{random.randint(0, 9999)}"


async def allocate_lead_id(session: AsyncSession, max_attempts: int = 20,
                           fallback: Optional[str] = None) -> str:
    """
    Pick an id not yet used by any lead.
    Lookup failures never block intake: we fall back to `fallback` (or a
    long-form id), and the unique index on leads.lead_id still has the final word.
    """
    for _ in range(max_attempts):
        candidate = generate_lead_id()
        try:
            result = await session.execute(
                select(LeadModel.id).where(LeadModel.lead_id == candidate)
            )
        except SQLAlchemyError:
            logger.warning("Lead id uniqueness check failed", exc_info=True)
            continue
        if result.scalar_one_or_none() is None:
            return candidate

    lead_id = fallback or generate_lead_id(short=False)
    logger.warning("Using fallback lead id", extra={"lead_id": lead_id})
    return lead_id
