"""Lead funnel stats for the operator dashboard"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leadengine.config import Settings, get_settings
from leadengine.core.lead_states import LeadState
from leadengine.db.models import Lead as LeadModel, LeadBid

ACTIVE_STATES = (LeadState.PENDING, LeadState.AWAITING_BID, LeadState.BIDDING)


class LeadAnalytics(BaseModel):
    active: int
    high_value_leads: int
    total_leads_30d: int
    converted_leads_30d: int
    conversion_rate: float
    conversion: str
    avg_allocation_seconds: float
    allocation_time: str
    avg_bids_per_lead: float
    bid_participation: str
    city_count: int


def format_duration(seconds: float) -> str:
    """754.2 -> 12m 34s"""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}m {seconds % 60}s"


async def get_lead_analytics(session: AsyncSession, settings: Optional[Settings] = None,
                             now: Optional[datetime] = None) -> LeadAnalytics:
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    window_start = now - timedelta(days=settings.analytics_window_days)

    active = await session.scalar(
        select(func.count()).select_from(LeadModel)
        .where(LeadModel.status.in_([s.value for s in ACTIVE_STATES]))
    )
    high_value = await session.scalar(
        select(func.count()).select_from(LeadModel)
        .where(
            LeadModel.status == LeadState.AWAITING_BID.value,
            LeadModel.value > settings.high_value_threshold,
        )
    )
    total_window = await session.scalar(
        select(func.count()).select_from(LeadModel).where(LeadModel.created_at >= window_start)
    )
    converted_window = await session.scalar(
        select(func.count()).select_from(LeadModel)
        .where(
            LeadModel.status == LeadState.CONVERTED.value,
            LeadModel.created_at >= window_start,
        )
    )
    conversion_rate = round(converted_window / total_window * 100, 1) if total_window else 0.0

    # Averaged in Python so the arithmetic is the same on every backend
    allocated = await session.execute(
        select(LeadModel.created_at, LeadModel.allocation_time)
        .where(LeadModel.allocation_time.is_not(None), LeadModel.created_at.is_not(None))
    )
    durations = [
        (allocation_time - created_at).total_seconds()
        for created_at, allocation_time in allocated.all()
    ]
    avg_allocation = sum(durations) / len(durations) if durations else 0.0

    per_lead = (
        select(LeadBid.lead_id, func.count(LeadBid.id).label("bid_count"))
        .group_by(LeadBid.lead_id)
        .subquery()
    )
    avg_bids = await session.scalar(select(func.avg(per_lead.c.bid_count)))
    avg_bids = round(float(avg_bids or 0), 1)

    cities = await session.scalar(select(func.count(distinct(LeadModel.city))))

    return LeadAnalytics(
        active=active or 0,
        high_value_leads=high_value or 0,
        total_leads_30d=total_window or 0,
        converted_leads_30d=converted_window or 0,
        conversion_rate=conversion_rate,
        conversion=f"{conversion_rate:.1f}%",
        avg_allocation_seconds=round(avg_allocation, 1),
        allocation_time=format_duration(avg_allocation) if durations else "0m 0s",
        avg_bids_per_lead=avg_bids,
        bid_participation=f"{avg_bids:.1f} bids/lead",
        city_count=cities or 0,
    )
