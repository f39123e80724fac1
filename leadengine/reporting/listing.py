"""
Operator-facing lead and bid listings.
Rows come back already formatted for display (rupee amounts, title-cased states).
"""

import math
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from leadengine.config import Settings, get_settings
from leadengine.core.lead_fsm import format_label, parse_status
from leadengine.core.provenance import FromEnquiry, FromManual, load_provenance, source_label
from leadengine.db.models import Lead as LeadModel, LeadBid, Partner


def format_inr(amount) -> str:
    """1500 -> ₹1,500 and 1234567.5 -> ₹12,34,567.5 (Indian digit grouping)"""
    amount = float(amount or 0)
    sign = "-" if amount < 0 else ""
    text = f"{abs(amount):.2f}".rstrip("0").rstrip(".")
    whole, _, fraction = text.partition(".")

    head, tail = whole[:-3], whole[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    groups.append(tail)

    grouped = ",".join(groups)
    return f"₹{sign}{grouped}" + (f".{fraction}" if fraction else "")


def paginate(page, limit, settings: Settings) -> tuple[int, int]:
    try:
        page = max(1, int(page))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit) if limit is not None else settings.default_page_size
    except (TypeError, ValueError):
        limit = settings.default_page_size
    limit = min(max(1, limit), settings.max_page_size)
    return page, limit


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}


async def _partner_names(session: AsyncSession, partner_ids) -> dict:
    partner_ids = {pid for pid in partner_ids if pid is not None}
    if not partner_ids:
        return {}
    result = await session.execute(
        select(Partner.id, Partner.name, Partner.phone).where(Partner.id.in_(partner_ids))
    )
    return {row.id: row.name or row.phone for row in result.all()}


def format_lead(lead: LeadModel, partner_name: Optional[str] = None) -> dict:
    provenance = load_provenance(lead.provenance, has_booking=lead.booking_id is not None)
    enquiry = provenance if isinstance(provenance, FromEnquiry) else None

    return {
        "id": str(lead.id),
        "lead_id": lead.lead_id,
        "booking_id": str(lead.booking_id) if lead.booking_id else None,
        "service": lead.sub_service_id or lead.service_id or lead.category_id or "Unknown Service",
        "city": lead.city,
        "value": format_inr(lead.value),
        "allocation_strategy": format_label(lead.allocation_strategy, "Rule Based"),
        "priority": format_label(lead.priority, "Medium"),
        "assigned_partner": partner_name or "Unassigned",
        "status": format_label(lead.status, "Pending"),
        "created_at": lead.created_at,
        "expiry_time": lead.expiry_time,
        "bids": len(lead.bids),
        "source": source_label(provenance),
        "partner_id": str(provenance.partner_id) if isinstance(provenance, FromManual) else None,
        "customer_name": enquiry.name if enquiry else None,
        "customer_phone": enquiry.phone if enquiry else None,
        "customer_email": (enquiry.email or None) if enquiry else None,
        "description": getattr(provenance, "description", "") or "",
    }


async def list_leads(
    session: AsyncSession,
    status: Optional[str] = None,
    city: Optional[str] = None,
    allocation_strategy: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page=1,
    limit=None,
    settings: Optional[Settings] = None,
) -> dict:
    """Newest first. "all" or an empty value disables a filter."""
    settings = settings or get_settings()
    page, limit = paginate(page, limit, settings)

    filters = []
    if status and status != "all":
        filters.append(LeadModel.status == parse_status(status).value)
    if city and city.strip():
        filters.append(LeadModel.city.ilike(f"%{city.strip()}%"))
    if allocation_strategy and allocation_strategy != "all":
        filters.append(LeadModel.allocation_strategy == allocation_strategy)
    if start_date:
        filters.append(LeadModel.created_at >= start_date)
    if end_date:
        filters.append(LeadModel.created_at <= end_date)

    total = await session.scalar(select(func.count()).select_from(LeadModel).where(*filters))
    result = await session.execute(
        select(LeadModel)
        .options(selectinload(LeadModel.bids))
        .where(*filters)
        .order_by(LeadModel.created_at.desc(), LeadModel.lead_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    leads = list(result.scalars().all())
    names = await _partner_names(session, [lead.assigned_partner_id for lead in leads])

    return {
        "data": [format_lead(lead, names.get(lead.assigned_partner_id)) for lead in leads],
        "pagination": pagination(page, limit, total or 0),
    }


async def list_bids(
    session: AsyncSession,
    status: Optional[str] = None,
    lead_ref: Optional[str] = None,
    page=1,
    limit=None,
    settings: Optional[Settings] = None,
) -> dict:
    """Every bid across leads, flattened, newest lead first."""
    settings = settings or get_settings()
    page, limit = paginate(page, limit, settings)

    filters = []
    if status and status != "all":
        filters.append(LeadBid.status == status.strip().lower())
    if lead_ref:
        filters.append(LeadModel.lead_id == lead_ref)

    total = await session.scalar(
        select(func.count()).select_from(LeadBid).join(LeadModel, LeadBid.lead_id == LeadModel.id).where(*filters)
    )
    result = await session.execute(
        select(LeadBid, LeadModel.lead_id)
        .join(LeadModel, LeadBid.lead_id == LeadModel.id)
        .where(*filters)
        .order_by(LeadModel.created_at.desc(), LeadBid.submitted_at)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = result.all()
    names = await _partner_names(session, [bid.partner_id for bid, _ in rows])

    data = [
        {
            "id": str(bid.id),
            "lead": lead_ref_value,
            "lead_uuid": str(bid.lead_id),
            "partner": names.get(bid.partner_id, "Unknown"),
            "partner_id": str(bid.partner_id),
            "amount": format_inr(bid.bid_amount),
            "score": bid.score or 0,
            "eta": bid.eta or "N/A",
            "status": format_label(bid.status, "Pending"),
            "submitted_at": bid.submitted_at,
        }
        for bid, lead_ref_value in rows
    ]
    return {"data": data, "pagination": pagination(page, limit, total or 0)}
