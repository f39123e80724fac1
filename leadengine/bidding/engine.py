"""
Bidding Engine
==============
Partners append offers to open leads; an operator (or policy) accepts one.

Acceptance is the critical section. It is a single transaction whose first
write is a conditional UPDATE on the lead ("still bidding, nobody accepted"),
so of two concurrent accepts exactly one matches a row and the other gets
AlreadyResolvedError. Sibling bids are rejected in the same transaction.
"""

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from leadengine.allocation.eligibility import is_partner_eligible
from leadengine.core.collaborators import get_partner
from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.core.lead_states import BidStatus, LeadEvent, LeadState, OPEN_FOR_BIDS
from leadengine.db.models import Lead as LeadModel, LeadBid
from leadengine.errors import (
    AlreadyResolvedError,
    ConflictError,
    LeadValidationError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


def is_resolved(lead: LeadModel) -> bool:
    return (
        lead.accepted_bid_id is not None
        or lead.assigned_partner_id is not None
        or lead.status in (LeadState.ASSIGNED.value, LeadState.CONVERTED.value)
    )


def already_resolved_error(lead: LeadModel) -> AlreadyResolvedError:
    return AlreadyResolvedError(
        f"Lead {lead.lead_id} has already been resolved",
        details={
            "lead_id": lead.lead_id,
            "status": lead.status,
            "assigned_partner_id": str(lead.assigned_partner_id) if lead.assigned_partner_id else None,
            "accepted_bid_id": str(lead.accepted_bid_id) if lead.accepted_bid_id else None,
        },
        existing=lead,
    )


def _find_bid(lead: LeadModel, bid_id) -> LeadBid:
    for bid in lead.bids:
        if str(bid.id) == str(bid_id):
            return bid
    raise NotFoundError(f"Bid {bid_id} not found on lead {lead.lead_id}", code="BID_NOT_FOUND")


def _validate_offer(bid_amount, score) -> tuple[float, float]:
    errors = []
    try:
        amount = float(bid_amount)
    except (TypeError, ValueError):
        amount = None
        errors.append(f"invalid_bid_amount: {bid_amount}")
    else:
        if math.isnan(amount) or amount < 0:
            errors.append(f"invalid_bid_amount: {bid_amount}")

    value = 0.0
    if score is not None:
        try:
            value = float(score)
        except (TypeError, ValueError):
            errors.append(f"invalid_score: {score}")
        else:
            if math.isnan(value) or not 0 <= value <= 100:
                errors.append(f"invalid_score: {score}")

    if errors:
        raise LeadValidationError("Invalid bid", errors=errors)
    return amount, value


class BiddingEngine:

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _hold_open_lead(self, session, lead: LeadModel):
        """
        Write-touch a lead that is already in bidding. Putting the row in our
        write set makes bid appends and acceptance serialize per lead.
        """
        result = await session.execute(
            update(LeadModel)
            .where(
                LeadModel.id == lead.id,
                LeadModel.status == LeadState.BIDDING.value,
                LeadModel.accepted_bid_id.is_(None),
            )
            .values(updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Lead {lead.lead_id} is no longer open for bidding",
                code="LEAD_NOT_OPEN",
            )

    async def submit_bid(self, lead_ref, partner_id, bid_amount, eta: Optional[str] = None,
                         score=None, notes: Optional[str] = None) -> LeadBid:
        """Append a pending bid; the first bid moves the lead to bidding."""
        amount, score_value = _validate_offer(bid_amount, score)

        async with self.session_factory() as session:
            fsm = LeadFSM(session)
            lead = await fsm.load(lead_ref, for_update=True)
            await fsm.ensure_mutable(lead)

            if is_resolved(lead):
                raise already_resolved_error(lead)
            if LeadState(lead.status) not in OPEN_FOR_BIDS:
                raise ConflictError(
                    f"Lead {lead.lead_id} is {lead.status} and not open for bidding",
                    code="LEAD_NOT_OPEN",
                    details={"status": lead.status},
                )

            partner = await get_partner(session, partner_id)
            if not is_partner_eligible(partner, lead.pincode, lead.category_id):
                raise LeadValidationError(
                    f"Partner {partner.id} is not eligible to bid on lead {lead.lead_id}",
                    errors=["partner_not_eligible"],
                    code="PARTNER_NOT_ELIGIBLE",
                )
            if any(b.partner_id == partner.id for b in lead.bids):
                raise ConflictError(
                    f"Partner {partner.id} already bid on lead {lead.lead_id}",
                    code="DUPLICATE_BID",
                )

            opened = False
            if lead.status == LeadState.AWAITING_BID.value:
                try:
                    await fsm.transition(
                        lead, LeadEvent.FIRST_BID_SUBMITTED, {"partner_id": str(partner.id)}
                    )
                    opened = True
                except ConflictError:
                    # Another partner's first bid got there first
                    opened = False
            if not opened:
                await self._hold_open_lead(session, lead)

            now = datetime.now(timezone.utc)
            bid = LeadBid(
                id=uuid.uuid4(),
                lead_id=lead.id,
                partner_id=partner.id,
                bid_amount=amount,
                score=score_value,
                eta=eta or "",
                notes=notes or "",
                status=BidStatus.PENDING.value,
                submitted_at=now,
                updated_at=now,
            )
            session.add(bid)
            lead_ref_label, partner_pk = lead.lead_id, partner.id
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(
                    f"Partner {partner_pk} already bid on lead {lead_ref_label}",
                    code="DUPLICATE_BID",
                ) from None

        logger.info(
            "Bid submitted on %s", lead.lead_id,
            extra={"lead_id": lead.lead_id, "bid_id": str(bid.id), "partner_id": str(partner.id)},
        )
        return bid

    async def accept_bid(self, lead_ref, bid_id) -> LeadModel:
        """
        Accept one bid, reject every other pending bid, bind the partner.
        All of it commits together or not at all.
        """
        async with self.session_factory() as session:
            fsm = LeadFSM(session)
            lead = await fsm.load(lead_ref, for_update=True)
            bid = _find_bid(lead, bid_id)

            if is_resolved(lead):
                raise already_resolved_error(lead)
            await fsm.ensure_mutable(lead)
            if bid.status != BidStatus.PENDING.value:
                raise ConflictError(
                    f"Bid {bid.id} is {bid.status} and cannot be accepted",
                    code="BID_NOT_PENDING",
                    details={"bid_status": bid.status},
                )

            now = datetime.now(timezone.utc)
            lead_pk, bid_pk, partner_pk = lead.id, bid.id, bid.partner_id
            try:
                await fsm.transition(
                    lead,
                    LeadEvent.BID_ACCEPTED,
                    {"bid_id": str(bid_pk), "partner_id": str(partner_pk), "bid_amount": bid.bid_amount},
                    guard=LeadModel.accepted_bid_id.is_(None) & LeadModel.assigned_partner_id.is_(None),
                    assigned_partner_id=partner_pk,
                    accepted_bid_id=bid_pk,
                    allocation_time=now,
                )
            except ConflictError as exc:
                if exc.code != "LEAD_CHANGED":
                    raise
                await session.rollback()
                lead = await fsm.load(lead_pk)
                if is_resolved(lead):
                    logger.warning(
                        "Lost acceptance race on %s", lead.lead_id,
                        extra={"lead_id": lead.lead_id, "bid_id": str(bid_pk)},
                    )
                    raise already_resolved_error(lead) from None
                raise

            won = await session.execute(
                update(LeadBid)
                .where(
                    LeadBid.id == bid_pk,
                    LeadBid.lead_id == lead_pk,
                    LeadBid.status == BidStatus.PENDING.value,
                )
                .values(status=BidStatus.ACCEPTED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if won.rowcount != 1:
                # Withdrawn between our read and our write
                await session.rollback()
                raise ConflictError(
                    f"Bid {bid_pk} is no longer pending",
                    code="BID_NOT_PENDING",
                )

            await session.execute(
                update(LeadBid)
                .where(
                    LeadBid.lead_id == lead_pk,
                    LeadBid.id != bid_pk,
                    LeadBid.status == BidStatus.PENDING.value,
                )
                .values(status=BidStatus.REJECTED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            lead = await fsm.reload(lead_pk)

        logger.info(
            "Bid accepted on %s", lead.lead_id,
            extra={"lead_id": lead.lead_id, "bid_id": str(bid_pk), "partner_id": str(partner_pk)},
        )
        return lead

    async def withdraw_bid(self, lead_ref, bid_id, partner_id) -> LeadBid:
        """A partner pulls its own pending offer while the lead is still open."""
        async with self.session_factory() as session:
            fsm = LeadFSM(session)
            lead = await fsm.load(lead_ref, for_update=True)
            bid = _find_bid(lead, bid_id)
            if str(bid.partner_id) != str(partner_id):
                raise LeadValidationError(
                    f"Bid {bid.id} belongs to another partner",
                    errors=["partner_mismatch"],
                    code="BID_PARTNER_MISMATCH",
                )

            if is_resolved(lead):
                raise already_resolved_error(lead)
            await fsm.ensure_mutable(lead)
            await self._hold_open_lead(session, lead)

            now = datetime.now(timezone.utc)
            lead_pk, bid_pk = lead.id, bid.id
            result = await session.execute(
                update(LeadBid)
                .where(LeadBid.id == bid_pk, LeadBid.status == BidStatus.PENDING.value)
                .values(status=BidStatus.WITHDRAWN.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictError(f"Bid {bid_pk} is no longer pending", code="BID_NOT_PENDING")
            await session.commit()
            lead = await fsm.reload(lead_pk)

        logger.info("Bid withdrawn", extra={"lead_id": lead.lead_id, "bid_id": str(bid_id)})
        return _find_bid(lead, bid_id)
