"""
Allocation Policy
=================
Two resolution paths that live side by side:

1. Rule-based auto-assignment of a paid Booking to a partner serving its
   pincode. Touches the Booking only, never the Lead's bidding state.
2. Administrative status updates on a Lead, checked against the same
   transition table the bidding engine uses.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import update

from leadengine.allocation.eligibility import eligible_partners, is_partner_eligible
from leadengine.bidding.engine import BiddingEngine, already_resolved_error, is_resolved
from leadengine.core.collaborators import get_booking, get_partner
from leadengine.core.lead_fsm import event_for_status, parse_status
from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.core.lead_states import BidStatus, LeadEvent, LeadState
from leadengine.db.models import Booking, BookingStatus, LeadBid, Lead as LeadModel, Partner
from leadengine.errors import ConflictError, LeadValidationError

logger = logging.getLogger(__name__)


# ── Partner selection ─────────────────────────────────────────────────────────

class PartnerSelector(Protocol):
    def select(self, candidates: list[Partner], booking: Booking) -> Optional[Partner]:
        ...


class FirstEligibleSelector:
    """Oldest eligible partner wins. No load balancing, no rating weight."""

    def select(self, candidates, booking):
        return candidates[0] if candidates else None


class RoundRobinSelector:
    """Rotate through the candidates of each pincode, one step per assignment."""

    def __init__(self):
        self._next_index: dict[str, int] = {}

    def select(self, candidates, booking):
        if not candidates:
            return None
        key = (booking.pincode or "").strip()
        index = self._next_index.get(key, 0) % len(candidates)
        self._next_index[key] = index + 1
        return candidates[index]


SELECTORS = {
    "first_eligible": FirstEligibleSelector,
    "round_robin": RoundRobinSelector,
}


def build_selector(name: str) -> PartnerSelector:
    try:
        return SELECTORS[name]()
    except KeyError:
        raise LeadValidationError(
            f"Unknown partner selection strategy: {name}",
            errors=[f"invalid_strategy: {name}"],
        ) from None


class AllocationPolicy:

    def __init__(self, session_factory, selector: Optional[PartnerSelector] = None):
        self.session_factory = session_factory
        self.selector = selector or FirstEligibleSelector()
        self.bidding = BiddingEngine(session_factory)

    # ── Rule-based auto-assignment ────────────────────────────────────────────

    async def auto_assign_booking(self, booking_id, selector: Optional[PartnerSelector] = None):
        """
        Bind a paid booking to an eligible partner and confirm it.

        Returns the chosen Partner, or None when nobody serves the pincode.
        The bind is conditional on the booking still being unassigned.
        """
        selector = selector or self.selector

        async with self.session_factory() as session:
            booking = await get_booking(session, booking_id)
            if booking.payment_status != "paid":
                raise LeadValidationError(
                    f"Booking {booking.id} is not paid",
                    errors=[f"payment_status: {booking.payment_status}"],
                    code="BOOKING_NOT_PAID",
                )
            if booking.partner_id is not None:
                raise ConflictError(
                    f"Booking {booking.id} already has a partner",
                    code="BOOKING_ALREADY_ASSIGNED",
                    details={"partner_id": str(booking.partner_id)},
                )

            pincode = (booking.pincode or "").strip()
            if not pincode:
                logger.info("Booking has no pincode; skipping auto-assignment",
                            extra={"booking_id": str(booking.id)})
                return None

            candidates = await eligible_partners(session, pincode, booking.category_id)
            partner = selector.select(candidates, booking)
            if partner is None:
                logger.info("No eligible partner for pincode %s", pincode,
                            extra={"booking_id": str(booking.id)})
                return None

            result = await session.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.partner_id.is_(None))
                .values(
                    partner_id=partner.id,
                    status=BookingStatus.CONFIRMED.value,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictError(
                    f"Booking {booking_id} was assigned concurrently",
                    code="BOOKING_ALREADY_ASSIGNED",
                )
            await session.commit()

        logger.info("Booking auto-assigned",
                    extra={"booking_id": str(booking_id), "partner_id": str(partner.id)})
        return partner

    # ── Administrative status updates ─────────────────────────────────────────

    async def update_lead_status(self, lead_ref, status: str, assigned_partner_id=None) -> LeadModel:
        """
        Move a lead to `status` (enum value or display name).

        assigned: binds the given partner, through accept_bid when that
        partner has a pending bid on the lead.
        converted: stamps converted_at (and allocation_time if still unset).
        """
        target = parse_status(status)
        event = event_for_status(target)

        if target is LeadState.ASSIGNED:
            return await self._assign(lead_ref, assigned_partner_id)

        async with self.session_factory() as session:
            fsm = LeadFSM(session)
            lead = await fsm.load(lead_ref, for_update=True)
            await fsm.ensure_mutable(lead)

            now = datetime.now(timezone.utc)
            values = {}
            if target is LeadState.CONVERTED:
                values["converted_at"] = now
                if lead.allocation_time is None:
                    values["allocation_time"] = now

            await fsm.transition(lead, event, {"requested_status": target.value}, **values)
            await session.commit()
            lead = await fsm.reload(lead.id)
        return lead

    async def _assign(self, lead_ref, partner_id) -> LeadModel:
        if partner_id is None:
            raise LeadValidationError(
                "A partner is required to assign a lead",
                errors=["assigned_partner_id: required"],
            )

        async with self.session_factory() as session:
            fsm = LeadFSM(session)
            lead = await fsm.load(lead_ref, for_update=True)
            pending_bid = None
            if lead.status == LeadState.BIDDING.value:
                pending_bid = next(
                    (b for b in lead.bids
                     if str(b.partner_id) == str(partner_id) and b.status == BidStatus.PENDING.value),
                    None,
                )

            if pending_bid is None:
                if is_resolved(lead):
                    raise already_resolved_error(lead)
                await fsm.ensure_mutable(lead)
                partner = await get_partner(session, partner_id)
                if not is_partner_eligible(partner):
                    raise LeadValidationError(
                        f"Partner {partner.id} cannot take leads",
                        errors=["partner_not_eligible"],
                        code="PARTNER_NOT_ELIGIBLE",
                    )

                lead_pk = lead.id
                now = datetime.now(timezone.utc)
                await fsm.transition(
                    lead,
                    LeadEvent.PARTNER_ASSIGNED,
                    {"partner_id": str(partner.id)},
                    guard=LeadModel.assigned_partner_id.is_(None),
                    assigned_partner_id=partner.id,
                    allocation_time=now,
                )
                await session.execute(
                    update(LeadBid)
                    .where(LeadBid.lead_id == lead_pk, LeadBid.status == BidStatus.PENDING.value)
                    .values(status=BidStatus.REJECTED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return await fsm.reload(lead_pk)

            bid_id = pending_bid.id
            lead_pk = lead.id

        # The partner already offered; resolve through the single-winner path
        return await self.bidding.accept_bid(lead_pk, bid_id)
