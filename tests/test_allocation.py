from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from leadengine.allocation.eligibility import is_partner_eligible
from leadengine.allocation.expiry import sweep_expired_leads
from leadengine.allocation.policy import (
    AllocationPolicy,
    FirstEligibleSelector,
    RoundRobinSelector,
    build_selector,
)
from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.db.models import Booking, Lead
from leadengine.errors import ConflictError, LeadValidationError
from leadengine.intake.pipeline import ManualLead
from tests.factories import add_rows, make_booking, make_partner


@pytest.fixture
def policy(session_factory):
    return AllocationPolicy(session_factory)


async def expire_now(session_factory, lead_id):
    async with session_factory() as session:
        await session.execute(
            update(Lead)
            .where(Lead.id == lead_id)
            .values(expiry_time=datetime.now(timezone.utc) - timedelta(seconds=5))
        )
        await session.commit()


# ── Eligibility ───────────────────────────────────────────────────────────────

def test_eligibility_rules():
    assert is_partner_eligible(make_partner(), "560066")
    assert not is_partner_eligible(make_partner(), "110001")
    assert not is_partner_eligible(make_partner(is_approved=False), "560066")
    assert not is_partner_eligible(make_partner(is_active=False), "560066")
    assert not is_partner_eligible(make_partner(lead_acceptance_paused=True), "560066")
    assert is_partner_eligible(make_partner(category_ids=["cleaning"]), "560066", "cleaning")
    assert not is_partner_eligible(make_partner(category_ids=["plumbing"]), "560066", "cleaning")


def test_round_robin_rotates_per_pincode():
    a, b = make_partner(name="A"), make_partner(name="B")
    booking = make_booking()
    selector = RoundRobinSelector()
    picks = [selector.select([a, b], booking).name for _ in range(3)]
    assert picks == ["A", "B", "A"]
    assert FirstEligibleSelector().select([a, b], booking).name == "A"
    assert FirstEligibleSelector().select([], booking) is None


def test_unknown_selector():
    assert isinstance(build_selector("round_robin"), RoundRobinSelector)
    with pytest.raises(LeadValidationError):
        build_selector("best_rated")


# ── Auto-assignment ───────────────────────────────────────────────────────────

async def test_auto_assign_picks_first_eligible_partner(policy, session_factory, partner, second_partner):
    booking = make_booking(payment_status="paid")
    await add_rows(session_factory, booking)

    chosen = await policy.auto_assign_booking(booking.id)

    assert chosen.id == partner.id
    async with session_factory() as session:
        stored = await session.get(Booking, booking.id)
    assert stored.partner_id == partner.id
    assert stored.status == "confirmed"


async def test_auto_assign_with_round_robin(session_factory, partner, second_partner):
    policy = AllocationPolicy(session_factory, RoundRobinSelector())
    first, second = make_booking(payment_status="paid"), make_booking(payment_status="paid")
    await add_rows(session_factory, first, second)

    assert (await policy.auto_assign_booking(first.id)).id == partner.id
    assert (await policy.auto_assign_booking(second.id)).id == second_partner.id


async def test_auto_assign_requires_payment(policy, booking, partner):
    with pytest.raises(LeadValidationError) as exc:
        await policy.auto_assign_booking(booking.id)
    assert exc.value.code == "BOOKING_NOT_PAID"


async def test_auto_assign_without_candidates(policy, session_factory, partner):
    booking = make_booking(payment_status="paid", pincode="110001")
    await add_rows(session_factory, booking)
    assert await policy.auto_assign_booking(booking.id) is None


async def test_auto_assign_twice_conflicts(policy, session_factory, partner):
    booking = make_booking(payment_status="paid")
    await add_rows(session_factory, booking)
    await policy.auto_assign_booking(booking.id)
    with pytest.raises(ConflictError):
        await policy.auto_assign_booking(booking.id)


async def test_auto_assign_leaves_lead_alone(policy, intake, session_factory, partner):
    booking = make_booking(payment_status="paid")
    await add_rows(session_factory, booking)
    lead = await intake.from_booking(booking.id)

    await policy.auto_assign_booking(booking.id)

    async with session_factory() as session:
        stored = await LeadFSM(session).load(lead.id)
    assert stored.status == "awaiting_bid"
    assert stored.assigned_partner_id is None


# ── Status updates ────────────────────────────────────────────────────────────

async def test_assign_then_convert_stamps_times(policy, open_lead, partner):
    lead = await policy.update_lead_status(open_lead.lead_id, "assigned", str(partner.id))
    assert lead.status == "assigned"
    assert lead.assigned_partner_id == partner.id
    assert lead.accepted_bid_id is None
    allocated_at = lead.allocation_time
    assert allocated_at is not None

    lead = await policy.update_lead_status(open_lead.lead_id, "Converted")
    assert lead.status == "converted"
    assert lead.converted_at is not None
    assert lead.allocation_time == allocated_at


async def test_assigning_a_bidder_goes_through_acceptance(policy, bidding, open_lead, partner, second_partner):
    b1 = await bidding.submit_bid(open_lead.lead_id, partner.id, 1000)
    b2 = await bidding.submit_bid(open_lead.lead_id, second_partner.id, 900)

    lead = await policy.update_lead_status(open_lead.lead_id, "assigned", str(second_partner.id))

    assert lead.accepted_bid_id == b2.id
    assert {b.id: b.status for b in lead.bids} == {b1.id: "rejected", b2.id: "accepted"}


async def test_direct_assignment_rejects_open_bids(policy, bidding, open_lead, partner, session_factory):
    outsider = make_partner(name="Direct Pick")
    await add_rows(session_factory, outsider)
    b1 = await bidding.submit_bid(open_lead.lead_id, partner.id, 1000)

    lead = await policy.update_lead_status(open_lead.lead_id, "assigned", str(outsider.id))

    assert lead.assigned_partner_id == outsider.id
    assert {b.id: b.status for b in lead.bids} == {b1.id: "rejected"}


async def test_assigned_requires_partner(policy, open_lead):
    with pytest.raises(LeadValidationError):
        await policy.update_lead_status(open_lead.lead_id, "assigned")


async def test_cannot_convert_unassigned_lead(policy, open_lead):
    with pytest.raises(ConflictError) as exc:
        await policy.update_lead_status(open_lead.lead_id, "converted")
    assert exc.value.code == "ILLEGAL_TRANSITION"


@pytest.mark.parametrize("final", ["cancelled", "expired"])
async def test_terminal_states_are_final(policy, open_lead, partner, final):
    await policy.update_lead_status(open_lead.lead_id, final)

    for target in ("awaiting_bid", "escalated", "cancelled"):
        with pytest.raises(ConflictError) as exc:
            await policy.update_lead_status(open_lead.lead_id, target)
        assert exc.value.code == "LEAD_TERMINAL"
    with pytest.raises(ConflictError):
        await policy.update_lead_status(open_lead.lead_id, "assigned", str(partner.id))


async def test_escalate_and_reopen(policy, open_lead):
    lead = await policy.update_lead_status(open_lead.lead_id, "Escalated")
    assert lead.status == "escalated"
    lead = await policy.update_lead_status(open_lead.lead_id, "Awaiting Bid")
    assert lead.status == "awaiting_bid"


# ── Expiry ────────────────────────────────────────────────────────────────────

async def test_sweep_expires_only_unresolved_overdue_leads(policy, intake, session_factory, partner):
    overdue = await intake.from_booking((await add_rows(session_factory, make_booking()))[0].id)
    fresh = await intake.from_booking((await add_rows(session_factory, make_booking()))[0].id)
    assigned = await intake.manual(ManualLead(partner_id=str(partner.id), category="x", city="y", value=10))
    await policy.update_lead_status(assigned.lead_id, "assigned", str(partner.id))
    await expire_now(session_factory, overdue.id)
    await expire_now(session_factory, assigned.id)

    assert await sweep_expired_leads(session_factory) == 1
    assert await sweep_expired_leads(session_factory) == 0

    async with session_factory() as session:
        fsm = LeadFSM(session)
        assert (await fsm.load(overdue.id)).status == "expired"
        assert (await fsm.load(fresh.id)).status == "awaiting_bid"
        assert (await fsm.load(assigned.id)).status == "assigned"
        _, events = await fsm.history(overdue.id)
    assert events[-1].event == "TTL_ELAPSED"
