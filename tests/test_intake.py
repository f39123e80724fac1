import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, InvalidRequestError, OperationalError

from leadengine.config import Settings
from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.db.models import Booking, Lead, User
from leadengine.errors import ConflictError, DependencyError, LeadValidationError, NotFoundError
from leadengine.intake import pipeline
from leadengine.intake.pipeline import (
    DemandIntake,
    Enquiry,
    EnquiryReceipt,
    ManualLead,
    clamp_amount,
    derive_city,
    sanitize_enquiry,
)
from tests.factories import add_rows, make_booking


def test_clamp_amount():
    assert clamp_amount(-50) == 0
    assert clamp_amount("1200.5") == 1200.5
    assert clamp_amount("abc") == 0
    assert clamp_amount(float("nan")) == 0
    assert clamp_amount(None) == 0


def test_derive_city_uses_last_segment():
    assert derive_city("12 ITPL Main Road, Whitefield, Bengaluru") == "Bengaluru"
    assert derive_city("Flat 4, Pune, ") == "Pune"
    assert derive_city("") == "Unknown"


def test_sanitize_enquiry_reports_every_missing_field():
    result = sanitize_enquiry(Enquiry(email="not-an-email"))
    assert not result["valid"]
    assert set(result["errors"]) >= {"missing_name", "missing_phone", "missing_category", "missing_city"}
    assert any(e.startswith("invalid_email") for e in result["errors"])


async def test_booking_lead_scenario(intake, booking):
    before = datetime.now(timezone.utc)
    lead = await intake.from_booking(booking.id)

    assert lead.status == "awaiting_bid"
    assert lead.value == 1500
    assert lead.allocation_strategy == "rule_based"
    assert lead.city == "Bengaluru"
    assert lead.booking_id == booking.id
    assert lead.lead_id.startswith("LD-")
    assert abs(lead.expiry_time - (before + timedelta(hours=24))) < timedelta(minutes=1)
    assert lead.provenance["source"] == "booking"


async def test_booking_explicit_city_wins(intake, session_factory):
    booking = make_booking(city="Mysuru")
    await add_rows(session_factory, booking)
    lead = await intake.from_booking(booking.id)
    assert lead.city == "Mysuru"


async def test_second_create_for_booking_conflicts_with_original(intake, booking, session_factory):
    first = await intake.from_booking(booking.id)

    with pytest.raises(ConflictError) as exc:
        await intake.from_booking(booking.id)

    assert exc.value.code == "LEAD_EXISTS_FOR_BOOKING"
    assert exc.value.existing.id == first.id
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Lead))
    assert count == 1


async def test_concurrent_creates_for_booking_yield_one_lead(intake, booking, session_factory):
    results = await asyncio.gather(
        intake.from_booking(booking.id),
        intake.from_booking(booking.id),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, Lead)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1 and len(conflicts) == 1, results
    assert conflicts[0].code == "LEAD_EXISTS_FOR_BOOKING"
    assert conflicts[0].existing.id == created[0].id
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Lead))
    assert count == 1


async def test_missing_booking(intake):
    with pytest.raises(NotFoundError) as exc:
        await intake.from_booking(uuid.uuid4())
    assert exc.value.code == "BOOKING_NOT_FOUND"


async def test_creation_is_recorded_in_history(intake, booking, session_factory):
    lead = await intake.from_booking(booking.id)
    async with session_factory() as session:
        _, events = await LeadFSM(session).history(lead.lead_id)
    assert [e.event for e in events] == ["LEAD_CREATED"]
    assert events[0].to_state == "awaiting_bid"


async def test_history_is_not_loaded_through_the_lead(intake, booking, session_factory):
    created = await intake.from_booking(booking.id)
    async with session_factory() as session:
        lead = await LeadFSM(session).load(created.id)
        with pytest.raises(InvalidRequestError):
            lead.events


async def test_enquiry_creates_guest_user_booking_and_lead(intake, session_factory):
    receipt = await intake.from_enquiry(Enquiry(
        name="Ravi",
        phone="98765-43210",
        email="Ravi@Example.com",
        category="plumbing",
        city="Pune",
        description="Leaking tap",
        estimated_budget=-50,
    ))

    assert receipt.lead_id.startswith("LD-")
    lead = receipt.lead
    assert lead.value == 0
    assert lead.status == "awaiting_bid"
    assert lead.provenance["created_by"] == "customer_enquiry"
    assert lead.provenance["phone"] == "9876543210"
    assert lead.expiry_time - lead.created_at > timedelta(days=29)

    async with session_factory() as session:
        booking = await session.get(Booking, receipt.booking_id)
        user = (await session.execute(select(User).where(User.phone == "9876543210"))).scalar_one()
    assert booking.status == "pending"
    assert booking.address == "Pune"
    assert booking.user_id == user.id
    assert user.email == "ravi@example.com"
    assert lead.booking_id == booking.id


async def test_enquiry_never_overwrites_known_user_details(intake, session_factory):
    await add_rows(session_factory, User(id=uuid.uuid4(), phone="9000000001", name="Meera", email=""))

    await intake.from_enquiry(Enquiry(
        name="Someone Else", phone="9000000001", email="meera@example.com",
        category="painting", city="Chennai",
    ))

    async with session_factory() as session:
        users = (await session.execute(select(User).where(User.phone == "9000000001"))).scalars().all()
    assert len(users) == 1
    assert users[0].name == "Meera"
    assert users[0].email == "meera@example.com"


async def test_concurrent_enquiries_from_new_phone_share_one_user(intake, session_factory):
    enquiry = Enquiry(name="Kiran", phone="9000000001", category="cleaning", city="Bengaluru")

    results = await asyncio.gather(
        intake.from_enquiry(enquiry),
        intake.from_enquiry(enquiry),
        return_exceptions=True,
    )

    assert all(isinstance(r, EnquiryReceipt) for r in results), results
    assert results[0].lead_id != results[1].lead_id
    async with session_factory() as session:
        users = (await session.execute(select(User).where(User.phone == "9000000001"))).scalars().all()
        bookings = (await session.execute(select(Booking))).scalars().all()
        leads = await session.scalar(select(func.count()).select_from(Lead))
    assert len(users) == 1
    assert {b.user_id for b in bookings} == {users[0].id}
    assert leads == 2


async def test_enquiry_uses_issued_id_when_allocation_gives_up(session_factory, monkeypatch):
    monkeypatch.setattr(pipeline, "generate_lead_id", lambda: "LD-424242-4242")
    intake = DemandIntake(session_factory, Settings(_env_file=None, lead_id_max_attempts=0))

    receipt = await intake.from_enquiry(Enquiry(
        name="Kiran", phone="9000000002", category="cleaning", city="Bengaluru",
    ))

    assert receipt.lead_id == "LD-424242-4242"
    assert receipt.lead.lead_id == "LD-424242-4242"


async def test_enquiry_store_failure_carries_issued_id(session_factory, monkeypatch):
    async def broken_store(self, session, lead_id=None, **fields):
        raise OperationalError("INSERT INTO leads", {}, Exception("disk I/O error"))

    monkeypatch.setattr(pipeline, "generate_lead_id", lambda: "LD-515151-5151")
    monkeypatch.setattr(DemandIntake, "_new_lead", broken_store)
    intake = DemandIntake(session_factory, Settings(_env_file=None, lead_id_max_attempts=0))

    with pytest.raises(DependencyError) as exc:
        await intake.from_enquiry(Enquiry(
            name="Kiran", phone="9000000003", category="cleaning", city="Bengaluru",
        ))

    assert exc.value.details["lead_id"] == "LD-515151-5151"
    async with session_factory() as session:
        bookings = await session.scalar(select(func.count()).select_from(Booking))
    assert bookings == 0


async def test_enquiry_validation(intake):
    with pytest.raises(LeadValidationError) as exc:
        await intake.from_enquiry(Enquiry(name="Ravi", category="plumbing"))
    assert "missing_phone" in exc.value.errors
    assert "missing_city" in exc.value.errors


async def test_manual_lead(intake, partner):
    lead = await intake.manual(ManualLead(
        partner_id=str(partner.id),
        category="electrical",
        city="Hyderabad",
        value="2500",
        priority="high",
        description="Rewiring",
    ))

    assert lead.status == "awaiting_bid"
    assert lead.booking_id is None
    assert lead.priority == "high"
    assert lead.provenance["source"] == "manual"
    assert lead.provenance["partner_id"] == str(partner.id)


@pytest.mark.parametrize("raw,error", [
    (ManualLead(category="x", city="y", value=10), "missing_partner_id"),
    (ManualLead(partner_id="p", city="y", value=10), "missing_category"),
    (ManualLead(partner_id="p", category="x", value=10), "missing_city"),
    (ManualLead(partner_id="p", category="x", city="y"), "missing_value"),
    (ManualLead(partner_id="p", category="x", city="y", value=-1), "negative_value: -1"),
])
async def test_manual_lead_validation(intake, raw, error):
    with pytest.raises(LeadValidationError) as exc:
        await intake.manual(raw)
    assert error in exc.value.errors


async def test_manual_lead_unknown_partner(intake):
    with pytest.raises(NotFoundError) as exc:
        await intake.manual(ManualLead(partner_id=str(uuid.uuid4()), category="x", city="y", value=10))
    assert exc.value.code == "PARTNER_NOT_FOUND"


async def test_sync_is_idempotent_and_collects_errors(intake, session_factory, partner):
    await add_rows(
        session_factory,
        make_booking(),
        make_booking(status="confirmed"),
        make_booking(category_id=None),
        make_booking(status="completed"),
        make_booking(partner_id=partner.id),
    )

    first = await intake.sync_bookings()
    assert first.created == 2
    assert len(first.errors) == 1
    assert "booking_id" in first.errors[0]

    second = await intake.sync_bookings()
    assert second.created == 0
    assert len(second.errors) == 1


async def test_sync_reports_integrity_failures_without_a_lead(intake, booking, monkeypatch):
    async def colliding_id(self, session, row):
        raise IntegrityError("INSERT INTO leads", {}, Exception("UNIQUE constraint failed: leads.lead_id"))

    monkeypatch.setattr(DemandIntake, "_lead_from_booking", colliding_id)

    outcome = await intake.sync_bookings()

    assert outcome.created == 0
    assert [e["booking_id"] for e in outcome.errors] == [str(booking.id)]
    assert "leads.lead_id" in outcome.errors[0]["error"]
