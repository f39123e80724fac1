"""
Demand Intake Pipeline
======================
Turns bookings, customer enquiries and admin input into leads.
Exactly one lead per booking; batch sync never aborts on a bad record.
"""

import logging
import math
import re
import uuid as _uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from leadengine.config import Settings, get_settings
from leadengine.core.collaborators import find_user_by_phone, get_booking, get_partner
from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.core.lead_ids import allocate_lead_id, generate_lead_id
from leadengine.core.lead_states import AllocationStrategy, LeadEvent, LeadState, Priority
from leadengine.core.provenance import FromBooking, FromEnquiry, FromManual, dump_provenance
from leadengine.db.models import Booking, BookingStatus, Lead as LeadModel, User
from leadengine.errors import ConflictError, DependencyError, LeadEngineError, LeadValidationError

logger = logging.getLogger(__name__)


# ── Raw input ─────────────────────────────────────────────────────────────────

@dataclass
class Enquiry:
    """Public enquiry form, before validation"""
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    category: str | None = None
    service: str | None = None
    sub_service: str | None = None
    city: str | None = None
    address: str | None = None
    landmark: str | None = None
    pincode: str | None = None
    description: str | None = None
    estimated_budget: object = None


@dataclass
class ManualLead:
    """Admin-entered lead, no booking behind it"""
    partner_id: str | None = None
    category: str | None = None
    service: str | None = None
    sub_service: str | None = None
    city: str | None = None
    address: str | None = None
    landmark: str | None = None
    pincode: str | None = None
    value: object = None
    allocation_strategy: str | None = None
    priority: str | None = None
    description: str | None = None


@dataclass
class EnquiryReceipt:
    lead_id: str
    booking_id: _uuid.UUID
    lead: LeadModel


@dataclass
class SyncResult:
    created: int = 0
    leads: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


# ── Normalization ─────────────────────────────────────────────────────────────

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")


def clamp_amount(raw) -> float:
    """Anything unparsable, NaN or negative becomes 0."""
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(amount) or math.isinf(amount):
        return 0.0
    return max(0.0, amount)


def derive_city(address: Optional[str], fallback: str = "Unknown") -> str:
    """Last comma-separated segment of the address."""
    if not address:
        return fallback
    segments = [part.strip() for part in address.split(",")]
    segments = [part for part in segments if part]
    return segments[-1] if segments else fallback


def _clean(value) -> str:
    return str(value).strip() if value is not None else ""


def sanitize_enquiry(raw: Enquiry) -> dict:
    """Validate and clean an enquiry"""
    errors = []
    for name in ("name", "phone", "category", "city"):
        if not _clean(getattr(raw, name)):
            errors.append(f"missing_{name}")

    email = _clean(raw.email).lower()
    if email and not EMAIL_REGEX.match(email):
        errors.append(f"invalid_email: {email}")

    if errors:
        return {"valid": False, "errors": errors}

    return {
        "valid": True,
        "name": _clean(raw.name),
        "phone": re.sub(r"[\s\-]", "", _clean(raw.phone)),
        "email": email,
        "category": _clean(raw.category),
        "service": _clean(raw.service) or None,
        "sub_service": _clean(raw.sub_service) or None,
        "city": _clean(raw.city),
        "address": _clean(raw.address),
        "landmark": _clean(raw.landmark),
        "pincode": _clean(raw.pincode),
        "description": _clean(raw.description),
        "value": clamp_amount(raw.estimated_budget),
    }


def sanitize_manual_lead(raw: ManualLead) -> dict:
    """Validate an admin-entered lead; unlike enquiries, bad numbers are rejected"""
    errors = []
    for name in ("partner_id", "category", "city"):
        if not _clean(getattr(raw, name)):
            errors.append(f"missing_{name}")

    value = None
    if raw.value is None or _clean(raw.value) == "":
        errors.append("missing_value")
    else:
        try:
            value = float(raw.value)
        except (TypeError, ValueError):
            errors.append(f"invalid_value: {raw.value}")
        else:
            if math.isnan(value) or value < 0:
                errors.append(f"negative_value: {raw.value}")

    strategy = _clean(raw.allocation_strategy) or AllocationStrategy.RULE_BASED.value
    if strategy not in {s.value for s in AllocationStrategy}:
        errors.append(f"invalid_allocation_strategy: {strategy}")
    priority = _clean(raw.priority) or Priority.MEDIUM.value
    if priority not in {p.value for p in Priority}:
        errors.append(f"invalid_priority: {priority}")

    if errors:
        return {"valid": False, "errors": errors}

    return {
        "valid": True,
        "partner_id": _clean(raw.partner_id),
        "category": _clean(raw.category),
        "service": _clean(raw.service) or None,
        "sub_service": _clean(raw.sub_service) or None,
        "city": _clean(raw.city),
        "address": _clean(raw.address),
        "landmark": _clean(raw.landmark),
        "pincode": _clean(raw.pincode),
        "value": value,
        "allocation_strategy": strategy,
        "priority": priority,
        "description": _clean(raw.description),
    }


# ── Pipeline ──────────────────────────────────────────────────────────────────

class DemandIntake:
    """Booking / enquiry / manual input → one lead each"""

    def __init__(self, session_factory, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def _lead_for_booking(self, session, booking_id) -> Optional[LeadModel]:
        result = await session.execute(
            select(LeadModel).where(LeadModel.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    async def _new_lead(self, session, lead_id: Optional[str] = None, **fields) -> LeadModel:
        if lead_id is None:
            lead_id = await allocate_lead_id(session, self.settings.lead_id_max_attempts)
        lead = LeadModel(id=_uuid.uuid4(), lead_id=lead_id, bids=[], **fields)
        session.add(lead)
        await session.flush()
        LeadFSM(session).record(
            lead, "NONE", LeadEvent.LEAD_CREATED, lead.status,
            {"provenance": lead.provenance, "value": lead.value},
        )
        return lead

    async def _lead_from_booking(self, session, booking: Booking) -> LeadModel:
        if not booking.category_id:
            raise LeadValidationError(
                f"Booking {booking.id} has no category",
                errors=["missing_category"],
            )
        now = datetime.now(timezone.utc)
        lead = await self._new_lead(
            session,
            booking_id=booking.id,
            user_id=booking.user_id,
            category_id=booking.category_id,
            service_id=booking.service_id,
            sub_service_id=booking.sub_service_id,
            city=_clean(booking.city) or derive_city(booking.address),
            address=booking.address or "",
            landmark=booking.landmark or "",
            pincode=booking.pincode or "",
            lat=booking.lat or 0.0,
            lng=booking.lng or 0.0,
            value=clamp_amount(booking.amount or booking.payamount or 0),
            allocation_strategy=AllocationStrategy.RULE_BASED.value,
            priority=Priority.MEDIUM.value,
            status=LeadState.AWAITING_BID.value,
            state_entered_at=now,
            expiry_time=now + timedelta(hours=self.settings.booking_lead_ttl_hours),
            provenance=dump_provenance(FromBooking()),
        )
        await session.flush()
        return lead

    async def from_booking(self, booking_id) -> LeadModel:
        """
        Create the lead for a booking.
        Retrying is safe: the second call gets ConflictError carrying the original lead.
        """
        async with self.session_factory() as session:
            booking = await get_booking(session, booking_id)
            booking_pk = booking.id

            existing = await self._lead_for_booking(session, booking_pk)
            if existing:
                raise ConflictError(
                    "Lead already exists for this booking",
                    code="LEAD_EXISTS_FOR_BOOKING",
                    details={"booking_id": str(booking.id), "lead_id": existing.lead_id},
                    existing=existing,
                )

            try:
                lead = await self._lead_from_booking(session, booking)
                await session.commit()
            except IntegrityError:
                # Lost the race against another creator; the unique index decided
                await session.rollback()
                existing = await self._lead_for_booking(session, booking_pk)
                if existing is None:
                    raise
                raise ConflictError(
                    "Lead already exists for this booking",
                    code="LEAD_EXISTS_FOR_BOOKING",
                    details={"booking_id": str(booking_pk), "lead_id": existing.lead_id},
                    existing=existing,
                ) from None

        logger.info("Lead created from booking", extra={"lead_id": lead.lead_id, "booking_id": str(booking_pk)})
        return lead

    async def _upsert_guest_user(self, session, cleaned: dict) -> User:
        """Guest user keyed by phone; fills gaps, never overwrites."""
        user = await find_user_by_phone(session, cleaned["phone"])
        if user is None:
            user = User(
                id=_uuid.uuid4(),
                phone=cleaned["phone"],
                name=cleaned["name"],
                email=cleaned["email"],
                is_verified=False,
                is_profile_complete=False,
            )
            session.add(user)
            try:
                await session.flush()
                return user
            except IntegrityError:
                # Another enquiry registered this phone first; nothing else is pending yet
                await session.rollback()
                user = await find_user_by_phone(session, cleaned["phone"])
                if user is None:
                    raise

        if cleaned["name"] and not user.name:
            user.name = cleaned["name"]
        if cleaned["email"] and not user.email:
            user.email = cleaned["email"]
        await session.flush()
        return user

    async def from_enquiry(self, raw: Enquiry) -> EnquiryReceipt:
        """
        Public enquiry: upsert a guest user, open a companion booking,
        and create a 30-day marketplace lead referencing it.

        The lead id is issued before anything touches the store. Failures
        past validation carry it in their details so the customer can quote it.
        """
        lead_id = generate_lead_id()

        cleaned = sanitize_enquiry(raw)
        if not cleaned["valid"]:
            raise LeadValidationError(
                "Name, phone, category, and city are required",
                errors=cleaned["errors"],
            )

        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                user = await self._upsert_guest_user(session, cleaned)

                booking = Booking(
                    id=_uuid.uuid4(),
                    user_id=user.id,
                    category_id=cleaned["category"],
                    service_id=cleaned["service"],
                    sub_service_id=cleaned["sub_service"] or cleaned["service"] or cleaned["category"],
                    city=cleaned["city"],
                    address=cleaned["address"] or cleaned["city"] or "Address not provided",
                    landmark=cleaned["landmark"],
                    pincode=cleaned["pincode"],
                    amount=cleaned["value"],
                    payamount=0.0,
                    payment_mode="cash",
                    status=BookingStatus.PENDING.value,
                    scheduled_date=now,
                )
                session.add(booking)
                await session.flush()

                lead_id = await allocate_lead_id(
                    session, self.settings.lead_id_max_attempts, fallback=lead_id
                )
                lead = await self._new_lead(
                    session,
                    lead_id=lead_id,
                    booking_id=booking.id,
                    user_id=user.id,
                    category_id=cleaned["category"],
                    service_id=cleaned["service"],
                    sub_service_id=cleaned["sub_service"],
                    city=cleaned["city"],
                    address=cleaned["address"],
                    landmark=cleaned["landmark"],
                    pincode=cleaned["pincode"],
                    lat=0.0,
                    lng=0.0,
                    value=cleaned["value"],
                    allocation_strategy=AllocationStrategy.RULE_BASED.value,
                    priority=Priority.MEDIUM.value,
                    status=LeadState.AWAITING_BID.value,
                    state_entered_at=now,
                    expiry_time=now + timedelta(days=self.settings.enquiry_lead_ttl_days),
                    provenance=dump_provenance(FromEnquiry(
                        name=cleaned["name"],
                        phone=cleaned["phone"],
                        email=cleaned["email"],
                        description=cleaned["description"],
                        estimated_budget=cleaned["value"],
                    )),
                )
                await session.commit()
        except LeadEngineError as exc:
            exc.details.setdefault("lead_id", lead_id)
            raise
        except SQLAlchemyError as exc:
            logger.error("Service enquiry could not be stored", extra={"lead_id": lead_id}, exc_info=True)
            raise DependencyError(
                "Enquiry could not be stored",
                code="ENQUIRY_NOT_STORED",
                details={"lead_id": lead_id},
            ) from exc

        logger.info("Service enquiry captured", extra={"lead_id": lead.lead_id, "booking_id": str(booking.id)})
        return EnquiryReceipt(lead_id=lead.lead_id, booking_id=booking.id, lead=lead)

    async def manual(self, raw: ManualLead) -> LeadModel:
        """Admin lead bound to a named partner; no booking, 24h TTL."""
        cleaned = sanitize_manual_lead(raw)
        if not cleaned["valid"]:
            raise LeadValidationError(
                "Partner ID, category, city, and value are required",
                errors=cleaned["errors"],
            )

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            partner = await get_partner(session, cleaned["partner_id"])
            lead = await self._new_lead(
                session,
                user_id=None,
                category_id=cleaned["category"],
                service_id=cleaned["service"],
                sub_service_id=cleaned["sub_service"],
                city=cleaned["city"],
                address=cleaned["address"],
                landmark=cleaned["landmark"],
                pincode=cleaned["pincode"],
                lat=0.0,
                lng=0.0,
                value=cleaned["value"],
                allocation_strategy=cleaned["allocation_strategy"],
                priority=cleaned["priority"],
                status=LeadState.AWAITING_BID.value,
                state_entered_at=now,
                expiry_time=now + timedelta(hours=self.settings.manual_lead_ttl_hours),
                provenance=dump_provenance(FromManual(
                    partner_id=partner.id,
                    description=cleaned["description"],
                )),
            )
            await session.commit()

        logger.info("Manual lead created", extra={"lead_id": lead.lead_id, "partner_id": str(partner.id)})
        return lead

    async def sync_bookings(self) -> SyncResult:
        """
        One lead for every open, unassigned booking that lacks one.
        Each booking gets its own transaction; failures are collected, not raised.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking)
                .where(
                    Booking.status.in_([BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value]),
                    Booking.partner_id.is_(None),
                )
                .order_by(Booking.created_at)
            )
            bookings = list(result.scalars().all())

        outcome = SyncResult()
        for booking in bookings:
            async with self.session_factory() as session:
                try:
                    if await self._lead_for_booking(session, booking.id):
                        continue
                    lead = await self._lead_from_booking(session, booking)
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    if await self._lead_for_booking(session, booking.id):
                        # A concurrent creator got there first
                        continue
                    logger.warning(
                        "Booking could not be synced to a lead",
                        extra={"booking_id": str(booking.id)},
                        exc_info=True,
                    )
                    outcome.errors.append({"booking_id": str(booking.id), "error": str(exc)})
                    continue
                except Exception as exc:
                    await session.rollback()
                    logger.warning(
                        "Booking could not be synced to a lead",
                        extra={"booking_id": str(booking.id)},
                        exc_info=True,
                    )
                    outcome.errors.append({"booking_id": str(booking.id), "error": str(exc)})
                    continue
            outcome.leads.append(lead.lead_id)

        outcome.created = len(outcome.leads)
        logger.info("Synced %d bookings to leads (%d errors)", outcome.created, len(outcome.errors))
        return outcome
