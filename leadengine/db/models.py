"""
Database Models
===============
Lead = current allocation state + demand snapshot
LeadBid = a partner's offer, owned by exactly one Lead
LeadEvent = immutable history (audit log)

User, Partner and Booking belong to neighbouring systems. They are mapped
here so the allocation core can read (and, for auto-assignment, write) them.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow():
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that comes back aware even on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ── Collaborators ─────────────────────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    phone = Column(String(20), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    email = Column(String(320), nullable=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_profile_complete = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Partner(Base):
    """
    Service partner as seen by the allocator.
    service_hubs is a list of {"name": str, "pin_codes": [str, ...]}.
    """
    __tablename__ = "partners"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=False, unique=True)
    email = Column(String(320), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_approved = Column(Boolean, nullable=False, default=False)
    lead_acceptance_paused = Column(Boolean, nullable=False, default=False)

    category_ids = Column(JSON, nullable=False, default=list)
    service_hubs = Column(JSON, nullable=False, default=list)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def pin_codes(self) -> set[str]:
        pins = set()
        for hub in self.service_hubs or []:
            for pin in hub.get("pin_codes") or []:
                pin = str(pin or "").strip()
                if pin:
                    pins.add(pin)
        return pins


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)

    category_id = Column(String(64), nullable=True)
    service_id = Column(String(64), nullable=True)
    sub_service_id = Column(String(64), nullable=True)

    city = Column(String(120), nullable=True)
    address = Column(Text, nullable=True)
    landmark = Column(String(255), nullable=True)
    pincode = Column(String(12), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    amount = Column(Float, nullable=True)
    payamount = Column(Float, nullable=True)
    payment_mode = Column(String(20), nullable=True)
    payment_status = Column(String(20), nullable=False, default="pending")

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    partner_id = Column(Uuid, ForeignKey("partners.id"), nullable=True)
    scheduled_date = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    partner = relationship("Partner", lazy="selectin")


# ── Allocation core ───────────────────────────────────────────────────────────

class Lead(Base):
    """
    The Lead table stores the CURRENT allocation state.
    assigned_partner_id / accepted_bid_id / allocation_time move together.
    """
    __tablename__ = "leads"
    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_leads_value_non_negative"),
        Index("ix_leads_status_created", "status", "created_at"),
        Index("ix_leads_city_status", "city", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id = Column(String(32), nullable=False, unique=True)

    # One lead per booking is enforced here, not only by a pre-insert check
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=True, unique=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True)

    category_id = Column(String(64), nullable=False)
    service_id = Column(String(64), nullable=True)
    sub_service_id = Column(String(64), nullable=True)

    city = Column(String(120), nullable=False)
    address = Column(Text, nullable=True)
    landmark = Column(String(255), nullable=True)
    pincode = Column(String(12), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    value = Column(Float, nullable=False, default=0.0)
    allocation_strategy = Column(String(30), nullable=False, default="rule_based")
    priority = Column(String(10), nullable=False, default="medium")

    # FSM state - THE SINGLE SOURCE OF TRUTH
    status = Column(String(20), nullable=False, default="pending")
    state_entered_at = Column(UTCDateTime, default=utcnow)
    expiry_time = Column(UTCDateTime, nullable=True)

    assigned_partner_id = Column(Uuid, ForeignKey("partners.id"), nullable=True, index=True)
    accepted_bid_id = Column(Uuid, nullable=True)
    allocation_time = Column(UTCDateTime, nullable=True)
    converted_at = Column(UTCDateTime, nullable=True)

    provenance = Column(JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    bids = relationship(
        "LeadBid",
        back_populates="lead",
        order_by="LeadBid.submitted_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    events = relationship("LeadEvent", back_populates="lead", order_by="LeadEvent.occurred_at", lazy="raise")

    @property
    def accepted_bid(self):
        for bid in self.bids:
            if bid.id == self.accepted_bid_id:
                return bid
        return None


class LeadBid(Base):
    """Bids live and die with their lead; no partner has two offers on one lead."""
    __tablename__ = "lead_bids"
    __table_args__ = (
        UniqueConstraint("lead_id", "partner_id", name="uq_lead_bids_lead_partner"),
        CheckConstraint("bid_amount >= 0", name="ck_lead_bids_amount_non_negative"),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_lead_bids_score_range"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    partner_id = Column(Uuid, ForeignKey("partners.id"), nullable=False, index=True)

    bid_amount = Column(Float, nullable=False)
    score = Column(Float, nullable=False, default=0.0)
    eta = Column(String(50), nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="pending")

    submitted_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    lead = relationship("Lead", back_populates="bids")


class LeadEvent(Base):
    """
    The Event Log - IMMUTABLE history.
    Every state transition creates a new row here.
    Never updated; only removed together with its lead by admin cleanup.
    """
    __tablename__ = "lead_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)

    # What happened?
    from_state = Column(String(50), nullable=False)
    event = Column(String(100), nullable=False)
    to_state = Column(String(50), nullable=False)

    # Extra data (partner, bid, reason, etc.)
    payload = Column(JSON, nullable=True)

    # When?
    occurred_at = Column(UTCDateTime, default=utcnow, nullable=False)

    lead = relationship("Lead", back_populates="events")
