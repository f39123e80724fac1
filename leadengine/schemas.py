"""
API response shapes.
Every endpoint answers with APIResponse on success and ErrorResponse on failure.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    success: bool = Field(True, description="Indicates successful operation")
    data: T = Field(..., description="Response payload")
    message: Optional[str] = Field(None, description="Optional human-readable message")
    pagination: Optional[Dict[str, int]] = None


class ErrorResponse(BaseModel):
    success: bool = Field(False, description="Always false for errors")
    error: str = Field(..., description="Error type (snake_case)")
    error_code: str = Field(..., description="Machine-readable error code (UPPER_SNAKE_CASE)")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Domain views ──────────────────────────────────────────────────────────────

class BidOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    partner_id: uuid.UUID
    bid_amount: float
    score: float
    eta: str
    notes: str
    status: str
    submitted_at: datetime


class LeadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    lead_id: str
    booking_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    category_id: str
    service_id: Optional[str] = None
    sub_service_id: Optional[str] = None
    city: str
    address: Optional[str] = None
    pincode: Optional[str] = None
    value: float
    allocation_strategy: str
    priority: str
    status: str
    expiry_time: Optional[datetime] = None
    assigned_partner_id: Optional[uuid.UUID] = None
    accepted_bid_id: Optional[uuid.UUID] = None
    allocation_time: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    provenance: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    bids: List[BidOut] = []


class LeadEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_state: str
    event: str
    to_state: str
    payload: Optional[Dict[str, Any]] = None
    occurred_at: datetime


class LeadHistoryOut(BaseModel):
    lead_id: str
    current_state: str
    event_count: int
    events: List[LeadEventOut]


class EnquiryOut(BaseModel):
    lead_id: str
    booking_id: uuid.UUID


class SyncOut(BaseModel):
    created: int
    leads: List[str]
    errors: List[Dict[str, Any]]


class PartnerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: Optional[str] = None
    phone: str
