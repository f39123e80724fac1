"""
Lead Provenance
Where a unit of demand came from, as a closed set of variants
"""

import uuid
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class FromBooking(BaseModel):
    source: Literal["booking"] = "booking"
    created_by: str = "booking_sync"


class FromManual(BaseModel):
    source: Literal["manual"] = "manual"
    partner_id: uuid.UUID
    description: str = ""
    created_by: str = "admin"


class FromEnquiry(BaseModel):
    source: Literal["enquiry"] = "enquiry"
    name: str
    phone: str
    email: str = ""
    description: str = ""
    estimated_budget: float = 0.0
    created_by: str = "customer_enquiry"


Provenance = Annotated[
    Union[FromBooking, FromManual, FromEnquiry],
    Field(discriminator="source"),
]

_adapter = TypeAdapter(Provenance)

SOURCE_LABELS = {
    "booking": "Booking",
    "manual": "Manual",
    "enquiry": "Customer Enquiry",
}


def dump_provenance(provenance) -> dict:
    return _adapter.dump_python(provenance, mode="json")


def load_provenance(data: Optional[dict], has_booking: bool = False):
    """Rows written before provenance existed fall back on the booking link."""
    if not data or "source" not in data:
        return FromBooking() if has_booking else None
    return _adapter.validate_python(data)


def source_label(provenance) -> str:
    if provenance is None:
        return "Manual"
    return SOURCE_LABELS[provenance.source]
