"""
Lead State Machine
Pure transition rules; lead_fsm_db applies them to stored leads.
"""

import re
from datetime import datetime
from typing import Optional

from leadengine.core.lead_states import (
    LeadState,
    LeadEvent,
    STATUS_EVENTS,
    TERMINAL_STATES,
    TRANSITIONS,
)
from leadengine.errors import ConflictError, LeadValidationError


def next_state(current: LeadState, event: LeadEvent, lead_ref: str = "") -> LeadState:
    """
    Resolve (current, event) against the transition table.
    Raises ConflictError for terminal leads and illegal moves.
    """
    # Block transitions from terminal states
    if current in TERMINAL_STATES:
        raise ConflictError(
            f"Lead {lead_ref} is in terminal state {current.value}. Cannot apply {event.value}.",
            code="LEAD_TERMINAL",
            details={"status": current.value, "event": event.value},
        )

    # Look up the transition
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise ConflictError(
            f"Illegal transition: {current.value} + {event.value}",
            code="ILLEGAL_TRANSITION",
            details={"status": current.value, "event": event.value},
        )
    return target


def event_for_status(target: LeadState) -> LeadEvent:
    """Map an operator's requested status onto the event it represents."""
    event = STATUS_EVENTS.get(target)
    if event is None:
        raise LeadValidationError(
            f"Status {target.value} cannot be set directly",
            errors=[f"unsupported_status: {target.value}"],
        )
    return event


def is_expired(expiry_time: Optional[datetime], now: datetime) -> bool:
    return expiry_time is not None and expiry_time <= now


# ── Display names ─────────────────────────────────────────────────────────────

def format_label(value: Optional[str], default: str = "") -> str:
    """awaiting_bid -> Awaiting Bid"""
    if not value:
        return default
    return re.sub(r"\b\w", lambda m: m.group().upper(), value.replace("_", " "))


_DISPLAY_NAMES = {format_label(state.value): state for state in LeadState}


def parse_status(value: str) -> LeadState:
    """Accept either an enum value ("awaiting_bid") or its display name ("Awaiting Bid")."""
    value = (value or "").strip()
    if value in _DISPLAY_NAMES:
        return _DISPLAY_NAMES[value]
    try:
        return LeadState(value.lower())
    except ValueError:
        raise LeadValidationError(
            f"Unknown lead status: {value}",
            errors=[f"invalid_status: {value}"],
        ) from None
