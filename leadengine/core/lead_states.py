"""
Lead Lifecycle States
Every lead is in exactly ONE of these states at any time
"""

from enum import Enum


class LeadState(str, Enum):
    # Intake
    PENDING = "pending"            # Created, not yet offered to partners
    AWAITING_BID = "awaiting_bid"  # Open, no bids yet
    BIDDING = "bidding"            # At least one bid on the table

    # Resolution
    ASSIGNED = "assigned"          # Exactly one partner bound
    CONVERTED = "converted"        # Job completed (terminal)

    # Side exits
    ESCALATED = "escalated"        # Needs an operator
    CANCELLED = "cancelled"        # Operator cancelled (terminal)
    EXPIRED = "expired"            # TTL elapsed (terminal)


class LeadEvent(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    OPENED_FOR_BIDS = "OPENED_FOR_BIDS"
    FIRST_BID_SUBMITTED = "FIRST_BID_SUBMITTED"
    BID_ACCEPTED = "BID_ACCEPTED"
    PARTNER_ASSIGNED = "PARTNER_ASSIGNED"
    JOB_COMPLETED = "JOB_COMPLETED"
    TTL_ELAPSED = "TTL_ELAPSED"
    ESCALATED = "ESCALATED"
    CANCELLED = "CANCELLED"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class AllocationStrategy(str, Enum):
    RULE_BASED = "rule_based"
    INSTANT_ASSIGN = "instant_assign"
    TIERED_BID = "tiered_bid"
    MANUAL = "manual"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Terminal states - once a lead reaches these, it stops moving
TERMINAL_STATES = {
    LeadState.CONVERTED,
    LeadState.CANCELLED,
    LeadState.EXPIRED,
}

# Partners may place offers only here
OPEN_FOR_BIDS = {
    LeadState.AWAITING_BID,
    LeadState.BIDDING,
}

# No partner bound yet; the TTL sweep only looks at these
UNRESOLVED_STATES = {
    LeadState.PENDING,
    LeadState.AWAITING_BID,
    LeadState.BIDDING,
    LeadState.ESCALATED,
}

NON_TERMINAL_STATES = set(LeadState) - TERMINAL_STATES


TRANSITIONS = {
    # Intake
    (LeadState.PENDING, LeadEvent.OPENED_FOR_BIDS): LeadState.AWAITING_BID,
    (LeadState.ESCALATED, LeadEvent.OPENED_FOR_BIDS): LeadState.AWAITING_BID,

    # Bidding
    (LeadState.AWAITING_BID, LeadEvent.FIRST_BID_SUBMITTED): LeadState.BIDDING,
    (LeadState.BIDDING, LeadEvent.BID_ACCEPTED): LeadState.ASSIGNED,

    # Direct (operator / rule-based) assignment
    (LeadState.PENDING, LeadEvent.PARTNER_ASSIGNED): LeadState.ASSIGNED,
    (LeadState.AWAITING_BID, LeadEvent.PARTNER_ASSIGNED): LeadState.ASSIGNED,
    (LeadState.BIDDING, LeadEvent.PARTNER_ASSIGNED): LeadState.ASSIGNED,
    (LeadState.ESCALATED, LeadEvent.PARTNER_ASSIGNED): LeadState.ASSIGNED,

    # Fulfilment
    (LeadState.ASSIGNED, LeadEvent.JOB_COMPLETED): LeadState.CONVERTED,
}

# Side exits from every non-terminal state
for _state in NON_TERMINAL_STATES:
    TRANSITIONS[(_state, LeadEvent.TTL_ELAPSED)] = LeadState.EXPIRED
    TRANSITIONS[(_state, LeadEvent.CANCELLED)] = LeadState.CANCELLED
    if _state is not LeadState.ESCALATED:
        TRANSITIONS[(_state, LeadEvent.ESCALATED)] = LeadState.ESCALATED
del _state


# Which event an operator's "set status to X" request stands for
STATUS_EVENTS = {
    LeadState.AWAITING_BID: LeadEvent.OPENED_FOR_BIDS,
    LeadState.ASSIGNED: LeadEvent.PARTNER_ASSIGNED,
    LeadState.CONVERTED: LeadEvent.JOB_COMPLETED,
    LeadState.ESCALATED: LeadEvent.ESCALATED,
    LeadState.CANCELLED: LeadEvent.CANCELLED,
    LeadState.EXPIRED: LeadEvent.TTL_ELAPSED,
}
