from enum import Enum


class LeadStatus(str, Enum):
    ACTIVE = "ACTIVE"
    HUMAN_REQUIRED = "HUMAN_REQUIRED"
    HUMAN_TAKEN = "HUMAN_TAKEN"
    CLOSED = "CLOSED"


class RoutingState(str, Enum):
    ROUTING = "ROUTING"
    AWAITING_REENTRY_CHOICE = "AWAITING_REENTRY_CHOICE"


class EscalationReason(str, Enum):
    SAFETY_MAX_BOT_TURNS = "SAFETY_MAX_BOT_TURNS"
    SAFETY_SAME_STEP_LOOP = "SAFETY_SAME_STEP_LOOP"
    USER_REQUEST = "USER_REQUEST"
    SCORE_THRESHOLD = "SCORE_THRESHOLD"
    REENTRY_ESCALATION = "REENTRY_ESCALATION"
    FLOW_COMPLETED = "FLOW_COMPLETED"


OPEN_STATUSES = (LeadStatus.ACTIVE, LeadStatus.HUMAN_REQUIRED, LeadStatus.HUMAN_TAKEN)

VALID_TRANSITIONS = {
    LeadStatus.ACTIVE: [LeadStatus.ACTIVE, LeadStatus.HUMAN_REQUIRED, LeadStatus.CLOSED],
    LeadStatus.HUMAN_REQUIRED: [LeadStatus.HUMAN_TAKEN, LeadStatus.CLOSED],
    LeadStatus.HUMAN_TAKEN: [LeadStatus.CLOSED],
    LeadStatus.CLOSED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: LeadStatus, to_state: LeadStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: LeadStatus, to_state: LeadStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: LeadStatus, to_state: LeadStatus) -> LeadStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def escalate(current_state: LeadStatus) -> LeadStatus:
    """Hand the lead over to a human (guard trigger)."""
    return transition(current_state, LeadStatus.HUMAN_REQUIRED)


def operator_take(current_state: LeadStatus) -> LeadStatus:
    """Operator claims an escalated lead."""
    return transition(current_state, LeadStatus.HUMAN_TAKEN)


def close(current_state: LeadStatus) -> LeadStatus:
    """Close the lead (streak limit or operator close)."""
    return transition(current_state, LeadStatus.CLOSED)


def is_open(status: str) -> bool:
    return status in {s.value for s in OPEN_STATUSES}
