from app.services.state_machine import (
    EscalationReason,
    InvalidTransitionError,
    LeadStatus,
    RoutingState,
    can_transition,
    close,
    escalate,
    operator_take,
    transition,
)
