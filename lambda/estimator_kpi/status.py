"""
Estimate lifecycle table - statuses, labels, and allowed transitions.

The lifecycle is cyclical, not linear. Files bounce between in-progress
and blocked, and cycle sent-to-carrier -> revision-requested -> in-progress
-> sent-to-carrier as carriers push back.
"""

from estimator_kpi.models import EstimateStatus, BlockerType


S = EstimateStatus

STATUS_LABELS: dict[EstimateStatus, str] = {
    S.ASSIGNED: "Assigned",
    S.IN_PROGRESS: "In Progress",
    S.BLOCKED: "Blocked",
    S.REVIEW: "In Review",
    S.SENT_TO_CARRIER: "Sent to Carrier",
    S.REVISION_REQUESTED: "Revision Requested",
    S.REVISED: "Revised",
    S.SETTLED: "Settled",
    S.CLOSED: "Closed",
    S.UNABLE_TO_START: "Unable to Start",
}

ALLOWED_TRANSITIONS: dict[EstimateStatus, frozenset[EstimateStatus]] = {
    S.ASSIGNED: frozenset({S.IN_PROGRESS, S.UNABLE_TO_START}),
    S.IN_PROGRESS: frozenset({S.BLOCKED, S.REVIEW, S.SENT_TO_CARRIER}),
    S.BLOCKED: frozenset({S.IN_PROGRESS}),
    S.REVIEW: frozenset({S.IN_PROGRESS, S.SENT_TO_CARRIER}),
    S.SENT_TO_CARRIER: frozenset({S.REVISION_REQUESTED, S.SETTLED}),
    S.REVISION_REQUESTED: frozenset({S.IN_PROGRESS}),
    S.REVISED: frozenset({S.SENT_TO_CARRIER}),
    S.SETTLED: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
    S.UNABLE_TO_START: frozenset({S.ASSIGNED}),
}

TERMINAL_STATUSES: frozenset[EstimateStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Blocked is reachable only through the block operation, never the status picker
SELECTABLE_STATUSES: tuple[EstimateStatus, ...] = tuple(
    status for status in EstimateStatus if status != S.BLOCKED
)

BLOCKER_TYPE_LABELS: dict[BlockerType, str] = {
    BlockerType.SCOPER: "Waiting on Scoper",
    BlockerType.PUBLIC_ADJUSTER: "Waiting on Public Adjuster",
    BlockerType.CARRIER: "Waiting on Carrier",
    BlockerType.CONTRACTOR: "Waiting on Contractor",
    BlockerType.CLIENT: "Waiting on Client",
    BlockerType.INTERNAL: "Internal Hold",
    BlockerType.DOCUMENTATION: "Missing Documentation",
    BlockerType.OTHER: "Other",
}


def can_transition(current: EstimateStatus | str, target: EstimateStatus | str) -> bool:
    """Whether target is an edge of the transition table from current."""
    try:
        current, target = EstimateStatus(current), EstimateStatus(target)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS[current]


def allowed_targets(current: EstimateStatus | str) -> list[EstimateStatus]:
    """Targets offered in the status picker, in display order."""
    current = EstimateStatus(current)
    return [s for s in SELECTABLE_STATUSES if s in ALLOWED_TRANSITIONS[current]]


def status_label(status: EstimateStatus | str) -> str:
    return STATUS_LABELS[EstimateStatus(status)]


def blocker_type_label(blocker_type: BlockerType | str) -> str:
    return BLOCKER_TYPE_LABELS[BlockerType(blocker_type)]
