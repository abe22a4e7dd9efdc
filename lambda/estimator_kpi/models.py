"""
Domain models for the estimator KPI tracker.

All Pydantic models in one place. Imported by status, lifecycle, kpi,
storage, workflow, and handler modules. Single source of truth for data contracts.
"""

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


# --- Domain Enums ---

class EstimateStatus(str, Enum):
    """
    Processing status of a claim file. Inherits str so Pydantic serializes
    to "in-progress" / "blocked" without extra conversion.
    """
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    SENT_TO_CARRIER = "sent-to-carrier"
    REVISION_REQUESTED = "revision-requested"
    REVISED = "revised"
    SETTLED = "settled"
    CLOSED = "closed"
    UNABLE_TO_START = "unable-to-start"


class BlockerType(str, Enum):
    """Who or what a blocked file is waiting on."""
    SCOPER = "scoper"
    PUBLIC_ADJUSTER = "public-adjuster"
    CARRIER = "carrier"
    CONTRACTOR = "contractor"
    CLIENT = "client"
    INTERNAL = "internal"
    DOCUMENTATION = "documentation"
    OTHER = "other"


class Peril(str, Enum):
    WIND = "Wind"
    HAIL = "Hail"
    WATER = "Water"
    FIRE = "Fire"
    FLOOD = "Flood"
    MOLD = "Mold"
    THEFT = "Theft"
    VANDALISM = "Vandalism"
    COLLAPSE = "Collapse"
    OTHER = "Other"


class EventType(str, Enum):
    STATUS_CHANGE = "status-change"
    BLOCKER_SET = "blocker-set"
    BLOCKER_CLEARED = "blocker-cleared"


# --- Lifecycle Context ---

class ClaimEstimate(BaseModel):
    """One claim file being worked. Persisted in the estimates table."""
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    file_number: str
    claim_number: str = ""
    policy_number: str = ""
    estimator_id: str
    estimator_name: str = ""
    client_name: str = ""
    carrier: str = ""
    property_type: str | None = None
    loss_state: str = ""
    loss_date: str | None = None
    peril: Peril | None = None
    severity: int | None = Field(None, ge=1, le=5)

    # Money
    estimate_value: float | None = Field(None, ge=0)
    rcv: float | None = Field(None, ge=0)
    acv: float | None = Field(None, ge=0)
    depreciation: float | None = Field(None, ge=0)
    deductible: float | None = Field(None, ge=0)
    net_claim: float | None = Field(None, ge=0)
    overhead_and_profit: float | None = Field(None, ge=0)

    # Time buckets: total is always active + blocked
    active_time_minutes: int | None = Field(None, ge=0)
    blocked_time_minutes: int = Field(0, ge=0)
    total_time_minutes: int = Field(0, ge=0)
    revision_time_minutes: int | None = Field(None, ge=0)
    revisions: int = Field(0, ge=0)

    # Status typed via enum
    status: EstimateStatus = EstimateStatus.ASSIGNED

    # Current blocker, populated only while status is blocked
    current_blocker_type: BlockerType | None = None
    current_blocker_name: str | None = None
    current_blocker_reason: str | None = None
    current_blocked_at: datetime | None = None

    # Settlement
    actual_settlement: float | None = Field(None, ge=0)
    settlement_date: str | None = None
    is_settled: bool = False
    settlement_variance: float | None = None

    # Lifecycle timestamps, each set once
    date_received: datetime
    date_started: datetime | None = None
    date_completed: datetime | None = None
    date_sent_to_carrier: datetime | None = None
    date_closed: datetime | None = None

    notes: str = ""


class LifecycleEvent(BaseModel):
    """Append-only audit record. Persisted in the estimate_events table."""
    id: str | None = None
    created_at: datetime | None = None

    estimate_id: str
    estimator_id: str
    file_number: str
    event_type: EventType
    from_status: EstimateStatus | None = None
    to_status: EstimateStatus | None = None

    blocker_type: BlockerType | None = None
    blocker_name: str | None = None
    blocker_reason: str | None = None
    blocker_duration_minutes: int | None = Field(None, ge=0)

    description: str = ""
    triggered_by: str = "user"


class Blocker(BaseModel):
    """One blocking episode. At most one active row per estimate."""
    id: str | None = None
    created_at: datetime | None = None

    estimate_id: str
    estimator_id: str
    file_number: str
    blocker_type: BlockerType
    blocker_name: str = ""
    blocker_reason: str = ""
    blocked_at: datetime
    resolved_at: datetime | None = None
    duration_minutes: int | None = Field(None, ge=0)
    is_active: bool = True
    resolution_note: str = ""


class EstimatorProfile(BaseModel):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    user_id: str
    display_name: str
    is_active: bool = True
    target_dollars_per_hour: float | None = None
    target_estimates_per_week: int | None = None
    target_max_revision_rate: float | None = None
    target_max_cycle_days: float | None = None


class Carrier(BaseModel):
    id: str
    name: str
    is_verified: bool = False
    is_active: bool = True


# --- Engine Results ---

class TransitionResult(BaseModel):
    estimate: ClaimEstimate
    event: LifecycleEvent


class BlockResult(BaseModel):
    estimate: ClaimEstimate
    blocker: Blocker
    event: LifecycleEvent


class UnblockResult(BaseModel):
    estimate: ClaimEstimate
    blocker: Blocker
    event: LifecycleEvent
    duration_minutes: int = Field(ge=0)


# --- KPI Context ---

def _per_severity(value: float = 0) -> dict[int, float]:
    return {severity: value for severity in (1, 2, 3, 4, 5)}


class WeeklyMetrics(BaseModel):
    """Derived per-estimator (or team) aggregate. Never persisted."""
    avg_days_held: float = 0.0
    revision_rate: float = 0.0
    first_time_approval_rate: float = Field(0.0, ge=0.0, le=100.0)
    dollar_per_hour: float = 0.0
    total_estimates: int = 0
    severity_breakdown: dict[int, int] = Field(default_factory=lambda: _per_severity(0))
    avg_time_per_severity: dict[int, float] = Field(default_factory=lambda: _per_severity(0.0))
    avg_value_per_severity: dict[int, float] = Field(default_factory=lambda: _per_severity(0.0))


class RankedEstimator(BaseModel):
    estimator_id: str
    metrics: WeeklyMetrics
    overall_score: int = Field(ge=0, le=100)


class Recommendation(BaseModel):
    type: str  # "warning" | "success"
    message: str


# --- Exceptions ---

class InvalidTransitionError(Exception):
    """Requested status change is not an edge of the transition table."""

    def __init__(self, current: EstimateStatus | str, requested: EstimateStatus | str, detail: str | None = None):
        self.current = EstimateStatus(current)
        self.requested = requested
        message = f"Cannot move estimate from '{self.current.value}' to '{_status_value(requested)}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class AlreadyBlockedError(Exception):
    """Estimate is already blocked."""
    pass


class NotBlockedError(Exception):
    """Unblock requested for an estimate that is not blocked."""
    pass


class NoActiveBlockerError(Exception):
    """Estimate is blocked but no active blocker row exists (data integrity)."""
    pass


class ValidationError(Exception):
    """Field input could not be parsed or is out of range."""
    pass


class RecordNotFoundError(Exception):
    """Requested record does not exist."""
    pass


class StorageError(Exception):
    """Database operation failed."""
    pass


def _status_value(status: EstimateStatus | str) -> str:
    return status.value if isinstance(status, EstimateStatus) else str(status)
