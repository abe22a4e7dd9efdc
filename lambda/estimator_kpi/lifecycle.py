"""
Lifecycle engine - status transitions, blocker protocol, and field edits.

Pure functions over ClaimEstimate. Every operation checks its preconditions
before building anything, and returns new model copies plus the audit
records to persist. Inputs are never mutated.

Persistence lives in workflow.py, not here.
"""

import logging
import math
from datetime import date, datetime, timezone
from typing import Any

from estimator_kpi.models import (
    ClaimEstimate,
    LifecycleEvent,
    Blocker,
    EstimateStatus,
    BlockerType,
    EventType,
    Peril,
    TransitionResult,
    BlockResult,
    UnblockResult,
    InvalidTransitionError,
    AlreadyBlockedError,
    NotBlockedError,
    NoActiveBlockerError,
    ValidationError,
)
from estimator_kpi.status import can_transition, TERMINAL_STATUSES

logger = logging.getLogger("estimator-kpi-lifecycle")


# --- Editable field categories ---

MONEY_FIELDS: frozenset[str] = frozenset({
    "estimate_value",
    "rcv",
    "acv",
    "depreciation",
    "deductible",
    "net_claim",
    "overhead_and_profit",
})

# Entered as hours, stored as whole minutes
HOUR_FIELDS: frozenset[str] = frozenset({"active_time_minutes", "revision_time_minutes"})

TEXT_FIELDS: frozenset[str] = frozenset({
    "file_number",
    "claim_number",
    "policy_number",
    "estimator_name",
    "client_name",
    "carrier",
    "loss_state",
    "notes",
})

NULLABLE_TEXT_FIELDS: frozenset[str] = frozenset({"property_type", "loss_date"})

EDITABLE_FIELDS: frozenset[str] = (
    MONEY_FIELDS
    | HOUR_FIELDS
    | TEXT_FIELDS
    | NULLABLE_TEXT_FIELDS
    | {"revisions", "severity", "peril"}
)


# --- Status Transitions ---

def request_transition(
    estimate: ClaimEstimate,
    to_status: EstimateStatus | str,
    now: datetime | None = None,
    actor: str = "user",
) -> TransitionResult:
    """
    Moves an estimate along one edge of the transition table.

    Lifecycle timestamps are set on first entry only, except
    date_sent_to_carrier which is refreshed on every send.

    Raises:
        InvalidTransitionError: If the edge is not allowed, the target is
            blocked (use block), or the estimate is blocked (use unblock).
    """
    current = estimate.status

    try:
        target = EstimateStatus(to_status)
    except ValueError:
        raise InvalidTransitionError(current, to_status, "unknown status")

    if target == EstimateStatus.BLOCKED:
        raise InvalidTransitionError(current, target, "use block to put a file on hold")
    if current == EstimateStatus.BLOCKED:
        raise InvalidTransitionError(current, target, "use unblock to resume a blocked file")
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)

    now = as_utc(now) if now else _utcnow()
    updates: dict[str, Any] = {"status": target, "updated_at": now}

    if target == EstimateStatus.IN_PROGRESS and estimate.date_started is None:
        updates["date_started"] = now
    if target in (EstimateStatus.REVIEW, EstimateStatus.SENT_TO_CARRIER) and estimate.date_completed is None:
        updates["date_completed"] = now
    if target == EstimateStatus.SENT_TO_CARRIER:
        updates["date_sent_to_carrier"] = now
    if target == EstimateStatus.CLOSED and estimate.date_closed is None:
        updates["date_closed"] = now

    event = LifecycleEvent(
        estimate_id=estimate.id,
        estimator_id=estimate.estimator_id,
        file_number=estimate.file_number,
        event_type=EventType.STATUS_CHANGE,
        from_status=current,
        to_status=target,
        triggered_by=actor,
    )

    logger.info(
        f"Estimate {estimate.file_number}: {current.value} -> {target.value}",
        extra={"estimate_id": estimate.id},
    )
    return TransitionResult(estimate=estimate.model_copy(update=updates), event=event)


# --- Blocker Protocol ---

def block(
    estimate: ClaimEstimate,
    blocker_type: BlockerType | str,
    blocker_name: str = "",
    blocker_reason: str = "",
    now: datetime | None = None,
    actor: str = "user",
) -> BlockResult:
    """
    Puts an estimate on hold and opens a new blocker episode.

    Normally offered only from in-progress, but accepted from any
    non-terminal status that is not already blocked.

    Raises:
        AlreadyBlockedError: If the estimate is already blocked.
        InvalidTransitionError: If the estimate is closed.
        ValidationError: If blocker_type is not a known type.
    """
    if estimate.status == EstimateStatus.BLOCKED:
        raise AlreadyBlockedError(
            f"Estimate {estimate.file_number} is already blocked "
            f"({_enum_value(estimate.current_blocker_type)})"
        )
    if estimate.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(estimate.status, EstimateStatus.BLOCKED, "file is closed")

    try:
        blocker_type = BlockerType(blocker_type)
    except ValueError:
        raise ValidationError(
            f"Invalid blocker type: {blocker_type}. Must be one of {[t.value for t in BlockerType]}"
        )

    now = as_utc(now) if now else _utcnow()
    blocker_name = (blocker_name or "").strip()
    blocker_reason = (blocker_reason or "").strip()

    updated = estimate.model_copy(update={
        "status": EstimateStatus.BLOCKED,
        "current_blocker_type": blocker_type,
        "current_blocker_name": blocker_name,
        "current_blocker_reason": blocker_reason,
        "current_blocked_at": now,
        "updated_at": now,
    })

    blocker = Blocker(
        estimate_id=estimate.id,
        estimator_id=estimate.estimator_id,
        file_number=estimate.file_number,
        blocker_type=blocker_type,
        blocker_name=blocker_name,
        blocker_reason=blocker_reason,
        blocked_at=now,
        is_active=True,
    )

    event = LifecycleEvent(
        estimate_id=estimate.id,
        estimator_id=estimate.estimator_id,
        file_number=estimate.file_number,
        event_type=EventType.BLOCKER_SET,
        from_status=estimate.status,
        to_status=EstimateStatus.BLOCKED,
        blocker_type=blocker_type,
        blocker_name=blocker_name,
        blocker_reason=blocker_reason,
        description=blocker_reason,
        triggered_by=actor,
    )

    logger.info(
        f"Estimate {estimate.file_number} blocked: {blocker_type.value}",
        extra={"estimate_id": estimate.id},
    )
    return BlockResult(estimate=updated, blocker=blocker, event=event)


def unblock(
    estimate: ClaimEstimate,
    active_blocker: Blocker | None,
    resolution_note: str = "",
    now: datetime | None = None,
    actor: str = "user",
) -> UnblockResult:
    """
    Closes the active blocker episode and resumes work.

    The blocked duration is added to blocked_time_minutes and the total
    is recomputed from both buckets rather than incremented.

    Raises:
        NotBlockedError: If the estimate is not blocked.
        NoActiveBlockerError: If no active blocker row belongs to it.
    """
    if estimate.status != EstimateStatus.BLOCKED:
        raise NotBlockedError(
            f"Estimate {estimate.file_number} is not blocked (status: {estimate.status.value})"
        )
    if (
        active_blocker is None
        or not active_blocker.is_active
        or active_blocker.estimate_id != estimate.id
    ):
        raise NoActiveBlockerError(
            f"Estimate {estimate.file_number} is blocked but has no active blocker record"
        )

    now = as_utc(now) if now else _utcnow()
    duration = minutes_between(active_blocker.blocked_at, now)
    resolution_note = (resolution_note or "").strip()

    closed = active_blocker.model_copy(update={
        "is_active": False,
        "resolved_at": now,
        "duration_minutes": duration,
        "resolution_note": resolution_note,
    })

    blocked_minutes = estimate.blocked_time_minutes + duration
    updates: dict[str, Any] = {
        "status": EstimateStatus.IN_PROGRESS,
        "blocked_time_minutes": blocked_minutes,
        "total_time_minutes": (estimate.active_time_minutes or 0) + blocked_minutes,
        "current_blocker_type": None,
        "current_blocker_name": None,
        "current_blocker_reason": None,
        "current_blocked_at": None,
        "updated_at": now,
    }
    if estimate.date_started is None:
        updates["date_started"] = now

    event = LifecycleEvent(
        estimate_id=estimate.id,
        estimator_id=estimate.estimator_id,
        file_number=estimate.file_number,
        event_type=EventType.BLOCKER_CLEARED,
        from_status=EstimateStatus.BLOCKED,
        to_status=EstimateStatus.IN_PROGRESS,
        blocker_type=active_blocker.blocker_type,
        blocker_name=active_blocker.blocker_name,
        blocker_reason=active_blocker.blocker_reason,
        blocker_duration_minutes=duration,
        description=resolution_note,
        triggered_by=actor,
    )

    logger.info(
        f"Estimate {estimate.file_number} unblocked after {duration} min",
        extra={"estimate_id": estimate.id},
    )
    return UnblockResult(
        estimate=estimate.model_copy(update=updates),
        blocker=closed,
        event=event,
        duration_minutes=duration,
    )


# --- Field Edits ---

def parse_field_value(field: str, raw: Any) -> Any:
    """
    Parses raw form input for one editable field.

    Empty input clears nullable fields. Hour fields are entered in
    hours and returned as whole minutes.

    Raises:
        ValidationError: If the field is not editable or the input does not parse.
    """
    if field not in EDITABLE_FIELDS:
        raise ValidationError(f"Field '{field}' cannot be edited directly")

    if field in MONEY_FIELDS:
        return _parse_number(field, raw)

    if field in HOUR_FIELDS:
        hours = _parse_number(field, raw)
        return None if hours is None else hours_to_minutes(hours)

    if field == "revisions":
        count = _parse_number(field, raw)
        if count is None:
            return 0
        if not float(count).is_integer():
            raise ValidationError(f"revisions must be a whole number, got {raw!r}")
        return int(count)

    if field == "severity":
        severity = _parse_number(field, raw)
        if severity is None:
            return None
        if not float(severity).is_integer() or not 1 <= severity <= 5:
            raise ValidationError(f"severity must be a whole number from 1 to 5, got {raw!r}")
        return int(severity)

    if field == "peril":
        return _parse_peril(raw)

    text = "" if raw is None else str(raw)
    if field in NULLABLE_TEXT_FIELDS:
        return text.strip() or None
    return text if field == "notes" else text.strip()


def apply_field_edit(estimate: ClaimEstimate, field: str, raw: Any) -> dict[str, Any]:
    """
    Builds the storage update for a single field edit.

    Returns an empty dict when the parsed value equals the stored one,
    so callers can skip the write entirely.

    Raises:
        ValidationError: If the input does not parse. Nothing is changed.
    """
    value = parse_field_value(field, raw)

    if getattr(estimate, field) == value:
        logger.debug(f"Estimate {estimate.file_number}: {field} unchanged, skipping")
        return {}

    updates: dict[str, Any] = {field: value}
    if field == "active_time_minutes":
        updates["total_time_minutes"] = (value or 0) + estimate.blocked_time_minutes
    return updates


def record_settlement(
    estimate: ClaimEstimate,
    amount: Any,
    settlement_date: date | str | None,
) -> dict[str, Any]:
    """
    Builds the storage update for recording the carrier's actual settlement.

    Raises:
        ValidationError: If amount is not a positive number or the date is missing/invalid.
    """
    value = _parse_number("actual_settlement", amount)
    if value is None or value <= 0:
        raise ValidationError("Settlement amount must be greater than zero")

    if not settlement_date:
        raise ValidationError("Settlement date is required")
    if isinstance(settlement_date, datetime):
        settlement_date = settlement_date.date()
    if not isinstance(settlement_date, date):
        try:
            settlement_date = date.fromisoformat(str(settlement_date).strip())
        except ValueError:
            raise ValidationError(f"Invalid settlement date: {settlement_date!r} (expected YYYY-MM-DD)")

    variance = None
    if estimate.estimate_value is not None:
        variance = round(value - estimate.estimate_value, 2)

    return {
        "actual_settlement": value,
        "settlement_date": settlement_date.isoformat(),
        "is_settled": True,
        "settlement_variance": variance,
    }


# --- Time Accounting ---

def round_half_up(value: float) -> int:
    """Single rounding rule for every minute conversion."""
    return int(math.floor(value + 0.5))


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end. Never negative, even with clock skew."""
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    return max(0, round_half_up(seconds / 60))


def hours_to_minutes(hours: float) -> int:
    return round_half_up(hours * 60)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted to it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- Internal ---

def _parse_number(field: str, raw: Any) -> float | None:
    """Parses money/number input. Commas and a leading $ are allowed."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be a number, got {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        clean = str(raw).strip().replace(",", "").lstrip("$").strip()
        if clean == "":
            return None
        try:
            value = float(clean)
        except ValueError:
            raise ValidationError(f"{field} must be a number, got {raw!r}")

    if not math.isfinite(value):
        raise ValidationError(f"{field} must be a finite number, got {raw!r}")
    if value < 0:
        raise ValidationError(f"{field} cannot be negative, got {raw!r}")
    return value


def _parse_peril(raw: Any) -> Peril | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if text in ("", "__none__"):
        return None
    for peril in Peril:
        if peril.value.lower() == text.lower():
            return peril
    raise ValidationError(
        f"Invalid peril: {raw}. Must be one of {[p.value for p in Peril]}"
    )


def _enum_value(value: Any) -> str:
    return getattr(value, "value", str(value))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
