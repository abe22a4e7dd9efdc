"""
Workflow - storage-backed lifecycle operations.

Loads records from the record store, runs the pure lifecycle engine,
and writes the results back. All precondition checks happen before the
first write.

Multi-record operations are not transactional. Writes are ordered so
the estimate is always the last one: blocker row, then event, then
estimate. A crash in between leaves an estimate that still reads as it
was. The next block resolves a blocker row orphaned by an interrupted
block, and an unblock of a half-unblocked file fails loudly with
NoActiveBlockerError instead of corrupting time buckets.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from estimator_kpi.lifecycle import (
    request_transition,
    block,
    unblock,
    apply_field_edit,
    parse_field_value,
    record_settlement,
    as_utc,
    EDITABLE_FIELDS,
)
from estimator_kpi.models import (
    ClaimEstimate,
    LifecycleEvent,
    Blocker,
    EstimatorProfile,
    Carrier,
    EstimateStatus,
    BlockerType,
    RecordNotFoundError,
    StorageError,
    ValidationError,
)
from estimator_kpi.storage import (
    insert_record,
    get_record,
    update_record,
    query_records,
)
from estimator_kpi.config import (
    ESTIMATES_TABLE,
    EVENTS_TABLE,
    BLOCKERS_TABLE,
    PROFILES_TABLE,
    CARRIERS_TABLE,
)

logger = logging.getLogger("estimator-kpi-workflow")

# Accepted when opening a file, besides the editable fields
OPEN_FIELDS: frozenset[str] = frozenset({"estimator_id", "date_received"})

_BOOKKEEPING_FIELDS = {"id", "created_at", "updated_at"}

ORPHANED_BLOCKER_NOTE = "orphaned by interrupted block"


# --- Estimates ---

def open_estimate(fields: dict[str, Any]) -> ClaimEstimate:
    """
    Creates a new claim file in the assigned status.

    Field values go through the same parsing as edits, so "1,250.00"
    is accepted for money and hours are converted to minutes.

    Raises:
        ValidationError: If a field is unknown, does not parse, or a required field is missing.
        StorageError: If the insert fails.
    """
    unknown = set(fields) - EDITABLE_FIELDS - OPEN_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be set when opening an estimate: {sorted(unknown)}")

    payload: dict[str, Any] = {}
    for field, raw in fields.items():
        payload[field] = raw if field in OPEN_FIELDS else parse_field_value(field, raw)

    if not payload.get("file_number"):
        raise ValidationError("Missing required field: file_number")
    if not payload.get("estimator_id"):
        raise ValidationError("Missing required field: estimator_id")

    payload.setdefault("date_received", datetime.now(timezone.utc))
    payload["status"] = EstimateStatus.ASSIGNED
    payload["blocked_time_minutes"] = 0
    payload["total_time_minutes"] = payload.get("active_time_minutes") or 0

    try:
        draft = ClaimEstimate(id="pending", **payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid estimate: {e.errors()[0]['msg']}")

    # Stored as UTC so date_received sorts correctly as a string
    draft = draft.model_copy(update={"date_received": as_utc(draft.date_received)})

    if draft.carrier:
        ensure_carrier(draft.carrier)

    row = insert_record(
        ESTIMATES_TABLE,
        draft.model_dump(mode="json", exclude=_BOOKKEEPING_FIELDS),
    )
    estimate = _to_model(ClaimEstimate, row)
    logger.info(f"Opened estimate {estimate.file_number}", extra={"estimate_id": estimate.id})
    return estimate


def get_estimate(estimate_id: str) -> ClaimEstimate:
    """
    Raises:
        RecordNotFoundError: If the estimate does not exist.
        StorageError: If the read fails.
    """
    row = get_record(ESTIMATES_TABLE, estimate_id)
    if row is None:
        raise RecordNotFoundError(f"Estimate {estimate_id} not found")
    return _to_model(ClaimEstimate, row)


def list_estimates(estimator_id: str | None = None) -> list[ClaimEstimate]:
    """Estimates newest-received first, optionally for one estimator."""
    filters = {"estimator_id": estimator_id} if estimator_id else None
    rows = query_records(ESTIMATES_TABLE, filters, order_by="date_received", descending=True)
    return [_to_model(ClaimEstimate, row) for row in rows]


def estimates_by_estimator() -> dict[str, list[ClaimEstimate]]:
    """
    Groups all estimates by estimator id.

    Active profiles come first in display-name order (empty lists
    included), followed by any estimator ids without a profile.
    """
    grouped: dict[str, list[ClaimEstimate]] = {
        profile.id: [] for profile in list_estimator_profiles()
    }
    for estimate in list_estimates():
        grouped.setdefault(estimate.estimator_id, []).append(estimate)
    return grouped


# --- Lifecycle ---

def transition_estimate(
    estimate_id: str,
    to_status: EstimateStatus | str,
    actor: str = "user",
) -> ClaimEstimate:
    """
    Applies a status change and appends a status-change event.

    Resuming a blocked file (blocked -> in-progress) is routed through
    unblock so the blocker episode is closed and its time recorded.

    Raises:
        InvalidTransitionError: If the edge is not allowed.
        RecordNotFoundError: If the estimate does not exist.
        StorageError: If a read or write fails.
    """
    estimate = get_estimate(estimate_id)

    if estimate.status == EstimateStatus.BLOCKED and to_status == EstimateStatus.IN_PROGRESS:
        return _unblock_loaded(estimate, resolution_note="", actor=actor)

    result = request_transition(estimate, to_status, actor=actor)

    _append_event(result.event)
    return _save_estimate(estimate, result.estimate)


def block_estimate(
    estimate_id: str,
    blocker_type: BlockerType | str,
    blocker_name: str = "",
    blocker_reason: str = "",
    actor: str = "user",
) -> ClaimEstimate:
    """
    Blocks an estimate: new active blocker row, blocker-set event, estimate update.

    Active blocker rows left behind by an interrupted block (the estimate
    write never landed) are resolved with zero duration first.

    Raises:
        AlreadyBlockedError: If the estimate is already blocked.
        InvalidTransitionError: If the estimate is closed.
        ValidationError: If blocker_type is unknown.
        RecordNotFoundError: If the estimate does not exist.
        StorageError: If a read or write fails.
    """
    estimate = get_estimate(estimate_id)
    result = block(estimate, blocker_type, blocker_name, blocker_reason, actor=actor)

    for orphan in _active_blockers(estimate_id):
        logger.warning(
            f"Estimate {estimate.file_number}: resolving orphaned blocker {orphan.id}",
            extra={"estimate_id": estimate.id},
        )
        update_record(BLOCKERS_TABLE, orphan.id, {
            "is_active": False,
            "resolved_at": result.blocker.blocked_at,
            "duration_minutes": 0,
            "resolution_note": ORPHANED_BLOCKER_NOTE,
        })

    insert_record(BLOCKERS_TABLE, result.blocker.model_dump(mode="json", exclude={"id", "created_at"}))
    _append_event(result.event)
    return _save_estimate(estimate, result.estimate)


def unblock_estimate(
    estimate_id: str,
    resolution_note: str = "",
    actor: str = "user",
) -> ClaimEstimate:
    """
    Resolves the active blocker, adds its duration to blocked time, resumes work.

    Raises:
        NotBlockedError: If the estimate is not blocked.
        NoActiveBlockerError: If the estimate has no active blocker row.
        RecordNotFoundError: If the estimate does not exist.
        StorageError: If a read or write fails.
    """
    return _unblock_loaded(get_estimate(estimate_id), resolution_note, actor)


def edit_estimate(estimate_id: str, field: str, raw_value: Any) -> ClaimEstimate:
    """
    Saves one scalar field. Never changes status.

    An unchanged value is a no-op: no write happens.

    Raises:
        ValidationError: If the field is not editable or the value does not parse.
        RecordNotFoundError: If the estimate does not exist.
        StorageError: If a read or write fails.
    """
    estimate = get_estimate(estimate_id)
    updates = apply_field_edit(estimate, field, raw_value)
    if not updates:
        return estimate

    if field == "carrier" and updates["carrier"]:
        ensure_carrier(updates["carrier"])

    row = update_record(ESTIMATES_TABLE, estimate.id, _dump_fields(estimate, updates))
    return _to_model(ClaimEstimate, row)


def settle_estimate(estimate_id: str, amount: Any, settlement_date: Any) -> ClaimEstimate:
    """
    Records the carrier's actual settlement for a file.

    Raises:
        ValidationError: If amount or date is invalid.
        RecordNotFoundError: If the estimate does not exist.
        StorageError: If a read or write fails.
    """
    estimate = get_estimate(estimate_id)
    updates = record_settlement(estimate, amount, settlement_date)
    row = update_record(ESTIMATES_TABLE, estimate.id, updates)
    logger.info(
        f"Settlement recorded for {estimate.file_number}: {updates['actual_settlement']:,.2f}",
        extra={"estimate_id": estimate.id},
    )
    return _to_model(ClaimEstimate, row)


def list_events(estimate_id: str) -> list[LifecycleEvent]:
    """Audit trail for one estimate, oldest first."""
    rows = query_records(EVENTS_TABLE, {"estimate_id": estimate_id}, order_by="created_at")
    return [_to_model(LifecycleEvent, row) for row in rows]


def list_active_blockers() -> list[Blocker]:
    """Every unresolved blocker, longest-running first."""
    rows = query_records(BLOCKERS_TABLE, {"is_active": True}, order_by="blocked_at")
    return [_to_model(Blocker, row) for row in rows]


# --- Estimators & Carriers ---

def list_estimator_profiles() -> list[EstimatorProfile]:
    rows = query_records(PROFILES_TABLE, {"is_active": True}, order_by="display_name")
    return [_to_model(EstimatorProfile, row) for row in rows]


def get_estimator_profile(estimator_id: str) -> EstimatorProfile | None:
    """Profile keyed by estimator id, or None for estimators without one."""
    row = get_record(PROFILES_TABLE, estimator_id)
    return _to_model(EstimatorProfile, row) if row is not None else None


def add_estimator_profile(user_id: str, display_name: str) -> EstimatorProfile:
    """
    Raises:
        ValidationError: If user_id or display_name is empty.
        StorageError: If the insert fails.
    """
    display_name = (display_name or "").strip()
    if not user_id or not display_name:
        raise ValidationError("Estimator profile requires user_id and display_name")

    row = insert_record(PROFILES_TABLE, {
        "user_id": user_id,
        "display_name": display_name,
        "is_active": True,
    })
    return _to_model(EstimatorProfile, row)


def list_verified_carriers() -> list[str]:
    rows = query_records(CARRIERS_TABLE, {"is_verified": True, "is_active": True}, order_by="name")
    return [row["name"] for row in rows]


def ensure_carrier(name: str) -> Carrier:
    """Returns the named carrier, creating it unverified if it is new."""
    name = name.strip()
    existing = query_records(CARRIERS_TABLE, {"name": name}, limit=1)
    if existing:
        return _to_model(Carrier, existing[0])

    logger.info(f"New unverified carrier: {name}")
    row = insert_record(CARRIERS_TABLE, {"name": name, "is_verified": False, "is_active": True})
    return _to_model(Carrier, row)


# --- Internal ---

def _unblock_loaded(estimate: ClaimEstimate, resolution_note: str, actor: str) -> ClaimEstimate:
    active = _active_blockers(estimate.id) if estimate.status == EstimateStatus.BLOCKED else []
    if len(active) > 1:
        logger.warning(
            f"Estimate {estimate.file_number} has {len(active)} active blockers, resolving the oldest",
            extra={"estimate_id": estimate.id},
        )

    result = unblock(estimate, active[0] if active else None, resolution_note, actor=actor)

    update_record(BLOCKERS_TABLE, result.blocker.id, {
        "is_active": False,
        "resolved_at": result.blocker.resolved_at,
        "duration_minutes": result.blocker.duration_minutes,
        "resolution_note": result.blocker.resolution_note,
    })
    _append_event(result.event)
    return _save_estimate(estimate, result.estimate)


def _active_blockers(estimate_id: str) -> list[Blocker]:
    rows = query_records(
        BLOCKERS_TABLE,
        {"estimate_id": estimate_id, "is_active": True},
        order_by="blocked_at",
    )
    return [_to_model(Blocker, row) for row in rows]


def _append_event(event: LifecycleEvent) -> LifecycleEvent:
    row = insert_record(EVENTS_TABLE, event.model_dump(mode="json", exclude={"id", "created_at"}))
    return _to_model(LifecycleEvent, row)


def _save_estimate(before: ClaimEstimate, after: ClaimEstimate) -> ClaimEstimate:
    """Writes only the fields the engine changed."""
    changed = {
        field
        for field in ClaimEstimate.model_fields
        if field not in _BOOKKEEPING_FIELDS and getattr(before, field) != getattr(after, field)
    }
    if not changed:
        return before

    row = update_record(ESTIMATES_TABLE, before.id, after.model_dump(mode="json", include=changed))
    return _to_model(ClaimEstimate, row)


def _dump_fields(estimate: ClaimEstimate, updates: dict[str, Any]) -> dict[str, Any]:
    return estimate.model_copy(update=updates).model_dump(mode="json", include=set(updates))


def _to_model(model_cls, row: dict):
    """Stored row to model. A row that no longer fits the model is a storage problem."""
    try:
        return model_cls(**row)
    except PydanticValidationError as e:
        raise StorageError(f"Corrupt {model_cls.__name__} record {row.get('id')}: {e}")
