"""
Unit tests for the lifecycle engine (transitions, blocker protocol, field edits)
"""
import pytest
from datetime import datetime, timedelta, timezone

from estimator_kpi.lifecycle import (
    request_transition,
    block,
    unblock,
    parse_field_value,
    apply_field_edit,
    record_settlement,
    minutes_between,
    hours_to_minutes,
    round_half_up,
    as_utc,
)
from estimator_kpi.models import (
    ClaimEstimate,
    Blocker,
    EstimateStatus,
    BlockerType,
    EventType,
    Peril,
    InvalidTransitionError,
    AlreadyBlockedError,
    NotBlockedError,
    NoActiveBlockerError,
    ValidationError,
)
from estimator_kpi.status import ALLOWED_TRANSITIONS


NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

S = EstimateStatus


def make_estimate(**overrides) -> ClaimEstimate:
    fields = {
        "id": "est-001",
        "file_number": "F-1001",
        "estimator_id": "estimator-a",
        "client_name": "Rivera Residence",
        "carrier": "Acme Mutual",
        "date_received": NOW - timedelta(days=2),
    }
    fields.update(overrides)
    return ClaimEstimate(**fields)


def make_blocked(blocked_at=NOW, **overrides) -> ClaimEstimate:
    return make_estimate(
        status=S.BLOCKED,
        current_blocker_type=BlockerType.CARRIER,
        current_blocker_name="Acme desk adjuster",
        current_blocker_reason="Waiting on photos",
        current_blocked_at=blocked_at,
        date_started=NOW - timedelta(days=1),
        **overrides,
    )


def make_active_blocker(blocked_at=NOW, **overrides) -> Blocker:
    fields = {
        "id": "blk-001",
        "estimate_id": "est-001",
        "estimator_id": "estimator-a",
        "file_number": "F-1001",
        "blocker_type": BlockerType.CARRIER,
        "blocker_name": "Acme desk adjuster",
        "blocker_reason": "Waiting on photos",
        "blocked_at": blocked_at,
        "is_active": True,
    }
    fields.update(overrides)
    return Blocker(**fields)


# ============================================================================
# STATUS TRANSITIONS
# ============================================================================

INVALID_EDGES = [
    (source, target)
    for source in EstimateStatus
    for target in EstimateStatus
    if target not in ALLOWED_TRANSITIONS[source]
]

# Edges the generic operation performs itself (blocking has its own entry points)
GENERIC_EDGES = [
    (source, target)
    for source, targets in ALLOWED_TRANSITIONS.items()
    for target in targets
    if S.BLOCKED not in (source, target)
]


class TestRequestTransition:

    @pytest.mark.parametrize("source,target", INVALID_EDGES)
    def test_disallowed_edge_rejected_without_mutation(self, source, target):
        estimate = make_estimate(status=source)
        before = estimate.model_dump()

        with pytest.raises(InvalidTransitionError):
            request_transition(estimate, target, now=NOW)

        assert estimate.model_dump() == before

    @pytest.mark.parametrize("source", list(EstimateStatus))
    def test_blocked_target_always_rejected(self, source):
        with pytest.raises(InvalidTransitionError) as exc_info:
            request_transition(make_estimate(status=source), S.BLOCKED, now=NOW)
        assert "block" in str(exc_info.value)

    def test_resume_from_blocked_requires_unblock(self):
        estimate = make_blocked()
        with pytest.raises(InvalidTransitionError) as exc_info:
            request_transition(estimate, S.IN_PROGRESS, now=NOW)
        assert "unblock" in str(exc_info.value)
        assert estimate.status == S.BLOCKED

    @pytest.mark.parametrize("source,target", GENERIC_EDGES)
    def test_allowed_edge_applies_and_logs_event(self, source, target):
        result = request_transition(make_estimate(status=source), target, now=NOW, actor="jane")

        assert result.estimate.status == target
        assert result.event.event_type == EventType.STATUS_CHANGE
        assert result.event.from_status == source
        assert result.event.to_status == target
        assert result.event.triggered_by == "jane"
        assert result.event.estimate_id == "est-001"

    def test_error_names_both_statuses(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            request_transition(make_estimate(status=S.ASSIGNED), S.SETTLED, now=NOW)
        message = str(exc_info.value)
        assert "assigned" in message
        assert "settled" in message
        assert exc_info.value.current == S.ASSIGNED

    def test_unknown_status_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            request_transition(make_estimate(), "archived", now=NOW)
        assert "archived" in str(exc_info.value)

    def test_accepts_plain_string_status(self):
        result = request_transition(make_estimate(), "in-progress", now=NOW)
        assert result.estimate.status == S.IN_PROGRESS

    def test_input_not_mutated(self):
        estimate = make_estimate()
        request_transition(estimate, S.IN_PROGRESS, now=NOW)
        assert estimate.status == S.ASSIGNED
        assert estimate.date_started is None

    def test_closed_is_terminal(self):
        estimate = make_estimate(status=S.CLOSED)
        for target in EstimateStatus:
            with pytest.raises(InvalidTransitionError):
                request_transition(estimate, target, now=NOW)

    def test_unable_to_start_returns_to_assigned(self):
        result = request_transition(make_estimate(status=S.UNABLE_TO_START), S.ASSIGNED, now=NOW)
        assert result.estimate.status == S.ASSIGNED


# ============================================================================
# LIFECYCLE TIMESTAMPS
# ============================================================================

class TestLifecycleTimestamps:

    def test_first_start_sets_date_started(self):
        result = request_transition(make_estimate(), S.IN_PROGRESS, now=NOW)
        assert result.estimate.date_started == NOW

    def test_restart_keeps_original_date_started(self):
        started = NOW - timedelta(days=1)
        estimate = make_estimate(status=S.REVISION_REQUESTED, date_started=started)
        result = request_transition(estimate, S.IN_PROGRESS, now=NOW)
        assert result.estimate.date_started == started

    def test_review_sets_date_completed(self):
        result = request_transition(make_estimate(status=S.IN_PROGRESS), S.REVIEW, now=NOW)
        assert result.estimate.date_completed == NOW
        assert result.estimate.date_sent_to_carrier is None

    def test_send_sets_completed_and_sent(self):
        result = request_transition(make_estimate(status=S.IN_PROGRESS), S.SENT_TO_CARRIER, now=NOW)
        assert result.estimate.date_completed == NOW
        assert result.estimate.date_sent_to_carrier == NOW

    def test_resend_refreshes_sent_but_not_completed(self):
        first_send = NOW - timedelta(days=3)
        estimate = make_estimate(
            status=S.REVISED,
            date_completed=first_send,
            date_sent_to_carrier=first_send,
        )
        result = request_transition(estimate, S.SENT_TO_CARRIER, now=NOW)
        assert result.estimate.date_completed == first_send
        assert result.estimate.date_sent_to_carrier == NOW

    def test_close_sets_date_closed(self):
        result = request_transition(make_estimate(status=S.SETTLED), S.CLOSED, now=NOW)
        assert result.estimate.date_closed == NOW

    def test_revision_cycle(self):
        """sent -> revision-requested -> in-progress -> sent keeps the first completion date."""
        estimate = make_estimate()
        t0 = NOW
        estimate = request_transition(estimate, S.IN_PROGRESS, now=t0).estimate
        estimate = request_transition(estimate, S.SENT_TO_CARRIER, now=t0 + timedelta(hours=2)).estimate
        estimate = request_transition(estimate, S.REVISION_REQUESTED, now=t0 + timedelta(days=2)).estimate
        estimate = request_transition(estimate, S.IN_PROGRESS, now=t0 + timedelta(days=3)).estimate
        estimate = request_transition(estimate, S.SENT_TO_CARRIER, now=t0 + timedelta(days=4)).estimate

        assert estimate.date_started == t0
        assert estimate.date_completed == t0 + timedelta(hours=2)
        assert estimate.date_sent_to_carrier == t0 + timedelta(days=4)


# ============================================================================
# BLOCK
# ============================================================================

class TestBlock:

    def test_block_from_in_progress(self):
        estimate = make_estimate(status=S.IN_PROGRESS)
        result = block(estimate, "carrier", "Acme desk adjuster", "Waiting on photos", now=NOW)

        assert result.estimate.status == S.BLOCKED
        assert result.estimate.current_blocker_type == BlockerType.CARRIER
        assert result.estimate.current_blocker_name == "Acme desk adjuster"
        assert result.estimate.current_blocker_reason == "Waiting on photos"
        assert result.estimate.current_blocked_at == NOW

        assert result.blocker.is_active == True
        assert result.blocker.blocked_at == NOW
        assert result.blocker.estimate_id == "est-001"

        assert result.event.event_type == EventType.BLOCKER_SET
        assert result.event.from_status == S.IN_PROGRESS
        assert result.event.to_status == S.BLOCKED
        assert result.event.blocker_type == BlockerType.CARRIER

    def test_block_already_blocked(self):
        with pytest.raises(AlreadyBlockedError):
            block(make_blocked(), "client", now=NOW)

    def test_block_closed_rejected(self):
        with pytest.raises(InvalidTransitionError):
            block(make_estimate(status=S.CLOSED), "client", now=NOW)

    def test_block_from_assigned_allowed(self):
        result = block(make_estimate(status=S.ASSIGNED), "scoper", now=NOW)
        assert result.estimate.status == S.BLOCKED
        assert result.event.from_status == S.ASSIGNED

    def test_block_invalid_type(self):
        estimate = make_estimate(status=S.IN_PROGRESS)
        with pytest.raises(ValidationError) as exc_info:
            block(estimate, "weather", now=NOW)
        assert "weather" in str(exc_info.value)
        assert estimate.status == S.IN_PROGRESS

    def test_block_does_not_mutate_input(self):
        estimate = make_estimate(status=S.IN_PROGRESS)
        block(estimate, "contractor", now=NOW)
        assert estimate.status == S.IN_PROGRESS
        assert estimate.current_blocker_type is None


# ============================================================================
# UNBLOCK
# ============================================================================

class TestUnblock:

    def test_unblock_not_blocked(self):
        with pytest.raises(NotBlockedError):
            unblock(make_estimate(status=S.IN_PROGRESS), make_active_blocker(), now=NOW)

    def test_unblock_without_active_blocker(self):
        estimate = make_blocked()
        before = estimate.model_dump()
        with pytest.raises(NoActiveBlockerError):
            unblock(estimate, None, now=NOW)
        assert estimate.model_dump() == before

    def test_unblock_with_resolved_blocker(self):
        with pytest.raises(NoActiveBlockerError):
            unblock(make_blocked(), make_active_blocker(is_active=False), now=NOW)

    def test_unblock_with_other_estimates_blocker(self):
        with pytest.raises(NoActiveBlockerError):
            unblock(make_blocked(), make_active_blocker(estimate_id="est-999"), now=NOW)

    def test_unblock_accumulates_blocked_time(self):
        estimate = make_blocked(active_time_minutes=120, blocked_time_minutes=30, total_time_minutes=150)
        result = unblock(estimate, make_active_blocker(), "Photos received", now=NOW + timedelta(minutes=90))

        assert result.duration_minutes == 90
        assert result.estimate.blocked_time_minutes == 120
        assert result.estimate.total_time_minutes == 240
        assert result.estimate.status == S.IN_PROGRESS

    def test_unblock_recomputes_drifted_total(self):
        estimate = make_blocked(active_time_minutes=120, blocked_time_minutes=30, total_time_minutes=999)
        result = unblock(estimate, make_active_blocker(), now=NOW + timedelta(minutes=45))
        assert result.estimate.total_time_minutes == 120 + 75

    def test_unblock_without_active_time(self):
        estimate = make_blocked()
        result = unblock(estimate, make_active_blocker(), now=NOW + timedelta(minutes=10))
        assert result.estimate.total_time_minutes == 10
        assert result.estimate.active_time_minutes is None

    def test_unblock_clears_blocker_fields(self):
        result = unblock(make_blocked(), make_active_blocker(), now=NOW + timedelta(minutes=5))
        assert result.estimate.current_blocker_type is None
        assert result.estimate.current_blocker_name is None
        assert result.estimate.current_blocker_reason is None
        assert result.estimate.current_blocked_at is None

    def test_unblock_closes_blocker(self):
        result = unblock(make_blocked(), make_active_blocker(), "Photos received", now=NOW + timedelta(hours=2))
        assert result.blocker.is_active == False
        assert result.blocker.resolved_at == NOW + timedelta(hours=2)
        assert result.blocker.duration_minutes == 120
        assert result.blocker.resolution_note == "Photos received"
        assert result.blocker.id == "blk-001"

    def test_unblock_event(self):
        result = unblock(make_blocked(), make_active_blocker(), "Photos received", now=NOW + timedelta(hours=2))
        assert result.event.event_type == EventType.BLOCKER_CLEARED
        assert result.event.from_status == S.BLOCKED
        assert result.event.to_status == S.IN_PROGRESS
        assert result.event.blocker_type == BlockerType.CARRIER
        assert result.event.blocker_name == "Acme desk adjuster"
        assert result.event.blocker_duration_minutes == 120
        assert result.event.description == "Photos received"

    def test_clock_skew_never_negative(self):
        result = unblock(make_blocked(), make_active_blocker(), now=NOW - timedelta(minutes=30))
        assert result.duration_minutes == 0
        assert result.estimate.blocked_time_minutes == 0

    def test_duration_rounds_half_up(self):
        result = unblock(make_blocked(), make_active_blocker(), now=NOW + timedelta(minutes=89, seconds=30))
        assert result.duration_minutes == 90

    def test_duration_rounds_down_below_half(self):
        result = unblock(make_blocked(), make_active_blocker(), now=NOW + timedelta(minutes=89, seconds=29))
        assert result.duration_minutes == 89


class TestBlockerRoundTrip:

    def test_block_then_unblock_restores_in_progress(self):
        estimate = make_estimate(status=S.IN_PROGRESS, active_time_minutes=60, total_time_minutes=60)

        blocked = block(estimate, "contractor", "Ace Roofing", "Need measurements", now=NOW)
        assert blocked.estimate.status == S.BLOCKED
        assert blocked.estimate.current_blocker_type is not None

        resumed = unblock(blocked.estimate, blocked.blocker, now=NOW + timedelta(minutes=30))

        assert resumed.estimate.status == S.IN_PROGRESS
        assert resumed.estimate.current_blocker_type is None
        assert resumed.estimate.current_blocked_at is None
        assert resumed.blocker.is_active == False
        assert resumed.blocker.duration_minutes >= 0
        assert resumed.estimate.total_time_minutes == (
            resumed.estimate.active_time_minutes + resumed.estimate.blocked_time_minutes
        )

    def test_repeated_episodes_accumulate(self):
        estimate = make_estimate(status=S.IN_PROGRESS, active_time_minutes=60, total_time_minutes=60)
        t = NOW
        for minutes in (15, 45):
            blocked = block(estimate, "client", now=t)
            t += timedelta(minutes=minutes)
            estimate = unblock(blocked.estimate, blocked.blocker, now=t).estimate

        assert estimate.blocked_time_minutes == 60
        assert estimate.total_time_minutes == 120


# ============================================================================
# FIELD EDITS
# ============================================================================

class TestFieldEdits:

    def test_money_with_commas(self):
        assert parse_field_value("estimate_value", "12,500.50") == 12500.5

    def test_money_with_dollar_sign(self):
        assert parse_field_value("rcv", "$8,000") == 8000.0

    def test_money_empty_clears(self):
        assert parse_field_value("estimate_value", "") is None

    def test_money_non_numeric_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_field_value("estimate_value", "abc")
        assert "estimate_value" in str(exc_info.value)

    def test_money_negative_rejected(self):
        with pytest.raises(ValidationError):
            parse_field_value("deductible", "-500")

    def test_parse_failure_leaves_estimate_unchanged(self):
        estimate = make_estimate(estimate_value=5000.0)
        with pytest.raises(ValidationError):
            apply_field_edit(estimate, "estimate_value", "12k")
        assert estimate.estimate_value == 5000.0

    def test_hours_converted_to_minutes(self):
        assert parse_field_value("active_time_minutes", "1.5") == 90
        assert parse_field_value("revision_time_minutes", 2) == 120

    def test_active_time_updates_total(self):
        estimate = make_estimate(blocked_time_minutes=30, total_time_minutes=30)
        updates = apply_field_edit(estimate, "active_time_minutes", "2")
        assert updates == {"active_time_minutes": 120, "total_time_minutes": 150}

    def test_unchanged_value_is_noop(self):
        estimate = make_estimate(estimate_value=5000.0)
        assert apply_field_edit(estimate, "estimate_value", "5,000") == {}

    def test_unchanged_empty_is_noop(self):
        assert apply_field_edit(make_estimate(), "estimate_value", "") == {}

    def test_severity(self):
        assert parse_field_value("severity", "3") == 3
        assert parse_field_value("severity", "") is None

    @pytest.mark.parametrize("raw", ["0", "6", "2.5", "high"])
    def test_severity_out_of_range(self, raw):
        with pytest.raises(ValidationError):
            parse_field_value("severity", raw)

    def test_revisions(self):
        assert parse_field_value("revisions", "2") == 2
        assert parse_field_value("revisions", "") == 0

    def test_revisions_fractional_rejected(self):
        with pytest.raises(ValidationError):
            parse_field_value("revisions", "1.5")

    def test_peril_case_insensitive(self):
        assert parse_field_value("peril", "hail") == Peril.HAIL
        assert parse_field_value("peril", "__none__") is None

    def test_peril_unknown(self):
        with pytest.raises(ValidationError):
            parse_field_value("peril", "Earthquake")

    def test_text_trimmed(self):
        assert parse_field_value("carrier", "  Acme Mutual ") == "Acme Mutual"

    def test_notes_kept_verbatim(self):
        assert parse_field_value("notes", "  line one\nline two ") == "  line one\nline two "

    def test_nullable_text_empty_is_none(self):
        assert parse_field_value("property_type", "  ") is None

    @pytest.mark.parametrize("field", ["status", "current_blocker_type", "blocked_time_minutes", "id"])
    def test_non_editable_fields_rejected(self, field):
        with pytest.raises(ValidationError) as exc_info:
            parse_field_value(field, "anything")
        assert "cannot be edited" in str(exc_info.value)

    def test_edit_never_changes_status(self):
        estimate = make_estimate(status=S.IN_PROGRESS)
        updates = apply_field_edit(estimate, "notes", "Called carrier")
        assert "status" not in updates


# ============================================================================
# SETTLEMENT
# ============================================================================

class TestRecordSettlement:

    def test_settlement_with_variance(self):
        estimate = make_estimate(estimate_value=10000.0)
        updates = record_settlement(estimate, "11,000", "2026-03-01")
        assert updates == {
            "actual_settlement": 11000.0,
            "settlement_date": "2026-03-01",
            "is_settled": True,
            "settlement_variance": 1000.0,
        }

    def test_settlement_without_estimate_value(self):
        updates = record_settlement(make_estimate(), 500, "2026-03-01")
        assert updates["settlement_variance"] is None

    @pytest.mark.parametrize("amount", ["0", "", None, "abc", "-10"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            record_settlement(make_estimate(), amount, "2026-03-01")

    def test_missing_date(self):
        with pytest.raises(ValidationError) as exc_info:
            record_settlement(make_estimate(), 100, "")
        assert "date" in str(exc_info.value)

    def test_invalid_date(self):
        with pytest.raises(ValidationError):
            record_settlement(make_estimate(), 100, "03/01/2026")


# ============================================================================
# TIME ACCOUNTING
# ============================================================================

class TestTimeAccounting:

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(2.49) == 2
        assert round_half_up(0.5) == 1

    def test_hours_to_minutes(self):
        assert hours_to_minutes(0.125) == 8
        assert hours_to_minutes(1) == 60

    def test_minutes_between_naive_treated_as_utc(self):
        start = datetime(2026, 3, 2, 15, 0)
        assert minutes_between(start, NOW + timedelta(minutes=10)) == 10

    def test_as_utc_converts_offsets(self):
        eastern = timezone(timedelta(hours=-5))
        converted = as_utc(datetime(2026, 3, 1, 20, 0, tzinfo=eastern))
        assert converted == datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc)
        assert converted.tzinfo == timezone.utc
        assert as_utc(datetime(2026, 3, 1, 9, 0)).tzinfo == timezone.utc


# Run with:
# pytest tests/test_lifecycle.py -v
