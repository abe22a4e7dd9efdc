"""
Lambda entry point - routes API Gateway events to workflow and KPI calls.

Parses API Gateway events, calls the lifecycle workflow or the KPI
aggregator, and formats HTTP responses.

No business logic lives here beyond error mapping and response formatting.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from estimator_kpi.workflow import (
    open_estimate,
    get_estimate,
    list_estimates,
    estimates_by_estimator,
    transition_estimate,
    block_estimate,
    unblock_estimate,
    edit_estimate,
    settle_estimate,
    list_events,
    list_active_blockers,
    get_estimator_profile,
)
from estimator_kpi.kpi import (
    compute_weekly_metrics,
    compute_team_metrics,
    compute_overall_score,
    rank_estimators,
    generate_recommendations,
    target_statuses,
    severity_targets,
    settlement_summary,
)
from estimator_kpi.status import allowed_targets, status_label, blocker_type_label
from estimator_kpi.models import (
    ClaimEstimate,
    InvalidTransitionError,
    AlreadyBlockedError,
    NotBlockedError,
    NoActiveBlockerError,
    ValidationError,
    RecordNotFoundError,
    StorageError,
)
from estimator_kpi.logging_config import setup_logging, bind_request
from estimator_kpi.config import LOG_LEVEL, LOG_JSON

setup_logging(level=LOG_LEVEL, json_output=LOG_JSON)
logger = logging.getLogger("estimator-kpi-api")


class _BadRequest(Exception):
    """Request body or parameters are missing or malformed."""
    pass


# --- Lambda Entry Point ---

def lambda_handler(event: dict, context: Any) -> dict:
    """
    AWS Lambda handler for API Gateway HTTP API (v2).

    Routes:
    - POST  /estimates
    - GET   /estimates[?estimator_id=]
    - GET   /estimates/{id}
    - PATCH /estimates/{id}
    - POST  /estimates/{id}/transition
    - POST  /estimates/{id}/block
    - POST  /estimates/{id}/unblock
    - PUT   /estimates/{id}/settlement
    - GET   /estimates/{id}/events
    - GET   /blockers/active
    - GET   /metrics/team
    - GET   /metrics/estimators/{estimator_id}

    An optional leading version segment (/v1) is ignored.
    Never raises exceptions — all errors converted to HTTP responses.
    """
    start_time = time.perf_counter()
    bind_request(context)

    try:
        http_method = event["requestContext"]["http"]["method"]
        path = event["requestContext"]["http"]["path"]
    except (KeyError, TypeError):
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")

    route, params = _match_route(http_method, path)
    if route is None:
        return _error_response(404, "NOT_FOUND", "Route not found")

    response = _dispatch(route, event, params)
    logger.info(
        f"{http_method} {path} -> {response['statusCode']}",
        extra={"duration_ms": int((time.perf_counter() - start_time) * 1000)},
    )
    return response


def _dispatch(route: Callable, event: dict, params: list[str]) -> dict:
    """Runs a route handler and maps domain errors to HTTP responses."""
    try:
        return route(event, *params)

    except _BadRequest as e:
        return _error_response(400, "VALIDATION_ERROR", str(e))
    except ValidationError as e:
        return _error_response(400, "VALIDATION_ERROR", str(e))
    except RecordNotFoundError as e:
        return _error_response(404, "NOT_FOUND", str(e))
    except InvalidTransitionError as e:
        return _error_response(
            409,
            "INVALID_TRANSITION",
            str(e),
            details={
                "current_status": e.current.value,
                "requested_status": getattr(e.requested, "value", str(e.requested)),
                "allowed_statuses": [s.value for s in allowed_targets(e.current)],
            },
        )
    except AlreadyBlockedError as e:
        return _error_response(409, "ALREADY_BLOCKED", str(e))
    except NotBlockedError as e:
        return _error_response(409, "NOT_BLOCKED", str(e))
    except NoActiveBlockerError as e:
        logger.error(f"Data integrity: {e}")
        return _error_response(409, "DATA_INTEGRITY", str(e))
    except StorageError:
        logger.exception("Storage failure")
        return _error_response(500, "STORAGE_ERROR", "Storage operation failed")
    except Exception:
        logger.exception("Unhandled error")
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


# --- Route Handlers ---

def _handle_create(event: dict) -> dict:
    """POST /estimates — open a new claim file."""
    body = _parse_body(event)
    estimate = open_estimate(body)
    return _success_response(201, _estimate_body(estimate))


def _handle_list(event: dict) -> dict:
    """GET /estimates — newest first, optionally filtered by estimator."""
    query = event.get("queryStringParameters") or {}
    estimates = list_estimates(query.get("estimator_id"))
    return _success_response(200, {
        "estimates": [_estimate_body(e) for e in estimates],
        "count": len(estimates),
    })


def _handle_get(event: dict, estimate_id: str) -> dict:
    return _success_response(200, _estimate_body(get_estimate(estimate_id)))


def _handle_edit(event: dict, estimate_id: str) -> dict:
    """PATCH /estimates/{id} — single field blur-save."""
    body = _parse_body(event)
    field = _require(body, "field")
    if "value" not in body:
        raise _BadRequest("Missing required field: value")

    estimate = edit_estimate(estimate_id, field, body["value"])
    return _success_response(200, _estimate_body(estimate))


def _handle_transition(event: dict, estimate_id: str) -> dict:
    body = _parse_body(event)
    estimate = transition_estimate(estimate_id, _require(body, "to_status"), actor=_actor(event))
    return _success_response(200, _estimate_body(estimate))


def _handle_block(event: dict, estimate_id: str) -> dict:
    body = _parse_body(event)
    estimate = block_estimate(
        estimate_id,
        blocker_type=_require(body, "blocker_type"),
        blocker_name=body.get("blocker_name", ""),
        blocker_reason=body.get("blocker_reason", ""),
        actor=_actor(event),
    )
    return _success_response(200, _estimate_body(estimate))


def _handle_unblock(event: dict, estimate_id: str) -> dict:
    body = _parse_body(event)
    estimate = unblock_estimate(
        estimate_id,
        resolution_note=body.get("resolution_note", ""),
        actor=_actor(event),
    )
    return _success_response(200, _estimate_body(estimate))


def _handle_settlement(event: dict, estimate_id: str) -> dict:
    body = _parse_body(event)
    estimate = settle_estimate(estimate_id, body.get("amount"), body.get("settlement_date"))
    return _success_response(200, _estimate_body(estimate))


def _handle_events(event: dict, estimate_id: str) -> dict:
    events = list_events(estimate_id)
    return _success_response(200, {
        "estimate_id": estimate_id,
        "events": [e.model_dump(mode="json") for e in events],
    })


def _handle_active_blockers(event: dict) -> dict:
    blockers = list_active_blockers()
    return _success_response(200, {
        "blockers": [
            {**b.model_dump(mode="json"), "blocker_label": blocker_type_label(b.blocker_type)}
            for b in blockers
        ],
        "count": len(blockers),
    })


def _handle_estimator_metrics(event: dict, estimator_id: str) -> dict:
    """GET /metrics/estimators/{id} — individual scorecard."""
    estimates = list_estimates(estimator_id)
    profile = get_estimator_profile(estimator_id)
    metrics = compute_weekly_metrics(estimates)
    if profile is not None:
        name = profile.display_name
    else:
        name = next((e.estimator_name for e in estimates if e.estimator_name), estimator_id)

    return _success_response(200, {
        "estimator_id": estimator_id,
        "estimator_name": name,
        "metrics": metrics.model_dump(mode="json"),
        "overall_score": compute_overall_score(metrics),
        "targets": target_statuses(metrics, profile),
        "recommendations": [r.model_dump() for r in generate_recommendations(name, metrics)],
        "severity": {str(s): row for s, row in severity_targets(metrics).items()},
        "settlement": settlement_summary(estimates),
    })


def _handle_team_metrics(event: dict) -> dict:
    """GET /metrics/team — team aggregate plus ranking."""
    grouped = estimates_by_estimator()
    team = compute_team_metrics(grouped)

    return _success_response(200, {
        "team": team.model_dump(mode="json"),
        "team_score": compute_overall_score(team),
        "ranking": [
            {
                "rank": position,
                "estimator_id": ranked.estimator_id,
                "overall_score": ranked.overall_score,
                "metrics": ranked.metrics.model_dump(mode="json"),
            }
            for position, ranked in enumerate(rank_estimators(grouped), start=1)
        ],
        "active_blockers": len(list_active_blockers()),
    })


# --- Routing ---

_ROUTES: list[tuple[str, tuple[str, ...], Callable]] = [
    ("POST", ("estimates",), _handle_create),
    ("GET", ("estimates",), _handle_list),
    ("GET", ("estimates", "*"), _handle_get),
    ("PATCH", ("estimates", "*"), _handle_edit),
    ("POST", ("estimates", "*", "transition"), _handle_transition),
    ("POST", ("estimates", "*", "block"), _handle_block),
    ("POST", ("estimates", "*", "unblock"), _handle_unblock),
    ("PUT", ("estimates", "*", "settlement"), _handle_settlement),
    ("GET", ("estimates", "*", "events"), _handle_events),
    ("GET", ("blockers", "active"), _handle_active_blockers),
    ("GET", ("metrics", "team"), _handle_team_metrics),
    ("GET", ("metrics", "estimators", "*"), _handle_estimator_metrics),
]


def _match_route(method: str, path: str) -> tuple[Callable | None, list[str]]:
    """Matches path segments against the route table. "*" captures a parameter."""
    segments = [s for s in path.split("/") if s]
    if segments and segments[0].startswith("v") and segments[0][1:].isdigit():
        segments = segments[1:]

    for route_method, pattern, route in _ROUTES:
        if route_method != method or len(pattern) != len(segments):
            continue
        params = []
        for expected, actual in zip(pattern, segments):
            if expected == "*":
                params.append(actual)
            elif expected != actual:
                break
        else:
            return route, params
    return None, []


# --- Request Helpers ---

def _parse_body(event: dict) -> dict:
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError:
        raise _BadRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise _BadRequest("Request body must be a JSON object")
    return body


def _require(body: dict, field: str) -> Any:
    value = body.get(field)
    if value is None or value == "":
        raise _BadRequest(f"Missing required field: {field}")
    return value


def _actor(event: dict) -> str:
    """Caller identity from the JWT authorizer, if API Gateway attached one."""
    claims = (
        event.get("requestContext", {})
        .get("authorizer", {})
        .get("jwt", {})
        .get("claims", {})
    )
    return claims.get("sub") or "user"


# --- Response Helpers ---

def _estimate_body(estimate: ClaimEstimate) -> dict:
    body = estimate.model_dump(mode="json")
    body["status_label"] = status_label(estimate.status)
    body["allowed_statuses"] = [s.value for s in allowed_targets(estimate.status)]
    body["current_blocker_label"] = (
        blocker_type_label(estimate.current_blocker_type) if estimate.current_blocker_type else None
    )
    return body


def _success_response(status_code: int, data: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(data),
    }


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | str | None = None,
) -> dict:
    error_body: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if details is not None:
        error_body["error"]["details"] = details

    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(error_body),
    }
