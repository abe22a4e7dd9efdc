import os
"""
Configuration for the estimator KPI tracker.

All thresholds, weights, and targets in one place.
Change here, not in business logic modules.
"""

# --- Overall Score ---

SCORE_WEIGHTS: dict[str, float] = {
    "dollar_per_hour": 40.0,
    "revision_rate": 30.0,
    "first_time_approval": 20.0,
    "efficiency": 10.0,
}

# $/hour at which the productivity sub-score is maxed out
DOLLAR_PER_HOUR_CEILING: float = 15000.0

# Revision rate / days held at which the sub-score drops to zero (lower is better)
REVISION_RATE_CEILING: float = 2.0
DAYS_HELD_CEILING: float = 3.0

# --- Recommendations ---

HIGH_REVISION_RATE: float = 1.5
TARGET_DOLLAR_PER_HOUR: float = 10000.0
EXCELLENT_APPROVAL_RATE: float = 80.0

# --- Targets ---

SEVERITY_LEVELS: tuple[int, ...] = (1, 2, 3, 4, 5)

SEVERITY_TARGETS: dict[int, dict] = {
    1: {"time": "< 30 mins", "value_min": 2000.0, "value_max": 5000.0},
    2: {"time": "< 1 hour", "value_min": 5000.0, "value_max": 15000.0},
    3: {"time": "< 3 hours", "value_min": 15000.0, "value_max": 50000.0},
    4: {"time": "< 6 hours", "value_min": 50000.0, "value_max": 150000.0},
    5: {"time": "< 12 hours", "value_min": 150000.0, "value_max": float("inf")},
}

# Below target but within this ratio of it counts as a warning, not a miss
PERFORMANCE_WARNING_RATIO: float = 0.8

# Settlement accuracy bands, absolute % deviation from the estimate
ACCURACY_EXCELLENT: float = 10.0
ACCURACY_GOOD: float = 25.0

# --- Storage ---

ESTIMATES_TABLE: str = os.environ.get("ESTIMATES_TABLE", "estimates")
EVENTS_TABLE: str = os.environ.get("EVENTS_TABLE", "estimate_events")
BLOCKERS_TABLE: str = os.environ.get("BLOCKERS_TABLE", "blockers")
PROFILES_TABLE: str = os.environ.get("PROFILES_TABLE", "estimator_profiles")
CARRIERS_TABLE: str = os.environ.get("CARRIERS_TABLE", "carriers")

# --- Logging ---

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
LOG_JSON: bool = os.environ.get("LOG_JSON", "true").lower() == "true"
