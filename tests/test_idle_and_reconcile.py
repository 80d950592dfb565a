#!/usr/bin/env python3
"""
Tests for idle detection and create/delete reconciliation.
"""

import sys
from datetime import timedelta
from pathlib import Path

import pandas as pd
import pytest

# Add project root and the tests folder (shared event factory)
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import idle_clusters  # noqa: E402
import reconcile  # noqa: E402
from lifelines import build_lifelines  # noqa: E402
from event_rows import make_events  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def scored_for(events, threshold=24):
    intervals, _ = build_lifelines(events)
    return idle_clusters.score_intervals(intervals, events, threshold)


# ---------------------------------------------------------------------------
# Idle detection
# ---------------------------------------------------------------------------


def test_long_gap_marks_interval_idle():
    events = make_events([
        ("2026-02-01T00:00:00", "redshift", "c1", "CreateCluster", "up"),
        ("2026-02-01T01:00:00", "redshift", "c1", "GetClusterCredentials", "activity"),
        ("2026-02-01T02:00:00", "redshift", "c1", "ExecuteStatement", "activity"),
        ("2026-02-03T00:00:00", "redshift", "c1", "DeleteCluster", "down"),
    ])
    row = scored_for(events).iloc[0]

    assert row["activity_count"] == 2
    assert row["last_activity"] == pd.Timestamp("2026-02-01T02:00:00", tz="UTC")
    assert row["longest_gap_hours"] == pytest.approx(46.0)
    assert row["idle_hours"] == pytest.approx(46.0)
    assert row["trailing_idle_hours"] == pytest.approx(46.0)
    assert row["idle_fraction"] == pytest.approx(46.0 / 48.0)
    assert row["is_idle"]


def test_regular_activity_is_not_idle():
    rows = [("2026-02-01T00:00:00", "emr", "j-1", "RunJobFlow", "up")]
    for hour in range(6, 48, 6):
        rows.append((
            f"2026-02-0{1 + hour // 24}T{hour % 24:02d}:00:00",
            "emr", "j-1", "AddJobFlowSteps", "activity",
        ))
    rows.append(("2026-02-03T00:00:00", "emr", "j-1", "TerminateJobFlows", "down"))
    row = scored_for(make_events(rows)).iloc[0]

    assert row["activity_count"] == 7
    assert row["longest_gap_hours"] == pytest.approx(6.0)
    assert row["idle_hours"] == 0
    assert not row["is_idle"]


def test_threshold_accepts_timedelta():
    events = make_events([
        ("2026-02-01T00:00:00", "redshift", "c1", "CreateCluster", "up"),
        ("2026-02-01T10:00:00", "redshift", "c1", "DeleteCluster", "down"),
    ])
    intervals, _ = build_lifelines(events)

    hours = idle_clusters.score_intervals(intervals, events, 8)
    delta = idle_clusters.score_intervals(intervals, events, timedelta(hours=8))
    assert bool(hours.iloc[0]["is_idle"]) is True
    assert bool(delta.iloc[0]["is_idle"]) is True
    assert pd.isna(hours.iloc[0]["last_activity"])


def test_failed_and_out_of_interval_activity_is_ignored():
    events = make_events([
        ("2026-02-01T00:00:00", "redshift", "c1", "CreateCluster", "up"),
        ("2026-02-01T05:00:00", "redshift", "c1", "ExecuteStatement", "activity", "ValidationException"),
        ("2026-02-01T10:00:00", "redshift", "c1", "DeleteCluster", "down"),
        ("2026-02-01T12:00:00", "redshift", "c1", "ExecuteStatement", "activity"),
    ])
    intervals, _ = build_lifelines(events)
    observed = intervals[intervals["end_observed"]]
    scored = idle_clusters.score_intervals(observed, events, 24)

    assert scored.iloc[0]["activity_count"] == 0


def test_idle_but_running_picks_open_intervals_with_idle_tail():
    events = make_events([
        ("2026-02-01T00:00:00", "redshift", "c-idle", "CreateCluster", "up"),
        ("2026-02-01T01:00:00", "redshift", "c-idle", "ExecuteStatement", "activity"),
        ("2026-02-01T00:00:00", "redshift", "c-busy", "CreateCluster", "up"),
        ("2026-02-02T23:00:00", "redshift", "c-busy", "ExecuteStatement", "activity"),
        ("2026-02-01T00:00:00", "redshift", "c-done", "CreateCluster", "up"),
        ("2026-02-01T03:00:00", "redshift", "c-done", "DeleteCluster", "down"),
        ("2026-02-03T00:00:00", "redshift", "c-late", "CreateCluster", "up"),
    ])
    scored = scored_for(events, 24)
    idle = idle_clusters.idle_but_running(scored, 24)

    assert list(idle["resource_id"]) == ["c-idle"]
    assert idle.iloc[0]["trailing_idle_hours"] == pytest.approx(47.0)


def test_score_empty_lifelines():
    events = make_events([])
    intervals, _ = build_lifelines(events)
    scored = idle_clusters.score_intervals(intervals, events, 24)

    assert scored.empty
    for col in idle_clusters.SCORE_COLUMNS:
        assert col in scored.columns
    assert idle_clusters.idle_but_running(scored, 24).empty


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconciliation_events():
    return make_events([
        ("2026-02-01T00:00:00", "redshift", "c1", "CreateCluster", "up"),
        ("2026-02-01T05:00:00", "redshift", "c1", "DeleteCluster", "down"),
        ("2026-02-01T00:00:00", "redshift", "c2", "CreateCluster", "up"),
        ("2026-02-02T00:00:00", "redshift", "c2", "DeleteCluster", "down", "InvalidClusterState"),
        ("2026-02-02T00:00:00", "redshift", "c3", "DeleteCluster", "down"),
        ("2026-02-01T00:00:00", "redshift", "c4", "CreateCluster", "up"),
        ("2026-02-01T06:00:00", "redshift", "c4", "RestoreFromClusterSnapshot", "up"),
        ("2026-02-02T06:00:00", "redshift", "c4", "ResumeCluster", "up"),
        ("2026-02-02T06:00:00", "redshift", "c4", "ResumeCluster", "up"),
        ("2026-02-01T10:00:00", "redshift", "c5", "ExecuteStatement", "activity"),
        ("2026-02-01T00:00:00", "emr", "j-1", "RunJobFlow", "up"),
        ("2026-02-01T04:00:00", "emr", "j-1", "TerminateJobFlows", "down"),
    ])


def test_reconcile_resources_statuses():
    resources = reconcile.reconcile_resources(reconciliation_events()).set_index("resource_id")

    assert resources.loc["c1", "status"] == "balanced"
    assert resources.loc["c2", "status"] == "still_running"
    assert resources.loc["c2", "failed_calls"] == 1
    assert resources.loc["c3", "status"] == "pre_existing"
    # Duplicate ResumeCluster delivery counts once
    assert resources.loc["c4", "up_events"] == 3
    assert resources.loc["c4", "status"] == "inconsistent"
    assert resources.loc["c5", "status"] == "activity_only"
    assert resources.loc["j-1", "status"] == "balanced"


def test_reconcile_services_rolls_up():
    resources = reconcile.reconcile_resources(reconciliation_events())
    services = reconcile.reconcile_services(resources).set_index("service")

    redshift = services.loc["redshift"]
    assert redshift["up_events"] == 5
    assert redshift["down_events"] == 2
    assert redshift["failed_calls"] == 1
    assert redshift["net"] == 3
    assert redshift["resources"] == 5
    for status in reconcile.RESOURCE_STATUSES:
        assert redshift[status] == 1

    emr = services.loc["emr"]
    assert emr["balanced"] == 1
    assert emr["inconsistent"] == 0


def test_daily_transition_counts():
    daily = reconcile.daily_transition_counts(reconciliation_events())

    assert list(daily.index) == ["2026-02-01", "2026-02-02"]
    assert daily.loc["2026-02-01", ("redshift", "up")] == 4
    assert daily.loc["2026-02-02", ("redshift", "down")] == 1
    assert daily.loc["2026-02-01", ("emr", "down")] == 1


def test_reconcile_empty():
    events = make_events([])
    assert reconcile.reconcile_resources(events).empty
    assert reconcile.reconcile_services(pd.DataFrame(columns=reconcile.RESOURCE_COLUMNS)).empty
    assert reconcile.daily_transition_counts(events).empty


def test_failed_and_successful_call_in_same_second_both_count():
    events = make_events([
        ("2026-02-01T00:00:00", "redshift", "c1", "CreateCluster", "up", "InsufficientCapacity"),
        ("2026-02-01T00:00:00", "redshift", "c1", "CreateCluster", "up"),
    ])
    row = reconcile.reconcile_resources(events).set_index("resource_id").loc["c1"]

    assert row["up_events"] == 1
    assert row["failed_calls"] == 1
    assert row["status"] == "still_running"
