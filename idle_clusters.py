"""Idle detection over lifeline intervals.

An interval is idle when a gap between consecutive activity events exceeds
the idle threshold. The interval's start and end count as gap boundaries.
"""

import logging
from datetime import timedelta

import pandas as pd

import config
from event_catalog import ACTIVITY

logger = logging.getLogger(__name__)

SCORE_COLUMNS = [
    "activity_count",
    "last_activity",
    "longest_gap_hours",
    "idle_hours",
    "trailing_idle_hours",
    "idle_fraction",
    "is_idle",
]

DEFAULT_IDLE_THRESHOLD = timedelta(hours=config.IDLE_THRESHOLD_HOURS)


def _hours(delta) -> float:
    return pd.Timedelta(delta).total_seconds() / 3600


def _threshold_hours(idle_threshold) -> float:
    if isinstance(idle_threshold, (timedelta, pd.Timedelta)):
        return _hours(idle_threshold)
    return float(idle_threshold)


def score_intervals(lifelines: pd.DataFrame, events: pd.DataFrame, idle_threshold=DEFAULT_IDLE_THRESHOLD) -> pd.DataFrame:
    """Add activity and idle-time columns to every lifeline interval.

    ``idle_threshold`` is a timedelta or a number of hours.
    """
    threshold = _threshold_hours(idle_threshold)
    scored = lifelines.copy()
    if scored.empty:
        for col in SCORE_COLUMNS:
            scored[col] = pd.Series(dtype="object")
        scored["last_activity"] = pd.to_datetime(scored["last_activity"], utc=True)
        return scored

    activity = events[
        (events["transition"] == ACTIVITY)
        & (events["error_code"].fillna("").astype(str) == "")
    ]
    times_by_resource = {
        key: group["event_time"].sort_values().tolist()
        for key, group in activity.groupby(["service", "resource_id"])
    }

    results = []
    for row in scored.itertuples(index=False):
        times = [
            t for t in times_by_resource.get((row.service, row.resource_id), [])
            if row.start <= t <= row.end
        ]
        boundaries = [row.start] + times + [row.end]
        gaps = [_hours(b - a) for a, b in zip(boundaries, boundaries[1:])]
        longest = max(gaps) if gaps else 0.0
        idle_hours = sum(g for g in gaps if g >= threshold)
        trailing = gaps[-1] if gaps else 0.0
        duration = row.duration_hours
        results.append({
            "activity_count": len(times),
            "last_activity": times[-1] if times else pd.NaT,
            "longest_gap_hours": longest,
            "idle_hours": idle_hours,
            "trailing_idle_hours": trailing,
            "idle_fraction": idle_hours / duration if duration > 0 else 0.0,
            "is_idle": longest >= threshold if duration > 0 else False,
        })

    scores = pd.DataFrame(results, columns=SCORE_COLUMNS, index=scored.index)
    scores["last_activity"] = pd.to_datetime(scores["last_activity"], utc=True)
    scored = pd.concat([scored, scores], axis=1)
    logger.info(
        f"{int(scored['is_idle'].sum())} of {len(scored)} intervals idle "
        f"for at least {threshold:g}h"
    )
    return scored


def idle_but_running(scored: pd.DataFrame, idle_threshold=DEFAULT_IDLE_THRESHOLD) -> pd.DataFrame:
    """Intervals still up at the window end whose last stretch has been idle."""
    threshold = _threshold_hours(idle_threshold)
    if scored.empty:
        return scored.copy()
    mask = (~scored["end_observed"].astype(bool)) & (
        scored["trailing_idle_hours"] >= threshold
    )
    return scored[mask].sort_values(
        "trailing_idle_hours", ascending=False, kind="mergesort"
    ).reset_index(drop=True)
