"""Rebuild cluster up/down intervals ("lifelines") from a CloudTrail event table.

The event stream is noisy. Failed API calls, duplicated deliveries and client
retries all show up as extra create/delete events. They are removed before a
single pass over each resource's sorted transitions pairs every ``up`` with
the following ``down``.
"""

import logging
from datetime import timedelta
from typing import Dict, Tuple

import pandas as pd

import config
from event_catalog import ACTIVITY, DOWN, UP

logger = logging.getLogger(__name__)

LIFELINE_COLUMNS = [
    "service",
    "resource_id",
    "start",
    "end",
    "start_observed",
    "end_observed",
    "opened_by",
    "closed_by",
    "duration_hours",
]

DEFAULT_MIN_LAG = timedelta(seconds=config.MIN_TRANSITION_LAG_SECONDS)


def _as_timedelta(value) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, pd.Timedelta):
        return value.to_pytimedelta()
    return timedelta(seconds=float(value))


def _as_utc(value) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def _failed(events: pd.DataFrame) -> pd.Series:
    return events["error_code"].fillna("").astype(str) != ""


def empty_lifelines_frame() -> pd.DataFrame:
    frame = pd.DataFrame({col: pd.Series(dtype="object") for col in LIFELINE_COLUMNS})
    frame["start"] = pd.to_datetime(frame["start"], utc=True)
    frame["end"] = pd.to_datetime(frame["end"], utc=True)
    frame["duration_hours"] = frame["duration_hours"].astype(float)
    return frame


def clean_transitions(events: pd.DataFrame, min_lag=DEFAULT_MIN_LAG) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Up/down events with failed calls, duplicates, retries and nonsense removed.

    After cleaning, each resource's transitions alternate between ``up`` and
    ``down``. Of a run of repeated transitions, the earliest is kept. A repeat
    that arrives within ``min_lag`` of the previous transition counts as a
    retry. Any later repeat counts as nonsense.
    """
    min_lag = _as_timedelta(min_lag)
    counters = {"failed_calls": 0, "duplicates": 0, "retries": 0, "nonsense": 0}

    transitions = events[events["transition"].isin([UP, DOWN])].reset_index(drop=True)
    if transitions.empty:
        return transitions, counters

    failed = _failed(transitions)
    counters["failed_calls"] = int(failed.sum())
    transitions = transitions[~failed]

    transitions = transitions.sort_values(
        ["service", "resource_id", "event_time", "event_name"], kind="mergesort"
    )
    duplicated = transitions.duplicated(
        subset=["service", "resource_id", "transition", "event_time"], keep="first"
    )
    counters["duplicates"] = int(duplicated.sum())
    transitions = transitions[~duplicated]

    keep = []
    for _, group in transitions.groupby(["service", "resource_id"], sort=False):
        state = None
        last_seen = None
        for idx, transition, event_time in zip(
            group.index, group["transition"], group["event_time"]
        ):
            if transition == state:
                if last_seen is not None and event_time - last_seen < min_lag:
                    counters["retries"] += 1
                else:
                    counters["nonsense"] += 1
            else:
                keep.append(idx)
                state = transition
            last_seen = event_time

    cleaned = transitions.loc[keep].reset_index(drop=True)
    logger.debug(f"Transition cleanup: {counters}")
    return cleaned, counters


def build_lifelines(
    events: pd.DataFrame,
    window_start=None,
    window_end=None,
    min_lag=DEFAULT_MIN_LAG,
    include_activity_only: bool = True,
    drop_short: bool = True,
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Reconstruct the intervals each resource was up within the window.

    Events outside an explicit window are ignored. The returned counters
    merge the :func:`clean_transitions` counts with ``short_intervals``.
    """
    min_lag = _as_timedelta(min_lag)
    if events.empty:
        counters = {
            "failed_calls": 0, "duplicates": 0, "retries": 0,
            "nonsense": 0, "short_intervals": 0,
        }
        return empty_lifelines_frame(), counters

    window_start = _as_utc(window_start) if window_start is not None else events["event_time"].min()
    window_end = _as_utc(window_end) if window_end is not None else events["event_time"].max()
    if window_end < window_start:
        raise ValueError("window_end must not be before window_start")

    in_window = events[
        (events["event_time"] >= window_start) & (events["event_time"] <= window_end)
    ]
    cleaned, counters = clean_transitions(in_window, min_lag)
    counters["short_intervals"] = 0

    intervals = []

    def add(service, resource_id, start, end, start_observed, end_observed, opened_by, closed_by):
        if drop_short and start_observed and end_observed and end - start < min_lag:
            counters["short_intervals"] += 1
            return
        intervals.append({
            "service": service,
            "resource_id": resource_id,
            "start": start,
            "end": end,
            "start_observed": start_observed,
            "end_observed": end_observed,
            "opened_by": opened_by,
            "closed_by": closed_by,
            "duration_hours": (end - start).total_seconds() / 3600,
        })

    with_transitions = set()
    for (service, resource_id), group in cleaned.groupby(["service", "resource_id"], sort=True):
        with_transitions.add((service, resource_id))
        open_start = None
        opened_by = None
        for row in group.itertuples(index=False):
            if row.transition == UP:
                open_start, opened_by = row.event_time, row.event_name
            elif open_start is None:
                # Already running when the window opened
                add(service, resource_id, window_start, row.event_time,
                    False, True, None, row.event_name)
            else:
                add(service, resource_id, open_start, row.event_time,
                    True, True, opened_by, row.event_name)
                open_start = None
        if open_start is not None:
            add(service, resource_id, open_start, window_end,
                True, False, opened_by, None)

    if include_activity_only:
        activity = in_window[(in_window["transition"] == ACTIVITY) & ~_failed(in_window)]
        for service, resource_id in sorted(
            set(zip(activity["service"], activity["resource_id"])) - with_transitions
        ):
            add(service, resource_id, window_start, window_end,
                False, False, None, None)

    if not intervals:
        return empty_lifelines_frame(), counters

    lifelines = pd.DataFrame(intervals, columns=LIFELINE_COLUMNS)
    lifelines = lifelines.sort_values(
        ["service", "start", "resource_id"], kind="mergesort"
    ).reset_index(drop=True)
    logger.info(
        f"Built {len(lifelines)} lifeline intervals for "
        f"{lifelines['resource_id'].nunique()} resources"
    )
    return lifelines, counters


def running_at(lifelines: pd.DataFrame, moment) -> pd.DataFrame:
    """Intervals that cover the given moment."""
    moment = _as_utc(moment)
    mask = (lifelines["start"] <= moment) & (lifelines["end"] >= moment)
    return lifelines[mask].reset_index(drop=True)
