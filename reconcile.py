"""Create/delete reconciliation per resource and per service."""

import pandas as pd

from event_catalog import DOWN, UP

RESOURCE_STATUSES = [
    "balanced",
    "still_running",
    "pre_existing",
    "inconsistent",
    "activity_only",
]

RESOURCE_COLUMNS = [
    "service",
    "resource_id",
    "up_events",
    "down_events",
    "failed_calls",
    "balance",
    "status",
]

SERVICE_COLUMNS = [
    "service",
    "up_events",
    "down_events",
    "failed_calls",
    "net",
    "resources",
] + RESOURCE_STATUSES


def _status(up_events: int, down_events: int) -> str:
    balance = up_events - down_events
    if up_events == 0 and down_events == 0:
        return "activity_only"
    if balance == 0:
        return "balanced"
    if balance == 1:
        return "still_running"
    if balance == -1:
        return "pre_existing"
    return "inconsistent"


def reconcile_resources(events: pd.DataFrame) -> pd.DataFrame:
    """Count successful and failed up/down events for every resource."""
    if events.empty:
        return pd.DataFrame(columns=RESOURCE_COLUMNS)

    # Same event delivered twice for one resource counts once
    deduped = events.drop_duplicates(
        subset=["service", "resource_id", "event_name", "event_time", "error_code"]
    )
    failed = deduped["error_code"].fillna("").astype(str) != ""
    transition = deduped["transition"]

    kind = pd.Series("other", index=deduped.index, dtype="object", name="kind")
    kind[~failed & (transition == UP)] = "up_events"
    kind[~failed & (transition == DOWN)] = "down_events"
    kind[failed & transition.isin([UP, DOWN])] = "failed_calls"

    keys = ["service", "resource_id"]
    resources = (
        deduped.groupby(keys + [kind]).size().unstack("kind", fill_value=0)
        .reindex(columns=["up_events", "down_events", "failed_calls"], fill_value=0)
        .astype(int)
    )
    resources["balance"] = resources["up_events"] - resources["down_events"]
    resources["status"] = [
        _status(u, d) for u, d in zip(resources["up_events"], resources["down_events"])
    ]
    return resources.reset_index().sort_values(keys, kind="mergesort").reset_index(drop=True)[RESOURCE_COLUMNS]


def reconcile_services(resources: pd.DataFrame) -> pd.DataFrame:
    """Roll resource reconciliation up to one row per service."""
    if resources.empty:
        return pd.DataFrame(columns=SERVICE_COLUMNS)

    grouped = resources.groupby("service")
    summary = grouped[["up_events", "down_events", "failed_calls"]].sum()
    summary["net"] = summary["up_events"] - summary["down_events"]
    summary["resources"] = grouped.size()
    status_counts = (
        resources.groupby(["service", "status"]).size().unstack(fill_value=0)
        .reindex(columns=RESOURCE_STATUSES, fill_value=0)
    )
    summary = summary.join(status_counts).fillna(0)
    return summary.reset_index()[SERVICE_COLUMNS].astype(
        {c: int for c in SERVICE_COLUMNS if c != "service"}
    )


def daily_transition_counts(events: pd.DataFrame) -> pd.DataFrame:
    """Successful up/down events per UTC day, columns keyed by (service, transition)."""
    if events.empty:
        return pd.DataFrame()
    ok = events[
        events["transition"].isin([UP, DOWN])
        & (events["error_code"].fillna("").astype(str) == "")
    ]
    if ok.empty:
        return pd.DataFrame()
    days = ok["event_time"].dt.tz_convert("UTC").dt.strftime("%Y-%m-%d")
    counts = ok.groupby([days.rename("day"), "service", "transition"]).size()
    return counts.unstack(["service", "transition"], fill_value=0).sort_index()
