"""Shared factory for hand-built event tables used by the lifeline, idle and
reconciliation tests."""

import pandas as pd

from trail_loader import EVENT_COLUMNS


def make_events(rows):
    """rows: (time, service, resource_id, event_name, transition[, error_code])"""
    records = []
    for i, row in enumerate(rows):
        time, service, resource_id, event_name, transition = row[:5]
        records.append({
            "event_id": f"evt-{i:04d}",
            "event_time": pd.Timestamp(time, tz="UTC"),
            "event_source": f"{service}.amazonaws.com",
            "event_name": event_name,
            "service": service,
            "resource_id": resource_id,
            "transition": transition,
            "aws_region": "us-east-1",
            "account_id": "111111111111",
            "user_id": "alice",
            "source_ip": "10.0.0.1",
            "error_code": row[5] if len(row) > 5 else "",
            "source_file": "test.json",
        })
    return pd.DataFrame(records, columns=EVENT_COLUMNS)
