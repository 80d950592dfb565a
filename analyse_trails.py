#!/usr/bin/env python3
"""
CloudTrail Cluster Usage Analysis Script

Loads CloudTrail log dumps and reconstructs when Redshift clusters, EMR
clusters and DynamoDB tables were up. Reports clusters that were running but
idle, reconciles create/delete event counts and draws cluster lifelines.

By default, generates an HTML report and opens it in the browser.

Usage:
    python3 analyse_trails.py /path/to/cloudtrail/dump              # HTML report, auto-opens
    python3 analyse_trails.py /path/to/dump --no-open               # HTML report, no auto-open
    python3 analyse_trails.py /path/to/dump --output report.txt     # Text report instead
    python3 analyse_trails.py /path/to/dump --service redshift --idle-hours 12
"""

import argparse
import base64
import html
import io
import json
import logging
import os
import subprocess
import sys
import webbrowser
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from _helpers import format_duration, install_dependencies

# Required packages for full functionality
REQUIRED_PACKAGES = ["pandas", "matplotlib"]

# Install dependencies before importing them
install_dependencies(REQUIRED_PACKAGES)

import matplotlib

matplotlib.use("Agg")  # Use non-interactive backend
import matplotlib.dates as mdates
import matplotlib.pyplot as plt
import pandas as pd

import config
from event_catalog import ACTIVITY, SERVICE_CATALOG
from idle_clusters import idle_but_running, score_intervals
from lifelines import build_lifelines
from reconcile import (
    RESOURCE_STATUSES,
    daily_transition_counts,
    reconcile_resources,
    reconcile_services,
)
from trail_loader import TrailLoader, load_snapshot, save_snapshot, snapshot_path_for

logger = logging.getLogger(__name__)

# Lifeline charts get unreadable beyond this many rows
MAX_LIFELINE_ROWS = 40

STATUS_COLORS = {
    "balanced": "forestgreen",
    "still_running": "dodgerblue",
    "pre_existing": "orange",
    "inconsistent": "indianred",
    "activity_only": "lightgray",
}


class ClusterUsageAnalyser:
    """Analyzes cluster lifecycles from CloudTrail log dumps."""

    def __init__(
        self,
        dump_path: str,
        services: Optional[List[str]] = None,
        event_names: Optional[List[str]] = None,
        workers: int = config.DECOMPRESS_WORKERS,
        idle_threshold_hours: float = config.IDLE_THRESHOLD_HOURS,
        min_lag_seconds: int = config.MIN_TRANSITION_LAG_SECONDS,
        snapshot_dir: Optional[str] = config.SNAPSHOT_DIR,
        use_snapshot: bool = True,
    ):
        self.dump_path = Path(dump_path)
        self.services = list(services or config.SERVICES)
        for service in self.services:
            if service not in SERVICE_CATALOG:
                raise ValueError(
                    f"Unknown service '{service}', expected one of "
                    f"{', '.join(sorted(SERVICE_CATALOG))}"
                )
        if idle_threshold_hours <= 0:
            raise ValueError("idle_threshold_hours must be positive")
        if min_lag_seconds < 0:
            raise ValueError("min_lag_seconds must not be negative")

        self.event_names = list(event_names) if event_names else None
        self.workers = workers
        self.idle_threshold_hours = idle_threshold_hours
        self.min_lag = timedelta(seconds=min_lag_seconds)
        self.snapshot_dir = snapshot_dir
        self.use_snapshot = use_snapshot and bool(snapshot_dir)

        self.events: pd.DataFrame = pd.DataFrame()
        self.lifelines: pd.DataFrame = pd.DataFrame()
        self.scored: pd.DataFrame = pd.DataFrame()
        self.idle_running: pd.DataFrame = pd.DataFrame()
        self.resource_reconciliation: pd.DataFrame = pd.DataFrame()
        self.service_reconciliation: pd.DataFrame = pd.DataFrame()
        self.daily_counts: pd.DataFrame = pd.DataFrame()

        self.load_stats: Dict[str, int] = {}
        self.cleanup_counts: Dict[str, int] = {}
        self.processing_errors: List[str] = []
        self.snapshot_used: Optional[str] = None
        self.files_processed = 0

        self.earliest_event = None
        self.latest_event = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _snapshot_path(self) -> Path:
        return snapshot_path_for(self.dump_path, self.snapshot_dir, self.services)

    def load(self) -> int:
        """Load events from the dump (or a snapshot). Returns the row count."""
        # Event-name filters change the content, so they bypass snapshots
        snapshot = self._snapshot_path() if self.use_snapshot and not self.event_names else None

        if snapshot is not None and snapshot.exists():
            try:
                self.events = load_snapshot(snapshot)
                self.snapshot_used = str(snapshot)
                print(f"Loaded {len(self.events):,} events from snapshot {snapshot}")
            except Exception as e:
                self.processing_errors.append(f"Error reading snapshot {snapshot}: {e}")
                self.events = pd.DataFrame()

        if self.snapshot_used is None:
            loader = TrailLoader(
                self.dump_path,
                services=self.services,
                event_names=self.event_names,
                workers=self.workers,
            )
            self.files_processed = loader.load()
            print(f"Processed {self.files_processed} CloudTrail files")
            self.events = loader.to_frame()
            self.load_stats = dict(loader.stats)
            self.processing_errors.extend(loader.processing_errors)

            if snapshot is not None and not self.events.empty:
                try:
                    save_snapshot(self.events, snapshot)
                except OSError as e:
                    self.processing_errors.append(f"Error writing snapshot {snapshot}: {e}")

        if not self.events.empty:
            self.earliest_event = self.events["event_time"].min()
            self.latest_event = self.events["event_time"].max()
        return len(self.events)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyse(self) -> None:
        """Build lifelines, idle scores and reconciliation tables."""
        self.lifelines, self.cleanup_counts = build_lifelines(
            self.events, min_lag=self.min_lag
        )
        if self.events.empty:
            self.scored = self.lifelines.copy()
            self.idle_running = self.lifelines.copy()
        else:
            self.scored = score_intervals(
                self.lifelines, self.events, self.idle_threshold_hours
            )
            self.idle_running = idle_but_running(self.scored, self.idle_threshold_hours)
        self.resource_reconciliation = reconcile_resources(self.events)
        self.service_reconciliation = reconcile_services(self.resource_reconciliation)
        self.daily_counts = daily_transition_counts(self.events)

    def generate_summary(self) -> Dict:
        """JSON-serialisable summary of the analysis."""
        def iso(ts):
            return ts.isoformat() if ts is not None and not pd.isna(ts) else None

        idle_running = []
        for row in self.idle_running.itertuples(index=False):
            idle_running.append({
                "service": row.service,
                "resource_id": row.resource_id,
                "up_since": iso(row.start),
                "start_observed": bool(row.start_observed),
                "last_activity": iso(row.last_activity),
                "trailing_idle_hours": round(float(row.trailing_idle_hours), 2),
                "activity_count": int(row.activity_count),
            })

        per_service = {}
        for row in self.service_reconciliation.to_dict("records"):
            service = row.pop("service")
            per_service[service] = {k: int(v) for k, v in row.items()}

        return {
            "analysis_period": {
                "start": iso(self.earliest_event),
                "end": iso(self.latest_event),
            },
            "configuration": {
                "dump_path": str(self.dump_path),
                "services": self.services,
                "event_names": self.event_names,
                "idle_threshold_hours": self.idle_threshold_hours,
                "min_lag_seconds": int(self.min_lag.total_seconds()),
                "snapshot": self.snapshot_used,
            },
            "overview": {
                "files_processed": self.files_processed,
                "events": len(self.events),
                "resources": int(self.events["resource_id"].nunique()) if not self.events.empty else 0,
                "lifeline_intervals": len(self.lifelines),
                "idle_intervals": int(self.scored["is_idle"].sum()) if not self.scored.empty else 0,
                "idle_but_running": len(self.idle_running),
            },
            "load_stats": self.load_stats,
            "cleanup": self.cleanup_counts,
            "reconciliation": per_service,
            "idle_but_running": idle_running,
            "errors": self.processing_errors,
        }

    # ------------------------------------------------------------------
    # Text report
    # ------------------------------------------------------------------

    def generate_report(self, output_path: Optional[str] = None) -> str:
        """Generate a plain-text analysis report."""
        lines = []

        lines.append("=" * 80)
        lines.append("CLOUDTRAIL CLUSTER USAGE REPORT")
        lines.append("=" * 80)
        lines.append("")

        lines.append("ANALYSIS PERIOD")
        lines.append("-" * 40)
        if self.earliest_event is not None:
            lines.append(f"Earliest Event: {self.earliest_event.isoformat()}")
        if self.latest_event is not None:
            lines.append(f"Latest Event:   {self.latest_event.isoformat()}")
        lines.append(f"Trail Files:    {self.files_processed}")
        if self.snapshot_used:
            lines.append(f"Snapshot:       {self.snapshot_used}")
        lines.append("")

        lines.append("OVERVIEW")
        lines.append("-" * 40)
        resources = self.events["resource_id"].nunique() if not self.events.empty else 0
        lines.append(f"Events:              {len(self.events):,}")
        lines.append(f"Resources:           {resources:,}")
        lines.append(f"Lifeline Intervals:  {len(self.lifelines):,}")
        lines.append(f"Idle Threshold:      {self.idle_threshold_hours:g}h")
        lines.append(f"Idle But Running:    {len(self.idle_running):,}")
        lines.append("")

        if self.cleanup_counts:
            lines.append("EVENT CLEANUP")
            lines.append("-" * 40)
            for key, value in self.cleanup_counts.items():
                lines.append(f"  {key.replace('_', ' ').title():20} {value:8,}")
            lines.append("")

        lines.append("CREATE/DELETE RECONCILIATION")
        lines.append("-" * 40)
        if self.service_reconciliation.empty:
            lines.append("  No lifecycle events found.")
        for row in self.service_reconciliation.itertuples(index=False):
            lines.append(f"\n  Service: {row.service}")
            lines.append(f"    Up events:     {row.up_events:,}")
            lines.append(f"    Down events:   {row.down_events:,}")
            lines.append(f"    Failed calls:  {row.failed_calls:,}")
            lines.append(f"    Net:           {row.net:+,}")
            statuses = ", ".join(
                f"{s}:{getattr(row, s)}" for s in RESOURCE_STATUSES if getattr(row, s)
            )
            lines.append(f"    Resources:     {row.resources:,} ({statuses})")
        lines.append("")

        inconsistent = self.resource_reconciliation[
            self.resource_reconciliation["status"] == "inconsistent"
        ] if not self.resource_reconciliation.empty else self.resource_reconciliation
        if not inconsistent.empty:
            lines.append("INCONSISTENT RESOURCES")
            lines.append("-" * 40)
            for row in inconsistent.itertuples(index=False):
                lines.append(
                    f"  {row.service:9} {row.resource_id:40} "
                    f"up={row.up_events} down={row.down_events}"
                )
            lines.append("")

        lines.append("IDLE BUT RUNNING")
        lines.append("-" * 40)
        if self.idle_running.empty:
            lines.append("  None.")
        for row in self.idle_running.itertuples(index=False):
            since = row.start.strftime("%Y-%m-%d %H:%M")
            if not row.start_observed:
                since = "before " + since
            lines.append(
                f"  {row.service:9} {row.resource_id:40} up since {since}, "
                f"idle {format_duration(row.trailing_idle_hours)}"
            )
        lines.append("")

        if not self.scored.empty:
            lines.append("MOST IDLE INTERVALS")
            lines.append("-" * 40)
            top = self.scored.sort_values("idle_hours", ascending=False).head(15)
            for row in top.itertuples(index=False):
                if row.idle_hours <= 0:
                    continue
                lines.append(
                    f"  {row.service:9} {row.resource_id:40} "
                    f"idle {format_duration(row.idle_hours):>8} of "
                    f"{format_duration(row.duration_hours):>8} "
                    f"({row.idle_fraction * 100:5.1f}%)"
                )
            lines.append("")

        if self.processing_errors:
            lines.append("PROCESSING ERRORS")
            lines.append("-" * 40)
            for error in self.processing_errors[:20]:
                lines.append(f"  {error}")
            if len(self.processing_errors) > 20:
                lines.append(f"  ... and {len(self.processing_errors) - 20} more")
            lines.append("")

        report = "\n".join(lines)
        if output_path:
            with open(output_path, "w") as f:
                f.write(report)
            print(f"Report saved to: {output_path}")
        return report

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def _plot_lifelines(self, service: str):
        """Horizontal bars for each resource's up intervals, activity as ticks."""
        scored = self.scored[self.scored["service"] == service] if not self.scored.empty else self.scored
        if scored.empty:
            return None

        order = (
            scored.groupby("resource_id")["start"].min().sort_values().index.tolist()
        )[:MAX_LIFELINE_ROWS]
        scored = scored[scored["resource_id"].isin(order)]
        positions = {resource_id: i for i, resource_id in enumerate(order)}

        fig, ax = plt.subplots(figsize=(14, max(3, 0.35 * len(order) + 1.5)))
        for row in scored.itertuples(index=False):
            start = mdates.date2num(row.start.to_pydatetime())
            end = mdates.date2num(row.end.to_pydatetime())
            color = "darkorange" if row.is_idle else "steelblue"
            alpha = 0.9 if row.start_observed and row.end_observed else 0.5
            ax.broken_barh(
                [(start, max(end - start, 1e-3))],
                (positions[row.resource_id] - 0.35, 0.7),
                facecolors=color,
                alpha=alpha,
            )

        activity = self.events[
            (self.events["service"] == service)
            & (self.events["transition"] == ACTIVITY)
            & (self.events["resource_id"].isin(order))
        ]
        if not activity.empty:
            ax.plot(
                [mdates.date2num(t.to_pydatetime()) for t in activity["event_time"]],
                [positions[r] for r in activity["resource_id"]],
                "|",
                color="black",
                markersize=8,
                alpha=0.6,
            )

        ax.set_yticks(range(len(order)))
        ax.set_yticklabels([r[:40] for r in order], fontsize=8)
        ax.invert_yaxis()
        ax.xaxis_date()
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%Y-%m-%d\n%H:%M"))
        ax.set_title(
            f"{service} lifelines (orange = idle >= {self.idle_threshold_hours:g}h, "
            "faded = open-ended)",
            fontsize=12,
            fontweight="bold",
        )
        ax.grid(axis="x", alpha=0.3)
        return fig

    def _plot_daily_transitions(self):
        """Daily up events above the axis, down events below."""
        if self.daily_counts.empty:
            return None

        by_kind = self.daily_counts.T.groupby(level="transition").sum().T
        days = list(by_kind.index)
        ups = by_kind["up"].tolist() if "up" in by_kind else [0] * len(days)
        downs = by_kind["down"].tolist() if "down" in by_kind else [0] * len(days)

        fig, ax = plt.subplots(figsize=(12, 4))
        x = range(len(days))
        ax.bar(x, ups, color="forestgreen", label="create / resume / restore")
        ax.bar(x, [-d for d in downs], color="indianred", label="delete / pause / terminate")
        ax.axhline(0, color="black", linewidth=0.8)
        ax.set_xticks(list(x))
        ax.set_xticklabels(days, rotation=45, ha="right", fontsize=7)
        ax.set_ylabel("Events")
        ax.set_title("Daily Lifecycle Events", fontsize=14, fontweight="bold")
        ax.legend()
        ax.grid(axis="y", alpha=0.3)
        return fig

    def _plot_idle_hours(self):
        if self.scored.empty or not (self.scored["idle_hours"] > 0).any():
            return None

        top = self.scored[self.scored["idle_hours"] > 0].sort_values(
            "idle_hours", ascending=False
        ).head(15)
        labels = [f"{s}:{r}"[:40] for s, r in zip(top["service"], top["resource_id"])]

        fig, ax = plt.subplots(figsize=(12, 6))
        bars = ax.barh(range(len(labels)), top["idle_hours"], color="darkorange")
        for bar, fraction in zip(bars, top["idle_fraction"]):
            ax.text(
                bar.get_width(),
                bar.get_y() + bar.get_height() / 2,
                f" {fraction * 100:.0f}%",
                va="center",
                fontsize=8,
            )
        ax.set_yticks(range(len(labels)))
        ax.set_yticklabels(labels, fontsize=8)
        ax.set_xlabel("Idle Hours")
        ax.set_title("Most Idle Intervals", fontsize=14, fontweight="bold")
        ax.invert_yaxis()
        ax.grid(axis="x", alpha=0.3)
        return fig

    def _plot_reconciliation(self):
        if self.service_reconciliation.empty:
            return None

        recon = self.service_reconciliation.set_index("service")
        fig, ax = plt.subplots(figsize=(10, 5))
        bottom = [0] * len(recon)
        x = range(len(recon))
        for status in RESOURCE_STATUSES:
            values = recon[status].tolist()
            ax.bar(x, values, bottom=bottom, color=STATUS_COLORS[status], label=status)
            bottom = [b + v for b, v in zip(bottom, values)]
        ax.set_xticks(list(x))
        ax.set_xticklabels(recon.index.tolist())
        ax.set_ylabel("Resources")
        ax.set_title("Create/Delete Reconciliation", fontsize=14, fontweight="bold")
        ax.legend(fontsize=8)
        ax.grid(axis="y", alpha=0.3)
        return fig

    def _graph_builders(self):
        builders = [
            (f"lifelines_{service}", lambda s=service: self._plot_lifelines(s))
            for service in self.services
        ]
        builders += [
            ("daily_transitions", self._plot_daily_transitions),
            ("idle_hours", self._plot_idle_hours),
            ("reconciliation", self._plot_reconciliation),
        ]
        return builders

    def generate_graphs(self, output_dir: str = ".") -> List[str]:
        """Save graphs as PNG files. Returns list of generated file paths."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        generated_files = []

        for name, builder in self._graph_builders():
            try:
                fig = builder()
            except Exception as e:
                print(f"Error generating {name} graph: {e}")
                continue
            if fig is None:
                continue
            filepath = output_path / f"{name}.png"
            fig.savefig(filepath, dpi=150, bbox_inches="tight")
            plt.close(fig)
            generated_files.append(str(filepath))

        print(f"Generated {len(generated_files)} graphs in {output_dir}/")
        return generated_files

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def export_tables(self, output_dir: str) -> List[str]:
        """Write the working tables as CSV files."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        tables = {
            "events": self.events,
            "lifelines": self.scored if not self.scored.empty else self.lifelines,
            "idle_but_running": self.idle_running,
            "resource_reconciliation": self.resource_reconciliation,
            "service_reconciliation": self.service_reconciliation,
        }
        written = []
        for name, frame in tables.items():
            filepath = output_path / f"{name}.csv"
            frame.to_csv(filepath, index=False)
            written.append(str(filepath))
        if not self.daily_counts.empty:
            filepath = output_path / "daily_transitions.csv"
            flat = self.daily_counts.copy()
            flat.columns = [f"{s}_{t}" for s, t in flat.columns]
            flat.to_csv(filepath)
            written.append(str(filepath))
        print(f"Wrote {len(written)} tables to {output_dir}/")
        return written

    # ------------------------------------------------------------------
    # HTML report
    # ------------------------------------------------------------------

    def generate_html_report(self, output_path: str) -> None:
        """Generate an HTML report with embedded graphs."""
        graph_data = {}
        for name, builder in self._graph_builders():
            try:
                fig = builder()
                if fig is None:
                    continue
                buf = io.BytesIO()
                fig.savefig(buf, format="png", dpi=100, bbox_inches="tight")
                plt.close(fig)
                graph_data[name] = base64.b64encode(buf.getvalue()).decode("utf-8")
            except Exception as e:
                print(f"Error generating {name} graph: {e}")

        content = self._build_html_report(graph_data)
        with open(output_path, "w") as f:
            f.write(content)

        print(f"HTML report saved to: {output_path}")

    def _html_table(self, headers: List[str], rows: List[List]) -> str:
        head = "".join(f"<th>{html.escape(str(h))}</th>" for h in headers)
        body = "".join(
            "<tr>" + "".join(f"<td>{html.escape(str(c))}</td>" for c in row) + "</tr>"
            for row in rows
        )
        return f"<table><tr>{head}</tr>{body}</table>"

    def _build_html_report(self, graph_data: Dict[str, str]) -> str:
        """Build the HTML report content."""
        time_range_str = "Unknown"
        duration_str = ""
        if self.earliest_event is not None and self.latest_event is not None:
            time_range_str = (
                f"{self.earliest_event.strftime('%Y-%m-%d %H:%M')} to "
                f"{self.latest_event.strftime('%Y-%m-%d %H:%M')} UTC"
            )
            hours = (self.latest_event - self.earliest_event).total_seconds() / 3600
            duration_str = format_duration(hours)

        resources = self.events["resource_id"].nunique() if not self.events.empty else 0
        idle_intervals = int(self.scored["is_idle"].sum()) if not self.scored.empty else 0

        page = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>CloudTrail Cluster Usage Report</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, sans-serif; margin: 0; padding: 20px; background: #f5f5f5; }}
        .container {{ max-width: 1200px; margin: 0 auto; }}
        h1 {{ color: #232f3e; border-bottom: 3px solid #ff9900; padding-bottom: 10px; }}
        h2 {{ color: #232f3e; margin-top: 30px; border-bottom: 1px solid #ddd; padding-bottom: 5px; }}
        .card {{ background: white; border-radius: 8px; padding: 20px; margin: 15px 0; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }}
        .stats-grid {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(180px, 1fr)); gap: 15px; }}
        .stat-box {{ background: linear-gradient(135deg, #232f3e, #37475a); color: white; padding: 20px; border-radius: 8px; text-align: center; }}
        .stat-box .value {{ font-size: 1.8em; font-weight: bold; color: #ff9900; }}
        .stat-box .label {{ font-size: 0.9em; opacity: 0.9; }}
        .time-range {{ background: linear-gradient(135deg, #1a5276, #2980b9); color: white; padding: 20px; border-radius: 8px; margin-bottom: 20px; }}
        .time-range h3 {{ margin: 0 0 10px 0; color: #f1c40f; }}
        table {{ width: 100%; border-collapse: collapse; margin: 10px 0; }}
        th, td {{ padding: 10px; text-align: left; border-bottom: 1px solid #ddd; }}
        th {{ background: #232f3e; color: white; }}
        tr:hover {{ background: #f9f9f9; }}
        .graph {{ text-align: center; margin: 20px 0; }}
        .graph img {{ max-width: 100%; height: auto; border-radius: 8px; box-shadow: 0 2px 8px rgba(0,0,0,0.1); }}
        .footer {{ text-align: center; margin-top: 40px; color: #666; font-size: 0.9em; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>CloudTrail Cluster Usage Report</h1>

        <div class="card">
            <div class="time-range">
                <h3>Analysis Period</h3>
                <div>{time_range_str}</div>
                <div>Duration: {duration_str} | Trail Files: {self.files_processed}</div>
            </div>

            <h2 style="margin-top: 0;">Overview</h2>
            <div class="stats-grid">
                <div class="stat-box"><div class="value">{len(self.events):,}</div><div class="label">Events</div></div>
                <div class="stat-box"><div class="value">{resources:,}</div><div class="label">Resources</div></div>
                <div class="stat-box"><div class="value">{len(self.lifelines):,}</div><div class="label">Lifeline Intervals</div></div>
                <div class="stat-box"><div class="value">{idle_intervals:,}</div><div class="label">Idle Intervals</div></div>
                <div class="stat-box"><div class="value">{len(self.idle_running):,}</div><div class="label">Idle But Running</div></div>
            </div>
        </div>
"""

        # Idle but running
        rows = [
            [
                row.service,
                row.resource_id,
                ("before " if not row.start_observed else "") + row.start.strftime("%Y-%m-%d %H:%M"),
                row.last_activity.strftime("%Y-%m-%d %H:%M") if not pd.isna(row.last_activity) else "never",
                format_duration(row.trailing_idle_hours),
            ]
            for row in self.idle_running.itertuples(index=False)
        ]
        page += f"""
        <div class="card">
            <h2>Idle But Running (&ge; {self.idle_threshold_hours:g}h without activity)</h2>
            {self._html_table(["Service", "Resource", "Up Since", "Last Activity", "Idle For"], rows) if rows else "<p>No idle running resources found.</p>"}
        </div>
"""

        for service in self.services:
            key = f"lifelines_{service}"
            if key in graph_data:
                page += f"""
        <div class="card">
            <h2>{html.escape(service)} Lifelines</h2>
            <div class="graph">
                <img src="data:image/png;base64,{graph_data[key]}" alt="{html.escape(service)} lifelines">
            </div>
        </div>
"""

        # Reconciliation
        page += """
        <div class="card">
            <h2>Create/Delete Reconciliation</h2>
"""
        if "reconciliation" in graph_data:
            page += f"""
            <div class="graph">
                <img src="data:image/png;base64,{graph_data["reconciliation"]}" alt="Reconciliation">
            </div>
"""
        recon_rows = [
            [row["service"], row["up_events"], row["down_events"], row["failed_calls"], f"{row['net']:+d}", row["resources"]]
            + [row[s] for s in RESOURCE_STATUSES]
            for row in self.service_reconciliation.to_dict("records")
        ]
        page += self._html_table(
            ["Service", "Up", "Down", "Failed", "Net", "Resources"] + RESOURCE_STATUSES,
            recon_rows,
        )
        page += "\n        </div>\n"

        for key, title in (("daily_transitions", "Daily Lifecycle Events"), ("idle_hours", "Most Idle Intervals")):
            if key in graph_data:
                page += f"""
        <div class="card">
            <h2>{title}</h2>
            <div class="graph">
                <img src="data:image/png;base64,{graph_data[key]}" alt="{title}">
            </div>
        </div>
"""

        if self.cleanup_counts:
            cleanup_rows = [[k.replace("_", " "), v] for k, v in self.cleanup_counts.items()]
            page += f"""
        <div class="card">
            <h2>Event Cleanup</h2>
            {self._html_table(["Rule", "Events Removed"], cleanup_rows)}
        </div>
"""

        if self.processing_errors:
            error_rows = [[e] for e in self.processing_errors[:50]]
            page += f"""
        <div class="card">
            <h2>Processing Errors</h2>
            {self._html_table(["Error"], error_rows)}
        </div>
"""

        page += f"""
        <div class="footer">
            Generated {datetime.now().strftime("%Y-%m-%d %H:%M")} from {html.escape(str(self.dump_path))}
        </div>
    </div>
</body>
</html>
"""
        return page


def main():
    parser = argparse.ArgumentParser(
        description="Analyze cluster lifecycles in CloudTrail log dumps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 analyse_trails.py ./cloudtrail/
  python3 analyse_trails.py ./cloudtrail/ --output report.txt
  python3 analyse_trails.py ./cloudtrail/ --service emr --idle-hours 6
  python3 analyse_trails.py ./cloudtrail/ --graphs ./graphs/ --csv-dir ./tables/
  python3 analyse_trails.py ./cloudtrail/ --no-snapshot --workers 8
        """,
    )
    parser.add_argument("dump_path", help="Path to a CloudTrail dump folder or file")
    parser.add_argument(
        "--service", action="append", choices=sorted(SERVICE_CATALOG),
        help="Service to analyse (repeatable, default: all)",
    )
    parser.add_argument(
        "--event-name", action="append",
        help="Only keep this CloudTrail event name (repeatable)",
    )
    parser.add_argument(
        "--workers", type=int, default=config.DECOMPRESS_WORKERS,
        help="Parallel file readers (default: %(default)s)",
    )
    parser.add_argument(
        "--idle-hours", type=float, default=config.IDLE_THRESHOLD_HOURS,
        help="Hours without activity before a cluster counts as idle (default: %(default)s)",
    )
    parser.add_argument(
        "--min-lag", type=int, default=config.MIN_TRANSITION_LAG_SECONDS,
        help="Seconds under which repeated transitions are retries (default: %(default)s)",
    )
    parser.add_argument(
        "--snapshot-dir", default=config.SNAPSHOT_DIR,
        help="Directory for intermediate event snapshots (default: %(default)s)",
    )
    parser.add_argument(
        "--no-snapshot", action="store_true", help="Do not read or write snapshots"
    )
    parser.add_argument(
        "--output", "-o", help="Output path for text report (instead of HTML)"
    )
    parser.add_argument(
        "--html", help="Custom path for HTML report (default: auto-generated)"
    )
    parser.add_argument("--graphs", "-g", help="Directory to save graph images")
    parser.add_argument("--csv-dir", help="Directory to save CSV tables")
    parser.add_argument("--summary-json", help="Path to save a JSON summary")
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Suppress console output"
    )
    parser.add_argument(
        "--no-open", action="store_true", help="Do not auto-open the HTML report"
    )
    parser.add_argument("--log-level", default=None, help="Logging level")

    args = parser.parse_args()
    config.configure_logging(args.log_level, quiet=args.quiet)

    dump_path = Path(args.dump_path)
    if not dump_path.exists():
        print(f"Error: Path does not exist: {dump_path}")
        sys.exit(1)

    try:
        analyser = ClusterUsageAnalyser(
            str(dump_path),
            services=args.service,
            event_names=args.event_name,
            workers=args.workers,
            idle_threshold_hours=args.idle_hours,
            min_lag_seconds=args.min_lag,
            snapshot_dir=args.snapshot_dir,
            use_snapshot=not args.no_snapshot,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    event_count = analyser.load()
    if event_count == 0:
        print("No cluster lifecycle events found to analyze.")
        for error in analyser.processing_errors[:10]:
            print(f"  {error}")
        sys.exit(1)

    analyser.analyse()

    if args.output:
        report = analyser.generate_report(args.output)
        if not args.quiet:
            print("\n" + report)
    else:
        if args.html:
            html_path = args.html
        else:
            timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            html_path = f"cluster-usage-report-{timestamp}.html"

        analyser.generate_html_report(html_path)

        if not args.no_open:
            abs_path = os.path.abspath(html_path)
            print(f"Opening report in browser: {abs_path}")
            try:
                if sys.platform == "darwin":
                    subprocess.run(["open", abs_path], check=True)
                elif sys.platform == "win32":
                    os.startfile(abs_path)
                else:
                    webbrowser.open(f"file://{abs_path}")
            except Exception as e:
                print(f"Could not auto-open file: {e}")
                print(f"Please open manually: {abs_path}")

    if args.graphs:
        analyser.generate_graphs(args.graphs)

    if args.csv_dir:
        analyser.export_tables(args.csv_dir)

    if args.summary_json:
        with open(args.summary_json, "w") as f:
            json.dump(analyser.generate_summary(), f, indent=2, default=str)
        print(f"Summary saved to: {args.summary_json}")

    print("\nAnalysis complete!")


if __name__ == "__main__":
    main()
