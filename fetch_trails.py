#!/usr/bin/env python3
"""
CloudTrail Dump Fetcher

Downloads CloudTrail log files for a date range from the trail's S3 bucket
into a local folder, ready for analyse_trails.py. Files already present with
the same size are skipped, so re-running only fetches what is missing.

Usage:
    python3 fetch_trails.py --bucket my-trail-bucket --start 2024-01-01 --end 2024-01-31
    python3 fetch_trails.py --bucket org-trail --org-id o-abc123 --account 111111111111 \\
        --region us-east-1 --region eu-west-1 --start 2024-01-01 --end 2024-01-07
"""

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from _helpers import install_dependencies

REQUIRED_PACKAGES = ["boto3", "rich"]

install_dependencies(REQUIRED_PACKAGES)

import boto3
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

import config

logger = logging.getLogger(__name__)

console = Console()

DOWNLOAD_WORKERS = 8


def build_prefixes(
    account_id: str,
    regions: List[str],
    start: date,
    end: date,
    organization_id: Optional[str] = None,
) -> List[str]:
    """S3 key prefixes for every (region, day) in the inclusive date range."""
    if end < start:
        raise ValueError("end date must not be before start date")
    base = f"AWSLogs/{organization_id}/{account_id}" if organization_id else f"AWSLogs/{account_id}"
    prefixes = []
    for region in regions:
        current = start
        while current <= end:
            prefixes.append(
                f"{base}/CloudTrail/{region}/{current.strftime('%Y/%m/%d')}/"
            )
            current += timedelta(days=1)
    return prefixes


def _download_one(client, bucket: str, key: str, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    client.download_file(bucket, key, str(target))


def download_trail_files(
    bucket: str,
    prefixes: List[str],
    dest,
    s3_client=None,
    max_workers: int = DOWNLOAD_WORKERS,
) -> Dict:
    """Mirror every object under the prefixes into dest, keeping the key layout."""
    client = s3_client or boto3.client("s3")
    dest = Path(dest)
    result = {"listed": 0, "downloaded": 0, "skipped": 0, "failed": 0, "errors": []}

    pending = []
    paginator = client.get_paginator("list_objects_v2")
    for prefix in prefixes:
        logger.info(f"S3 scan: s3://{bucket}/{prefix}")
        try:
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    result["listed"] += 1
                    target = dest / obj["Key"]
                    if target.exists() and target.stat().st_size == obj.get("Size", -1):
                        result["skipped"] += 1
                        continue
                    pending.append((obj["Key"], target))
        except Exception as e:
            logger.error(f"Error listing {prefix}: {str(e)}")
            result["errors"].append({"source": prefix, "error": str(e)})

    if pending:
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            futures = {
                executor.submit(_download_one, client, bucket, key, target): key
                for key, target in pending
            }
            for future in as_completed(futures):
                key = futures[future]
                try:
                    future.result()
                    result["downloaded"] += 1
                except Exception as e:
                    logger.warning(f"Error downloading {key}: {str(e)}")
                    result["failed"] += 1
                    result["errors"].append({"source": key, "error": str(e)})

    return result


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def _show_result(result: Dict, dest: Path) -> None:
    table = Table(box=box.SIMPLE, show_header=True)
    table.add_column("Files", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("Listed", f"{result['listed']:,}")
    table.add_row("Downloaded", f"[green]{result['downloaded']:,}[/green]")
    table.add_row("Already present", f"{result['skipped']:,}")
    table.add_row("Failed", f"[red]{result['failed']:,}[/red]" if result["failed"] else "0")
    console.print(table)

    for error in result["errors"][:10]:
        console.print(f"  [red]✗[/red] {error['source']}: [dim]{error['error']}[/dim]")

    border = "green" if not result["errors"] else "yellow"
    console.print(
        Panel(
            f"  Dump folder: {dest}\n\n"
            f"  Next: [bold]python3 analyse_trails.py {dest}[/bold]",
            title="Fetch Complete",
            border_style=border,
            padding=(1, 2),
        )
    )


def _main():
    parser = argparse.ArgumentParser(
        description="Download CloudTrail log files from S3 for offline analysis"
    )
    parser.add_argument("--bucket", help="CloudTrail S3 bucket")
    parser.add_argument("--account", help="Account ID (default: caller identity)")
    parser.add_argument(
        "--region", action="append",
        help="Trail region (repeatable, default: session region)",
    )
    parser.add_argument("--org-id", help="Organization ID for organization trails")
    parser.add_argument("--start", type=_parse_date, required=True, help="First day, YYYY-MM-DD")
    parser.add_argument("--end", type=_parse_date, help="Last day, YYYY-MM-DD (default: today)")
    parser.add_argument("--dest", default="cloudtrail", help="Local dump folder (default: %(default)s)")
    parser.add_argument("--profile", help="AWS profile name")
    parser.add_argument("--workers", type=int, default=DOWNLOAD_WORKERS, help="Parallel downloads")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args()

    config.configure_logging(args.log_level or "WARNING")

    console.print()
    console.print(
        Panel(
            "[bold]CloudTrail Dump Fetcher[/bold]\n"
            "[dim]Download trail files from S3 for cluster usage analysis[/dim]",
            box=box.ROUNDED,
            padding=(1, 4),
        )
    )

    session = boto3.session.Session(profile_name=args.profile)

    account_id = args.account
    if not account_id:
        with console.status("Checking AWS credentials..."):
            try:
                identity = session.client("sts").get_caller_identity()
            except Exception as e:
                console.print(
                    Panel(
                        f"[red]Could not determine the AWS account.[/red]\n\n{e}",
                        title="Error",
                        border_style="red",
                    )
                )
                sys.exit(1)
        account_id = identity["Account"]
        console.print(f"  [green]✓[/green] Authenticated: {identity.get('Arn', '')}")

    regions = args.region or [session.region_name or "us-east-1"]
    bucket = args.bucket or Prompt.ask("  CloudTrail S3 bucket")
    end = args.end or datetime.now(timezone.utc).date()

    try:
        prefixes = build_prefixes(account_id, regions, args.start, end, args.org_id)
    except ValueError as e:
        console.print(f"  [red]✗[/red] {e}")
        sys.exit(1)

    console.print(f"  Account:  {account_id}")
    console.print(f"  Regions:  {', '.join(regions)}")
    console.print(f"  Period:   {args.start} to {end} ({len(prefixes)} prefixes)")
    console.print(f"  Target:   {Path(args.dest).resolve()}")
    console.print()

    if not args.yes and not Confirm.ask("  Start download?", default=True):
        console.print("\n[dim]Cancelled.[/dim]")
        sys.exit(0)

    with console.status(f"  Downloading from s3://{bucket}/ ..."):
        result = download_trail_files(
            bucket,
            prefixes,
            args.dest,
            s3_client=session.client("s3"),
            max_workers=args.workers,
        )

    _show_result(result, Path(args.dest))
    if result["listed"] == 0:
        console.print("[yellow]No trail files found for that period.[/yellow]")
        sys.exit(1)


def main():
    try:
        _main()
    except KeyboardInterrupt:
        console.print("\n\n[dim]Cancelled.[/dim]\n")
        sys.exit(0)


if __name__ == "__main__":
    main()
