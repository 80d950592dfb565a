"""Shared helpers for the CloudTrail cluster usage scripts."""

import subprocess
import sys
from datetime import datetime, timezone
from typing import List, Optional


def install_dependencies(packages: List[str]):
    """Install required packages if not already installed."""
    for package in packages:
        try:
            __import__(package)
        except ImportError:
            print(f"Installing required package: {package}...")
            try:
                subprocess.check_call(
                    ["pip3", "install", "--user", package],
                    stdout=subprocess.DEVNULL,
                )
                print(f"  {package} installed successfully.")
            except subprocess.CalledProcessError:
                try:
                    subprocess.check_call(
                        ["pip3", "install", "--break-system-packages", package],
                        stdout=subprocess.DEVNULL,
                    )
                    print(f"  {package} installed successfully.")
                except subprocess.CalledProcessError as e:
                    print(f"  Failed to install {package}: {e}")
                    print(f"  Please run: pip3 install {package}")
                    sys.exit(1)


def extract_user_id(user_arn: str, principal_id: str = "") -> str:
    """Short user name from a CloudTrail userIdentity arn/principalId."""
    if user_arn and user_arn != "unknown":
        parts = user_arn.split("/")
        if len(parts) > 1:
            return parts[-1]
        parts = user_arn.split(":")
        if len(parts) > 0:
            return parts[-1]
    return principal_id if principal_id else "unknown"


def parse_event_time(value: str) -> Optional[datetime]:
    """Parse a CloudTrail eventTime into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_duration(hours: float) -> str:
    """Format a duration given in hours, e.g. '3d 4h', '5h 12m', '42m'."""
    if hours is None or hours != hours:  # NaN
        return "-"
    total_minutes = int(round(hours * 60))
    days, rem = divmod(total_minutes, 24 * 60)
    hrs, minutes = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hrs}h"
    if hrs > 0:
        return f"{hrs}h {minutes}m"
    return f"{minutes}m"
