"""Configuration for the CloudTrail cluster usage scripts.

All settings come from environment variables so the scripts can be pointed at
a different dump or tuned without editing code. Command-line flags override
these defaults.
"""

import logging
import os
from typing import List, Optional


def parse_list(value: str) -> List[str]:
    """Split a comma-separated setting into a list of non-empty items."""
    return [v.strip() for v in (value or "").split(",") if v.strip()]


# Services to analyse ('redshift', 'emr', 'dynamodb')
SERVICES = parse_list(os.environ.get("CTU_SERVICES", "redshift,emr,dynamodb"))

# A running cluster with no activity for this long is considered idle
IDLE_THRESHOLD_HOURS = float(os.environ.get("CTU_IDLE_THRESHOLD_HOURS", "24"))

# Repeated up/down transitions closer than this are API retries
MIN_TRANSITION_LAG_SECONDS = int(
    os.environ.get("CTU_MIN_TRANSITION_LAG_SECONDS", "300")
)

DECOMPRESS_WORKERS = int(os.environ.get("CTU_DECOMPRESS_WORKERS", "4"))
SNAPSHOT_DIR = os.environ.get("CTU_SNAPSHOT_DIR", ".snapshots")
LOG_LEVEL = os.environ.get("CTU_LOG_LEVEL", "INFO")

# Maximum CloudTrail file size to process (50 MB)
MAX_TRAIL_FILE_SIZE = 50 * 1024 * 1024

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None, quiet: bool = False) -> None:
    """Configure root logging for a CLI run."""
    if quiet:
        level = "WARNING"
    level_name = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
