"""Load CloudTrail log dumps into a flat pandas table.

Reads S3-delivered ``{"Records": [...]}`` files (gzipped or not), the output of
``aws cloudtrail lookup-events`` and bare JSON lists of records. Only events
listed in :mod:`event_catalog` survive, one row per touched resource.
"""

import gzip
import hashlib
import json
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

import config
from _helpers import extract_user_id, parse_event_time
from event_catalog import (
    extract_resource_ids,
    service_for_event,
    transition_for_event,
)

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "event_id",
    "event_time",
    "event_source",
    "event_name",
    "service",
    "resource_id",
    "transition",
    "aws_region",
    "account_id",
    "user_id",
    "source_ip",
    "error_code",
    "source_file",
]

TRAIL_SUFFIXES = (".json", ".json.gz", ".gz")

# Integrity digests delivered next to the logs, not event records
DIGEST_DIR = "CloudTrail-Digest"


def read_trail_file(path: Path, max_size: int = config.MAX_TRAIL_FILE_SIZE) -> List[Dict]:
    """Decompress and parse one CloudTrail file into a list of raw records."""
    size = path.stat().st_size
    if size > max_size:
        raise ValueError(f"size {size} exceeds {max_size} byte limit")

    if path.suffix == ".gz":
        with gzip.open(path, "rb") as f:
            data = json.loads(f.read().decode("utf-8"))
    else:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if "digestStartTime" in data:
            return []
        if "Records" in data:
            return data.get("Records") or []
        if "Events" in data:
            # lookup-events output wraps the real record in a JSON string
            records = []
            for event in data.get("Events") or []:
                if "CloudTrailEvent" in event:
                    records.append(json.loads(event["CloudTrailEvent"]))
                else:
                    records.append(event)
            return records
    raise ValueError("not a CloudTrail document")


def find_trail_files(dump_path) -> List[Path]:
    """Trail files under a dump folder (or the file itself), sorted."""
    dump_path = Path(dump_path)
    if dump_path.is_file():
        return [dump_path]
    if not dump_path.is_dir():
        return []
    files = [
        p for p in dump_path.rglob("*")
        if p.is_file()
        and p.name.endswith(TRAIL_SUFFIXES)
        and DIGEST_DIR not in p.relative_to(dump_path).parts
    ]
    return sorted(files)


def _read_safely(path: Path) -> Tuple[Path, List[Dict], Optional[str]]:
    try:
        return path, read_trail_file(path), None
    except Exception as e:
        return path, [], str(e)


class TrailLoader:
    """Loads CloudTrail dumps and flattens catalogued events to rows."""

    def __init__(
        self,
        dump_path,
        services: Optional[Iterable[str]] = None,
        event_names: Optional[Iterable[str]] = None,
        workers: int = config.DECOMPRESS_WORKERS,
    ):
        self.dump_path = Path(dump_path)
        self.services = set(services or config.SERVICES)
        self.event_names = set(event_names) if event_names else None
        self.workers = max(1, int(workers))

        self.rows: List[Dict] = []
        self.seen_event_ids = set()
        self.processing_errors: List[str] = []
        self.stats: Dict[str, int] = defaultdict(int)

    def find_trail_files(self) -> List[Path]:
        return find_trail_files(self.dump_path)

    def load(self) -> int:
        """Load every trail file under the dump path. Returns files processed."""
        files = self.find_trail_files()
        if not files:
            logger.warning(f"No CloudTrail files found in {self.dump_path}")
            return 0

        logger.info(
            f"Reading {len(files)} CloudTrail files with {self.workers} worker(s)"
        )
        if self.workers > 1 and len(files) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                # map() yields in submission order, so results stay sorted
                for result in executor.map(_read_safely, files):
                    self._process_file(*result)
        else:
            for path in files:
                self._process_file(*_read_safely(path))

        logger.info(
            f"Loaded {self.stats['rows']} rows from {self.stats['records_seen']} "
            f"records ({self.stats['duplicates']} duplicates, "
            f"{self.stats['unresolved_resource']} without a resource id)"
        )
        return len(files)

    def _process_file(self, path: Path, records: List[Dict], error: Optional[str]) -> None:
        if error:
            logger.warning(f"Error processing {path}: {error}")
            self.processing_errors.append(f"Error processing {path}: {error}")
            return
        self.stats["files_read"] += 1
        for record in records:
            self._process_record(record, str(path))

    def _process_record(self, record: Dict, source_file: str) -> None:
        self.stats["records_seen"] += 1
        if not isinstance(record, dict):
            self.stats["filtered_out"] += 1
            return

        event_name = record.get("eventName", "")
        service = service_for_event(record.get("eventSource", ""), event_name)
        if service is None or service not in self.services:
            self.stats["filtered_out"] += 1
            return
        if self.event_names is not None and event_name not in self.event_names:
            self.stats["filtered_out"] += 1
            return

        # Deduplicate by CloudTrail eventID
        event_id = record.get("eventID", "")
        if event_id:
            if event_id in self.seen_event_ids:
                self.stats["duplicates"] += 1
                return
            self.seen_event_ids.add(event_id)

        event_time = parse_event_time(record.get("eventTime", ""))
        if event_time is None:
            self.processing_errors.append(
                f"Invalid eventTime in {source_file}: {record.get('eventTime')!r}"
            )
            return

        resource_ids = extract_resource_ids(
            service,
            event_name,
            record.get("requestParameters"),
            record.get("responseElements"),
        )
        if not resource_ids:
            self.stats["unresolved_resource"] += 1
            return

        user_identity = record.get("userIdentity") or {}
        base = {
            "event_id": event_id,
            "event_time": event_time,
            "event_source": record.get("eventSource", ""),
            "event_name": event_name,
            "service": service,
            "transition": transition_for_event(service, event_name),
            "aws_region": record.get("awsRegion", ""),
            "account_id": record.get("recipientAccountId")
            or user_identity.get("accountId", ""),
            "user_id": extract_user_id(
                user_identity.get("arn", "unknown"),
                user_identity.get("principalId", ""),
            ),
            "source_ip": record.get("sourceIPAddress", ""),
            "error_code": record.get("errorCode") or "",
            "source_file": source_file,
        }
        for resource_id in resource_ids:
            self.rows.append(dict(base, resource_id=resource_id))
            self.stats["rows"] += 1

    def to_frame(self) -> pd.DataFrame:
        if not self.rows:
            return empty_events_frame()
        frame = pd.DataFrame(self.rows, columns=EVENT_COLUMNS)
        frame["event_time"] = pd.to_datetime(frame["event_time"], utc=True)
        return frame.sort_values(
            ["event_time", "event_id"], kind="mergesort"
        ).reset_index(drop=True)


def empty_events_frame() -> pd.DataFrame:
    frame = pd.DataFrame({col: pd.Series(dtype="object") for col in EVENT_COLUMNS})
    frame["event_time"] = pd.to_datetime(frame["event_time"], utc=True)
    return frame


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def _listing_fingerprint(dump_path) -> str:
    """Names, sizes and mtimes of the trail files, so new or changed files give a new key."""
    dump_path = Path(dump_path)
    base = dump_path.parent if dump_path.is_file() else dump_path
    entries = []
    for path in find_trail_files(dump_path):
        stat = path.stat()
        entries.append(f"{path.relative_to(base)}:{stat.st_size}:{stat.st_mtime_ns}")
    return "\n".join(entries)


def snapshot_path_for(dump_path, snapshot_dir=config.SNAPSHOT_DIR, services=None) -> Path:
    """Snapshot file name for a dump path, its current file listing and the service selection."""
    resolved = str(Path(dump_path).resolve())
    key = "|".join([
        resolved,
        ",".join(sorted(services or config.SERVICES)),
        _listing_fingerprint(dump_path),
    ])
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
    return Path(snapshot_dir) / f"{Path(dump_path).name or 'dump'}-{digest}.pkl"


def save_snapshot(frame: pd.DataFrame, path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_pickle(path)
    logger.info(f"Snapshot written: {path} ({len(frame)} rows)")
    return path


def load_snapshot(path) -> pd.DataFrame:
    frame = pd.read_pickle(path)
    logger.info(f"Snapshot loaded: {path} ({len(frame)} rows)")
    return frame
