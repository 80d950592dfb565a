"""Catalog of the CloudTrail events that describe cluster and table lifecycles.

Every catalogued event maps to a transition kind:

- ``up``: the resource starts running (create, restore, resume)
- ``down``: the resource stops running (delete, pause, terminate)
- ``activity``: the resource is used while it is up
"""

from typing import Dict, Iterable, List, Optional

UP = "up"
DOWN = "down"
ACTIVITY = "activity"
TRANSITIONS = (UP, DOWN, ACTIVITY)

SERVICE_CATALOG: Dict[str, Dict] = {
    "redshift": {
        "sources": frozenset([
            "redshift.amazonaws.com",
            "redshift-data.amazonaws.com",
        ]),
        "events": {
            "CreateCluster": UP,
            "RestoreFromClusterSnapshot": UP,
            "ResumeCluster": UP,
            "DeleteCluster": DOWN,
            "PauseCluster": DOWN,
            "ModifyCluster": ACTIVITY,
            "RebootCluster": ACTIVITY,
            "ResizeCluster": ACTIVITY,
            "GetClusterCredentials": ACTIVITY,
            "GetClusterCredentialsWithIAM": ACTIVITY,
            "ExecuteStatement": ACTIVITY,
            "BatchExecuteStatement": ACTIVITY,
        },
        "id_paths": [
            ("requestParameters", "clusterIdentifier"),
            ("responseElements", "clusterIdentifier"),
        ],
    },
    "emr": {
        "sources": frozenset(["elasticmapreduce.amazonaws.com"]),
        "events": {
            "RunJobFlow": UP,
            "TerminateJobFlows": DOWN,
            "AddJobFlowSteps": ACTIVITY,
            "CancelSteps": ACTIVITY,
            "ModifyInstanceGroups": ACTIVITY,
            "AddInstanceGroups": ACTIVITY,
            "ModifyInstanceFleet": ACTIVITY,
            "AddInstanceFleet": ACTIVITY,
            "ModifyCluster": ACTIVITY,
        },
        "id_paths": [
            ("responseElements", "jobFlowId"),
            ("requestParameters", "jobFlowIds"),
            ("requestParameters", "jobFlowId"),
            ("requestParameters", "clusterId"),
        ],
    },
    "dynamodb": {
        "sources": frozenset(["dynamodb.amazonaws.com"]),
        "events": {
            "CreateTable": UP,
            "RestoreTableFromBackup": UP,
            "RestoreTableToPointInTime": UP,
            "DeleteTable": DOWN,
            "UpdateTable": ACTIVITY,
            "UpdateTimeToLive": ACTIVITY,
            "CreateBackup": ACTIVITY,
            "GetItem": ACTIVITY,
            "PutItem": ACTIVITY,
            "UpdateItem": ACTIVITY,
            "DeleteItem": ACTIVITY,
            "Query": ACTIVITY,
            "Scan": ACTIVITY,
            "BatchGetItem": ACTIVITY,
            "BatchWriteItem": ACTIVITY,
        },
        "id_paths": [
            ("requestParameters", "targetTableName"),
            ("requestParameters", "tableName"),
            ("requestParameters", "tableArn"),
            ("requestParameters", "requestItems"),
        ],
    },
}

_SOURCE_TO_SERVICE = {
    source: service
    for service, entry in SERVICE_CATALOG.items()
    for source in entry["sources"]
}


def service_for_event(event_source: str, event_name: str) -> Optional[str]:
    """Service a CloudTrail record belongs to, or None if not catalogued."""
    service = _SOURCE_TO_SERVICE.get(event_source or "")
    if service and event_name in SERVICE_CATALOG[service]["events"]:
        return service
    return None


def transition_for_event(service: str, event_name: str) -> Optional[str]:
    entry = SERVICE_CATALOG.get(service)
    if not entry:
        return None
    return entry["events"].get(event_name)


def _normalise_id(service: str, key: str, value) -> List[str]:
    if isinstance(value, dict):
        # BatchGetItem / BatchWriteItem: {"requestItems": {"table": [...]}}
        return [str(k) for k in value.keys()]
    if isinstance(value, (list, tuple)):
        ids = []
        for item in value:
            ids.extend(_normalise_id(service, key, item))
        return ids
    if value is None:
        return []
    text = str(value).strip()
    if not text:
        return []
    if key == "tableArn" and ":table/" in text:
        text = text.split(":table/", 1)[1].split("/", 1)[0]
    return [text]


def extract_resource_ids(
    service: str,
    event_name: str,
    request_parameters: Optional[Dict],
    response_elements: Optional[Dict],
) -> List[str]:
    """Resource identifiers touched by one event, first matching path wins."""
    entry = SERVICE_CATALOG.get(service)
    if not entry:
        return []
    sections = {
        "requestParameters": request_parameters or {},
        "responseElements": response_elements or {},
    }
    for section, key in entry["id_paths"]:
        value = sections[section].get(key)
        ids = _normalise_id(service, key, value)
        if ids:
            seen = []
            for resource_id in ids:
                if resource_id not in seen:
                    seen.append(resource_id)
            return seen
    return []


def event_names_for(
    services: Iterable[str], transitions: Optional[Iterable[str]] = None
) -> List[str]:
    """All catalogued event names for the given services, sorted."""
    wanted = set(transitions) if transitions else set(TRANSITIONS)
    names = set()
    for service in services:
        entry = SERVICE_CATALOG.get(service)
        if not entry:
            raise ValueError(f"Unknown service: {service}")
        names.update(n for n, kind in entry["events"].items() if kind in wanted)
    return sorted(names)
