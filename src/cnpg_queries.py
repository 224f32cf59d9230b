"""
Read-only queries: listing and formatting clusters, backups, scheduled
backups, poolers, pods, events and logs.

These functions only read through the resource client; they never build
merge strategies or submit documents.
"""

from typing import Any, Dict, List, Optional

from cnpg_errors import NotFoundError
from cnpg_resources import (
    BACKUP_PLURAL,
    CLUSTER_PLURAL,
    POOLER_PLURAL,
    SCHEDULED_BACKUP_PLURAL,
    backup_ref,
    cluster_ref,
)
from cnpg_utils import to_json, to_yaml, truncate_response

HIBERNATION_ANNOTATION = "cnpg.io/hibernation"


def _belongs_to(resource: Dict[str, Any], cluster_name: Optional[str]) -> bool:
    if not cluster_name:
        return True
    return resource.get('spec', {}).get('cluster', {}).get('name') == cluster_name


def format_cluster_status(cluster: Dict[str, Any], detail_level: str = "detailed") -> str:
    """Format cluster status in a human-readable way."""
    metadata = cluster.get('metadata', {})
    spec = cluster.get('spec', {})
    status = cluster.get('status', {})

    name = metadata.get('name', 'unknown')
    namespace = metadata.get('namespace', 'unknown')
    instances = spec.get('instances', 0)

    phase = status.get('phase', 'Unknown')
    ready_instances = status.get('readyInstances', 0)
    current_primary = status.get('currentPrimary', 'unknown')

    result = f"**Cluster: {namespace}/{name}**\n"
    result += f"- Status: {phase}\n"
    result += f"- Instances: {ready_instances}/{instances} ready\n"
    result += f"- Current Primary: {current_primary}\n"

    hibernation = (metadata.get('annotations') or {}).get(HIBERNATION_ANNOTATION)
    if hibernation == "on":
        result += "- Hibernation: on\n"

    if detail_level == "detailed":
        result += f"- Target Primary: {status.get('targetPrimary', 'unknown')}\n"
        result += f"- PostgreSQL Image: {spec.get('imageName', 'unknown')}\n"
        result += f"- Storage Size: {spec.get('storage', {}).get('size', 'unknown')}\n"

        instances_status = status.get('instancesStatus', {})
        if instances_status:
            result += "\n**Instances by state:**\n"
            for state, pods in instances_status.items():
                result += f"- {state}: {', '.join(pods)}\n"

        conditions = status.get('conditions', [])
        if conditions:
            result += "\n**Conditions:**\n"
            for condition in conditions:
                ctype = condition.get('type', 'Unknown')
                cstatus = condition.get('status', 'Unknown')
                reason = condition.get('reason', '')
                message = condition.get('message', '')
                result += f"- {ctype}: {cstatus}"
                if reason:
                    result += f" ({reason})"
                if message:
                    result += f"\n  {message}"
                result += "\n"

    return result


def list_clusters(client, namespace: Optional[str] = None) -> str:
    clusters = client.list(CLUSTER_PLURAL, namespace)

    if not clusters:
        if namespace:
            return f"No PostgreSQL clusters found in namespace '{namespace}'."
        return "No PostgreSQL clusters found in any namespace."

    summary = []
    for cluster in clusters:
        metadata = cluster.get('metadata', {})
        spec = cluster.get('spec', {})
        status = cluster.get('status', {})
        summary.append({
            "name": metadata.get('name', 'unknown'),
            "namespace": metadata.get('namespace', 'unknown'),
            "instances": spec.get('instances', 0),
            "image": spec.get('imageName', 'unknown'),
            "status": status.get('phase', 'Unknown'),
            "readyInstances": status.get('readyInstances', 0),
            "primary": status.get('currentPrimary', 'unknown'),
        })

    return truncate_response(f"Found {len(clusters)} PostgreSQL cluster(s):\n\n{to_json(summary)}")


def get_cluster(client, name: str, namespace: str) -> str:
    cluster = client.get(cluster_ref(name, namespace))
    return truncate_response(f"## Cluster: {namespace}/{name}\n\n```yaml\n{to_yaml(cluster)}```")


def get_cluster_status(client, name: str, namespace: str, detail_level: str = "detailed") -> str:
    cluster = client.get(cluster_ref(name, namespace))
    return truncate_response(format_cluster_status(cluster, detail_level))


def get_cluster_pods(client, name: str, namespace: str) -> str:
    pods = client.list_pods(namespace, f"cnpg.io/cluster={name}")

    if not pods:
        return f"No pods found for cluster '{namespace}/{name}'."

    summary = []
    for pod in pods:
        metadata = pod.get('metadata', {})
        status = pod.get('status', {})
        container_statuses = status.get('containerStatuses') or []
        summary.append({
            "name": metadata.get('name', 'unknown'),
            "status": status.get('phase', 'unknown'),
            "ready": bool(container_statuses) and all(cs.get('ready') for cs in container_statuses),
            "restarts": sum(cs.get('restartCount', 0) for cs in container_statuses),
            "node": pod.get('spec', {}).get('nodeName', 'unknown'),
            "ip": status.get('podIP', 'unknown'),
            "role": (metadata.get('labels') or {}).get('cnpg.io/instanceRole', 'unknown'),
        })

    return truncate_response(f"Pods for cluster '{namespace}/{name}':\n\n{to_json(summary)}")


def get_cluster_events(client, cluster_name: str, namespace: str) -> str:
    events = client.list_events(namespace, f"involvedObject.name={cluster_name}")

    summary = []
    for event in events:
        involved = event.get('involvedObject', {})
        summary.append({
            "type": event.get('type', 'Unknown'),
            "reason": event.get('reason', 'Unknown'),
            "message": event.get('message', 'No message'),
            "firstTime": event.get('firstTimestamp') or 'Unknown',
            "lastTime": event.get('lastTimestamp') or event.get('eventTime') or 'Unknown',
            "count": event.get('count') or 1,
            "source": event.get('source', {}).get('component', 'Unknown'),
            "object": {
                "kind": involved.get('kind', 'Unknown'),
                "name": involved.get('name', 'Unknown'),
            },
        })

    # Most recent first; RFC 3339 timestamps sort lexically, unknowns last.
    summary.sort(key=lambda e: e["lastTime"] if e["lastTime"] != 'Unknown' else "", reverse=True)

    return truncate_response(
        f"Events for cluster '{cluster_name}' ({len(summary)} events):\n\n{to_json(summary)}"
    )


def get_cluster_logs(
    client,
    name: str,
    namespace: str,
    pod_name: Optional[str] = None,
    container: Optional[str] = None,
    tail_lines: int = 100,
) -> str:
    if not pod_name:
        cluster = client.get(cluster_ref(name, namespace))
        pod_name = cluster.get('status', {}).get('currentPrimary')
        if not pod_name:
            raise NotFoundError(
                f"Cluster '{namespace}/{name}' has no current primary yet; pass pod_name to read a specific instance"
            )

    logs = client.read_pod_log(pod_name, namespace, container=container or "postgres", tail_lines=tail_lines)
    if not logs:
        return f"No log output from pod '{namespace}/{pod_name}'."
    return truncate_response(f"Last {tail_lines} log lines from pod '{namespace}/{pod_name}':\n\n{logs}")


def list_backups(client, namespace: str, cluster_name: Optional[str] = None) -> str:
    backups = [b for b in client.list(BACKUP_PLURAL, namespace) if _belongs_to(b, cluster_name)]

    summary = [{
        "name": backup.get('metadata', {}).get('name', 'unknown'),
        "cluster": backup.get('spec', {}).get('cluster', {}).get('name', 'unknown'),
        "method": backup.get('spec', {}).get('method') or backup.get('status', {}).get('method', 'unknown'),
        "status": backup.get('status', {}).get('phase', 'Unknown'),
        "startedAt": backup.get('status', {}).get('startedAt', 'unknown'),
        "stoppedAt": backup.get('status', {}).get('stoppedAt', 'unknown'),
    } for backup in backups]

    return truncate_response(f"Found {len(summary)} backup(s):\n\n{to_json(summary)}")


def get_backup_details(client, backup_name: str, namespace: str) -> str:
    backup = client.get(backup_ref(backup_name, namespace))
    return truncate_response(f"## Backup Details: {namespace}/{backup_name}\n\n```yaml\n{to_yaml(backup)}```")


def list_scheduled_backups(client, namespace: str, cluster_name: Optional[str] = None) -> str:
    items = [s for s in client.list(SCHEDULED_BACKUP_PLURAL, namespace) if _belongs_to(s, cluster_name)]

    summary: List[Dict[str, Any]] = []
    for item in items:
        spec = item.get('spec', {})
        status = item.get('status', {})
        summary.append({
            "name": item.get('metadata', {}).get('name', 'unknown'),
            "cluster": spec.get('cluster', {}).get('name', 'unknown'),
            "schedule": spec.get('schedule', 'unknown'),
            "suspended": bool(spec.get('suspend', False)),
            "lastScheduleTime": status.get('lastScheduleTime', 'never'),
            "nextScheduleTime": status.get('nextScheduleTime', 'unknown'),
        })

    return truncate_response(f"Found {len(summary)} scheduled backup(s):\n\n{to_json(summary)}")


def list_poolers(client, namespace: str, cluster_name: Optional[str] = None) -> str:
    poolers = [p for p in client.list(POOLER_PLURAL, namespace) if _belongs_to(p, cluster_name)]

    summary = []
    for pooler in poolers:
        spec = pooler.get('spec', {})
        summary.append({
            "name": pooler.get('metadata', {}).get('name', 'unknown'),
            "cluster": spec.get('cluster', {}).get('name', 'unknown'),
            "type": spec.get('type', 'rw'),
            "instances": spec.get('instances', 1),
            "poolMode": spec.get('pgbouncer', {}).get('poolMode', 'session'),
            "readyInstances": pooler.get('status', {}).get('instances', 0),
        })

    return truncate_response(f"Found {len(summary)} pooler(s):\n\n{to_json(summary)}")
