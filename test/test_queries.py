"""Tests for the read-only query layer."""

import json

import pytest

import cnpg_queries as queries
from cnpg_errors import NotFoundError
from cnpg_resources import BACKUP_PLURAL, POOLER_PLURAL, SCHEDULED_BACKUP_PLURAL
from cnpg_manifests import build_pooler_manifest, build_scheduled_backup_manifest
from fakes import make_backup, make_cluster


def _json_payload(text: str):
    return json.loads(text.split("\n\n", 1)[1])


def test_list_clusters_empty(fake_client):
    assert queries.list_clusters(fake_client, "default") == "No PostgreSQL clusters found in namespace 'default'."
    assert queries.list_clusters(fake_client) == "No PostgreSQL clusters found in any namespace."


def test_list_clusters_across_namespaces(fake_client):
    fake_client.add_cluster(name="main-db", namespace="default")
    fake_client.add_cluster(name="reports", namespace="analytics", instances=1)

    text = queries.list_clusters(fake_client)

    assert text.startswith("Found 2 PostgreSQL cluster(s):")
    summary = {item["name"]: item for item in _json_payload(text)}
    assert summary["reports"]["namespace"] == "analytics"
    assert summary["reports"]["instances"] == 1
    assert summary["main-db"]["primary"] == "main-db-1"


def test_cluster_status_shows_hibernation(fake_client):
    cluster = make_cluster()
    cluster["metadata"]["annotations"] = {"cnpg.io/hibernation": "on"}
    cluster["status"]["conditions"] = [{"type": "Ready", "status": "False", "reason": "Hibernated"}]
    fake_client.add("clusters", cluster)

    text = queries.get_cluster_status(fake_client, "main-db", "default")

    assert "**Cluster: default/main-db**" in text
    assert "- Hibernation: on" in text
    assert "- Ready: False (Hibernated)" in text


def test_get_cluster_renders_yaml(fake_client):
    fake_client.add_cluster()

    text = queries.get_cluster(fake_client, "main-db", "default")

    assert "```yaml" in text
    assert "kind: Cluster" in text


def test_cluster_pods(fake_client):
    fake_client.pods["default"] = [
        {
            "metadata": {"name": "main-db-1", "labels": {"cnpg.io/cluster": "main-db", "cnpg.io/instanceRole": "primary"}},
            "spec": {"nodeName": "node-a"},
            "status": {"phase": "Running", "podIP": "10.0.0.5",
                       "containerStatuses": [{"ready": True, "restartCount": 2}]},
        },
        {
            "metadata": {"name": "other-1", "labels": {"cnpg.io/cluster": "other"}},
            "status": {"phase": "Running"},
        },
    ]

    text = queries.get_cluster_pods(fake_client, "main-db", "default")

    [pod] = _json_payload(text)
    assert pod == {
        "name": "main-db-1", "status": "Running", "ready": True, "restarts": 2,
        "node": "node-a", "ip": "10.0.0.5", "role": "primary",
    }


def test_cluster_events_most_recent_first(fake_client):
    fake_client.events["default"] = [
        {"type": "Normal", "reason": "CreatingInstance", "lastTimestamp": "2024-05-01T10:00:00Z",
         "involvedObject": {"kind": "Cluster", "name": "main-db"}},
        {"type": "Warning", "reason": "SwitchoverRequested", "lastTimestamp": "2024-05-02T08:30:00Z",
         "involvedObject": {"kind": "Cluster", "name": "main-db"}},
    ]

    text = queries.get_cluster_events(fake_client, "main-db", "default")

    reasons = [event["reason"] for event in _json_payload(text)]
    assert reasons == ["SwitchoverRequested", "CreatingInstance"]


def test_logs_default_to_current_primary(fake_client):
    fake_client.add_cluster()
    fake_client.logs[("default", "main-db-1")] = "a\nb\nc"

    text = queries.get_cluster_logs(fake_client, "main-db", "default", tail_lines=2)

    assert "pod 'default/main-db-1'" in text
    assert text.endswith("b\nc")
    assert ("read_pod_log", ("main-db-1", "default", "postgres", 2)) in fake_client.calls


def test_logs_without_primary(fake_client):
    cluster = make_cluster()
    del cluster["status"]["currentPrimary"]
    fake_client.add("clusters", cluster)

    with pytest.raises(NotFoundError, match="no current primary"):
        queries.get_cluster_logs(fake_client, "main-db", "default")


def test_list_backups_filtered_by_cluster(fake_client):
    fake_client.add(BACKUP_PLURAL, make_backup("main-1", cluster_name="main-db"))
    fake_client.add(BACKUP_PLURAL, make_backup("other-1", cluster_name="other"))

    text = queries.list_backups(fake_client, "default", cluster_name="main-db")

    assert text.startswith("Found 1 backup(s):")
    [backup] = _json_payload(text)
    assert backup["name"] == "main-1"
    assert backup["status"] == "completed"


def test_backup_details(fake_client):
    fake_client.add(BACKUP_PLURAL, make_backup("main-1"))

    text = queries.get_backup_details(fake_client, "main-1", "default")

    assert text.startswith("## Backup Details: default/main-1")
    assert "phase: completed" in text


def test_list_scheduled_backups(fake_client):
    fake_client.add(
        SCHEDULED_BACKUP_PLURAL,
        build_scheduled_backup_manifest("nightly", "default", "main-db", "0 0 0 * * *", suspend=True),
    )

    [item] = _json_payload(queries.list_scheduled_backups(fake_client, "default"))

    assert item["schedule"] == "0 0 0 * * *"
    assert item["suspended"] is True
    assert item["lastScheduleTime"] == "never"


def test_list_poolers(fake_client):
    fake_client.add(POOLER_PLURAL, build_pooler_manifest("main-db", "default", pool_mode="transaction"))

    [pooler] = _json_payload(queries.list_poolers(fake_client, "default", cluster_name="main-db"))

    assert pooler["name"] == "main-db-pooler-rw"
    assert pooler["poolMode"] == "transaction"


def test_concise_cluster_status_omits_conditions(fake_client):
    cluster = make_cluster()
    cluster["status"]["conditions"] = [{"type": "Ready", "status": "True"}]
    fake_client.add("clusters", cluster)

    concise = queries.get_cluster_status(fake_client, "main-db", "default", detail_level="concise")
    detailed = queries.get_cluster_status(fake_client, "main-db", "default")

    assert "- Current Primary: main-db-1" in concise
    assert "**Conditions:**" not in concise
    assert "**Conditions:**" in detailed
