"""
Document compiler: builds complete CloudNativePG resource documents from
validated intent arguments.

All builders are pure. Optional blocks are left out of the document
entirely when the caller does not supply them; CloudNativePG treats an
absent field and a null field differently, so no builder ever emits None.
"""

import itertools
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from cnpg_resources import CNPG_GROUP, CNPG_VERSION

API_VERSION = f"{CNPG_GROUP}/{CNPG_VERSION}"

POSTGRES_IMAGE = "ghcr.io/cloudnative-pg/postgresql"

DEFAULT_INSTANCES = 3
DEFAULT_STORAGE_SIZE = "10Gi"
DEFAULT_POSTGRES_VERSION = "16"
DEFAULT_DATABASE = "app"
DEFAULT_OWNER = "app"
DEFAULT_POOLER_INSTANCES = 1
DEFAULT_POOL_TYPE = "rw"
DEFAULT_POOL_MODE = "session"

DEFAULT_POSTGRES_PARAMETERS = {
    "max_connections": "100",
    "shared_buffers": "256MB",
    "effective_cache_size": "1GB",
}

# Distinct suffixes for names generated within the same clock tick.
_name_sequence = itertools.count(secrets.randbelow(0x10000))


def postgres_image(postgres_version: str) -> str:
    return f"{POSTGRES_IMAGE}:{postgres_version}"


def stringify_parameters(parameters: Mapping[str, Any]) -> Dict[str, str]:
    """PostgreSQL parameters are strings in the Cluster schema."""
    result = {}
    for key, value in parameters.items():
        if isinstance(value, bool):
            result[key] = "on" if value else "off"
        else:
            result[key] = str(value)
    return result


def generate_backup_name(cluster_name: str) -> str:
    """
    Generate a backup name of the form ``<cluster>-backup-<timestamp>-<suffix>``.

    The timestamp has microsecond resolution and the suffix comes from a
    process-wide sequence, so two calls never return the same name.
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    suffix = next(_name_sequence) % 0x10000
    return f"{cluster_name}-backup-{timestamp}-{suffix:04x}"


def default_pooler_name(cluster_name: str, pool_type: str) -> str:
    return f"{cluster_name}-pooler-{pool_type}"


def _metadata(name: str, namespace: str) -> Dict[str, Any]:
    return {"name": name, "namespace": namespace}


def _storage(storage_size: str, storage_class: Optional[str]) -> Dict[str, Any]:
    storage: Dict[str, Any] = {"size": storage_size}
    if storage_class:
        storage["storageClass"] = storage_class
    return storage


def _cluster_document(
    name: str,
    namespace: str,
    instances: int,
    storage_size: str,
    storage_class: Optional[str],
    bootstrap: Dict[str, Any],
    postgres_version: Optional[str] = None,
    parameters: Optional[Mapping[str, Any]] = None,
    enable_monitoring: bool = False,
    image_name: Optional[str] = None,
) -> Dict[str, Any]:
    merged_parameters = dict(DEFAULT_POSTGRES_PARAMETERS)
    if parameters:
        merged_parameters.update(stringify_parameters(parameters))

    spec: Dict[str, Any] = {"instances": instances}
    if postgres_version:
        spec["imageName"] = postgres_image(postgres_version)
    elif image_name:
        spec["imageName"] = image_name
    spec["postgresql"] = {"parameters": merged_parameters}
    spec["bootstrap"] = bootstrap
    spec["storage"] = _storage(storage_size, storage_class)
    if enable_monitoring:
        spec["monitoring"] = {"enablePodMonitor": True}

    return {
        "apiVersion": API_VERSION,
        "kind": "Cluster",
        "metadata": _metadata(name, namespace),
        "spec": spec,
    }


def build_cluster_manifest(
    name: str,
    namespace: str,
    instances: int = DEFAULT_INSTANCES,
    storage_size: str = DEFAULT_STORAGE_SIZE,
    postgres_version: str = DEFAULT_POSTGRES_VERSION,
    storage_class: Optional[str] = None,
    database: str = DEFAULT_DATABASE,
    owner: str = DEFAULT_OWNER,
    parameters: Optional[Mapping[str, Any]] = None,
    enable_monitoring: bool = False,
) -> Dict[str, Any]:
    """
    Build a new Cluster bootstrapped with initdb.

    The application database and owner default to ``app``; the owner's
    credentials are read from the ``<name>-app-user`` secret.
    """
    bootstrap = {
        "initdb": {
            "database": database,
            "owner": owner,
            "secret": {"name": f"{name}-app-user"},
        }
    }
    return _cluster_document(
        name, namespace, instances, storage_size, storage_class, bootstrap,
        postgres_version=postgres_version,
        parameters=parameters,
        enable_monitoring=enable_monitoring,
    )


def build_restore_cluster_manifest(
    new_cluster_name: str,
    namespace: str,
    backup_name: str,
    instances: int = DEFAULT_INSTANCES,
    storage_size: str = DEFAULT_STORAGE_SIZE,
    storage_class: Optional[str] = None,
    target_time: Optional[str] = None,
    postgres_version: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build a new Cluster bootstrapped from an existing Backup.

    With ``target_time`` the recovery stops at that instant (point-in-time
    recovery) instead of replaying all available WAL.
    """
    recovery: Dict[str, Any] = {"backup": {"name": backup_name}}
    if target_time:
        recovery["recoveryTarget"] = {"targetTime": target_time}

    return _cluster_document(
        new_cluster_name, namespace, instances, storage_size, storage_class,
        {"recovery": recovery},
        postgres_version=postgres_version,
    )


def build_replica_cluster_manifest(
    name: str,
    namespace: str,
    source_cluster_name: str,
    instances: int = DEFAULT_INSTANCES,
    storage_size: str = DEFAULT_STORAGE_SIZE,
    storage_class: Optional[str] = None,
    postgres_version: Optional[str] = None,
    image_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build a replica Cluster streaming from another cluster in the same namespace.

    The replica bootstraps with pg_basebackup and connects as
    ``streaming_replica`` using the source cluster's replication and CA
    secrets, which CloudNativePG creates for every cluster. Pass the
    source's ``image_name`` (or a ``postgres_version``) so both run the same
    major version.
    """
    document = _cluster_document(
        name, namespace, instances, storage_size, storage_class,
        {"pg_basebackup": {"source": source_cluster_name}},
        postgres_version=postgres_version,
        image_name=image_name,
    )
    document["spec"]["replica"] = {
        "enabled": True,
        "source": source_cluster_name,
    }
    document["spec"]["externalClusters"] = [
        {
            "name": source_cluster_name,
            "connectionParameters": {
                "host": f"{source_cluster_name}-rw.{namespace}.svc",
                "user": "streaming_replica",
                "dbname": "postgres",
                "sslmode": "verify-full",
            },
            "sslKey": {"name": f"{source_cluster_name}-replication", "key": "tls.key"},
            "sslCert": {"name": f"{source_cluster_name}-replication", "key": "tls.crt"},
            "sslRootCert": {"name": f"{source_cluster_name}-ca", "key": "ca.crt"},
        }
    ]
    return document


def build_backup_manifest(
    cluster_name: str,
    namespace: str,
    backup_name: Optional[str] = None,
    method: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an on-demand Backup; the name is generated when not supplied."""
    spec: Dict[str, Any] = {"cluster": {"name": cluster_name}}
    if method:
        spec["method"] = method

    return {
        "apiVersion": API_VERSION,
        "kind": "Backup",
        "metadata": _metadata(backup_name or generate_backup_name(cluster_name), namespace),
        "spec": spec,
    }


def build_scheduled_backup_manifest(
    name: str,
    namespace: str,
    cluster_name: str,
    schedule: str,
    backup_retention_policy: Optional[str] = None,
    suspend: Optional[bool] = None,
    immediate: Optional[bool] = None,
    method: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build a ScheduledBackup.

    ScheduledBackup has no retention field of its own (retention is
    enforced from the Cluster's ``spec.backup.retentionPolicy``), so a
    requested policy is recorded as the ``cnpg.io/backupRetentionPolicy``
    annotation for operators to read.
    """
    metadata = _metadata(name, namespace)
    if backup_retention_policy:
        metadata["annotations"] = {"cnpg.io/backupRetentionPolicy": backup_retention_policy}

    spec: Dict[str, Any] = {
        "schedule": schedule,
        "cluster": {"name": cluster_name},
        "backupOwnerReference": "self",
    }
    if suspend is not None:
        spec["suspend"] = suspend
    if immediate is not None:
        spec["immediate"] = immediate
    if method:
        spec["method"] = method

    return {
        "apiVersion": API_VERSION,
        "kind": "ScheduledBackup",
        "metadata": metadata,
        "spec": spec,
    }


def build_pooler_manifest(
    cluster_name: str,
    namespace: str,
    name: Optional[str] = None,
    instances: int = DEFAULT_POOLER_INSTANCES,
    pool_type: str = DEFAULT_POOL_TYPE,
    pool_mode: str = DEFAULT_POOL_MODE,
    max_client_conn: Optional[int] = None,
    default_pool_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a PgBouncer Pooler in front of a cluster's rw or ro service."""
    pgbouncer: Dict[str, Any] = {"poolMode": pool_mode}
    parameters = {}
    if max_client_conn is not None:
        parameters["max_client_conn"] = str(max_client_conn)
    if default_pool_size is not None:
        parameters["default_pool_size"] = str(default_pool_size)
    if parameters:
        pgbouncer["parameters"] = parameters

    return {
        "apiVersion": API_VERSION,
        "kind": "Pooler",
        "metadata": _metadata(name or default_pooler_name(cluster_name, pool_type), namespace),
        "spec": {
            "cluster": {"name": cluster_name},
            "instances": instances,
            "type": pool_type,
            "pgbouncer": pgbouncer,
        },
    }
