"""
Intent catalog: the closed set of operations and their argument schemas.

Each operation declares one pydantic model. Argument bags are validated
against it before any network access: unknown keys are rejected, missing
required keys fail, and values are range- and pattern-checked. Arguments
are accepted in the camelCase tool vocabulary (``clusterName``) as well as
by Python field name (``cluster_name``).
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Literal, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from cnpg_errors import UnknownOperation, ValidationError
from cnpg_manifests import default_pooler_name
from cnpg_utils import validate_rfc1123_name

QUANTITY_PATTERN = r'^[0-9]+(\.[0-9]+)?(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$'
RETENTION_PATTERN = r'^[1-9][0-9]*[dwm]$'
POSTGRES_VERSION_PATTERN = r'^[0-9]+(\.[0-9]+)?([-.][A-Za-z0-9.]+)?$'
IDENTIFIER_PATTERN = r'^[a-z_][a-z0-9_]{0,62}$'
EXTENSION_PATTERN = r'^[A-Za-z_][A-Za-z0-9_-]{0,62}$'

MAX_CLUSTER_INSTANCES = 10
MAX_POOLER_INSTANCES = 10

ParameterValue = Union[str, int, float, bool]
BackupMethod = Literal["barmanObjectStore", "volumeSnapshot", "plugin"]
PoolMode = Literal["session", "transaction"]
DetailLevel = Literal["concise", "detailed"]


# ============================================================================
# Base Models
# ============================================================================

class IntentModel(BaseModel):
    """Shared configuration for all intent argument schemas."""

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
        frozen=True,
    )


class NamespacedInput(IntentModel):
    namespace: str = Field(
        ...,
        description="Kubernetes namespace of the resource.",
        examples=["default", "production"]
    )

    @field_validator("namespace")
    @classmethod
    def check_namespace(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Namespace")


class NamedResourceInput(NamespacedInput):
    """Input for operations addressing one resource by name."""
    name: str = Field(..., description="Name of the resource.", examples=["main-db"])

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Resource")


class DryRunMixin(IntentModel):
    dry_run: bool = Field(
        False,
        description="If True, shows what would be submitted without changing anything."
    )


class NamedResourceActionInput(NamedResourceInput, DryRunMixin):
    """Input for a mutating operation on one named resource."""


# ============================================================================
# Read-only Inputs
# ============================================================================

class ClusterStatusInput(NamedResourceInput):
    """Input for reading a cluster's status."""
    detail_level: DetailLevel = Field(
        "detailed",
        description="Level of detail in the response. 'concise' for overview, 'detailed' adds image, storage, instance states and conditions."
    )


class ListClustersInput(IntentModel):
    """Input for listing PostgreSQL clusters."""
    namespace: Optional[str] = Field(
        None,
        description="Namespace to list clusters from. If not provided, lists clusters in all namespaces."
    )

    @field_validator("namespace")
    @classmethod
    def check_namespace(cls, value: Optional[str]) -> Optional[str]:
        return validate_rfc1123_name(value, "Namespace") if value is not None else value


class ClusterEventsInput(NamespacedInput):
    """Input for listing Kubernetes events of a cluster."""
    cluster_name: str = Field(..., description="Name of the cluster.")

    @field_validator("cluster_name")
    @classmethod
    def check_cluster_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Cluster")


class ClusterLogsInput(NamedResourceInput):
    """Input for reading PostgreSQL instance logs."""
    pod_name: Optional[str] = Field(
        None,
        description="Instance pod to read from. Defaults to the cluster's current primary."
    )
    container: Optional[str] = Field(None, description="Container name. Defaults to 'postgres'.")
    tail_lines: int = Field(100, description="Number of most recent log lines to return.", ge=1, le=5000)


class ListByClusterInput(NamespacedInput):
    """Input for listing backups, scheduled backups or poolers in a namespace."""
    cluster_name: Optional[str] = Field(None, description="Only return resources of this cluster.")


class BackupRefInput(NamespacedInput):
    """Input addressing one Backup."""
    backup_name: str = Field(..., description="Name of the backup.")

    @field_validator("backup_name")
    @classmethod
    def check_backup_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Backup")


class DeleteBackupInput(BackupRefInput, DryRunMixin):
    """Input for deleting a Backup."""


# ============================================================================
# Create-style Inputs
# ============================================================================

class StorageMixin(IntentModel):
    instances: int = Field(
        3,
        description="Number of PostgreSQL instances in the cluster (for high availability).",
        ge=1,
        le=MAX_CLUSTER_INSTANCES
    )
    storage_size: str = Field(
        "10Gi",
        description="Storage size for each instance (e.g., '10Gi', '100Gi').",
        pattern=QUANTITY_PATTERN
    )
    storage_class: Optional[str] = Field(
        None,
        description="Kubernetes storage class to use. If not specified, uses the cluster default."
    )


class CreateClusterInput(NamedResourceActionInput, StorageMixin):
    """Input for creating a new PostgreSQL cluster."""
    postgres_version: str = Field(
        "16",
        description="PostgreSQL major version to use.",
        examples=["15", "16", "17"],
        pattern=POSTGRES_VERSION_PATTERN
    )
    database: str = Field("app", description="Application database created at bootstrap.", pattern=IDENTIFIER_PATTERN)
    owner: str = Field("app", description="Owner of the application database.", pattern=IDENTIFIER_PATTERN)
    parameters: Optional[Dict[str, ParameterValue]] = Field(
        None,
        description="PostgreSQL parameters overriding the defaults (max_connections, shared_buffers, effective_cache_size)."
    )
    enable_monitoring: bool = Field(False, description="Create a PodMonitor for Prometheus.")


class RestoreClusterInput(NamespacedInput, StorageMixin, DryRunMixin):
    """Input for creating a new cluster from a backup."""
    new_cluster_name: str = Field(..., description="Name for the new cluster.")
    backup_name: str = Field(..., description="Name of the backup to restore from.")
    target_time: Optional[str] = Field(
        None,
        description="Point-in-time recovery target as an RFC 3339 timestamp. Replays all WAL if omitted.",
        examples=["2024-05-01T10:00:00Z"]
    )
    postgres_version: Optional[str] = Field(
        None,
        description="PostgreSQL version of the restored cluster; must match the backup's major version. Defaults to the operator's image.",
        pattern=POSTGRES_VERSION_PATTERN
    )

    @field_validator("new_cluster_name")
    @classmethod
    def check_cluster_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Cluster")

    @field_validator("backup_name")
    @classmethod
    def check_backup_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Backup")

    @field_validator("target_time")
    @classmethod
    def check_target_time(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"targetTime '{value}' is not an RFC 3339 timestamp")
        return value


class CreateReplicaClusterInput(NamedResourceActionInput, StorageMixin):
    """Input for creating a replica cluster of an existing cluster."""
    source_cluster_name: str = Field(..., description="Cluster to replicate from (same namespace).")
    postgres_version: Optional[str] = Field(
        None,
        description="PostgreSQL version; must match the source cluster's major version.",
        pattern=POSTGRES_VERSION_PATTERN
    )

    @model_validator(mode="after")
    def check_source(self):
        validate_rfc1123_name(self.source_cluster_name, "Source cluster")
        if self.source_cluster_name == self.name:
            raise ValueError("A replica cluster cannot replicate from itself")
        return self


class CreateBackupInput(NamespacedInput, DryRunMixin):
    """Input for an on-demand backup."""
    cluster_name: str = Field(..., description="Name of the cluster to back up.")
    backup_name: Optional[str] = Field(
        None,
        description="Name for the backup. Auto-generated as <cluster>-backup-<timestamp> if not provided."
    )
    method: Optional[BackupMethod] = Field(None, description="Backup method. Defaults to the cluster's configuration.")

    @field_validator("cluster_name")
    @classmethod
    def check_cluster_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Cluster")

    @field_validator("backup_name")
    @classmethod
    def check_backup_name(cls, value: Optional[str]) -> Optional[str]:
        return validate_rfc1123_name(value, "Backup") if value is not None else value


class CreateScheduledBackupInput(NamedResourceActionInput):
    """Input for a scheduled backup."""
    cluster_name: str = Field(..., description="Name of the cluster to back up.")
    schedule: str = Field(
        ...,
        description="Six-field cron expression, seconds first (e.g. '0 0 0 * * *' for daily at midnight).",
        examples=["0 0 0 * * *", "0 30 2 * * 0"]
    )
    backup_retention_policy: Optional[str] = Field(
        None,
        description="Retention such as '30d', '4w' or '6m'.",
        pattern=RETENTION_PATTERN
    )
    suspend: Optional[bool] = Field(None, description="Create the schedule suspended.")
    immediate: Optional[bool] = Field(None, description="Take the first backup immediately.")
    method: Optional[BackupMethod] = Field(None, description="Backup method.")

    @field_validator("cluster_name")
    @classmethod
    def check_cluster_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Cluster")

    @field_validator("schedule")
    @classmethod
    def check_schedule(cls, value: str) -> str:
        fields = value.split()
        if len(fields) != 6:
            raise ValueError(
                f"schedule '{value}' has {len(fields)} fields; CloudNativePG expects six "
                f"(seconds minutes hours day-of-month month day-of-week)"
            )
        return " ".join(fields)


class CreatePoolerInput(NamespacedInput, DryRunMixin):
    """Input for a PgBouncer pooler."""
    cluster_name: str = Field(..., description="Cluster to pool connections for.")
    name: Optional[str] = Field(None, description="Pooler name. Defaults to <cluster>-pooler-<type>.")
    instances: int = Field(1, description="Number of PgBouncer pods.", ge=1, le=MAX_POOLER_INSTANCES)
    pool_type: Literal["rw", "ro"] = Field("rw", alias="type", description="Service to pool: 'rw' (primary) or 'ro' (replicas).")
    pool_mode: PoolMode = Field("session", description="PgBouncer pool mode.")
    max_client_conn: Optional[int] = Field(None, description="PgBouncer max_client_conn.", ge=1)
    default_pool_size: Optional[int] = Field(None, description="PgBouncer default_pool_size.", ge=1)

    @field_validator("cluster_name")
    @classmethod
    def check_cluster_name(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Cluster")

    @field_validator("name")
    @classmethod
    def check_name(cls, value: Optional[str]) -> Optional[str]:
        return validate_rfc1123_name(value, "Pooler") if value is not None else value

    @model_validator(mode="after")
    def check_derived_name(self):
        # The operator names the Deployment and Service after the Pooler.
        if self.name is None:
            validate_rfc1123_name(default_pooler_name(self.cluster_name, self.pool_type), "Derived pooler")
        return self


# ============================================================================
# Update-style Inputs
# ============================================================================

class ScaleClusterInput(NamedResourceActionInput):
    """Input for scaling a cluster."""
    instances: int = Field(..., description="New number of instances.", ge=1, le=MAX_CLUSTER_INSTANCES)


class UpgradePostgresVersionInput(NamedResourceActionInput):
    """Input for changing a cluster's PostgreSQL image version."""
    postgres_version: str = Field(..., description="Target PostgreSQL version.", pattern=POSTGRES_VERSION_PATTERN)


class SwitchoverInput(NamedResourceActionInput):
    """Input for requesting a switchover to another instance."""
    target_primary: str = Field(..., description="Instance (pod) name to promote, e.g. 'main-db-2'.")

    @field_validator("target_primary")
    @classmethod
    def check_target(cls, value: str) -> str:
        return validate_rfc1123_name(value, "Instance")


class UpdateParametersInput(NamedResourceActionInput):
    """Input for patching PostgreSQL parameters."""
    parameters: Dict[str, ParameterValue] = Field(
        ...,
        description="Parameters to set, e.g. {\"max_connections\": \"200\"}. Other parameters are left untouched.",
        min_length=1
    )

    @field_validator("parameters")
    @classmethod
    def check_keys(cls, value: Dict[str, ParameterValue]) -> Dict[str, ParameterValue]:
        bad = [key for key in value if not re.match(r'^[a-z_][a-z0-9_.]*$', key)]
        if bad:
            raise ValueError(f"Invalid parameter names: {', '.join(sorted(bad))}")
        return value


class ConfigureReplicationInput(NamedResourceActionInput):
    """Input for synchronous replication settings."""
    min_sync_replicas: int = Field(..., description="Minimum number of synchronous replicas.", ge=0)
    max_sync_replicas: int = Field(..., description="Maximum number of synchronous replicas.", ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.max_sync_replicas < self.min_sync_replicas:
            raise ValueError("maxSyncReplicas must be greater than or equal to minSyncReplicas")
        return self


class AddTablespaceInput(NamedResourceActionInput):
    """Input for declaring a new tablespace on a cluster."""
    tablespace_name: str = Field(..., description="Tablespace name (a PostgreSQL identifier).", pattern=IDENTIFIER_PATTERN)
    storage_size: str = Field(..., description="Volume size for the tablespace.", pattern=QUANTITY_PATTERN)
    storage_class: Optional[str] = Field(None, description="Storage class for the tablespace volume.")
    owner: Optional[str] = Field(None, description="Role owning the tablespace.", pattern=IDENTIFIER_PATTERN)
    temporary: Optional[bool] = Field(None, description="Use as a temporary tablespace.")

    @field_validator("tablespace_name")
    @classmethod
    def check_reserved(cls, value: str) -> str:
        if value.startswith("pg_"):
            raise ValueError("Tablespace names starting with 'pg_' are reserved")
        return value


class EnableExtensionInput(NamedResourceActionInput):
    """Input for adding a CREATE EXTENSION statement."""
    extension_name: str = Field(..., description="Extension to create, e.g. 'pg_stat_statements'.", pattern=EXTENSION_PATTERN)


class CreateDatabaseInput(NamedResourceActionInput):
    """Input for adding a CREATE DATABASE statement."""
    database_name: str = Field(..., description="Database to create.", pattern=IDENTIFIER_PATTERN)
    owner: Optional[str] = Field(None, description="Role owning the database.", pattern=IDENTIFIER_PATTERN)


class ScalePoolerInput(NamedResourceActionInput):
    """Input for scaling a pooler."""
    instances: int = Field(..., description="New number of PgBouncer pods.", ge=1, le=MAX_POOLER_INSTANCES)


class UpdatePoolerModeInput(NamedResourceActionInput):
    """Input for changing a pooler's pool mode."""
    pool_mode: PoolMode = Field(..., description="New PgBouncer pool mode.")


class SuspendScheduledBackupInput(NamedResourceActionInput):
    """Input for suspending or resuming a scheduled backup."""
    suspend: bool = Field(..., description="True to suspend the schedule, False to resume it.")


# ============================================================================
# Catalog
# ============================================================================

READ = "read"
CREATE = "create"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class OperationSpec:
    name: str
    model: Type[IntentModel]
    category: str
    description: str


def _spec(name: str, model: Type[IntentModel], category: str, description: str) -> OperationSpec:
    return OperationSpec(name, model, category, description)


CATALOG: Dict[str, OperationSpec] = {spec.name: spec for spec in [
    _spec("list_clusters", ListClustersInput, READ, "List PostgreSQL clusters in a namespace or in all namespaces."),
    _spec("get_cluster", NamedResourceInput, READ, "Get the full definition of a cluster."),
    _spec("get_cluster_status", ClusterStatusInput, READ, "Get the current status and health of a cluster."),
    _spec("get_cluster_pods", NamedResourceInput, READ, "Get the instance pods of a cluster."),
    _spec("get_cluster_events", ClusterEventsInput, READ, "Get Kubernetes events related to a cluster."),
    _spec("get_cluster_logs", ClusterLogsInput, READ, "Get recent PostgreSQL logs from a cluster instance."),
    _spec("list_backups", ListByClusterInput, READ, "List backups in a namespace."),
    _spec("get_backup_details", BackupRefInput, READ, "Get the full definition and status of a backup."),
    _spec("list_scheduled_backups", ListByClusterInput, READ, "List scheduled backups in a namespace."),
    _spec("list_poolers", ListByClusterInput, READ, "List PgBouncer poolers in a namespace."),

    _spec("create_cluster", CreateClusterInput, CREATE, "Create a new PostgreSQL cluster."),
    _spec("restore_cluster", RestoreClusterInput, CREATE, "Create a new cluster from an existing backup."),
    _spec("create_replica_cluster", CreateReplicaClusterInput, CREATE, "Create a replica cluster streaming from an existing cluster."),
    _spec("create_backup", CreateBackupInput, CREATE, "Create an on-demand backup of a cluster."),
    _spec("create_scheduled_backup", CreateScheduledBackupInput, CREATE, "Create a scheduled backup for a cluster."),
    _spec("create_pooler", CreatePoolerInput, CREATE, "Create a PgBouncer pooler for a cluster."),

    _spec("delete_cluster", NamedResourceActionInput, DELETE, "Delete a PostgreSQL cluster."),
    _spec("delete_backup", DeleteBackupInput, DELETE, "Delete a backup."),
    _spec("delete_scheduled_backup", NamedResourceActionInput, DELETE, "Delete a scheduled backup."),
    _spec("delete_pooler", NamedResourceActionInput, DELETE, "Delete a pooler."),

    _spec("scale_cluster", ScaleClusterInput, UPDATE, "Change the number of instances of a cluster."),
    _spec("upgrade_postgres_version", UpgradePostgresVersionInput, UPDATE, "Change the PostgreSQL image version of a cluster."),
    _spec("pause_cluster", NamedResourceActionInput, UPDATE, "Hibernate a cluster (stop its pods, keep its volumes)."),
    _spec("resume_cluster", NamedResourceActionInput, UPDATE, "Resume a hibernated cluster."),
    _spec("restart_cluster", NamedResourceActionInput, UPDATE, "Request a rolling restart of a cluster."),
    _spec("switchover_cluster", SwitchoverInput, UPDATE, "Request a switchover to another instance."),
    _spec("update_postgres_parameters", UpdateParametersInput, UPDATE, "Set PostgreSQL parameters on a cluster."),
    _spec("configure_replication", ConfigureReplicationInput, UPDATE, "Set synchronous replication bounds on a cluster."),
    _spec("add_tablespace", AddTablespaceInput, UPDATE, "Declare an additional tablespace on a cluster."),
    _spec("enable_extension", EnableExtensionInput, UPDATE, "Add a CREATE EXTENSION statement to a cluster's bootstrap SQL."),
    _spec("create_database", CreateDatabaseInput, UPDATE, "Add a CREATE DATABASE statement to a cluster's bootstrap SQL."),
    _spec("scale_pooler", ScalePoolerInput, UPDATE, "Change the number of PgBouncer pods of a pooler."),
    _spec("update_pooler_mode", UpdatePoolerModeInput, UPDATE, "Change the pool mode of a pooler."),
    _spec("suspend_scheduled_backup", SuspendScheduledBackupInput, UPDATE, "Suspend or resume a scheduled backup."),
]}


def format_validation_error(operation: str, error: PydanticValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg', 'invalid value')}")
    return f"Invalid arguments for {operation}: " + "; ".join(problems)


def validate_intent(operation: str, arguments: Optional[Mapping[str, Any]]) -> IntentModel:
    """
    Validate an argument bag against the operation's schema.

    Raises:
        UnknownOperation: If the operation is not in the catalog
        ValidationError: If the arguments don't match the schema
    """
    spec = CATALOG.get(operation)
    if spec is None:
        raise UnknownOperation(
            f"Unknown operation '{operation}'. Available operations: {', '.join(sorted(CATALOG))}"
        )
    if arguments is not None and not isinstance(arguments, Mapping):
        raise ValidationError(f"Arguments for {operation} must be an object, got {type(arguments).__name__}")

    try:
        return spec.model.model_validate(dict(arguments or {}))
    except PydanticValidationError as e:
        raise ValidationError(format_validation_error(operation, e)) from e
