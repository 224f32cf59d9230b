"""
Operation dispatcher: the single entry point from an intent to its effects.

    dispatch(operation, arguments) -> OperationResult

Arguments are validated against the operation's schema before any remote
call. Create-style operations compile a document and submit it with
``create``. Update-style operations run a read-modify-write cycle:

    Validated -> Fetched -> Patched -> Submitted -> Done
                                     (any state) -> Failed

The fetched ``metadata.resourceVersion`` travels back in the replace body,
so a concurrent writer makes the replace fail with ConflictError instead of
being silently overwritten. Nothing is retried here; the caller decides.
Every failure is converted into an OperationResult at this boundary.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import cnpg_queries as queries
from cnpg_errors import CnpgError, NotFoundError, StructuralMismatch
from cnpg_intents import CATALOG, validate_intent
from cnpg_manifests import (
    build_backup_manifest,
    build_cluster_manifest,
    build_pooler_manifest,
    build_replica_cluster_manifest,
    build_restore_cluster_manifest,
    build_scheduled_backup_manifest,
    postgres_image,
    stringify_parameters,
)
from cnpg_patches import (
    AppendToArray,
    Create,
    MergeMap,
    MergeStrategy,
    SetField,
    ToggleAnnotation,
    apply_strategy,
    changed_paths,
    dotted,
    lookup,
    prepare_for_replace,
)
from cnpg_resources import (
    ResourceRef,
    backup_ref,
    cluster_ref,
    pooler_ref,
    scheduled_backup_ref,
)
from cnpg_utils import to_yaml

logger = logging.getLogger(__name__)

RESTART_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
SWITCHOVER_ANNOTATION = "cnpg.io/switchoverTo"

BOOTSTRAP_SQL_NOTE = (
    "Note: CloudNativePG runs bootstrap SQL when the cluster is initialized. "
    "Appending is not idempotent: repeating this request adds the statement again."
)


@dataclass(frozen=True)
class OperationResult:
    """Uniform envelope returned for every intent."""

    ok: bool
    message: str
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    retryable: bool = False

    @classmethod
    def success(cls, message: str) -> "OperationResult":
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, operation: str, error_kind: str, detail: str,
                suggestion: Optional[str] = None, retryable: bool = False) -> "OperationResult":
        message = f"Error executing {operation}: {detail}"
        if suggestion:
            message += f"\n\nSuggestion: {suggestion}"
        return cls(ok=False, message=message, error_kind=error_kind, detail=detail, retryable=retryable)


@dataclass(frozen=True)
class UpdateOutcome:
    """What a read-modify-write cycle fetched, produced and submitted."""

    before: Dict[str, Any]
    after: Dict[str, Any]
    changes: List[tuple]
    submitted: bool


Precondition = Callable[[Dict[str, Any]], None]


def _require_initdb_bootstrap(document: Dict[str, Any]) -> None:
    bootstrap = lookup(document, ("spec", "bootstrap"), {}) or {}
    other = sorted(method for method in bootstrap if method != "initdb")
    if other:
        raise StructuralMismatch(
            f"Cluster is bootstrapped with {', '.join(other)}, not initdb; "
            f"bootstrap SQL can only be added to initdb clusters"
        )


def _require_image_name(document: Dict[str, Any]) -> None:
    if lookup(document, ("spec", "imageCatalogRef")) is not None:
        raise StructuralMismatch(
            "Cluster selects its image through spec.imageCatalogRef; "
            "update the image catalog instead of setting imageName"
        )


def _quote_identifier(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class OperationDispatcher:
    """
    Routes intents to the compiler, patch engine or query layer.

    Args:
        client: Resource client (CustomResourceClient or a test double
            exposing get/list/create/replace/delete and the pod/event/log
            queries).
    """

    def __init__(self, client):
        self.client = client
        self._handlers: Dict[str, Callable[[Any], str]] = {
            name: getattr(self, f"_op_{name}") for name in CATALOG
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def dispatch(self, operation: str, arguments: Optional[Dict[str, Any]] = None) -> OperationResult:
        try:
            args = validate_intent(operation, arguments)
            logger.debug(f"{operation}: Validated")
            return OperationResult.success(self._handlers[operation](args))
        except CnpgError as e:
            logger.warning(f"{operation}: Failed ({e.kind}): {e.message}")
            return OperationResult.failure(
                operation, e.kind, e.message, suggestion=e.suggestion, retryable=e.retryable
            )
        except Exception as e:
            logger.exception(f"{operation}: Failed with unexpected error")
            return OperationResult.failure(operation, "InternalError", str(e) or type(e).__name__)

    # ------------------------------------------------------------------
    # Mutation protocol
    # ------------------------------------------------------------------

    def _create(self, ref: ResourceRef, document: Dict[str, Any], dry_run: bool) -> Optional[Dict[str, Any]]:
        """Submit a compiled document, or return None for a dry run."""
        body = apply_strategy({}, Create(document))
        if dry_run:
            return None
        return self.client.create(ref, body)

    def _update(
        self,
        ref: ResourceRef,
        strategy: MergeStrategy,
        dry_run: bool = False,
        precondition: Optional[Precondition] = None,
    ) -> UpdateOutcome:
        before = self.client.get(ref)
        logger.debug(f"{ref}: Fetched (resourceVersion={lookup(before, ('metadata', 'resourceVersion'))})")

        if precondition is not None:
            precondition(before)
        after = apply_strategy(before, strategy)
        changes = changed_paths(before, after)
        logger.debug(f"{ref}: Patched ({', '.join(dotted(p) for p in changes) or 'no changes'})")

        if dry_run or not changes:
            return UpdateOutcome(before, after, changes, submitted=False)

        logger.info(f"Replacing {ref} (changed: {', '.join(dotted(p) for p in changes)})")
        self.client.replace(ref, prepare_for_replace(after))
        logger.debug(f"{ref}: Submitted")
        return UpdateOutcome(before, after, changes, submitted=True)

    # ------------------------------------------------------------------
    # Message helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _dry_run_document(kind: str, name: str, namespace: str, document: Dict[str, Any], operation: str) -> str:
        return f"""Dry run: {kind} definition for '{name}' in namespace '{namespace}'

This is the {kind} definition that would be created:

```yaml
{to_yaml(document)}```

To create it, call {operation} again with dry_run=False (or omit the dry_run parameter).
"""

    @staticmethod
    def _describe_changes(outcome: UpdateOutcome) -> str:
        lines = []
        for path in outcome.changes:
            old = lookup(outcome.before, path, "(unset)")
            new = lookup(outcome.after, path, "(removed)")
            lines.append(f"- {dotted(path)}: {old} → {new}")
        return "\n".join(lines)

    def _update_message(self, outcome: UpdateOutcome, ref: ResourceRef, operation: str, success: str) -> str:
        if not outcome.changes:
            return f"No changes needed for {ref.label} '{ref.namespace}/{ref.name}'; nothing was submitted."
        if not outcome.submitted:
            return f"""Dry run: {operation} on {ref.label} '{ref.namespace}/{ref.name}'

Proposed changes:
{self._describe_changes(outcome)}

To apply these changes, call {operation} again with dry_run=False (or omit the dry_run parameter).
"""
        return f"{success}\n\nChanges submitted:\n{self._describe_changes(outcome)}"

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    def _op_list_clusters(self, args) -> str:
        return queries.list_clusters(self.client, args.namespace)

    def _op_get_cluster(self, args) -> str:
        return queries.get_cluster(self.client, args.name, args.namespace)

    def _op_get_cluster_status(self, args) -> str:
        return queries.get_cluster_status(self.client, args.name, args.namespace, detail_level=args.detail_level)

    def _op_get_cluster_pods(self, args) -> str:
        return queries.get_cluster_pods(self.client, args.name, args.namespace)

    def _op_get_cluster_events(self, args) -> str:
        return queries.get_cluster_events(self.client, args.cluster_name, args.namespace)

    def _op_get_cluster_logs(self, args) -> str:
        return queries.get_cluster_logs(
            self.client, args.name, args.namespace,
            pod_name=args.pod_name, container=args.container, tail_lines=args.tail_lines,
        )

    def _op_list_backups(self, args) -> str:
        return queries.list_backups(self.client, args.namespace, args.cluster_name)

    def _op_get_backup_details(self, args) -> str:
        return queries.get_backup_details(self.client, args.backup_name, args.namespace)

    def _op_list_scheduled_backups(self, args) -> str:
        return queries.list_scheduled_backups(self.client, args.namespace, args.cluster_name)

    def _op_list_poolers(self, args) -> str:
        return queries.list_poolers(self.client, args.namespace, args.cluster_name)

    # ------------------------------------------------------------------
    # Create-style operations
    # ------------------------------------------------------------------

    def _op_create_cluster(self, args) -> str:
        document = build_cluster_manifest(
            args.name, args.namespace,
            instances=args.instances,
            storage_size=args.storage_size,
            postgres_version=args.postgres_version,
            storage_class=args.storage_class,
            database=args.database,
            owner=args.owner,
            parameters=args.parameters,
            enable_monitoring=args.enable_monitoring,
        )
        if self._create(cluster_ref(args.name, args.namespace), document, args.dry_run) is None:
            return self._dry_run_document("cluster", args.name, args.namespace, document, "create_cluster")

        storage_class = args.storage_class or "(cluster default)"
        return f"""Successfully created PostgreSQL cluster '{args.name}' in namespace '{args.namespace}'.

Configuration:
- Instances: {args.instances}
- PostgreSQL Version: {args.postgres_version}
- Storage: {args.storage_size} ({storage_class})
- Database: {args.database} (owner: {args.owner})

The cluster is now being provisioned. You can monitor its status using:
get_cluster_status(namespace="{args.namespace}", name="{args.name}")
"""

    def _op_restore_cluster(self, args) -> str:
        backup = self.client.get(backup_ref(args.backup_name, args.namespace))
        phase = lookup(backup, ("status", "phase"), "unknown")
        source_cluster = lookup(backup, ("spec", "cluster", "name"), "unknown")

        document = build_restore_cluster_manifest(
            args.new_cluster_name, args.namespace, args.backup_name,
            instances=args.instances,
            storage_size=args.storage_size,
            storage_class=args.storage_class,
            target_time=args.target_time,
            postgres_version=args.postgres_version,
        )
        if self._create(cluster_ref(args.new_cluster_name, args.namespace), document, args.dry_run) is None:
            return self._dry_run_document("cluster", args.new_cluster_name, args.namespace, document, "restore_cluster")

        message = (
            f"Successfully created cluster '{args.new_cluster_name}' from backup '{args.backup_name}' "
            f"(of cluster '{source_cluster}') in namespace '{args.namespace}' with {args.instances} instances."
        )
        if args.target_time:
            message += f"\nRecovery target time: {args.target_time}"
        if phase != "completed":
            message += f"\n\n⚠️  Backup phase is '{phase}', not 'completed'; recovery may fail."
        return message

    def _op_create_replica_cluster(self, args) -> str:
        source = self.client.get(cluster_ref(args.source_cluster_name, args.namespace))
        document = build_replica_cluster_manifest(
            args.name, args.namespace, args.source_cluster_name,
            instances=args.instances,
            storage_size=args.storage_size,
            storage_class=args.storage_class,
            postgres_version=args.postgres_version,
            image_name=lookup(source, ("spec", "imageName")),
        )
        if self._create(cluster_ref(args.name, args.namespace), document, args.dry_run) is None:
            return self._dry_run_document("cluster", args.name, args.namespace, document, "create_replica_cluster")

        return (
            f"Successfully created replica cluster '{args.name}' in namespace '{args.namespace}' "
            f"streaming from '{args.source_cluster_name}' with {args.instances} instances."
        )

    def _op_create_backup(self, args) -> str:
        document = build_backup_manifest(
            args.cluster_name, args.namespace, backup_name=args.backup_name, method=args.method
        )
        name = document["metadata"]["name"]
        if self._create(backup_ref(name, args.namespace), document, args.dry_run) is None:
            return self._dry_run_document("backup", name, args.namespace, document, "create_backup")

        return f"""Successfully created backup '{name}' for cluster '{args.cluster_name}'.

Check its progress with:
get_backup_details(namespace="{args.namespace}", backupName="{name}")
"""

    def _op_create_scheduled_backup(self, args) -> str:
        document = build_scheduled_backup_manifest(
            args.name, args.namespace, args.cluster_name, args.schedule,
            backup_retention_policy=args.backup_retention_policy,
            suspend=args.suspend,
            immediate=args.immediate,
            method=args.method,
        )
        if self._create(scheduled_backup_ref(args.name, args.namespace), document, args.dry_run) is None:
            return self._dry_run_document("scheduled backup", args.name, args.namespace, document, "create_scheduled_backup")

        message = (
            f"Successfully created scheduled backup '{args.name}' for cluster '{args.cluster_name}' "
            f"with schedule '{args.schedule}'."
        )
        if args.suspend:
            message += "\nThe schedule is created suspended."
        if args.backup_retention_policy:
            message += (
                f"\nRequested retention '{args.backup_retention_policy}' is recorded as an annotation; "
                f"the cluster's spec.backup.retentionPolicy governs actual retention."
            )
        return message

    def _op_create_pooler(self, args) -> str:
        document = build_pooler_manifest(
            args.cluster_name, args.namespace,
            name=args.name,
            instances=args.instances,
            pool_type=args.pool_type,
            pool_mode=args.pool_mode,
            max_client_conn=args.max_client_conn,
            default_pool_size=args.default_pool_size,
        )
        name = document["metadata"]["name"]
        if self._create(pooler_ref(name, args.namespace), document, args.dry_run) is None:
            return self._dry_run_document("pooler", name, args.namespace, document, "create_pooler")

        return (
            f"Successfully created pooler '{name}' ({args.pool_type}, {args.pool_mode} mode, "
            f"{args.instances} instance(s)) for cluster '{args.cluster_name}'.\n\n"
            f"Applications connect through the '{name}' service in namespace '{args.namespace}'."
        )

    # ------------------------------------------------------------------
    # Delete operations
    # ------------------------------------------------------------------

    def _delete(self, ref: ResourceRef, dry_run: bool, operation: str) -> Optional[str]:
        if dry_run:
            document = self.client.get(ref)
            spec_yaml = to_yaml(document.get('spec', {}))
            return f"""Dry run: Deletion preview for {ref.label} '{ref.namespace}/{ref.name}'

Resource that would be deleted:

```yaml
{spec_yaml}```

To proceed with deletion, call {operation} again with dry_run=False (or omit dry_run).
"""
        self.client.delete(ref)
        return None

    def _op_delete_cluster(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        preview = self._delete(ref, args.dry_run, "delete_cluster")
        if preview is not None:
            return preview + "\n⚠️  WARNING: All data in this cluster would be PERMANENTLY LOST.\n"
        return f"""Successfully initiated deletion of cluster '{args.namespace}/{args.name}'.

⚠️  WARNING: This is a destructive operation. All data in this cluster will be permanently lost.
Depending on the storage class reclaim policy, the persistent volumes may be retained or deleted.
"""

    def _op_delete_backup(self, args) -> str:
        ref = backup_ref(args.backup_name, args.namespace)
        preview = self._delete(ref, args.dry_run, "delete_backup")
        if preview is not None:
            return preview
        return f"Successfully deleted backup '{args.backup_name}' from namespace '{args.namespace}'."

    def _op_delete_scheduled_backup(self, args) -> str:
        ref = scheduled_backup_ref(args.name, args.namespace)
        preview = self._delete(ref, args.dry_run, "delete_scheduled_backup")
        if preview is not None:
            return preview
        return f"Successfully deleted scheduled backup '{args.name}' from namespace '{args.namespace}'."

    def _op_delete_pooler(self, args) -> str:
        ref = pooler_ref(args.name, args.namespace)
        preview = self._delete(ref, args.dry_run, "delete_pooler")
        if preview is not None:
            return preview
        return f"Successfully deleted pooler '{args.name}' from namespace '{args.namespace}'."

    # ------------------------------------------------------------------
    # Update-style operations (read-modify-write)
    # ------------------------------------------------------------------

    def _op_scale_cluster(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        outcome = self._update(ref, SetField(("spec", "instances"), args.instances), args.dry_run)
        return self._update_message(outcome, ref, "scale_cluster", f"""Successfully initiated scaling of cluster '{args.namespace}/{args.name}' to {args.instances} instance(s).

The cluster will perform a rolling update to reach the desired instance count.
Monitor the scaling progress with:
get_cluster_status(namespace="{args.namespace}", name="{args.name}")""")

    def _op_upgrade_postgres_version(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        image = postgres_image(args.postgres_version)
        outcome = self._update(
            ref, SetField(("spec", "imageName"), image), args.dry_run, precondition=_require_image_name
        )
        return self._update_message(
            outcome, ref, "upgrade_postgres_version",
            f"Successfully requested image '{image}' for cluster '{args.namespace}/{args.name}'. "
            f"CloudNativePG performs a rolling update of the instances."
        )

    def _op_pause_cluster(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        outcome = self._update(ref, ToggleAnnotation(queries.HIBERNATION_ANNOTATION, True, "on"), args.dry_run)
        return self._update_message(
            outcome, ref, "pause_cluster",
            f"Successfully requested hibernation of cluster '{args.namespace}/{args.name}'. "
            f"Its pods will be stopped; volumes are kept."
        )

    def _op_resume_cluster(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        outcome = self._update(ref, ToggleAnnotation(queries.HIBERNATION_ANNOTATION, False), args.dry_run)
        return self._update_message(
            outcome, ref, "resume_cluster",
            f"Successfully requested resumption of cluster '{args.namespace}/{args.name}'."
        )

    def _op_restart_cluster(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        outcome = self._update(ref, ToggleAnnotation(RESTART_ANNOTATION, True, timestamp), args.dry_run)
        return self._update_message(
            outcome, ref, "restart_cluster",
            f"Successfully requested a rolling restart of cluster '{args.namespace}/{args.name}'."
        )

    def _op_switchover_cluster(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)

        def target_is_member(document: Dict[str, Any]) -> None:
            members = lookup(document, ("status", "instanceNames"))
            if members and args.target_primary not in members:
                raise NotFoundError(
                    f"instance '{args.target_primary}' is not part of cluster '{args.namespace}/{args.name}' "
                    f"(instances: {', '.join(members)})"
                )

        outcome = self._update(
            ref, ToggleAnnotation(SWITCHOVER_ANNOTATION, True, args.target_primary), args.dry_run,
            precondition=target_is_member,
        )
        return self._update_message(
            outcome, ref, "switchover_cluster",
            f"Successfully requested switchover of cluster '{args.namespace}/{args.name}' "
            f"to instance '{args.target_primary}'."
        )

    def _op_update_postgres_parameters(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        strategy = MergeMap(("spec", "postgresql", "parameters"), stringify_parameters(args.parameters))
        outcome = self._update(ref, strategy, args.dry_run)
        return self._update_message(
            outcome, ref, "update_postgres_parameters",
            f"Successfully updated PostgreSQL parameters of cluster '{args.namespace}/{args.name}'. "
            f"Parameters that require a restart trigger a rolling restart."
        )

    def _op_configure_replication(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        strategy = MergeMap(("spec",), {
            "minSyncReplicas": args.min_sync_replicas,
            "maxSyncReplicas": args.max_sync_replicas,
        })

        def fits_instances(document: Dict[str, Any]) -> None:
            instances = lookup(document, ("spec", "instances"))
            if isinstance(instances, int) and args.max_sync_replicas >= instances:
                raise StructuralMismatch(
                    f"maxSyncReplicas ({args.max_sync_replicas}) must be lower than the number "
                    f"of instances ({instances})"
                )

        outcome = self._update(ref, strategy, args.dry_run, precondition=fits_instances)
        return self._update_message(
            outcome, ref, "configure_replication",
            f"Successfully set synchronous replicas of cluster '{args.namespace}/{args.name}' "
            f"to min={args.min_sync_replicas}, max={args.max_sync_replicas}."
        )

    def _op_add_tablespace(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        storage: Dict[str, Any] = {"size": args.storage_size}
        if args.storage_class:
            storage["storageClass"] = args.storage_class
        tablespace: Dict[str, Any] = {"name": args.tablespace_name, "storage": storage}
        if args.owner:
            tablespace["owner"] = {"name": args.owner}
        if args.temporary is not None:
            tablespace["temporary"] = args.temporary

        outcome = self._update(ref, AppendToArray(("spec", "tablespaces"), tablespace), args.dry_run)
        return self._update_message(
            outcome, ref, "add_tablespace",
            f"Successfully added tablespace '{args.tablespace_name}' ({args.storage_size}) "
            f"to cluster '{args.namespace}/{args.name}'."
        )

    def _op_enable_extension(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        statement = f"CREATE EXTENSION IF NOT EXISTS {_quote_identifier(args.extension_name)}"
        outcome = self._update(
            ref,
            AppendToArray(("spec", "bootstrap", "initdb", "postInitApplicationSQL"), statement),
            args.dry_run,
            precondition=_require_initdb_bootstrap,
        )
        return self._update_message(
            outcome, ref, "enable_extension",
            f"Successfully added '{statement}' to the application bootstrap SQL of cluster "
            f"'{args.namespace}/{args.name}'.\n\n{BOOTSTRAP_SQL_NOTE}"
        )

    def _op_create_database(self, args) -> str:
        ref = cluster_ref(args.name, args.namespace)
        statement = f"CREATE DATABASE {_quote_identifier(args.database_name)}"
        if args.owner:
            statement += f" OWNER {_quote_identifier(args.owner)}"
        outcome = self._update(
            ref,
            AppendToArray(("spec", "bootstrap", "initdb", "postInitSQL"), statement),
            args.dry_run,
            precondition=_require_initdb_bootstrap,
        )
        return self._update_message(
            outcome, ref, "create_database",
            f"Successfully added '{statement}' to the bootstrap SQL of cluster "
            f"'{args.namespace}/{args.name}'.\n\n{BOOTSTRAP_SQL_NOTE}"
        )

    def _op_scale_pooler(self, args) -> str:
        ref = pooler_ref(args.name, args.namespace)
        outcome = self._update(ref, SetField(("spec", "instances"), args.instances), args.dry_run)
        return self._update_message(
            outcome, ref, "scale_pooler",
            f"Successfully scaled pooler '{args.namespace}/{args.name}' to {args.instances} instance(s)."
        )

    def _op_update_pooler_mode(self, args) -> str:
        ref = pooler_ref(args.name, args.namespace)
        outcome = self._update(ref, SetField(("spec", "pgbouncer", "poolMode"), args.pool_mode), args.dry_run)
        return self._update_message(
            outcome, ref, "update_pooler_mode",
            f"Successfully set pool mode of pooler '{args.namespace}/{args.name}' to '{args.pool_mode}'."
        )

    def _op_suspend_scheduled_backup(self, args) -> str:
        ref = scheduled_backup_ref(args.name, args.namespace)
        outcome = self._update(ref, SetField(("spec", "suspend"), args.suspend), args.dry_run)
        action = "suspended" if args.suspend else "resumed"
        return self._update_message(
            outcome, ref, "suspend_scheduled_backup",
            f"Successfully {action} scheduled backup '{args.namespace}/{args.name}'."
        )
