#!/usr/bin/env python3
"""
CloudNativePG Intent MCP Server

Exposes the intent catalog as MCP tools. Each tool validates its arguments,
compiles or patches the CloudNativePG resource, and returns a text result;
failures are raised as tool errors carrying the error kind and detail.

Transport Modes:
- stdio: Communication over stdin/stdout (default, for Claude Desktop)
- http: Streamable HTTP at /mcp with /healthz and /readyz probes
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Dict, Literal, Optional, Union

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
import uvicorn
from starlette.responses import JSONResponse

from cnpg_config import Settings, load_settings
from cnpg_dispatcher import OperationDispatcher
from cnpg_errors import CnpgError
from cnpg_intents import CATALOG
from cnpg_resources import CustomResourceClient

logger = logging.getLogger(__name__)

ParameterValue = Union[str, int, float, bool]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(levelname)s:     %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    # Set log levels for external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ============================================================================
# FastMCP Server
# ============================================================================

def create_server(dispatcher: OperationDispatcher) -> FastMCP:
    """
    Build the MCP server with one tool per catalog operation.

    Tool parameters use snake_case names; arguments left as None are not
    forwarded so the operation's own defaults apply.
    """
    mcp = FastMCP("cloudnative-pg")

    async def run(operation: str, **arguments: Any) -> str:
        args = {key: value for key, value in arguments.items() if value is not None}
        result = await asyncio.to_thread(dispatcher.dispatch, operation, args)
        if not result.ok:
            raise ToolError(f"[{result.error_kind}] {result.message}")
        return result.message

    # ------------------------------------------------------------------
    # Read-only tools
    # ------------------------------------------------------------------

    @mcp.tool(name="list_clusters")
    async def list_clusters(namespace: Optional[str] = None) -> str:
        """List PostgreSQL clusters in a namespace, or in all namespaces if none is given."""
        return await run("list_clusters", namespace=namespace)

    @mcp.tool(name="get_cluster")
    async def get_cluster(name: str, namespace: str) -> str:
        """Get the full definition of a PostgreSQL cluster as YAML."""
        return await run("get_cluster", name=name, namespace=namespace)

    @mcp.tool(name="get_cluster_status")
    async def get_cluster_status(
        name: str,
        namespace: str,
        detail_level: Literal["concise", "detailed"] = "detailed",
    ) -> str:
        """Get the current status, instances and conditions of a PostgreSQL cluster.

        Use detail_level="concise" for phase, ready instances and primary only.
        """
        return await run("get_cluster_status", name=name, namespace=namespace, detail_level=detail_level)

    @mcp.tool(name="get_cluster_pods")
    async def get_cluster_pods(name: str, namespace: str) -> str:
        """Get the instance pods of a cluster with their role, readiness and restarts."""
        return await run("get_cluster_pods", name=name, namespace=namespace)

    @mcp.tool(name="get_cluster_events")
    async def get_cluster_events(cluster_name: str, namespace: str) -> str:
        """Get Kubernetes events for a cluster, most recent first."""
        return await run("get_cluster_events", cluster_name=cluster_name, namespace=namespace)

    @mcp.tool(name="get_cluster_logs")
    async def get_cluster_logs(
        name: str,
        namespace: str,
        pod_name: Optional[str] = None,
        container: Optional[str] = None,
        tail_lines: int = 100
    ) -> str:
        """Get recent PostgreSQL logs from a cluster instance (the current primary by default)."""
        return await run(
            "get_cluster_logs", name=name, namespace=namespace,
            pod_name=pod_name, container=container, tail_lines=tail_lines
        )

    @mcp.tool(name="list_backups")
    async def list_backups(namespace: str, cluster_name: Optional[str] = None) -> str:
        """List backups in a namespace, optionally only those of one cluster."""
        return await run("list_backups", namespace=namespace, cluster_name=cluster_name)

    @mcp.tool(name="get_backup_details")
    async def get_backup_details(backup_name: str, namespace: str) -> str:
        """Get the full definition and status of a backup."""
        return await run("get_backup_details", backup_name=backup_name, namespace=namespace)

    @mcp.tool(name="list_scheduled_backups")
    async def list_scheduled_backups(namespace: str, cluster_name: Optional[str] = None) -> str:
        """List scheduled backups in a namespace, optionally only those of one cluster."""
        return await run("list_scheduled_backups", namespace=namespace, cluster_name=cluster_name)

    @mcp.tool(name="list_poolers")
    async def list_poolers(namespace: str, cluster_name: Optional[str] = None) -> str:
        """List PgBouncer poolers in a namespace, optionally only those of one cluster."""
        return await run("list_poolers", namespace=namespace, cluster_name=cluster_name)

    # ------------------------------------------------------------------
    # Create-style tools
    # ------------------------------------------------------------------

    @mcp.tool(name="create_cluster")
    async def create_cluster(
        name: str,
        namespace: str,
        instances: int = 3,
        storage_size: str = "10Gi",
        postgres_version: str = "16",
        storage_class: Optional[str] = None,
        database: str = "app",
        owner: str = "app",
        parameters: Optional[Dict[str, ParameterValue]] = None,
        enable_monitoring: bool = False,
        dry_run: bool = False
    ) -> str:
        """
        Create a new PostgreSQL cluster with high availability configuration.

        Use dry_run=True to preview the Cluster definition without creating it.
        """
        return await run(
            "create_cluster", name=name, namespace=namespace, instances=instances,
            storage_size=storage_size, postgres_version=postgres_version,
            storage_class=storage_class, database=database, owner=owner,
            parameters=parameters, enable_monitoring=enable_monitoring, dry_run=dry_run
        )

    @mcp.tool(name="restore_cluster")
    async def restore_cluster(
        new_cluster_name: str,
        backup_name: str,
        namespace: str,
        instances: int = 3,
        storage_size: str = "10Gi",
        storage_class: Optional[str] = None,
        target_time: Optional[str] = None,
        postgres_version: Optional[str] = None,
        dry_run: bool = False
    ) -> str:
        """
        Create a new cluster from an existing backup.

        With target_time (RFC 3339) recovery stops at that point in time.
        """
        return await run(
            "restore_cluster", new_cluster_name=new_cluster_name, backup_name=backup_name,
            namespace=namespace, instances=instances, storage_size=storage_size,
            storage_class=storage_class, target_time=target_time,
            postgres_version=postgres_version, dry_run=dry_run
        )

    @mcp.tool(name="create_replica_cluster")
    async def create_replica_cluster(
        name: str,
        source_cluster_name: str,
        namespace: str,
        instances: int = 3,
        storage_size: str = "10Gi",
        storage_class: Optional[str] = None,
        postgres_version: Optional[str] = None,
        dry_run: bool = False
    ) -> str:
        """Create a replica cluster that streams from an existing cluster in the same namespace."""
        return await run(
            "create_replica_cluster", name=name, source_cluster_name=source_cluster_name,
            namespace=namespace, instances=instances, storage_size=storage_size,
            storage_class=storage_class, postgres_version=postgres_version, dry_run=dry_run
        )

    @mcp.tool(name="create_backup")
    async def create_backup(
        cluster_name: str,
        namespace: str,
        backup_name: Optional[str] = None,
        method: Optional[Literal["barmanObjectStore", "volumeSnapshot", "plugin"]] = None,
        dry_run: bool = False
    ) -> str:
        """Create an on-demand backup of a cluster. The name is generated if not given."""
        return await run(
            "create_backup", cluster_name=cluster_name, namespace=namespace,
            backup_name=backup_name, method=method, dry_run=dry_run
        )

    @mcp.tool(name="create_scheduled_backup")
    async def create_scheduled_backup(
        name: str,
        cluster_name: str,
        namespace: str,
        schedule: str,
        backup_retention_policy: Optional[str] = None,
        suspend: Optional[bool] = None,
        immediate: Optional[bool] = None,
        method: Optional[Literal["barmanObjectStore", "volumeSnapshot", "plugin"]] = None,
        dry_run: bool = False
    ) -> str:
        """
        Create a scheduled backup for a cluster.

        The schedule is a six-field cron expression with seconds first,
        e.g. '0 0 0 * * *' for daily at midnight.
        """
        return await run(
            "create_scheduled_backup", name=name, cluster_name=cluster_name,
            namespace=namespace, schedule=schedule,
            backup_retention_policy=backup_retention_policy, suspend=suspend,
            immediate=immediate, method=method, dry_run=dry_run
        )

    @mcp.tool(name="create_pooler")
    async def create_pooler(
        cluster_name: str,
        namespace: str,
        name: Optional[str] = None,
        instances: int = 1,
        pool_type: Literal["rw", "ro"] = "rw",
        pool_mode: Literal["session", "transaction"] = "session",
        max_client_conn: Optional[int] = None,
        default_pool_size: Optional[int] = None,
        dry_run: bool = False
    ) -> str:
        """Create a PgBouncer pooler in front of a cluster's read-write or read-only service."""
        return await run(
            "create_pooler", cluster_name=cluster_name, namespace=namespace, name=name,
            instances=instances, pool_type=pool_type, pool_mode=pool_mode,
            max_client_conn=max_client_conn, default_pool_size=default_pool_size,
            dry_run=dry_run
        )

    # ------------------------------------------------------------------
    # Delete tools
    # ------------------------------------------------------------------

    @mcp.tool(name="delete_cluster")
    async def delete_cluster(name: str, namespace: str, dry_run: bool = False) -> str:
        """Delete a PostgreSQL cluster. All of its data is permanently lost."""
        return await run("delete_cluster", name=name, namespace=namespace, dry_run=dry_run)

    @mcp.tool(name="delete_backup")
    async def delete_backup(backup_name: str, namespace: str, dry_run: bool = False) -> str:
        """Delete a backup."""
        return await run("delete_backup", backup_name=backup_name, namespace=namespace, dry_run=dry_run)

    @mcp.tool(name="delete_scheduled_backup")
    async def delete_scheduled_backup(name: str, namespace: str, dry_run: bool = False) -> str:
        """Delete a scheduled backup. Backups it already took are kept."""
        return await run("delete_scheduled_backup", name=name, namespace=namespace, dry_run=dry_run)

    @mcp.tool(name="delete_pooler")
    async def delete_pooler(name: str, namespace: str, dry_run: bool = False) -> str:
        """Delete a PgBouncer pooler."""
        return await run("delete_pooler", name=name, namespace=namespace, dry_run=dry_run)

    # ------------------------------------------------------------------
    # Update-style tools
    # ------------------------------------------------------------------

    @mcp.tool(name="scale_cluster")
    async def scale_cluster(name: str, namespace: str, instances: int, dry_run: bool = False) -> str:
        """Scale a PostgreSQL cluster by changing the number of instances (1-10)."""
        return await run("scale_cluster", name=name, namespace=namespace, instances=instances, dry_run=dry_run)

    @mcp.tool(name="upgrade_postgres_version")
    async def upgrade_postgres_version(
        name: str, namespace: str, postgres_version: str, dry_run: bool = False
    ) -> str:
        """Change the PostgreSQL image version of a cluster (rolling update)."""
        return await run(
            "upgrade_postgres_version", name=name, namespace=namespace,
            postgres_version=postgres_version, dry_run=dry_run
        )

    @mcp.tool(name="pause_cluster")
    async def pause_cluster(name: str, namespace: str, dry_run: bool = False) -> str:
        """Hibernate a cluster: stop its pods and keep its volumes."""
        return await run("pause_cluster", name=name, namespace=namespace, dry_run=dry_run)

    @mcp.tool(name="resume_cluster")
    async def resume_cluster(name: str, namespace: str, dry_run: bool = False) -> str:
        """Resume a hibernated cluster."""
        return await run("resume_cluster", name=name, namespace=namespace, dry_run=dry_run)

    @mcp.tool(name="restart_cluster")
    async def restart_cluster(name: str, namespace: str, dry_run: bool = False) -> str:
        """Request a rolling restart of all instances of a cluster."""
        return await run("restart_cluster", name=name, namespace=namespace, dry_run=dry_run)

    @mcp.tool(name="switchover_cluster")
    async def switchover_cluster(name: str, namespace: str, target_primary: str, dry_run: bool = False) -> str:
        """Request a switchover that promotes the given instance to primary."""
        return await run(
            "switchover_cluster", name=name, namespace=namespace,
            target_primary=target_primary, dry_run=dry_run
        )

    @mcp.tool(name="update_postgres_parameters")
    async def update_postgres_parameters(
        name: str, namespace: str, parameters: Dict[str, ParameterValue], dry_run: bool = False
    ) -> str:
        """Set PostgreSQL parameters on a cluster. Parameters not named are left untouched."""
        return await run(
            "update_postgres_parameters", name=name, namespace=namespace,
            parameters=parameters, dry_run=dry_run
        )

    @mcp.tool(name="configure_replication")
    async def configure_replication(
        name: str, namespace: str, min_sync_replicas: int, max_sync_replicas: int, dry_run: bool = False
    ) -> str:
        """Set the minimum and maximum number of synchronous replicas of a cluster."""
        return await run(
            "configure_replication", name=name, namespace=namespace,
            min_sync_replicas=min_sync_replicas, max_sync_replicas=max_sync_replicas,
            dry_run=dry_run
        )

    @mcp.tool(name="add_tablespace")
    async def add_tablespace(
        name: str,
        namespace: str,
        tablespace_name: str,
        storage_size: str,
        storage_class: Optional[str] = None,
        owner: Optional[str] = None,
        temporary: Optional[bool] = None,
        dry_run: bool = False
    ) -> str:
        """
        Declare an additional tablespace with its own volume on a cluster.

        Not idempotent: calling twice with the same tablespace adds it twice.
        """
        return await run(
            "add_tablespace", name=name, namespace=namespace, tablespace_name=tablespace_name,
            storage_size=storage_size, storage_class=storage_class, owner=owner,
            temporary=temporary, dry_run=dry_run
        )

    @mcp.tool(name="enable_extension")
    async def enable_extension(name: str, namespace: str, extension_name: str, dry_run: bool = False) -> str:
        """
        Add a CREATE EXTENSION statement to a cluster's application bootstrap SQL.

        Bootstrap SQL runs when the cluster is initialized.
        """
        return await run(
            "enable_extension", name=name, namespace=namespace,
            extension_name=extension_name, dry_run=dry_run
        )

    @mcp.tool(name="create_database")
    async def create_database(
        name: str, namespace: str, database_name: str, owner: Optional[str] = None, dry_run: bool = False
    ) -> str:
        """
        Add a CREATE DATABASE statement to a cluster's bootstrap SQL.

        Bootstrap SQL runs when the cluster is initialized.
        """
        return await run(
            "create_database", name=name, namespace=namespace,
            database_name=database_name, owner=owner, dry_run=dry_run
        )

    @mcp.tool(name="scale_pooler")
    async def scale_pooler(name: str, namespace: str, instances: int, dry_run: bool = False) -> str:
        """Change the number of PgBouncer pods of a pooler."""
        return await run("scale_pooler", name=name, namespace=namespace, instances=instances, dry_run=dry_run)

    @mcp.tool(name="update_pooler_mode")
    async def update_pooler_mode(
        name: str, namespace: str, pool_mode: Literal["session", "transaction"], dry_run: bool = False
    ) -> str:
        """Change the pool mode of a PgBouncer pooler."""
        return await run("update_pooler_mode", name=name, namespace=namespace, pool_mode=pool_mode, dry_run=dry_run)

    @mcp.tool(name="suspend_scheduled_backup")
    async def suspend_scheduled_backup(name: str, namespace: str, suspend: bool = True, dry_run: bool = False) -> str:
        """Suspend (suspend=True) or resume (suspend=False) a scheduled backup."""
        return await run(
            "suspend_scheduled_backup", name=name, namespace=namespace,
            suspend=suspend, dry_run=dry_run
        )

    logger.info(f"Registered {len(CATALOG)} tools with MCP server")
    return mcp


# ============================================================================
# Health Check Endpoints
# ============================================================================

async def liveness_check(request):
    """Kubernetes liveness probe endpoint."""
    return JSONResponse({"status": "alive"})


async def readiness_check(request):
    """Kubernetes readiness probe endpoint."""
    return JSONResponse({"status": "ready"})


# ============================================================================
# Transport Implementations
# ============================================================================

def log_banner(title: str, settings: Settings) -> None:
    logger.info("=" * 70)
    logger.info(title)
    logger.info("=" * 70)
    for key, value in settings.summary().items():
        logger.info(f"  {key}: {value}")
    logger.info(f"  Tools: {len(CATALOG)} CloudNativePG intent tools")
    logger.info("=" * 70)


async def run_stdio_transport(mcp: FastMCP, settings: Settings):
    """Run server in stdio mode (for Claude Desktop)."""
    log_banner("CloudNativePG MCP Server (stdio mode)", settings)
    await mcp.run_stdio_async()


def run_http_transport(mcp: FastMCP, settings: Settings, host: str, port: int):
    """Run server in HTTP mode."""
    app = mcp.http_app(transport="http", path="/mcp")

    # Add health check routes
    app.add_route("/healthz", liveness_check)
    app.add_route("/readyz", readiness_check)

    log_banner("CloudNativePG MCP Server (http mode)", settings)
    logger.info(f"  Listening on: {host}:{port}")
    logger.info("  MCP Endpoint: /mcp")
    logger.info("  Health: /healthz, /readyz")
    logger.info("=" * 70)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower()
    )


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv=None):
    """Main entry point with transport selection."""
    parser = argparse.ArgumentParser(
        description="CloudNativePG Intent MCP Server"
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default="stdio",
        help="Transport mode: stdio (default) or http"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "3000")),
        help="Port for HTTP transport (default: 3000)"
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host for HTTP transport (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML config file (default: $CNPG_CONFIG or the standard search path)"
    )

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ValueError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    configure_logging(settings.log_level)

    try:
        client = CustomResourceClient.from_settings(settings)
    except CnpgError as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        if e.suggestion:
            logger.error(f"Suggestion: {e.suggestion}")
        sys.exit(1)

    mcp = create_server(OperationDispatcher(client))

    if args.transport == "stdio":
        asyncio.run(run_stdio_transport(mcp, settings))
    else:
        run_http_transport(mcp, settings, args.host, args.port)


if __name__ == "__main__":
    main()
