"""
Resource client adapter for CloudNativePG custom resources.

Thin, synchronous wrapper over the kubernetes client's CustomObjectsApi and
CoreV1Api. Every call carries the configured request timeout, and every
failure is translated into the error taxonomy in cnpg_errors. Nothing here
retries or caches: the API server is the only source of truth.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from cnpg_config import Settings
from cnpg_errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    RequestTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CNPG_GROUP = "postgresql.cnpg.io"
CNPG_VERSION = "v1"
CLUSTER_PLURAL = "clusters"
BACKUP_PLURAL = "backups"
SCHEDULED_BACKUP_PLURAL = "scheduledbackups"
POOLER_PLURAL = "poolers"

RESOURCE_LABELS = {
    CLUSTER_PLURAL: "cluster",
    BACKUP_PLURAL: "backup",
    SCHEDULED_BACKUP_PLURAL: "scheduled backup",
    POOLER_PLURAL: "pooler",
}

STATUS_SUGGESTIONS = {
    401: "Authentication failed. Check the API server token.",
    403: "Permission denied. Verify that the service account has proper RBAC permissions for CloudNativePG resources.",
    409: "Resource conflict. The resource may already exist or there's a version conflict.",
    422: "Invalid resource specification. Check the resource against the CloudNativePG API documentation.",
}


@dataclass(frozen=True)
class ResourceRef:
    """Identifies one namespaced custom resource instance."""

    namespace: str
    plural: str
    name: Optional[str] = None
    group: str = CNPG_GROUP
    version: str = CNPG_VERSION

    @property
    def label(self) -> str:
        return RESOURCE_LABELS.get(self.plural, self.plural)

    def __str__(self) -> str:
        return f"{self.plural} {self.namespace}/{self.name or '<unnamed>'}"


def cluster_ref(name: str, namespace: str) -> ResourceRef:
    return ResourceRef(namespace=namespace, plural=CLUSTER_PLURAL, name=name)


def backup_ref(name: str, namespace: str) -> ResourceRef:
    return ResourceRef(namespace=namespace, plural=BACKUP_PLURAL, name=name)


def scheduled_backup_ref(name: str, namespace: str) -> ResourceRef:
    return ResourceRef(namespace=namespace, plural=SCHEDULED_BACKUP_PLURAL, name=name)


def pooler_ref(name: str, namespace: str) -> ResourceRef:
    return ResourceRef(namespace=namespace, plural=POOLER_PLURAL, name=name)


# ============================================================================
# Kubernetes Client Initialization
# ============================================================================

def create_api_client(settings: Settings) -> client.ApiClient:
    """
    Build a kubernetes ApiClient from process-start settings.

    Uses the bearer token and API URL when both are configured, otherwise
    the in-cluster service account, falling back to the local kubeconfig.
    The urllib3 pool never retries: a timed-out or dropped request fails
    once and is reported to the caller.
    """
    configuration = client.Configuration()

    if settings.uses_token_auth:
        configuration.host = settings.api_url
        configuration.api_key = {"authorization": settings.token}
        configuration.api_key_prefix = {"authorization": "Bearer"}
        configuration.verify_ssl = settings.verify_ssl
        if settings.ca_cert:
            configuration.ssl_ca_cert = settings.ca_cert
        logger.info(f"Using token authentication against {settings.api_url}")
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            try:
                config.load_kube_config(client_configuration=configuration)
                logger.info("Loaded kubeconfig from file")
            except Exception as e:
                raise TransportError(
                    f"Failed to load Kubernetes configuration: {e}",
                    suggestion=(
                        "Set K8S_API_URL and K8S_TOKEN, provide a valid ~/.kube/config "
                        "(or KUBECONFIG), or run inside a Kubernetes cluster with a "
                        "proper service account."
                    ),
                ) from e

    configuration.retries = False
    return client.ApiClient(configuration)


# ============================================================================
# Error Translation
# ============================================================================

def _api_error_message(error: ApiException) -> str:
    try:
        body = json.loads(error.body) if error.body else {}
        return body.get('message') or str(error.reason)
    except (json.JSONDecodeError, ValueError, AttributeError):
        return error.body if error.body else str(error.reason)


def _api_error_reason(error: ApiException) -> str:
    try:
        body = json.loads(error.body) if error.body else {}
        return body.get('reason', '') or ''
    except (json.JSONDecodeError, ValueError, AttributeError):
        return ''


def translate_api_exception(error: ApiException, action: str, ref: Optional[ResourceRef] = None) -> Exception:
    """Map an ApiException onto the error taxonomy."""
    status = error.status
    message = _api_error_message(error)

    if status == 404 and ref is not None and ref.name:
        return NotFoundError(f"{ref.label} '{ref.name}' not found in namespace '{ref.namespace}'")
    if status == 404:
        return NotFoundError(f"Not found while {action}: {message}")

    if status == 409:
        if action.startswith("creating") or _api_error_reason(error) == "AlreadyExists":
            return AlreadyExistsError(f"Conflict while {action}: {message}")
        return ConflictError(f"Conflict while {action}: {message}")

    return TransportError(
        f"Kubernetes API Error ({status} {error.reason}) while {action}: {message}",
        status=status,
        suggestion=STATUS_SUGGESTIONS.get(status),
    )


def translate_transport_exception(error: Exception, action: str) -> Exception:
    """Map urllib3 failures (timeouts, refused connections) onto the taxonomy."""
    if isinstance(error, urllib3.exceptions.TimeoutError):
        return RequestTimeoutError(f"Timed out while {action}: {error}")
    if isinstance(error, urllib3.exceptions.MaxRetryError) and isinstance(
        error.reason, urllib3.exceptions.TimeoutError
    ):
        return RequestTimeoutError(f"Timed out while {action}: {error.reason}")
    return TransportError(f"Could not reach the Kubernetes API server while {action}: {error}")


# ============================================================================
# Client Adapter
# ============================================================================

class CustomResourceClient:
    """
    Uniform get/list/create/replace/delete over CloudNativePG resources.

    Also exposes the pod, event and log queries used by the read-only
    layer. Constructed once at process start and passed explicitly to the
    dispatcher, so tests can substitute a double with the same methods.
    """

    def __init__(self, api_client: client.ApiClient, request_timeout: Optional[float] = None):
        self.api_client = api_client
        self.request_timeout = request_timeout
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CustomResourceClient":
        return cls(create_api_client(settings), request_timeout=settings.request_timeout)

    def _call(self, action: str, ref: Optional[ResourceRef], func, **kwargs) -> Any:
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        try:
            return func(**kwargs)
        except ApiException as e:
            raise translate_api_exception(e, action, ref) from e
        except urllib3.exceptions.HTTPError as e:
            raise translate_transport_exception(e, action) from e

    # ------------------------------------------------------------------
    # Custom objects
    # ------------------------------------------------------------------

    def get(self, ref: ResourceRef) -> Dict[str, Any]:
        return self._call(
            f"getting {ref.label} {ref.namespace}/{ref.name}",
            ref,
            self.custom_api.get_namespaced_custom_object,
            group=ref.group,
            version=ref.version,
            namespace=ref.namespace,
            plural=ref.plural,
            name=ref.name,
        )

    def list(
        self,
        plural: str,
        namespace: Optional[str] = None,
        group: str = CNPG_GROUP,
        version: str = CNPG_VERSION,
    ) -> List[Dict[str, Any]]:
        """List resources in a namespace, or cluster-wide when namespace is None."""
        label = RESOURCE_LABELS.get(plural, plural)
        if namespace:
            result = self._call(
                f"listing {label}s in namespace {namespace}",
                None,
                self.custom_api.list_namespaced_custom_object,
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
            )
        else:
            result = self._call(
                f"listing {label}s in all namespaces",
                None,
                self.custom_api.list_cluster_custom_object,
                group=group,
                version=version,
                plural=plural,
            )
        return result.get('items', [])

    def create(self, ref: ResourceRef, body: Dict[str, Any]) -> Dict[str, Any]:
        name = ref.name or body.get('metadata', {}).get('name')
        logger.info(f"Creating {ref.plural} {ref.namespace}/{name}")
        return self._call(
            f"creating {ref.label} {ref.namespace}/{name}",
            None,
            self.custom_api.create_namespaced_custom_object,
            group=ref.group,
            version=ref.version,
            namespace=ref.namespace,
            plural=ref.plural,
            body=body,
        )

    def replace(self, ref: ResourceRef, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(
            f"replacing {ref.label} {ref.namespace}/{ref.name}",
            ref,
            self.custom_api.replace_namespaced_custom_object,
            group=ref.group,
            version=ref.version,
            namespace=ref.namespace,
            plural=ref.plural,
            name=ref.name,
            body=body,
        )

    def delete(self, ref: ResourceRef) -> Dict[str, Any]:
        logger.info(f"Deleting {ref}")
        return self._call(
            f"deleting {ref.label} {ref.namespace}/{ref.name}",
            ref,
            self.custom_api.delete_namespaced_custom_object,
            group=ref.group,
            version=ref.version,
            namespace=ref.namespace,
            plural=ref.plural,
            name=ref.name,
        )

    # ------------------------------------------------------------------
    # Core resources (read-only)
    # ------------------------------------------------------------------

    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        result = self._call(
            f"listing pods in namespace {namespace}",
            None,
            self.core_api.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector,
        )
        return [self.api_client.sanitize_for_serialization(pod) for pod in result.items]

    def list_events(self, namespace: str, field_selector: str) -> List[Dict[str, Any]]:
        result = self._call(
            f"listing events in namespace {namespace}",
            None,
            self.core_api.list_namespaced_event,
            namespace=namespace,
            field_selector=field_selector,
        )
        return [self.api_client.sanitize_for_serialization(event) for event in result.items]

    def read_pod_log(
        self,
        name: str,
        namespace: str,
        container: Optional[str] = None,
        tail_lines: Optional[int] = None,
    ) -> str:
        kwargs: Dict[str, Any] = {"name": name, "namespace": namespace}
        if container:
            kwargs["container"] = container
        if tail_lines:
            kwargs["tail_lines"] = tail_lines
        return self._call(
            f"reading logs of pod {namespace}/{name}",
            None,
            self.core_api.read_namespaced_pod_log,
            **kwargs,
        )
