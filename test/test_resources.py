"""Tests for the resource client adapter and its error translation."""

import json
from unittest.mock import MagicMock

import pytest
import urllib3
from kubernetes.client.rest import ApiException

import cnpg_resources
from cnpg_config import Settings
from cnpg_errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    RequestTimeoutError,
    TransportError,
)
from cnpg_resources import (
    CLUSTER_PLURAL,
    CustomResourceClient,
    backup_ref,
    cluster_ref,
    create_api_client,
)


def api_exception(status, reason, message="", k8s_reason=""):
    error = ApiException(status=status, reason=reason)
    error.body = json.dumps({"kind": "Status", "message": message, "reason": k8s_reason})
    return error


@pytest.fixture
def resource_client():
    rc = CustomResourceClient(MagicMock(), request_timeout=12.5)
    rc.custom_api = MagicMock()
    rc.core_api = MagicMock()
    return rc


def test_get_passes_timeout_and_coordinates(resource_client):
    resource_client.custom_api.get_namespaced_custom_object.return_value = {"metadata": {"name": "main-db"}}

    result = resource_client.get(cluster_ref("main-db", "default"))

    assert result == {"metadata": {"name": "main-db"}}
    resource_client.custom_api.get_namespaced_custom_object.assert_called_once_with(
        group="postgresql.cnpg.io",
        version="v1",
        namespace="default",
        plural="clusters",
        name="main-db",
        _request_timeout=12.5,
    )


def test_get_not_found(resource_client):
    resource_client.custom_api.get_namespaced_custom_object.side_effect = api_exception(404, "Not Found")

    with pytest.raises(NotFoundError, match="backup 'nightly-1' not found in namespace 'default'"):
        resource_client.get(backup_ref("nightly-1", "default"))


def test_replace_conflict(resource_client):
    resource_client.custom_api.replace_namespaced_custom_object.side_effect = api_exception(
        409, "Conflict", "the object has been modified", "Conflict"
    )

    with pytest.raises(ConflictError) as excinfo:
        resource_client.replace(cluster_ref("main-db", "default"), {"metadata": {"resourceVersion": "1"}})

    assert excinfo.value.retryable
    assert "the object has been modified" in str(excinfo.value)


def test_create_already_exists(resource_client):
    resource_client.custom_api.create_namespaced_custom_object.side_effect = api_exception(
        409, "Conflict", 'clusters.postgresql.cnpg.io "main-db" already exists', "AlreadyExists"
    )

    with pytest.raises(AlreadyExistsError):
        resource_client.create(cluster_ref("main-db", "default"), {"metadata": {"name": "main-db"}})


def test_forbidden_is_a_transport_error_with_suggestion(resource_client):
    resource_client.custom_api.list_namespaced_custom_object.side_effect = api_exception(
        403, "Forbidden", "clusters.postgresql.cnpg.io is forbidden"
    )

    with pytest.raises(TransportError) as excinfo:
        resource_client.list(CLUSTER_PLURAL, "default")

    assert excinfo.value.kind == "TransportError"
    assert excinfo.value.status == 403
    assert "RBAC" in excinfo.value.suggestion
    assert "403 Forbidden" in str(excinfo.value)


def test_read_timeout(resource_client):
    resource_client.custom_api.get_namespaced_custom_object.side_effect = urllib3.exceptions.ReadTimeoutError(
        None, "/apis/postgresql.cnpg.io/v1", "Read timed out."
    )

    with pytest.raises(RequestTimeoutError) as excinfo:
        resource_client.get(cluster_ref("main-db", "default"))

    assert excinfo.value.kind == "Timeout"


def test_connection_failure(resource_client):
    resource_client.custom_api.get_namespaced_custom_object.side_effect = urllib3.exceptions.ProtocolError(
        "Connection aborted."
    )

    with pytest.raises(TransportError) as excinfo:
        resource_client.get(cluster_ref("main-db", "default"))

    assert type(excinfo.value) is TransportError


def test_list_namespaced_and_cluster_wide(resource_client):
    resource_client.custom_api.list_namespaced_custom_object.return_value = {"items": [{"a": 1}]}
    resource_client.custom_api.list_cluster_custom_object.return_value = {"items": []}

    assert resource_client.list(CLUSTER_PLURAL, "default") == [{"a": 1}]
    assert resource_client.list(CLUSTER_PLURAL) == []
    resource_client.custom_api.list_cluster_custom_object.assert_called_once_with(
        group="postgresql.cnpg.io", version="v1", plural="clusters", _request_timeout=12.5
    )


def test_create_uses_body_name(resource_client):
    ref = cluster_ref(None, "default")
    resource_client.create(ref, {"metadata": {"name": "main-db"}})

    kwargs = resource_client.custom_api.create_namespaced_custom_object.call_args.kwargs
    assert kwargs["namespace"] == "default"
    assert kwargs["body"] == {"metadata": {"name": "main-db"}}


def test_read_pod_log_forwards_options(resource_client):
    resource_client.core_api.read_namespaced_pod_log.return_value = "line"

    assert resource_client.read_pod_log("main-db-1", "default", container="postgres", tail_lines=50) == "line"
    resource_client.core_api.read_namespaced_pod_log.assert_called_once_with(
        name="main-db-1", namespace="default", container="postgres", tail_lines=50, _request_timeout=12.5
    )


def test_token_settings_build_a_bearer_client():
    settings = Settings(api_url="https://k8s.example.com:6443", token="secret-token", verify_ssl=False)

    api_client = create_api_client(settings)

    assert api_client.configuration.host == "https://k8s.example.com:6443"
    assert api_client.configuration.api_key == {"authorization": "secret-token"}
    assert api_client.configuration.api_key_prefix == {"authorization": "Bearer"}
    assert api_client.configuration.verify_ssl is False
    assert api_client.configuration.retries is False


def test_loaded_config_disables_retries(monkeypatch):
    def fake_incluster(client_configuration=None):
        client_configuration.host = "https://10.0.0.1:443"

    monkeypatch.setattr(cnpg_resources.config, "load_incluster_config", fake_incluster)

    api_client = create_api_client(Settings())

    assert api_client.configuration.host == "https://10.0.0.1:443"
    assert api_client.configuration.retries is False


def test_kubeconfig_fallback_disables_retries(monkeypatch):
    def no_incluster(client_configuration=None):
        raise cnpg_resources.config.ConfigException("not in a cluster")

    def fake_kubeconfig(client_configuration=None):
        client_configuration.host = "https://127.0.0.1:6443"

    monkeypatch.setattr(cnpg_resources.config, "load_incluster_config", no_incluster)
    monkeypatch.setattr(cnpg_resources.config, "load_kube_config", fake_kubeconfig)

    api_client = create_api_client(Settings())

    assert api_client.configuration.host == "https://127.0.0.1:6443"
    assert api_client.configuration.retries is False


def test_missing_kubeconfig_is_a_transport_error(monkeypatch):
    def no_incluster(client_configuration=None):
        raise cnpg_resources.config.ConfigException("not in a cluster")

    def no_kubeconfig(client_configuration=None):
        raise cnpg_resources.config.ConfigException("no kubeconfig")

    monkeypatch.setattr(cnpg_resources.config, "load_incluster_config", no_incluster)
    monkeypatch.setattr(cnpg_resources.config, "load_kube_config", no_kubeconfig)

    with pytest.raises(TransportError, match="Failed to load Kubernetes configuration"):
        create_api_client(Settings())
