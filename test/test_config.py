"""Tests for process-start configuration loading."""

import pytest

from cnpg_config import DEFAULT_REQUEST_TIMEOUT, load_config_file, load_settings


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


def test_defaults_without_file_or_environment():
    settings = load_settings(environ={})

    assert settings.api_url is None
    assert settings.token is None
    assert settings.verify_ssl is True
    assert settings.request_timeout == DEFAULT_REQUEST_TIMEOUT
    assert settings.log_level == "INFO"
    assert not settings.uses_token_auth


def test_yaml_file_is_read(tmp_path):
    config_file = tmp_path / "cnpg.yaml"
    config_file.write_text(
        "api_url: https://k8s.example.com:6443\n"
        "token: from-file\n"
        "verify_ssl: false\n"
        "request_timeout: 5\n"
        "log_level: debug\n"
    )

    settings = load_settings(str(config_file), environ={})

    assert settings.api_url == "https://k8s.example.com:6443"
    assert settings.token == "from-file"
    assert settings.verify_ssl is False
    assert settings.request_timeout == 5.0
    assert settings.log_level == "DEBUG"
    assert settings.uses_token_auth


def test_environment_overrides_file(tmp_path):
    config_file = tmp_path / "custom.yaml"
    config_file.write_text("request_timeout: 5\nverify_ssl: true\n")

    settings = load_settings(environ={
        "CNPG_CONFIG": str(config_file),
        "CNPG_REQUEST_TIMEOUT": "45",
        "K8S_VERIFY_SSL": "no",
    })

    assert settings.request_timeout == 45.0
    assert settings.verify_ssl is False


def test_default_search_path_finds_local_file(tmp_path):
    (tmp_path / "cnpg.yaml").write_text("log_level: warning\n")

    assert load_config_file() == {"log_level": "warning"}
    assert load_settings(environ={}).log_level == "WARNING"


def test_token_file(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("mounted-token\n")

    settings = load_settings(environ={"K8S_API_URL": "https://k8s:6443", "K8S_TOKEN_FILE": str(token_file)})

    assert settings.token == "mounted-token"
    assert settings.uses_token_auth


def test_summary_never_contains_token():
    settings = load_settings(environ={"K8S_API_URL": "https://k8s:6443", "K8S_TOKEN": "super-secret"})

    assert "super-secret" not in str(settings.summary())


@pytest.mark.parametrize("environ, message", [
    ({"CNPG_REQUEST_TIMEOUT": "soon"}, "Invalid request timeout"),
    ({"CNPG_REQUEST_TIMEOUT": "0"}, "must be positive"),
    ({"K8S_VERIFY_SSL": "maybe"}, "Invalid boolean"),
    ({"K8S_TOKEN_FILE": "/nonexistent/token"}, "Token file not found"),
])
def test_invalid_values(environ, message):
    with pytest.raises(ValueError, match=message):
        load_settings(environ=environ)


def test_non_mapping_file_is_rejected(tmp_path):
    config_file = tmp_path / "list.yaml"
    config_file.write_text("- a\n- b\n")

    with pytest.raises(ValueError, match="must contain a mapping"):
        load_config_file(str(config_file))
