"""
Process-start configuration for the CloudNativePG intent server.

Settings are read once, from an optional YAML file and the environment
(environment wins), and are never re-read during the process lifetime.

Searches for the YAML file in order:
1. Explicit path (argument, or the CNPG_CONFIG environment variable)
2. /etc/mcp/cnpg.yaml (default Kubernetes ConfigMap mount)
3. /config/cnpg.yaml
4. ./cnpg.yaml
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0

CONFIG_SEARCH_PATHS = [
    "/etc/mcp/cnpg.yaml",
    "/config/cnpg.yaml",
    "./cnpg.yaml",
]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    """
    Connection and runtime settings.

    Attributes:
        api_url: Kubernetes API server URL. Used together with ``token``;
            when either is missing the in-cluster or kubeconfig
            configuration is used instead.
        token: Bearer token for the API server.
        verify_ssl: Verify the API server certificate.
        ca_cert: Path to a CA bundle for the API server certificate.
        request_timeout: Timeout in seconds applied to every remote call.
        log_level: Root log level name.
    """

    api_url: Optional[str] = None
    token: Optional[str] = None
    verify_ssl: bool = True
    ca_cert: Optional[str] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    log_level: str = "INFO"

    @property
    def uses_token_auth(self) -> bool:
        return bool(self.api_url and self.token)

    def summary(self) -> Dict[str, str]:
        """Loggable view of the settings (the token is never included)."""
        return {
            "API server": self.api_url or "(in-cluster or kubeconfig)",
            "Auth": "bearer token" if self.uses_token_auth else "service account / kubeconfig",
            "Verify TLS": str(self.verify_ssl),
            "Request timeout": f"{self.request_timeout:g}s",
        }


def load_config_file(config_path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Load settings from the first YAML file found on the search path.

    Args:
        config_path: Optional explicit path to the config file

    Returns:
        Dict with the file contents, or None if no file was found
    """
    search_paths = []

    if config_path:
        search_paths.append(config_path)
    search_paths.extend(CONFIG_SEARCH_PATHS)

    for path_str in search_paths:
        path = Path(path_str)
        if path.exists() and path.is_file():
            logger.info(f"Loading configuration from: {path}")
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Configuration file {path} must contain a mapping, got {type(data).__name__}")
            return data

    logger.debug("No configuration file found, using environment variables")
    return None


def _parse_bool(value: Any, setting: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {setting}: {value!r}")


def _read_token_file(token_file: str) -> str:
    path = Path(token_file)
    if not path.exists():
        raise ValueError(f"Token file not found: {token_file}")
    return path.read_text().strip()


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build Settings from the config file and environment.

    Priority for each value: environment variable, then YAML file, then
    the default. The token may also come from a file (``token_file`` in
    YAML or K8S_TOKEN_FILE), which is how Kubernetes Secret mounts are
    usually exposed.
    """
    env = os.environ if environ is None else environ
    file_config = load_config_file(config_path or env.get("CNPG_CONFIG")) or {}

    def pick(env_key: str, file_key: str, default: Any = None) -> Any:
        value = env.get(env_key)
        if value not in (None, ""):
            return value
        return file_config.get(file_key, default)

    token = pick("K8S_TOKEN", "token")
    if not token:
        token_file = pick("K8S_TOKEN_FILE", "token_file")
        if token_file:
            token = _read_token_file(token_file)

    raw_timeout = pick("CNPG_REQUEST_TIMEOUT", "request_timeout", DEFAULT_REQUEST_TIMEOUT)
    try:
        request_timeout = float(raw_timeout)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid request timeout: {raw_timeout!r}")
    if request_timeout <= 0:
        raise ValueError(f"Request timeout must be positive, got {request_timeout}")

    return Settings(
        api_url=pick("K8S_API_URL", "api_url"),
        token=token,
        verify_ssl=_parse_bool(pick("K8S_VERIFY_SSL", "verify_ssl", True), "verify_ssl"),
        ca_cert=pick("K8S_CA_CERT", "ca_cert"),
        request_timeout=request_timeout,
        log_level=str(pick("LOG_LEVEL", "log_level", "INFO")).upper(),
    )
