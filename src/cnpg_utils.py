"""
Formatting and naming helpers shared by the compiler, dispatcher and
read-only query layer.
"""

import json
import re
from typing import Any, Dict

import yaml

CHARACTER_LIMIT = 25000

RFC1123_PATTERN = r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$'
_RFC1123_RE = re.compile(RFC1123_PATTERN)
_ALLOWED = set('abcdefghijklmnopqrstuvwxyz0123456789-')


def validate_rfc1123_name(name: str, resource_type: str = "resource") -> str:
    """
    Validate that a name conforms to the RFC 1123 DNS label standard.

    Kubernetes resource names must be 63 characters or less, contain only
    lowercase alphanumerics or '-', and start and end with an alphanumeric.

    Returns:
        The name, unchanged, so the function can be used as a validator.

    Raises:
        ValueError: If the name doesn't conform to RFC 1123
    """
    if not name:
        raise ValueError(f"{resource_type} name cannot be empty")

    if len(name) > 63:
        raise ValueError(
            f"{resource_type} name '{name}' is too long ({len(name)} characters). "
            f"RFC 1123 DNS labels must be 63 characters or less."
        )

    if not _RFC1123_RE.match(name):
        issues = []
        if not name[0].isalnum() or name[0].isupper():
            issues.append("must start with a lowercase letter or number")
        if len(name) > 1 and (not name[-1].isalnum() or name[-1].isupper()):
            issues.append("must end with a lowercase letter or number")
        if any(c.isupper() for c in name):
            issues.append("must be lowercase (uppercase letters are not allowed)")
        invalid_chars = set(c for c in name if c.lower() not in _ALLOWED)
        if invalid_chars:
            issues.append(f"contains invalid characters: {', '.join(sorted(invalid_chars))}")

        raise ValueError(
            f"{resource_type} name '{name}' is invalid. Use only lowercase letters, "
            f"numbers and hyphens, starting and ending with a letter or number. "
            f"Issues found: {'; '.join(issues)}"
        )

    return name


def truncate_response(content: str, max_length: int = CHARACTER_LIMIT) -> str:
    """Truncate response content to stay within character limits."""
    if len(content) <= max_length:
        return content

    truncated = content[:max_length - 100]
    return f"{truncated}\n\n... (truncated, {len(content) - max_length} characters omitted)"


def to_yaml(document: Dict[str, Any]) -> str:
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def to_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)
