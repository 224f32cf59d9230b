"""
Error taxonomy for the CloudNativePG intent server.

Every failure raised below the dispatcher is one of these classes. The
dispatcher turns them into an OperationResult using the class ``kind``,
so callers can tell a concurrent-modification conflict apart from a plain
transport failure and decide for themselves whether to re-issue an intent.
"""

from typing import Optional


class CnpgError(Exception):
    """Base class for all errors surfaced to the caller."""

    kind: str = "Error"
    retryable: bool = False
    suggestion: Optional[str] = None

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if suggestion is not None:
            self.suggestion = suggestion

    def __str__(self) -> str:
        return self.message


class ValidationError(CnpgError):
    """Malformed or missing intent arguments. Never reaches the network."""

    kind = "ValidationError"


class UnknownOperation(CnpgError):
    """Intent name is not part of the operation catalog."""

    kind = "UnknownOperation"


class NotFoundError(CnpgError):
    """The referenced resource does not exist."""

    kind = "NotFound"
    suggestion = "The resource does not exist. Try listing available resources first or check the namespace."


class AlreadyExistsError(CnpgError):
    """A create call collided with an existing resource of the same name."""

    kind = "AlreadyExists"
    suggestion = "Choose a different name or delete the existing resource first."


class ConflictError(CnpgError):
    """
    The resource changed between fetch and replace.

    Raised when the API server rejects a replace because the submitted
    ``metadata.resourceVersion`` is stale. Re-fetching and re-applying the
    intent is safe.
    """

    kind = "Conflict"
    retryable = True
    suggestion = "The resource was modified by another writer. Re-issue the request to apply it against the latest version."


class StructuralMismatch(CnpgError):
    """A patch path does not match the shape of the fetched document."""

    kind = "StructuralMismatch"


class TransportError(CnpgError):
    """Network, authorization or API server failure."""

    kind = "TransportError"

    def __init__(self, message: str, status: Optional[int] = None, suggestion: Optional[str] = None):
        super().__init__(message, suggestion)
        self.status = status


class RequestTimeoutError(TransportError):
    """A remote call did not complete within the configured timeout."""

    kind = "Timeout"
    retryable = True
    suggestion = "The Kubernetes API server did not answer in time. Check connectivity and retry."
