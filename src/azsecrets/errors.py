"""Error taxonomy for the secrets engine.

Every failure that crosses a public operation boundary is one of the
classes below. Azure SDK exceptions are translated at the provider
boundary (see provider.py) so callers never need to import azure.core.
"""

from __future__ import annotations


class AzSecretsError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class InvalidConfiguration(AzSecretsError):
    """Raised when input or stored configuration is unusable.

    Covers malformed values, mutually exclusive fields, unknown cloud
    environments and missing identifiers for the selected auth mode.
    Never retried automatically.
    """

    pass


class RoleNotFound(AzSecretsError):
    """Raised when a referenced role does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"role '{name}' does not exist")
        self.name = name


class UpstreamUnavailable(AzSecretsError):
    """Raised when an Azure control-plane call fails.

    The lease system is expected to retry; this engine never retries on
    its own beyond the Azure SDK transport policy.
    """

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Cancelled(UpstreamUnavailable):
    """Raised when an operation hits its deadline or is cancelled."""

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message)
