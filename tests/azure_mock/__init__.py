"""Azure API mock for testing without Azure connectivity.

Key Features:
- In-memory directory: applications, service principals, passwords,
  groups and RBAC role assignments
- Failure injection per provider operation
- Credential mocks whose validity follows the directory state

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as azure:
        backend = Backend(storage, provider_factory=azure.directory.provider_factory)
        ...
"""

from .context import MockAzureContext
from .credential import MockCredential
from .graph import SUBSCRIPTION_SCOPE, MockApplication, MockDirectory

__all__ = [
    "SUBSCRIPTION_SCOPE",
    "MockApplication",
    "MockAzureContext",
    "MockCredential",
    "MockDirectory",
]
