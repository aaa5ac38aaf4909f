"""Pytest configuration and fixtures."""

import sys
from collections.abc import Generator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azsecrets.backend import Backend  # noqa: E402
from azsecrets.storage import InMemoryStorage  # noqa: E402
from azure_mock import MockAzureContext, MockApplication  # noqa: E402

SUBSCRIPTION_ID = "a228ceec-bf1a-4411-9f95-39678d8cdb34"
TENANT_ID = "7ac36e27-80fc-4209-a453-e8ad83dc18c2"
ROOT_SECRET = "root-secret-1"


def identity_token_source(audience: str, ttl: int) -> str:
    return f"jwt-for-{audience}-{ttl}"


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def azure() -> Generator[MockAzureContext, None, None]:
    with MockAzureContext() as ctx:
        yield ctx


@pytest.fixture
def backend(storage: InMemoryStorage, azure: MockAzureContext) -> Backend:
    return Backend(
        storage,
        provider_factory=azure.directory.provider_factory,
        token_source=identity_token_source,
        environ={},
    )


@pytest.fixture
def root_app(azure: MockAzureContext) -> MockApplication:
    return azure.directory.register_application("azsecrets-root-app", secret=ROOT_SECRET)


@pytest.fixture
def configured_backend(backend: Backend, root_app: MockApplication) -> Backend:
    """Backend configured with a working static root secret."""
    backend.config_store.create_or_update(
        {
            "subscription_id": SUBSCRIPTION_ID,
            "tenant_id": TENANT_ID,
            "client_id": root_app.app_id,
            "client_secret": ROOT_SECRET,
        },
        is_create=True,
    )
    return backend
