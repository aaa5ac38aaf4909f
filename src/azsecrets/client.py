"""Client settings resolution and the cached Azure client.

The cache is an owned field of the backend guarded by a reader/writer
lock. Readers share a cached client; a configuration change takes the
writer lock and clears it, and the next reader rebuilds lazily. A build
that started before an invalidation is discarded rather than stored.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from azure.core.credentials import TokenCredential

from .context import RequestContext
from .credentials import IdentityTokenSource, acquire_token, build_credential
from .environments import CloudEnvironment, resolve_environment
from .errors import InvalidConfiguration
from .models import AuthMode, Configuration, FederatedIdentity, StaticSecret, Unconfigured
from .locks import RWLock
from .provider import AzureProvider, Provider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[["ClientSettings", TokenCredential], Provider]


@dataclass(frozen=True)
class ClientSettings:
    """Concrete parameters needed to talk to one tenant and subscription."""

    subscription_id: str
    tenant_id: str
    environment: CloudEnvironment
    auth_mode: AuthMode

    @property
    def client_id(self) -> str:
        return self.auth_mode.client_id or ""

    @property
    def graph_uri(self) -> str:
        return self.environment.graph_uri

    @property
    def resource_manager_uri(self) -> str:
        return self.environment.resource_manager_uri

    @property
    def authority_host(self) -> str:
        return self.environment.authority_host


def resolve_client_settings(
    config: Configuration,
    environ: Mapping[str, str] | None = None,
) -> ClientSettings:
    """Derive client settings, filling blanks from AZURE_* variables.

    Raises:
        InvalidConfiguration: If identifiers are missing for the selected mode.
    """
    env = os.environ if environ is None else environ

    subscription_id = config.subscription_id or env.get("AZURE_SUBSCRIPTION_ID", "")
    tenant_id = config.tenant_id or env.get("AZURE_TENANT_ID", "")
    client_id = config.client_id or env.get("AZURE_CLIENT_ID", "")
    environment = resolve_environment(config.environment or env.get("AZURE_ENVIRONMENT", ""))

    errors: list[str] = []
    if not subscription_id:
        errors.append("subscription_id is required")
    if not tenant_id:
        errors.append("tenant_id is required")

    mode = config.auth_mode
    if isinstance(mode, StaticSecret):
        auth_mode: AuthMode = mode
    elif isinstance(mode, FederatedIdentity):
        if not client_id:
            errors.append("client_id is required for federated identity")
        auth_mode = mode.model_copy(update={"client_id": client_id})
    else:
        secret = env.get("AZURE_CLIENT_SECRET", "")
        if secret and client_id:
            auth_mode = StaticSecret(client_id=client_id, client_secret=secret)
        else:
            auth_mode = Unconfigured(client_id=client_id or None)

    if errors:
        raise InvalidConfiguration("Client settings are incomplete:\n  - " + "\n  - ".join(errors))

    return ClientSettings(
        subscription_id=subscription_id,
        tenant_id=tenant_id,
        environment=environment,
        auth_mode=auth_mode,
    )


def default_provider_factory(settings: ClientSettings, credential: TokenCredential) -> Provider:
    return AzureProvider(settings, credential)


class ClientCache:
    """Lazily built, invalidation-aware Azure client."""

    def __init__(
        self,
        *,
        provider_factory: ProviderFactory = default_provider_factory,
        token_source: IdentityTokenSource | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._provider_factory = provider_factory
        self._token_source = token_source
        self._environ = environ
        self._lock = RWLock()
        self._client: Provider | None = None
        self._generation = 0

    @property
    def is_cached(self) -> bool:
        with self._lock.read():
            return self._client is not None

    def get_client_settings(self, config: Configuration) -> ClientSettings:
        return resolve_client_settings(config, self._environ)

    def get_client(self, ctx: RequestContext, config: Configuration) -> Provider:
        """Return the cached client, building it if needed.

        Raises:
            InvalidConfiguration: If the configuration cannot produce a client.
            UpstreamUnavailable: If the initial token exchange fails.
        """
        with self._lock.read():
            if self._client is not None:
                return self._client
            generation = self._generation

        client = self._build(ctx, config)

        with self._lock.write():
            if self._generation != generation:
                # Invalidated mid-build; hand this client to the caller only
                logger.info("Configuration changed during client build, not caching")
                return client
            if self._client is None:
                self._client = client
            return self._client

    def reset(self) -> None:
        """Drop the cached client; the next caller rebuilds it."""
        with self._lock.write():
            self._client = None
            self._generation += 1
        logger.debug("Client cache invalidated")

    def _build(self, ctx: RequestContext, config: Configuration) -> Provider:
        settings = self.get_client_settings(config)
        credential = build_credential(settings, self._token_source)
        # Fail fast on bad credentials, e.g. a rejected federated token
        acquire_token(credential, settings.environment.resource_manager_scope, ctx)
        logger.info(
            "Built Azure client",
            extra={
                "auth_mode": settings.auth_mode.type,
                "environment": settings.environment.name,
            },
        )
        return self._provider_factory(settings, credential)
