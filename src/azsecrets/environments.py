"""Azure cloud environment endpoint table."""

from __future__ import annotations

from dataclasses import dataclass

from azure.identity import AzureAuthorityHosts

from .errors import InvalidConfiguration

AZURE_PUBLIC_CLOUD = "AZUREPUBLICCLOUD"
AZURE_CHINA_CLOUD = "AZURECHINACLOUD"
AZURE_US_GOVERNMENT_CLOUD = "AZUREUSGOVERNMENTCLOUD"

DEFAULT_ENVIRONMENT = AZURE_PUBLIC_CLOUD


@dataclass(frozen=True)
class CloudEnvironment:
    """Endpoints for one sovereign deployment of Azure."""

    name: str
    graph_uri: str
    resource_manager_uri: str
    authority_host: str

    @property
    def graph_scope(self) -> str:
        return f"{self.graph_uri}/.default"

    @property
    def resource_manager_scope(self) -> str:
        return f"{self.resource_manager_uri.rstrip('/')}/.default"


ENVIRONMENTS: dict[str, CloudEnvironment] = {
    AZURE_PUBLIC_CLOUD: CloudEnvironment(
        name=AZURE_PUBLIC_CLOUD,
        graph_uri="https://graph.microsoft.com",
        resource_manager_uri="https://management.azure.com/",
        authority_host=AzureAuthorityHosts.AZURE_PUBLIC_CLOUD,
    ),
    AZURE_CHINA_CLOUD: CloudEnvironment(
        name=AZURE_CHINA_CLOUD,
        graph_uri="https://microsoftgraph.chinacloudapi.cn",
        resource_manager_uri="https://management.chinacloudapi.cn/",
        authority_host=AzureAuthorityHosts.AZURE_CHINA,
    ),
    AZURE_US_GOVERNMENT_CLOUD: CloudEnvironment(
        name=AZURE_US_GOVERNMENT_CLOUD,
        graph_uri="https://graph.microsoft.us",
        resource_manager_uri="https://management.usgovcloudapi.net/",
        authority_host=AzureAuthorityHosts.AZURE_GOVERNMENT,
    ),
}


def resolve_environment(name: str) -> CloudEnvironment:
    """Look up the endpoints for a named environment.

    An empty name selects the public cloud. Names are case-sensitive.

    Raises:
        InvalidConfiguration: If the name is not a known environment.
    """
    if not name:
        return ENVIRONMENTS[DEFAULT_ENVIRONMENT]
    try:
        return ENVIRONMENTS[name]
    except KeyError:
        valid = sorted(ENVIRONMENTS)
        raise InvalidConfiguration(
            f"environment must be one of {valid}: {name}"
        ) from None
