"""Pydantic models for the engine's persisted and exchanged records.

These models provide:
1. A flat, fully populated configuration record (the persisted shape)
2. A patch model with explicit field presence for partial updates
3. An authentication-mode union derived from the record
4. Role and lease records used by issuance and revocation
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .durations import parse_duration

DEFAULT_ROOT_PASSWORD_TTL_SECONDS = 15_768_000  # 6 months

DURATION_FIELDS = (
    "root_password_ttl",
    "identity_token_ttl",
    "rotation_window",
    "rotation_period",
)

ROTATION_FIELDS = (
    "rotation_window",
    "rotation_period",
    "rotation_schedule",
    "disable_automated_rotation",
)

# Fields never returned from a read
SECRET_FIELDS = frozenset({"client_secret"})


# =============================================================================
# Configuration
# =============================================================================


class Configuration(BaseModel):
    """The single configuration record for a backend mount.

    Zero values mean "not set"; a freshly deleted backend reads back as
    ``Configuration()``.
    """

    model_config = {"extra": "ignore"}

    subscription_id: str = ""
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    environment: str = ""
    root_password_ttl: int = 0
    identity_token_audience: str = ""
    identity_token_ttl: int = 0
    rotation_window: int = 0
    rotation_period: int = 0
    rotation_schedule: str = ""
    disable_automated_rotation: bool = False

    @property
    def auth_mode(self) -> AuthMode:
        """Authentication mode selected by the credential fields."""
        if self.client_secret:
            return StaticSecret(client_id=self.client_id, client_secret=self.client_secret)
        if self.identity_token_audience:
            return FederatedIdentity(
                client_id=self.client_id,
                audience=self.identity_token_audience,
                token_ttl=self.identity_token_ttl,
            )
        return Unconfigured(client_id=self.client_id or None)

    @property
    def has_rotation_policy(self) -> bool:
        return bool(self.rotation_period or self.rotation_schedule)

    def to_response(self) -> dict[str, Any]:
        """Fully populated read view with secret material removed."""
        return self.model_dump(exclude=set(SECRET_FIELDS))


class ConfigPatch(BaseModel):
    """Partial configuration update.

    Only fields present in ``model_fields_set`` are applied. Duration fields
    accept integer seconds or duration strings and are normalised to seconds.
    """

    model_config = {"extra": "ignore"}

    subscription_id: str | None = None
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    environment: str | None = None
    root_password_ttl: int | None = None
    identity_token_audience: str | None = None
    identity_token_ttl: int | None = None
    rotation_window: int | None = None
    rotation_period: int | None = None
    rotation_schedule: str | None = None
    disable_automated_rotation: bool | None = None

    @field_validator(*DURATION_FIELDS, mode="before")
    @classmethod
    def parse_durations(cls, v: Any, info: Any) -> int | None:
        if v is None:
            return None
        return parse_duration(v, field_name=info.field_name)

    def changes(self) -> dict[str, Any]:
        """Explicitly supplied fields, ``None`` mapped to the zero value."""
        defaults = Configuration()
        return {
            name: getattr(defaults, name) if getattr(self, name) is None else getattr(self, name)
            for name in self.model_fields_set
        }

    def apply_to(self, base: Configuration) -> Configuration:
        return base.model_copy(update=self.changes())


# =============================================================================
# Authentication modes
# =============================================================================


class StaticSecret(BaseModel):
    """Client id and secret of an existing application (the root credential)."""

    type: Literal["static_secret"] = "static_secret"
    client_id: Annotated[str, Field(min_length=1)]
    client_secret: Annotated[str, Field(min_length=1)]


class FederatedIdentity(BaseModel):
    """Workload identity federation: a signed token exchanged for access."""

    type: Literal["federated_identity"] = "federated_identity"
    client_id: str = ""
    audience: Annotated[str, Field(min_length=1)]
    token_ttl: int = 0


class Unconfigured(BaseModel):
    """No credential configured; the host's managed identity is used."""

    type: Literal["unconfigured"] = "unconfigured"
    client_id: str | None = None


AuthMode = Annotated[
    Union[StaticSecret, FederatedIdentity, Unconfigured],
    Field(discriminator="type"),
]


# =============================================================================
# Roles
# =============================================================================


class AzureRoleAssignment(BaseModel):
    """An Azure RBAC role granted to issued service principals."""

    model_config = {"extra": "ignore"}

    role_name: str = ""
    role_id: str = ""
    scope: Annotated[str, Field(min_length=1)]

    @model_validator(mode="after")
    def require_name_or_id(self) -> AzureRoleAssignment:
        if not self.role_name and not self.role_id:
            raise ValueError("either role_name or role_id is required")
        return self


class AzureGroupMembership(BaseModel):
    """A directory group issued service principals are added to."""

    model_config = {"extra": "ignore"}

    group_name: str = ""
    object_id: Annotated[str, Field(min_length=1)]


class Role(BaseModel):
    """Policy describing what an issued credential is allowed to do."""

    model_config = {"extra": "ignore"}

    azure_roles: list[AzureRoleAssignment] = Field(default_factory=list)
    azure_groups: list[AzureGroupMembership] = Field(default_factory=list)
    application_object_id: str = ""
    ttl: int = 0
    max_ttl: int = 0
    permanently_delete: bool = False
    sign_in_audience: str = ""
    tags: list[str] = Field(default_factory=list)

    @field_validator("ttl", "max_ttl", mode="before")
    @classmethod
    def parse_ttl(cls, v: Any, info: Any) -> int:
        if v is None:
            return 0
        return parse_duration(v, field_name=info.field_name)

    @model_validator(mode="after")
    def validate_policy(self) -> Role:
        if not (self.azure_roles or self.azure_groups or self.application_object_id):
            raise ValueError(
                "at least one of azure_roles, azure_groups or application_object_id is required"
            )
        if self.max_ttl and self.ttl > self.max_ttl:
            raise ValueError("ttl cannot be greater than max_ttl")
        return self

    @property
    def is_static(self) -> bool:
        """Static roles add passwords to an existing application."""
        return bool(self.application_object_id)


# =============================================================================
# Leases
# =============================================================================


class LeaseInternal(BaseModel):
    """Bookkeeping the revocation path needs to undo an issuance."""

    role: str
    dynamic: bool
    app_object_id: str
    sp_object_id: str = ""
    key_id: str = ""
    role_assignment_ids: list[str] = Field(default_factory=list)
    group_object_ids: list[str] = Field(default_factory=list)
    permanently_delete: bool = False


class Lease(BaseModel):
    """An issued credential plus the time bounds the host must enforce."""

    lease_id: str
    data: dict[str, str]
    ttl: int
    max_ttl: int
    issued_at: datetime
    expires_at: datetime
    internal: LeaseInternal

    @property
    def client_id(self) -> str:
        return self.data["client_id"]
