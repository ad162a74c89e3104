"""Connector entity model.

Defines the Connector table and the runtime auth config models.
A connector bundles a base URL, default headers and an auth config
(none / basic / oauth2). The auth config is Fernet-encrypted at rest
because it carries passwords, client secrets and cached tokens.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field as PydanticField, model_validator
from pydantic.alias_generators import to_camel
from sqlmodel import Column, Field, SQLModel, Text


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class AuthType(str, Enum):
    """Supported connector authentication schemes."""

    NONE = "none"
    BASIC = "basic"
    OAUTH2 = "oauth2"


class _AuthBase(BaseModel):
    # Accept both snake_case and the camelCase keys stored by the connector form
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class NoAuth(_AuthBase):
    type: Literal["none"] = "none"


class BasicAuth(_AuthBase):
    type: Literal["basic"] = "basic"
    username: str
    password: str = ""


class OAuth2Auth(_AuthBase):
    """OAuth2 auth config plus the cached token state."""

    type: Literal["oauth2"] = "oauth2"
    grant_type: Literal["client_credentials", "authorization_code"] = PydanticField(
        default="client_credentials",
        alias="oauth2Type",
    )
    token_url: str
    client_id: str
    client_secret: str = ""
    scope: str | None = None
    token_location: Literal["header", "body"] = "header"
    case_sensitive_headers: bool = True
    authorization_url: str | None = None
    redirect_uri: str | None = None

    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    last_refreshed: datetime | None = None
    needs_reauth: bool = False

    @model_validator(mode="after")
    def require_authorization_urls(self) -> "OAuth2Auth":
        if self.grant_type == "authorization_code" and not (
            self.authorization_url and self.redirect_uri
        ):
            raise ValueError(
                "authorization_code connectors require authorization_url and redirect_uri"
            )
        return self


ConnectorAuth = Annotated[
    Union[NoAuth, BasicAuth, OAuth2Auth],
    PydanticField(discriminator="type"),
]


class ConnectorConfig(BaseModel):
    """Decrypted, runtime view of a connector used by the engine."""

    id: str | None = None
    name: str = ""
    base_url: str
    auth: ConnectorAuth = PydanticField(default_factory=NoAuth)
    headers: dict[str, str] = PydanticField(default_factory=dict)

    @property
    def auth_type(self) -> AuthType:
        return AuthType(self.auth.type)


class ConnectorBase(SQLModel):
    """Base connector fields shared across models."""

    name: str = Field(
        max_length=255,
        min_length=1,
        description="Human-readable connector name",
    )
    base_url: str = Field(
        max_length=2048,
        min_length=1,
        description="Base URL that node endpoints are joined to",
    )


class Connector(ConnectorBase, table=True):
    """Connector database entity.

    SECURITY NOTES:
    - encrypted_auth holds a Fernet token of the JSON auth config
    - Never log decrypted auth values
    """

    __tablename__ = "connector"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique connector identifier (UUID)",
    )
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="Owner user ID",
    )
    auth_type: AuthType = Field(default=AuthType.NONE)
    encrypted_auth: str = Field(
        sa_column=Column(Text, nullable=False),
        description="Fernet-encrypted JSON auth config",
    )
    headers: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False),
        description="JSON map of default request headers",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        description="Creation timestamp (UTC)",
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)",
    )

    def get_headers(self) -> dict[str, str]:
        return json.loads(self.headers)

    def set_headers(self, headers: dict[str, str]) -> None:
        self.headers = json.dumps(headers)


class ConnectorCreate(ConnectorBase):
    """Schema for creating a connector.

    The auth config is validated here and encrypted before storage.
    """

    auth: dict[str, Any] = Field(default_factory=lambda: {"type": "none"})
    headers: dict[str, str] = Field(default_factory=dict)


class ConnectorUpdate(SQLModel):
    """Schema for updating a connector."""

    name: str | None = Field(default=None, max_length=255)
    base_url: str | None = Field(default=None, max_length=2048)
    auth: dict[str, Any] | None = None
    headers: dict[str, str] | None = None


class TokenStatus(SQLModel):
    """Non-secret summary of an OAuth2 connector's token state."""

    has_access_token: bool = False
    has_refresh_token: bool = False
    token_expires_at: datetime | None = None
    last_refreshed: datetime | None = None
    needs_reauth: bool = False


class ConnectorRead(ConnectorBase):
    """Schema for reading connector data.

    SECURITY: never includes passwords, client secrets or tokens.
    """

    id: str
    user_id: str
    auth_type: AuthType
    headers: dict[str, str] = Field(default_factory=dict)
    token_status: TokenStatus | None = None
    created_at: datetime
    updated_at: datetime


class ConnectorUseRequest(SQLModel):
    """Call a connector endpoint, by stored id or with an inline connector."""

    connector_id: str | None = None
    connector: dict[str, Any] | None = None
    endpoint: str = ""
    method: str = "GET"
    data: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


class ConnectorTestRequest(SQLModel):
    connector_id: str | None = None
    connector: dict[str, Any] | None = None


class OAuthRefreshRequest(SQLModel):
    connector_id: str


class OAuthExchangeRequest(SQLModel):
    """Authorization code returned to the client by the provider."""

    connector_id: str
    code: str
