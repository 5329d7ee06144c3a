"""Provider credential shapes.

Credentials are stored encrypted as a JSON object whose `provider` field
selects the variant. They are validated here, at the boundary, before any
adapter sees them.

| Provider | Fields |
|----------|--------|
| EXCHANGE | tenantId, clientId, clientSecret, userEmail, resourceEmail? |
| GOOGLE   | clientId, clientSecret, refreshToken, calendarId |
| CALDAV   | serverUrl, username, password, calendarPath? |
| ICS      | feedUrl, authHeader? |
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


class _CredentialModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )

    @model_validator(mode="before")
    @classmethod
    def empty_strings_to_none(cls, data: Any) -> Any:
        # Admin forms submit unset optionals as ""; the discriminator is left as sent
        if not isinstance(data, dict):
            return data
        return {key: (None if value == "" and key != "provider" else value) for key, value in data.items()}


class ExchangeCredentials(_CredentialModel):
    """Client-credentials app registration with calendar read access."""

    provider: Literal["EXCHANGE"] = "EXCHANGE"
    tenant_id: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    user_email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    resource_email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+$")

    @property
    def calendar_user(self) -> str:
        """Mailbox whose calendar is read (room resource if configured)."""
        return self.resource_email or self.user_email


class GoogleCredentials(_CredentialModel):
    """OAuth client plus a long-lived refresh token."""

    provider: Literal["GOOGLE"] = "GOOGLE"
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)


class CalDAVCredentials(_CredentialModel):
    provider: Literal["CALDAV"] = "CALDAV"
    server_url: str = Field(pattern=r"^https?://")
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    calendar_path: str | None = None


class ICSCredentials(_CredentialModel):
    provider: Literal["ICS"] = "ICS"
    feed_url: str = Field(pattern=r"^(https?|webcal)://")
    auth_header: str | None = None


ProviderCredentials = Annotated[
    Union[ExchangeCredentials, GoogleCredentials, CalDAVCredentials, ICSCredentials],
    Field(discriminator="provider"),
]

_credentials_adapter: TypeAdapter[Any] = TypeAdapter(ProviderCredentials)


def parse_credentials(data: Any) -> ExchangeCredentials | GoogleCredentials | CalDAVCredentials | ICSCredentials:
    """Validate a decrypted credential object.

    Raises:
        pydantic.ValidationError: If the object matches no provider variant
    """
    return _credentials_adapter.validate_python(data)


def dump_credentials(credentials: _CredentialModel) -> dict[str, Any]:
    """Serialize credentials to the JSON object that gets encrypted."""
    return credentials.model_dump(by_alias=True, exclude_none=True)
