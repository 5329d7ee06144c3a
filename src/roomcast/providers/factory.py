"""Provider adapter lookup by calendar provider kind."""

from __future__ import annotations

from typing import Any

from roomcast.database.models import ProviderKind
from roomcast.providers.base import ProviderAdapter
from roomcast.providers.caldav import CalDAVAdapter
from roomcast.providers.exchange import ExchangeAdapter
from roomcast.providers.google import GoogleAdapter
from roomcast.providers.ics import ICSAdapter

ADAPTERS: dict[ProviderKind, type[ProviderAdapter]] = {
    ProviderKind.EXCHANGE: ExchangeAdapter,
    ProviderKind.GOOGLE: GoogleAdapter,
    ProviderKind.CALDAV: CalDAVAdapter,
    ProviderKind.ICS: ICSAdapter,
}


def get_provider_adapter(kind: ProviderKind | str, **options: Any) -> ProviderAdapter:
    """Create a fresh adapter for a provider kind.

    Args:
        kind: Provider kind (enum or its string value, case-insensitive)
        **options: Passed to the adapter (client, timeout, user_agent)

    Raises:
        ValueError: If the kind is not a known provider
    """
    try:
        provider = ProviderKind(kind.upper() if isinstance(kind, str) else kind)
    except ValueError:
        raise ValueError(f"Unknown calendar provider: {kind!r}") from None
    return ADAPTERS[provider](**options)
