"""Calendar providers."""

from roomcast.providers.base import (
    ConnectionTestResult,
    ErrorKind,
    ProviderAdapter,
    ProviderError,
)
from roomcast.providers.caldav import CalDAVAdapter
from roomcast.providers.credentials import (
    CalDAVCredentials,
    ExchangeCredentials,
    GoogleCredentials,
    ICSCredentials,
    ProviderCredentials,
    dump_credentials,
    parse_credentials,
)
from roomcast.providers.exchange import ExchangeAdapter
from roomcast.providers.factory import get_provider_adapter
from roomcast.providers.google import GoogleAdapter
from roomcast.providers.ics import ICSAdapter

__all__ = [
    "CalDAVAdapter",
    "CalDAVCredentials",
    "ConnectionTestResult",
    "ErrorKind",
    "ExchangeAdapter",
    "ExchangeCredentials",
    "GoogleAdapter",
    "GoogleCredentials",
    "ICSAdapter",
    "ICSCredentials",
    "ProviderAdapter",
    "ProviderCredentials",
    "ProviderError",
    "dump_credentials",
    "get_provider_adapter",
    "parse_credentials",
]
