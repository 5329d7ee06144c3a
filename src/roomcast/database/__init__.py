"""Database module for the calendar cache.

This module provides:
- SQLAlchemy async database connection
- Calendar, cached event and display models
- Encrypted storage for provider credentials
"""

from roomcast.database.connection import (
    close_db,
    create_session_factory,
    get_db_session,
    get_session_factory,
    init_db,
)
from roomcast.database.encryption import (
    CredentialCodec,
    DecryptionError,
    decrypt_credentials,
    encrypt_credentials,
)
from roomcast.database.models import (
    Base,
    Calendar,
    CalendarEvent,
    Display,
    ProviderKind,
    SyncStatus,
)

__all__ = [
    # Connection
    "create_session_factory",
    "get_db_session",
    "get_session_factory",
    "init_db",
    "close_db",
    # Encryption
    "CredentialCodec",
    "DecryptionError",
    "encrypt_credentials",
    "decrypt_credentials",
    # Models
    "Base",
    "Calendar",
    "CalendarEvent",
    "Display",
    "ProviderKind",
    "SyncStatus",
]
