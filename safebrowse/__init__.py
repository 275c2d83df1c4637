"""
SafeBrowse - local threat-list replica and URL lookup client
"""

__version__ = "1.0.0"

from .client import SafeBrowseClient, create_client
from .config import SafeBrowseConfig
from .errors import (
    DesyncError,
    MalformedURLError,
    NotReadyError,
    RemoteServiceError,
    SafeBrowseError,
    StoreError,
)
from .events import UpdateEvent
from .hashing import canonicalize, derive_expressions
from .models import ListIdentity, MatchRecord, PlatformType, ThreatEntryType, ThreatType
from .storage import MemoryStore, RedisStore

__all__ = [
    "SafeBrowseClient",
    "create_client",
    "SafeBrowseConfig",
    "SafeBrowseError",
    "MalformedURLError",
    "RemoteServiceError",
    "DesyncError",
    "NotReadyError",
    "StoreError",
    "UpdateEvent",
    "canonicalize",
    "derive_expressions",
    "ListIdentity",
    "MatchRecord",
    "ThreatType",
    "PlatformType",
    "ThreatEntryType",
    "MemoryStore",
    "RedisStore",
]
