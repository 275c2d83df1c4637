"""
SafeBrowse configuration

Settings come from the environment (optionally seeded from a .env file):

    SAFEBROWSE_API_KEY          API key for the remote service
    SAFEBROWSE_CLIENT_ID        client identity reported to the service
    SAFEBROWSE_CLIENT_VERSION   client version reported to the service
    SAFEBROWSE_API_URL          service root URL
    SAFEBROWSE_REDIS_URL        backing Redis instance
    SAFEBROWSE_NAMESPACE        key prefix in the backing store
    SAFEBROWSE_LISTS            comma-separated THREAT:PLATFORM:ENTRY triples
    SAFEBROWSE_TIMEOUT          request timeout in seconds
    SAFEBROWSE_DEFAULT_WAIT     update interval when the service gives none
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional, Union

from dotenv import load_dotenv

from . import __version__
from .api import DEFAULT_API_URL
from .models import ListIdentity, PlatformType, ThreatEntryType, ThreatType
from .synchronizer import DEFAULT_WAIT_SECONDS
from .threat_lists import DEFAULT_NAMESPACE

DEFAULT_LISTS: List[ListIdentity] = [
    ListIdentity(ThreatType.MALWARE, PlatformType.ANY_PLATFORM, ThreatEntryType.URL),
    ListIdentity(
        ThreatType.SOCIAL_ENGINEERING, PlatformType.ANY_PLATFORM, ThreatEntryType.URL
    ),
    ListIdentity(
        ThreatType.POTENTIALLY_HARMFUL_APPLICATION,
        PlatformType.ANDROID,
        ThreatEntryType.URL,
    ),
    ListIdentity(
        ThreatType.POTENTIALLY_HARMFUL_APPLICATION, PlatformType.IOS, ThreatEntryType.URL
    ),
    ListIdentity(
        ThreatType.UNWANTED_SOFTWARE, PlatformType.ANY_PLATFORM, ThreatEntryType.URL
    ),
]


def parse_lists(value: str) -> List[ListIdentity]:
    """Parse ``MALWARE:ANY_PLATFORM:URL,SOCIAL_ENGINEERING:ANY_PLATFORM:URL``"""
    lists = [ListIdentity.parse(item) for item in value.split(",") if item.strip()]
    if not lists:
        raise ValueError("SAFEBROWSE_LISTS names no lists")
    return lists


@dataclass
class SafeBrowseConfig:
    """Configuration for the SafeBrowse client"""

    api_key: str = ""
    client_id: str = "safebrowse"
    client_version: str = __version__
    api_base_url: str = DEFAULT_API_URL
    redis_url: str = "redis://localhost:6379/0"
    namespace: str = DEFAULT_NAMESPACE
    lists: List[ListIdentity] = field(default_factory=lambda: list(DEFAULT_LISTS))
    request_timeout: float = 30.0
    default_wait: int = DEFAULT_WAIT_SECONDS

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SafeBrowseConfig":
        """
        Build a configuration from environment variables.

        Args:
            env_file: Optional .env file loaded into the process environment
            environ: Mapping to read instead of os.environ

        Raises:
            ValueError: if a variable holds an unusable value
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        config = cls()
        config.api_key = environ.get("SAFEBROWSE_API_KEY", config.api_key)
        config.client_id = environ.get("SAFEBROWSE_CLIENT_ID", config.client_id)
        config.client_version = environ.get(
            "SAFEBROWSE_CLIENT_VERSION", config.client_version
        )
        config.api_base_url = environ.get("SAFEBROWSE_API_URL", config.api_base_url)
        config.redis_url = environ.get("SAFEBROWSE_REDIS_URL", config.redis_url)
        config.namespace = environ.get("SAFEBROWSE_NAMESPACE", config.namespace)

        if environ.get("SAFEBROWSE_LISTS"):
            config.lists = parse_lists(environ["SAFEBROWSE_LISTS"])
        if environ.get("SAFEBROWSE_TIMEOUT"):
            config.request_timeout = float(environ["SAFEBROWSE_TIMEOUT"])
        if environ.get("SAFEBROWSE_DEFAULT_WAIT"):
            config.default_wait = int(environ["SAFEBROWSE_DEFAULT_WAIT"])
            if config.default_wait <= 0:
                raise ValueError("SAFEBROWSE_DEFAULT_WAIT must be positive")
        return config
