#!/usr/bin/env python3
"""
PyTest configuration and fixtures for the SafeBrowse test suite
"""

import base64
import logging
from typing import Dict, Iterable, List, Optional
from unittest.mock import AsyncMock

import pytest

from safebrowse.api import SafeBrowsingAPI
from safebrowse.cache import FullHashCache
from safebrowse.events import EventEmitter
from safebrowse.models import (
    FullHashesResponse,
    ListIdentity,
    PlatformType,
    ThreatEntryType,
    ThreatListUpdatesResponse,
    ThreatType,
)
from safebrowse.storage import MemoryStore
from safebrowse.threat_lists import ThreatListStore

# Configure logging for tests
logging.basicConfig(level=logging.INFO)


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def list_update(
    list_id: ListIdentity,
    prefixes: Iterable[bytes] = (),
    removals: Optional[List[int]] = None,
    response_type: str = "FULL_UPDATE",
    state: str = "state-1",
) -> Dict:
    """One listUpdateResponses entry in wire format"""
    prefixes = list(prefixes)
    entry = {
        **list_id.to_request(),
        "responseType": response_type,
        "newClientState": state,
    }
    if prefixes:
        entry["additions"] = [
            {
                "compressionType": "RAW",
                "rawHashes": {
                    "prefixSize": len(prefixes[0]),
                    "rawHashes": b64(b"".join(prefixes)),
                },
            }
        ]
    if removals:
        entry["removals"] = [
            {"compressionType": "RAW", "rawIndices": {"indices": removals}}
        ]
    return entry


def updates_response(*entries: Dict, wait: Optional[str] = "300s"):
    body = {"listUpdateResponses": list(entries)}
    if wait is not None:
        body["minimumWaitDuration"] = wait
    return ThreatListUpdatesResponse.model_validate(body)


def full_hashes_response(
    list_id: ListIdentity, full_hashes: Iterable[bytes], cache_duration="300s"
):
    return FullHashesResponse.model_validate(
        {
            "matches": [
                {
                    **list_id.to_request(),
                    "threat": {"hash": b64(full_hash)},
                    "cacheDuration": cache_duration,
                }
                for full_hash in full_hashes
            ]
        }
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def lists_store(memory_store):
    return ThreatListStore(memory_store)


@pytest.fixture
def hash_cache(memory_store):
    return FullHashCache(memory_store)


@pytest.fixture
def malware_list():
    return ListIdentity(
        ThreatType.MALWARE, PlatformType.ANY_PLATFORM, ThreatEntryType.URL
    )


@pytest.fixture
def phishing_list():
    return ListIdentity(
        ThreatType.SOCIAL_ENGINEERING, PlatformType.ANY_PLATFORM, ThreatEntryType.URL
    )


@pytest.fixture
def mock_api():
    """Remote service double; tests set return values per call"""
    api = AsyncMock(spec=SafeBrowsingAPI)
    api.find_full_hashes.return_value = FullHashesResponse()
    return api


@pytest.fixture
def recorded_events():
    """EventEmitter plus the (event, args) pairs it emitted"""
    emitter = EventEmitter()
    calls = []
    forward = emitter.emit

    def emit(event, *args):
        calls.append((event, args))
        forward(event, *args)

    emitter.emit = emit
    return emitter, calls
