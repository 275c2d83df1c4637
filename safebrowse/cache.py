"""
Full-Hash Cache

Confirmed full-hash matches keyed by (list, full hash), each kept for the
cache duration the remote service advertised. Expiry is left to the backing
store: an expired entry simply reads back as absent.
"""

import base64
import logging
from typing import Optional

from pydantic import ValidationError

from .models import ListIdentity, MatchRecord
from .storage import KeyValueStore
from .threat_lists import DEFAULT_NAMESPACE

logger = logging.getLogger(__name__)


class FullHashCache:
    def __init__(self, store: KeyValueStore, namespace: str = DEFAULT_NAMESPACE):
        self._store = store
        self.namespace = namespace

    def _key(self, list_id: ListIdentity, full_hash: bytes) -> str:
        encoded = base64.b64encode(full_hash).decode("ascii")
        return f"{self.namespace}:{list_id.code}:hash:{encoded}"

    async def lookup(
        self, list_id: ListIdentity, full_hash: bytes
    ) -> Optional[MatchRecord]:
        """Cached match for a full hash, None when absent or expired"""
        raw = await self._store.get(self._key(list_id, full_hash))
        if raw is None:
            return None
        try:
            return MatchRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry for {list_id}: {e}")
            return None

    async def store(
        self,
        list_id: ListIdentity,
        full_hash: bytes,
        record: MatchRecord,
        ttl_seconds: Optional[int],
    ) -> bool:
        """
        Cache a match, replacing any previous entry.

        Returns:
            False when the TTL is missing or not positive and nothing was cached
        """
        if not ttl_seconds or ttl_seconds <= 0:
            logger.debug(f"Not caching match for {list_id}: ttl={ttl_seconds}")
            return False
        await self._store.set(
            self._key(list_id, full_hash), record.model_dump_json(), ex=int(ttl_seconds)
        )
        return True
