"""
Threat List Store

Per-list prefix state kept in the backing store:

- a set of base64 prefixes for O(1) membership tests
- a list of the same prefixes in server index order, because the update
  protocol removes entries by index
- the opaque client-state token returned by the last applied update

Each update diff is applied through a single store batch so readers see the
list either before or after the diff, never in between.
"""

import base64
import logging
from typing import List, Optional, Set

from .errors import DesyncError
from .models import ListIdentity, UpdateDiff
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "safebrowse"

# Placeholder written over a removed slot before LREM drops it.
_TOMBSTONE = "__deleted__"


def encode_prefix(prefix: bytes) -> str:
    return base64.b64encode(prefix).decode("ascii")


def decode_prefix(value: str) -> bytes:
    return base64.b64decode(value)


class ThreatListStore:
    """Owns prefix membership, prefix order and client state for every list"""

    def __init__(self, store: KeyValueStore, namespace: str = DEFAULT_NAMESPACE):
        self._store = store
        self.namespace = namespace

    # ============= Keys =============

    def _key(self, list_id: ListIdentity, suffix: str) -> str:
        return f"{self.namespace}:{list_id.code}:{suffix}"

    def _state_key(self, list_id: ListIdentity) -> str:
        return self._key(list_id, "state")

    def _set_key(self, list_id: ListIdentity) -> str:
        return self._key(list_id, "prefixes:set")

    def _sequence_key(self, list_id: ListIdentity) -> str:
        return self._key(list_id, "prefixes:list")

    def _sizes_key(self, list_id: ListIdentity) -> str:
        return self._key(list_id, "prefixes:sizes")

    @property
    def _next_update_key(self) -> str:
        return f"{self.namespace}:nextupdate"

    # ============= State =============

    async def get_state(self, list_id: ListIdentity) -> Optional[str]:
        """Current client-state token, None if the list was never synced"""
        return await self._store.get(self._state_key(list_id))

    async def get_next_update(self) -> Optional[float]:
        """Epoch seconds of the next scheduled update, None before first sync"""
        value = await self._store.get(self._next_update_key)
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Ignoring unreadable next-update deadline {value!r}")
            return None

    async def set_next_update(self, deadline: float) -> None:
        await self._store.set(self._next_update_key, repr(float(deadline)))

    # ============= Updates =============

    async def apply_update(self, list_id: ListIdentity, diff: UpdateDiff) -> None:
        """
        Apply one update diff to a list atomically.

        Removals run before additions, highest index first, since each removal
        shifts every later index down by one.

        Raises:
            DesyncError: if a removal index is outside the current list; nothing
                is written in that case
        """
        set_key = self._set_key(list_id)
        sequence_key = self._sequence_key(list_id)
        sizes_key = self._sizes_key(list_id)

        indices = sorted(set(diff.removals), reverse=True)
        if diff.is_full:
            sequence: List[str] = []
        elif indices:
            sequence = await self._store.lrange(sequence_key, 0, -1)
        else:
            sequence = []

        removed = []
        for index in indices:
            if index < 0 or index >= len(sequence):
                raise DesyncError(list_id, index, len(sequence))
            removed.append(sequence[index])

        added = [encode_prefix(prefix) for prefix in diff.iter_prefixes()]
        sizes = {str(prefix_size) for _, prefix_size in diff.additions}

        batch = self._store.batch()
        if diff.is_full:
            batch.delete(set_key, sequence_key, sizes_key)
        for index in indices:
            batch.lset(sequence_key, index, _TOMBSTONE)
            batch.lrem(sequence_key, 1, _TOMBSTONE)
        if removed:
            batch.srem(set_key, *removed)
        if added:
            batch.rpush(sequence_key, *added)
            batch.sadd(set_key, *added)
            batch.sadd(sizes_key, *sizes)
        batch.set(self._state_key(list_id), diff.new_state)
        await batch.execute()

        logger.info(
            f"Applied {'full' if diff.is_full else 'partial'} update to {list_id}: "
            f"-{len(removed)} +{len(added)}"
        )

    async def reset(self, list_id: ListIdentity) -> None:
        """Forget a list so the next fetch asks for a full update"""
        batch = self._store.batch()
        batch.delete(
            self._state_key(list_id),
            self._set_key(list_id),
            self._sequence_key(list_id),
            self._sizes_key(list_id),
        )
        await batch.execute()
        logger.warning(f"Reset list {list_id}; next update will be a full resync")

    # ============= Reads =============

    async def prefix_exists(self, list_id: ListIdentity, prefix: bytes) -> bool:
        return await self._store.sismember(
            self._set_key(list_id), encode_prefix(prefix)
        )

    async def prefix_sizes(self, list_id: ListIdentity) -> Set[int]:
        """Prefix widths present in a list (4 bytes when none are recorded)"""
        sizes = await self._store.smembers(self._sizes_key(list_id))
        return {int(size) for size in sizes} or {4}

    async def get_prefixes(self, list_id: ListIdentity) -> List[bytes]:
        """All prefixes of a list in index order"""
        values = await self._store.lrange(self._sequence_key(list_id), 0, -1)
        return [decode_prefix(value) for value in values]

    async def prefix_count(self, list_id: ListIdentity) -> int:
        return await self._store.llen(self._sequence_key(list_id))

    async def list_all_tracked_lists(self) -> Set[ListIdentity]:
        """Lists that currently hold at least one prefix"""
        pattern = f"{self.namespace}:*:prefixes:set"
        tracked = set()
        for key in await self._store.keys(pattern):
            code = key[len(self.namespace) + 1 :].split(":", 1)[0]
            try:
                tracked.add(ListIdentity.from_code(code))
            except ValueError:
                logger.warning(f"Skipping unrecognized list key {key}")
        return tracked
