"""
URL matcher

Answers "is this URL on a threat list?" in explicit stages:

1. readiness   - refuse to answer before the first successful sync
2. candidates  - canonicalize, derive expressions, hash
3. partial     - local prefix membership across tracked lists
4. cache       - previously confirmed full hashes
5. remote      - one batched full-hash call for whatever is left

Only stage 5 touches the network, and it only sends hash prefixes.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .api import SafeBrowsingAPI
from .cache import FullHashCache
from .errors import NotReadyError
from .hashing import HashedExpression, lookup_hashes
from .models import ListIdentity, MatchRecord, parse_duration
from .threat_lists import ThreatListStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartialMatch:
    """A local prefix hit, not yet confirmed by a full hash"""

    list_id: ListIdentity
    candidate: HashedExpression
    prefix: bytes
    client_state: Optional[str]

    @property
    def full_hash(self) -> bytes:
        return self.candidate.full_hash


def _unique(values: Iterable) -> List:
    return list(dict.fromkeys(values))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class Matcher:
    def __init__(
        self,
        api: SafeBrowsingAPI,
        lists_store: ThreatListStore,
        cache: FullHashCache,
    ):
        self._api = api
        self._lists_store = lists_store
        self._cache = cache

    async def check(self, url: str) -> List[MatchRecord]:
        """
        Check a URL against every tracked threat list.

        Returns:
            Confirmed matches, empty when the URL is not listed

        Raises:
            NotReadyError: if no synchronization has completed yet
            MalformedURLError: if the URL cannot be canonicalized
            RemoteServiceError: if a full-hash lookup was needed and failed
        """
        await self._ensure_ready()
        candidates = lookup_hashes(url)
        partial_matches = await self._find_partial_matches(candidates)
        if not partial_matches:
            return []

        confirmed, outstanding = await self._resolve_from_cache(partial_matches)
        if outstanding:
            confirmed.extend(await self._resolve_remotely(outstanding))

        if confirmed:
            logger.info(f"{len(confirmed)} threat matches for {url}")
        return confirmed

    # ============= Stages =============

    async def _ensure_ready(self) -> None:
        if await self._lists_store.get_next_update() is None:
            raise NotReadyError("Threat lists have not been synchronized yet")

    async def _find_partial_matches(
        self, candidates: List[HashedExpression]
    ) -> List[PartialMatch]:
        matches: List[PartialMatch] = []
        seen: Set[Tuple[ListIdentity, bytes]] = set()
        tracked = sorted(await self._lists_store.list_all_tracked_lists(), key=str)
        for list_id in tracked:
            sizes = sorted(await self._lists_store.prefix_sizes(list_id))
            state = None
            for candidate in candidates:
                for size in sizes:
                    prefix = candidate.prefix_of(size)
                    if not await self._lists_store.prefix_exists(list_id, prefix):
                        continue
                    if (list_id, candidate.full_hash) in seen:
                        continue
                    if state is None:
                        state = await self._lists_store.get_state(list_id)
                    seen.add((list_id, candidate.full_hash))
                    matches.append(PartialMatch(list_id, candidate, prefix, state))
        return matches

    async def _resolve_from_cache(
        self, partial_matches: List[PartialMatch]
    ) -> Tuple[List[MatchRecord], List[PartialMatch]]:
        confirmed: List[MatchRecord] = []
        outstanding: List[PartialMatch] = []
        for partial in partial_matches:
            record = await self._cache.lookup(partial.list_id, partial.full_hash)
            if record is not None:
                confirmed.append(record)
            else:
                outstanding.append(partial)
        return confirmed, outstanding

    async def _resolve_remotely(
        self, outstanding: List[PartialMatch]
    ) -> List[MatchRecord]:
        response = await self._api.find_full_hashes(
            prefixes=_unique(_b64(partial.prefix) for partial in outstanding),
            threat_types=_unique(p.list_id.threat_type.value for p in outstanding),
            platform_types=_unique(p.list_id.platform_type.value for p in outstanding),
            threat_entry_types=_unique(
                p.list_id.threat_entry_type.value for p in outstanding
            ),
            client_states=_unique(
                p.client_state for p in outstanding if p.client_state
            ),
        )

        # Only hashes we actually asked about count as matches.
        by_hash: Dict[str, List[PartialMatch]] = {}
        for partial in outstanding:
            by_hash.setdefault(_b64(partial.full_hash), []).append(partial)

        confirmed: List[MatchRecord] = []
        accepted: Set[Tuple[ListIdentity, str]] = set()
        for match in response.matches:
            candidates = by_hash.get(match.threat.hash)
            if not candidates:
                logger.debug(f"Ignoring unrequested full hash for {match.list_id}")
                continue
            partial = next(
                (p for p in candidates if p.list_id == match.list_id), candidates[0]
            )
            key = (match.list_id, match.threat.hash)
            if key in accepted:
                continue
            accepted.add(key)

            cache_duration = parse_duration(match.cache_duration)
            record = MatchRecord(
                threat_type=match.threat_type,
                platform_type=match.platform_type,
                threat_entry_type=match.threat_entry_type,
                full_hash=match.threat.hash,
                expression=partial.candidate.expression,
                client_state=partial.client_state,
                cache_duration=cache_duration,
            )
            await self._cache.store(
                match.list_id, partial.full_hash, record, cache_duration
            )
            confirmed.append(record)
        return confirmed
