"""
SafeBrowse client

Public entry point tying together the list store, full-hash cache, update
loop and matcher over one backing store:

    async with create_client() as client:
        client.on("update:complete", lambda summary: ...)
        client.start()
        matches = await client.check("http://example.com/")
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from .api import SafeBrowsingAPI
from .cache import FullHashCache
from .config import SafeBrowseConfig
from .events import EventEmitter, Listener, UpdateEvent
from .matcher import Matcher
from .models import MatchRecord
from .storage import KeyValueStore, RedisStore
from .synchronizer import Synchronizer
from .threat_lists import ThreatListStore

logger = logging.getLogger(__name__)


class SafeBrowseClient:
    """Local threat-list replica with URL lookup"""

    def __init__(
        self,
        config: SafeBrowseConfig,
        store: KeyValueStore,
        api: SafeBrowsingAPI,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.api = api
        self.events = EventEmitter()
        self.lists = ThreatListStore(store, namespace=config.namespace)
        self.cache = FullHashCache(store, namespace=config.namespace)
        self.synchronizer = Synchronizer(
            api,
            self.lists,
            config.lists,
            events=self.events,
            default_wait=config.default_wait,
            clock=clock,
        )
        self.matcher = Matcher(api, self.lists, self.cache)
        self._closed = False

    def start(self) -> asyncio.Task:
        """Start background synchronization. Requires a running event loop."""
        task = self.synchronizer.start()
        logger.info(f"SafeBrowse client started for {len(self.config.lists)} lists")
        return task

    async def stop(self) -> None:
        """Stop synchronization and release the backing store"""
        await self.synchronizer.stop()
        if not self._closed:
            self._closed = True
            await self.store.close()
            logger.info("SafeBrowse client stopped")

    async def check(self, url: str) -> List[MatchRecord]:
        return await self.matcher.check(url)

    def on(self, event: Union[UpdateEvent, str], callback: Listener) -> None:
        self.events.on(event, callback)

    async def update_once(self) -> Dict[str, int]:
        """Run a single synchronization cycle immediately"""
        return await self.synchronizer.update()

    async def stats(self) -> Dict[str, Any]:
        """Prefix counts per tracked list and the next update deadline"""
        lists = {}
        for list_id in sorted(await self.lists.list_all_tracked_lists(), key=str):
            lists[str(list_id)] = await self.lists.prefix_count(list_id)
        return {
            "lists": lists,
            "next_update": await self.lists.get_next_update(),
            "sync_state": self.synchronizer.state.value,
        }

    async def __aenter__(self) -> "SafeBrowseClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def create_client(
    config: Optional[SafeBrowseConfig] = None,
    store: Optional[KeyValueStore] = None,
    api: Optional[SafeBrowsingAPI] = None,
) -> SafeBrowseClient:
    """
    Factory function to create a configured SafeBrowseClient.

    Args:
        config: Settings, read from the environment when omitted
        store: Backing store, a RedisStore on ``config.redis_url`` when omitted
        api: Remote service client, built from ``config`` when omitted

    Returns:
        Configured SafeBrowseClient instance
    """
    if config is None:
        config = SafeBrowseConfig.from_env()
    if store is None:
        store = RedisStore.from_url(config.redis_url)
    if api is None:
        if not config.api_key:
            logger.warning("No SAFEBROWSE_API_KEY set; remote calls will be rejected")
        api = SafeBrowsingAPI(
            config.api_key,
            client_id=config.client_id,
            client_version=config.client_version,
            base_url=config.api_base_url,
            timeout=config.request_timeout,
        )
    return SafeBrowseClient(config, store, api)
