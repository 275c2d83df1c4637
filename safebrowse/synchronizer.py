"""
Update scheduler

Drives the periodic synchronization of every configured threat list:

    IDLE -> WAITING(deadline) -> FETCHING -> APPLYING -> IDLE -> ...

STOPPED is terminal. The next deadline is persisted before the loop
reschedules, so a restarted process waits out the remaining interval instead
of fetching again straight away. Only one cycle is ever in flight.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .api import SafeBrowsingAPI
from .errors import DesyncError, RemoteServiceError, StoreError
from .events import EventEmitter, UpdateEvent
from .models import ListIdentity, UpdateDiff, parse_duration
from .threat_lists import ThreatListStore

logger = logging.getLogger(__name__)

DEFAULT_WAIT_SECONDS = 300


class SyncState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    FETCHING = "fetching"
    APPLYING = "applying"
    STOPPED = "stopped"


class Synchronizer:
    def __init__(
        self,
        api: SafeBrowsingAPI,
        lists_store: ThreatListStore,
        lists: Sequence[ListIdentity],
        events: Optional[EventEmitter] = None,
        default_wait: int = DEFAULT_WAIT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._api = api
        self._lists_store = lists_store
        self.lists = list(lists)
        self.events = events or EventEmitter()
        self.default_wait = default_wait
        self._clock = clock

        self.state = SyncState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        # Last server-advertised interval, reused as the retry delay.
        self._retry_wait = default_wait

    # ============= Scheduling =============

    async def seconds_until_update(self) -> float:
        """Seconds left before the persisted deadline, 0 when due or unset"""
        deadline = await self._lists_store.get_next_update()
        if deadline is None:
            return 0.0
        return max(0.0, deadline - self._clock())

    def _wait_from(self, advertised) -> int:
        seconds = parse_duration(advertised)
        if seconds is None or seconds <= 0:
            return self.default_wait
        return seconds

    # ============= Update Cycle =============

    async def update(self) -> Dict[str, int]:
        """
        Run one synchronization cycle.

        Returns:
            Summary with the number of lists updated and reset and the wait
            until the next cycle

        Raises:
            RemoteServiceError: if the fetch fails or returns an unusable diff
            StoreError: if the backing store fails mid-cycle
        """
        async with self._cycle_lock:
            self.events.emit(UpdateEvent.STARTED)
            logger.info(f"Starting update of {len(self.lists)} threat lists")

            self.state = SyncState.FETCHING
            try:
                list_states = await self._current_states()
                response = await self._api.fetch_threat_list_updates(list_states)

                # Decode everything before writing anything.
                diffs: List[Tuple[ListIdentity, UpdateDiff]] = [
                    (list_response.list_id, list_response.to_diff())
                    for list_response in response.list_update_responses
                ]

                wait = self._wait_from(response.minimum_wait_duration)
                next_update = self._clock() + wait

                self.state = SyncState.APPLYING
                updated, reset = await self._apply_all(diffs)

                await self._lists_store.set_next_update(next_update)
                self._retry_wait = wait
            finally:
                self.state = SyncState.STOPPED if self._stopped else SyncState.IDLE

            summary = {"updated": updated, "reset": reset, "next_update": wait}
            logger.info(
                f"Update complete: {updated} lists updated, {reset} reset, "
                f"next update in {wait}s"
            )
            self.events.emit(UpdateEvent.COMPLETE, summary)
            return summary

    async def _current_states(self) -> List[Tuple[ListIdentity, Optional[str]]]:
        return [
            (list_id, await self._lists_store.get_state(list_id))
            for list_id in self.lists
        ]

    async def _apply_all(self, diffs: List[Tuple[ListIdentity, UpdateDiff]]):
        updated = 0
        reset = 0
        for list_id, diff in diffs:
            try:
                await self._lists_store.apply_update(list_id, diff)
                updated += 1
            except DesyncError as e:
                logger.warning(f"{e}; resetting list for a full resync")
                await self._lists_store.reset(list_id)
                reset += 1
                self.events.emit(UpdateEvent.ERROR, e)
        return updated, reset

    # ============= Loop =============

    async def run(self) -> None:
        """Synchronize forever, honouring the server's wait intervals"""
        while True:
            self.state = SyncState.WAITING
            wait = await self.seconds_until_update()
            if wait > 0:
                logger.info(f"Next update in {wait:.0f}s")
                self.events.emit(UpdateEvent.SCHEDULED, {"next_update": wait})
                await asyncio.sleep(wait)

            try:
                await self.update()
            except (RemoteServiceError, StoreError) as e:
                logger.error(f"Update failed, retrying in {self._retry_wait}s: {e}")
                self.events.emit(UpdateEvent.ERROR, e)
                self.state = SyncState.WAITING
                await asyncio.sleep(self._retry_wait)
            except Exception as e:
                logger.exception("Update loop crashed")
                self.events.emit(UpdateEvent.ERROR, e)
                raise

    def start(self) -> asyncio.Task:
        """
        Start the update loop on the running event loop.

        Raises:
            RuntimeError: if the synchronizer has been stopped
        """
        if self._stopped:
            raise RuntimeError("Synchronizer has been stopped and cannot restart")
        if self._task is None or self._task.done():
            self.state = SyncState.IDLE
            self._task = asyncio.create_task(self.run(), name="safebrowse-sync")
        return self._task

    async def stop(self) -> None:
        """Cancel the update loop. Safe to call more than once."""
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state = SyncState.STOPPED
