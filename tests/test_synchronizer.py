#!/usr/bin/env python3
"""
Tests for safebrowse/synchronizer.py - update cycles, deadlines and the loop.
"""

import asyncio

import pytest

from conftest import list_update, updates_response
from safebrowse.errors import DesyncError, RemoteServiceError
from safebrowse.events import UpdateEvent
from safebrowse.synchronizer import DEFAULT_WAIT_SECONDS, SyncState, Synchronizer


@pytest.fixture
def synchronizer(mock_api, lists_store, malware_list, phishing_list, recorded_events, clock):
    events, _ = recorded_events
    return Synchronizer(
        mock_api, lists_store, [malware_list, phishing_list], events=events, clock=clock
    )


class TestUpdateCycle:
    @pytest.mark.asyncio
    async def test_first_cycle_requests_full_updates(
        self, synchronizer, mock_api, malware_list, phishing_list
    ):
        mock_api.fetch_threat_list_updates.return_value = updates_response()
        await synchronizer.update()
        mock_api.fetch_threat_list_updates.assert_awaited_once_with(
            [(malware_list, None), (phishing_list, None)]
        )

    @pytest.mark.asyncio
    async def test_applies_diffs_and_persists_deadline(
        self, synchronizer, mock_api, lists_store, malware_list, clock
    ):
        mock_api.fetch_threat_list_updates.return_value = updates_response(
            list_update(malware_list, [b"aaaa", b"bbbb"], state="s1"),
            wait="593.440s",
        )

        summary = await synchronizer.update()

        assert summary == {"updated": 1, "reset": 0, "next_update": 594}
        assert await lists_store.get_prefixes(malware_list) == [b"aaaa", b"bbbb"]
        assert await lists_store.get_state(malware_list) == "s1"
        assert await lists_store.get_next_update() == clock() + 594
        assert synchronizer.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_sends_stored_state_on_next_cycle(
        self, synchronizer, mock_api, malware_list, phishing_list
    ):
        mock_api.fetch_threat_list_updates.return_value = updates_response(
            list_update(malware_list, [b"aaaa"], state="s1")
        )
        await synchronizer.update()
        await synchronizer.update()
        mock_api.fetch_threat_list_updates.assert_awaited_with(
            [(malware_list, "s1"), (phishing_list, None)]
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("wait", [None, "0s", "-3s", "later"])
    async def test_default_wait(self, synchronizer, mock_api, lists_store, clock, wait):
        mock_api.fetch_threat_list_updates.return_value = updates_response(wait=wait)
        summary = await synchronizer.update()
        assert summary["next_update"] == DEFAULT_WAIT_SECONDS
        assert await lists_store.get_next_update() == clock() + 300

    @pytest.mark.asyncio
    async def test_events_in_order(self, synchronizer, mock_api, recorded_events):
        _, calls = recorded_events
        mock_api.fetch_threat_list_updates.return_value = updates_response()
        summary = await synchronizer.update()
        assert calls == [(UpdateEvent.STARTED, ()), (UpdateEvent.COMPLETE, (summary,))]

    @pytest.mark.asyncio
    async def test_fetch_failure_persists_nothing(
        self, synchronizer, mock_api, lists_store, recorded_events
    ):
        _, calls = recorded_events
        mock_api.fetch_threat_list_updates.side_effect = RemoteServiceError("down", 503)
        with pytest.raises(RemoteServiceError):
            await synchronizer.update()
        assert await lists_store.get_next_update() is None
        assert (UpdateEvent.COMPLETE, ()) not in calls
        assert synchronizer.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_undecodable_diff_applies_nothing(
        self, synchronizer, mock_api, lists_store, malware_list, phishing_list
    ):
        broken = list_update(phishing_list)
        broken["additions"] = [{"rawHashes": {"prefixSize": 4, "rawHashes": "YWJj"}}]
        mock_api.fetch_threat_list_updates.return_value = updates_response(
            list_update(malware_list, [b"aaaa"]), broken
        )
        with pytest.raises(RemoteServiceError):
            await synchronizer.update()
        assert await lists_store.prefix_count(malware_list) == 0
        assert await lists_store.get_next_update() is None

    @pytest.mark.asyncio
    async def test_desync_resets_list(
        self, synchronizer, mock_api, lists_store, malware_list, recorded_events
    ):
        _, calls = recorded_events
        mock_api.fetch_threat_list_updates.return_value = updates_response(
            list_update(malware_list, [b"aaaa", b"bbbb"], state="s1")
        )
        await synchronizer.update()

        mock_api.fetch_threat_list_updates.return_value = updates_response(
            list_update(
                malware_list, removals=[7], response_type="PARTIAL_UPDATE", state="s2"
            )
        )
        summary = await synchronizer.update()

        assert summary["reset"] == 1
        assert await lists_store.get_state(malware_list) is None
        assert await lists_store.prefix_count(malware_list) == 0
        assert await lists_store.get_next_update() is not None
        errors = [args[0] for event, args in calls if event == UpdateEvent.ERROR]
        assert len(errors) == 1 and isinstance(errors[0], DesyncError)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_one_cycle_in_flight(self, synchronizer, mock_api):
        completed = []
        synchronizer.events.on(UpdateEvent.COMPLETE, completed.append)
        release_first = asyncio.Event()
        completes_seen_at_fetch = []

        async def fetch(list_states):
            completes_seen_at_fetch.append(len(completed))
            if len(completes_seen_at_fetch) == 1:
                await release_first.wait()
            return updates_response()

        mock_api.fetch_threat_list_updates.side_effect = fetch

        first = asyncio.create_task(synchronizer.update())
        second = asyncio.create_task(synchronizer.update())
        for _ in range(5):
            await asyncio.sleep(0)
        assert completes_seen_at_fetch == [0]

        release_first.set()
        await asyncio.wait_for(asyncio.gather(first, second), timeout=1)

        assert completes_seen_at_fetch == [0, 1]
        assert len(completed) == 2


class TestLoop:
    @pytest.mark.asyncio
    async def test_runs_immediately_without_deadline(self, synchronizer, mock_api):
        mock_api.fetch_threat_list_updates.return_value = updates_response()
        completed = asyncio.Event()
        synchronizer.events.on(UpdateEvent.COMPLETE, lambda summary: completed.set())

        synchronizer.start()
        await asyncio.wait_for(completed.wait(), timeout=1)
        await synchronizer.stop()

        assert mock_api.fetch_threat_list_updates.await_count == 1
        assert synchronizer.state == SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_waits_for_persisted_deadline(
        self, synchronizer, mock_api, lists_store, recorded_events, clock
    ):
        _, calls = recorded_events
        await lists_store.set_next_update(clock() + 120)

        synchronizer.start()
        for _ in range(5):
            await asyncio.sleep(0)

        assert calls == [(UpdateEvent.SCHEDULED, ({"next_update": 120.0},))]
        assert synchronizer.state == SyncState.WAITING
        mock_api.fetch_threat_list_updates.assert_not_awaited()
        await synchronizer.stop()

    @pytest.mark.asyncio
    async def test_failed_cycle_emits_error(self, synchronizer, mock_api, recorded_events):
        _, calls = recorded_events
        failed = asyncio.Event()
        synchronizer.events.on(UpdateEvent.ERROR, lambda error: failed.set())
        mock_api.fetch_threat_list_updates.side_effect = RemoteServiceError("down")

        synchronizer.start()
        await asyncio.wait_for(failed.wait(), timeout=1)
        await synchronizer.stop()

        assert calls[-1][0] == UpdateEvent.ERROR
        assert isinstance(calls[-1][1][0], RemoteServiceError)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, synchronizer):
        synchronizer.start()
        await synchronizer.stop()
        await synchronizer.stop()
        assert synchronizer.state == SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_stopped_is_terminal(self, synchronizer, mock_api):
        synchronizer.start()
        await synchronizer.stop()

        with pytest.raises(RuntimeError):
            synchronizer.start()
        assert synchronizer._task is None
        mock_api.fetch_threat_list_updates.assert_not_awaited()

        mock_api.fetch_threat_list_updates.return_value = updates_response()
        await synchronizer.update()
        assert synchronizer.state == SyncState.STOPPED
        with pytest.raises(RuntimeError):
            synchronizer.start()

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(
        self, synchronizer, mock_api, recorded_events
    ):
        _, calls = recorded_events
        mock_api.fetch_threat_list_updates.side_effect = RuntimeError("bug")

        task = synchronizer.start()
        with pytest.raises(RuntimeError):
            await asyncio.wait_for(task, timeout=1)
        await synchronizer.stop()

        assert calls[-1][0] == UpdateEvent.ERROR
        assert isinstance(calls[-1][1][0], RuntimeError)

    @pytest.mark.asyncio
    async def test_start_twice_reuses_task(self, synchronizer, lists_store, clock):
        await lists_store.set_next_update(clock() + 60)
        task = synchronizer.start()
        assert synchronizer.start() is task
        await synchronizer.stop()
