#!/usr/bin/env python3
"""
Tests for safebrowse/matcher.py - the prefix -> full-hash lookup pipeline.
"""

import pytest

from conftest import b64, full_hashes_response, list_update
from safebrowse.errors import MalformedURLError, NotReadyError, RemoteServiceError
from safebrowse.hashing import hash_expression
from safebrowse.matcher import Matcher
from safebrowse.models import ListUpdateResponse

URL = "http://evil.example.com/malware.html"
LISTED = hash_expression("evil.example.com/malware.html")


@pytest.fixture
def matcher(mock_api, lists_store, hash_cache):
    return Matcher(mock_api, lists_store, hash_cache)


@pytest.fixture
def synced(lists_store, malware_list, clock):
    """Replica holding the listed expression's prefix plus an unrelated one"""

    async def sync(prefixes=(LISTED.prefix, b"\xff\xff\xff\xff")):
        response = ListUpdateResponse.model_validate(
            list_update(malware_list, list(prefixes), state="state-1")
        )
        await lists_store.apply_update(malware_list, response.to_diff())
        await lists_store.set_next_update(clock() + 300)

    return sync


class TestReadiness:
    @pytest.mark.asyncio
    async def test_refuses_before_first_sync(self, matcher):
        with pytest.raises(NotReadyError):
            await matcher.check(URL)

    @pytest.mark.asyncio
    async def test_malformed_url(self, matcher, synced):
        await synced()
        with pytest.raises(MalformedURLError):
            await matcher.check("")


class TestCheck:
    @pytest.mark.asyncio
    async def test_confirmed_match(self, matcher, synced, mock_api, malware_list):
        await synced()
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [LISTED.full_hash]
        )

        matches = await matcher.check(URL)

        assert len(matches) == 1
        match = matches[0]
        assert match.list_id == malware_list
        assert match.full_hash == b64(LISTED.full_hash)
        assert match.expression == "evil.example.com/malware.html"
        assert match.client_state == "state-1"
        assert match.cache_duration == 300

        mock_api.find_full_hashes.assert_awaited_once_with(
            prefixes=[b64(LISTED.prefix)],
            threat_types=["MALWARE"],
            platform_types=["ANY_PLATFORM"],
            threat_entry_types=["URL"],
            client_states=["state-1"],
        )

    @pytest.mark.asyncio
    async def test_no_local_prefix_means_no_remote_call(self, matcher, synced, mock_api):
        await synced()
        assert await matcher.check("http://harmless.example.org/") == []
        mock_api.find_full_hashes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prefix_collision_is_not_a_match(
        self, matcher, synced, mock_api, malware_list
    ):
        await synced()
        colliding = LISTED.prefix + b"\x00" * 28
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [colliding]
        )
        assert await matcher.check(URL) == []

    @pytest.mark.asyncio
    async def test_duplicate_matches_collapse(
        self, matcher, synced, mock_api, malware_list
    ):
        await synced()
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [LISTED.full_hash, LISTED.full_hash]
        )
        assert len(await matcher.check(URL)) == 1

    @pytest.mark.asyncio
    async def test_remote_failure_propagates(self, matcher, synced, mock_api):
        await synced()
        mock_api.find_full_hashes.side_effect = RemoteServiceError("down", 500)
        with pytest.raises(RemoteServiceError):
            await matcher.check(URL)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_host_entry_matches_deeper_url(
        self, matcher, synced, mock_api, lists_store, malware_list
    ):
        listed_host = hash_expression("evil.com/")
        await synced([listed_host.prefix])
        before = await lists_store.get_prefixes(malware_list)
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [listed_host.full_hash]
        )

        first = await matcher.check("http://evil.com/path")
        second = await matcher.check("http://evil.com/path")

        assert len(first) == 1
        assert first[0].expression == "evil.com/"
        assert second == first
        assert mock_api.find_full_hashes.await_count == 1
        assert await lists_store.get_prefixes(malware_list) == before


class TestCaching:
    @pytest.mark.asyncio
    async def test_cached_match_skips_remote(
        self, matcher, synced, mock_api, malware_list
    ):
        await synced()
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [LISTED.full_hash]
        )

        first = await matcher.check(URL)
        second = await matcher.check(URL)

        assert first == second
        assert mock_api.find_full_hashes.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_match_is_fetched_again(
        self, matcher, synced, mock_api, malware_list, clock
    ):
        await synced()
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [LISTED.full_hash], cache_duration="60s"
        )

        await matcher.check(URL)
        clock.advance(61)
        await matcher.check(URL)

        assert mock_api.find_full_hashes.await_count == 2

    @pytest.mark.asyncio
    async def test_match_without_cache_duration_is_not_cached(
        self, matcher, synced, mock_api, malware_list
    ):
        await synced()
        mock_api.find_full_hashes.return_value = full_hashes_response(
            malware_list, [LISTED.full_hash], cache_duration=None
        )

        matches = await matcher.check(URL)
        await matcher.check(URL)

        assert matches[0].cache_duration is None
        assert mock_api.find_full_hashes.await_count == 2
