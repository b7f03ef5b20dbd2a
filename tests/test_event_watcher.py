"""
Tests for the polling event watcher.
"""
import asyncio
import time

import pytest
from unittest.mock import MagicMock

from xsettle.execution.contracts import (
    address_topic,
    deal_processed_filter,
    event_topic,
    nft_released_filter,
    uint_topic,
)
from xsettle.execution.event_watcher import PollingEventWatcher, Web3LogSource, log_tx_hash

MARKET = "0x5555555555555555555555555555555555555555"
DEAL_ID = "0x" + "ab" * 32


class FakeLogSource:
    """Chain that grows one block per block_number() call; logs appear at ``match_block``."""

    def __init__(self, start=100, match_block=None, tx_hash="0x" + "cd" * 32, fail_first=0):
        self.height = start
        self.match_block = match_block
        self.tx_hash = tx_hash
        self.fail_first = fail_first
        self.queries = []

    async def block_number(self):
        if self.fail_first > 0:
            self.fail_first -= 1
            raise ConnectionError("rpc down")
        self.height += 1
        return self.height

    async def get_logs(self, event_filter, from_block, to_block):
        self.queries.append((from_block, to_block))
        if self.match_block is not None and from_block <= self.match_block <= to_block:
            return [{"transactionHash": self.tx_hash, "blockNumber": self.match_block}]
        return []


class TestPollForEvent:
    """Match, timeout, abort and error behavior."""

    @pytest.mark.asyncio
    async def test_returns_first_match(self):
        source = FakeLogSource(start=100, match_block=103)
        watcher = PollingEventWatcher()
        tx = await watcher.poll_for_event(
            source, deal_processed_filter(MARKET, DEAL_ID), 100, timeout_ms=2000, poll_interval_ms=5,
        )
        assert tx == source.tx_hash
        assert watcher.last_stats.tx_hash == tx
        assert not watcher.last_stats.timed_out

    @pytest.mark.asyncio
    async def test_scans_each_block_once(self):
        source = FakeLogSource(start=100, match_block=105)
        watcher = PollingEventWatcher()
        await watcher.poll_for_event(
            source, deal_processed_filter(MARKET, DEAL_ID), 100, timeout_ms=2000, poll_interval_ms=5,
        )
        # Each query starts right after the previous one ended.
        for (prev_from, prev_to), (next_from, _) in zip(source.queries, source.queries[1:]):
            assert next_from == prev_to + 1
        assert source.queries[0][0] == 100

    @pytest.mark.asyncio
    async def test_timeout_returns_none_within_bound(self):
        source = FakeLogSource(start=100, match_block=None)
        watcher = PollingEventWatcher()
        started = time.monotonic()
        tx = await watcher.poll_for_event(
            source, deal_processed_filter(MARKET, DEAL_ID), 100, timeout_ms=150, poll_interval_ms=40,
        )
        elapsed_ms = (time.monotonic() - started) * 1000
        assert tx is None
        assert watcher.last_stats.timed_out
        # timeout + one interval, plus scheduling slack
        assert elapsed_ms < 150 + 40 + 150

    @pytest.mark.asyncio
    async def test_abort_returns_promptly(self):
        source = FakeLogSource(start=100, match_block=None)
        watcher = PollingEventWatcher()
        abort = asyncio.Event()

        async def fire():
            await asyncio.sleep(0.05)
            abort.set()

        started = time.monotonic()
        firing = asyncio.create_task(fire())
        tx = await watcher.poll_for_event(
            source, deal_processed_filter(MARKET, DEAL_ID), 100,
            timeout_ms=10_000, poll_interval_ms=1_000, abort_event=abort,
        )
        await firing
        assert tx is None
        assert watcher.last_stats.aborted
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_rpc_errors_are_retried(self):
        source = FakeLogSource(start=100, match_block=101, fail_first=2)
        watcher = PollingEventWatcher()
        tx = await watcher.poll_for_event(
            source, deal_processed_filter(MARKET, DEAL_ID), 100, timeout_ms=2000, poll_interval_ms=5,
        )
        assert tx == source.tx_hash
        assert watcher.last_stats.errors == 2

    @pytest.mark.asyncio
    async def test_slow_rpc_bounded_by_window(self):
        class HangingSource(FakeLogSource):
            async def block_number(self):
                await asyncio.sleep(10)

        watcher = PollingEventWatcher()
        started = time.monotonic()
        tx = await watcher.poll_for_event(
            HangingSource(), deal_processed_filter(MARKET, DEAL_ID), 100, timeout_ms=100, poll_interval_ms=20,
        )
        assert tx is None
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_abort_interrupts_hanging_rpc(self):
        class HangingSource(FakeLogSource):
            async def block_number(self):
                await asyncio.sleep(3)
                return await super().block_number()

        watcher = PollingEventWatcher()
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, abort.set)

        started = time.monotonic()
        tx = await watcher.poll_for_event(
            HangingSource(), deal_processed_filter(MARKET, DEAL_ID), 100,
            timeout_ms=10_000, poll_interval_ms=20, abort_event=abort,
        )
        assert tx is None
        assert watcher.last_stats.aborted
        assert not watcher.last_stats.timed_out
        assert time.monotonic() - started < 0.5


class TestFilters:
    """Topic construction for the two correlated events."""

    def test_deal_processed_topics(self):
        f = deal_processed_filter(MARKET, DEAL_ID.upper().replace("0X", "0x"))
        assert f.topics[0] == event_topic("DealProcessed(bytes32)")
        assert f.topics[1] == DEAL_ID

    def test_nft_released_topics(self):
        buyer = "0x1111111111111111111111111111111111111111"
        nft = "0x4444444444444444444444444444444444444444"
        f = nft_released_filter(MARKET, nft, 7, buyer)
        assert f.topics[1] == address_topic(nft)
        assert f.topics[2] == uint_topic(7)
        assert f.topics[3] == "0x" + "00" * 12 + buyer[2:]
        assert len(f.topics[2]) == 66

    def test_nft_released_any_buyer(self):
        f = nft_released_filter(MARKET, MARKET, 1, None)
        assert f.topics[3] is None

    def test_to_params(self):
        params = deal_processed_filter(MARKET, DEAL_ID).to_params(10, 20)
        assert params["fromBlock"] == 10
        assert params["toBlock"] == 20
        assert params["address"] == MARKET


class TestLogHelpers:
    """Log entry tx hash extraction and the web3 adapter."""

    def test_tx_hash_from_bytes(self):
        assert log_tx_hash({"transactionHash": b"\x01" * 32}) == "0x" + "01" * 32

    def test_tx_hash_from_str(self):
        assert log_tx_hash({"transactionHash": "ab" * 32}) == "0x" + "ab" * 32

    @pytest.mark.asyncio
    async def test_web3_log_source(self):
        async def _block():
            return 42

        async def _logs(params):
            return [{"transactionHash": "0x" + "ee" * 32, "params": params}]

        w3 = MagicMock()
        type(w3.eth).block_number = property(lambda self: _block())
        w3.eth.get_logs = _logs
        source = Web3LogSource(w3)
        assert await source.block_number() == 42
        logs = await source.get_logs(deal_processed_filter(MARKET, DEAL_ID), 1, 2)
        assert logs[0]["params"]["fromBlock"] == 1
