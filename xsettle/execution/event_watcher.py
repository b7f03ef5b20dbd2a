"""
EventWatcher: bounded-window observation of a contract event.

The intermediary and destination chains finish their part of a settlement
asynchronously, with latency this engine does not control. The watcher polls
logs for a filter that is unique per deal and returns the first matching
transaction hash, or None once the window closes ("not yet observed": the
transaction may still be in flight).

Architecture:
    The orchestrator only sees the ``EventWatcher`` protocol. The polling
    implementation scans ``[from_block, latest]`` each round and advances
    ``from_block`` to ``latest + 1`` so no block is scanned twice. A push or
    subscription watcher can replace it without touching the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from eth_utils import to_hex

from xsettle.core.json_utils import dumps
from xsettle.core.errors import StreamAbort
from xsettle.core.utils import abortable_sleep, run_until_aborted
from xsettle.execution.contracts import EventFilter

log = logging.getLogger("xsettle")


class LogSource(Protocol):
    """Minimal chain view the polling watcher needs."""

    async def block_number(self) -> int:
        ...

    async def get_logs(self, event_filter: EventFilter, from_block: int, to_block: int) -> Sequence[Any]:
        ...


class EventWatcher(Protocol):
    async def poll_for_event(
        self,
        source: LogSource,
        event_filter: EventFilter,
        start_block: int,
        timeout_ms: int,
        poll_interval_ms: int,
        abort_event: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        ...


@dataclass
class WatchStats:
    """Outcome of the most recent watch, kept for logging and tests."""
    polls: int = 0
    errors: int = 0
    blocks_scanned: int = 0
    tx_hash: Optional[str] = None
    aborted: bool = False
    timed_out: bool = False
    duration_ms: float = 0.0


def log_tx_hash(entry: Any) -> str:
    """Transaction hash of a log entry as 0x-hex."""
    value = entry["transactionHash"]
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return to_hex(bytes(value))


class PollingEventWatcher:
    """
    getLogs polling implementation of EventWatcher.

    Usage:
        watcher = PollingEventWatcher()
        tx = await watcher.poll_for_event(
            source, deal_processed_filter(market, deal.deal_id),
            start_block=zeta_start, timeout_ms=180_000, poll_interval_ms=4_000,
            abort_event=run.abort_event,
        )
        if tx is None:
            ...  # inconclusive, not a failure
    """

    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._log_event = log_event or self._default_log
        self.last_stats = WatchStats()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def poll_for_event(
        self,
        source: LogSource,
        event_filter: EventFilter,
        start_block: int,
        timeout_ms: int,
        poll_interval_ms: int,
        abort_event: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout_ms / 1000.0
        interval = poll_interval_ms / 1000.0
        from_block = start_block
        stats = WatchStats()
        self.last_stats = stats

        def _finish() -> None:
            stats.duration_ms = (loop.time() - started) * 1000

        while loop.time() < deadline:
            if abort_event is not None and abort_event.is_set():
                stats.aborted = True
                break

            remaining = deadline - loop.time()
            try:
                latest = await run_until_aborted(
                    asyncio.wait_for(source.block_number(), timeout=remaining), abort_event
                )
                if latest >= from_block:
                    logs = await run_until_aborted(
                        asyncio.wait_for(
                            source.get_logs(event_filter, from_block, latest),
                            timeout=max(deadline - loop.time(), 0.001),
                        ),
                        abort_event,
                    )
                    stats.blocks_scanned += latest - from_block + 1
                    if logs:
                        stats.tx_hash = log_tx_hash(logs[0])
                        stats.polls += 1
                        _finish()
                        self._log_event(
                            "event_observed",
                            filter=event_filter.name,
                            tx_hash=stats.tx_hash,
                            polls=stats.polls,
                            duration_ms=round(stats.duration_ms, 1),
                        )
                        return stats.tx_hash
                    from_block = latest + 1
            except StreamAbort:
                stats.aborted = True
                break
            except asyncio.TimeoutError:
                # An RPC call outlived the window; the loop condition ends the watch.
                pass
            except Exception as exc:
                stats.errors += 1
                self._log_event("event_poll_error", filter=event_filter.name, error=str(exc))
            stats.polls += 1
            self._log_event("event_poll_tick", filter=event_filter.name, from_block=from_block, polls=stats.polls)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if await abortable_sleep(min(interval, remaining), abort_event):
                stats.aborted = True
                break

        _finish()
        if stats.aborted:
            self._log_event("event_watch_aborted", filter=event_filter.name, polls=stats.polls)
        else:
            stats.timed_out = True
            self._log_event(
                "event_watch_timeout",
                filter=event_filter.name,
                polls=stats.polls,
                errors=stats.errors,
                duration_ms=round(stats.duration_ms, 1),
            )
        return None


class Web3LogSource:
    """LogSource backed by an AsyncWeb3 connection."""

    def __init__(self, w3: Any) -> None:
        self._w3 = w3

    async def block_number(self) -> int:
        return await self._w3.eth.block_number

    async def get_logs(self, event_filter: EventFilter, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        return await self._w3.eth.get_logs(event_filter.to_params(from_block, to_block))
