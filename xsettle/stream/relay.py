"""
Relay for an upstream agent service.

Streams are forwarded byte-for-byte; the upstream request is closed as soon as
the client side aborts. Actions are forwarded as JSON and the upstream status
is passed through.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from xsettle.core.errors import StreamAbort
from xsettle.core.json_utils import dumps
from xsettle.core.utils import run_until_aborted

log = logging.getLogger("xsettle")

# Query keys that configure the relay itself and are not forwarded.
RELAY_PARAMS = ("engine", "upstream")
ACTION_PATH = "/api/agent/action"


def upstream_params(params: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in params.items() if k not in RELAY_PARAMS}


def parse_upstream(upstream: str) -> httpx.URL:
    """Accept absolute http(s) URLs only; raises ValueError otherwise."""
    try:
        parsed = httpx.URL(upstream)
    except httpx.InvalidURL as exc:
        raise ValueError(f"invalid upstream: {upstream}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"invalid upstream: {upstream}")
    return parsed


def action_url(upstream: str) -> str:
    """Action route on the upstream host; path and query of ``upstream`` are dropped."""
    parsed = parse_upstream(upstream)
    return f"{parsed.scheme}://{parsed.netloc.decode('ascii')}{ACTION_PATH}"


class StreamRelay:
    """
    Usage:
        relay = StreamRelay(httpx.AsyncClient(timeout=None))
        async with relay.open(upstream_url, params) as upstream:
            await relay.pump(upstream, response.write, abort_event)
    """

    def __init__(self, client: httpx.AsyncClient, log_event: Optional[Callable[..., None]] = None) -> None:
        self._client = client
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @asynccontextmanager
    async def open(self, url: str, params: Mapping[str, str]) -> AsyncIterator[httpx.Response]:
        forwarded = upstream_params(params)
        self._log_event("relay_open", upstream=url, params=sorted(forwarded))
        async with self._client.stream(
            "GET",
            url,
            params=forwarded,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(10.0, read=None),
        ) as response:
            yield response

    async def pump(
        self,
        response: httpx.Response,
        write: Callable[[bytes], Awaitable[Any]],
        abort_event: Optional[asyncio.Event] = None,
    ) -> int:
        """Copy the upstream body to ``write`` until EOF or abort. Returns bytes copied."""
        copied = 0
        chunks = response.aiter_raw()
        try:
            while True:
                try:
                    chunk = await run_until_aborted(chunks.__anext__(), abort_event)
                except StopAsyncIteration:
                    break
                try:
                    await write(chunk)
                except (ConnectionError, RuntimeError) as exc:
                    self._log_event("relay_client_gone", error=str(exc), bytes=copied)
                    if abort_event is not None:
                        abort_event.set()
                    break
                copied += len(chunk)
        except StreamAbort:
            self._log_event("relay_aborted", bytes=copied)
        except httpx.HTTPError as exc:
            self._log_event("relay_upstream_error", error=str(exc), bytes=copied)
        finally:
            await chunks.aclose()
        self._log_event("relay_closed", bytes=copied)
        return copied

    async def forward_action(self, upstream: str, session_id: str, action: str) -> Tuple[int, Any]:
        """
        POST an action to the upstream service's action route. Returns
        (status, json body or {"message": text}).
        """
        url = action_url(upstream)
        resp = await self._client.post(
            url,
            json={"sessionId": session_id, "action": action},
            headers={"Accept": "application/json"},
        )
        self._log_event("relay_action", upstream=url, status=resp.status_code)
        try:
            return resp.status_code, resp.json()
        except ValueError:
            return resp.status_code, {"message": resp.text}
