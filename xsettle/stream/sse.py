"""
Server-sent event framing for progress streams.

Framing is ``event: <name>\\ndata: <json>\\n\\n``. Heartbeats are SSE comments
(``: keepalive``) so every consumer that follows the SSE rules drops them.

SseEmitter guarantees, per stream:
- at most one terminal event (``done`` or ``error``) and nothing after it
- nothing is written once the abort signal is set
- a failed write (client gone) sets the abort signal, which is how runs
  learn about disconnects
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from xsettle.core.json_utils import dumps, dumps_bytes, loads

log = logging.getLogger("xsettle")

TERMINAL_EVENTS = frozenset({"done", "error"})
KEEPALIVE = "keepalive"

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_sse_event(name: str, data: Any) -> bytes:
    # orjson output never contains a newline, so the payload fits one data line.
    payload = dumps_bytes(data if data is not None else {})
    return b"event: " + name.encode("utf-8") + b"\ndata: " + payload + b"\n\n"


def encode_sse_comment(text: str = KEEPALIVE) -> bytes:
    return f": {text}\n\n".encode("utf-8")


@dataclass
class SseMessage:
    event: str
    data: str
    id: Optional[str] = None

    def json(self) -> Any:
        return loads(self.data) if self.data else None


class SseParser:
    """
    Incremental SSE decoder. Feed it raw chunks in any split; it yields
    complete messages once their blank-line terminator arrives.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._event = "message"
        self._id: Optional[str] = None
        self._data: List[str] = []
        self._has_fields = False

    def feed(self, chunk: bytes | str) -> List[SseMessage]:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        self._buffer += chunk
        messages: List[SseMessage] = []
        for line in self._lines():
            if line == "":
                msg = self._dispatch()
                if msg is not None:
                    messages.append(msg)
                continue
            if line.startswith(":"):
                continue
            name, sep, value = line.partition(":")
            if sep and value.startswith(" "):
                value = value[1:]
            self._has_fields = True
            if name == "event":
                self._event = value or "message"
            elif name == "data":
                self._data.append(value)
            elif name == "id":
                self._id = value
        return messages

    def _lines(self) -> Iterator[str]:
        while True:
            idx = self._buffer.find("\n")
            if idx == -1:
                return
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            yield line.rstrip("\r")

    def _dispatch(self) -> Optional[SseMessage]:
        msg = None
        if self._has_fields:
            msg = SseMessage(event=self._event, data="\n".join(self._data), id=self._id)
        self._event = "message"
        self._id = None
        self._data = []
        self._has_fields = False
        return msg


Writer = Callable[[bytes], Awaitable[Any]]


class SseEmitter:
    """
    Writes events to one client stream.

    Usage:
        emitter = SseEmitter(response.write, heartbeat_sec=15, abort_event=abort)
        emitter.start_heartbeat()
        try:
            await orchestrator.run(deal, mode, emitter.send, abort)
        finally:
            await emitter.stop_heartbeat()
    """

    def __init__(
        self,
        writer: Writer,
        heartbeat_sec: float = 15.0,
        abort_event: Optional[asyncio.Event] = None,
        is_disconnected: Optional[Callable[[], bool]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._write = writer
        self._heartbeat_sec = heartbeat_sec
        self.abort_event = abort_event or asyncio.Event()
        self._is_disconnected = is_disconnected
        self._log_event = log_event or self._default_log
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.terminal: Optional[str] = None
        self.sent = 0

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    @property
    def closed(self) -> bool:
        return self.terminal is not None or self.abort_event.is_set()

    async def send(self, name: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Write one event. Returns False if it was dropped."""
        if self.closed:
            self._log_event("sse_event_dropped", name=name, terminal=self.terminal)
            return False
        if name in TERMINAL_EVENTS:
            self.terminal = name
        ok = await self._write_bytes(encode_sse_event(name, data))
        if ok:
            self.sent += 1
        return ok

    async def comment(self, text: str = KEEPALIVE) -> bool:
        if self.abort_event.is_set():
            return False
        return await self._write_bytes(encode_sse_comment(text))

    async def _write_bytes(self, raw: bytes) -> bool:
        async with self._lock:
            try:
                await self._write(raw)
            except (ConnectionError, RuntimeError) as exc:
                # aiohttp raises ClientConnectionResetError (a ConnectionError)
                # or RuntimeError once the transport is gone.
                self._log_event("sse_client_gone", error=str(exc))
                self.abort_event.set()
                return False
        return True

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None and self._heartbeat_sec > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _heartbeat_loop(self) -> None:
        while not self.closed:
            try:
                await asyncio.wait_for(self.abort_event.wait(), timeout=self._heartbeat_sec)
                return
            except asyncio.TimeoutError:
                pass
            if self._is_disconnected is not None and self._is_disconnected():
                self._log_event("sse_disconnect_detected")
                self.abort_event.set()
                return
            if self.closed:
                return
            await self.comment()
            self._log_event("heartbeat_sent")
