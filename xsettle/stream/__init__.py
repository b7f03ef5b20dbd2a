"""Progress streams: SSE framing, emitter and upstream relay."""

from xsettle.stream.relay import StreamRelay
from xsettle.stream.sse import (
    SSE_HEADERS,
    SseEmitter,
    SseMessage,
    SseParser,
    encode_sse_comment,
    encode_sse_event,
)

__all__ = [
    "SSE_HEADERS",
    "SseEmitter",
    "SseMessage",
    "SseParser",
    "StreamRelay",
    "encode_sse_comment",
    "encode_sse_event",
]
