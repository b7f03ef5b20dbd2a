"""
HTTP surface of the settlement engine (aiohttp).

Endpoints:
- GET/POST /api/settle/stream - settlement progress SSE (step/log/done/error)
- GET /api/agent/stream       - checkout SSE, or relay with engine=proxy
- POST /api/agent/action      - confirm_settlement, optionally proxied upstream
- GET /health                 - liveness (no auth)
- GET /metrics                - Prometheus text (bearer/token auth if configured)

Request validation happens before the stream opens, so malformed input gets a
plain 400 instead of an event stream.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from xsettle.config.config import Settings
from xsettle.config.config_validator import MODE_SIMULATE, MODES, ConfigValidator
from xsettle.core.errors import SettlementEngineError
from xsettle.core.json_utils import dumps, loads
from xsettle.deal.codec import Deal
from xsettle.deal.wire import deal_from_query, deal_from_wire
from xsettle.execution.chain_executor import ExecutorFactory
from xsettle.infra.logging_cfg import log_event
from xsettle.monitoring.health import HealthChecker
from xsettle.monitoring.metrics import SettlementMetrics
from xsettle.orchestrator.checkout_flow import CheckoutFlow, CheckoutMode, Listing
from xsettle.orchestrator.settlement_orchestrator import SettlementOrchestrator
from xsettle.session.gate import ConfirmationGate
from xsettle.stream.relay import StreamRelay, parse_upstream
from xsettle.stream.sse import SSE_HEADERS, SseEmitter

log = logging.getLogger("xsettle")

SETTINGS_KEY = web.AppKey("settings", Settings)
GATE_KEY = web.AppKey("gate", ConfirmationGate)
METRICS_KEY = web.AppKey("metrics", SettlementMetrics)
HEALTH_KEY = web.AppKey("health", HealthChecker)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", SettlementOrchestrator)
CHECKOUT_KEY = web.AppKey("checkout", CheckoutFlow)
EXECUTORS_KEY = web.AppKey("executors", ExecutorFactory)
HTTP_CLIENT_KEY = web.AppKey("http_client", httpx.AsyncClient)
RELAY_KEY = web.AppKey("relay", StreamRelay)

CONFIRM_ACTION = "confirm_settlement"
DISCONNECT_CHECK_SEC = 1.0


def _bad_request(message: str, status: int = 400) -> web.Response:
    return web.json_response({"message": message}, status=status, dumps=dumps)


def _is_disconnected(request: web.Request) -> bool:
    transport = request.transport
    return transport is None or transport.is_closing()


def _parse_mode(raw: Optional[str]) -> Tuple[Optional[str], Optional[web.Response]]:
    mode = raw or MODE_SIMULATE
    if mode not in MODES:
        return None, _bad_request(f"unknown mode: {mode} (expected one of {', '.join(MODES)})")
    return mode, None


async def _watch_disconnect(request: web.Request, abort_event: asyncio.Event) -> None:
    while not abort_event.is_set():
        if _is_disconnected(request):
            abort_event.set()
            return
        try:
            await asyncio.wait_for(abort_event.wait(), timeout=DISCONNECT_CHECK_SEC)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def _event_stream(request: web.Request, route: str) -> AsyncIterator[Tuple[web.StreamResponse, SseEmitter]]:
    """Open an SSE response with heartbeats and disconnect detection."""
    settings = request.app[SETTINGS_KEY]
    metrics = request.app[METRICS_KEY]
    response = web.StreamResponse(status=200, headers=SSE_HEADERS)
    await response.prepare(request)

    abort_event = asyncio.Event()
    emitter = SseEmitter(
        response.write,
        heartbeat_sec=settings.heartbeat_sec,
        abort_event=abort_event,
        is_disconnected=lambda: _is_disconnected(request),
    )
    watcher = asyncio.create_task(_watch_disconnect(request, abort_event))
    metrics.streams_open.labels(route=route).inc()
    emitter.start_heartbeat()
    try:
        yield response, emitter
    finally:
        await emitter.stop_heartbeat()
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        metrics.streams_open.labels(route=route).dec()
        if abort_event.is_set() and emitter.terminal is None:
            metrics.client_disconnects.labels(route=route).inc()
            log_event(log, "stream_client_disconnected", route=route, events_sent=emitter.sent)
        else:
            try:
                await response.write_eof()
            except (ConnectionError, RuntimeError):
                pass  # client closed between the last event and eof


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------

async def settle_stream(request: web.Request) -> web.StreamResponse:
    deal: Deal
    if request.method == "POST":
        try:
            body = await request.json(loads=loads)
        except ValueError:
            return _bad_request("invalid JSON body")
        if not isinstance(body, dict):
            return _bad_request("body must be a JSON object")
        mode, error = _parse_mode(body.get("mode"))
        if error is not None:
            return error
        if body.get("deal") is None:
            return _bad_request("missing deal")
        try:
            deal = deal_from_wire(body["deal"])
        except SettlementEngineError as exc:
            return _bad_request(str(exc))
    else:
        mode, error = _parse_mode(request.query.get("mode"))
        if error is not None:
            return error
        encoded = request.query.get("deal")
        if not encoded:
            return _bad_request("missing deal parameter")
        try:
            deal = deal_from_query(encoded)
        except SettlementEngineError as exc:
            return _bad_request(str(exc))

    orchestrator = request.app[ORCHESTRATOR_KEY]
    async with _event_stream(request, "settle") as (response, emitter):
        await orchestrator.run(deal, mode, emitter.send, emitter.abort_event)
    return response


async def agent_stream(request: web.Request) -> web.StreamResponse:
    if request.query.get("engine") == "proxy":
        return await _proxy_stream(request)

    mode, error = _parse_mode(request.query.get("mode"))
    if error is not None:
        return error
    checkout_mode = CheckoutMode.parse(request.query.get("checkoutMode"))
    try:
        listing = Listing.from_query(request.query)
    except SettlementEngineError as exc:
        return _bad_request(str(exc))

    checkout = request.app[CHECKOUT_KEY]
    async with _event_stream(request, "agent") as (response, emitter):
        await checkout.run(listing, mode, checkout_mode, emitter.send, emitter.abort_event)
    return response


async def _proxy_stream(request: web.Request) -> web.StreamResponse:
    upstream = request.query.get("upstream")
    if not upstream:
        return _bad_request("missing upstream")
    try:
        parse_upstream(upstream)
    except ValueError as exc:
        return _bad_request(str(exc))

    relay = request.app[RELAY_KEY]
    metrics = request.app[METRICS_KEY]
    abort_event = asyncio.Event()
    try:
        async with relay.open(upstream, request.query) as upstream_response:
            response = web.StreamResponse(status=upstream_response.status_code, headers=SSE_HEADERS)
            await response.prepare(request)
            watcher = asyncio.create_task(_watch_disconnect(request, abort_event))
            metrics.streams_open.labels(route="proxy").inc()
            try:
                await relay.pump(upstream_response, response.write, abort_event)
            finally:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
                metrics.streams_open.labels(route="proxy").dec()
            if abort_event.is_set():
                metrics.client_disconnects.labels(route="proxy").inc()
            else:
                try:
                    await response.write_eof()
                except (ConnectionError, RuntimeError):
                    pass  # client closed after the last chunk
            return response
    except httpx.HTTPError as exc:
        log_event(log, "relay_open_failed", logging.WARNING, upstream=upstream, error=str(exc))
        return _bad_request(f"upstream unavailable: {exc}", status=502)


async def agent_action(request: web.Request) -> web.Response:
    try:
        body = await request.json(loads=loads)
    except ValueError:
        return _bad_request("invalid JSON")
    if not isinstance(body, dict):
        return _bad_request("invalid body")

    session_id = body.get("sessionId") if isinstance(body.get("sessionId"), str) else ""
    action = body.get("action") if isinstance(body.get("action"), str) else ""
    upstream = body.get("upstream") if isinstance(body.get("upstream"), str) else ""
    if not session_id:
        return _bad_request("missing sessionId")

    if upstream:
        relay = request.app[RELAY_KEY]
        try:
            status, payload = await relay.forward_action(upstream, session_id, action)
        except ValueError as exc:
            return _bad_request(str(exc))
        except httpx.HTTPError as exc:
            return _bad_request(f"upstream unavailable: {exc}", status=502)
        return web.json_response(payload, status=status, dumps=dumps)

    if action != CONFIRM_ACTION:
        return _bad_request(f"unknown action: {action or '<empty>'}")
    ok = request.app[GATE_KEY].confirm(session_id)
    return web.json_response({"ok": ok}, dumps=dumps)


async def health(request: web.Request) -> web.Response:
    checker = request.app[HEALTH_KEY]
    data: Dict[str, Any] = checker.to_dict()
    data["pending_confirmations"] = len(request.app[GATE_KEY])
    return web.json_response(data, status=200 if checker.is_healthy() else 503, dumps=dumps)


async def metrics_endpoint(request: web.Request) -> web.Response:
    token = request.app[SETTINGS_KEY].metrics_token
    if token:
        header_ok = request.headers.get("Authorization", "") == f"Bearer {token}"
        if not header_ok and request.query.get("token") != token:
            return web.Response(status=401, text="Unauthorized")
    body = request.app[METRICS_KEY].render()
    return web.Response(body=body, headers={"Content-Type": CONTENT_TYPE_LATEST})


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------

def create_app(
    settings: Settings,
    gate: Optional[ConfirmationGate] = None,
    executor_factory: Optional[ExecutorFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    metrics: Optional[SettlementMetrics] = None,
    health_checker: Optional[HealthChecker] = None,
    validator: Optional[ConfigValidator] = None,
) -> web.Application:
    """
    Build the application. Collaborators not passed in are created here, one
    per app, so tests can inject fakes for any of them.
    """
    app = web.Application()
    metrics = metrics or SettlementMetrics()
    gate = gate or ConfirmationGate()
    validator = validator or ConfigValidator()
    executors = executor_factory or ExecutorFactory(settings)
    orchestrator = SettlementOrchestrator(settings, executors, validator=validator, metrics=metrics)

    app[SETTINGS_KEY] = settings
    app[GATE_KEY] = gate
    app[METRICS_KEY] = metrics
    app[HEALTH_KEY] = health_checker or HealthChecker()
    app[EXECUTORS_KEY] = executors
    app[ORCHESTRATOR_KEY] = orchestrator
    app[CHECKOUT_KEY] = CheckoutFlow(settings, gate, orchestrator, validator=validator, metrics=metrics)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(http2=True, timeout=settings.http_timeout)
    app[HTTP_CLIENT_KEY] = client
    app[RELAY_KEY] = StreamRelay(client)

    async def _lifecycle(app: web.Application) -> AsyncIterator[None]:
        app[HEALTH_KEY].set_component_health("config", True, "Configuration validated")
        app[HEALTH_KEY].set_ready(True)
        yield
        app[HEALTH_KEY].set_ready(False)
        await app[EXECUTORS_KEY].close()
        if owns_client:
            await client.aclose()

    app.cleanup_ctx.append(_lifecycle)

    app.router.add_get("/api/settle/stream", settle_stream)
    app.router.add_post("/api/settle/stream", settle_stream)
    app.router.add_get("/api/agent/stream", agent_stream)
    app.router.add_post("/api/agent/action", agent_action)
    app.router.add_get("/health", health)
    app.router.add_get("/metrics", metrics_endpoint)
    return app
