"""
HTTP-level tests for the aiohttp app.
"""
import dataclasses

import pytest
from aiohttp import test_utils

from xsettle.deal.wire import deal_to_query, deal_to_wire
from xsettle.server.app import create_app
from xsettle.stream.sse import SseParser


def client_for(settings, **kwargs):
    app = create_app(settings, **kwargs)
    return test_utils.TestClient(test_utils.TestServer(app))


async def read_events(resp):
    parser = SseParser()
    body = await resp.read()
    return [(m.event, m.json()) for m in parser.feed(body)]


class TestSettleStream:
    @pytest.mark.asyncio
    async def test_post_simulate(self, fast_settings, deal):
        async with client_for(fast_settings) as client:
            resp = await client.post("/api/settle/stream", json={"mode": "simulate", "deal": deal_to_wire(deal)})
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/event-stream")
            assert resp.headers["Cache-Control"].startswith("no-cache")
            events = await read_events(resp)

        names = [name for name, _ in events]
        assert names[-1] == "done"
        assert names.count("done") == 1
        steps = [(d["id"], d["status"]) for name, d in events if name == "step"]
        assert steps[-1] == ("deliver", "done")
        assert len(steps) == 8

    @pytest.mark.asyncio
    async def test_get_with_encoded_deal(self, fast_settings, deal):
        async with client_for(fast_settings) as client:
            resp = await client.get("/api/settle/stream", params={"deal": deal_to_query(deal)})
            events = await read_events(resp)
        assert events[-1] == ("done", {"ok": True})

    @pytest.mark.asyncio
    async def test_testnet_without_config_streams_error(self, fast_settings, deal):
        async with client_for(fast_settings) as client:
            resp = await client.post("/api/settle/stream", json={"mode": "testnet", "deal": deal_to_wire(deal)})
            events = await read_events(resp)
        assert [name for name, _ in events] == ["error"]
        assert events[0][1]["missing"]

    @pytest.mark.asyncio
    async def test_tampered_deal_streams_error(self, fast_settings, deal):
        wire = deal_to_wire(deal)
        wire["price"] = str(deal.price + 1)
        async with client_for(fast_settings) as client:
            resp = await client.post("/api/settle/stream", json={"deal": wire})
            events = await read_events(resp)
        assert events[-1][0] == "error"
        assert "dealId mismatch" in events[-1][1]["message"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query, fragment", [
        ({"mode": "mainnet"}, "unknown mode"),
        ({}, "missing deal"),
        ({"deal": "!!not-base64!!"}, ""),
    ])
    async def test_bad_get_requests(self, fast_settings, query, fragment):
        async with client_for(fast_settings) as client:
            resp = await client.get("/api/settle/stream", params=query)
            assert resp.status == 400
            body = await resp.json()
        assert fragment in body["message"]

    @pytest.mark.asyncio
    async def test_bad_post_bodies(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.post("/api/settle/stream", data=b"{not json", headers={"Content-Type": "application/json"})
            assert resp.status == 400
            resp = await client.post("/api/settle/stream", json=[1, 2])
            assert resp.status == 400
            resp = await client.post("/api/settle/stream", json={"mode": "simulate"})
            assert resp.status == 400
            resp = await client.post("/api/settle/stream", json={"deal": {"buyer": "0x12"}})
            assert resp.status == 400


class TestAgentStream:
    @pytest.mark.asyncio
    async def test_confirm_over_http(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.get("/api/agent/stream", params={"mode": "simulate", "price": "80.5"})
            assert resp.status == 200
            parser = SseParser()
            events = []
            confirmed = None
            while True:
                chunk = await resp.content.readany()
                if not chunk:
                    break
                for msg in parser.feed(chunk):
                    data = msg.json()
                    events.append((msg.event, data))
                    if msg.event == "state" and data.get("awaitingConfirm") is True:
                        action = await client.post("/api/agent/action", json={
                            "sessionId": data["sessionId"],
                            "action": "confirm_settlement",
                        })
                        confirmed = await action.json()

        assert confirmed == {"ok": True}
        assert events[-1][0] == "done"
        chain_done = {d["id"] for name, d in events if name == "timeline_step" and d["status"] == "done"}
        assert {"prepare", "confirm", "approve", "deposit", "orchestrate", "deliver", "settle"} <= chain_done

    @pytest.mark.asyncio
    async def test_bad_listing(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.get("/api/agent/stream", params={"tokenId": "abc"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_proxy_requires_valid_upstream(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.get("/api/agent/stream", params={"engine": "proxy"})
            assert resp.status == 400
            resp = await client.get("/api/agent/stream", params={"engine": "proxy", "upstream": "ftp://x"})
            assert resp.status == 400


class TestAgentAction:
    @pytest.mark.asyncio
    async def test_unknown_session_is_noop(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.post("/api/agent/action", json={"sessionId": "nope", "action": "confirm_settlement"})
            assert resp.status == 200
            assert await resp.json() == {"ok": False}

    @pytest.mark.asyncio
    async def test_validation(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.post("/api/agent/action", json={"action": "confirm_settlement"})
            assert resp.status == 400
            resp = await client.post("/api/agent/action", json={"sessionId": "s1", "action": "dance"})
            assert resp.status == 400
            resp = await client.post("/api/agent/action", data=b"nope", headers={"Content-Type": "application/json"})
            assert resp.status == 400


class TestOps:
    @pytest.mark.asyncio
    async def test_health(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
        assert body["pending_confirmations"] == 0
        assert body["ready"] is True

    @pytest.mark.asyncio
    async def test_metrics_open_without_token(self, fast_settings):
        async with client_for(fast_settings) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert "settlement_runs_started" in await resp.text()

    @pytest.mark.asyncio
    async def test_metrics_token(self, fast_settings):
        settings = dataclasses.replace(fast_settings, metrics_token="s3cret")
        async with client_for(settings) as client:
            assert (await client.get("/metrics")).status == 401
            assert (await client.get("/metrics", headers={"Authorization": "Bearer s3cret"})).status == 200
            assert (await client.get("/metrics", params={"token": "s3cret"})).status == 200
