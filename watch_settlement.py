"""Watch a checkout stream on a running xsettle server and confirm it when asked."""
import os
import sys

import httpx
from dotenv import load_dotenv

from xsettle.execution.timeline import TimelineStep
from xsettle.stream.sse import SseParser

load_dotenv()

base_url = os.environ.get("XS_SERVER_URL", "http://127.0.0.1:8787")
mode = sys.argv[1] if len(sys.argv) > 1 else "simulate"
auto_confirm = "--no-confirm" not in sys.argv

client = httpx.Client(base_url=base_url, timeout=httpx.Timeout(10.0, read=None))
parser = SseParser()
session_id = None
steps = {}

with client.stream("GET", "/api/agent/stream", params={"mode": mode, "checkoutMode": "confirm"}) as resp:
    if resp.status_code != 200:
        print(f"HTTP {resp.status_code}: {resp.read().decode()}")
        sys.exit(1)
    for chunk in resp.iter_bytes():
        for msg in parser.feed(chunk):
            data = msg.json() or {}
            if msg.event == "state":
                session_id = data.get("sessionId", session_id)
                if data.get("awaitingConfirm"):
                    print(f"Awaiting confirmation for session {session_id}")
                    if auto_confirm:
                        r = client.post("/api/agent/action", json={"sessionId": session_id, "action": "confirm_settlement"})
                        print(f"  confirm -> {r.json()}")
            elif msg.event == "timeline_step":
                steps[data["id"]] = data.get("status")
                tx = f" tx={data['txHash']}" if data.get("txHash") else ""
                if mode == "testnet":
                    url = TimelineStep(id=data["id"], tx_hash=data.get("txHash")).explorer_url()
                    tx = f" {url}" if url else tx
                print(f"  [{data['id']}] {data.get('status')}: {data.get('detail', '')}{tx}")
            elif msg.event == "message":
                print(f"  {data.get('speaker')}: {data.get('content')}")
            elif msg.event == "error":
                print(f"Error: {data.get('message')}")
            elif msg.event == "done":
                print("Done")

print("\nSteps:")
for step_id, status in steps.items():
    print(f"  {step_id}: {status}")
