"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import xsettle without an install.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from xsettle.config.config import Settings  # noqa: E402
from xsettle.deal.codec import DealFields, create_deal  # noqa: E402

BUYER = "0x1111111111111111111111111111111111111111"
SELLER = "0x2222222222222222222222222222222222222222"
ESCROW = "0x3333333333333333333333333333333333333333"
NFT = "0x4444444444444444444444444444444444444444"


@pytest.fixture
def deal_fields():
    return DealFields(
        buyer=BUYER,
        seller_base=SELLER,
        polygon_escrow=ESCROW,
        nft=NFT,
        token_id=7,
        price=80_500_000,
        deadline=1_900_000_000,
    )


@pytest.fixture
def deal(deal_fields):
    return create_deal(deal_fields)


@pytest.fixture
def fast_settings():
    """Settings with near-zero simulate delays and short watcher windows."""
    return Settings(
        simulate_approve_delay_ms=1,
        simulate_step_delay_ms=1,
        processed_timeout_ms=200,
        delivery_timeout_ms=200,
        poll_interval_ms=20,
        heartbeat_sec=5.0,
        log_file=None,
    )


class EventRecorder:
    """Collects (name, data) pairs emitted by an orchestrator or flow."""

    def __init__(self):
        self.events = []

    async def __call__(self, name, data):
        self.events.append((name, data))
        return True

    def names(self):
        return [name for name, _ in self.events]

    def of(self, name):
        return [data for n, data in self.events if n == name]


@pytest.fixture
def recorder():
    return EventRecorder()
