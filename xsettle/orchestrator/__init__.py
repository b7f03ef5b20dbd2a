"""Settlement run state machine and the checkout flow built on it."""

from xsettle.orchestrator.checkout_flow import CheckoutFlow, CheckoutMode, Listing
from xsettle.orchestrator.settlement_orchestrator import (
    RunPhase,
    RunResult,
    SettlementOrchestrator,
    SettlementRun,
)

__all__ = [
    "CheckoutFlow",
    "CheckoutMode",
    "Listing",
    "RunPhase",
    "RunResult",
    "SettlementOrchestrator",
    "SettlementRun",
]
