"""
Timeline - lifecycle of the steps a run reports to the client.

Each step moves idle -> running -> done|error. Repeated emits for the same
status are accepted and the latest detail/txHash wins. Moving a terminal step
back to running (or from done to error) is rejected and logged.

    IDLE ──> RUNNING ──┬──> DONE
      │                │
      └────────────────┴──> ERROR
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from xsettle.core.json_utils import dumps

log = logging.getLogger("xsettle")


class StepStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


# Chain steps a settlement run executes, in order.
CHAIN_STEPS = ("approve", "deposit", "orchestrate", "deliver")
# Off-chain steps of the checkout flow that precede and wrap settlement.
CHECKOUT_STEPS = ("prepare", "confirm", "settle")

STEP_CHAINS: Dict[str, str] = {
    "prepare": "offchain",
    "confirm": "offchain",
    "settle": "offchain",
    "approve": "baseSepolia",
    "deposit": "baseSepolia",
    "orchestrate": "zetaAthens",
    "deliver": "polygonAmoy",
}

EXPLORERS: Dict[str, str] = {
    "baseSepolia": "https://sepolia.basescan.org/tx/",
    "zetaAthens": "https://athens.explorer.zetachain.com/tx/",
    "polygonAmoy": "https://amoy.polygonscan.com/tx/",
}

VALID_TRANSITIONS: Dict[StepStatus, List[StepStatus]] = {
    StepStatus.IDLE: [StepStatus.RUNNING, StepStatus.DONE, StepStatus.ERROR],
    StepStatus.RUNNING: [StepStatus.RUNNING, StepStatus.DONE, StepStatus.ERROR],
    # Terminal: only duplicate emits (last write wins)
    StepStatus.DONE: [StepStatus.DONE],
    StepStatus.ERROR: [StepStatus.ERROR],
}


@dataclass
class TimelineStep:
    id: str
    status: StepStatus = StepStatus.IDLE
    detail: Optional[str] = None
    tx_hash: Optional[str] = None
    updated_ms: int = 0

    @property
    def chain(self) -> str:
        return STEP_CHAINS.get(self.id, "offchain")

    def explorer_url(self) -> Optional[str]:
        base = EXPLORERS.get(self.chain)
        if not base or not self.tx_hash:
            return None
        return base + self.tx_hash

    def to_payload(self) -> Dict[str, Any]:
        """Step event payload: {id, status, detail?, txHash?}."""
        payload: Dict[str, Any] = {"id": self.id, "status": self.status.value}
        if self.detail is not None:
            payload["detail"] = self.detail
        if self.tx_hash is not None:
            payload["txHash"] = self.tx_hash
        return payload


class Timeline:
    """
    Ordered steps of one run with transition validation.

    Not thread-safe; each run owns its timeline.
    """

    def __init__(
        self,
        step_ids: Iterable[str] = CHAIN_STEPS,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._steps: Dict[str, TimelineStep] = {sid: TimelineStep(id=sid) for sid in step_ids}
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    @property
    def steps(self) -> List[TimelineStep]:
        return list(self._steps.values())

    def get(self, step_id: str) -> Optional[TimelineStep]:
        return self._steps.get(step_id)

    def can_transition(self, step_id: str, status: StepStatus) -> bool:
        step = self._steps.get(step_id)
        if step is None:
            return True
        return status in VALID_TRANSITIONS[step.status]

    def update(
        self,
        step_id: str,
        status: StepStatus,
        detail: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> Optional[TimelineStep]:
        """
        Apply a status change. Returns the updated step, or None if the
        change would regress a terminal step.

        Unknown step ids are appended; upstream services may report steps
        this timeline was not created with.
        """
        step = self._steps.get(step_id)
        if step is None:
            step = TimelineStep(id=step_id)
            self._steps[step_id] = step

        if status not in VALID_TRANSITIONS[step.status]:
            self._log_event(
                "step_transition_rejected",
                step=step_id,
                from_status=step.status.value,
                to_status=status.value,
            )
            return None

        step.status = status
        if detail is not None:
            step.detail = detail
        if tx_hash is not None:
            step.tx_hash = tx_hash
        step.updated_ms = int(time.time() * 1000)
        return step

    def current(self) -> Optional[TimelineStep]:
        for step in self._steps.values():
            if step.status is StepStatus.RUNNING:
                return step
        return None

    def progress_percent(self) -> int:
        if not self._steps:
            return 0
        done = sum(1 for s in self._steps.values() if s.status is StepStatus.DONE)
        return round(done * 100 / len(self._steps))

    def is_complete(self) -> bool:
        return all(s.status is StepStatus.DONE for s in self._steps.values())

    def has_error(self) -> bool:
        return any(s.status is StepStatus.ERROR for s in self._steps.values())
