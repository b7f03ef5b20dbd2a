"""
Execution layer: chain step strategies, event watching and step lifecycle.
"""

from xsettle.execution.chain_executor import (
    ChainExecutor,
    ExecutorFactory,
    LiveChainExecutor,
    SimulatedChainExecutor,
    StepOutcome,
)
from xsettle.execution.event_watcher import EventWatcher, PollingEventWatcher, Web3LogSource
from xsettle.execution.timeline import CHAIN_STEPS, StepStatus, Timeline, TimelineStep

__all__ = [
    "ChainExecutor",
    "ExecutorFactory",
    "LiveChainExecutor",
    "SimulatedChainExecutor",
    "StepOutcome",
    "EventWatcher",
    "PollingEventWatcher",
    "Web3LogSource",
    "CHAIN_STEPS",
    "StepStatus",
    "Timeline",
    "TimelineStep",
]
