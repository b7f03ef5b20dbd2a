"""
SettlementOrchestrator: per-deal settlement state machine.

    validate ──> approve ──> deposit ──> orchestrate ──> deliver ──> done
        │           │           │             │              │
        └───────────┴───────────┴─────────────┴──────────────┴──> error

Architecture:
    The orchestrator owns control flow and the event contract; what each
    chain step does is delegated to a ChainExecutor chosen once per run
    (simulate or testnet). Every outbound event goes through one emit
    callback, so the same orchestrator feeds the settle stream, the checkout
    flow and tests.

Event contract:
    - ``step`` events move each chain step idle -> running -> done|error
    - ``log`` events carry narration ({role, content})
    - exactly one ``done`` or ``error`` ends the run and is always last
    - after the abort signal fires nothing more is emitted, not even error

Error policy:
    Fatal errors (configuration, invalid/malformed deal, rejected submission)
    end the run with one ``error`` event. Watch timeouts at orchestrate and
    deliver are not errors: the step completes with an inconclusive detail.
    There are no retries inside a run.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from xsettle.config.config import Settings
from xsettle.config.config_validator import ConfigValidator
from xsettle.core.errors import ConfigurationError, SettlementEngineError, StreamAbort
from xsettle.core.json_utils import dumps
from xsettle.deal.codec import Deal, encode_deal_payload
from xsettle.execution.chain_executor import ChainExecutor, Narrate, StepOutcome
from xsettle.execution.timeline import CHAIN_STEPS, StepStatus, Timeline
from xsettle.monitoring.metrics import SettlementMetrics

log = logging.getLogger("xsettle")

EmitFn = Callable[[str, Dict[str, Any]], Awaitable[Any]]
ExecutorFactoryFn = Callable[[str, Narrate, Optional[asyncio.Event]], ChainExecutor]


class RunPhase(Enum):
    VALIDATE = "validate"
    APPROVE = "approve"
    DEPOSIT = "deposit"
    ORCHESTRATE = "orchestrate"
    DELIVER = "deliver"
    DONE = "done"
    ERROR = "error"


PHASE_ORDER: List[RunPhase] = [
    RunPhase.VALIDATE,
    RunPhase.APPROVE,
    RunPhase.DEPOSIT,
    RunPhase.ORCHESTRATE,
    RunPhase.DELIVER,
    RunPhase.DONE,
]


@dataclass
class SettlementRun:
    """Ephemeral execution context of one deal. Never persisted."""
    deal: Deal
    mode: str
    emit: EmitFn
    abort_event: asyncio.Event
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    phase: Optional[RunPhase] = None
    timeline: Timeline = field(default_factory=lambda: Timeline(CHAIN_STEPS))
    terminal_sent: bool = False


@dataclass
class RunResult:
    """How a run ended."""
    run_id: str
    ok: bool
    phase: Optional[RunPhase]
    aborted: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0
    steps: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if self.ok:
            return "done"
        return "aborted" if self.aborted else "error"


@dataclass
class OrchestratorConfig:
    """Event names used on the outbound stream."""
    step_event: str = "step"
    log_event: str = "log"


class SettlementOrchestrator:
    """
    Drives settlement runs. One instance serves many concurrent runs; all
    per-run state lives in SettlementRun.

    Usage:
        orchestrator = SettlementOrchestrator(settings, ExecutorFactory(settings))
        result = await orchestrator.run(deal, "simulate", emitter.send, abort_event)
    """

    def __init__(
        self,
        settings: Settings,
        executor_factory: ExecutorFactoryFn,
        validator: Optional[ConfigValidator] = None,
        metrics: Optional[SettlementMetrics] = None,
        config: Optional[OrchestratorConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._settings = settings
        self._executor_factory = executor_factory
        self._validator = validator or ConfigValidator()
        self._metrics = metrics
        self._config = config or OrchestratorConfig()
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(
        self,
        deal: Deal,
        mode: str,
        emit: EmitFn,
        abort_event: Optional[asyncio.Event] = None,
    ) -> RunResult:
        """Execute one settlement run to a terminal state. Never raises for run failures."""
        run = SettlementRun(deal=deal, mode=mode, emit=emit, abort_event=abort_event or asyncio.Event())
        self._log_event("run_started", run_id=run.run_id, deal_id=deal.deal_id, mode=mode)
        if self._metrics:
            self._metrics.runs_started.labels(mode=mode).inc()
            self._metrics.runs_active.labels(mode=mode).inc()

        executor: Optional[ChainExecutor] = None
        try:
            payload = self._validate(run)
            executor = self._executor_factory(mode, self._narrator(run), run.abort_event)
            await executor.preflight(deal)
            await self._step(run, executor, RunPhase.APPROVE, lambda: executor.approve(deal))
            await self._step(run, executor, RunPhase.DEPOSIT, lambda: executor.deposit(deal, payload))
            await self._step(run, executor, RunPhase.ORCHESTRATE, lambda: executor.observe_processed(deal))
            await self._step(run, executor, RunPhase.DELIVER, lambda: executor.observe_delivery(deal))
            await executor.finalize(deal)
            self._advance(run, RunPhase.DONE)
            await self._terminal(run, "done", {"ok": True})
            return self._finish(run, ok=True)
        except StreamAbort:
            return self._finish(run, aborted=True)
        except SettlementEngineError as exc:
            return await self._fail(run, exc)
        except Exception as exc:
            self._log_event(
                "run_unexpected_error",
                run_id=run.run_id,
                error=str(exc),
                traceback=traceback.format_exc(),
            )
            return await self._fail(run, exc)
        finally:
            if executor is not None:
                await executor.close()
            if self._metrics:
                self._metrics.runs_active.labels(mode=mode).dec()

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _validate(self, run: SettlementRun) -> bytes:
        """Check config for the mode and the deal's identity before any chain call."""
        self._advance(run, RunPhase.VALIDATE)
        missing = self._validator.missing_for_mode(self._settings, run.mode)
        if missing:
            raise ConfigurationError(missing)
        run.deal.verify()
        return encode_deal_payload(run.deal)

    async def _step(
        self,
        run: SettlementRun,
        executor: ChainExecutor,
        phase: RunPhase,
        action: Callable[[], Awaitable[StepOutcome]],
    ) -> None:
        step_id = phase.value
        self._advance(run, phase)
        await self._emit_step(run, step_id, StepStatus.RUNNING, executor.running_detail(step_id, run.deal))

        started = time.monotonic()
        outcome = await action()
        if run.abort_event.is_set():
            raise StreamAbort()

        if not outcome.observed and self._metrics:
            self._metrics.watch_timeouts.labels(step=step_id).inc()
        await self._emit_step(run, step_id, StepStatus.DONE, outcome.detail, outcome.tx_hash)
        if self._metrics:
            self._metrics.step_duration_sec.labels(mode=run.mode, step=step_id).observe(time.monotonic() - started)

    def _advance(self, run: SettlementRun, phase: RunPhase) -> None:
        if phase is not RunPhase.ERROR:
            expected = PHASE_ORDER[0] if run.phase is None else PHASE_ORDER[PHASE_ORDER.index(run.phase) + 1]
            if phase is not expected:
                raise RuntimeError(f"illegal phase transition {run.phase} -> {phase}")
        run.phase = phase
        self._log_event("run_phase", run_id=run.run_id, deal_id=run.deal.deal_id, phase=phase.value)

    async def _fail(self, run: SettlementRun, exc: BaseException) -> RunResult:
        message = str(exc) or type(exc).__name__
        if run.abort_event.is_set():
            return self._finish(run, aborted=True, error=message)

        failed_step = run.timeline.current()
        run.phase = RunPhase.ERROR
        if self._metrics and failed_step is not None:
            self._metrics.step_failures.labels(mode=run.mode, step=failed_step.id).inc()

        data: Dict[str, Any] = {"message": message}
        if isinstance(exc, ConfigurationError):
            data["missing"] = exc.missing
        try:
            if failed_step is not None:
                await self._emit_step(run, failed_step.id, StepStatus.ERROR, getattr(exc, "reason", message))
            await self._terminal(run, "error", data)
        except StreamAbort:
            return self._finish(run, aborted=True, error=message)
        return self._finish(run, error=message)

    def _finish(
        self,
        run: SettlementRun,
        ok: bool = False,
        aborted: bool = False,
        error: Optional[str] = None,
    ) -> RunResult:
        duration_ms = (time.time() - run.started_at) * 1000
        result = RunResult(
            run_id=run.run_id,
            ok=ok,
            phase=run.phase,
            aborted=aborted,
            error=error,
            duration_ms=duration_ms,
            steps=[s.to_payload() for s in run.timeline.steps],
        )
        self._log_event(
            "run_finished",
            run_id=run.run_id,
            deal_id=run.deal.deal_id,
            mode=run.mode,
            outcome=result.outcome,
            phase=run.phase.value if run.phase else None,
            error=error,
            duration_ms=round(duration_ms, 1),
        )
        if self._metrics:
            self._metrics.runs_finished.labels(mode=run.mode, outcome=result.outcome).inc()
            self._metrics.run_duration_sec.labels(mode=run.mode, outcome=result.outcome).observe(duration_ms / 1000)
        return result

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    async def _send(self, run: SettlementRun, event: str, data: Dict[str, Any]) -> None:
        if run.abort_event.is_set():
            raise StreamAbort()
        if run.terminal_sent:
            self._log_event("event_after_terminal_dropped", run_id=run.run_id, name=event)
            return
        await run.emit(event, data)

    async def _terminal(self, run: SettlementRun, event: str, data: Dict[str, Any]) -> None:
        await self._send(run, event, data)
        run.terminal_sent = True

    async def _emit_step(
        self,
        run: SettlementRun,
        step_id: str,
        status: StepStatus,
        detail: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> None:
        step = run.timeline.update(step_id, status, detail=detail, tx_hash=tx_hash)
        if step is None:
            return
        self._log_event(
            "step",
            run_id=run.run_id,
            deal_id=run.deal.deal_id,
            id=step_id,
            status=status.value,
            tx_hash=tx_hash,
        )
        await self._send(run, self._config.step_event, step.to_payload())

    def _narrator(self, run: SettlementRun) -> Narrate:
        async def narrate(role: str, content: str) -> None:
            await self._send(run, self._config.log_event, {"role": role, "content": content})

        return narrate
