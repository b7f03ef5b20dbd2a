"""
CheckoutFlow: agent-facing wrapper around a settlement run.

Builds a Deal from an already-agreed listing, optionally pauses on the
ConfirmationGate until the buyer confirms, then runs the settlement in-process
and re-publishes its progress on the checkout stream.

    prepare ──> confirm ──(gate)──> settle ──> done
                                       │
                                       └──> error

Event mapping from the settlement run:
    step  -> timeline_step
    log   -> message (stage "settle")
    error -> error (terminal)
    done  -> swallowed; the flow emits its own closing events and done
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from eth_utils import is_address, to_checksum_address

from xsettle.config.config import Settings
from xsettle.config.config_validator import MODE_SIMULATE, MODE_TESTNET, ConfigValidator
from xsettle.core.errors import InvalidFieldError, SettlementEngineError, StreamAbort
from xsettle.core.json_utils import dumps
from xsettle.core.utils import abortable_sleep, short_hex
from xsettle.deal.codec import Deal, DealFields, create_deal, format_usdc, parse_usdc
from xsettle.deal.wire import deal_to_wire, pseudo_address
from xsettle.execution.timeline import CHECKOUT_STEPS, StepStatus, Timeline
from xsettle.monitoring.metrics import SettlementMetrics
from xsettle.orchestrator.settlement_orchestrator import SettlementOrchestrator
from xsettle.session.gate import ConfirmationGate

log = logging.getLogger("xsettle")

EmitFn = Callable[[str, Dict[str, Any]], Awaitable[Any]]

SPEAKERS = {"buyer": "Buyer Agent", "seller": "Seller Agent", "system": "System"}

AUTO_SETTLE_PAUSE_SEC = 0.45


class CheckoutMode(Enum):
    AUTO = "auto"
    CONFIRM = "confirm"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CheckoutMode":
        return cls.AUTO if value == "auto" else cls.CONFIRM


@dataclass(frozen=True)
class Listing:
    """
    An agreed offer to settle. Addresses left as None fall back to the
    configured contracts/signers, then to pseudo addresses.
    """
    store_id: str = "demo-store"
    product_id: str = "demo-weapon"
    name: str = "Demo Weapon NFT"
    price_usdc: str = "80.5"
    token_id: int = 1
    seller: Optional[str] = None
    escrow: Optional[str] = None
    nft: Optional[str] = None
    demo_ready: bool = True

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "Listing":
        defaults = cls()
        token_raw = params.get("tokenId") or str(defaults.token_id)
        if not (token_raw.isascii() and token_raw.isdigit()):
            raise InvalidFieldError("tokenId", token_raw, "must be a non-negative integer")
        price = params.get("price") or defaults.price_usdc
        parse_usdc(price)
        return cls(
            store_id=params.get("storeId") or defaults.store_id,
            product_id=params.get("productId") or defaults.product_id,
            name=params.get("name") or defaults.name,
            price_usdc=price,
            token_id=int(token_raw),
            seller=params.get("seller") or None,
            escrow=params.get("escrow") or None,
            nft=params.get("nft") or None,
        )


def _address_or_pseudo(value: Optional[str], label: str) -> str:
    if value and is_address(value.strip()):
        return to_checksum_address(value.strip())
    return pseudo_address(label)


class CheckoutFlow:
    """
    One instance per process; per-checkout state lives in ``run`` locals.

    Usage:
        flow = CheckoutFlow(settings, gate, orchestrator)
        await flow.run(Listing(), "simulate", CheckoutMode.CONFIRM, emitter.send, abort_event)
    """

    def __init__(
        self,
        settings: Settings,
        gate: ConfirmationGate,
        orchestrator: SettlementOrchestrator,
        validator: Optional[ConfigValidator] = None,
        metrics: Optional[SettlementMetrics] = None,
        log_event: Optional[Callable[..., None]] = None,
        auto_settle_pause_sec: float = AUTO_SETTLE_PAUSE_SEC,
    ) -> None:
        self._settings = settings
        self._gate = gate
        self._orchestrator = orchestrator
        self._validator = validator or ConfigValidator()
        self._metrics = metrics
        self._log_event = log_event or self._default_log
        self._auto_pause = auto_settle_pause_sec

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def prepare_deal(self, listing: Listing) -> Deal:
        """Build the Deal for a listing; the deadline is now + deal TTL."""
        cfg = self._settings
        fields = DealFields(
            buyer=_address_or_pseudo(cfg.resolve_address("buyer"), "buyer"),
            seller_base=_address_or_pseudo(listing.seller or cfg.resolve_address("seller"), "seller"),
            polygon_escrow=_address_or_pseudo(listing.escrow or cfg.polygon_escrow_address, "polygonEscrow"),
            nft=_address_or_pseudo(listing.nft or cfg.polygon_nft_address, "polygonNFT"),
            token_id=listing.token_id,
            price=parse_usdc(listing.price_usdc),
            deadline=int(time.time()) + cfg.deal_ttl_sec,
        )
        return create_deal(fields)

    def can_auto_settle(self, listing: Listing, mode: str, checkout_mode: CheckoutMode) -> bool:
        if checkout_mode is not CheckoutMode.AUTO:
            return False
        if mode == MODE_SIMULATE:
            return True
        return mode == MODE_TESTNET and listing.demo_ready and self._validator.checkout_auto_ready(self._settings)

    async def run(
        self,
        listing: Listing,
        mode: str,
        checkout_mode: CheckoutMode,
        emit: EmitFn,
        abort_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Drive one checkout to a terminal event. Returns True when settlement
        finished with ``done``; False on error or abort.
        """
        abort_event = abort_event or asyncio.Event()
        session_id = uuid.uuid4().hex
        # Registered before the id is published so a fast confirm is never lost.
        self._gate.register(session_id)
        self._log_event(
            "checkout_started",
            session_id=session_id,
            mode=mode,
            checkout_mode=checkout_mode.value,
            store_id=listing.store_id,
            product_id=listing.product_id,
        )

        async def send(event: str, data: Dict[str, Any]) -> None:
            if abort_event.is_set():
                raise StreamAbort()
            await emit(event, data)

        async def state(**values: Any) -> None:
            await send("state", {**values, "sessionId": session_id})

        timeline = Timeline(CHECKOUT_STEPS)

        async def step(step_id: str, status: str, detail: Optional[str] = None) -> None:
            updated = timeline.update(step_id, StepStatus(status), detail=detail)
            if updated is not None:
                await send("timeline_step", updated.to_payload())

        async def message(role: str, stage: str, content: str) -> None:
            await send("message", {
                "id": uuid.uuid4().hex,
                "role": role,
                "stage": stage,
                "speaker": SPEAKERS.get(role, role),
                "content": content,
                "ts": int(time.time() * 1000),
            })

        async def tool_call(stage: str, name: str, args: Dict[str, Any]) -> str:
            call_id = uuid.uuid4().hex
            await send("tool_call", {"id": call_id, "stage": stage, "name": name, "args": args, "ts": int(time.time() * 1000)})
            return call_id

        async def tool_result(call_id: str, result: Dict[str, Any]) -> None:
            await send("tool_result", {"id": call_id, "result": result, "ts": int(time.time() * 1000)})

        try:
            await state(running=True, settling=False, awaitingConfirm=False)
            await state(selectedStoreId=listing.store_id, selectedProductId=listing.product_id)

            # prepare
            await step("prepare", "running")
            prepare_id = await tool_call("prepare", "prepare_deal", {
                "storeId": listing.store_id,
                "productId": listing.product_id,
                "tokenId": str(listing.token_id),
                "priceUSDC": listing.price_usdc,
                "deadlineSecondsFromNow": self._settings.deal_ttl_sec,
            })
            deal = self.prepare_deal(listing)
            await tool_result(prepare_id, {
                "dealId": deal.deal_id,
                "price": format_usdc(deal.price),
                "tokenId": str(deal.token_id),
                "deadline": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(deal.deadline)),
            })
            await state(deal=deal_to_wire(deal))
            await step("prepare", "done", f"dealId {short_hex(deal.deal_id)}")
            await message("system", "prepare", f"Deal {short_hex(deal.deal_id)} prepared for {listing.name}; payload ready.")

            # confirm
            auto = self.can_auto_settle(listing, mode, checkout_mode)
            if auto:
                await message("buyer", "settle", f"Auto checkout enabled: starting {mode} settlement now.")
                await step("confirm", "done", "auto checkout")
            elif checkout_mode is CheckoutMode.AUTO:
                await message("buyer", "prepare", "Auto checkout is unavailable with the current config; confirm to settle.")
                await step("confirm", "running", "auto unavailable, confirmation required")
            else:
                await message("buyer", "prepare", f"Deal ready. Confirm to run {mode} settlement.")
                await step("confirm", "running", "awaiting confirmation")
            await state(running=False)

            if auto:
                if await abortable_sleep(self._auto_pause, abort_event):
                    raise StreamAbort()
            else:
                await state(awaitingConfirm=True)
                if not await self._await_confirmation(session_id, abort_event):
                    raise StreamAbort()
                await step("confirm", "done", "confirmed")

            # settle
            await state(awaitingConfirm=False, settling=True)
            await step("settle", "running")
            settle_id = await tool_call("settle", "settle_deal", {"mode": mode, "dealId": deal.deal_id})

            async def relay(event: str, data: Dict[str, Any]) -> None:
                if event == "step":
                    await send("timeline_step", data)
                elif event == "log":
                    await message(data.get("role", "system"), "settle", data.get("content", ""))
                elif event == "error":
                    await step("settle", "error", data.get("message"))
                    await send("error", data)

            result = await self._orchestrator.run(deal, mode, relay, abort_event)
            if result.aborted:
                raise StreamAbort()
            if not result.ok:
                # Terminal error already forwarded from the run.
                self._log_event("checkout_failed", session_id=session_id, deal_id=deal.deal_id, error=result.error)
                return False

            await tool_result(settle_id, {"ok": True})
            await step("settle", "done", f"{mode} settlement complete")
            await state(settling=False)
            await send("done", {})
            self._log_event("checkout_done", session_id=session_id, deal_id=deal.deal_id, mode=mode)
            return True
        except StreamAbort:
            self._log_event("checkout_aborted", session_id=session_id)
            return False
        except SettlementEngineError as exc:
            return await self._fail(send, session_id, str(exc))
        except Exception as exc:
            log.exception(dumps({"event": "checkout_unexpected_error", "session_id": session_id, "error": str(exc)}))
            return await self._fail(send, session_id, str(exc) or type(exc).__name__)
        finally:
            self._gate.cleanup(session_id)

    async def _await_confirmation(self, session_id: str, abort_event: asyncio.Event) -> bool:
        if self._metrics:
            self._metrics.awaiting_confirm.inc()
        try:
            confirmed = await self._gate.wait(session_id, abort_event)
        finally:
            if self._metrics:
                self._metrics.awaiting_confirm.dec()
        if self._metrics:
            self._metrics.confirmations.labels(result="confirmed" if confirmed else "aborted").inc()
        return confirmed

    async def _fail(self, send: EmitFn, session_id: str, message: str) -> bool:
        self._log_event("checkout_failed", session_id=session_id, error=message)
        try:
            await send("error", {"message": message})
        except StreamAbort:
            pass  # client already gone
        return False
