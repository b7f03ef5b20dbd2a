"""
ChainExecutor: "execute step against chain X", selected once per run.

The orchestrator drives the same four steps in both modes; what a step does
is decided here:

- SimulatedChainExecutor: no chain calls, fixed delays, synthetic tx hashes
  whose prefix names the step. Structurally identical progress events.
- LiveChainExecutor: signs and submits on Base, then watches ZetaChain and
  Polygon for the events that close out the deal.

Thread Safety:
    One executor per run. Submissions from the shared buyer signer serialize
    through NonceCoordinator, so concurrent runs never race a nonce.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from eth_utils import to_checksum_address, to_hex
from web3.exceptions import Web3Exception

from xsettle.config.config import Settings
from xsettle.config.config_validator import MODE_SIMULATE, MODE_TESTNET
from xsettle.core.errors import ObservationTimeout, SettlementError, StreamAbort, SubmissionError
from xsettle.core.json_utils import dumps
from xsettle.core.utils import abortable_sleep, is_aborted, run_until_aborted
from xsettle.deal.codec import Deal, format_units, format_usdc
from xsettle.execution.contracts import (
    ERC20_ABI,
    ERC721_ABI,
    GATEWAY_ABI,
    ZERO_ADDRESS,
    deal_processed_filter,
    nft_released_filter,
)
from xsettle.execution.event_watcher import EventWatcher, PollingEventWatcher, Web3LogSource
from xsettle.infra.nonce import NonceCoordinator
from xsettle.infra.web3_clients import ChainClients

log = logging.getLogger("xsettle")

# (role, content) narration sink; roles are buyer | seller | system
Narrate = Callable[[str, str], Awaitable[None]]

NOT_OBSERVED_DETAIL = "not yet observed, may still be processing"

SIMULATED_TX_PREFIXES = {
    "approve": "a11ce",
    "deposit": "depo5",
    "orchestrate": "ze7a0",
    "deliver": "p0lyg",
}


@dataclass
class StepOutcome:
    """Result of one chain step."""
    tx_hash: Optional[str]
    detail: str
    observed: bool = True


def fake_tx_hash(prefix: str) -> str:
    rand = secrets.token_hex(32)
    return "0x" + prefix + rand[len(prefix):]


class ChainExecutor(ABC):
    """Per-run strategy for the approve/deposit/orchestrate/deliver steps."""

    mode: str = ""

    def running_detail(self, step_id: str, deal: Deal) -> str:
        if step_id == "approve":
            return f"Approving {format_usdc(deal.price)}"
        if step_id == "deposit":
            return "Submitting depositAndCall to the Base gateway"
        if step_id == "orchestrate":
            return "Waiting for ZetaChain to process the deal"
        return "Waiting for the Polygon escrow release"

    async def preflight(self, deal: Deal) -> None:
        """Checks and narration before the first transaction."""

    @abstractmethod
    async def approve(self, deal: Deal) -> StepOutcome:
        ...

    @abstractmethod
    async def deposit(self, deal: Deal, payload: bytes) -> StepOutcome:
        ...

    @abstractmethod
    async def observe_processed(self, deal: Deal) -> StepOutcome:
        ...

    @abstractmethod
    async def observe_delivery(self, deal: Deal) -> StepOutcome:
        ...

    async def finalize(self, deal: Deal) -> None:
        """Narration after the last step."""

    async def close(self) -> None:
        """Release per-run resources."""


class SimulatedChainExecutor(ChainExecutor):
    mode = MODE_SIMULATE

    def __init__(
        self,
        narrate: Narrate,
        abort_event: Optional[asyncio.Event] = None,
        approve_delay_ms: int = 900,
        step_delay_ms: int = 1100,
    ) -> None:
        self._narrate = narrate
        self._abort = abort_event
        self._approve_delay_ms = approve_delay_ms
        self._step_delay_ms = step_delay_ms

    def running_detail(self, step_id: str, deal: Deal) -> str:
        return f"{super().running_detail(step_id, deal)} (simulated)"

    async def _pause(self, delay_ms: int) -> None:
        if await abortable_sleep(delay_ms / 1000.0, self._abort):
            raise StreamAbort()

    async def preflight(self, deal: Deal) -> None:
        await self._narrate("system", "Simulate mode: no chain calls are made.")

    async def approve(self, deal: Deal) -> StepOutcome:
        await self._pause(self._approve_delay_ms)
        return StepOutcome(fake_tx_hash(SIMULATED_TX_PREFIXES["approve"]), "USDC allowance granted")

    async def deposit(self, deal: Deal, payload: bytes) -> StepOutcome:
        await self._pause(self._step_delay_ms)
        return StepOutcome(fake_tx_hash(SIMULATED_TX_PREFIXES["deposit"]), "payment submitted")

    async def observe_processed(self, deal: Deal) -> StepOutcome:
        await self._pause(self._step_delay_ms)
        return StepOutcome(fake_tx_hash(SIMULATED_TX_PREFIXES["orchestrate"]), "seller paid on Base")

    async def observe_delivery(self, deal: Deal) -> StepOutcome:
        await self._pause(self._step_delay_ms)
        return StepOutcome(fake_tx_hash(SIMULATED_TX_PREFIXES["deliver"]), "NFT delivered on Polygon")


class LiveChainExecutor(ChainExecutor):
    """
    Testnet executor.

    Base: USDC.approve(gateway, price), then Gateway.depositAndCall(market,
    price, usdc, payload, revertOptions). ZetaChain: DealProcessed(dealId).
    Polygon: NFTReleased(nft, tokenId, buyer), falling back to ownerOf.
    """

    mode = MODE_TESTNET

    def __init__(
        self,
        settings: Settings,
        clients: ChainClients,
        nonce: NonceCoordinator,
        narrate: Narrate,
        abort_event: Optional[asyncio.Event] = None,
        watcher: Optional[EventWatcher] = None,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._nonce = nonce
        self._narrate = narrate
        self._abort = abort_event
        self._watcher = watcher or PollingEventWatcher()

        self._account = settings.resolve_signer("buyer")
        self._gateway_address = to_checksum_address(settings.base_gateway_address)
        self._usdc_address = to_checksum_address(settings.base_usdc_address)
        self._market_address = to_checksum_address(settings.zeta_universal_market)
        self._usdc = clients.base.eth.contract(address=self._usdc_address, abi=ERC20_ABI)
        self._gateway = clients.base.eth.contract(address=self._gateway_address, abi=GATEWAY_ABI)
        self._zeta_logs = Web3LogSource(clients.zeta)
        self._polygon_logs = Web3LogSource(clients.polygon)

        self._decimals = 6
        self._symbol = "USDC"
        self._zeta_start = 0
        self._polygon_start = 0

    def _fmt(self, amount: int) -> str:
        return f"{format_units(amount, self._decimals)} {self._symbol}"

    async def _owner_of(self, deal: Deal) -> Optional[str]:
        nft = self._clients.polygon.eth.contract(address=deal.nft, abi=ERC721_ABI)
        try:
            return str(await nft.functions.ownerOf(deal.token_id).call())
        except (Web3Exception, ValueError):
            return None

    async def _balances(self, deal: Deal) -> tuple:
        buyer = await self._usdc.functions.balanceOf(self._account.address).call()
        seller = await self._usdc.functions.balanceOf(deal.seller_base).call()
        return buyer, seller

    async def preflight(self, deal: Deal) -> None:
        try:
            self._zeta_start = await self._clients.zeta.eth.block_number
            self._polygon_start = await self._clients.polygon.eth.block_number
        except (Web3Exception, ValueError) as exc:
            raise SettlementError("preflight", f"cannot read block height: {exc}") from exc

        if self._account.address.lower() != deal.buyer.lower():
            await self._narrate(
                "system",
                f"Deal buyer {deal.buyer} differs from the configured signer {self._account.address}; "
                "transactions are signed by the configured signer.",
            )

        try:
            self._decimals = int(await self._usdc.functions.decimals().call())
            self._symbol = str(await self._usdc.functions.symbol().call())
        except (Web3Exception, ValueError):
            pass  # keep USDC defaults

        await self._narrate("buyer", "Pre-flight: checking balances and NFT ownership...")
        try:
            buyer_balance, seller_balance = await self._balances(deal)
        except (Web3Exception, ValueError) as exc:
            raise SettlementError("preflight", f"cannot read balances: {exc}") from exc
        await self._narrate(
            "system",
            f"Balances ({self._symbol}): buyer {format_units(buyer_balance, self._decimals)} | "
            f"seller {format_units(seller_balance, self._decimals)}",
        )
        owner = await self._owner_of(deal)
        if owner:
            await self._narrate("system", f"NFT owner (before): {owner}")

    def running_detail(self, step_id: str, deal: Deal) -> str:
        if step_id == "approve":
            return f"Approving {self._fmt(deal.price)}"
        return super().running_detail(step_id, deal)

    async def _submit(self, step: str, fn: Any) -> str:
        """Sign and send one transaction, then wait for its receipt."""
        w3 = self._clients.base
        address = self._account.address
        try:
            async with self._nonce.submission(address):
                nonce = await w3.eth.get_transaction_count(address, "pending")
                tx = await fn.build_transaction({"from": address, "nonce": nonce})
                signed = self._account.sign_transaction(tx)
                tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            tx_hex = to_hex(tx_hash)
            log.info(dumps({"event": "tx_submitted", "step": step, "tx_hash": tx_hex, "nonce": nonce}))
            receipt = await run_until_aborted(
                w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._settings.receipt_timeout_sec),
                self._abort,
            )
        except (Web3Exception, ValueError) as exc:
            raise SubmissionError(step, str(exc)) from exc

        if receipt["status"] != 1:
            raise SubmissionError(step, f"transaction {tx_hex} reverted")
        return tx_hex

    async def approve(self, deal: Deal) -> StepOutcome:
        await self._narrate("buyer", f"Approving the Base gateway to spend {self._fmt(deal.price)}...")
        tx_hash = await self._submit(
            "approve", self._usdc.functions.approve(self._gateway_address, deal.price)
        )
        return StepOutcome(tx_hash, "allowance granted")

    async def deposit(self, deal: Deal, payload: bytes) -> StepOutcome:
        await self._narrate("buyer", "Calling depositAndCall to start cross-chain settlement...")
        revert_options = (self._account.address, False, ZERO_ADDRESS, b"", 0)
        fn = self._gateway.functions.depositAndCall(
            self._market_address, deal.price, self._usdc_address, payload, revert_options
        )
        tx_hash = await self._submit("deposit", fn)
        return StepOutcome(tx_hash, "transaction confirmed")

    async def _watch(self, event: str, source, event_filter, from_block: int, timeout_ms: int) -> str:
        tx_hash = await self._watcher.poll_for_event(
            source,
            event_filter,
            from_block,
            timeout_ms,
            self._settings.poll_interval_ms,
            self._abort,
        )
        if is_aborted(self._abort):
            raise StreamAbort()
        if not tx_hash:
            raise ObservationTimeout(event, timeout_ms)
        return tx_hash

    async def observe_processed(self, deal: Deal) -> StepOutcome:
        await self._narrate("system", "Waiting for ZetaChain to process the message (DealProcessed)...")
        try:
            tx_hash = await self._watch(
                "DealProcessed",
                self._zeta_logs,
                deal_processed_filter(self._market_address, deal.deal_id),
                self._zeta_start,
                self._settings.processed_timeout_ms,
            )
        except ObservationTimeout as exc:
            log.info(dumps({"event": "observation_timeout", "deal_id": deal.deal_id, "error": str(exc)}))
            return StepOutcome(None, NOT_OBSERVED_DETAIL, observed=False)
        return StepOutcome(tx_hash, "DealProcessed observed")

    async def observe_delivery(self, deal: Deal) -> StepOutcome:
        await self._narrate("system", "Waiting for the Polygon escrow to emit NFTReleased...")
        try:
            tx_hash = await self._watch(
                "NFTReleased",
                self._polygon_logs,
                nft_released_filter(deal.polygon_escrow, deal.nft, deal.token_id, deal.buyer),
                self._polygon_start,
                self._settings.delivery_timeout_ms,
            )
        except ObservationTimeout as exc:
            log.info(dumps({"event": "observation_timeout", "deal_id": deal.deal_id, "error": str(exc)}))
            owner = await self._owner_of(deal)
            if owner:
                return StepOutcome(None, f"current owner: {owner}", observed=False)
            return StepOutcome(None, NOT_OBSERVED_DETAIL, observed=False)
        return StepOutcome(tx_hash, "NFTReleased observed")

    async def finalize(self, deal: Deal) -> None:
        try:
            buyer_balance, seller_balance = await self._balances(deal)
        except (Web3Exception, ValueError) as exc:
            log.warning(dumps({"event": "final_balance_error", "deal_id": deal.deal_id, "error": str(exc)}))
            return
        await self._narrate(
            "system",
            f"Final balances ({self._symbol}): buyer {format_units(buyer_balance, self._decimals)} | "
            f"seller {format_units(seller_balance, self._decimals)}",
        )


class ExecutorFactory:
    """
    Picks the executor for a run's mode.

    Chain connections are created on the first live run and shared by every
    run after it.
    """

    def __init__(
        self,
        settings: Settings,
        clients: Optional[ChainClients] = None,
        nonce: Optional[NonceCoordinator] = None,
        watcher: Optional[EventWatcher] = None,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._nonce = nonce or NonceCoordinator()
        self._watcher = watcher

    @property
    def clients(self) -> Optional[ChainClients]:
        return self._clients

    def __call__(
        self,
        mode: str,
        narrate: Narrate,
        abort_event: Optional[asyncio.Event] = None,
    ) -> ChainExecutor:
        if mode == MODE_SIMULATE:
            return SimulatedChainExecutor(
                narrate,
                abort_event,
                approve_delay_ms=self._settings.simulate_approve_delay_ms,
                step_delay_ms=self._settings.simulate_step_delay_ms,
            )
        if mode == MODE_TESTNET:
            if self._clients is None:
                self._clients = ChainClients.from_settings(self._settings)
            return LiveChainExecutor(
                self._settings,
                self._clients,
                self._nonce,
                narrate,
                abort_event,
                watcher=self._watcher,
            )
        raise ValueError(f"unknown settlement mode: {mode}")

    async def close(self) -> None:
        if self._clients is not None:
            await self._clients.close()
