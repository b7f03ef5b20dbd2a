"""
Contract ABIs and log filters for the three chains a settlement touches.

- Base: USDC (ERC20) approve, Gateway depositAndCall
- ZetaChain: UniversalMarket events (DealProcessed correlates by dealId)
- Polygon: escrow NFTReleased (correlates by nft, tokenId, buyer), ERC721 ownerOf
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from eth_utils import keccak, to_checksum_address

ERC20_ABI: List[Dict[str, Any]] = [
    {
        "type": "function", "name": "balanceOf", "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function", "name": "approve", "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function", "name": "decimals", "stateMutability": "view",
        "inputs": [], "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function", "name": "symbol", "stateMutability": "view",
        "inputs": [], "outputs": [{"name": "", "type": "string"}],
    },
]

GATEWAY_ABI: List[Dict[str, Any]] = [
    {
        "type": "function", "name": "depositAndCall", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "receiver", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "asset", "type": "address"},
            {"name": "payload", "type": "bytes"},
            {
                "name": "revertOptions", "type": "tuple",
                "components": [
                    {"name": "revertAddress", "type": "address"},
                    {"name": "callOnRevert", "type": "bool"},
                    {"name": "abortAddress", "type": "address"},
                    {"name": "revertMessage", "type": "bytes"},
                    {"name": "onRevertGasLimit", "type": "uint256"},
                ],
            },
        ],
        "outputs": [],
    },
]

ERC721_ABI: List[Dict[str, Any]] = [
    {
        "type": "function", "name": "ownerOf", "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DEAL_PROCESSED_SIGNATURE = "DealProcessed(bytes32)"
NFT_RELEASED_SIGNATURE = "NFTReleased(address,uint256,address,bytes32)"


def event_topic(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


def address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address.lower().removeprefix("0x")


def uint_topic(value: int) -> str:
    return "0x" + f"{value:064x}"


@dataclass(frozen=True)
class EventFilter:
    """Address + topic filter for eth_getLogs; ``None`` topics match anything."""

    name: str
    address: str
    topics: tuple

    def to_params(self, from_block: int, to_block: int) -> Dict[str, Any]:
        return {
            "address": to_checksum_address(self.address),
            "topics": list(self.topics),
            "fromBlock": from_block,
            "toBlock": to_block,
        }


def deal_processed_filter(market: str, deal_id: str) -> EventFilter:
    return EventFilter(
        name="DealProcessed",
        address=market,
        topics=(event_topic(DEAL_PROCESSED_SIGNATURE), deal_id.lower()),
    )


def nft_released_filter(escrow: str, nft: str, token_id: int, buyer: Optional[str]) -> EventFilter:
    return EventFilter(
        name="NFTReleased",
        address=escrow,
        topics=(
            event_topic(NFT_RELEASED_SIGNATURE),
            address_topic(nft),
            uint_topic(token_id),
            address_topic(buyer) if buyer else None,
        ),
    )
