"""Deal identity, payload codec and wire form."""

from xsettle.deal.codec import (
    Deal,
    DealFields,
    compute_deal_id,
    create_deal,
    decode_deal_payload,
    encode_deal_payload,
    format_usdc,
    parse_usdc,
)
from xsettle.deal.wire import deal_from_wire, deal_to_wire

__all__ = [
    "Deal",
    "DealFields",
    "compute_deal_id",
    "create_deal",
    "decode_deal_payload",
    "encode_deal_payload",
    "format_usdc",
    "parse_usdc",
    "deal_from_wire",
    "deal_to_wire",
]
