"""
JSON wire form of a Deal.

Keys follow the camelCase names every other participant uses. Integers travel
as decimal strings so ``tokenId``/``price``/``deadline`` never lose precision
in a JSON number; addresses and ``dealId`` travel as hex strings.
"""

from __future__ import annotations

import base64
from typing import Any, Dict, Mapping

from eth_utils import keccak, to_checksum_address

from xsettle.core.errors import InvalidFieldError, MalformedPayloadError
from xsettle.core.json_utils import dumps, loads
from xsettle.deal.codec import Deal

WIRE_KEYS: Dict[str, str] = {
    "dealId": "deal_id",
    "buyer": "buyer",
    "sellerBase": "seller_base",
    "polygonEscrow": "polygon_escrow",
    "nft": "nft",
    "tokenId": "token_id",
    "price": "price",
    "deadline": "deadline",
}


def deal_to_wire(deal: Deal) -> Dict[str, str]:
    return {
        "dealId": deal.deal_id,
        "buyer": deal.buyer,
        "sellerBase": deal.seller_base,
        "polygonEscrow": deal.polygon_escrow,
        "nft": deal.nft,
        "tokenId": str(deal.token_id),
        "price": str(deal.price),
        "deadline": str(deal.deadline),
    }


def deal_from_wire(raw: Any) -> Deal:
    """Parse a wire object into a Deal; raises before any chain call."""
    if not isinstance(raw, Mapping):
        raise MalformedPayloadError("deal must be a JSON object")
    for key in WIRE_KEYS:
        if key not in raw:
            raise MalformedPayloadError(f"deal is missing field: {key}")

    kwargs: Dict[str, Any] = {}
    for key, attr in WIRE_KEYS.items():
        value = raw[key]
        if isinstance(value, float):
            raise InvalidFieldError(attr, value, "numbers must be sent as decimal strings")
        kwargs[attr] = value
    return Deal(**kwargs)


def deal_to_json(deal: Deal) -> str:
    return dumps(deal_to_wire(deal))


def deal_from_json(text: str | bytes) -> Deal:
    try:
        raw = loads(text)
    except ValueError as exc:
        raise MalformedPayloadError(f"deal is not valid JSON: {exc}") from exc
    return deal_from_wire(raw)


def encode_base64url(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_base64url(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError) as exc:
        raise MalformedPayloadError(f"deal parameter is not valid base64url: {exc}") from exc


def deal_to_query(deal: Deal) -> str:
    """Compact query-string form used by ``GET /api/settle/stream?deal=``."""
    return encode_base64url(deal_to_json(deal))


def deal_from_query(encoded: str) -> Deal:
    return deal_from_json(decode_base64url(encoded))


def pseudo_address(label: str) -> str:
    """Stable placeholder address for a party that has no configured wallet."""
    digest = keccak(text=f"universal-ai-market:{label}")
    return to_checksum_address("0x" + digest[-20:].hex())
