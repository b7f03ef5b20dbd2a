"""
Deal identity and payload codec.

Every participant (storefront preview, server-side preparer, the receiving
contract) derives the same dealId from the same seven fields:

    dealId = keccak256(abi.encode(buyer, sellerBase, polygonEscrow, nft,
                                  tokenId, price, deadline))

The cross-chain payload is the ABI encoding of the full 8-field tuple, the
same layout the receiving contract decodes. All fields are static ABI types,
so a valid payload is exactly eight 32-byte words.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import is_address, keccak, to_checksum_address

from xsettle.core.errors import DealIdMismatchError, InvalidFieldError, MalformedPayloadError

UINT256_MAX = 2**256 - 1
USDC_DECIMALS = 6

DEAL_ID_TYPES = ["address", "address", "address", "address", "uint256", "uint256", "uint256"]
DEAL_PAYLOAD_TYPES = ["(bytes32,address,address,address,address,uint256,uint256,uint256)"]
DEAL_PAYLOAD_SIZE = 8 * 32

ADDRESS_FIELDS = ("buyer", "seller_base", "polygon_escrow", "nft")
UINT_FIELDS = ("token_id", "price", "deadline")


def _normalize_address(field: str, value: Any) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise InvalidFieldError(field, value, "expected a 20-byte hex address")
    return to_checksum_address(value)


def _is_ascii_digits(text: str) -> bool:
    return text.isascii() and text.isdigit()


def _normalize_uint(field: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidFieldError(field, value, "expected an unsigned integer")
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("-") and _is_ascii_digits(text[1:]):
            raise InvalidFieldError(field, value, "must not be negative")
        if not _is_ascii_digits(text):
            raise InvalidFieldError(field, value, "expected a decimal integer string")
        value = int(text)
    if not isinstance(value, int):
        raise InvalidFieldError(field, value, "expected an unsigned integer")
    if value < 0:
        raise InvalidFieldError(field, value, "must not be negative")
    if value > UINT256_MAX:
        raise InvalidFieldError(field, value, "exceeds uint256")
    return value


def _normalize_deal_id(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise InvalidFieldError("deal_id", value, "expected 32 bytes")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise InvalidFieldError("deal_id", value, "expected a 32-byte hex string")
    body = value[2:] if value[:2].lower() == "0x" else value
    if len(body) != 64:
        raise InvalidFieldError("deal_id", value, "expected a 32-byte hex string")
    try:
        bytes.fromhex(body)
    except ValueError:
        raise InvalidFieldError("deal_id", value, "expected a 32-byte hex string") from None
    return "0x" + body.lower()


@dataclass(frozen=True)
class DealFields:
    """The seven agreed terms of a deal, before identity is attached."""

    buyer: str
    seller_base: str
    polygon_escrow: str
    nft: str
    token_id: int
    price: int
    deadline: int

    def __post_init__(self) -> None:
        for name in ADDRESS_FIELDS:
            object.__setattr__(self, name, _normalize_address(name, getattr(self, name)))
        for name in UINT_FIELDS:
            object.__setattr__(self, name, _normalize_uint(name, getattr(self, name)))

    def as_tuple(self) -> Tuple[str, str, str, str, int, int, int]:
        return (
            self.buyer,
            self.seller_base,
            self.polygon_escrow,
            self.nft,
            self.token_id,
            self.price,
            self.deadline,
        )


@dataclass(frozen=True)
class Deal:
    """
    Immutable, content-addressed deal.

    ``price`` is USDC with 6 implied decimals (80500000 == 80.50 USDC).
    ``deadline`` is unix seconds.
    """

    deal_id: str
    buyer: str
    seller_base: str
    polygon_escrow: str
    nft: str
    token_id: int
    price: int
    deadline: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "deal_id", _normalize_deal_id(self.deal_id))
        for name in ADDRESS_FIELDS:
            object.__setattr__(self, name, _normalize_address(name, getattr(self, name)))
        for name in UINT_FIELDS:
            object.__setattr__(self, name, _normalize_uint(name, getattr(self, name)))

    @property
    def fields(self) -> DealFields:
        return DealFields(
            buyer=self.buyer,
            seller_base=self.seller_base,
            polygon_escrow=self.polygon_escrow,
            nft=self.nft,
            token_id=self.token_id,
            price=self.price,
            deadline=self.deadline,
        )

    def is_authentic(self) -> bool:
        return compute_deal_id(self.fields) == self.deal_id

    def verify(self) -> None:
        """Raise DealIdMismatchError if the fields were altered after hashing."""
        expected = compute_deal_id(self.fields)
        if expected != self.deal_id:
            raise DealIdMismatchError(expected=expected, actual=self.deal_id)


def compute_deal_id(fields: DealFields) -> str:
    """Deterministic keccak256 identity of the seven deal fields (0x-hex)."""
    encoded = encode(DEAL_ID_TYPES, list(fields.as_tuple()))
    return "0x" + keccak(encoded).hex()


def create_deal(fields: DealFields) -> Deal:
    return Deal(deal_id=compute_deal_id(fields), **_fields_kwargs(fields))


def _fields_kwargs(fields: DealFields) -> dict:
    return {
        "buyer": fields.buyer,
        "seller_base": fields.seller_base,
        "polygon_escrow": fields.polygon_escrow,
        "nft": fields.nft,
        "token_id": fields.token_id,
        "price": fields.price,
        "deadline": fields.deadline,
    }


def encode_deal_payload(deal: Deal) -> bytes:
    """ABI-encode the full deal tuple for the cross-chain call."""
    return encode(
        DEAL_PAYLOAD_TYPES,
        [(bytes.fromhex(deal.deal_id[2:]), *deal.fields.as_tuple())],
    )


def decode_deal_payload(payload: bytes | str) -> Deal:
    """
    Decode an ABI-encoded deal tuple.

    Accepts raw bytes or a 0x-prefixed hex string. Identity is not checked
    here; call ``Deal.verify()`` where tampering matters.
    """
    if isinstance(payload, str):
        body = payload[2:] if payload[:2].lower() == "0x" else payload
        try:
            payload = bytes.fromhex(body)
        except ValueError:
            raise MalformedPayloadError("payload is not valid hex") from None
    if not isinstance(payload, (bytes, bytearray)):
        raise MalformedPayloadError(f"payload must be bytes, got {type(payload).__name__}")
    if len(payload) != DEAL_PAYLOAD_SIZE:
        raise MalformedPayloadError(
            f"payload length {len(payload)} does not match deal tuple size {DEAL_PAYLOAD_SIZE}"
        )
    try:
        (raw,) = decode(DEAL_PAYLOAD_TYPES, bytes(payload))
    except DecodingError as exc:
        raise MalformedPayloadError(f"payload does not decode as a deal tuple: {exc}") from exc

    deal_id, buyer, seller_base, polygon_escrow, nft, token_id, price, deadline = raw
    return Deal(
        deal_id=deal_id,
        buyer=buyer,
        seller_base=seller_base,
        polygon_escrow=polygon_escrow,
        nft=nft,
        token_id=token_id,
        price=price,
        deadline=deadline,
    )


def parse_usdc(amount: str | int | Decimal) -> int:
    """Parse a human USDC amount ("80.5") into 6-decimal base units."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise InvalidFieldError("price", amount, "not a decimal amount") from None
    if not value.is_finite():
        raise InvalidFieldError("price", amount, "not a decimal amount")
    if value < 0:
        raise InvalidFieldError("price", amount, "must not be negative")
    scaled = value.scaleb(USDC_DECIMALS)
    if scaled != scaled.to_integral_value():
        raise InvalidFieldError("price", amount, f"more than {USDC_DECIMALS} decimal places")
    return _normalize_uint("price", int(scaled))


def format_units(amount: int, decimals: int) -> str:
    """Render base units as a decimal string, always with a fractional part."""
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10**decimals)
    frac_text = f"{frac:0{decimals}d}".rstrip("0") if decimals > 0 else ""
    return f"{sign}{whole}.{frac_text or '0'}"


def format_usdc(amount: int) -> str:
    return f"{format_units(amount, USDC_DECIMALS)} USDC"
