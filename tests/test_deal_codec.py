"""
Tests for deal identity and the ABI payload codec.
"""
import dataclasses

import pytest

from xsettle.core.errors import DealIdMismatchError, InvalidFieldError, MalformedPayloadError
from xsettle.deal.codec import (
    DEAL_PAYLOAD_SIZE,
    UINT256_MAX,
    DealFields,
    compute_deal_id,
    create_deal,
    decode_deal_payload,
    encode_deal_payload,
    format_units,
    format_usdc,
    parse_usdc,
)


class TestDealIdentity:
    """Deterministic content-addressed identity."""

    def test_identity_is_deterministic(self, deal_fields):
        assert compute_deal_id(deal_fields) == compute_deal_id(deal_fields)

    def test_identity_format(self, deal_fields):
        deal_id = compute_deal_id(deal_fields)
        assert deal_id.startswith("0x")
        assert len(deal_id) == 66
        assert deal_id == deal_id.lower()

    def test_address_case_does_not_change_identity(self, deal_fields):
        upper = DealFields(
            buyer="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
            seller_base=deal_fields.seller_base,
            polygon_escrow=deal_fields.polygon_escrow,
            nft=deal_fields.nft,
            token_id=deal_fields.token_id,
            price=deal_fields.price,
            deadline=deal_fields.deadline,
        )
        lower = dataclasses.replace(upper, buyer=upper.buyer.lower())
        assert compute_deal_id(upper) == compute_deal_id(lower)

    def test_deadline_plus_one_changes_identity(self, deal_fields):
        bumped = dataclasses.replace(deal_fields, deadline=deal_fields.deadline + 1)
        assert compute_deal_id(bumped) != compute_deal_id(deal_fields)

    def test_each_field_contributes(self, deal_fields):
        base = compute_deal_id(deal_fields)
        variants = [
            dataclasses.replace(deal_fields, buyer=deal_fields.seller_base),
            dataclasses.replace(deal_fields, nft=deal_fields.polygon_escrow),
            dataclasses.replace(deal_fields, token_id=deal_fields.token_id + 1),
            dataclasses.replace(deal_fields, price=deal_fields.price + 1),
        ]
        ids = {compute_deal_id(v) for v in variants}
        assert base not in ids
        assert len(ids) == len(variants)

    def test_created_deal_is_authentic(self, deal):
        assert deal.is_authentic()
        deal.verify()

    def test_tampered_deal_fails_verification(self, deal):
        tampered = dataclasses.replace(deal, price=deal.price + 1)
        assert not tampered.is_authentic()
        with pytest.raises(DealIdMismatchError) as exc_info:
            tampered.verify()
        assert exc_info.value.actual == deal.deal_id
        assert isinstance(exc_info.value, MalformedPayloadError)


class TestFieldValidation:
    """Invalid fields are rejected at construction, before any chain call."""

    def test_rejects_bad_address(self, deal_fields):
        with pytest.raises(InvalidFieldError) as exc_info:
            dataclasses.replace(deal_fields, nft="0x1234")
        assert exc_info.value.field == "nft"

    def test_rejects_negative_price(self, deal_fields):
        with pytest.raises(InvalidFieldError):
            dataclasses.replace(deal_fields, price=-1)

    def test_rejects_negative_string(self, deal_fields):
        with pytest.raises(InvalidFieldError):
            dataclasses.replace(deal_fields, token_id="-5")

    def test_rejects_overflow(self, deal_fields):
        with pytest.raises(InvalidFieldError):
            dataclasses.replace(deal_fields, token_id=UINT256_MAX + 1)

    def test_rejects_bool(self, deal_fields):
        with pytest.raises(InvalidFieldError):
            dataclasses.replace(deal_fields, deadline=True)

    def test_accepts_decimal_strings(self, deal_fields):
        fields = dataclasses.replace(deal_fields, token_id="42")
        assert fields.token_id == 42

    @pytest.mark.parametrize("text", ["\u00b2", "\u0661\u0662", "\uff14\uff12"])
    def test_rejects_non_ascii_digits(self, deal_fields, text):
        with pytest.raises(InvalidFieldError) as exc_info:
            dataclasses.replace(deal_fields, token_id=text)
        assert exc_info.value.field == "token_id"


class TestPayloadCodec:
    """ABI payload round trip and malformed input."""

    def test_payload_size(self, deal):
        assert len(encode_deal_payload(deal)) == DEAL_PAYLOAD_SIZE

    def test_round_trip(self, deal):
        decoded = decode_deal_payload(encode_deal_payload(deal))
        assert decoded == deal
        assert decoded.is_authentic()

    def test_round_trip_max_magnitudes(self, deal_fields):
        big = create_deal(dataclasses.replace(
            deal_fields, token_id=UINT256_MAX, price=UINT256_MAX, deadline=UINT256_MAX,
        ))
        decoded = decode_deal_payload(encode_deal_payload(big))
        assert decoded.token_id == UINT256_MAX
        assert decoded.price == UINT256_MAX
        assert decoded == big

    def test_decode_hex_string(self, deal):
        payload = "0x" + encode_deal_payload(deal).hex()
        assert decode_deal_payload(payload) == deal

    def test_decode_rejects_truncated(self, deal):
        payload = encode_deal_payload(deal)
        with pytest.raises(MalformedPayloadError):
            decode_deal_payload(payload[:-1])

    def test_decode_rejects_extra_bytes(self, deal):
        payload = encode_deal_payload(deal)
        with pytest.raises(MalformedPayloadError):
            decode_deal_payload(payload + b"\x00" * 32)

    def test_decode_rejects_bad_hex(self):
        with pytest.raises(MalformedPayloadError):
            decode_deal_payload("0xzz")

    def test_decode_does_not_verify(self, deal):
        tampered = dataclasses.replace(deal, price=deal.price + 1)
        decoded = decode_deal_payload(encode_deal_payload(tampered))
        assert not decoded.is_authentic()


class TestUsdcAmounts:
    """Human USDC amounts and 6-decimal base units."""

    def test_parse_fractional(self):
        assert parse_usdc("80.5") == 80_500_000

    def test_parse_whole(self):
        assert parse_usdc("10") == 10_000_000

    def test_parse_smallest_unit(self):
        assert parse_usdc("0.000001") == 1

    def test_parse_rejects_too_many_decimals(self):
        with pytest.raises(InvalidFieldError):
            parse_usdc("0.0000001")

    def test_parse_rejects_negative(self):
        with pytest.raises(InvalidFieldError):
            parse_usdc("-1")

    def test_parse_rejects_garbage(self):
        with pytest.raises(InvalidFieldError):
            parse_usdc("eighty")

    def test_format(self):
        assert format_usdc(80_500_000) == "80.5 USDC"
        assert format_units(80_000_000, 6) == "80.0"
        assert format_units(1, 6) == "0.000001"
