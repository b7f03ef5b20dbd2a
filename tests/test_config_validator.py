"""
Tests for Settings loading and ConfigValidator.
"""
import pytest

from xsettle.config.config import Settings
from xsettle.config.config_validator import (
    MODE_SIMULATE,
    MODE_TESTNET,
    ConfigValidator,
    ValidationIssue,
    ValidationSeverity,
)

TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_PRIVATE_KEY_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
GATEWAY = "0x6666666666666666666666666666666666666666"
USDC = "0x7777777777777777777777777777777777777777"
MARKET = "0x8888888888888888888888888888888888888888"


def live_settings(**overrides):
    base = dict(
        base_gateway_address=GATEWAY,
        base_usdc_address=USDC,
        zeta_universal_market=MARKET,
        buyer_private_key=TEST_PRIVATE_KEY,
    )
    base.update(overrides)
    return Settings(**base)


class TestMissingForMode:
    """Per-mode required keys, reported by environment name."""

    def test_simulate_needs_nothing(self):
        assert ConfigValidator().missing_for_mode(Settings(), MODE_SIMULATE) == []

    def test_testnet_lists_every_missing_key(self):
        missing = ConfigValidator().missing_for_mode(Settings(), MODE_TESTNET)
        assert missing == [
            "BASE_GATEWAY_ADDRESS",
            "BASE_USDC_ADDRESS",
            "ZETA_UNIVERSAL_MARKET",
            "BUYER_PRIVATE_KEY",
        ]

    def test_testnet_complete(self):
        assert ConfigValidator().missing_for_mode(live_settings(), MODE_TESTNET) == []

    def test_invalid_address_reported(self):
        missing = ConfigValidator().missing_for_mode(live_settings(base_usdc_address="0x12"), MODE_TESTNET)
        assert missing == ["BASE_USDC_ADDRESS (invalid address)"]

    def test_invalid_key_reported(self):
        missing = ConfigValidator().missing_for_mode(live_settings(buyer_private_key="0xnot-a-key"), MODE_TESTNET)
        assert missing == ["BUYER_PRIVATE_KEY (invalid key)"]

    def test_unknown_mode(self):
        missing = ConfigValidator().missing_for_mode(Settings(), "mainnet")
        assert len(missing) == 1
        assert "mainnet" in missing[0]


class TestCheckoutAutoReady:
    """Auto checkout on testnet needs the delivery side configured too."""

    def test_not_ready_without_delivery_keys(self):
        assert not ConfigValidator().checkout_auto_ready(live_settings())

    def test_ready_with_all_keys(self):
        cfg = live_settings(
            polygon_escrow_address="0x3333333333333333333333333333333333333333",
            polygon_nft_address="0x4444444444444444444444444444444444444444",
            seller_private_key=TEST_PRIVATE_KEY,
        )
        assert ConfigValidator().checkout_auto_ready(cfg)


class TestValidate:
    """Startup validation result."""

    def test_defaults_are_valid(self):
        result = ConfigValidator().validate(Settings())
        assert result.valid
        assert not result.has_errors()

    def test_bad_address_is_error(self):
        result = ConfigValidator().validate(Settings(polygon_nft_address="nope"))
        assert not result.valid
        assert result.get_errors()[0].field == "POLYGON_MOCK_WEAPON_NFT"

    def test_out_of_range_timing(self):
        result = ConfigValidator().validate(Settings(poll_interval_ms=0))
        assert any(i.field == "poll_interval_ms" for i in result.get_errors())

    def test_partial_live_config_warns(self):
        result = ConfigValidator().validate(Settings(base_gateway_address=GATEWAY))
        assert result.valid
        assert result.has_warnings()
        assert "BASE_USDC_ADDRESS" in result.get_warnings()[0].message

    def test_custom_validator(self):
        validator = ConfigValidator()
        validator.register_validator(lambda cfg: [ValidationIssue(
            field="custom", message="nope", severity=ValidationSeverity.ERROR,
        )])
        assert not validator.validate(Settings()).valid


class TestSettings:
    """Environment loading and signer resolution."""

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("XS_POLL_INTERVAL_MS", "250")
        monkeypatch.setenv("BASE_GATEWAY_ADDRESS", f"  {GATEWAY}  ")
        monkeypatch.setenv("XS_LOG_JSON_CONSOLE", "true")
        cfg = Settings.load()
        assert cfg.poll_interval_ms == 250
        assert cfg.base_gateway_address == GATEWAY
        assert cfg.log_json_console is True

    def test_load_rejects_bad_interval(self, monkeypatch):
        monkeypatch.setenv("XS_POLL_INTERVAL_MS", "0")
        with pytest.raises(ValueError):
            Settings.load()

    def test_resolve_address(self):
        cfg = Settings(buyer_private_key=TEST_PRIVATE_KEY)
        assert cfg.resolve_address("buyer") == TEST_PRIVATE_KEY_ADDRESS
        assert cfg.resolve_address("seller") is None

    def test_missing_signer_raises(self):
        with pytest.raises(RuntimeError):
            Settings().resolve_signer("buyer")

    def test_dump_redacts_secrets(self):
        cfg = Settings(buyer_private_key=TEST_PRIVATE_KEY, metrics_token="t0k")
        dumped = cfg.dump()
        assert dumped["buyer_private_key"] == "***"
        assert dumped["metrics_token"] == "***"
