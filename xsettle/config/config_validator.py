"""
Configuration validation for settlement modes.

- Required keys per mode (simulate needs none, testnet needs the chain set)
- Address and signer key format checks
- Range checks for watcher and stream timings
- Warnings for half-configured setups
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_utils import is_address

from xsettle.config.config import ENV_KEYS, Settings, is_present

logger = logging.getLogger(__name__)

MODE_SIMULATE = "simulate"
MODE_TESTNET = "testnet"
MODES = (MODE_SIMULATE, MODE_TESTNET)


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    ERROR = auto()    # Blocks the run / startup
    WARNING = auto()  # Logged, run continues
    INFO = auto()


@dataclass
class ValidationIssue:
    """A single validation issue."""
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    """Result of config validation."""
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def has_errors(self) -> bool:
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    def has_warnings(self) -> bool:
        return any(i.severity == ValidationSeverity.WARNING for i in self.issues)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates Settings for a settlement mode.

    ``missing_for_mode`` is what the orchestrator's validate phase consults:
    it must catch every absent key up front so nothing is discovered mid-flow.
    """

    # Keys the settle stream needs to run live.
    REQUIRED_BY_MODE: Dict[str, List[str]] = {
        MODE_SIMULATE: [],
        MODE_TESTNET: [
            "base_gateway_address",
            "base_usdc_address",
            "zeta_universal_market",
            "buyer_private_key",
        ],
    }

    # Extra keys the checkout flow needs before it may auto-settle on testnet.
    CHECKOUT_AUTO_KEYS: List[str] = [
        "polygon_escrow_address",
        "polygon_nft_address",
        "seller_private_key",
    ]

    ADDRESS_FIELDS: List[str] = [
        "base_gateway_address",
        "base_usdc_address",
        "zeta_universal_market",
        "polygon_escrow_address",
        "polygon_nft_address",
    ]

    SIGNER_FIELDS: List[str] = ["buyer_private_key", "seller_private_key"]

    # Range definitions: (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "processed_timeout_ms": (1, 3_600_000),
        "delivery_timeout_ms": (1, 3_600_000),
        "poll_interval_ms": (1, 600_000),
        "receipt_timeout_sec": (1.0, 3_600.0),
        "heartbeat_sec": (0.01, 300.0),
        "http_timeout": (0.1, 600.0),
        "deal_ttl_sec": (60, 7 * 86_400),
    }

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Settings], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Settings], List[ValidationIssue]]) -> None:
        """Register a custom validation function."""
        self._custom_validators.append(validator)

    def missing_for_mode(self, cfg: Settings, mode: str) -> List[str]:
        """Environment keys required by ``mode`` that are absent or unusable."""
        if mode not in MODES:
            return [f"mode '{mode}' (expected one of {', '.join(MODES)})"]
        missing: List[str] = []
        for attr in self.REQUIRED_BY_MODE[mode]:
            value = getattr(cfg, attr, None)
            if not is_present(value):
                missing.append(ENV_KEYS[attr])
            elif attr in self.ADDRESS_FIELDS and not is_address(value.strip()):
                missing.append(f"{ENV_KEYS[attr]} (invalid address)")
            elif attr in self.SIGNER_FIELDS and cfg.resolve_address(attr.split("_")[0]) is None:
                missing.append(f"{ENV_KEYS[attr]} (invalid key)")
        return missing

    def checkout_auto_ready(self, cfg: Settings) -> bool:
        """True when testnet checkout may settle without a human confirm."""
        if self.missing_for_mode(cfg, MODE_TESTNET):
            return False
        return all(is_present(getattr(cfg, attr, None)) for attr in self.CHECKOUT_AUTO_KEYS)

    def validate(self, cfg: Settings) -> ValidationResult:
        """
        Validate a Settings object at startup.

        Live-mode keys are optional at startup (simulate always works), so a
        partial live configuration is a warning rather than an error.
        """
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_addresses(cfg))
        issues.extend(self._validate_signers(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._check_partial_live_config(cfg))

        for validator in self._custom_validators:
            try:
                custom_issues = validator(cfg)
                if custom_issues:
                    issues.extend(custom_issues)
            except Exception as e:
                logger.warning(f"Custom validator error: {e}")

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_addresses(self, cfg: Settings) -> List[ValidationIssue]:
        issues = []
        for attr in self.ADDRESS_FIELDS:
            value = getattr(cfg, attr, None)
            if is_present(value) and not is_address(value.strip()):
                issues.append(ValidationIssue(
                    field=ENV_KEYS[attr],
                    message=f"'{ENV_KEYS[attr]}' is not a valid 20-byte hex address",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        return issues

    def _validate_signers(self, cfg: Settings) -> List[ValidationIssue]:
        issues = []
        for attr in self.SIGNER_FIELDS:
            if not is_present(getattr(cfg, attr, None)):
                continue
            if cfg.resolve_address(attr.split("_")[0]) is None:
                issues.append(ValidationIssue(
                    field=ENV_KEYS[attr],
                    message=f"'{ENV_KEYS[attr]}' is not a valid private key",
                    severity=ValidationSeverity.ERROR,
                    suggestion="Expected a 32-byte hex key",
                ))
        return issues

    def _validate_numeric_ranges(self, cfg: Settings) -> List[ValidationIssue]:
        """Validate numeric fields are within acceptable ranges."""
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _check_partial_live_config(self, cfg: Settings) -> List[ValidationIssue]:
        required = self.REQUIRED_BY_MODE[MODE_TESTNET]
        present = [attr for attr in required if is_present(getattr(cfg, attr, None))]
        if present and len(present) < len(required):
            missing = [ENV_KEYS[a] for a in required if a not in present]
            return [ValidationIssue(
                field="testnet",
                message=f"Testnet settlement partially configured; missing {', '.join(missing)}",
                severity=ValidationSeverity.WARNING,
                suggestion="Testnet runs will fail at validate until these are set",
            )]
        return []


def validate_and_log(cfg: Settings, log: logging.Logger, validator: Optional[ConfigValidator] = None) -> bool:
    """Validate settings, log every issue, return False if startup should stop."""
    result = (validator or ConfigValidator()).validate(cfg)
    for issue in result.get_warnings():
        log.warning(f"Config warning [{issue.field}]: {issue.message}")
    for issue in result.get_errors():
        hint = f" ({issue.suggestion})" if issue.suggestion else ""
        log.error(f"Config error [{issue.field}]: {issue.message}{hint}")
    return result.valid
