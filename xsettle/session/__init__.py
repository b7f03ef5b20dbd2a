"""Confirmation gate for confirm-mode checkout."""

from xsettle.session.gate import ConfirmationGate, ConfirmState

__all__ = ["ConfirmationGate", "ConfirmState"]
