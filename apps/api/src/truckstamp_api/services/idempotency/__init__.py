"""Idempotency claim ledger."""

from .ledger import ClaimLeaseLostError, ClaimOutcome, ClaimResult, IdempotencyLedger

__all__ = ["ClaimLeaseLostError", "ClaimOutcome", "ClaimResult", "IdempotencyLedger"]
