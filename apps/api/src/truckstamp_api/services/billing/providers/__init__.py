"""Payment processor provider adapters for billing operations."""

from .stripe import StripeBillingProvider

__all__ = ["StripeBillingProvider"]
