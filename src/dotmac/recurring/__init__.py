"""
DotMac Recurring Billing - subscription billing core.

This package provides:
- Billing cycle and proration calculations
- Subscription state machine and caller-facing services
- Billing engine sweeps (due billing, payment retries, lifecycle)
- Outbound webhook delivery with backoff, circuit breaking and duplicate suppression
- Request rate limiting with pluggable backends
"""

__version__ = "1.0.0"
__author__ = "DotMac Team"
__email__ = "dev@dotmac.com"


def get_version() -> str:
    """Get recurring billing package version."""
    return __version__


__all__ = ["__version__", "get_version"]
