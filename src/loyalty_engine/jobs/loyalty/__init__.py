"""Loyalty job exports."""

from .backfill import run_loyalty_backfill  # noqa: F401
from .catchup import run_loyalty_catchup  # noqa: F401
from .customer_refresh import run_customer_refresh  # noqa: F401
from .discount_caps import run_discount_cap_maintenance  # noqa: F401
from .expiration import run_loyalty_expiration  # noqa: F401

__all__ = [
    "run_customer_refresh",
    "run_discount_cap_maintenance",
    "run_loyalty_backfill",
    "run_loyalty_catchup",
    "run_loyalty_expiration",
]
