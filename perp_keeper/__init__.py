"""perp-keeper: liquidation and market-freshness keeper for slab-based perpetual markets."""

__version__ = "0.3.0"
