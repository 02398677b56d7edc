"""Multi-chain balance snapshots and fund-flow analytics for custodial entities."""

__version__ = "0.1.0"
