"""TrustBridge — cross-chain evidence quorum and settlement-chain anchoring."""

__version__ = "0.1.0"
