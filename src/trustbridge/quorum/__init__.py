"""Quorum tracking for cross-chain messages."""

from trustbridge.quorum.tracker import AttestationResult, QuorumTracker

__all__ = ["AttestationResult", "QuorumTracker"]
