"""Source-chain transaction monitoring."""

from trustbridge.monitoring.transactions import TransactionMonitor

__all__ = ["TransactionMonitor"]
