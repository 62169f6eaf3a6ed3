"""Receipt batching."""

from trustbridge.batching.batcher import Batcher

__all__ = ["Batcher"]
