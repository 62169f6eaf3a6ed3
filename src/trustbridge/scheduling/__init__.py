"""Delayed re-check scheduling."""

from trustbridge.scheduling.poller import PollHandle, PollScheduler

__all__ = ["PollHandle", "PollScheduler"]
