"""Audit persistence — append-only event log."""

from trustbridge.persistence.event_log import EventKind, EventLog, EventRecord

__all__ = ["EventKind", "EventLog", "EventRecord"]
