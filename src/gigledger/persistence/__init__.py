"""Persistence layer — event log and state storage."""

from gigledger.persistence.event_log import EventKind, EventLog, EventRecord
from gigledger.persistence.state_store import StateStore

__all__ = ["EventLog", "EventRecord", "EventKind", "StateStore"]
