"""Append-only event log — the audit trail of every custody change.

Every committed transition in the job ledger and escrow vault produces an
event record appended here. Events are immutable once written and each
one commits to the hash of its predecessor, so the log is a hash chain:
removing or reordering a record breaks verify_chain().

The log can be persisted to a JSONL file (one JSON object per line) and
loaded back for recovery, with integrity checks on every line.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


GENESIS_HASH = "sha256:" + "0" * 64


class EventKind(str, enum.Enum):
    """Classification of settlement events."""
    # Job ledger events
    JOB_CREATED = "job_created"
    PROPOSAL_SUBMITTED = "proposal_submitted"
    FREELANCER_HIRED = "freelancer_hired"
    JOB_COMPLETED = "job_completed"
    JOB_CANCELLED = "job_cancelled"
    JOB_DISPUTED = "job_disputed"
    JOB_DISPUTE_RESOLVED = "job_dispute_resolved"
    DEADLINE_EXTENDED = "deadline_extended"
    BUDGET_INCREASED = "budget_increased"
    # Escrow vault events
    FUNDS_DEPOSITED = "funds_deposited"
    FUNDS_RELEASED = "funds_released"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_DISPUTED = "escrow_disputed"
    ESCROW_DISPUTE_RESOLVED = "escrow_dispute_resolved"
    # Administrative events
    PAUSED = "paused"
    UNPAUSED = "unpaused"
    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
    previous_hash: str,
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
            "previous_hash": previous_hash,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the settlement log.

    event_hash is computed at creation time over the canonical JSON of
    every other field, including previous_hash.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    previous_hash: str
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        previous_hash: str = GENESIS_HASH,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            previous_hash=previous_hash,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, actor_id, payload, previous_hash,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only, hash-chained event log with optional file persistence.

    Components call record(); it assigns the next event id and links the
    new record to the current head.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def record(
        self,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """Create, chain and append an event in one step."""
        event = EventRecord.create(
            event_id=f"EVT-{self.count + 1:08d}",
            event_kind=event_kind,
            actor_id=actor_id,
            payload=payload,
            previous_hash=self.head_hash,
            timestamp_utc=now,
        )
        self.append(event)
        return event

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection)
        or the event does not chain onto the current head.
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if event.previous_hash != self.head_hash:
            raise ValueError(
                f"Event {event.event_id} does not chain onto head "
                f"{self.head_hash} (got {event.previous_hash})"
            )

        if self._storage_path:
            self._append_to_file(event)

        self._events.append(event)
        self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for_job(self, job_id: int) -> list[EventRecord]:
        return [e for e in self._events if e.payload.get("job_id") == job_id]

    def verify_chain(self) -> list[str]:
        """Recompute every hash and link. Returns errors (empty = intact)."""
        errors: list[str] = []
        previous = GENESIS_HASH
        for event in self._events:
            if event.previous_hash != previous:
                errors.append(f"{event.event_id}: broken link to {previous}")
            expected = _canonical_hash(
                event.event_id, event.event_kind.value, event.timestamp_utc,
                event.actor_id, event.payload, event.previous_hash,
            )
            if expected != event.event_hash:
                errors.append(f"{event.event_id}: hash mismatch")
            previous = event.event_hash
        return errors

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def head_hash(self) -> str:
        return self._events[-1].event_hash if self._events else GENESIS_HASH

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        """Append a single event to the JSONL file."""
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch), broken
        chain links and duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"], data["event_kind"], data["timestamp_utc"],
                    data["actor_id"], data["payload"], data["previous_hash"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )
                if data["previous_hash"] != self.head_hash:
                    raise ValueError(
                        f"Chain broken (line {line_num}): event {event_id} "
                        f"links to {data['previous_hash']}, head is {self.head_hash}"
                    )

                event = EventRecord(
                    event_id=data["event_id"],
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    previous_hash=data["previous_hash"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
