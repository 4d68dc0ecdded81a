"""State store — JSON-based persistence for settlement runtime state.

Stores and recovers:
- Job records, the proposal index and the next job id
- Escrow records
- Token balances and allowances (in-memory token book only)
- Role grants
- Registered users
- The pause flag

This is a simple file-based store suitable for single-node deployment.
Production deployments would replace this with a database backend
while keeping the same interface.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from gigledger.identity.registry import UserKind, UserProfile
from gigledger.models.escrow import EscrowRecord, EscrowStatus
from gigledger.models.job import Job, JobStatus


class StateStore:
    """JSON file-based state persistence.

    Usage:
        store = StateStore(Path("data/state.json"))
        store.save_jobs(ledger.all_jobs(), ledger.proposals_snapshot(), ledger.next_job_id)
        store.save_escrows(vault.all_escrows())
        store.flush()

        # On recovery:
        jobs, proposals, next_job_id = store.load_jobs()
        escrows = store.load_escrows()
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._state: dict[str, Any] = {}
        if storage_path.exists():
            self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            self._state = json.load(f)

    def flush(self) -> None:
        """Write the accumulated state to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2, sort_keys=True, ensure_ascii=False)
        tmp.replace(self._path)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def save_jobs(
        self,
        jobs: list[Job],
        proposals: dict[int, list[str]],
        next_job_id: int,
    ) -> None:
        self._state["jobs"] = [
            {
                "job_id": job.job_id,
                "client": job.client,
                "ipfs_ref": job.ipfs_ref,
                "budget": job.budget,
                "held": job.held,
                "deadline": job.deadline.isoformat(),
                "status": job.status.value,
                "hired_freelancer": job.hired_freelancer,
                "created_utc": _iso(job.created_utc),
                "completed_utc": _iso(job.completed_utc),
                "disputed_utc": _iso(job.disputed_utc),
            }
            for job in jobs
        ]
        # JSON object keys are strings
        self._state["proposals"] = {str(k): list(v) for k, v in proposals.items()}
        self._state["next_job_id"] = next_job_id

    def load_jobs(self) -> tuple[list[Job], dict[int, list[str]], int]:
        jobs = [
            Job(
                job_id=data["job_id"],
                client=data["client"],
                ipfs_ref=data["ipfs_ref"],
                budget=data["budget"],
                held=data["held"],
                deadline=datetime.fromisoformat(data["deadline"]),
                status=JobStatus(data["status"]),
                hired_freelancer=data.get("hired_freelancer"),
                created_utc=_parse(data.get("created_utc")),
                completed_utc=_parse(data.get("completed_utc")),
                disputed_utc=_parse(data.get("disputed_utc")),
            )
            for data in self._state.get("jobs", [])
        ]
        proposals = {
            int(k): list(v) for k, v in self._state.get("proposals", {}).items()
        }
        return jobs, proposals, self._state.get("next_job_id", 0)

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    def save_escrows(self, records: list[EscrowRecord]) -> None:
        self._state["escrows"] = [
            {
                "job_id": r.job_id,
                "client": r.client,
                "freelancer": r.freelancer,
                "balance": r.balance,
                "status": r.status.value,
                "is_released": r.is_released,
                "created_utc": _iso(r.created_utc),
                "disputed_utc": _iso(r.disputed_utc),
                "settled_utc": _iso(r.settled_utc),
            }
            for r in records
        ]

    def load_escrows(self) -> list[EscrowRecord]:
        return [
            EscrowRecord(
                job_id=data["job_id"],
                client=data["client"],
                freelancer=data["freelancer"],
                balance=data["balance"],
                status=EscrowStatus(data["status"]),
                is_released=data["is_released"],
                created_utc=_parse(data.get("created_utc")),
                disputed_utc=_parse(data.get("disputed_utc")),
                settled_utc=_parse(data.get("settled_utc")),
            )
            for data in self._state.get("escrows", [])
        ]

    # ------------------------------------------------------------------
    # Token book, roles, users, pause flag
    # ------------------------------------------------------------------

    def save_token_book(self, snapshot: dict[str, Any]) -> None:
        self._state["token_book"] = snapshot

    def load_token_book(self) -> Optional[dict[str, Any]]:
        return self._state.get("token_book")

    def save_roles(self, grants: dict[str, list[str]]) -> None:
        self._state["roles"] = grants

    def load_roles(self) -> Optional[dict[str, list[str]]]:
        return self._state.get("roles")

    def save_users(self, users: list[UserProfile]) -> None:
        self._state["users"] = [
            {
                "identity": u.identity,
                "kind": u.kind.value,
                "registered_utc": _iso(u.registered_utc),
                "completed_jobs": u.completed_jobs,
                "total_earned": u.total_earned,
            }
            for u in users
        ]

    def load_users(self) -> list[UserProfile]:
        return [
            UserProfile(
                identity=data["identity"],
                kind=UserKind(data["kind"]),
                registered_utc=_parse(data.get("registered_utc")),
                completed_jobs=data.get("completed_jobs", 0),
                total_earned=data.get("total_earned", 0),
            )
            for data in self._state.get("users", [])
        ]

    def save_paused(self, paused: bool) -> None:
        self._state["paused"] = paused

    def load_paused(self) -> bool:
        return bool(self._state.get("paused", False))


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
