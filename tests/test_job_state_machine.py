"""Tests for the job state machine — proves only listed edges exist."""

import pytest
from datetime import datetime, timezone

from gigledger.ledger.state_machine import JobStateMachine
from gigledger.models.job import Job, JobStatus


def _job(status: JobStatus) -> Job:
    return Job(
        job_id=0,
        client="alice",
        ipfs_ref="ipfs://brief",
        budget=1_000,
        held=1_000,
        deadline=datetime(2026, 6, 1, tzinfo=timezone.utc),
        status=status,
    )


ALLOWED = {
    (JobStatus.POSTED, JobStatus.IN_PROGRESS),
    (JobStatus.POSTED, JobStatus.CANCELLED),
    (JobStatus.POSTED, JobStatus.DISPUTED),
    (JobStatus.IN_PROGRESS, JobStatus.COMPLETED),
    (JobStatus.IN_PROGRESS, JobStatus.DISPUTED),
    (JobStatus.DISPUTED, JobStatus.COMPLETED),
}


class TestTransitions:
    @pytest.mark.parametrize("current", list(JobStatus))
    @pytest.mark.parametrize("target", list(JobStatus))
    def test_edge_table(self, current: JobStatus, target: JobStatus) -> None:
        errors = JobStateMachine.validate_transition(_job(current), target)
        if (current, target) in ALLOWED:
            assert errors == []
        else:
            assert errors and "Invalid job transition" in errors[0]

    def test_apply_mutates_on_success(self) -> None:
        job = _job(JobStatus.POSTED)
        assert JobStateMachine.apply_transition(job, JobStatus.IN_PROGRESS) == []
        assert job.status == JobStatus.IN_PROGRESS

    def test_apply_leaves_job_on_failure(self) -> None:
        job = _job(JobStatus.CANCELLED)
        assert JobStateMachine.apply_transition(job, JobStatus.POSTED)
        assert job.status == JobStatus.CANCELLED

    def test_disputed_never_reverts_to_active(self) -> None:
        targets = JobStateMachine.valid_transitions(JobStatus.DISPUTED)
        assert targets == {JobStatus.COMPLETED}

    def test_terminal(self) -> None:
        assert JobStateMachine.is_terminal(JobStatus.COMPLETED)
        assert JobStateMachine.is_terminal(JobStatus.CANCELLED)
        assert not JobStateMachine.is_terminal(JobStatus.DISPUTED)


class TestJobModel:
    def test_is_party(self) -> None:
        job = _job(JobStatus.IN_PROGRESS)
        assert job.is_party("alice")
        assert not job.is_party("bob")
        job.hired_freelancer = "bob"
        assert job.is_party("bob")

    def test_active_flags(self) -> None:
        assert _job(JobStatus.POSTED).is_active
        assert _job(JobStatus.IN_PROGRESS).is_active
        assert not _job(JobStatus.DISPUTED).is_active
        assert _job(JobStatus.CANCELLED).is_terminal
