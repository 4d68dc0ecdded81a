"""Job ledger — job lifecycle and budget custody."""

from gigledger.ledger.job_ledger import JobLedger
from gigledger.ledger.state_machine import JobStateMachine

__all__ = ["JobLedger", "JobStateMachine"]
