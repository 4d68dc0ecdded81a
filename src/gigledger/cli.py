"""GigLedger CLI — command-line interface for job and escrow custody.

Usage:
    python -m gigledger.cli status
    python -m gigledger.cli register --id alice --kind client
    python -m gigledger.cli mint --as admin --account alice --amount 10000
    python -m gigledger.cli approve --as alice --spender job-ledger --amount 5000
    python -m gigledger.cli create-job --as alice --ref ipfs://brief --budget 5000 --days 30
    python -m gigledger.cli propose --as bob --job 0
    python -m gigledger.cli hire --as alice --job 0 --freelancer bob
    python -m gigledger.cli complete-job --as alice --job 0
    python -m gigledger.cli check-invariants
    python -m gigledger.cli --erc20-env .env status
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from gigledger.access.roles import Role
from gigledger.custody.erc20 import Erc20TokenMover
from gigledger.identity.registry import UserKind
from gigledger.logging_config import setup_logging
from gigledger.persistence.event_log import EventLog
from gigledger.persistence.state_store import StateStore
from gigledger.policy.resolver import PolicyResolver
from gigledger.service import LEDGER_ACCOUNT, VAULT_ACCOUNT, ServiceResult, SettlementService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"

SPENDER_ALIASES = {"ledger": LEDGER_ACCOUNT, "vault": VAULT_ACCOUNT}


def _make_service(args: argparse.Namespace) -> SettlementService:
    """Create a SettlementService with durable persistence."""
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(args.config)
    event_log = EventLog(storage_path=data_dir / "events.jsonl")
    state_store = StateStore(storage_path=data_dir / "state.json")
    ledger_mover = vault_mover = None
    if args.erc20_env is not None:
        ledger_mover, vault_mover = Erc20TokenMover.pair_from_env(args.erc20_env)
    return SettlementService(
        resolver,
        deployer=args.deployer,
        event_log=event_log,
        state_store=state_store,
        ledger_mover=ledger_mover,
        vault_mover=vault_mover,
    )


def _deadline(days: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def _report(result: ServiceResult, label: str) -> int:
    if result.success:
        print(f"{label}: {json.dumps(result.data, sort_keys=True)}")
        return 0
    print(f"Failed ({result.error_kind}): {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_register(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.register_user(args.id, UserKind(args.kind)), "Registered")


def cmd_mint(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.mint(args.caller, args.account, args.amount), "Minted")


def cmd_approve(args: argparse.Namespace) -> int:
    service = _make_service(args)
    spender = SPENDER_ALIASES.get(args.spender, args.spender)
    return _report(service.approve(args.caller, spender, args.amount), "Approved")


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

def cmd_create_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.create_job(args.caller, args.ref, args.budget, _deadline(args.days))
    return _report(result, "Created job")


def cmd_propose(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.submit_proposal(args.caller, args.job), "Proposal submitted")


def cmd_hire(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.hire_freelancer(args.caller, args.job, args.freelancer), "Hired")


def cmd_complete_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.complete_job(args.caller, args.job), "Completed")


def cmd_cancel_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.cancel_job(args.caller, args.job), "Cancelled")


def cmd_dispute_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.dispute_job(args.caller, args.job), "Disputed")


def cmd_resolve_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.resolve_job_dispute(args.caller, args.job, args.winner)
    return _report(result, "Resolved")


def cmd_extend_deadline(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.extend_job_deadline(args.caller, args.job, _deadline(args.days))
    return _report(result, "Deadline extended")


def cmd_increase_budget(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.increase_budget(args.caller, args.job, args.amount)
    return _report(result, "Budget increased")


def cmd_show_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    job = service.get_job(args.job)
    if job is None:
        print(f"Job not found: {args.job}", file=sys.stderr)
        return 1
    print(json.dumps({
        "job_id": job.job_id,
        "client": job.client,
        "ipfs_ref": job.ipfs_ref,
        "status": job.status.value,
        "budget": job.budget,
        "held": job.held,
        "deadline": job.deadline.isoformat(),
        "hired_freelancer": job.hired_freelancer,
        "proposals": service.ledger.get_job_proposals(job.job_id),
    }, indent=2))
    return 0


# ----------------------------------------------------------------------
# Escrows
# ----------------------------------------------------------------------

def cmd_create_escrow(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.create_escrow(
        args.caller, args.job, args.client, args.freelancer, args.amount,
    )
    return _report(result, "Escrow created")


def cmd_add_funds(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.add_escrow_funds(args.caller, args.job, args.amount), "Funds added")


def cmd_release(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.release_escrow(args.caller, args.job), "Released")


def cmd_refund(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.refund_escrow(args.caller, args.job), "Refunded")


def cmd_dispute_escrow(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.dispute_escrow(args.caller, args.job), "Escrow disputed")


def cmd_resolve_escrow(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.resolve_escrow_dispute(args.caller, args.job, args.winner)
    return _report(result, "Escrow resolved")


def cmd_show_escrow(args: argparse.Namespace) -> int:
    service = _make_service(args)
    record = service.get_escrow(args.job)
    if record is None:
        print(f"Escrow not found: {args.job}", file=sys.stderr)
        return 1
    print(json.dumps({
        "job_id": record.job_id,
        "client": record.client,
        "freelancer": record.freelancer,
        "status": record.status.value,
        "balance": record.balance,
        "is_released": record.is_released,
    }, indent=2))
    return 0


# ----------------------------------------------------------------------
# Administration
# ----------------------------------------------------------------------

def cmd_pause(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.pause(args.caller), "Paused")


def cmd_unpause(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.unpause(args.caller), "Unpaused")


def cmd_grant_role(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.grant_role(args.caller, Role(args.role), args.account), "Granted")


def cmd_revoke_role(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.revoke_role(args.caller, Role(args.role), args.account), "Revoked")


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run settlement parameter checks."""
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check
    return check(args.config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gigledger",
        description="GigLedger — job and escrow custody for a freelance marketplace",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to data directory (state.json, events.jsonl)",
    )
    parser.add_argument(
        "--deployer",
        default="admin",
        help="Identity granted ADMIN and both manager roles on first run",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--erc20-env",
        type=Path,
        default=None,
        help=".env file with GIGLEDGER_RPC_URL, GIGLEDGER_TOKEN_ADDRESS, "
             "GIGLEDGER_LEDGER_PRIVATE_KEY and GIGLEDGER_VAULT_PRIVATE_KEY; "
             "settles on-chain instead of the in-memory token book",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show ledger and vault status")

    p_reg = sub.add_parser("register", help="Register a client or freelancer")
    p_reg.add_argument("--id", required=True, help="Identity")
    p_reg.add_argument("--kind", required=True, choices=[k.value for k in UserKind])

    def _with_caller(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--as", dest="caller", required=True, help="Calling identity")
        return p

    def _with_job(name: str, help_text: str) -> argparse.ArgumentParser:
        p = _with_caller(name, help_text)
        p.add_argument("--job", type=int, required=True, help="Job ID")
        return p

    p_mint = _with_caller("mint", "Credit tokens to an account (ADMIN)")
    p_mint.add_argument("--account", required=True)
    p_mint.add_argument("--amount", type=int, required=True)

    p_approve = _with_caller("approve", "Set the allowance for a custody account")
    p_approve.add_argument(
        "--spender",
        required=True,
        help="Custody account (ledger, vault, or a raw account name)",
    )
    p_approve.add_argument("--amount", type=int, required=True)

    # jobs
    p_create = _with_caller("create-job", "Post a job and fund its budget")
    p_create.add_argument("--ref", required=True, help="Job description reference")
    p_create.add_argument("--budget", type=int, required=True)
    p_create.add_argument("--days", type=float, required=True, help="Deadline, days from now")

    _with_job("propose", "Submit a proposal for a posted job")

    p_hire = _with_job("hire", "Hire a freelancer who has proposed")
    p_hire.add_argument("--freelancer", required=True)

    _with_job("complete-job", "Pay the hired freelancer")
    _with_job("cancel-job", "Refund the client before hiring")
    _with_job("dispute-job", "Freeze an active job")

    p_resolve = _with_job("resolve-job", "Pay a disputed job to the winner (JOB_MANAGER)")
    p_resolve.add_argument("--winner", required=True)

    p_extend = _with_job("extend-deadline", "Move a job's deadline later")
    p_extend.add_argument("--days", type=float, required=True, help="New deadline, days from now")

    p_increase = _with_job("increase-budget", "Top up an active job")
    p_increase.add_argument("--amount", type=int, required=True)

    p_show = sub.add_parser("show-job", help="Show a job")
    p_show.add_argument("--job", type=int, required=True)

    # escrows
    p_escrow = _with_job("create-escrow", "Open an escrow (ESCROW_MANAGER)")
    p_escrow.add_argument("--client", required=True)
    p_escrow.add_argument("--freelancer", required=True)
    p_escrow.add_argument("--amount", type=int, required=True)

    p_add = _with_job("add-funds", "Client tops up an escrow")
    p_add.add_argument("--amount", type=int, required=True)

    _with_job("release", "Client releases escrow to the freelancer")
    _with_job("refund", "Refund escrow to the client (ESCROW_MANAGER)")
    _with_job("dispute-escrow", "Client disputes an escrow")

    p_resolve_escrow = _with_job("resolve-escrow", "Settle a disputed escrow (ESCROW_MANAGER)")
    p_resolve_escrow.add_argument("--winner", required=True)

    p_show_escrow = sub.add_parser("show-escrow", help="Show an escrow")
    p_show_escrow.add_argument("--job", type=int, required=True)

    # administration
    _with_caller("pause", "Halt all state-changing operations (ADMIN)")
    _with_caller("unpause", "Resume operations (ADMIN)")

    for name, help_text in (("grant-role", "Grant a role (ADMIN)"),
                            ("revoke-role", "Revoke a role (ADMIN)")):
        p_role = _with_caller(name, help_text)
        p_role.add_argument("--role", required=True, choices=[r.value for r in Role])
        p_role.add_argument("--account", required=True)

    sub.add_parser("check-invariants", help="Validate settlement parameters")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "register": cmd_register,
        "mint": cmd_mint,
        "approve": cmd_approve,
        "create-job": cmd_create_job,
        "propose": cmd_propose,
        "hire": cmd_hire,
        "complete-job": cmd_complete_job,
        "cancel-job": cmd_cancel_job,
        "dispute-job": cmd_dispute_job,
        "resolve-job": cmd_resolve_job,
        "extend-deadline": cmd_extend_deadline,
        "increase-budget": cmd_increase_budget,
        "show-job": cmd_show_job,
        "create-escrow": cmd_create_escrow,
        "add-funds": cmd_add_funds,
        "release": cmd_release,
        "refund": cmd_refund,
        "dispute-escrow": cmd_dispute_escrow,
        "resolve-escrow": cmd_resolve_escrow,
        "show-escrow": cmd_show_escrow,
        "pause": cmd_pause,
        "unpause": cmd_unpause,
        "grant-role": cmd_grant_role,
        "revoke-role": cmd_revoke_role,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
