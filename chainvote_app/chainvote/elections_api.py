"""Entry points used by the HTTP views and management commands.

Each gated operation re-authorizes the actor, runs the lifecycle service and
writes one AdminAction row describing the outcome.
"""

import datetime
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from django.contrib.auth.models import AbstractBaseUser
from django.db import transaction

from chainvote import elections_candidates, elections_reset, elections_state, elections_tally
from chainvote.elections_auth import (
    AdminAuthorizationGate,
    AdminProofs,
    actor_name,
    consume_reset_code,
    issue_reset_confirmation_code,
    record_admin_action,
)
from chainvote.exceptions import ChainVoteError, ElectionNotFound, InvalidElection
from chainvote.ledger.registry import ContractRegistry
from chainvote.models import AdminAction, Candidate, Election

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResetRequest:
    reason: str
    admin_password: str
    confirmation_code: str
    confirmation_phrase: str

    def proofs(self) -> AdminProofs:
        return AdminProofs(
            password=self.admin_password,
            confirmation_code=self.confirmation_code,
            confirmation_phrase=self.confirmation_phrase,
        )


def get_election(election_id: int) -> Election:
    election = Election.objects.filter(pk=election_id).first()
    if election is None:
        raise ElectionNotFound(f"Election {election_id} not found.")
    return election


def election_summary(election: Election) -> dict[str, Any]:
    candidates = [
        {
            "id": c.pk,
            "name": c.name,
            "seat": c.seat,
            "votes": c.votes,
        }
        for c in Candidate.objects.filter(election=election).order_by("id")
    ]
    history = [
        {
            "kind": entry.kind,
            "status": entry.status,
            "actor": entry.actor,
            "reason": entry.reason,
            "at": entry.at.isoformat(),
        }
        for entry in election.status_history.order_by("at", "id")
    ]
    return {
        "id": election.pk,
        "title": election.title,
        "description": election.description,
        "status": election.status,
        "candidate_list_locked": election.candidate_list_locked,
        "seats": list(election.seats or []),
        "total_votes": election.total_votes,
        "candidates": candidates,
        "status_history": history,
        "starts_at": election.starts_at.isoformat() if election.starts_at else None,
        "ends_at": election.ends_at.isoformat() if election.ends_at else None,
        "finalize_tx_hash": election.finalize_tx_hash or None,
        "finalized_at": election.finalized_at.isoformat() if election.finalized_at else None,
        "results_hash": election.results_hash or None,
    }


def _audited[T](
    *,
    election: Election | None,
    action_type: str,
    actor: str,
    proofs: Iterable[str],
    payload: Mapping[str, object],
    run: Callable[[], T],
) -> T:
    proofs = list(proofs)
    try:
        result = run()
    except ChainVoteError as exc:
        record_admin_action(
            election=election,
            action_type=action_type,
            actor=actor,
            outcome=AdminAction.Outcome.failed,
            proofs=proofs,
            payload={**payload, "error": exc.kind, "message": exc.message},
        )
        raise
    except Exception as exc:
        record_admin_action(
            election=election,
            action_type=action_type,
            actor=actor,
            outcome=AdminAction.Outcome.failed,
            proofs=proofs,
            payload={**payload, "error": type(exc).__name__},
        )
        logger.exception("Election action %s failed unexpectedly", action_type)
        raise

    record_admin_action(
        election=election,
        action_type=action_type,
        actor=actor,
        outcome=AdminAction.Outcome.succeeded,
        proofs=proofs,
        payload=payload,
    )
    return result


def change_status(*, election_id: int, status: str, admin_password: str, actor: AbstractBaseUser) -> Election:
    election = get_election(election_id)
    proofs = AdminProofs(password=admin_password)
    action_type = AdminAction.ActionType.status_change
    target = str(status or "").strip().lower()

    AdminAuthorizationGate(actor=actor).authorize(election=election, action_type=action_type, proofs=proofs)
    return _audited(
        election=election,
        action_type=action_type,
        actor=actor_name(actor),
        proofs=proofs.supplied(),
        payload={"from_status": election.status, "to_status": target},
        run=lambda: elections_state.request_transition(election=election, target=target, actor=actor_name(actor)),
    )


def finalize_tally(
    *,
    election_id: int,
    admin_password: str,
    actor: AbstractBaseUser,
    registry: ContractRegistry | None = None,
) -> Election:
    election = get_election(election_id)
    proofs = AdminProofs(password=admin_password)
    action_type = AdminAction.ActionType.finalize

    AdminAuthorizationGate(actor=actor).authorize(election=election, action_type=action_type, proofs=proofs)
    return _audited(
        election=election,
        action_type=action_type,
        actor=actor_name(actor),
        proofs=proofs.supplied(),
        payload={"from_status": election.status},
        run=lambda: elections_tally.finalize_election(election=election, actor=actor_name(actor), registry=registry),
    )


def reset_election(*, election_id: int, request: ResetRequest, actor: AbstractBaseUser) -> Election:
    election = get_election(election_id)
    proofs = request.proofs()

    code_id = AdminAuthorizationGate(actor=actor).authorize_reset(election=election, proofs=proofs)

    def run() -> Election:
        with transaction.atomic():
            # Validate before the code is spent; both roll back together otherwise.
            elections_reset.validate_reset(elections_state.locked_election(election.pk), reason=request.reason)
            consume_reset_code(code_id)
            return elections_reset.reset_election(election=election, reason=request.reason, actor=actor_name(actor))

    return _audited(
        election=election,
        action_type=AdminAction.ActionType.reset,
        actor=actor_name(actor),
        proofs=proofs.supplied(),
        payload={"from_status": election.status, "reason": request.reason},
        run=run,
    )


def clear_votes(*, election_id: int, admin_password: str, actor: AbstractBaseUser) -> Election:
    election = get_election(election_id)
    proofs = AdminProofs(password=admin_password)
    action_type = AdminAction.ActionType.clear_votes

    AdminAuthorizationGate(actor=actor).authorize(election=election, action_type=action_type, proofs=proofs)
    return _audited(
        election=election,
        action_type=action_type,
        actor=actor_name(actor),
        proofs=proofs.supplied(),
        payload={"total_votes_before": election.total_votes},
        run=lambda: elections_reset.clear_votes(election=election, actor=actor_name(actor)),
    )


def lock_candidate_list(*, election_id: int, actor: AbstractBaseUser) -> Election:
    election = get_election(election_id)

    def run() -> Election:
        locked, changed = elections_candidates.lock_candidate_list(election=election, actor=actor_name(actor))
        if not changed:
            logger.debug("Candidate list for election %s was already locked", election.pk)
        return locked

    return _audited(
        election=election,
        action_type=AdminAction.ActionType.lock_candidates,
        actor=actor_name(actor),
        proofs=[],
        payload={"already_locked": election.candidate_list_locked},
        run=run,
    )


def issue_reset_code(*, election_id: int, admin_password: str, actor: AbstractBaseUser) -> str:
    election = get_election(election_id)
    proofs = AdminProofs(password=admin_password)
    action_type = AdminAction.ActionType.issue_reset_code

    AdminAuthorizationGate(actor=actor).authorize(election=election, action_type=action_type, proofs=proofs)
    return _audited(
        election=election,
        action_type=action_type,
        actor=actor_name(actor),
        proofs=proofs.supplied(),
        payload={},
        run=lambda: issue_reset_confirmation_code(election=election, issued_by=actor_name(actor)),
    )


def create_election(
    *,
    title: str,
    actor: AbstractBaseUser,
    description: str = "",
    seats: Iterable[str] = (),
    starts_at: datetime.datetime | None = None,
    ends_at: datetime.datetime | None = None,
    chain_election_id: int | None = None,
) -> Election:
    title = str(title or "").strip()
    if not title:
        raise InvalidElection("Election title is required.")

    clean_seats: list[str] = []
    for seat in seats:
        seat = str(seat or "").strip()
        if seat and seat not in clean_seats:
            clean_seats.append(seat)

    if starts_at and ends_at and ends_at <= starts_at:
        raise InvalidElection("Election end must be after its start.")

    election = Election.objects.create(
        title=title,
        description=str(description or ""),
        seats=clean_seats,
        starts_at=starts_at,
        ends_at=ends_at,
        chain_election_id=chain_election_id,
        created_by=actor_name(actor),
    )
    logger.info("Election %s created by %s", election.pk, actor_name(actor))
    return election


def add_candidate(
    *,
    election_id: int,
    name: str,
    actor: AbstractBaseUser,
    seat: str = "",
    chain_candidate_id: int | None = None,
) -> Candidate:
    election = get_election(election_id)
    candidate = elections_candidates.add_candidate(
        election=election,
        name=name,
        seat=seat,
        chain_candidate_id=chain_candidate_id,
    )
    logger.info("Candidate %s added to election %s by %s", candidate.pk, election.pk, actor_name(actor))
    return candidate


def update_candidate(
    *,
    election_id: int,
    candidate_id: int,
    actor: AbstractBaseUser,
    name: str | None = None,
    seat: str | None = None,
) -> Candidate:
    election = get_election(election_id)
    candidate = elections_candidates.update_candidate(
        election=election,
        candidate_id=candidate_id,
        name=name,
        seat=seat,
    )
    logger.info("Candidate %s of election %s updated by %s", candidate_id, election.pk, actor_name(actor))
    return candidate


def remove_candidate(*, election_id: int, candidate_id: int, actor: AbstractBaseUser) -> None:
    election = get_election(election_id)
    elections_candidates.remove_candidate(election=election, candidate_id=candidate_id)
    logger.info("Candidate %s removed from election %s by %s", candidate_id, election.pk, actor_name(actor))
