import logging

from django.db import transaction
from django.utils import timezone

from chainvote.elections_state import locked_election
from chainvote.exceptions import AlreadyFinalized, ResetPreconditionFailed
from chainvote.ledger.pending import finalize_key, get_marker
from chainvote.models import Candidate, Election, ElectionStatusEntry

logger = logging.getLogger(__name__)


def validate_reset(election: Election, *, reason: str) -> None:
    if not str(reason or "").strip():
        raise ResetPreconditionFailed("A reason is required to reset an election.")
    if election.status == Election.Status.finalized:
        raise ResetPreconditionFailed("Finalized elections cannot be reset.")
    if int(election.total_votes) != 0:
        raise ResetPreconditionFailed("Elections that have received votes cannot be reset.")
    if get_marker(finalize_key(election.pk)) is not None:
        raise ResetPreconditionFailed("A finalize transaction for this election is still pending.")


def reset_election(*, election: Election, reason: str, actor: str) -> Election:
    """Return an election with no votes to setup, wiping its candidates.

    Metadata only: the ledger and the contract deployment are left alone.
    """
    with transaction.atomic():
        locked = locked_election(election.pk)
        validate_reset(locked, reason=reason)

        previous = locked.status
        removed, _ = Candidate.objects.filter(election=locked).delete()

        locked.status = Election.Status.setup
        locked.candidate_list_locked = False
        locked.total_votes = 0
        locked.save(update_fields=["status", "candidate_list_locked", "total_votes", "updated_at"])

        ElectionStatusEntry.objects.create(
            election=locked,
            kind=ElectionStatusEntry.Kind.reset,
            status=Election.Status.setup,
            actor=actor,
            reason=reason.strip(),
            at=timezone.now(),
        )

    logger.warning(
        "Election %s reset from %s by %s",
        locked.pk,
        previous,
        actor or "(unknown)",
        extra={
            "event": "chainvote.election.reset",
            "component": "elections",
            "outcome": "success",
            "election_id": locked.pk,
            "from_status": previous,
            "candidates_removed": removed,
        },
    )
    return locked


def clear_votes(*, election: Election, actor: str) -> Election:
    """Zero the off-chain vote cache. The ledger keeps its own counts."""
    with transaction.atomic():
        locked = locked_election(election.pk)
        if locked.status == Election.Status.finalized:
            raise AlreadyFinalized("Votes of a finalized election are frozen.")

        Candidate.objects.filter(election=locked).update(votes=0)
        locked.total_votes = 0
        locked.save(update_fields=["total_votes", "updated_at"])

    logger.info("Vote cache cleared for election %s by %s", locked.pk, actor or "(unknown)")
    return locked
