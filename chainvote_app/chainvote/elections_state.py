import logging
from collections.abc import Mapping

from django.db import transaction
from django.utils import timezone

from chainvote.exceptions import CandidateListUnlocked, ElectionNotFound, InvalidTransition
from chainvote.models import Election, ElectionStatusEntry

logger = logging.getLogger(__name__)

_S = Election.Status

ALLOWED_TRANSITIONS: Mapping[str, frozenset[str]] = {
    _S.setup: frozenset({_S.open}),
    _S.open: frozenset({_S.closed}),
    _S.closed: frozenset({_S.finalized}),
    _S.finalized: frozenset(),
}


def locked_election(election_id: int) -> Election:
    """Re-read an election under a row lock. Must run inside transaction.atomic."""
    try:
        return Election.objects.select_for_update().get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise ElectionNotFound(f"Election {election_id} not found.") from exc


def validate_transition(election: Election, target: str) -> None:
    if target not in _S.values:
        raise InvalidTransition(f"Unknown election status {target!r}.")

    current = str(election.status)
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(f"Cannot move an election from {current} to {target}.")

    if target == _S.open and not election.candidate_list_locked:
        raise CandidateListUnlocked()


def apply_transition(
    election: Election,
    *,
    target: str,
    actor: str,
    reason: str = "",
    extra_fields: Mapping[str, object] | None = None,
) -> ElectionStatusEntry:
    """Persist an already-validated transition and its history entry.

    The caller holds the row lock and the surrounding transaction.
    """
    previous = election.status
    update_fields = ["status", "updated_at"]
    election.status = target
    for name, value in (extra_fields or {}).items():
        setattr(election, name, value)
        update_fields.append(name)
    election.save(update_fields=update_fields)

    entry = ElectionStatusEntry.objects.create(
        election=election,
        kind=ElectionStatusEntry.Kind.transition,
        status=target,
        actor=actor,
        reason=reason,
        at=timezone.now(),
    )
    logger.info(
        "Election %s moved from %s to %s by %s",
        election.pk,
        previous,
        target,
        actor or "(unknown)",
        extra={
            "event": "chainvote.election.transition",
            "component": "elections",
            "outcome": "success",
            "election_id": election.pk,
            "from_status": previous,
            "to_status": target,
        },
    )
    return entry


def request_transition(*, election: Election, target: str, actor: str, reason: str = "") -> Election:
    """Move an election one step along setup -> open -> closed.

    Finalization also passes through here (from elections_tally) but needs a
    recorded ledger transaction, so a bare request for it is refused.
    """
    with transaction.atomic():
        locked = locked_election(election.pk)
        validate_transition(locked, target)
        if target == _S.finalized:
            raise InvalidTransition("Finalizing requires a ledger transaction; use finalize instead.")
        apply_transition(locked, target=target, actor=actor, reason=reason)
    return locked
