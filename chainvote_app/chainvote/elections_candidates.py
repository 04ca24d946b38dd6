import logging

from django.db import IntegrityError, transaction

from chainvote.elections_state import locked_election
from chainvote.exceptions import InvalidCandidate, ListLocked
from chainvote.models import Candidate, Election

logger = logging.getLogger(__name__)


def _ensure_editable(election: Election) -> None:
    if election.candidate_list_locked:
        raise ListLocked()
    if election.status != Election.Status.setup:
        # Unreachable while the lock invariant holds; kept as a guard.
        raise ListLocked("Candidates can only be changed while the election is in setup.")


def _clean_seat(election: Election, seat: str) -> str:
    seat = str(seat or "").strip()
    seats = [str(s) for s in (election.seats or [])]
    if seats and seat not in seats:
        raise InvalidCandidate(f"Seat {seat!r} is not one of this election's seats.")
    return seat


def _clean_name(name: str) -> str:
    name = str(name or "").strip()
    if not name:
        raise InvalidCandidate("Candidate name is required.")
    return name


def lock_candidate_list(*, election: Election, actor: str) -> tuple[Election, bool]:
    """Freeze the candidate list. Returns (election, changed); locking twice is a no-op."""
    with transaction.atomic():
        locked = locked_election(election.pk)
        if locked.candidate_list_locked:
            return locked, False

        locked.candidate_list_locked = True
        locked.save(update_fields=["candidate_list_locked", "updated_at"])

    logger.info("Candidate list locked for election %s by %s", locked.pk, actor or "(unknown)")
    return locked, True


def add_candidate(
    *,
    election: Election,
    name: str,
    seat: str = "",
    chain_candidate_id: int | None = None,
) -> Candidate:
    with transaction.atomic():
        locked = locked_election(election.pk)
        _ensure_editable(locked)
        clean_name = _clean_name(name)
        clean_seat = _clean_seat(locked, seat)
        try:
            with transaction.atomic():
                return Candidate.objects.create(
                    election=locked,
                    name=clean_name,
                    seat=clean_seat,
                    chain_candidate_id=chain_candidate_id,
                )
        except IntegrityError as exc:
            raise InvalidCandidate(f"{clean_name!r} is already a candidate for this seat.") from exc


def update_candidate(
    *,
    election: Election,
    candidate_id: int,
    name: str | None = None,
    seat: str | None = None,
) -> Candidate:
    with transaction.atomic():
        locked = locked_election(election.pk)
        _ensure_editable(locked)
        candidate = Candidate.objects.filter(election=locked, pk=candidate_id).first()
        if candidate is None:
            raise InvalidCandidate(f"Candidate {candidate_id} is not part of this election.")

        if name is not None:
            candidate.name = _clean_name(name)
        if seat is not None:
            candidate.seat = _clean_seat(locked, seat)
        try:
            with transaction.atomic():
                candidate.save(update_fields=["name", "seat"])
        except IntegrityError as exc:
            raise InvalidCandidate(f"{candidate.name!r} is already a candidate for this seat.") from exc
        return candidate


def remove_candidate(*, election: Election, candidate_id: int) -> None:
    with transaction.atomic():
        locked = locked_election(election.pk)
        _ensure_editable(locked)
        deleted, _ = Candidate.objects.filter(election=locked, pk=candidate_id).delete()
        if not deleted:
            raise InvalidCandidate(f"Candidate {candidate_id} is not part of this election.")
