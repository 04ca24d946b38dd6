import logging
from typing import override

from django.core.management.base import BaseCommand
from django.db.models import Count
from django.utils import timezone

from chainvote.elections_auth import record_admin_action
from chainvote.elections_state import request_transition
from chainvote.exceptions import ChainVoteError
from chainvote.models import AdminAction, Election

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"


class Command(BaseCommand):
    help = (
        "Open elections whose starts_at has passed (locked candidate list with at "
        "least one candidate) and close open elections whose ends_at has passed."
    )

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without modifying elections.",
        )

    def _transition(self, election: Election, target: str) -> bool:
        previous = election.status
        try:
            request_transition(election=election, target=target, actor=SCHEDULER_ACTOR, reason="scheduled")
        except ChainVoteError as exc:
            self.stderr.write(f"Failed to move election {election.id} to {target}: {exc}")
            return False

        record_admin_action(
            election=election,
            action_type=AdminAction.ActionType.status_change,
            actor=SCHEDULER_ACTOR,
            outcome=AdminAction.Outcome.succeeded,
            payload={"from_status": previous, "to_status": target, "automatic": True},
        )
        return True

    @override
    def handle(self, *args, **options) -> None:
        dry_run: bool = bool(options.get("dry_run"))

        now = timezone.now()

        to_open = list(
            Election.objects.annotate(candidate_count=Count("candidates"))
            .filter(
                status=Election.Status.setup,
                starts_at__isnull=False,
                starts_at__lte=now,
                candidate_list_locked=True,
                candidate_count__gt=0,
            )
            .only("id", "status")
        )
        to_close = list(
            Election.objects.filter(
                status=Election.Status.open,
                ends_at__isnull=False,
                ends_at__lte=now,
            ).only("id", "status")
        )

        not_ready = Election.objects.filter(
            status=Election.Status.setup,
            starts_at__isnull=False,
            starts_at__lte=now,
        ).exclude(pk__in=[e.pk for e in to_open])
        for election in not_ready.only("id"):
            logger.debug("Election %s is due to open but its candidate list is unlocked or empty", election.id)

        if dry_run:
            self.stdout.write(
                f"[dry-run] Would open {len(to_open)} election(s) and close {len(to_close)} election(s)."
            )
            return

        opened = 0
        closed = 0
        failed = 0

        for election in to_open:
            if self._transition(election, Election.Status.open):
                opened += 1
                logger.info("Auto-opened election %s", election.id)
            else:
                failed += 1

        for election in to_close:
            if self._transition(election, Election.Status.closed):
                closed += 1
                logger.info("Auto-closed election %s", election.id)
            else:
                failed += 1

        self.stdout.write(f"Opened {opened} election(s); closed {closed} election(s); failed {failed}.")
