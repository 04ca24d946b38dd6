from typing import override

from django.core.management.base import BaseCommand

from chainvote.elections_tally import sync_vote_counts
from chainvote.exceptions import ChainVoteError, RpcUnreachable
from chainvote.models import Election


class Command(BaseCommand):
    help = "Refresh the cached vote counts of open and closed elections from the ledger."

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--election",
            type=int,
            action="append",
            dest="election_ids",
            help="Only sync this election id (repeatable).",
        )

    @override
    def handle(self, *args, **options) -> None:
        election_ids: list[int] = list(options.get("election_ids") or [])

        elections = Election.objects.filter(status__in=[Election.Status.open, Election.Status.closed])
        if election_ids:
            elections = elections.filter(pk__in=election_ids)

        synced = 0
        changed = 0
        failed = 0
        for election in elections.order_by("id"):
            try:
                _updated, candidates_changed = sync_vote_counts(election=election)
            except RpcUnreachable as exc:
                self.stderr.write(f"Ledger unreachable; stopping: {exc}")
                failed += 1
                break
            except (ChainVoteError, ValueError) as exc:
                self.stderr.write(f"Failed to sync election {election.id}: {exc}")
                failed += 1
                continue
            synced += 1
            changed += candidates_changed

        self.stdout.write(f"Synced {synced} election(s); updated {changed} candidate(s); failed {failed}.")
