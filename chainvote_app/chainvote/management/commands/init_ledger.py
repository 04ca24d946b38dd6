from typing import override

from django.core.management.base import BaseCommand, CommandError

from chainvote.exceptions import ChainVoteError
from chainvote.ledger.pending import reconcile_pending_chain_operations
from chainvote.ledger.registry import get_contract_registry


class Command(BaseCommand):
    help = "Find, adopt or deploy the voting contract and print its address."

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--skip-reconcile",
            action="store_true",
            help="Do not resolve pending chain operations first.",
        )

    @override
    def handle(self, *args, **options) -> None:
        skip_reconcile: bool = bool(options.get("skip_reconcile"))

        try:
            registry = get_contract_registry()
            if not skip_reconcile:
                reconcile_pending_chain_operations(client=registry.client)
            record = registry.ensure_deployed()
        except ChainVoteError as exc:
            raise CommandError(f"Ledger init failed: {exc.kind}: {exc.message}") from exc

        self.stdout.write(f"Initialization complete. Contract address: {record.address}")
