import datetime
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.utils import timezone

from chainvote.models import AdminAction, Candidate, ContractDeployment, ElectionStatusEntry
from chainvote.tests.fakes import FakeLedgerClient, create_election, make_registry


class InitLedgerCommandTests(TestCase):
    def test_prints_contract_address(self) -> None:
        ledger = FakeLedgerClient()
        registry = make_registry(ledger)
        stdout = StringIO()

        with patch("chainvote.management.commands.init_ledger.get_contract_registry", return_value=registry):
            call_command("init_ledger", stdout=stdout)

        address = ContractDeployment.objects.get(is_live=True).address
        self.assertIn(f"Initialization complete. Contract address: {address}", stdout.getvalue())

    def test_second_run_reuses_the_contract(self) -> None:
        ledger = FakeLedgerClient()

        with patch(
            "chainvote.management.commands.init_ledger.get_contract_registry",
            side_effect=lambda: make_registry(ledger),
        ):
            call_command("init_ledger", stdout=StringIO())
            call_command("init_ledger", "--skip-reconcile", stdout=StringIO())

        self.assertEqual(len(ledger.deployments()), 1)

    def test_failure_raises_command_error_with_error_kind(self) -> None:
        ledger = FakeLedgerClient(accounts=())

        with (
            patch(
                "chainvote.management.commands.init_ledger.get_contract_registry",
                return_value=make_registry(ledger),
            ),
            self.assertRaises(CommandError) as ctx,
        ):
            call_command("init_ledger", stdout=StringIO(), stderr=StringIO())

        self.assertIn("Ledger init failed: NoSignerAvailable", str(ctx.exception))
        self.assertFalse(ContractDeployment.objects.exists())


class AdvanceElectionsCommandTests(TestCase):
    def setUp(self) -> None:
        now = timezone.now()
        self.past = now - datetime.timedelta(hours=1)
        self.future = now + datetime.timedelta(hours=1)

    def test_opens_due_elections_and_closes_ended_ones(self) -> None:
        due = create_election(locked=True, candidates=[("Ada", 0)], starts_at=self.past, ends_at=self.future)
        unlocked = create_election(candidates=[("Ada", 0)], starts_at=self.past)
        empty = create_election(locked=True, starts_at=self.past)
        ended = create_election(status="open", ends_at=self.past)
        running = create_election(status="open", ends_at=self.future)
        stdout = StringIO()

        call_command("advance_elections", stdout=stdout)

        self.assertIn("Opened 1 election(s); closed 1 election(s); failed 0.", stdout.getvalue())
        for election, expected in (
            (due, "open"),
            (unlocked, "setup"),
            (empty, "setup"),
            (ended, "closed"),
            (running, "open"),
        ):
            election.refresh_from_db()
            self.assertEqual(election.status, expected)

        entry = ElectionStatusEntry.objects.get(election=due)
        self.assertEqual(entry.actor, "scheduler")
        action = AdminAction.objects.get(election=ended)
        self.assertTrue(action.payload["automatic"])
        self.assertEqual(action.outcome, "succeeded")

    def test_dry_run_changes_nothing(self) -> None:
        due = create_election(locked=True, candidates=[("Ada", 0)], starts_at=self.past)
        stdout = StringIO()

        call_command("advance_elections", "--dry-run", stdout=stdout)

        self.assertIn("[dry-run] Would open 1 election(s) and close 0 election(s).", stdout.getvalue())
        due.refresh_from_db()
        self.assertEqual(due.status, "setup")
        self.assertFalse(AdminAction.objects.exists())


class SyncElectionTalliesCommandTests(TestCase):
    def test_syncs_selected_elections(self) -> None:
        ledger = FakeLedgerClient()
        registry = make_registry(ledger)
        election = create_election(status="open", candidates=[("Ada", 0)])
        other = create_election(status="open", candidates=[("Grace", 0)])
        ada = Candidate.objects.get(election=election)
        ledger.call_results[("getCandidate", (election.pk, ada.pk))] = 9
        stdout = StringIO()

        with patch("chainvote.elections_tally.get_contract_registry", return_value=registry):
            call_command("sync_election_tallies", "--election", str(election.pk), stdout=stdout)

        self.assertIn("Synced 1 election(s); updated 1 candidate(s); failed 0.", stdout.getvalue())
        election.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(election.total_votes, 9)
        self.assertEqual(other.total_votes, 0)

    def test_stops_when_ledger_is_unreachable(self) -> None:
        ledger = FakeLedgerClient()
        registry = make_registry(ledger)
        registry.ensure_deployed()
        ledger.unreachable = True
        create_election(status="open", candidates=[("Ada", 0)])
        create_election(status="closed", candidates=[("Grace", 0)])
        stdout = StringIO()
        stderr = StringIO()

        with patch("chainvote.elections_tally.get_contract_registry", return_value=registry):
            call_command("sync_election_tallies", stdout=stdout, stderr=stderr)

        self.assertIn("Synced 0 election(s); updated 0 candidate(s); failed 1.", stdout.getvalue())
        self.assertIn("Ledger unreachable; stopping", stderr.getvalue())
