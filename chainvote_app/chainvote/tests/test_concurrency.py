import threading
from collections.abc import Mapping
from typing import Any

from django.db import connections
from django.test import TransactionTestCase

from chainvote.elections_tally import finalize_election
from chainvote.exceptions import AlreadyFinalized, ChainVoteError
from chainvote.models import ContractDeployment, Election
from chainvote.tests.fakes import FakeLedgerClient, create_election, make_registry


class _GatedLedger(FakeLedgerClient):
    """Holds finalize submissions until the test releases them."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.gate_finalize = False
        self.submitting = threading.Event()
        self.release = threading.Event()

    def submit(self, tx: Mapping[str, Any], *, sender: str, gas: int) -> str:
        if self.gate_finalize and "to" in tx:
            self.submitting.set()
            self.release.wait(timeout=5)
        return super().submit(tx, sender=sender, gas=gas)


def _run(target, *args: object) -> threading.Thread:
    def wrapper() -> None:
        try:
            target(*args)
        finally:
            connections.close_all()

    thread = threading.Thread(target=wrapper)
    thread.start()
    return thread


class ConcurrentDeploymentTests(TransactionTestCase):
    def test_parallel_callers_share_a_single_deployment(self) -> None:
        ledger = FakeLedgerClient()
        registry = make_registry(ledger)
        barrier = threading.Barrier(2)
        addresses: list[str] = []
        errors: list[Exception] = []

        def ensure() -> None:
            barrier.wait(timeout=5)
            try:
                addresses.append(registry.ensure_deployed().address)
            except Exception as exc:
                errors.append(exc)

        threads = [_run(ensure), _run(ensure)]
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(len(addresses), 2)
        self.assertEqual(len(set(addresses)), 1)
        self.assertEqual(len(ledger.deployments()), 1)
        self.assertEqual(ContractDeployment.objects.filter(is_live=True).count(), 1)


class ConcurrentFinalizeTests(TransactionTestCase):
    def test_second_finalize_does_not_submit_another_transaction(self) -> None:
        ledger = _GatedLedger()
        registry = make_registry(ledger)
        registry.ensure_deployed()
        election = create_election(status="closed", candidates=[("Ada", 2), ("Grace", 1)])
        ledger.gate_finalize = True
        outcomes: dict[str, str] = {}

        def finalize(actor: str) -> None:
            try:
                outcomes[actor] = finalize_election(election=election, actor=actor, registry=registry).status
            except ChainVoteError as exc:
                outcomes[actor] = exc.kind

        first = _run(finalize, "alice")
        self.assertTrue(ledger.submitting.wait(timeout=5))

        # alice's marker is committed and her transaction is being submitted.
        second = _run(finalize, "bob")
        second.join(timeout=10)
        ledger.release.set()
        first.join(timeout=10)

        self.assertEqual(outcomes, {"alice": "finalized", "bob": "ChainTxTimeout"})
        self.assertEqual(len([tx for tx in ledger.submitted if "to" in tx]), 1)
        self.assertEqual(Election.objects.get(pk=election.pk).status, "finalized")

        with self.assertRaises(AlreadyFinalized):
            finalize_election(election=election, actor="bob", registry=registry)
        self.assertEqual(len([tx for tx in ledger.submitted if "to" in tx]), 1)
