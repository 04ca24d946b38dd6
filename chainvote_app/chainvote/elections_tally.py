import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from web3 import Web3

from chainvote.elections_state import apply_transition, locked_election, validate_transition
from chainvote.exceptions import (
    AlreadyFinalized,
    ChainTxReverted,
    ChainTxTimeout,
    ChainVoteError,
    InvalidTransition,
    RpcUnreachable,
)
from chainvote.ledger.client import GAS_ESTIMATION_ERRORS, receipt_tx_hash
from chainvote.ledger.pending import (
    clear_marker,
    finalize_key,
    get_marker,
    open_marker,
    reconcile_marker,
    record_submission,
)
from chainvote.ledger.registry import ContractRegistry, clamp_gas, get_contract_registry
from chainvote.models import Candidate, Election, PendingChainOperation

logger = logging.getLogger(__name__)


def build_tally_snapshot(election: Election) -> dict[str, Any]:
    candidates = [
        {"candidate_id": c.pk, "name": c.name, "seat": c.seat, "votes": int(c.votes)}
        for c in Candidate.objects.filter(election=election).order_by("id")
    ]
    return {
        "election_id": election.pk,
        "candidates": candidates,
        "total_votes": int(election.total_votes),
    }


def tally_results_hash(snapshot: Mapping[str, Any]) -> str:
    """keccak256 over the canonical JSON encoding of a tally snapshot."""
    canonical = json.dumps(snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return Web3.keccak(text=canonical).to_0x_hex()


def _finalize_fields(
    *,
    snapshot: Mapping[str, Any],
    results_hash: str,
    tx_hash: str,
    contract_address: str,
    network_id: int | None,
) -> dict[str, object]:
    return {
        "contract_address": contract_address,
        "chain_network_id": network_id,
        "finalize_tx_hash": tx_hash,
        "finalized_at": timezone.now(),
        "tally_snapshot": dict(snapshot),
        "results_hash": results_hash,
    }


def complete_pending_finalize(marker: PendingChainOperation, receipt: Mapping[str, Any]) -> Election | None:
    """Record a mined finalize transaction against its election and clear the marker."""
    payload = marker.payload or {}
    tx_hash = receipt_tx_hash(receipt) or marker.tx_hash

    with transaction.atomic():
        if marker.election_id is None:
            clear_marker(marker.idempotency_key)
            logger.error("Finalize marker %s has no election; dropping it", marker.idempotency_key)
            return None

        election = locked_election(marker.election_id)
        if election.status == Election.Status.finalized:
            clear_marker(marker.idempotency_key)
            return election

        try:
            validate_transition(election, Election.Status.finalized)
        except InvalidTransition:
            logger.error(
                "Finalize %s was mined but election %s is %s; leaving status untouched",
                tx_hash,
                election.pk,
                election.status,
            )
            clear_marker(marker.idempotency_key)
            return election

        apply_transition(
            election,
            target=Election.Status.finalized,
            actor=str(payload.get("actor") or ""),
            reason=f"tx {tx_hash}",
            extra_fields=_finalize_fields(
                snapshot=payload.get("snapshot") or {},
                results_hash=str(payload.get("results_hash") or ""),
                tx_hash=tx_hash,
                contract_address=str(payload.get("contract_address") or ""),
                network_id=marker.network_id,
            ),
        )
        clear_marker(marker.idempotency_key)

    logger.info(
        "Election %s finalized on the ledger in %s",
        election.pk,
        tx_hash,
        extra={
            "event": "chainvote.election.finalized",
            "component": "elections",
            "outcome": "success",
            "election_id": election.pk,
            "tx_hash": tx_hash,
        },
    )
    return election


def _await_marker(marker: PendingChainOperation, registry: ContractRegistry) -> Election:
    try:
        receipt = registry.client.wait_for_receipt(marker.tx_hash)
    except ChainTxReverted:
        clear_marker(marker.idempotency_key)
        raise
    election = complete_pending_finalize(marker, receipt)
    if election is None:
        raise ChainTxReverted("The pending finalize transaction no longer maps to an election.")
    return election


def _check_finalizable(election: Election) -> None:
    if election.status == Election.Status.finalized:
        raise AlreadyFinalized()
    if election.status != Election.Status.closed:
        raise InvalidTransition(f"Only closed elections can be finalized; this one is {election.status}.")


def finalize_election(*, election: Election, actor: str, registry: ContractRegistry | None = None) -> Election:
    """Anchor a closed election's tally on the ledger exactly once.

    A retry after a timeout resolves the transaction already submitted instead
    of sending another one.
    """
    registry = registry or get_contract_registry()
    client = registry.client
    key = finalize_key(election.pk)

    # Refuse before any chain call; rechecked under the row lock below.
    with transaction.atomic():
        _check_finalizable(locked_election(election.pk))

    # Resolved before the row lock: a first-use deployment must commit its own marker.
    contract = registry.live_contract()
    sender = registry.signer()

    with transaction.atomic():
        locked = locked_election(election.pk)
        _check_finalizable(locked)

        marker = get_marker(key)
        if marker is not None and not marker.tx_hash:
            if reconcile_marker(marker, client=client) != "dropped":
                raise ChainTxTimeout("A finalize for this election is already in progress; retry shortly.")
            marker = None

        if marker is None:
            snapshot = build_tally_snapshot(locked)
            results_hash = tally_results_hash(snapshot)
            data = client.encode_call(
                abi=contract.abi,
                function=settings.LEDGER_FINALIZE_FUNCTION,
                args=[locked.ledger_election_id, Web3.to_bytes(hexstr=results_hash)],
            )
            tx = {"to": Web3.to_checksum_address(contract.address), "data": data}
            try:
                gas = clamp_gas(client.estimate_gas({**tx, "from": sender}))
            except GAS_ESTIMATION_ERRORS as exc:
                logger.info("Gas estimation for finalize of election %s failed (%s)", locked.pk, exc)
                gas = clamp_gas(None)

            try:
                marker = open_marker(
                    operation=PendingChainOperation.Operation.finalize,
                    key=key,
                    network_id=contract.network_id,
                    election=locked,
                    payload={
                        "snapshot": snapshot,
                        "results_hash": results_hash,
                        "contract_address": contract.address,
                        "actor": actor,
                    },
                )
            except IntegrityError as exc:
                # Backends without row locks (SQLite): another finalize opened it first.
                raise ChainTxTimeout("A finalize for this election is already in progress; retry shortly.") from exc
            submission: tuple[dict[str, Any], str, int] | None = (tx, sender, gas)
        else:
            submission = None

    # Row lock released: the marker is committed before anything is sent.
    if submission is None:
        logger.info("Reconciling earlier finalize %s for election %s", marker.tx_hash, election.pk)
        return _await_marker(marker, registry)

    tx, sender, gas = submission
    try:
        tx_hash = client.submit(tx, sender=sender, gas=gas)
    except RpcUnreachable:
        raise
    except ChainVoteError:
        clear_marker(key)
        raise

    record_submission(marker, tx_hash)
    try:
        return _await_marker(marker, registry)
    except ChainTxTimeout:
        logger.warning("Finalize %s for election %s not mined yet; it will be reconciled", tx_hash, election.pk)
        raise


def _votes_from(result: object) -> int:
    if isinstance(result, bool):
        raise ValueError("unexpected boolean candidate result")
    if isinstance(result, int):
        return result
    if isinstance(result, Mapping):
        for key in ("voteCount", "votes"):
            if key in result:
                return int(result[key])
    if isinstance(result, Sequence) and not isinstance(result, (str, bytes)):
        # (id, name, voteCount) style tuples: the count is the last integer.
        for item in reversed(result):
            if isinstance(item, int) and not isinstance(item, bool):
                return item
    raise ValueError(f"Cannot read a vote count from {result!r}")


def sync_vote_counts(*, election: Election, registry: ContractRegistry | None = None) -> tuple[Election, int]:
    """Refresh the off-chain vote cache from the ledger. Returns (election, candidates changed)."""
    if election.status == Election.Status.finalized:
        raise AlreadyFinalized("Finalized elections keep the tally recorded at finalization.")

    registry = registry or get_contract_registry()
    contract = registry.live_contract()

    candidates = list(Candidate.objects.filter(election=election).order_by("id"))
    chain_votes: dict[int, int] = {}
    for candidate in candidates:
        result = registry.client.call(
            address=contract.address,
            abi=contract.abi,
            function=settings.LEDGER_CANDIDATE_FUNCTION,
            args=[election.ledger_election_id, candidate.ledger_candidate_id],
        )
        chain_votes[candidate.pk] = _votes_from(result)

    changed = 0
    with transaction.atomic():
        locked = locked_election(election.pk)
        if locked.status == Election.Status.finalized:
            raise AlreadyFinalized("Finalized elections keep the tally recorded at finalization.")

        for candidate in Candidate.objects.select_for_update().filter(election=locked, pk__in=chain_votes):
            votes = chain_votes[candidate.pk]
            if candidate.votes != votes:
                logger.info(
                    "Election %s candidate %s: %d -> %d votes", locked.pk, candidate.name, candidate.votes, votes
                )
                candidate.votes = votes
                candidate.save(update_fields=["votes"])
                changed += 1

        update_fields = []
        if not locked.contract_address:
            locked.contract_address = contract.address
            locked.chain_network_id = contract.network_id
            update_fields += ["contract_address", "chain_network_id"]
        total = sum(chain_votes.values())
        if locked.total_votes != total:
            locked.total_votes = total
            update_fields.append("total_votes")
        if update_fields:
            locked.save(update_fields=[*update_fields, "updated_at"])

    return locked, changed
