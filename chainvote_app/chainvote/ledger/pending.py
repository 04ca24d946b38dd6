"""Markers for chain writes whose outcome is not yet known.

A marker is committed before a transaction is submitted and removed once its
receipt has been confirmed. A marker that outlives its process is resolved
against the chain by ``reconcile_pending_chain_operations`` instead of being
resubmitted.
"""

import datetime
import logging
from collections.abc import Mapping
from typing import Any

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from chainvote.ledger.client import LedgerClient, get_ledger_client, receipt_succeeded
from chainvote.models import Election, PendingChainOperation

logger = logging.getLogger(__name__)


def deploy_key(network_id: int) -> str:
    return f"deploy:{network_id}"


def finalize_key(election_id: int) -> str:
    return f"{election_id}:finalize"


def get_marker(key: str) -> PendingChainOperation | None:
    return PendingChainOperation.objects.filter(idempotency_key=key).first()


def open_marker(
    *,
    operation: str,
    key: str,
    network_id: int | None = None,
    election: Election | None = None,
    payload: Mapping[str, Any] | None = None,
) -> PendingChainOperation:
    with transaction.atomic():
        marker = PendingChainOperation.objects.create(
            operation=operation,
            idempotency_key=key,
            network_id=network_id,
            election=election,
            payload=dict(payload or {}),
        )
    logger.info("Opened pending chain operation %s", key)
    return marker


def record_submission(marker: PendingChainOperation, tx_hash: str) -> None:
    marker.tx_hash = tx_hash
    marker.submitted_at = timezone.now()
    with transaction.atomic():
        marker.save(update_fields=["tx_hash", "submitted_at"])


def clear_marker(key: str) -> None:
    PendingChainOperation.objects.filter(idempotency_key=key).delete()


def _is_stale(marker: PendingChainOperation, *, now: datetime.datetime) -> bool:
    age = now - marker.created_at
    return age > datetime.timedelta(seconds=settings.LEDGER_TX_TIMEOUT_SECONDS)


def reconcile_marker(
    marker: PendingChainOperation,
    *,
    client: LedgerClient,
    now: datetime.datetime | None = None,
) -> str:
    """Resolve one marker. Returns one of completed, failed, pending, dropped."""
    now = now or timezone.now()

    if not marker.tx_hash:
        # The node never acknowledged a submission for this marker.
        if _is_stale(marker, now=now):
            logger.warning(
                "Dropping pending chain operation %s: no transaction was acknowledged",
                marker.idempotency_key,
            )
            clear_marker(marker.idempotency_key)
            return "dropped"
        return "pending"

    receipt = client.transaction_receipt(marker.tx_hash)
    if receipt is None:
        logger.info("Chain operation %s (%s) is still pending", marker.idempotency_key, marker.tx_hash)
        return "pending"

    if not receipt_succeeded(receipt):
        logger.warning(
            "Chain operation %s (%s) reverted; clearing marker",
            marker.idempotency_key,
            marker.tx_hash,
        )
        clear_marker(marker.idempotency_key)
        return "failed"

    if marker.operation == PendingChainOperation.Operation.deploy:
        from chainvote.ledger.registry import complete_pending_deployment

        complete_pending_deployment(marker, receipt)
    elif marker.operation == PendingChainOperation.Operation.finalize:
        from chainvote.elections_tally import complete_pending_finalize

        complete_pending_finalize(marker, receipt)
    else:
        logger.error("Unknown pending chain operation %r; leaving it in place", marker.operation)
        return "pending"

    return "completed"


def reconcile_pending_chain_operations(*, client: LedgerClient | None = None) -> dict[str, int]:
    client = client or get_ledger_client()
    summary = {"completed": 0, "failed": 0, "pending": 0, "dropped": 0}
    now = timezone.now()

    for marker in PendingChainOperation.objects.order_by("created_at", "id"):
        outcome = reconcile_marker(marker, client=client, now=now)
        summary[outcome] += 1

    if any(summary.values()):
        logger.info(
            "Reconciled pending chain operations: completed=%d failed=%d pending=%d dropped=%d",
            summary["completed"],
            summary["failed"],
            summary["pending"],
            summary["dropped"],
        )
    return summary
