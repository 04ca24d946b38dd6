import logging
import threading
import time
from collections.abc import Mapping, Sequence
from typing import Any, NamedTuple

from django.conf import settings
from django.db import IntegrityError
from django.utils import timezone

from chainvote.exceptions import ArtifactIncomplete, ChainTxReverted, ChainTxTimeout, ChainVoteError, RpcUnreachable
from chainvote.ledger.artifacts import ArtifactSource, JsonFileArtifactSource, first_available_artifact
from chainvote.ledger.client import GAS_ESTIMATION_ERRORS, LedgerClient, get_ledger_client, receipt_tx_hash
from chainvote.ledger.deployment_store import (
    ContractDeploymentStore,
    DeploymentRecord,
    adopted,
    deployment_store_for,
)
from chainvote.ledger.pending import (
    clear_marker,
    deploy_key,
    get_marker,
    open_marker,
    reconcile_marker,
    record_submission,
)
from chainvote.ledger.signers import SignerProvider, signer_provider_for
from chainvote.models import PendingChainOperation

logger = logging.getLogger(__name__)

MIN_GAS = 300_000
MAX_GAS = 8_000_000
DEFAULT_GAS = 3_000_000

_registry_lock = threading.Lock()
_shared_registry: "ContractRegistry | None" = None


def clamp_gas(estimate: int | None) -> int:
    if not estimate:
        return DEFAULT_GAS
    return min(MAX_GAS, max(MIN_GAS, int(estimate)))


def _log_deployment(event: str, record: DeploymentRecord, **fields: object) -> None:
    logger.info(
        "%s address=%s network_id=%s source=%s",
        event,
        record.address,
        record.network_id,
        record.source,
        extra={
            "event": event,
            "component": "ledger",
            "outcome": "success",
            "address": record.address,
            "network_id": record.network_id,
            **fields,
        },
    )


class _DeploymentClaim(NamedTuple):
    marker: PendingChainOperation
    bytecode: str
    abi: list[dict[str, Any]]
    deployer: str
    gas: int


def _record_from_receipt(
    receipt: Mapping[str, Any],
    *,
    abi: Sequence[Mapping[str, Any]],
    network_id: int,
    rpc: str,
) -> DeploymentRecord:
    address = receipt.get("contractAddress")
    if not address:
        raise ChainTxReverted("The deployment receipt carries no contract address.")
    return DeploymentRecord(
        address=str(address),
        abi=[dict(entry) for entry in abi],
        network_id=int(network_id),
        tx_hash=receipt_tx_hash(receipt),
        rpc=rpc,
        deployed_at=timezone.now(),
    )


class ContractRegistry:
    """Finds, adopts or deploys the voting contract for the connected network.

    ``ensure_deployed`` is safe to call from many threads and processes: the
    first caller does the work, later callers observe its result.
    """

    def __init__(
        self,
        *,
        client: LedgerClient,
        store: ContractDeploymentStore,
        artifact_sources: Sequence[ArtifactSource],
        signer_provider: SignerProvider,
        rpc_url: str = "",
    ) -> None:
        self.client = client
        self.store = store
        self.artifact_sources = list(artifact_sources)
        self.signer_provider = signer_provider
        self.rpc_url = rpc_url or getattr(client, "rpc_url", "")
        self._lock = threading.Lock()
        self._live: DeploymentRecord | None = None

    @classmethod
    def from_settings(cls, *, client: LedgerClient | None = None) -> "ContractRegistry":
        client = client or get_ledger_client()
        return cls(
            client=client,
            store=deployment_store_for(
                settings.LEDGER_DEPLOYMENT_STORE,
                file_path=settings.LEDGER_DEPLOYMENT_FILE,
            ),
            artifact_sources=[JsonFileArtifactSource(p) for p in settings.LEDGER_ARTIFACT_SOURCES],
            signer_provider=signer_provider_for(client, settings.LEDGER_DEPLOYER_ADDRESS),
            rpc_url=settings.LEDGER_RPC_URL,
        )

    def _has_code(self, address: str) -> bool:
        return len(self.client.code_at(address)) > 0

    def live_contract(self) -> DeploymentRecord:
        """Return the contract this process already verified, verifying it on first use."""
        if self._live is not None:
            return self._live
        return self.ensure_deployed()

    def signer(self) -> str:
        return self.signer_provider.signer()

    def ensure_deployed(self) -> DeploymentRecord:
        with self._lock:
            network_id = self.client.network_id()
            record = self._ensure_deployed(network_id)
            self._live = record
            return record

    def _ensure_deployed(self, network_id: int) -> DeploymentRecord:
        # Callers that find another caller's deployment not yet acknowledged by
        # the node poll until it is recorded, mined, or its marker goes stale.
        poll = settings.LEDGER_TX_POLL_INTERVAL_SECONDS
        deadline = time.monotonic() + settings.LEDGER_TX_TIMEOUT_SECONDS + poll
        while True:
            outcome = self._resolve_or_claim(network_id)
            if isinstance(outcome, DeploymentRecord):
                return outcome
            if isinstance(outcome, PendingChainOperation):
                return self._await_inflight_deployment(outcome)
            if outcome is not None:
                break
            if time.monotonic() >= deadline:
                raise ChainTxTimeout(
                    f"A contract deployment on network {network_id} is still in progress; retry shortly."
                )
            logger.info("Waiting for another caller's deployment on network %s", network_id)
            time.sleep(poll)

        # The store lock is released while the transaction is mined so the
        # marker is durable; concurrent callers wait on the marker.
        claim = outcome
        logger.info("Deploying contract from %s to network %s (gas=%d)", claim.deployer, network_id, claim.gas)
        receipt = self._submit_deployment(claim.marker, {"data": claim.bytecode}, sender=claim.deployer, gas=claim.gas)

        with self.store.lock(network_id):
            record = self.store.save(
                _record_from_receipt(receipt, abi=claim.abi, network_id=network_id, rpc=self.rpc_url)
            )
            clear_marker(claim.marker.idempotency_key)
        _log_deployment("chainvote.ledger.contract.deployed", record, tx_hash=record.tx_hash)
        return record

    def _resolve_or_claim(
        self, network_id: int
    ) -> DeploymentRecord | PendingChainOperation | _DeploymentClaim | None:
        """Return a usable record, a submitted marker to await, a claim to deploy,
        or None while another caller is submitting.

        Nothing here waits on the chain; the store lock is held throughout.
        """
        with self.store.lock(network_id):
            existing = self.store.live(network_id)
            if existing is not None:
                if self._has_code(existing.address):
                    self.store.mark_verified(existing)
                    logger.debug("Using previously deployed contract at %s", existing.address)
                    return existing
                logger.warning(
                    "Saved contract %s has no code on network %s; looking for a replacement",
                    existing.address,
                    network_id,
                )

            marker = get_marker(deploy_key(network_id))
            if marker is not None:
                if marker.tx_hash:
                    return marker
                if not self._drop_if_stale(marker):
                    return None

            artifact = first_available_artifact(self.artifact_sources)
            artifact_address = artifact.address_for_network(network_id)
            if artifact_address:
                if self._has_code(artifact_address):
                    record = self.store.save(
                        adopted(
                            DeploymentRecord(
                                address=artifact_address,
                                abi=artifact.abi,
                                network_id=network_id,
                                rpc=self.rpc_url,
                            )
                        )
                    )
                    _log_deployment("chainvote.ledger.contract.adopted", record, artifact=artifact.origin)
                    return record
                logger.info(
                    "Artifact lists %s for network %s but the chain has no code there; deploying anew",
                    artifact_address,
                    network_id,
                )

            if not artifact.deployable:
                raise ArtifactIncomplete(
                    f"Contract artifact {artifact.origin or ''} has an ABI but no bytecode; cannot deploy."
                )

            deployer = self.signer()
            tx = {"from": deployer, "data": artifact.bytecode}
            try:
                gas = clamp_gas(self.client.estimate_gas(tx))
            except GAS_ESTIMATION_ERRORS as exc:
                logger.info("Gas estimation for deployment failed (%s); using %d", exc, DEFAULT_GAS)
                gas = DEFAULT_GAS

            try:
                marker = open_marker(
                    operation=PendingChainOperation.Operation.deploy,
                    key=deploy_key(network_id),
                    network_id=network_id,
                    payload={"abi": artifact.abi, "rpc": self.rpc_url, "deployer": deployer, "gas": gas},
                )
            except IntegrityError:
                # Backends without row locks: another caller claimed it first.
                return None
        return _DeploymentClaim(marker=marker, bytecode=artifact.bytecode, abi=artifact.abi, deployer=deployer, gas=gas)

    def _submit_deployment(
        self,
        marker: PendingChainOperation,
        tx: Mapping[str, Any],
        *,
        sender: str,
        gas: int,
    ) -> Mapping[str, Any]:
        try:
            tx_hash = self.client.submit(tx, sender=sender, gas=gas)
        except RpcUnreachable:
            # Unknown whether the node accepted it; the marker ages out.
            raise
        except ChainVoteError:
            clear_marker(marker.idempotency_key)
            raise

        record_submission(marker, tx_hash)
        try:
            return self.client.wait_for_receipt(tx_hash)
        except ChainTxReverted:
            clear_marker(marker.idempotency_key)
            logger.error("Contract deployment %s reverted", tx_hash)
            raise
        except ChainTxTimeout:
            logger.warning("Contract deployment %s not mined yet; it will be reconciled", tx_hash)
            raise

    def _await_inflight_deployment(self, marker: PendingChainOperation) -> DeploymentRecord:
        # Called without the store lock so clearing a reverted marker commits.
        logger.info("Waiting for in-flight deployment %s", marker.tx_hash)
        try:
            receipt = self.client.wait_for_receipt(marker.tx_hash)
        except ChainTxReverted:
            clear_marker(marker.idempotency_key)
            logger.error("Contract deployment %s reverted", marker.tx_hash)
            raise
        with self.store.lock(int(marker.network_id or 0)):
            return complete_pending_deployment(marker, receipt, store=self.store)

    def _drop_if_stale(self, marker: PendingChainOperation) -> bool:
        return reconcile_marker(marker, client=self.client) == "dropped"


def complete_pending_deployment(
    marker: PendingChainOperation,
    receipt: Mapping[str, Any],
    *,
    store: ContractDeploymentStore | None = None,
) -> DeploymentRecord:
    if store is None:
        store = deployment_store_for(settings.LEDGER_DEPLOYMENT_STORE, file_path=settings.LEDGER_DEPLOYMENT_FILE)

    payload = marker.payload or {}
    record = store.save(
        _record_from_receipt(
            receipt,
            abi=payload.get("abi") or [],
            network_id=int(marker.network_id or 0),
            rpc=str(payload.get("rpc") or ""),
        )
    )
    clear_marker(marker.idempotency_key)
    _log_deployment("chainvote.ledger.contract.reconciled", record, tx_hash=record.tx_hash)
    return record


def get_contract_registry() -> ContractRegistry:
    global _shared_registry
    with _registry_lock:
        if _shared_registry is None:
            _shared_registry = ContractRegistry.from_settings()
        return _shared_registry


def reset_contract_registry() -> None:
    global _shared_registry
    with _registry_lock:
        _shared_registry = None
