import datetime
import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from chainvote.models import ContractDeployment, ContractDeploymentLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeploymentRecord:
    address: str
    abi: list[dict[str, Any]]
    network_id: int
    tx_hash: str = ""
    rpc: str = ""
    deployed_at: datetime.datetime = field(default_factory=timezone.now)
    source: str = ContractDeployment.Source.deployed


class ContractDeploymentStore(Protocol):
    def live(self, network_id: int) -> DeploymentRecord | None: ...

    def save(self, record: DeploymentRecord) -> DeploymentRecord:
        """Persist record as the live deployment for its network, superseding any other."""
        ...

    def mark_verified(self, record: DeploymentRecord) -> None: ...

    def lock(self, network_id: int) -> Any:
        """Context manager serializing deployment work for a network across processes."""
        ...


def _same_address(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


class DatabaseContractDeploymentStore:
    def live(self, network_id: int) -> DeploymentRecord | None:
        row = ContractDeployment.objects.filter(network_id=network_id, is_live=True).first()
        if row is None:
            return None
        return DeploymentRecord(
            address=row.address,
            abi=list(row.abi or []),
            network_id=row.network_id,
            tx_hash=row.tx_hash,
            rpc=row.rpc,
            deployed_at=row.deployed_at,
            source=row.source,
        )

    def save(self, record: DeploymentRecord) -> DeploymentRecord:
        now = timezone.now()
        with transaction.atomic():
            current = (
                ContractDeployment.objects.select_for_update()
                .filter(network_id=record.network_id, is_live=True)
                .first()
            )
            if current is not None and _same_address(current.address, record.address):
                # Another worker already recorded this exact deployment.
                return self.live(record.network_id) or record

            if current is not None:
                current.is_live = False
                current.superseded_at = now
                current.save(update_fields=["is_live", "superseded_at"])
                logger.info(
                    "Superseded contract deployment %s on network %s",
                    current.address,
                    current.network_id,
                )

            ContractDeployment.objects.create(
                address=record.address,
                abi=record.abi,
                network_id=record.network_id,
                tx_hash=record.tx_hash,
                rpc=record.rpc,
                source=record.source,
                deployed_at=record.deployed_at,
                verified_at=now,
                is_live=True,
            )
        return record

    def mark_verified(self, record: DeploymentRecord) -> None:
        ContractDeployment.objects.filter(
            network_id=record.network_id,
            is_live=True,
            address=record.address,
        ).update(verified_at=timezone.now())

    @contextmanager
    def lock(self, network_id: int) -> Iterator[None]:
        ContractDeploymentLock.objects.get_or_create(network_id=network_id)
        with transaction.atomic():
            ContractDeploymentLock.objects.select_for_update().get(network_id=network_id)
            yield


class JsonFileContractDeploymentStore:
    """Single-record ``contract-info.json`` store.

    The file holds exactly ``address, abi, networkId, txHash, deployedAt, rpc``.
    A record for another network is treated as absent; saving replaces it.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.lock")

    def _read(self) -> dict[str, Any] | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable deployment file %s", self.path)
            return None
        return data if isinstance(data, dict) else None

    def live(self, network_id: int) -> DeploymentRecord | None:
        data = self._read()
        if not data or not data.get("address"):
            return None
        try:
            saved_network = int(data.get("networkId"))
        except (TypeError, ValueError):
            return None
        if saved_network != int(network_id):
            return None

        deployed_at = parse_datetime(str(data.get("deployedAt") or "")) or timezone.now()
        return DeploymentRecord(
            address=str(data["address"]),
            abi=list(data.get("abi") or []),
            network_id=saved_network,
            tx_hash=str(data.get("txHash") or ""),
            rpc=str(data.get("rpc") or ""),
            deployed_at=deployed_at,
        )

    def save(self, record: DeploymentRecord) -> DeploymentRecord:
        payload = {
            "address": record.address,
            "abi": record.abi,
            "networkId": record.network_id,
            "txHash": record.tx_hash or None,
            "deployedAt": record.deployed_at.isoformat(),
            "rpc": record.rpc,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write-then-rename so readers never see a half-written file.
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info("Saved deployed contract info to %s", self.path)
        return record

    def mark_verified(self, record: DeploymentRecord) -> None:
        # The file format has no verification timestamp.
        return None

    @contextmanager
    def lock(self, network_id: int) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def adopted(record: DeploymentRecord) -> DeploymentRecord:
    return replace(record, source=ContractDeployment.Source.adopted)


def deployment_store_for(kind: str, *, file_path: str | Path) -> ContractDeploymentStore:
    normalized = (kind or "database").strip().lower()
    if normalized == "file":
        return JsonFileContractDeploymentStore(file_path)
    if normalized == "database":
        return DatabaseContractDeploymentStore()
    raise ValueError(f"Unknown LEDGER_DEPLOYMENT_STORE {kind!r}; expected 'database' or 'file'.")
