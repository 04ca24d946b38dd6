import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any, override

import requests
from django.conf import settings
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from chainvote.exceptions import ChainTxReverted, ChainTxTimeout, RpcUnreachable
from chainvote.ledger.circuit_breaker import (
    is_ledger_availability_error,
    ledger_circuit_open,
    record_ledger_availability_failure,
    reset_ledger_circuit_failures,
)

logger = logging.getLogger(__name__)

# What a node raises when it cannot estimate gas for a transaction.
GAS_ESTIMATION_ERRORS: tuple[type[Exception], ...] = (Web3Exception, ValueError)

_client_lock = threading.Lock()
_shared_client: "LedgerClient | None" = None


class _LedgerTimeoutSession(requests.Session):
    def __init__(self, default_timeout: float) -> None:
        super().__init__()
        self.default_timeout = default_timeout

    @override
    def request(self, method: str, url: str, **kwargs: object) -> requests.Response:
        if "timeout" not in kwargs or kwargs.get("timeout") is None:
            kwargs["timeout"] = self.default_timeout
        return super().request(method, url, **kwargs)


def _build_web3(rpc_url: str, timeout_seconds: float) -> Web3:
    # Retries are ours to decide: reads retry below, writes never do.
    provider = Web3.HTTPProvider(
        rpc_url,
        session=_LedgerTimeoutSession(timeout_seconds),
        exception_retry_configuration=None,
    )
    return Web3(provider)


def _hex(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    text = str(value or "")
    if text and not text.startswith("0x"):
        return f"0x{text}"
    return text


class LedgerClient:
    """Thin JSON-RPC wrapper around the ledger node.

    Reads are idempotent and retried; writes are submitted exactly once and
    callers own their idempotency (see chainvote.ledger.pending).
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        timeout_seconds: float = 10,
        tx_timeout_seconds: float = 120,
        poll_interval_seconds: float = 0.5,
        read_retries: int = 3,
        read_retry_delay_seconds: float = 0.5,
        web3: Web3 | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.tx_timeout_seconds = tx_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.read_retries = max(1, int(read_retries))
        self.read_retry_delay_seconds = read_retry_delay_seconds
        self.web3 = web3 if web3 is not None else _build_web3(rpc_url, timeout_seconds)

    @classmethod
    def from_settings(cls) -> "LedgerClient":
        return cls(
            rpc_url=settings.LEDGER_RPC_URL,
            timeout_seconds=settings.LEDGER_RPC_TIMEOUT_SECONDS,
            tx_timeout_seconds=settings.LEDGER_TX_TIMEOUT_SECONDS,
            poll_interval_seconds=settings.LEDGER_TX_POLL_INTERVAL_SECONDS,
            read_retries=settings.LEDGER_READ_RETRIES,
            read_retry_delay_seconds=settings.LEDGER_READ_RETRY_DELAY_SECONDS,
        )

    def _guarded[T](self, fn: Callable[[Web3], T], *, attempts: int, op: str) -> T:
        if ledger_circuit_open():
            raise RpcUnreachable("Ledger circuit breaker is open; the RPC endpoint recently failed repeatedly.")

        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                result = fn(self.web3)
            except Exception as exc:
                if not is_ledger_availability_error(exc):
                    raise
                record_ledger_availability_failure()
                last_exc = exc
                if attempt < attempts:
                    logger.warning(
                        "Ledger RPC %s failed (attempt %d/%d); retrying",
                        op,
                        attempt,
                        attempts,
                        exc_info=True,
                    )
                    time.sleep(self.read_retry_delay_seconds)
                continue

            reset_ledger_circuit_failures()
            return result

        logger.error("Ledger RPC %s unreachable at %s", op, self.rpc_url, exc_info=last_exc)
        raise RpcUnreachable(f"Ledger RPC endpoint {self.rpc_url} is unreachable.") from last_exc

    def _read[T](self, fn: Callable[[Web3], T], *, op: str) -> T:
        return self._guarded(fn, attempts=self.read_retries, op=op)

    def _write[T](self, fn: Callable[[Web3], T], *, op: str) -> T:
        return self._guarded(fn, attempts=1, op=op)

    # Reads

    def network_id(self) -> int:
        return self._read(lambda w3: int(w3.net.version), op="net_version")

    def code_at(self, address: str) -> bytes:
        checksum = Web3.to_checksum_address(address)
        return self._read(lambda w3: bytes(w3.eth.get_code(checksum)), op="eth_getCode")

    def accounts(self) -> list[str]:
        return self._read(lambda w3: [str(a) for a in w3.eth.accounts], op="eth_accounts")

    def transaction_receipt(self, tx_hash: str) -> Mapping[str, Any] | None:
        def fetch(w3: Web3) -> Mapping[str, Any] | None:
            try:
                return w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return self._read(fetch, op="eth_getTransactionReceipt")

    def call(self, *, address: str, abi: Sequence[Mapping[str, Any]], function: str, args: Sequence[object]) -> Any:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=list(abi))
        return self._read(lambda _w3: contract.functions[function](*args).call(), op=f"eth_call:{function}")

    def encode_call(self, *, abi: Sequence[Mapping[str, Any]], function: str, args: Sequence[object]) -> str:
        contract = self.web3.eth.contract(abi=list(abi))
        return contract.encode_abi(function, args=list(args))

    # Writes

    def estimate_gas(self, tx: Mapping[str, Any]) -> int:
        """Return the node's gas estimate.

        A node that refuses to estimate raises web3's error unchanged (see
        GAS_ESTIMATION_ERRORS); an unreachable node raises RpcUnreachable.
        """
        return self._write(lambda w3: int(w3.eth.estimate_gas(dict(tx))), op="eth_estimateGas")

    def submit(self, tx: Mapping[str, Any], *, sender: str, gas: int) -> str:
        payload = {**dict(tx), "from": Web3.to_checksum_address(sender), "gas": int(gas)}

        def send(w3: Web3) -> str:
            try:
                return _hex(w3.eth.send_transaction(payload))
            except ContractLogicError as exc:
                raise ChainTxReverted(f"The ledger rejected the transaction: {exc}") from exc
            except Web3Exception as exc:
                raise ChainTxReverted(f"The ledger node refused the transaction: {exc}") from exc

        return self._write(send, op="eth_sendTransaction")

    def wait_for_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        def wait(w3: Web3) -> Mapping[str, Any]:
            try:
                return w3.eth.wait_for_transaction_receipt(
                    tx_hash,
                    timeout=self.tx_timeout_seconds,
                    poll_latency=self.poll_interval_seconds,
                )
            except TimeExhausted as exc:
                raise ChainTxTimeout(
                    f"Transaction {tx_hash} was not mined within {self.tx_timeout_seconds}s; "
                    "it may still be mined later."
                ) from exc

        receipt = self._write(wait, op="wait_for_receipt")
        if int(receipt.get("status", 1)) != 1:
            raise ChainTxReverted(f"Transaction {tx_hash} reverted on the ledger.")
        return receipt

    def send(self, tx: Mapping[str, Any], *, sender: str, gas: int) -> Mapping[str, Any]:
        """Submit and block until mined (or ChainTxTimeout)."""
        return self.wait_for_receipt(self.submit(tx, sender=sender, gas=gas))


def receipt_tx_hash(receipt: Mapping[str, Any]) -> str:
    return _hex(receipt.get("transactionHash"))


def receipt_succeeded(receipt: Mapping[str, Any]) -> bool:
    return int(receipt.get("status", 1)) == 1


def get_ledger_client() -> LedgerClient:
    global _shared_client
    with _client_lock:
        if _shared_client is None:
            _shared_client = LedgerClient.from_settings()
        return _shared_client


def reset_ledger_client() -> None:
    """Drop the shared client so the next call rebuilds it from settings."""
    global _shared_client
    with _client_lock:
        _shared_client = None


__all__ = [
    "GAS_ESTIMATION_ERRORS",
    "LedgerClient",
    "get_ledger_client",
    "reset_ledger_client",
    "receipt_tx_hash",
    "receipt_succeeded",
]
