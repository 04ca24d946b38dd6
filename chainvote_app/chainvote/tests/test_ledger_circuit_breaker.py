from unittest.mock import MagicMock, patch

import requests
from django.core.cache import cache
from django.test import TestCase
from web3.exceptions import TimeExhausted

from chainvote.exceptions import ChainTxTimeout, RpcUnreachable
from chainvote.ledger.circuit_breaker import ledger_circuit_open
from chainvote.ledger.client import LedgerClient

ADDRESS = "0x" + "ab" * 20


def _client(web3: MagicMock, *, read_retries: int = 1) -> LedgerClient:
    return LedgerClient(
        rpc_url="http://ledger.test:8545",
        read_retries=read_retries,
        read_retry_delay_seconds=0,
        web3=web3,
    )


class LedgerCircuitBreakerTests(TestCase):
    def setUp(self) -> None:
        cache.clear()

    def tearDown(self) -> None:
        cache.clear()

    def test_circuit_opens_after_three_availability_failures(self) -> None:
        web3 = MagicMock()
        web3.eth.estimate_gas.side_effect = requests.exceptions.ConnectionError()
        client = _client(web3)

        for _ in range(3):
            with self.assertRaises(RpcUnreachable):
                client.estimate_gas({"to": ADDRESS})

        self.assertTrue(ledger_circuit_open())

        with self.assertRaises(RpcUnreachable):
            client.code_at(ADDRESS)
        web3.eth.get_code.assert_not_called()

    def test_circuit_resets_after_success(self) -> None:
        web3 = MagicMock()
        client = _client(web3)

        web3.eth.get_code.side_effect = requests.exceptions.Timeout()
        with self.assertRaises(RpcUnreachable):
            client.code_at(ADDRESS)

        web3.eth.get_code.side_effect = None
        web3.eth.get_code.return_value = b"\x60\x80"
        self.assertEqual(client.code_at(ADDRESS), b"\x60\x80")

        web3.eth.get_code.side_effect = requests.exceptions.Timeout()
        for _ in range(2):
            with self.assertRaises(RpcUnreachable):
                client.code_at(ADDRESS)
        self.assertFalse(ledger_circuit_open())

        with self.assertRaises(RpcUnreachable):
            client.code_at(ADDRESS)
        self.assertTrue(ledger_circuit_open())

    def test_receipt_timeout_does_not_count_as_unavailable(self) -> None:
        web3 = MagicMock()
        web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")
        client = _client(web3)

        for _ in range(4):
            with self.assertRaises(ChainTxTimeout):
                client.wait_for_receipt("0x" + "1" * 64)

        self.assertFalse(ledger_circuit_open())

    def test_transition_log_contains_structured_fields(self) -> None:
        web3 = MagicMock()
        web3.eth.get_code.side_effect = requests.exceptions.ConnectionError("refused")
        client = _client(web3, read_retries=3)

        with (
            patch("chainvote.ledger.client.time"),
            patch("chainvote.ledger.circuit_breaker.logger.warning") as warning_mock,
        ):
            with self.assertRaises(RpcUnreachable):
                client.code_at(ADDRESS)

        transition_call = None
        for call in warning_mock.call_args_list:
            message = str(call.args[0]) if call.args else ""
            if "chainvote.ledger.circuit_breaker.transition" in message:
                transition_call = call
                break

        self.assertIsNotNone(transition_call)
        assert transition_call is not None
        extra = transition_call.kwargs.get("extra", {})

        self.assertEqual(extra.get("event"), "chainvote.ledger.circuit_breaker.transition")
        self.assertEqual(extra.get("component"), "ledger")
        self.assertEqual(extra.get("from_state"), "closed")
        self.assertEqual(extra.get("to_state"), "open")
        self.assertEqual(extra.get("outcome"), "transition")
        self.assertEqual(extra.get("failure_count"), 3)
