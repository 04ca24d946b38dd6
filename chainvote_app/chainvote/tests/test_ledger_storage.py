import json
import tempfile
from pathlib import Path

from django.test import SimpleTestCase, TestCase

from chainvote.exceptions import ArtifactMissing
from chainvote.ledger.artifacts import JsonFileArtifactSource, first_available_artifact, parse_artifact
from chainvote.ledger.deployment_store import (
    DatabaseContractDeploymentStore,
    DeploymentRecord,
    JsonFileContractDeploymentStore,
    deployment_store_for,
)
from chainvote.models import ContractDeployment
from chainvote.tests.fakes import NETWORK_ID, VOTING_ABI, FakeLedgerClient, make_registry


class ArtifactParsingTests(SimpleTestCase):
    def test_truffle_layout_with_networks(self) -> None:
        artifact = parse_artifact(
            {
                "abi": VOTING_ABI,
                "bytecode": "6080",
                "networks": {"5777": {"address": "0x" + "12" * 20}, "1": {}},
            }
        )

        self.assertEqual(artifact.bytecode, "0x6080")
        self.assertEqual(artifact.address_for_network(5777), "0x" + "12" * 20)
        self.assertIsNone(artifact.address_for_network(1))

    def test_nested_json_layout(self) -> None:
        artifact = parse_artifact({"_json": {"abi": VOTING_ABI, "bytecode": "0x6080"}})
        self.assertEqual(artifact.abi, VOTING_ABI)
        self.assertTrue(artifact.deployable)

    def test_hardhat_object_bytecode(self) -> None:
        artifact = parse_artifact({"abi": VOTING_ABI, "bytecode": {"object": "6080"}})
        self.assertEqual(artifact.bytecode, "0x6080")

    def test_deployed_bytecode_is_last_resort(self) -> None:
        artifact = parse_artifact({"abi": VOTING_ABI, "bytecode": "0x", "deployedBytecode": "0x6081"})
        self.assertEqual(artifact.bytecode, "0x6081")

    def test_abi_only_is_not_deployable(self) -> None:
        artifact = parse_artifact({"abi": VOTING_ABI, "bytecode": "0x"})
        self.assertFalse(artifact.deployable)

    def test_missing_abi_raises(self) -> None:
        with self.assertRaises(ArtifactMissing):
            parse_artifact({"bytecode": "0x6080"})

    def test_first_available_skips_missing_and_unparseable_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            broken = Path(tmp) / "broken.json"
            broken.write_text("{not json", encoding="utf-8")
            good = Path(tmp) / "Voting.json"
            good.write_text(json.dumps({"abi": VOTING_ABI, "bytecode": "0x6080"}), encoding="utf-8")

            artifact = first_available_artifact(
                [
                    JsonFileArtifactSource(Path(tmp) / "absent.json"),
                    JsonFileArtifactSource(broken),
                    JsonFileArtifactSource(good),
                ]
            )

        self.assertEqual(artifact.origin, str(good))

    def test_first_available_raises_when_nothing_loads(self) -> None:
        with self.assertRaises(ArtifactMissing):
            first_available_artifact([JsonFileArtifactSource("/nonexistent/Voting.json")])


class JsonFileStoreTests(TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = Path(self._tmp.name) / "deployed" / "contract-info.json"

    def test_writes_exactly_the_record_keys(self) -> None:
        store = JsonFileContractDeploymentStore(self.path)
        store.save(
            DeploymentRecord(
                address="0x" + "55" * 20,
                abi=VOTING_ABI,
                network_id=NETWORK_ID,
                tx_hash="0xabc",
                rpc="http://ledger.test:8545",
            )
        )

        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(set(data), {"address", "abi", "networkId", "txHash", "deployedAt", "rpc"})
        self.assertEqual(data["networkId"], NETWORK_ID)
        self.assertEqual(data["txHash"], "0xabc")

    def test_record_for_another_network_is_absent(self) -> None:
        store = JsonFileContractDeploymentStore(self.path)
        store.save(DeploymentRecord(address="0x" + "55" * 20, abi=VOTING_ABI, network_id=1))

        self.assertIsNone(store.live(NETWORK_ID))
        self.assertEqual(store.live(1).address, "0x" + "55" * 20)  # type: ignore[union-attr]

    def test_unreadable_file_is_treated_as_absent(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{", encoding="utf-8")

        self.assertIsNone(JsonFileContractDeploymentStore(self.path).live(NETWORK_ID))

    def test_registry_round_trip_through_file_store(self) -> None:
        client = FakeLedgerClient()
        store = JsonFileContractDeploymentStore(self.path)

        first = make_registry(client, store=store).ensure_deployed()
        second = make_registry(client, store=JsonFileContractDeploymentStore(self.path)).ensure_deployed()

        self.assertEqual(first.address, second.address)
        self.assertEqual(len(client.deployments()), 1)
        self.assertTrue(store.lock_path.exists())
        self.assertFalse(ContractDeployment.objects.exists())


class DatabaseStoreTests(TestCase):
    def test_saving_same_address_twice_keeps_one_live_row(self) -> None:
        store = DatabaseContractDeploymentStore()
        record = DeploymentRecord(address="0x" + "66" * 20, abi=VOTING_ABI, network_id=NETWORK_ID)

        store.save(record)
        store.save(record)

        self.assertEqual(ContractDeployment.objects.count(), 1)

    def test_store_factory(self) -> None:
        self.assertIsInstance(deployment_store_for("database", file_path="x"), DatabaseContractDeploymentStore)
        self.assertIsInstance(deployment_store_for("FILE", file_path="x"), JsonFileContractDeploymentStore)
        with self.assertRaises(ValueError):
            deployment_store_for("redis", file_path="x")
