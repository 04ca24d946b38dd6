import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from chainvote.exceptions import ArtifactMissing

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ContractArtifact:
    abi: list[dict[str, Any]]
    # "0x"-prefixed creation bytecode, or "" when the artifact carries none.
    bytecode: str
    # network id (as a string, the way compilers key it) -> deployed address
    networks: dict[str, str] = field(default_factory=dict)
    origin: str = ""

    @property
    def deployable(self) -> bool:
        return bool(self.bytecode) and self.bytecode != "0x"

    def address_for_network(self, network_id: int) -> str | None:
        return self.networks.get(str(network_id)) or None


class ArtifactSource(Protocol):
    def load(self) -> ContractArtifact:
        """Return the compiled contract, or raise ArtifactMissing."""
        ...


def _normalize_bytecode(raw: object) -> str:
    if isinstance(raw, Mapping):
        # Hardhat/solc standard JSON: {"object": "..."}
        raw = raw.get("object")
    text = str(raw or "").strip()
    if not text or text == "0x":
        return ""
    return text if text.startswith("0x") else f"0x{text}"


def _networks_from(raw: object) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    networks: dict[str, str] = {}
    for network_id, entry in raw.items():
        if isinstance(entry, Mapping) and entry.get("address"):
            networks[str(network_id)] = str(entry["address"])
    return networks


def parse_artifact(data: Mapping[str, Any], *, origin: str = "") -> ContractArtifact:
    """Read Truffle, Hardhat and truffle-contract (``_json``) layouts."""
    nested = data.get("_json") if isinstance(data.get("_json"), Mapping) else {}

    abi = data.get("abi") or nested.get("abi")
    if not isinstance(abi, list) or not abi:
        raise ArtifactMissing(f"Contract artifact {origin or '(inline)'} has no ABI.")

    # deployedBytecode is runtime code; only used when nothing else is present.
    bytecode = (
        _normalize_bytecode(data.get("bytecode"))
        or _normalize_bytecode(data.get("deployedBytecode"))
        or _normalize_bytecode(nested.get("bytecode"))
    )
    networks = _networks_from(data.get("networks")) or _networks_from(nested.get("networks"))
    return ContractArtifact(abi=list(abi), bytecode=bytecode, networks=networks, origin=origin)


class JsonFileArtifactSource:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"JsonFileArtifactSource({str(self.path)!r})"

    def load(self) -> ContractArtifact:
        if not self.path.is_file():
            raise ArtifactMissing(f"No contract artifact at {self.path}.")
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not parse contract artifact at %s: %s", self.path, exc)
            raise ArtifactMissing(f"Contract artifact at {self.path} is unreadable.") from exc
        if not isinstance(data, Mapping):
            raise ArtifactMissing(f"Contract artifact at {self.path} is not a JSON object.")
        return parse_artifact(data, origin=str(self.path))


def first_available_artifact(sources: Iterable[ArtifactSource]) -> ContractArtifact:
    """Try sources in order; the first one that loads wins."""
    for source in sources:
        try:
            artifact = source.load()
        except ArtifactMissing as exc:
            logger.debug("Artifact source %r skipped: %s", source, exc)
            continue
        logger.info("Using contract artifact from %s", artifact.origin or repr(source))
        return artifact

    raise ArtifactMissing("No compiled contract artifact with an ABI was found in any configured location.")
