import logging
from typing import Protocol

from web3 import Web3

from chainvote.exceptions import NoSignerAvailable
from chainvote.ledger.client import LedgerClient

logger = logging.getLogger(__name__)


class SignerProvider(Protocol):
    def signer(self) -> str:
        """Return the address that deploys and finalizes, or raise NoSignerAvailable."""
        ...


class FirstAccountSignerProvider:
    """Use the first account the node reports as unlocked."""

    def __init__(self, client: LedgerClient) -> None:
        self.client = client

    def signer(self) -> str:
        accounts = self.client.accounts()
        if not accounts:
            raise NoSignerAvailable("The ledger node reports no accounts to sign with.")
        return accounts[0]


class ConfiguredSignerProvider:
    """Use an explicitly configured address, which must be one of the node's accounts."""

    def __init__(self, client: LedgerClient, address: str) -> None:
        self.client = client
        self.address = address

    def signer(self) -> str:
        if not Web3.is_address(self.address):
            raise NoSignerAvailable("LEDGER_DEPLOYER_ADDRESS is not a valid address.")

        wanted = Web3.to_checksum_address(self.address)
        accounts = {Web3.to_checksum_address(a) for a in self.client.accounts()}
        if wanted not in accounts:
            logger.error("Configured deployer %s is not an account on the ledger node", wanted)
            raise NoSignerAvailable("The configured deployer account is not available on the ledger node.")
        return wanted


def signer_provider_for(client: LedgerClient, address: str = "") -> SignerProvider:
    if address.strip():
        return ConfiguredSignerProvider(client, address.strip())
    return FirstAccountSignerProvider(client)
