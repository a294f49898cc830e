"""Wallet/signer collaborator used for the duration of one claim submission."""

from typing import Any, Dict, Protocol, runtime_checkable

from eth_account import Account


@runtime_checkable
class Signer(Protocol):
    """Supplies the user's address and a signing function."""

    address: str

    async def sign_transaction(self, transaction: Dict[str, Any]) -> bytes:
        """Return the raw signed transaction. Raise if the user declines."""
        ...


class LocalAccountSigner:
    """Signer backed by a locally held private key (scripts, tests, custodial flows)."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)
        self.address = self._account.address

    async def sign_transaction(self, transaction: Dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(transaction)
        return bytes(signed.raw_transaction)
