"""
Input validation utilities for API endpoints.
"""

import re

from web3 import Web3

from src.core.exceptions.handler import ServiceError, ServiceErrorCode

_EVM_ADDRESS = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


class AddressValidator:
    """Validators for blockchain addresses."""

    @staticmethod
    def validate_evm_address(address: str) -> bool:
        """Validate EVM (Ethereum) address format, including the checksum when mixed-case."""
        if not address or not _EVM_ADDRESS.match(address):
            return False

        body = address[2:] if address.startswith("0x") else address
        if body.islower() or body.isupper():
            return True
        return Web3.is_checksum_address("0x" + body)

    @classmethod
    def require_evm_address(cls, address: str, field: str = "address") -> str:
        """Return the checksummed address or raise INVALID_ADDRESS."""
        if not cls.validate_evm_address(address):
            raise ServiceError(
                code=ServiceErrorCode.INVALID_ADDRESS,
                message="Invalid EVM address format",
                status_code=400,
                details={"field": field, "value": address},
            )
        return Web3.to_checksum_address(address if address.startswith("0x") else "0x" + address)
