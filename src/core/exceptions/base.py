"""
Error taxonomy for the collectible claim engine.

Every failure that crosses a component boundary is one of these classes, so callers
branch on type and show ``message`` (always human readable) rather than raw provider text.
"""

import asyncio
from typing import Any, Dict, Optional, TYPE_CHECKING

from web3.exceptions import ContractLogicError, TimeExhausted

from src.core.exceptions.handler import ServiceError, ServiceErrorCode

if TYPE_CHECKING:
    from src.core.service.collectible.models import ClaimStatus


class TemplateNotFoundError(ServiceError):
    """Requested template id does not exist on-chain (zero-address issuer)."""

    def __init__(self, template_id: int, message: Optional[str] = None):
        super().__init__(
            code=ServiceErrorCode.TEMPLATE_NOT_FOUND,
            message=message or f"Collectible template {template_id} not found",
            status_code=404,
            details={"template_id": template_id},
        )
        self.template_id = template_id


class RpcError(ServiceError):
    """Transient read/transport failure talking to the JSON-RPC provider."""

    def __init__(
        self,
        message: str = "Blockchain network request failed. Please try again.",
        code: str = ServiceErrorCode.RPC_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, status_code=503, details=details)


class TransactionRejectedError(ServiceError):
    """The user declined to sign the transaction."""

    def __init__(self, message: str = "Transaction was rejected.", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ServiceErrorCode.USER_REJECTED,
            message=message,
            status_code=400,
            details=details,
        )


class TransactionFailedError(ServiceError):
    """Submitted transaction reverted or could not be confirmed."""

    def __init__(
        self,
        message: str = "Transaction failed.",
        revert_reason: Optional[str] = None,
        tx_hash: Optional[str] = None,
        code: str = ServiceErrorCode.TRANSACTION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if revert_reason:
            details["revert_reason"] = revert_reason
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(code=code, message=message, status_code=422, details=details)
        self.revert_reason = revert_reason
        self.tx_hash = tx_hash


class IneligibleClaimError(ServiceError):
    """A claim was attempted while ``can_claim_now`` is false."""

    def __init__(self, status: "ClaimStatus"):
        super().__init__(
            code=ServiceErrorCode.INELIGIBLE_CLAIM,
            message=f"Cannot claim this collectible: {status.reason}",
            status_code=409,
            details={"template_id": status.template_id, "reason": status.reason},
        )
        self.status = status


class ClaimInProgressError(ServiceError):
    """A claim for the same (user, template) pair is already in flight."""

    def __init__(self, template_id: int, user_address: str):
        super().__init__(
            code=ServiceErrorCode.CLAIM_IN_PROGRESS,
            message="A claim for this collectible is already in progress",
            status_code=409,
            details={"template_id": template_id, "user_address": user_address},
        )


class WalletNotConnectedError(ServiceError):
    """No signer identity is available for a write-path operation."""

    def __init__(self, message: str = "Please connect your wallet to claim collectibles"):
        super().__init__(
            code=ServiceErrorCode.WALLET_NOT_CONNECTED,
            message=message,
            status_code=401,
        )


class ListenerGapError(ServiceError):
    """The claim event subscription dropped; events since ``from_block`` may be missing."""

    def __init__(self, from_block: int, cause: Optional[BaseException] = None):
        super().__init__(
            code=ServiceErrorCode.LISTENER_GAP,
            message="Claim event subscription interrupted",
            status_code=503,
            details={"from_block": from_block, "cause": str(cause) if cause else None},
        )
        self.from_block = from_block


# Custom errors raised by the collectible contract, mapped to UI copy
REVERT_MESSAGES = {
    "CollectibleNotFound": "Collectible not found",
    "CollectibleNotActive": "Collectible is not active",
    "CollectiblePaused": "Collectible is currently paused",
    "ClaimPeriodNotStarted": "Claiming has not started yet",
    "ClaimPeriodEnded": "Claiming period has ended",
    "MaxSupplyReached": "Maximum supply has been reached",
    "AlreadyClaimed": "You have already claimed this collectible",
    "NotEligible": "You are not eligible to claim this collectible",
}

_REJECTION_MARKERS = ("user rejected", "user denied", "rejected by user", "action_rejected")
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")
_NONCE_MARKERS = ("nonce too low", "nonce too high", "replacement transaction")


def _revert_name(text: str) -> Optional[str]:
    for name in REVERT_MESSAGES:
        if name in text:
            return name
    return None


def classify_chain_error(exc: BaseException, default_message: str = "Blockchain request failed") -> ServiceError:
    """
    Map a raw provider/web3 exception onto the error taxonomy.

    Args:
        exc: Exception raised by the provider, contract call or signer
        default_message: Message used when nothing more specific applies

    Returns:
        A ServiceError subclass with a human-readable message; the raw provider
        text is kept in ``details["provider_error"]``.
    """
    if isinstance(exc, ServiceError):
        return exc

    raw = str(exc)
    lowered = raw.lower()
    details = {"provider_error": raw[:500], "error_type": type(exc).__name__}

    if any(marker in lowered for marker in _REJECTION_MARKERS):
        return TransactionRejectedError(details=details)

    if isinstance(exc, ContractLogicError) or "execution reverted" in lowered:
        name = _revert_name(raw)
        if name == "CollectibleNotFound":
            return TemplateNotFoundError(template_id=-1, message=REVERT_MESSAGES[name])
        message = REVERT_MESSAGES[name] if name else "Transaction reverted by the contract"
        reason = getattr(exc, "message", None) or raw
        return TransactionFailedError(message=message, revert_reason=reason, details=details)

    if isinstance(exc, TimeExhausted):
        return TransactionFailedError(
            message="Transaction was not confirmed in time",
            code=ServiceErrorCode.TIMEOUT,
            details=details,
        )

    if "insufficient funds" in lowered:
        return TransactionFailedError(
            message="Insufficient funds to complete this transaction.",
            code=ServiceErrorCode.INSUFFICIENT_FUNDS,
            details=details,
        )

    if any(marker in lowered for marker in _NONCE_MARKERS):
        return TransactionFailedError(
            message="Transaction nonce conflict. Please wait a moment and try again.",
            code=ServiceErrorCode.NONCE_ERROR,
            details=details,
        )

    if isinstance(exc, asyncio.TimeoutError):
        return RpcError(message="Blockchain request timed out.", code=ServiceErrorCode.TIMEOUT, details=details)

    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RpcError(
            message="Too many requests to the blockchain node. Please slow down.",
            code=ServiceErrorCode.RATE_LIMIT_EXCEEDED,
            details=details,
        )

    return RpcError(message=f"{default_message}. Please try again.", details=details)
