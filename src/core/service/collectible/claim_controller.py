"""
Claim transaction controller.

Drives the per-(user, template) state machine:

    idle -> estimating -> idle | error
    idle -> claiming -> success | error

At most one claim per (user, template) is in flight; a second concurrent claim is
rejected before anything is awaited. Writes are never retried automatically.
"""

import asyncio
import inspect
from decimal import Decimal
from collections import Counter
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from web3 import Web3

from src.core.exceptions.base import (
    ClaimInProgressError,
    IneligibleClaimError,
    RpcError,
    WalletNotConnectedError,
    classify_chain_error,
)
from src.core.exceptions.handler import ServiceError, ServiceErrorCode
from src.core.logger.logger import get_logger
from src.core.service.collectible.chain_reader import ChainReader
from src.core.service.collectible.eligibility import EligibilityService
from src.core.service.collectible.history_sync import ClaimHistorySynchronizer
from src.core.service.collectible.models import ClaimReceipt, ClaimSnapshot, ClaimState, GasEstimate
from src.core.service.collectible.price_feed import EthUsdPriceFeed
from src.core.service.collectible.signer import Signer
from src.core.service.collectible.template_registry import TemplateRegistry
from src.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()

ClaimKey = Tuple[str, int]
StateListener = Callable[[ClaimSnapshot], Union[None, Awaitable[None]]]

ALLOWED_TRANSITIONS: Dict[ClaimState, Set[ClaimState]] = {
    ClaimState.IDLE: {ClaimState.ESTIMATING, ClaimState.CLAIMING, ClaimState.ERROR},
    ClaimState.ESTIMATING: {ClaimState.ESTIMATING, ClaimState.IDLE, ClaimState.ERROR, ClaimState.CLAIMING},
    ClaimState.CLAIMING: {ClaimState.SUCCESS, ClaimState.ERROR, ClaimState.IDLE},
    ClaimState.SUCCESS: {ClaimState.IDLE, ClaimState.ESTIMATING, ClaimState.CLAIMING, ClaimState.ERROR},
    ClaimState.ERROR: {ClaimState.IDLE, ClaimState.ESTIMATING, ClaimState.CLAIMING, ClaimState.ERROR},
}


class InvalidTransitionError(RuntimeError):
    pass


class ClaimController:
    """Estimate, submit, confirm and reconcile collectible claims"""

    def __init__(
        self,
        chain_reader: ChainReader,
        eligibility: EligibilityService,
        registry: TemplateRegistry,
        synchronizer: Optional[ClaimHistorySynchronizer] = None,
        price_feed: Optional[EthUsdPriceFeed] = None,
        estimate_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        metrics=None,
    ):
        self.chain_reader = chain_reader
        self.eligibility = eligibility
        self.registry = registry
        self.synchronizer = synchronizer
        self.price_feed = price_feed
        self.estimate_timeout = estimate_timeout or settings.GAS_ESTIMATE_TIMEOUT_SECONDS
        self.poll_interval = poll_interval
        self.metrics = metrics

        self._states: Dict[ClaimKey, ClaimSnapshot] = {}
        self._in_flight: Set[ClaimKey] = set()
        self._estimates: Counter = Counter()
        self._watch_tasks: Dict[ClaimKey, asyncio.Task] = {}
        self._listeners = []

    @staticmethod
    def _key(user_address: str, template_id: int) -> ClaimKey:
        return user_address.lower(), template_id

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    def get_state(self, template_id: int, user_address: str) -> ClaimSnapshot:
        key = self._key(user_address, template_id)
        return self._states.get(key) or ClaimSnapshot(user_address=key[0], template_id=template_id)

    def is_claiming(self, template_id: int, user_address: str) -> bool:
        return self._key(user_address, template_id) in self._in_flight

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with the new snapshot on every transition. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _transition(self, key: ClaimKey, state: ClaimState, **changes) -> ClaimSnapshot:
        current = self._states.get(key) or ClaimSnapshot(user_address=key[0], template_id=key[1])
        if state not in ALLOWED_TRANSITIONS[current.state]:
            raise InvalidTransitionError(f"Cannot move claim from {current.state.value} to {state.value}")

        snapshot = current.model_copy(update={"state": state, **changes})
        logger.debug(
            "Claim state changed",
            extra={"user_address": key[0], "template_id": key[1], "from": current.state.value, "to": state.value}
        )
        return await self._publish(key, snapshot)

    async def _update(self, key: ClaimKey, **changes) -> ClaimSnapshot:
        """Change snapshot fields without a state transition."""
        return await self._publish(key, self._states[key].model_copy(update=changes))

    async def _publish(self, key: ClaimKey, snapshot: ClaimSnapshot) -> ClaimSnapshot:
        self._states[key] = snapshot
        for listener in list(self._listeners):
            try:
                result = listener(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Claim state listener failed", extra={"error": str(e)}, exc_info=True)
        return snapshot

    async def _fail(self, key: ClaimKey, error: ServiceError) -> None:
        await self._transition(
            key,
            ClaimState.ERROR,
            error=error,
            error_code=error.code,
            error_message=error.message,
        )

    # ------------------------------------------------------------------
    # Gas estimation
    # ------------------------------------------------------------------

    async def estimate_gas(
        self,
        template_id: int,
        user_address: Optional[str],
        timeout: Optional[float] = None,
    ) -> GasEstimate:
        """
        Estimate the claim's gas cost for ``user_address``.

        A failure or timeout leaves the pair in ``error`` with the cause recorded and is
        re-raised; it does not block a later claim.
        """
        if not user_address:
            raise WalletNotConnectedError()
        user = Web3.to_checksum_address(user_address)
        key = self._key(user, template_id)
        if key in self._in_flight:
            raise ClaimInProgressError(template_id, user)

        timeout = timeout or self.estimate_timeout
        self._estimates[key] += 1
        await self._transition(key, ClaimState.ESTIMATING, error=None, error_code=None, error_message=None)
        try:
            estimate = await asyncio.wait_for(
                self.chain_reader.estimate_claim_gas(template_id, user, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.CancelledError:
            await self._finish_estimate(key, ClaimState.IDLE)
            raise
        except asyncio.TimeoutError as e:
            error = RpcError(message="Gas estimation timed out. Please try again.", code=ServiceErrorCode.TIMEOUT)
            await self._finish_estimate(key, ClaimState.ERROR, error)
            raise error from e
        except ServiceError as e:
            await self._finish_estimate(key, ClaimState.ERROR, e)
            raise
        except Exception as e:
            error = classify_chain_error(e, default_message="Failed to estimate gas")
            await self._finish_estimate(key, ClaimState.ERROR, error)
            raise error from e

        if self.price_feed is not None:
            usd = await self.price_feed.get_eth_usd()
            if usd is not None:
                estimate = estimate.model_copy(update={"cost_usd": round(float(Decimal(estimate.cost_eth) * Decimal(str(usd))), 4)})

        await self._finish_estimate(key, ClaimState.IDLE, gas_estimate=estimate)
        return estimate

    async def _finish_estimate(
        self,
        key: ClaimKey,
        state: ClaimState,
        error: Optional[ServiceError] = None,
        gas_estimate: Optional[GasEstimate] = None,
    ) -> None:
        if self.metrics is not None:
            self.metrics.record_gas_estimate(error is None and state == ClaimState.IDLE)
        remaining = self._estimates[key] - 1
        if remaining > 0:
            # The last concurrent estimate to finish settles the state
            self._estimates[key] = remaining
            return
        self._estimates.pop(key, None)
        # A claim started meanwhile owns the state now
        if self.get_state(key[1], key[0]).state != ClaimState.ESTIMATING:
            return
        if error is not None:
            await self._fail(key, error)
        elif gas_estimate is not None:
            await self._transition(key, state, gas_estimate=gas_estimate)
        else:
            await self._transition(key, state)

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(self, template_id: int, signer: Optional[Signer]) -> ClaimReceipt:
        """
        Claim one unit of ``template_id`` for the signer.

        Eligibility is re-checked against a fresh template read and a live claim flag
        before anything is submitted. On confirmation the registry entry is invalidated
        and the claim event is ingested into history right away.

        Raises:
            WalletNotConnectedError: no signer
            ClaimInProgressError: a claim for the same pair is already running
            IneligibleClaimError: the user cannot claim now; nothing was submitted
            TransactionRejectedError / TransactionFailedError / RpcError: submission or confirmation failed
            asyncio.CancelledError: confirmation watching was stopped; the transaction stays submitted
        """
        if signer is None or not getattr(signer, "address", None):
            raise WalletNotConnectedError()
        user = Web3.to_checksum_address(signer.address)
        key = self._key(user, template_id)
        if key in self._in_flight:
            if self.metrics is not None:
                self.metrics.record_claim_outcome(False, ServiceErrorCode.CLAIM_IN_PROGRESS)
            raise ClaimInProgressError(template_id, user)
        self._in_flight.add(key)

        try:
            if self.metrics is not None:
                self.metrics.record_claim_attempt()
            receipt = await self._run_claim(key, template_id, user, signer)
        except ServiceError as e:
            if self.metrics is not None:
                self.metrics.record_claim_outcome(False, e.code)
            raise
        finally:
            self._in_flight.discard(key)

        if self.metrics is not None:
            self.metrics.record_claim_outcome(True)
        return receipt

    async def _run_claim(self, key: ClaimKey, template_id: int, user: str, signer: Signer) -> ClaimReceipt:
        try:
            status = await self.eligibility.evaluate(template_id, user, fresh=True)
        except ServiceError as e:
            await self._fail(key, e)
            raise
        if not status.can_claim_now:
            error = IneligibleClaimError(status)
            await self._fail(key, error)
            raise error

        await self._transition(
            key,
            ClaimState.CLAIMING,
            tx_hash=None,
            claimed_id=None,
            error=None,
            error_code=None,
            error_message=None,
        )

        try:
            tx_hash = await self.chain_reader.submit_claim(template_id, signer)
        except asyncio.CancelledError:
            await self._transition(key, ClaimState.IDLE)
            raise
        except ServiceError as e:
            await self._fail(key, e)
            raise
        except Exception as e:
            error = classify_chain_error(e, default_message="Failed to submit claim")
            await self._fail(key, error)
            raise error from e

        await self._update(key, tx_hash=tx_hash)

        watch = asyncio.create_task(self.chain_reader.wait_for_confirmation(tx_hash, self.poll_interval))
        self._watch_tasks[key] = watch
        try:
            receipt = await watch
        except asyncio.CancelledError:
            watch.cancel()
            await self._transition(key, ClaimState.IDLE)
            logger.info(
                "Stopped watching claim confirmation",
                extra={"template_id": template_id, "user_address": user, "tx_hash": tx_hash}
            )
            raise
        except ServiceError as e:
            await self._fail(key, e)
            raise
        except Exception as e:
            error = classify_chain_error(e, default_message="Failed to confirm claim")
            await self._fail(key, error)
            raise error from e
        finally:
            self._watch_tasks.pop(key, None)

        await self._transition(key, ClaimState.SUCCESS, claimed_id=receipt.card_id)
        logger.info(
            "Collectible claimed",
            extra={
                "template_id": template_id,
                "user_address": user,
                "tx_hash": tx_hash,
                "card_id": receipt.card_id,
                "block_number": receipt.block_number,
            }
        )

        await self.registry.invalidate(template_id)
        if self.synchronizer is not None and receipt.event is not None:
            try:
                await self.synchronizer.ingest_event(receipt.event)
            except ServiceError as e:
                logger.warning(
                    "Eager history ingest failed, next sync will pick the claim up",
                    extra={"tx_hash": tx_hash, "error_code": e.code}
                )
        return receipt

    def stop_watching(self, template_id: int, user_address: str) -> bool:
        """Stop waiting for confirmation. The submitted transaction is not affected."""
        task = self._watch_tasks.get(self._key(user_address, template_id))
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def reset(self, template_id: int, user_address: str) -> ClaimSnapshot:
        """Return the pair to ``idle``, clearing the last result. Not allowed mid-claim."""
        key = self._key(user_address, template_id)
        if key in self._in_flight:
            raise ClaimInProgressError(template_id, user_address)
        if self.get_state(template_id, user_address).state == ClaimState.IDLE:
            self._states.pop(key, None)
            return self.get_state(template_id, user_address)
        snapshot = await self._transition(
            key,
            ClaimState.IDLE,
            tx_hash=None,
            claimed_id=None,
            gas_estimate=None,
            error=None,
            error_code=None,
            error_message=None,
        )
        self._states.pop(key, None)
        return snapshot
