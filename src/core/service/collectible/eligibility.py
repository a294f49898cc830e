"""
Eligibility evaluation.

``evaluate`` is a pure function of (template, has_claimed, now, membership answer).
The rule order is fixed: the first failing rule decides the reason shown to the user.
"""

import time
from typing import Dict, Iterable, Optional, Protocol, Set, Union, runtime_checkable

from web3 import Web3

from src.core.logger.logger import get_logger
from src.core.service.collectible.chain_reader import ChainReader
from src.core.service.collectible.models import ClaimStatus, EligibilityType, Template
from src.core.service.collectible.template_registry import TemplateRegistry

logger = get_logger(__name__)

REASON_ALREADY_CLAIMED = "Already claimed"
REASON_PAUSED = "Paused"
REASON_INACTIVE = "Not active"
REASON_NOT_STARTED = "Not started"
REASON_EXPIRED = "Expired"
REASON_SOLD_OUT = "Sold out"

MEMBERSHIP_REASONS = {
    EligibilityType.WHITELIST: "Not whitelisted",
    EligibilityType.TOKEN_HOLDER: "Token balance required",
    EligibilityType.PROFILE_REQUIRED: "Profile required",
}


@runtime_checkable
class MembershipProvider(Protocol):
    """Answers whether a user satisfies a template's whitelist/token/profile requirement."""

    async def is_member(self, template: Template, user_address: str) -> bool:
        ...


class ChainMembershipProvider:
    """Delegates to the contract's isEligibleToClaim view."""

    def __init__(self, chain_reader: ChainReader):
        self.chain_reader = chain_reader

    async def is_member(self, template: Template, user_address: str) -> bool:
        return await self.chain_reader.is_eligible_to_claim(template.template_id, user_address)


class StaticMembershipProvider:
    """Allow-lists configured in process, keyed by template id."""

    def __init__(self, members: Optional[Dict[int, Iterable[str]]] = None):
        self._members: Dict[int, Set[str]] = {
            template_id: {address.lower() for address in addresses}
            for template_id, addresses in (members or {}).items()
        }

    def add(self, template_id: int, user_address: str) -> None:
        self._members.setdefault(template_id, set()).add(user_address.lower())

    async def is_member(self, template: Template, user_address: str) -> bool:
        return user_address.lower() in self._members.get(template.template_id, set())


def _blocked(template: Template, has_claimed: bool, is_eligible: bool, reason: str) -> ClaimStatus:
    return ClaimStatus(
        template_id=template.template_id,
        has_claimed=has_claimed,
        is_eligible=is_eligible,
        can_claim_now=False,
        reason=reason,
        remaining_supply=template.remaining_supply,
        start_time=template.start_time or None,
        end_time=template.end_time or None,
    )


def evaluate(
    template: Template,
    has_claimed: bool,
    now: int,
    is_member: Optional[bool] = None,
) -> ClaimStatus:
    """
    Claim verdict for one template and user at time ``now`` (unix seconds).

    ``is_member`` is the membership collaborator's answer; it is ignored for Open
    templates and treated as a failed check when missing for the other types.
    """
    if has_claimed:
        return _blocked(template, True, True, REASON_ALREADY_CLAIMED)
    if template.is_paused:
        return _blocked(template, False, True, REASON_PAUSED)
    if not template.is_active:
        return _blocked(template, False, True, REASON_INACTIVE)
    if template.start_time != 0 and now < template.start_time:
        return _blocked(template, False, True, REASON_NOT_STARTED)
    if template.end_time != 0 and now > template.end_time:
        return _blocked(template, False, True, REASON_EXPIRED)
    if template.is_sold_out:
        return _blocked(template, False, True, REASON_SOLD_OUT)
    if template.eligibility_type != EligibilityType.OPEN and not is_member:
        return _blocked(template, False, False, MEMBERSHIP_REASONS[template.eligibility_type])

    return ClaimStatus(
        template_id=template.template_id,
        has_claimed=False,
        is_eligible=True,
        can_claim_now=True,
        remaining_supply=template.remaining_supply,
        start_time=template.start_time or None,
        end_time=template.end_time or None,
    )


class EligibilityService:
    """Wraps the live hasClaimed lookup and membership check around ``evaluate``."""

    def __init__(
        self,
        registry: TemplateRegistry,
        chain_reader: ChainReader,
        membership_provider: Optional[MembershipProvider] = None,
    ):
        self.registry = registry
        self.chain_reader = chain_reader
        self.membership_provider = membership_provider or ChainMembershipProvider(chain_reader)

    async def evaluate(
        self,
        template: Union[Template, int],
        user_address: str,
        now: Optional[int] = None,
        fresh: bool = False,
    ) -> ClaimStatus:
        """
        Claim verdict for ``user_address``.

        Args:
            template: Template snapshot, or an id resolved through the registry
            user_address: Claimer address
            now: Evaluation time, defaults to the wall clock
            fresh: Re-read the template from chain instead of trusting the cache

        Raises:
            TemplateNotFoundError: unknown template id
            RpcError: the claim flag or membership lookup failed
        """
        user = Web3.to_checksum_address(user_address)
        if isinstance(template, int):
            template = await self.registry.get_template(template, fresh=fresh)
        elif fresh:
            template = await self.registry.get_template(template.template_id, fresh=True)

        has_claimed = await self.chain_reader.has_claimed(template.template_id, user)

        is_member = None
        if not has_claimed and template.eligibility_type != EligibilityType.OPEN:
            is_member = await self.membership_provider.is_member(template, user)

        status = evaluate(template, has_claimed, int(now if now is not None else time.time()), is_member)
        logger.debug(
            "Eligibility evaluated",
            extra={
                "template_id": template.template_id,
                "user_address": user,
                "can_claim_now": status.can_claim_now,
                "reason": status.reason,
            }
        )
        return status
