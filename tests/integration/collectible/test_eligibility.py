"""Integration tests for eligibility evaluation."""

from unittest.mock import AsyncMock

import pytest

from conftest import NOW, USER, make_template
from src.core.exceptions.base import TemplateNotFoundError
from src.core.service.collectible.eligibility import (
    ChainMembershipProvider,
    EligibilityService,
    evaluate,
)
from src.core.service.collectible.models import EligibilityType


class TestEvaluateRules:
    """Pure rule evaluation, first failing rule wins."""

    def test_open_template_is_claimable(self):
        template = make_template(max_supply=10, current_supply=3)

        status = evaluate(template, has_claimed=False, now=NOW)

        assert status.can_claim_now is True
        assert status.is_eligible is True
        assert status.reason is None
        assert status.remaining_supply == 7

    def test_claim_window_open(self):
        """Started an hour ago, ends in an hour, supply left."""
        template = make_template(
            start_time=NOW - 3600, end_time=NOW + 3600, max_supply=10, current_supply=5
        )

        status = evaluate(template, has_claimed=False, now=NOW)

        assert status.can_claim_now is True
        assert status.reason is None
        assert status.start_time == NOW - 3600
        assert status.end_time == NOW + 3600

    def test_sold_out(self):
        template = make_template(max_supply=10, current_supply=10)

        status = evaluate(template, has_claimed=False, now=NOW)

        assert status.can_claim_now is False
        assert status.reason == "Sold out"
        assert status.remaining_supply == 0

    def test_already_claimed_wins_over_everything(self):
        template = make_template(is_paused=True, max_supply=1, current_supply=1, end_time=NOW - 1)

        status = evaluate(template, has_claimed=True, now=NOW)

        assert status.has_claimed is True
        assert status.reason == "Already claimed"
        assert status.can_claim_now is False

    def test_paused_reported_before_expired(self):
        template = make_template(is_paused=True, end_time=NOW - 60)

        status = evaluate(template, has_claimed=False, now=NOW)

        assert status.reason == "Paused"

    def test_inactive_template(self):
        template = make_template(is_active=False, max_supply=10, current_supply=1)

        status = evaluate(template, has_claimed=False, now=NOW)

        assert status.can_claim_now is False
        assert status.reason == "Not active"

    def test_paused_reported_before_inactive(self):
        template = make_template(is_paused=True, is_active=False, start_time=NOW + 60)

        assert evaluate(template, has_claimed=False, now=NOW).reason == "Paused"

    def test_not_started(self):
        template = make_template(start_time=NOW + 60)

        assert evaluate(template, has_claimed=False, now=NOW).reason == "Not started"

    def test_expired(self):
        template = make_template(start_time=NOW - 7200, end_time=NOW - 60)

        assert evaluate(template, has_claimed=False, now=NOW).reason == "Expired"

    def test_window_bounds_are_inclusive(self):
        template = make_template(start_time=NOW, end_time=NOW)

        assert evaluate(template, has_claimed=False, now=NOW).can_claim_now is True

    def test_expired_reported_before_sold_out(self):
        template = make_template(end_time=NOW - 1, max_supply=5, current_supply=5)

        assert evaluate(template, has_claimed=False, now=NOW).reason == "Expired"

    def test_unbounded_supply(self):
        template = make_template(max_supply=0, current_supply=10_000)

        status = evaluate(template, has_claimed=False, now=NOW)

        assert status.can_claim_now is True
        assert status.remaining_supply is None

    @pytest.mark.parametrize("eligibility_type,reason", [
        (EligibilityType.WHITELIST, "Not whitelisted"),
        (EligibilityType.TOKEN_HOLDER, "Token balance required"),
        (EligibilityType.PROFILE_REQUIRED, "Profile required"),
    ])
    def test_membership_failure(self, eligibility_type, reason):
        template = make_template(eligibility_type=eligibility_type)

        status = evaluate(template, has_claimed=False, now=NOW, is_member=False)

        assert status.is_eligible is False
        assert status.can_claim_now is False
        assert status.reason == reason

    def test_membership_ignored_for_open_templates(self):
        template = make_template(eligibility_type=EligibilityType.OPEN)

        assert evaluate(template, has_claimed=False, now=NOW, is_member=False).can_claim_now is True

    def test_member_can_claim_whitelisted_template(self):
        template = make_template(eligibility_type=EligibilityType.WHITELIST)

        assert evaluate(template, has_claimed=False, now=NOW, is_member=True).can_claim_now is True

    def test_deterministic_for_same_inputs(self):
        template = make_template(start_time=NOW - 10, end_time=NOW + 10, max_supply=3, current_supply=2)

        first = evaluate(template, has_claimed=False, now=NOW)
        second = evaluate(template, has_claimed=False, now=NOW)

        assert first == second

    def test_reason_present_exactly_when_blocked(self):
        cases = [
            (make_template(), False),
            (make_template(), True),
            (make_template(is_paused=True), False),
            (make_template(start_time=NOW + 1), False),
            (make_template(end_time=NOW - 1), False),
            (make_template(max_supply=1, current_supply=1), False),
        ]
        for template, has_claimed in cases:
            status = evaluate(template, has_claimed=has_claimed, now=NOW)
            assert (status.reason is None) == status.can_claim_now


@pytest.mark.asyncio
class TestEligibilityService:
    """Eligibility with live claim flag and membership lookups."""

    async def test_evaluate_by_id_uses_registry(self, eligibility, chain_reader):
        chain_reader.add_template(make_template(1, max_supply=5, current_supply=1))

        status = await eligibility.evaluate(1, USER, now=NOW)

        assert status.can_claim_now is True
        assert status.remaining_supply == 4

    async def test_live_claim_flag_is_consulted(self, eligibility, chain_reader):
        chain_reader.add_template(make_template(1))
        chain_reader.claimed.add((1, USER.lower()))

        status = await eligibility.evaluate(1, USER, now=NOW)

        assert status.has_claimed is True
        assert status.reason == "Already claimed"

    async def test_unknown_template(self, eligibility):
        with pytest.raises(TemplateNotFoundError):
            await eligibility.evaluate(42, USER, now=NOW)

    async def test_static_membership(self, eligibility, chain_reader, membership):
        template = chain_reader.add_template(make_template(1, eligibility_type=EligibilityType.WHITELIST))

        denied = await eligibility.evaluate(template, USER, now=NOW)
        membership.add(1, USER)
        allowed = await eligibility.evaluate(template, USER, now=NOW)

        assert denied.reason == "Not whitelisted"
        assert allowed.can_claim_now is True

    async def test_fresh_rereads_template(self, eligibility, chain_reader, registry):
        chain_reader.add_template(make_template(1, max_supply=2, current_supply=1))
        await registry.get_all()
        chain_reader.add_template(make_template(1, max_supply=2, current_supply=2))

        cached = await eligibility.evaluate(1, USER, now=NOW)
        fresh = await eligibility.evaluate(1, USER, now=NOW, fresh=True)

        assert cached.can_claim_now is True
        assert fresh.reason == "Sold out"

    async def test_chain_membership_only_for_gated_templates(self, registry, chain_reader):
        provider = ChainMembershipProvider(chain_reader)
        service = EligibilityService(registry, chain_reader, provider)
        chain_reader.is_eligible_to_claim = AsyncMock(return_value=True)

        open_template = chain_reader.add_template(make_template(1))
        gated = chain_reader.add_template(make_template(2, eligibility_type=EligibilityType.TOKEN_HOLDER))

        await service.evaluate(open_template, USER, now=NOW)
        chain_reader.is_eligible_to_claim.assert_not_awaited()

        status = await service.evaluate(gated, USER, now=NOW)
        chain_reader.is_eligible_to_claim.assert_awaited_once_with(2, USER)
        assert status.can_claim_now is True
