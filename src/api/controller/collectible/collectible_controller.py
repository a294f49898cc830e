"""Collectible controller: HTTP-facing operations over the engine."""

from typing import Any, Dict, List, Optional

from src.api.utils.validators import AddressValidator
from src.core.logger.logger import logger
from src.core.service.collectible.models import (
    ClaimHistoryEntry,
    ClaimHistoryFilters,
    ClaimHistoryStats,
    ClaimStatus,
    GasEstimate,
    RarityTier,
    SyncResult,
    Template,
)


class CollectibleController:
    """Controller for collectible discovery, eligibility and claim history."""

    def __init__(self, engine):
        self.engine = engine

    async def list_templates(self, force_refresh: bool = False) -> List[Template]:
        return await self.engine.registry.get_all(force_refresh=force_refresh)

    async def get_template(self, template_id: int) -> Template:
        return await self.engine.registry.get_template(template_id)

    async def get_trending(self, limit: int) -> List[Dict[str, Any]]:
        """
        Trending templates with their scores.

        Recent claim counts come from the stored history; templates with no stored
        claims in the window fall back to lifetime velocity.
        """
        templates = await self.engine.registry.get_all()
        claim_counts = await self.engine.synchronizer.get_recent_claim_counts()
        ranked = self.engine.trending.get_trending_collectibles(
            templates, limit=limit, claim_counts=claim_counts
        )
        scores = self.engine.trending.calculate_trending_scores(ranked, claim_counts)
        return [
            {"template": template, "trending_score": scores[template.template_id]}
            for template in ranked
        ]

    async def get_expiring_soon(self, limit: int) -> List[Template]:
        templates = await self.engine.registry.get_all()
        return self.engine.trending.get_expiring_soon_collectibles(templates, limit=limit)

    async def get_low_supply(self, limit: int) -> List[Template]:
        templates = await self.engine.registry.get_all()
        return self.engine.trending.get_low_supply_collectibles(templates, limit=limit)

    async def get_eligibility(self, template_id: int, address: str) -> ClaimStatus:
        user = AddressValidator.require_evm_address(address)
        return await self.engine.eligibility.evaluate(template_id, user)

    async def estimate_gas(self, template_id: int, address: str) -> GasEstimate:
        user = AddressValidator.require_evm_address(address)
        return await self.engine.controller.estimate_gas(template_id, user)

    async def sync_claims(self, address: str, from_block: Optional[int] = None) -> SyncResult:
        user = AddressValidator.require_evm_address(address)
        logger.info(f"Claim history sync requested for {user}", extra={"from_block": from_block})
        return await self.engine.synchronizer.sync(user, from_block=from_block)

    async def get_claims(
        self,
        address: str,
        category: Optional[str] = None,
        rarity_tier: Optional[RarityTier] = None,
        template_id: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        reverse: bool = False,
    ) -> List[ClaimHistoryEntry]:
        user = AddressValidator.require_evm_address(address)
        filters = ClaimHistoryFilters(category=category, rarity_tier=rarity_tier, template_id=template_id)
        return await self.engine.synchronizer.get_user_claims(
            user, filters=filters, limit=limit, offset=offset, reverse=reverse
        )

    async def get_claim_stats(self, address: str) -> ClaimHistoryStats:
        user = AddressValidator.require_evm_address(address)
        return await self.engine.synchronizer.get_user_claim_stats(user)
