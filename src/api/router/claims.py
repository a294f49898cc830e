"""Claim history endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from src.api.controller.collectible.collectible_controller import CollectibleController
from src.core.dependencies import get_collectible_controller
from src.core.service.collectible.models import ClaimHistoryEntry, ClaimHistoryStats, RarityTier, SyncResult

router = APIRouter(
    prefix="/claims",
    tags=["claims"],
    responses={
        400: {"description": "Invalid address"},
        503: {"description": "Blockchain unavailable"},
    }
)


@router.post("/{address}/sync", response_model=SyncResult)
async def sync_claims(
    address: str,
    from_block: Optional[int] = Query(None, ge=0),
    controller: CollectibleController = Depends(get_collectible_controller),
):
    """Ingest the user's on-chain claim events. Safe to repeat."""
    return await controller.sync_claims(address, from_block=from_block)


@router.get("/{address}", response_model=List[ClaimHistoryEntry])
async def get_claims(
    address: str,
    category: Optional[str] = None,
    rarity_tier: Optional[RarityTier] = None,
    template_id: Optional[int] = None,
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    reverse: bool = False,
    controller: CollectibleController = Depends(get_collectible_controller),
):
    return await controller.get_claims(
        address,
        category=category,
        rarity_tier=rarity_tier,
        template_id=template_id,
        limit=limit,
        offset=offset,
        reverse=reverse,
    )


@router.get("/{address}/stats", response_model=ClaimHistoryStats)
async def get_claim_stats(
    address: str,
    controller: CollectibleController = Depends(get_collectible_controller),
):
    return await controller.get_claim_stats(address)
