"""Collectible discovery, ranking and eligibility endpoints."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from src.api.controller.collectible.collectible_controller import CollectibleController
from src.core.dependencies import get_collectible_controller
from src.core.service.collectible.models import ClaimStatus, GasEstimate, Template

router = APIRouter(
    prefix="/collectibles",
    tags=["collectibles"],
    responses={
        404: {"description": "Template not found"},
        503: {"description": "Blockchain unavailable"},
    }
)


@router.get("", response_model=List[Template])
async def list_collectibles(
    force_refresh: bool = Query(False, description="Bypass the template cache"),
    controller: CollectibleController = Depends(get_collectible_controller),
):
    """All known collectible templates, served from the registry cache."""
    return await controller.list_templates(force_refresh=force_refresh)


@router.get("/trending")
async def trending_collectibles(
    limit: int = Query(10, ge=1, le=100),
    controller: CollectibleController = Depends(get_collectible_controller),
) -> List[Dict[str, Any]]:
    return await controller.get_trending(limit)


@router.get("/expiring-soon", response_model=List[Template])
async def expiring_soon_collectibles(
    limit: int = Query(10, ge=1, le=100),
    controller: CollectibleController = Depends(get_collectible_controller),
):
    return await controller.get_expiring_soon(limit)


@router.get("/low-supply", response_model=List[Template])
async def low_supply_collectibles(
    limit: int = Query(10, ge=1, le=100),
    controller: CollectibleController = Depends(get_collectible_controller),
):
    return await controller.get_low_supply(limit)


@router.get("/{template_id}", response_model=Template)
async def get_collectible(
    template_id: int,
    controller: CollectibleController = Depends(get_collectible_controller),
):
    return await controller.get_template(template_id)


@router.get("/{template_id}/eligibility", response_model=ClaimStatus)
async def check_eligibility(
    template_id: int,
    address: str = Query(..., description="Claimer wallet address"),
    controller: CollectibleController = Depends(get_collectible_controller),
):
    """Live claim verdict for one user: on-chain claim flag plus the ordered eligibility rules."""
    return await controller.get_eligibility(template_id, address)


@router.get("/{template_id}/gas-estimate", response_model=GasEstimate)
async def estimate_claim_gas(
    template_id: int,
    address: str = Query(..., description="Claimer wallet address"),
    controller: CollectibleController = Depends(get_collectible_controller),
):
    return await controller.estimate_gas(template_id, address)
