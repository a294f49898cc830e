import json
from fastapi import APIRouter, status, Request
from datetime import datetime
from typing import Dict, Any

from src.core.logger.logger import logger
from src.api.utils.metrics import get_metrics

router = APIRouter()


async def check_chain_health(request: Request) -> Dict[str, Any]:
    """Check the JSON-RPC provider by reading the head block."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return {"status": "unhealthy", "message": "Engine not initialized"}
    try:
        block_number = await engine.chain_reader.get_block_number()
        return {"status": "healthy", "block_number": block_number, "chain_id": engine.chain_reader.chain_id}
    except Exception as e:
        return {"status": "unhealthy", "message": f"RPC check failed: {str(e)}"}


def check_registry_health(request: Request) -> Dict[str, Any]:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return {"status": "unhealthy"}
    refreshed_at = engine.registry.last_refreshed_at
    return {
        "status": "healthy" if refreshed_at else "degraded",
        "last_refreshed_at": datetime.utcfromtimestamp(refreshed_at).isoformat() + "Z" if refreshed_at else None,
    }


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request):
    """
    Health check with chain, template cache, websocket and metrics status.
    """
    chain_health = await check_chain_health(request)
    registry_health = check_registry_health(request)
    metrics_health = get_metrics().get_health_metrics()

    websocket_clients = 0
    if hasattr(request.app.state, 'ws_manager'):
        websocket_clients = request.app.state.ws_manager.get_connection_count()

    services = {
        "chain": chain_health["status"],
        "template_cache": registry_health["status"],
        "metrics": metrics_health["status"],
        "websocket": f"{websocket_clients} clients connected",
    }

    overall_status = "healthy"
    if any(value == "unhealthy" for value in services.values()):
        overall_status = "unhealthy"
    elif any(value == "degraded" for value in services.values()):
        overall_status = "degraded"

    return {
        "status": overall_status,
        "services": services,
        "chain": chain_health,
        "template_cache": registry_health,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


@router.get("/metrics", status_code=status.HTTP_200_OK)
async def get_metrics_endpoint():
    """
    Claim, template cache and history metrics.
    """
    metrics_data = get_metrics().get_metrics_summary()

    logger.info(json.dumps({
        "type": "metrics_request",
        "claim_attempts": metrics_data["claims"]["total_attempts"],
        "success_rate": metrics_data["last_hour"]["success_rate_percent"],
        "cache_hit_rate": metrics_data["template_cache"]["hit_rate_percent"],
        "timestamp": metrics_data["timestamp"]
    }))

    return metrics_data
