from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from energy_market.core.dependencies import MarketContainer, get_container

router = APIRouter(tags=["Health"])


async def check_redis_health(container: MarketContainer) -> Dict[str, str]:
    """Check Redis connection health."""
    try:
        await container.redis.ping()
        return {"status": "healthy", "message": "Connected"}
    except Exception as e:
        return {"status": "unhealthy", "message": f"Connection failed: {str(e)}"}


async def check_database_health(container: MarketContainer) -> Dict[str, str]:
    """Check ledger database health."""
    try:
        connected = await container.database.ping()
        return {"status": "healthy" if connected else "unhealthy", "message": "Connected" if connected else "Not connected"}
    except Exception as e:
        return {"status": "unhealthy", "message": f"Connection failed: {str(e)}"}


async def check_settlement_health(container: MarketContainer) -> Dict[str, Any]:
    try:
        return await container.settlement_client.check_health()
    except Exception as e:
        return {"status": "unhealthy", "mode": container.settlement_client.mode.value, "error": str(e)}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(container: MarketContainer = Depends(get_container)):
    """
    Status of every component the marketplace depends on.
    Settlement problems degrade the service; storage problems make it unhealthy.
    """
    redis_health = await check_redis_health(container)
    database_health = await check_database_health(container)
    settlement_health = await check_settlement_health(container)

    services = {
        "redis": redis_health,
        "database": database_health,
        "settlement": settlement_health,
        "ledger_locks": container.lock_manager.stats(),
        "websocket": f"{container.ws_manager.get_connection_count()} clients connected"
    }

    overall_status = "healthy"
    if "unhealthy" in (redis_health["status"], database_health["status"]):
        overall_status = "unhealthy"
    elif settlement_health.get("status") != "healthy":
        overall_status = "degraded"

    return {
        "status": overall_status,
        "services": services,
        "version": container.settings.APP_VERSION,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
