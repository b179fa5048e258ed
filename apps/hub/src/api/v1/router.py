from fastapi import APIRouter, Depends

from config import settings
from mqtt.client import get_mqtt_manager
from services.scheduler import DecisionScheduler
from .decision_router import router as decision_router
from .dependencies import get_decision_scheduler

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(decision_router)


@router.get("/health")
async def health():
    manager = get_mqtt_manager()
    return {
        "status": "ok",
        "version": settings.app_version,
        "mqtt": manager.status_snapshot() if manager is not None else {"connected": False},
    }


@router.get("/info")
async def info(scheduler: DecisionScheduler | None = Depends(get_decision_scheduler)):
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "mode": settings.mode,
        "mqtt_enabled": settings.mqtt_enabled,
        "mqtt_host": settings.mqtt_host,
        "mqtt_port": settings.mqtt_port,
        "decision_enabled": settings.decision_enabled,
        "decision_interval_seconds": settings.decision_interval_seconds,
        "decision_scheduler_running": scheduler.running if scheduler is not None else False,
    }
