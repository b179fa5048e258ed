from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from services.decision import DecisionEngine
from services.strategies import (
    ConfigError,
    MoistureDurations,
    StrategyDefinition,
    StrategyInUseError,
    StrategyNotFoundError,
    StrategyPersistenceError,
    StrategyStore,
)

from .dependencies import get_decision_engine, get_strategy_store

logger = logging.getLogger("greenhouse.hub.api.decision")
router = APIRouter(prefix="/decision", tags=["decision"])


class DurationsModel(BaseModel):
    thirsty: int = Field(..., ge=0, description="Seconds to water a thirsty plant")
    moist: int = Field(..., ge=0, description="Seconds to water a moist plant")
    overwatered: int = Field(..., ge=0, description="Seconds to water an overwatered plant")
    unknown: int = Field(..., ge=0, description="Seconds to water a plant in an unknown state")

    model_config = ConfigDict(extra="forbid")


class StrategyRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=64)
    name: str = Field(default="", max_length=120)
    description: str = Field(default="", max_length=500)
    durations: DurationsModel

    model_config = ConfigDict(extra="forbid")


class StrategyDetails(BaseModel):
    name: str
    description: str
    durations: DurationsModel
    isActive: bool


class StrategyListResponse(BaseModel):
    strategies: dict[str, StrategyDetails]
    activeStrategy: str


def _details(definition: StrategyDefinition, *, active: bool) -> StrategyDetails:
    return StrategyDetails(
        name=definition.name,
        description=definition.description,
        durations=DurationsModel(**definition.durations.model_dump()),
        isActive=active,
    )


@router.get("/strategies", response_model=StrategyListResponse)
async def list_strategies(store: StrategyStore = Depends(get_strategy_store)) -> StrategyListResponse:
    config = store.snapshot()
    return StrategyListResponse(
        strategies={
            key: _details(definition, active=key == config.active_strategy)
            for key, definition in config.strategies.items()
        },
        activeStrategy=config.active_strategy,
    )


@router.get("/strategies/{strategy_key}", response_model=StrategyDetails)
async def get_strategy(strategy_key: str, store: StrategyStore = Depends(get_strategy_store)) -> StrategyDetails:
    try:
        definition = store.get(strategy_key)
    except StrategyNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _details(definition, active=strategy_key == store.active_name)


@router.post("/strategies")
async def upsert_strategy(
    payload: StrategyRequest,
    store: StrategyStore = Depends(get_strategy_store),
) -> dict[str, str]:
    logger.info("Adding/updating strategy %s", payload.key)
    try:
        definition = StrategyDefinition(
            name=payload.name,
            description=payload.description,
            durations=MoistureDurations(**payload.durations.model_dump()),
        )
        store.upsert(payload.key, definition)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StrategyPersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"message": "Strategy added/updated successfully", "key": payload.key.strip()}


@router.delete("/strategies/{strategy_key}")
async def delete_strategy(strategy_key: str, store: StrategyStore = Depends(get_strategy_store)) -> dict[str, str]:
    logger.info("Deleting strategy %s", strategy_key)
    try:
        store.remove(strategy_key)
    except StrategyNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (StrategyInUseError, ConfigError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StrategyPersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"message": "Strategy deleted successfully", "key": strategy_key}


@router.post("/strategy/{strategy_name}")
async def set_active_strategy(strategy_name: str, store: StrategyStore = Depends(get_strategy_store)) -> dict[str, Any]:
    logger.info("Setting watering strategy to %s", strategy_name)
    try:
        store.set_active(strategy_name)
    except StrategyNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "Invalid strategy name",
                "provided": strategy_name,
                "available": sorted(store.list_strategies()),
            },
        ) from exc
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StrategyPersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"message": "Watering strategy set successfully", "strategy": strategy_name}


@router.post("/reload")
async def reload_strategies(store: StrategyStore = Depends(get_strategy_store)) -> dict[str, str]:
    logger.info("Reloading watering strategies configuration")
    try:
        config = store.load()
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"message": "Configuration reloaded successfully", "activeStrategy": config.active_strategy}


@router.get("/plant-strategies")
async def plant_strategies(
    store: StrategyStore = Depends(get_strategy_store),
    engine: DecisionEngine = Depends(get_decision_engine),
) -> dict[str, Any]:
    decisions = await engine.preview()
    definition = store.active_definition()
    details: dict[str, Any] = {"name": "", "description": "", "durations": None}
    if definition is not None:
        details = {
            "name": definition.name,
            "description": definition.description,
            "durations": definition.durations.model_dump(),
        }
    return {
        "activeStrategy": store.active_name,
        "strategyDetails": details,
        "plantStrategies": [decision.to_payload() for decision in decisions],
    }


@router.post("/run")
async def run_cycle(engine: DecisionEngine = Depends(get_decision_engine)) -> dict[str, Any]:
    report = await engine.run_cycle()
    return report.to_payload()


@router.get("/last-cycle")
async def last_cycle(engine: DecisionEngine = Depends(get_decision_engine)) -> dict[str, Any]:
    report = engine.last_report
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No decision cycle has run yet")
    return report.to_payload()
