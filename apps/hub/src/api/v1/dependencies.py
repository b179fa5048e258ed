from __future__ import annotations

from fastapi import HTTPException, Request, status

from services.decision import DecisionEngine
from services.scheduler import DecisionScheduler
from services.strategies import StrategyStore


def get_strategy_store(request: Request) -> StrategyStore:
    store = getattr(request.app.state, "strategy_store", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Strategy store not initialised")
    return store


def get_decision_engine(request: Request) -> DecisionEngine:
    engine = getattr(request.app.state, "decision_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Decision engine not initialised")
    return engine


def get_decision_scheduler(request: Request) -> DecisionScheduler | None:
    return getattr(request.app.state, "decision_scheduler", None)
