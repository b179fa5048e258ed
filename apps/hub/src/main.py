from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging, time

from config import settings
from api.v1.router import router as v1_router
from mqtt.client import startup as mqtt_startup, shutdown as mqtt_shutdown
from services.actuation import ActuationChannel, MqttActuationChannel
from services.decision import DecisionEngine
from services.scheduler import DecisionScheduler
from services.state_provider import PlantStateProvider, build_state_provider
from services.strategies import ConfigError, StrategyStore

logger = logging.getLogger("greenhouse.hub")
if not logger.handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_app(
    *,
    provider: PlantStateProvider | None = None,
    channel: ActuationChannel | None = None,
    strategy_path: str | None = None,
) -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version)

    store = StrategyStore(strategy_path or settings.strategy_config_path)
    provider = provider or build_state_provider(settings.state_provider_url, timeout=settings.state_provider_timeout)
    channel = channel or MqttActuationChannel(qos=settings.mqtt_qos)
    engine = DecisionEngine(provider, store, channel, dispatch_timeout=settings.dispatch_timeout_seconds)
    scheduler = DecisionScheduler(engine, interval_seconds=settings.decision_interval_seconds)

    app.state.strategy_store = store
    app.state.state_provider = provider
    app.state.decision_engine = engine
    app.state.decision_scheduler = scheduler

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse({"status": "ok", "version": settings.app_version})

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        try:
            store.load()
        except ConfigError as exc:
            # placeholder strategy stays active; it never waters
            logger.warning("Watering strategies unavailable at startup: %s", exc)

        if settings.mqtt_enabled:
            logger.info("MQTT enabled; connecting...")
            await mqtt_startup(settings)
        else:
            logger.info("MQTT disabled (set MQTT_ENABLED=true to enable).")

        if settings.mode != "remote":
            logger.info("Running in %s mode; actuation commands will only be logged.", settings.mode)

        if settings.decision_enabled:
            await scheduler.start()
        else:
            logger.info("Decision loop disabled (set DECISION_ENABLED=true to enable).")

    @app.on_event("shutdown")
    async def _shutdown():
        await scheduler.close()
        await mqtt_shutdown()
        close = getattr(provider, "close", None)
        if close is not None:
            await close()

    return app

app = create_app()
