from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from services.models import MoistureState, Plant, Pot, Pump

logger = logging.getLogger("greenhouse.hub.state_provider")

PLANTS_PATH = "/plants"


class PlantStateProvider(Protocol):
    async def list_plants(self) -> list[Plant]:
        ...


class InMemoryStateProvider:
    """Holds the latest plant snapshot pushed by an admin or a test."""

    def __init__(self, plants: Iterable[Plant] | None = None) -> None:
        self._lock = asyncio.Lock()
        self._plants: list[Plant] = list(plants or [])

    async def list_plants(self) -> list[Plant]:
        async with self._lock:
            return list(self._plants)

    async def set_plants(self, plants: Iterable[Plant]) -> None:
        async with self._lock:
            self._plants = list(plants)

    async def clear(self) -> None:
        async with self._lock:
            self._plants = []

    async def close(self) -> None:
        return None


class PumpPayload(BaseModel):
    pumpId: str
    pumpChannel: Any = None
    modelName: str | None = None
    lifeTime: int | None = None
    temperature: float | None = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class PotPayload(BaseModel):
    potId: str
    pump: PumpPayload | None = None
    plantIds: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class PlantPayload(BaseModel):
    plantId: str
    idealMoisture: float | None = None
    moisture: float | None = None
    moistureState: str | None = None
    pot: PotPayload | None = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    def to_plant(self) -> Plant:
        pot: Optional[Pot] = None
        if self.pot is not None:
            pump = None
            if self.pot.pump is not None:
                pump = Pump(
                    pump_id=self.pot.pump.pumpId,
                    channel=self.pot.pump.pumpChannel,
                    model_name=self.pot.pump.modelName,
                    lifetime=self.pot.pump.lifeTime,
                    temperature=self.pot.pump.temperature,
                )
            pot = Pot(pot_id=self.pot.potId, pump=pump, plant_ids=tuple(self.pot.plantIds))
        return Plant(
            plant_id=self.plantId,
            moisture_state=MoistureState.parse(self.moistureState),
            ideal_moisture=self.idealMoisture,
            moisture=self.moisture,
            pot=pot,
        )


class HttpStateProvider:
    """Fetches the classified plant snapshot from the reasoning engine's REST surface."""

    def __init__(self, base_url: str, *, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def list_plants(self) -> list[Plant]:
        client = await self._get_client()
        try:
            response = await client.get(PLANTS_PATH)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning("Timed out fetching plants from %s", self._base_url)
            return []
        except httpx.HTTPStatusError as exc:
            logger.warning("Plant snapshot request failed with status %s", exc.response.status_code)
            return []
        except httpx.HTTPError as exc:
            logger.warning("Plant snapshot request failed: %s", exc)
            return []
        except ValueError:
            logger.warning("Plant snapshot from %s is not valid JSON", self._base_url)
            return []

        if not isinstance(data, list):
            logger.warning("Plant snapshot from %s is not a JSON list", self._base_url)
            return []

        plants: list[Plant] = []
        for entry in data:
            try:
                plants.append(PlantPayload.model_validate(entry).to_plant())
            except ValidationError as exc:
                logger.warning("Skipping malformed plant entry: %s", exc.errors()[:1])
        return plants


def build_state_provider(base_url: str | None, *, timeout: float = 5.0) -> HttpStateProvider | InMemoryStateProvider:
    if base_url:
        logger.info("Using plant state provider at %s", base_url)
        return HttpStateProvider(base_url, timeout=timeout)
    logger.info("No plant state provider configured; using in-memory snapshot")
    return InMemoryStateProvider()


__all__ = [
    "HttpStateProvider",
    "InMemoryStateProvider",
    "PlantPayload",
    "PlantStateProvider",
    "build_state_provider",
]
