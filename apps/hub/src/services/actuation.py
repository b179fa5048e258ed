from __future__ import annotations

import logging
from typing import Protocol

from asyncio_mqtt import MqttError

from mqtt.client import get_mqtt_manager, is_not_connected_error
from services.models import format_water_command, water_destination

LOGGER_NAME = "greenhouse.hub.actuation"


class DeliveryError(RuntimeError):
    """Raised when an actuator command cannot be handed to the transport."""


class ActuationChannel(Protocol):
    async def send(self, destination: str, payload: str) -> None:
        ...


class MqttActuationChannel:
    """Publishes actuator commands on the broker, one topic per destination."""

    def __init__(self, *, qos: int = 1) -> None:
        self._qos = qos
        self._logger = logging.getLogger(LOGGER_NAME)

    async def send(self, destination: str, payload: str) -> None:
        if not destination:
            raise ValueError("destination is required")

        manager = get_mqtt_manager()
        if manager is None:
            raise DeliveryError("MQTT manager is not connected")

        try:
            client = manager.get_client()
        except RuntimeError as exc:
            raise DeliveryError(str(exc)) from exc

        try:
            await client.publish(destination, payload, qos=self._qos, retain=False)
        except MqttError as exc:
            if is_not_connected_error(exc):
                await manager.notify_disconnect("actuation publish", exc)
            raise DeliveryError(f"Failed to publish {payload!r} to {destination}") from exc
        self._logger.debug("Published %r to %s", payload, destination)


__all__ = [
    "ActuationChannel",
    "DeliveryError",
    "MqttActuationChannel",
    "format_water_command",
    "water_destination",
]
