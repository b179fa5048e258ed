from __future__ import annotations

from types import SimpleNamespace

import pytest
from asyncio_mqtt import MqttCodeError, MqttError

from services import actuation as actuation_module
from services.actuation import DeliveryError, MqttActuationChannel
from services.models import (
    ActuationCommand,
    MoistureState,
    Pump,
    PumpConversionError,
    format_water_command,
    water_destination,
)


class FakeClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.published: list[tuple[str, str, int, bool]] = []
        self._error = error

    async def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> None:
        if self._error is not None:
            raise self._error
        self.published.append((topic, payload, qos, retain))


class FakeManager:
    def __init__(self, client: FakeClient | None) -> None:
        self._client = client
        self.disconnects: list[str] = []

    def get_client(self) -> FakeClient:
        if self._client is None:
            raise RuntimeError("MQTT client is not connected")
        return self._client

    async def notify_disconnect(self, source: str, exc: BaseException | None = None) -> None:
        self.disconnects.append(source)


def _use_manager(monkeypatch: pytest.MonkeyPatch, manager) -> None:
    monkeypatch.setattr(actuation_module, "get_mqtt_manager", lambda: manager)


def test_water_command_format() -> None:
    assert format_water_command(18, 2) == "[WATER]18 2"
    assert water_destination(7) == "actuator.7.water"
    command = ActuationCommand(pot_id="P1", pump_id=7, channel=18, duration_seconds=2)
    assert command.destination == "actuator.7.water"
    assert command.payload == "[WATER]18 2"
    assert command.to_payload()["command"] == "[WATER]18 2"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("THIRSTY", MoistureState.THIRSTY),
        (" moist ", MoistureState.MOIST),
        ("Overwatered", MoistureState.OVERWATERED),
        ("soggy", MoistureState.UNKNOWN),
        (None, MoistureState.UNKNOWN),
    ],
)
def test_moisture_state_parse(raw, expected: MoistureState) -> None:
    assert MoistureState.parse(raw) is expected


def test_pump_conversion() -> None:
    pump = Pump(pump_id="12", channel='"5"^^xsd:int')
    assert pump.actuator_id() == 12
    assert pump.channel_number() == 5

    with pytest.raises(PumpConversionError):
        Pump(pump_id="12", channel=0).channel_number()
    with pytest.raises(PumpConversionError):
        Pump(pump_id="12", channel=2.5).channel_number()
    with pytest.raises(PumpConversionError):
        Pump(pump_id="pump-a", channel=3).actuator_id()


@pytest.mark.anyio
async def test_mqtt_channel_publishes_command(monkeypatch: pytest.MonkeyPatch) -> None:
    client = FakeClient()
    _use_manager(monkeypatch, FakeManager(client))

    await MqttActuationChannel(qos=2).send("actuator.7.water", "[WATER]18 2")

    assert client.published == [("actuator.7.water", "[WATER]18 2", 2, False)]


@pytest.mark.anyio
async def test_mqtt_channel_without_manager_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_manager(monkeypatch, None)

    with pytest.raises(DeliveryError):
        await MqttActuationChannel().send("actuator.7.water", "[WATER]18 2")


@pytest.mark.anyio
async def test_mqtt_channel_without_client_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_manager(monkeypatch, FakeManager(None))

    with pytest.raises(DeliveryError):
        await MqttActuationChannel().send("actuator.7.water", "[WATER]18 2")


@pytest.mark.anyio
async def test_mqtt_channel_reports_lost_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    manager = FakeManager(FakeClient(error=MqttCodeError(4, "Could not publish message")))
    _use_manager(monkeypatch, manager)

    with pytest.raises(DeliveryError):
        await MqttActuationChannel().send("actuator.7.water", "[WATER]18 2")

    assert manager.disconnects == ["actuation publish"]


@pytest.mark.anyio
async def test_mqtt_channel_other_errors_do_not_reconnect(monkeypatch: pytest.MonkeyPatch) -> None:
    manager = FakeManager(FakeClient(error=MqttError("payload too large")))
    _use_manager(monkeypatch, manager)

    with pytest.raises(DeliveryError):
        await MqttActuationChannel().send("actuator.7.water", "[WATER]18 2")

    assert manager.disconnects == []


@pytest.mark.anyio
async def test_mqtt_channel_requires_destination(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_manager(monkeypatch, SimpleNamespace())

    with pytest.raises(ValueError):
        await MqttActuationChannel().send("", "[WATER]18 2")
