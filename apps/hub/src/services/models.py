from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

WATER_COMMAND_TAG = "[WATER]"
WATER_DESTINATION_FMT = "actuator.{pump_id}.water"


class MoistureState(str, Enum):
    """Discrete moisture classification produced by the reasoning engine."""

    MOIST = "MOIST"
    THIRSTY = "THIRSTY"
    OVERWATERED = "OVERWATERED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "MoistureState":
        if isinstance(value, MoistureState):
            return value
        if isinstance(value, str):
            candidate = value.strip().upper()
            if candidate in cls.__members__:
                return cls[candidate]
        return cls.UNKNOWN


class PumpConversionError(ValueError):
    """Raised when a pump cannot be addressed with the integer actuator protocol."""


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        # literals coming out of the triple store may carry a datatype suffix
        text = value.split("^^", 1)[0].strip().strip('"')
        try:
            return int(text)
        except ValueError:
            return None
    return None


@dataclass(frozen=True, slots=True)
class Pump:
    pump_id: str
    channel: Any
    model_name: Optional[str] = None
    lifetime: Optional[int] = None
    temperature: Optional[float] = None

    def channel_number(self) -> int:
        number = _parse_int(self.channel)
        if number is None or number <= 0:
            raise PumpConversionError(f"Pump {self.pump_id!r} has invalid channel {self.channel!r}")
        return number

    def actuator_id(self) -> int:
        number = _parse_int(self.pump_id)
        if number is None:
            raise PumpConversionError(f"Pump id {self.pump_id!r} is not an integer")
        return number


@dataclass(frozen=True, slots=True)
class Pot:
    pot_id: str
    pump: Optional[Pump]
    plant_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class Plant:
    plant_id: str
    moisture_state: MoistureState = MoistureState.UNKNOWN
    ideal_moisture: Optional[float] = None
    moisture: Optional[float] = None
    pot: Optional[Pot] = None

    @property
    def pot_id(self) -> Optional[str]:
        return self.pot.pot_id if self.pot is not None else None


def format_water_command(channel: int, duration_seconds: int) -> str:
    return f"{WATER_COMMAND_TAG}{channel} {duration_seconds}"


def water_destination(pump_id: int | str) -> str:
    return WATER_DESTINATION_FMT.format(pump_id=pump_id)


@dataclass(frozen=True, slots=True)
class ActuationCommand:
    pot_id: str
    pump_id: int
    channel: int
    duration_seconds: int

    @property
    def destination(self) -> str:
        return water_destination(self.pump_id)

    @property
    def payload(self) -> str:
        return format_water_command(self.channel, self.duration_seconds)

    def to_payload(self) -> dict[str, object]:
        return {
            "potId": self.pot_id,
            "pumpId": self.pump_id,
            "channel": self.channel,
            "durationSeconds": self.duration_seconds,
            "destination": self.destination,
            "command": self.payload,
        }


__all__ = [
    "ActuationCommand",
    "MoistureState",
    "Plant",
    "Pot",
    "Pump",
    "PumpConversionError",
    "WATER_COMMAND_TAG",
    "format_water_command",
    "water_destination",
]
