"""Watering strategy configuration and the store that owns it at runtime."""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from services.models import MoistureState, Plant

logger = logging.getLogger("greenhouse.hub.strategies")

DEFAULT_STRATEGY_KEY = "default"


class StrategyStoreError(RuntimeError):
    """Base class for strategy store failures."""


class ConfigError(StrategyStoreError):
    """Raised when the strategy document is missing or malformed."""


class StrategyNotFoundError(StrategyStoreError):
    """Raised when a strategy key does not resolve."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Strategy not found: {key}")
        self.key = key


class StrategyInUseError(StrategyStoreError):
    """Raised when removing the strategy that is currently active."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Strategy {key!r} is active and cannot be removed")
        self.key = key


class StrategyPersistenceError(StrategyStoreError):
    """Raised when the updated configuration cannot be written to disk."""


class MoistureDurations(BaseModel):
    """Watering duration in seconds for every moisture state."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    thirsty: int = Field(ge=0)
    moist: int = Field(ge=0)
    overwatered: int = Field(ge=0)
    unknown: int = Field(ge=0)

    def for_state(self, state: MoistureState | str) -> int:
        table = {
            MoistureState.THIRSTY: self.thirsty,
            MoistureState.MOIST: self.moist,
            MoistureState.OVERWATERED: self.overwatered,
            MoistureState.UNKNOWN: self.unknown,
        }
        return table[MoistureState.parse(state)]


STANDARD_DURATIONS = MoistureDurations(thirsty=5, moist=2, overwatered=0, unknown=2)


class StrategyDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = ""
    description: str = ""
    durations: MoistureDurations = Field(default_factory=lambda: STANDARD_DURATIONS)


# Stands in for an absent "default" entry; never waters.
PLACEHOLDER_DEFINITION = StrategyDefinition(
    name="Placeholder",
    description="Built-in fallback used until a strategy configuration is available.",
    durations=MoistureDurations(thirsty=0, moist=0, overwatered=0, unknown=0),
)


class WateringStrategyConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    strategies: dict[str, StrategyDefinition] = Field(default_factory=dict)
    active_strategy: str = Field(default=DEFAULT_STRATEGY_KEY, alias="activeStrategy")

    @model_validator(mode="after")
    def _active_strategy_resolves(self) -> "WateringStrategyConfig":
        if self.active_strategy != DEFAULT_STRATEGY_KEY and self.active_strategy not in self.strategies:
            raise ValueError(f"activeStrategy {self.active_strategy!r} is not a configured strategy")
        return self

    def lookup(self, key: str) -> Optional[StrategyDefinition]:
        definition = self.strategies.get(key)
        if definition is None and key == DEFAULT_STRATEGY_KEY:
            return PLACEHOLDER_DEFINITION
        return definition

    def to_document(self) -> dict[str, Any]:
        return {
            "activeStrategy": self.active_strategy,
            "strategies": {key: definition.model_dump() for key, definition in self.strategies.items()},
        }


class WateringStrategy(Protocol):
    def duration(self, state: MoistureState, plant: Plant | None = None) -> int:
        ...


class ConfigurableWateringStrategy:
    """Maps a moisture state to the duration configured in a strategy definition."""

    def __init__(self, definition: StrategyDefinition, *, key: str | None = None) -> None:
        self.definition = definition
        self.key = key

    def duration(self, state: MoistureState, plant: Plant | None = None) -> int:
        return self.definition.durations.for_state(state)

    def duration_for(self, plant: Plant) -> int:
        return self.duration(plant.moisture_state, plant)


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class StrategyStore:
    """Owns the watering strategy configuration.

    Readers take the shared side of a :class:`ReadWriteLock` and never touch
    the disk. Mutations are serialized by a writer mutex, persist the new
    document first and only then swap it in under the exclusive side, so a
    failed write leaves the active behaviour untouched.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._rw_lock = ReadWriteLock()
        self._writer_mutex = threading.Lock()
        self._config = WateringStrategyConfig()
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_loaded(self) -> bool:
        with self._rw_lock.read():
            return self._loaded

    @property
    def active_name(self) -> str:
        with self._rw_lock.read():
            return self._config.active_strategy

    def snapshot(self) -> WateringStrategyConfig:
        with self._rw_lock.read():
            return self._config

    def load(self) -> WateringStrategyConfig:
        with self._writer_mutex:
            try:
                config = self._read_document()
            except ConfigError as exc:
                logger.warning("Keeping previous watering strategies: %s", exc)
                raise
            with self._rw_lock.write():
                self._config = config
                self._loaded = True
        logger.info(
            "Loaded watering strategies from %s (active=%s, available=%s)",
            self._path,
            config.active_strategy,
            ", ".join(config.strategies) or "-",
        )
        return config

    def active_strategy(self) -> ConfigurableWateringStrategy:
        key, definition = self._resolve_active()
        return ConfigurableWateringStrategy(definition, key=key)

    def active_definition(self) -> Optional[StrategyDefinition]:
        try:
            return self._resolve_active()[1]
        except StrategyNotFoundError:
            return None

    def list_strategies(self) -> dict[str, StrategyDefinition]:
        return dict(self.snapshot().strategies)

    def get(self, key: str) -> StrategyDefinition:
        definition = self.snapshot().lookup(key)
        if definition is None:
            raise StrategyNotFoundError(key)
        return definition

    def set_active(self, name: str) -> WateringStrategyConfig:
        with self._writer_mutex:
            self._ensure_writable()
            current = self.snapshot()
            if current.lookup(name) is None:
                logger.warning("Cannot activate unknown strategy %s", name)
                raise StrategyNotFoundError(name)
            updated = current.model_copy(update={"active_strategy": name})
            self._commit(updated)
        logger.info("Active strategy changed to %s", name)
        return updated

    def upsert(self, key: str, definition: StrategyDefinition | Mapping[str, Any]) -> StrategyDefinition:
        normalized = key.strip() if isinstance(key, str) else ""
        if not normalized:
            raise ValueError("strategy key is required")
        if not isinstance(definition, StrategyDefinition):
            definition = StrategyDefinition.model_validate(definition)
        with self._writer_mutex:
            self._ensure_writable()
            current = self.snapshot()
            strategies = dict(current.strategies)
            strategies[normalized] = definition
            self._commit(current.model_copy(update={"strategies": strategies}))
        logger.info("Strategy %s added/updated", normalized)
        return definition

    def remove(self, key: str) -> None:
        with self._writer_mutex:
            self._ensure_writable()
            current = self.snapshot()
            if key == current.active_strategy:
                logger.warning("Cannot delete active strategy %s", key)
                raise StrategyInUseError(key)
            if key not in current.strategies:
                logger.warning("Cannot delete unknown strategy %s", key)
                raise StrategyNotFoundError(key)
            strategies = {name: value for name, value in current.strategies.items() if name != key}
            self._commit(current.model_copy(update={"strategies": strategies}))
        logger.info("Strategy %s deleted", key)

    def reset(self) -> None:
        with self._writer_mutex:
            with self._rw_lock.write():
                self._config = WateringStrategyConfig()
                self._loaded = False

    def _resolve_active(self) -> tuple[str, StrategyDefinition]:
        with self._rw_lock.read():
            config = self._config
        active = config.active_strategy
        definition = config.lookup(active)
        if definition is not None:
            return active, definition
        fallback = config.lookup(DEFAULT_STRATEGY_KEY)
        if fallback is not None:
            return DEFAULT_STRATEGY_KEY, fallback
        raise StrategyNotFoundError(active)

    def _read_document(self) -> WateringStrategyConfig:
        if not self._path.exists():
            raise ConfigError(f"Strategy file not found at {self._path}")
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Unable to read {self._path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Malformed strategy document {self._path}: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Strategy document {self._path} must be a JSON object")
        try:
            return WateringStrategyConfig.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"Invalid strategy document {self._path}: {exc}") from exc

    def _ensure_writable(self) -> None:
        # an unreadable document on disk must not be overwritten by the in-memory fallback
        if not self._loaded and self._path.exists():
            raise ConfigError(f"Strategy file {self._path} has not been loaded; fix it and reload before editing")

    def _commit(self, updated: WateringStrategyConfig) -> None:
        self._persist(updated)
        with self._rw_lock.write():
            self._config = updated

    def _persist(self, config: WateringStrategyConfig) -> None:
        payload = json.dumps(config.to_document(), indent=2, ensure_ascii=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            logger.warning("Failed to persist watering strategies to %s: %s", self._path, exc)
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.debug("Could not remove %s", tmp_path)
            raise StrategyPersistenceError(f"Failed to persist watering strategies: {exc}") from exc


__all__ = [
    "ConfigError",
    "ConfigurableWateringStrategy",
    "DEFAULT_STRATEGY_KEY",
    "MoistureDurations",
    "PLACEHOLDER_DEFINITION",
    "ReadWriteLock",
    "STANDARD_DURATIONS",
    "StrategyDefinition",
    "StrategyInUseError",
    "StrategyNotFoundError",
    "StrategyPersistenceError",
    "StrategyStore",
    "StrategyStoreError",
    "WateringStrategy",
    "WateringStrategyConfig",
]
