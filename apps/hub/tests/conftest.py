import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from config import settings  # noqa: E402
from main import create_app  # noqa: E402
from services.actuation import DeliveryError  # noqa: E402
from services.models import MoistureState, Plant, Pot, Pump  # noqa: E402
from services.state_provider import InMemoryStateProvider  # noqa: E402
from services.strategies import StrategyStore  # noqa: E402

DEFAULT_DOCUMENT: Dict[str, Any] = {
    "activeStrategy": "default",
    "strategies": {
        "default": {
            "name": "Default",
            "description": "Balanced watering",
            "durations": {"thirsty": 5, "moist": 2, "overwatered": 0, "unknown": 2},
        },
        "conservative": {
            "name": "Conservative",
            "description": "Thirsty plants only",
            "durations": {"thirsty": 3, "moist": 0, "overwatered": 0, "unknown": 0},
        },
        "aggressive": {
            "name": "Aggressive",
            "description": "Long runs",
            "durations": {"thirsty": 10, "moist": 4, "overwatered": 0, "unknown": 3},
        },
    },
}


class RecordingChannel:
    """Actuation channel that records sends and fails for selected destinations."""

    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.sent: list[tuple[str, str]] = []
        self.attempts: list[str] = []
        self._failing = failing or set()

    async def send(self, destination: str, payload: str) -> None:
        self.attempts.append(destination)
        if destination in self._failing:
            raise DeliveryError(f"broker rejected {destination}")
        self.sent.append((destination, payload))


def make_plant(
    plant_id: str,
    state: MoistureState | str,
    *,
    pot_id: str = "pot-1",
    pump_id: str = "1",
    channel: Any = 18,
    with_pump: bool = True,
) -> Plant:
    pump = Pump(pump_id=pump_id, channel=channel) if with_pump else None
    return Plant(
        plant_id=plant_id,
        moisture_state=MoistureState.parse(state),
        pot=Pot(pot_id=pot_id, pump=pump),
    )


def write_document(path: Path, document: Dict[str, Any]) -> Path:
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def strategy_file(tmp_path: Path) -> Path:
    return write_document(tmp_path / "watering_strategies.json", DEFAULT_DOCUMENT)


@pytest.fixture
def store(strategy_file: Path) -> StrategyStore:
    strategy_store = StrategyStore(strategy_file)
    strategy_store.load()
    return strategy_store


@pytest.fixture
def recording_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def plant_provider() -> InMemoryStateProvider:
    return InMemoryStateProvider()


@pytest.fixture
def client(
    settings_override: Callable[..., None],
    strategy_file: Path,
    plant_provider: InMemoryStateProvider,
    recording_channel: RecordingChannel,
) -> TestClient:
    settings_override(mqtt_enabled=False, decision_enabled=False, mode="remote")
    app = create_app(provider=plant_provider, channel=recording_channel, strategy_path=str(strategy_file))
    with TestClient(app) as test_client:
        yield test_client
