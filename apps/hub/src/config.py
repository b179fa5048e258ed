from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HUB_ROOT = Path(__file__).resolve().parent.parent

class Settings(BaseSettings):
    # Load apps/hub/.env and accept env keys in any case
    _env_file = HUB_ROOT / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "Greenhouse Hub"
    app_version: str = "0.1.0"
    debug: bool = False
    port: int = 8000

    # "local" computes decisions but never dispatches; "remote" drives the pumps
    mode: Literal["local", "remote"] = Field(
        default="remote",
        description="Operating mode. Actuation commands are only delivered in remote mode.",
    )

    # MQTT
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_client_id: str = "greenhouse-hub"
    mqtt_tls: bool = False
    mqtt_qos: int = Field(default=1, ge=0, le=2, description="QoS used for actuator commands")

    # Decision loop
    decision_enabled: bool = Field(default=True, description="Run the periodic watering decision loop.")
    decision_interval_seconds: float = Field(
        default=5.0,
        ge=0.5,
        description="Spacing between scheduled decision cycles in seconds.",
    )
    dispatch_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Upper bound for a single pump dispatch attempt.",
    )

    # Watering strategies
    strategy_config_path: str = Field(
        default="data/watering_strategies.json",
        validate_default=True,
        description="JSON document holding the watering strategies and the active strategy key. "
        "Relative paths are resolved against apps/hub.",
    )

    # External plant state provider
    state_provider_url: str | None = Field(
        default=None,
        description="Base URL of the reasoning engine REST surface. Leave blank to use the in-memory provider.",
    )
    state_provider_timeout: float = Field(default=5.0, ge=0.5, description="Timeout in seconds for plant snapshots")

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v):
        if v is None:
            return "remote"
        if isinstance(v, str):
            s = v.strip().lower()
            return s or "remote"
        return v

    @field_validator("strategy_config_path")
    @classmethod
    def anchor_strategy_path(cls, v):
        path = Path(v).expanduser()
        if not path.is_absolute():
            path = HUB_ROOT / path
        return str(path)

    @field_validator("state_provider_url", mode="before")
    @classmethod
    def blank_url_is_none(cls, v):
        if isinstance(v, str):
            s = v.strip().rstrip("/")
            return s or None
        return v

settings = Settings()
