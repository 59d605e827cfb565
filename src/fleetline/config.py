"""Application configuration via environment variables and .env file."""

from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "FLEETLINE_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/fleetline.db")

    # Logging
    log_level: str = "info"

    # Device transport: "routeros" (REST API) or "mock"
    transport: str = "routeros"
    routeros_verify_tls: bool = False

    # Scheduler (disable to serve the API without polling devices)
    scheduler_enabled: bool = True
    poll_interval: int = 30  # seconds between ticks
    device_timeout: float = 10.0  # seconds per device fetch/apply
    max_workers: int = 8  # concurrent device passes per tick

    # Alert thresholds
    alerting_enabled: bool = True
    cpu_risk: int = 70
    cpu_hot: int = 85
    latency_risk_ms: int = 200
    latency_hot_ms: int = 400
    offline_after_secs: int = 0
    flap_threshold: int = 3  # link-down transitions per tick

    # Incident policy
    correlation_enabled: bool = True
    escalation_enabled: bool = False
    escalation_minutes: int = 60

    # Webhook for newly opened incidents
    webhook_url: str | None = None
    webhook_timeout: float = 10.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("transport")
    @classmethod
    def normalize_transport(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("routeros", "mock"):
            raise ValueError(f"Unknown transport: {v!r}")
        return v

    @field_validator("escalation_minutes")
    @classmethod
    def clamp_escalation(cls, v: int) -> int:
        return max(5, min(v, 10_080))

    @field_validator("offline_after_secs")
    @classmethod
    def clamp_offline_after(cls, v: int) -> int:
        return max(0, min(v, 24 * 3600))

    @model_validator(mode="after")
    def hot_not_below_risk(self) -> "Settings":
        """A "hot" band that sits below its "risk" band makes no sense; lift it."""
        if self.cpu_hot < self.cpu_risk:
            self.cpu_hot = self.cpu_risk
        if self.latency_hot_ms < self.latency_risk_ms:
            self.latency_hot_ms = self.latency_risk_ms
        return self


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
