import json
from enum import StrEnum
from pathlib import Path

import structlog
from pydantic import AliasChoices, Field, computed_field
from pydantic_settings import BaseSettings

logger = structlog.get_logger()


class AuthMode(StrEnum):
    """How callbacks without a registered server key are treated."""

    OPTIONAL = "optional"
    REQUIRE = "require"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # API
    app_name: str = "webpushrelay"
    app_version: str = "0.3.1"
    listen_addr: str = "127.0.0.1"
    listen_port: int = 4005

    # Paths
    state_dir: str = Field(
        default=str(Path.home() / ".webpushrelay"),
        validation_alias=AliasChoices("state_dir", "WEBPUSHRELAY_STATE"),
        description="Directory for state files (config.json, relay.db)",
    )

    # Upstream delivery
    fcm_server_key: str = ""
    fcm_endpoint: str = "https://fcm.googleapis.com/fcm/send"
    fcm_timeout_s: float = 10.0

    # VAPID verification
    auth_mode: AuthMode = AuthMode.OPTIONAL
    vapid_audience: str | None = None

    # Request limits
    max_callback_body_bytes: int = 40 * 1024

    @computed_field  # type: ignore[prop-decorator]
    @property
    def db_path(self) -> Path:
        """SQLite database path for both registries."""
        return Path(self.state_dir) / "relay.db"

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


_override: Settings | None = None


def get_settings() -> Settings:
    """Return the active settings instance."""
    if _override:
        return _override
    settings = Settings()
    return _load_config_file(settings)


def _load_config_file(settings: Settings) -> Settings:
    """Load and merge config.json if it exists."""
    config_path = Path(settings.state_dir) / "config.json"
    if not config_path.exists():
        return settings

    try:
        data = json.loads(config_path.read_text())
        if not isinstance(data, dict):
            return settings

        if "state_dir" in data and isinstance(data["state_dir"], str):
            data["state_dir"] = str(Path(data["state_dir"]).expanduser())
        if "auth_mode" in data:
            try:
                data["auth_mode"] = AuthMode(data["auth_mode"])
            except (TypeError, ValueError):
                logger.warning(
                    "config_invalid_auth_mode",
                    path=str(config_path),
                    value=data["auth_mode"],
                )
                del data["auth_mode"]

        return settings.model_copy(update=data)
    except Exception:
        return settings


def override_settings(s: Settings | None) -> None:
    """Swap in a custom Settings (use None to reset)."""
    global _override  # noqa: PLW0603
    _override = s
