"""Tally-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class TallySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TALLY_")

    environment: str = "development"

    # Deployment topology. Standalone deployments receive subscriptions that
    # were already multiplied and virt-accounted upstream.
    standalone: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def deployment_mode(self) -> str:
        return "standalone" if self.standalone else "hosted"

    def validate_for_production(self) -> None:
        """Raise on unusable settings, warn on suspicious ones."""
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise RuntimeError(
                f"Unknown log level '{self.log_level}'. "
                "Set TALLY_LOG_LEVEL to one of DEBUG, INFO, WARNING, ERROR, CRITICAL."
            )

        if self.environment != "development" and self.log_level.upper() == "DEBUG":
            warnings.warn(
                f"Debug logging enabled in '{self.environment}' environment; "
                "pool refreshes will log every checked pool",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> TallySettings:
    settings = TallySettings()
    settings.validate_for_production()
    return settings
