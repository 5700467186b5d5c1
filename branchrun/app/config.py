"""Engine configuration."""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    APP_NAME: str = "branchrun"
    ENVIRONMENT: str = "development"  # development, testing, production

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Execution defaults
    PAUSE_ON_FAIL: bool = False
    CONSOLE_OUTPUT: bool = False
    OUTPUT_ERRORS: bool = True
    STEP_DATA_MODE: str = "all"  # all, fail, none
    MAX_VAR_DEPTH: int = 64
    BREATHER_SECONDS: float = 0.0

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def validate_step_data_mode(self) -> None:
        """Reject unknown STEP_DATA_MODE values.

        Raises:
            RuntimeError: If STEP_DATA_MODE is not one of all, fail, none
        """
        if self.STEP_DATA_MODE not in ("all", "fail", "none"):
            raise RuntimeError(
                f"STEP_DATA_MODE must be one of all, fail, none (got {self.STEP_DATA_MODE!r})"
            )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()


@dataclass
class EngineOptions:
    """Per-engine options. Defaults come from Settings, any field can be overridden."""

    pause_on_fail: bool = False
    console_output: bool = False
    output_errors: bool = True
    step_data_mode: str = "all"
    max_var_depth: int = 64
    breather_seconds: float = 0.0
    global_init: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings = None, **overrides) -> "EngineOptions":
        settings = settings or get_settings()
        settings.validate_step_data_mode()
        options = cls(
            pause_on_fail=settings.PAUSE_ON_FAIL,
            console_output=settings.CONSOLE_OUTPUT,
            output_errors=settings.OUTPUT_ERRORS,
            step_data_mode=settings.STEP_DATA_MODE,
            max_var_depth=settings.MAX_VAR_DEPTH,
            breather_seconds=settings.BREATHER_SECONDS,
        )
        for key, value in overrides.items():
            if not hasattr(options, key):
                raise TypeError(f"Unknown engine option: {key}")
            setattr(options, key, value)
        return options
