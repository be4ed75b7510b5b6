"""Configuration management for the SpendWise ledger."""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .money import validate_currency_code

_DATA_DIR = Path.home() / ".spendwise"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPENDWISE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_path: Path = _DATA_DIR / "ledger.db"
    key_path: Path = _DATA_DIR / "secret.key"  # device-held note encryption key

    # Ledger defaults
    default_currency: str = "USD"

    # Undo history
    undo_retention_days: int = 7
    max_undo_history: int = 50

    def __init__(self, **kwargs):
        """Initialize settings and create data directories if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.parent.mkdir(parents=True, exist_ok=True)

    @field_validator("default_currency")
    @classmethod
    def _check_currency(cls, value: str) -> str:
        return validate_currency_code(value.upper())


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check the SPENDWISE_* variables in your "
            f"environment or .env file.\n"
            f"Error: {e}"
        ) from e
