"""
Configuration management using Pydantic models loaded from YAML.
"""

from pathlib import Path
from typing import Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator

from .domain.lifecycle import CancellationPolicy


class BookingConfig(BaseModel):
    """Settings for the reservation write path."""
    past_grace_minutes: int = 5
    max_attempts: int = 3
    retry_delay_seconds: float = 0.1

    @field_validator("past_grace_minutes")
    @classmethod
    def validate_grace(cls, value: int) -> int:
        """Ensure the grace window is not negative."""
        if value < 0:
            raise ValueError("past_grace_minutes must not be negative")
        return value

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, value: int) -> int:
        """At least one attempt is always made."""
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value

    @field_validator("retry_delay_seconds")
    @classmethod
    def validate_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("retry_delay_seconds must not be negative")
        return value


class CancellationConfig(BaseModel):
    """Who may cancel and the optional client cutoff."""
    allow_client: bool = True
    allow_establishment: bool = True
    client_cutoff_minutes: Optional[int] = None

    @field_validator("client_cutoff_minutes")
    @classmethod
    def validate_cutoff(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("client_cutoff_minutes must not be negative")
        return value

    def to_policy(self) -> CancellationPolicy:
        return CancellationPolicy(
            allow_client=self.allow_client,
            allow_establishment=self.allow_establishment,
            client_cutoff_minutes=self.client_cutoff_minutes,
        )


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "Europe/Berlin"
    data_file: Path = Path("slotbooker-data.json")
    booking: BookingConfig = Field(default_factory=BookingConfig)
    cancellation: CancellationConfig = Field(default_factory=CancellationConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the timezone is a known IANA identifier."""
        try:
            pendulum.timezone(value)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Relative ``data_file`` paths are resolved against the config file's
        directory.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        config = cls(**data)
        if not config.data_file.is_absolute():
            config.data_file = config_path.parent / config.data_file
        return config


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path
