"""
IXP Configuration

Boot-time configuration for the IXP core:
- Environment-based configuration (IXP_ prefix, __ for nesting)
- Type-safe settings with Pydantic
- JSON file loading
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class UnknownParameterPolicy(str, Enum):
    """What the parameter validator does with undeclared properties."""
    STRICT = "strict"
    STRIP = "strip"
    ALLOW = "allow"


class PipelineConfig(BaseModel):
    """Configuration for the middleware pipeline and parameter validation."""
    request_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Race duration for a single request; 0 disables the timeout",
    )
    unknown_parameters: UnknownParameterPolicy = UnknownParameterPolicy.STRIP
    coerce_parameters: bool = False


class EventBusConfig(BaseModel):
    """Configuration for the in-process event bus."""
    max_history: int = Field(default=1000, ge=0)


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""
    level: LogLevel = LogLevel.INFO
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    """Configuration for request metrics."""
    enabled: bool = True
    max_samples: int = Field(default=1000, ge=1)


class IXPConfig(BaseSettings):
    """
    Main IXP configuration.

    Loads configuration from environment variables and/or a JSON file.
    Environment variables are prefixed with IXP_ (e.g., IXP_DEBUG=true,
    IXP_PIPELINE__REQUEST_TIMEOUT_SECONDS=5).
    """

    service_name: str = "ixp-server"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    intents_path: Optional[Path] = None
    # When set, every intent's component must be registered
    components_path: Optional[Path] = None
    # Names looked up in the host application's plugin factory table
    plugins: List[str] = Field(default_factory=list)

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    events: EventBusConfig = Field(default_factory=EventBusConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    model_config = {
        "env_prefix": "IXP_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("intents_path", "components_path", mode="before")
    @classmethod
    def ensure_path(cls, v: Any) -> Optional[Path]:
        """Ensure value is converted to Path."""
        if isinstance(v, str):
            return Path(v) if v else None
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "IXPConfig":
        """Load configuration from a JSON file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Boot-time configuration instance (lazy loaded)
_config: Optional[IXPConfig] = None


def get_config() -> IXPConfig:
    """Get the boot-time configuration instance."""
    global _config
    if _config is None:
        _config = IXPConfig()
    return _config


def set_config(config: IXPConfig) -> None:
    """Set the boot-time configuration instance."""
    global _config
    _config = config
