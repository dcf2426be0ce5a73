"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Calibration and backoff constants are configuration, not code
- Normalization constants and imputation rules ship with the model manifest
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from matricare.domain.models import RiskCategory
from matricare.services.classifier import ClassifierConfig
from matricare.services.sync_queue import SyncQueueConfig

# Load environment variables from .env file
load_dotenv()


class ModelConfig(BaseModel):
    """Packaged model location and inference limits."""

    bundle_path: Path = Field(default=Path("./models/maternal_risk"), description="Model bundle directory")
    inference_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Deadline for a single forward pass"
    )
    load_failure_threshold: int = Field(
        default=3, gt=0, description="Consecutive load failures before the feature is disabled"
    )
    load_retry_after_seconds: int = Field(
        default=300, ge=0, description="How long the feature stays disabled before a new load attempt"
    )


class StorageConfig(BaseModel):
    """Local offline-first storage."""

    data_dir: Path = Field(default=Path("./data"), description="Directory for the record log")
    fsync: bool = Field(default=True, description="fsync every append before returning")
    baseline_window: int = Field(
        default=20, gt=0, description="Recent samples used for carry-forward imputation"
    )


class RemoteConfig(BaseModel):
    """Remote document store endpoint. Credentials are managed elsewhere."""

    base_url: str | None = Field(default=None, description="REST endpoint; None keeps data local only")
    timeout_seconds: float = Field(default=15.0, gt=0.0)
    sync_interval_seconds: float = Field(default=60.0, gt=0.0)

    @field_validator("base_url")
    def validate_base_url(cls, v):
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("remote base_url must be an http(s) URL")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    model: ModelConfig = Field(default_factory=ModelConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncQueueConfig = Field(default_factory=SyncQueueConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(protected_namespaces=())

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def _parse_escalation_floors(raw: str | None) -> dict[RiskCategory, float]:
    """Parse ``HIGH=0.35,CRITICAL=0.2`` into escalation floors."""
    if not raw:
        return {}
    floors: dict[RiskCategory, float] = {}
    for item in raw.split(","):
        name, _, value = item.partition("=")
        floors[RiskCategory(name.strip().upper())] = float(value)
    return floors


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    model_config = ModelConfig(
        bundle_path=Path(os.getenv("MODEL_BUNDLE_PATH", "./models/maternal_risk")),
        inference_timeout_seconds=float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "5.0")),
        load_failure_threshold=int(os.getenv("MODEL_LOAD_FAILURE_THRESHOLD", "3")),
    )

    classifier_config = ClassifierConfig(
        tolerance=float(os.getenv("CLASSIFIER_TOLERANCE", "0.001")),
        imputation_penalty=float(os.getenv("IMPUTATION_PENALTY", "0.05")),
        escalation_floors=_parse_escalation_floors(os.getenv("ESCALATION_FLOORS")),
    )

    storage_config = StorageConfig(
        data_dir=Path(os.getenv("DATA_DIR", "./data")),
        fsync=_parse_bool(os.getenv("STORAGE_FSYNC"), True),
    )

    sync_config = SyncQueueConfig(
        base_delay_seconds=float(os.getenv("SYNC_BASE_DELAY_SECONDS", "2.0")),
        max_delay_seconds=float(os.getenv("SYNC_MAX_DELAY_SECONDS", "300.0")),
        max_attempts=int(os.getenv("SYNC_MAX_ATTEMPTS", "5")),
        parallelism=int(os.getenv("SYNC_PARALLELISM", "4")),
        max_queue_depth=int(os.getenv("SYNC_MAX_QUEUE_DEPTH", "1000")),
        attempt_timeout_seconds=float(os.getenv("SYNC_ATTEMPT_TIMEOUT_SECONDS", "15.0")),
    )

    remote_config = RemoteConfig(
        base_url=os.getenv("REMOTE_BASE_URL") or None,
        timeout_seconds=float(os.getenv("REMOTE_TIMEOUT_SECONDS", "15.0")),
        sync_interval_seconds=float(os.getenv("SYNC_INTERVAL_SECONDS", "60.0")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        model=model_config,
        classifier=classifier_config,
        storage=storage_config,
        sync=sync_config,
        remote=remote_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()
