import logging

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = Field(default="local")

    # Logs
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Memo cache
    CACHE_TTL_SECONDS: float = Field(default=60.0, gt=0)
    CACHE_MAX_AGE_SECONDS: float = Field(default=60.0, gt=0)
    CACHE_MAX_ENTRIES: int = Field(default=2000, ge=1)
    CACHE_SWEEP_INTERVAL_SECONDS: float = Field(default=30.0, ge=0)
    BATCH_DELAY_SECONDS: float = Field(default=0.010, ge=0)
    THROTTLE_INTERVAL_SECONDS: float = Field(default=0.008, ge=0)

    # Behavior store
    PROFILE_PERSIST_INTERVAL_SECONDS: float = Field(default=15.0, gt=0)
    HOVER_MIN_DURATION_MS: float = Field(default=200.0, ge=0)
    SEARCH_HISTORY_LIMIT: int = Field(default=50, ge=1)
    FAILED_SEARCH_LIMIT: int = Field(default=20, ge=1)

    # Scoring / mining / experiments
    SCORING_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)
    SCORING_DEBOUNCE_SECONDS: float = Field(default=0.5, ge=0)
    MINING_REFRESH_SECONDS: float = Field(default=3600.0, gt=0)
    MINING_MIN_SIMILARITY: float = Field(default=0.1, ge=0.0, le=1.0)
    BASKET_MIN_SUPPORT: float = Field(default=0.05, ge=0.0, le=1.0)
    BASKET_MIN_CONFIDENCE: float = Field(default=0.3, ge=0.0, le=1.0)
    EXPERIMENTS_FILE: str | None = None
    EXPERIMENT_REALLOCATION_SECONDS: float = Field(default=300.0, gt=0)
    REORDER_SUBTLETY_MODE: str = Field(
        default="balanced",
        validation_alias=AliasChoices("REORDER_SUBTLETY_MODE", "SUBTLETY_MODE"),
    )

    # Persistence
    STORAGE_PATH: str = "var/personalize.json"
    STORAGE_MAX_BYTES: int = Field(default=5_000_000, ge=1024)

    # Catalog / cart collaborator
    CATALOG_BASE_URL: str = "http://localhost:3000/api/catalog"
    CATALOG_REFRESH_SECONDS: float = Field(default=300.0, gt=0)

    # Optional enrichment endpoints
    ENRICHMENT_ENABLED: bool = True
    ENRICHMENT_BASE_URL: str = "http://localhost:3000/api/ai"
    ENRICHMENT_TIMEOUT: float = Field(default=2.5, gt=0)

    # Proxy (if needed)
    HTTP_PROXY_URL: str | None = None

    # HTTP clients
    HTTP_TIMEOUT_CONNECT: float = 3.0
    HTTP_TIMEOUT_READ: float = 15.0
    HTTP_TIMEOUT_WRITE: float = 15.0
    HTTP_TIMEOUT_TOTAL: float = 30.0
    HTTP_RETRY_ATTEMPTS: int = 2
    HTTP_RETRY_BACKOFF_INITIAL: float = 0.5
    HTTP_RETRY_BACKOFF_MAX: float = 8.0
    HTTP_RETRY_STATUS_CODES: tuple[int, ...] = (500, 502, 503, 504)
    HTTP_CIRCUIT_BREAKER_MAX_FAILURES: int = 5
    HTTP_CIRCUIT_BREAKER_BASE_DELAY: float = 1.0
    HTTP_CIRCUIT_BREAKER_MAX_DELAY: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("REORDER_SUBTLETY_MODE", mode="before")
    @classmethod
    def _normalize_subtlety(cls, v):
        value = str(v or "balanced").strip().lower()
        if value not in {"subtle", "balanced", "aggressive"}:
            return "balanced"
        return value

    @field_validator("HTTP_RETRY_STATUS_CODES", mode="before")
    @classmethod
    def _parse_status_codes(cls, v):
        if v in (None, "", []):
            return ()
        if isinstance(v, (list, tuple, set)):
            return tuple(int(item) for item in v)
        parts = [part.strip() for part in str(v).split(",") if part.strip()]
        return tuple(int(part) for part in parts)

    @model_validator(mode="after")
    def _apply_test_defaults(self) -> "Settings":
        env = (self.ENVIRONMENT or "").strip().lower()
        if env == "test":
            if "ENRICHMENT_ENABLED" not in self.model_fields_set:
                self.ENRICHMENT_ENABLED = False
        return self

    @property
    def log_level(self) -> int:
        """Return the numeric logging level for ``LOG_LEVEL``."""

        resolved = logging.getLevelName(str(self.LOG_LEVEL).upper())
        return resolved if isinstance(resolved, int) else logging.INFO


settings = Settings()
