"""Configuration management for ExpenseWatch."""

from datetime import date
from functools import lru_cache
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .errors import FatalConfigurationError

Destination = Literal["sqlite", "postgres", "json"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream API
    api_base_url: str = Field(default="https://dadosabertos.camara.leg.br/api/v2")
    user_agent: str = Field(default="ExpenseWatch/0.1")

    # HTTP client defaults
    http_timeout_seconds: float = Field(default=15.0)
    http_retries: int = Field(default=4)
    http_retry_delay: float = Field(default=0.5)
    request_pause_seconds: float = Field(default=0.25)  # ~4 requests/second
    rate_limit_backoff_seconds: float = Field(default=60.0)
    cache_ttl_seconds: float = Field(default=300.0)
    cache_max_entries: int = Field(default=1000)

    # Extraction
    items_per_page: int = Field(default=100)
    concurrency: int = Field(default=3)
    batch_pause_seconds: float = Field(default=0.8)
    max_pages: Optional[int] = Field(default=None)

    # Transform
    amount_sample_limit: int = Field(default=10_000)
    end_of_period_days: int = Field(default=5)
    round_amount_base: float = Field(default=100.0)
    monthly_expense_limit: float = Field(
        default=45_000.0,
        description="Declared monthly quota used by the limit-proximity heuristic",
    )
    limit_proximity_ratio: float = Field(default=0.9)
    ranking_max_length: int = Field(default=500)

    # Sink
    database_file: str = Field(default="expensewatch.db")
    database_url: Optional[str] = Field(default=None)  # Postgres for production
    export_dir: str = Field(default="export")
    max_document_bytes: int = Field(default=1_000_000)
    document_safety_ratio: float = Field(default=0.95)
    max_batch_size: int = Field(default=500)
    max_concurrent_batches: int = Field(default=2)
    load_batch_pause_seconds: float = Field(default=0.0)

    # General
    log_level: str = Field(default="INFO")
    dry_run: bool = Field(default=False)
    log_json: bool = Field(default=False, description="Emit logs as JSON lines")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def document_size_limit(self) -> int:
        """Usable bytes per document once the safety margin is applied."""
        return int(self.max_document_bytes * self.document_safety_ratio)


class RunConfig(BaseModel):
    """Parameters of a single pipeline run."""

    legislature: Optional[int] = None
    subject_id: Optional[str] = None
    limit: Optional[int] = None
    concurrency: Optional[int] = None
    destinations: List[Destination] = Field(default_factory=lambda: ["sqlite"])
    incremental: bool = False
    reference_date: Optional[date] = None
    parties: List[str] = Field(default_factory=list)
    states: List[str] = Field(default_factory=list)
    subject_range: Optional[str] = None
    year: Optional[int] = None
    month: Optional[int] = None
    max_pages: Optional[int] = None
    run_timeout_seconds: Optional[float] = None
    rules_file: Optional[str] = None
    enrich: bool = False
    dry_run: bool = False

    @field_validator("parties", "states", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip().upper() for part in value.split(",") if part.strip()]
        return [str(part).strip().upper() for part in value if str(part).strip()]

    def validate_for_run(self) -> None:
        """Raise FatalConfigurationError when the run cannot start."""
        if self.legislature is None and not self.subject_id:
            raise FatalConfigurationError(
                "A legislature (or a single subject id) is required"
            )
        if self.legislature is not None and self.legislature <= 0:
            raise FatalConfigurationError(
                f"Invalid legislature: {self.legislature}"
            )
        if self.limit is not None and self.limit <= 0:
            raise FatalConfigurationError(f"Invalid limit: {self.limit}")
        if self.concurrency is not None and not 1 <= self.concurrency <= 32:
            raise FatalConfigurationError(
                f"Concurrency must be between 1 and 32, got {self.concurrency}"
            )
        if self.month is not None and not 1 <= self.month <= 12:
            raise FatalConfigurationError(f"Invalid month: {self.month}")
        if self.month is not None and self.year is None:
            raise FatalConfigurationError("A month filter requires a year")
        if self.incremental and (self.year is not None or self.month is not None):
            raise FatalConfigurationError(
                "Incremental mode cannot be combined with year/month filters"
            )
        if not self.destinations:
            raise FatalConfigurationError("At least one destination is required")
        if self.subject_range:
            parse_subject_range(self.subject_range)

    def effective_reference_date(self) -> date:
        return self.reference_date or date.today()


def parse_subject_range(value: str) -> Tuple[int, int]:
    """Parse a 1-based inclusive "start-end" range."""
    try:
        start_text, end_text = value.split("-", 1)
        start, end = int(start_text), int(end_text)
    except ValueError:
        raise FatalConfigurationError(
            f"Invalid range '{value}', expected START-END"
        ) from None
    if start < 1 or end < start:
        raise FatalConfigurationError(f"Invalid range '{value}'")
    return start, end


@lru_cache
def get_settings() -> Settings:
    return Settings()
