"""Pytest configuration and fixtures."""

from datetime import date
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from expensewatch.api import RateLimitedClient
from expensewatch.config import Settings
from expensewatch.models import RawRecord, ValidatedRecord
from expensewatch.storage import SQLiteDocumentStore
from tests.helpers import BASE_URL, expense_item


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with no pacing and temp sinks."""
    return Settings(
        _env_file=None,
        api_base_url=BASE_URL,
        http_retries=3,
        http_retry_delay=0.0,
        request_pause_seconds=0.0,
        batch_pause_seconds=0.0,
        rate_limit_backoff_seconds=0.0,
        concurrency=2,
        database_file=str(tmp_path / "expensewatch.db"),
        export_dir=str(tmp_path / "export"),
    )


@pytest.fixture
def client() -> RateLimitedClient:
    return RateLimitedClient(
        base_url=BASE_URL,
        max_retries=3,
        retry_delay=0.0,
        pause_between_requests=0.0,
        rate_limit_backoff=0.0,
    )


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SQLiteDocumentStore:
    return SQLiteDocumentStore(str(tmp_path / "docs.db"))


@pytest.fixture
def make_record() -> Callable[..., ValidatedRecord]:
    """Factory for validated records with sensible defaults."""

    def factory(
        subject_id: str = "1",
        counterparty_id: str = "11111111000111",
        amount: float = 100.0,
        day: date = date(2024, 3, 10),
        category: str = "COMBUSTÍVEIS E LUBRIFICANTES",
        counterparty_name: str = "Fornecedor X",
        document_id: Optional[str] = None,
        corrections: tuple = (),
    ) -> ValidatedRecord:
        return ValidatedRecord(
            subject_id=subject_id,
            counterparty_id=counterparty_id,
            counterparty_name=counterparty_name,
            amount=amount,
            gross_amount=amount,
            document_date=day,
            year=day.year,
            month=day.month,
            category=category,
            document_id=document_id,
            document_number=None,
            document_url=None,
            quality_score=100 - 5 * len(corrections),
            corrections=corrections,
        )

    return factory


@pytest.fixture
def raw_record() -> Callable[..., RawRecord]:
    """Factory for raw records built from API-shaped payloads."""

    def factory(subject_id: str = "1", **overrides: Any) -> RawRecord:
        return RawRecord.from_api(subject_id, expense_item(**overrides))

    return factory
