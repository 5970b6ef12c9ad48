"""Flexible validation: repair raw expense records instead of rejecting them."""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from .models import RawRecord, ValidatedRecord
from .utils import (
    UNIDENTIFIED_COUNTERPARTY,
    UNSPECIFIED_CATEGORY,
    collapse_whitespace,
    digits_only,
    parse_date,
    slugify,
    synthetic_counterparty_name,
)

logger = logging.getLogger(__name__)

MIN_YEAR = 2000
SYMBOLIC_AMOUNT = 0.01

# Working values for one record; repaired fields are written back here
Values = Dict[str, Any]


@dataclass
class Repair:
    """One fallback source for a field."""

    derive: Callable[[Values], Optional[Any]]
    penalty: int
    message: str


@dataclass
class FieldRule:
    """Ordered validation step: keep the checked value or try each repair."""

    field: str
    check: Callable[[Values], Optional[Any]]
    repairs: List[Repair] = field(default_factory=list)


class FlexibleRecordValidator:
    """Total validator: every raw record yields a usable ValidatedRecord.

    Fields are checked in a fixed order (year, month, document date, amount,
    counterparty name, counterparty id, category). A failing check runs the
    field's repairs in order; the first one that yields a value wins and its
    penalty is subtracted from a quality score that starts at 100.
    """

    def __init__(self, today: Optional[date] = None):
        self.today = today or date.today()
        self.rules = self._build_rules()
        self._lock = threading.Lock()
        self.reset_stats()

    # Checks ---------------------------------------------------------------

    def _valid_year(self, value: Any) -> Optional[int]:
        if isinstance(value, int) and not isinstance(value, bool):
            if MIN_YEAR <= value <= self.today.year:
                return value
        return None

    def _raw_date(self, values: Values) -> Optional[date]:
        parsed = parse_date(values.get("raw_document_date"))
        if parsed and MIN_YEAR <= parsed.year <= self.today.year + 1:
            return parsed
        return None

    def _build_rules(self) -> List[FieldRule]:
        today = self.today

        def year_from_date(values: Values) -> Optional[int]:
            parsed = self._raw_date(values)
            return self._valid_year(parsed.year) if parsed else None

        def month_from_date(values: Values) -> Optional[int]:
            parsed = self._raw_date(values)
            return parsed.month if parsed else None

        def date_from_period(values: Values) -> Optional[date]:
            if values.get("period_guessed"):
                return None
            return date(values["year"], values["month"], 15)

        def amount_check(values: Values) -> Optional[float]:
            amount = values.get("amount")
            return amount if amount is not None and amount > 0 else None

        def amount_from_gross(values: Values) -> Optional[float]:
            gross = values.get("gross_amount")
            return gross if gross is not None and gross > 0 else None

        def name_from_id(values: Values) -> Optional[str]:
            digits = digits_only(values.get("counterparty_id"))
            return synthetic_counterparty_name(digits) if digits else None

        def id_from_name(values: Values) -> Optional[str]:
            name = values.get("counterparty_name")
            if not name or name == UNIDENTIFIED_COUNTERPARTY:
                return None
            return f"sem-documento-{slugify(name)}"

        def current_year(values: Values) -> int:
            values["period_guessed"] = True
            return today.year

        def current_month(values: Values) -> int:
            values["period_guessed"] = True
            return today.month

        return [
            FieldRule(
                "year",
                lambda v: self._valid_year(v.get("year")),
                [
                    Repair(year_from_date, 5, "year derived from document date"),
                    Repair(current_year, 15, "year missing, using current year"),
                ],
            ),
            FieldRule(
                "month",
                lambda v: v["month"] if v.get("month") in range(1, 13) else None,
                [
                    Repair(month_from_date, 5, "month derived from document date"),
                    Repair(current_month, 15, "month missing, using current month"),
                ],
            ),
            FieldRule(
                "document_date",
                self._raw_date,
                [
                    Repair(date_from_period, 10, "document date rebuilt from year/month"),
                    Repair(lambda v: today, 20, "document date missing, using today"),
                ],
            ),
            FieldRule(
                "amount",
                amount_check,
                [
                    Repair(amount_from_gross, 5, "net amount taken from document amount"),
                    Repair(
                        lambda v: SYMBOLIC_AMOUNT,
                        25,
                        "amount missing, using symbolic minimum",
                    ),
                ],
            ),
            FieldRule(
                "counterparty_name",
                lambda v: collapse_whitespace(v.get("counterparty_name")) or None,
                [
                    Repair(name_from_id, 15, "counterparty name derived from id"),
                    Repair(
                        lambda v: UNIDENTIFIED_COUNTERPARTY,
                        20,
                        "counterparty unidentified",
                    ),
                ],
            ),
            FieldRule(
                "counterparty_id",
                lambda v: digits_only(v.get("counterparty_id")) or None,
                [
                    Repair(id_from_name, 10, "counterparty id derived from name"),
                    Repair(
                        lambda v: "nao-identificado",
                        10,
                        "counterparty id missing",
                    ),
                ],
            ),
            FieldRule(
                "category",
                lambda v: collapse_whitespace(v.get("category")) or None,
                [
                    Repair(
                        lambda v: UNSPECIFIED_CATEGORY,
                        10,
                        "category missing, using generic label",
                    )
                ],
            ),
        ]

    # Validation -----------------------------------------------------------

    def validate(self, raw: RawRecord) -> ValidatedRecord:
        """Return a repaired copy of ``raw``; never raises."""
        values: Values = {
            "year": raw.year,
            "month": raw.month,
            "raw_document_date": raw.document_date,
            "amount": raw.amount,
            "gross_amount": raw.gross_amount,
            "counterparty_name": raw.counterparty_name,
            "counterparty_id": raw.counterparty_id,
            "category": raw.category,
        }
        score = 100
        corrections: List[str] = []
        fields_fixed: List[str] = []

        for rule in self.rules:
            try:
                value = rule.check(values)
            except Exception as e:
                logger.debug(f"Check for {rule.field} raised {e}; repairing")
                value = None

            if value is None:
                for repair in rule.repairs:
                    try:
                        value = repair.derive(values)
                    except Exception as e:
                        logger.debug(f"Repair for {rule.field} raised {e}")
                        value = None
                    if value is not None:
                        score -= repair.penalty
                        corrections.append(repair.message)
                        fields_fixed.append(rule.field)
                        break
            values[rule.field] = value

        record = ValidatedRecord(
            subject_id=raw.subject_id,
            counterparty_id=values["counterparty_id"],
            counterparty_name=values["counterparty_name"],
            amount=float(values["amount"]),
            gross_amount=raw.gross_amount,
            document_date=values["document_date"],
            year=values["year"],
            month=values["month"],
            category=values["category"],
            document_id=raw.document_id,
            document_number=raw.document_number,
            document_url=raw.document_url,
            quality_score=max(0, min(100, score)),
            corrections=tuple(corrections),
        )

        with self._lock:
            self._processed += 1
            self._quality_total += record.quality_score
            if corrections:
                self._corrected += 1
                self._by_field.update(fields_fixed)

        if corrections:
            logger.debug(
                f"Record {raw.document_id} of subject {raw.subject_id} repaired: "
                f"{'; '.join(corrections)}"
            )
        return record

    def validate_many(self, records: List[RawRecord]) -> List[ValidatedRecord]:
        return [self.validate(record) for record in records]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            processed = self._processed
            return {
                "processed": processed,
                "corrected": self._corrected,
                "corrections_by_field": dict(self._by_field),
                "mean_quality": (
                    round(self._quality_total / processed, 2) if processed else 100.0
                ),
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._processed = 0
            self._corrected = 0
            self._quality_total = 0
            self._by_field: Counter = Counter()
