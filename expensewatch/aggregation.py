"""Additive aggregation of validated records per subject and per counterparty."""

import logging
import random
import threading
import zlib
from typing import Dict, Iterable, Optional, Tuple

from .models import (
    CounterpartyAggregate,
    EntityAggregate,
    Subject,
    SubjectAggregate,
    ValidatedRecord,
)
from .utils import (
    is_end_of_month,
    is_placeholder_counterparty_name,
    is_round_amount,
    standardize_category,
)

logger = logging.getLogger(__name__)


class AggregationEngine:
    """Folds validated records into subject and counterparty aggregates.

    Both maps are guarded by striped locks keyed on the entity id, so two
    workers never write the same aggregate at once. A fold takes the subject
    stripe, releases it, then takes the counterparty stripe; locks are never
    nested.
    """

    def __init__(
        self,
        sample_limit: int = 10_000,
        end_of_period_days: int = 5,
        round_amount_base: float = 100.0,
        monthly_limit: Optional[float] = None,
        limit_proximity_ratio: float = 0.9,
        lock_stripes: int = 64,
    ):
        self.sample_limit = sample_limit
        self.end_of_period_days = end_of_period_days
        self.round_amount_base = round_amount_base
        self.monthly_limit = monthly_limit
        self.limit_proximity_ratio = limit_proximity_ratio

        self._subjects: Dict[str, SubjectAggregate] = {}
        self._counterparties: Dict[str, CounterpartyAggregate] = {}
        self._registry_lock = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(max(lock_stripes, 1))]
        self._rngs: Dict[Tuple[str, str], random.Random] = {}
        self._subject_names: Dict[str, str] = {}
        self._finalized = False

    @classmethod
    def from_settings(cls, settings) -> "AggregationEngine":
        return cls(
            sample_limit=settings.amount_sample_limit,
            end_of_period_days=settings.end_of_period_days,
            round_amount_base=settings.round_amount_base,
            monthly_limit=settings.monthly_expense_limit,
            limit_proximity_ratio=settings.limit_proximity_ratio,
        )

    def _stripe(self, kind: str, key: str) -> threading.Lock:
        index = zlib.crc32(f"{kind}:{key}".encode("utf-8")) % len(self._stripes)
        return self._stripes[index]

    def register_subject(self, subject: Subject) -> SubjectAggregate:
        """Create (or return) the aggregate for a subject with its profile data."""
        with self._registry_lock:
            aggregate = self._subjects.get(subject.id)
            if aggregate is None:
                aggregate = SubjectAggregate(entity_id=subject.id)
                self._subjects[subject.id] = aggregate
                self._rngs[("subject", subject.id)] = random.Random(subject.id)
            aggregate.name = subject.name
            aggregate.party = subject.party
            aggregate.state = subject.state
            self._subject_names[subject.id] = subject.name
        return aggregate

    def _subject(self, subject_id: str) -> SubjectAggregate:
        with self._registry_lock:
            aggregate = self._subjects.get(subject_id)
            if aggregate is None:
                aggregate = SubjectAggregate(entity_id=subject_id)
                self._subjects[subject_id] = aggregate
                self._rngs[("subject", subject_id)] = random.Random(subject_id)
            return aggregate

    def _counterparty(self, counterparty_id: str, name: str) -> CounterpartyAggregate:
        with self._registry_lock:
            aggregate = self._counterparties.get(counterparty_id)
            if aggregate is None:
                aggregate = CounterpartyAggregate(entity_id=counterparty_id, name=name)
                self._counterparties[counterparty_id] = aggregate
                self._rngs[("counterparty", counterparty_id)] = random.Random(
                    counterparty_id
                )
            return aggregate

    def _add_common(
        self,
        aggregate: EntityAggregate,
        record: ValidatedRecord,
        category: str,
        rng: random.Random,
    ) -> None:
        amount = record.amount
        aggregate.total += amount
        aggregate.count += 1
        aggregate.by_category[category] = aggregate.by_category.get(category, 0.0) + amount
        aggregate.by_year[record.year] = aggregate.by_year.get(record.year, 0.0) + amount
        aggregate.count_by_year[record.year] = (
            aggregate.count_by_year.get(record.year, 0) + 1
        )
        period = record.year_month
        aggregate.by_year_month[period] = aggregate.by_year_month.get(period, 0.0) + amount
        key = (category, record.year)
        aggregate.by_category_year[key] = aggregate.by_category_year.get(key, 0.0) + amount

        if amount > aggregate.max_amount:
            aggregate.max_amount = amount
        if is_round_amount(amount, self.round_amount_base):
            aggregate.round_amount_count += 1
        if is_end_of_month(record.document_date, self.end_of_period_days):
            aggregate.end_of_period_total += amount
        aggregate.quality_total += record.quality_score
        if record.was_corrected:
            aggregate.corrected_count += 1

        # Reservoir sample once the bound is reached
        aggregate.amounts_seen += 1
        if len(aggregate.amounts) < self.sample_limit:
            aggregate.amounts.append(amount)
        else:
            slot = rng.randrange(aggregate.amounts_seen)
            if slot < self.sample_limit:
                aggregate.amounts[slot] = amount

    def fold(self, record: ValidatedRecord) -> None:
        """Add one record to its subject and counterparty aggregates."""
        if self._finalized:
            raise RuntimeError("Aggregation already finalized")

        category = standardize_category(record.category)

        subject = self._subject(record.subject_id)
        with self._stripe("subject", record.subject_id):
            self._add_common(
                subject, record, category, self._rngs[("subject", record.subject_id)]
            )
            subject.counterparties[record.counterparty_id] = (
                subject.counterparties.get(record.counterparty_id, 0.0) + record.amount
            )
            subject.counterparty_names.setdefault(
                record.counterparty_id, record.counterparty_name
            )

        counterparty = self._counterparty(
            record.counterparty_id, record.counterparty_name
        )
        with self._stripe("counterparty", record.counterparty_id):
            self._add_common(
                counterparty,
                record,
                category,
                self._rngs[("counterparty", record.counterparty_id)],
            )
            counterparty.subjects[record.subject_id] = (
                counterparty.subjects.get(record.subject_id, 0.0) + record.amount
            )
            if is_placeholder_counterparty_name(
                counterparty.name
            ) and not is_placeholder_counterparty_name(record.counterparty_name):
                counterparty.name = record.counterparty_name

    def fold_many(self, records: Iterable[ValidatedRecord]) -> int:
        count = 0
        for record in records:
            self.fold(record)
            count += 1
        return count

    def _mark_limit_proximity(self, aggregate: SubjectAggregate) -> None:
        if not self.monthly_limit:
            return
        floor = self.monthly_limit * self.limit_proximity_ratio
        aggregate.limit_proximity_months = sum(
            1
            for value in aggregate.by_year_month.values()
            if floor <= value <= self.monthly_limit
        )

    def finalize(
        self,
    ) -> Tuple[Dict[str, SubjectAggregate], Dict[str, CounterpartyAggregate]]:
        """Sort samples, derive period metrics and freeze the aggregates."""
        with self._registry_lock:
            if not self._finalized:
                for aggregate in self._subjects.values():
                    self._mark_limit_proximity(aggregate)
                for aggregate in self._counterparties.values():
                    aggregate.subject_names = {
                        sid: self._subject_names.get(sid, "")
                        for sid in aggregate.subjects
                    }
                for aggregate in list(self._subjects.values()) + list(
                    self._counterparties.values()
                ):
                    aggregate.amounts.sort()
                    aggregate.finalized = True
                self._finalized = True
                logger.info(
                    f"Aggregation finalized: {len(self._subjects)} subjects, "
                    f"{len(self._counterparties)} counterparties"
                )
            return dict(self._subjects), dict(self._counterparties)
