"""Rankings and distribution statistics over scored entities."""

import hashlib
import logging
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    CounterpartyAggregate,
    GlobalStatistics,
    RankingEntry,
    RankingList,
    ScoredEntity,
    SubjectAggregate,
    Tier,
)
from .utils import slugify

logger = logging.getLogger(__name__)

SUB_DIMENSIONS = ("overall", "year", "category", "category_year")
DIMENSION_PREFIXES = {"subject": "subjects", "counterparty": "counterparties"}

# Concentration index breakpoints (sum of squared shares)
CONCENTRATION_LOW = 0.15
CONCENTRATION_MEDIUM = 0.25


@dataclass
class DimensionSpec:
    """One requested ranking slice.

    ``key`` pins a single year / category / "category|year"; when it is None
    the builder emits one ranking per key present in the data.
    """

    dimension: str  # subject | counterparty
    sub_dimension: str = "overall"
    metric: str = "total"
    key: Optional[str] = None


def default_dimension_specs() -> List[DimensionSpec]:
    specs = []
    for dimension in ("subject", "counterparty"):
        specs.append(DimensionSpec(dimension, "overall", "total"))
        specs.append(DimensionSpec(dimension, "overall", "score"))
        specs.append(DimensionSpec(dimension, "year", "total"))
        specs.append(DimensionSpec(dimension, "category", "total"))
        specs.append(DimensionSpec(dimension, "category_year", "total"))
    specs.append(DimensionSpec("subject", "overall", "count"))
    specs.append(DimensionSpec("counterparty", "overall", "distinct_subjects"))
    return specs


def quartiles(values: Iterable[float]) -> Dict[str, float]:
    """Quartiles as ``sorted[floor(p * n)]``; zeros for an empty input."""
    ordered = sorted(values)
    n = len(ordered)
    if not n:
        return {"q1": 0.0, "median": 0.0, "q3": 0.0, "min": 0.0, "max": 0.0}

    def at(p: float) -> float:
        return ordered[min(int(math.floor(p * n)), n - 1)]

    return {
        "q1": round(at(0.25), 2),
        "median": round(at(0.5), 2),
        "q3": round(at(0.75), 2),
        "min": round(ordered[0], 2),
        "max": round(ordered[-1], 2),
    }


def concentration_index(values: Iterable[float]) -> float:
    """Sum of squared participation shares."""
    values = [v for v in values if v > 0]
    total = sum(values)
    if total <= 0:
        return 0.0
    return sum((v / total) ** 2 for v in values)


def classify_concentration(index: float) -> str:
    if index < CONCENTRATION_LOW:
        return "low"
    if index < CONCENTRATION_MEDIUM:
        return "medium"
    return "high"


def _category_year_key(category: str, year: int) -> str:
    return f"{category}|{year}"


class RankingBuilder:
    """Builds capped, stably-sorted ranking lists from scored entities"""

    def __init__(self, max_length: int = 500):
        if max_length < 1:
            raise ValueError("max_length must be positive")
        self.max_length = max_length

    def build(
        self,
        subjects: Sequence[ScoredEntity],
        counterparties: Sequence[ScoredEntity],
        specs: Optional[List[DimensionSpec]] = None,
    ) -> List[RankingList]:
        specs = specs if specs is not None else default_dimension_specs()
        generated_at = datetime.now(timezone.utc)
        rankings: List[RankingList] = []
        seen_ids = set()

        for spec in specs:
            self._check_spec(spec)
            entities = subjects if spec.dimension == "subject" else counterparties
            keys = [spec.key] if spec.key is not None else self._keys(spec, entities)
            for key in keys:
                ranking = self._build_one(spec, key, entities, generated_at)
                if ranking.id in seen_ids:
                    # Distinct keys can share a slug
                    digest = hashlib.sha1(str(key).encode("utf-8")).hexdigest()[:8]
                    ranking.id = f"{ranking.id}-{digest}"
                seen_ids.add(ranking.id)
                rankings.append(ranking)

        logger.info(f"Built {len(rankings)} rankings")
        return rankings

    def _keys(
        self, spec: DimensionSpec, entities: Sequence[ScoredEntity]
    ) -> List[Optional[str]]:
        if spec.sub_dimension == "overall":
            return [None]
        found = set()
        for entity in entities:
            aggregate = entity.aggregate
            if spec.sub_dimension == "year":
                found.update(str(year) for year in aggregate.by_year)
            elif spec.sub_dimension == "category":
                found.update(aggregate.by_category)
            else:
                found.update(
                    _category_year_key(category, year)
                    for category, year in aggregate.by_category_year
                )
        return sorted(found)

    @staticmethod
    def _check_spec(spec: DimensionSpec) -> None:
        if spec.dimension not in DIMENSION_PREFIXES:
            raise ValueError(f"Unknown dimension: {spec.dimension}")
        if spec.sub_dimension not in SUB_DIMENSIONS:
            raise ValueError(f"Unknown sub-dimension: {spec.sub_dimension}")
        if spec.sub_dimension != "overall" and spec.metric != "total":
            raise ValueError(
                f"Sliced rankings only support the total metric, got {spec.metric}"
            )

    def _value_getter(
        self, spec: DimensionSpec, key: Optional[str]
    ) -> Callable[[ScoredEntity], Optional[float]]:
        if spec.sub_dimension == "overall":
            if spec.metric == "score":
                return lambda entity: entity.score
            return lambda entity: entity.aggregate.metrics().get(spec.metric)

        if spec.sub_dimension == "year":
            year = int(key)
            return lambda entity: entity.aggregate.by_year.get(year)
        if spec.sub_dimension == "category":
            return lambda entity: entity.aggregate.by_category.get(key)

        category, year_text = key.rsplit("|", 1)
        pair: Tuple[str, int] = (category, int(year_text))
        return lambda entity: entity.aggregate.by_category_year.get(pair)

    def ranking_id(self, spec: DimensionSpec, key: Optional[str]) -> str:
        parts = [DIMENSION_PREFIXES[spec.dimension], spec.metric, spec.sub_dimension]
        if key is not None:
            parts.append(slugify(key))
        return "_".join(parts)

    def _build_one(
        self,
        spec: DimensionSpec,
        key: Optional[str],
        entities: Sequence[ScoredEntity],
        generated_at: datetime,
    ) -> RankingList:
        getter = self._value_getter(spec, key)

        candidates = []
        for entity in entities:
            value = getter(entity)
            if value is None:
                continue
            if spec.sub_dimension != "overall" and value <= 0:
                continue
            candidates.append((entity, float(value)))

        # sorted() is stable: ties keep the input order
        candidates = sorted(candidates, key=lambda pair: pair[1], reverse=True)

        entries = [
            RankingEntry(
                position=index,
                entity_id=entity.entity_id,
                name=entity.name,
                value=value,
                metadata=self._metadata(entity),
            )
            for index, (entity, value) in enumerate(
                candidates[: self.max_length], start=1
            )
        ]

        return RankingList(
            id=self.ranking_id(spec, key),
            dimension=spec.dimension,
            sub_dimension=spec.sub_dimension,
            metric=spec.metric,
            key=key,
            entries=entries,
            total_items=len(candidates),
            generated_at=generated_at,
        )

    @staticmethod
    def _metadata(entity: ScoredEntity) -> Dict[str, object]:
        aggregate = entity.aggregate
        metadata: Dict[str, object] = {
            "score": entity.score,
            "tier": entity.tier.value,
            "count": aggregate.count,
        }
        if isinstance(aggregate, SubjectAggregate):
            metadata["party"] = aggregate.party
            metadata["state"] = aggregate.state
        elif isinstance(aggregate, CounterpartyAggregate):
            metadata["distinct_subjects"] = aggregate.distinct_subjects
        return metadata

    def statistics(
        self,
        subjects: Sequence[ScoredEntity],
        counterparties: Sequence[ScoredEntity],
        rankings: Sequence[RankingList],
        record_count: int,
    ) -> GlobalStatistics:
        """Summary over the untruncated scored set."""
        subject_totals = [entity.aggregate.total for entity in subjects]
        counterparty_totals = [entity.aggregate.total for entity in counterparties]
        total_volume = sum(subject_totals)

        tiers = Counter(entity.tier.value for entity in subjects)
        tier_distribution = {tier.value: tiers.get(tier.value, 0) for tier in Tier}

        counterparty_index = concentration_index(counterparty_totals)
        subject_index = concentration_index(subject_totals)

        return GlobalStatistics(
            subject_count=len(subjects),
            counterparty_count=len(counterparties),
            record_count=record_count,
            total_volume=total_volume,
            mean_per_subject=total_volume / len(subjects) if subjects else 0.0,
            subject_quartiles=quartiles(subject_totals),
            counterparty_quartiles=quartiles(counterparty_totals),
            counterparty_concentration=counterparty_index,
            counterparty_concentration_level=classify_concentration(counterparty_index),
            subject_concentration=subject_index,
            subject_concentration_level=classify_concentration(subject_index),
            tier_distribution=tier_distribution,
            ranking_ids=[ranking.id for ranking in rankings],
            generated_at=datetime.now(timezone.utc),
        )
