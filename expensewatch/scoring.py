"""
Investigative scoring with declarative rule sets.
A rule is a predicate over an aggregate, a weight and a label. Rule sets are
plain data (JSON-loadable) and the engine only accumulates and clamps.
"""

import json
import logging
import operator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import FatalConfigurationError
from .models import EntityAggregate, ScoredEntity, Tier

logger = logging.getLogger(__name__)

MAX_SCORE = 100.0

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
    "eq": operator.eq,
    "ne": operator.ne,
}


@dataclass
class Rule:
    predicate: Callable[[EntityAggregate], bool]
    weight: float
    label: str


class TierThresholds(BaseModel):
    critical: float = 80.0
    high_risk: float = 60.0
    suspect: float = 40.0


@dataclass
class RuleSet:
    rules: List[Rule]
    thresholds: TierThresholds = field(default_factory=TierThresholds)


class Condition(BaseModel):
    metric: str
    op: Literal["gt", "ge", "lt", "le", "eq", "ne"]
    value: float


class RuleSpec(BaseModel):
    """JSON form of a rule: all conditions must hold for it to match."""

    label: str
    weight: float = Field(ge=0)
    conditions: List[Condition]
    description: Optional[str] = None

    def to_rule(self) -> Rule:
        conditions = list(self.conditions)

        def predicate(aggregate: EntityAggregate) -> bool:
            metrics = aggregate.metrics()
            for condition in conditions:
                if condition.metric not in metrics:
                    raise KeyError(f"Unknown metric '{condition.metric}'")
                if not OPERATORS[condition.op](metrics[condition.metric], condition.value):
                    return False
            return True

        return Rule(predicate=predicate, weight=self.weight, label=self.label)


class RuleSetSpec(BaseModel):
    rules: List[RuleSpec]
    thresholds: TierThresholds = Field(default_factory=TierThresholds)

    def to_rule_set(self) -> RuleSet:
        return RuleSet(
            rules=[spec.to_rule() for spec in self.rules], thresholds=self.thresholds
        )


def _rule(label: str, weight: float, *conditions: tuple) -> dict:
    return {
        "label": label,
        "weight": weight,
        "conditions": [
            {"metric": metric, "op": op, "value": value}
            for metric, op, value in conditions
        ],
    }


# Default heuristics for legislators (subjects)
DEFAULT_SUBJECT_RULES = [
    _rule("very_high_total_volume", 30, ("total", "gt", 1_000_000)),
    _rule("high_total_volume", 20, ("total", "gt", 500_000), ("total", "le", 1_000_000)),
    _rule("elevated_total_volume", 10, ("total", "gt", 100_000), ("total", "le", 500_000)),
    _rule(
        "counterparty_concentration",
        20,
        ("volume_per_counterparty", "gt", 50_000),
        ("distinct_counterparties", "le", 3),
    ),
    _rule(
        "dominant_counterparty",
        10,
        ("top_counterparty_share", "gt", 0.6),
        ("distinct_counterparties", "ge", 2),
        ("total", "gt", 50_000),
    ),
    _rule("single_large_transaction", 40, ("max_amount", "gt", 50_000)),
    _rule(
        "low_category_diversity",
        15,
        ("distinct_categories", "le", 2),
        ("count", "ge", 10),
    ),
    _rule(
        "end_of_period_concentration",
        15,
        ("end_of_period_share", "gt", 0.5),
        ("count", "ge", 5),
    ),
    _rule(
        "round_amount_overrepresentation",
        20,
        ("round_amount_share", "gt", 0.5),
        ("count", "ge", 5),
    ),
    _rule(
        "limit_proximity_clustering",
        20,
        ("limit_proximity_share", "gt", 0.5),
        ("active_months", "ge", 3),
    ),
]

# Default heuristics for suppliers (counterparties)
DEFAULT_COUNTERPARTY_RULES = [
    _rule("very_high_amount_received", 30, ("total", "gt", 1_000_000)),
    _rule("high_amount_received", 20, ("total", "gt", 500_000), ("total", "le", 1_000_000)),
    _rule(
        "elevated_amount_received", 10, ("total", "gt", 100_000), ("total", "le", 500_000)
    ),
    _rule("many_subjects_served", 25, ("distinct_subjects", "gt", 20)),
    _rule(
        "several_subjects_served",
        15,
        ("distinct_subjects", "gt", 10),
        ("distinct_subjects", "le", 20),
    ),
    _rule("very_frequent_transactions", 20, ("count", "gt", 100)),
    _rule("frequent_transactions", 15, ("count", "gt", 50), ("count", "le", 100)),
    _rule("high_mean_transaction", 20, ("mean_amount", "gt", 50_000)),
    _rule(
        "elevated_mean_transaction",
        15,
        ("mean_amount", "gt", 20_000),
        ("mean_amount", "le", 50_000),
    ),
    _rule(
        "few_subjects_high_value",
        40,
        ("distinct_subjects", "le", 2),
        ("total", "gt", 100_000),
    ),
    _rule(
        "exclusive_single_subject",
        30,
        ("distinct_subjects", "eq", 1),
        ("total", "gt", 200_000),
    ),
    _rule("subject_concentration", 15, ("volume_per_subject", "gt", 150_000)),
    _rule(
        "round_amount_overrepresentation",
        10,
        ("round_amount_share", "gt", 0.3),
        ("count", "ge", 5),
    ),
    _rule(
        "end_of_period_concentration",
        10,
        ("end_of_period_share", "gt", 0.5),
        ("count", "ge", 5),
    ),
]


def default_rule_sets() -> Dict[str, RuleSet]:
    return {
        "subject": RuleSetSpec(rules=DEFAULT_SUBJECT_RULES).to_rule_set(),
        "counterparty": RuleSetSpec(rules=DEFAULT_COUNTERPARTY_RULES).to_rule_set(),
    }


def load_rule_sets(path: Union[str, Path]) -> Dict[str, RuleSet]:
    """Load ``{"subject": {...}, "counterparty": {...}}`` rule sets from JSON.

    A missing section falls back to the default rules for that dimension.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise FatalConfigurationError(f"Cannot read rules file {path}: {e}") from e

    rule_sets = default_rule_sets()
    try:
        for dimension in ("subject", "counterparty"):
            if dimension in data:
                rule_sets[dimension] = RuleSetSpec.model_validate(
                    data[dimension]
                ).to_rule_set()
    except ValueError as e:
        raise FatalConfigurationError(f"Invalid rules file {path}: {e}") from e

    logger.info(
        f"Loaded rules from {path}: "
        f"{len(rule_sets['subject'].rules)} subject, "
        f"{len(rule_sets['counterparty'].rules)} counterparty"
    )
    return rule_sets


def tier_for(score: float, thresholds: Optional[TierThresholds] = None) -> Tier:
    """Step function from score to tier."""
    thresholds = thresholds or TierThresholds()
    if score >= thresholds.critical:
        return Tier.CRITICAL
    if score >= thresholds.high_risk:
        return Tier.HIGH_RISK
    if score >= thresholds.suspect:
        return Tier.SUSPECT
    return Tier.NORMAL


class ScoringEngine:
    """Evaluates rules in order, sums matched weights and clamps to 100"""

    def score(self, aggregate: EntityAggregate, rule_set: RuleSet) -> ScoredEntity:
        total = 0.0
        triggered: List[str] = []

        for rule in rule_set.rules:
            try:
                matched = bool(rule.predicate(aggregate))
            except Exception as e:
                logger.warning(
                    f"Rule {rule.label} failed on {aggregate.entity_id}: {e}"
                )
                matched = False
            if matched:
                total += max(rule.weight, 0.0)
                triggered.append(rule.label)

        score = round(min(MAX_SCORE, max(0.0, total)), 2)
        aggregate.patterns = list(triggered)
        return ScoredEntity(
            aggregate=aggregate,
            score=score,
            tier=tier_for(score, rule_set.thresholds),
            triggered_rules=triggered,
        )

    def score_all(
        self, aggregates: Dict[str, EntityAggregate], rule_set: RuleSet
    ) -> List[ScoredEntity]:
        scored = [self.score(aggregate, rule_set) for aggregate in aggregates.values()]
        flagged = sum(1 for entity in scored if entity.tier != Tier.NORMAL)
        logger.info(f"Scored {len(scored)} entities, {flagged} above normal")
        return scored
