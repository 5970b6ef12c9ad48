"""
ExpenseWatch data model.
Subjects (legislators), raw and validated expense records, per-entity aggregates,
scored entities, rankings, global statistics and run bookkeeping.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .utils import digits_only, parse_amount, parse_int


class Tier(Enum):
    """Risk classification derived from the score"""

    NORMAL = "normal"
    SUSPECT = "suspect"
    HIGH_RISK = "high_risk"
    CRITICAL = "critical"


class PipelineState(Enum):
    """Orchestrator lifecycle"""

    IDLE = "idle"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    LOADING = "loading"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Subject:
    """A legislator as published by the upstream API"""

    id: str
    name: str
    party: Optional[str] = None
    state: Optional[str] = None
    legislature: Optional[int] = None
    photo_url: Optional[str] = None
    email: Optional[str] = None
    civil_name: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Subject":
        """Build from a list item or a detail payload (``ultimoStatus``)."""
        status = data.get("ultimoStatus") or {}
        return cls(
            id=str(data.get("id") or status.get("id")),
            name=data.get("nome") or status.get("nome") or data.get("nomeCivil") or "",
            party=data.get("siglaPartido") or status.get("siglaPartido"),
            state=data.get("siglaUf") or status.get("siglaUf"),
            legislature=parse_int(
                data.get("idLegislatura") or status.get("idLegislatura")
            ),
            photo_url=data.get("urlFoto") or status.get("urlFoto"),
            email=data.get("email") or status.get("email"),
            civil_name=data.get("nomeCivil"),
        )

    def merge_details(self, other: "Subject") -> None:
        """Fill blanks from a detail lookup without overwriting list data."""
        for name in ("party", "state", "legislature", "photo_url", "email", "civil_name"):
            if getattr(self, name) in (None, "") and getattr(other, name):
                setattr(self, name, getattr(other, name))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "party": self.party,
            "state": self.state,
            "legislature": self.legislature,
            "photo_url": self.photo_url,
            "email": self.email,
            "civil_name": self.civil_name,
        }


@dataclass(frozen=True)
class RawRecord:
    """One expense line exactly as the upstream returned it"""

    subject_id: str
    counterparty_id: Optional[str]
    counterparty_name: Optional[str]
    amount: Optional[float]  # valorLiquido
    gross_amount: Optional[float]  # valorDocumento
    document_date: Optional[str]
    year: Optional[int]
    month: Optional[int]
    category: Optional[str]
    document_id: Optional[str] = None
    document_number: Optional[str] = None
    document_url: Optional[str] = None
    payload: Dict[str, Any] = field(
        default_factory=dict, compare=False, hash=False, repr=False
    )

    @classmethod
    def from_api(cls, subject_id: str, data: Dict[str, Any]) -> "RawRecord":
        document_id = data.get("codDocumento")
        return cls(
            subject_id=str(subject_id),
            counterparty_id=data.get("cnpjCpfFornecedor"),
            counterparty_name=data.get("nomeFornecedor"),
            amount=parse_amount(data.get("valorLiquido")),
            gross_amount=parse_amount(data.get("valorDocumento")),
            document_date=data.get("dataDocumento"),
            year=parse_int(data.get("ano")),
            month=parse_int(data.get("mes")),
            category=data.get("tipoDespesa"),
            document_id=str(document_id) if document_id not in (None, "") else None,
            document_number=data.get("numDocumento"),
            document_url=data.get("urlDocumento"),
            payload=dict(data),
        )

    @property
    def dedup_key(self) -> Tuple[Any, ...]:
        """Identity used to drop upstream duplicates within a subject."""
        return (
            self.document_id,
            self.document_date,
            self.amount,
            digits_only(self.counterparty_id),
        )


@dataclass(frozen=True)
class ValidatedRecord:
    """A repaired copy of a RawRecord with its quality provenance"""

    subject_id: str
    counterparty_id: str
    counterparty_name: str
    amount: float
    gross_amount: Optional[float]
    document_date: date
    year: int
    month: int
    category: str
    document_id: Optional[str]
    document_number: Optional[str]
    document_url: Optional[str]
    quality_score: int
    corrections: Tuple[str, ...] = ()

    @property
    def was_corrected(self) -> bool:
        return bool(self.corrections)

    @property
    def year_month(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "counterparty_id": self.counterparty_id,
            "counterparty_name": self.counterparty_name,
            "amount": self.amount,
            "gross_amount": self.gross_amount,
            "document_date": self.document_date.isoformat(),
            "year": self.year,
            "month": self.month,
            "category": self.category,
            "document_id": self.document_id,
            "document_number": self.document_number,
            "document_url": self.document_url,
            "quality_score": self.quality_score,
            "corrections": list(self.corrections),
            "was_corrected": self.was_corrected,
        }


def _top(breakdown: Dict[str, float], n: int) -> List[Tuple[str, float]]:
    return sorted(breakdown.items(), key=lambda item: item[1], reverse=True)[:n]


def _median(sorted_values: List[float]) -> float:
    if not sorted_values:
        return 0.0
    middle = len(sorted_values) // 2
    if len(sorted_values) % 2:
        return sorted_values[middle]
    return (sorted_values[middle - 1] + sorted_values[middle]) / 2


@dataclass
class EntityAggregate:
    """Running totals shared by subject and counterparty aggregates"""

    entity_id: str
    name: str = ""
    total: float = 0.0
    count: int = 0
    by_category: Dict[str, float] = field(default_factory=dict)
    by_year: Dict[int, float] = field(default_factory=dict)
    count_by_year: Dict[int, int] = field(default_factory=dict)
    by_year_month: Dict[str, float] = field(default_factory=dict)
    by_category_year: Dict[Tuple[str, int], float] = field(default_factory=dict)
    amounts: List[float] = field(default_factory=list)  # bounded sample
    amounts_seen: int = 0
    max_amount: float = 0.0
    round_amount_count: int = 0
    end_of_period_total: float = 0.0
    limit_proximity_months: int = 0
    quality_total: int = 0
    corrected_count: int = 0
    patterns: List[str] = field(default_factory=list)
    finalized: bool = False

    @property
    def distinct_categories(self) -> int:
        return len(self.by_category)

    @property
    def mean_amount(self) -> float:
        return self.total / self.count if self.count else 0.0

    @property
    def median_amount(self) -> float:
        return _median(sorted(self.amounts) if not self.finalized else self.amounts)

    @property
    def active_months(self) -> int:
        return len(self.by_year_month)

    def _partners(self) -> Dict[str, float]:
        raise NotImplementedError

    def metrics(self) -> Dict[str, float]:
        """Flat metric view evaluated by scoring rules."""
        partners = self._partners()
        top_partner = max(partners.values()) if partners else 0.0
        count = self.count or 1
        total = self.total or 1.0
        return {
            "total": self.total,
            "count": float(self.count),
            "distinct_categories": float(self.distinct_categories),
            "max_amount": self.max_amount,
            "mean_amount": self.mean_amount,
            "median_amount": self.median_amount,
            "round_amount_share": self.round_amount_count / count,
            "end_of_period_share": self.end_of_period_total / total,
            "limit_proximity_share": (
                self.limit_proximity_months / self.active_months
                if self.active_months
                else 0.0
            ),
            "active_months": float(self.active_months),
            "mean_quality": self.quality_total / count,
            "top_partner_share": top_partner / total,
        }

    def _base_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entity_id,
            "name": self.name,
            "total": round(self.total, 2),
            "count": self.count,
            "mean_amount": round(self.mean_amount, 2),
            "median_amount": round(self.median_amount, 2),
            "max_amount": self.max_amount,
            "by_category": {k: round(v, 2) for k, v in self.by_category.items()},
            "by_year": {str(k): round(v, 2) for k, v in self.by_year.items()},
            "count_by_year": {str(k): v for k, v in self.count_by_year.items()},
            "by_year_month": {k: round(v, 2) for k, v in sorted(self.by_year_month.items())},
            "round_amount_count": self.round_amount_count,
            "end_of_period_total": round(self.end_of_period_total, 2),
            "limit_proximity_months": self.limit_proximity_months,
            "active_months": self.active_months,
            "corrected_count": self.corrected_count,
            "patterns": list(self.patterns),
        }


@dataclass
class SubjectAggregate(EntityAggregate):
    """Per-legislator aggregate"""

    party: Optional[str] = None
    state: Optional[str] = None
    counterparties: Dict[str, float] = field(default_factory=dict)
    counterparty_names: Dict[str, str] = field(default_factory=dict)

    @property
    def distinct_counterparties(self) -> int:
        return len(self.counterparties)

    def _partners(self) -> Dict[str, float]:
        return self.counterparties

    def metrics(self) -> Dict[str, float]:
        values = super().metrics()
        values["distinct_counterparties"] = float(self.distinct_counterparties)
        values["volume_per_counterparty"] = (
            self.total / self.distinct_counterparties
            if self.distinct_counterparties
            else 0.0
        )
        values["top_counterparty_share"] = values["top_partner_share"]
        return values

    def top_counterparties(self, n: int = 10) -> List[Dict[str, Any]]:
        return [
            {
                "id": cid,
                "name": self.counterparty_names.get(cid, ""),
                "total": round(value, 2),
            }
            for cid, value in _top(self.counterparties, n)
        ]

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "party": self.party,
                "state": self.state,
                "distinct_counterparties": self.distinct_counterparties,
                "top_counterparties": self.top_counterparties(),
            }
        )
        return data


@dataclass
class CounterpartyAggregate(EntityAggregate):
    """Per-supplier aggregate"""

    subjects: Dict[str, float] = field(default_factory=dict)
    subject_names: Dict[str, str] = field(default_factory=dict)

    @property
    def distinct_subjects(self) -> int:
        return len(self.subjects)

    def _partners(self) -> Dict[str, float]:
        return self.subjects

    def metrics(self) -> Dict[str, float]:
        values = super().metrics()
        values["distinct_subjects"] = float(self.distinct_subjects)
        values["volume_per_subject"] = (
            self.total / self.distinct_subjects if self.distinct_subjects else 0.0
        )
        values["top_subject_share"] = values["top_partner_share"]
        return values

    def top_subjects(self, n: int = 10) -> List[Dict[str, Any]]:
        return [
            {
                "id": sid,
                "name": self.subject_names.get(sid, ""),
                "total": round(value, 2),
            }
            for sid, value in _top(self.subjects, n)
        ]

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "distinct_subjects": self.distinct_subjects,
                "top_subjects": self.top_subjects(),
            }
        )
        return data


@dataclass
class ScoredEntity:
    """An aggregate with its investigative score"""

    aggregate: EntityAggregate
    score: float
    tier: Tier
    triggered_rules: List[str] = field(default_factory=list)

    @property
    def entity_id(self) -> str:
        return self.aggregate.entity_id

    @property
    def name(self) -> str:
        return self.aggregate.name

    def to_dict(self) -> Dict[str, Any]:
        data = self.aggregate.to_dict()  # type: ignore[attr-defined]
        data.update(
            {
                "score": self.score,
                "tier": self.tier.value,
                "triggered_rules": list(self.triggered_rules),
            }
        )
        return data


@dataclass
class RankingEntry:
    position: int
    entity_id: str
    name: str
    value: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "entity_id": self.entity_id,
            "name": self.name,
            "value": round(self.value, 2),
            "metadata": self.metadata,
        }


@dataclass
class RankingList:
    """Ordered, truncated ranking for one dimension slice"""

    id: str
    dimension: str  # subject | counterparty
    sub_dimension: str  # overall | year | category | category_year
    metric: str
    key: Optional[str]
    entries: List[RankingEntry]
    total_items: int
    generated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dimension": self.dimension,
            "sub_dimension": self.sub_dimension,
            "metric": self.metric,
            "key": self.key,
            "entries": [entry.to_dict() for entry in self.entries],
            "total_items": self.total_items,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class GlobalStatistics:
    """Run-level snapshot derived from the untruncated scored set"""

    subject_count: int
    counterparty_count: int
    record_count: int
    total_volume: float
    mean_per_subject: float
    subject_quartiles: Dict[str, float]
    counterparty_quartiles: Dict[str, float]
    counterparty_concentration: float
    counterparty_concentration_level: str
    subject_concentration: float
    subject_concentration_level: str
    tier_distribution: Dict[str, int]
    ranking_ids: List[str]
    generated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_count": self.subject_count,
            "counterparty_count": self.counterparty_count,
            "record_count": self.record_count,
            "total_volume": round(self.total_volume, 2),
            "mean_per_subject": round(self.mean_per_subject, 2),
            "subject_quartiles": self.subject_quartiles,
            "counterparty_quartiles": self.counterparty_quartiles,
            "counterparty_concentration": round(self.counterparty_concentration, 6),
            "counterparty_concentration_level": self.counterparty_concentration_level,
            "subject_concentration": round(self.subject_concentration, 6),
            "subject_concentration_level": self.subject_concentration_level,
            "tier_distribution": self.tier_distribution,
            "ranking_ids": list(self.ranking_ids),
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass
class ProgressEvent:
    state: PipelineState
    percent: float
    message: str


@dataclass
class RunResult:
    """Final accounting of a run, returned whatever state it ended in"""

    run_id: str
    state: PipelineState
    successes: int = 0
    failures: int = 0
    warnings: int = 0
    subjects_processed: int = 0
    records_written: int = 0
    rankings_generated: int = 0
    total_volume: float = 0.0
    failed_subjects: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def exit_code(self) -> int:
        if self.state != PipelineState.DONE:
            return 2
        return 0 if self.failures == 0 else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "successes": self.successes,
            "failures": self.failures,
            "warnings": self.warnings,
            "subjects_processed": self.subjects_processed,
            "records_written": self.records_written,
            "rankings_generated": self.rankings_generated,
            "total_volume": round(self.total_volume, 2),
            "failed_subjects": dict(self.failed_subjects),
            "cancelled": self.cancelled,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
