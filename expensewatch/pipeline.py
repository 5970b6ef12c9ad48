"""Pipeline orchestrator: extract, transform and load one run."""

import logging
import threading
import uuid
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .aggregation import AggregationEngine
from .api import RateLimitedClient
from .config import RunConfig, Settings, get_settings, parse_subject_range
from .errors import (
    ExpenseWatchError,
    FatalConfigurationError,
    FetchError,
    RunCancelledError,
    SinkUnavailableError,
)
from .extract import PaginatedExtractor, SubjectResult, filter_subjects
from .loader import LoadResult, ShardedBatchLoader
from .models import (
    GlobalStatistics,
    PipelineState,
    ProgressEvent,
    RankingList,
    RunResult,
    ScoredEntity,
    Subject,
    ValidatedRecord,
)
from .rankings import RankingBuilder
from .scoring import RuleSet, ScoringEngine, default_rule_sets, load_rule_sets
from .storage import DocumentStore, create_document_store
from .validation import FlexibleRecordValidator

logger = logging.getLogger(__name__)

TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.EXTRACTING, PipelineState.FAILED},
    PipelineState.EXTRACTING: {PipelineState.TRANSFORMING, PipelineState.FAILED},
    PipelineState.TRANSFORMING: {PipelineState.LOADING, PipelineState.FAILED},
    PipelineState.LOADING: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}

# Progress share of each stage
EXTRACT_SPAN = (0.0, 60.0)
TRANSFORM_SPAN = (60.0, 75.0)
LOAD_SPAN = (75.0, 100.0)

SUBJECTS_COLLECTION = "legislators"
COUNTERPARTIES_COLLECTION = "suppliers"


class PipelineOrchestrator:
    """Owns every stage of a run and keeps cumulative accounting.

    Per-subject and per-batch failures are counted and the run continues.
    Invalid configuration, failure to list subjects and an unreachable sink
    end the run in FAILED. A run timeout or ``abort()`` stops extraction;
    subjects already extracted are still transformed and written.
    """

    def __init__(
        self,
        run_config: RunConfig,
        settings: Optional[Settings] = None,
        client: Optional[RateLimitedClient] = None,
        stores: Optional[List[DocumentStore]] = None,
        rule_sets: Optional[Dict[str, RuleSet]] = None,
        progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
        today: Optional[date] = None,
    ):
        self.config = run_config
        self.settings = settings or get_settings()
        self.abort_event = threading.Event()
        self.client = client or RateLimitedClient.from_settings(
            self.settings, abort_event=self.abort_event
        )
        if client is not None:
            # Share the abort signal with an injected client
            self.client.abort_event = self.abort_event
        self._stores = stores
        self._rule_sets = rule_sets
        self.progress_callback = progress_callback
        self.today = today or run_config.reference_date or date.today()

        self.state = PipelineState.IDLE
        self.result = RunResult(run_id=uuid.uuid4().hex, state=self.state)
        self.subjects: Dict[str, Subject] = {}
        self.records: Dict[str, List[ValidatedRecord]] = {}
        self.scored_subjects: List[ScoredEntity] = []
        self.scored_counterparties: List[ScoredEntity] = []
        self.rankings: List[RankingList] = []
        self.statistics: Optional[GlobalStatistics] = None

    # State & progress -----------------------------------------------------

    def _transition(self, new_state: PipelineState, message: str = "") -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid transition {self.state.value} -> {new_state.value}"
            )
        logger.info(f"Pipeline {self.state.value} -> {new_state.value} {message}".strip())
        self.state = new_state
        self.result.state = new_state
        percent = {
            PipelineState.EXTRACTING: EXTRACT_SPAN[0],
            PipelineState.TRANSFORMING: TRANSFORM_SPAN[0],
            PipelineState.LOADING: LOAD_SPAN[0],
            PipelineState.DONE: 100.0,
        }.get(new_state, 0.0)
        self._emit(percent, message or new_state.value)

    def _emit(self, percent: float, message: str) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(
                ProgressEvent(state=self.state, percent=round(percent, 1), message=message)
            )
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def abort(self) -> None:
        """Signal in-flight work to stop; partial results are still loaded."""
        if not self.abort_event.is_set():
            logger.warning("Abort requested")
            self.abort_event.set()

    def _fail(self, error: Exception) -> RunResult:
        logger.error(f"Run {self.result.run_id} failed: {error}")
        self.result.error = str(error)
        if self.state not in (PipelineState.DONE, PipelineState.FAILED):
            self._transition(PipelineState.FAILED, str(error))
        return self.result

    # Run ------------------------------------------------------------------

    def run(self) -> RunResult:
        self.result.started_at = datetime.now(timezone.utc)
        timer = None
        if self.config.run_timeout_seconds:
            timer = threading.Timer(self.config.run_timeout_seconds, self._on_timeout)
            timer.daemon = True
            timer.start()

        try:
            self.config.validate_for_run()
            rule_sets = self._resolve_rule_sets()
            stores = self._resolve_stores()

            self._transition(PipelineState.EXTRACTING)
            engine = self._extract()

            self._transition(PipelineState.TRANSFORMING)
            self._transform(engine, rule_sets)

            self._transition(PipelineState.LOADING)
            self._load(stores)

            self._transition(PipelineState.DONE, self._summary())
        except (FatalConfigurationError, SinkUnavailableError, FetchError) as e:
            self._fail(e)
        except RunCancelledError as e:
            self.result.cancelled = True
            self._fail(e)
        except ExpenseWatchError as e:
            self._fail(e)
        except Exception as e:
            logger.exception(f"Run {self.result.run_id} hit an unexpected error")
            self._fail(e)
        finally:
            if timer is not None:
                timer.cancel()
            self.result.finished_at = datetime.now(timezone.utc)
            self.result.cancelled = self.result.cancelled or self.abort_event.is_set()

        return self.result

    def _on_timeout(self) -> None:
        logger.warning(
            f"Run timeout of {self.config.run_timeout_seconds}s reached, aborting"
        )
        self.abort()

    def _resolve_rule_sets(self) -> Dict[str, RuleSet]:
        if self._rule_sets is not None:
            return self._rule_sets
        if self.config.rules_file:
            return load_rule_sets(self.config.rules_file)
        return default_rule_sets()

    def _resolve_stores(self) -> List[DocumentStore]:
        if self._stores is not None:
            return self._stores
        return [
            create_document_store(destination, self.settings)
            for destination in dict.fromkeys(self.config.destinations)
        ]

    # Extract --------------------------------------------------------------

    def _select_subjects(self, extractor: PaginatedExtractor) -> List[Subject]:
        config = self.config
        if config.subject_id:
            subject = extractor.get_subject(config.subject_id)
            if subject is None:
                raise FatalConfigurationError(f"Subject {config.subject_id} not found")
            return [subject]

        subjects = extractor.list_subjects(config.legislature)
        subject_range = (
            parse_subject_range(config.subject_range) if config.subject_range else None
        )
        selected = filter_subjects(
            subjects,
            parties=config.parties,
            states=config.states,
            subject_range=subject_range,
            limit=config.limit,
        )
        logger.info(f"Selected {len(selected)} of {len(subjects)} subjects")
        return selected

    def _extract(self) -> AggregationEngine:
        settings = self.settings
        config = self.config
        extractor = PaginatedExtractor(
            self.client,
            page_size=settings.items_per_page,
            concurrency=config.concurrency or settings.concurrency,
            pause_between_batches=settings.batch_pause_seconds,
            max_pages=config.max_pages if config.max_pages is not None else settings.max_pages,
            abort_event=self.abort_event,
        )
        validator = FlexibleRecordValidator(today=self.today)
        engine = AggregationEngine.from_settings(settings)

        subjects = self._select_subjects(extractor)
        self.subjects = {subject.id: subject for subject in subjects}
        for subject in subjects:
            engine.register_subject(subject)

        reference = config.effective_reference_date() if config.incremental else None

        def process_subject(subject_id: str) -> List[ValidatedRecord]:
            subject = self.subjects[subject_id]
            if config.enrich:
                extractor.enrich_subject(subject)
            raw = extractor.fetch_expenses(
                subject_id,
                legislature=config.legislature,
                year=config.year,
                month=config.month,
                reference_date=reference,
            )
            validated = validator.validate_many(raw)
            engine.fold_many(validated)
            return validated

        def on_batch(done: int, total: int, batch: Dict[str, SubjectResult]) -> None:
            span = EXTRACT_SPAN[1] - EXTRACT_SPAN[0]
            self._emit(
                EXTRACT_SPAN[0] + span * done / max(total, 1),
                f"Extracted {done}/{total} subjects",
            )

        results = extractor.extract_subjects(list(self.subjects), process_subject, on_batch)

        for subject_id, outcome in results.items():
            if outcome.ok:
                self.records[subject_id] = outcome.value
                self.result.successes += 1
                self.result.subjects_processed += 1
            else:
                self.result.failures += 1
                self.result.failed_subjects[subject_id] = str(outcome.error)

        stats = validator.stats()
        extraction = extractor.stats()
        self.result.warnings += (
            stats["corrected"]
            + extraction["duplicates_removed"]
            + extraction["page_cap_hits"]
        )
        logger.info(
            f"Extraction: {self.result.subjects_processed} subjects ok, "
            f"{len(self.result.failed_subjects)} failed, "
            f"{stats['processed']} records ({stats['corrected']} repaired)"
        )
        return engine

    # Transform ------------------------------------------------------------

    def _transform(self, engine: AggregationEngine, rule_sets: Dict[str, RuleSet]) -> None:
        subjects, counterparties = engine.finalize()
        # Failed subjects are not written so earlier totals are not overwritten
        subjects = {sid: agg for sid, agg in subjects.items() if sid in self.records}
        scorer = ScoringEngine()
        self.scored_subjects = scorer.score_all(subjects, rule_sets["subject"])
        self._emit(TRANSFORM_SPAN[0] + 5, "Scored subjects")
        self.scored_counterparties = scorer.score_all(
            counterparties, rule_sets["counterparty"]
        )
        self._emit(TRANSFORM_SPAN[0] + 10, "Scored counterparties")

        builder = RankingBuilder(max_length=self.settings.ranking_max_length)
        self.rankings = builder.build(self.scored_subjects, self.scored_counterparties)
        record_count = sum(len(records) for records in self.records.values())
        self.statistics = builder.statistics(
            self.scored_subjects, self.scored_counterparties, self.rankings, record_count
        )
        self.result.rankings_generated = len(self.rankings)
        self.result.total_volume = self.statistics.total_volume

    # Load -----------------------------------------------------------------

    def _load(self, stores: List[DocumentStore]) -> None:
        if self.config.dry_run:
            logger.info("Dry run: skipping load")
            return

        for index, store in enumerate(stores):
            store.ping()
            with ShardedBatchLoader.from_settings(store, self.settings) as loader:
                self._queue_documents(loader)
                self._account(loader.commit())
                self.result.records_written = sum(len(r) for r in self.records.values())

                self._queue_run_metadata(loader, store)
                self._account(loader.commit())

            span = LOAD_SPAN[1] - LOAD_SPAN[0]
            self._emit(
                LOAD_SPAN[0] + span * (index + 1) / len(stores),
                f"Loaded into {store.name}",
            )

    def _account(self, result: LoadResult) -> None:
        self.result.successes += result.successes
        self.result.failures += result.failures
        for detail in result.details:
            logger.error(f"Load failure: {detail.get('error')} ({detail.get('path', '')})")

    def _queue_documents(self, loader: ShardedBatchLoader) -> None:
        for entity in self.scored_subjects:
            subject_id = entity.entity_id
            doc = entity.to_dict()
            profile = self.subjects.get(subject_id)
            if profile is not None:
                doc["profile"] = profile.to_dict()
            loader.set(f"{SUBJECTS_COLLECTION}/{subject_id}", doc)

            by_year: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
            for record in self.records.get(subject_id, []):
                by_year[record.year].append(record.to_dict())
            for year, items in sorted(by_year.items()):
                loader.set_entity(
                    f"{SUBJECTS_COLLECTION}/{subject_id}/years/{year}",
                    {
                        "subject_id": subject_id,
                        "year": year,
                        "total": round(sum(item["amount"] for item in items), 2),
                    },
                    items,
                    items_field="records",
                )

        supplier_years: Dict[str, Dict[int, List[Dict[str, Any]]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for records in self.records.values():
            for record in records:
                supplier_years[record.counterparty_id][record.year].append(
                    record.to_dict()
                )

        for entity in self.scored_counterparties:
            counterparty_id = entity.entity_id
            loader.set(f"{COUNTERPARTIES_COLLECTION}/{counterparty_id}", entity.to_dict())
            for year, items in sorted(supplier_years.get(counterparty_id, {}).items()):
                loader.set_entity(
                    f"{COUNTERPARTIES_COLLECTION}/{counterparty_id}/years/{year}",
                    {
                        "counterparty_id": counterparty_id,
                        "year": year,
                        "total": round(sum(item["amount"] for item in items), 2),
                    },
                    items,
                    items_field="transactions",
                )

        for ranking in self.rankings:
            data = ranking.to_dict()
            entries = data.pop("entries")
            loader.set_entity(f"rankings/{ranking.id}", data, entries, items_field="entries")

        if self.statistics is not None:
            loader.set("statistics/global", self.statistics.to_dict())

    def _queue_run_metadata(self, loader: ShardedBatchLoader, store: DocumentStore) -> None:
        meta = {
            "run_id": self.result.run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "legislature": self.config.legislature,
            "incremental": self.config.incremental,
            "reference_date": self.today.isoformat(),
            "destination": store.name,
            "subjects_processed": self.result.subjects_processed,
            "records_written": self.result.records_written,
            "rankings_generated": self.result.rankings_generated,
            "successes": self.result.successes,
            "failures": self.result.failures,
            "warnings": self.result.warnings,
            "cancelled": self.abort_event.is_set(),
        }
        loader.set(f"runs/{self.result.run_id}", meta, merge=False)
        loader.set("meta/latest", meta, merge=False)

    def _summary(self) -> str:
        return (
            f"{self.result.successes} ok, {self.result.failures} failed, "
            f"{self.result.warnings} warnings"
        )
