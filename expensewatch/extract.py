"""Paginated extraction with bounded subject fan-out."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .api import RateLimitedClient
from .errors import (
    ExpenseWatchError,
    FetchError,
    RunCancelledError,
    SubjectExtractionError,
)
from .models import RawRecord, Subject
from .utils import parse_date

logger = logging.getLogger(__name__)

SUBJECTS_ENDPOINT = "/deputados"
SUBJECT_ENDPOINT = "/deputados/{id}"
EXPENSES_ENDPOINT = "/deputados/{id}/despesas"


@dataclass
class SubjectResult:
    """Outcome of one subject's extraction"""

    subject_id: str
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def previous_month(year: int, month: int) -> Tuple[int, int]:
    return (year - 1, 12) if month == 1 else (year, month - 1)


def incremental_months(reference: date, months_back: int = 2) -> List[Tuple[int, int]]:
    """The reference month plus ``months_back`` previous months, newest first."""
    months = [(reference.year, reference.month)]
    for _ in range(months_back):
        months.append(previous_month(*months[-1]))
    return months


def incremental_lower_bound(reference: date, months_back: int = 2) -> date:
    """First day of the oldest month in the incremental window."""
    year, month = incremental_months(reference, months_back)[-1]
    return date(year, month, 1)


def filter_subjects(
    subjects: Sequence[Subject],
    parties: Sequence[str] = (),
    states: Sequence[str] = (),
    subject_range: Optional[Tuple[int, int]] = None,
    limit: Optional[int] = None,
) -> List[Subject]:
    """Dedupe by id, filter by party/state, then apply range and limit."""
    seen = set()
    selected = []
    party_set = {p.upper() for p in parties}
    state_set = {s.upper() for s in states}
    for subject in subjects:
        if subject.id in seen:
            continue
        seen.add(subject.id)
        if party_set and (subject.party or "").upper() not in party_set:
            continue
        if state_set and (subject.state or "").upper() not in state_set:
            continue
        selected.append(subject)

    if subject_range:
        start, end = subject_range
        selected = selected[start - 1 : end]
    if limit is not None:
        selected = selected[:limit]
    return selected


def deduplicate_records(records: List[RawRecord]) -> Tuple[List[RawRecord], int]:
    """Drop repeated upstream lines, keeping first occurrence order."""
    seen = set()
    unique = []
    for record in records:
        key = record.dedup_key
        if record.document_id is not None and key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique, len(records) - len(unique)


class PaginatedExtractor:
    """Drives the client across pages and across batches of subjects."""

    def __init__(
        self,
        client: RateLimitedClient,
        page_size: int = 100,
        concurrency: int = 3,
        pause_between_batches: float = 0.8,
        max_pages: Optional[int] = None,
        abort_event: Optional[threading.Event] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.page_size = page_size
        self.concurrency = concurrency
        self.pause_between_batches = pause_between_batches
        self.max_pages = max_pages
        self.abort_event = abort_event or client.abort_event

        self._stats_lock = threading.Lock()
        self.pages_fetched = 0
        self.page_cap_hits = 0
        self.duplicates_removed = 0

    def _count(self, pages: int = 0, cap_hits: int = 0, duplicates: int = 0) -> None:
        with self._stats_lock:
            self.pages_fetched += pages
            self.page_cap_hits += cap_hits
            self.duplicates_removed += duplicates

    def extract_all(
        self,
        endpoint: str,
        base_params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> List[Any]:
        """Fetch every page of a collection until an empty page.

        Hitting ``max_pages`` stops with a warning; the items already fetched
        are returned.
        """
        cap = max_pages if max_pages is not None else self.max_pages
        items: List[Any] = []
        page = 1

        while True:
            if cap is not None and page > cap:
                logger.warning(
                    f"Reached max_pages limit ({cap}) for {endpoint}, "
                    f"keeping {len(items)} items"
                )
                self._count(cap_hits=1)
                break

            params = dict(base_params or {})
            params.update({"pagina": page, "itens": self.page_size})
            data = self.client.get_data(endpoint, params)
            self._count(pages=1)

            if not data:
                logger.debug(f"No more results on page {page} of {endpoint}")
                break
            if not isinstance(data, list):
                data = [data]
            items.extend(data)
            page += 1

        return items

    def extract_subjects(
        self,
        subject_ids: Sequence[str],
        per_subject_fn: Callable[[str], Any],
        on_batch: Optional[Callable[[int, int, Dict[str, SubjectResult]], None]] = None,
    ) -> Dict[str, SubjectResult]:
        """Run ``per_subject_fn`` for every subject in batches of ``concurrency``.

        Each batch is a join barrier. Failures are recorded per subject and the
        run moves on; once the abort event is set, remaining subjects are
        recorded as cancelled without being attempted.
        """
        ids = list(subject_ids)
        results: Dict[str, SubjectResult] = {}
        batches = [
            ids[i : i + self.concurrency] for i in range(0, len(ids), self.concurrency)
        ]

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="extract"
        ) as executor:
            for index, batch in enumerate(batches):
                if index > 0 and not self.abort_event.is_set():
                    self.abort_event.wait(self.pause_between_batches)
                if self.abort_event.is_set():
                    skipped = [sid for b in batches[index:] for sid in b]
                    logger.warning(
                        f"Extraction aborted, {len(skipped)} subjects not attempted"
                    )
                    for sid in skipped:
                        results[sid] = SubjectResult(
                            sid, error=RunCancelledError("not attempted")
                        )
                    break

                futures = {sid: executor.submit(per_subject_fn, sid) for sid in batch}
                wait(list(futures.values()))

                batch_results: Dict[str, SubjectResult] = {}
                for sid in batch:
                    try:
                        batch_results[sid] = SubjectResult(sid, value=futures[sid].result())
                    except ExpenseWatchError as e:
                        logger.error(f"Subject {sid} failed: {e}")
                        batch_results[sid] = SubjectResult(sid, error=e)
                    except Exception as e:
                        logger.exception(f"Subject {sid} failed unexpectedly")
                        batch_results[sid] = SubjectResult(
                            sid, error=SubjectExtractionError(sid, e)
                        )
                results.update(batch_results)

                failed = sum(1 for r in batch_results.values() if not r.ok)
                logger.info(
                    f"Batch {index + 1}/{len(batches)} done: "
                    f"{len(batch) - failed} ok, {failed} failed"
                )
                if on_batch:
                    on_batch(len(results), len(ids), batch_results)

        return results

    # Câmara endpoints -----------------------------------------------------

    def list_subjects(self, legislature: int) -> List[Subject]:
        """All legislators of a legislature (list endpoint, paginated)."""
        items = self.extract_all(
            SUBJECTS_ENDPOINT,
            {"idLegislatura": legislature, "ordem": "ASC", "ordenarPor": "nome"},
        )
        subjects = [Subject.from_api(item) for item in items if item.get("id")]
        logger.info(f"Found {len(subjects)} subjects in legislature {legislature}")
        return subjects

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        """Single-subject lookup; None when the upstream has no such subject."""
        try:
            data = self.client.get_data(SUBJECT_ENDPOINT.format(id=subject_id))
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise
        if not data:
            return None
        return Subject.from_api(data)

    def enrich_subject(self, subject: Subject) -> Subject:
        """Fill profile gaps from the detail endpoint; failures only warn."""
        try:
            details = self.get_subject(subject.id)
        except FetchError as e:
            logger.warning(f"Could not enrich subject {subject.id}: {e}")
            return subject
        if details:
            subject.merge_details(details)
        return subject

    def fetch_expenses(
        self,
        subject_id: str,
        legislature: Optional[int] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
        reference_date: Optional[date] = None,
    ) -> List[RawRecord]:
        """Raw expense records of one subject.

        With ``reference_date`` set, only the incremental window is fetched
        (reference month and the two before it) and records dated before the
        window's first day are dropped, since the upstream filters by month.
        """
        endpoint = EXPENSES_ENDPOINT.format(id=subject_id)
        base: Dict[str, Any] = {"ordem": "ASC", "ordenarPor": "ano"}
        if legislature is not None:
            base["idLegislatura"] = legislature

        if reference_date is not None:
            items: List[Any] = []
            for window_year, window_month in incremental_months(reference_date):
                params = dict(base, ano=window_year, mes=window_month)
                items.extend(self.extract_all(endpoint, params))
            records = [RawRecord.from_api(subject_id, item) for item in items]
            lower = incremental_lower_bound(reference_date)
            kept = []
            for record in records:
                parsed = parse_date(record.document_date)
                if parsed is None or parsed >= lower:
                    kept.append(record)
            records = kept
        else:
            params = dict(base)
            if year is not None:
                params["ano"] = year
            if month is not None:
                params["mes"] = month
            items = self.extract_all(endpoint, params)
            records = [RawRecord.from_api(subject_id, item) for item in items]

        records, duplicates = deduplicate_records(records)
        if duplicates:
            logger.warning(f"Subject {subject_id}: dropped {duplicates} duplicate records")
            self._count(duplicates=duplicates)
        logger.debug(f"Subject {subject_id}: {len(records)} records")
        return records

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {
                "pages_fetched": self.pages_fetched,
                "page_cap_hits": self.page_cap_hits,
                "duplicates_removed": self.duplicates_removed,
            }
