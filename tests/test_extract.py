"""Tests for paginated extraction and subject fan-out."""

import logging
import threading
import time
from datetime import date

import pytest
import requests

from expensewatch.errors import (
    FetchError,
    FetchErrorKind,
    RunCancelledError,
    SubjectExtractionError,
)
from expensewatch.extract import (
    PaginatedExtractor,
    deduplicate_records,
    filter_subjects,
    incremental_lower_bound,
    incremental_months,
)
from expensewatch.models import RawRecord, Subject
from tests.helpers import BASE_URL, deputy_item, expense_item, paged


@pytest.fixture
def extractor(client) -> PaginatedExtractor:
    return PaginatedExtractor(client, page_size=2, concurrency=2, pause_between_batches=0)


class TestPagination:
    def test_stops_on_empty_page_without_warning(self, extractor, requests_mock, caplog):
        pages = [
            [deputy_item(1, "Ana"), deputy_item(2, "Bruno")],
            [deputy_item(3, "Carla"), deputy_item(4, "Davi")],
        ]
        requests_mock.get(f"{BASE_URL}/deputados", json=paged(pages))

        with caplog.at_level(logging.WARNING):
            items = extractor.extract_all("/deputados", {"idLegislatura": 57})

        assert [item["id"] for item in items] == [1, 2, 3, 4]
        assert requests_mock.call_count == 3
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert extractor.stats()["page_cap_hits"] == 0

    def test_sends_page_parameters(self, extractor, requests_mock):
        requests_mock.get(f"{BASE_URL}/deputados", json=paged([[deputy_item(1, "Ana")]]))
        extractor.extract_all("/deputados", {"idLegislatura": 57})

        first = requests_mock.request_history[0].qs
        assert first["pagina"] == ["1"]
        assert first["itens"] == ["2"]
        assert first["idlegislatura"] == ["57"]

    def test_max_pages_cap_keeps_partial_data(self, extractor, requests_mock, caplog):
        pages = [[deputy_item(i, f"D{i}")] for i in range(1, 10)]
        requests_mock.get(f"{BASE_URL}/deputados", json=paged(pages))

        with caplog.at_level(logging.WARNING):
            items = extractor.extract_all("/deputados", max_pages=2)

        assert len(items) == 2
        assert requests_mock.call_count == 2
        assert any("max_pages" in r.getMessage() for r in caplog.records)
        assert extractor.stats()["page_cap_hits"] == 1

    def test_missing_envelope_is_an_empty_page(self, extractor, requests_mock):
        requests_mock.get(f"{BASE_URL}/deputados", json={"links": []})
        assert extractor.extract_all("/deputados") == []


class TestSubjectFanOut:
    def test_failed_subject_does_not_stop_others(self, client, requests_mock):
        extractor = PaginatedExtractor(client, page_size=100, concurrency=2, pause_between_batches=0)
        for sid in ("1", "3", "4"):
            requests_mock.get(
                f"{BASE_URL}/deputados/{sid}/despesas",
                json=paged([[expense_item(document_id=int(sid))]]),
            )
        requests_mock.get(
            f"{BASE_URL}/deputados/2/despesas",
            [{"exc": requests.exceptions.Timeout}] * 5,
        )

        results = extractor.extract_subjects(
            ["1", "2", "3", "4"], lambda sid: extractor.fetch_expenses(sid)
        )

        assert list(results) == ["1", "2", "3", "4"]
        assert results["1"].ok and results["3"].ok and results["4"].ok
        assert len(results["4"].value) == 1
        error = results["2"].error
        assert isinstance(error, FetchError)
        assert error.kind == FetchErrorKind.TIMEOUT
        assert error.attempts == 3

    def test_batches_are_bounded_and_joined(self, client):
        extractor = PaginatedExtractor(client, concurrency=2, pause_between_batches=0)
        active = 0
        peak = 0
        lock = threading.Lock()
        order = []

        def work(sid: str) -> str:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
                order.append(sid)
            return sid

        batches = []
        results = extractor.extract_subjects(
            ["a", "b", "c", "d", "e"],
            work,
            on_batch=lambda done, total, batch: batches.append((done, total, sorted(batch))),
        )

        assert peak <= 2
        assert all(r.ok for r in results.values())
        assert batches == [(2, 5, ["a", "b"]), (4, 5, ["c", "d"]), (5, 5, ["e"])]
        # Join barrier: a later batch never finishes before an earlier one
        assert set(order[:2]) == {"a", "b"}

    def test_unexpected_errors_are_wrapped(self, client):
        extractor = PaginatedExtractor(client, concurrency=1, pause_between_batches=0)

        def boom(sid: str):
            raise KeyError("missing")

        results = extractor.extract_subjects(["x"], boom)
        assert isinstance(results["x"].error, SubjectExtractionError)
        assert results["x"].error.subject_id == "x"

    def test_abort_skips_remaining_batches(self, client):
        abort = threading.Event()
        extractor = PaginatedExtractor(
            client, concurrency=1, pause_between_batches=0, abort_event=abort
        )

        def work(sid: str) -> str:
            abort.set()
            return sid

        results = extractor.extract_subjects(["a", "b", "c"], work)

        assert results["a"].ok
        assert isinstance(results["b"].error, RunCancelledError)
        assert isinstance(results["c"].error, RunCancelledError)


class TestCamaraEndpoints:
    def test_list_subjects(self, extractor, requests_mock):
        requests_mock.get(
            f"{BASE_URL}/deputados",
            json=paged([[deputy_item(10, "Ana", "PT", "SP"), deputy_item(11, "Bia", "PL", "RJ")]]),
        )
        subjects = extractor.list_subjects(57)
        assert [s.id for s in subjects] == ["10", "11"]
        assert subjects[0].party == "PT"
        assert subjects[1].state == "RJ"

    def test_get_subject_reads_last_status(self, extractor, requests_mock):
        requests_mock.get(
            f"{BASE_URL}/deputados/10",
            json={
                "dados": {
                    "id": 10,
                    "nomeCivil": "Ana Maria da Silva",
                    "ultimoStatus": {
                        "nome": "Ana",
                        "siglaPartido": "PT",
                        "siglaUf": "SP",
                        "idLegislatura": 57,
                        "email": "ana@camara.leg.br",
                    },
                }
            },
        )
        subject = extractor.get_subject("10")
        assert subject.name == "Ana"
        assert subject.civil_name == "Ana Maria da Silva"
        assert subject.email == "ana@camara.leg.br"
        assert subject.legislature == 57

    def test_get_subject_not_found(self, extractor, requests_mock):
        requests_mock.get(f"{BASE_URL}/deputados/999", status_code=404, json={})
        assert extractor.get_subject("999") is None

    def test_enrich_fills_blanks_only(self, extractor, requests_mock):
        requests_mock.get(
            f"{BASE_URL}/deputados/10",
            json={"dados": {"id": 10, "ultimoStatus": {"nome": "Ana", "siglaPartido": "PL", "email": "a@b"}}},
        )
        subject = Subject(id="10", name="Ana", party="PT")
        extractor.enrich_subject(subject)
        assert subject.party == "PT"
        assert subject.email == "a@b"

    def test_fetch_expenses_with_year_and_month(self, extractor, requests_mock):
        requests_mock.get(
            f"{BASE_URL}/deputados/10/despesas", json=paged([[expense_item()]])
        )
        records = extractor.fetch_expenses("10", legislature=57, year=2024, month=3)

        assert len(records) == 1
        assert isinstance(records[0], RawRecord)
        qs = requests_mock.request_history[0].qs
        assert qs["ano"] == ["2024"]
        assert qs["mes"] == ["3"]

    def test_duplicates_are_dropped(self, extractor, requests_mock):
        item = expense_item(document_id=7)
        requests_mock.get(
            f"{BASE_URL}/deputados/10/despesas", json=paged([[item, dict(item)]])
        )
        records = extractor.fetch_expenses("10")
        assert len(records) == 1
        assert extractor.stats()["duplicates_removed"] == 1


class TestIncremental:
    def test_window_crosses_year_boundary(self):
        assert incremental_months(date(2024, 2, 10)) == [(2024, 2), (2024, 1), (2023, 12)]
        assert incremental_lower_bound(date(2024, 2, 10)) == date(2023, 12, 1)

    def test_incremental_fetch_filters_by_lower_bound(self, extractor, requests_mock):
        def callback(request, context):
            if request.qs.get("pagina") != ["1"]:
                return {"dados": []}
            month = int(request.qs["mes"][0])
            year = int(request.qs["ano"][0])
            items = [
                expense_item(
                    document_id=f"{year}{month}",
                    document_date=f"{year}-{month:02d}-05",
                    year=year,
                    month=month,
                )
            ]
            if month == 12:
                # Booked in December, dated before the window opens
                items.append(
                    expense_item(
                        document_id="late", document_date="2023-11-30", year=2023, month=12
                    )
                )
            return {"dados": items}

        requests_mock.get(f"{BASE_URL}/deputados/10/despesas", json=callback)
        records = extractor.fetch_expenses("10", reference_date=date(2024, 2, 10))

        assert requests_mock.call_count == 6
        assert sorted((r.year, r.month) for r in records) == [(2023, 12), (2024, 1), (2024, 2)]
        assert "late" not in {r.document_id for r in records}


class TestFilters:
    @pytest.fixture
    def subjects(self):
        return [
            Subject(id="1", name="A", party="PT", state="SP"),
            Subject(id="2", name="B", party="PL", state="RJ"),
            Subject(id="1", name="A", party="PT", state="SP"),
            Subject(id="3", name="C", party="PT", state="RJ"),
            Subject(id="4", name="D", party="MDB", state="SP"),
        ]

    def test_deduplicates_by_id(self, subjects):
        assert [s.id for s in filter_subjects(subjects)] == ["1", "2", "3", "4"]

    def test_party_and_state(self, subjects):
        assert [s.id for s in filter_subjects(subjects, parties=["pt"])] == ["1", "3"]
        assert [s.id for s in filter_subjects(subjects, parties=["PT"], states=["RJ"])] == ["3"]

    def test_range_and_limit(self, subjects):
        assert [s.id for s in filter_subjects(subjects, subject_range=(2, 3))] == ["2", "3"]
        assert [s.id for s in filter_subjects(subjects, limit=2)] == ["1", "2"]


def test_deduplicate_keeps_records_without_document_id(raw_record):
    first = raw_record(document_id=None)
    second = raw_record(document_id=None)
    unique, removed = deduplicate_records([first, second])
    assert len(unique) == 2
    assert removed == 0
