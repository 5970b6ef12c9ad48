"""Tests for the aggregation engine."""

import random
import threading
from datetime import date

import pytest

from expensewatch.aggregation import AggregationEngine
from expensewatch.models import Subject


def _snapshot(engine: AggregationEngine):
    subjects, counterparties = engine.finalize()
    return (
        {k: (round(a.total, 2), a.count, dict(a.by_category), dict(a.counterparties)) for k, a in subjects.items()},
        {k: (round(a.total, 2), a.count, dict(a.subjects)) for k, a in counterparties.items()},
    )


class TestFolding:
    def test_subject_and_counterparty_totals(self, make_record):
        engine = AggregationEngine()
        engine.fold(make_record(subject_id="A", counterparty_id="X", amount=60000.0))
        engine.fold(make_record(subject_id="C", counterparty_id="X", amount=3000.0))
        engine.fold(make_record(subject_id="C", counterparty_id="Y", amount=500.0))

        subjects, counterparties = engine.finalize()

        x = counterparties["X"]
        assert x.total == 63000.0
        assert x.distinct_subjects == 2
        assert x.subjects == {"A": 60000.0, "C": 3000.0}
        assert x.metrics()["volume_per_subject"] == 31500.0

        c = subjects["C"]
        assert c.total == 3500.0
        assert c.count == 2
        assert c.distinct_counterparties == 2
        assert c.max_amount == 3000.0

    def test_breakdowns(self, make_record):
        engine = AggregationEngine()
        engine.fold(make_record(amount=100.0, day=date(2023, 5, 2)))
        engine.fold(make_record(amount=50.0, day=date(2024, 5, 2), category="TELEFONIA"))
        engine.fold(make_record(amount=25.0, day=date(2024, 6, 2), category="TELEFONIA"))

        aggregate = engine.finalize()[0]["1"]

        assert aggregate.by_year == {2023: 100.0, 2024: 75.0}
        assert aggregate.count_by_year == {2023: 1, 2024: 2}
        assert aggregate.by_year_month == {"2023-05": 100.0, "2024-05": 50.0, "2024-06": 25.0}
        assert aggregate.by_category == {"COMBUSTIVEIS E LUBRIFICANTES": 100.0, "TELEFONIA": 75.0}
        assert aggregate.by_category_year[("TELEFONIA", 2024)] == 75.0
        assert aggregate.active_months == 3

    def test_pattern_counters(self, make_record):
        engine = AggregationEngine(end_of_period_days=5, round_amount_base=100)
        engine.fold(make_record(amount=900.0, day=date(2024, 3, 10)))
        engine.fold(make_record(amount=123.45, day=date(2024, 3, 29)))
        engine.fold(make_record(amount=50.0, day=date(2024, 3, 11), corrections=("fixed",)))

        aggregate = engine.finalize()[0]["1"]

        assert aggregate.round_amount_count == 1
        assert aggregate.end_of_period_total == 123.45
        assert aggregate.corrected_count == 1
        assert aggregate.metrics()["mean_quality"] == pytest.approx((100 + 100 + 95) / 3)

    def test_registered_profile_is_kept(self, make_record):
        engine = AggregationEngine()
        engine.register_subject(Subject(id="1", name="Ana", party="PT", state="SP"))
        engine.fold(make_record(subject_id="1", counterparty_id="X"))

        subjects, counterparties = engine.finalize()
        assert subjects["1"].name == "Ana"
        assert subjects["1"].party == "PT"
        assert counterparties["X"].subject_names == {"1": "Ana"}

    def test_registered_subject_without_records(self):
        engine = AggregationEngine()
        engine.register_subject(Subject(id="7", name="Sem Gastos"))
        subjects, _ = engine.finalize()
        assert subjects["7"].total == 0.0
        assert subjects["7"].metrics()["top_counterparty_share"] == 0.0

    @pytest.mark.parametrize("real_first", [True, False])
    def test_real_supplier_name_beats_synthetic_label(self, make_record, real_first):
        real = make_record(subject_id="1", counterparty_id="X", counterparty_name="Fornecedor Almeida Ltda")
        synthetic = make_record(subject_id="2", counterparty_id="X", counterparty_name="Fornecedor 123456")
        engine = AggregationEngine()
        for record in ([real, synthetic] if real_first else [synthetic, real]):
            engine.fold(record)

        _, counterparties = engine.finalize()
        assert counterparties["X"].name == "Fornecedor Almeida Ltda"

    def test_first_real_supplier_name_is_kept(self, make_record):
        engine = AggregationEngine()
        engine.fold(make_record(subject_id="1", counterparty_id="X", counterparty_name="Fornecedor Almeida Ltda"))
        engine.fold(make_record(subject_id="2", counterparty_id="X", counterparty_name="Fornecedor Almeida ME"))

        _, counterparties = engine.finalize()
        assert counterparties["X"].name == "Fornecedor Almeida Ltda"


class TestAdditivity:
    def test_fold_order_does_not_matter(self, make_record):
        records = [
            make_record(
                subject_id=str(i % 3),
                counterparty_id=f"C{i % 5}",
                amount=float(10 + i),
                day=date(2024, 1 + i % 12, 1 + i % 20),
                category=["TELEFONIA", "COMBUSTÍVEIS E LUBRIFICANTES"][i % 2],
            )
            for i in range(40)
        ]
        shuffled = list(records)
        random.Random(7).shuffle(shuffled)

        forward = AggregationEngine()
        forward.fold_many(records)
        permuted = AggregationEngine()
        permuted.fold_many(shuffled)

        assert _snapshot(forward) == _snapshot(permuted)

    def test_concurrent_folds_match_sequential(self, make_record):
        records = [
            make_record(
                subject_id=str(i % 4),
                counterparty_id=f"C{i % 6}",
                amount=float(i % 50 + 1),
            )
            for i in range(2000)
        ]
        sequential = AggregationEngine()
        sequential.fold_many(records)

        concurrent = AggregationEngine(lock_stripes=4)
        chunks = [records[i::8] for i in range(8)]
        threads = [threading.Thread(target=concurrent.fold_many, args=(c,)) for c in chunks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert _snapshot(concurrent) == _snapshot(sequential)


class TestSampling:
    def test_sample_is_bounded_but_count_is_exact(self, make_record):
        engine = AggregationEngine(sample_limit=10)
        for i in range(100):
            engine.fold(make_record(amount=float(i + 1)))

        aggregate = engine.finalize()[0]["1"]
        assert len(aggregate.amounts) == 10
        assert aggregate.amounts == sorted(aggregate.amounts)
        assert aggregate.amounts_seen == 100
        assert aggregate.count == 100
        assert aggregate.total == sum(range(1, 101))

    def test_median_from_sample(self, make_record):
        engine = AggregationEngine()
        for amount in (10.0, 30.0, 20.0, 40.0):
            engine.fold(make_record(amount=amount))
        assert engine.finalize()[0]["1"].median_amount == 25.0


class TestFinalize:
    def test_fold_after_finalize_fails(self, make_record):
        engine = AggregationEngine()
        engine.fold(make_record())
        engine.finalize()
        with pytest.raises(RuntimeError):
            engine.fold(make_record())

    def test_finalize_is_idempotent(self, make_record):
        engine = AggregationEngine()
        engine.fold(make_record())
        first = engine.finalize()
        second = engine.finalize()
        assert first[0]["1"] is second[0]["1"]

    def test_limit_proximity_months(self, make_record):
        engine = AggregationEngine(monthly_limit=45000, limit_proximity_ratio=0.9)
        engine.fold(make_record(amount=41000.0, day=date(2024, 1, 10)))
        engine.fold(make_record(amount=44000.0, day=date(2024, 2, 10)))
        engine.fold(make_record(amount=46000.0, day=date(2024, 3, 10)))
        engine.fold(make_record(amount=1000.0, day=date(2024, 4, 10)))

        aggregate = engine.finalize()[0]["1"]
        assert aggregate.limit_proximity_months == 2
        assert aggregate.metrics()["limit_proximity_share"] == 0.5


def test_from_settings(test_settings):
    engine = AggregationEngine.from_settings(test_settings)
    assert engine.sample_limit == test_settings.amount_sample_limit
    assert engine.monthly_limit == test_settings.monthly_expense_limit
