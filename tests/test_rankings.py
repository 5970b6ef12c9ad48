"""Tests for rankings and global statistics."""

from datetime import date

import pytest

from expensewatch.aggregation import AggregationEngine
from expensewatch.models import CounterpartyAggregate, ScoredEntity, SubjectAggregate, Tier
from expensewatch.rankings import (
    DimensionSpec,
    RankingBuilder,
    classify_concentration,
    concentration_index,
    quartiles,
)
from expensewatch.scoring import ScoringEngine, default_rule_sets


def _scored(entity_id: str, total: float, score: float = 0.0, tier: Tier = Tier.NORMAL) -> ScoredEntity:
    aggregate = SubjectAggregate(entity_id=entity_id, name=f"Dep {entity_id}", total=total, count=1)
    return ScoredEntity(aggregate=aggregate, score=score, tier=tier)


@pytest.fixture
def scenario_scored(make_record):
    engine = AggregationEngine()
    engine.fold(make_record(subject_id="A", counterparty_id="X", amount=1000.0))
    engine.fold(make_record(subject_id="A", counterparty_id="X", amount=2000.0))
    engine.fold(make_record(subject_id="B", counterparty_id="X", amount=60000.0, day=date(2024, 2, 3)))
    for month in range(1, 13):
        engine.fold(
            make_record(subject_id="C", counterparty_id="Y", amount=900.0, day=date(2023, month, 10))
        )
    subjects, counterparties = engine.finalize()
    rules = default_rule_sets()
    scorer = ScoringEngine()
    return (
        scorer.score_all(subjects, rules["subject"]),
        scorer.score_all(counterparties, rules["counterparty"]),
    )


class TestBuild:
    def test_overall_total_order(self, scenario_scored):
        subjects, counterparties = scenario_scored
        rankings = RankingBuilder().build(
            subjects, counterparties, [DimensionSpec("subject", "overall", "total")]
        )

        assert len(rankings) == 1
        ranking = rankings[0]
        assert ranking.id == "subjects_total_overall"
        assert [e.entity_id for e in ranking.entries] == ["B", "C", "A"]
        assert [e.value for e in ranking.entries] == [60000.0, 10800.0, 3000.0]
        assert [e.position for e in ranking.entries] == [1, 2, 3]

    def test_year_slices_expand_and_skip_zero(self, scenario_scored):
        subjects, counterparties = scenario_scored
        rankings = RankingBuilder().build(
            subjects, counterparties, [DimensionSpec("subject", "year", "total")]
        )

        by_id = {r.id: r for r in rankings}
        assert set(by_id) == {"subjects_total_year_2023", "subjects_total_year_2024"}
        assert [e.entity_id for e in by_id["subjects_total_year_2023"].entries] == ["C"]
        assert [e.entity_id for e in by_id["subjects_total_year_2024"].entries] == ["B", "A"]

    def test_pinned_category_year_key(self, scenario_scored):
        subjects, counterparties = scenario_scored
        spec = DimensionSpec(
            "counterparty", "category_year", "total", key="COMBUSTIVEIS E LUBRIFICANTES|2024"
        )
        ranking = RankingBuilder().build(subjects, counterparties, [spec])[0]

        assert ranking.id == "counterparties_total_category_year_combustiveis-e-lubrificantes-2024"
        assert [e.entity_id for e in ranking.entries] == ["X"]
        assert ranking.entries[0].metadata["distinct_subjects"] == 2

    def test_score_ranking_carries_metadata(self, scenario_scored):
        subjects, counterparties = scenario_scored
        ranking = RankingBuilder().build(
            subjects, counterparties, [DimensionSpec("subject", "overall", "score")]
        )[0]
        top = ranking.entries[0]
        assert top.entity_id == "B"
        assert top.metadata["tier"] == "high_risk"

    def test_default_specs_cover_both_dimensions(self, scenario_scored):
        subjects, counterparties = scenario_scored
        ids = {r.id for r in RankingBuilder().build(subjects, counterparties)}
        assert "subjects_total_overall" in ids
        assert "counterparties_score_overall" in ids
        assert "counterparties_distinct_subjects_overall" in ids

    def test_sliced_rankings_reject_other_metrics(self):
        with pytest.raises(ValueError):
            RankingBuilder().build([_scored("1", 10)], [], [DimensionSpec("subject", "year", "count")])

    def test_categories_sharing_a_slug_get_distinct_ids(self):
        first = _scored("1", 10.0)
        first.aggregate.by_category = {"FOO-BAR": 10.0}
        second = _scored("2", 5.0)
        second.aggregate.by_category = {"FOO BAR": 5.0}

        rankings = RankingBuilder().build(
            [first, second], [], [DimensionSpec("subject", "category", "total")]
        )

        ids = [ranking.id for ranking in rankings]
        assert len(ids) == 2
        assert len(set(ids)) == 2
        assert ids[0] == "subjects_total_category_foo-bar"
        assert ids[1].startswith("subjects_total_category_foo-bar-")
        assert {ranking.key for ranking in rankings} == {"FOO-BAR", "FOO BAR"}

    def test_unknown_sub_dimension(self):
        with pytest.raises(ValueError):
            RankingBuilder().build([], [], [DimensionSpec("subject", "weekly")])

    def test_max_length_must_be_positive(self):
        with pytest.raises(ValueError):
            RankingBuilder(max_length=0)


class TestTruncation:
    def test_truncated_ranking_is_prefix_of_full_order(self):
        entities = [_scored(str(i), float((i * 37) % 101)) for i in range(60)]
        spec = [DimensionSpec("subject", "overall", "total")]

        full = RankingBuilder(max_length=1000).build(entities, [], spec)[0]
        short = RankingBuilder(max_length=10).build(entities, [], spec)[0]

        assert len(short.entries) == 10
        assert short.total_items == 60
        assert [e.entity_id for e in short.entries] == [e.entity_id for e in full.entries[:10]]
        values = [e.value for e in full.entries]
        assert values == sorted(values, reverse=True)

    def test_ties_keep_input_order(self):
        entities = [_scored("first", 5.0), _scored("second", 5.0), _scored("third", 7.0)]
        ranking = RankingBuilder().build(
            entities, [], [DimensionSpec("subject", "overall", "total")]
        )[0]
        assert [e.entity_id for e in ranking.entries] == ["third", "first", "second"]


class TestDistribution:
    def test_quartiles_use_floor_index(self):
        result = quartiles([40, 10, 30, 20, 50])
        # n=5: q1 -> index 1, median -> index 2, q3 -> index 3
        assert result == {"q1": 20, "median": 30, "q3": 40, "min": 10, "max": 50}

    def test_quartiles_single_and_empty(self):
        assert quartiles([7.0])["q3"] == 7.0
        assert quartiles([]) == {"q1": 0.0, "median": 0.0, "q3": 0.0, "min": 0.0, "max": 0.0}

    @pytest.mark.parametrize(
        "values,level",
        [
            ([1] * 10, "low"),
            ([1] * 5, "medium"),
            ([10, 1, 1], "high"),
        ],
    )
    def test_concentration_levels(self, values, level):
        assert classify_concentration(concentration_index(values)) == level

    def test_concentration_of_nothing(self):
        assert concentration_index([]) == 0.0
        assert concentration_index([0, 0]) == 0.0


class TestStatistics:
    def test_statistics_use_untruncated_set(self):
        subjects = [_scored(str(i), float(i + 1), tier=Tier.NORMAL) for i in range(20)]
        subjects[0].tier = Tier.CRITICAL
        counterparty = ScoredEntity(
            aggregate=CounterpartyAggregate(entity_id="X", total=210.0, count=3),
            score=0,
            tier=Tier.NORMAL,
        )
        builder = RankingBuilder(max_length=3)
        rankings = builder.build(subjects, [counterparty], [DimensionSpec("subject")])
        stats = builder.statistics(subjects, [counterparty], rankings, record_count=42)

        assert len(rankings[0].entries) == 3
        assert stats.subject_count == 20
        assert stats.total_volume == sum(range(1, 21))
        assert stats.mean_per_subject == pytest.approx(10.5)
        assert stats.record_count == 42
        assert stats.tier_distribution == {
            "normal": 19,
            "suspect": 0,
            "high_risk": 0,
            "critical": 1,
        }
        assert stats.subject_quartiles["max"] == 20
        assert stats.counterparty_concentration_level == "high"
        assert stats.ranking_ids == ["subjects_total_overall"]
        assert stats.to_dict()["total_volume"] == 210.0
