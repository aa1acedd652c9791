"""Tests for utility learning: scoring, decay, propagation, credit, pruning."""

from datetime import UTC, datetime, timedelta

import pytest

from tempera.config import TemperaConfig
from tempera.memory.episode import (
    Episode,
    Intent,
    OutcomeStatus,
    RetrievalRecord,
    TaskType,
    Utility,
)
from tempera.memory.index import SearchHit
from tempera.memory.store import FileEpisodeStore, InMemoryEpisodeStore
from tempera.utility import (
    PRIOR_SCORE,
    DecayEngine,
    PropagationEngine,
    PruneEngine,
    TemporalCreditAssignment,
    UtilityParams,
    UtilityPipeline,
    calculate_score,
    confidence_label,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def make_episode(prompt: str = "task", project: str = "web-app", **kwargs) -> Episode:
    kwargs.setdefault("timestamp_start", NOW)
    kwargs.setdefault("timestamp_end", NOW)
    return Episode(intent=Intent(raw_prompt=prompt), project=project, **kwargs)


class FixedOracle:
    """Similarity oracle with a fixed neighbour list per episode id."""

    def __init__(self, neighbours: dict[str, list[SearchHit]], by_text: dict[str, str]):
        self._neighbours = neighbours
        self._by_text = by_text
        self.queries: list[tuple[str, str | None]] = []

    async def is_available(self) -> bool:
        return True

    async def search(self, query_text, k, project_filter=None):
        self.queries.append((query_text, project_filter))
        return self._neighbours.get(self._by_text.get(query_text, ""), [])[:k]


def oracle_for(source: Episode, hits: list[SearchHit]) -> FixedOracle:
    return FixedOracle({source.id: hits}, {source.search_text(): source.id})


class TestUtilityModel:
    def test_unretrieved_episode_has_prior(self):
        assert calculate_score(0, 0) == PRIOR_SCORE == 0.5

    def test_wilson_is_conservative(self):
        score = calculate_score(4, 3)
        assert 0.0 < score < 0.75
        assert score == pytest.approx(0.3006, abs=1e-3)

    def test_more_evidence_raises_bound(self):
        assert calculate_score(2, 2) < calculate_score(20, 20) < 1.0

    def test_monotonic_in_helpful_count(self):
        scores = [calculate_score(10, h) for h in range(11)]
        assert scores == sorted(scores)
        assert scores[0] == pytest.approx(0.0, abs=1e-9)

    def test_excess_helpful_is_capped(self):
        assert calculate_score(2, 5) == calculate_score(2, 2)

    def test_confidence_label(self):
        assert confidence_label(0) == "untested"
        assert confidence_label(2) == "low confidence"
        assert confidence_label(4) == "moderate confidence"
        assert confidence_label(12) == "high confidence"


class TestUtilityParams:
    def test_defaults(self):
        params = UtilityParams()
        assert params.decay_rate == 0.01
        assert params.discount_factor == 0.9
        assert params.learning_rate == 0.1
        assert params.propagation_threshold == 0.5
        assert params.max_propagation_depth == 2

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"decay_rate": -0.1},
            {"discount_factor": 1.5},
            {"learning_rate": 2.0},
            {"propagation_threshold": -1.0},
            {"max_propagation_depth": 0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            UtilityParams(**kwargs)

    def test_from_config(self):
        config = TemperaConfig.from_dict({"bellman": {"gamma": 0.8, "alpha": 0.2}})
        params = UtilityParams.from_config(config)
        assert params.discount_factor == 0.8
        assert params.learning_rate == 0.2
        assert params.decay_rate == 0.01


class TestDecayEngine:
    @pytest.mark.asyncio
    async def test_decays_inactive_episode(self):
        episode = make_episode(timestamp_end=NOW - timedelta(days=10))
        store = InMemoryEpisodeStore([episode])
        engine = DecayEngine(store, clock=lambda: NOW)

        result = await engine.run(list(await store.list_all()))

        assert result.decayed == 1
        stored = await store.load(episode.id)
        assert stored.utility.score == pytest.approx(0.5 * 0.99**10)
        assert result.total_change < 0

    @pytest.mark.asyncio
    async def test_negligible_decay_is_skipped(self):
        episode = make_episode(timestamp_end=NOW - timedelta(days=1))
        store = InMemoryEpisodeStore([episode])

        result = await DecayEngine(store, clock=lambda: NOW).run(list(await store.list_all()))

        assert result.decayed == 0
        assert (await store.load(episode.id)).utility.score is None

    @pytest.mark.asyncio
    async def test_repeated_runs_do_not_compound(self):
        episode = make_episode(timestamp_end=NOW - timedelta(days=10))
        store = InMemoryEpisodeStore([episode])
        clock = {"now": NOW}
        engine = DecayEngine(store, clock=lambda: clock["now"])

        await engine.run(list(await store.list_all()))
        second = await engine.run(list(await store.list_all()))
        assert second.decayed == 0

        clock["now"] = NOW + timedelta(days=5)
        await engine.run(list(await store.list_all()))

        stored = await store.load(episode.id)
        assert stored.utility.score == pytest.approx(0.5 * 0.99**15)

    @pytest.mark.asyncio
    async def test_record_corrupted_after_listing_does_not_stop_the_run(self, tmp_path):
        kept = make_episode("kept", timestamp_end=NOW - timedelta(days=10))
        corrupted = make_episode("corrupted", timestamp_end=NOW - timedelta(days=10))
        store = FileEpisodeStore(tmp_path)
        await store.save(kept)
        await store.save(corrupted)

        episodes = list(await store.list_all())
        path = next(store.episodes_dir.glob(f"*/session-{corrupted.short_id}.json"))
        path.write_text("{not json")

        result = await DecayEngine(store, clock=lambda: NOW).run(episodes)

        assert result.decayed == 1
        assert len(result.errors) == 1
        assert corrupted.short_id in result.errors[0]
        assert (await store.load(kept.id)).utility.score == pytest.approx(0.5 * 0.99**10)

    @pytest.mark.asyncio
    async def test_scores_never_increase(self):
        episodes = [
            make_episode(
                timestamp_end=NOW - timedelta(days=days),
                utility=Utility(score=score),
            )
            for days, score in [(3, 0.9), (30, 0.4), (300, 0.05), (0, 0.7)]
        ]
        store = InMemoryEpisodeStore(episodes)
        before = {ep.id: ep.utility.score for ep in episodes}

        await DecayEngine(store, clock=lambda: NOW).run(list(await store.list_all()))

        for ep in await store.list_all():
            assert 0.0 <= ep.utility.score <= before[ep.id]

    @pytest.mark.asyncio
    async def test_recent_retrieval_counts_as_activity(self):
        episode = make_episode(
            timestamp_end=NOW - timedelta(days=60),
            retrieval_history=[RetrievalRecord(timestamp=NOW - timedelta(hours=3))],
            utility=Utility(retrieval_count=1),
        )
        store = InMemoryEpisodeStore([episode])

        result = await DecayEngine(store, clock=lambda: NOW).run(list(await store.list_all()))
        assert result.decayed == 0


class TestPropagationEngine:
    def test_is_source(self):
        assert PropagationEngine.is_source(
            make_episode(utility=Utility(retrieval_count=4, helpful_count=3))
        )
        assert not PropagationEngine.is_source(
            make_episode(utility=Utility(retrieval_count=1, helpful_count=1))
        )
        assert not PropagationEngine.is_source(
            make_episode(utility=Utility(retrieval_count=4, helpful_count=2))
        )

    @pytest.mark.asyncio
    async def test_single_pass_moves_neighbour_toward_source(self):
        source = make_episode(
            "Fix login token refresh",
            utility=Utility(score=0.8, retrieval_count=4, helpful_count=3),
        )
        target = make_episode("Refresh expired auth token")
        store = InMemoryEpisodeStore([source, target])
        oracle = oracle_for(
            source, [SearchHit(source.id, 1.0), SearchHit(target.id, 0.9)]
        )

        outcome = await PropagationEngine(store, oracle).run()

        assert outcome.propagated == 1
        assert outcome.used_fallback is False
        stored = await store.load(target.id)
        assert stored.utility.score == pytest.approx(0.5 + 0.1 * (0.9 * 0.8 * 0.9 - 0.5))
        assert (await store.load(source.id)).utility.score == 0.8

    @pytest.mark.asyncio
    async def test_below_threshold_neighbours_are_ignored(self):
        source = make_episode(utility=Utility(score=0.8, retrieval_count=4, helpful_count=3))
        target = make_episode("unrelated")
        store = InMemoryEpisodeStore([source, target])
        oracle = oracle_for(source, [SearchHit(target.id, 0.4)])

        outcome = await PropagationEngine(store, oracle).run()

        assert outcome.propagated == 0
        assert (await store.load(target.id)).utility.score is None

    @pytest.mark.asyncio
    async def test_converges_and_stays_in_bounds(self):
        source = make_episode(utility=Utility(score=1.0, retrieval_count=10, helpful_count=10))
        target = make_episode("neighbour", utility=Utility(score=0.0))
        store = InMemoryEpisodeStore([source, target])
        oracle = oracle_for(source, [SearchHit(target.id, 1.0)])
        engine = PropagationEngine(store, oracle)

        for _ in range(100):
            outcome = await engine.run()
            if outcome.propagated == 0:
                break
        else:
            pytest.fail("propagation did not converge")

        assert (await engine.run()).propagated == 0
        for ep in await store.list_all():
            assert 0.0 <= ep.utility.score <= 1.0

    @pytest.mark.asyncio
    async def test_project_filter_is_passed_to_oracle(self):
        source = make_episode(utility=Utility(score=0.8, retrieval_count=4, helpful_count=3))
        store = InMemoryEpisodeStore([source])
        oracle = oracle_for(source, [])

        await PropagationEngine(store, oracle).run(project="web-app")

        assert oracle.queries == [(source.search_text(), "web-app")]

    @pytest.mark.asyncio
    async def test_tag_fallback_pulls_low_members_up(self):
        a = make_episode("a", utility=Utility(score=0.9))
        b = make_episode("b", utility=Utility(score=0.9))
        c = make_episode("c", utility=Utility(score=0.2))
        for ep, task_type in [(a, TaskType.BUGFIX), (b, TaskType.FEATURE), (c, TaskType.TEST)]:
            ep.intent.domain = ["auth"]
            ep.intent.task_type = task_type
        store = InMemoryEpisodeStore([a, b, c])

        outcome = await PropagationEngine(store).run()

        assert outcome.used_fallback is True
        assert outcome.propagated == 1
        average = (0.9 + 0.9 + 0.2) / 3
        assert (await store.load(c.id)).utility.score == pytest.approx(0.2 + 0.1 * (average - 0.2))
        assert (await store.load(a.id)).utility.score == 0.9


class TestTemporalCreditAssignment:
    @pytest.mark.asyncio
    async def test_predecessors_of_success_are_credited(self):
        first = make_episode(
            "set up fixtures",
            timestamp_start=NOW - timedelta(minutes=50),
            timestamp_end=NOW - timedelta(minutes=40),
        )
        second = make_episode(
            "write failing test",
            timestamp_start=NOW - timedelta(minutes=30),
            timestamp_end=NOW - timedelta(minutes=20),
        )
        success = make_episode("fix bug", outcome=OutcomeStatus.SUCCESS)
        store = InMemoryEpisodeStore([first, second, success])

        result = await TemporalCreditAssignment(store).run()

        assert result.credited == 2
        assert (await store.load(second.id)).utility.score == pytest.approx(0.5 + 0.9 * 0.8 * 0.1)
        assert (await store.load(first.id)).utility.score == pytest.approx(0.5 + 0.9 * 0.6 * 0.1)
        assert (await store.load(success.id)).utility.score is None

    @pytest.mark.asyncio
    async def test_outside_lookback_or_unrelated_is_not_credited(self):
        stale = make_episode(
            "old work",
            timestamp_start=NOW - timedelta(hours=5),
            timestamp_end=NOW - timedelta(hours=4),
        )
        other = make_episode(
            "other project",
            project="mobile",
            timestamp_start=NOW - timedelta(minutes=20),
            timestamp_end=NOW - timedelta(minutes=10),
        )
        success = make_episode("fix bug", outcome=OutcomeStatus.SUCCESS)
        store = InMemoryEpisodeStore([stale, other, success])

        result = await TemporalCreditAssignment(store).run()

        assert result.credited == 0

    @pytest.mark.asyncio
    async def test_shared_tag_relates_projects(self):
        other = make_episode(
            "other project",
            project="mobile",
            timestamp_start=NOW - timedelta(minutes=20),
            timestamp_end=NOW - timedelta(minutes=10),
        )
        success = make_episode("fix bug", outcome=OutcomeStatus.SUCCESS)
        other.intent.domain = ["auth"]
        success.intent.domain = ["auth", "api"]
        store = InMemoryEpisodeStore([other, success])

        result = await TemporalCreditAssignment(store).run()
        assert result.credited == 1

    @pytest.mark.asyncio
    async def test_failures_earn_nothing(self):
        prev = make_episode(
            "prep",
            timestamp_start=NOW - timedelta(minutes=20),
            timestamp_end=NOW - timedelta(minutes=10),
        )
        failure = make_episode("attempt", outcome=OutcomeStatus.FAILURE)
        store = InMemoryEpisodeStore([prev, failure])

        assert (await TemporalCreditAssignment(store).run()).credited == 0

    @pytest.mark.asyncio
    async def test_several_successes_credit_a_predecessor_once(self):
        prev = make_episode(
            "prep",
            timestamp_start=NOW - timedelta(minutes=50),
            timestamp_end=NOW - timedelta(minutes=45),
        )
        successes = [
            make_episode(
                f"fix {minutes}",
                outcome=OutcomeStatus.SUCCESS,
                timestamp_start=NOW - timedelta(minutes=minutes),
                timestamp_end=NOW - timedelta(minutes=minutes),
            )
            for minutes in (40, 30, 20)
        ]
        store = InMemoryEpisodeStore([prev, *successes])

        await TemporalCreditAssignment(store).run()

        score = (await store.load(prev.id)).utility.score
        assert score == pytest.approx(0.5 + 0.9 * 0.8 * 0.1)
        assert score <= 0.5 + 0.9 * 0.1

    def test_credit_shrinks_with_distance(self):
        assign = TemporalCreditAssignment(InMemoryEpisodeStore())
        assert assign.credit(1) > assign.credit(2) > assign.credit(3)


class TestPruneEngine:
    @pytest.mark.asyncio
    async def test_helpful_feedback_vetoes_pruning(self):
        episode = make_episode(
            timestamp_start=NOW - timedelta(days=400),
            utility=Utility(score=0.01, retrieval_count=1, helpful_count=1),
        )
        store = InMemoryEpisodeStore([episode])

        result = await PruneEngine(store, clock=lambda: NOW).run(
            max_age_days=180, min_utility=0.05, dry_run=False
        )

        assert result.candidates == []
        assert result.retained == 1
        assert await store.load(episode.id) is not None

    @pytest.mark.asyncio
    async def test_reasons(self):
        old = make_episode("old", timestamp_start=NOW - timedelta(days=400))
        useless = make_episode("useless", utility=Utility(score=0.01, retrieval_count=5))
        store = InMemoryEpisodeStore([old, useless])

        result = await PruneEngine(store, clock=lambda: NOW).run(
            max_age_days=180, min_utility=0.05
        )

        reasons = {c.id: c.reasons for c in result.candidates}
        assert reasons[old.id] == ["age: 400 days"]
        assert reasons[useless.id] == ["utility: 1%"]

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(self):
        episode = make_episode(timestamp_start=NOW - timedelta(days=400))
        store = InMemoryEpisodeStore([episode])
        engine = PruneEngine(store, clock=lambda: NOW)

        dry = await engine.run(max_age_days=180)
        assert dry.dry_run is True
        assert len(dry.candidates) == 1
        assert dry.pruned == 0
        assert await store.load(episode.id) is not None

        real = await engine.run(max_age_days=180, dry_run=False)
        assert real.pruned == 1
        assert await store.load(episode.id) is None

    @pytest.mark.asyncio
    async def test_thresholds_from_config(self):
        old = make_episode("old", timestamp_start=NOW - timedelta(days=200))
        recent = make_episode("recent", timestamp_start=NOW - timedelta(days=20))
        store = InMemoryEpisodeStore([old, recent])

        result = await PruneEngine(store, clock=lambda: NOW).run_from_config(
            TemperaConfig.from_dict({}).storage
        )

        assert [c.id for c in result.candidates] == [old.id]

    @pytest.mark.asyncio
    async def test_no_thresholds_prunes_nothing(self):
        store = InMemoryEpisodeStore([make_episode(timestamp_start=NOW - timedelta(days=999))])
        result = await PruneEngine(store, clock=lambda: NOW).run()
        assert result.candidates == []

    @pytest.mark.asyncio
    async def test_unreadable_records_are_reported(self, tmp_path):
        store = FileEpisodeStore(tmp_path)
        await store.save(make_episode())
        broken = store.episodes_dir / "2026-01-01" / "session-deadbeef.json"
        broken.parent.mkdir(parents=True, exist_ok=True)
        broken.write_text("{not json")

        result = await PruneEngine(store, clock=lambda: NOW).run(max_age_days=30)

        assert result.retained == 1
        assert len(result.errors) == 1
        assert "session-deadbeef.json" in result.errors[0]


class TestUtilityPipeline:
    @pytest.mark.asyncio
    async def test_end_to_end_propagation(self):
        source = make_episode(
            "Fix login token refresh",
            utility=Utility(score=0.8, retrieval_count=4, helpful_count=3),
        )
        target = make_episode("Refresh expired auth token")
        store = InMemoryEpisodeStore([source, target])
        oracle = oracle_for(source, [SearchHit(target.id, 0.9)])

        result = await UtilityPipeline(store, oracle, clock=lambda: NOW).run(temporal=False)

        assert result.episodes_processed == 2
        assert result.propagated_episodes == 1
        assert result.decayed_episodes == 0
        assert result.episodes_updated == 2
        assert (await store.load(target.id)).utility.score == pytest.approx(0.5148)

    @pytest.mark.asyncio
    async def test_falls_back_without_oracle(self):
        store = InMemoryEpisodeStore([make_episode("a"), make_episode("b")])

        result = await UtilityPipeline(store, clock=lambda: NOW).run()

        assert result.used_fallback is True
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_decay_runs_before_propagation(self):
        source = make_episode(
            timestamp_end=NOW - timedelta(days=30),
            retrieval_history=[RetrievalRecord(timestamp=NOW - timedelta(days=30))],
            utility=Utility(score=0.8, retrieval_count=4, helpful_count=3),
        )
        store = InMemoryEpisodeStore([source])

        result = await UtilityPipeline(store, clock=lambda: NOW).run()

        assert result.decayed_episodes == 1
        assert (await store.load(source.id)).utility.score == pytest.approx(0.8 * 0.99**30)

    @pytest.mark.asyncio
    async def test_reports_unreadable_records(self, tmp_path):
        store = FileEpisodeStore(tmp_path)
        await store.save(make_episode("a"))
        broken = store.episodes_dir / "2026-01-01" / "session-00000000.json"
        broken.parent.mkdir(parents=True, exist_ok=True)
        broken.write_text("[]")

        result = await UtilityPipeline(store, clock=lambda: NOW).run()

        assert result.episodes_processed == 1
        assert len(result.errors) == 1
        assert "session-00000000.json" in result.errors[0]

    @pytest.mark.asyncio
    async def test_project_filter(self):
        store = InMemoryEpisodeStore(
            [make_episode("a", project="alpha"), make_episode("b", project="beta")]
        )

        result = await UtilityPipeline(store, clock=lambda: NOW).run(project="alpha")

        assert result.episodes_processed == 1
        assert result.to_dict()["episodes_processed"] == 1
