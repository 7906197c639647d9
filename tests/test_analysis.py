from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from fakes import FakeScorer, sample_record
from medula_rx_check.analysis import AnalysisOrchestrator
from medula_rx_check.cache import LocalCache
from medula_rx_check.errors import AnalysisFailedError, RecordNotFoundError
from medula_rx_check.events import AnalysisCompleted, AnalysisProgress, EventBus, UnitConsumed
from medula_rx_check.models import MedicineLine, PrescriptionRecord


@pytest.fixture
def cache(tmp_path: Path):
    c = LocalCache(str(tmp_path / "cache.db"))
    c.put_record(sample_record("12345"))
    yield c
    c.close()


def _run(coro):
    return asyncio.run(coro)


def test_analyze_all_then_force_one_keeps_the_other(cache: LocalCache) -> None:
    scorer = FakeScorer()
    orch = AnalysisOrchestrator(cache=cache, scorer=scorer)

    first = _run(orch.analyze("12345", []))

    assert sorted(first.computed) == ["111", "222"]
    assert first.from_cache == []
    assert first.ok
    before_222 = cache.get_analysis("12345", "222")
    before_111 = cache.get_analysis("12345", "111")
    assert before_111 is not None and before_222 is not None

    second = _run(orch.analyze("12345", ["111"], force=True))

    assert second.computed == ["111"]
    assert set(second.results) == {"111"}
    after_111 = cache.get_analysis("12345", "111")
    after_222 = cache.get_analysis("12345", "222")
    assert after_111 is not None and after_222 is not None
    assert after_111.result.processed_at > before_111.result.processed_at
    assert after_222.result.processed_at == before_222.result.processed_at
    assert after_222.cached_at == before_222.cached_at
    assert scorer.calls.count("111") == 2
    assert scorer.calls.count("222") == 1


def test_cached_results_are_reused_without_scoring(cache: LocalCache) -> None:
    scorer = FakeScorer()
    orch = AnalysisOrchestrator(cache=cache, scorer=scorer)
    _run(orch.analyze("12345"))
    scorer.calls.clear()

    outcome = _run(orch.analyze("12345"))

    assert scorer.calls == []
    assert sorted(outcome.from_cache) == ["111", "222"]
    assert outcome.computed == []
    assert set(outcome.results) == {"111", "222"}


def test_partial_failure_keeps_successes(cache: LocalCache) -> None:
    bus = EventBus()
    consumed: list[UnitConsumed] = []
    bus.subscribe(UnitConsumed, consumed.append)
    orch = AnalysisOrchestrator(cache=cache, scorer=FakeScorer(fail={"222"}), events=bus)

    outcome = _run(orch.analyze("12345"))

    assert outcome.computed == ["111"]
    assert outcome.failed == ["222"]
    assert "HTTP 500" in outcome.errors["222"]
    assert outcome.partial
    assert not outcome.ok
    outcome.raise_for_total_failure()

    assert cache.get_analysis("12345", "111") is not None
    assert cache.get_analysis("12345", "222") is None
    assert [e.barkod for e in consumed] == ["111"]


def test_only_uncached_codes_are_computed(cache: LocalCache) -> None:
    scorer = FakeScorer()
    orch = AnalysisOrchestrator(cache=cache, scorer=scorer)
    _run(orch.analyze("12345", ["111"]))
    before = cache.get_analysis("12345", "111")
    assert before is not None

    outcome = _run(orch.analyze("12345", ["111", "222"]))

    assert outcome.computed == ["222"]
    assert outcome.from_cache == ["111"]
    assert outcome.results["111"].processed_at == before.result.processed_at
    assert scorer.calls == ["111", "222"]


def test_two_failures_never_discard_successes(tmp_path: Path) -> None:
    cache = LocalCache(str(tmp_path / "cache.db"))
    try:
        cache.put_record(
            PrescriptionRecord(
                recete_no="24680",
                medicines=[MedicineLine(barkod=code, is_report_required=True) for code in ("a", "b", "c", "d")],
            )
        )
        orch = AnalysisOrchestrator(cache=cache, scorer=FakeScorer(fail={"b", "d"}))

        outcome = _run(orch.analyze("24680"))

        assert sorted(outcome.computed) == ["a", "c"]
        assert sorted(outcome.results) == ["a", "c"]
        assert sorted(outcome.failed) == ["b", "d"]
        assert set(outcome.errors) == {"b", "d"}
    finally:
        cache.close()


def test_total_failure_raises_when_asked(cache: LocalCache) -> None:
    orch = AnalysisOrchestrator(cache=cache, scorer=FakeScorer(fail={"111", "222"}))

    outcome = _run(orch.analyze("12345"))

    assert sorted(outcome.failed) == ["111", "222"]
    with pytest.raises(AnalysisFailedError) as excinfo:
        outcome.raise_for_total_failure()
    assert len(excinfo.value.errors) == 2


def test_concurrency_is_bounded(tmp_path: Path) -> None:
    cache = LocalCache(str(tmp_path / "cache.db"))
    try:
        record = PrescriptionRecord(
            recete_no="77777",
            medicines=[MedicineLine(barkod=str(900 + i), is_report_required=True) for i in range(8)],
        )
        cache.put_record(record)
        scorer = FakeScorer(delay_s=0.01)
        orch = AnalysisOrchestrator(cache=cache, scorer=scorer, concurrency=3)

        outcome = _run(orch.analyze("77777"))

        assert len(outcome.computed) == 8
        assert 1 < scorer.max_in_flight <= 3
    finally:
        cache.close()


def test_codes_without_report_are_skipped(cache: LocalCache) -> None:
    scorer = FakeScorer()
    orch = AnalysisOrchestrator(cache=cache, scorer=scorer)

    outcome = _run(orch.analyze("12345", ["111", "333", "nope"]))

    assert outcome.computed == ["111"]
    assert outcome.skipped == ["333", "nope"]
    assert scorer.calls == ["111"]


def test_nothing_to_analyze(cache: LocalCache) -> None:
    bus = EventBus()
    completed: list[AnalysisCompleted] = []
    bus.subscribe(AnalysisCompleted, completed.append)
    scorer = FakeScorer()
    orch = AnalysisOrchestrator(cache=cache, scorer=scorer, events=bus)

    outcome = _run(orch.analyze("12345", ["333"]))

    assert outcome.nothing_to_analyze
    assert outcome.ok
    assert scorer.calls == []
    assert len(completed) == 1
    assert completed[0].computed == []


def test_progress_events_count_up(cache: LocalCache) -> None:
    bus = EventBus()
    progress: list[AnalysisProgress] = []
    bus.subscribe(AnalysisProgress, progress.append)
    orch = AnalysisOrchestrator(cache=cache, scorer=FakeScorer(fail={"222"}), events=bus)

    _run(orch.analyze("12345"))

    assert [p.done for p in progress] == [1, 2]
    assert all(p.total == 2 for p in progress)
    assert {p.barkod: p.ok for p in progress} == {"111": True, "222": False}


def test_uncached_record_uses_fetcher(tmp_path: Path) -> None:
    cache = LocalCache(str(tmp_path / "cache.db"))
    fetched: list[str] = []

    def fetcher(recete_no: str) -> PrescriptionRecord:
        fetched.append(recete_no)
        return sample_record(recete_no)

    try:
        orch = AnalysisOrchestrator(cache=cache, scorer=FakeScorer(), fetcher=fetcher)
        outcome = _run(orch.analyze("54321"))
        assert fetched == ["54321"]
        assert sorted(outcome.computed) == ["111", "222"]

        bare = AnalysisOrchestrator(cache=cache, scorer=FakeScorer())
        with pytest.raises(RecordNotFoundError):
            _run(bare.analyze("00000"))
    finally:
        cache.close()


def test_invalid_arguments() -> None:
    with pytest.raises(ValueError):
        AnalysisOrchestrator(cache=None, scorer=FakeScorer(), concurrency=0)  # type: ignore[arg-type]


def test_unexpected_scorer_error_is_recorded_per_item(cache: LocalCache) -> None:
    bus = EventBus()
    completed: list[AnalysisCompleted] = []
    bus.subscribe(AnalysisCompleted, completed.append)
    scorer = FakeScorer(crash={"222": RuntimeError("connection pool exhausted")})
    orch = AnalysisOrchestrator(cache=cache, scorer=scorer, events=bus)

    outcome = _run(orch.analyze("12345"))

    assert outcome.computed == ["111"]
    assert outcome.failed == ["222"]
    assert outcome.errors["222"] == "connection pool exhausted"
    assert outcome.partial
    assert cache.get_analysis("12345", "111") is not None
    assert completed[0].failed == ["222"]


def test_cache_write_failure_keeps_result_and_credit(cache: LocalCache, monkeypatch: pytest.MonkeyPatch) -> None:
    bus = EventBus()
    consumed: list[UnitConsumed] = []
    bus.subscribe(UnitConsumed, consumed.append)

    def broken_put(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(cache, "put_analysis", broken_put)
    orch = AnalysisOrchestrator(cache=cache, scorer=FakeScorer(), events=bus)

    outcome = _run(orch.analyze("12345", ["111"]))

    assert outcome.computed == ["111"]
    assert "111" in outcome.results
    assert [e.barkod for e in consumed] == ["111"]
