import pytest

import coach_stream.performance as performance_mod
from coach_stream.models import PerformanceMetrics
from coach_stream.performance import PerformanceTracker


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return PerformanceTracker(clock=clock)


def test_start_sets_connecting_and_zero_progress(tracker):
    tracker.start()
    m = tracker.metrics
    assert m.stage == "connecting"
    assert m.progress == 0
    assert m.first_token_time is None


def test_context_loaded_records_elapsed_and_advances_progress(tracker, clock):
    tracker.start()
    clock.advance(800)
    tracker.mark_context_loaded()
    m = tracker.metrics
    assert m.context_load_time == pytest.approx(800)
    assert m.progress == 25


def test_first_token_is_effect_once(tracker, clock):
    tracker.start()
    clock.advance(400)
    tracker.mark_first_token()
    clock.advance(900)
    tracker.mark_first_token()
    tracker.mark_first_token()
    m = tracker.metrics
    assert m.first_token_time == pytest.approx(400)
    assert m.stage == "streaming"
    assert m.progress == 50


def test_progress_is_monotonic_and_saturates(tracker):
    tracker.start()
    tracker.mark_first_token()
    tracker.mark_progress(50)
    assert tracker.metrics.progress == pytest.approx(70)
    tracker.mark_progress(10)
    assert tracker.metrics.progress == pytest.approx(70)
    tracker.mark_progress(10_000)
    assert tracker.metrics.progress == 90


def test_complete_computes_duration_and_rate(tracker, clock):
    tracker.start()
    clock.advance(500)
    tracker.mark_first_token()
    tracker.mark_progress(40)
    clock.advance(1500)
    tracker.mark_complete()
    m = tracker.metrics
    assert m.total_duration == pytest.approx(2000)
    assert m.tokens_per_second == pytest.approx(20)
    assert m.stage == "complete"
    assert m.progress == 100


def test_complete_warns_on_slow_turn_without_raising(tracker, clock, monkeypatch: pytest.MonkeyPatch):
    events = []
    monkeypatch.setattr(performance_mod, "log_event", lambda logger, level, event, **kw: events.append((event, kw)))

    tracker.start()
    clock.advance(3500)
    tracker.mark_first_token()
    tracker.mark_progress(5)
    clock.advance(500)
    tracker.mark_complete()

    assert [e for e, _ in events] == ["stream_performance_degraded"]
    assert events[0][1]["grade"] == "F"


def test_fast_turn_does_not_warn(tracker, clock, monkeypatch: pytest.MonkeyPatch):
    events = []
    monkeypatch.setattr(performance_mod, "log_event", lambda logger, level, event, **kw: events.append(event))

    tracker.start()
    clock.advance(300)
    tracker.mark_first_token()
    tracker.mark_progress(100)
    clock.advance(700)
    tracker.mark_complete()

    assert events == []
    assert tracker.grade() == "A"
    assert tracker.is_healthy


def test_errors_survive_start_but_not_reset(tracker):
    tracker.start()
    tracker.mark_error("boom")
    tracker.start()
    tracker.mark_error("boom again")
    assert tracker.metrics.streaming_error_count == 2
    assert tracker.metrics.last_error == "boom again"

    tracker.reset()
    assert tracker.metrics == PerformanceMetrics()


def test_complete_without_start_does_not_raise():
    tracker = PerformanceTracker()
    tracker.mark_complete()
    assert tracker.metrics.tokens_per_second == 0


@pytest.mark.parametrize("ftt, tps, expected", [
    (900, 31, "A"),
    (900, 30, "B"),
    (1500, 25, "B"),
    (2500, 16, "C"),
    (4000, 11, "D"),
    (4000, 10, "F"),
    (6000, 100, "F"),
    (None, 100, "F"),
])
def test_grade_thresholds(ftt, tps, expected):
    m = PerformanceMetrics(first_token_time=ftt, tokens_per_second=tps)
    assert m.grade() == expected


@pytest.mark.parametrize("ftt, tps, healthy", [
    (1999, 16, True),
    (2000, 16, False),
    (1000, 15, False),
    (None, 50, False),
])
def test_is_healthy_is_pure_function_of_snapshot(ftt, tps, healthy):
    m = PerformanceMetrics(first_token_time=ftt, tokens_per_second=tps)
    assert m.is_healthy is healthy
    assert m.is_healthy is healthy
