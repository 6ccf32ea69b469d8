"""
Loop guard tests: pattern detection, streaks, backoff and cooldown
"""
import pytest

from fakes import SleepRecorder


def _trace(*items):
    from agent_engine.loop_guard import TraceItem
    return [TraceItem(title=title, status=status, tool="playwright", url=url) for title, status, url in items]


class TestDetectLoopPattern:

    def test_needs_three_outcomes(self):
        from agent_engine.loop_guard import detect_loop_pattern
        assert detect_loop_pattern(_trace(("Click next", "failed", None), ("Click next", "failed", None))) is None

    def test_repeat_same_step_ignores_case(self):
        from agent_engine.loop_guard import detect_loop_pattern
        signal = detect_loop_pattern(_trace(
            ("Click next", "completed", "https://a/"),
            ("click NEXT", "completed", "https://a/2"),
            ("Click next", "failed", "https://a/3"),
        ))
        assert signal.pattern == "repeat-same-step"
        assert signal.statuses == ["completed", "completed", "failed"]

    def test_alternating_steps(self):
        from agent_engine.loop_guard import detect_loop_pattern
        signal = detect_loop_pattern(_trace(
            ("Open menu", "completed", None),
            ("Close menu", "completed", None),
            ("Open menu", "completed", None),
            ("Close menu", "completed", None),
        ))
        assert signal.pattern == "alternate-two-steps"
        assert len(signal.titles) == 4

    def test_same_url_failures(self):
        from agent_engine.loop_guard import detect_loop_pattern
        signal = detect_loop_pattern(_trace(
            ("Search", "failed", "https://shop/"),
            ("Filter", "completed", "https://shop/"),
            ("Sort", "failed", "https://shop/"),
        ))
        assert signal.pattern == "same-url-failures"

    def test_same_url_with_one_failure_is_fine(self):
        from agent_engine.loop_guard import detect_loop_pattern
        assert detect_loop_pattern(_trace(
            ("Search", "completed", "https://shop/"),
            ("Filter", "completed", "https://shop/"),
            ("Sort", "failed", "https://shop/"),
        )) is None


class TestLoopGuard:

    def test_review_after_threshold_then_cooldown(self):
        from agent_engine.loop_guard import REVIEW_COOLDOWN, LoopGuard
        guard = LoopGuard(threshold=2)
        outcomes = [guard.record("Click next", "failed", "playwright", None) for _ in range(3)]

        assert outcomes[1] is None
        assert guard.streak == 1
        assert not guard.should_review(outcomes[2], replans_left=True)

        signal = guard.record("Click next", "failed", "playwright", None)
        assert guard.streak == 2
        assert guard.should_review(signal, replans_left=True)
        assert not guard.should_review(signal, replans_left=False)

        guard.mark_reviewed()
        assert guard.cooldown == REVIEW_COOLDOWN
        signal = guard.record("Click next", "failed", "playwright", None)
        assert not guard.should_review(signal, replans_left=True)
        signal = guard.record("Click next", "failed", "playwright", None)
        assert guard.should_review(signal, replans_left=True)

    def test_break_in_pattern_resets_streak_and_backoff(self):
        from agent_engine.loop_guard import LoopGuard
        guard = LoopGuard(threshold=1)
        for _ in range(3):
            guard.record("Click next", "failed", "playwright", None)
        guard.next_backoff_ms()

        assert guard.record("Read the results", "completed", "playwright", "https://a/") is None
        assert guard.streak == 0
        assert guard.backoff_ms == 0

    def test_backoff_doubles_up_to_cap(self):
        from agent_engine.loop_guard import LoopGuard
        guard = LoopGuard(backoff_base_ms=2000, backoff_max_ms=5000)
        assert [guard.next_backoff_ms() for _ in range(4)] == [2000, 4000, 5000, 5000]

    def test_first_trigger_backs_off_by_base_after_a_long_streak(self):
        from agent_engine.loop_guard import LoopGuard
        guard = LoopGuard(threshold=1, backoff_base_ms=2000, backoff_max_ms=12000)
        for _ in range(7):
            guard.record("Click next", "failed", "playwright", None)

        assert guard.streak == 5
        assert guard.next_backoff_ms() == 2000
        assert guard.next_backoff_ms() == 4000

    @pytest.mark.asyncio
    async def test_backoff_sleeps_in_seconds(self):
        from agent_engine.loop_guard import LoopGuard
        sleep = SleepRecorder()
        guard = LoopGuard(backoff_base_ms=1500, sleep=sleep)

        assert await guard.backoff() == 1500
        assert sleep.delays == [1.5]
