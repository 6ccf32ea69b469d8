"""
Loop guard

Watches the trailing window of step outcomes for repetitive behaviour and
decides when a loop-guard review is due. The review itself is a planner
call made by the step runner; this module only owns detection, the signal
streak, exponential backoff and the post-review cooldown.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional, Sequence

from loguru import logger

from .models import LoopSignal

TRACE_WINDOW = 6
REVIEW_COOLDOWN = 2


@dataclass
class TraceItem:
    title: str
    status: str
    tool: Optional[str]
    url: Optional[str]


def detect_loop_pattern(recent: Sequence[TraceItem]) -> Optional[LoopSignal]:
    """
    Detect a loop in the trailing outcomes; first matching pattern wins.

    Patterns:
        repeat-same-step: last three titles equal (case-insensitive)
        alternate-two-steps: last four titles go A, B, A, B
        same-url-failures: last three urls equal with at least two failures
    """
    if len(recent) < 3:
        return None
    last_three = list(recent[-3:])
    last_four = list(recent[-4:])
    titles_three = [item.title for item in last_three]
    urls_three = [item.url for item in last_three]
    statuses_three = [item.status for item in last_three]

    if len({title.lower() for title in titles_three}) == 1:
        return LoopSignal(
            reason="Repeated the same step multiple times.",
            pattern="repeat-same-step",
            titles=titles_three,
            urls=urls_three,
            statuses=statuses_three,
        )

    if len(last_four) == 4:
        a, b, c, d = [item.title.lower() for item in last_four]
        if a == c and b == d and a != b:
            return LoopSignal(
                reason="Alternating between the same two steps.",
                pattern="alternate-two-steps",
                titles=[item.title for item in last_four],
                urls=[item.url for item in last_four],
                statuses=[item.status for item in last_four],
            )

    stable_url = (
        urls_three[0]
        and all(url and url == urls_three[0] for url in urls_three)
        and statuses_three.count("failed") >= 2
    )
    if stable_url:
        return LoopSignal(
            reason="Repeated failures on the same URL.",
            pattern="same-url-failures",
            titles=titles_three,
            urls=urls_three,
            statuses=statuses_three,
        )
    return None


class LoopGuard:
    """
    Per-run loop detection state

    Usage:
        signal = guard.record(title, status, tool, url)
        if guard.should_review(signal, replans_left):
            await guard.backoff()
            ... planner review ...
            guard.mark_reviewed()
    """

    def __init__(
        self,
        threshold: int = 2,
        backoff_base_ms: int = 2000,
        backoff_max_ms: int = 12000,
        window: int = TRACE_WINDOW,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.threshold = threshold
        self.backoff_base_ms = max(0, backoff_base_ms)
        self.backoff_max_ms = max(self.backoff_base_ms, backoff_max_ms)
        self.trace: Deque[TraceItem] = deque(maxlen=window)
        self.cooldown = 0
        self.streak = 0
        self.backoff_ms = 0
        self._sleep = sleep

    def record(self, title: str, status: str, tool: Optional[str], url: Optional[str]) -> Optional[LoopSignal]:
        """Record one step outcome and return the loop signal, if any."""
        self.cooldown = max(0, self.cooldown - 1)
        self.trace.append(TraceItem(title=title, status=status, tool=tool, url=url))
        signal = detect_loop_pattern(list(self.trace))
        if signal:
            self.streak += 1
        else:
            self.streak = 0
            self.backoff_ms = 0
        return signal

    def should_review(self, signal: Optional[LoopSignal], replans_left: bool) -> bool:
        return (
            signal is not None
            and self.streak >= self.threshold
            and self.cooldown == 0
            and replans_left
        )

    def next_backoff_ms(self) -> int:
        """
        Advance the backoff once per triggered review, not per streak step:
        base on the first trigger, then min(previous * 2, max). A broken
        streak resets it to base.
        """
        if self.backoff_ms:
            self.backoff_ms = min(self.backoff_ms * 2, self.backoff_max_ms)
        else:
            self.backoff_ms = self.backoff_base_ms
        return self.backoff_ms

    async def backoff(self) -> int:
        """Sleep for the next backoff interval; returns the interval in ms."""
        delay_ms = self.next_backoff_ms()
        if delay_ms > 0:
            logger.warning(f"🔁 [LoopGuard] Backing off {delay_ms}ms (streak={self.streak})")
            await self._sleep(delay_ms / 1000)
        return delay_ms

    def mark_reviewed(self) -> None:
        self.cooldown = REVIEW_COOLDOWN
