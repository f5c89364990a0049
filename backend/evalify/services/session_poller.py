"""
Client-side eligibility poller for a quiz that is about to open.

The poller stays idle until the access window or the quiz start is close, then
re-fetches eligibility every few seconds until the boundary is crossed, so a
waiting student is let in without refreshing.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from evalify.config import get_settings
from evalify.errors import EligibilityFetchError
from evalify.models.quiz import Eligibility
from evalify.utils.clock import Clock, ensure_utc
from evalify.utils.state_machine import QuizLifecycle, QuizLifecycleState

logger = logging.getLogger(__name__)

ACCESS_WINDOW = timedelta(minutes=5)
ACCESS_LEAD = timedelta(minutes=2)
START_LEAD = timedelta(minutes=1)
POLL_INTERVAL_SECONDS = 5.0
MAX_CONSECUTIVE_FAILURES = 6

Fetcher = Callable[[], Awaitable[Eligibility]]
ChangeCallback = Callable[[Eligibility], Any]
ErrorCallback = Callable[[Exception], Any]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class WatchWindow:
    """A stretch of time during which the poller re-fetches eligibility"""

    kind: str  # "access_opens" or "quiz_start"
    opens_at: datetime
    boundary: datetime

    def contains(self, now: datetime) -> bool:
        return self.opens_at <= now < self.boundary


def watch_windows(
    start_time: datetime, access_window: timedelta = ACCESS_WINDOW
) -> List[WatchWindow]:
    start_time = ensure_utc(start_time)
    access_opens = start_time - access_window
    return [
        WatchWindow("access_opens", access_opens - ACCESS_LEAD, access_opens),
        WatchWindow("quiz_start", start_time - START_LEAD, start_time),
    ]


def next_watch_window(
    start_time: datetime,
    now: datetime,
    access_window: timedelta = ACCESS_WINDOW,
) -> Optional[WatchWindow]:
    """The window that is open now or opens next, None once the quiz has started"""
    now = ensure_utc(now)
    for window in watch_windows(start_time, access_window):
        if now < window.boundary:
            return window
    return None


async def _call(callback: Optional[Callable[..., Any]], *args) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if asyncio.iscoroutine(outcome):
        await outcome


class SessionPoller:
    """Owns at most one watch task for the view that created it.

    Use it as an async context manager, or call close() on teardown, so no
    timer outlives the view.
    """

    def __init__(
        self,
        clock: Clock,
        fetcher: Fetcher,
        on_change: Optional[ChangeCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        access_window: timedelta = ACCESS_WINDOW,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._clock = clock
        self._fetcher = fetcher
        self._on_change = on_change
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._access_window = access_window
        self._max_failures = max_failures
        self._sleep = sleep

        self._task: Optional[asyncio.Task] = None
        self._quiz_id: Optional[str] = None
        self._issued = 0
        self._applied = 0
        self._failures = 0
        self._current: Optional[Eligibility] = None
        self.polls = 0

    @classmethod
    def from_settings(
        cls, clock: Clock, fetcher: Fetcher, **kwargs
    ) -> "SessionPoller":
        settings = get_settings()
        kwargs.setdefault("poll_interval", settings.poll_interval_seconds)
        kwargs.setdefault("access_window", settings.access_window)
        return cls(clock, fetcher, **kwargs)

    async def __aenter__(self) -> "SessionPoller":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def current(self) -> Optional[Eligibility]:
        return self._current

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def watch(
        self,
        quiz_id: str,
        start_time: datetime,
        initial: Optional[Eligibility] = None,
    ) -> asyncio.Task:
        """Start watching a quiz, cancelling any previous watch first"""
        self.cancel()
        self._quiz_id = quiz_id
        self._failures = 0
        if initial is not None:
            self._current = initial
        self._task = asyncio.create_task(
            self._run(quiz_id, ensure_utc(start_time)),
            name=f"session-poller-{quiz_id}",
        )
        logger.info(
            "Poller watching quiz %s",
            quiz_id,
            extra={"event_type": "poller_watch", "quiz_id": quiz_id},
        )
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug(
                "Poller watch cancelled for quiz %s",
                self._quiz_id,
                extra={"event_type": "poller_cancel", "quiz_id": self._quiz_id},
            )

    async def close(self) -> None:
        """Cancel the watch task and wait for it to finish unwinding"""
        task = self._task
        self.cancel()
        self._task = None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def refresh(self) -> Optional[Eligibility]:
        """Fetch eligibility once and apply it if no newer fetch already landed"""
        self._issued += 1
        sequence = self._issued
        eligibility = await self._fetcher()
        if self._apply(sequence, eligibility):
            await _call(self._on_change, eligibility)
        return self._current

    def _apply(self, sequence: int, eligibility: Eligibility) -> bool:
        """Record a fetched result, returning True when the visible state changed"""
        if sequence <= self._applied:
            logger.debug(
                "Discarding stale eligibility #%d for quiz %s (applied #%d)",
                sequence,
                self._quiz_id,
                self._applied,
            )
            return False

        previous = self._current
        if previous is not None and self._is_regression(previous, eligibility):
            logger.warning(
                "Ignoring eligibility regression for quiz %s: %s -> %s",
                self._quiz_id,
                previous.state.value,
                eligibility.state.value,
                extra={"event_type": "poller_regression", "quiz_id": self._quiz_id},
            )
            return False

        self._applied = sequence
        self._current = eligibility
        changed = previous is None or (previous.state, previous.can_enter) != (
            eligibility.state,
            eligibility.can_enter,
        )
        if changed:
            logger.info(
                "Eligibility changed for quiz %s: state=%s can_enter=%s",
                self._quiz_id,
                eligibility.state.value,
                eligibility.can_enter,
                extra={"event_type": "poller_state_change", "quiz_id": self._quiz_id},
            )
        return changed

    @staticmethod
    def _is_regression(previous: Eligibility, new: Eligibility) -> bool:
        if QuizLifecycle.is_regression(previous.state, new.state):
            return True
        # Losing entry while still live must come with a reason
        return (
            previous.state == QuizLifecycleState.LIVE
            and new.state == QuizLifecycleState.LIVE
            and previous.can_enter
            and not new.can_enter
            and not new.reasons
        )

    async def _poll_once(self) -> None:
        self.polls += 1
        try:
            await self.refresh()
        except EligibilityFetchError as exc:
            self._failures += 1
            logger.warning(
                "Eligibility fetch failed for quiz %s (%d/%d): %s",
                self._quiz_id,
                self._failures,
                self._max_failures,
                exc,
                extra={"event_type": "poller_fetch_failed", "quiz_id": self._quiz_id},
            )
            if self._failures >= self._max_failures:
                self._failures = 0
                await _call(self._on_error, exc)
            return

        self._failures = 0

    async def _run(self, quiz_id: str, start_time: datetime) -> None:
        try:
            while True:
                now = self._clock.now()
                window = next_watch_window(start_time, now, self._access_window)
                if window is None:
                    break

                if not window.contains(now):
                    # Idle until the window opens; no fetches meanwhile
                    await self._sleep((window.opens_at - now).total_seconds())
                    continue

                await self._poll_once()
                if self._clock.now() >= window.boundary:
                    continue
                await self._sleep(self._poll_interval)
                if self._clock.now() >= window.boundary:
                    # Boundary crossed while sleeping, fetch once more on the far side
                    await self._poll_once()
        except asyncio.CancelledError:
            logger.debug("Poller task for quiz %s cancelled", quiz_id)
            raise
        logger.info(
            "Poller finished for quiz %s",
            quiz_id,
            extra={"event_type": "poller_finished", "quiz_id": quiz_id},
        )
