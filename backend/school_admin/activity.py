"""Idle tracking for signed-in sessions.

This is a convenience for the person at the keyboard, not a security
control: the access token lifetime enforced by the backend is what really
ends a session.
"""
import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta, timezone

from .config import settings

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset({"pointer", "key", "scroll", "touch"})

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityTracker:
    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self.last_activity: datetime = clock()
        self._listeners: list[Callable[[datetime], None]] = []

    def record(self, kind: str = "pointer", at: datetime | None = None) -> bool:
        if kind not in ACTIVITY_EVENTS:
            logger.debug(f"Ignoring non-interaction event {kind!r}")
            return False
        self.touch(at)
        return True

    def touch(self, at: datetime | None = None) -> None:
        self.last_activity = at or self._clock()
        for listener in list(self._listeners):
            listener(self.last_activity)

    def subscribe(self, listener: Callable[[datetime], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class TimeoutState(str, enum.Enum):
    IDLE_TRACKING = "idle_tracking"
    WARNING = "warning"
    EXPIRED = "expired"


def format_remaining(remaining: timedelta) -> str:
    total_seconds = max(0, int(remaining.total_seconds()))
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"


class SessionTimeoutMonitor:
    """Signs the session out after a fixed idle period.

    The state is derived from ``now - last_activity``: below the warning
    threshold it is idle-tracking, inside the warning window it is warning,
    and at or past the timeout it expires. Expiry calls ``on_expire`` once
    and then ``on_notice`` with a message for the user.
    """

    def __init__(
        self,
        tracker: ActivityTracker,
        on_expire: Callable[[], Awaitable[None]],
        *,
        on_notice: Callable[[str], None] | None = None,
        timeout: timedelta | None = None,
        warning: timedelta | None = None,
        check_interval: float | None = None,
        clock: Clock = utcnow,
    ):
        self.tracker = tracker
        self.timeout = timeout or timedelta(minutes=settings.session_timeout_minutes)
        self.warning = warning or timedelta(minutes=settings.session_warning_minutes)
        self.check_interval = min(check_interval or settings.timeout_check_seconds, 60)
        self._on_expire = on_expire
        self._on_notice = on_notice
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.state = TimeoutState.IDLE_TRACKING
        self._unsubscribe = tracker.subscribe(self._on_activity)

    def _on_activity(self, _: datetime) -> None:
        self.state = TimeoutState.IDLE_TRACKING

    def time_remaining(self, now: datetime | None = None) -> timedelta:
        elapsed = (now or self._clock()) - self.tracker.last_activity
        return max(timedelta(0), self.timeout - elapsed)

    def formatted_remaining(self, now: datetime | None = None) -> str:
        return format_remaining(self.time_remaining(now))

    def evaluate(self, now: datetime | None = None) -> TimeoutState:
        elapsed = (now or self._clock()) - self.tracker.last_activity
        if elapsed >= self.timeout:
            return TimeoutState.EXPIRED
        if elapsed >= self.timeout - self.warning:
            return TimeoutState.WARNING
        return TimeoutState.IDLE_TRACKING

    async def tick(self, now: datetime | None = None) -> TimeoutState:
        previous = self.state
        self.state = self.evaluate(now)
        if self.state is TimeoutState.EXPIRED and previous is not TimeoutState.EXPIRED:
            logger.info("Session idle timeout reached, signing out")
            await self._on_expire()
            if self._on_notice:
                self._on_notice("You have been logged out due to inactivity.")
        return self.state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.state = TimeoutState.IDLE_TRACKING
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                if await self.tick() is TimeoutState.EXPIRED:
                    return
            except Exception:
                logger.exception("Session timeout check failed")

    def cancel(self) -> asyncio.Task | None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return None
        task.cancel()
        return task

    async def stop(self) -> None:
        task = self.cancel()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def close(self) -> None:
        self._unsubscribe()

    async def countdown(self) -> AsyncIterator[tuple[TimeoutState, str]]:
        """Yield the state and "m:ss" remaining once per display tick."""
        while True:
            state = self.evaluate()
            yield state, self.formatted_remaining()
            if state is TimeoutState.EXPIRED:
                return
            await asyncio.sleep(settings.countdown_tick_seconds)
