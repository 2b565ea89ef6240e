# core/session_timeout.py
"""
Inactivity guard for authenticated sessions

Two single-shot timers run relative to the last activity: a warning at
(window - lead) and a forced sign-out at (window). Any recognised activity
cancels both and schedules them again. The guard is only armed while a
session exists and stop() releases every timer.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = ('mousedown', 'mousemove', 'keypress', 'scroll', 'touchstart', 'click')

def warning_notice(lead: timedelta) -> dict:
    """Notice shown when the warning timer fires, naming the time left"""
    seconds = int(lead.total_seconds())
    if seconds >= 60 and seconds % 60 == 0:
        amount, unit = seconds // 60, 'minute'
    else:
        amount, unit = seconds, 'second'
    plural = '' if amount == 1 else 's'
    return {
        'title': 'Session Expiring Soon',
        'description': f'Your session will expire in {amount} {unit}{plural} due to inactivity. '
                       'Click anywhere to extend.',
    }

EXPIRED_NOTICE = {
    'title': 'Session Expired',
    'description': 'You have been logged out due to inactivity.',
    'variant': 'destructive',
}


class ActivityState(Enum):
    """Where a session sits relative to its inactivity window"""
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionTimeoutConfig:
    window: timedelta = timedelta(minutes=60)
    warning_lead: timedelta = timedelta(minutes=5)

    def __post_init__(self):
        if self.warning_lead >= self.window:
            raise ValueError("warning_lead must be shorter than the inactivity window")

    @property
    def warning_after(self) -> timedelta:
        return self.window - self.warning_lead


class TimerScheduler:
    """Scheduler backed by threading.Timer; handles are the Timer objects"""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: threading.Timer) -> None:
        handle.cancel()


class SessionTimeoutGuard:
    """
    Sign a session out after inactivity, warning shortly before

    Args:
        sign_out: Called once when the window elapses
        notify: Receives the user-visible notice dicts
        config: Window and warning lead
        scheduler: Object with schedule(delay_seconds, callback) and cancel(handle)
    """

    def __init__(self, sign_out: Callable[[], Any], notify: Callable[[dict], Any],
                 config: Optional[SessionTimeoutConfig] = None, scheduler=None):
        self.sign_out = sign_out
        self.notify = notify
        self.config = config or SessionTimeoutConfig()
        self.scheduler = scheduler or TimerScheduler()

        self._lock = threading.RLock()
        self._warning_handle = None
        self._expiry_handle = None
        self._generation = 0
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self, session) -> bool:
        """
        Arm the guard for an existing session

        Returns:
            True if the guard is armed after the call
        """
        if not session:
            return False
        with self._lock:
            if self._active:
                return True
            self._active = True
            self._schedule()
        logger.debug("Session timeout guard armed")
        return True

    def record_activity(self, event: str) -> bool:
        """Reset timers on a recognised activity signal"""
        if event not in ACTIVITY_EVENTS:
            return False
        return self.reset()

    def reset(self) -> bool:
        with self._lock:
            if not self._active:
                return False
            self._schedule()
        return True

    def stop(self) -> None:
        """Cancel pending timers; safe to call more than once"""
        with self._lock:
            self._cancel()
            self._active = False

    def _schedule(self) -> None:
        self._cancel()
        # A timer that already fired cannot be cancelled; stale callbacks see an old generation
        self._generation += 1
        generation = self._generation
        self._warning_handle = self.scheduler.schedule(
            self.config.warning_after.total_seconds(), lambda: self._on_warning(generation)
        )
        self._expiry_handle = self.scheduler.schedule(
            self.config.window.total_seconds(), lambda: self._on_expiry(generation)
        )

    def _cancel(self) -> None:
        if self._warning_handle is not None:
            self.scheduler.cancel(self._warning_handle)
            self._warning_handle = None
        if self._expiry_handle is not None:
            self.scheduler.cancel(self._expiry_handle)
            self._expiry_handle = None

    def _on_warning(self, generation: int) -> None:
        with self._lock:
            if not self._active or generation != self._generation:
                return
            self._warning_handle = None
        self.notify(warning_notice(self.config.warning_lead))

    def _on_expiry(self, generation: int) -> None:
        with self._lock:
            if not self._active or generation != self._generation:
                return
            self._expiry_handle = None
            self._cancel()
            self._active = False
        logger.info("Session signed out after inactivity")
        try:
            self.sign_out()
        finally:
            self.notify(EXPIRED_NOTICE)


def evaluate_activity(last_activity: Optional[datetime], now: datetime,
                      config: SessionTimeoutConfig) -> ActivityState:
    """
    Classify a request-based session by its last recorded activity

    A session with no recorded activity counts as active; the caller stamps
    it on the way out.
    """
    if last_activity is None:
        return ActivityState.ACTIVE
    idle = now - last_activity
    if idle >= config.window:
        return ActivityState.EXPIRED
    if idle >= config.warning_after:
        return ActivityState.WARNING
    return ActivityState.ACTIVE
