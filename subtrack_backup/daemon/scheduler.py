"""
Automatic backup scheduling.

Provides:
- should_run_auto_backup(), the pure decision of whether a backup is due
- BackupScheduler, which feeds periodic timer ticks and app foreground
  transitions into a single consumer so that at most one check runs at a time
- Signal handling for running the scheduler as a foreground watcher process
"""

from __future__ import annotations

import logging
import queue
import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from subtrack_backup.utils.clock import Clock, SystemClock, ensure_utc

logger = logging.getLogger(__name__)


class BackupFrequency(str, Enum):
    """How often automatic backups run."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


# Hours between automatic backups for each frequency
FREQUENCY_INTERVAL_HOURS = {
    BackupFrequency.HOURLY: 1,
    BackupFrequency.DAILY: 24,
    BackupFrequency.WEEKLY: 168,
}

# How long the timer waits before re-reading a disabled or manual policy
IDLE_POLL_SECONDS = 3600


class AppState(str, Enum):
    """Application lifecycle states."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


@dataclass
class AutoBackupPolicy:
    """
    Automatic backup configuration read from the settings store.

    Attributes:
        enabled: Whether automatic backups are on
        frequency: How often they run
        last_run_at: When the last backup completed, or None if never
        cloud_enabled: Whether automatic runs also upload to the cloud
    """

    enabled: bool = False
    frequency: BackupFrequency = BackupFrequency.DAILY
    last_run_at: datetime | None = None
    cloud_enabled: bool = False


def interval_hours(frequency: BackupFrequency) -> int | None:
    """Hours between automatic backups, or None for manual."""
    return FREQUENCY_INTERVAL_HOURS.get(BackupFrequency(frequency))


def hours_since(then: datetime, now: datetime) -> float:
    """Elapsed hours between two instants."""
    return (ensure_utc(now) - ensure_utc(then)).total_seconds() / 3600


def should_run_auto_backup(policy: AutoBackupPolicy, now: datetime) -> bool:
    """
    Decide whether an automatic backup is due.

    Args:
        policy: Current automatic backup policy
        now: Current instant

    Returns:
        True if automatic backups are enabled, the frequency is not manual,
        and either no backup has run yet or the interval has elapsed.
    """
    if not policy.enabled or policy.frequency == BackupFrequency.MANUAL:
        return False

    hours = interval_hours(policy.frequency)
    if hours is None:
        return False

    if policy.last_run_at is None:
        return True

    return hours_since(policy.last_run_at, now) >= hours


@dataclass
class SchedulerStats:
    """
    Statistics from scheduler operation.

    Tracks how many checks ran and what they decided.
    """

    started_at: datetime | None = None
    check_count: int = 0
    run_count: int = 0
    skip_count: int = 0
    failure_count: int = 0
    coalesced_count: int = 0
    last_check_at: datetime | None = None
    last_run_success: bool = False
    last_error: str | None = None
    reasons: dict[str, int] = field(default_factory=dict)


class BackupScheduler:
    """
    Triggers automatic backups from a timer and from app lifecycle events.

    Both producers post a check request to a queue of capacity one; a single
    worker thread consumes requests, evaluates should_run_auto_backup() and
    invokes the backup callback. Requests that arrive while one is already
    pending are coalesced into it.

    Usage:
        scheduler = BackupScheduler(
            policy_provider=settings_store.get_backup_policy,
            backup_callback=facade.run_auto_backup,
        )
        scheduler.start()

        # From the UI layer
        scheduler.on_app_state_change(AppState.BACKGROUND)
        scheduler.on_app_state_change(AppState.ACTIVE)  # triggers a check

        scheduler.stop()

    Attributes:
        check_interval: Fixed timer cadence in seconds, or None to derive it
            from the policy frequency
        stats: Scheduler statistics
    """

    def __init__(
        self,
        policy_provider: Callable[[], AutoBackupPolicy],
        backup_callback: Callable[[AutoBackupPolicy], bool],
        clock: Clock | None = None,
        check_interval: int | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            policy_provider: Returns the current policy on every check
            backup_callback: Runs a backup; returns True on success
            clock: Source of the current time
            check_interval: Fixed timer cadence in seconds (optional)
        """
        if check_interval is not None and check_interval <= 0:
            raise ValueError("check_interval must be positive")

        self._policy_provider = policy_provider
        self._backup_callback = backup_callback
        self.clock = clock or SystemClock()
        self.check_interval = check_interval

        self._requests: queue.Queue[str] = queue.Queue(maxsize=1)
        self._stop_event = threading.Event()
        self._foreground = threading.Event()
        self._foreground.set()
        self._app_state = AppState.ACTIVE
        self._state_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._original_handlers: dict[int, object] = {}
        self.stats = SchedulerStats()

    @property
    def app_state(self) -> AppState:
        return self._app_state

    # =========================================================================
    # Producers
    # =========================================================================

    def request_check(self, reason: str) -> bool:
        """
        Ask the worker to evaluate the policy.

        Returns:
            True if the request was queued, False if one was already pending
        """
        try:
            self._requests.put_nowait(reason)
        except queue.Full:
            self.stats.coalesced_count += 1
            logger.debug(f"Backup check already pending, coalesced '{reason}' request")
            return False
        logger.debug(f"Queued backup check ({reason})")
        return True

    def on_app_state_change(self, state: AppState) -> None:
        """
        Record an app lifecycle transition.

        A transition from background or inactive to active requests a check.
        The timer only ticks while the app is active.
        """
        state = AppState(state)
        with self._state_lock:
            previous = self._app_state
            self._app_state = state

        if state == AppState.ACTIVE:
            self._foreground.set()
            if previous in (AppState.BACKGROUND, AppState.INACTIVE):
                logger.info("App returned to foreground")
                self.request_check("foreground")
        else:
            self._foreground.clear()

    # =========================================================================
    # Consumer
    # =========================================================================

    def check_now(self, reason: str = "manual") -> bool:
        """
        Evaluate the policy and run a backup if one is due.

        Returns:
            True if a backup ran and succeeded, False otherwise
        """
        now = self.clock.now()
        self.stats.check_count += 1
        self.stats.last_check_at = now
        self.stats.reasons[reason] = self.stats.reasons.get(reason, 0) + 1

        try:
            policy = self._policy_provider()
        except Exception as e:
            self.stats.failure_count += 1
            self.stats.last_error = str(e)
            logger.error(f"Could not read backup policy: {e}")
            return False

        if not should_run_auto_backup(policy, now):
            self.stats.skip_count += 1
            logger.debug(f"Automatic backup not due ({reason})")
            return False

        self.stats.run_count += 1
        try:
            logger.info(f"Starting automatic backup ({reason})")
            success = self._backup_callback(policy)
        except Exception as e:
            self.stats.failure_count += 1
            self.stats.last_run_success = False
            self.stats.last_error = str(e)
            logger.error(f"Automatic backup failed with exception: {e}")
            return False

        self.stats.last_run_success = bool(success)
        if success:
            self.stats.last_error = None
            logger.info("Automatic backup completed")
        else:
            self.stats.failure_count += 1
            logger.warning("Automatic backup did not complete")
        return bool(success)

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                reason = self._requests.get(timeout=0.5)
            except queue.Empty:
                continue
            if self._stop_event.is_set():
                break
            self.check_now(reason)

    # =========================================================================
    # Timer
    # =========================================================================

    def timer_interval(self, policy: AutoBackupPolicy | None = None) -> int:
        """Seconds between timer ticks for the given policy."""
        if self.check_interval is not None:
            return self.check_interval
        if policy is None or not policy.enabled:
            return IDLE_POLL_SECONDS
        hours = interval_hours(policy.frequency)
        if hours is None:
            return IDLE_POLL_SECONDS
        return hours * 3600

    def _timer_loop(self) -> None:
        while not self._stop_event.is_set():
            # Only tick while the app is in the foreground
            if not self._foreground.wait(timeout=1.0):
                continue

            try:
                policy = self._policy_provider()
            except Exception as e:
                logger.warning(f"Could not read backup policy for timer: {e}")
                policy = None

            interval = self.timer_interval(policy)
            logger.debug(f"Next timer backup check in {interval} seconds")
            if self._stop_event.wait(interval):
                break
            if self._foreground.is_set():
                self.request_check("timer")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_immediately: bool = True) -> None:
        """
        Start the timer and worker threads.

        Args:
            run_immediately: Queue a check right away instead of waiting for
                the first timer tick
        """
        if self.is_running():
            return

        self._stop_event.clear()
        self.stats = SchedulerStats(started_at=self.clock.now())
        self._threads = [
            threading.Thread(
                target=self._worker_loop, name="backup-scheduler-worker", daemon=True
            ),
            threading.Thread(
                target=self._timer_loop, name="backup-scheduler-timer", daemon=True
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Backup scheduler started")

        if run_immediately:
            self.request_check("startup")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the threads and wait for them to exit."""
        self._stop_event.set()
        self._foreground.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Backup scheduler stopped")

    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    # =========================================================================
    # Foreground watcher process
    # =========================================================================

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._stop_event.set()

    def _resume_handler(self, signum: int, frame: object) -> None:
        # Treated as the app coming back to the foreground
        self.on_app_state_change(AppState.BACKGROUND)
        self.on_app_state_change(AppState.ACTIVE)

    def _setup_signal_handlers(self) -> None:
        self._original_handlers = {
            signal.SIGTERM: signal.signal(signal.SIGTERM, self._signal_handler),
            signal.SIGINT: signal.signal(signal.SIGINT, self._signal_handler),
        }
        if hasattr(signal, "SIGUSR1"):
            self._original_handlers[signal.SIGUSR1] = signal.signal(
                signal.SIGUSR1, self._resume_handler
            )
        logger.debug("Signal handlers installed")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers = {}
        logger.debug("Signal handlers restored")

    def run_forever(self) -> None:
        """
        Run the scheduler in the calling (main) thread until SIGTERM or SIGINT.

        SIGUSR1 simulates a background to foreground transition.
        """
        self._setup_signal_handlers()
        try:
            self.start()
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.stop()
            self._restore_signal_handlers()


__all__ = [
    "AppState",
    "AutoBackupPolicy",
    "BackupFrequency",
    "BackupScheduler",
    "FREQUENCY_INTERVAL_HOURS",
    "IDLE_POLL_SECONDS",
    "SchedulerStats",
    "hours_since",
    "interval_hours",
    "should_run_auto_backup",
]
