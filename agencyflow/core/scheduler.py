"""
Trigger Scheduler

Polls once per interval for enabled scheduled triggers whose next_trigger_at
has passed, and starts a run for each one whose preconditions hold:

1. workflow is active
2. workflow has a target model
3. fewer active runs than the trigger's max_concurrent_runs
4. agency credit pool is positive
5. workflow has at least one node

A failed precondition is not an error: the trigger is skipped for this
cycle. Either way the schedule is advanced, so a due trigger never re-fires
on every poll.
"""

import asyncio
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from ..models import WorkflowTrigger
from .repository import Repository, utcnow
from .supervisor import RunLauncher

logger = logging.getLogger(__name__)

TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# A slot closer than this to "now" counts as already fired
FIRE_GRACE = timedelta(seconds=60)

# Days of week use 0 = Sunday ... 6 = Saturday
WEEKLY_FREQUENCIES = ("weekly", "specific_days")
FREQUENCIES = ("daily",) + WEEKLY_FREQUENCIES


# ============================================================================
# SCHEDULE COMPUTATION
# ============================================================================

def parse_time(value: Any) -> Optional[tuple]:
    """Parse "HH:MM" (24-hour). Returns (hour, minute) or None."""
    if not isinstance(value, str):
        return None
    match = TIME_RE.match(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _local_slot(day: date, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    """UTC instant of HH:MM local wall-clock time on the given local date."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz).astimezone(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_daily_occurrence(from_time: datetime, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    local_today = from_time.astimezone(tz).date()
    candidate = _local_slot(local_today, hour, minute, tz)
    if candidate <= from_time + FIRE_GRACE:
        candidate = _local_slot(local_today + timedelta(days=1), hour, minute, tz)
    return candidate


def next_weekday_occurrence(from_time: datetime, days: List[int], hour: int, minute: int,
                            tz: ZoneInfo) -> Optional[datetime]:
    wanted = set(days)
    local_today = from_time.astimezone(tz).date()

    # 8 days covers today's slot already being past on the only matching weekday
    for offset in range(8):
        day = local_today + timedelta(days=offset)
        if sunday_based_weekday(day) not in wanted:
            continue
        candidate = _local_slot(day, hour, minute, tz)
        if candidate > from_time + FIRE_GRACE:
            return candidate

    return None


def compute_next_trigger_at(schedule_config: Optional[Dict[str, Any]],
                            from_time: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next firing instant of a schedule, as an aware UTC datetime.

    Args:
        schedule_config: {"frequency", "time", "days", "timezone"}
        from_time: Reference instant (naive values are taken as UTC); defaults to now

    Returns:
        None when the schedule is incomplete or invalid
    """
    if not schedule_config:
        return None

    parsed = parse_time(schedule_config.get("time"))
    if parsed is None:
        return None
    hour, minute = parsed

    tz_name = schedule_config.get("timezone") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}' in schedule")
        return None

    from_time = _as_utc(from_time or datetime.now(timezone.utc))
    frequency = schedule_config.get("frequency")

    if frequency == "daily":
        return next_daily_occurrence(from_time, hour, minute, tz)

    if frequency in WEEKLY_FREQUENCIES:
        days = schedule_config.get("days")
        if not isinstance(days, list) or not days:
            return None
        return next_weekday_occurrence(from_time, days, hour, minute, tz)

    return None


def to_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC for DateTime columns."""
    if value is None:
        return None
    return _as_utc(value).replace(tzinfo=None)


# ============================================================================
# SCHEDULER
# ============================================================================

class TriggerScheduler:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        launcher: RunLauncher,
        poll_interval: float = 60.0,
    ):
        self.session_factory = session_factory
        self.launcher = launcher
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Poll immediately, then every poll_interval seconds."""
        if self.running:
            logger.warning("Trigger scheduler already running")
            return
        self._task = asyncio.create_task(self._loop(), name="trigger-scheduler")
        logger.info(f"Trigger scheduler started (every {self.poll_interval:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Trigger scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                self.poll_and_fire()
            except Exception:
                logger.exception("Scheduler poll failed")
            await asyncio.sleep(self.poll_interval)

    def poll_and_fire(self, now: Optional[datetime] = None) -> List[int]:
        """
        Fire every due trigger once.

        Args:
            now: Naive UTC reference time (defaults to the current time)

        Returns:
            Ids of the runs that were started
        """
        now = now or utcnow()
        started: List[int] = []

        session = self.session_factory()
        try:
            trigger_ids = [trigger.id for trigger in Repository(session).due_triggers(now)]
            if trigger_ids:
                logger.info(f"Scheduler found {len(trigger_ids)} due trigger(s)")

            for trigger_id in trigger_ids:
                try:
                    run_id = self.fire_trigger(session, session.get(WorkflowTrigger, trigger_id), now)
                except Exception:
                    session.rollback()
                    logger.exception(f"Failed to fire trigger {trigger_id}")
                    continue
                if run_id is not None:
                    started.append(run_id)
        finally:
            session.close()

        for run_id in started:
            self.launcher.launch(run_id)

        return started

    def _skip_reason(self, repo: Repository, trigger: WorkflowTrigger) -> Optional[str]:
        workflow = trigger.workflow

        if workflow.status != "active":
            return f"workflow is {workflow.status}"
        if workflow.model_id is None:
            return "workflow has no model"

        active_runs = repo.count_active_runs(workflow.id)
        if active_runs >= (trigger.max_concurrent_runs or 1):
            return f"{active_runs} active run(s), limit {trigger.max_concurrent_runs or 1}"

        agency = repo.get_agency(workflow.agency_id)
        if (agency.credit_pool or 0) <= 0:
            return "insufficient credits"

        if not workflow.nodes:
            return "workflow has no nodes"

        return None

    def fire_trigger(self, session: Session, trigger: WorkflowTrigger, now: datetime) -> Optional[int]:
        """Start a run for one due trigger if allowed, then advance its schedule."""
        repo = Repository(session)
        run_id = None

        reason = self._skip_reason(repo, trigger)
        if reason is None:
            run = repo.create_run(trigger.workflow, started_by=None, trigger_id=trigger.id)
            run_id = run.id
            logger.info(
                f"Trigger {trigger.id} started run {run_id}",
                extra={"workflow_id": trigger.workflow_id},
            )
        else:
            logger.info(f"Skipping trigger {trigger.id}: {reason}")

        trigger.last_triggered_at = now
        trigger.next_trigger_at = to_storage(compute_next_trigger_at(trigger.schedule_config, now))
        session.commit()

        return run_id
