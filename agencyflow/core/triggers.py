"""
Trigger CRUD with schedule validation.

next_trigger_at is recomputed whenever a trigger is created or changed:
from the schedule while enabled, NULL while disabled.
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from ..models import WorkflowTrigger
from .exceptions import TriggerConfigError
from .repository import Repository, utcnow
from .scheduler import FREQUENCIES, WEEKLY_FREQUENCIES, compute_next_trigger_at, parse_time, to_storage

logger = logging.getLogger(__name__)

TRIGGER_TYPES = ("scheduled", "webhook")


def validate_schedule_config(config: Any) -> Dict[str, Any]:
    """
    Validate a schedule config and return its normalized form.

    Raises:
        TriggerConfigError
    """
    if not isinstance(config, dict):
        raise TriggerConfigError("schedule_config is required for scheduled triggers")

    frequency = config.get("frequency")
    if frequency not in FREQUENCIES:
        raise TriggerConfigError(f"frequency must be one of: {', '.join(FREQUENCIES)}")

    time_value = config.get("time")
    if parse_time(time_value) is None:
        raise TriggerConfigError("time must be in 24-hour HH:MM format")

    timezone_name = config.get("timezone") or "UTC"
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise TriggerConfigError(f"Unknown timezone: {timezone_name}")

    normalized: Dict[str, Any] = {"frequency": frequency, "time": time_value, "timezone": timezone_name}

    if frequency in WEEKLY_FREQUENCIES:
        days = config.get("days")
        if not isinstance(days, list) or not days:
            raise TriggerConfigError(f"days are required for {frequency} schedules")
        for day in days:
            if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
                raise TriggerConfigError("days must be integers 0-6 (0 = Sunday)")
        if len(set(days)) != len(days):
            raise TriggerConfigError("days must not repeat")
        normalized["days"] = sorted(days)

    return normalized


class TriggerService:

    def __init__(self, session: Session):
        self.session = session
        self.repo = Repository(session)

    def _refresh_schedule(self, trigger: WorkflowTrigger, now: Optional[datetime] = None) -> None:
        if trigger.enabled and trigger.trigger_type == "scheduled":
            trigger.next_trigger_at = to_storage(compute_next_trigger_at(trigger.schedule_config, now))
        else:
            trigger.next_trigger_at = None

    def create_trigger(self, workflow_id: int, trigger_type: str,
                       schedule_config: Optional[Dict[str, Any]] = None,
                       enabled: bool = True, max_concurrent_runs: int = 1,
                       now: Optional[datetime] = None) -> WorkflowTrigger:
        self.repo.get_workflow(workflow_id)

        if trigger_type not in TRIGGER_TYPES:
            raise TriggerConfigError(f"trigger_type must be one of: {', '.join(TRIGGER_TYPES)}")
        if max_concurrent_runs < 1:
            raise TriggerConfigError("max_concurrent_runs must be at least 1")

        trigger = WorkflowTrigger(
            workflow_id=workflow_id,
            trigger_type=trigger_type,
            enabled=enabled,
            max_concurrent_runs=max_concurrent_runs,
        )
        if trigger_type == "scheduled":
            trigger.schedule_config = validate_schedule_config(schedule_config)
        else:
            trigger.schedule_config = schedule_config
            trigger.webhook_token = secrets.token_hex(32)

        self._refresh_schedule(trigger, now)
        self.session.add(trigger)
        self.session.commit()

        logger.info(
            f"Created {trigger_type} trigger {trigger.id} for workflow {workflow_id}",
            extra={"next_trigger_at": str(trigger.next_trigger_at)},
        )
        return trigger

    def update_trigger(self, trigger_id: int, now: Optional[datetime] = None, **changes: Any) -> WorkflowTrigger:
        trigger = self.repo.get_trigger(trigger_id)

        if "schedule_config" in changes and changes["schedule_config"] is not None:
            if trigger.trigger_type == "scheduled":
                trigger.schedule_config = validate_schedule_config(changes["schedule_config"])
            else:
                trigger.schedule_config = changes["schedule_config"]
        if changes.get("enabled") is not None:
            trigger.enabled = bool(changes["enabled"])
        if changes.get("max_concurrent_runs") is not None:
            if changes["max_concurrent_runs"] < 1:
                raise TriggerConfigError("max_concurrent_runs must be at least 1")
            trigger.max_concurrent_runs = changes["max_concurrent_runs"]

        self._refresh_schedule(trigger, now)
        trigger.updated_at = utcnow()
        self.session.commit()
        return trigger

    def delete_trigger(self, trigger_id: int) -> None:
        trigger = self.repo.get_trigger(trigger_id)
        self.session.delete(trigger)
        self.session.commit()

    def list_triggers(self, workflow_id: int) -> List[WorkflowTrigger]:
        self.repo.get_workflow(workflow_id)
        return self.repo.list_triggers(workflow_id)
