"""
Cron schedules for merchant syncs.

The planner does not run anything itself; the scheduler asks it which
(merchant, kind) keys are due on every tick and feeds them into the same
intake path as on-demand triggers.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from ..db import SyncKind

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")

ScheduleKey = Tuple[str, SyncKind]


class InvalidCronExpression(ValueError):
    pass


def parse_cron(expression: str) -> CronTrigger:
    """
    Parse a cron expression into an APScheduler trigger (UTC).

    Accepts standard five-field crontab strings, six fields with leading
    seconds, and seven fields with a trailing year.

    Raises:
        InvalidCronExpression: If the expression cannot be parsed.
    """
    fields = expression.split()
    try:
        if len(fields) == 5:
            return CronTrigger.from_crontab(expression, timezone=UTC)
        if len(fields) in (6, 7):
            second, minute, hour, day, month, day_of_week = fields[:6]
            return CronTrigger(
                second=second,
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=day_of_week,
                year=fields[6] if len(fields) == 7 else None,
                timezone=UTC,
            )
    except ValueError as e:
        raise InvalidCronExpression(f"Invalid cron expression '{expression}': {e}") from e

    raise InvalidCronExpression(
        f"Invalid cron expression '{expression}': expected 5, 6 or 7 fields, got {len(fields)}"
    )


class CronPlanner:
    """Tracks the next fire time of every scheduled (merchant, kind) key."""

    def __init__(self):
        self._triggers: Dict[ScheduleKey, CronTrigger] = {}
        self._expressions: Dict[ScheduleKey, str] = {}
        self._next: Dict[ScheduleKey, Optional[datetime]] = {}

    def __len__(self) -> int:
        return len(self._triggers)

    def sync(self, schedules: Dict[ScheduleKey, str], now: datetime) -> None:
        """
        Replace the schedule set.

        Keys whose expression is unchanged keep their next fire time;
        new or changed keys are planned from now. Invalid expressions
        are logged and left out.
        """
        for key in list(self._triggers):
            if key not in schedules:
                self._drop(key)

        for key, expression in schedules.items():
            if self._expressions.get(key) == expression:
                continue
            try:
                trigger = parse_cron(expression)
            except InvalidCronExpression as e:
                logger.error(f"Skipping schedule for merchant {key[0]} ({key[1].value}): {e}")
                self._drop(key)
                continue

            self._triggers[key] = trigger
            self._expressions[key] = expression
            self._next[key] = trigger.get_next_fire_time(None, now)

    def _drop(self, key: ScheduleKey) -> None:
        self._triggers.pop(key, None)
        self._expressions.pop(key, None)
        self._next.pop(key, None)

    def due(self, now: datetime) -> List[ScheduleKey]:
        """
        Keys whose next fire time has passed.

        Each due key is re-planned strictly after now, so fire times
        missed while the process was busy collapse into one.
        """
        fired = []
        for key, next_time in self._next.items():
            if next_time is None or next_time > now:
                continue
            fired.append(key)
            # First whole second after now
            self._next[key] = self._triggers[key].get_next_fire_time(
                None, now.replace(microsecond=0) + timedelta(seconds=1)
            )
        return fired

    def next_fire_time(self, key: ScheduleKey) -> Optional[datetime]:
        return self._next.get(key)

    def seconds_until_next(self, now: datetime, cap: float) -> float:
        upcoming = [t for t in self._next.values() if t is not None]
        if not upcoming:
            return cap
        delay = (min(upcoming) - now).total_seconds()
        return max(0.0, min(delay, cap))
