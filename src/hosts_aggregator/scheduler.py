"""
Scheduler module for the hosts aggregator.

Cron-compatible scheduling for periodic aggregation passes. Expressions use
the usual five fields (minute, hour, day of month, month, day of week, with
0 or 7 meaning Sunday); a sixth leading seconds field is accepted and ignored.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .audit_logger import AuditLogger


COMPONENT = "scheduler"


class CronParseError(ValueError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, message: str, expression: str) -> None:
        self.message = message
        self.expression = expression
        super().__init__(f"{message}: '{expression}'")


@dataclass
class CronField:
    """A parsed cron field with its allowed values."""

    values: set[int]
    min_value: int
    max_value: int

    @property
    def is_wildcard(self) -> bool:
        return self.values == set(range(self.min_value, self.max_value + 1))

    def matches(self, value: int) -> bool:
        return value in self.values


@dataclass
class CronSchedule:
    """A parsed cron schedule."""

    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField  # 0 = Sunday
    original_expression: str

    def matches(self, dt: datetime) -> bool:
        """Check if a datetime (minute precision) matches this schedule."""
        if not (
            self.minute.matches(dt.minute)
            and self.hour.matches(dt.hour)
            and self.month.matches(dt.month)
        ):
            return False

        cron_weekday = (dt.weekday() + 1) % 7
        if self.day_of_month.is_wildcard and self.day_of_week.is_wildcard:
            return True
        if self.day_of_month.is_wildcard:
            return self.day_of_week.matches(cron_weekday)
        if self.day_of_week.is_wildcard:
            return self.day_of_month.matches(dt.day)
        # Both restricted: either may match
        return self.day_of_month.matches(dt.day) or self.day_of_week.matches(cron_weekday)

    def next_run(self, after: datetime, horizon_days: int = 366) -> Optional[datetime]:
        """First matching minute strictly after ``after``, or None within the horizon."""
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=horizon_days)
        while candidate < limit:
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return None


class CronParser:
    """Parser for cron expressions."""

    # (min, max, name)
    FIELD_DEFS = [
        (0, 59, "minute"),
        (0, 23, "hour"),
        (1, 31, "day_of_month"),
        (1, 12, "month"),
        (0, 7, "day_of_week"),
    ]

    MONTH_NAMES = {
        "jan": 1, "feb": 2, "mar": 3, "apr": 4,
        "may": 5, "jun": 6, "jul": 7, "aug": 8,
        "sep": 9, "oct": 10, "nov": 11, "dec": 12,
    }

    DOW_NAMES = {
        "sun": 0, "mon": 1, "tue": 2, "wed": 3,
        "thu": 4, "fri": 5, "sat": 6,
    }

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        """
        Parse a cron expression into a CronSchedule.

        Supports ``*``, lists (``,``), ranges (``-``), steps (``/``) and
        three-letter month and weekday names.

        Args:
            expression: The cron expression to parse

        Returns:
            A CronSchedule object

        Raises:
            CronParseError: If the expression is invalid
        """
        expression = expression.strip()
        if not expression:
            raise CronParseError("Empty cron expression", expression)

        fields = expression.split()
        if len(fields) == 6:
            fields = fields[1:]
        elif len(fields) != 5:
            raise CronParseError(
                f"Invalid number of fields (expected 5 or 6, got {len(fields)})",
                expression,
            )

        parsed_fields = []
        for field_str, (min_val, max_val, name) in zip(fields, cls.FIELD_DEFS):
            try:
                parsed_fields.append(cls._parse_field(field_str, min_val, max_val, name))
            except ValueError as e:
                raise CronParseError(f"Invalid {name} field: {e}", expression) from e

        day_of_week = parsed_fields[4]
        if 7 in day_of_week.values:
            day_of_week.values.discard(7)
            day_of_week.values.add(0)
        day_of_week.max_value = 6

        return CronSchedule(
            minute=parsed_fields[0],
            hour=parsed_fields[1],
            day_of_month=parsed_fields[2],
            month=parsed_fields[3],
            day_of_week=day_of_week,
            original_expression=expression,
        )

    @classmethod
    def _parse_field(cls, field_str: str, min_val: int, max_val: int, field_name: str) -> CronField:
        field_str = field_str.lower()
        names = {}
        if field_name == "month":
            names = cls.MONTH_NAMES
        elif field_name == "day_of_week":
            names = cls.DOW_NAMES
        for name, num in names.items():
            field_str = field_str.replace(name, str(num))

        values: set[int] = set()
        for part in field_str.split(","):
            part = part.strip()
            if not part:
                continue

            step = 1
            if "/" in part:
                part, step_str = part.split("/", 1)
                try:
                    step = int(step_str)
                except ValueError as e:
                    raise ValueError(f"Invalid step value: {step_str}") from e
                if step < 1:
                    raise ValueError(f"Step must be >= 1, got {step}")

            if part == "*":
                values.update(range(min_val, max_val + 1, step))
                continue

            if "-" in part:
                start_str, end_str = part.split("-", 1)
                try:
                    start, end = int(start_str), int(end_str)
                except ValueError as e:
                    raise ValueError(f"Invalid range: {part}") from e
                for bound in (start, end):
                    if bound < min_val or bound > max_val:
                        raise ValueError(f"Range bound {bound} out of bounds [{min_val}-{max_val}]")
                if start > end:
                    raise ValueError(f"Range start {start} > end {end}")
                values.update(range(start, end + 1, step))
                continue

            try:
                val = int(part)
            except ValueError as e:
                raise ValueError(f"Invalid value: {part}") from e
            if val < min_val or val > max_val:
                raise ValueError(f"Value {val} out of bounds [{min_val}-{max_val}]")
            values.add(val)

        if not values:
            raise ValueError("No values parsed from field")

        return CronField(values=values, min_value=min_val, max_value=max_val)


@dataclass
class ScheduledTask:
    """A named cron task."""

    name: str
    schedule: CronSchedule
    callback: Callable[[], Awaitable[None]]
    last_run: Optional[datetime] = None
    enabled: bool = True


class Scheduler:
    """Runs async callbacks on cron schedules, checked once per tick."""

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        check_interval_seconds: float = 60,
    ) -> None:
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False
        self._logger = logger
        self._check_interval_seconds = check_interval_seconds

    def schedule(
        self,
        name: str,
        cron_expression: str,
        callback: Callable[[], Awaitable[None]],
    ) -> CronSchedule:
        """
        Schedule a task with a cron expression.

        Raises:
            CronParseError: If the cron expression is invalid
            ValueError: If a task with the same name already exists
        """
        if name in self._tasks:
            raise ValueError(f"Task '{name}' already exists")
        schedule = CronParser.parse(cron_expression)
        self._tasks[name] = ScheduledTask(name=name, schedule=schedule, callback=callback)
        return schedule

    def unschedule(self, name: str) -> bool:
        return self._tasks.pop(name, None) is not None

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    async def tick(self, now: Optional[datetime] = None) -> list[str]:
        """
        Run every enabled task whose schedule matches ``now``.

        A task runs at most once per minute. Callback errors are logged and
        do not stop other tasks.

        Returns:
            Names of the tasks that ran
        """
        now_minute = (now or datetime.now()).replace(second=0, microsecond=0)
        ran = []
        for task in list(self._tasks.values()):
            if not task.enabled or not task.schedule.matches(now_minute):
                continue
            if task.last_run is not None and task.last_run >= now_minute:
                continue
            task.last_run = now_minute
            ran.append(task.name)
            try:
                await task.callback()
            except Exception as e:
                if self._logger:
                    self._logger.log_error(COMPONENT, f"Scheduled task '{task.name}' failed",
                                           error=e)
        return ran

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run the scheduler loop until ``stop()`` or ``stop_event`` is set.
        """
        self._running = True
        if self._logger:
            self._logger.info(COMPONENT, "Scheduler started", {
                "tasks": [t.name for t in self._tasks.values()],
            })
        try:
            while self._running:
                await self.tick()
                if stop_event is not None:
                    try:
                        await asyncio.wait_for(stop_event.wait(), self._check_interval_seconds)
                        break
                    except asyncio.TimeoutError:
                        continue
                await asyncio.sleep(self._check_interval_seconds)
        finally:
            self._running = False
            if self._logger:
                self._logger.info(COMPONENT, "Scheduler stopped", {})

    def stop(self) -> None:
        self._running = False

    def is_running(self) -> bool:
        return self._running
