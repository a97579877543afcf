"""Per-mapping cron registrations on a shared APScheduler clock."""

from __future__ import annotations

import logging
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Callable, Iterable, Iterator

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from strmsync.errors import InvalidScheduleError
from strmsync.models import MappingSpec

logger = logging.getLogger(__name__)

_DESCRIPTORS: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0}


def _parse_duration(text: str) -> float:
    """Parse a Go-style duration such as "1h30m" or "45s" into seconds."""
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or total <= 0:
        raise ValueError(f"bad duration {text!r}")
    return total


def _day_of_week(field: str) -> str:
    """Translate crontab day-of-week numbers (0/7 = Sunday) into day names.

    APScheduler numbers weekdays from Monday, so numeric values are expanded
    to explicit names. Named values pass through unchanged.
    """
    names: list[str] = []
    for part in field.split(","):
        if part in ("*", "?"):
            return "*"
        if not any(ch.isdigit() for ch in part.split("/")[0]) and "/" not in part:
            names.append(part)
            continue

        span, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step <= 0:
            raise ValueError(f"bad step in {part!r}")
        if span == "*":
            start, end = 0, 6
        elif "-" in span:
            a, b = span.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = int(span)
            end = 6 if step_text else start
        if not (0 <= start <= 7 and 0 <= end <= 7) or start > end:
            raise ValueError(f"day-of-week out of range in {part!r}")
        for n in range(start, end + 1, step):
            if _DAY_NAMES[n] not in names:
                names.append(_DAY_NAMES[n])
    return ",".join(names)


def parse_schedule(expression: str, timezone: tzinfo | str | None = None) -> BaseTrigger:
    """Build a trigger from a cron expression.

    Accepted forms: five fields (minute granularity), six fields with a
    leading seconds field, the @hourly/@daily/... descriptors, and
    ``@every <duration>``.
    """
    expr = expression.strip()
    if not expr:
        raise InvalidScheduleError(expression, "empty expression")

    if expr.startswith("@every"):
        try:
            seconds = _parse_duration(expr[len("@every"):].strip())
        except ValueError as e:
            raise InvalidScheduleError(expression, str(e)) from e
        return IntervalTrigger(seconds=seconds, timezone=timezone)

    expr = _DESCRIPTORS.get(expr, expr)
    fields = expr.split()
    if len(fields) == 5:
        fields = ["0", *fields]
    elif len(fields) != 6:
        raise InvalidScheduleError(
            expression, f"expected 5 or 6 fields, got {len(fields)}"
        )

    second, minute, hour, day, month, dow = fields
    if day == "?":
        day = "*"
    try:
        day_of_week = _day_of_week(dow)
        common = dict(second=second, minute=minute, hour=hour, month=month, timezone=timezone)
        if day != "*" and day_of_week != "*":
            # Restricting both day fields matches either one, as crontab does.
            return OrTrigger([
                CronTrigger(day=day, **common),
                CronTrigger(day_of_week=day_of_week, **common),
            ])
        return CronTrigger(day=day, day_of_week=day_of_week, **common)
    except ValueError as e:
        raise InvalidScheduleError(expression, str(e)) from e


@dataclass(frozen=True)
class ScheduleEntry:
    """A mapping's registration on the shared clock."""

    mapping_id: int
    mapping_name: str
    expression: str
    job_id: str


class _ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _default_scheduler(timezone: tzinfo | str | None) -> BackgroundScheduler:
    kwargs: dict[str, Any] = {
        "executors": {"default": ThreadPoolExecutor(20)},
        "job_defaults": {"coalesce": True, "max_instances": 1},
    }
    if timezone is not None:
        kwargs["timezone"] = timezone
    return BackgroundScheduler(**kwargs)


class ScheduleRegistry:
    """Owns the mapping-ID to cron-job table.

    ``runner`` is called with the mapping name each time a schedule fires.
    It runs on a scheduler worker thread, so one slow mapping never delays
    another mapping's fire time.
    """

    def __init__(
        self,
        runner: Callable[[str], Any],
        scheduler: BaseScheduler | None = None,
        timezone: tzinfo | str | None = None,
    ) -> None:
        self._runner = runner
        self._timezone = timezone
        self._scheduler = scheduler if scheduler is not None else _default_scheduler(timezone)
        self._entries: dict[int, ScheduleEntry] = {}
        self._lock = _ReadWriteLock()

    def add_schedule(self, mapping_id: int, name: str, expression: str) -> ScheduleEntry:
        """Register (or replace) the schedule for a mapping.

        The expression is validated before any existing registration is
        touched, so an invalid expression leaves the prior schedule active.
        """
        trigger = parse_schedule(expression, self._timezone)

        with self._lock.write():
            old = self._entries.pop(mapping_id, None)
            if old is not None:
                self._revoke(old)
            job = self._scheduler.add_job(
                self._fire,
                trigger=trigger,
                args=(mapping_id, name),
                id=f"mapping-{mapping_id}-{uuid.uuid4().hex[:8]}",
                name=name,
            )
            entry = ScheduleEntry(
                mapping_id=mapping_id,
                mapping_name=name,
                expression=expression,
                job_id=job.id,
            )
            self._entries[mapping_id] = entry

        logger.info(
            "Schedule added for mapping %s (ID: %d): %s", name, mapping_id, expression
        )
        return entry

    def remove_schedule(self, mapping_id: int) -> None:
        """Drop a mapping's schedule. Missing IDs are ignored."""
        with self._lock.write():
            entry = self._entries.pop(mapping_id, None)
            if entry is not None:
                self._revoke(entry)
        if entry is not None:
            logger.info("Schedule removed for mapping ID %d", mapping_id)

    def update_schedule(
        self, mapping_id: int, name: str, expression: str, enabled: bool
    ) -> ScheduleEntry | None:
        if not enabled or not expression.strip():
            self.remove_schedule(mapping_id)
            return None
        return self.add_schedule(mapping_id, name, expression)

    def get(self, mapping_id: int) -> ScheduleEntry | None:
        with self._lock.read():
            return self._entries.get(mapping_id)

    def entries(self) -> list[ScheduleEntry]:
        with self._lock.read():
            return list(self._entries.values())

    def next_fire_times(self) -> dict[int, datetime | None]:
        """Map each scheduled mapping ID to its next fire time, if known."""
        result: dict[int, datetime | None] = {}
        for entry in self.entries():
            job = self._scheduler.get_job(entry.job_id)
            result[entry.mapping_id] = getattr(job, "next_run_time", None) if job else None
        return result

    def start(self, mappings: Iterable[MappingSpec], *, paused: bool = False) -> None:
        """Register every enabled, scheduled mapping and start the clock.

        A mapping whose expression is rejected is logged and skipped.
        """
        for mapping in mappings:
            if not mapping.enabled or not mapping.cron.strip():
                continue
            try:
                self.add_schedule(mapping.id, mapping.name, mapping.cron)
            except InvalidScheduleError as e:
                logger.error("Failed to schedule mapping %s: %s", mapping.name, e)

        if not self._scheduler.running:
            self._scheduler.start(paused=paused)
        logger.info("Scheduler started with %d jobs", len(self.entries()))

    def sync(self, mappings: Iterable[MappingSpec]) -> None:
        """Reconcile registrations with a freshly loaded mapping list."""
        seen: set[int] = set()
        for mapping in mappings:
            seen.add(mapping.id)
            current = self.get(mapping.id)
            if (
                current is not None
                and mapping.enabled
                and current.mapping_name == mapping.name
                and current.expression == mapping.cron
            ):
                continue
            try:
                self.update_schedule(mapping.id, mapping.name, mapping.cron, mapping.enabled)
            except InvalidScheduleError as e:
                logger.error("Failed to schedule mapping %s: %s", mapping.name, e)

        for entry in self.entries():
            if entry.mapping_id not in seen:
                self.remove_schedule(entry.mapping_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def _revoke(self, entry: ScheduleEntry) -> None:
        try:
            self._scheduler.remove_job(entry.job_id)
        except JobLookupError:
            logger.debug("Job %s was already gone", entry.job_id)

    def _fire(self, mapping_id: int, name: str) -> None:
        logger.info("Running scheduled task for mapping %s (ID: %d)", name, mapping_id)
        try:
            self._runner(name)
        except Exception:
            logger.exception("Scheduled task failed for mapping %s", name)
