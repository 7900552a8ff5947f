#!/usr/bin/env python3
"""
caretaker.py

Environment-aware scheduler for recurring maintenance jobs.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import importlib
import inspect
import logging
import os
import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadDateError, croniter


LOG_FILE = os.environ.get("CARETAKER_LOG_FILE", "caretaker.log")
DEFAULT_CONFIG = "caretaker.yaml"
DEFAULT_ENVIRONMENT = "development"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_STOP_TIMEOUT_SECONDS = 5.0
DEFAULT_DRAIN_TIMEOUT_SECONDS = 60.0
MAX_CANDIDATES = 2000

VALID_ENVIRONMENTS = ("production", "staging", "qa", "development", "test")
TEST_ENVIRONMENT = "test"
VALID_OVERLAPS = {"skip", "queue", "parallel"}

DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
DAY_ABBREV_TO_CRON = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "tues": 2,
    "wed": 3,
    "thu": 4,
    "thur": 4,
    "thurs": 4,
    "fri": 5,
    "sat": 6,
}
CRON_TO_DAY_NAME = {v: k for k, v in DAY_NAME_TO_CRON.items()}
MONTH_NAME_TO_NUM = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
MONTH_ABBREV_TO_NUM = {name[:3]: num for name, num in MONTH_NAME_TO_NUM.items()}
ORDINAL_WORDS = {
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "fifth": 5,
    "sixth": 6,
}
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
CRON_NAMED_FIELD_RE = re.compile(r"^[0-9A-Za-z*,/\-]+$")

_ORDINAL = r"(?:\d{1,2}(?:st|nd|rd|th)?|first|second|third|fourth|fifth|sixth)"
_ORDINAL_LIST = rf"{_ORDINAL}(?:\s*(?:,|\band\b|\bor\b)\s*{_ORDINAL})*"
_WEEKDAY = r"(?:sun|mon|tues?|wed|thu(?:rs?)?|fri|sat)[a-z]*"
_WEEKDAY_LIST = rf"{_WEEKDAY}(?:\s*(?:,|\band\b|\bor\b)\s*{_WEEKDAY})*"

CLAUSE_SPLIT_RE = re.compile(r"\s+(?:and|or|also)\s+(?=(?:at|every|on)\b)")
EVERY_RE = re.compile(
    r"^every(?:\s+(\d+))?\s*(mins?|minutes?|hours?|hrs?|days?)\b"
)
AT_RE = re.compile(r"^at\s+(\d{1,2})(?::([0-5]\d))?\s*(am|pm)?(?=\s|$)")
WEEK_OF_MONTH_RE = re.compile(
    rf"^on\s+(?:the\s+)?(?:week\s+({_ORDINAL_LIST})|({_ORDINAL_LIST})\s+weeks?\s+of\s+(?:the\s+)?month)\b"
)
DAY_OF_MONTH_RE = re.compile(
    rf"^on\s+(?:the\s+)?({_ORDINAL_LIST})\s+days?\s+of\s+(?:the\s+)?month\b"
)
WEEKDAY_GROUP_RE = re.compile(r"^on\s+(weekdays|weekends)\b")
WEEKDAY_RE = re.compile(rf"^on\s+({_WEEKDAY_LIST})(?=\s|$)")
LIST_SPLIT_RE = re.compile(r"\s*(?:,|\band\b|\bor\b)\s*")


class CaretakerError(Exception):
    """Base error for caretaker."""


class ConfigError(CaretakerError):
    """Schedule table or environment configuration error."""


class MalformedScheduleError(CaretakerError):
    """Schedule expression matches neither the cron nor the text grammar."""


class NonProgressingScheduleError(CaretakerError):
    """Schedule cannot produce an instant strictly after its reference."""


class JobExecutionError(CaretakerError):
    """A job callable reported failure."""


class EnvironmentUnsupportedError(CaretakerError):
    """Task has no schedule for the requested environment."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("caretaker")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


@dataclass(frozen=True)
class ScheduleClause:
    cron_expr: str
    weeks_of_month: FrozenSet[int] = frozenset()
    days_of_month: FrozenSet[int] = frozenset()

    def guard(self, local: datetime) -> bool:
        if self.weeks_of_month and week_of_month(local) not in self.weeks_of_month:
            return False
        if self.days_of_month and local.day not in self.days_of_month:
            return False
        return True


@dataclass(frozen=True)
class CompiledSchedule:
    kind: str  # cron | interval_text | named_recurrence
    expression: str
    clauses: Tuple[ScheduleClause, ...]
    description: str
    timezone: ZoneInfo
    timezone_name: str
    interval: Optional[timedelta] = None

    def next_fire_after(self, after: datetime) -> datetime:
        """Earliest fire instant strictly after ``after``, as aware UTC."""
        after_utc = _ensure_aware_utc(after)
        best: Optional[datetime] = None
        for clause in self.clauses:
            candidate = _next_clause_after(clause, self.timezone, after_utc)
            if candidate is not None and (best is None or candidate < best):
                best = candidate
        if best is None:
            raise NonProgressingScheduleError(
                f'Schedule "{self.expression}" produces no fire time after {after_utc.isoformat()}.'
            )
        return best


@dataclass(frozen=True)
class TestExpectation:
    __test__ = False  # not a pytest class

    expected_interval_ms: int


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    schedules: Mapping[str, str]
    job: Callable[[], Any]
    overlap: str = "skip"
    test_expectation: Optional[TestExpectation] = None
    opt_in: Mapping[str, str] = field(default_factory=dict)


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except ZoneInfoNotFoundError:
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def week_of_month(local: datetime) -> int:
    # Weeks start on Sunday; week 1 holds the 1st of the month.
    first = local.replace(day=1)
    offset = (first.weekday() + 1) % 7
    return (local.day - 1 + offset) // 7 + 1


# ---------------------------------------------------------------------------
# Schedule expression parsing
# ---------------------------------------------------------------------------


def compile_schedule(expression: str, tz: Optional[ZoneInfo] = None) -> CompiledSchedule:
    if not isinstance(expression, str) or not expression.strip():
        raise MalformedScheduleError("Error: schedule expression must be a non-empty string.")
    if tz is None:
        tz, tz_name = system_timezone()
    else:
        tz_name = getattr(tz, "key", str(tz))

    text = " ".join(expression.strip().split())
    fields = text.split(" ")
    if len(fields) == 5 and CRON_FIELD_RE.match(fields[0]):
        return _compile_cron(text, tz, tz_name)
    return _compile_text(text, tz, tz_name)


def _compile_cron(text: str, tz: ZoneInfo, tz_name: str) -> CompiledSchedule:
    minute, hour, day_of_month, month, day_of_week = text.split(" ")
    minute = validate_cron_token(minute, "minute", 0, 59)
    hour = validate_cron_token(hour, "hour", 0, 23)
    day_of_month = validate_cron_token(day_of_month, "day_of_month", 1, 31)
    month = replace_named_tokens(month, MONTH_ABBREV_TO_NUM, "month")
    month = validate_cron_token(month, "month", 1, 12)
    day_of_week = replace_named_tokens(day_of_week, DAY_ABBREV_TO_CRON, "day_of_week")
    day_of_week = validate_cron_token(day_of_week, "day_of_week", 0, 7)
    cron_expr = f"{minute} {hour} {day_of_month} {month} {day_of_week}"
    if not croniter.is_valid(cron_expr):
        raise MalformedScheduleError(f'Error: Invalid cron expression "{text}".')
    return CompiledSchedule(
        kind="cron",
        expression=text,
        clauses=(ScheduleClause(cron_expr=cron_expr),),
        description=f"Runs on cron {cron_expr} ({tz_name})",
        timezone=tz,
        timezone_name=tz_name,
    )


def _compile_text(text: str, tz: ZoneInfo, tz_name: str) -> CompiledSchedule:
    parsed_clauses = [_parse_clause(chunk.strip(), text) for chunk in CLAUSE_SPLIT_RE.split(text.lower())]
    clauses: List[ScheduleClause] = []
    descriptions: List[str] = []
    for parsed in parsed_clauses:
        clause, desc = _build_clause(parsed, text)
        clauses.append(clause)
        descriptions.append(desc)

    kind = "named_recurrence"
    interval: Optional[timedelta] = None
    if len(parsed_clauses) == 1 and set(parsed_clauses[0]) == {"every"}:
        kind = "interval_text"
        interval = _even_interval(*parsed_clauses[0]["every"])

    return CompiledSchedule(
        kind=kind,
        expression=text,
        clauses=tuple(clauses),
        description=f"Runs {' or '.join(descriptions)} ({tz_name})",
        timezone=tz,
        timezone_name=tz_name,
        interval=interval,
    )


def _parse_clause(clause: str, expression: str) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    rest = clause
    if not rest:
        raise MalformedScheduleError(f'Error: Empty clause in schedule "{expression}".')

    def claim(key: str, value: Any) -> None:
        if key in parsed:
            raise MalformedScheduleError(f'Error: Repeated "{key}" in schedule "{expression}".')
        parsed[key] = value

    while rest:
        match = EVERY_RE.match(rest)
        if match:
            amount = int(match.group(1)) if match.group(1) else 1
            claim("every", (amount, match.group(2)[0]))
            rest = rest[match.end():].strip()
            continue
        match = AT_RE.match(rest)
        if match:
            claim("at", _parse_time_of_day(match, expression))
            rest = rest[match.end():].strip()
            continue
        match = WEEK_OF_MONTH_RE.match(rest)
        if match:
            raw = match.group(1) or match.group(2)
            claim("weeks", _parse_ordinals(raw, 1, 6, "week of month", expression))
            rest = rest[match.end():].strip()
            continue
        match = DAY_OF_MONTH_RE.match(rest)
        if match:
            claim("days", _parse_ordinals(match.group(1), 1, 31, "day of month", expression))
            rest = rest[match.end():].strip()
            continue
        match = WEEKDAY_GROUP_RE.match(rest)
        if match:
            claim("weekdays", (1, 2, 3, 4, 5) if match.group(1) == "weekdays" else (0, 6))
            rest = rest[match.end():].strip()
            continue
        match = WEEKDAY_RE.match(rest)
        if match:
            claim("weekdays", _parse_weekdays(match.group(1), expression))
            rest = rest[match.end():].strip()
            continue
        raise MalformedScheduleError(f'Error: Unrecognized text "{rest}" in schedule "{expression}".')

    if "every" in parsed and "at" in parsed:
        raise MalformedScheduleError(
            f'Error: "every" and "at" cannot be combined in one clause of "{expression}".'
        )
    return parsed


def _parse_time_of_day(match: re.Match[str], expression: str) -> Tuple[int, int]:
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3)
    if meridiem:
        if hour < 1 or hour > 12:
            raise MalformedScheduleError(f'Error: Invalid 12-hour time in schedule "{expression}".')
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    elif hour > 23:
        raise MalformedScheduleError(f'Error: Invalid hour in schedule "{expression}".')
    return hour, minute


def _parse_ordinals(raw: str, minimum: int, maximum: int, label: str, expression: str) -> FrozenSet[int]:
    values = set()
    for token in LIST_SPLIT_RE.split(raw.strip()):
        if not token:
            continue
        if token in ORDINAL_WORDS:
            value = ORDINAL_WORDS[token]
        else:
            value = int(re.sub(r"(st|nd|rd|th)$", "", token))
        if value < minimum or value > maximum:
            raise MalformedScheduleError(
                f'Error: {label} "{token}" out of bounds {minimum}-{maximum} in schedule "{expression}".'
            )
        values.add(value)
    return frozenset(values)


def _parse_weekdays(raw: str, expression: str) -> Tuple[int, ...]:
    days = []
    for token in LIST_SPLIT_RE.split(raw.strip()):
        if not token:
            continue
        name = token[:-1] if token.endswith("s") and token[:-1] in DAY_NAME_TO_CRON else token
        if name in DAY_NAME_TO_CRON:
            days.append(DAY_NAME_TO_CRON[name])
        elif name in DAY_ABBREV_TO_CRON:
            days.append(DAY_ABBREV_TO_CRON[name])
        else:
            raise MalformedScheduleError(f'Error: Invalid weekday "{token}" in schedule "{expression}".')
    return tuple(sorted(set(days)))


def _build_clause(parsed: Dict[str, Any], expression: str) -> Tuple[ScheduleClause, str]:
    minute, hour, dom = "0", "0", "*"
    parts: List[str] = []

    if "every" in parsed:
        amount, unit = parsed["every"]
        minute, hour, dom = _every_fields(amount, unit, expression)
        unit_name = {"m": "minute", "h": "hour", "d": "day"}[unit]
        parts.append(f"every {amount} {unit_name}(s)")
    elif "at" in parsed:
        at_hour, at_minute = parsed["at"]
        minute, hour = str(at_minute), str(at_hour)
        parts.append(f"at {at_hour:02d}:{at_minute:02d}")
    else:
        parts.append("at 00:00")

    weekdays = parsed.get("weekdays")
    dow = ",".join(str(day) for day in weekdays) if weekdays else "*"
    if weekdays:
        parts.append("on " + ", ".join(CRON_TO_DAY_NAME[day] for day in weekdays))

    days: FrozenSet[int] = parsed.get("days", frozenset())
    if days:
        parts.append("on day(s) " + ",".join(str(day) for day in sorted(days)) + " of the month")
        if not weekdays and dom == "*":
            dom = ",".join(str(day) for day in sorted(days))
            days = frozenset()

    if weekdays and dom != "*":
        # croniter ORs a restricted day-of-month with a restricted day-of-week.
        step_days = frozenset(range(1, 32, int(dom.split("/", 1)[1])))
        days = days & step_days if days else step_days
        dom = "*"

    weeks: FrozenSet[int] = parsed.get("weeks", frozenset())
    if weeks:
        parts.append("in week(s) " + ",".join(str(week) for week in sorted(weeks)) + " of the month")

    clause = ScheduleClause(
        cron_expr=f"{minute} {hour} {dom} * {dow}",
        weeks_of_month=weeks,
        days_of_month=days,
    )
    return clause, " ".join(parts)


def _every_fields(amount: int, unit: str, expression: str) -> Tuple[str, str, str]:
    limits = {"m": 59, "h": 23, "d": 31}
    if amount < 1 or amount > limits[unit]:
        raise MalformedScheduleError(
            f'Error: "every {amount}" out of bounds 1-{limits[unit]} in schedule "{expression}".'
        )
    step = "*" if amount == 1 else f"*/{amount}"
    if unit == "m":
        return step, "*", "*"
    if unit == "h":
        return "0", step, "*"
    return "0", "0", step


def _even_interval(amount: int, unit: str) -> Optional[timedelta]:
    if unit == "m" and 60 % amount == 0:
        return timedelta(minutes=amount)
    if unit == "h" and 24 % amount == 0:
        return timedelta(hours=amount)
    if unit == "d" and amount == 1:
        return timedelta(days=1)
    return None


def replace_named_tokens(raw: str, mapping: Dict[str, int], field_path: str) -> str:
    if not CRON_NAMED_FIELD_RE.match(raw):
        raise MalformedScheduleError(f'Error: Invalid cron token "{raw}" at {field_path}.')

    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise MalformedScheduleError(f'Error: Invalid token "{token}" at {field_path}.')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def validate_cron_token(token: str, field_path: str, min_value: int, max_value: int) -> str:
    if not token:
        raise MalformedScheduleError(f"Error: {field_path} cannot be empty.")
    if not CRON_FIELD_RE.match(token):
        raise MalformedScheduleError(f'Error: Invalid cron token "{token}" at {field_path}.')

    normalized: List[str] = []
    for part in token.split(","):
        if not part:
            raise MalformedScheduleError(f'Error: Invalid cron token "{token}" at {field_path}.')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise MalformedScheduleError(f'Error: Invalid step "{part}" at {field_path}.')
            step = int(step_str)
            span = max_value - min_value + 1
            if step > span:
                raise MalformedScheduleError(f'Error: Step "{step}" too large at {field_path}.')
            if base == "*":
                # "*/60" on minutes only ever matches the first value.
                normalized.append(str(min_value) if step == span else part)
                continue
            _validate_range_or_single(base, field_path, min_value, max_value)
            normalized.append(part)
            continue
        _validate_range_or_single(part, field_path, min_value, max_value)
        normalized.append(part)
    return ",".join(normalized)


def _validate_range_or_single(token: str, field_path: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise MalformedScheduleError(f'Error: Invalid range "{token}" at {field_path}.')
        start = int(left)
        end = int(right)
        if start > end:
            raise MalformedScheduleError(f'Error: Invalid range "{token}" at {field_path}.')
        if start < min_value or end > max_value:
            raise MalformedScheduleError(
                f'Error: Range "{token}" out of bounds {min_value}-{max_value} at {field_path}.'
            )
        return
    if not token.isdigit():
        raise MalformedScheduleError(f'Error: Invalid token "{token}" at {field_path}.')
    value = int(token)
    if value < min_value or value > max_value:
        raise MalformedScheduleError(
            f'Error: Value "{value}" out of bounds {min_value}-{max_value} at {field_path}.'
        )


# ---------------------------------------------------------------------------
# Fire time computation
# ---------------------------------------------------------------------------


def _is_nonexistent_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive


def _is_ambiguous_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    fold0 = naive.replace(tzinfo=tz, fold=0)
    fold1 = naive.replace(tzinfo=tz, fold=1)
    return fold0.utcoffset() != fold1.utcoffset()


def _next_clause_after(clause: ScheduleClause, tz: ZoneInfo, after_utc: datetime) -> Optional[datetime]:
    iterator = croniter(clause.cron_expr, after_utc.astimezone(tz))
    for _ in range(MAX_CANDIDATES):
        try:
            nxt = iterator.get_next(datetime)
        except CroniterBadDateError:
            return None
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=tz)
        else:
            nxt = nxt.astimezone(tz)

        if not clause.guard(nxt):
            # Guards only look at the date; resume after the rejected day.
            end_of_day = nxt.replace(hour=23, minute=59, second=59, microsecond=0)
            iterator = croniter(clause.cron_expr, end_of_day)
            continue
        if _is_nonexistent_local(nxt, tz):
            continue
        if _is_ambiguous_local(nxt, tz) and nxt.fold == 1:
            continue
        candidate = nxt.astimezone(UTC)
        if candidate > after_utc:
            return candidate
    return None


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def next_run_times(schedule: CompiledSchedule, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or utc_now())
    runs: List[datetime] = []
    while len(runs) < count:
        cursor = schedule.next_fire_after(cursor)
        runs.append(cursor)
    return runs


# ---------------------------------------------------------------------------
# Task runner
# ---------------------------------------------------------------------------


def _check_job_result(result: Any) -> None:
    if isinstance(result, subprocess.CompletedProcess):
        if result.returncode != 0:
            stderr = (result.stderr or "").strip() if isinstance(result.stderr, str) else ""
            detail = f"; stderr: {stderr[:1000]}" if stderr else ""
            raise JobExecutionError(f"command {result.args!r} exited with code {result.returncode}{detail}")
        return
    if result is False:
        raise JobExecutionError("job reported failure")
    if isinstance(result, int) and not isinstance(result, bool) and result != 0:
        raise JobExecutionError(f"job exited with code {result}")


async def _await_result(awaitable: Any) -> Any:
    return await awaitable


class TaskRunner:
    """Runs one task's job with failure isolation and overlap enforcement."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Any],
        overlap: str = "skip",
        environment: Optional[str] = None,
    ) -> None:
        if overlap not in VALID_OVERLAPS:
            raise ConfigError(f'Error: overlap must be one of {sorted(VALID_OVERLAPS)}, got "{overlap}".')
        self.name = name
        self.job = job
        self.overlap = overlap
        self.environment = environment
        self.run_count = 0
        self.failure_count = 0
        self.skipped_count = 0
        self.running_count = 0
        self.queued_pending = False
        self._closed = False
        self._cond = threading.Condition()

    def invoke(self, scheduled_for: Optional[datetime] = None) -> bool:
        started = utc_now()
        run_id = f"{self.name}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}"
        if scheduled_for is not None:
            logger.info("[%s] Starting task %s (scheduled_for=%s)", run_id, self.name, scheduled_for.isoformat())
        else:
            logger.info("[%s] Starting task %s", run_id, self.name)

        success = True
        try:
            result = self.job()
            if inspect.isawaitable(result):
                result = asyncio.run(_await_result(result))
            _check_job_result(result)
        except JobExecutionError as exc:
            success = False
            logger.error("[%s] Task %s failed (env=%s): %s", run_id, self.name, self.environment, exc)
        except Exception as exc:
            success = False
            logger.exception(
                "[%s] Task %s raised (env=%s): %s: %s",
                run_id,
                self.name,
                self.environment,
                type(exc).__name__,
                exc,
            )

        duration = (utc_now() - started).total_seconds()
        with self._cond:
            self.run_count += 1
            if not success:
                self.failure_count += 1
        logger.info("[%s] Task %s completed with success=%s in %.2fs", run_id, self.name, success, duration)
        return success

    def fire(self, scheduled_for: Optional[datetime] = None) -> bool:
        """Dispatch a run on a worker thread; returns False when the fire is dropped or queued."""
        with self._cond:
            if self._closed:
                return False
            if self.running_count > 0 and self.overlap != "parallel":
                when = scheduled_for.isoformat() if scheduled_for else "now"
                if self.overlap == "queue" and not self.queued_pending:
                    self.queued_pending = True
                    logger.info("Queueing one pending run for %s (fire at %s)", self.name, when)
                else:
                    self.skipped_count += 1
                    logger.info("Skipping overlapping run for %s at %s", self.name, when)
                return False
            self.running_count += 1

        thread = threading.Thread(
            target=self._worker,
            args=(scheduled_for,),
            daemon=True,
            name=f"caretaker-run-{self.name}",
        )
        thread.start()
        return True

    def _worker(self, scheduled_for: Optional[datetime]) -> None:
        while True:
            try:
                self.invoke(scheduled_for)
            finally:
                with self._cond:
                    relaunch = self.queued_pending and not self._closed
                    self.queued_pending = False
                    if not relaunch:
                        self.running_count -= 1
                        self._cond.notify_all()
            if not relaunch:
                return
            logger.info("Running queued pending run for %s", self.name)
            scheduled_for = utc_now()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self.queued_pending = False

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self.running_count == 0, timeout=timeout)


# ---------------------------------------------------------------------------
# Recurrence driver
# ---------------------------------------------------------------------------


class RecurrenceDriver:
    """Timer thread that calls ``on_fire`` at every fire instant of a schedule."""

    def __init__(
        self,
        name: str,
        schedule: Any,
        on_fire: Callable[[datetime], Any],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self.schedule = schedule
        self.on_fire = on_fire
        self.fire_count = 0
        self.error: Optional[NonProgressingScheduleError] = None
        self._clock = clock
        self._stop_event = threading.Event()
        self._fire_lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> "RecurrenceDriver":
        if self._thread is not None:
            raise CaretakerError(f"Driver for {self.name} already started.")
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"caretaker-timer-{self.name}")
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._fire_lock:
            self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        reference = _ensure_aware_utc(self._clock())
        while not self._stop_event.is_set():
            try:
                nxt = self.schedule.next_fire_after(reference)
                if nxt is None or _ensure_aware_utc(nxt) <= reference:
                    raise NonProgressingScheduleError(
                        f"Schedule for {self.name} returned {nxt} which is not after {reference.isoformat()}."
                    )
            except NonProgressingScheduleError as exc:
                self.error = exc
                logger.error("Stopping timer for %s: %s", self.name, exc)
                return
            nxt = _ensure_aware_utc(nxt)

            if not self._sleep_until(nxt):
                return
            with self._fire_lock:
                if self._stop_event.is_set():
                    return
                self.fire_count += 1
                try:
                    self.on_fire(nxt)
                except Exception:
                    logger.exception("Fire callback for %s raised; continuing schedule.", self.name)
            reference = nxt

    def _sleep_until(self, instant: datetime) -> bool:
        while True:
            remaining = (instant - _ensure_aware_utc(self._clock())).total_seconds()
            if remaining <= 0:
                return True
            if self._stop_event.wait(remaining):
                return False


# ---------------------------------------------------------------------------
# Task registry
# ---------------------------------------------------------------------------


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    return value


class TaskRegistry:
    """Insertion-ordered set of task definitions."""

    def __init__(self, timezone_name: Optional[str] = None) -> None:
        self.timezone_name = timezone_name
        self._tasks: Dict[str, TaskDefinition] = {}

    def register(self, definition: TaskDefinition) -> TaskDefinition:
        if not isinstance(definition.name, str) or not definition.name.strip():
            raise ConfigError("Error: task name must be a non-empty string.")
        if definition.name in self._tasks:
            raise ConfigError(f'Error: Duplicate task name "{definition.name}".')
        if not callable(definition.job):
            raise ConfigError(f'Error: job for task "{definition.name}" is not callable.')
        if definition.overlap not in VALID_OVERLAPS:
            raise ConfigError(
                f'Error: overlap for task "{definition.name}" must be one of {sorted(VALID_OVERLAPS)}.'
            )
        unknown = set(definition.schedules) - set(VALID_ENVIRONMENTS)
        if unknown:
            raise ConfigError(f'Error: Unknown environments for task "{definition.name}": {sorted(unknown)}.')
        frozen = replace(
            definition,
            schedules=MappingProxyType(dict(definition.schedules)),
            opt_in=MappingProxyType(dict(definition.opt_in)),
        )
        self._tasks[frozen.name] = frozen
        return frozen

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(list(self._tasks.values()))

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, name: str) -> TaskDefinition:
        try:
            return self._tasks[name]
        except KeyError:
            raise CaretakerError(f'Unknown task "{name}".') from None

    def resolve(
        self,
        definition: TaskDefinition,
        env: str,
        environ: Mapping[str, str] = os.environ,
    ) -> Optional[str]:
        if env == TEST_ENVIRONMENT:
            return None
        expression = definition.schedules.get(env)
        if not isinstance(expression, str):
            return None
        flag = definition.opt_in.get(env)
        if flag and not environ.get(flag):
            return None
        return expression

    def schedule_for(self, name: str, env: str) -> str:
        expression = self.resolve(self.get(name), env)
        if expression is None:
            raise EnvironmentUnsupportedError(f'Task "{name}" has no schedule for environment "{env}".')
        return expression

    def snapshot(self) -> Mapping[str, Mapping[str, Any]]:
        table: Dict[str, Dict[str, Any]] = {}
        for definition in self._tasks.values():
            entry: Dict[str, Any] = dict(definition.schedules)
            if definition.test_expectation is not None:
                entry[TEST_ENVIRONMENT] = {"expected_interval": definition.test_expectation.expected_interval_ms}
            table[definition.name] = copy.deepcopy(entry)
        return _freeze(table)


# ---------------------------------------------------------------------------
# Schedule table loading
# ---------------------------------------------------------------------------


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_int(value: Any, field_path: str, minimum: int = 1) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def parse_overlap(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    overlap = ensure_str(value, field_path).lower()
    if overlap not in VALID_OVERLAPS:
        raise ConfigError(
            f'Error: {field_path} must be one of {sorted(VALID_OVERLAPS)}, got "{overlap}".'
        )
    return overlap


def resolve_environment(value: Optional[str] = None) -> str:
    env = (value or os.environ.get("CARETAKER_ENV") or DEFAULT_ENVIRONMENT).strip().lower()
    if env not in VALID_ENVIRONMENTS:
        raise ConfigError(f'Error: Unknown environment "{env}"; expected one of {list(VALID_ENVIRONMENTS)}.')
    return env


def resolve_job(reference: Any, field_path: str) -> Callable[[], Any]:
    ref = ensure_str(reference, field_path)
    module_name, sep, attr_path = ref.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigError(f'Error: {field_path} must look like "package.module:function", got "{ref}".')
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f'Error: Cannot import "{module_name}" for {field_path}: {exc}') from exc
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as exc:
            raise ConfigError(f'Error: "{ref}" not found for {field_path}.') from exc
    if not callable(target):
        raise ConfigError(f'Error: "{ref}" at {field_path} is not callable.')
    return target


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_schedules(raw: Any, field_path: str) -> Tuple[Dict[str, str], Optional[TestExpectation]]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty mapping.")
    schedules: Dict[str, str] = {}
    expectation: Optional[TestExpectation] = None
    for env, value in raw.items():
        item_path = f"{field_path}.{env}"
        if env not in VALID_ENVIRONMENTS:
            raise ConfigError(
                f'Error: Unknown environment "{env}" at {field_path}; expected one of {list(VALID_ENVIRONMENTS)}.'
            )
        if env == TEST_ENVIRONMENT:
            if not isinstance(value, dict):
                raise ConfigError(f"Error: {item_path} must be a mapping with expected_interval.")
            unknown = set(value.keys()) - {"expected_interval"}
            if unknown:
                raise ConfigError(f"Error: Unknown keys in {item_path}: {sorted(unknown)}.")
            expectation = TestExpectation(
                expected_interval_ms=ensure_int(value.get("expected_interval"), f"{item_path}.expected_interval")
            )
            continue
        schedules[env] = ensure_str(value, item_path)
    return schedules, expectation


def parse_opt_in(raw: Any, field_path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping of environment to variable name.")
    out: Dict[str, str] = {}
    for env, var in raw.items():
        if env not in VALID_ENVIRONMENTS:
            raise ConfigError(f'Error: Unknown environment "{env}" at {field_path}.')
        out[env] = ensure_str(var, f"{field_path}.{env}")
    return out


def load_registry(config_path: Path) -> TaskRegistry:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"version", "defaults", "tasks"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown_defaults = set(defaults.keys()) - {"timezone", "overlap"}
    if unknown_defaults:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown_defaults)}.")

    timezone_name = defaults.get("timezone")
    if timezone_name is not None:
        timezone_name = ensure_str(timezone_name, "defaults.timezone")
        parse_timezone(timezone_name, "defaults.timezone")
    default_overlap = parse_overlap(defaults.get("overlap"), "defaults.overlap", "skip")

    tasks_raw = payload.get("tasks")
    if not isinstance(tasks_raw, list) or not tasks_raw:
        raise ConfigError("Error: tasks must be a non-empty list.")

    registry = TaskRegistry(timezone_name=timezone_name)
    for idx, task_raw in enumerate(tasks_raw):
        path = f"tasks[{idx}]"
        if not isinstance(task_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        unknown_task = set(task_raw.keys()) - {"name", "job", "overlap", "schedules", "opt_in"}
        if unknown_task:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown_task)}.")

        name = ensure_str(task_raw.get("name"), f"{path}.name")
        schedules, expectation = parse_schedules(task_raw.get("schedules"), f"{path}.schedules")
        registry.register(
            TaskDefinition(
                name=name,
                schedules=schedules,
                job=resolve_job(task_raw.get("job"), f"{path}.job"),
                overlap=parse_overlap(task_raw.get("overlap"), f"{path}.overlap", default_overlap),
                test_expectation=expectation,
                opt_in=parse_opt_in(task_raw.get("opt_in"), f"{path}.opt_in"),
            )
        )
    return registry


def registry_timezone(registry: TaskRegistry) -> ZoneInfo:
    if registry.timezone_name:
        return parse_timezone(registry.timezone_name, "defaults.timezone")
    return system_timezone()[0]


# ---------------------------------------------------------------------------
# Scheduler facade
# ---------------------------------------------------------------------------


@dataclass
class RunningTask:
    definition: TaskDefinition
    environment: str
    expression: str
    schedule: CompiledSchedule
    runner: TaskRunner
    driver: RecurrenceDriver

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def running(self) -> bool:
        return self.driver.running

    def start(self) -> "RunningTask":
        self.driver.start()
        return self

    def stop(self, timeout: Optional[float] = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        self.driver.stop(timeout=timeout)
        self.runner.close()


def initialize_all(
    registry: TaskRegistry,
    env: str,
    tz: Optional[ZoneInfo] = None,
    environ: Mapping[str, str] = os.environ,
) -> List[RunningTask]:
    if not isinstance(registry, TaskRegistry):
        raise ConfigError("Error: schedule table is missing; cannot initialize scheduled tasks.")
    if env not in VALID_ENVIRONMENTS:
        raise ConfigError(f'Error: Unknown environment "{env}".')
    zone = tz or registry_timezone(registry)

    handles: List[RunningTask] = []
    for definition in registry:
        expression = registry.resolve(definition, env, environ=environ)
        if expression is None:
            logger.info("Skipping task %s: no schedule for environment %s.", definition.name, env)
            continue
        try:
            schedule = compile_schedule(expression, zone)
        except MalformedScheduleError as exc:
            logger.error(
                "Disabling task %s (env=%s): cannot compile schedule %r: %s",
                definition.name,
                env,
                expression,
                exc,
            )
            continue

        runner = TaskRunner(definition.name, definition.job, overlap=definition.overlap, environment=env)
        driver = RecurrenceDriver(definition.name, schedule, runner.fire)
        handle = RunningTask(
            definition=definition,
            environment=env,
            expression=expression,
            schedule=schedule,
            runner=runner,
            driver=driver,
        )
        handle.start()
        logger.info(
            "Scheduled task %s (env=%s, overlap=%s): %s",
            definition.name,
            env,
            definition.overlap,
            schedule.description,
        )
        handles.append(handle)

    logger.info("Initialized %s of %s scheduled task(s) for environment %s.", len(handles), len(registry), env)
    return handles


def stop_all(handles: List[RunningTask], timeout: Optional[float] = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
    for handle in handles:
        handle.stop(timeout=timeout)
    logger.info("Stopped %s scheduled task(s).", len(handles))


def wait_for_runs(handles: List[RunningTask], timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS) -> bool:
    """Block until in-flight runs of stopped tasks finish; False if any is still running."""
    deadline = time.monotonic() + timeout
    idle = True
    for handle in handles:
        remaining = max(deadline - time.monotonic(), 0.0)
        if not handle.runner.wait_idle(remaining):
            logger.warning("Task %s still running after %.0fs; abandoning it.", handle.name, timeout)
            idle = False
    return idle


# ---------------------------------------------------------------------------
# Expectation checks
# ---------------------------------------------------------------------------

EXPECTATION_REFERENCES = (
    datetime(2026, 1, 1, 0, 0, tzinfo=UTC),
    datetime(2026, 2, 28, 23, 59, 30, tzinfo=UTC),
    datetime(2026, 7, 15, 12, 7, 45, tzinfo=UTC),
)


def check_expectation(
    definition: TaskDefinition,
    references: Tuple[datetime, ...] = EXPECTATION_REFERENCES,
) -> List[str]:
    """Compare consecutive fire gaps in every real environment against the test interval."""
    if definition.test_expectation is None:
        return []
    expected_ms = definition.test_expectation.expected_interval_ms
    problems: List[str] = []
    for env, expression in definition.schedules.items():
        try:
            schedule = compile_schedule(expression, ZoneInfo("UTC"))
            if schedule.interval is not None:
                interval_ms = int(schedule.interval.total_seconds() * 1000)
                if interval_ms != expected_ms:
                    problems.append(
                        f"{definition.name}/{env}: expected {expected_ms}ms between fires, "
                        f"schedule interval is {interval_ms}ms"
                    )
                continue
            for reference in references:
                first, second = next_run_times(schedule, 2, now_utc=reference)
                gap_ms = int((second - first).total_seconds() * 1000)
                if gap_ms != expected_ms:
                    problems.append(
                        f"{definition.name}/{env}: expected {expected_ms}ms between fires, "
                        f"got {gap_ms}ms after {reference.isoformat()}"
                    )
                    break
        except CaretakerError as exc:
            problems.append(f"{definition.name}/{env}: {exc}")
    return problems


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_validate(config_path: Path) -> int:
    registry = load_registry(config_path)
    zone = registry_timezone(registry)
    failures = 0
    print(f"Config valid: {config_path}")
    print(f"Total tasks: {len(registry)}")
    for definition in registry:
        print(f"- {definition.name} (overlap={definition.overlap})")
        for env, expression in definition.schedules.items():
            try:
                schedule = compile_schedule(expression, zone)
                print(f"    {env}: {schedule.kind} | {schedule.description}")
            except MalformedScheduleError as exc:
                failures += 1
                print(f"    {env}: INVALID {exc}")
    return 1 if failures else 0


def command_preview(config_path: Path, env: str, task_name: Optional[str], count: int) -> int:
    registry = load_registry(config_path)
    zone = registry_timezone(registry)
    selected = [registry.get(task_name)] if task_name else list(registry)
    now_utc = utc_now()

    for definition in selected:
        print("=" * 80)
        print(f"Task: {definition.name} (env={env}, overlap={definition.overlap})")
        try:
            expression = registry.schedule_for(definition.name, env)
        except EnvironmentUnsupportedError as exc:
            print(f"Disabled: {exc}")
            continue
        schedule = compile_schedule(expression, zone)
        print(schedule.description)
        print(f"Schedule mode: {schedule.kind}")
        print(f"Next {count} run(s):")
        for run_dt in next_run_times(schedule, count, now_utc=now_utc):
            print(f"- {run_dt.astimezone(schedule.timezone).isoformat()}")
    print("=" * 80)
    return 0


def command_verify(config_path: Path) -> int:
    registry = load_registry(config_path)
    problems: List[str] = []
    checked = 0
    for definition in registry:
        if definition.test_expectation is None:
            continue
        checked += 1
        problems.extend(check_expectation(definition))
    for problem in problems:
        logger.error("Expectation mismatch: %s", problem)
    print(f"Checked {checked} task expectation(s); {len(problems)} problem(s).")
    return 1 if problems else 0


def command_run(config_path: Path, env: str, task_name: str) -> int:
    registry = load_registry(config_path)
    definition = registry.get(task_name)
    runner = TaskRunner(definition.name, definition.job, overlap=definition.overlap, environment=env)
    return 0 if runner.invoke() else 1


def command_daemon(config_path: Path, env: str) -> int:
    registry = load_registry(config_path)
    handles = initialize_all(registry, env)
    logger.info("Starting daemon with %s active task(s) in environment %s", len(handles), env)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        stop_all(handles)
        wait_for_runs(handles)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="caretaker scheduler for recurring maintenance tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to schedule table (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--env", help="Deployment environment (default: $CARETAKER_ENV or development)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Compile every schedule of every task")

    preview_parser = subparsers.add_parser("preview", help="Show next fire times for the active environment")
    preview_parser.add_argument("--task", help="Preview a single task by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    subparsers.add_parser("verify", help="Check test expected intervals against real schedules")

    run_parser = subparsers.add_parser("run", help="Run one task once")
    run_parser.add_argument("--task", required=True, help="Task name")

    subparsers.add_parser("daemon", help="Schedule all active tasks and block")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "verify":
            return command_verify(config_path)
        env = resolve_environment(args.env)
        if args.command == "preview":
            if args.count <= 0:
                raise CaretakerError("--count must be >= 1")
            return command_preview(config_path, env, task_name=args.task, count=args.count)
        if args.command == "run":
            return command_run(config_path, env, task_name=args.task)
        if args.command == "daemon":
            return command_daemon(config_path, env)
        raise CaretakerError(f"Unsupported command: {args.command}")
    except CaretakerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    # Jobs import "caretaker"; run that module so they share its exception classes.
    from caretaker import main as caretaker_main

    raise SystemExit(caretaker_main())
