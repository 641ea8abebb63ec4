#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = []
# ///
"""
Calendar Writer

Turns timed schedule entries into fixed-length calendar blocks. Creation is
skipped when the day already holds an event with the same title and start,
so re-running on the same entries never duplicates events.
"""

import logging
from datetime import datetime, timedelta

from action_gate import ActionCategory, DryRunPolicy, label, should_execute
from schedule_model import MalformedDateTimeError, ScheduleEntry

logger = logging.getLogger(__name__)

DEFAULT_EVENT_HOURS = 2


def parse_start(entry: ScheduleEntry) -> datetime:
    """Combine YYYY/MM/DD and HH:MM into a datetime."""
    date_parts = entry.date.strip().split('/')
    time_parts = entry.time.strip().split(':')
    if len(date_parts) != 3 or len(time_parts) != 2:
        raise MalformedDateTimeError(f"Bad date/time for {entry.subject}: {entry.date!r} {entry.time!r}")
    try:
        year, month, day = (int(p) for p in date_parts)
        hour, minute = (int(p) for p in time_parts)
        return datetime(year, month, day, hour, minute)
    except ValueError as e:
        raise MalformedDateTimeError(
            f"Bad date/time for {entry.subject}: {entry.date!r} {entry.time!r} ({e})"
        ) from e


def event_title(entry: ScheduleEntry) -> str:
    return f"【{entry.subject}】{entry.content}"


def event_description(entry: ScheduleEntry) -> str:
    parts = [entry.group]
    if entry.note:
        parts.append(entry.note)
    return '\n'.join(p for p in parts if p)


class CalendarWriter:
    def __init__(self, calendar, policy: DryRunPolicy, event_hours: int = DEFAULT_EVENT_HOURS):
        self.calendar = calendar
        self.policy = policy
        self.duration = timedelta(hours=event_hours)

    def publish(self, entries: list[ScheduleEntry]) -> int:
        """Create events for timed entries. Returns the number actually created."""
        execute = should_execute(ActionCategory.CALENDAR_WRITE, self.policy)
        created = 0

        for entry in entries:
            if entry.is_off_day:
                continue
            try:
                start = parse_start(entry)
                end = start + self.duration
                title = event_title(entry)

                existing = self.calendar.events_on_day(start.date())
                if any(e.title == title and e.start == start for e in existing):
                    logger.info(f"  Calendar: already exists, skipping: {title} @ {start:%Y/%m/%d %H:%M}")
                    continue

                if not execute:
                    logger.info(f"  [DRY RUN] Skipping {label(ActionCategory.CALENDAR_WRITE)}: "
                                f"{title} @ {start:%Y/%m/%d %H:%M}")
                    continue

                self.calendar.create_event(title, start, end, event_description(entry))
                created += 1
                logger.info(f"  Calendar: created {title} @ {start:%Y/%m/%d %H:%M}")
            except MalformedDateTimeError as e:
                logger.warning(f"  Calendar: {e.describe()}")
            except Exception as e:
                logger.error(f"  Calendar: failed for {entry.subject} {entry.date} {entry.time}: {e}")

        return created
