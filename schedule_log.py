#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "openpyxl>=3.1.0",
# ]
# ///
"""
Log Writer

Appends every extracted entry to the permanent log sheet, then refreshes one
rolling view sheet per subject. A view only keeps rows from the start of the
current week onward, plus whatever was just added.
"""

import logging
from datetime import date, datetime, timedelta

from action_gate import ActionCategory, DryRunPolicy, label, should_execute
from schedule_model import DATE_FORMAT, LOG_HEADER, VIEW_HEADER, ScheduleEntry

logger = logging.getLogger(__name__)

RECORDED_AT_FORMAT = '%Y/%m/%d %H:%M:%S'


def week_start(today: date) -> date:
    """Sunday on or before today."""
    # weekday(): Monday == 0 ... Sunday == 6; shift so Sunday == 0
    offset = (today.weekday() + 1) % 7
    return today - timedelta(days=offset)


def _parse_date(value: str) -> date | None:
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except (ValueError, AttributeError):
        return None


def stale_row_indexes(rows: list[list[str]], cutoff: date, first_row: int = 2) -> list[int]:
    """1-based sheet indexes of rows dated before cutoff.

    Rows whose date cannot be parsed are kept.
    """
    stale = []
    for offset, row in enumerate(rows):
        row_date = _parse_date(row[0]) if row else None
        if row_date is not None and row_date < cutoff:
            stale.append(first_row + offset)
    return stale


def group_by_subject(entries: list[ScheduleEntry]) -> dict:
    grouped = {}
    for entry in entries:
        grouped.setdefault(entry.key, []).append(entry)
    return grouped


class LogWriter:
    def __init__(self, store, policy: DryRunPolicy, log_sheet: str = 'schedule_log', now=datetime.now):
        self.store = store
        self.policy = policy
        self.log_sheet = log_sheet
        self._now = now

    def record(self, entries: list[ScheduleEntry]) -> int:
        """Write entries to the log and per-subject views. Returns rows appended to the log."""
        if not entries:
            return 0

        if not should_execute(ActionCategory.TABULAR_WRITE, self.policy):
            logger.info(f"  [DRY RUN] Skipping {label(ActionCategory.TABULAR_WRITE)}: "
                        f"{len(entries)} row(s) to '{self.log_sheet}'")
            for key, batch in group_by_subject(entries).items():
                logger.info(f"  [DRY RUN]   {self.view_name(key)}: {len(batch)} row(s)")
            return 0

        now = self._now()
        recorded_at = now.strftime(RECORDED_AT_FORMAT)
        log = self.store.get_or_create_sheet(self.log_sheet, LOG_HEADER)
        self.store.append_rows(log, [e.to_log_row(recorded_at) for e in entries])
        self.store.save()
        logger.info(f"  Log: appended {len(entries)} row(s) to '{self.log_sheet}'")

        cutoff = week_start(now.date())
        for key, batch in group_by_subject(entries).items():
            self._refresh_view(self.view_name(key), batch, cutoff)

        return len(entries)

    def view_name(self, key) -> str:
        """View tab for a subject; never the permanent log's tab."""
        return key.view_sheet_name(reserved=(self.log_sheet,))

    def _refresh_view(self, sheet_name: str, batch: list[ScheduleEntry], cutoff: date) -> None:
        view = self.store.get_or_create_sheet(sheet_name, VIEW_HEADER)
        stale = stale_row_indexes(self.store.read_rows(view), cutoff)
        # bottom-up so earlier indexes stay valid
        for index in reversed(stale):
            self.store.delete_row(view, index)
        self.store.append_rows(view, [e.to_view_row() for e in batch])
        self.store.save()
        logger.info(f"  View '{sheet_name}': pruned {len(stale)} row(s) before "
                    f"{cutoff.strftime(DATE_FORMAT)}, appended {len(batch)}")
