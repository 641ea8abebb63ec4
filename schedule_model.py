#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = []
# ///
"""
Shared data model for the schedule sync pipeline.

Holds the immutable ScheduleEntry produced by the extractor, the
SubjectFolderKey identity used as a join key across every sink, the per-run
RunSummary counters, and the error taxonomy. Every error carries a short
category tag and a suggested remedy so log lines always say what to do next.
"""

import hashlib
import re
from dataclasses import dataclass, field


# Reserved time value meaning "no stream this day"
OFF_DAY = '-'

# Weekday symbols, indexed by date.weekday() (Monday == 0)
WEEKDAYS = ('月', '火', '水', '木', '金', '土', '日')

# Full-width low line separating group and subject in folder names
DEFAULT_DELIMITER = '＿'

DATE_FORMAT = '%Y/%m/%d'

# Workbook tab names: max 31 chars, none of \ / ? * [ ] :
_SHEET_FORBIDDEN = re.compile(r'[\\/?*\[\]:]')
MAX_SHEET_NAME = 31


# ============================================================================
# Errors
# ============================================================================

class ScheduleSyncError(Exception):
    """Base class for every pipeline error."""

    tag = 'error'
    remedy = 'Check the logs for details.'

    def __init__(self, message: str, *, remedy: str | None = None):
        super().__init__(message)
        if remedy:
            self.remedy = remedy

    def describe(self) -> str:
        return f"[{self.tag}] {self} ({self.remedy})"


class FatalError(ScheduleSyncError):
    """Errors that invalidate the whole run."""


class ConfigurationError(FatalError):
    tag = 'config'
    remedy = 'Add the missing keys to the config file or environment.'

    def __init__(self, message: str, missing: list[str] | None = None, **kwargs):
        self.missing = list(missing or [])
        super().__init__(message, **kwargs)


class ResourceNotFoundError(FatalError):
    tag = 'not-found'
    remedy = 'Check that the configured folder, workbook or calendar path exists.'


class ExternalServiceError(ScheduleSyncError):
    tag = 'service'
    remedy = 'The remote service failed; the file stays in place and is retried on the next run.'

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class QuotaError(ExternalServiceError):
    tag = 'quota'
    remedy = 'Rate limit or quota reached; it usually clears before the next scheduled run.'


class MalformedResponseError(ScheduleSyncError):
    tag = 'response'
    remedy = 'The model answered without usable content; retry later or try another image.'


class ExtractionFailure(ScheduleSyncError):
    tag = 'extraction'
    remedy = 'No schedule JSON could be read from the model output; check the image or the prompt.'


class MalformedDateTimeError(ScheduleSyncError):
    tag = 'datetime'
    remedy = 'Expected date YYYY/MM/DD and time HH:MM; fix the row by hand if needed.'


# ============================================================================
# Identity and entries
# ============================================================================

@dataclass(frozen=True)
class SubjectFolderKey:
    """Group/subject identity derived once from a subject folder name."""

    group: str
    subject: str
    delimiter: str = field(default=DEFAULT_DELIMITER, compare=False, repr=False)

    @classmethod
    def from_folder_name(cls, name: str, delimiter: str = DEFAULT_DELIMITER) -> 'SubjectFolderKey':
        """Split on the first delimiter; no delimiter means no group."""
        name = name.strip()
        if delimiter and delimiter in name:
            group, subject = name.split(delimiter, 1)
            return cls(group=group.strip(), subject=subject.strip(), delimiter=delimiter)
        return cls(group='', subject=name, delimiter=delimiter)

    @property
    def folder_name(self) -> str:
        if self.group:
            return f"{self.group}{self.delimiter}{self.subject}"
        return self.subject

    @property
    def display(self) -> str:
        if self.group:
            return f"{self.group} / {self.subject}"
        return self.subject

    @property
    def sheet_name(self) -> str:
        return self.view_sheet_name()

    def view_sheet_name(self, reserved=()) -> str:
        """Workbook tab for this subject's view; distinct keys get distinct tabs.

        Group and subject are joined with the full-width delimiter. When the
        readable form could be shared with another key (characters replaced,
        truncated, a delimiter inside a part, or a reserved name ignoring
        case), a short digest of the key is appended.
        """
        raw = f"{self.group}{DEFAULT_DELIMITER}{self.subject}" if self.group else self.subject
        safe = _SHEET_FORBIDDEN.sub('_', raw).strip("'")
        reserved_names = {name.casefold() for name in reserved}
        shared = (
            not safe
            or safe != raw
            or len(safe) > MAX_SHEET_NAME
            or DEFAULT_DELIMITER in self.group
            or (not self.group and DEFAULT_DELIMITER in self.subject)
            or safe.casefold() in reserved_names
        )
        if not shared:
            return safe
        digest = hashlib.sha1(f"{self.group}\x00{self.subject}".encode('utf-8')).hexdigest()[:6]
        return f"{safe[:MAX_SHEET_NAME - 7] or 'subject'}~{digest}"


@dataclass(frozen=True)
class ScheduleEntry:
    """One scheduled (or explicitly off) appearance."""

    subject: str
    group: str = ''
    date: str = ''
    weekday: str = ''
    time: str = ''
    content: str = ''
    note: str = ''

    @property
    def is_off_day(self) -> bool:
        return self.time.strip() == OFF_DAY

    @property
    def key(self) -> SubjectFolderKey:
        return SubjectFolderKey(group=self.group, subject=self.subject)

    def to_log_row(self, recorded_at: str) -> list[str]:
        return [recorded_at, self.group, self.subject, self.date,
                self.weekday, self.time, self.content, self.note]

    def to_view_row(self) -> list[str]:
        return [self.date, self.weekday, self.time, self.content, self.note]

    @classmethod
    def from_log_row(cls, row: list) -> 'ScheduleEntry':
        """Rebuild an entry from a permanent-log row (see LOG_HEADER)."""
        cells = [('' if v is None else str(v)) for v in row]
        cells += [''] * (len(LOG_HEADER) - len(cells))
        _, group, subject, date, weekday, time, content, note = cells[:len(LOG_HEADER)]
        return cls(subject=subject, group=group, date=date, weekday=weekday,
                   time=time, content=content, note=note)


LOG_HEADER = ['Recorded At', 'Group', 'Subject', 'Date', 'Weekday', 'Time', 'Content', 'Note']
VIEW_HEADER = ['Date', 'Weekday', 'Time', 'Content', 'Note']


@dataclass
class RunSummary:
    """Counters for one invocation; never persisted."""

    processed: int = 0
    skipped: int = 0
    errored: int = 0
    purged: int = 0

    def as_dict(self) -> dict:
        return {
            'processed': self.processed,
            'skipped': self.skipped,
            'errored': self.errored,
            'purged': self.purged,
        }

    def __str__(self) -> str:
        parts = [f"{self.processed} processed", f"{self.skipped} skipped", f"{self.errored} errored"]
        if self.purged:
            parts.append(f"{self.purged} purged")
        return ', '.join(parts)
