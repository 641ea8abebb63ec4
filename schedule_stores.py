#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "openpyxl>=3.1.0",
# ]
# ///
"""
Local collaborators for the pipeline's three storage contracts.

- FolderStore:   blob store over plain directories (input/processed/trash)
- WorkbookStore: tabular store over an .xlsx workbook
- OrgCalendar:   calendar service over an org-mode calendar.org file

The pipeline only calls the methods below, so any of these can be swapped
for a remote service with the same shape.
"""

import logging
import mimetypes
import os
import re
import shutil
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

import openpyxl
from openpyxl.styles import Font

from schedule_model import ResourceNotFoundError

logger = logging.getLogger(__name__)

# Schedule screenshots from phones are often HEIC; mimetypes does not know it everywhere
mimetypes.add_type('image/heic', '.heic')
mimetypes.add_type('image/heif', '.heif')
mimetypes.add_type('image/webp', '.webp')

ORG_DAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')


def ensure_unique_filename(directory, base_name, extension):
    """Ensure filename is unique by appending counter if necessary."""
    suffix = f".{extension}" if extension else ''
    filepath = os.path.join(directory, f"{base_name}{suffix}")
    if not os.path.exists(filepath):
        return filepath

    counter = 1
    while True:
        filepath = os.path.join(directory, f"{base_name}-{counter}{suffix}")
        if not os.path.exists(filepath):
            return filepath
        counter += 1


# ============================================================================
# Blob store
# ============================================================================

class FolderStore:
    """Subject folders under an input root, mirrored under a processed root."""

    def __init__(self, trash_dir: Path | None = None):
        self.trash_dir = Path(trash_dir) if trash_dir else None

    @staticmethod
    def require_folder(path: Path, what: str) -> Path:
        path = Path(path)
        if not path.is_dir():
            raise ResourceNotFoundError(f"{what} not found: {path}")
        return path

    def list_subfolders(self, root: Path) -> list[Path]:
        return sorted(p for p in Path(root).iterdir()
                      if p.is_dir() and not p.name.startswith('.'))

    def get_content_type(self, path: Path) -> str:
        mime_type, _ = mimetypes.guess_type(str(path))
        return mime_type or 'application/octet-stream'

    def list_files(self, folder: Path, mime_prefix: str = '') -> list[Path]:
        return sorted(p for p in Path(folder).iterdir()
                      if p.is_file() and not p.name.startswith('.')
                      and self.get_content_type(p).startswith(mime_prefix))

    def get_bytes(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def list_names(self, folder: Path) -> set[str]:
        folder = Path(folder)
        if not folder.is_dir():
            return set()
        return {p.name for p in folder.iterdir() if p.is_file()}

    def create_folder_if_absent(self, parent: Path, name: str) -> Path:
        folder = Path(parent) / name
        if not folder.is_dir():
            folder.mkdir(parents=True)
            logger.info(f"Created folder: {folder}")
        return folder

    def move_or_trash(self, path: Path, dest_folder: Path | None) -> Path:
        """Move a file into dest_folder, or into the trash when dest_folder is None."""
        path = Path(path)
        target_dir = Path(dest_folder) if dest_folder is not None else self.trash_dir
        if target_dir is None:
            path.unlink()
            return path

        target_dir.mkdir(parents=True, exist_ok=True)
        stem, ext = os.path.splitext(path.name)
        target = ensure_unique_filename(str(target_dir), stem, ext.lstrip('.'))
        shutil.move(str(path), target)
        return Path(target)


# ============================================================================
# Tabular store
# ============================================================================

class WorkbookStore:
    """Sheets in one .xlsx workbook. Nothing is written until save()."""

    def __init__(self, path: Path, workbook):
        self.path = Path(path)
        self.workbook = workbook

    @classmethod
    def open(cls, path: Path, *, create: bool = True) -> 'WorkbookStore':
        path = Path(path)
        if path.exists():
            return cls(path, openpyxl.load_workbook(path))
        if not create or not path.parent.is_dir():
            raise ResourceNotFoundError(f"Workbook not found: {path}")
        workbook = openpyxl.Workbook()
        workbook.remove(workbook.active)
        return cls(path, workbook)

    def _title(self, name: str) -> str | None:
        # tab names are unique ignoring case
        for title in self.workbook.sheetnames:
            if title.casefold() == name.casefold():
                return title
        return None

    def has_sheet(self, name: str) -> bool:
        return self._title(name) is not None

    def get_sheet(self, name: str):
        title = self._title(name)
        if title is None:
            raise ResourceNotFoundError(f"Sheet '{name}' not found in {self.path}")
        return self.workbook[title]

    def get_or_create_sheet(self, name: str, header: list[str]):
        if self.has_sheet(name):
            return self.get_sheet(name)
        sheet = self.workbook.create_sheet(title=name)
        sheet.append(list(header))
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        sheet.freeze_panes = 'A2'
        logger.info(f"Created sheet '{name}' in {self.path.name}")
        return sheet

    def append_rows(self, sheet, rows: list[list]) -> None:
        # write below max_row explicitly; append() can lag behind after delete_rows()
        next_row = sheet.max_row + 1
        for row in rows:
            for column, value in enumerate(row, start=1):
                sheet.cell(row=next_row, column=column, value=value)
            next_row += 1

    def read_rows(self, sheet, min_row: int = 2) -> list[list[str]]:
        """Data rows as lists of strings (header skipped by default)."""
        rows = []
        for values in sheet.iter_rows(min_row=min_row, values_only=True):
            rows.append(['' if v is None else str(v) for v in values])
        return rows

    def delete_row(self, sheet, index: int) -> None:
        """Delete a row by its 1-based sheet index."""
        sheet.delete_rows(index, 1)

    def save(self) -> None:
        self.workbook.save(self.path)


# ============================================================================
# Calendar service
# ============================================================================

@dataclass(frozen=True)
class CalendarEvent:
    title: str
    start: datetime
    end: datetime
    description: str = ''


# Only level-1 headings are events; the timestamp must sit on the heading line.
# * Title <2025-12-25 Thu 20:00-22:00>
# * Title <2025-12-25 Thu 23:00>--<2025-12-26 Fri 01:00>
HEADING_PATTERN = re.compile(r'^\* ', re.MULTILINE)
TIMESTAMP_PATTERN = re.compile(
    r'<(\d{4}-\d{2}-\d{2})(?: [^\s\d<>]+)?(?: (\d{1,2}:\d{2})(?:-(\d{1,2}:\d{2}))?)?[^<>\n]*>'
    r'(?:--<(\d{4}-\d{2}-\d{2})(?: [^\s\d<>]+)?(?: (\d{1,2}:\d{2}))?[^<>\n]*>)?'
)


def _org_timestamp(moment: datetime, with_time: bool = True) -> str:
    day = ORG_DAYS[moment.weekday()]
    if with_time:
        return f"{moment:%Y-%m-%d} {day} {moment:%H:%M}"
    return f"{moment:%Y-%m-%d} {day}"


def _org_sections(content: str):
    """Yield (heading line, body) for every level-1 heading."""
    starts = [m.start() for m in HEADING_PATTERN.finditer(content)]
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else len(content)
        heading, _, body = content[start + 2:end].partition('\n')
        yield heading, body


def parse_calendar_org(content: str) -> list[CalendarEvent]:
    """Parse org calendar text into timed events (all-day and plain headings are ignored)."""
    events = []
    for heading, body in _org_sections(content):
        match = TIMESTAMP_PATTERN.search(heading)
        if match is None:
            continue
        start_date, start_time, end_time, end_date, end_date_time = match.groups()
        if not start_time:
            continue
        start = datetime.strptime(f"{start_date} {start_time}", '%Y-%m-%d %H:%M')
        if end_date and end_date_time:
            end = datetime.strptime(f"{end_date} {end_date_time}", '%Y-%m-%d %H:%M')
        elif end_time:
            end = datetime.strptime(f"{start_date} {end_time}", '%Y-%m-%d %H:%M')
        else:
            end = start
        events.append(CalendarEvent(title=heading[:match.start()].strip(), start=start, end=end,
                                    description=body.strip()))
    return events


def format_event_org(title: str, start: datetime, end: datetime, description: str) -> str:
    if start.date() == end.date():
        stamp = f"<{_org_timestamp(start)}-{end:%H:%M}>"
    else:
        stamp = f"<{_org_timestamp(start)}>--<{_org_timestamp(end)}>"
    lines = [f"* {title} {stamp}"]
    for line in description.splitlines():
        # a leading "* " would start a new heading
        lines.append(f"  {line}" if line.startswith('*') else line)
    return '\n'.join(lines) + '\n'


class OrgCalendar:
    """Appends events to calendar.org and reads them back per day."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def open(cls, path: Path) -> 'OrgCalendar':
        path = Path(path)
        if not path.parent.is_dir():
            raise ResourceNotFoundError(f"Calendar directory not found: {path.parent}")
        return cls(path)

    def _events(self) -> list[CalendarEvent]:
        if not self.path.exists():
            return []
        with open(self.path, 'r', encoding='utf-8') as f:
            return parse_calendar_org(f.read())

    def events_on_day(self, day: date) -> list[CalendarEvent]:
        return [e for e in self._events() if e.start.date() == day]

    def create_event(self, title: str, start: datetime, end: datetime,
                     description: str = '') -> CalendarEvent:
        block = format_event_org(title, start, end, description)
        needs_newline = False
        if self.path.exists() and self.path.stat().st_size > 0:
            with open(self.path, 'rb') as f:
                f.seek(-1, os.SEEK_END)
                needs_newline = f.read(1) != b'\n'
        with open(self.path, 'a', encoding='utf-8') as f:
            if needs_newline:
                f.write('\n')
            f.write(block)
        return CalendarEvent(title=title, start=start, end=end, description=description)
