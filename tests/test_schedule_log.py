#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "openpyxl>=3.1.0",
# ]
# ///
"""
Tests for schedule_log.py and the WorkbookStore it writes through

Covers:
- week_start(): Sunday-based weeks
- stale_row_indexes(): cutoff and unparseable dates
- LogWriter.record(): permanent log, per-subject views, pruning, dry run
- SubjectFolderKey.sheet_name: one view tab per subject, never the log tab

Run with: uv run pytest tests/test_schedule_log.py -v
"""

import sys
from datetime import date, datetime
from pathlib import Path

import openpyxl
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from action_gate import ActionCategory, DryRunPolicy
from schedule_log import LogWriter, stale_row_indexes, week_start
from schedule_model import LOG_HEADER, VIEW_HEADER, ScheduleEntry, SubjectFolderKey
from schedule_stores import WorkbookStore


# Wednesday; the week started on Sunday 2025/12/14
NOW = datetime(2025, 12, 17, 9, 30, 0)


def _entry(date_str, content='stream', subject='Alice', group='GroupA', time='20:00'):
    return ScheduleEntry(subject=subject, group=group, date=date_str, weekday='',
                         time=time, content=content, note='')


@pytest.fixture
def workbook_path(tmp_path):
    return tmp_path / 'schedule.xlsx'


def _writer(path, policy=None):
    store = WorkbookStore.open(path)
    return LogWriter(store, policy or DryRunPolicy(default=True), now=lambda: NOW), store


def _values(path, sheet_name):
    sheet = openpyxl.load_workbook(path)[sheet_name]
    return [list(r) for r in sheet.iter_rows(values_only=True)]


class TestWeekStart:
    """Weeks run Sunday to Saturday."""

    @pytest.mark.parametrize('today, expected', [
        (date(2025, 12, 14), date(2025, 12, 14)),  # Sunday
        (date(2025, 12, 15), date(2025, 12, 14)),  # Monday
        (date(2025, 12, 20), date(2025, 12, 14)),  # Saturday
        (date(2026, 1, 1), date(2025, 12, 28)),    # across the year boundary
    ])
    def test_week_start(self, today, expected):
        assert week_start(today) == expected


class TestStaleRowIndexes:
    """Rows before the cutoff are stale; sheet indexes are 1-based after the header."""

    def test_indexes(self):
        rows = [
            ['2025/12/10', '水', '20:00', 'old', ''],
            ['2025/12/14', '日', '20:00', 'this week', ''],
            ['2025/12/13', '土', '20:00', 'old', ''],
        ]
        assert stale_row_indexes(rows, date(2025, 12, 14)) == [2, 4]

    def test_unparseable_dates_kept(self):
        rows = [['someday', '', '', '', ''], ['', '', '', '', ''], []]
        assert stale_row_indexes(rows, date(2025, 12, 14)) == []


class TestLogWriter:
    """Permanent log plus rolling per-subject views."""

    def test_creates_log_with_bold_frozen_header(self, workbook_path):
        writer, _ = _writer(workbook_path)
        assert writer.record([_entry('2025/12/18')]) == 1

        workbook = openpyxl.load_workbook(workbook_path)
        log = workbook['schedule_log']
        assert [c.value for c in log[1]] == LOG_HEADER
        assert log['A1'].font.bold
        assert log.freeze_panes == 'A2'
        row = next(log.iter_rows(min_row=2, values_only=True))
        assert row[:4] == ('2025/12/17 09:30:00', 'GroupA', 'Alice', '2025/12/18')
        assert row[5:7] == ('20:00', 'stream')

    def test_view_sheet_per_subject(self, workbook_path):
        writer, _ = _writer(workbook_path)
        writer.record([
            _entry('2025/12/18', subject='Alice', group='GroupA'),
            _entry('2025/12/19', subject='Bob', group=''),
        ])

        workbook = openpyxl.load_workbook(workbook_path)
        assert set(workbook.sheetnames) == {'schedule_log', 'GroupA＿Alice', 'Bob'}
        view = workbook['GroupA＿Alice']
        assert [c.value for c in view[1]] == VIEW_HEADER
        assert view.freeze_panes == 'A2'
        assert [r[0] for r in view.iter_rows(min_row=2, values_only=True)] == ['2025/12/18']

    def test_log_is_append_only(self, workbook_path):
        writer, _ = _writer(workbook_path)
        writer.record([_entry('2025/12/01', content='old')])
        writer, _ = _writer(workbook_path)
        writer.record([_entry('2025/12/18', content='new')])

        rows = _values(workbook_path, 'schedule_log')[1:]
        assert [r[6] for r in rows] == ['old', 'new']

    def test_view_pruned_to_current_week(self, workbook_path):
        writer, _ = _writer(workbook_path)
        writer.record([
            _entry('2025/12/08', content='two weeks ago'),
            _entry('2025/12/13', content='last saturday'),
            _entry('2025/12/14', content='this sunday'),
            _entry('2025/12/16', content='yesterday'),
        ])
        writer, _ = _writer(workbook_path)
        writer.record([_entry('2025/12/20', content='saturday')])

        view_rows = _values(workbook_path, 'GroupA＿Alice')[1:]
        assert [r[3] for r in view_rows] == ['this sunday', 'yesterday', 'saturday']
        # the permanent log keeps everything
        assert len(_values(workbook_path, 'schedule_log')) == 1 + 5

    def test_only_touched_views_are_pruned(self, workbook_path):
        writer, _ = _writer(workbook_path)
        writer.record([
            _entry('2025/12/01', subject='Alice'),
            _entry('2025/12/01', subject='Bob', group=''),
        ])
        writer, _ = _writer(workbook_path)
        writer.record([_entry('2025/12/18', subject='Alice')])

        assert len(_values(workbook_path, 'GroupA＿Alice')) == 1 + 1
        assert len(_values(workbook_path, 'Bob')) == 1 + 1

    def test_empty_batch_writes_nothing(self, workbook_path):
        writer, _ = _writer(workbook_path)
        assert writer.record([]) == 0
        assert not workbook_path.exists()

    def test_dry_run_writes_nothing(self, workbook_path):
        writer, _ = _writer(workbook_path, DryRunPolicy(default=True, override=False))
        assert writer.record([_entry('2025/12/18')]) == 0
        assert not workbook_path.exists()

    def test_tabular_flag_off_writes_nothing(self, workbook_path):
        policy = DryRunPolicy(default=True, flags={ActionCategory.TABULAR_WRITE: False})
        writer, _ = _writer(workbook_path, policy)
        assert writer.record([_entry('2025/12/18')]) == 0
        assert not workbook_path.exists()


class TestWorkbookStore:
    """Store behaviour the writers rely on."""

    def test_open_missing_without_create(self, workbook_path):
        from schedule_model import ResourceNotFoundError
        with pytest.raises(ResourceNotFoundError):
            WorkbookStore.open(workbook_path, create=False)

    def test_new_workbook_has_no_default_sheet(self, workbook_path):
        store = WorkbookStore.open(workbook_path)
        assert store.workbook.sheetnames == []

    def test_append_after_delete_fills_gap(self, workbook_path):
        store = WorkbookStore.open(workbook_path)
        sheet = store.get_or_create_sheet('s', ['A'])
        store.append_rows(sheet, [['1'], ['2'], ['3']])
        store.delete_row(sheet, 2)
        store.append_rows(sheet, [['4']])
        assert store.read_rows(sheet) == [['2'], ['3'], ['4']]

    def test_sheet_lookup_ignores_case(self, workbook_path):
        store = WorkbookStore.open(workbook_path)
        sheet = store.get_or_create_sheet('Bob', VIEW_HEADER)
        assert store.get_or_create_sheet('bob', VIEW_HEADER) is sheet
        assert store.workbook.sheetnames == ['Bob']


class TestViewSheetNames:
    """Distinct subjects never share a view tab."""

    def test_grouped_and_ungrouped_lookalikes(self):
        grouped = SubjectFolderKey('GroupA', 'Alice')
        lookalike = SubjectFolderKey('', 'GroupA＿Alice')
        assert grouped.sheet_name == 'GroupA＿Alice'
        assert lookalike.sheet_name != grouped.sheet_name
        assert lookalike.sheet_name.startswith('GroupA＿Alice~')

    def test_long_names_with_same_prefix(self):
        first = SubjectFolderKey('', 'x' * 40 + 'one')
        second = SubjectFolderKey('', 'x' * 40 + 'two')
        assert first.sheet_name != second.sheet_name
        assert len(first.sheet_name) <= 31
        assert len(second.sheet_name) <= 31

    def test_replaced_characters(self):
        assert SubjectFolderKey('', 'a/b').sheet_name != SubjectFolderKey('', 'a_b').sheet_name

    def test_lookalikes_get_separate_views(self, workbook_path):
        writer, _ = _writer(workbook_path)
        writer.record([
            _entry('2025/12/18', content='grouped', subject='Alice', group='GroupA'),
            _entry('2025/12/18', content='plain', subject='GroupA＿Alice', group=''),
        ])

        workbook = openpyxl.load_workbook(workbook_path)
        assert len(workbook.sheetnames) == 3
        contents = sorted(
            r[3] for name in workbook.sheetnames if name != 'schedule_log'
            for r in workbook[name].iter_rows(min_row=2, values_only=True)
        )
        assert contents == ['grouped', 'plain']

    @pytest.mark.parametrize('subject', ['schedule_log', 'Schedule_Log'])
    def test_subject_named_like_log_sheet(self, workbook_path, subject):
        writer, _ = _writer(workbook_path)
        writer.record([_entry('2025/12/18', subject=subject, group='')])
        writer, _ = _writer(workbook_path)
        writer.record([_entry('2025/12/18', content='again', subject=subject, group='')])

        workbook = openpyxl.load_workbook(workbook_path)
        assert len(workbook.sheetnames) == 2
        log = _values(workbook_path, 'schedule_log')
        assert log[0] == LOG_HEADER
        assert [r[6] for r in log[1:]] == ['stream', 'again']
        [view_name] = [n for n in workbook.sheetnames if n != 'schedule_log']
        assert writer.view_name(SubjectFolderKey('', subject)) == view_name
        assert _values(workbook_path, view_name)[0] == VIEW_HEADER
