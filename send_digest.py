#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "openpyxl>=3.1.0",
#     "pyyaml>=6.0.0",
#     "requests>=2.31.0",
# ]
# ///
"""
Schedule Digest

Reads the permanent schedule log, picks today's and tomorrow's streams, and
posts a grouped summary to a chat webhook (Discord-style {"content": ...}).
Runs on its own schedule, separately from image processing; a missed digest
is simply sent again on the next trigger, so failures are not retried.

Usage:
    uv run send_digest.py
    uv run send_digest.py --config /path/to/config.yaml --dry-run
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import date, timedelta

import requests

from action_gate import ActionCategory, DryRunPolicy, label, should_execute
from schedule_config import DIGEST_REQUIRED, Settings, build_policy, load_config, require
from schedule_model import (
    DATE_FORMAT,
    WEEKDAYS,
    ExternalServiceError,
    FatalError,
    ScheduleEntry,
)
from schedule_stores import WorkbookStore

logger = logging.getLogger(__name__)

DIVIDER = '━━━━━━━━━━━━━━━'
NOTHING_SCHEDULED = '配信予定はありません'
FOOTER = '※画像から自動で読み取った予定です。最新情報は各配信者の告知をご確認ください。'

# Discord rejects messages longer than this
DEFAULT_MAX_LENGTH = 2000


@dataclass
class DigestResult:
    sent: bool
    message: str
    entries: int = 0
    chunks: list[str] = field(default_factory=list)


def read_logged_entries(store: WorkbookStore, sheet_name: str) -> list[ScheduleEntry]:
    sheet = store.get_sheet(sheet_name)
    return [ScheduleEntry.from_log_row(row) for row in store.read_rows(sheet)]


def entries_for_day(entries: list[ScheduleEntry], day: date) -> list[ScheduleEntry]:
    target = day.strftime(DATE_FORMAT)
    return [e for e in entries if e.date.strip() == target and not e.is_off_day]


def _time_key(entry: ScheduleEntry) -> tuple:
    """Order by clock time; "9:00" comes before "10:00", unreadable times last."""
    try:
        hour, minute = (int(p) for p in entry.time.strip().split(':'))
    except ValueError:
        return (1, 0, 0, entry.time)
    return (0, hour, minute, entry.time)


def group_entries(entries: list[ScheduleEntry]) -> dict:
    """Group by subject in first-seen order; sort by time and drop repeated lines."""
    grouped = {}
    for entry in entries:
        grouped.setdefault(entry.key, [])
        if all((e.time, e.content) != (entry.time, entry.content) for e in grouped[entry.key]):
            grouped[entry.key].append(entry)
    for items in grouped.values():
        items.sort(key=_time_key)
    return grouped


def _day_header(title: str, day: date) -> str:
    return f"📅 **{title}** ({day.month}/{day.day} {WEEKDAYS[day.weekday()]})"


def _day_section(title: str, day: date, entries: list[ScheduleEntry]) -> list[str]:
    lines = [_day_header(title, day)]
    grouped = group_entries(entries)
    if not grouped:
        lines.append(NOTHING_SCHEDULED)
        return lines
    for key, items in grouped.items():
        lines.append(f"▼ {key.display}")
        for e in items:
            line = f"・{e.time} {e.content}"
            if e.note:
                line += f" ({e.note})"
            lines.append(line)
    return lines


def compose_digest(entries: list[ScheduleEntry], today: date) -> str | None:
    """Render the digest text, or None when neither day has anything scheduled."""
    tomorrow = today + timedelta(days=1)
    todays = entries_for_day(entries, today)
    tomorrows = entries_for_day(entries, tomorrow)
    if not todays and not tomorrows:
        return None

    lines = _day_section('本日の配信予定', today, todays)
    lines += ['', DIVIDER, '']
    lines += _day_section('明日の配信予定', tomorrow, tomorrows)
    lines += ['', FOOTER]
    return '\n'.join(lines)


def split_message(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> list[str]:
    """Split text on line boundaries into chunks no longer than max_length."""
    chunks = []
    current = ''
    for line in text.split('\n'):
        while len(line) > max_length:
            if current:
                chunks.append(current)
                current = ''
            chunks.append(line[:max_length])
            line = line[max_length:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > max_length:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current.strip():
        chunks.append(current)
    return chunks


def post_webhook(url: str, text: str, timeout: float = 20, session=None) -> None:
    """POST one message; anything but 2xx is an ExternalServiceError."""
    poster = session or requests
    try:
        resp = poster.post(url, json={'content': text}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise ExternalServiceError(f"Webhook delivery failed: {e}",
                                   remedy='Check the webhook URL and network; the next digest run will resend.') from e
    if not 200 <= resp.status_code < 300:
        raise ExternalServiceError(
            f"Webhook delivery failed ({resp.status_code}): {resp.text.strip()[:200]}",
            status_code=resp.status_code,
            remedy='Check that the webhook still exists; the next digest run will resend.',
        )


class DigestWriter:
    def __init__(self, webhook_url: str, policy: DryRunPolicy, *,
                 max_length: int = DEFAULT_MAX_LENGTH, timeout: float = 20, session=None):
        self.webhook_url = webhook_url
        self.policy = policy
        self.max_length = max_length
        self.timeout = timeout
        self.session = session

    def compose_and_send(self, all_logged_entries: list[ScheduleEntry], today: date | None = None) -> DigestResult:
        today = today or date.today()
        text = compose_digest(all_logged_entries, today)
        if text is None:
            logger.info(f"No streams scheduled for {today:%Y/%m/%d} or the day after; nothing sent")
            return DigestResult(sent=False, message='nothing scheduled for today or tomorrow')

        count = sum(
            len(items)
            for day in (today, today + timedelta(days=1))
            for items in group_entries(entries_for_day(all_logged_entries, day)).values()
        )
        chunks = split_message(text, self.max_length)

        if not should_execute(ActionCategory.DIGEST_SEND, self.policy):
            logger.info(f"[DRY RUN] Skipping {label(ActionCategory.DIGEST_SEND)} "
                        f"({len(chunks)} message(s)):\n{text}")
            return DigestResult(sent=False, message='dry run', entries=count, chunks=chunks)

        for chunk in chunks:
            post_webhook(self.webhook_url, chunk, timeout=self.timeout, session=self.session)
        logger.info(f"Digest sent: {count} entries in {len(chunks)} message(s)")
        return DigestResult(sent=True, message='sent', entries=count, chunks=chunks)


def run_digest(config: dict, dry_run: bool | None = None, today: date | None = None,
               session=None) -> DigestResult:
    """The "send digest" trigger: validate config, read the log, send."""
    require(config, DIGEST_REQUIRED)
    settings = Settings.from_config(config)
    policy = build_policy(config, dry_run)

    store = WorkbookStore.open(settings.workbook_path, create=False)
    entries = read_logged_entries(store, settings.log_sheet)
    logger.info(f"Read {len(entries)} logged entries from '{settings.log_sheet}'")

    writer = DigestWriter(settings.webhook_url, policy,
                          max_length=settings.digest_max_length,
                          timeout=settings.digest_timeout_seconds,
                          session=session)
    return writer.compose_and_send(entries, today)


def main():
    parser = argparse.ArgumentParser(
        description="Post today's and tomorrow's stream schedule to the chat webhook."
    )
    parser.add_argument('--config', default=None,
                        help='Path to config.yaml. Default: SCHEDULE_SYNC_CONFIG env var, or ./config.yaml.')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Log the digest instead of sending it.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(args.config)
        result = run_digest(config, dry_run=args.dry_run)
    except (FatalError, ExternalServiceError) as e:
        logger.error(e.describe())
        sys.exit(1)

    logger.info(f"Digest: {result.message}")
    sys.exit(0)


if __name__ == '__main__':
    main()
