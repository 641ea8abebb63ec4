#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.31.0",
#     "tenacity>=8.2.0",
# ]
# ///
"""
Schedule Extractor

Turns one schedule image into ScheduleEntry objects by asking a
vision-language model (Gemini generateContent over REST) to read it.

Parsing is split in two stages that are tested on their own:
  1. find_json_object()       - locate the first balanced {...} in free text
  2. parse_schedule_payload() - decode it and insist on a "schedules" array

Year disambiguation is delegated to the model through the prompt; the
resolve_year() rule is kept locally only to flag suspicious output.
"""

import base64
import json
import logging
import os
import time
from datetime import date, datetime

import requests
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from schedule_model import (
    DATE_FORMAT,
    OFF_DAY,
    WEEKDAYS,
    ConfigurationError,
    ExternalServiceError,
    ExtractionFailure,
    MalformedResponseError,
    QuotaError,
    ScheduleEntry,
)

logger = logging.getLogger(__name__)

# Script directory for finding default prompt
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

GEMINI_ENDPOINT = 'https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent'

ENTRY_FIELDS = ('date', 'weekday', 'time', 'content', 'note')

# Explanations for structured (non-retried) error responses
STATUS_EXPLANATIONS = {
    400: 'request rejected; check that the file is a readable image and the MIME type is supported',
    401: 'not authenticated; check the API key',
    403: 'permission denied; check the API key and that the API is enabled for the project',
    404: 'model not found; check extraction.model',
    413: 'image too large for an inline request; shrink it before uploading',
}


# ============================================================================
# Prompt
# ============================================================================

def get_default_prompt_file(workspace_dir: str) -> str:
    """Return the default prompt file path, preferring workspace over script directory."""
    workspace_prompt = os.path.join(workspace_dir, 'prompt.txt')
    if os.path.exists(workspace_prompt):
        return workspace_prompt
    return os.path.join(SCRIPT_DIR, 'prompt.txt')


def load_prompt_template(prompt_file: str | None, workspace_dir: str) -> str:
    """Load the prompt template from a file.

    If prompt_file is None, uses get_default_prompt_file() to find the default.
    """
    if prompt_file is None:
        prompt_file = get_default_prompt_file(workspace_dir)

    if not os.path.exists(prompt_file):
        raise ConfigurationError(f"Prompt file not found: {prompt_file}",
                                 remedy='Set prompt_file or restore prompt.txt.')

    with open(prompt_file, 'r', encoding='utf-8') as f:
        return f.read()


def resolve_year(reference_date: date, month: int) -> int:
    """Year for a schedule month seen from reference_date (rollover heuristic)."""
    year = reference_date.year
    if reference_date.month == 12 and month in (1, 2):
        return year + 1
    if reference_date.month == 1 and month == 12:
        return year - 1
    return year


def build_prompt(template: str, subject: str, group: str, reference_date: date) -> str:
    subject_label = f"{subject} ({group})" if group else subject
    return template.format(
        subject=subject,
        group=group,
        subject_label=subject_label,
        today=reference_date.strftime(DATE_FORMAT),
        weekday=WEEKDAYS[reference_date.weekday()],
        year=reference_date.year,
        month=reference_date.month,
        next_year=reference_date.year + 1,
        prev_year=reference_date.year - 1,
        off_day=OFF_DAY,
        weekdays=', '.join(WEEKDAYS),
    )


# ============================================================================
# Response parsing
# ============================================================================

def response_text(envelope) -> str:
    """Pull the model's text out of a generateContent response envelope."""
    if not isinstance(envelope, dict):
        raise MalformedResponseError('Response is not a JSON object')

    candidates = envelope.get('candidates')
    if not candidates:
        block_reason = (envelope.get('promptFeedback') or {}).get('blockReason')
        if block_reason:
            raise MalformedResponseError(f"Request was blocked by the model: {block_reason}",
                                         remedy='The image was refused; check its content.')
        raise MalformedResponseError('Response has no candidates')

    content = candidates[0].get('content') if isinstance(candidates[0], dict) else None
    parts = content.get('parts') if isinstance(content, dict) else None
    if not parts:
        finish = candidates[0].get('finishReason') if isinstance(candidates[0], dict) else None
        raise MalformedResponseError(f"Response candidate has no content parts (finishReason={finish})")

    text = ''.join(p.get('text', '') for p in parts if isinstance(p, dict))
    if not text.strip():
        raise MalformedResponseError('Response candidate has no text')
    return text


def find_json_object(text: str) -> str | None:
    """Return the first balanced {...} substring, ignoring braces inside strings."""
    start = text.find('{')
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == '\\':
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == '{':
                depth += 1
            elif ch == '}':
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # unbalanced from this brace; try the next one
        start = text.find('{', start + 1)
    return None


def parse_schedule_payload(text: str) -> list:
    """Decode the embedded JSON object and return its ``schedules`` list."""
    raw = find_json_object(text)
    if raw is None:
        raise ExtractionFailure('No JSON object found in model output')
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ExtractionFailure(f"JSON parse error: {e}") from e

    schedules = payload.get('schedules') if isinstance(payload, dict) else None
    if not isinstance(schedules, list):
        raise ExtractionFailure("Model output has no 'schedules' array")
    return schedules


def _text(value) -> str:
    if value is None:
        return ''
    return value.strip() if isinstance(value, str) else str(value)


def to_entries(items: list, subject: str, group: str) -> list[ScheduleEntry]:
    """Map raw payload items to entries, forcing subject and group."""
    entries = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"  Skipping non-object schedule item: {item!r}")
            continue
        fields = {name: _text(item.get(name)) for name in ENTRY_FIELDS}
        entries.append(ScheduleEntry(subject=subject, group=group, **fields))
    return entries


def flag_suspicious_dates(entries: list[ScheduleEntry], reference_date: date,
                          max_days: int = 60) -> list[ScheduleEntry]:
    """Log entries whose date looks wrong for reference_date; entries are not changed.

    Returns the flagged entries.
    """
    if max_days <= 0:
        return []

    flagged = []
    for entry in entries:
        try:
            entry_date = datetime.strptime(entry.date, DATE_FORMAT).date()
        except ValueError:
            logger.warning(f"  Date check: unparseable date {entry.date!r} for {entry.subject}")
            flagged.append(entry)
            continue

        expected_year = resolve_year(reference_date, entry_date.month)
        distance = abs((entry_date - reference_date).days)
        if distance > max_days or entry_date.year != expected_year:
            logger.warning(
                f"  Date check: {entry.date} is {distance} days from {reference_date:%Y/%m/%d} "
                f"(expected year {expected_year}) for {entry.subject}"
            )
            flagged.append(entry)
    return flagged


# ============================================================================
# Service client
# ============================================================================

def explain_status(status_code: int) -> str:
    if status_code in STATUS_EXPLANATIONS:
        return STATUS_EXPLANATIONS[status_code]
    if status_code >= 500:
        return 'the service had an internal problem; it is usually temporary'
    return 'unexpected error response'


class GeminiClient:
    """Minimal generateContent client. Transport errors are left to the caller."""

    def __init__(self, api_key: str, model: str, timeout: float = 60, session=None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def generate(self, prompt: str, image_bytes: bytes, mime_type: str) -> dict:
        url = GEMINI_ENDPOINT.format(model=self.model)
        payload = {
            'contents': [{
                'parts': [
                    {'text': prompt},
                    {'inline_data': {
                        'mime_type': mime_type,
                        'data': base64.b64encode(image_bytes).decode('ascii'),
                    }},
                ],
            }],
            'generationConfig': {'temperature': 0.1},
        }
        resp = self.session.post(
            url,
            params={'key': self.api_key},
            json=payload,
            timeout=self.timeout,
        )

        if resp.status_code >= 400:
            raise self._error_from_response(resp)

        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response body is not JSON: {resp.text[:200]}") from e

    def _error_from_response(self, resp) -> ExternalServiceError:
        status_code = resp.status_code
        message = ''
        status = ''
        try:
            error = (resp.json() or {}).get('error') or {}
            message = str(error.get('message', ''))
            status = str(error.get('status', ''))
            if isinstance(error.get('code'), int):
                status_code = error['code']
        except (ValueError, AttributeError):
            message = resp.text[:200]

        detail = f"{message} ({status})" if status else message
        if status_code == 429 or status == 'RESOURCE_EXHAUSTED':
            return QuotaError(f"Gemini quota exceeded ({status_code}): {detail}",
                              status_code=status_code)
        return ExternalServiceError(
            f"Gemini error {status_code}: {explain_status(status_code)}. {detail}".strip(),
            status_code=status_code,
        )


# ============================================================================
# Extractor
# ============================================================================

class ScheduleExtractor:
    def __init__(self, client: GeminiClient, prompt_template: str, *,
                 max_attempts: int = 3, base_delay: float = 2.0,
                 drift_warning_days: int = 60, sleep=time.sleep):
        self.client = client
        self.prompt_template = prompt_template
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.drift_warning_days = drift_warning_days
        self._sleep = sleep

    def extract(self, image_bytes: bytes, mime_type: str, subject: str, group: str,
                reference_date: date) -> list[ScheduleEntry]:
        prompt = build_prompt(self.prompt_template, subject, group, reference_date)
        envelope = self._call_with_retry(prompt, image_bytes, mime_type)
        text = response_text(envelope)
        entries = to_entries(parse_schedule_payload(text), subject, group)
        flag_suspicious_dates(entries, reference_date, self.drift_warning_days)
        logger.info(f"  Extracted {len(entries)} schedule entries for {subject}")
        return entries

    def _call_with_retry(self, prompt: str, image_bytes: bytes, mime_type: str) -> dict:
        # only transport failures are retried; HTTP error responses surface at once
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception_type(requests.exceptions.RequestException),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
        )
        try:
            return retrying(self.client.generate, prompt, image_bytes, mime_type)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise ExternalServiceError(
                f"Gemini unreachable after {self.max_attempts} attempts: {last_error}",
                remedy='Check network connectivity; the file is retried on the next run.',
            ) from last_error
