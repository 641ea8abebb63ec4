#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "openpyxl>=3.1.0",
#     "pyyaml>=6.0.0",
#     "requests>=2.31.0",
#     "tenacity>=8.2.0",
# ]
# ///
"""
Schedule Sync Processor

Processes schedule images from per-subject input folders, extracts entries
with a vision model, writes them to the schedule log and calendar, and moves
each image into the matching processed folder.

Input layout (folder names are "<group>＿<subject>"):

    input/
      GroupA＿Alice/   schedule-0101.png ...
      Bob/             week12.jpg ...
    processed/
      GroupA＿Alice/   (created on first move)

An image whose name is already in the processed folder has been handled
before; the input copy is purged without calling the model again.

Run with: uv run run_schedule_sync.py [--config config.yaml] [--dry-run]
"""

import argparse
import logging
import sys
from datetime import date
from enum import Enum
from pathlib import Path

from action_gate import ActionCategory, DryRunPolicy, label, should_execute
from schedule_calendar import CalendarWriter
from schedule_config import PROCESS_REQUIRED, Settings, build_policy, load_config, require
from schedule_extract import GeminiClient, ScheduleExtractor, load_prompt_template
from schedule_log import LogWriter
from schedule_model import (
    FatalError,
    QuotaError,
    RunSummary,
    ScheduleSyncError,
    SubjectFolderKey,
)
from schedule_stores import FolderStore, OrgCalendar, WorkbookStore

logger = logging.getLogger(__name__)

IMAGE_MIME_PREFIX = 'image/'


class Decision(str, Enum):
    PROCESS = 'process'
    PURGE = 'purge'


def decide(candidate_name: str, processed_names) -> Decision:
    """PURGE when the name was already processed, otherwise PROCESS."""
    if candidate_name in processed_names:
        return Decision.PURGE
    return Decision.PROCESS


class SchedulePipeline:
    """One pass over every subject folder under the input root."""

    def __init__(self, *, blobs: FolderStore, extractor: ScheduleExtractor,
                 log_writer: LogWriter, calendar_writer: CalendarWriter,
                 policy: DryRunPolicy, input_root: Path, processed_root: Path,
                 delimiter: str = '＿'):
        self.blobs = blobs
        self.extractor = extractor
        self.log_writer = log_writer
        self.calendar_writer = calendar_writer
        self.policy = policy
        self.input_root = Path(input_root)
        self.processed_root = Path(processed_root)
        self.delimiter = delimiter

    def run(self, reference_date: date | None = None) -> RunSummary:
        reference_date = reference_date or date.today()
        summary = RunSummary()

        self.blobs.require_folder(self.input_root, 'Input root folder')
        self.blobs.require_folder(self.processed_root, 'Processed root folder')

        if self.policy.is_dry_run:
            logger.info("Dry run: no sheet, calendar or file changes will be made")

        folders = self.blobs.list_subfolders(self.input_root)
        logger.info(f"Found {len(folders)} subject folder(s) in {self.input_root}")

        for folder in folders:
            key = SubjectFolderKey.from_folder_name(folder.name, self.delimiter)
            self.process_subject_folder(folder, key, reference_date, summary)

        logger.info('=' * 60)
        logger.info(f"Processing complete: {summary}")
        logger.info('=' * 60)
        return summary

    def _processed_folder(self, key: SubjectFolderKey) -> Path:
        if should_execute(ActionCategory.FILE_RELOCATE, self.policy):
            return self.blobs.create_folder_if_absent(self.processed_root, key.folder_name)
        return self.processed_root / key.folder_name

    def process_subject_folder(self, folder: Path, key: SubjectFolderKey,
                               reference_date: date, summary: RunSummary) -> None:
        processed_folder = self._processed_folder(key)
        # snapshot once; names added by this pass are not re-read
        processed_names = frozenset(self.blobs.list_names(processed_folder))

        images = self.blobs.list_files(folder, IMAGE_MIME_PREFIX)
        if not images:
            logger.debug(f"No images in {folder.name}/")
            return

        logger.info(f"\n{key.display}: {len(images)} image(s)")

        for image in images:
            try:
                if decide(image.name, processed_names) is Decision.PURGE:
                    self.purge(image)
                    summary.skipped += 1
                    summary.purged += 1
                    continue

                self.process_file(image, key, processed_folder, reference_date)
                summary.processed += 1
            except FatalError:
                raise
            except QuotaError as e:
                summary.errored += 1
                logger.warning(f"  {image.name}: {e.describe()}")
            except ScheduleSyncError as e:
                summary.errored += 1
                logger.error(f"  {image.name}: {e.describe()}")
            except Exception as e:
                summary.errored += 1
                logger.error(f"  {image.name}: unexpected error: {e}", exc_info=True)

    def purge(self, image: Path) -> None:
        if not should_execute(ActionCategory.FILE_RELOCATE, self.policy):
            logger.info(f"  [DRY RUN] Skipping {label(ActionCategory.FILE_RELOCATE)}: "
                        f"{image.name} already processed")
            return
        self.blobs.move_or_trash(image, None)
        logger.info(f"  Purged {image.name}: already in processed folder")

    def process_file(self, image: Path, key: SubjectFolderKey, processed_folder: Path,
                     reference_date: date) -> None:
        """Extract, write both sinks, then relocate the image."""
        logger.info(f"  Processing: {image.name}")
        entries = self.extractor.extract(
            self.blobs.get_bytes(image),
            self.blobs.get_content_type(image),
            key.subject,
            key.group,
            reference_date,
        )

        self.log_writer.record(entries)
        created = self.calendar_writer.publish(entries)
        logger.info(f"  {len(entries)} entries, {created} new calendar event(s)")

        if not should_execute(ActionCategory.FILE_RELOCATE, self.policy):
            logger.info(f"  [DRY RUN] Skipping {label(ActionCategory.FILE_RELOCATE)}: {image.name}")
            return
        moved_to = self.blobs.move_or_trash(image, processed_folder)
        logger.info(f"  Moved to: {moved_to}")


def build_pipeline(config: dict, dry_run: bool | None = None, session=None) -> SchedulePipeline:
    """Validate config and resolve every run-level resource before any file is touched."""
    require(config, PROCESS_REQUIRED)
    settings = Settings.from_config(config)
    policy = build_policy(config, dry_run)

    prompt_file = str(settings.prompt_file) if settings.prompt_file else None
    prompt_template = load_prompt_template(prompt_file, str(settings.workspace))

    client = GeminiClient(settings.api_key, settings.model,
                          timeout=settings.timeout_seconds, session=session)
    extractor = ScheduleExtractor(
        client,
        prompt_template,
        max_attempts=settings.max_attempts,
        base_delay=settings.base_delay_seconds,
        drift_warning_days=settings.drift_warning_days,
    )

    workbook = WorkbookStore.open(settings.workbook_path)
    calendar = OrgCalendar.open(settings.calendar_path)

    return SchedulePipeline(
        blobs=FolderStore(settings.trash_dir),
        extractor=extractor,
        log_writer=LogWriter(workbook, policy, settings.log_sheet),
        calendar_writer=CalendarWriter(calendar, policy, settings.event_hours),
        policy=policy,
        input_root=settings.input_root,
        processed_root=settings.processed_root,
        delimiter=settings.delimiter,
    )


def run_schedule_sync(config: dict, dry_run: bool | None = None,
                      reference_date: date | None = None) -> RunSummary:
    """The "process new images" trigger."""
    return build_pipeline(config, dry_run).run(reference_date)


def main():
    parser = argparse.ArgumentParser(
        description='Process new schedule images into the log, calendar and processed folders.',
        epilog='Processes every image under the input root, one subject folder at a time.'
    )
    parser.add_argument('--config', default=None,
                        help='Path to config.yaml. Default: SCHEDULE_SYNC_CONFIG env var, or ./config.yaml.')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Extract and log what would happen without writing anything.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(args.config)
        summary = run_schedule_sync(config, dry_run=args.dry_run)
    except FatalError as e:
        logger.error(e.describe())
        sys.exit(1)

    # Exit with appropriate code
    if summary.errored > 0:
        sys.exit(1)  # Some files failed
    sys.exit(0)


if __name__ == "__main__":
    main()
