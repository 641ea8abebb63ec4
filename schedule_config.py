#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Configuration loading for schedule sync.

Configuration is a YAML file (path from --config, SCHEDULE_SYNC_CONFIG, or
config.yaml). Secrets may instead come from the environment. Each entry point
declares the keys it needs, and every missing key is reported at once before
any I/O happens.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from action_gate import ActionCategory, DryRunPolicy
from schedule_model import DEFAULT_DELIMITER, ConfigurationError

CONFIG_FILE = os.getenv('SCHEDULE_SYNC_CONFIG', 'config.yaml')

# Environment variable -> config key it fills in
ENV_OVERRIDES = {
    'GEMINI_API_KEY': ('extraction', 'api_key'),
    'DIGEST_WEBHOOK_URL': ('digest', 'webhook_url'),
}

PROCESS_REQUIRED = [
    'folders.input_root',
    'folders.processed_root',
    'workbook.path',
    'calendar.path',
    'extraction.api_key',
]

DIGEST_REQUIRED = [
    'workbook.path',
    'digest.webhook_url',
]

DEFAULT_MODEL = 'gemini-2.5-flash'


def load_config(config_file: str | None = None) -> dict:
    """Load configuration from YAML file, then apply environment overrides."""
    config_path = Path(config_file or CONFIG_FILE)
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            remedy='Copy config.example.yaml to config.yaml or pass --config.',
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Configuration file is not valid YAML: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")

    config.setdefault('workspace', str(config_path.resolve().parent))
    return apply_env_overrides(config)


def apply_env_overrides(config: dict, environ=None) -> dict:
    environ = os.environ if environ is None else environ
    for env_name, keys in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if not value:
            continue
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value
    return config


def _get_nested(config: dict, keys: list[str], default=None):
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def require(config: dict, required: list[str]) -> None:
    """Raise one ConfigurationError naming every missing or blank key."""
    missing = []
    for dotted in required:
        value = _get_nested(config, dotted.split('.'))
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(dotted)
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}",
            missing=missing,
        )


def build_policy(config: dict, dry_run: bool | None = None) -> DryRunPolicy:
    """Build the run's DryRunPolicy.

    ``dry_run`` (from the CLI) wins over the config's ``dry_run`` key; either
    one set to true forces every category off.
    """
    if dry_run is None:
        dry_run = _get_nested(config, ['dry_run'])
    override = False if dry_run else None

    actions = _get_nested(config, ['actions'], {}) or {}
    flags = {}
    for category in ActionCategory:
        if actions.get(category.value) is not None:
            flags[category] = bool(actions[category.value])

    return DryRunPolicy(
        default=bool(actions.get('execute', True)),
        flags=flags,
        override=override,
    )


def _number(config: dict, keys: list[str], default, kind=int):
    """Read a numeric setting; a value that is not a number is a ConfigurationError."""
    value = _get_nested(config, keys, default)
    if value is None:
        value = default
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        dotted = '.'.join(keys)
        raise ConfigurationError(
            f"Configuration value {dotted} must be a number, got {value!r}",
            missing=[dotted],
            remedy=f"Set {dotted} to a number or remove it to use the default ({default}).",
        ) from e


@dataclass(frozen=True)
class Settings:
    """Resolved, typed view of the config used by the pipeline and digest."""

    workspace: Path
    input_root: Path | None
    processed_root: Path | None
    trash_dir: Path | None
    delimiter: str
    workbook_path: Path | None
    log_sheet: str
    calendar_path: Path | None
    event_hours: int
    api_key: str | None
    model: str
    timeout_seconds: float
    max_attempts: int
    base_delay_seconds: float
    drift_warning_days: int
    prompt_file: Path | None
    webhook_url: str | None
    digest_max_length: int
    digest_timeout_seconds: float

    @classmethod
    def from_config(cls, config: dict) -> 'Settings':
        workspace = Path(config.get('workspace') or '.')

        def path(keys, default=None):
            value = _get_nested(config, keys, default)
            if not value:
                return None
            p = Path(str(value)).expanduser()
            return p if p.is_absolute() else workspace / p

        processed_root = path(['folders', 'processed_root'])
        trash_dir = path(['folders', 'trash'])
        if trash_dir is None and processed_root is not None:
            trash_dir = processed_root.parent / '.trash'

        return cls(
            workspace=workspace,
            input_root=path(['folders', 'input_root']),
            processed_root=processed_root,
            trash_dir=trash_dir,
            delimiter=_get_nested(config, ['folders', 'delimiter'], DEFAULT_DELIMITER) or DEFAULT_DELIMITER,
            workbook_path=path(['workbook', 'path']),
            log_sheet=_get_nested(config, ['workbook', 'log_sheet'], 'schedule_log'),
            calendar_path=path(['calendar', 'path']),
            event_hours=_number(config, ['calendar', 'event_hours'], 2),
            api_key=_get_nested(config, ['extraction', 'api_key']),
            model=_get_nested(config, ['extraction', 'model'], DEFAULT_MODEL),
            timeout_seconds=_number(config, ['extraction', 'timeout_seconds'], 60, float),
            max_attempts=_number(config, ['extraction', 'max_attempts'], 3),
            base_delay_seconds=_number(config, ['extraction', 'base_delay_seconds'], 2, float),
            drift_warning_days=_number(config, ['extraction', 'drift_warning_days'], 60),
            prompt_file=path(['prompt_file']),
            webhook_url=_get_nested(config, ['digest', 'webhook_url']),
            digest_max_length=_number(config, ['digest', 'max_length'], 2000),
            digest_timeout_seconds=_number(config, ['digest', 'timeout_seconds'], 20, float),
        )
