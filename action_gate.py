#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = []
# ///
"""
Action gate: decides whether each category of side effect actually runs.

Every writer asks the gate before touching its sink, so dry-run and
production behaviour never diverge by writer. Resolution is layered:

    explicit override  >  per-category flag  >  coarse default

and lives in resolve_execute(), the only place the layering is spelled out.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class ActionCategory(str, Enum):
    TABULAR_WRITE = 'tabular_write'
    CALENDAR_WRITE = 'calendar_write'
    DIGEST_SEND = 'digest_send'
    FILE_RELOCATE = 'file_relocate'


_LABELS = {
    ActionCategory.TABULAR_WRITE: 'log sheet write',
    ActionCategory.CALENDAR_WRITE: 'calendar event creation',
    ActionCategory.DIGEST_SEND: 'digest delivery',
    ActionCategory.FILE_RELOCATE: 'file move/trash',
}


@dataclass(frozen=True)
class DryRunPolicy:
    """Execute flags for one run. Built once from config, never mutated."""

    default: bool = True
    flags: Mapping[ActionCategory, bool] = field(default_factory=dict)
    override: bool | None = None

    def __post_init__(self):
        # freeze the mapping so a policy cannot drift mid-run
        object.__setattr__(self, 'flags', MappingProxyType(dict(self.flags)))

    @property
    def is_dry_run(self) -> bool:
        return not any(should_execute(c, self) for c in ActionCategory)


def resolve_execute(category: ActionCategory, *, override: bool | None,
                    flags: Mapping[ActionCategory, bool], default: bool) -> bool:
    if override is not None:
        return bool(override)
    if category in flags and flags[category] is not None:
        return bool(flags[category])
    return bool(default)


def should_execute(category: ActionCategory, policy: DryRunPolicy) -> bool:
    return resolve_execute(category, override=policy.override,
                           flags=policy.flags, default=policy.default)


def label(category) -> str:
    """Human-readable name for a category; unknown names come back unchanged."""
    if isinstance(category, ActionCategory):
        return _LABELS[category]
    name = getattr(category, 'name', category)
    try:
        return _LABELS[ActionCategory[str(name)]]
    except KeyError:
        return str(name)
