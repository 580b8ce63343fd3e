from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class Priority(IntEnum):
    """Settings level; a higher value always wins for an affected user."""

    ADMIN = 1
    SUB_DEPARTMENT = 2
    USER = 3


class SettingsDomain(str, Enum):
    AUTOMATED_TASK = "automated_task"
    BOUNCED_MAIL = "bounced_mail"
    UNSUBSCRIBE_MAIL = "unsubscribe_mail"
    TASK = "task"
    SKIP = "skip"
    LEAD_SCORE = "lead_score"


PROTECT_USER_LEVEL: frozenset[Priority] = frozenset({Priority.USER})


def scope_key_for(priority: Priority, sd_id: uuid.UUID | None, user_id: uuid.UUID | None) -> str:
    if priority == Priority.ADMIN:
        return "admin"
    if priority == Priority.SUB_DEPARTMENT:
        return f"sd:{sd_id}"
    return f"user:{user_id}"


@dataclass(frozen=True, slots=True)
class RecordScope:
    """A record keyed the way consumers look it up: its priority plus the company, sub-department or user id."""

    record_id: uuid.UUID
    priority: Priority
    scope_id: uuid.UUID

    @classmethod
    def of(
        cls,
        record_id: uuid.UUID,
        priority: Priority,
        *,
        company_id: uuid.UUID,
        sd_id: uuid.UUID | None,
        user_id: uuid.UUID | None,
    ) -> RecordScope:
        if priority == Priority.ADMIN:
            scope_id = company_id
        elif priority == Priority.SUB_DEPARTMENT:
            scope_id = sd_id
        else:
            scope_id = user_id
        if scope_id is None:
            raise ValueError(f"{priority.name} record {record_id} has no scope id")
        return cls(record_id=record_id, priority=priority, scope_id=scope_id)


@dataclass(frozen=True, slots=True)
class ScopeUpdate:
    sd_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None


@dataclass(frozen=True, slots=True)
class PointerMove:
    user_id: uuid.UUID
    previous_record_id: uuid.UUID
    previous_priority: Priority
    record_id: uuid.UUID
    priority: Priority


@dataclass(slots=True)
class EffectiveChange:
    """What one user's effective settings were before a commit and what they are after it."""

    user_id: uuid.UUID
    previous_record_id: uuid.UUID
    previous_priority: Priority
    record_id: uuid.UUID
    priority: Priority
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)
    # The mutated record this change came from; None when only membership moved.
    scope: RecordScope | None = None

    @property
    def repointed(self) -> bool:
        return self.previous_record_id != self.record_id or self.previous_priority != self.priority

    @property
    def changed_fields(self) -> set[str]:
        keys = set(self.before) | set(self.after)
        return {key for key in keys if self.before.get(key) != self.after.get(key)}


def merge_changes(*groups: list[EffectiveChange]) -> list[EffectiveChange]:
    """Deduplicate by user, keeping the earliest 'before' and the latest 'after'."""
    merged: dict[uuid.UUID, EffectiveChange] = {}
    for group in groups:
        for change in group:
            existing = merged.get(change.user_id)
            if existing is None:
                merged[change.user_id] = EffectiveChange(
                    user_id=change.user_id,
                    previous_record_id=change.previous_record_id,
                    previous_priority=change.previous_priority,
                    record_id=change.record_id,
                    priority=change.priority,
                    before=dict(change.before),
                    after=dict(change.after),
                    scope=change.scope,
                )
                continue
            existing.record_id = change.record_id
            existing.priority = change.priority
            existing.after = dict(change.after)
            if change.scope is not None:
                existing.scope = change.scope
    return list(merged.values())
