from __future__ import annotations

import uuid
from collections.abc import Generator, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from app import audit, events
from app.core.config import get_settings
from app.settings.collaborators import SettingsCollaborators, set_collaborators
from app.settings.dispatcher import SideEffectDispatcher
from app.settings.types import Priority


@dataclass
class RecordingCollaborators:
    """Scheduler, cache and lead scoring fake in one; ``failures`` makes a call raise N times."""

    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    failures: dict[str, int] = field(default_factory=dict)

    def _record(self, name: str, **kwargs: Any) -> None:
        remaining = self.failures.get(name, 0)
        if remaining:
            self.failures[name] = remaining - 1
            raise RuntimeError(f"{name} unavailable")
        self.calls.append((name, kwargs))

    def recalculate(self, user_ids: Sequence[uuid.UUID]) -> None:
        self._record("recalculate", user_ids=list(user_ids))

    def adjust_start_time(
        self,
        user_ids: Sequence[uuid.UUID] | None = None,
        sd_ids: Sequence[uuid.UUID] | None = None,
    ) -> None:
        self._record("adjust_start_time", user_ids=list(user_ids or []))

    def update_late_time(self, user_ids: Sequence[uuid.UUID], late_settings: dict[str, Any] | None) -> None:
        self._record("update_late_time", user_ids=list(user_ids), late_settings=late_settings)

    def invalidate(self, user_ids: Sequence[uuid.UUID], namespace: str) -> None:
        self._record("invalidate", user_ids=list(user_ids), namespace=namespace)

    def reset_on_threshold_change(self, scope_id: uuid.UUID, priority: Priority, threshold: Any, period: Any) -> None:
        self._record("reset_lead_score", scope_id=scope_id, priority=priority, threshold=threshold, period=period)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def users_for(self, name: str) -> set[uuid.UUID]:
        users: set[uuid.UUID] = set()
        for call_name, kwargs in self.calls:
            if call_name == name:
                users.update(kwargs.get("user_ids") or [kwargs.get("scope_id")])
        return users

    def as_collaborators(self) -> SettingsCollaborators:
        return SettingsCollaborators(scheduler=self, cache=self, lead_scoring=self)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    set_collaborators(None)


@pytest.fixture()
def recorder() -> RecordingCollaborators:
    recording = RecordingCollaborators()
    set_collaborators(recording.as_collaborators())
    return recording


@pytest.fixture()
def inline_dispatcher(recorder: RecordingCollaborators) -> SideEffectDispatcher:
    return SideEffectDispatcher(
        mode="inline",
        collaborators=recorder.as_collaborators(),
        max_attempts=3,
        backoff_seconds=0,
        sleep=lambda _: None,
    )
