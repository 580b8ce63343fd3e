from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import redis
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import get_settings
from app.settings.types import Priority


logger = logging.getLogger("app.settings.collaborators")
tracer = trace.get_tracer("app.settings.collaborators")


class TaskScheduler(Protocol):
    def recalculate(self, user_ids: Sequence[uuid.UUID]) -> None: ...

    def adjust_start_time(
        self,
        user_ids: Sequence[uuid.UUID] | None = None,
        sd_ids: Sequence[uuid.UUID] | None = None,
    ) -> None: ...

    def update_late_time(self, user_ids: Sequence[uuid.UUID], late_settings: dict[str, Any] | None) -> None: ...


class SettingsCache(Protocol):
    def invalidate(self, user_ids: Sequence[uuid.UUID], namespace: str) -> None: ...


class LeadScoring(Protocol):
    def reset_on_threshold_change(
        self,
        scope_id: uuid.UUID,
        priority: Priority,
        threshold: Any,
        period: Any,
    ) -> None: ...


class LoggingTaskScheduler:
    """Stand-in until the cadence scheduler is reachable from this service."""

    def recalculate(self, user_ids: Sequence[uuid.UUID]) -> None:
        with tracer.start_as_current_span("scheduler.recalculate") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            span.set_attribute("user_count", len(user_ids))
            logger.info("scheduler.recalculate", extra={"affected_count": len(user_ids)})

    def adjust_start_time(
        self,
        user_ids: Sequence[uuid.UUID] | None = None,
        sd_ids: Sequence[uuid.UUID] | None = None,
    ) -> None:
        logger.info(
            "scheduler.adjust_start_time",
            extra={"affected_count": len(user_ids or []) + len(sd_ids or [])},
        )

    def update_late_time(self, user_ids: Sequence[uuid.UUID], late_settings: dict[str, Any] | None) -> None:
        logger.info("scheduler.update_late_time", extra={"affected_count": len(user_ids)})


class LoggingSettingsCache:
    def invalidate(self, user_ids: Sequence[uuid.UUID], namespace: str) -> None:
        logger.info("cache.invalidate", extra={"affected_count": len(user_ids), "operation": namespace})


class RedisSettingsCache:
    def __init__(self, client: redis.Redis, key_prefix: str = "settings") -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "settings") -> RedisSettingsCache:
        return cls(redis.Redis.from_url(url), key_prefix=key_prefix)

    def key_for(self, namespace: str, user_id: uuid.UUID) -> str:
        return f"{self.key_prefix}:{namespace}:{user_id}"

    def invalidate(self, user_ids: Sequence[uuid.UUID], namespace: str) -> None:
        if not user_ids:
            return
        with tracer.start_as_current_span("cache.invalidate") as span:
            span.set_attribute("namespace", namespace)
            span.set_attribute("user_count", len(user_ids))
            self.client.delete(*[self.key_for(namespace, user_id) for user_id in user_ids])


class LoggingLeadScoring:
    def reset_on_threshold_change(
        self,
        scope_id: uuid.UUID,
        priority: Priority,
        threshold: Any,
        period: Any,
    ) -> None:
        logger.info(
            "lead_scoring.reset",
            extra={"scope_id": str(scope_id), "priority": Priority(priority).name},
        )


@dataclass(slots=True)
class SettingsCollaborators:
    scheduler: TaskScheduler
    cache: SettingsCache
    lead_scoring: LeadScoring


_collaborators: SettingsCollaborators | None = None


def _build_default_collaborators() -> SettingsCollaborators:
    settings = get_settings()
    cache: SettingsCache
    if settings.settings_cache_backend.lower() == "redis":
        cache = RedisSettingsCache.from_url(settings.redis_url, key_prefix=settings.settings_cache_key_prefix)
    else:
        cache = LoggingSettingsCache()
    return SettingsCollaborators(scheduler=LoggingTaskScheduler(), cache=cache, lead_scoring=LoggingLeadScoring())


def get_collaborators() -> SettingsCollaborators:
    global _collaborators
    if _collaborators is None:
        _collaborators = _build_default_collaborators()
    return _collaborators


def set_collaborators(collaborators: SettingsCollaborators | None) -> None:
    global _collaborators
    _collaborators = collaborators
