from __future__ import annotations

import contextvars
import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_side_effect
from app.otel import mark_span_failed
from app.settings.collaborators import SettingsCollaborators, get_collaborators
from app.settings.domains import DomainDescriptor, SideEffectBinding, SideEffectKind, get_domain
from app.settings.errors import PartialFailureError
from app.settings.types import EffectiveChange, Priority, SettingsDomain


logger = logging.getLogger("app.settings.side_effects")
tracer = trace.get_tracer("app.settings.side_effects")

DISPATCH_MODES = {"celery", "thread", "inline"}


@dataclass(frozen=True, slots=True)
class SideEffectCall:
    domain: SettingsDomain
    kind: SideEffectKind
    user_id: uuid.UUID | None
    record_id: uuid.UUID
    priority: Priority
    scope_id: uuid.UUID | None = None
    namespace: str | None = None
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        if self.scope_id is not None:
            return f"{self.domain.value}:{self.kind.value}:{self.priority.name}:{self.scope_id}"
        return f"{self.domain.value}:{self.kind.value}:{self.user_id}"

    @property
    def target(self) -> str:
        return str(self.scope_id or self.user_id)

    def to_message(self) -> dict[str, Any]:
        return {
            "domain": self.domain.value,
            "kind": self.kind.value,
            "user_id": str(self.user_id) if self.user_id else None,
            "record_id": str(self.record_id),
            "priority": int(self.priority),
            "scope_id": str(self.scope_id) if self.scope_id else None,
            "namespace": self.namespace,
            "params": self.params,
            "correlation_id": get_correlation_id(),
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> SideEffectCall:
        user_id = message.get("user_id")
        scope_id = message.get("scope_id")
        return cls(
            domain=SettingsDomain(message["domain"]),
            kind=SideEffectKind(message["kind"]),
            user_id=uuid.UUID(str(user_id)) if user_id else None,
            record_id=uuid.UUID(str(message["record_id"])),
            priority=Priority(int(message["priority"])),
            scope_id=uuid.UUID(str(scope_id)) if scope_id else None,
            namespace=message.get("namespace"),
            params=dict(message.get("params") or {}),
        )

    def log_fields(self) -> dict[str, Any]:
        return {
            "domain": self.domain.value,
            "side_effect": self.kind.value,
            "user_id": str(self.user_id) if self.user_id else None,
            "scope_id": str(self.scope_id) if self.scope_id else None,
            "record_id": str(self.record_id),
            "priority": self.priority.name,
        }


@dataclass(slots=True)
class DispatchReport:
    mode: str
    calls: list[SideEffectCall] = field(default_factory=list)
    failures: list[PartialFailureError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _params_for(kind: SideEffectKind, after: dict[str, Any]) -> dict[str, Any]:
    if kind == SideEffectKind.UPDATE_LATE_TIME:
        return {"late_settings": after.get("late_settings")}
    if kind == SideEffectKind.RESET_LEAD_SCORE:
        return {"score_threshold": after.get("score_threshold"), "reset_period": after.get("reset_period")}
    return {}


def _call_for(
    descriptor: DomainDescriptor, binding: SideEffectBinding, change: EffectiveChange
) -> SideEffectCall:
    params = _params_for(binding.kind, change.after)
    if not binding.per_record:
        return SideEffectCall(
            domain=descriptor.domain,
            kind=binding.kind,
            user_id=change.user_id,
            record_id=change.record_id,
            priority=change.priority,
            namespace=binding.namespace,
            params=params,
        )
    if change.scope is None:
        # Only this user's membership moved, so only their own scope is affected.
        return SideEffectCall(
            domain=descriptor.domain,
            kind=binding.kind,
            user_id=change.user_id,
            record_id=change.record_id,
            priority=Priority.USER,
            scope_id=change.user_id,
            namespace=binding.namespace,
            params=params,
        )
    return SideEffectCall(
        domain=descriptor.domain,
        kind=binding.kind,
        user_id=None,
        record_id=change.scope.record_id,
        priority=change.scope.priority,
        scope_id=change.scope.scope_id,
        namespace=binding.namespace,
        params=params,
    )


def plan_side_effects(domain: SettingsDomain, changes: list[EffectiveChange]) -> list[SideEffectCall]:
    descriptor = get_domain(domain)
    calls: list[SideEffectCall] = []
    seen: set[str] = set()
    for change in changes:
        for binding in descriptor.side_effects:
            if not binding.fires_for(change):
                continue
            call = _call_for(descriptor, binding, change)
            if call.dedupe_key in seen:
                continue
            seen.add(call.dedupe_key)
            calls.append(call)
    return calls


def execute_side_effect(collaborators: SettingsCollaborators, call: SideEffectCall) -> None:
    if call.kind == SideEffectKind.RESET_LEAD_SCORE:
        collaborators.lead_scoring.reset_on_threshold_change(
            call.scope_id or call.user_id,
            call.priority,
            call.params.get("score_threshold"),
            call.params.get("reset_period"),
        )
        return

    if call.user_id is None:
        raise ValueError(f"side effect {call.kind.value} needs a user")
    user_ids = [call.user_id]
    if call.kind == SideEffectKind.RECALCULATE_TASKS:
        collaborators.scheduler.recalculate(user_ids)
    elif call.kind == SideEffectKind.ADJUST_START_TIME:
        collaborators.scheduler.adjust_start_time(user_ids=user_ids)
    elif call.kind == SideEffectKind.UPDATE_LATE_TIME:
        collaborators.scheduler.update_late_time(user_ids, call.params.get("late_settings"))
    elif call.kind == SideEffectKind.INVALIDATE_CACHE:
        collaborators.cache.invalidate(user_ids, call.namespace or call.domain.value)
    else:
        raise ValueError(f"unsupported side effect {call.kind}")


_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def _get_executor(max_workers: int) -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="settings-side-effects")
        return _executor


def shutdown_executor(wait: bool = True) -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None


class SideEffectDispatcher:
    def __init__(
        self,
        *,
        mode: str | None = None,
        collaborators: SettingsCollaborators | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._mode = mode
        self._collaborators = collaborators
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def mode(self) -> str:
        mode = (self._mode or get_settings().settings_side_effect_mode).lower()
        if mode not in DISPATCH_MODES:
            raise ValueError(f"unknown side effect dispatch mode '{mode}'")
        return mode

    @property
    def collaborators(self) -> SettingsCollaborators:
        return self._collaborators or get_collaborators()

    def dispatch(self, domain: SettingsDomain, changes: list[EffectiveChange]) -> DispatchReport:
        mode = self.mode
        calls = plan_side_effects(domain, changes)
        report = DispatchReport(mode=mode, calls=calls)
        if not calls:
            logger.info(
                "settings.side_effects.noop",
                extra={"domain": domain.value, "affected_count": len(changes), "dispatch_mode": mode},
            )
            return report

        logger.info(
            "settings.side_effects.dispatched",
            extra={"domain": domain.value, "affected_count": len(calls), "dispatch_mode": mode},
        )
        if mode == "celery":
            self._submit_to_celery(calls, report)
        elif mode == "thread":
            executor = _get_executor(get_settings().settings_side_effect_workers)
            for call in calls:
                context = contextvars.copy_context()
                executor.submit(context.run, self.run, call)
        else:
            for call in calls:
                failure = self.run(call)
                if failure is not None:
                    report.failures.append(failure)
        return report

    def run(self, call: SideEffectCall) -> PartialFailureError | None:
        settings = get_settings()
        attempts = max(1, self._max_attempts or settings.settings_side_effect_max_attempts)
        backoff = settings.settings_side_effect_retry_backoff_seconds if self._backoff_seconds is None else self._backoff_seconds
        collaborators = self.collaborators
        log_fields = call.log_fields()

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            with tracer.start_as_current_span("settings.side_effect") as span:
                span.set_attribute("side_effect", call.kind.value)
                span.set_attribute("domain", call.domain.value)
                span.set_attribute("target", call.target)
                span.set_attribute("attempt", attempt)
                try:
                    execute_side_effect(collaborators, call)
                except Exception as exc:
                    mark_span_failed(span, exc)
                    duration = time.perf_counter() - started
                    if attempt < attempts:
                        observe_side_effect(call.domain.value, call.kind.value, "retrying", duration)
                        logger.warning(
                            "settings.side_effect.retrying",
                            extra={**log_fields, "attempt": attempt, "error": str(exc)[:500]},
                        )
                        self._sleep(backoff * attempt)
                        continue

                    observe_side_effect(call.domain.value, call.kind.value, "failed", duration)
                    logger.error(
                        "settings.side_effect.failed",
                        extra={**log_fields, "attempt": attempt, "error": str(exc)[:500]},
                    )
                    return PartialFailureError(call.kind.value, call.target, attempt, str(exc))

            observe_side_effect(call.domain.value, call.kind.value, "succeeded", time.perf_counter() - started)
            logger.info("settings.side_effect.succeeded", extra={**log_fields, "attempt": attempt})
            return None
        return None

    def _submit_to_celery(self, calls: list[SideEffectCall], report: DispatchReport) -> None:
        from app.settings.tasks import run_side_effect_task

        for call in calls:
            try:
                run_side_effect_task.apply_async(kwargs={"message": call.to_message()})
            except Exception as exc:
                logger.error(
                    "settings.side_effect.enqueue_failed",
                    extra={**call.log_fields(), "error": str(exc)[:500]},
                )
                report.failures.append(PartialFailureError(call.kind.value, call.target, 0, str(exc)))

