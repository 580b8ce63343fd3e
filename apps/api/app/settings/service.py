from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.context import get_actor_id
from app.metrics import observe_pointer_repoints, observe_settings_mutation
from app.otel import mark_span_failed
from app.settings.dispatcher import DispatchReport, SideEffectDispatcher
from app.settings.domains import get_domain
from app.settings.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    PriorityMismatchError,
    SettingsError,
    SettingsValidationError,
)
from app.settings.models import SettingsAssignmentPointer, SettingsOverride, utcnow
from app.settings.repository import AssignmentPointerStore, OverrideStore
from app.settings.schemas import CompanyDomainSettingsRead, OverrideRead
from app.settings.types import (
    PROTECT_USER_LEVEL,
    EffectiveChange,
    PointerMove,
    Priority,
    RecordScope,
    ScopeUpdate,
    SettingsDomain,
    merge_changes,
)


logger = logging.getLogger("app.settings.overrides")
tracer = trace.get_tracer("app.settings.overrides")

ENTITY_TYPE = "settings_override"
_CONFLICT_MESSAGE = "an exception already exists for this entity, update it instead"
_EVENT_TYPES = {
    "create": "settings.override.created",
    "update": "settings.override.updated",
    "delete": "settings.override.deleted",
}


@contextmanager
def unit_of_work(session: Session, operation: str, domain: str, span: Span | None = None) -> Iterator[None]:
    """Commit on success; roll back both stores on any failure and translate driver errors."""
    try:
        yield
        session.commit()
    except SettingsError as exc:
        session.rollback()
        _reject(exc, operation, domain, span)
        raise
    except IntegrityError as exc:
        session.rollback()
        error = ConflictError(_CONFLICT_MESSAGE)
        _reject(error, operation, domain, span)
        raise error from exc
    except SQLAlchemyError as exc:
        session.rollback()
        error = PersistenceError("settings store failure", details={"error": str(exc)[:500]})
        _reject(error, operation, domain, span)
        raise error from exc


def _reject(exc: SettingsError, operation: str, domain: str, span: Span | None) -> None:
    observe_settings_mutation(domain, operation, exc.code.lower())
    if span is not None:
        mark_span_failed(span, exc)
    log = logger.error if isinstance(exc, PersistenceError) else logger.info
    log(
        "settings.override.rejected",
        extra={"operation": operation, "domain": domain, "status": exc.code, "error": exc.message},
    )


def _scope_of(record: SettingsOverride) -> RecordScope:
    return RecordScope.of(
        record.id,
        Priority(record.priority),
        company_id=record.company_id,
        sd_id=record.sd_id,
        user_id=record.user_id,
    )


def serialize_override(record: SettingsOverride) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "domain": record.domain,
        "priority": int(record.priority),
        "company_id": str(record.company_id),
        "sd_id": str(record.sd_id) if record.sd_id else None,
        "user_id": str(record.user_id) if record.user_id else None,
        "payload": dict(record.payload or {}),
    }


@dataclass(slots=True)
class SettingsOverrideService:
    overrides: OverrideStore = field(default_factory=OverrideStore)
    pointers: AssignmentPointerStore = field(default_factory=AssignmentPointerStore)
    dispatcher: SideEffectDispatcher = field(default_factory=SideEffectDispatcher)

    def create_exception(
        self,
        session: Session,
        domain: SettingsDomain | str,
        *,
        priority: Priority | int,
        company_id: uuid.UUID,
        sd_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        payload: dict[str, Any],
        actor_user_id: str | None = None,
    ) -> SettingsOverride:
        descriptor = get_domain(domain)
        domain = descriptor.domain
        priority = Priority(priority)

        with tracer.start_as_current_span("settings.override.create") as span:
            span.set_attribute("domain", domain.value)
            span.set_attribute("priority", priority.name)
            with unit_of_work(session, "create", domain.value, span):
                if priority == Priority.ADMIN:
                    raise PriorityMismatchError(
                        "ADMIN settings are provisioned with the company and can only be updated",
                        details={"domain": domain.value},
                    )
                self._check_scope(priority, sd_id, user_id)
                if priority == Priority.USER:
                    self._require_member(session, domain, company_id=company_id, sd_id=sd_id, user_id=user_id)

                if self.overrides.find(
                    session, company_id=company_id, domain=domain, priority=priority, sd_id=sd_id, user_id=user_id
                ) is not None:
                    raise ConflictError(_CONFLICT_MESSAGE, details={"domain": domain.value, "priority": priority.name})

                # A new exception starts from the company floor so it is always a complete payload.
                admin = self.overrides.get_admin(session, company_id, domain)
                record = self.overrides.insert(
                    session,
                    SettingsOverride(
                        domain=domain.value,
                        priority=int(priority),
                        company_id=company_id,
                        sd_id=sd_id,
                        user_id=user_id,
                        payload=descriptor.prepare_payload({**(admin.payload or {}), **payload}),
                    ),
                )
                moves = self._repoint_scope(session, record)
                changes = self.effective_changes(session, moves, scope=_scope_of(record))
                after = serialize_override(record)

            span.set_attribute("affected_count", len(changes))

        self._after_commit(
            "create", domain, after, before=None, after=after, moves=moves, changes=changes, actor_user_id=actor_user_id
        )
        return record

    def update_exception(
        self,
        session: Session,
        record_id: uuid.UUID,
        payload: dict[str, Any],
        *,
        new_scope: ScopeUpdate | None = None,
        domain: SettingsDomain | str | None = None,
        priority: Priority | int | None = None,
        actor_user_id: str | None = None,
    ) -> SettingsOverride:
        return self._update(
            session,
            lambda: self._get_record(session, record_id, domain),
            payload,
            new_scope=new_scope,
            domain=domain,
            priority=priority,
            actor_user_id=actor_user_id,
        )

    def update_admin_settings(
        self,
        session: Session,
        company_id: uuid.UUID,
        domain: SettingsDomain | str,
        payload: dict[str, Any],
        *,
        actor_user_id: str | None = None,
    ) -> SettingsOverride:
        descriptor = get_domain(domain)
        return self._update(
            session,
            lambda: self.overrides.get_admin(session, company_id, descriptor.domain),
            payload,
            domain=descriptor.domain,
            actor_user_id=actor_user_id,
        )

    def _update(
        self,
        session: Session,
        load: Callable[[], SettingsOverride],
        payload: dict[str, Any],
        *,
        new_scope: ScopeUpdate | None = None,
        domain: SettingsDomain | str | None = None,
        priority: Priority | int | None = None,
        actor_user_id: str | None = None,
    ) -> SettingsOverride:
        domain_label = get_domain(domain).domain.value if domain is not None else "unknown"
        with tracer.start_as_current_span("settings.override.update") as span:
            with unit_of_work(session, "update", domain_label, span):
                # Loaded inside the unit of work so a missing record is reported like any other rejection.
                record = load()
                span.set_attribute("record_id", str(record.id))
                descriptor = get_domain(record.domain)
                domain_label = descriptor.domain.value
                record_priority = Priority(record.priority)
                if priority is not None and Priority(priority) != record_priority:
                    raise SettingsValidationError(
                        "the priority of an existing exception cannot change",
                        details={"record_id": str(record.id), "priority": record_priority.name},
                    )

                before = serialize_override(record)
                before_payload = before["payload"]
                new_payload = descriptor.prepare_payload({**before_payload, **payload})
                target = self._target_scope(session, record, new_scope)

                if target is None:
                    pointing = self.pointers.list_pointing_at(session, record.id)
                    self.overrides.update(session, record.id, new_payload)
                    moves: list[PointerMove] = []
                    changes = [
                        EffectiveChange(
                            user_id=pointer.user_id,
                            previous_record_id=record.id,
                            previous_priority=record_priority,
                            record_id=record.id,
                            priority=record_priority,
                            before=before_payload,
                            after=new_payload,
                            scope=_scope_of(record),
                        )
                        for pointer in pointing
                    ]
                else:
                    new_sd_id, new_user_id = target
                    old_sd_id, old_user_id = record.sd_id, record.user_id
                    old_scope = _scope_of(record)
                    clash = self.overrides.find(
                        session,
                        company_id=record.company_id,
                        domain=descriptor.domain,
                        priority=record_priority,
                        sd_id=new_sd_id,
                        user_id=new_user_id,
                    )
                    if clash is not None and clash.id != record.id:
                        raise ConflictError(_CONFLICT_MESSAGE, details={"record_id": str(clash.id)})

                    self.overrides.reassign(session, record, sd_id=new_sd_id, user_id=new_user_id)
                    incoming = self._repoint_scope(session, record)
                    outgoing = self._fall_back(session, record, sd_id=old_sd_id, user_id=old_user_id)
                    self.overrides.update(session, record.id, new_payload)
                    moves = incoming + outgoing
                    snapshot = {record.id: before_payload}
                    changes = merge_changes(
                        self.effective_changes(session, incoming, snapshot, scope=_scope_of(record)),
                        self.effective_changes(session, outgoing, snapshot, scope=old_scope),
                    )
                after = serialize_override(record)

            span.set_attribute("domain", domain_label)
            span.set_attribute("scope_changed", target is not None)

        self._after_commit(
            "update",
            descriptor.domain,
            after,
            before=before,
            after=after,
            moves=moves,
            changes=changes,
            actor_user_id=actor_user_id,
        )
        return record

    def delete_exception(
        self,
        session: Session,
        record_id: uuid.UUID,
        *,
        domain: SettingsDomain | str | None = None,
        actor_user_id: str | None = None,
    ) -> None:
        domain_label = get_domain(domain).domain.value if domain is not None else "unknown"
        with tracer.start_as_current_span("settings.override.delete") as span:
            span.set_attribute("record_id", str(record_id))
            with unit_of_work(session, "delete", domain_label, span):
                record = self._get_record(session, record_id, domain)
                descriptor = get_domain(record.domain)
                domain_label = descriptor.domain.value
                if record.priority == Priority.ADMIN:
                    raise PriorityMismatchError(
                        "ADMIN settings cannot be deleted",
                        details={"record_id": str(record.id), "domain": record.domain},
                    )

                before = serialize_override(record)
                moves = self._fall_back(session, record, sd_id=record.sd_id, user_id=record.user_id)
                changes = self.effective_changes(
                    session, moves, {record.id: before["payload"]}, scope=_scope_of(record)
                )
                self.overrides.delete(session, record.id)

            span.set_attribute("domain", domain_label)

        self._after_commit(
            "delete", descriptor.domain, before, before=before, after=None, moves=moves, changes=changes,
            actor_user_id=actor_user_id,
        )

    def resolve_effective(self, session: Session, user_id: uuid.UUID, domain: SettingsDomain | str) -> SettingsOverride:
        descriptor = get_domain(domain)
        pointer = self.pointers.get(session, user_id, descriptor.domain)
        if pointer is None:
            raise NotFoundError(
                f"user has no {descriptor.label}",
                details={"user_id": str(user_id), "domain": descriptor.domain.value},
            )
        return self._pointed_record(session, pointer)

    def resolve_all(self, session: Session, user_id: uuid.UUID) -> dict[SettingsDomain, SettingsOverride]:
        pointers = self.pointers.list_for_user(session, user_id)
        if not pointers:
            raise NotFoundError("user has no settings", details={"user_id": str(user_id)})
        return {SettingsDomain(pointer.domain): self._pointed_record(session, pointer) for pointer in pointers}

    def list_company_settings(
        self, session: Session, company_id: uuid.UUID, domain: SettingsDomain | str
    ) -> CompanyDomainSettingsRead:
        descriptor = get_domain(domain)
        admin = self.overrides.get_admin(session, company_id, descriptor.domain)
        records = self.overrides.list_for_company(session, company_id, descriptor.domain)
        return CompanyDomainSettingsRead(
            domain=descriptor.domain,
            admin=OverrideRead.model_validate(admin),
            sub_department_exceptions=[
                OverrideRead.model_validate(item) for item in records if item.priority == Priority.SUB_DEPARTMENT
            ],
            user_exceptions=[OverrideRead.model_validate(item) for item in records if item.priority == Priority.USER],
        )

    def effective_changes(
        self,
        session: Session,
        moves: list[PointerMove],
        before_payloads: dict[uuid.UUID, dict[str, Any]] | None = None,
        *,
        scope: RecordScope | None = None,
    ) -> list[EffectiveChange]:
        if not moves:
            return []
        record_ids = {move.previous_record_id for move in moves} | {move.record_id for move in moves}
        current = self.overrides.payloads_by_id(session, record_ids)
        before = {**current, **(before_payloads or {})}
        return [
            EffectiveChange(
                user_id=move.user_id,
                previous_record_id=move.previous_record_id,
                previous_priority=move.previous_priority,
                record_id=move.record_id,
                priority=move.priority,
                before=dict(before.get(move.previous_record_id, {})),
                after=dict(current.get(move.record_id, {})),
                scope=scope,
            )
            for move in moves
        ]

    def resolve_target(
        self, session: Session, company_id: uuid.UUID, domain: SettingsDomain, sd_id: uuid.UUID | None
    ) -> SettingsOverride:
        """Highest non-USER record that applies to a member of ``sd_id``."""
        if sd_id is not None:
            record = self.overrides.find(
                session, company_id=company_id, domain=domain, priority=Priority.SUB_DEPARTMENT, sd_id=sd_id
            )
            if record is not None:
                return record
        return self.overrides.get_admin(session, company_id, domain)

    def dispatch(self, domain: SettingsDomain, changes: list[EffectiveChange]) -> DispatchReport | None:
        # The mutation is already committed; nothing raised here may reach the caller.
        try:
            return self.dispatcher.dispatch(domain, changes)
        except Exception as exc:
            logger.exception(
                "settings.side_effects.dispatch_failed",
                extra={"domain": domain.value, "affected_count": len(changes), "error": str(exc)[:500]},
            )
            return None

    def _get_record(
        self, session: Session, record_id: uuid.UUID, domain: SettingsDomain | str | None
    ) -> SettingsOverride:
        record = self.overrides.get(session, record_id, for_update=True)
        if record is None or (domain is not None and record.domain != SettingsDomain(domain).value):
            raise NotFoundError("settings exception not found", details={"record_id": str(record_id)})
        return record

    def _pointed_record(self, session: Session, pointer: SettingsAssignmentPointer) -> SettingsOverride:
        record = self.overrides.get(session, pointer.current_record_id)
        if record is None:
            raise PersistenceError(
                "assignment pointer names a missing settings record",
                details={"user_id": str(pointer.user_id), "domain": pointer.domain},
            )
        return record

    @staticmethod
    def _check_scope(priority: Priority, sd_id: uuid.UUID | None, user_id: uuid.UUID | None) -> None:
        if priority == Priority.SUB_DEPARTMENT:
            if sd_id is None:
                raise SettingsValidationError("sub-department exceptions require sd_id")
            if user_id is not None:
                raise SettingsValidationError("sub-department exceptions cannot carry user_id")
        elif priority == Priority.USER and (sd_id is None or user_id is None):
            raise SettingsValidationError("user exceptions require both sd_id and user_id")

    def _require_member(
        self,
        session: Session,
        domain: SettingsDomain,
        *,
        company_id: uuid.UUID,
        sd_id: uuid.UUID | None,
        user_id: uuid.UUID,
    ) -> SettingsAssignmentPointer:
        pointer = self.pointers.get(session, user_id, domain)
        if pointer is None or pointer.company_id != company_id or (sd_id is not None and pointer.sd_id != sd_id):
            raise SettingsValidationError(
                "user is not a member of the given sub-department",
                details={"user_id": str(user_id), "sd_id": str(sd_id) if sd_id else None},
            )
        return pointer

    def _target_scope(
        self, session: Session, record: SettingsOverride, new_scope: ScopeUpdate | None
    ) -> tuple[uuid.UUID | None, uuid.UUID | None] | None:
        """New (sd_id, user_id) for the record, or None when the scope stays as it is."""
        if new_scope is None:
            return None
        priority = Priority(record.priority)

        if priority == Priority.ADMIN:
            if new_scope.sd_id is not None or new_scope.user_id is not None:
                raise PriorityMismatchError(
                    "ADMIN settings cannot be moved to another scope", details={"record_id": str(record.id)}
                )
            return None

        if priority == Priority.SUB_DEPARTMENT:
            if new_scope.user_id is not None:
                raise SettingsValidationError("sub-department exceptions cannot carry user_id")
            if new_scope.sd_id is None or new_scope.sd_id == record.sd_id:
                return None
            return new_scope.sd_id, None

        if new_scope.user_id is None or new_scope.user_id == record.user_id:
            if new_scope.sd_id is not None and new_scope.sd_id != record.sd_id:
                raise SettingsValidationError("a user exception follows its owner's sub-department")
            return None
        pointer = self._require_member(
            session,
            SettingsDomain(record.domain),
            company_id=record.company_id,
            sd_id=new_scope.sd_id,
            user_id=new_scope.user_id,
        )
        return pointer.sd_id, new_scope.user_id

    def _repoint_scope(self, session: Session, record: SettingsOverride) -> list[PointerMove]:
        priority = Priority(record.priority)
        domain = SettingsDomain(record.domain)
        if priority == Priority.USER:
            return self.pointers.repoint(session, [record.user_id], domain, record.id, priority)
        if priority == Priority.SUB_DEPARTMENT:
            return self.pointers.repoint_by_sub_department(
                session,
                record.company_id,
                record.sd_id,
                domain,
                record.id,
                priority,
                skip_priorities=PROTECT_USER_LEVEL,
            )
        return []

    def _fall_back(
        self,
        session: Session,
        record: SettingsOverride,
        *,
        sd_id: uuid.UUID | None,
        user_id: uuid.UUID | None,
    ) -> list[PointerMove]:
        """Repoint the users the record covered at ``(sd_id, user_id)`` to the next record down."""
        domain = SettingsDomain(record.domain)
        if record.priority == Priority.USER:
            target = self.resolve_target(session, record.company_id, domain, sd_id)
            if target.id == record.id:
                return []
            return self.pointers.repoint(session, [user_id], domain, target.id, Priority(target.priority))

        # Members of a sub-department that loses its record go straight to the company floor.
        admin = self.overrides.get_admin(session, record.company_id, domain)
        return self.pointers.repoint_by_sub_department(
            session,
            record.company_id,
            sd_id,
            domain,
            admin.id,
            Priority.ADMIN,
            skip_priorities=PROTECT_USER_LEVEL,
        )

    def _after_commit(
        self,
        operation: str,
        domain: SettingsDomain,
        record: dict[str, Any],
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        moves: list[PointerMove],
        changes: list[EffectiveChange],
        actor_user_id: str | None,
    ) -> None:
        actor = actor_user_id or get_actor_id() or "system"
        audit.record(
            actor_user_id=actor,
            entity_type=ENTITY_TYPE,
            entity_id=record["id"],
            action=operation,
            before=before,
            after=after,
            company_id=record["company_id"],
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": _EVENT_TYPES[operation],
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor,
                "company_id": record["company_id"],
                "payload": {
                    "record_id": record["id"],
                    "domain": domain.value,
                    "priority": record["priority"],
                    "sd_id": record["sd_id"],
                    "user_id": record["user_id"],
                    "affected_user_ids": [str(change.user_id) for change in changes],
                },
            }
        )

        observe_settings_mutation(domain.value, operation, "committed")
        for priority, count in Counter(move.priority for move in moves).items():
            observe_pointer_repoints(domain.value, priority.name, count)

        logger.info(
            _EVENT_TYPES[operation],
            extra={
                "operation": operation,
                "domain": domain.value,
                "record_id": record["id"],
                "priority": record["priority"],
                "company_id": record["company_id"],
                "affected_count": len(changes),
            },
        )
        self.dispatch(domain, changes)


settings_override_service = SettingsOverrideService()
