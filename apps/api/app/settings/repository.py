from __future__ import annotations

import uuid
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.settings.errors import ConflictError, NotFoundError, PersistenceError
from app.settings.models import SettingsAssignmentPointer, SettingsOverride, utcnow
from app.settings.types import PointerMove, Priority, SettingsDomain, scope_key_for


_CONFLICT_MESSAGE = "an exception already exists for this entity, update it instead"


@dataclass(slots=True)
class OverrideStore:
    def get(self, session: Session, record_id: uuid.UUID, *, for_update: bool = False) -> SettingsOverride | None:
        stmt = select(SettingsOverride).where(SettingsOverride.id == record_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    def find(
        self,
        session: Session,
        *,
        company_id: uuid.UUID,
        domain: SettingsDomain,
        priority: Priority,
        sd_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
    ) -> SettingsOverride | None:
        return session.scalar(
            select(SettingsOverride).where(
                SettingsOverride.company_id == company_id,
                SettingsOverride.domain == domain.value,
                SettingsOverride.scope_key == scope_key_for(priority, sd_id, user_id),
            )
        )

    def get_admin(self, session: Session, company_id: uuid.UUID, domain: SettingsDomain) -> SettingsOverride:
        record = self.find(session, company_id=company_id, domain=domain, priority=Priority.ADMIN)
        if record is None:
            raise PersistenceError(
                f"company {company_id} has no ADMIN record for {domain.value}",
                details={"company_id": str(company_id), "domain": domain.value},
            )
        return record

    def insert(self, session: Session, record: SettingsOverride) -> SettingsOverride:
        record.scope_key = scope_key_for(Priority(record.priority), record.sd_id, record.user_id)
        session.add(record)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError(_CONFLICT_MESSAGE, details={"scope_key": record.scope_key}) from exc
        return record

    def update(self, session: Session, record_id: uuid.UUID, payload: dict[str, Any]) -> SettingsOverride:
        record = self.get(session, record_id)
        if record is None:
            raise NotFoundError("settings exception not found", details={"record_id": str(record_id)})
        record.payload = payload
        record.updated_at = utcnow()
        session.flush()
        return record

    def reassign(
        self,
        session: Session,
        record: SettingsOverride,
        *,
        sd_id: uuid.UUID | None,
        user_id: uuid.UUID | None,
    ) -> SettingsOverride:
        record.sd_id = sd_id
        record.user_id = user_id
        record.scope_key = scope_key_for(Priority(record.priority), sd_id, user_id)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError(_CONFLICT_MESSAGE, details={"scope_key": record.scope_key}) from exc
        return record

    def delete(self, session: Session, record_id: uuid.UUID) -> None:
        record = self.get(session, record_id)
        if record is None:
            raise NotFoundError("settings exception not found", details={"record_id": str(record_id)})
        session.delete(record)
        session.flush()

    def list_for_company(self, session: Session, company_id: uuid.UUID, domain: SettingsDomain) -> list[SettingsOverride]:
        stmt = (
            select(SettingsOverride)
            .where(SettingsOverride.company_id == company_id, SettingsOverride.domain == domain.value)
            .order_by(SettingsOverride.priority.asc(), SettingsOverride.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def payloads_by_id(self, session: Session, record_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, dict[str, Any]]:
        ids = set(record_ids)
        if not ids:
            return {}
        rows = session.execute(select(SettingsOverride.id, SettingsOverride.payload).where(SettingsOverride.id.in_(ids)))
        return {row_id: dict(payload or {}) for row_id, payload in rows}


@dataclass(slots=True)
class AssignmentPointerStore:
    def get(self, session: Session, user_id: uuid.UUID, domain: SettingsDomain) -> SettingsAssignmentPointer | None:
        return session.scalar(
            select(SettingsAssignmentPointer).where(
                SettingsAssignmentPointer.user_id == user_id,
                SettingsAssignmentPointer.domain == domain.value,
            )
        )

    def list_for_user(self, session: Session, user_id: uuid.UUID) -> list[SettingsAssignmentPointer]:
        stmt = select(SettingsAssignmentPointer).where(SettingsAssignmentPointer.user_id == user_id)
        return list(session.scalars(stmt).all())

    def list_pointing_at(self, session: Session, record_id: uuid.UUID) -> list[SettingsAssignmentPointer]:
        stmt = (
            select(SettingsAssignmentPointer)
            .where(SettingsAssignmentPointer.current_record_id == record_id)
            .with_for_update()
        )
        return list(session.scalars(stmt).all())

    def add(
        self,
        session: Session,
        *,
        user_id: uuid.UUID,
        domain: SettingsDomain,
        company_id: uuid.UUID,
        sd_id: uuid.UUID | None,
        record: SettingsOverride,
    ) -> SettingsAssignmentPointer:
        if self.get(session, user_id, domain) is not None:
            raise ConflictError(
                "user is already provisioned for this settings domain",
                details={"user_id": str(user_id), "domain": domain.value},
            )
        pointer = SettingsAssignmentPointer(
            user_id=user_id,
            domain=domain.value,
            company_id=company_id,
            sd_id=sd_id,
            current_record_id=record.id,
            current_priority=record.priority,
        )
        session.add(pointer)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "user is already provisioned for this settings domain",
                details={"user_id": str(user_id), "domain": domain.value},
            ) from exc
        return pointer

    def repoint(
        self,
        session: Session,
        user_ids: Collection[uuid.UUID],
        domain: SettingsDomain,
        record_id: uuid.UUID,
        priority: Priority,
        *,
        skip_priorities: Collection[Priority] = (),
    ) -> list[PointerMove]:
        if not user_ids:
            return []
        candidates = select(SettingsAssignmentPointer).where(
            SettingsAssignmentPointer.domain == domain.value,
            SettingsAssignmentPointer.user_id.in_(list(user_ids)),
        )
        return self._move(session, candidates, domain, record_id, priority, skip_priorities)

    def repoint_by_sub_department(
        self,
        session: Session,
        company_id: uuid.UUID,
        sd_id: uuid.UUID,
        domain: SettingsDomain,
        record_id: uuid.UUID,
        priority: Priority,
        *,
        skip_priorities: Collection[Priority] = (),
    ) -> list[PointerMove]:
        candidates = select(SettingsAssignmentPointer).where(
            SettingsAssignmentPointer.company_id == company_id,
            SettingsAssignmentPointer.sd_id == sd_id,
            SettingsAssignmentPointer.domain == domain.value,
        )
        return self._move(session, candidates, domain, record_id, priority, skip_priorities)

    def _move(
        self,
        session: Session,
        candidates: Select[tuple[SettingsAssignmentPointer]],
        domain: SettingsDomain,
        record_id: uuid.UUID,
        priority: Priority,
        skip_priorities: Collection[Priority],
    ) -> list[PointerMove]:
        guarded = sorted(int(item) for item in skip_priorities)
        if guarded:
            candidates = candidates.where(SettingsAssignmentPointer.current_priority.not_in(guarded))

        rows = session.scalars(candidates.with_for_update()).all()
        moves = [
            PointerMove(
                user_id=row.user_id,
                previous_record_id=row.current_record_id,
                previous_priority=Priority(row.current_priority),
                record_id=record_id,
                priority=priority,
            )
            for row in rows
            if row.current_record_id != record_id or row.current_priority != int(priority)
        ]
        if not moves:
            return []

        # The guard is repeated in the UPDATE so a row that became USER-level after the
        # SELECT (without row locks) is still left alone, and only rows it returns moved.
        stmt = update(SettingsAssignmentPointer).where(
            SettingsAssignmentPointer.domain == domain.value,
            SettingsAssignmentPointer.user_id.in_([move.user_id for move in moves]),
        )
        if guarded:
            stmt = stmt.where(SettingsAssignmentPointer.current_priority.not_in(guarded))
        updated = set(
            session.scalars(
                stmt.values(current_record_id=record_id, current_priority=int(priority), updated_at=utcnow())
                .returning(SettingsAssignmentPointer.user_id),
                execution_options={"synchronize_session": "fetch"},
            ).all()
        )
        return [move for move in moves if move.user_id in updated]
