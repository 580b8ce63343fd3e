from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Generator
from dataclasses import dataclass

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.database import Base
from app.settings.dispatcher import SideEffectDispatcher
from app.settings.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    PriorityMismatchError,
    SettingsValidationError,
)
from app.settings.models import SettingsAssignmentPointer, SettingsOverride
from app.settings.provisioning import SettingsProvisioningService
from app.settings.repository import OverrideStore
from app.settings.service import SettingsOverrideService
from app.settings.types import Priority, ScopeUpdate, SettingsDomain

from conftest import RecordingCollaborators


SKIP = SettingsDomain.SKIP


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@dataclass
class Org:
    company_id: uuid.UUID
    sd_a: uuid.UUID
    sd_b: uuid.UUID
    users: dict[str, uuid.UUID]


@pytest.fixture()
def service(inline_dispatcher: SideEffectDispatcher) -> SettingsOverrideService:
    return SettingsOverrideService(dispatcher=inline_dispatcher)


@pytest.fixture()
def org(db_session: Session, service: SettingsOverrideService, recorder: RecordingCollaborators) -> Org:
    provisioning = SettingsProvisioningService(engine=service)
    company = Org(
        company_id=uuid.uuid4(),
        sd_a=uuid.uuid4(),
        sd_b=uuid.uuid4(),
        users={"a1": uuid.uuid4(), "a2": uuid.uuid4(), "b1": uuid.uuid4()},
    )
    provisioning.provision_company(db_session, company.company_id)
    for name, user_id in company.users.items():
        sd_id = company.sd_a if name.startswith("a") else company.sd_b
        provisioning.provision_user(db_session, company.company_id, sd_id, user_id)
    recorder.calls.clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    return company


def assert_resolution_invariant(session: Session) -> None:
    store = OverrideStore()
    for pointer in session.scalars(select(SettingsAssignmentPointer)).all():
        domain = SettingsDomain(pointer.domain)
        expected = (
            store.find(session, company_id=pointer.company_id, domain=domain, priority=Priority.USER, user_id=pointer.user_id)
            or (
                pointer.sd_id is not None
                and store.find(
                    session,
                    company_id=pointer.company_id,
                    domain=domain,
                    priority=Priority.SUB_DEPARTMENT,
                    sd_id=pointer.sd_id,
                )
            )
            or store.get_admin(session, pointer.company_id, domain)
        )
        assert pointer.current_record_id == expected.id, f"{pointer.user_id} {pointer.domain}"
        assert pointer.current_priority == expected.priority


def _snapshot(session: Session) -> tuple[list[tuple], list[tuple]]:
    records = session.execute(
        select(SettingsOverride.id, SettingsOverride.scope_key, SettingsOverride.payload).order_by(SettingsOverride.id)
    ).all()
    pointers = session.execute(
        select(
            SettingsAssignmentPointer.user_id,
            SettingsAssignmentPointer.domain,
            SettingsAssignmentPointer.current_record_id,
            SettingsAssignmentPointer.current_priority,
        ).order_by(SettingsAssignmentPointer.user_id, SettingsAssignmentPointer.domain)
    ).all()
    return [tuple(row) for row in records], [tuple(row) for row in pointers]


def _effective(session: Session, service: SettingsOverrideService, user_id: uuid.UUID, domain: SettingsDomain) -> SettingsOverride:
    return service.resolve_effective(session, user_id, domain)


def test_provisioned_users_point_at_the_company_floor(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    for user_id in org.users.values():
        resolved = service.resolve_all(db_session, user_id)
        assert set(resolved) == set(SettingsDomain)
        assert all(record.priority == Priority.ADMIN for record in resolved.values())
    assert_resolution_invariant(db_session)


def test_sub_department_exception_repoints_its_members_only(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"skip_reasons": ["Wrong number"]},
    )

    assert _effective(db_session, service, org.users["a1"], SKIP).id == record.id
    assert _effective(db_session, service, org.users["a2"], SKIP).id == record.id
    assert _effective(db_session, service, org.users["b1"], SKIP).priority == Priority.ADMIN
    # New exceptions start from the company floor.
    assert record.payload["skip_allowed_tasks"]["call"] is True
    assert record.payload["skip_reasons"] == ["Wrong number"]
    assert_resolution_invariant(db_session)


def test_sub_department_exception_never_overrides_a_user_exception(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    user_record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a1"],
        payload={"skip_reasons": ["Mine"]},
    )
    sd_record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"skip_reasons": ["Team"]},
    )

    assert _effective(db_session, service, org.users["a1"], SKIP).id == user_record.id
    assert _effective(db_session, service, org.users["a2"], SKIP).id == sd_record.id

    service.delete_exception(db_session, sd_record.id)

    assert _effective(db_session, service, org.users["a1"], SKIP).id == user_record.id
    assert _effective(db_session, service, org.users["a2"], SKIP).priority == Priority.ADMIN
    assert_resolution_invariant(db_session)


def test_user_exception_round_trip_falls_back_to_sub_department(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    sd_record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"skip_reasons": ["Team"]},
    )
    user_record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a1"],
        payload={"skip_reasons": ["Mine"]},
    )
    assert _effective(db_session, service, org.users["a1"], SKIP).id == user_record.id

    service.delete_exception(db_session, user_record.id)

    pointer = service.pointers.get(db_session, org.users["a1"], SKIP)
    assert pointer.current_record_id == sd_record.id
    assert pointer.current_priority == Priority.SUB_DEPARTMENT
    assert_resolution_invariant(db_session)


def test_deleting_a_user_exception_without_team_record_falls_back_to_admin(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    user_record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_b,
        user_id=org.users["b1"],
        payload={},
    )
    service.delete_exception(db_session, user_record.id, domain=SKIP)

    assert _effective(db_session, service, org.users["b1"], SKIP).priority == Priority.ADMIN
    assert db_session.scalar(select(func.count()).select_from(SettingsOverride).where(SettingsOverride.id == user_record.id)) == 0


def test_duplicate_create_conflicts_and_leaves_the_store_unchanged(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    service.create_exception(
        db_session,
        SKIP,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"skip_reasons": ["First"]},
    )
    before = _snapshot(db_session)

    with pytest.raises(ConflictError) as exc_info:
        service.create_exception(
            db_session,
            SKIP,
            priority=Priority.SUB_DEPARTMENT,
            company_id=org.company_id,
            sd_id=org.sd_a,
            payload={"skip_reasons": ["Second"]},
        )

    assert exc_info.value.message == "an exception already exists for this entity, update it instead"
    assert _snapshot(db_session) == before


class BlindOverrideStore(OverrideStore):
    """Skips the early existence check so only the unique constraint can catch a duplicate."""

    def find(self, session: Session, **kwargs):  # type: ignore[no-untyped-def]
        if kwargs.get("priority") == Priority.ADMIN:
            return OverrideStore.find(self, session, **kwargs)
        return None


def test_race_loser_gets_conflict_from_the_constraint(
    db_session: Session, inline_dispatcher: SideEffectDispatcher, org: Org
) -> None:
    racer = SettingsOverrideService(overrides=BlindOverrideStore(), dispatcher=inline_dispatcher)
    racer.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a2"],
        payload={"skip_reasons": ["Winner"]},
    )
    before = _snapshot(db_session)

    with pytest.raises(ConflictError):
        racer.create_exception(
            db_session,
            SKIP,
            priority=Priority.USER,
            company_id=org.company_id,
            sd_id=org.sd_a,
            user_id=org.users["a2"],
            payload={"skip_reasons": ["Loser"]},
        )

    assert _snapshot(db_session) == before
    assert_resolution_invariant(db_session)


def test_sub_department_race_loser_leaves_members_on_the_winner(
    db_session: Session, inline_dispatcher: SideEffectDispatcher, org: Org, recorder: RecordingCollaborators
) -> None:
    racer = SettingsOverrideService(overrides=BlindOverrideStore(), dispatcher=inline_dispatcher)
    winner = racer.create_exception(
        db_session,
        SKIP,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"skip_reasons": ["Winner"]},
    )
    before = _snapshot(db_session)
    recorder.calls.clear()
    audit.audit_entries.clear()

    with pytest.raises(ConflictError):
        racer.create_exception(
            db_session,
            SKIP,
            priority=Priority.SUB_DEPARTMENT,
            company_id=org.company_id,
            sd_id=org.sd_a,
            payload={"skip_reasons": ["Loser"]},
        )

    assert _snapshot(db_session) == before
    for name in ("a1", "a2"):
        pointer = racer.pointers.get(db_session, org.users[name], SKIP)
        assert pointer.current_record_id == winner.id
        assert pointer.current_priority == Priority.SUB_DEPARTMENT
    assert racer.pointers.get(db_session, org.users["b1"], SKIP).current_priority == Priority.ADMIN
    assert recorder.calls == []
    assert audit.audit_entries == []
    assert_resolution_invariant(db_session)


def test_admin_records_are_only_updated_in_place(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    admin = service.overrides.get_admin(db_session, org.company_id, SKIP)

    with pytest.raises(PriorityMismatchError):
        service.create_exception(db_session, SKIP, priority=Priority.ADMIN, company_id=org.company_id, payload={})
    with pytest.raises(PriorityMismatchError):
        service.delete_exception(db_session, admin.id)
    with pytest.raises(PriorityMismatchError):
        service.update_exception(db_session, admin.id, {}, new_scope=ScopeUpdate(sd_id=org.sd_a))

    updated = service.update_admin_settings(db_session, org.company_id, SKIP, {"skip_reasons": ["Company"]})
    assert updated.id == admin.id
    assert _effective(db_session, service, org.users["b1"], SKIP).payload["skip_reasons"] == ["Company"]


@pytest.mark.parametrize(
    ("priority", "scope"),
    [
        (Priority.SUB_DEPARTMENT, {}),
        (Priority.SUB_DEPARTMENT, {"sd_id": "sd_a", "user_id": "a1"}),
        (Priority.USER, {"sd_id": "sd_a"}),
        (Priority.USER, {"user_id": "a1"}),
        (Priority.USER, {"sd_id": "sd_b", "user_id": "a1"}),
    ],
)
def test_scope_must_match_priority(
    db_session: Session, service: SettingsOverrideService, org: Org, priority: Priority, scope: dict[str, str]
) -> None:
    resolved = {
        key: getattr(org, value) if value.startswith("sd") else org.users[value]
        for key, value in scope.items()
    }
    before = _snapshot(db_session)

    with pytest.raises(SettingsValidationError):
        service.create_exception(db_session, SKIP, priority=priority, company_id=org.company_id, payload={}, **resolved)

    assert _snapshot(db_session) == before


def test_user_exception_requires_a_provisioned_member(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    with pytest.raises(SettingsValidationError):
        service.create_exception(
            db_session,
            SKIP,
            priority=Priority.USER,
            company_id=org.company_id,
            sd_id=org.sd_a,
            user_id=uuid.uuid4(),
            payload={},
        )


def test_missing_admin_floor_fails_loudly(db_session: Session, service: SettingsOverrideService) -> None:
    with pytest.raises(PersistenceError):
        service.create_exception(
            db_session,
            SKIP,
            priority=Priority.SUB_DEPARTMENT,
            company_id=uuid.uuid4(),
            sd_id=uuid.uuid4(),
            payload={},
        )


def test_missing_admin_floor_on_update_is_a_recorded_rejection(
    db_session: Session, service: SettingsOverrideService, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    labels = {"domain": "skip", "operation": "update", "outcome": "persistence_error"}
    before = REGISTRY.get_sample_value("settings_mutations_total", labels) or 0.0

    with pytest.raises(PersistenceError):
        service.update_admin_settings(db_session, uuid.uuid4(), SKIP, {"skip_reasons": ["Company"]})

    assert REGISTRY.get_sample_value("settings_mutations_total", labels) == before + 1
    assert any(
        record.name == "app.settings.overrides"
        and record.getMessage() == "settings.override.rejected"
        and getattr(record, "operation", None) == "update"
        and getattr(record, "status", None) == "PERSISTENCE_ERROR"
        for record in caplog.records
    )


def test_priority_of_an_existing_record_cannot_change(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    record = service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_a, payload={}
    )

    with pytest.raises(SettingsValidationError):
        service.update_exception(db_session, record.id, {}, priority=Priority.USER)


def test_unknown_or_foreign_records_are_not_found(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    record = service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_a, payload={}
    )

    with pytest.raises(NotFoundError):
        service.update_exception(db_session, uuid.uuid4(), {})
    with pytest.raises(NotFoundError):
        service.delete_exception(db_session, uuid.uuid4())
    with pytest.raises(NotFoundError):
        service.delete_exception(db_session, record.id, domain=SettingsDomain.TASK)
    with pytest.raises(NotFoundError):
        service.resolve_effective(db_session, uuid.uuid4(), SKIP)
    with pytest.raises(NotFoundError):
        service.resolve_effective(db_session, org.users["a1"], "payroll")


def test_moving_a_user_exception_to_another_user(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    sd_b_record = service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_b, payload={}
    )
    record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a1"],
        payload={"skip_reasons": ["Personal"]},
    )

    moved = service.update_exception(
        db_session,
        record.id,
        {"skip_reasons": ["Moved"]},
        new_scope=ScopeUpdate(user_id=org.users["b1"]),
    )

    assert moved.id == record.id
    assert moved.user_id == org.users["b1"]
    assert moved.sd_id == org.sd_b
    assert _effective(db_session, service, org.users["b1"], SKIP).payload["skip_reasons"] == ["Moved"]
    assert _effective(db_session, service, org.users["a1"], SKIP).priority == Priority.ADMIN
    assert service.overrides.get(db_session, sd_b_record.id) is not None
    assert_resolution_invariant(db_session)


def test_moving_a_sub_department_exception_falls_back_to_admin(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    pinned = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_b,
        user_id=org.users["b1"],
        payload={},
    )
    record = service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_a, payload={}
    )

    service.update_exception(db_session, record.id, {}, new_scope=ScopeUpdate(sd_id=org.sd_b))

    assert _effective(db_session, service, org.users["a1"], SKIP).priority == Priority.ADMIN
    assert _effective(db_session, service, org.users["a2"], SKIP).priority == Priority.ADMIN
    assert _effective(db_session, service, org.users["b1"], SKIP).id == pinned.id
    assert_resolution_invariant(db_session)


def test_moving_onto_an_owned_scope_conflicts(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    first = service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_a, payload={}
    )
    service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_b, payload={}
    )
    before = _snapshot(db_session)

    with pytest.raises(ConflictError):
        service.update_exception(db_session, first.id, {}, new_scope=ScopeUpdate(sd_id=org.sd_b))

    assert _snapshot(db_session) == before


def test_automated_task_exception_triggers_all_side_effects_for_moved_users(
    db_session: Session, service: SettingsOverrideService, org: Org, recorder: RecordingCollaborators
) -> None:
    service.create_exception(
        db_session,
        SettingsDomain.AUTOMATED_TASK,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"start_hour": "08:00"},
    )

    members = {org.users["a1"], org.users["a2"]}
    assert recorder.users_for("recalculate") == members
    assert recorder.users_for("adjust_start_time") == members
    assert recorder.users_for("invalidate") == members
    assert {kwargs["namespace"] for name, kwargs in recorder.calls if name == "invalidate"} == {"automated_task_settings"}


def test_identical_update_is_idempotent(
    db_session: Session, service: SettingsOverrideService, org: Org, recorder: RecordingCollaborators
) -> None:
    record = service.create_exception(
        db_session,
        SettingsDomain.AUTOMATED_TASK,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"start_hour": "08:00"},
    )
    recorder.calls.clear()
    before = _snapshot(db_session)

    service.update_exception(db_session, record.id, {"start_hour": "08:00"})

    assert recorder.calls == []
    assert _snapshot(db_session)[1] == before[1]


def test_admin_update_reaches_only_users_on_the_floor(
    db_session: Session, service: SettingsOverrideService, org: Org, recorder: RecordingCollaborators
) -> None:
    service.create_exception(
        db_session,
        SettingsDomain.AUTOMATED_TASK,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a1"],
        payload={"delay": 30},
    )
    recorder.calls.clear()

    service.update_admin_settings(db_session, org.company_id, SettingsDomain.AUTOMATED_TASK, {"end_hour": "17:00"})

    assert recorder.users_for("recalculate") == {org.users["a2"], org.users["b1"]}


def test_task_settings_side_effects_follow_the_changed_fields(
    db_session: Session, service: SettingsOverrideService, org: Org, recorder: RecordingCollaborators
) -> None:
    record = service.create_exception(
        db_session,
        SettingsDomain.TASK,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a1"],
        payload={"calls_per_day": 40},
    )
    assert recorder.names() == ["recalculate"]

    recorder.calls.clear()
    late_settings = dict(record.payload["late_settings"], call=3600000)
    service.update_exception(db_session, record.id, {"late_settings": late_settings})

    assert recorder.names() == ["update_late_time"]
    assert recorder.calls[0][1]["late_settings"]["call"] == 3600000


def test_lead_score_reset_only_when_threshold_or_period_changes(
    db_session: Session, service: SettingsOverrideService, org: Org, recorder: RecordingCollaborators
) -> None:
    record = service.create_exception(
        db_session,
        SettingsDomain.LEAD_SCORE,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_a,
        user_id=org.users["a1"],
        payload={"email_clicked": 5},
    )
    assert recorder.calls == []

    service.update_exception(db_session, record.id, {"email_opened": 2, "score_threshold": 0})
    assert recorder.calls == []

    service.update_exception(db_session, record.id, {"score_threshold": 50})
    assert recorder.names() == ["reset_lead_score"]
    assert recorder.calls[0][1] == {
        "scope_id": org.users["a1"],
        "priority": Priority.USER,
        "threshold": 50,
        "period": 0,
    }


def test_lead_score_reset_is_keyed_by_the_mutated_record_scope(
    db_session: Session, service: SettingsOverrideService, org: Org, recorder: RecordingCollaborators
) -> None:
    team = service.create_exception(
        db_session,
        SettingsDomain.LEAD_SCORE,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"score_threshold": 30},
    )
    # Both members of sd_a moved, but the reset is one call for the sub-department.
    assert recorder.calls == [
        (
            "reset_lead_score",
            {"scope_id": org.sd_a, "priority": Priority.SUB_DEPARTMENT, "threshold": 30, "period": 0},
        )
    ]

    recorder.calls.clear()
    service.update_admin_settings(db_session, org.company_id, SettingsDomain.LEAD_SCORE, {"reset_period": 7})
    assert recorder.calls == [
        (
            "reset_lead_score",
            {"scope_id": org.company_id, "priority": Priority.ADMIN, "threshold": 0, "period": 7},
        )
    ]

    recorder.calls.clear()
    service.delete_exception(db_session, team.id)
    assert recorder.calls == [
        (
            "reset_lead_score",
            {"scope_id": org.sd_a, "priority": Priority.SUB_DEPARTMENT, "threshold": 0, "period": 7},
        )
    ]


def test_mail_channels_are_always_forced_on(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    record = service.create_exception(
        db_session,
        SettingsDomain.BOUNCED_MAIL,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={"automatic_bounced_data": {"mail": False, "call": True}},
    )

    automatic = record.payload["automatic_bounced_data"]
    assert automatic["mail"] is True
    assert automatic["automated_reply_to"] is True
    assert automatic["call"] is True
    assert record.payload["semi_automatic_bounced_data"]["reply_to"] is True


def test_failing_side_effect_never_unwinds_the_commit(
    db_session: Session,
    service: SettingsOverrideService,
    org: Org,
    recorder: RecordingCollaborators,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    recorder.failures["recalculate"] = 10

    record = service.create_exception(
        db_session,
        SettingsDomain.AUTOMATED_TASK,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_b,
        user_id=org.users["b1"],
        payload={"delay": 10},
    )

    assert _effective(db_session, service, org.users["b1"], SettingsDomain.AUTOMATED_TASK).id == record.id
    assert "recalculate" not in recorder.names()
    assert "adjust_start_time" in recorder.names()
    failed = [item for item in caplog.records if item.getMessage() == "settings.side_effect.failed"]
    assert len(failed) == 1
    assert getattr(failed[0], "side_effect", None) == "recalculate_tasks"
    assert getattr(failed[0], "attempt", None) == 3


def test_mutations_are_audited_and_published(db_session: Session, service: SettingsOverrideService, org: Org) -> None:
    record = service.create_exception(
        db_session,
        SKIP,
        priority=Priority.SUB_DEPARTMENT,
        company_id=org.company_id,
        sd_id=org.sd_a,
        payload={},
        actor_user_id="admin-1",
    )
    service.delete_exception(db_session, record.id, actor_user_id="admin-1")

    entries = audit.entries_for(str(record.id))
    assert [entry["action"] for entry in entries] == ["create", "delete"]
    assert entries[0]["actor_user_id"] == "admin-1"
    assert entries[1]["after"] is None

    published = [event["event_type"] for event in events.published_events]
    assert published == ["settings.override.created", "settings.override.deleted"]
    assert set(events.published_events[0]["payload"]["affected_user_ids"]) == {
        str(org.users["a1"]),
        str(org.users["a2"]),
    }


def test_list_company_settings_groups_records_by_level(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    service.create_exception(
        db_session, SKIP, priority=Priority.SUB_DEPARTMENT, company_id=org.company_id, sd_id=org.sd_a, payload={}
    )
    service.create_exception(
        db_session,
        SKIP,
        priority=Priority.USER,
        company_id=org.company_id,
        sd_id=org.sd_b,
        user_id=org.users["b1"],
        payload={},
    )

    listing = service.list_company_settings(db_session, org.company_id, SKIP)

    assert listing.admin.priority == Priority.ADMIN
    assert [item.sd_id for item in listing.sub_department_exceptions] == [org.sd_a]
    assert [item.user_id for item in listing.user_exceptions] == [org.users["b1"]]


def test_random_operations_preserve_the_resolution_invariant(
    db_session: Session, service: SettingsOverrideService, org: Org
) -> None:
    rng = random.Random(20261019)
    provisioning = SettingsProvisioningService(engine=service)
    sub_departments = [org.sd_a, org.sd_b, uuid.uuid4()]
    users = list(org.users.values())

    for step in range(80):
        operation = rng.choice(["create_sd", "create_user", "delete", "move", "update", "transfer"])
        try:
            if operation == "create_sd":
                service.create_exception(
                    db_session,
                    SKIP,
                    priority=Priority.SUB_DEPARTMENT,
                    company_id=org.company_id,
                    sd_id=rng.choice(sub_departments),
                    payload={"skip_reasons": [f"step-{step}"]},
                )
            elif operation == "create_user":
                user_id = rng.choice(users)
                membership = service.pointers.get(db_session, user_id, SKIP)
                if membership.sd_id is None:
                    continue
                service.create_exception(
                    db_session,
                    SKIP,
                    priority=Priority.USER,
                    company_id=org.company_id,
                    sd_id=membership.sd_id,
                    user_id=user_id,
                    payload={"skip_reasons": [f"step-{step}"]},
                )
            elif operation == "transfer":
                provisioning.change_user_sub_department(db_session, rng.choice(users), rng.choice(sub_departments))
            else:
                candidates = [
                    record
                    for record in service.overrides.list_for_company(db_session, org.company_id, SKIP)
                    if record.priority != Priority.ADMIN
                ]
                if not candidates:
                    continue
                record = rng.choice(candidates)
                if operation == "delete":
                    service.delete_exception(db_session, record.id)
                elif operation == "move":
                    if record.priority == Priority.SUB_DEPARTMENT:
                        scope = ScopeUpdate(sd_id=rng.choice(sub_departments))
                    else:
                        scope = ScopeUpdate(user_id=rng.choice(users))
                    service.update_exception(db_session, record.id, {}, new_scope=scope)
                else:
                    service.update_exception(db_session, record.id, {"skip_reasons": [f"step-{step}"]})
        except ConflictError:
            pass
        assert_resolution_invariant(db_session)
