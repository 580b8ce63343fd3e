"""Company and user lifecycle hooks that keep the cascade's preconditions true.

A company gets its ADMIN floor for every domain when it is created, and a user
gets one assignment pointer per domain when they join. Moving a user between
sub-departments re-resolves their non-USER pointers and carries any USER
records along with them.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from app import audit, events
from app.context import get_actor_id
from app.settings.domains import all_domains
from app.settings.errors import ConflictError, NotFoundError
from app.settings.models import SettingsAssignmentPointer, SettingsOverride, utcnow
from app.settings.service import SettingsOverrideService, settings_override_service, unit_of_work
from app.settings.types import PROTECT_USER_LEVEL, EffectiveChange, Priority, SettingsDomain


logger = logging.getLogger("app.settings.provisioning")
tracer = trace.get_tracer("app.settings.provisioning")


@dataclass(slots=True)
class SettingsProvisioningService:
    engine: SettingsOverrideService = field(default_factory=lambda: settings_override_service)

    def provision_company(
        self,
        session: Session,
        company_id: uuid.UUID,
        defaults: dict[SettingsDomain, dict[str, Any]] | None = None,
        *,
        actor_user_id: str | None = None,
    ) -> list[SettingsOverride]:
        """Create the ADMIN record for every domain that does not have one yet."""
        overrides = self.engine.overrides
        defaults = {SettingsDomain(key): value for key, value in (defaults or {}).items()}
        created: list[str] = []

        with tracer.start_as_current_span("settings.company.provision"):
            with unit_of_work(session, "provision_company", "all"):
                records: list[SettingsOverride] = []
                for descriptor in all_domains():
                    record = overrides.find(
                        session, company_id=company_id, domain=descriptor.domain, priority=Priority.ADMIN
                    )
                    if record is None:
                        payload = {**descriptor.default_payload, **defaults.get(descriptor.domain, {})}
                        record = overrides.insert(
                            session,
                            SettingsOverride(
                                domain=descriptor.domain.value,
                                priority=int(Priority.ADMIN),
                                company_id=company_id,
                                payload=descriptor.prepare_payload(payload),
                            ),
                        )
                        created.append(descriptor.domain.value)
                    records.append(record)

        if created:
            actor = actor_user_id or get_actor_id() or "system"
            audit.record(
                actor_user_id=actor,
                entity_type="settings_company",
                entity_id=str(company_id),
                action="provision",
                before=None,
                after={"domains": created},
                company_id=str(company_id),
            )
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "settings.company.provisioned",
                    "occurred_at": utcnow().isoformat(),
                    "actor_user_id": actor,
                    "company_id": str(company_id),
                    "payload": {"domains": created},
                }
            )
        logger.info(
            "settings.company.provisioned",
            extra={"company_id": str(company_id), "affected_count": len(created)},
        )
        return records

    def provision_user(
        self,
        session: Session,
        company_id: uuid.UUID,
        sd_id: uuid.UUID | None,
        user_id: uuid.UUID,
    ) -> list[SettingsAssignmentPointer]:
        """Give a new user one pointer per domain, resolved to their sub-department or the company floor."""
        pointers = self.engine.pointers
        with tracer.start_as_current_span("settings.user.provision"):
            with unit_of_work(session, "provision_user", "all"):
                result: list[SettingsAssignmentPointer] = []
                for descriptor in all_domains():
                    pointer = pointers.get(session, user_id, descriptor.domain)
                    if pointer is not None:
                        if pointer.company_id != company_id or pointer.sd_id != sd_id:
                            raise ConflictError(
                                "user is already provisioned with a different membership",
                                details={"user_id": str(user_id), "domain": descriptor.domain.value},
                            )
                        result.append(pointer)
                        continue
                    target = self.engine.resolve_target(session, company_id, descriptor.domain, sd_id)
                    result.append(
                        pointers.add(
                            session,
                            user_id=user_id,
                            domain=descriptor.domain,
                            company_id=company_id,
                            sd_id=sd_id,
                            record=target,
                        )
                    )

        logger.info(
            "settings.user.provisioned",
            extra={"company_id": str(company_id), "sd_id": str(sd_id) if sd_id else None, "user_id": str(user_id)},
        )
        return result

    def change_user_sub_department(
        self,
        session: Session,
        user_id: uuid.UUID,
        new_sd_id: uuid.UUID | None,
    ) -> dict[SettingsDomain, list[EffectiveChange]]:
        overrides = self.engine.overrides
        pointers = self.engine.pointers
        changes_by_domain: dict[SettingsDomain, list[EffectiveChange]] = {}

        with tracer.start_as_current_span("settings.user.change_sub_department") as span:
            span.set_attribute("user_id", str(user_id))
            with unit_of_work(session, "change_sub_department", "all", span):
                memberships = pointers.list_for_user(session, user_id)
                if not memberships:
                    raise NotFoundError("user has no settings", details={"user_id": str(user_id)})

                for pointer in memberships:
                    if pointer.sd_id == new_sd_id:
                        continue
                    domain = SettingsDomain(pointer.domain)
                    own = overrides.find(
                        session, company_id=pointer.company_id, domain=domain, priority=Priority.USER, user_id=user_id
                    )
                    if own is not None:
                        overrides.reassign(session, own, sd_id=new_sd_id, user_id=user_id)

                    pointer.sd_id = new_sd_id
                    pointer.updated_at = utcnow()
                    session.flush()

                    target = self.engine.resolve_target(session, pointer.company_id, domain, new_sd_id)
                    moves = pointers.repoint(
                        session,
                        [user_id],
                        domain,
                        target.id,
                        Priority(target.priority),
                        skip_priorities=PROTECT_USER_LEVEL,
                    )
                    changes_by_domain[domain] = self.engine.effective_changes(session, moves)

        logger.info(
            "settings.user.sub_department_changed",
            extra={
                "user_id": str(user_id),
                "sd_id": str(new_sd_id) if new_sd_id else None,
                "affected_count": sum(len(changes) for changes in changes_by_domain.values()),
            },
        )
        for domain, changes in changes_by_domain.items():
            if changes:
                self.engine.dispatch(domain, changes)
        return changes_by_domain


settings_provisioning_service = SettingsProvisioningService()
