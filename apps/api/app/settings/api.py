from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.settings.domains import DomainDescriptor, get_domain
from app.settings.errors import ForbiddenError, NotFoundError, SettingsError, SettingsValidationError
from app.settings.provisioning import settings_provisioning_service
from app.settings.schemas import (
    AdminSettingsUpdate,
    CompanyDomainSettingsRead,
    CompanyProvisionRequest,
    ExceptionCreate,
    ExceptionUpdate,
    OverrideRead,
    UserProvisionRequest,
    UserSubDepartmentChange,
)
from app.settings.service import settings_override_service
from app.settings.types import Priority, ScopeUpdate

router = APIRouter(prefix="/api/settings", tags=["settings"])
service = settings_override_service
provisioning_service = settings_provisioning_service


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


@dataclass
class SettingsActor:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    sd_id: uuid.UUID | None = None
    is_manager: bool = False
    correlation_id: str | None = None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def settings_error_handler(request: Request, exc: SettingsError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> SettingsActor:
    sd_header = request.headers.get("x-sub-department-id")
    try:
        sd_id = uuid.UUID(sd_header) if sd_header else None
    except ValueError:
        sd_id = None
    roles = {str(role).lower() for role in auth_user.roles}
    return SettingsActor(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        sd_id=sd_id,
        is_manager="manager" in roles and "admin" not in roles,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def require_permission(actor: SettingsActor, permission: str) -> None:
    if permission not in actor.permissions:
        raise ForbiddenError(f"Missing permission: {permission}")


def require_manager_scope(actor: SettingsActor, priority: Priority, sd_id: uuid.UUID | None) -> None:
    """Managers may only touch user-level exceptions inside their own sub-department."""
    if not actor.is_manager:
        return
    if priority != Priority.USER or actor.sd_id is None or sd_id != actor.sd_id:
        raise ForbiddenError(
            "managers can only manage user exceptions in their own sub-department",
            details={"sd_id": str(sd_id) if sd_id else None},
        )


def _validated_payload(descriptor: DomainDescriptor, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        return descriptor.validate_payload(payload)
    except ValidationError as exc:
        raise SettingsValidationError(
            f"invalid {descriptor.label}",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from None


@router.post("/{domain}/exceptions", response_model=OverrideRead, status_code=status.HTTP_201_CREATED)
def create_exception(
    domain: str,
    dto: ExceptionCreate,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> OverrideRead:
    require_permission(actor, "settings.write")
    descriptor = get_domain(domain)
    require_manager_scope(actor, dto.priority, dto.sd_id)
    record = service.create_exception(
        db,
        descriptor.domain,
        priority=dto.priority,
        company_id=dto.company_id,
        sd_id=dto.sd_id,
        user_id=dto.user_id,
        payload=_validated_payload(descriptor, dto.payload),
        actor_user_id=actor.user_id,
    )
    return OverrideRead.model_validate(record)


@router.patch("/{domain}/exceptions/{record_id}", response_model=OverrideRead)
def update_exception(
    domain: str,
    record_id: uuid.UUID,
    dto: ExceptionUpdate,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> OverrideRead:
    require_permission(actor, "settings.write")
    descriptor = get_domain(domain)
    if actor.is_manager:
        current = service.overrides.get(db, record_id)
        if current is None or current.domain != descriptor.domain.value:
            raise NotFoundError("settings exception not found", details={"record_id": str(record_id)})
        require_manager_scope(actor, Priority(current.priority), current.sd_id)
        if dto.sd_id is not None:
            require_manager_scope(actor, Priority(current.priority), dto.sd_id)
        if dto.user_id is not None:
            # A USER exception follows its new owner into the owner's sub-department.
            owner = service.pointers.get(db, dto.user_id, descriptor.domain)
            require_manager_scope(actor, Priority(current.priority), owner.sd_id if owner else None)

    new_scope = ScopeUpdate(sd_id=dto.sd_id, user_id=dto.user_id) if dto.sd_id is not None or dto.user_id is not None else None
    record = service.update_exception(
        db,
        record_id,
        _validated_payload(descriptor, dto.payload),
        new_scope=new_scope,
        domain=descriptor.domain,
        priority=dto.priority,
        actor_user_id=actor.user_id,
    )
    return OverrideRead.model_validate(record)


@router.delete("/{domain}/exceptions/{record_id}", status_code=status.HTTP_200_OK)
def delete_exception(
    domain: str,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> dict[str, str]:
    require_permission(actor, "settings.write")
    descriptor = get_domain(domain)
    if actor.is_manager:
        current = service.overrides.get(db, record_id)
        if current is None or current.domain != descriptor.domain.value:
            raise NotFoundError("settings exception not found", details={"record_id": str(record_id)})
        require_manager_scope(actor, Priority(current.priority), current.sd_id)
    service.delete_exception(db, record_id, domain=descriptor.domain, actor_user_id=actor.user_id)
    return {"status": "deleted"}


@router.get("/companies/{company_id}/{domain}", response_model=CompanyDomainSettingsRead)
def list_company_settings(
    company_id: uuid.UUID,
    domain: str,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> CompanyDomainSettingsRead:
    require_permission(actor, "settings.read")
    return service.list_company_settings(db, company_id, domain)


@router.patch("/companies/{company_id}/{domain}/admin", response_model=OverrideRead)
def update_admin_settings(
    company_id: uuid.UUID,
    domain: str,
    dto: AdminSettingsUpdate,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> OverrideRead:
    require_permission(actor, "settings.admin")
    descriptor = get_domain(domain)
    record = service.update_admin_settings(
        db,
        company_id,
        descriptor.domain,
        _validated_payload(descriptor, dto.payload),
        actor_user_id=actor.user_id,
    )
    return OverrideRead.model_validate(record)


@router.post("/companies/{company_id}/provision", response_model=list[OverrideRead], status_code=status.HTTP_201_CREATED)
def provision_company(
    company_id: uuid.UUID,
    dto: CompanyProvisionRequest,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> list[OverrideRead]:
    require_permission(actor, "settings.admin")
    defaults = {
        key: _validated_payload(get_domain(key), value) for key, value in dto.defaults.items()
    }
    records = provisioning_service.provision_company(db, company_id, defaults, actor_user_id=actor.user_id)
    return [OverrideRead.model_validate(record) for record in records]


@router.post("/users/{user_id}/provision", status_code=status.HTTP_201_CREATED)
def provision_user(
    user_id: uuid.UUID,
    dto: UserProvisionRequest,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> dict[str, Any]:
    require_permission(actor, "settings.admin")
    pointers = provisioning_service.provision_user(db, dto.company_id, dto.sd_id, user_id)
    return {
        "user_id": str(user_id),
        "pointers": {
            pointer.domain: {"record_id": str(pointer.current_record_id), "priority": Priority(pointer.current_priority).name}
            for pointer in pointers
        },
    }


@router.put("/users/{user_id}/sub-department")
def change_user_sub_department(
    user_id: uuid.UUID,
    dto: UserSubDepartmentChange,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> dict[str, Any]:
    require_permission(actor, "settings.admin")
    changes = provisioning_service.change_user_sub_department(db, user_id, dto.sd_id)
    return {
        "user_id": str(user_id),
        "sd_id": str(dto.sd_id),
        "moved_domains": sorted(domain.value for domain, items in changes.items() if items),
    }


@router.get("/users/{user_id}/effective", response_model=dict[str, OverrideRead])
def resolve_all(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> dict[str, OverrideRead]:
    if actor.user_id != str(user_id):
        require_permission(actor, "settings.read")
    records = service.resolve_all(db, user_id)
    return {domain.value: OverrideRead.model_validate(record) for domain, record in records.items()}


@router.get("/users/{user_id}/effective/{domain}", response_model=OverrideRead)
def resolve_effective(
    user_id: uuid.UUID,
    domain: str,
    db: Session = Depends(get_db),
    actor: SettingsActor = Depends(get_current_actor),
) -> OverrideRead:
    if actor.user_id != str(user_id):
        require_permission(actor, "settings.read")
    return OverrideRead.model_validate(service.resolve_effective(db, user_id, domain))
