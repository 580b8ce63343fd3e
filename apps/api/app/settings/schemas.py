from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.settings.types import Priority, SettingsDomain


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AutomatedTaskSettingsPayload(_Payload):
    working_days: list[int] | None = None
    start_hour: str | None = None
    end_hour: str | None = None
    max_emails_per_day: int | None = None
    max_sms_per_day: int | None = None
    is_wait_time_random: bool | None = None
    wait_time_upper_limit: int | None = None
    wait_time_lower_limit: int | None = None
    delay: int | None = None


class BouncedMailSettingsPayload(_Payload):
    automatic_bounced_data: dict[str, bool] | None = None
    semi_automatic_bounced_data: dict[str, bool] | None = None


class UnsubscribeMailSettingsPayload(_Payload):
    automatic_unsubscribed_data: dict[str, bool] | None = None
    semi_automatic_unsubscribed_data: dict[str, bool] | None = None


class TaskSettingsPayload(_Payload):
    calls_per_day: int | None = None
    mails_per_day: int | None = None
    messages_per_day: int | None = None
    linkedin_connections_per_day: int | None = None
    linkedin_messages_per_day: int | None = None
    linkedin_profiles_per_day: int | None = None
    linkedin_interacts_per_day: int | None = None
    data_checks_per_day: int | None = None
    cadence_customs_per_day: int | None = None
    tasks_to_be_added_per_day: int | None = None
    max_tasks: int | None = None
    high_priority_split: int | None = None
    late_settings: dict[str, int] | None = None


class SkipSettingsPayload(_Payload):
    skip_allowed_tasks: dict[str, bool] | None = None
    skip_reasons: list[str] | None = None


class LeadScoreSettingsPayload(_Payload):
    total_score: int | None = None
    email_clicked: int
    email_opened: int
    email_replied: int
    incoming_call_received: int
    demo_booked: int
    unsubscribe: int
    bounced_mail: int
    outgoing_call: int
    outgoing_call_duration: int
    sms_clicked: int
    status_update: dict[str, Any] | None = None
    score_threshold: int
    reset_period: int


class ExceptionCreate(BaseModel):
    priority: Priority
    company_id: uuid.UUID
    sd_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ExceptionUpdate(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority | None = None
    sd_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None


class AdminSettingsUpdate(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class OverrideRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    domain: SettingsDomain
    priority: Priority
    company_id: uuid.UUID
    sd_id: uuid.UUID | None
    user_id: uuid.UUID | None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class CompanyDomainSettingsRead(BaseModel):
    domain: SettingsDomain
    admin: OverrideRead
    sub_department_exceptions: list[OverrideRead]
    user_exceptions: list[OverrideRead]


class CompanyProvisionRequest(BaseModel):
    defaults: dict[SettingsDomain, dict[str, Any]] = Field(default_factory=dict)


class UserProvisionRequest(BaseModel):
    company_id: uuid.UUID
    sd_id: uuid.UUID


class UserSubDepartmentChange(BaseModel):
    sd_id: uuid.UUID
