"""Static description of the six settings domains sharing the override cascade.

Each descriptor names the payload model the HTTP layer checks requests against,
the payload the company floor (ADMIN record) is provisioned with, and the side
effects that must run when a user's effective settings for the domain change.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from app.settings.errors import NotFoundError
from app.settings.schemas import (
    AutomatedTaskSettingsPayload,
    BouncedMailSettingsPayload,
    LeadScoreSettingsPayload,
    SkipSettingsPayload,
    TaskSettingsPayload,
    UnsubscribeMailSettingsPayload,
)
from app.settings.types import EffectiveChange, SettingsDomain


class SideEffectKind(str, Enum):
    RECALCULATE_TASKS = "recalculate_tasks"
    ADJUST_START_TIME = "adjust_start_time"
    UPDATE_LATE_TIME = "update_late_time"
    INVALIDATE_CACHE = "invalidate_cache"
    RESET_LEAD_SCORE = "reset_lead_score"


@dataclass(frozen=True, slots=True)
class SideEffectBinding:
    kind: SideEffectKind
    # None means any effective field change triggers the side effect.
    watch_fields: frozenset[str] | None = None
    fire_on_repoint: bool = False
    namespace: str | None = None
    # Planned once per mutated record and keyed by its scope rather than once per user.
    per_record: bool = False

    def fires_for(self, change: EffectiveChange) -> bool:
        if self.fire_on_repoint and change.repointed:
            return True
        changed = change.changed_fields
        if self.watch_fields is None:
            return bool(changed)
        return bool(changed & self.watch_fields)


PayloadHook = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class DomainDescriptor:
    domain: SettingsDomain
    label: str
    payload_model: type[BaseModel]
    default_payload: dict[str, Any]
    side_effects: tuple[SideEffectBinding, ...] = ()
    prepare: PayloadHook | None = field(default=None)

    def prepare_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        prepared = copy.deepcopy(payload)
        if self.prepare is not None:
            prepared = self.prepare(prepared)
        return prepared

    def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Check a possibly partial payload against the domain shape; return only the given keys."""
        model = self.payload_model.model_validate({**self.default_payload, **payload})
        dumped = model.model_dump(mode="json")
        return {key: dumped[key] for key in payload}


_ALWAYS_ON_MAIL_CHANNELS = ("mail", "automated_mail", "reply_to", "automated_reply_to")


def _force_mail_channels(*keys: str) -> PayloadHook:
    # Bounced and unsubscribed leads must never get another mail, whatever the operator picked.
    def hook(payload: dict[str, Any]) -> dict[str, Any]:
        for key in keys:
            channels = payload.get(key)
            if not isinstance(channels, dict):
                channels = {}
            for channel in _ALWAYS_ON_MAIL_CHANNELS:
                channels[channel] = True
            payload[key] = channels
        return payload

    return hook


_CHANNEL_DEFAULTS = {
    "mail": True,
    "automated_mail": True,
    "reply_to": True,
    "automated_reply_to": True,
    "call": False,
    "message": False,
    "automated_message": False,
    "linkedin_connection": False,
    "linkedin_message": False,
    "linkedin_profile": False,
    "linkedin_interact": False,
    "data_check": False,
    "cadence_custom": False,
    "whatsapp": False,
}

_TASK_PACING_FIELDS = frozenset(
    {
        "calls_per_day",
        "mails_per_day",
        "messages_per_day",
        "linkedin_connections_per_day",
        "linkedin_messages_per_day",
        "linkedin_profiles_per_day",
        "linkedin_interacts_per_day",
        "data_checks_per_day",
        "cadence_customs_per_day",
        "tasks_to_be_added_per_day",
        "max_tasks",
        "high_priority_split",
    }
)


DOMAIN_REGISTRY: dict[SettingsDomain, DomainDescriptor] = {
    SettingsDomain.AUTOMATED_TASK: DomainDescriptor(
        domain=SettingsDomain.AUTOMATED_TASK,
        label="automated task settings",
        payload_model=AutomatedTaskSettingsPayload,
        default_payload={
            "working_days": [1, 1, 1, 1, 1, 0, 0],
            "start_hour": "09:00",
            "end_hour": "18:00",
            "max_emails_per_day": 100,
            "max_sms_per_day": 100,
            "is_wait_time_random": False,
            "wait_time_upper_limit": 120,
            "wait_time_lower_limit": 60,
            "delay": 60,
        },
        side_effects=(
            SideEffectBinding(SideEffectKind.RECALCULATE_TASKS),
            SideEffectBinding(SideEffectKind.ADJUST_START_TIME),
            SideEffectBinding(SideEffectKind.INVALIDATE_CACHE, fire_on_repoint=True, namespace="automated_task_settings"),
        ),
    ),
    SettingsDomain.BOUNCED_MAIL: DomainDescriptor(
        domain=SettingsDomain.BOUNCED_MAIL,
        label="bounced mail settings",
        payload_model=BouncedMailSettingsPayload,
        default_payload={
            "automatic_bounced_data": dict(_CHANNEL_DEFAULTS),
            "semi_automatic_bounced_data": dict(_CHANNEL_DEFAULTS),
        },
        prepare=_force_mail_channels("automatic_bounced_data", "semi_automatic_bounced_data"),
    ),
    SettingsDomain.UNSUBSCRIBE_MAIL: DomainDescriptor(
        domain=SettingsDomain.UNSUBSCRIBE_MAIL,
        label="unsubscribe mail settings",
        payload_model=UnsubscribeMailSettingsPayload,
        default_payload={
            "automatic_unsubscribed_data": dict(_CHANNEL_DEFAULTS),
            "semi_automatic_unsubscribed_data": dict(_CHANNEL_DEFAULTS),
        },
        prepare=_force_mail_channels("automatic_unsubscribed_data", "semi_automatic_unsubscribed_data"),
    ),
    SettingsDomain.TASK: DomainDescriptor(
        domain=SettingsDomain.TASK,
        label="task settings",
        payload_model=TaskSettingsPayload,
        default_payload={
            "calls_per_day": 20,
            "mails_per_day": 20,
            "messages_per_day": 10,
            "linkedin_connections_per_day": 10,
            "linkedin_messages_per_day": 10,
            "linkedin_profiles_per_day": 10,
            "linkedin_interacts_per_day": 10,
            "data_checks_per_day": 10,
            "cadence_customs_per_day": 10,
            "tasks_to_be_added_per_day": 10,
            "max_tasks": 100,
            "high_priority_split": 20,
            "late_settings": {
                "call": 86400000,
                "message": 86400000,
                "mail": 86400000,
                "data_check": 86400000,
                "cadence_custom": 86400000,
                "linkedin_message": 86400000,
                "linkedin_profile": 86400000,
                "linkedin_interact": 86400000,
                "linkedin_connection": 86400000,
                "whatsapp": 86400000,
            },
        },
        side_effects=(
            SideEffectBinding(SideEffectKind.RECALCULATE_TASKS, watch_fields=_TASK_PACING_FIELDS),
            SideEffectBinding(SideEffectKind.UPDATE_LATE_TIME, watch_fields=frozenset({"late_settings"})),
        ),
    ),
    SettingsDomain.SKIP: DomainDescriptor(
        domain=SettingsDomain.SKIP,
        label="skip settings",
        payload_model=SkipSettingsPayload,
        default_payload={
            "skip_allowed_tasks": {
                "call": True,
                "message": True,
                "mail": True,
                "linkedin_message": True,
                "linkedin_profile": True,
                "linkedin_interact": True,
                "linkedin_connection": True,
                "data_check": True,
                "cadence_custom": True,
                "whatsapp": True,
            },
            "skip_reasons": ["Duplicated", "Other"],
        },
    ),
    SettingsDomain.LEAD_SCORE: DomainDescriptor(
        domain=SettingsDomain.LEAD_SCORE,
        label="lead score settings",
        payload_model=LeadScoreSettingsPayload,
        default_payload={
            "total_score": 0,
            "email_clicked": 0,
            "email_opened": 0,
            "email_replied": 0,
            "incoming_call_received": 0,
            "demo_booked": 0,
            "unsubscribe": 0,
            "bounced_mail": 0,
            "outgoing_call": 0,
            "outgoing_call_duration": 0,
            "sms_clicked": 0,
            "status_update": {},
            "score_threshold": 0,
            "reset_period": 0,
        },
        side_effects=(
            SideEffectBinding(
                SideEffectKind.RESET_LEAD_SCORE,
                watch_fields=frozenset({"score_threshold", "reset_period"}),
                per_record=True,
            ),
        ),
    ),
}


def get_domain(domain: SettingsDomain | str) -> DomainDescriptor:
    try:
        key = SettingsDomain(domain)
    except ValueError:
        raise NotFoundError(f"unknown settings domain '{domain}'") from None
    return DOMAIN_REGISTRY[key]


def all_domains() -> list[DomainDescriptor]:
    return [DOMAIN_REGISTRY[domain] for domain in SettingsDomain]
