from __future__ import annotations

import logging
from typing import Any

from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.settings.dispatcher import SideEffectCall, execute_side_effect
from app.settings.collaborators import get_collaborators


logger = logging.getLogger("app.settings.side_effects")


@celery_app.task(
    name="app.settings.run_side_effect",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=False,
    max_retries=3,
)
def run_side_effect_task(message: dict[str, Any]) -> str:
    call = SideEffectCall.from_message(message)
    token = set_correlation_id(message.get("correlation_id"))
    try:
        execute_side_effect(get_collaborators(), call)
        logger.info(
            "settings.side_effect.succeeded",
            extra={**call.log_fields(), "dispatch_mode": "celery"},
        )
    finally:
        reset_correlation_id(token)
    return call.dedupe_key
