"""
Idempotency keys for queued actions.

A key is a content hash of (tenant, action type, entity key, evaluation day), so
every evaluation of the same finding on the same day produces the same key and
the action_queue UNIQUE constraint drops the repeat.
"""
from __future__ import annotations

import hashlib
from datetime import date
from typing import Union

from .models import ActionType

KEY_LENGTH = 32


def idempotency_key(
    profile_id: str,
    action_type: Union[ActionType, str],
    entity_key: str,
    eval_date: date,
) -> str:
    kind = action_type.value if isinstance(action_type, ActionType) else str(action_type)
    # Unit separator keeps ("a:b", "c") and ("a", "b:c") apart
    material = "\x1f".join([str(profile_id), kind, str(entity_key), eval_date.isoformat()])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:KEY_LENGTH]


def entity_key(*parts: object) -> str:
    """Join entity identifiers into one key, e.g. ad group id + normalized term."""
    return ":".join(str(p) for p in parts)
