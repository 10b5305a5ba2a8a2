from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.orm import Session

from packages.access import Principal

from ..models import AuditLog


def write_audit_log(
    db: Session,
    actor: Principal,
    action: str,
    target_type: str,
    target_id: str,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    return write_account_audit_log(
        db=db,
        account_id=actor.account_id,
        actor_user_id=actor.id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata_json,
    )


def write_account_audit_log(
    db: Session,
    account_id: uuid.UUID,
    actor_user_id: uuid.UUID | None,
    action: str,
    target_type: str,
    target_id: str,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        account_id=account_id,
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata_json or {},
    )
    db.add(entry)
    db.flush()
    return entry
