from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.orm import Session

from packages.access import Permission, Role, UnknownRoleError, check_account_access, check_permission, parse_role

from .db import get_db
from .errors import UnauthorizedError, ValidationError, raise_if_denied
from .models import User
from .settings import settings


@dataclass(frozen=True)
class VerifiedIdentity:
    subject: str
    email: str


@dataclass(frozen=True)
class RequestContext:
    current_user_id: uuid.UUID
    current_account_id: uuid.UUID
    current_role: Role
    identity: VerifiedIdentity

    # Principal protocol, so a context can be handed straight to the guards.
    @property
    def id(self) -> uuid.UUID:
        return self.current_user_id

    @property
    def account_id(self) -> uuid.UUID:
        return self.current_account_id

    @property
    def role(self) -> Role:
        return self.current_role


def account_scoped(stmt: Any, account_id: uuid.UUID, model: Any) -> Any:
    return stmt.where(getattr(model, "account_id") == account_id)


def require_permission(context: RequestContext, permission: Permission) -> None:
    raise_if_denied(
        check_permission(context, permission), detail=f"insufficient permissions, required: {permission.value}"
    )


def require_account_access(context: RequestContext, account_id: uuid.UUID) -> None:
    raise_if_denied(check_account_access(context, account_id), detail="user does not belong to this account")


def role_from_request(value: str) -> Role:
    try:
        return parse_role(value.strip().lower())
    except UnknownRoleError as exc:
        raise ValidationError(f"unknown role: {value}", rule="invalid_role") from exc


def get_verified_identity(
    x_auth_subject: str | None = Header(default=None),
    x_auth_email: str | None = Header(default=None),
) -> VerifiedIdentity:
    if settings.dev_auth_bypass:
        return VerifiedIdentity(subject=settings.dev_auth_subject, email=settings.dev_auth_email)
    if not x_auth_subject or not x_auth_email:
        raise UnauthorizedError("missing identity headers")
    return VerifiedIdentity(subject=x_auth_subject.strip(), email=x_auth_email.strip().lower())


def get_request_context(
    db: Session = Depends(get_db),
    identity: VerifiedIdentity = Depends(get_verified_identity),
) -> RequestContext:
    # Role and account always come from the user row, never from the request.
    user = db.scalar(select(User).where(User.external_auth_id == identity.subject, User.deleted_at.is_(None)))
    if user is None:
        raise UnauthorizedError("no user for identity")
    return RequestContext(
        current_user_id=user.id,
        current_account_id=user.account_id,
        current_role=user.role,
        identity=identity,
    )
