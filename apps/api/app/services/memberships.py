from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from packages.access import (
    Permission,
    Principal,
    Role,
    check_change_user_role,
    check_manage_user,
    check_permission,
    leaves_account_without_super_admin,
)

from ..errors import ConflictError, NotFoundError, ValidationError, raise_if_denied
from ..models import Account, User
from ..store import SqlAccountScopeStore
from ..tenancy import VerifiedIdentity
from .accounts import ensure_account_active, load_account
from .audit import write_audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignupResult:
    user: User
    account: Account


def signup(
    store: SqlAccountScopeStore,
    identity: VerifiedIdentity,
    account_name: str,
    timeout_ms: int | None = None,
) -> SignupResult:
    """Create an account whose first user is always its SuperAdmin."""
    name = account_name.strip()
    if not name:
        raise ValidationError("account name is required", rule="account_name_required")
    existing = store.get_user_by_subject(identity.subject)
    if existing is not None and existing.deleted_at is None:
        raise ConflictError("identity already belongs to an account", rule="identity_has_account")

    def _create(tx: SqlAccountScopeStore) -> SignupResult:
        account = Account(name=name)
        tx.add(account)
        if existing is None:
            user = User(external_auth_id=identity.subject, email=identity.email, account_id=account.id)
        else:
            # A previously removed user starts over in the new account.
            user = existing
            user.account_id = account.id
            user.email = identity.email
            user.invited_by = None
            user.deleted_at = None
        user.role = Role.SUPER_ADMIN
        tx.add(user)
        write_audit_log(
            db=tx.session,
            actor=user,
            action="account.created",
            target_type="account",
            target_id=str(account.id),
            metadata_json={"name": name},
        )
        return SignupResult(user=user, account=account)

    result = store.with_transaction(_create, timeout_ms=timeout_ms)
    logger.info("account.created", extra={"account_id": str(result.account.id), "user_id": str(result.user.id)})
    return result


def list_members(store: SqlAccountScopeStore, actor: Principal, account_id: uuid.UUID) -> Sequence[User]:
    load_account(store, actor, account_id)
    return store.list_users_by_account(account_id)


def _load_target(store: SqlAccountScopeStore, account_id: uuid.UUID, user_id: uuid.UUID) -> User:
    target = store.get_account_user(account_id, user_id, for_update=True)
    if target is None:
        raise NotFoundError("user not found")
    return target


def change_user_role(
    store: SqlAccountScopeStore,
    actor: Principal,
    account_id: uuid.UUID,
    target_user_id: uuid.UUID,
    new_role: Role,
    timeout_ms: int | None = None,
) -> User:
    account = load_account(store, actor, account_id)
    ensure_account_active(account)

    def _apply(tx: SqlAccountScopeStore) -> User:
        target = _load_target(tx, account_id, target_user_id)
        raise_if_denied(check_change_user_role(actor, target, new_role), detail="cannot change this user's role")
        if leaves_account_without_super_admin(target, new_role, tx.count_super_admins(account_id)):
            raise ConflictError("account must keep at least one super admin", rule="last_super_admin")
        old_role = target.role
        target.role = new_role
        tx.session.flush()
        write_audit_log(
            db=tx.session,
            actor=actor,
            action="user.role_changed",
            target_type="user",
            target_id=str(target.id),
            metadata_json={"old_role": old_role.value, "new_role": new_role.value},
        )
        return target

    user = store.with_transaction(_apply, timeout_ms=timeout_ms)
    logger.info(
        "user.role_changed",
        extra={"account_id": str(account_id), "user_id": str(target_user_id), "new_role": new_role.value},
    )
    return user


def remove_user(
    store: SqlAccountScopeStore,
    actor: Principal,
    account_id: uuid.UUID,
    target_user_id: uuid.UUID,
    timeout_ms: int | None = None,
) -> None:
    account = load_account(store, actor, account_id)
    ensure_account_active(account)
    raise_if_denied(check_permission(actor, Permission.DELETE_USERS))

    def _apply(tx: SqlAccountScopeStore) -> None:
        target = _load_target(tx, account_id, target_user_id)
        raise_if_denied(check_manage_user(actor, target), detail="cannot remove this user")
        if leaves_account_without_super_admin(target, None, tx.count_super_admins(account_id)):
            raise ConflictError("account must keep at least one super admin", rule="last_super_admin")
        write_audit_log(
            db=tx.session,
            actor=actor,
            action="user.removed",
            target_type="user",
            target_id=str(target.id),
            metadata_json={"email": target.email, "role": target.role.value},
        )
        target.deleted_at = datetime.now(UTC)
        tx.session.flush()

    store.with_transaction(_apply, timeout_ms=timeout_ms)
    logger.info("user.removed", extra={"account_id": str(account_id), "user_id": str(target_user_id)})
