from __future__ import annotations

import logging
import uuid

from packages.access import Permission, Principal, check_account_access, check_permission

from ..errors import ForbiddenError, NotFoundError, ValidationError, raise_if_denied
from ..models import Account, AccountStatus, AccountStatusHistory, PricingPlan
from ..store import SqlAccountScopeStore
from .audit import write_audit_log

logger = logging.getLogger(__name__)


def load_account(store: SqlAccountScopeStore, actor: Principal, account_id: uuid.UUID) -> Account:
    """Tenant mismatch is Forbidden; NotFound is reserved for the caller's own account."""
    raise_if_denied(check_account_access(actor, account_id), detail="user does not belong to this account")
    account = store.get_account(account_id)
    if account is None:
        raise NotFoundError("account not found")
    return account


def ensure_account_active(account: Account) -> None:
    if account.status != AccountStatus.ACTIVE:
        raise ForbiddenError(f"account is {account.status.value}", rule="account_inactive")


def set_account_status(
    store: SqlAccountScopeStore,
    actor: Principal,
    account_id: uuid.UUID,
    new_status: AccountStatus,
    reason: str | None = None,
    timeout_ms: int | None = None,
) -> Account:
    account = load_account(store, actor, account_id)
    raise_if_denied(check_permission(actor, Permission.MANAGE_ACCOUNT_SETTINGS))
    old_status = account.status
    if old_status == new_status:
        raise ValidationError(f"account is already {new_status.value}", rule="status_unchanged")

    def _apply(tx: SqlAccountScopeStore) -> Account:
        account.status = new_status
        tx.add(
            AccountStatusHistory(
                account_id=account.id,
                old_status=old_status,
                new_status=new_status,
                reason=reason,
                changed_by=actor.id,
            )
        )
        write_audit_log(
            db=tx.session,
            actor=actor,
            action="account.status_changed",
            target_type="account",
            target_id=str(account.id),
            metadata_json={"old_status": old_status.value, "new_status": new_status.value, "reason": reason},
        )
        return account

    updated = store.with_transaction(_apply, timeout_ms=timeout_ms)
    logger.info(
        "account.status_changed",
        extra={"account_id": str(account_id), "old_status": old_status.value, "new_status": new_status.value},
    )
    return updated


def account_features(store: SqlAccountScopeStore, account: Account) -> dict[str, bool]:
    """Plan feature toggles. These never take part in permission decisions."""
    if account.pricing_plan_id is None:
        return {}
    plan = store.session.get(PricingPlan, account.pricing_plan_id)
    if plan is None:
        return {}
    return {str(key): bool(value) for key, value in (plan.features or {}).items()}

