from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.models import AccountStatus, AccountStatusHistory, AuditLog, PricingPlan, User
from app.services.accounts import account_features, set_account_status
from app.services.memberships import change_user_role, list_members, remove_user, signup
from app.store import SqlAccountScopeStore
from app.tenancy import VerifiedIdentity
from packages.access import Role

from conftest import RecordingStore, Tenants


def test_signup_makes_first_user_super_admin(store: SqlAccountScopeStore) -> None:
    result = signup(store, VerifiedIdentity(subject="new-founder", email="founder@example.com"), "  Initech  ")

    assert result.account.name == "Initech"
    assert result.user.role == Role.SUPER_ADMIN
    assert result.user.account_id == result.account.id
    assert store.count_super_admins(result.account.id) == 1


def test_signup_rejects_identity_with_account(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    identity = VerifiedIdentity(subject=tenants.editor.subject, email=tenants.editor.email)
    with pytest.raises(ConflictError) as excinfo:
        signup(store, identity, "Second Account")
    assert excinfo.value.rule == "identity_has_account"


def test_signup_requires_account_name(store: SqlAccountScopeStore) -> None:
    with pytest.raises(ValidationError):
        signup(store, VerifiedIdentity(subject="someone", email="someone@example.com"), "   ")


def test_list_members_is_account_scoped(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    members = list_members(store, tenants.viewer, tenants.account_a)
    assert {member.id for member in members} == {
        tenants.super_admin.id,
        tenants.admin.id,
        tenants.editor.id,
        tenants.other_editor.id,
        tenants.viewer.id,
    }

    with pytest.raises(ForbiddenError) as excinfo:
        list_members(store, tenants.outsider, tenants.account_a)
    assert excinfo.value.rule == "account_mismatch"


def test_role_change_by_admin_is_capped(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    updated = change_user_role(store, tenants.admin, tenants.account_a, tenants.viewer.id, Role.EDITOR)
    assert updated.role == Role.EDITOR

    with pytest.raises(ForbiddenError) as excinfo:
        change_user_role(store, tenants.admin, tenants.account_a, tenants.editor.id, Role.SUPER_ADMIN)
    assert excinfo.value.rule == "admin_cannot_grant_super_admin"

    with pytest.raises(ForbiddenError) as excinfo:
        change_user_role(store, tenants.admin, tenants.account_a, tenants.super_admin.id, Role.VIEWER)
    assert excinfo.value.rule == "admin_cannot_manage_super_admin"


def test_role_change_writes_audit_entry(store: SqlAccountScopeStore, db_session: Session, tenants: Tenants) -> None:
    change_user_role(store, tenants.super_admin, tenants.account_a, tenants.editor.id, Role.ADMIN)

    entry = db_session.scalar(select(AuditLog).where(AuditLog.action == "user.role_changed"))
    assert entry is not None
    assert entry.account_id == tenants.account_a
    assert entry.metadata_json == {"old_role": "editor", "new_role": "admin"}


def test_role_change_target_in_other_account_is_not_found(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    with pytest.raises(NotFoundError):
        change_user_role(store, tenants.super_admin, tenants.account_a, tenants.outsider.id, Role.VIEWER)


def test_cross_tenant_role_change_is_forbidden(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        change_user_role(store, tenants.outsider, tenants.account_a, tenants.viewer.id, Role.ADMIN)
    assert excinfo.value.rule == "account_mismatch"


def test_super_admin_count_never_reaches_zero(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    account = tenants.account_a
    alice = tenants.super_admin

    change_user_role(store, alice, account, tenants.admin.id, Role.SUPER_ADMIN)
    adam = replace(tenants.admin, role=Role.SUPER_ADMIN)
    assert store.count_super_admins(account) == 2

    change_user_role(store, adam, account, alice.id, Role.ADMIN)
    alice = replace(alice, role=Role.ADMIN)
    assert store.count_super_admins(account) == 1

    # The remaining SuperAdmin cannot be demoted or removed by anyone left.
    with pytest.raises(ForbiddenError):
        change_user_role(store, alice, account, adam.id, Role.ADMIN)
    with pytest.raises(ForbiddenError):
        change_user_role(store, adam, account, adam.id, Role.ADMIN)
    with pytest.raises(ForbiddenError):
        remove_user(store, adam, account, adam.id)
    with pytest.raises(ForbiddenError):
        remove_user(store, alice, account, adam.id)
    assert store.count_super_admins(account) == 1


def test_remove_user_soft_deletes(store: SqlAccountScopeStore, db_session: Session, tenants: Tenants) -> None:
    remove_user(store, tenants.super_admin, tenants.account_a, tenants.editor.id)

    row = db_session.get(User, tenants.editor.id)
    assert row is not None and row.deleted_at is not None
    assert tenants.editor.id not in {member.id for member in list_members(store, tenants.viewer, tenants.account_a)}
    with pytest.raises(NotFoundError):
        remove_user(store, tenants.super_admin, tenants.account_a, tenants.editor.id)


def test_remove_user_requires_delete_permission(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        remove_user(store, tenants.admin, tenants.account_a, tenants.viewer.id)
    assert excinfo.value.rule == "missing_permission:delete_users"


def test_removed_user_can_sign_up_again(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    remove_user(store, tenants.super_admin, tenants.account_a, tenants.viewer.id)

    result = signup(store, VerifiedIdentity(subject=tenants.viewer.subject, email=tenants.viewer.email), "Vera Co")

    assert result.user.id == tenants.viewer.id
    assert result.user.deleted_at is None
    assert result.user.role == Role.SUPER_ADMIN
    assert result.account.id != tenants.account_a


def test_suspended_account_is_read_only(store: SqlAccountScopeStore, db_session: Session, tenants: Tenants) -> None:
    account = set_account_status(store, tenants.super_admin, tenants.account_a, AccountStatus.SUSPENDED, "billing")
    assert account.status == AccountStatus.SUSPENDED

    history = db_session.scalars(select(AccountStatusHistory)).all()
    assert [(row.old_status, row.new_status, row.reason) for row in history] == [
        (AccountStatus.ACTIVE, AccountStatus.SUSPENDED, "billing")
    ]

    with pytest.raises(ForbiddenError) as excinfo:
        change_user_role(store, tenants.super_admin, tenants.account_a, tenants.viewer.id, Role.EDITOR)
    assert excinfo.value.rule == "account_inactive"
    # Reads still work.
    assert list_members(store, tenants.viewer, tenants.account_a)


def test_account_status_rules(store: SqlAccountScopeStore, tenants: Tenants) -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        set_account_status(store, tenants.admin, tenants.account_a, AccountStatus.CANCELLED)
    assert excinfo.value.rule == "missing_permission:manage_account_settings"

    with pytest.raises(ValidationError) as validation:
        set_account_status(store, tenants.super_admin, tenants.account_a, AccountStatus.ACTIVE)
    assert validation.value.rule == "status_unchanged"


def test_plan_features_are_plain_flags(store: SqlAccountScopeStore, db_session: Session, tenants: Tenants) -> None:
    account = store.get_account(tenants.account_a)
    assert account is not None
    assert account_features(store, account) == {}

    plan = PricingPlan(plan_name="growth", features={"csv_export": True, "team_seats": False})
    db_session.add(plan)
    db_session.flush()
    account.pricing_plan_id = plan.id
    db_session.commit()

    assert account_features(store, account) == {"csv_export": True, "team_seats": False}


def test_timeouts_reach_membership_transactions(db_session: Session, tenants: Tenants) -> None:
    store = RecordingStore(db_session)

    change_user_role(store, tenants.admin, tenants.account_a, tenants.viewer.id, Role.EDITOR, timeout_ms=40)
    remove_user(store, tenants.super_admin, tenants.account_a, tenants.other_editor.id, timeout_ms=50)
    signup(store, VerifiedIdentity(subject="fresh", email="fresh@example.com"), "Fresh Co", timeout_ms=60)
    set_account_status(store, tenants.super_admin, tenants.account_a, AccountStatus.SUSPENDED, timeout_ms=70)

    assert store.timeouts == [40, 50, 60, 70]
