from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.errors import ConflictError, ExpiredError, ForbiddenError, NotFoundError, ValidationError
from app.models import Account, AuditLog, Invitation, InvitationStatus, User
from app.services.invitations import InvitationLifecycle, as_utc
from app.store import SqlAccountScopeStore
from app.tenancy import VerifiedIdentity
from packages.access import Role

from conftest import FIXED_NOW, CountingTokenGenerator, FixedClock, RecordingNotifier, RecordingStore, Tenants


def _identity(subject: str, email: str) -> VerifiedIdentity:
    return VerifiedIdentity(subject=subject, email=email)


def test_create_invitation(
    lifecycle: InvitationLifecycle,
    db_session: Session,
    notifier: RecordingNotifier,
    tenants: Tenants,
) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, " New.Person@Example.com ", Role.EDITOR)

    assert invitation.status == InvitationStatus.PENDING
    assert invitation.email == "new.person@example.com"
    assert invitation.role == Role.EDITOR
    assert invitation.invited_by == tenants.admin.id
    assert as_utc(invitation.expires_at) == FIXED_NOW + timedelta(days=7)
    assert notifier.sent == [("new.person@example.com", "Acme Marketing")]
    audit = db_session.scalar(select(AuditLog).where(AuditLog.action == "invitation.created"))
    assert audit is not None and audit.target_id == str(invitation.id)


def test_admin_cannot_invite_super_admin(lifecycle: InvitationLifecycle, db_session: Session, tenants: Tenants) -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        lifecycle.create(tenants.admin, tenants.account_a, "boss@example.com", Role.SUPER_ADMIN)

    assert excinfo.value.rule == "admin_cannot_grant_super_admin"
    assert db_session.scalar(select(func.count(Invitation.id))) == 0


def test_create_requires_invite_permission_and_same_account(lifecycle: InvitationLifecycle, tenants: Tenants) -> None:
    with pytest.raises(ForbiddenError) as excinfo:
        lifecycle.create(tenants.editor, tenants.account_a, "friend@example.com", Role.VIEWER)
    assert excinfo.value.rule == "missing_permission:invite_users"

    with pytest.raises(ForbiddenError) as excinfo:
        lifecycle.create(tenants.outsider, tenants.account_a, "friend@example.com", Role.VIEWER)
    assert excinfo.value.rule == "account_mismatch"


def test_create_rejects_members_and_duplicates(lifecycle: InvitationLifecycle, tenants: Tenants) -> None:
    with pytest.raises(ConflictError) as excinfo:
        lifecycle.create(tenants.admin, tenants.account_a, tenants.editor.email.upper(), Role.VIEWER)
    assert excinfo.value.rule == "already_member"

    lifecycle.create(tenants.admin, tenants.account_a, "twice@example.com", Role.VIEWER)
    with pytest.raises(ConflictError) as excinfo:
        lifecycle.create(tenants.admin, tenants.account_a, "twice@example.com", Role.VIEWER)
    assert excinfo.value.rule == "invitation_pending"


def test_lapsed_pending_invitation_can_be_reissued(
    lifecycle: InvitationLifecycle, clock: FixedClock, tenants: Tenants
) -> None:
    first = lifecycle.create(tenants.admin, tenants.account_a, "late@example.com", Role.VIEWER)
    clock.current = FIXED_NOW + timedelta(days=8)

    second = lifecycle.create(tenants.admin, tenants.account_a, "late@example.com", Role.VIEWER)

    assert first.status == InvitationStatus.EXPIRED
    assert second.status == InvitationStatus.PENDING
    assert second.token != first.token


def test_invalid_email_is_rejected(lifecycle: InvitationLifecycle, tenants: Tenants) -> None:
    with pytest.raises(ValidationError) as excinfo:
        lifecycle.create(tenants.admin, tenants.account_a, "not-an-email", Role.VIEWER)
    assert excinfo.value.rule == "invalid_email"


def test_resolve_rejects_malformed_and_unknown_tokens(lifecycle: InvitationLifecycle, tenants: Tenants) -> None:
    with pytest.raises(ValidationError) as excinfo:
        lifecycle.resolve("short")
    assert excinfo.value.rule == "malformed_token"
    with pytest.raises(ValidationError):
        lifecycle.resolve("has spaces in it and more")
    with pytest.raises(NotFoundError):
        lifecycle.resolve("unknown-token-0000000")


def test_expired_invitation_cannot_be_accepted(
    lifecycle: InvitationLifecycle,
    db_session: Session,
    clock: FixedClock,
    tenants: Tenants,
) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, "slow@example.com", Role.VIEWER)
    clock.current = as_utc(invitation.expires_at) + timedelta(seconds=1)

    resolved = lifecycle.resolve(invitation.token)
    assert resolved.status == InvitationStatus.EXPIRED
    db_session.expire_all()
    assert db_session.get(Invitation, invitation.id).status == InvitationStatus.EXPIRED

    with pytest.raises(ExpiredError) as excinfo:
        lifecycle.accept(invitation.token, _identity("slow", "slow@example.com"))
    assert excinfo.value.rule == "invitation_expired"
    assert isinstance(excinfo.value, ConflictError)
    assert db_session.scalar(select(User).where(User.external_auth_id == "slow")) is None


def test_accept_is_lazily_expired_without_resolve(
    lifecycle: InvitationLifecycle, clock: FixedClock, tenants: Tenants
) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, "lazy@example.com", Role.VIEWER)
    clock.current = FIXED_NOW + timedelta(days=30)

    with pytest.raises(ExpiredError):
        lifecycle.accept(invitation.token, _identity("lazy", "lazy@example.com"))
    assert lifecycle.resolve(invitation.token).status == InvitationStatus.EXPIRED


def test_accept_creates_member(lifecycle: InvitationLifecycle, db_session: Session, tenants: Tenants) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, "newbie@example.com", Role.EDITOR)

    membership = lifecycle.accept(invitation.token, _identity("newbie", "NEWBIE@example.com"))

    assert membership.account.id == tenants.account_a
    assert membership.user.external_auth_id == "newbie"
    assert membership.user.role == Role.EDITOR
    assert membership.user.invited_by == tenants.admin.id
    db_session.expire_all()
    assert db_session.get(Invitation, invitation.id).status == InvitationStatus.ACCEPTED


def test_second_accept_conflicts(lifecycle: InvitationLifecycle, db_session: Session, tenants: Tenants) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, "once@example.com", Role.VIEWER)
    lifecycle.accept(invitation.token, _identity("once", "once@example.com"))

    with pytest.raises(ConflictError) as excinfo:
        lifecycle.accept(invitation.token, _identity("once", "once@example.com"))

    assert excinfo.value.rule == "invitation_consumed"
    assert db_session.scalar(select(func.count(User.id)).where(User.external_auth_id == "once")) == 1


def test_accept_requires_matching_email(lifecycle: InvitationLifecycle, db_session: Session, tenants: Tenants) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, "intended@example.com", Role.VIEWER)

    with pytest.raises(ForbiddenError) as excinfo:
        lifecycle.accept(invitation.token, _identity("intruder", "intruder@example.com"))

    assert excinfo.value.rule == "invitation_email_mismatch"
    db_session.expire_all()
    assert db_session.get(Invitation, invitation.id).status == InvitationStatus.PENDING


def test_accept_moves_sole_member_between_accounts(lifecycle: InvitationLifecycle, tenants: Tenants) -> None:
    invitation = lifecycle.create(tenants.super_admin, tenants.account_a, tenants.outsider.email, Role.ADMIN)

    membership = lifecycle.accept(invitation.token, _identity(tenants.outsider.subject, tenants.outsider.email))

    assert membership.user.id == tenants.outsider.id
    assert membership.user.account_id == tenants.account_a
    assert membership.user.role == Role.ADMIN


def test_accept_refuses_to_orphan_previous_account(
    lifecycle: InvitationLifecycle, db_session: Session, tenants: Tenants
) -> None:
    db_session.add(
        User(external_auth_id="left-behind", email="left@example.com", account_id=tenants.account_b, role=Role.VIEWER)
    )
    db_session.commit()
    invitation = lifecycle.create(tenants.super_admin, tenants.account_a, tenants.outsider.email, Role.ADMIN)

    with pytest.raises(ConflictError) as excinfo:
        lifecycle.accept(invitation.token, _identity(tenants.outsider.subject, tenants.outsider.email))

    assert excinfo.value.rule == "last_super_admin"
    db_session.expire_all()
    assert db_session.get(Invitation, invitation.id).status == InvitationStatus.PENDING
    assert db_session.get(User, tenants.outsider.id).account_id == tenants.account_b


def test_list_for_account(lifecycle: InvitationLifecycle, tenants: Tenants) -> None:
    lifecycle.create(tenants.admin, tenants.account_a, "one@example.com", Role.VIEWER)
    lifecycle.create(tenants.super_admin, tenants.account_a, "two@example.com", Role.EDITOR)

    emails = {invitation.email for invitation in lifecycle.list_for_account(tenants.admin, tenants.account_a)}
    assert emails == {"one@example.com", "two@example.com"}

    with pytest.raises(ForbiddenError):
        lifecycle.list_for_account(tenants.viewer, tenants.account_a)
    with pytest.raises(ForbiddenError):
        lifecycle.list_for_account(tenants.outsider, tenants.account_a)


def test_transition_is_compare_and_set(
    lifecycle: InvitationLifecycle, store: SqlAccountScopeStore, tenants: Tenants
) -> None:
    invitation = lifecycle.create(tenants.admin, tenants.account_a, "cas@example.com", Role.VIEWER)

    assert store.transition_invitation(invitation.id, InvitationStatus.PENDING, InvitationStatus.ACCEPTED) is True
    assert store.transition_invitation(invitation.id, InvitationStatus.PENDING, InvitationStatus.EXPIRED) is False
    store.session.commit()


def test_racing_accepts_consume_token_once(file_sessions: sessionmaker[Session]) -> None:
    clock = FixedClock(FIXED_NOW)
    with file_sessions() as setup:
        account = Account(name="Race Co")
        setup.add(account)
        setup.flush()
        owner = User(external_auth_id="owner", email="owner@example.com", account_id=account.id, role=Role.SUPER_ADMIN)
        setup.add(owner)
        setup.commit()
        invitation = InvitationLifecycle(
            SqlAccountScopeStore(setup),
            clock=clock,
            token_generator=CountingTokenGenerator(),
            notifier=RecordingNotifier(),
        ).create(owner, account.id, "racer@example.com", Role.EDITOR)
        token = invitation.token

    identity = _identity("racer", "racer@example.com")
    with file_sessions() as first, file_sessions() as second:
        first_store = SqlAccountScopeStore(first)
        stale = first_store.get_invitation_by_token(token)
        assert stale is not None and stale.status == InvitationStatus.PENDING

        InvitationLifecycle(SqlAccountScopeStore(second), clock=clock).accept(token, identity)

        # The slower request still holds a pending snapshot; its claim must fail.
        assert first_store.transition_invitation(stale.id, InvitationStatus.PENDING, InvitationStatus.ACCEPTED) is False
        first.rollback()
        with pytest.raises(ConflictError) as excinfo:
            InvitationLifecycle(first_store, clock=clock).accept(token, identity)
        assert excinfo.value.rule == "invitation_consumed"

    with file_sessions() as check:
        assert check.scalar(select(func.count(User.id)).where(User.external_auth_id == "racer")) == 1
        accepted = check.scalar(select(Invitation).where(Invitation.token == token))
        assert accepted is not None and accepted.status == InvitationStatus.ACCEPTED


def test_timeouts_reach_create_and_accept(
    db_session: Session, clock: FixedClock, notifier: RecordingNotifier, tenants: Tenants
) -> None:
    store = RecordingStore(db_session)
    lifecycle = InvitationLifecycle(store, clock=clock, token_generator=CountingTokenGenerator(), notifier=notifier)

    invitation = lifecycle.create(tenants.admin, tenants.account_a, "timed@example.com", Role.VIEWER, timeout_ms=90)
    lifecycle.accept(invitation.token, _identity("timed", "timed@example.com"), timeout_ms=125)
    lifecycle.resolve(invitation.token)

    # accept runs the expiry check and the claim as two transactions
    assert store.timeouts == [90, 125, 125, None]
