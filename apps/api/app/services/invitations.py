"""Token-based invitation state machine.

``pending -> accepted`` and ``pending -> expired`` are the only transitions and
both are terminal. Expiry is applied lazily whenever a token is resolved.
"""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from fastapi import Depends

from packages.access import (
    Permission,
    Principal,
    Role,
    check_invitation_role,
    check_permission,
    leaves_account_without_super_admin,
)

from ..errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    raise_if_denied,
)
from ..models import Account, Invitation, InvitationStatus, User
from ..settings import settings
from ..store import SqlAccountScopeStore, get_store
from ..tenancy import VerifiedIdentity
from .accounts import ensure_account_active, load_account
from .audit import write_account_audit_log, write_audit_log

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class Clock(Protocol):
    def now(self) -> datetime: ...


class TokenGenerator(Protocol):
    def generate(self) -> str: ...


class InvitationNotifier(Protocol):
    def invitation_created(self, invitation: Invitation, account: Account) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


class SecretsTokenGenerator:
    def generate(self) -> str:
        return secrets.token_urlsafe(32)


class LoggingInvitationNotifier:
    """Stands in for email delivery, which lives outside this service."""

    def invitation_created(self, invitation: Invitation, account: Account) -> None:
        logger.info(
            "invitation.notification_queued",
            extra={
                "invitation_id": str(invitation.id),
                "account_name": account.name,
                "email": invitation.email,
                "expires_at": as_utc(invitation.expires_at).isoformat(),
            },
        )


@dataclass(frozen=True)
class AcceptedMembership:
    user: User
    account: Account


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _normalize_email(email: str) -> str:
    value = email.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValidationError("invalid email address", rule="invalid_email")
    return value


class InvitationLifecycle:
    def __init__(
        self,
        store: SqlAccountScopeStore,
        clock: Clock | None = None,
        token_generator: TokenGenerator | None = None,
        notifier: InvitationNotifier | None = None,
        ttl_days: int | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.token_generator = token_generator or SecretsTokenGenerator()
        self.notifier = notifier or LoggingInvitationNotifier()
        self.ttl = timedelta(days=settings.invitation_ttl_days if ttl_days is None else ttl_days)

    def create(
        self,
        creator: Principal,
        account_id: uuid.UUID,
        email: str,
        role: Role,
        now: datetime | None = None,
        timeout_ms: int | None = None,
    ) -> Invitation:
        account = load_account(self.store, creator, account_id)
        ensure_account_active(account)
        raise_if_denied(check_invitation_role(creator, role), detail="cannot invite a user with this role")
        address = _normalize_email(email)
        moment = now or self.clock.now()

        def _create(tx: SqlAccountScopeStore) -> Invitation:
            if tx.get_account_user_by_email(account_id, address) is not None:
                raise ConflictError("user is already a member of this account", rule="already_member")
            pending = tx.get_pending_invitation(account_id, address)
            if pending is not None and not self._expire_if_due(tx, pending, moment):
                raise ConflictError("an invitation is already pending for this email", rule="invitation_pending")
            invitation = Invitation(
                account_id=account_id,
                email=address,
                role=role,
                token=self.token_generator.generate(),
                status=InvitationStatus.PENDING,
                expires_at=moment + self.ttl,
                invited_by=creator.id,
            )
            tx.add(invitation)
            write_audit_log(
                db=tx.session,
                actor=creator,
                action="invitation.created",
                target_type="invitation",
                target_id=str(invitation.id),
                metadata_json={"email": address, "role": role.value},
            )
            return invitation

        invitation = self.store.with_transaction(_create, timeout_ms=timeout_ms)
        logger.info(
            "invitation.created",
            extra={"account_id": str(account_id), "invitation_id": str(invitation.id), "role": role.value},
        )
        self.notifier.invitation_created(invitation, account)
        return invitation

    def resolve(self, token: str, now: datetime | None = None, timeout_ms: int | None = None) -> Invitation:
        """Look up a token, persisting the expired state if its TTL has passed."""
        self._validate_token(token)
        moment = now or self.clock.now()

        def _resolve(tx: SqlAccountScopeStore) -> Invitation:
            invitation = self._load(tx, token)
            self._expire_if_due(tx, invitation, moment)
            return invitation

        return self.store.with_transaction(_resolve, timeout_ms=timeout_ms)

    def accept(
        self,
        token: str,
        identity: VerifiedIdentity,
        now: datetime | None = None,
        timeout_ms: int | None = None,
    ) -> AcceptedMembership:
        moment = now or self.clock.now()
        # Expiry commits on its own so a rejected accept cannot roll it back.
        self.resolve(token, moment, timeout_ms=timeout_ms)

        def _accept(tx: SqlAccountScopeStore) -> AcceptedMembership:
            invitation = self._load(tx, token)
            self._ensure_pending(invitation)
            if invitation.email.lower() != identity.email.strip().lower():
                raise ForbiddenError("invitation was issued to a different email", rule="invitation_email_mismatch")
            account = tx.get_account(invitation.account_id)
            if account is None:
                raise NotFoundError("account not found")
            ensure_account_active(account)
            # Claim the token first; the loser of a race stops here.
            if not tx.transition_invitation(invitation.id, InvitationStatus.PENDING, InvitationStatus.ACCEPTED):
                raise ConflictError("invitation has already been used", rule="invitation_consumed")
            user = self._upsert_member(tx, invitation, identity)
            write_account_audit_log(
                db=tx.session,
                account_id=account.id,
                actor_user_id=user.id,
                action="invitation.accepted",
                target_type="invitation",
                target_id=str(invitation.id),
                metadata_json={"email": invitation.email, "role": invitation.role.value},
            )
            tx.session.refresh(invitation)
            return AcceptedMembership(user=user, account=account)

        membership = self.store.with_transaction(_accept, timeout_ms=timeout_ms)
        logger.info(
            "invitation.accepted",
            extra={"account_id": str(membership.account.id), "user_id": str(membership.user.id)},
        )
        return membership

    def list_for_account(self, actor: Principal, account_id: uuid.UUID) -> Sequence[Invitation]:
        load_account(self.store, actor, account_id)
        raise_if_denied(check_permission(actor, Permission.INVITE_USERS))
        return self.store.list_invitations(account_id)

    @staticmethod
    def _validate_token(token: str) -> None:
        if not TOKEN_PATTERN.match(token or ""):
            raise ValidationError("malformed invitation token", rule="malformed_token")

    @staticmethod
    def _load(tx: SqlAccountScopeStore, token: str) -> Invitation:
        invitation = tx.get_invitation_by_token(token, for_update=True)
        if invitation is None:
            raise NotFoundError("invitation not found")
        return invitation

    @staticmethod
    def _ensure_pending(invitation: Invitation) -> None:
        if invitation.status == InvitationStatus.EXPIRED:
            raise ExpiredError("invitation has expired", rule="invitation_expired")
        if invitation.status != InvitationStatus.PENDING:
            raise ConflictError("invitation has already been used", rule="invitation_consumed")

    @staticmethod
    def _expire_if_due(tx: SqlAccountScopeStore, invitation: Invitation, now: datetime) -> bool:
        if invitation.status != InvitationStatus.PENDING or now <= as_utc(invitation.expires_at):
            return False
        tx.transition_invitation(invitation.id, InvitationStatus.PENDING, InvitationStatus.EXPIRED)
        tx.session.refresh(invitation)
        logger.info("invitation.expired", extra={"invitation_id": str(invitation.id)})
        return True

    @staticmethod
    def _upsert_member(tx: SqlAccountScopeStore, invitation: Invitation, identity: VerifiedIdentity) -> User:
        user = tx.get_user_by_subject(identity.subject, for_update=True)
        if user is None:
            user = User(
                external_auth_id=identity.subject,
                email=invitation.email,
                account_id=invitation.account_id,
                role=invitation.role,
                invited_by=invitation.invited_by,
            )
            tx.add(user)
            return user

        if user.deleted_at is None:
            if user.account_id == invitation.account_id:
                orphaned = leaves_account_without_super_admin(
                    user, invitation.role, tx.count_super_admins(user.account_id)
                )
            else:
                # Leaving the old account only matters if others stay behind.
                orphaned = tx.count_users(user.account_id) > 1 and leaves_account_without_super_admin(
                    user, None, tx.count_super_admins(user.account_id)
                )
            if orphaned:
                raise ConflictError("account must keep at least one super admin", rule="last_super_admin")

        user.account_id = invitation.account_id
        user.email = invitation.email
        user.role = invitation.role
        user.invited_by = invitation.invited_by
        user.deleted_at = None
        tx.session.flush()
        return user


def get_invitation_lifecycle(store: SqlAccountScopeStore = Depends(get_store)) -> InvitationLifecycle:
    return InvitationLifecycle(store)
