"""Authorization decisions for account-scoped resources.

Every function here is pure: callers pass the acting principal and whatever
facts about the target they already loaded. ``check_*`` functions return an
:class:`AccessDecision` naming the rule that denied the request; the ``can_*``
and ``has_*`` variants collapse that to a bool.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Protocol

from packages.access.roles import Permission, Role, permissions_of


class Principal(Protocol):
    id: uuid.UUID
    account_id: uuid.UUID
    role: Role


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    rule: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = AccessDecision(allowed=True)


def _deny(rule: str) -> AccessDecision:
    return AccessDecision(allowed=False, rule=rule)


def _missing(permission: Permission) -> AccessDecision:
    return _deny(f"missing_permission:{permission.value}")


def check_permission(user: Principal, permission: Permission) -> AccessDecision:
    if permission in permissions_of(user.role):
        return ALLOWED
    return _missing(permission)


def has_permission(user: Principal, permission: Permission) -> bool:
    return check_permission(user, permission).allowed


def check_account_access(user: Principal, resource_account_id: uuid.UUID) -> AccessDecision:
    # Holds for every role, SuperAdmin included.
    if user.account_id == resource_account_id:
        return ALLOWED
    return _deny("account_mismatch")


def validate_account_access(user: Principal, resource_account_id: uuid.UUID) -> bool:
    return check_account_access(user, resource_account_id).allowed


def check_manage_user(actor: Principal, target: Principal) -> AccessDecision:
    if actor.id == target.id:
        return _deny("self_management")
    if not has_permission(actor, Permission.MANAGE_USERS):
        return _missing(Permission.MANAGE_USERS)
    if actor.role == Role.SUPER_ADMIN:
        return ALLOWED
    if actor.role == Role.ADMIN and target.role == Role.SUPER_ADMIN:
        return _deny("admin_cannot_manage_super_admin")
    return ALLOWED


def can_manage_user(actor: Principal, target: Principal) -> bool:
    return check_manage_user(actor, target).allowed


def check_change_user_role(actor: Principal, target: Principal, new_role: Role) -> AccessDecision:
    """Admins are capped below SuperAdmin on both ends of the transition."""
    if actor.id == target.id:
        return _deny("self_role_change")
    if not has_permission(actor, Permission.CHANGE_USER_ROLES):
        return _missing(Permission.CHANGE_USER_ROLES)
    if actor.role == Role.SUPER_ADMIN:
        return ALLOWED
    if actor.role == Role.ADMIN:
        if target.role == Role.SUPER_ADMIN:
            return _deny("admin_cannot_manage_super_admin")
        if new_role == Role.SUPER_ADMIN:
            return _deny("admin_cannot_grant_super_admin")
        return ALLOWED
    return _deny("role_cannot_change_roles")


def can_change_user_role(actor: Principal, target: Principal, new_role: Role) -> bool:
    return check_change_user_role(actor, target, new_role).allowed


def check_modify_campaign(user: Principal, campaign_owner_user_id: uuid.UUID) -> AccessDecision:
    # Account access is checked separately by the caller.
    if user.role in (Role.SUPER_ADMIN, Role.ADMIN):
        return ALLOWED
    if user.role == Role.EDITOR:
        if user.id == campaign_owner_user_id:
            return ALLOWED
        return _deny("not_campaign_owner")
    return _deny("role_cannot_modify_campaigns")


def can_modify_campaign(user: Principal, campaign_owner_user_id: uuid.UUID) -> bool:
    return check_modify_campaign(user, campaign_owner_user_id).allowed


def check_invitation_role(creator: Principal, role: Role) -> AccessDecision:
    if not has_permission(creator, Permission.INVITE_USERS):
        return _missing(Permission.INVITE_USERS)
    if creator.role != Role.SUPER_ADMIN and role == Role.SUPER_ADMIN:
        return _deny("admin_cannot_grant_super_admin")
    return ALLOWED


def leaves_account_without_super_admin(
    target: Principal,
    new_role: Role | None,
    super_admin_count: int,
) -> bool:
    """True when removing (``new_role is None``) or demoting ``target`` empties the SuperAdmin set."""
    if target.role != Role.SUPER_ADMIN:
        return False
    if new_role == Role.SUPER_ADMIN:
        return False
    return super_admin_count <= 1
