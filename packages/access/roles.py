from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Permission(str, Enum):
    READ_CAMPAIGNS = "read_campaigns"
    COPY_UTM_LINKS = "copy_utm_links"
    CREATE_CAMPAIGNS = "create_campaigns"
    EDIT_OWN_CAMPAIGNS = "edit_own_campaigns"
    MANAGE_OWN_TEMPLATES = "manage_own_templates"
    MANAGE_TAGS = "manage_tags"
    EDIT_ANY_CAMPAIGN = "edit_any_campaign"
    DELETE_ANY_CAMPAIGN = "delete_any_campaign"
    INVITE_USERS = "invite_users"
    MANAGE_USERS = "manage_users"
    CHANGE_USER_ROLES = "change_user_roles"
    DELETE_USERS = "delete_users"
    MANAGE_ACCOUNT_SETTINGS = "manage_account_settings"
    MANAGE_BILLING = "manage_billing"
    VIEW_ACCOUNT_ANALYTICS = "view_account_analytics"


ROLE_RANK: dict[Role, int] = {
    Role.VIEWER: 1,
    Role.EDITOR: 2,
    Role.ADMIN: 3,
    Role.SUPER_ADMIN: 4,
}

_VIEWER = frozenset({Permission.READ_CAMPAIGNS, Permission.COPY_UTM_LINKS})
_EDITOR = _VIEWER | {
    Permission.CREATE_CAMPAIGNS,
    Permission.EDIT_OWN_CAMPAIGNS,
    Permission.MANAGE_OWN_TEMPLATES,
    Permission.MANAGE_TAGS,
}
_ADMIN = _EDITOR | {
    Permission.EDIT_ANY_CAMPAIGN,
    Permission.DELETE_ANY_CAMPAIGN,
    Permission.INVITE_USERS,
    Permission.MANAGE_USERS,
    Permission.CHANGE_USER_ROLES,
}
_SUPER_ADMIN = _ADMIN | {
    Permission.DELETE_USERS,
    Permission.MANAGE_ACCOUNT_SETTINGS,
    Permission.MANAGE_BILLING,
    Permission.VIEW_ACCOUNT_ANALYTICS,
}

# Static table; a role only holds what its row lists.
ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER,
    Role.EDITOR: frozenset(_EDITOR),
    Role.ADMIN: frozenset(_ADMIN),
    Role.SUPER_ADMIN: frozenset(_SUPER_ADMIN),
}


class UnknownRoleError(ValueError):
    def __init__(self, value: object) -> None:
        super().__init__(f"unknown role: {value!r}")
        self.value = value


def parse_role(value: str | Role) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError as exc:
        raise UnknownRoleError(value) from exc


def rank(role: Role) -> int:
    return ROLE_RANK[role]


def permissions_of(role: Role) -> frozenset[Permission]:
    return ROLE_PERMISSIONS.get(role, frozenset())
