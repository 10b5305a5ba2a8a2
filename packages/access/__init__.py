from packages.access.guard import (
    ALLOWED,
    AccessDecision,
    Principal,
    can_change_user_role,
    can_manage_user,
    can_modify_campaign,
    check_account_access,
    check_change_user_role,
    check_invitation_role,
    check_manage_user,
    check_modify_campaign,
    check_permission,
    has_permission,
    leaves_account_without_super_admin,
    validate_account_access,
)
from packages.access.roles import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    UnknownRoleError,
    parse_role,
    permissions_of,
    rank,
)

__all__ = [
    "ALLOWED",
    "AccessDecision",
    "Permission",
    "Principal",
    "ROLE_PERMISSIONS",
    "Role",
    "UnknownRoleError",
    "can_change_user_role",
    "can_manage_user",
    "can_modify_campaign",
    "check_account_access",
    "check_change_user_role",
    "check_invitation_role",
    "check_manage_user",
    "check_modify_campaign",
    "check_permission",
    "has_permission",
    "leaves_account_without_super_admin",
    "parse_role",
    "permissions_of",
    "rank",
    "validate_account_access",
]
