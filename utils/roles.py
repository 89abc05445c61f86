from enum import Enum


class UserRole(str, Enum):
    USER = "user"
    SERVICE_PROVIDER = "service_provider"
    ADMIN = "admin"


# highest privilege first
_ROLE_PRECEDENCE = (UserRole.ADMIN, UserRole.SERVICE_PROVIDER, UserRole.USER)

SELF_REGISTER_ROLES = {UserRole.USER, UserRole.SERVICE_PROVIDER}


def role_names(roles):
    names = []
    for role in roles or []:
        name = role if isinstance(role, str) else getattr(role, "name", None)
        if name in {r.value for r in UserRole}:
            names.append(name)
    return names


def effective_role(user) -> UserRole:
    """Collapse a user's role rows to the single role used for authorization."""
    names = set(role_names(getattr(user, "roles", None)))
    for role in _ROLE_PRECEDENCE:
        if role.value in names:
            return role
    return UserRole.USER
