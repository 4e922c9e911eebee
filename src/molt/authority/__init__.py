"""Authority — role history, capability checks and permission ghosts."""

from molt.authority.ghost import GhostAssessment, PermissionGhostResolver
from molt.authority.resolver import AuthorityResolver
from molt.authority.roles import Endorsement, RoleGrant, RoleRegistry

__all__ = [
    "AuthorityResolver",
    "Endorsement",
    "GhostAssessment",
    "PermissionGhostResolver",
    "RoleGrant",
    "RoleRegistry",
]
