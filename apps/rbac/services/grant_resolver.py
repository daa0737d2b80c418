"""
Effective permission resolution.

A user's effective set is the union of:
1. the assigned role's own grants (or, in inherited mode, the grants of the
   role and every ancestor up to the root),
2. the user's allow overrides, and
3. the user's active, unexpired temporary grants.

Nothing is subtracted and nothing is cached: grants can expire between calls.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Set

from django.conf import settings
from django.utils import timezone

from apps.rbac.models import (
    Permission, RolePermission, TemporaryPermission, User, UserPermission
)
from apps.rbac.services.role_graph import RoleGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MfaCompliance:
    """Whether a user currently satisfies their role's MFA policy."""
    compliant: bool
    reason: str
    grace_period_ends_at: Optional[datetime] = None

    NOT_REQUIRED = 'not_required'
    ENABLED = 'enabled'
    GRACE_PERIOD = 'grace_period'
    REQUIRED = 'mfa_required'
    GRACE_PERIOD_EXPIRED = 'grace_period_expired'


class GrantResolver:
    """
    Computes effective permissions for a user.

    ``include_inherited`` selects which role grant set ``has_permission``
    (and therefore authorization) uses. It defaults to the
    RBAC_AUTHORIZE_INCLUDES_INHERITED setting, which is off.
    """

    def __init__(self, include_inherited: Optional[bool] = None):
        if include_inherited is None:
            include_inherited = getattr(settings, 'RBAC_AUTHORIZE_INCLUDES_INHERITED', False)
        self.include_inherited = include_inherited

    @staticmethod
    def role_permission_ids(role) -> Set:
        """Direct grant set of a single role."""
        if role is None:
            return set()
        return set(RolePermission.objects.filter(role=role).values_list('permission_id', flat=True))

    @staticmethod
    def inherited_role_permission_ids(role, graph: Optional[RoleGraph] = None) -> Set:
        """Grants of the role and of every ancestor up to the root."""
        if role is None:
            return set()
        graph = graph or RoleGraph.load()
        role_ids = [role.id] + [ancestor.id for ancestor in graph.ancestors(role)]
        return set(
            RolePermission.objects.filter(role_id__in=role_ids).values_list('permission_id', flat=True)
        )

    def effective_permission_ids(self, user: User, include_inherited: Optional[bool] = None,
                                 now=None, direct_ids: Optional[Iterable] = None) -> Set:
        """
        Effective permission ids for a user.

        Inactive users have none; a super-admin has the whole catalog.
        ``direct_ids`` replaces the stored allow overrides when given.
        """
        if include_inherited is None:
            include_inherited = self.include_inherited
        if not user.is_active:
            return set()

        role = user.role
        if role is not None and role.is_super_admin:
            return set(Permission.objects.values_list('id', flat=True))

        now = now or timezone.now()

        if include_inherited:
            granted = self.inherited_role_permission_ids(role)
        else:
            granted = self.role_permission_ids(role)

        if direct_ids is None:
            direct_ids = self.direct_permission_ids(user)
        granted |= set(direct_ids)
        granted |= set(
            TemporaryPermission.objects.active_for(user, now).values_list('permission_id', flat=True)
        )

        # Grants pointing at soft-deleted catalog entries do not count
        return set(Permission.objects.filter(id__in=granted).values_list('id', flat=True))

    @staticmethod
    def direct_permission_ids(user: User) -> Set:
        """Ids of the user's allow overrides."""
        return set(UserPermission.objects.allowed_for(user).values_list('permission_id', flat=True))

    def projected_permission_ids(self, user: User, add_ids: Iterable = (), remove_ids: Iterable = (),
                                 now=None) -> Set:
        """Effective ids as they would be after adding and removing allow overrides."""
        direct = (self.direct_permission_ids(user) | set(add_ids)) - set(remove_ids)
        return self.effective_permission_ids(user, now=now, direct_ids=direct)

    def effective_permissions(self, user: User, now=None) -> Set[str]:
        """Effective permission names using the role's own grants."""
        return self._names(self.effective_permission_ids(user, include_inherited=False, now=now))

    def effective_permissions_including_inherited(self, user: User, now=None) -> Set[str]:
        """Effective permission names including every ancestor role's grants."""
        return self._names(self.effective_permission_ids(user, include_inherited=True, now=now))

    def authorization_set(self, user: User, now=None) -> Set[str]:
        """The set consulted by ``has_permission``, per ``include_inherited``."""
        return self._names(self.effective_permission_ids(user, now=now))

    def has_permission(self, user: User, permission_name: str, now=None) -> bool:
        return permission_name in self.authorization_set(user, now=now)

    def can_access_module(self, user: User, module: str) -> bool:
        """Whether the user's role opens a module ('*' opens all)."""
        if not user.is_active or user.role is None:
            return False
        return user.role.grants_module(module)

    @staticmethod
    def mfa_compliance(user: User, now=None) -> MfaCompliance:
        """
        Check the user against their role's MFA policy.

        A role that requires MFA lets a member without it operate until the
        grace period, counted from the role assignment, runs out. A role
        with no grace period requires MFA immediately.
        """
        role = user.role
        if role is None or not role.mfa_required:
            return MfaCompliance(True, MfaCompliance.NOT_REQUIRED)
        if user.mfa_enabled:
            return MfaCompliance(True, MfaCompliance.ENABLED)

        grace_end = role.mfa_grace_period_end(user.role_assigned_at or user.created_at)
        if grace_end is None:
            return MfaCompliance(False, MfaCompliance.REQUIRED)
        if (now or timezone.now()) < grace_end:
            return MfaCompliance(True, MfaCompliance.GRACE_PERIOD, grace_end)
        return MfaCompliance(False, MfaCompliance.GRACE_PERIOD_EXPIRED, grace_end)

    @staticmethod
    def _names(permission_ids) -> Set[str]:
        if not permission_ids:
            return set()
        return set(Permission.objects.filter(id__in=permission_ids).values_list('name', flat=True))


def create_grant_resolver(include_inherited: Optional[bool] = None) -> GrantResolver:
    """Factory function to create GrantResolver instance."""
    return GrantResolver(include_inherited=include_inherited)
