"""
Direct and temporary permission grants.

Direct grants write UserPermission allow overrides for low-risk
permissions; anything flagged requires_approval or critical must go
through a change request instead. Temporary grants are time-bound and
are revoked by deactivation, never deletion.
"""
import logging
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import (
    MissingDependenciesError, StateTransitionError, ValidationError
)
from apps.rbac.models import TemporaryPermission, User, UserPermission
from apps.rbac.serializers import TemporaryGrantInputSerializer
from apps.rbac.services.audit import AuditTrail, create_audit_trail
from apps.rbac.services.grant_resolver import GrantResolver
from apps.rbac.services.permission_catalog import PermissionCatalog

logger = logging.getLogger(__name__)


class GrantService:
    """Service for direct overrides and temporary grants."""

    def __init__(self, audit: Optional[AuditTrail] = None,
                 catalog: Optional[PermissionCatalog] = None,
                 resolver: Optional[GrantResolver] = None):
        self.audit = audit or create_audit_trail()
        self.catalog = catalog or PermissionCatalog(audit=self.audit)
        self.resolver = resolver or GrantResolver()

    @transaction.atomic
    def grant_direct(self, user: User, permission_name: str, granted_by: Optional[User] = None,
                     reason: str = '') -> UserPermission:
        """
        Grant a permission to a user outside any change request.

        Raises:
            ValidationError: Unknown permission, or one that needs approval
            MissingDependenciesError: If the grant leaves a prerequisite unmet
        """
        permission = self.catalog.get(permission_name)
        if permission.needs_approval:
            raise ValidationError(
                f"Permission '{permission.name}' requires approval; submit a change request",
                details={'permission': permission.name}
            )

        list(User.objects.select_for_update().filter(pk=user.pk))
        existing_errors = set(self.catalog.validate_ids(self.resolver.effective_permission_ids(user)))
        user_permission, _ = UserPermission.objects.grant_permission(
            user=user, permission=permission, reason=reason, granted_by=granted_by
        )
        after = self.resolver.effective_permission_ids(user)
        new_errors = [e for e in self.catalog.validate_ids(after) if e not in existing_errors]
        if new_errors:
            raise MissingDependenciesError(new_errors)

        self.audit.append(
            action='permission_granted',
            description=f"'{permission.name}' granted directly to {user.name}",
            user=granted_by,
            context={'target_user_id': str(user.id), 'permission': permission.name, 'reason': reason},
        )
        return user_permission

    @transaction.atomic
    def revoke_direct(self, user: User, permission_name: str, revoked_by: Optional[User] = None) -> bool:
        """Delete a user's allow override. Returns False when there was none."""
        permission = self.catalog.get(permission_name)
        removed = UserPermission.objects.remove_permission(user, permission)
        if removed:
            self.audit.append(
                action='permission_revoked',
                description=f"'{permission.name}' revoked from {user.name}",
                user=revoked_by,
                context={'target_user_id': str(user.id), 'permission': permission.name},
            )
        return bool(removed)

    @transaction.atomic
    def grant_temporary(self, user: User, permission_name: str, expires_at,
                        granted_by: Optional[User] = None, reason: str = '') -> TemporaryPermission:
        """
        Issue a time-bound grant.

        Raises:
            ValidationError: Unknown permission or an expiry outside the allowed window
        """
        serializer = TemporaryGrantInputSerializer(data={
            'permission': permission_name,
            'expires_at': expires_at,
            'reason': reason,
        })
        if not serializer.is_valid():
            raise ValidationError.from_serializer(serializer, 'Invalid temporary grant')
        data = serializer.validated_data

        permission = self.catalog.get(data['permission'])
        grant = TemporaryPermission.objects.create(
            user=user,
            permission=permission,
            granted_by=granted_by,
            granted_at=timezone.now(),
            expires_at=data['expires_at'],
            reason=data.get('reason', ''),
        )

        self.audit.append(
            action='temporary_permission_granted',
            description=f"'{permission.name}' granted to {user.name} until {grant.expires_at.isoformat()}",
            severity='warning' if permission.needs_approval else 'info',
            user=granted_by,
            context={
                'grant_id': str(grant.id),
                'target_user_id': str(user.id),
                'permission': permission.name,
                'expires_at': grant.expires_at.isoformat(),
                'reason': grant.reason,
            },
        )
        logger.info(
            f"Temporary grant issued: {permission.name}",
            extra={'grant_id': str(grant.id), 'user_id': str(user.id)}
        )
        return grant

    @transaction.atomic
    def revoke_temporary(self, grant: TemporaryPermission, revoked_by: Optional[User] = None) -> TemporaryPermission:
        """
        Deactivate a temporary grant; the row is kept.

        Raises:
            StateTransitionError: If the grant was already revoked
        """
        grant = TemporaryPermission.objects.select_for_update().get(pk=grant.pk)
        if not grant.is_active:
            raise StateTransitionError(
                "Temporary grant is already revoked",
                details={'grant_id': str(grant.id)}
            )

        grant.is_active = False
        grant.revoked_at = timezone.now()
        grant.revoked_by = revoked_by
        grant.save(update_fields=['is_active', 'revoked_at', 'revoked_by', 'updated_at'])

        self.audit.append(
            action='temporary_permission_revoked',
            description=f"Temporary '{grant.permission.name}' revoked from {grant.user.name}",
            user=revoked_by,
            context={'grant_id': str(grant.id), 'permission': grant.permission.name},
        )
        return grant

    @transaction.atomic
    def deactivate_expired(self, now=None) -> int:
        """Switch off grants whose expiry has passed. Returns how many changed."""
        now = now or timezone.now()
        stale = list(TemporaryPermission.objects.expired(now).values_list('id', flat=True))
        if not stale:
            return 0

        TemporaryPermission.objects.filter(id__in=stale).update(is_active=False, updated_at=now)
        self.audit.append(
            action='temporary_permissions_expired',
            description=f"{len(stale)} expired temporary grants deactivated",
            context={'grant_ids': [str(pk) for pk in stale]},
        )
        logger.info(f"Deactivated {len(stale)} expired temporary grants")
        return len(stale)

    @transaction.atomic
    def extend_temporary(self, grant: TemporaryPermission, new_expires_at,
                         extended_by: Optional[User] = None) -> TemporaryPermission:
        """
        Push a valid grant's expiry later.

        Raises:
            StateTransitionError: If the grant is revoked or already expired
            ValidationError: If the new expiry is not later or exceeds the allowed window
        """
        grant = TemporaryPermission.objects.select_for_update().get(pk=grant.pk)
        if not grant.is_valid():
            raise StateTransitionError(
                "Only active, unexpired grants can be extended",
                details={'grant_id': str(grant.id)}
            )

        serializer = TemporaryGrantInputSerializer(data={
            'permission': grant.permission.name,
            'expires_at': new_expires_at,
        })
        if not serializer.is_valid():
            raise ValidationError.from_serializer(serializer, 'Invalid expiry')
        new_expires_at = serializer.validated_data['expires_at']
        if new_expires_at <= grant.expires_at:
            raise ValidationError(
                "New expiry must be later than the current one",
                details={'current': grant.expires_at.isoformat(), 'requested': new_expires_at.isoformat()}
            )

        old_expires_at = grant.expires_at
        grant.expires_at = new_expires_at
        grant.save(update_fields=['expires_at', 'updated_at'])

        self.audit.append(
            action='temporary_permission_extended',
            description=f"Temporary '{grant.permission.name}' for {grant.user.name} extended",
            user=extended_by,
            context={
                'grant_id': str(grant.id),
                'old_expires_at': old_expires_at.isoformat(),
                'new_expires_at': new_expires_at.isoformat(),
            },
        )
        return grant

    @staticmethod
    def active_temporary_for(user: User, now=None) -> List[TemporaryPermission]:
        return list(TemporaryPermission.objects.active_for(user, now).select_related('permission'))
