"""
Role assignment with delegation limits.

An assigner may only hand out roles ranked strictly below their own.
A super-admin may assign any role.
"""
import logging
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import PermissionDeniedError, ValidationError
from apps.core.logging import SecurityLogger
from apps.rbac.models import Role, User
from apps.rbac.services.audit import AuditTrail, create_audit_trail
from apps.rbac.services.grant_resolver import GrantResolver

logger = logging.getLogger(__name__)

MANAGE_ROLES_PERMISSION = 'manage-role-permissions'


class RoleAssignmentService:
    """Service for assigning roles to users."""

    def __init__(self, audit: Optional[AuditTrail] = None, resolver: Optional[GrantResolver] = None):
        self.audit = audit or create_audit_trail()
        self.resolver = resolver or GrantResolver()

    @staticmethod
    def allowed_role_assignments(assigner: User) -> List[Role]:
        """Roles the assigner may hand out."""
        if not assigner.is_active or assigner.role is None:
            return []
        if assigner.is_super_admin:
            return list(Role.objects.order_by('-priority', 'name'))
        return list(
            Role.objects.filter(priority__lt=assigner.role.priority).order_by('-priority', 'name')
        )

    @transaction.atomic
    def assign_role(self, user: User, role: Role, assigned_by: User) -> User:
        """
        Assign ``role`` to ``user``.

        Raises:
            PermissionDeniedError: Missing capability, self-assignment, or a role
                ranked at or above the assigner's own
            ValidationError: If the target user is inactive
        """
        if not assigned_by.is_super_admin:
            if not self.resolver.has_permission(assigned_by, MANAGE_ROLES_PERMISSION):
                raise PermissionDeniedError(
                    f"{assigned_by.name} cannot assign roles",
                    details={'required_permission': MANAGE_ROLES_PERMISSION}
                )

            if assigned_by.id == user.id:
                SecurityLogger.log_privilege_escalation(
                    actor_id=assigned_by.id,
                    target_role=role.slug,
                    actor_priority=assigned_by.role.priority,
                    target_priority=role.priority,
                )
                raise PermissionDeniedError(
                    "Users cannot change their own role",
                    details={'user_id': str(user.id)}
                )

            if role.priority >= assigned_by.role.priority:
                SecurityLogger.log_privilege_escalation(
                    actor_id=assigned_by.id,
                    target_role=role.slug,
                    actor_priority=assigned_by.role.priority,
                    target_priority=role.priority,
                )
                raise PermissionDeniedError(
                    f"Cannot assign role '{role.slug}' ranked at or above your own",
                    details={
                        'role': role.slug,
                        'role_priority': role.priority,
                        'assigner_priority': assigned_by.role.priority,
                    }
                )

        user = User.objects.select_for_update().get(pk=user.pk)
        if not user.is_active:
            raise ValidationError(
                f"Cannot assign a role to inactive user {user.email}",
                details={'user_id': str(user.id)}
            )

        previous = user.role
        user.role = role
        user.role_assigned_at = timezone.now()
        user.save(update_fields=['role', 'role_assigned_at', 'updated_at'])

        self.audit.append(
            action='role_assigned',
            description=f"{user.name} assigned role '{role.name}' by {assigned_by.name}",
            severity='warning' if role.is_system else 'info',
            user=assigned_by,
            context={
                'target_user_id': str(user.id),
                'role': role.slug,
                'previous_role': previous.slug if previous else None,
            },
        )
        logger.info(
            f"Role assigned: {role.slug}",
            extra={'user_id': str(user.id), 'assigned_by': str(assigned_by.id)}
        )
        return user
