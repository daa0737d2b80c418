"""
Permission change request workflow.

Requests move through a single transition table
(``CHANGE_REQUEST_TRANSITIONS``): pending may become approved, rejected
or expired, and every other state is terminal. Approval never touches
grants; ``apply`` is the separate, atomic step that writes the user's
allow overrides.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional, Set

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import (
    MissingDependenciesError, PermissionDeniedError,
    StateTransitionError, ValidationError
)
from apps.core.logging import SecurityLogger
from apps.rbac.models import (
    ChangeRequestStatus, Permission, PermissionChangeRequest, User, UserPermission
)
from apps.rbac.serializers import ChangeRequestInputSerializer
from apps.rbac.services.audit import AuditTrail, create_audit_trail
from apps.rbac.services.grant_resolver import GrantResolver
from apps.rbac.services.permission_catalog import PermissionCatalog

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Outcome of applying an approved change request."""
    request: PermissionChangeRequest
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    effective_permissions: Set[str] = field(default_factory=set)


class ChangeRequestWorkflow:
    """
    Service for submitting, deciding and applying change requests.

    Example:
        >>> workflow = ChangeRequestWorkflow()
        >>> request = workflow.submit(nurse, requested_by=lab_admin,
        ...                           permissions_to_add=['view-laboratory'], reason='Rotation')
        >>> workflow.approve(request, approver=super_admin)
        >>> workflow.apply(request)
    """

    def __init__(self, audit: Optional[AuditTrail] = None,
                 catalog: Optional[PermissionCatalog] = None,
                 resolver: Optional[GrantResolver] = None):
        self.audit = audit or create_audit_trail()
        self.catalog = catalog or PermissionCatalog(audit=self.audit)
        self.resolver = resolver or GrantResolver()

    @staticmethod
    def transition(request: PermissionChangeRequest, new_status: str) -> None:
        """
        Move a request to a new status if the transition table allows it.

        Raises:
            StateTransitionError: For any transition not in the table
        """
        new_status = ChangeRequestStatus(new_status)
        if not request.can_transition_to(new_status):
            raise StateTransitionError(
                f"Cannot move change request from '{request.status}' to '{new_status}'",
                details={
                    'request_id': str(request.id),
                    'from': str(request.status),
                    'to': str(new_status),
                }
            )
        request.status = new_status

    @staticmethod
    def _lock(request: PermissionChangeRequest) -> PermissionChangeRequest:
        return PermissionChangeRequest.objects.select_for_update().get(pk=request.pk)

    @staticmethod
    def _load_permissions(permission_ids: Iterable[str]) -> List[Permission]:
        permission_ids = list(permission_ids)
        permissions = list(Permission.objects.filter(id__in=permission_ids))
        if len(permissions) != len(set(permission_ids)):
            found = {str(p.id) for p in permissions}
            raise ValidationError(
                "Change request references permissions that no longer exist",
                details={'missing': sorted(set(permission_ids) - found)}
            )
        return sorted(permissions, key=lambda p: p.name)

    def submit(self, user: User, requested_by: User, permissions_to_add: Iterable[str] = (),
               permissions_to_remove: Iterable[str] = (), reason: str = '',
               expires_at=None) -> PermissionChangeRequest:
        """
        Submit a pending request.

        Missing dependencies in the projected set are stored on the request
        as findings; they do not block submission.

        Raises:
            ValidationError: Malformed input or unknown permission names
        """
        serializer = ChangeRequestInputSerializer(data={
            'permissions_to_add': list(permissions_to_add),
            'permissions_to_remove': list(permissions_to_remove),
            'reason': reason,
            'expires_at': expires_at,
        })
        if not serializer.is_valid():
            raise ValidationError.from_serializer(serializer, 'Invalid change request')
        data = serializer.validated_data

        to_add = self.catalog.resolve_names(data['permissions_to_add'])
        to_remove = self.catalog.resolve_names(data['permissions_to_remove'])

        expires_at = data.get('expires_at')
        if expires_at is None:
            ttl_hours = getattr(settings, 'RBAC_CHANGE_REQUEST_TTL_HOURS', 72)
            if ttl_hours:
                expires_at = timezone.now() + timedelta(hours=ttl_hours)

        current = self.resolver.effective_permission_ids(user)
        projected = self.resolver.projected_permission_ids(
            user,
            add_ids=[p.id for p in to_add],
            remove_ids=[p.id for p in to_remove],
        )
        existing = set(self.catalog.validate_ids(current))
        findings = [
            {'permission': e.permission, 'depends_on': e.depends_on}
            for e in self.catalog.validate_ids(projected)
            if e not in existing
        ]

        with transaction.atomic():
            request = PermissionChangeRequest.objects.create(
                user=user,
                requested_by=requested_by,
                permissions_to_add=[str(p.id) for p in to_add],
                permissions_to_remove=[str(p.id) for p in to_remove],
                reason=data['reason'],
                expires_at=expires_at,
                dependency_findings=findings,
            )

            self.audit.append(
                action='change_request_submitted',
                description=f"Change request for {user.name} submitted by {requested_by.name}",
                severity='warning' if findings else 'info',
                user=requested_by,
                context={
                    'request_id': str(request.id),
                    'target_user_id': str(user.id),
                    'add': [p.name for p in to_add],
                    'remove': [p.name for p in to_remove],
                    'dependency_findings': findings,
                },
            )

        logger.info(
            "Permission change request submitted",
            extra={'request_id': str(request.id), 'user_id': str(user.id), 'findings': len(findings)}
        )
        return request

    def approve(self, request: PermissionChangeRequest, approver: User, apply: bool = False,
                now=None) -> PermissionChangeRequest:
        """
        Approve a pending request. Grants are untouched unless ``apply`` is set.

        Raises:
            PermissionDeniedError: If the approver is the requester or the target user
            StateTransitionError: If the request is not pending, or has expired
        """
        now = now or timezone.now()
        self._check_four_eyes(request, approver)

        expired = False
        with transaction.atomic():
            request = self._lock(request)
            if request.status == ChangeRequestStatus.PENDING and not request.is_valid(now):
                self.transition(request, ChangeRequestStatus.EXPIRED)
                request.save(update_fields=['status', 'updated_at'])
                self._audit_expired(request)
                expired = True
            else:
                self.transition(request, ChangeRequestStatus.APPROVED)
                request.approved_by = approver
                request.approved_at = now
                request.save(update_fields=['status', 'approved_by', 'approved_at', 'updated_at'])

                self.audit.append(
                    action='change_request_approved',
                    description=f"Change request for {request.user.name} approved by {approver.name}",
                    user=approver,
                    context={'request_id': str(request.id), 'target_user_id': str(request.user_id)},
                )

        if expired:
            raise StateTransitionError(
                "Change request has expired and can no longer be approved",
                details={'request_id': str(request.id)}
            )

        if apply:
            self.apply(request, now=now)
        return request

    def reject(self, request: PermissionChangeRequest, approver: User, reason: str = '',
               now=None) -> PermissionChangeRequest:
        """
        Reject a pending request.

        Raises:
            StateTransitionError: If the request is not pending
        """
        with transaction.atomic():
            request = self._lock(request)
            self.transition(request, ChangeRequestStatus.REJECTED)
            request.approved_by = approver
            request.approved_at = now or timezone.now()
            request.rejection_reason = reason or ''
            request.save(update_fields=[
                'status', 'approved_by', 'approved_at', 'rejection_reason', 'updated_at'
            ])

            self.audit.append(
                action='change_request_rejected',
                description=f"Change request for {request.user.name} rejected by {approver.name}",
                user=approver,
                context={'request_id': str(request.id), 'reason': request.rejection_reason},
            )
        return request

    def mark_expired(self, request: PermissionChangeRequest) -> PermissionChangeRequest:
        """
        Raises:
            StateTransitionError: If the request is not pending
        """
        with transaction.atomic():
            request = self._lock(request)
            self.transition(request, ChangeRequestStatus.EXPIRED)
            request.save(update_fields=['status', 'updated_at'])
            self._audit_expired(request)
        return request

    def expire_stale(self, now=None) -> int:
        """Mark every overdue pending request expired. Returns the count."""
        expired = 0
        for request in PermissionChangeRequest.objects.overdue(now):
            try:
                self.mark_expired(request)
            except StateTransitionError:
                # Decided concurrently
                continue
            expired += 1

        if expired:
            logger.info(f"Expired {expired} stale change requests")
        return expired

    def apply(self, request: PermissionChangeRequest, now=None) -> ApplyResult:
        """
        Write an approved request's overrides in one transaction.

        Re-applying yields the same effective set.

        Raises:
            StateTransitionError: If the request is not approved
            MissingDependenciesError: If the result leaves a prerequisite unmet
            ValidationError: If the result introduces a segregation conflict
        """
        now = now or timezone.now()
        request.refresh_from_db()

        if request.status == ChangeRequestStatus.PENDING and not request.is_valid(now):
            self.mark_expired(request)
            raise StateTransitionError(
                "Change request has expired and can no longer be applied",
                details={'request_id': str(request.id)}
            )
        if request.status != ChangeRequestStatus.APPROVED:
            raise StateTransitionError(
                f"Only approved change requests can be applied (status '{request.status}')",
                details={'request_id': str(request.id), 'status': str(request.status)}
            )

        try:
            result = self._apply(request, now)
        except (MissingDependenciesError, ValidationError) as e:
            # Outside the rolled-back transaction so the failure is kept
            self.audit.append(
                action='change_request_apply_failed',
                description=f"Change request for {request.user.name} could not be applied",
                severity='error',
                user=request.approved_by,
                error_details={'message': e.message, **e.details},
                context={'request_id': str(request.id)},
            )
            logger.warning(
                f"Change request apply failed: {e.message}",
                extra={'request_id': str(request.id)}
            )
            raise

        self.audit.append(
            action='change_request_applied',
            description=f"Change request for {request.user.name} applied",
            user=request.approved_by,
            context={
                'request_id': str(request.id),
                'added': result.added,
                'removed': result.removed,
            },
        )
        return result

    @transaction.atomic
    def _apply(self, request: PermissionChangeRequest, now) -> ApplyResult:
        request = self._lock(request)
        user = User.objects.select_for_update().get(pk=request.user_id)

        to_add = self._load_permissions(request.permissions_to_add)
        to_remove = self._load_permissions(request.permissions_to_remove)

        before = self.resolver.effective_permission_ids(user, now=now)
        before_errors = set(self.catalog.validate_ids(before))
        before_conflicts = self.catalog.segregation_conflicts(self.catalog.names_for(before))

        for permission in to_add:
            UserPermission.objects.grant_permission(
                user=user,
                permission=permission,
                reason=request.reason,
                granted_by=request.approved_by,
                change_request=request,
            )
        for permission in to_remove:
            UserPermission.objects.remove_permission(user, permission)

        after = self.resolver.effective_permission_ids(user, now=now)
        new_errors = [e for e in self.catalog.validate_ids(after) if e not in before_errors]
        if new_errors:
            raise MissingDependenciesError(new_errors)

        after_names = self.catalog.names_for(after)
        new_conflicts = {
            group: names
            for group, names in self.catalog.segregation_conflicts(after_names).items()
            if group not in before_conflicts
        }
        if new_conflicts:
            raise ValidationError(
                "Change would break segregation of duties",
                details={'conflicts': new_conflicts}
            )

        request.applied_at = now
        request.save(update_fields=['applied_at', 'updated_at'])

        return ApplyResult(
            request=request,
            added=[p.name for p in to_add],
            removed=[p.name for p in to_remove],
            effective_permissions=after_names,
        )

    def _check_four_eyes(self, request: PermissionChangeRequest, approver: User) -> None:
        if not approver.is_active:
            raise PermissionDeniedError(
                "Inactive users cannot approve change requests",
                details={'approver_id': str(approver.id)}
            )
        if approver.id not in (request.requested_by_id, request.user_id):
            return

        SecurityLogger.log_four_eyes_violation(
            requester_id=request.requested_by_id,
            approver_id=approver.id,
            target_user_id=request.user_id,
            operation='change_request_approval',
        )
        self.audit.append(
            action='four_eyes_violation',
            description=f"{approver.name} attempted to approve their own change request",
            severity='critical',
            user=approver,
            context={'request_id': str(request.id)},
        )
        raise PermissionDeniedError(
            "Approver must differ from both the requester and the target user",
            details={'request_id': str(request.id), 'approver_id': str(approver.id)}
        )

    def _audit_expired(self, request: PermissionChangeRequest) -> None:
        self.audit.append(
            action='change_request_expired',
            description=f"Change request for {request.user.name} expired",
            context={'request_id': str(request.id)},
        )

    @staticmethod
    def pending_for(user: User) -> List[PermissionChangeRequest]:
        return list(PermissionChangeRequest.objects.pending_for(user))

    def reconstruct(self, request: PermissionChangeRequest) -> dict:
        """Names the request would add and remove, whatever its status."""
        return {
            'status': str(request.status),
            'add': sorted(self.catalog.names_for(request.permissions_to_add)),
            'remove': sorted(self.catalog.names_for(request.permissions_to_remove)),
        }


def create_change_request_workflow(audit: Optional[AuditTrail] = None) -> ChangeRequestWorkflow:
    """Factory function to create ChangeRequestWorkflow instance."""
    return ChangeRequestWorkflow(audit=audit)
