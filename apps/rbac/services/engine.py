"""
Authorization engine facade.

The narrow contract the hospital's CRUD surfaces call into. Every
operation accepts ids and names, loads the rows it needs, and delegates
to the component services, which all share one AuditTrail built from the
configured deployment environment.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set

from django.conf import settings

from apps.core.exceptions import ValidationError
from apps.core.logging import SecurityLogger
from apps.rbac.models import (
    AuditLog, PermissionChangeRequest, TemporaryPermission, User
)
from apps.rbac.serializers import AuditEntryInputSerializer
from apps.rbac.services.assignments import RoleAssignmentService
from apps.rbac.services.audit import AuditTrail
from apps.rbac.services.change_requests import ApplyResult, ChangeRequestWorkflow
from apps.rbac.services.grant_resolver import GrantResolver, MfaCompliance
from apps.rbac.services.grants import GrantService
from apps.rbac.services.network_gate import NetworkGate
from apps.rbac.services.permission_catalog import PermissionCatalog
from apps.rbac.services.role_graph import RoleHierarchyService
from apps.rbac.services.sessions import SessionTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationDecision:
    """
    Result of ``AuthorizationEngine.authorize``.

    ``reason`` is one of 'granted', 'ip_denied', 'unknown_user',
    'user_inactive' or 'permission_not_held' and is meant for logs and
    audit. Responses to unauthenticated callers should use
    ``public_reason``, which does not say which check failed.
    """
    allowed: bool
    reason: str

    GRANTED = 'granted'
    IP_DENIED = 'ip_denied'
    UNKNOWN_USER = 'unknown_user'
    USER_INACTIVE = 'user_inactive'
    PERMISSION_NOT_HELD = 'permission_not_held'

    @property
    def public_reason(self) -> str:
        return 'granted' if self.allowed else 'denied'

    def __bool__(self):
        return self.allowed


class AuthorizationEngine:
    """
    Facade over the RBAC services.

    Example:
        >>> engine = AuthorizationEngine(environment='production')
        >>> decision = engine.authorize(user.id, 'view-laboratory', source_ip='10.0.5.10')
        >>> decision.allowed
        True
    """

    def __init__(self, environment: Optional[str] = None, include_inherited: Optional[bool] = None,
                 audit: Optional[AuditTrail] = None):
        self.audit = audit or AuditTrail(environment=environment or settings.DEPLOYMENT_ENVIRONMENT)
        self.catalog = PermissionCatalog(audit=self.audit)
        self.resolver = GrantResolver(include_inherited=include_inherited)
        self.gate = NetworkGate(audit=self.audit)
        self.workflow = ChangeRequestWorkflow(audit=self.audit, catalog=self.catalog, resolver=self.resolver)
        self.grants = GrantService(audit=self.audit, catalog=self.catalog, resolver=self.resolver)
        self.sessions = SessionTracker(audit=self.audit)
        self.roles = RoleHierarchyService(audit=self.audit)
        self.assignments = RoleAssignmentService(audit=self.audit, resolver=self.resolver)

    @staticmethod
    def _parse_id(value) -> Optional[uuid.UUID]:
        """Return the id as a UUID, or None when it is blank or malformed."""
        if not value:
            return None
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value))
        except ValueError:
            return None

    @classmethod
    def _find_user(cls, user_id) -> Optional[User]:
        pk = cls._parse_id(user_id)
        return User.objects.select_related('role').filter(pk=pk).first() if pk else None

    @classmethod
    def _get_user(cls, user_id) -> User:
        """
        Raises:
            ValidationError: If the id is malformed or no user has it
        """
        user = cls._find_user(user_id)
        if user is None:
            raise ValidationError(f"User {user_id} does not exist", details={'user_id': str(user_id)})
        return user

    @classmethod
    def _get_request(cls, request_id) -> PermissionChangeRequest:
        pk = cls._parse_id(request_id)
        request = PermissionChangeRequest.objects.filter(pk=pk).first() if pk else None
        if request is None:
            raise ValidationError(
                f"Change request {request_id} does not exist",
                details={'request_id': str(request_id)}
            )
        return request

    def authorize(self, user_id, permission_name: str, source_ip: Optional[str] = None) -> AuthorizationDecision:
        """
        Decide whether a user may use a permission from an address.

        The network gate runs first, then the grant resolver. Every
        decision is audited.

        Raises:
            ValidationError: If the permission name is unknown
        """
        self.catalog.get(permission_name)

        user = None
        gate = self.gate.evaluate(source_ip)
        if not gate.allowed:
            decision = AuthorizationDecision(False, AuthorizationDecision.IP_DENIED)
        else:
            user = self._find_user(user_id)
            if user is None:
                decision = AuthorizationDecision(False, AuthorizationDecision.UNKNOWN_USER)
            elif not user.is_active:
                decision = AuthorizationDecision(False, AuthorizationDecision.USER_INACTIVE)
            elif self.resolver.has_permission(user, permission_name):
                decision = AuthorizationDecision(True, AuthorizationDecision.GRANTED)
            else:
                decision = AuthorizationDecision(False, AuthorizationDecision.PERMISSION_NOT_HELD)

        context = {'permission': permission_name, 'reason': decision.reason}
        if gate.matched_rule:
            context['matched_rule'] = gate.matched_rule

        self.audit.append(
            action='authorization_granted' if decision.allowed else 'authorization_denied',
            description=f"'{permission_name}' {decision.public_reason} ({decision.reason})",
            module='authorization',
            severity=AuditLog.SEVERITY_INFO if decision.allowed else AuditLog.SEVERITY_WARNING,
            user=user,
            user_id=None if user is not None else self._parse_id(user_id),
            ip_address=source_ip or None,
            context=context,
        )
        if not decision.allowed:
            SecurityLogger.log_authorization_denied(
                user_id=user_id,
                permission=permission_name,
                reason=decision.reason,
                ip_address=source_ip,
            )
        return decision

    def effective_permissions(self, user_id) -> Set[str]:
        """Effective permission names for capability rendering."""
        return self.resolver.authorization_set(self._get_user(user_id))

    def mfa_compliance(self, user_id) -> MfaCompliance:
        """MFA policy status for the user's current role."""
        return self.resolver.mfa_compliance(self._get_user(user_id))

    def submit_change_request(self, user_id, requested_by_id, to_add: Iterable[str] = (),
                              to_remove: Iterable[str] = (), reason: str = '', expires_at=None):
        """Returns the new request's id."""
        request = self.workflow.submit(
            self._get_user(user_id),
            requested_by=self._get_user(requested_by_id),
            permissions_to_add=to_add,
            permissions_to_remove=to_remove,
            reason=reason,
            expires_at=expires_at,
        )
        return request.id

    def approve_request(self, request_id, approver_id, apply: bool = False) -> PermissionChangeRequest:
        return self.workflow.approve(
            self._get_request(request_id), self._get_user(approver_id), apply=apply
        )

    def reject_request(self, request_id, approver_id, reason: str = '') -> PermissionChangeRequest:
        return self.workflow.reject(
            self._get_request(request_id), self._get_user(approver_id), reason=reason
        )

    def apply_request(self, request_id) -> ApplyResult:
        return self.workflow.apply(self._get_request(request_id))

    def grant_temporary(self, user_id, permission_name: str, granted_by_id, expires_at,
                        reason: str = '') -> TemporaryPermission:
        return self.grants.grant_temporary(
            self._get_user(user_id),
            permission_name,
            expires_at,
            granted_by=self._get_user(granted_by_id),
            reason=reason,
        )

    def revoke_temporary(self, grant_id, revoked_by_id=None) -> TemporaryPermission:
        pk = self._parse_id(grant_id)
        grant = TemporaryPermission.objects.filter(pk=pk).first() if pk else None
        if grant is None:
            raise ValidationError(
                f"Temporary grant {grant_id} does not exist",
                details={'grant_id': str(grant_id)}
            )
        revoked_by = self._get_user(revoked_by_id) if revoked_by_id else None
        return self.grants.revoke_temporary(grant, revoked_by=revoked_by)

    def start_session(self, user_id, ip_address: str, user_agent: str = '') -> str:
        """Returns the session token."""
        session = self.sessions.start(self._get_user(user_id), ip_address, user_agent)
        return session.session_token

    def end_session(self, token: str) -> None:
        self.sessions.end(self.sessions.resolve_token(token))

    def log_session_action(self, token: str, action_type: str, action_data: Optional[Dict[str, Any]] = None,
                           description: str = ''):
        return self.sessions.log_action(
            self.sessions.resolve_token(token), action_type, action_data, description
        )

    def append_audit(self, user_id, action: str, severity: str = AuditLog.SEVERITY_INFO,
                     module: str = 'rbac', description: str = '',
                     context: Optional[Dict[str, Any]] = None) -> AuditLog:
        """
        Raises:
            ValidationError: On a blank action or unknown severity
        """
        serializer = AuditEntryInputSerializer(data={
            'action': action,
            'severity': severity,
            'module': module,
            'description': description,
            'context': context or {},
        })
        if not serializer.is_valid():
            raise ValidationError.from_serializer(serializer, 'Invalid audit entry')
        data = serializer.validated_data

        user = None
        if user_id:
            if self._parse_id(user_id) is None:
                raise ValidationError(f"Malformed user id {user_id!r}", details={'user_id': str(user_id)})
            user = self._find_user(user_id)
        return self.audit.append(
            user=user,
            user_id=None if user is not None else self._parse_id(user_id),
            **data
        )


def create_authorization_engine(environment: Optional[str] = None) -> AuthorizationEngine:
    """Factory function to create AuthorizationEngine instance."""
    return AuthorizationEngine(environment=environment)
