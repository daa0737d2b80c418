"""
Permission session tracking.

A session is active while ``ended_at`` is null. Actions logged inside a
session are append-only rows; a session idle for longer than its role's
``session_timeout_minutes`` is ended on the next touch.
"""
import logging
import secrets
from datetime import timedelta
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import PermissionDeniedError, StateTransitionError, ValidationError
from apps.rbac.models import PermissionSession, PermissionSessionAction, User
from apps.rbac.serializers import SessionStartSerializer
from apps.rbac.services.audit import AuditTrail, create_audit_trail
from apps.rbac.services.grant_resolver import GrantResolver

logger = logging.getLogger(__name__)

# 48 random bytes, 64 url-safe characters
TOKEN_BYTES = 48


def generate_session_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class SessionTracker:
    """Service for starting, ending and recording permission sessions."""

    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or create_audit_trail()

    @transaction.atomic
    def start(self, user: User, ip_address: str, user_agent: str = '') -> PermissionSession:
        """
        Open a session for an active user.

        Raises:
            ValidationError: Inactive user, bad address, or concurrent session limit reached
            PermissionDeniedError: The role requires MFA and the user has none past the grace period
        """
        serializer = SessionStartSerializer(data={'ip_address': ip_address, 'user_agent': user_agent or ''})
        if not serializer.is_valid():
            raise ValidationError.from_serializer(serializer, 'Invalid session start')
        data = serializer.validated_data

        # Lock the user so two starts cannot both slip under the limit
        user = User.objects.select_for_update().get(pk=user.pk)
        if not user.is_active:
            raise ValidationError(
                f"User {user.email} is inactive",
                details={'user_id': str(user.id)}
            )

        mfa = GrantResolver.mfa_compliance(user)
        if not mfa.compliant:
            logger.warning(
                "Session refused: MFA required",
                extra={'user_id': str(user.id), 'reason': mfa.reason}
            )
            raise PermissionDeniedError(
                f"Role '{user.role.slug}' requires multi-factor authentication",
                details={
                    'user_id': str(user.id),
                    'reason': mfa.reason,
                    'grace_period_ends_at': mfa.grace_period_ends_at.isoformat() if mfa.grace_period_ends_at else None,
                }
            )

        limit = user.role.concurrent_session_limit if user.role else 0
        if limit:
            active = PermissionSession.objects.active_for(user).count()
            if active >= limit:
                raise ValidationError(
                    f"Concurrent session limit of {limit} reached",
                    details={'user_id': str(user.id), 'active_sessions': active, 'limit': limit}
                )

        now = timezone.now()
        session = PermissionSession.objects.create(
            user=user,
            session_token=generate_session_token(),
            ip_address=data['ip_address'],
            user_agent=data['user_agent'],
            started_at=now,
            last_activity_at=now,
        )

        self.audit.append(
            action='session_started',
            description=f"Session started for {user.name}",
            module='sessions',
            user=user,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            session=session,
        )
        logger.info(
            "Permission session started",
            extra={'user_id': str(user.id), 'session_id': str(session.id)}
        )
        return session

    @transaction.atomic
    def end(self, session: PermissionSession, reason: str = 'ended', now=None) -> PermissionSession:
        """
        Close a session.

        Raises:
            StateTransitionError: If the session has already ended
        """
        session = PermissionSession.objects.select_for_update().get(pk=session.pk)
        if not session.is_active:
            raise StateTransitionError(
                "Session has already ended",
                details={'session_id': str(session.id)}
            )

        session.ended_at = now or timezone.now()
        session.save(update_fields=['ended_at', 'updated_at'])

        self.audit.append(
            action='session_ended',
            description=f"Session ended for {session.user.name} ({reason})",
            module='sessions',
            user=session.user,
            session=session,
            context={'reason': reason, 'duration_minutes': session.duration_minutes},
        )
        return session

    def log_action(self, session: PermissionSession, action_type: str, action_data=None,
                   description: str = '', now=None) -> PermissionSessionAction:
        """
        Append an action to an active session.

        Raises:
            ValidationError: If the action type is blank
            StateTransitionError: If the session has ended or has been idle too long
        """
        if not action_type or not action_type.strip():
            raise ValidationError("Action type is required")

        now = now or timezone.now()
        if self.is_idle(session, now):
            self.end(session, reason='idle_timeout', now=now)
            session.refresh_from_db()

        with transaction.atomic():
            session = PermissionSession.objects.select_for_update().get(pk=session.pk)
            if not session.is_active:
                raise StateTransitionError(
                    "Cannot log actions on an ended session",
                    details={'session_id': str(session.id)}
                )

            action = PermissionSessionAction.objects.create(
                session=session,
                action_type=action_type.strip(),
                action_data=action_data or {},
                description=description,
                performed_at=now,
            )
            session.last_activity_at = now
            session.save(update_fields=['last_activity_at', 'updated_at'])
        return action

    @staticmethod
    def is_idle(session: PermissionSession, now=None) -> bool:
        """Active, and silent for longer than the role's session timeout."""
        if not session.is_active:
            return False
        role = session.user.role
        timeout = role.session_timeout_minutes if role else 0
        if not timeout:
            return False
        now = now or timezone.now()
        return session.last_activity_at + timedelta(minutes=timeout) < now

    def end_idle(self, now=None) -> int:
        """End every idle session. Returns the number ended."""
        now = now or timezone.now()
        ended = 0
        for session in PermissionSession.objects.active().select_related('user__role'):
            if self.is_idle(session, now):
                self.end(session, reason='idle_timeout', now=now)
                ended += 1

        if ended:
            logger.info(f"Ended {ended} idle sessions")
        return ended

    def end_all_for(self, user: User, reason: str = 'user_deactivated') -> int:
        """End every active session of a user."""
        sessions = list(PermissionSession.objects.active_for(user))
        for session in sessions:
            self.end(session, reason=reason)
        return len(sessions)

    @staticmethod
    def resolve_token(token: str) -> PermissionSession:
        """
        Raises:
            ValidationError: If no session has this token
        """
        session = PermissionSession.objects.by_token(token) if token else None
        if session is None:
            raise ValidationError("Unknown session token")
        return session

    @staticmethod
    def actions_for(session: PermissionSession) -> List[PermissionSessionAction]:
        return list(session.actions.all())
