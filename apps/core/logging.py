"""
Custom logging formatters for structured JSON logging, and security event logging.
"""
import json
import logging
import re
import traceback
from datetime import datetime, timezone as dt_timezone
from django.utils import timezone
import sentry_sdk


class PIIMasker:
    """
    Utility class to mask sensitive PII data in logs.
    """

    # Patterns for sensitive data
    PHONE_PATTERN = re.compile(r'\+?\d{10,15}')
    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b')
    API_KEY_PATTERN = re.compile(r'(api[_-]?key|token|secret|password|auth)["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)', re.IGNORECASE)

    # Sensitive field names that should be masked
    SENSITIVE_FIELDS = {
        'phone', 'phone_number', 'mobile',
        'email', 'email_address', 'user_email',
        'password', 'password_hash',
        'api_key', 'access_token', 'refresh_token',
        'session_token', 'token',
        'secret', 'secret_key',
        'ssn', 'national_id', 'medical_record_number',
    }

    @classmethod
    def mask_phone(cls, text):
        """Mask phone numbers in text."""
        if not isinstance(text, str):
            return text
        return cls.PHONE_PATTERN.sub(lambda m: m.group(0)[:3] + '*' * (len(m.group(0)) - 3), text)

    @classmethod
    def mask_email(cls, text):
        """Mask email addresses in text."""
        if not isinstance(text, str):
            return text

        def mask_email_match(match):
            username, _, domain = match.group(0).partition('@')
            masked_username = username[0] + '*' * (len(username) - 1) if len(username) > 1 else username
            return f"{masked_username}@{domain}"

        return cls.EMAIL_PATTERN.sub(mask_email_match, text)

    @classmethod
    def mask_api_keys(cls, text):
        """Mask API keys, tokens, and secrets in text."""
        if not isinstance(text, str):
            return text
        return cls.API_KEY_PATTERN.sub(r'\1: ********', text)

    @classmethod
    def mask_text(cls, text):
        """Apply all masking patterns to text."""
        if not isinstance(text, str):
            return text
        text = cls.mask_email(text)
        text = cls.mask_api_keys(text)
        text = cls.mask_phone(text)
        return text

    @classmethod
    def mask_dict(cls, data):
        """Recursively mask sensitive data in dictionaries."""
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELDS:
                masked[key] = '********' if value and not isinstance(value, (dict, list)) else value
            elif isinstance(value, dict):
                masked[key] = cls.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    cls.mask_dict(item) if isinstance(item, dict)
                    else cls.mask_text(item) if isinstance(item, str)
                    else item
                    for item in value
                ]
            elif isinstance(value, str):
                masked[key] = cls.mask_text(value)
            else:
                masked[key] = value

        return masked


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.
    Includes request_id, user_id and session_id from extra fields if available.
    Automatically masks sensitive PII data.
    """

    RESERVED_ATTRS = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
        'pathname', 'process', 'processName', 'relativeCreated',
        'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
        'taskName', 'request_id', 'user_id', 'session_id',
    }

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(dt_timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': PIIMasker.mask_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for attr in ('request_id', 'user_id', 'session_id'):
            if hasattr(record, attr):
                log_data[attr] = str(getattr(record, attr))

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': PIIMasker.mask_text(str(record.exc_info[1])),
                'traceback': [PIIMasker.mask_text(line) for line in traceback.format_exception(*record.exc_info)],
            }

        # Any extra fields
        for key, value in record.__dict__.items():
            if key in self.RESERVED_ATTRS or key.startswith('_'):
                continue
            if isinstance(value, dict):
                masked_value = PIIMasker.mask_dict(value)
            elif isinstance(value, str):
                masked_value = PIIMasker.mask_text(value)
            else:
                masked_value = value
            try:
                json.dumps(masked_value)
                log_data[key] = masked_value
            except (TypeError, ValueError):
                log_data[key] = PIIMasker.mask_text(str(value))

        return json.dumps(log_data)


class SecurityLogger:
    """
    Centralized security event logging for the authorization engine.

    Logs security-related events with structured data to the ``security``
    logger and sends critical events to Sentry for alerting.
    """

    # Event types that should alert via Sentry
    CRITICAL_EVENTS = {
        'audit_tamper_attempt',
        'four_eyes_violation',
        'privilege_escalation_attempt',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of security event (e.g., 'authorization_denied')
            level: Log level ('info', 'warning', 'error', 'critical')
            **context: Additional context data (ip_address, user_id, permission, etc.)

        Example:
            >>> SecurityLogger.log_event(
            ...     'authorization_denied',
            ...     user_id='1c9f...',
            ...     permission='delete-patients',
            ...     reason='permission_not_held'
            ... )
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'timestamp': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = PIIMasker.mask_dict(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(
            f"Security event: {event_type}",
            extra=log_data
        )

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            sentry_sdk.capture_message(
                f"Critical security event: {event_type}",
                level='error',
                extras=log_data
            )

    @staticmethod
    def log_authorization_denied(user_id, permission: str, reason: str, ip_address: str = None):
        """
        Log a denied authorization check.

        Args:
            user_id: ID of the user being checked (None if unknown)
            permission: Permission name that was requested
            reason: Internal denial reason ('ip_denied', 'permission_not_held', ...)
            ip_address: Source IP of the request
        """
        SecurityLogger.log_event(
            'authorization_denied',
            level='warning',
            user_id=str(user_id) if user_id else None,
            permission=permission,
            reason=reason,
            ip_address=ip_address
        )

    @staticmethod
    def log_four_eyes_violation(requester_id, approver_id, target_user_id, operation: str):
        """
        Log an attempt by one person to both request and approve an access change.

        Args:
            requester_id: User who submitted the request
            approver_id: User attempting to approve
            target_user_id: User whose access would change
            operation: Operation being attempted (e.g., 'change_request_approval')
        """
        SecurityLogger.log_event(
            'four_eyes_violation',
            level='error',
            requester_id=str(requester_id) if requester_id else None,
            approver_id=str(approver_id) if approver_id else None,
            target_user_id=str(target_user_id) if target_user_id else None,
            operation=operation
        )

    @staticmethod
    def log_privilege_escalation(actor_id, target_role: str, actor_priority: int, target_priority: int):
        """
        Log an attempt to assign a role ranked above the assigner's own role.
        """
        SecurityLogger.log_event(
            'privilege_escalation_attempt',
            level='error',
            actor_id=str(actor_id) if actor_id else None,
            target_role=target_role,
            actor_priority=actor_priority,
            target_priority=target_priority
        )

    @staticmethod
    def log_audit_tamper_attempt(entry_id, operation: str, environment: str):
        """
        Log a rejected attempt to update or delete an audit row.

        Args:
            entry_id: ID of the audit row
            operation: 'update' or 'delete'
            environment: Deployment environment the attempt happened in
        """
        SecurityLogger.log_event(
            'audit_tamper_attempt',
            level='critical',
            entry_id=str(entry_id),
            operation=operation,
            environment=environment
        )

    @staticmethod
    def log_hierarchy_violation(role: str, parent: str, reason: str):
        """Log a rejected role re-parenting."""
        SecurityLogger.log_event(
            'hierarchy_violation',
            level='warning',
            role=role,
            parent=parent,
            reason=reason
        )
