"""
Exception hierarchy for the hospital authorization engine.

Every error raised by the engine carries a human-readable message and a
``details`` dict with structured context suitable for logging.
"""
import logging

logger = logging.getLogger(__name__)


class HMSException(Exception):
    """Base exception for HMS-specific errors."""

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(HMSException):
    """Raised when input validation fails (malformed input, unknown permission)."""
    status_code = 400

    @classmethod
    def from_serializer(cls, serializer, message='Invalid input'):
        """Build from a DRF serializer that failed ``is_valid()``."""
        errors = {
            field: [str(error) for error in field_errors]
            for field, field_errors in serializer.errors.items()
        }
        return cls(message, details={'errors': errors})


class DependencyError(HMSException):
    """A single permission whose prerequisite is missing from the set."""
    status_code = 400

    def __init__(self, permission, depends_on):
        self.permission = permission
        self.depends_on = depends_on
        super().__init__(
            f"Permission '{permission}' requires '{depends_on}'",
            details={'permission': permission, 'depends_on': depends_on}
        )

    def __eq__(self, other):
        if not isinstance(other, DependencyError):
            return NotImplemented
        return (self.permission, self.depends_on) == (other.permission, other.depends_on)

    def __hash__(self):
        return hash((self.permission, self.depends_on))

    def __repr__(self):
        return f"DependencyError({self.permission!r}, {self.depends_on!r})"


class MissingDependenciesError(HMSException):
    """Raised when a permission set fails dependency validation."""
    status_code = 400

    def __init__(self, errors, message=None):
        self.errors = list(errors)
        super().__init__(
            message or f"{len(self.errors)} missing permission dependencies",
            details={
                'missing': [
                    {'permission': e.permission, 'depends_on': e.depends_on}
                    for e in self.errors
                ]
            }
        )


class HierarchyIntegrityError(HMSException):
    """Raised when a role change would break the role tree."""
    status_code = 409

    SYSTEM_PARENT = 'system_parent'
    CYCLE = 'cycle'
    PRIORITY = 'priority'
    RESERVED_ROLE = 'reserved_role'

    def __init__(self, message, reason, details=None):
        self.reason = reason
        details = dict(details or {})
        details['reason'] = reason
        super().__init__(message, details)


class StateTransitionError(HMSException):
    """Raised when a workflow object is moved into a state it cannot reach."""
    status_code = 409


class AuditIntegrityError(HMSException):
    """
    Raised on any attempt to mutate or delete an existing audit row.

    Never catch and ignore this in production code paths.
    """
    status_code = 403


class PermissionDeniedError(HMSException):
    """Raised when the acting user lacks a capability required for a mutation."""
    status_code = 403
