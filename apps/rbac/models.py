"""
RBAC models for the hospital authorization engine.

Implements:
- Role (hierarchical roles forming a forest, with capability and session policy)
- Permission (risk-scored catalog entries grouped into segregation groups)
- PermissionDependency (directed "requires" edges between permissions)
- RolePermission (direct grant set of a role)
- User (staff identity with a single assigned role)
- UserPermission (per-user allow overrides)
- TemporaryPermission (time-bound grants)
- PermissionIpRestriction (network origin allow/deny rules)
- PermissionChangeRequest (approvable proposals to alter user overrides)
- PermissionSession / PermissionSessionAction (permission-scoped sessions)
- AuditLog (append-only audit trail)
"""
import logging
from datetime import timedelta
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils import timezone
from apps.core.models import BaseModel, SoftDeleteManager, AppendOnlyModel, AppendOnlyQuerySet

logger = logging.getLogger(__name__)


class RoleManager(SoftDeleteManager):
    """Manager for Role queries."""

    def by_slug(self, slug):
        """Find role by slug."""
        return self.filter(slug=slug).first()

    def system_roles(self):
        """Get undeletable system roles."""
        return self.filter(is_system=True)

    def super_admin(self):
        """Return the single super-admin role, if seeded."""
        return self.filter(is_super_admin=True).first()

    def roots(self):
        """Roles with no parent."""
        return self.filter(parent_role__isnull=True)


class Role(BaseModel):
    """
    Hierarchical role definition.

    Each role has at most one parent. A role's priority must be strictly
    lower than its parent's, so priority strictly increases toward the root.
    """

    name = models.CharField(
        max_length=100,
        help_text="Role name (e.g., 'Pharmacy Admin')"
    )
    slug = models.SlugField(
        max_length=100,
        unique=True,
        help_text="Unique role slug (e.g., 'pharmacy-admin')"
    )
    description = models.TextField(
        blank=True,
        help_text="Role description"
    )
    parent_role = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='child_roles',
        help_text="Supervising role in the hierarchy (null for a root)"
    )
    priority = models.PositiveIntegerField(
        default=0,
        db_index=True,
        help_text="Rank in the hierarchy; must be lower than the parent's priority"
    )
    is_system = models.BooleanField(
        default=False,
        db_index=True,
        help_text="System roles cannot be deleted"
    )
    is_super_admin = models.BooleanField(
        default=False,
        help_text="Super-admin role holds every catalog permission"
    )

    # Capability sets; "*" is a wildcard meaning all
    module_access = models.JSONField(
        default=list,
        blank=True,
        help_text="Modules this role may open (e.g., ['pharmacy', 'laboratory'])"
    )
    data_visibility_scope = models.JSONField(
        default=list,
        blank=True,
        help_text="Data domains visible to this role"
    )
    user_management_capabilities = models.JSONField(
        default=list,
        blank=True,
        help_text="User management actions this role may perform"
    )
    system_configuration_access = models.JSONField(
        default=list,
        blank=True,
        help_text="System configuration areas this role may change"
    )
    reporting_permissions = models.JSONField(
        default=list,
        blank=True,
        help_text="Reports this role may run"
    )
    role_specific_limitations = models.JSONField(
        default=list,
        blank=True,
        help_text="Explicit limitations applied to this role"
    )

    # Session policy
    mfa_required = models.BooleanField(
        default=False,
        help_text="Whether members must use multi-factor authentication"
    )
    mfa_grace_period_days = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Days a new member may operate before MFA is enforced"
    )
    session_timeout_minutes = models.PositiveIntegerField(
        default=120,
        help_text="Idle minutes after which a permission session is ended"
    )
    concurrent_session_limit = models.PositiveIntegerField(
        default=0,
        help_text="Maximum simultaneously active sessions per user (0 = unlimited)"
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        ordering = ['-priority', 'name']
        indexes = [
            models.Index(fields=['parent_role']),
            models.Index(fields=['is_system']),
        ]

    def __str__(self):
        return f"{self.name} ({self.priority})"

    def grants_module(self, module):
        """Check the module_access capability set, honouring the wildcard."""
        if self.is_super_admin:
            return True
        modules = self.module_access or []
        return '*' in modules or module in modules

    def mfa_grace_period_end(self, assigned_at):
        """End of the MFA grace period for a member assigned at ``assigned_at``, or None."""
        if self.mfa_grace_period_days is None or assigned_at is None:
            return None
        return assigned_at + timedelta(days=self.mfa_grace_period_days)


class PermissionManager(SoftDeleteManager):
    """Manager for Permission queries."""

    def by_name(self, name):
        """Find permission by name."""
        return self.filter(name=name).first()

    def by_names(self, names):
        return self.filter(name__in=list(names))


class Permission(BaseModel):
    """
    Catalog permission definition.

    Permissions are seeded during deployment and are referenced by name
    (e.g., 'view-patients') by collaborators calling the engine.
    """

    RISK_LOW = 1
    RISK_MEDIUM = 2
    RISK_HIGH = 3
    RISK_CHOICES = [
        (RISK_LOW, 'Low'),
        (RISK_MEDIUM, 'Medium'),
        (RISK_HIGH, 'High'),
    ]

    HIPAA_CHOICES = [
        ('none', 'None'),
        ('low', 'Low'),
        ('moderate', 'Moderate'),
        ('high', 'High'),
    ]

    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique permission name (e.g., 'view-patients')"
    )
    description = models.TextField(
        blank=True,
        help_text="What this permission grants"
    )
    resource = models.CharField(
        max_length=100,
        help_text="Resource acted upon (e.g., 'patients')"
    )
    action = models.CharField(
        max_length=50,
        help_text="Action performed on the resource (e.g., 'view')"
    )
    category = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="Display category (e.g., 'Patient Management')"
    )
    module = models.CharField(
        max_length=50,
        blank=True,
        db_index=True,
        help_text="Application module (e.g., 'patients')"
    )
    segregation_group = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="Duty-separation bucket"
    )
    risk_level = models.PositiveSmallIntegerField(
        choices=RISK_CHOICES,
        default=RISK_LOW,
        validators=[MinValueValidator(1), MaxValueValidator(3)],
        help_text="Risk score from 1 (low) to 3 (high)"
    )
    requires_approval = models.BooleanField(
        default=False,
        help_text="Grants must go through a change request"
    )
    is_critical = models.BooleanField(
        default=False,
        help_text="Critical permissions cannot be deleted and need approval to grant"
    )
    hipaa_impact = models.CharField(
        max_length=20,
        choices=HIPAA_CHOICES,
        default='none',
        help_text="Exposure of protected health information"
    )

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        ordering = ['category', 'name']
        indexes = [
            models.Index(fields=['resource', 'action']),
            models.Index(fields=['segregation_group']),
        ]

    def __str__(self):
        return self.name

    @property
    def needs_approval(self):
        return self.requires_approval or self.is_critical


class PermissionDependency(BaseModel):
    """Directed edge: ``permission`` requires ``depends_on``."""

    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='dependencies',
        help_text="Permission that has a prerequisite"
    )
    depends_on = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='dependents',
        help_text="Prerequisite permission"
    )

    class Meta:
        db_table = 'permission_dependencies'
        unique_together = [('permission', 'depends_on')]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(permission=models.F('depends_on')),
                name='permission_dependency_no_self_loop',
            ),
        ]

    def __str__(self):
        return f"{self.permission.name} -> {self.depends_on.name}"


class RolePermissionManager(SoftDeleteManager):
    """Manager for RolePermission queries."""

    def for_role(self, role):
        return self.filter(role=role)

    def grant_permission(self, role, permission, granted_by=None):
        """Grant permission to role (idempotent)."""
        role_permission, created = self.get_or_create(
            role=role,
            permission=permission,
            defaults={'granted_by': granted_by}
        )
        return role_permission, created

    def revoke_permission(self, role, permission):
        """Revoke permission from role."""
        return self.filter(role=role, permission=permission).hard_delete()


class RolePermission(BaseModel):
    """Direct grant of a permission to a role (not resolved through the hierarchy)."""

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Role receiving the permission"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Permission granted"
    )
    granted_by = models.ForeignKey(
        'User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='role_grants_made',
        help_text="User who granted the permission to the role"
    )

    objects = RolePermissionManager()

    class Meta:
        db_table = 'role_permissions'
        unique_together = [('role', 'permission')]
        ordering = ['role', 'permission']

    def __str__(self):
        return f"{self.role.slug} - {self.permission.name}"


class UserManager(SoftDeleteManager):
    """Manager for User queries."""

    def active(self):
        """Return only active users."""
        return self.filter(is_active=True)

    def by_email(self, email):
        """Find user by email."""
        return self.filter(email__iexact=email).first()


class User(BaseModel):
    """
    Hospital staff identity as seen by the authorization engine.

    Authentication is handled elsewhere; the engine only needs the assigned
    role and whether the account is active.
    """

    name = models.CharField(
        max_length=255,
        help_text="Full name"
    )
    email = models.EmailField(
        unique=True,
        help_text="Email address"
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='users',
        help_text="Assigned role"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive users are denied every permission"
    )
    mfa_enabled = models.BooleanField(
        default=False,
        help_text="Whether the user has enrolled a second authentication factor"
    )
    role_assigned_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the current role was assigned; starts the MFA grace period"
    )

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['name']

    def __str__(self):
        return self.email

    @property
    def is_super_admin(self):
        return bool(self.role and self.role.is_super_admin)


class UserPermissionManager(SoftDeleteManager):
    """Manager for UserPermission queries."""

    def for_user(self, user):
        return self.filter(user=user)

    def allowed_for(self, user):
        """Allow overrides that add permissions beyond the role."""
        return self.filter(user=user, allowed=True)

    def grant_permission(self, user, permission, reason='', granted_by=None, change_request=None):
        """Grant permission to user (idempotent)."""
        return self.update_or_create(
            user=user,
            permission=permission,
            defaults={
                'allowed': True,
                'reason': reason,
                'granted_by': granted_by,
                'change_request': change_request,
            }
        )

    def remove_permission(self, user, permission):
        """Delete the override row so the user defers to role-derived permissions."""
        deleted, _ = self.filter(user=user, permission=permission).hard_delete()
        return deleted


class UserPermission(BaseModel):
    """
    Per-user permission override.

    A row with ``allowed=True`` adds a permission beyond the user's role.
    Absence defers to the role. There is no per-user deny.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='user_permissions',
        help_text="User this override applies to"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='user_permissions',
        help_text="Permission being granted"
    )
    allowed = models.BooleanField(
        default=True,
        help_text="True adds the permission; other values are ignored by the resolver"
    )
    reason = models.TextField(
        blank=True,
        help_text="Reason for this override"
    )
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='permission_overrides_made',
        help_text="User who created this override"
    )
    change_request = models.ForeignKey(
        'PermissionChangeRequest',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='applied_overrides',
        help_text="Change request that produced this override"
    )

    objects = UserPermissionManager()

    class Meta:
        db_table = 'user_permissions'
        unique_together = [('user', 'permission')]
        ordering = ['user', 'permission']
        indexes = [
            models.Index(fields=['user', 'allowed']),
        ]

    def __str__(self):
        return f"{self.permission.name} to {self.user.email}"


class TemporaryPermissionManager(SoftDeleteManager):
    """Manager for TemporaryPermission queries."""

    def for_user(self, user):
        return self.filter(user=user)

    def active(self, now=None):
        """Grants that are switched on and not yet expired."""
        now = now or timezone.now()
        return self.filter(is_active=True, expires_at__gt=now)

    def active_for(self, user, now=None):
        return self.active(now).filter(user=user)

    def expired(self, now=None):
        now = now or timezone.now()
        return self.filter(is_active=True, expires_at__lte=now)


class TemporaryPermission(BaseModel):
    """
    Time-bound grant of a single permission.

    Valid iff ``is_active`` and ``expires_at`` is in the future. Revocation
    flips ``is_active`` and keeps the row.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='temporary_permissions',
        help_text="User receiving the grant"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='temporary_grants',
        help_text="Permission granted"
    )
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='temporary_grants_made',
        help_text="User who issued the grant"
    )
    granted_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the grant was issued"
    )
    expires_at = models.DateTimeField(
        db_index=True,
        help_text="When the grant stops being valid"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="False once revoked"
    )
    reason = models.TextField(
        blank=True,
        help_text="Reason for the grant"
    )
    revoked_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the grant was revoked"
    )
    revoked_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='temporary_grants_revoked',
        help_text="User who revoked the grant"
    )

    objects = TemporaryPermissionManager()

    class Meta:
        db_table = 'temporary_permissions'
        ordering = ['-granted_at']
        indexes = [
            models.Index(fields=['user', 'is_active', 'expires_at']),
        ]

    def __str__(self):
        return f"{self.permission.name} to {self.user.email} until {self.expires_at:%Y-%m-%d %H:%M}"

    def is_valid(self, now=None):
        now = now or timezone.now()
        return self.is_active and self.expires_at > now


class IpRestrictionManager(SoftDeleteManager):
    """Manager for PermissionIpRestriction queries."""

    def active_rules(self, restriction_type):
        return self.filter(is_active=True, restriction_type=restriction_type)


class PermissionIpRestriction(BaseModel):
    """Network origin rule: exact address, CIDR block, or '*' wildcard pattern."""

    TYPE_ALLOW = 'allow'
    TYPE_DENY = 'deny'
    TYPE_CHOICES = [
        (TYPE_ALLOW, 'Allow'),
        (TYPE_DENY, 'Deny'),
    ]

    ip_address = models.CharField(
        max_length=64,
        help_text="Address, CIDR (10.0.0.0/8) or wildcard (192.168.*.*)"
    )
    restriction_type = models.CharField(
        max_length=10,
        choices=TYPE_CHOICES,
        db_index=True,
        help_text="Whether matching origins are allowed or denied"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive rules are ignored"
    )
    description = models.TextField(
        blank=True,
        help_text="Why this rule exists"
    )
    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='ip_restrictions_created',
        help_text="User who created the rule"
    )

    objects = IpRestrictionManager()

    class Meta:
        db_table = 'permission_ip_restrictions'
        ordering = ['restriction_type', 'ip_address']
        indexes = [
            models.Index(fields=['restriction_type', 'is_active']),
        ]

    def __str__(self):
        return f"{self.restriction_type.upper()} {self.ip_address}"


class ChangeRequestStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'
    EXPIRED = 'expired', 'Expired'


# Every legal status change. Anything absent is rejected.
CHANGE_REQUEST_TRANSITIONS = {
    ChangeRequestStatus.PENDING: frozenset({
        ChangeRequestStatus.APPROVED,
        ChangeRequestStatus.REJECTED,
        ChangeRequestStatus.EXPIRED,
    }),
    ChangeRequestStatus.APPROVED: frozenset(),
    ChangeRequestStatus.REJECTED: frozenset(),
    ChangeRequestStatus.EXPIRED: frozenset(),
}


class ChangeRequestManager(SoftDeleteManager):
    """Manager for PermissionChangeRequest queries."""

    def pending(self):
        return self.filter(status=ChangeRequestStatus.PENDING)

    def pending_for(self, user):
        return self.pending().filter(user=user)

    def overdue(self, now=None):
        """Pending requests whose expiry has passed."""
        now = now or timezone.now()
        return self.pending().filter(expires_at__isnull=False, expires_at__lte=now)


class PermissionChangeRequest(BaseModel):
    """
    Staged proposal to add or remove a user's direct permission overrides.

    Permission ids are stored as strings in JSON lists.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='change_requests',
        help_text="User whose access would change"
    )
    requested_by = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='change_requests_made',
        help_text="User who submitted the request"
    )
    permissions_to_add = models.JSONField(
        default=list,
        blank=True,
        help_text="Permission ids to grant"
    )
    permissions_to_remove = models.JSONField(
        default=list,
        blank=True,
        help_text="Permission ids to remove"
    )
    reason = models.TextField(
        blank=True,
        help_text="Justification for the change"
    )
    status = models.CharField(
        max_length=20,
        choices=ChangeRequestStatus.choices,
        default=ChangeRequestStatus.PENDING,
        db_index=True,
        help_text="Workflow state"
    )
    approved_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='change_requests_decided',
        help_text="User who approved or rejected the request"
    )
    approved_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the request was approved or rejected"
    )
    rejection_reason = models.TextField(
        blank=True,
        help_text="Reason given on rejection"
    )
    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Pending requests past this time can no longer be approved"
    )
    applied_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the changes were last applied"
    )
    dependency_findings = models.JSONField(
        default=list,
        blank=True,
        help_text="Missing dependencies found when the request was submitted"
    )

    objects = ChangeRequestManager()

    class Meta:
        db_table = 'permission_change_requests'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'status']),
            models.Index(fields=['status', 'expires_at']),
        ]

    def __str__(self):
        return f"Change request {self.id} for {self.user.email} ({self.status})"

    def is_valid(self, now=None):
        """Pending and not past its expiry."""
        now = now or timezone.now()
        return self.status == ChangeRequestStatus.PENDING and (
            self.expires_at is None or self.expires_at > now
        )

    def can_transition_to(self, status):
        return status in CHANGE_REQUEST_TRANSITIONS[ChangeRequestStatus(self.status)]


class PermissionSessionManager(SoftDeleteManager):
    """Manager for PermissionSession queries."""

    def active(self):
        return self.filter(ended_at__isnull=True)

    def active_for(self, user):
        return self.active().filter(user=user)

    def by_token(self, token):
        return self.filter(session_token=token).first()


class PermissionSession(BaseModel):
    """A permission-scoped working session; active while ``ended_at`` is null."""

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='permission_sessions',
        help_text="Session owner"
    )
    session_token = models.CharField(
        max_length=128,
        unique=True,
        help_text="Random unguessable session token"
    )
    ip_address = models.GenericIPAddressField(
        null=True,
        blank=True,
        help_text="Client address when the session started"
    )
    user_agent = models.TextField(
        blank=True,
        help_text="Client user agent"
    )
    started_at = models.DateTimeField(
        default=timezone.now,
        help_text="Session start"
    )
    last_activity_at = models.DateTimeField(
        default=timezone.now,
        help_text="Last logged action"
    )
    ended_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Session end (null while active)"
    )

    objects = PermissionSessionManager()

    class Meta:
        db_table = 'permission_sessions'
        ordering = ['-started_at']
        indexes = [
            models.Index(fields=['user', 'ended_at']),
        ]

    def __str__(self):
        return f"Session {self.id} for {self.user.email}"

    @property
    def is_active(self):
        return self.ended_at is None

    @property
    def duration_minutes(self):
        """Whole minutes between start and end; None while the session is open."""
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at) / timedelta(minutes=1))


class PermissionSessionAction(AppendOnlyModel):
    """Append-only record of an action performed inside a session."""

    session = models.ForeignKey(
        PermissionSession,
        on_delete=models.PROTECT,
        related_name='actions',
        help_text="Session the action belongs to"
    )
    action_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action type (e.g., 'patient_viewed')"
    )
    action_data = models.JSONField(
        default=dict,
        blank=True,
        help_text="Structured action payload"
    )
    description = models.TextField(
        blank=True,
        help_text="Human-readable description"
    )
    performed_at = models.DateTimeField(
        default=timezone.now,
        db_index=True,
        help_text="When the action happened"
    )

    class Meta:
        db_table = 'permission_session_actions'
        ordering = ['performed_at']

    def __str__(self):
        return f"{self.action_type} at {self.performed_at:%Y-%m-%d %H:%M:%S}"


class AuditLogManager(models.Manager.from_queryset(AppendOnlyQuerySet)):
    """Manager for AuditLog queries."""

    def for_user(self, user):
        user_id = getattr(user, 'id', user)
        return self.filter(user_id=user_id)

    def by_action(self, action):
        return self.filter(action=action)

    def by_module(self, module):
        return self.filter(module=module)

    def by_severity(self, severity):
        return self.filter(severity=severity)

    def critical(self):
        """Error and critical entries."""
        return self.filter(severity__in=[AuditLog.SEVERITY_ERROR, AuditLog.SEVERITY_CRITICAL])

    def recent(self, days=30):
        """Get audit logs from the last N days."""
        cutoff = timezone.now() - timedelta(days=days)
        return self.filter(logged_at__gte=cutoff)


class AuditLog(AppendOnlyModel):
    """
    Append-only audit trail for security-relevant actions.

    User identity is copied onto the row rather than referenced so that
    removing a user never rewrites audit history.
    """

    SEVERITY_INFO = 'info'
    SEVERITY_WARNING = 'warning'
    SEVERITY_ERROR = 'error'
    SEVERITY_CRITICAL = 'critical'
    SEVERITY_CHOICES = [
        (SEVERITY_INFO, 'Info'),
        (SEVERITY_WARNING, 'Warning'),
        (SEVERITY_ERROR, 'Error'),
        (SEVERITY_CRITICAL, 'Critical'),
    ]

    user_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="User who performed the action (null for system actions)"
    )
    user_name = models.CharField(
        max_length=255,
        blank=True,
        help_text="User name at the time of the action"
    )
    user_role = models.CharField(
        max_length=100,
        blank=True,
        help_text="User role slug at the time of the action"
    )
    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action performed (e.g., 'authorization_granted', 'change_request_approved')"
    )
    description = models.TextField(
        blank=True,
        help_text="Human-readable description"
    )
    module = models.CharField(
        max_length=50,
        blank=True,
        db_index=True,
        help_text="Module the action belongs to (e.g., 'rbac', 'pharmacy')"
    )
    severity = models.CharField(
        max_length=10,
        choices=SEVERITY_CHOICES,
        default=SEVERITY_INFO,
        db_index=True,
        help_text="Severity of the entry"
    )
    logged_at = models.DateTimeField(
        default=timezone.now,
        db_index=True,
        help_text="When the entry was written"
    )
    ip_address = models.GenericIPAddressField(
        null=True,
        blank=True,
        help_text="IP address of the request"
    )
    user_agent = models.TextField(
        blank=True,
        help_text="User agent string"
    )
    request_method = models.CharField(
        max_length=10,
        blank=True,
        help_text="HTTP method, when called from a request"
    )
    request_url = models.TextField(
        blank=True,
        help_text="Request URL, when called from a request"
    )
    session_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Permission session the action happened in"
    )
    error_details = models.JSONField(
        null=True,
        blank=True,
        help_text="Error payload for failed operations"
    )
    context = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional context metadata"
    )

    objects = AuditLogManager()

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-logged_at']
        indexes = [
            models.Index(fields=['user_id', 'logged_at']),
            models.Index(fields=['action', 'logged_at']),
            models.Index(fields=['module', 'severity']),
        ]

    def __str__(self):
        return f"{self.user_name or 'System'} - {self.action}"
