"""
RBAC input serializers.

Validate the arguments of engine operations before they reach the
services:
- Permission change request submissions
- Temporary grants
- Network rules
- Externally supplied audit entries
- Session starts
"""
from datetime import timedelta

from django.conf import settings
from django.utils import timezone
from rest_framework import serializers

from apps.core.validators import InputValidator
from apps.rbac.models import AuditLog, PermissionIpRestriction


class PermissionNameField(serializers.CharField):
    """CharField that also checks the shape of a permission name."""

    def __init__(self, **kwargs):
        kwargs.setdefault('max_length', 100)
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        if not InputValidator.validate_permission_name(value):
            raise serializers.ValidationError(f"'{value}' is not a valid permission name.")
        return value


class ChangeRequestInputSerializer(serializers.Serializer):
    """Serializer for submitting a permission change request."""

    permissions_to_add = serializers.ListField(
        child=PermissionNameField(),
        required=False,
        default=list,
        help_text="Permission names to grant when the request is applied"
    )
    permissions_to_remove = serializers.ListField(
        child=PermissionNameField(),
        required=False,
        default=list,
        help_text="Permission names to revoke when the request is applied"
    )
    reason = serializers.CharField(
        required=True,
        max_length=1000,
        help_text="Business justification"
    )
    expires_at = serializers.DateTimeField(
        required=False,
        allow_null=True,
        help_text="Approval deadline; defaults to RBAC_CHANGE_REQUEST_TTL_HOURS from now"
    )

    def validate_reason(self, value):
        if not value.strip():
            raise serializers.ValidationError("A reason is required.")
        return value.strip()

    def validate_expires_at(self, value):
        if value is not None and value <= timezone.now():
            raise serializers.ValidationError("Expiry must be in the future.")
        return value

    def validate(self, attrs):
        to_add = attrs.get('permissions_to_add') or []
        to_remove = attrs.get('permissions_to_remove') or []

        if not to_add and not to_remove:
            raise serializers.ValidationError(
                "A change request must add or remove at least one permission."
            )

        overlap = sorted(set(to_add) & set(to_remove))
        if overlap:
            raise serializers.ValidationError({
                'permissions_to_remove': [
                    f"Cannot both add and remove: {', '.join(overlap)}"
                ]
            })

        # Preserve submission order, drop duplicates
        attrs['permissions_to_add'] = list(dict.fromkeys(to_add))
        attrs['permissions_to_remove'] = list(dict.fromkeys(to_remove))
        return attrs


class TemporaryGrantInputSerializer(serializers.Serializer):
    """Serializer for issuing or extending a temporary grant."""

    permission = PermissionNameField(help_text="Permission name")
    expires_at = serializers.DateTimeField(help_text="When the grant stops counting")
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        max_length=1000,
        default=''
    )

    def validate_expires_at(self, value):
        now = timezone.now()
        if value <= now:
            raise serializers.ValidationError("Expiry must be in the future.")

        max_days = getattr(settings, 'RBAC_MAX_TEMPORARY_GRANT_DAYS', 30)
        if value > now + timedelta(days=max_days):
            raise serializers.ValidationError(
                f"Temporary grants cannot exceed {max_days} days."
            )
        return value


class IpRestrictionInputSerializer(serializers.Serializer):
    """Serializer for creating a network allow/deny rule."""

    ip_address = serializers.CharField(
        max_length=64,
        help_text="Address, CIDR block, or '*' wildcard pattern"
    )
    restriction_type = serializers.ChoiceField(choices=PermissionIpRestriction.TYPE_CHOICES)
    description = serializers.CharField(
        required=False,
        allow_blank=True,
        max_length=255,
        default=''
    )

    def validate_ip_address(self, value):
        value = value.strip()
        if not InputValidator.validate_ip_pattern(value):
            raise serializers.ValidationError(f"'{value}' is not a valid address, CIDR block or wildcard.")
        return value


class AuditEntryInputSerializer(serializers.Serializer):
    """Serializer for audit entries appended from outside the services."""

    action = serializers.CharField(max_length=100)
    severity = serializers.ChoiceField(
        choices=AuditLog.SEVERITY_CHOICES,
        default=AuditLog.SEVERITY_INFO
    )
    module = serializers.CharField(max_length=50, default='rbac')
    description = serializers.CharField(required=False, allow_blank=True, default='')
    context = serializers.DictField(required=False, default=dict)

    def validate_action(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Action cannot be blank.")
        return value


class SessionStartSerializer(serializers.Serializer):
    """Serializer for opening a tracked session."""

    ip_address = serializers.CharField(max_length=45)
    user_agent = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_ip_address(self, value):
        value = value.strip()
        if not InputValidator.validate_ip_address(value):
            raise serializers.ValidationError(f"'{value}' is not a valid IP address.")
        return value
