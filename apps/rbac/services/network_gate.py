"""
Network origin gating, independent of user identity.

Rules are matched by exact string, CIDR containment (IPv4 and IPv6), or a
'*' wildcard pattern. Deny rules always win; with no allow rules at all
every origin that is not denied is allowed.
"""
import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import Optional

from django.db import transaction

from apps.core.exceptions import ValidationError, StateTransitionError
from apps.rbac.models import PermissionIpRestriction
from apps.rbac.serializers import IpRestrictionInputSerializer
from apps.rbac.services.audit import AuditTrail, create_audit_trail

logger = logging.getLogger(__name__)


def ip_matches(ip: str, pattern: str) -> bool:
    """
    Check whether an address matches a single rule pattern.

    Examples:
        >>> ip_matches('10.0.5.10', '10.0.0.0/8')
        True
        >>> ip_matches('192.168.1.20', '192.168.*')
        True
        >>> ip_matches('2001:db8::1', '10.0.0.0/8')
        False
    """
    if not pattern:
        return False

    if ip and ip == pattern:
        return True

    if '/' in pattern:
        try:
            network = ipaddress.ip_network(pattern, strict=False)
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        # ip_network masks the host bits of the pattern; membership masks the address
        return address.version == network.version and address in network

    if '*' in pattern:
        regex = '^' + re.escape(pattern).replace(r'\*', '.*') + '$'
        return re.match(regex, ip) is not None

    return False


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a network gate check."""
    allowed: bool
    reason: str
    matched_rule: Optional[str] = None


class NetworkGate:
    """
    Evaluates client origins against active allow/deny rules.

    Rules are read from the database on every check.
    """

    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or create_audit_trail()

    def evaluate(self, ip_address: Optional[str]) -> GateDecision:
        """
        Evaluate an origin.

        1. Any matching active deny rule denies immediately.
        2. A missing origin is denied while any deny rule is active.
        3. If active allow rules exist, one must match.
        4. With no allow rules the origin is allowed.
        """
        ip_address = (ip_address or '').strip()

        deny_rules = list(
            PermissionIpRestriction.objects.active_rules(PermissionIpRestriction.TYPE_DENY)
        )
        for rule in deny_rules:
            if ip_matches(ip_address, rule.ip_address):
                return GateDecision(False, 'deny_rule_matched', rule.ip_address)

        if not ip_address and deny_rules:
            return GateDecision(False, 'missing_origin')

        allow_rules = list(
            PermissionIpRestriction.objects.active_rules(PermissionIpRestriction.TYPE_ALLOW)
        )
        if not allow_rules:
            return GateDecision(True, 'no_allow_rules')

        for rule in allow_rules:
            if ip_matches(ip_address, rule.ip_address):
                return GateDecision(True, 'allow_rule_matched', rule.ip_address)

        return GateDecision(False, 'no_allow_rule_matched')

    def is_allowed(self, ip_address: Optional[str]) -> bool:
        return self.evaluate(ip_address).allowed

    @transaction.atomic
    def add_rule(self, ip_address: str, restriction_type: str, description: str = '',
                 created_by=None) -> PermissionIpRestriction:
        """
        Create an active allow or deny rule.

        Raises:
            ValidationError: If the pattern or type is malformed
        """
        serializer = IpRestrictionInputSerializer(data={
            'ip_address': ip_address,
            'restriction_type': restriction_type,
            'description': description,
        })
        if not serializer.is_valid():
            raise ValidationError.from_serializer(serializer, 'Invalid IP restriction')

        rule = PermissionIpRestriction.objects.create(
            created_by=created_by,
            **serializer.validated_data
        )

        self.audit.append(
            action='ip_restriction_added',
            description=f"{rule.restriction_type} rule added for {rule.ip_address}",
            severity='warning' if rule.restriction_type == PermissionIpRestriction.TYPE_DENY else 'info',
            user=created_by,
            context={'rule_id': str(rule.id), 'pattern': rule.ip_address, 'type': rule.restriction_type},
        )
        logger.info(
            f"IP restriction added: {rule}",
            extra={'rule_id': str(rule.id)}
        )
        return rule

    @transaction.atomic
    def deactivate_rule(self, rule: PermissionIpRestriction, deactivated_by=None) -> PermissionIpRestriction:
        """Switch a rule off without deleting it."""
        if not rule.is_active:
            raise StateTransitionError(
                f"IP restriction {rule.ip_address} is already inactive",
                details={'rule_id': str(rule.id)}
            )
        rule.is_active = False
        rule.save(update_fields=['is_active', 'updated_at'])

        self.audit.append(
            action='ip_restriction_deactivated',
            description=f"{rule.restriction_type} rule deactivated for {rule.ip_address}",
            user=deactivated_by,
            context={'rule_id': str(rule.id), 'pattern': rule.ip_address},
        )
        return rule
