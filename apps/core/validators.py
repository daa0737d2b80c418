"""
Validation utilities for the HMS authorization engine.

Common input validation helpers shared by serializers and services.
"""
import ipaddress
import logging
import re

logger = logging.getLogger(__name__)


class InputValidator:
    """
    Common input validation utilities.

    Provides validation methods for network addresses, rule patterns
    and permission names.
    """

    # Permission names: lowercase words joined by hyphens (e.g., 'view-patients')
    PERMISSION_NAME_PATTERN = re.compile(r'^[a-z0-9]+(?:[-_.:][a-z0-9]+)*$')

    # Wildcard rule: hex digits, dots, colons and at least one '*'
    WILDCARD_PATTERN = re.compile(r'^[0-9A-Fa-f:.*]*\*[0-9A-Fa-f:.*]*$')

    @staticmethod
    def validate_ip_address(value: str) -> bool:
        """
        Validate a single IPv4 or IPv6 address.

        Args:
            value: Address to validate

        Returns:
            bool: True if valid, False otherwise
        """
        if not value:
            return False
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return False
        return True

    @staticmethod
    def validate_ip_pattern(value: str) -> bool:
        """
        Validate a network rule pattern: an address, a CIDR block, or a
        '*' wildcard such as '192.168.*'.

        Args:
            value: Pattern to validate

        Returns:
            bool: True if valid, False otherwise
        """
        if not value:
            return False
        if '*' in value:
            return bool(InputValidator.WILDCARD_PATTERN.match(value))
        if '/' in value:
            try:
                ipaddress.ip_network(value, strict=False)
            except ValueError:
                return False
            return True
        return InputValidator.validate_ip_address(value)

    @staticmethod
    def validate_permission_name(name: str) -> bool:
        """Validate the shape of a permission name."""
        if not name:
            return False
        return bool(InputValidator.PERMISSION_NAME_PATTERN.match(name))
