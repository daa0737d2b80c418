"""
Log sanitization to prevent sensitive data leakage.

Redacts from log output and stored audit context:
- Session and bearer tokens
- Passwords and secrets
- Database URLs with credentials
- Phone numbers
"""
import re
import logging


class SanitizingFormatter(logging.Formatter):
    """
    Log formatter that redacts sensitive data from the formatted message.
    """

    PATTERNS = [
        # Bearer tokens
        (re.compile(r'Bearer\s+([a-zA-Z0-9_\-\.]{20,})', re.IGNORECASE), r'Bearer [REDACTED]'),

        # JWT tokens (header.payload.signature format)
        (re.compile(r'eyJ[a-zA-Z0-9_\-]+\.eyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+'), r'[REDACTED_JWT]'),

        # Permission session tokens
        (re.compile(r'session[_-]?token["\s:=]+([a-zA-Z0-9_\-]{20,})', re.IGNORECASE), r'session_token=[REDACTED]'),

        # Passwords
        (re.compile(r'password["\s:=]+([^\s,\]}"\']+)', re.IGNORECASE), r'password=[REDACTED]'),

        # Secrets
        (re.compile(r'secret["\s:=]+([a-zA-Z0-9_\-]{20,})', re.IGNORECASE), r'secret=[REDACTED]'),

        # Database URLs with passwords
        (re.compile(r'://([^:/]+):([^@]+)@'), r'://\1:[REDACTED]@'),

        # Phone numbers (E.164 format)
        (re.compile(r'\+\d{1,3}\d{6,14}'), r'[REDACTED_PHONE]'),

        # Generic tokens
        (re.compile(r'token["\s:=]+([a-zA-Z0-9_\-\.]{32,})', re.IGNORECASE), r'token=[REDACTED]'),
    ]

    @classmethod
    def sanitize(cls, text):
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def format(self, record):
        return self.sanitize(super().format(record))


class SanitizingFilter(logging.Filter):
    """
    Logging filter that sanitizes the message and string args of a record
    before any formatter sees them.
    """

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = SanitizingFormatter.sanitize(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                SanitizingFormatter.sanitize(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True


REDACT_FIELDS = {
    'password', 'secret', 'token', 'session_token', 'access_token',
    'refresh_token', 'api_key', 'private_key',
}

MASK_FIELDS = {
    'phone', 'phone_number', 'email', 'email_address',
}


def sanitize_dict_for_logging(data: dict) -> dict:
    """
    Sanitize a dictionary for logging or persistence in audit context.

    Redacts secrets outright and masks PII fields down to their last 4 chars.

    Examples:
        >>> sanitize_dict_for_logging({'session_token': 'abc', 'ip': '10.0.0.1'})
        {'session_token': '[REDACTED]', 'ip': '10.0.0.1'}
    """
    if not isinstance(data, dict):
        return data

    sanitized = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if any(field in key_lower for field in REDACT_FIELDS):
            sanitized[key] = '[REDACTED]'
        elif key_lower in MASK_FIELDS:
            if isinstance(value, str) and len(value) > 4:
                sanitized[key] = '****' + value[-4:]
            else:
                sanitized[key] = '****'
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict_for_logging(value)
        elif isinstance(value, list):
            sanitized[key] = [
                sanitize_dict_for_logging(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            sanitized[key] = value

    return sanitized
