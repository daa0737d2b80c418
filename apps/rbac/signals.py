"""
RBAC signals.

Ends a user's open permission sessions as soon as the account is
deactivated.
"""
import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from apps.rbac.models import PermissionSession, User

logger = logging.getLogger(__name__)


@receiver(post_save, sender=User)
def end_sessions_on_deactivation(sender, instance, created, **kwargs):
    """End every active session of a user saved with ``is_active=False``."""
    if created or instance.is_active:
        return

    if not PermissionSession.objects.active_for(instance).exists():
        return

    # Import here to avoid circular imports
    from apps.rbac.services.sessions import SessionTracker

    ended = SessionTracker().end_all_for(instance, reason='user_deactivated')
    logger.info(
        f"Ended {ended} sessions for deactivated user",
        extra={'user_id': str(instance.id)}
    )
