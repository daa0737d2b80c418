"""
Management command to expire overdue change requests, lapsed temporary
grants and idle sessions.

Expiry is also enforced lazily when a request is approved or applied and
when grants are resolved, so this only keeps stored statuses tidy.
"""
from django.core.management.base import BaseCommand

from apps.rbac.services.audit import create_audit_trail
from apps.rbac.services.change_requests import ChangeRequestWorkflow
from apps.rbac.services.grants import GrantService
from apps.rbac.services.sessions import SessionTracker


class Command(BaseCommand):
    help = 'Mark overdue change requests expired, switch off lapsed temporary grants and end idle sessions'

    def add_arguments(self, parser):
        parser.add_argument(
            '--skip-sessions',
            action='store_true',
            help='Do not end idle sessions'
        )

    def handle(self, *args, **options):
        audit = create_audit_trail()

        expired = ChangeRequestWorkflow(audit=audit).expire_stale()
        self.stdout.write(self.style.SUCCESS(f'✓ Expired {expired} change requests'))

        lapsed = GrantService(audit=audit).deactivate_expired()
        self.stdout.write(self.style.SUCCESS(f'✓ Deactivated {lapsed} temporary grants'))

        if not options['skip_sessions']:
            ended = SessionTracker(audit=audit).end_idle()
            self.stdout.write(self.style.SUCCESS(f'✓ Ended {ended} idle sessions'))
