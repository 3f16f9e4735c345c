"""
Registro: Management command: delete expired incomplete registrations.
Run: python manage.py purge_incomplete_registrations [--dry-run]

Schedule via cron:
  */30 * * * * cd /path/to/project && python manage.py purge_incomplete_registrations
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from bingo.models import Participant
from bingo.services.registration import purge_incomplete_registrations


class Command(BaseCommand):
    help = 'Delete unverified registrations whose OTP expired before the profile was completed.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Only report what would be deleted, do not delete',
        )

    def handle(self, *args, **options):
        now = timezone.now()
        if options['dry_run']:
            count = Participant.objects.expired_incomplete(now).count()
            self.stdout.write(self.style.WARNING(f'Would delete {count} incomplete registration(s).'))
            return

        count = purge_incomplete_registrations(now)
        if count == 0:
            self.stdout.write('No expired incomplete registrations.')
            return
        self.stdout.write(self.style.SUCCESS(f'Deleted {count} incomplete registration(s).'))
