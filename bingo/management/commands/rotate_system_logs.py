"""
Registro: prune old SystemLog rows.

  python manage.py rotate_system_logs --days 30
  python manage.py rotate_system_logs --category CAMPAIGN --keep-errors --dry-run

Campaign runs write one row per lifecycle step; run nightly from cron.
"""

from datetime import timedelta

from django.core.management.base import BaseCommand
from django.db.models import Count
from django.utils import timezone

from bingo.models import SystemLog

SEVERE_LEVELS = (SystemLog.Level.ERROR, SystemLog.Level.CRITICAL)


class Command(BaseCommand):
    help = 'Delete SystemLog rows older than --days, optionally for one category only.'

    def add_arguments(self, parser):
        parser.add_argument('--days', type=int, default=30, help='Age threshold in days (minimum 1).')
        parser.add_argument(
            '--category',
            choices=SystemLog.Category.values,
            help='Only prune this category (REGISTRATION, CAMPAIGN, ...).',
        )
        parser.add_argument(
            '--keep-errors',
            action='store_true',
            help='Keep ERROR and CRITICAL rows regardless of age.',
        )
        parser.add_argument('--dry-run', action='store_true', help='Report per category, delete nothing.')

    def handle(self, *args, **options):
        days = max(1, options['days'])
        qs = SystemLog.objects.filter(created_at__lt=timezone.now() - timedelta(days=days))
        if options['category']:
            qs = qs.filter(category=options['category'])
        if options['keep_errors']:
            qs = qs.exclude(level__in=SEVERE_LEVELS)

        per_category = {
            row['category']: row['n']
            for row in qs.values('category').annotate(n=Count('id')).order_by('category')
        }
        total = sum(per_category.values())
        if not total:
            self.stdout.write(f'Nothing to prune (older than {days} days).')
            return

        breakdown = ', '.join(f'{category}={n}' for category, n in per_category.items())
        if options['dry_run']:
            self.stdout.write(self.style.WARNING(f'Would prune {total} row(s): {breakdown}'))
            return

        deleted, _ = qs.delete()
        self.stdout.write(self.style.SUCCESS(f'Pruned {deleted} row(s) older than {days} days: {breakdown}'))
