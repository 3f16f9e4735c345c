"""
Registro: Management command: pre-seed the bingo table pool.
Run: python manage.py seed_bingo_tables --start 1 --end 30000 --block-size 10 --base-url https://files.example.com/tablas

Existing codes are skipped, so re-running with the same range is safe.
"""

from django.conf import settings
from django.core.management import CommandError
from django.core.management.base import BaseCommand

from bingo.services.inventory import seed_tables, table_stats


class Command(BaseCommand):
    help = 'Create undelivered bingo tables for a card range, one table per block of cards.'

    def add_arguments(self, parser):
        parser.add_argument('--start', type=int, required=True, help='First card number (>= 1)')
        parser.add_argument('--end', type=int, required=True, help='Last card number (inclusive)')
        parser.add_argument(
            '--block-size',
            type=int,
            default=10,
            help='Cards per table (default: 10)',
        )
        parser.add_argument(
            '--base-url',
            type=str,
            default='',
            help='Base URL where BINGO_AMIGO_TABLA_<code>.pdf files are served '
                 '(default: BINGO_TABLE_FILE_BASE_URL setting)',
        )

    def handle(self, *args, **options):
        base_url = options['base_url'] or getattr(settings, 'BINGO_TABLE_FILE_BASE_URL', '')
        if not base_url:
            raise CommandError('Provide --base-url or set BINGO_TABLE_FILE_BASE_URL')
        try:
            created = seed_tables(options['start'], options['end'], options['block_size'], base_url)
        except ValueError as e:
            raise CommandError(str(e))

        stats = table_stats()
        self.stdout.write(self.style.SUCCESS(f'Created {created} table(s).'))
        self.stdout.write(
            f"Pool: total={stats['total']} delivered={stats['delivered']} pending={stats['pending']}"
        )
