from django.apps import AppConfig
from django.db.backends.signals import connection_created


def _setup_sqlite_pragmas(sender, connection, **kwargs):
    if connection.vendor == 'sqlite':
        cursor = connection.cursor()
        cursor.execute('PRAGMA journal_mode=WAL;')
        cursor.execute('PRAGMA busy_timeout=15000;')


class BingoConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'bingo'
    verbose_name = 'Bingo Amigo Prime'

    def ready(self):
        # Campaign ticker threads and request threads share one SQLite file.
        connection_created.connect(_setup_sqlite_pragmas)
