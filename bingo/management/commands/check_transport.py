"""
Registro: Management command: test WhatsApp gateway connectivity.
Run: python manage.py check_transport [--send-to PHONE]
"""

from django.core.management import CommandError
from django.core.management.base import BaseCommand

from bingo.exceptions import TransportError
from bingo.services.transport import get_transport, mask_phone


class Command(BaseCommand):
    help = 'Check that the WhatsApp gateway session is ready. Optionally send a test message.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--send-to',
            type=str,
            help='Phone number that receives a test message',
        )

    def handle(self, *args, **options):
        transport = get_transport()
        status = transport.get_status()
        if status.ready:
            self.stdout.write(self.style.SUCCESS('✓ Gateway ready'))
        else:
            self.stdout.write(self.style.ERROR(f'✗ Gateway not ready: {status.diagnostic}'))

        phone = options.get('send_to')
        if not phone:
            return
        if not status.ready:
            raise CommandError('Gateway not ready, test message not sent')
        try:
            transport.send_text(phone, 'Mensaje de prueba de Registro ✅')
        except TransportError as e:
            raise CommandError(f'Send failed: {e.detail} ({e.debug or "no details"})')
        self.stdout.write(self.style.SUCCESS(f'✓ Test message sent to {mask_phone(phone)}'))
