"""
Registro: Management command: run one campaign in the foreground.
Run: python manage.py run_campaign <campaign_id>

Starts a pending campaign (or resumes a paused one) and blocks until it is completed
or cancelled, printing progress after every batch. Ctrl+C pauses the campaign.
"""

import threading

from django.core.management import CommandError
from django.core.management.base import BaseCommand

from bingo.exceptions import BingoError
from bingo.models import Campaign
from bingo.services import events as ev
from bingo.services.campaigns import CampaignEngine, CampaignRuntime
from bingo.services.scheduling import ThreadScheduler
from bingo.services.transport import get_transport

POLL_SECONDS = 5


class Command(BaseCommand):
    help = 'Start or resume a campaign and wait until it finishes.'

    def add_arguments(self, parser):
        parser.add_argument('campaign_id', type=int)

    def handle(self, *args, **options):
        campaign_id = options['campaign_id']
        events = ev.EventBus()
        engine = CampaignEngine(CampaignRuntime(ThreadScheduler()), get_transport(), events)
        finished = threading.Event()

        def on_event(name, payload):
            if payload.get('campaign_id') != campaign_id:
                return
            if name == ev.CAMPAIGN_PROGRESS:
                self.stdout.write(
                    f"  {payload['processed']}/{payload['total']} "
                    f"(ok={payload['success']} errors={payload['errors']})"
                )
            else:
                finished.set()

        subscription = events.subscribe(on_event, [ev.CAMPAIGN_PROGRESS, ev.CAMPAIGN_COMPLETED, ev.CAMPAIGN_CANCELLED])
        try:
            engine.recover_orphaned()
            status = Campaign.objects.filter(pk=campaign_id).values_list('status', flat=True).first()
            if status is None:
                raise CommandError(f'Campaign {campaign_id} not found')
            self.stdout.write(f'Campaign {campaign_id}: {status}')
            try:
                if status == Campaign.Status.PAUSED:
                    engine.resume(campaign_id)
                else:
                    engine.start(campaign_id)
            except BingoError as e:
                raise CommandError(f'{e.kind}: {e.detail}')

            try:
                while not finished.wait(POLL_SECONDS):
                    status = Campaign.objects.filter(pk=campaign_id).values_list('status', flat=True).first()
                    if status in Campaign.TERMINAL_STATUSES or status is None:
                        break
            except KeyboardInterrupt:
                engine.pause(campaign_id)
                self.stdout.write(self.style.WARNING(f'Campaign {campaign_id} paused.'))
                return
        finally:
            subscription.unsubscribe()

        final = engine.get_status(campaign_id)
        counts = final['counts']
        self.stdout.write(self.style.SUCCESS(
            f"Campaign {campaign_id} {final['status']}: sent={counts['sent']} "
            f"errors={counts['error']} cancelled={counts['cancelled']}"
        ))
