"""
Registro: test doubles for the chat transport and the background scheduler.
"""

import io

from PIL import Image

from bingo.exceptions import RecipientNotRegistered, TransportError
from bingo.models import BingoTable, Canton, Neighborhood, Participant, Province
from bingo.services.scheduling import ScheduledHandle, Scheduler
from bingo.services.transport import MessageTransport, TransportStatus


class FakeTransport(MessageTransport):
    """Records every send. Phones in fail_phones raise TransportError."""

    def __init__(self, ready=True):
        self.ready = ready
        self.texts = []
        self.media = []
        self.fail_phones = set()
        self.unregistered_phones = set()
        self.failures_left = 0

    def get_status(self):
        return TransportStatus(ready=self.ready, diagnostic="ready" if self.ready else "qr pending")

    def _check(self, phone):
        if phone in self.unregistered_phones:
            raise RecipientNotRegistered(debug=f"not_registered: {phone}")
        if phone in self.fail_phones:
            raise TransportError(debug="gateway 500")
        if self.failures_left > 0:
            self.failures_left -= 1
            raise TransportError(debug="gateway timeout")

    def send_text(self, phone, body):
        self._check(phone)
        self.texts.append((phone, body))

    def send_media_with_caption(self, phone, media, mime_type, file_name, caption):
        self._check(phone)
        self.media.append((phone, mime_type, file_name, caption))

    def texts_to(self, phone):
        return [body for p, body in self.texts if p == phone]


class ManualScheduler(Scheduler):
    """Jobs run only when the test asks."""

    def __init__(self):
        self.once = []
        self.repeating = []

    def schedule_repeating(self, interval_seconds, fn, name=""):
        handle = ScheduledHandle(name)
        self.repeating.append((interval_seconds, fn, handle))
        return handle

    def schedule_once(self, delay_seconds, fn, name=""):
        handle = ScheduledHandle(name)
        self.once.append((delay_seconds, fn, handle))
        return handle

    def run_once_jobs(self):
        jobs, self.once = self.once, []
        for _, fn, handle in jobs:
            if not handle.cancelled:
                fn()
        return len(jobs)

    def tick(self):
        """Fire every live repeating job once."""
        fired = 0
        for _, fn, handle in list(self.repeating):
            if not handle.cancelled:
                fn()
                fired += 1
        return fired

    @property
    def live_repeating(self):
        return [h for _, _, h in self.repeating if not h.cancelled]


def no_sleep(seconds):
    return None


def png_bytes(size=(40, 20), color="white"):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def make_location():
    province = Province.objects.create(name="Santa Elena")
    canton = Canton.objects.create(name="La Libertad", province=province)
    neighborhood = Neighborhood.objects.create(name="Barrio Centro", canton=canton)
    return province, canton, neighborhood


def make_participant(phone, id_card, first_name="Ana", last_name="Pérez", table=None, **extra):
    return Participant.objects.create(
        phone=phone,
        id_card=id_card,
        first_name=first_name,
        last_name=last_name,
        phone_verified=True,
        assigned_table=table,
        **extra,
    )


def make_tables(count, start=1, block=10):
    tables = []
    for i in range(count):
        first = start + i * block
        code = f"{first:05d}_{first + block - 1:05d}"
        tables.append(BingoTable.objects.create(
            code=code,
            file_name=f"BINGO_AMIGO_TABLA_{code}.pdf",
            file_url=f"https://files.example.com/BINGO_AMIGO_TABLA_{code}.pdf",
        ))
    return tables
