"""
Registro: Tests for the campaign engine lifecycle and batch sender.
"""

import shutil
import tempfile

from django.core.files.base import ContentFile
from django.test import TestCase, override_settings

from bingo.exceptions import (
    CampaignNotFound,
    CampaignStateError,
    EmptyCohort,
    TransportError,
    TransportUnavailable,
    ValidationFailed,
)
from bingo.models import Campaign, CampaignRecipientLog, Neighborhood, Participant
from bingo.services import events as ev
from bingo.services.campaigns import CampaignEngine, CampaignRuntime, batch_size_for
from bingo.tests.fakes import (
    FakeTransport,
    ManualScheduler,
    make_location,
    make_participant,
    make_tables,
    no_sleep,
    png_bytes,
)

Status = Campaign.Status
LogStatus = CampaignRecipientLog.Status


class CampaignTestCase(TestCase):
    def setUp(self):
        self.transport = FakeTransport()
        self.scheduler = ManualScheduler()
        self.bus = ev.EventBus()
        self.events = []
        self.bus.subscribe(lambda name, payload: self.events.append((name, payload)))
        self.engine = self.make_engine()

    def make_engine(self, runtime=None):
        return CampaignEngine(
            runtime or CampaignRuntime(self.scheduler),
            self.transport,
            self.bus,
            sleep=no_sleep,
        )

    def participants(self, n):
        return [make_participant(f"0990000{i:03d}", f"0900000{i:03d}", first_name=f"User{i}") for i in range(n)]

    def log_counts(self, campaign):
        return {
            s: CampaignRecipientLog.objects.filter(campaign=campaign, status=s).count()
            for s in LogStatus.values
        }

    def event_names(self):
        return [name for name, _ in self.events]


class BatchSizeTests(TestCase):
    def test_formula(self):
        self.assertEqual(batch_size_for(180, 1), 3)
        self.assertEqual(batch_size_for(60, 1), 1)
        self.assertEqual(batch_size_for(100, 1), 2)
        self.assertEqual(batch_size_for(1, 1), 1)
        self.assertEqual(batch_size_for(60, 5), 5)


class CreateCampaignTests(CampaignTestCase):
    def test_one_log_per_recipient(self):
        self.participants(5)
        campaign = self.engine.create("Promo", "Hola {first_name}", {})
        self.assertEqual(campaign.status, Status.PENDING)
        self.assertEqual(campaign.total_recipients, 5)
        self.assertEqual(CampaignRecipientLog.objects.filter(campaign=campaign).count(), campaign.total_recipients)
        self.assertEqual(self.log_counts(campaign)[LogStatus.PENDING], 5)

    def test_unverified_users_are_not_recipients(self):
        self.participants(2)
        Participant.objects.create(phone="0980000000", id_card="0980000000", first_name="X", last_name="Y")
        campaign = self.engine.create("Promo", "Hola", {})
        self.assertEqual(campaign.total_recipients, 2)

    def test_explicit_user_ids(self):
        users = self.participants(3)
        campaign = self.engine.create("Promo", "Hola", user_ids=[users[0].pk, users[2].pk])
        self.assertEqual(campaign.total_recipients, 2)
        self.assertEqual(campaign.cohort_filters["predicates"][0]["kind"], "user_ids")

    def test_filter_is_persisted(self):
        (table,) = make_tables(1)
        make_participant("0991000000", "0911000000", table=table)
        self.participants(2)
        campaign = self.engine.create("Con tabla", "Hola", {"has_table": True})
        self.assertEqual(campaign.total_recipients, 1)
        self.assertEqual(campaign.cohort_filters, {"predicates": [{"kind": "has_table", "value": True}]})

    def test_empty_cohort(self):
        with self.assertRaises(EmptyCohort):
            self.engine.create("Promo", "Hola", {})
        self.assertEqual(Campaign.objects.count(), 0)

    def test_validation(self):
        with self.assertRaises(ValidationFailed) as cm:
            self.engine.create("", "", {}, interval_minutes=0)
        self.assertEqual(set(cm.exception.fields), {"name", "message_template", "interval_minutes"})


class RunCampaignTests(CampaignTestCase):
    def test_single_batch_completes_immediately(self):
        self.participants(3)
        campaign = self.engine.create("Promo", "Hola {first_name}", {}, max_messages_per_hour=180)
        self.engine.start(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.COMPLETED)
        self.assertIsNotNone(campaign.completed_at)
        self.assertEqual(self.log_counts(campaign)[LogStatus.SENT], 3)
        self.assertEqual(self.scheduler.repeating, [])
        self.assertEqual(self.event_names(), [ev.CAMPAIGN_PROGRESS, ev.CAMPAIGN_COMPLETED])
        self.assertIsNone(self.engine.runtime.get(campaign.pk))

    def test_messages_are_personalized_per_recipient(self):
        (table,) = make_tables(1)
        make_participant("0991000000", "0911000000", first_name="Rosa", table=table)
        campaign = self.engine.create("Promo", "Hola {first_name}, tabla {table_code}", {})
        self.engine.start(campaign.pk)
        self.assertEqual(self.transport.texts, [("0991000000", "Hola Rosa, tabla 00001_00010")])

    def test_batches_follow_timer(self):
        self.participants(5)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=120)
        snapshot = self.engine.start(campaign.pk)
        self.assertEqual(snapshot["processed"], 2)
        self.assertEqual(len(self.scheduler.live_repeating), 1)
        self.assertEqual(self.scheduler.repeating[0][0], 60)

        self.scheduler.tick()
        self.assertEqual(self.log_counts(campaign)[LogStatus.SENT], 4)
        self.scheduler.tick()
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.COMPLETED)
        self.assertEqual(self.scheduler.live_repeating, [])
        sent_order = [phone for phone, _ in self.transport.texts]
        log_order = list(
            CampaignRecipientLog.objects.filter(campaign=campaign).order_by("id").values_list("phone", flat=True)
        )
        self.assertEqual(sent_order, log_order)

    def test_recipient_failure_does_not_stop_campaign(self):
        users = self.participants(3)
        self.transport.fail_phones.add(users[1].phone)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=180)
        self.engine.start(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.COMPLETED)
        counts = self.log_counts(campaign)
        self.assertEqual((counts[LogStatus.SENT], counts[LogStatus.ERROR]), (2, 1))
        failed = CampaignRecipientLog.objects.get(campaign=campaign, status=LogStatus.ERROR)
        self.assertEqual(failed.phone, users[1].phone)
        self.assertTrue(failed.error_message)
        progress = [p for name, p in self.events if name == ev.CAMPAIGN_PROGRESS][-1]
        self.assertEqual((progress["success"], progress["errors"], progress["total"]), (2, 1, 3))

    def test_jitter_between_messages_only(self):
        self.participants(3)
        delays = []
        engine = CampaignEngine(CampaignRuntime(self.scheduler), self.transport, self.bus, sleep=delays.append)
        campaign = engine.create("Promo", "Hola", {}, max_messages_per_hour=180)
        engine.start(campaign.pk)
        self.assertEqual(len(delays), 2)
        self.assertTrue(all(5 <= d <= 10 for d in delays))

    def test_start_requires_ready_transport(self):
        self.participants(1)
        campaign = self.engine.create("Promo", "Hola", {})
        self.transport.ready = False
        with self.assertRaises(TransportUnavailable):
            self.engine.start(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.PENDING)

    def test_unknown_campaign(self):
        with self.assertRaises(CampaignNotFound):
            self.engine.start(12345)


class PauseResumeTests(CampaignTestCase):
    def test_resume_only_targets_pending_rows(self):
        self.participants(10)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=240)
        self.engine.start(campaign.pk)
        self.engine.pause(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.PAUSED)
        self.assertEqual(self.log_counts(campaign)[LogStatus.SENT], 4)
        self.assertEqual(self.scheduler.live_repeating, [])
        self.assertEqual(self.scheduler.tick(), 0)

        self.engine.resume(campaign.pk)
        self.assertEqual(self.log_counts(campaign)[LogStatus.SENT], 8)
        self.scheduler.tick()
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.COMPLETED)
        self.assertEqual(self.log_counts(campaign)[LogStatus.SENT], 10)
        self.assertEqual(len(self.transport.texts), 10)
        self.assertIn(ev.CAMPAIGN_PAUSED, self.event_names())
        self.assertIn(ev.CAMPAIGN_RESUMED, self.event_names())

    def test_resume_after_restart_reloads_from_logs(self):
        self.participants(6)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=180)
        self.engine.start(campaign.pk)
        self.engine.pause(campaign.pk)

        restarted = self.make_engine(CampaignRuntime(ManualScheduler()))
        snapshot = restarted.resume(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.COMPLETED)
        self.assertEqual(snapshot["processed"], 6)
        self.assertEqual(len(self.transport.texts), 6)

    def test_pause_mid_batch_stops_after_in_flight_send(self):
        self.participants(4)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=240)

        def pause_during_jitter(seconds):
            self.engine.pause(campaign.pk)

        self.engine.sleep = pause_during_jitter
        self.engine.start(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.PAUSED)
        self.assertEqual(self.log_counts(campaign)[LogStatus.SENT], 1)
        self.assertEqual(self.scheduler.repeating, [])

    def test_resume_with_nothing_pending_completes(self):
        self.participants(2)
        campaign = self.engine.create("Promo", "Hola", {})
        Campaign.objects.filter(pk=campaign.pk).update(status=Status.PAUSED)
        CampaignRecipientLog.objects.filter(campaign=campaign).update(status=LogStatus.SENT)
        self.engine.resume(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.COMPLETED)
        self.assertEqual(self.transport.texts, [])

    def test_start_rejects_paused(self):
        self.participants(4)
        campaign = self.engine.create("Promo", "Hola", {})
        self.engine.start(campaign.pk)
        self.engine.pause(campaign.pk)
        with self.assertRaises(CampaignStateError):
            self.engine.start(campaign.pk)
        with self.assertRaises(CampaignStateError):
            self.engine.pause(campaign.pk)

    def test_recover_orphaned(self):
        self.participants(2)
        campaign = self.engine.create("Promo", "Hola", {})
        Campaign.objects.filter(pk=campaign.pk).update(status=Status.RUNNING)
        self.assertEqual(self.engine.recover_orphaned(), 1)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.PAUSED)


class CancelDeleteTests(CampaignTestCase):
    def start_partial(self, n=5):
        self.participants(n)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=60)
        self.engine.start(campaign.pk)
        return campaign

    def test_cancel_marks_remaining_logs(self):
        campaign = self.start_partial()
        self.engine.cancel(campaign.pk)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.CANCELLED)
        counts = self.log_counts(campaign)
        self.assertEqual((counts[LogStatus.SENT], counts[LogStatus.CANCELLED], counts[LogStatus.PENDING]), (1, 4, 0))
        self.assertEqual(self.scheduler.live_repeating, [])
        self.assertIsNone(self.engine.runtime.get(campaign.pk))
        self.assertIn(ev.CAMPAIGN_CANCELLED, self.event_names())

    def cancel_from_transport(self, campaign, fail=False):
        deliver = self.transport.send_text

        def send_then_cancel(phone, body):
            self.engine.cancel(campaign.pk)
            if fail:
                raise TransportError(debug="gateway 500")
            deliver(phone, body)

        self.transport.send_text = send_then_cancel

    def test_cancel_during_send_records_delivered_message(self):
        self.participants(3)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=180)
        self.cancel_from_transport(campaign)
        self.engine.start(campaign.pk)

        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Status.CANCELLED)
        self.assertEqual(len(self.transport.texts), 1)
        counts = self.log_counts(campaign)
        self.assertEqual((counts[LogStatus.SENT], counts[LogStatus.CANCELLED], counts[LogStatus.PENDING]), (1, 2, 0))
        self.assertEqual(self.engine.get_status(campaign.pk)["progress"]["success"], 1)

    def test_cancel_during_failed_send_records_error(self):
        self.participants(3)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=180)
        self.cancel_from_transport(campaign, fail=True)
        self.engine.start(campaign.pk)

        counts = self.log_counts(campaign)
        self.assertEqual((counts[LogStatus.ERROR], counts[LogStatus.CANCELLED]), (1, 2))
        self.assertEqual(self.engine.get_status(campaign.pk)["progress"]["errors"], 1)

    def test_terminal_states_are_final(self):
        campaign = self.start_partial()
        self.engine.cancel(campaign.pk)
        for operation in (self.engine.start, self.engine.pause, self.engine.resume, self.engine.cancel):
            with self.assertRaises(CampaignStateError):
                operation(campaign.pk)

        done = self.engine.create("Otra", "Hola", {}, max_messages_per_hour=600)
        self.engine.start(done.pk)
        for operation in (self.engine.start, self.engine.pause, self.engine.resume):
            with self.assertRaises(CampaignStateError):
                operation(done.pk)

    def test_cancel_pending_campaign_is_rejected(self):
        self.participants(1)
        campaign = self.engine.create("Promo", "Hola", {})
        with self.assertRaises(CampaignStateError):
            self.engine.cancel(campaign.pk)

    def test_delete_running_campaign(self):
        campaign = self.start_partial()
        self.engine.delete(campaign.pk)
        self.assertFalse(Campaign.objects.filter(pk=campaign.pk).exists())
        self.assertEqual(CampaignRecipientLog.objects.count(), 0)
        self.assertEqual(self.scheduler.live_repeating, [])
        self.assertEqual(self.event_names()[-1], ev.CAMPAIGN_DELETED)

    def test_tick_after_delete_is_noop(self):
        campaign = self.start_partial()
        job = self.scheduler.repeating[0][1]
        self.engine.delete(campaign.pk)
        self.assertIsNone(job())


class QueryTests(CampaignTestCase):
    def test_status_and_logs(self):
        users = self.participants(3)
        self.transport.fail_phones.add(users[0].phone)
        campaign = self.engine.create("Promo", "Hola", {}, max_messages_per_hour=180)
        self.engine.start(campaign.pk)

        status = self.engine.get_status(campaign.pk)
        self.assertEqual(status["status"], Status.COMPLETED)
        self.assertEqual(status["counts"][LogStatus.SENT], 2)
        self.assertEqual(status["counts"][LogStatus.ERROR], 1)
        self.assertFalse(status["in_memory"])

        page = self.engine.get_logs(campaign.pk, page=1, page_size=2)
        self.assertEqual(page["total_count"], 3)
        self.assertEqual(len(page["items"]), 2)
        errors = self.engine.get_logs(campaign.pk, status=LogStatus.ERROR)
        self.assertEqual([i["phone"] for i in errors["items"]], [users[0].phone])
        with self.assertRaises(ValidationFailed):
            self.engine.get_logs(campaign.pk, status="bogus")

    def test_list_campaigns(self):
        self.participants(2)
        first = self.engine.create("Uno", "Hola", {}, max_messages_per_hour=120)
        self.engine.create("Dos", "Hola", {})
        self.engine.start(first.pk)
        rows = {row["name"]: row for row in self.engine.list_campaigns()}
        self.assertEqual(rows["Uno"]["sent"], 2)
        self.assertEqual(rows["Dos"]["pending"], 2)
        self.assertEqual([r["name"] for r in self.engine.list_campaigns(status=Status.PENDING)], ["Dos"])

    def test_messaging_stats(self):
        province, canton, centro = make_location()
        norte = Neighborhood.objects.create(name="Barrio Norte", canton=canton)
        users = self.participants(3)
        Participant.objects.filter(pk__in=[users[0].pk, users[1].pk]).update(neighborhood=centro)
        Participant.objects.filter(pk=users[2].pk).update(neighborhood=norte)
        self.transport.fail_phones.add(users[1].phone)

        done = self.engine.create("Uno", "Hola", {}, max_messages_per_hour=180)
        self.engine.start(done.pk)
        self.engine.create("Dos", "Hola", user_ids=[users[2].pk])

        stats = self.engine.messaging_stats()
        self.assertEqual(stats["campaigns"]["total"], 2)
        self.assertEqual(stats["campaigns"][Status.COMPLETED], 1)
        self.assertEqual(stats["campaigns"][Status.PENDING], 1)
        self.assertEqual(stats["campaigns"][Status.RUNNING], 0)
        self.assertEqual(
            stats["messages"],
            {"total": 4, LogStatus.PENDING: 1, LogStatus.SENT: 2, LogStatus.ERROR: 1, LogStatus.CANCELLED: 0},
        )
        self.assertEqual(
            [(row["neighborhood"], row["total"], row["sent"]) for row in stats["top_neighborhoods"]],
            [("Barrio Centro", 2, 1), ("Barrio Norte", 2, 1)],
        )

    def test_messaging_stats_when_empty(self):
        stats = self.engine.messaging_stats()
        self.assertEqual(stats["campaigns"]["total"], 0)
        self.assertEqual(stats["messages"]["total"], 0)
        self.assertEqual(stats["top_neighborhoods"], [])

    def test_preview_cohort(self):
        (table,) = make_tables(1)
        make_participant("0991000000", "0911000000", table=table)
        self.participants(4)
        preview = self.engine.preview_cohort({}, page=2, page_size=2)
        self.assertEqual(preview["total_count"], 5)
        self.assertEqual(preview["page"], 2)
        self.assertEqual(len(preview["items"]), 2)
        self.assertEqual(preview["summary"]["with_table"], 1)
        self.assertEqual(preview["summary"]["without_table"], 4)


class CampaignImageTests(CampaignTestCase):
    def setUp(self):
        super().setUp()
        self.media_root = tempfile.mkdtemp()
        self.override = override_settings(MEDIA_ROOT=self.media_root)
        self.override.enable()

    def tearDown(self):
        self.override.disable()
        shutil.rmtree(self.media_root, ignore_errors=True)
        super().tearDown()

    def test_image_sent_with_sniffed_mime(self):
        self.participants(2)
        image = ContentFile(png_bytes(), name="promo.jpg")
        campaign = self.engine.create("Promo", "Hola {first_name}", {}, max_messages_per_hour=120, image=image)
        self.engine.start(campaign.pk)
        self.assertEqual(self.transport.texts, [])
        self.assertEqual(len(self.transport.media), 2)
        self.assertTrue(all(mime == "image/png" for _, mime, _, _ in self.transport.media))
        self.assertTrue(self.transport.media[0][3].startswith("Hola User"))
