"""
Registro: Tests for management commands.
"""

from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import CommandError, call_command
from django.test import TestCase
from django.utils import timezone

from bingo.models import BingoTable, Campaign, Participant, SystemLog
from bingo.tests.fakes import FakeTransport, make_participant


class SeedTablesCommandTests(TestCase):
    def test_seed(self):
        out = StringIO()
        call_command("seed_bingo_tables", start=1, end=30, block_size=10, base_url="https://f.example.com", stdout=out)
        self.assertEqual(BingoTable.objects.count(), 3)
        self.assertIn("Created 3 table(s)", out.getvalue())
        self.assertIn("pending=3", out.getvalue())

    def test_bad_range(self):
        with self.assertRaises(CommandError):
            call_command("seed_bingo_tables", start=5, end=1, base_url="https://f.example.com", stdout=StringIO())


class PurgeCommandTests(TestCase):
    def setUp(self):
        Participant.objects.create(
            phone="0990000001",
            id_card="0900000001",
            otp_code="x",
            otp_expires_at=timezone.now() - timedelta(minutes=1),
        )
        make_participant("0990000002", "0900000002")

    def test_dry_run(self):
        out = StringIO()
        call_command("purge_incomplete_registrations", dry_run=True, stdout=out)
        self.assertIn("Would delete 1", out.getvalue())
        self.assertEqual(Participant.objects.count(), 2)

    def test_purge(self):
        out = StringIO()
        call_command("purge_incomplete_registrations", stdout=out)
        self.assertIn("Deleted 1", out.getvalue())
        self.assertEqual(Participant.objects.count(), 1)


class RotateSystemLogsCommandTests(TestCase):
    def old_log(self, message, category="SYSTEM", level="INFO", days=40):
        log = SystemLog.objects.create(level=level, category=category, message=message)
        SystemLog.objects.filter(pk=log.pk).update(created_at=timezone.now() - timedelta(days=days))
        return log

    def messages(self):
        return sorted(SystemLog.objects.values_list("message", flat=True))

    def test_prunes_old_entries(self):
        self.old_log("old")
        SystemLog.objects.create(level="INFO", category="SYSTEM", message="new")
        out = StringIO()
        call_command("rotate_system_logs", stdout=out)
        self.assertIn("Pruned 1 row(s)", out.getvalue())
        self.assertIn("SYSTEM=1", out.getvalue())
        self.assertEqual(self.messages(), ["new"])

    def test_category_and_keep_errors(self):
        self.old_log("campaign info", category="CAMPAIGN")
        self.old_log("campaign error", category="CAMPAIGN", level="ERROR")
        self.old_log("registration info", category="REGISTRATION")
        call_command("rotate_system_logs", category="CAMPAIGN", keep_errors=True, stdout=StringIO())
        self.assertEqual(self.messages(), ["campaign error", "registration info"])

    def test_dry_run_reports_breakdown(self):
        self.old_log("a", category="CAMPAIGN")
        self.old_log("b", category="TRANSPORT")
        out = StringIO()
        call_command("rotate_system_logs", dry_run=True, stdout=out)
        self.assertIn("Would prune 2 row(s): CAMPAIGN=1, TRANSPORT=1", out.getvalue())
        self.assertEqual(SystemLog.objects.count(), 2)

    def test_nothing_to_prune(self):
        SystemLog.objects.create(level="INFO", category="SYSTEM", message="new")
        out = StringIO()
        call_command("rotate_system_logs", days=0, stdout=out)
        self.assertIn("Nothing to prune (older than 1 days)", out.getvalue())


class CheckTransportCommandTests(TestCase):
    def test_ready_and_test_message(self):
        transport = FakeTransport()
        out = StringIO()
        with patch("bingo.management.commands.check_transport.get_transport", return_value=transport):
            call_command("check_transport", send_to="0991234567", stdout=out)
        self.assertIn("Gateway ready", out.getvalue())
        self.assertEqual(len(transport.texts), 1)

    def test_not_ready(self):
        with patch("bingo.management.commands.check_transport.get_transport", return_value=FakeTransport(ready=False)):
            with self.assertRaises(CommandError):
                call_command("check_transport", send_to="0991234567", stdout=StringIO())


class RunCampaignCommandTests(TestCase):
    def test_runs_to_completion(self):
        make_participant("0990000001", "0900000001")
        campaign = Campaign.objects.create(name="Promo", message_template="Hola {first_name}", total_recipients=1)
        campaign.logs.create(user=Participant.objects.get(), phone="0990000001", first_name="Ana")
        transport = FakeTransport()
        out = StringIO()
        with patch("bingo.management.commands.run_campaign.get_transport", return_value=transport), \
                patch("bingo.services.campaigns.random.uniform", return_value=0):
            call_command("run_campaign", campaign.pk, stdout=out)
        campaign.refresh_from_db()
        self.assertEqual(campaign.status, Campaign.Status.COMPLETED)
        self.assertIn("sent=1", out.getvalue())
        self.assertEqual(transport.texts, [("0990000001", "Hola Ana")])

    def test_unknown_campaign(self):
        with patch("bingo.management.commands.run_campaign.get_transport", return_value=FakeTransport()):
            with self.assertRaises(CommandError):
                call_command("run_campaign", 999, stdout=StringIO())
