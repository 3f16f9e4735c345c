"""
Registro: bingo models.

- Province / Canton / Neighborhood: location reference rows used by profiles and cohorts.
- BingoTable: inventory unit; pre-seeded undelivered or created delivered from a photo proof.
- Participant: phone/id card registration; unverified rows without names are incomplete.
- Campaign: bulk send job; status pending → running ⇄ paused → completed/cancelled.
- CampaignRecipientLog: one row per (campaign, recipient); pending → sent/error/cancelled.
- SystemLog: persisted audit trail for operator-relevant events and exceptions.
"""

from django.db import models
from django.db.models import Q
from django.utils import timezone


class Province(models.Model):
    name = models.CharField(max_length=128, unique=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class Canton(models.Model):
    province = models.ForeignKey(Province, on_delete=models.CASCADE, related_name='cantons')
    name = models.CharField(max_length=128)

    class Meta:
        ordering = ['name']
        unique_together = [('province', 'name')]

    def __str__(self):
        return self.name


class Neighborhood(models.Model):
    canton = models.ForeignKey(Canton, on_delete=models.CASCADE, related_name='neighborhoods')
    name = models.CharField(max_length=128)

    class Meta:
        ordering = ['name']
        unique_together = [('canton', 'name')]

    def __str__(self):
        return self.name


class BingoTable(models.Model):
    """
    A uniquely coded bundle of bingo cards. Never deleted; released tables go back to the pool.
    """

    code = models.CharField(max_length=32, unique=True)
    file_name = models.CharField(max_length=255, blank=True)
    file_url = models.URLField(max_length=512, blank=True)
    delivered = models.BooleanField(default=False, db_index=True)
    manual_registration = models.BooleanField(default=False)
    ocr_validated = models.BooleanField(default=False)
    ocr_confidence = models.FloatField(null=True, blank=True)
    ocr_keywords = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['id']
        verbose_name = 'Bingo Table'
        verbose_name_plural = 'Bingo Tables'

    def __str__(self):
        return self.code


class ParticipantQuerySet(models.QuerySet):
    def verified(self):
        return self.filter(phone_verified=True)

    def incomplete(self):
        """Unverified rows missing a name: zombie candidates."""
        return self.filter(phone_verified=False).filter(
            Q(first_name__isnull=True) | Q(first_name='') | Q(last_name__isnull=True) | Q(last_name='')
        )

    def expired_incomplete(self, now=None):
        now = now or timezone.now()
        return self.incomplete().filter(Q(otp_expires_at__lt=now) | Q(otp_expires_at__isnull=True))


class Participant(models.Model):
    """
    Registered (or registering) user. Phone and id card are unique among verified rows only;
    unverified duplicates may exist transiently while an OTP is pending.
    """

    phone = models.CharField(max_length=20, db_index=True)
    id_card = models.CharField(max_length=20, db_index=True)
    first_name = models.CharField(max_length=128, null=True, blank=True)
    last_name = models.CharField(max_length=128, null=True, blank=True)

    phone_verified = models.BooleanField(default=False, db_index=True)
    otp_code = models.CharField(max_length=64, null=True, blank=True)  # sha256 hex, never plain
    otp_expires_at = models.DateTimeField(null=True, blank=True)

    assigned_table = models.OneToOneField(
        BingoTable,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='holder',
    )

    province = models.ForeignKey(Province, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    canton = models.ForeignKey(Canton, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    neighborhood = models.ForeignKey(
        Neighborhood, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    address_detail = models.TextField(blank=True)
    latitude = models.DecimalField(max_digits=10, decimal_places=7, null=True, blank=True)
    longitude = models.DecimalField(max_digits=10, decimal_places=7, null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ParticipantQuerySet.as_manager()

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['phone', 'phone_verified'], name='bingo_part_phone_verif_idx'),
            models.Index(fields=['id_card', 'phone_verified'], name='bingo_part_idcard_verif_idx'),
        ]
        verbose_name = 'Participant'
        verbose_name_plural = 'Participants'

    def __str__(self):
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.phone

    @property
    def is_incomplete(self) -> bool:
        return not self.phone_verified and not (self.first_name and self.last_name)

    def otp_is_active(self, now=None) -> bool:
        now = now or timezone.now()
        return bool(self.otp_expires_at and now <= self.otp_expires_at)


class Campaign(models.Model):
    """Bulk outbound message job."""

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        RUNNING = 'running', 'Running'
        PAUSED = 'paused', 'Paused'
        COMPLETED = 'completed', 'Completed'
        CANCELLED = 'cancelled', 'Cancelled'

    TERMINAL_STATUSES = (Status.COMPLETED, Status.CANCELLED)

    name = models.CharField(max_length=255)
    message_template = models.TextField()
    cohort_filters = models.JSONField(default=dict, blank=True)
    total_recipients = models.PositiveIntegerField(default=0)
    interval_minutes = models.PositiveIntegerField(default=1)
    max_messages_per_hour = models.PositiveIntegerField(default=60)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    image = models.FileField(upload_to='campaigns/', null=True, blank=True)
    created_by = models.CharField(max_length=64, default='admin')
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at', '-id']
        verbose_name = 'Campaign'
        verbose_name_plural = 'Campaigns'

    def __str__(self):
        return f'{self.name} ({self.status})'

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class CampaignRecipientLog(models.Model):
    """Delivery state of one campaign message. Status only moves out of pending, once."""

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        SENT = 'sent', 'Sent'
        ERROR = 'error', 'Error'
        CANCELLED = 'cancelled', 'Cancelled'

    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, related_name='logs')
    user = models.ForeignKey(
        Participant,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='campaign_logs',
    )
    phone = models.CharField(max_length=20)
    first_name = models.CharField(max_length=128, blank=True)
    last_name = models.CharField(max_length=128, blank=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    error_message = models.TextField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['id']
        indexes = [
            models.Index(fields=['campaign', 'status'], name='bingo_log_campaign_status_idx'),
        ]
        verbose_name = 'Campaign Recipient Log'
        verbose_name_plural = 'Campaign Recipient Logs'

    def __str__(self):
        return f'{self.campaign_id} {self.phone} {self.status}'


class SystemLog(models.Model):
    """Operator-facing event and exception log."""

    class Level(models.TextChoices):
        INFO = 'INFO', 'Info'
        WARNING = 'WARNING', 'Warning'
        ERROR = 'ERROR', 'Error'
        CRITICAL = 'CRITICAL', 'Critical'

    class Category(models.TextChoices):
        REGISTRATION = 'REGISTRATION', 'Registration'
        INVENTORY = 'INVENTORY', 'Inventory'
        CAMPAIGN = 'CAMPAIGN', 'Campaign'
        TRANSPORT = 'TRANSPORT', 'Transport'
        CLASSIFIER = 'CLASSIFIER', 'Classifier'
        SYSTEM = 'SYSTEM', 'System'

    level = models.CharField(max_length=16, choices=Level.choices, default=Level.INFO, db_index=True)
    category = models.CharField(max_length=32, choices=Category.choices, db_index=True)
    message = models.CharField(max_length=512)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'System Log'
        verbose_name_plural = 'System Logs'

    def __str__(self):
        return f'[{self.level}] {self.category}: {self.message[:60]}'
