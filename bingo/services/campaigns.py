"""
Registro: bulk WhatsApp campaign engine.

Lifecycle: pending -> running <-> paused -> completed | cancelled.

- create() resolves the cohort and writes one CampaignRecipientLog per recipient.
- start()/resume() send the first batch synchronously, then one batch per
  interval_minutes on a repeating timer until no pending rows remain.
- pause() keeps the in-memory working set; cancel() marks what is left as cancelled.

The database is the source of truth. CampaignRuntime only holds the working set, the
counters and the timer per campaign, so a restarted process rebuilds them from the
pending log rows.
"""

import logging
import math
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from django.core.files.base import File
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from bingo.conf import CAMPAIGN_JITTER_RANGE, DEFAULT_INTERVAL_MINUTES, DEFAULT_MAX_MESSAGES_PER_HOUR
from bingo.exceptions import (
    BingoError,
    CampaignNotFound,
    CampaignStateError,
    EmptyCohort,
    TransportUnavailable,
    ValidationFailed,
)
from bingo.models import Campaign, CampaignRecipientLog, SystemLog
from bingo.services import events as ev
from bingo.services.cohort import CohortFilter, cohort_summary, get_recipient, resolve_cohort
from bingo.services.log_service import log_event
from bingo.services.personalization import personalize
from bingo.services.scheduling import ScheduledHandle, Scheduler, ThreadScheduler
from bingo.services.transport import MessageTransport, get_transport, mask_phone
from bingo.utils.images import sniff_mime

logger = logging.getLogger(__name__)

Status = Campaign.Status
LogStatus = CampaignRecipientLog.Status

DEFAULT_LOG_PAGE_SIZE = 50
DEFAULT_PREVIEW_PAGE_SIZE = 20
TOP_NEIGHBORHOODS = 10
ERROR_MESSAGE_MAX = 1000


def batch_size_for(max_messages_per_hour: int, interval_minutes: int) -> int:
    """Messages per tick: ceil(max/hour * interval / 60), never below 1."""
    return max(1, math.ceil(max_messages_per_hour * interval_minutes / 60))


@dataclass
class CampaignState:
    """In-memory progress of one running or paused campaign."""

    campaign_id: int
    total: int
    pending: deque = field(default_factory=deque)
    processed: int = 0
    success: int = 0
    errors: int = 0
    batch_size: int = 1
    handle: ScheduledHandle | None = None
    in_flight: int | None = None
    interrupt: threading.Event = field(default_factory=threading.Event, repr=False)
    batch_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def snapshot(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "processed": self.processed,
            "total": self.total,
            "success": self.success,
            "errors": self.errors,
            "pending": len(self.pending),
        }

    def stop_timer(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


class CampaignRuntime:
    """Process-wide registry of campaign working sets and timers."""

    def __init__(self, scheduler: Scheduler | None = None):
        self.scheduler = scheduler or ThreadScheduler()
        self._states: dict[int, CampaignState] = {}
        self._lock = threading.Lock()

    def get(self, campaign_id: int) -> CampaignState | None:
        with self._lock:
            return self._states.get(campaign_id)

    def put(self, state: CampaignState) -> None:
        with self._lock:
            previous = self._states.get(state.campaign_id)
            self._states[state.campaign_id] = state
        if previous is not None and previous is not state:
            previous.stop_timer()

    def evict(self, campaign_id: int) -> CampaignState | None:
        with self._lock:
            state = self._states.pop(campaign_id, None)
        if state is not None:
            state.stop_timer()
            state.interrupt.set()
        return state

    def active_ids(self) -> list[int]:
        with self._lock:
            return list(self._states)


class CampaignEngine:
    def __init__(
        self,
        runtime: CampaignRuntime | None = None,
        transport: MessageTransport | None = None,
        events: ev.EventBus | None = None,
        jitter: tuple = CAMPAIGN_JITTER_RANGE,
        sleep: Callable[[float], None] | None = None,
    ):
        self.runtime = runtime or CampaignRuntime()
        self.transport = transport or get_transport()
        self.events = events or ev.EventBus()
        self.jitter = jitter
        # None: wait on the campaign's interrupt event so pause/cancel cut the delay short.
        self.sleep = sleep

    # Creation

    def create(
        self,
        name: str,
        message_template: str,
        cohort: CohortFilter | dict | None = None,
        user_ids=None,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        max_messages_per_hour: int = DEFAULT_MAX_MESSAGES_PER_HOUR,
        image: File | None = None,
        created_by: str = "admin",
    ) -> Campaign:
        """
        Resolve the cohort and persist the campaign with one pending log row per recipient.
        user_ids, when given, takes precedence over the filter.
        """
        name = (name or "").strip()
        message_template = (message_template or "").strip()
        errors = {}
        if not name:
            errors["name"] = "Name is required."
        if not message_template:
            errors["message_template"] = "Message is required."
        try:
            interval_minutes = int(interval_minutes)
            max_messages_per_hour = int(max_messages_per_hour)
        except (TypeError, ValueError):
            errors["rate"] = "Interval and messages per hour must be integers."
        else:
            if interval_minutes < 1:
                errors["interval_minutes"] = "Must be at least 1."
            if max_messages_per_hour < 1:
                errors["max_messages_per_hour"] = "Must be at least 1."
        if errors:
            raise ValidationFailed("Invalid campaign", fields=errors)

        if user_ids:
            cohort_filter = CohortFilter.for_user_ids(user_ids)
        elif isinstance(cohort, CohortFilter):
            cohort_filter = cohort
        else:
            cohort_filter = CohortFilter.from_dict(cohort)

        recipients = resolve_cohort(cohort_filter).items
        if not recipients:
            raise EmptyCohort()

        with transaction.atomic():
            campaign = Campaign(
                name=name,
                message_template=message_template,
                cohort_filters=cohort_filter.to_dict(),
                total_recipients=len(recipients),
                interval_minutes=interval_minutes,
                max_messages_per_hour=max_messages_per_hour,
                created_by=created_by or "admin",
            )
            if image is not None:
                campaign.image.save(getattr(image, "name", None) or "campaign.jpg", image, save=False)
            campaign.save()
            CampaignRecipientLog.objects.bulk_create(
                [
                    CampaignRecipientLog(
                        campaign=campaign,
                        user_id=r.id,
                        phone=r.phone,
                        first_name=r.first_name,
                        last_name=r.last_name,
                    )
                    for r in recipients
                ],
                batch_size=500,
            )
        logger.info("campaign created id=%s recipients=%s", campaign.pk, campaign.total_recipients)
        log_event(
            SystemLog.Level.INFO,
            SystemLog.Category.CAMPAIGN,
            f"Campaign '{campaign.name}' created",
            metadata={"campaign_id": campaign.pk, "recipients": campaign.total_recipients},
        )
        return campaign

    # Lifecycle

    def _get(self, campaign_id) -> Campaign:
        campaign = Campaign.objects.filter(pk=campaign_id).first()
        if campaign is None:
            raise CampaignNotFound(debug=f"campaign_id={campaign_id}")
        return campaign

    def _require(self, campaign: Campaign, *allowed: str) -> None:
        if campaign.status not in allowed:
            raise CampaignStateError(
                f"Campaign is {campaign.status}",
                debug=f"campaign_id={campaign.pk} allowed={','.join(allowed)}",
            )

    def _require_transport(self) -> None:
        status = self.transport.get_status()
        if not status.ready:
            raise TransportUnavailable(debug=status.diagnostic)

    def start(self, campaign_id) -> dict:
        campaign = self._get(campaign_id)
        self._require(campaign, Status.PENDING)
        self._require_transport()
        moved = Campaign.objects.filter(pk=campaign.pk, status=Status.PENDING).update(
            status=Status.RUNNING, started_at=timezone.now()
        )
        if moved != 1:
            raise CampaignStateError("Campaign changed concurrently", debug=f"campaign_id={campaign.pk}")
        campaign.status = Status.RUNNING
        logger.info("campaign started id=%s", campaign.pk)
        return self._launch(campaign, self._load_state(campaign))

    def resume(self, campaign_id) -> dict:
        campaign = self._get(campaign_id)
        self._require(campaign, Status.PAUSED)
        self._require_transport()
        state = self.runtime.get(campaign.pk)
        if state is None:
            logger.info("campaign id=%s has no working set, reloading from logs", campaign.pk)
            state = self._load_state(campaign)
        moved = Campaign.objects.filter(pk=campaign.pk, status=Status.PAUSED).update(status=Status.RUNNING)
        if moved != 1:
            raise CampaignStateError("Campaign changed concurrently", debug=f"campaign_id={campaign.pk}")
        campaign.status = Status.RUNNING
        state.interrupt.clear()
        self.events.publish(ev.CAMPAIGN_RESUMED, state.snapshot())
        logger.info("campaign resumed id=%s pending=%s", campaign.pk, len(state.pending))
        return self._launch(campaign, state)

    def _load_state(self, campaign: Campaign) -> CampaignState:
        """Working set and counters rebuilt from the persisted log rows."""
        logs = CampaignRecipientLog.objects.filter(campaign=campaign)
        counts = logs.aggregate(
            sent=Count("id", filter=Q(status=LogStatus.SENT)),
            error=Count("id", filter=Q(status=LogStatus.ERROR)),
        )
        pending = deque(logs.filter(status=LogStatus.PENDING).order_by("id").values_list("id", flat=True))
        success, errors = counts["sent"] or 0, counts["error"] or 0
        return CampaignState(
            campaign_id=campaign.pk,
            total=campaign.total_recipients,
            pending=pending,
            processed=success + errors,
            success=success,
            errors=errors,
        )

    def _launch(self, campaign: Campaign, state: CampaignState) -> dict:
        state.stop_timer()
        if not state.pending:
            self._complete(campaign.pk, state)
            return state.snapshot()
        state.batch_size = min(
            batch_size_for(campaign.max_messages_per_hour, campaign.interval_minutes),
            len(state.pending),
        )
        self.runtime.put(state)

        self.process_batch(campaign.pk)

        if self.runtime.get(campaign.pk) is state and state.pending and not state.interrupt.is_set():
            state.handle = self.runtime.scheduler.schedule_repeating(
                campaign.interval_minutes * 60,
                lambda: self.process_batch(campaign.pk),
                name=f"campaign-{campaign.pk}",
            )
        return state.snapshot()

    def pause(self, campaign_id) -> dict:
        campaign = self._get(campaign_id)
        self._require(campaign, Status.RUNNING)
        state = self.runtime.get(campaign.pk)
        if state is not None:
            state.stop_timer()
            state.interrupt.set()
        moved = Campaign.objects.filter(pk=campaign.pk, status=Status.RUNNING).update(status=Status.PAUSED)
        if moved != 1:
            raise CampaignStateError("Campaign changed concurrently", debug=f"campaign_id={campaign.pk}")
        snapshot = state.snapshot() if state else self._persisted_snapshot(campaign)
        self.events.publish(ev.CAMPAIGN_PAUSED, snapshot)
        logger.info("campaign paused id=%s processed=%s", campaign.pk, snapshot["processed"])
        return snapshot

    def cancel(self, campaign_id) -> dict:
        campaign = self._get(campaign_id)
        self._require(campaign, Status.RUNNING, Status.PAUSED)
        state = self.runtime.evict(campaign.pk)
        with transaction.atomic():
            remaining = CampaignRecipientLog.objects.filter(campaign=campaign, status=LogStatus.PENDING)
            if state is not None and state.in_flight is not None:
                # The sender records this row's outcome itself.
                remaining = remaining.exclude(pk=state.in_flight)
            cancelled = remaining.update(status=LogStatus.CANCELLED)
            moved = Campaign.objects.filter(
                pk=campaign.pk, status__in=[Status.RUNNING, Status.PAUSED]
            ).update(status=Status.CANCELLED, completed_at=timezone.now())
            if moved != 1:
                raise CampaignStateError("Campaign changed concurrently", debug=f"campaign_id={campaign.pk}")
        campaign.status = Status.CANCELLED
        snapshot = self._persisted_snapshot(campaign)
        self.events.publish(ev.CAMPAIGN_CANCELLED, snapshot)
        logger.info("campaign cancelled id=%s cancelled_logs=%s", campaign.pk, cancelled)
        log_event(
            SystemLog.Level.WARNING,
            SystemLog.Category.CAMPAIGN,
            f"Campaign '{campaign.name}' cancelled",
            metadata={"campaign_id": campaign.pk, "cancelled_logs": cancelled},
        )
        return snapshot

    def delete(self, campaign_id) -> None:
        campaign = self._get(campaign_id)
        if campaign.status == Status.RUNNING:
            self.cancel(campaign.pk)
            campaign.refresh_from_db()
            if campaign.status == Status.RUNNING:
                raise CampaignStateError("Campaign is still running", debug=f"campaign_id={campaign.pk}")
        self.runtime.evict(campaign.pk)
        image_name = campaign.image.name if campaign.image else None
        with transaction.atomic():
            CampaignRecipientLog.objects.filter(campaign=campaign).delete()
            campaign.delete()
        if image_name:
            campaign.image.storage.delete(image_name)
        self.events.publish(ev.CAMPAIGN_DELETED, {"campaign_id": int(campaign_id)})
        logger.info("campaign deleted id=%s", campaign_id)

    def recover_orphaned(self) -> int:
        """Running campaigns with no working set in this process become paused."""
        active = self.runtime.active_ids()
        orphaned = Campaign.objects.filter(status=Status.RUNNING).exclude(pk__in=active)
        ids = list(orphaned.values_list("id", flat=True))
        count = Campaign.objects.filter(pk__in=ids, status=Status.RUNNING).update(status=Status.PAUSED)
        if count:
            logger.warning("recovered %s orphaned running campaign(s) as paused: %s", count, ids)
            log_event(
                SystemLog.Level.WARNING,
                SystemLog.Category.CAMPAIGN,
                f"{count} running campaign(s) paused after restart",
                metadata={"campaign_ids": ids},
            )
        return count

    # Sending

    def _still_running(self, campaign_id: int, state: CampaignState) -> bool:
        if state.interrupt.is_set() or self.runtime.get(campaign_id) is not state:
            return False
        return Campaign.objects.filter(pk=campaign_id, status=Status.RUNNING).exists()

    def _pause_between_messages(self, state: CampaignState) -> None:
        delay = random.uniform(*self.jitter)
        if self.sleep is not None:
            self.sleep(delay)
        else:
            state.interrupt.wait(delay)

    def _read_image(self, campaign: Campaign) -> tuple[bytes, str, str] | None:
        if not campaign.image:
            return None
        try:
            with campaign.image.open("rb") as f:
                data = f.read()
        except OSError as e:
            logger.warning("campaign id=%s image unreadable, sending text only: %s", campaign.pk, e)
            return None
        file_name = campaign.image.name.rsplit("/", 1)[-1]
        return data, sniff_mime(data, file_name), file_name

    def _send_one(self, campaign: Campaign, log: CampaignRecipientLog, media) -> str | None:
        """Send one message; returns the error text or None on success."""
        recipient = get_recipient(log.user_id) or {
            "first_name": log.first_name,
            "last_name": log.last_name,
            "phone": log.phone,
        }
        body = personalize(campaign.message_template, recipient)
        try:
            if media is not None:
                data, mime_type, file_name = media
                self.transport.send_media_with_caption(log.phone, data, mime_type, file_name, body)
            else:
                self.transport.send_text(log.phone, body)
        except BingoError as e:
            logger.warning(
                "campaign id=%s send failed log_id=%s phone=%s: %s",
                campaign.pk,
                log.pk,
                mask_phone(log.phone),
                e.debug or e.detail,
            )
            return str(e.debug or e.detail)[:ERROR_MESSAGE_MAX]
        return None

    def process_batch(self, campaign_id) -> dict | None:
        """
        Send up to batch_size pending messages. Stops after the in-flight send if the
        campaign is paused or cancelled meanwhile. Completes the campaign when the
        working set drains.
        """
        state = self.runtime.get(campaign_id)
        if state is None:
            logger.debug("process_batch: campaign id=%s not active", campaign_id)
            return None
        with state.batch_lock:
            campaign = Campaign.objects.filter(pk=campaign_id).first()
            if campaign is None or campaign.status != Status.RUNNING:
                return state.snapshot()
            media = self._read_image(campaign)

            sent_in_batch = 0
            while state.pending and sent_in_batch < state.batch_size:
                if not self._still_running(campaign_id, state):
                    break
                if sent_in_batch:
                    self._pause_between_messages(state)
                    if not self._still_running(campaign_id, state):
                        break
                log_id = state.pending[0]
                log = CampaignRecipientLog.objects.filter(pk=log_id, status=LogStatus.PENDING).first()
                if log is None:
                    state.pending.popleft()
                    continue

                state.in_flight = log.pk
                try:
                    error = self._send_one(campaign, log, media)
                    # A cancel that raced this send may already have marked the row.
                    outcome = CampaignRecipientLog.objects.filter(
                        pk=log.pk, status__in=[LogStatus.PENDING, LogStatus.CANCELLED]
                    )
                    if error is None:
                        updated = outcome.update(status=LogStatus.SENT, sent_at=timezone.now())
                    else:
                        updated = outcome.update(status=LogStatus.ERROR, error_message=error)
                finally:
                    state.in_flight = None
                state.pending.popleft()
                sent_in_batch += 1
                if updated:
                    state.processed += 1
                    if error is None:
                        state.success += 1
                    else:
                        state.errors += 1

            snapshot = state.snapshot()
            logger.info(
                "campaign id=%s batch done sent=%s processed=%s/%s errors=%s",
                campaign_id,
                sent_in_batch,
                state.processed,
                state.total,
                state.errors,
            )
            self.events.publish(ev.CAMPAIGN_PROGRESS, snapshot)

            if not state.pending and self.runtime.get(campaign_id) is state:
                self._complete(campaign_id, state)
            return snapshot

    def _complete(self, campaign_id: int, state: CampaignState) -> None:
        self.runtime.evict(campaign_id)
        moved = Campaign.objects.filter(pk=campaign_id, status=Status.RUNNING).update(
            status=Status.COMPLETED, completed_at=timezone.now()
        )
        if not moved:
            return
        snapshot = state.snapshot()
        self.events.publish(ev.CAMPAIGN_COMPLETED, snapshot)
        logger.info("campaign completed id=%s success=%s errors=%s", campaign_id, state.success, state.errors)
        log_event(
            SystemLog.Level.INFO,
            SystemLog.Category.CAMPAIGN,
            f"Campaign {campaign_id} completed",
            metadata=snapshot,
        )

    # Queries

    def _log_counts(self, campaign: Campaign) -> dict:
        counts = {s: 0 for s in LogStatus.values}
        for row in CampaignRecipientLog.objects.filter(campaign=campaign).values("status").annotate(n=Count("id")):
            counts[row["status"]] = row["n"]
        return counts

    def _persisted_snapshot(self, campaign: Campaign) -> dict:
        counts = self._log_counts(campaign)
        return {
            "campaign_id": campaign.pk,
            "processed": counts[LogStatus.SENT] + counts[LogStatus.ERROR],
            "total": campaign.total_recipients,
            "success": counts[LogStatus.SENT],
            "errors": counts[LogStatus.ERROR],
            "pending": counts[LogStatus.PENDING],
        }

    def get_status(self, campaign_id) -> dict:
        campaign = self._get(campaign_id)
        counts = self._log_counts(campaign)
        state = self.runtime.get(campaign.pk)
        return {
            "id": campaign.pk,
            "name": campaign.name,
            "status": campaign.status,
            "total_recipients": campaign.total_recipients,
            "interval_minutes": campaign.interval_minutes,
            "max_messages_per_hour": campaign.max_messages_per_hour,
            "batch_size": batch_size_for(campaign.max_messages_per_hour, campaign.interval_minutes),
            "counts": counts,
            "progress": state.snapshot() if state else self._persisted_snapshot(campaign),
            "in_memory": state is not None,
            "created_at": campaign.created_at,
            "started_at": campaign.started_at,
            "completed_at": campaign.completed_at,
        }

    def get_logs(self, campaign_id, page: int = 1, page_size: int = DEFAULT_LOG_PAGE_SIZE, status: str | None = None) -> dict:
        campaign = self._get(campaign_id)
        qs = CampaignRecipientLog.objects.filter(campaign=campaign).order_by("id")
        if status:
            if status not in LogStatus.values:
                raise ValidationFailed("Invalid status filter", fields={"status": f"Unknown status {status!r}."})
            qs = qs.filter(status=status)
        page = max(1, int(page or 1))
        page_size = max(1, int(page_size or DEFAULT_LOG_PAGE_SIZE))
        offset = (page - 1) * page_size
        items = [
            {
                "id": log.pk,
                "user_id": log.user_id,
                "phone": log.phone,
                "first_name": log.first_name,
                "last_name": log.last_name,
                "status": log.status,
                "error_message": log.error_message,
                "sent_at": log.sent_at,
            }
            for log in qs[offset:offset + page_size]
        ]
        return {"items": items, "page": page, "page_size": page_size, "total_count": qs.count()}

    def list_campaigns(self, status: str | None = None) -> list[dict]:
        qs = Campaign.objects.annotate(
            sent=Count("logs", filter=Q(logs__status=LogStatus.SENT)),
            errors=Count("logs", filter=Q(logs__status=LogStatus.ERROR)),
            pending=Count("logs", filter=Q(logs__status=LogStatus.PENDING)),
            cancelled=Count("logs", filter=Q(logs__status=LogStatus.CANCELLED)),
        )
        if status:
            qs = qs.filter(status=status)
        return [
            {
                "id": c.pk,
                "name": c.name,
                "status": c.status,
                "total_recipients": c.total_recipients,
                "sent": c.sent,
                "errors": c.errors,
                "pending": c.pending,
                "cancelled": c.cancelled,
                "created_at": c.created_at,
            }
            for c in qs
        ]

    def messaging_stats(self, top: int = TOP_NEIGHBORHOODS) -> dict:
        """Campaign totals by status, message totals by log status, busiest neighborhoods."""
        campaigns = Campaign.objects.aggregate(
            total=Count("id"),
            **{status: Count("id", filter=Q(status=status)) for status in Status.values},
        )
        messages = CampaignRecipientLog.objects.aggregate(
            total=Count("id"),
            **{status: Count("id", filter=Q(status=status)) for status in LogStatus.values},
        )
        neighborhoods = (
            CampaignRecipientLog.objects.filter(user__neighborhood__isnull=False)
            .values("user__neighborhood_id", "user__neighborhood__name")
            .annotate(total=Count("id"), sent=Count("id", filter=Q(status=LogStatus.SENT)))
            .order_by("-total", "-sent", "user__neighborhood__name")[:top]
        )
        return {
            "campaigns": {key: value or 0 for key, value in campaigns.items()},
            "messages": {key: value or 0 for key, value in messages.items()},
            "top_neighborhoods": [
                {
                    "neighborhood_id": row["user__neighborhood_id"],
                    "neighborhood": row["user__neighborhood__name"],
                    "total": row["total"],
                    "sent": row["sent"],
                }
                for row in neighborhoods
            ],
        }

    def preview_cohort(
        self,
        filters: CohortFilter | dict | None = None,
        user_ids=None,
        page: int = 1,
        page_size: int = DEFAULT_PREVIEW_PAGE_SIZE,
    ) -> dict:
        if user_ids:
            cohort_filter = CohortFilter.for_user_ids(user_ids)
        elif isinstance(filters, CohortFilter):
            cohort_filter = filters
        else:
            cohort_filter = CohortFilter.from_dict(filters)
        result = resolve_cohort(cohort_filter, page=page, page_size=page_size)
        return {
            "items": [r.to_dict() for r in result.items],
            "page": result.page,
            "page_size": result.page_size,
            "total_count": result.total_count,
            "summary": cohort_summary(cohort_filter),
        }
