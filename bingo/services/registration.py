"""
Registro: OTP-gated registration workflow.

States per (phone, id card): NONE -> OTP_PENDING -> VERIFIED. An expired OTP_PENDING row
without names is a zombie and is deleted silently the next time that phone or id card
asks for a code (or by the purge_incomplete_registrations command).

Registration success is decided by the verification commit; table assignment and
WhatsApp messages afterwards only add warnings, they never undo the registration.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.db import IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone

from bingo.conf import CONFIRMATION_DELAY_SECONDS, RetryPolicy, expose_debug_otp, otp_ttl_minutes, table_artifact_delay
from bingo.exceptions import (
    AlreadyRegistered,
    ClassifierError,
    DuplicateIdCard,
    InvalidOrExpiredOtp,
    InvalidTableArtifact,
    NoInventoryAvailable,
    ParticipantNotFound,
    PendingConflict,
    TableAlreadyAssigned,
    TableRangeTaken,
    TransactionError,
    TransportError,
    TransportUnavailable,
    RecipientNotRegistered,
)
from bingo.messages import get_message
from bingo.models import BingoTable, Canton, Neighborhood, Participant, Province, SystemLog
from bingo.services.inventory import (
    TABLE_FILE_PATTERN,
    assign_table,
    create_manual_table,
    fetch_table_artifact,
    format_table_code,
    release_table,
    table_code_exists,
)
from bingo.services.log_service import log_event, log_exception
from bingo.services.otp import expiry_from, generate_code, hash_code, verify_code
from bingo.services.scheduling import Scheduler, ThreadScheduler
from bingo.services.table_ocr import ClassificationResult, TableDocumentClassifier
from bingo.services.transport import MessageTransport, get_transport, mask_phone
from bingo.utils.images import inspect_image
from bingo.validators import (
    collect,
    validate_address_detail,
    validate_id_card,
    validate_phone,
    validate_table_range,
)

logger = logging.getLogger(__name__)

TABLE_PDF_MIME = "application/pdf"
MANUAL_TABLES_DIR = "tables/manual"

# Warning codes reported next to a successful registration.
WARN_NO_INVENTORY = "no_inventory"
WARN_TABLE_ASSIGNMENT_FAILED = "table_assignment_failed"
WARN_TRANSPORT_NOT_READY = "transport_not_ready"
WARN_WELCOME_NOT_SENT = "welcome_not_sent"


@dataclass
class ProfileFields:
    first_name: str
    last_name: str
    province_id: int | str | None
    canton_id: int | str | None
    neighborhood_id: int | str | None
    address_detail: str
    latitude: str | float | None = None
    longitude: str | float | None = None


@dataclass
class OtpRequestResult:
    user_id: int
    expires_at: datetime
    is_update: bool
    table_range: str | None = None
    debug_otp: str | None = None


@dataclass
class RegistrationResult:
    user_id: int
    table: BingoTable | None = None
    warnings: list = field(default_factory=list)
    artifact_scheduled: bool = False

    @property
    def table_code(self) -> str | None:
        return self.table.code if self.table else None


@dataclass
class AssignmentResult:
    user_id: int
    table: BingoTable
    artifact_sent: bool
    warning: str | None = None


def _warning(code: str, detail: str) -> dict:
    return {"code": code, "detail": detail}


def _required(value, label: str) -> str:
    text = (str(value) if value is not None else "").strip()
    if not text:
        raise ValidationError(f"{label} is required.", code="required")
    return text


def _pk(value, label: str) -> int:
    try:
        pk = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{label} is required.", code="required")
    if pk <= 0:
        raise ValidationError(f"{label} is invalid.", code="invalid")
    return pk


def _optional_decimal(value, label: str) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.0000001"))
    except InvalidOperation:
        raise ValidationError(f"{label} must be a number.", code="invalid")


def _public_url(path: str) -> str:
    if path.startswith(("http://", "https://")):
        return path
    base = getattr(settings, "BINGO_PUBLIC_BASE_URL", "").rstrip("/")
    return f"{base}/{path.lstrip('/')}"


class RegistrationWorkflow:
    """
    Orchestrates OTP issuance, verification, conflict detection and the hand-off to
    the table inventory and the message transport. Every collaborator is injectable.
    """

    def __init__(
        self,
        transport: MessageTransport | None = None,
        classifier: TableDocumentClassifier | None = None,
        scheduler: Scheduler | None = None,
        retry_policy: RetryPolicy | None = None,
        now=None,
        storage=None,
    ):
        self.transport = transport or get_transport()
        self.classifier = classifier or TableDocumentClassifier()
        self.scheduler = scheduler or ThreadScheduler()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.now = now or timezone.now
        self.storage = storage or default_storage

    # OTP issuance

    def request_otp(self, phone, id_card, table_start=None, table_end=None) -> OtpRequestResult:
        checks = {
            "phone": lambda: validate_phone(phone),
            "id_card": lambda: validate_id_card(id_card),
        }
        has_range = table_start not in (None, "") or table_end not in (None, "")
        if has_range:
            checks["table_range"] = lambda: validate_table_range(table_start, table_end)
        cleaned = collect(checks)
        phone, id_card = cleaned["phone"], cleaned["id_card"]

        table_range = None
        if has_range:
            table_range = format_table_code(*cleaned["table_range"])
            if table_code_exists(table_range):
                raise TableRangeTaken(debug=table_range)

        self._check_verified_conflicts(phone, id_card)

        now = self.now()
        purged, _ = (
            Participant.objects.expired_incomplete(now)
            .filter(Q(phone=phone) | Q(id_card=id_card))
            .delete()
        )
        if purged:
            logger.info("request_otp: purged %s expired incomplete row(s) phone=%s", purged, mask_phone(phone))

        existing = self._active_pending_row(phone, id_card, now)

        status = self.transport.get_status()
        if not status.ready:
            raise TransportUnavailable(debug=status.diagnostic)

        code = generate_code()
        expires_at = expiry_from(now)
        with transaction.atomic():
            if existing is not None:
                Participant.objects.filter(pk=existing.pk).update(
                    otp_code=hash_code(code), otp_expires_at=expires_at, updated_at=now
                )
                user_id = existing.pk
            else:
                user_id = Participant.objects.create(
                    phone=phone,
                    id_card=id_card,
                    otp_code=hash_code(code),
                    otp_expires_at=expires_at,
                ).pk

        try:
            self._send_otp(phone, code)
        except Exception:
            self._discard_incomplete(user_id)
            raise

        logger.info(
            "request_otp: user_id=%s phone=%s is_update=%s",
            user_id,
            mask_phone(phone),
            existing is not None,
        )
        return OtpRequestResult(
            user_id=user_id,
            expires_at=expires_at,
            is_update=existing is not None,
            table_range=table_range,
            debug_otp=code if expose_debug_otp() else None,
        )

    def _check_verified_conflicts(self, phone: str, id_card: str) -> None:
        verified = list(Participant.objects.verified().filter(Q(phone=phone) | Q(id_card=id_card)))
        by_phone = next((p for p in verified if p.phone == phone), None)
        by_card = next((p for p in verified if p.id_card == id_card), None)
        if by_phone and by_card and by_phone.pk != by_card.pk:
            raise AlreadyRegistered("cross_user")
        if by_phone:
            raise AlreadyRegistered("phone")
        if by_card:
            raise AlreadyRegistered("id_card")

    def _active_pending_row(self, phone: str, id_card: str, now) -> Participant | None:
        """The in-flight row for exactly this phone + id card; PendingConflict on a partial match."""
        pending = (
            Participant.objects.incomplete()
            .filter(Q(phone=phone) | Q(id_card=id_card))
            .filter(otp_expires_at__gte=now)
            .order_by("id")
        )
        existing = None
        for row in pending:
            if row.phone == phone and row.id_card == id_card:
                existing = existing or row
                continue
            raise PendingConflict(debug=f"pending_user_id={row.pk}")
        return existing

    def _send_otp(self, phone: str, code: str) -> None:
        message = get_message("otp", code=code, minutes=otp_ttl_minutes())
        policy = self.retry_policy
        last_error = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                self.transport.send_text(phone, message)
                return
            except RecipientNotRegistered:
                raise
            except TransportError as e:
                last_error = e
                logger.warning(
                    "send_otp attempt %s/%s failed phone=%s: %s",
                    attempt,
                    policy.max_attempts,
                    mask_phone(phone),
                    e.debug or e.detail,
                )
            if attempt < policy.max_attempts:
                policy.sleep(policy.backoff(attempt))
                if not self.transport.get_status().ready:
                    policy.sleep(policy.not_ready_delay)
        log_event(
            SystemLog.Level.ERROR,
            SystemLog.Category.TRANSPORT,
            f"OTP not delivered after {policy.max_attempts} attempts",
            metadata={"phone": mask_phone(phone), "error": str(last_error.debug if last_error else "")},
        )
        raise TransportUnavailable(
            "Could not send the verification code, try again in a few minutes",
            debug=(last_error.debug or last_error.detail) if last_error else None,
        )

    # Verification

    def complete_registration(self, phone, id_card, otp, profile: ProfileFields) -> RegistrationResult:
        values = self._validate_registration(phone, id_card, otp, profile)
        participant = self._load_for_verification(values["phone"])
        self._verify_otp(participant, values["otp"])
        self._check_id_card(participant, values["id_card"])

        try:
            participant = self._commit_profile(participant.pk, values)
        except Exception:
            self._discard_incomplete(participant.pk)
            raise
        logger.info("complete_registration: user_id=%s verified", participant.pk)

        warnings = []
        table = self._assign_table_nonfatal(participant, warnings)
        scheduled = self._welcome_and_schedule_artifact(participant, table, warnings)
        return RegistrationResult(
            user_id=participant.pk,
            table=table,
            warnings=warnings,
            artifact_scheduled=scheduled,
        )

    def complete_registration_with_table_proof(
        self,
        phone,
        id_card,
        otp,
        profile: ProfileFields,
        table_start,
        table_end,
        image_bytes: bytes,
        image_name: str = "",
    ) -> RegistrationResult:
        values = self._validate_registration(
            phone,
            id_card,
            otp,
            profile,
            extra={
                "table_range": lambda: validate_table_range(table_start, table_end),
                "image": lambda: inspect_image(image_bytes, field_name="Table photo"),
            },
        )
        code = format_table_code(*values["table_range"])
        participant = self._load_for_verification(values["phone"])
        self._verify_otp(participant, values["otp"])
        self._check_id_card(participant, values["id_card"])

        classification = self._classify(participant, image_bytes)

        if table_code_exists(code, exclude_table_id=participant.assigned_table_id):
            raise TableRangeTaken(debug=code)

        stored_name = self.storage.save(
            f"{MANUAL_TABLES_DIR}/{TABLE_FILE_PATTERN.format(code=code).rsplit('.', 1)[0]}{values['image'].extension}",
            ContentFile(image_bytes),
        )
        try:
            participant, table = self._commit_profile_with_table(
                participant.pk, values, code, stored_name, classification
            )
        except IntegrityError as e:
            self._cleanup_failed_proof(participant.pk, stored_name)
            raise TableRangeTaken(debug=str(e)[:500]) from e
        except Exception:
            self._cleanup_failed_proof(participant.pk, stored_name)
            raise
        logger.info("complete_registration_with_table_proof: user_id=%s table=%s", participant.pk, table.code)
        log_event(
            SystemLog.Level.INFO,
            SystemLog.Category.CLASSIFIER,
            f"Manual table {table.code} validated",
            metadata={"user_id": participant.pk, "keywords": classification.matched_keywords},
        )

        warnings = []
        try:
            self.transport.send_text(participant.phone, self._welcome_text(participant))
        except TransportError as e:
            warnings.append(_warning(WARN_WELCOME_NOT_SENT, e.detail))
            logger.warning("welcome not sent user_id=%s: %s", participant.pk, e.debug or e.detail)
        self.scheduler.schedule_once(
            CONFIRMATION_DELAY_SECONDS,
            lambda: self.send_table_confirmation(participant.pk),
            name=f"table-confirmation-{participant.pk}",
        )
        return RegistrationResult(user_id=participant.pk, table=table, warnings=warnings)

    def _validate_registration(self, phone, id_card, otp, profile: ProfileFields, extra: dict | None = None) -> dict:
        checks = {
            "phone": lambda: validate_phone(phone),
            "id_card": lambda: validate_id_card(id_card),
            "otp": lambda: _required(otp, "Verification code"),
            "first_name": lambda: _required(profile.first_name, "First name"),
            "last_name": lambda: _required(profile.last_name, "Last name"),
            "province": lambda: self._lookup(Province, profile.province_id, "Province"),
            "canton": lambda: self._lookup(Canton, profile.canton_id, "Canton", province_id=profile.province_id),
            "neighborhood": lambda: self._lookup(
                Neighborhood, profile.neighborhood_id, "Neighborhood", canton_id=profile.canton_id
            ),
            "address_detail": lambda: validate_address_detail(profile.address_detail),
            "latitude": lambda: _optional_decimal(profile.latitude, "Latitude"),
            "longitude": lambda: _optional_decimal(profile.longitude, "Longitude"),
        }
        checks.update(extra or {})
        return collect(checks)

    @staticmethod
    def _lookup(model, value, label: str, **parent):
        pk = _pk(value, label)
        try:
            parent = {key: _pk(val, key) for key, val in parent.items()}
        except ValidationError:
            parent = {}
        obj = model.objects.filter(pk=pk, **parent).first()
        if obj is None:
            raise ValidationError(f"{label} does not exist.", code="invalid")
        return obj

    def _load_for_verification(self, phone: str) -> Participant | None:
        rows = list(Participant.objects.filter(phone=phone).order_by("-phone_verified", "-id")[:1])
        if rows and rows[0].phone_verified:
            raise AlreadyRegistered("phone")
        return rows[0] if rows else None

    def _verify_otp(self, participant: Participant | None, otp: str) -> None:
        if not verify_code(participant, otp, self.now()):
            logger.info("verify_otp failed user_id=%s", participant.pk if participant else None)
            raise InvalidOrExpiredOtp()

    def _check_id_card(self, participant: Participant, id_card: str) -> None:
        taken = Participant.objects.verified().filter(id_card=id_card).exclude(pk=participant.pk).exists()
        if taken:
            self._discard_incomplete(participant.pk)
            raise DuplicateIdCard()

    def _discard_incomplete(self, user_id: int) -> None:
        """Compensating delete; never touches a verified row."""
        deleted, _ = Participant.objects.filter(pk=user_id, phone_verified=False).delete()
        if deleted:
            logger.info("discarded incomplete registration user_id=%s", user_id)

    def _apply_profile(self, participant: Participant, values: dict) -> None:
        participant.id_card = values["id_card"]
        participant.first_name = values["first_name"]
        participant.last_name = values["last_name"]
        participant.province = values["province"]
        participant.canton = values["canton"]
        participant.neighborhood = values["neighborhood"]
        participant.address_detail = values["address_detail"]
        participant.latitude = values["latitude"]
        participant.longitude = values["longitude"]
        participant.phone_verified = True
        participant.otp_code = None
        participant.otp_expires_at = None

    def _lock_unverified(self, user_id: int) -> Participant:
        participant = Participant.objects.select_for_update().filter(pk=user_id, phone_verified=False).first()
        if participant is None:
            raise TransactionError("Registration changed concurrently", debug=f"user_id={user_id}")
        return participant

    def _commit_profile(self, user_id: int, values: dict) -> Participant:
        with transaction.atomic():
            participant = self._lock_unverified(user_id)
            self._apply_profile(participant, values)
            participant.save()
        return participant

    def _commit_profile_with_table(
        self,
        user_id: int,
        values: dict,
        code: str,
        stored_name: str,
        classification: ClassificationResult,
    ) -> tuple[Participant, BingoTable]:
        file_name = stored_name.rsplit("/", 1)[-1]
        file_url = _public_url(self.storage.url(stored_name))
        with transaction.atomic():
            participant = self._lock_unverified(user_id)
            table = participant.assigned_table
            if table is not None:
                table.code = code
                table.file_name = file_name
                table.file_url = file_url
                table.delivered = True
                table.manual_registration = True
                table.ocr_validated = True
                table.ocr_confidence = classification.confidence
                table.ocr_keywords = list(classification.matched_keywords)
                table.save()
            else:
                table = create_manual_table(
                    code=code,
                    file_name=file_name,
                    file_url=file_url,
                    confidence=classification.confidence,
                    keywords=classification.matched_keywords,
                )
                participant.assigned_table = table
            self._apply_profile(participant, values)
            participant.save()
        return participant, table

    def _cleanup_failed_proof(self, user_id: int, stored_name: str) -> None:
        self.storage.delete(stored_name)
        self._discard_incomplete(user_id)

    def _classify(self, participant: Participant, image_bytes: bytes) -> ClassificationResult:
        try:
            result = self.classifier.classify(image_bytes)
        except ClassifierError as e:
            self._discard_incomplete(participant.pk)
            log_exception(e, SystemLog.Category.CLASSIFIER, "Table photo could not be classified",
                          metadata={"user_id": participant.pk})
            raise InvalidTableArtifact("The image could not be processed", debug=e.debug) from e
        if not result.is_valid_document:
            self._discard_incomplete(participant.pk)
            log_event(
                SystemLog.Level.WARNING,
                SystemLog.Category.CLASSIFIER,
                "Table photo rejected",
                metadata={"phone": mask_phone(participant.phone), "missing": result.missing_keywords},
            )
            raise InvalidTableArtifact(
                matched=result.matched_keywords,
                missing=result.missing_keywords,
                confidence=result.confidence,
            )
        return result

    # Post-registration delivery

    def _assign_table_nonfatal(self, participant: Participant, warnings: list) -> BingoTable | None:
        try:
            return assign_table(participant.pk)
        except NoInventoryAvailable as e:
            warnings.append(_warning(WARN_NO_INVENTORY, e.detail))
            log_event(
                SystemLog.Level.WARNING,
                SystemLog.Category.INVENTORY,
                "No tables available for a new registration",
                metadata={"user_id": participant.pk},
            )
        except TransactionError as e:
            warnings.append(_warning(WARN_TABLE_ASSIGNMENT_FAILED, e.detail))
            log_exception(e, SystemLog.Category.INVENTORY, "Table assignment failed",
                          metadata={"user_id": participant.pk})
        return None

    def _welcome_text(self, participant: Participant) -> str:
        return get_message("welcome", first_name=participant.first_name, last_name=participant.last_name)

    def _welcome_and_schedule_artifact(
        self,
        participant: Participant,
        table: BingoTable | None,
        warnings: list,
    ) -> bool:
        status = self.transport.get_status()
        if not status.ready:
            warnings.append(_warning(WARN_TRANSPORT_NOT_READY, "Messages could not be sent"))
            if table is not None:
                try:
                    release_table(table.pk)
                except TransactionError as e:
                    log_exception(e, SystemLog.Category.INVENTORY, f"Table {table.code} could not be released",
                                  metadata={"user_id": participant.pk})
                else:
                    log_event(
                        SystemLog.Level.WARNING,
                        SystemLog.Category.TRANSPORT,
                        f"Transport not ready, table {table.code} released",
                        metadata={"user_id": participant.pk, "diagnostic": status.diagnostic},
                    )
            return False

        try:
            self.transport.send_text(participant.phone, self._welcome_text(participant))
        except TransportError as e:
            warnings.append(_warning(WARN_WELCOME_NOT_SENT, e.detail))
            logger.warning("welcome not sent user_id=%s: %s", participant.pk, e.debug or e.detail)

        if table is None:
            return False
        user_id, table_id = participant.pk, table.pk
        self.scheduler.schedule_once(
            table_artifact_delay(),
            lambda: self.deliver_table_artifact(user_id, table_id),
            name=f"table-artifact-{user_id}",
        )
        return True

    def deliver_table_artifact(self, user_id: int, table_id: int) -> bool:
        """
        Follow-up task: social message, then the table PDF. If the PDF cannot be
        delivered the table goes back to the pool.
        """
        participant = Participant.objects.select_related("assigned_table").filter(pk=user_id).first()
        if participant is None or participant.assigned_table_id != table_id:
            logger.warning("deliver_table_artifact: user_id=%s no longer holds table_id=%s", user_id, table_id)
            return False
        try:
            self.transport.send_text(participant.phone, get_message("social"))
        except TransportError as e:
            logger.warning("social message not sent user_id=%s: %s", user_id, e.debug or e.detail)

        table = participant.assigned_table
        try:
            self._send_table(participant, table)
        except TransportError as e:
            release_table(table_id)
            log_event(
                SystemLog.Level.WARNING,
                SystemLog.Category.REGISTRATION,
                f"Table {table.code} not delivered, released to pool",
                metadata={"user_id": user_id, "error": e.debug or e.detail},
            )
            return False
        return True

    def _send_table(self, participant: Participant, table: BingoTable) -> None:
        media = fetch_table_artifact(table)
        caption = get_message("table_caption", first_name=participant.first_name or "", table_code=table.code)
        self.transport.send_media_with_caption(
            participant.phone,
            media,
            TABLE_PDF_MIME,
            table.file_name or f"{table.code}.pdf",
            caption,
        )
        logger.info("table sent user_id=%s table=%s", participant.pk, table.code)

    def send_table_confirmation(self, user_id: int) -> bool:
        participant = Participant.objects.select_related("assigned_table").filter(pk=user_id).first()
        if participant is None or participant.assigned_table is None:
            return False
        try:
            self.transport.send_text(
                participant.phone,
                get_message("table_confirmation", table_range=participant.assigned_table.code),
            )
        except TransportError as e:
            logger.warning("table confirmation not sent user_id=%s: %s", user_id, e.debug or e.detail)
            return False
        return True

    # Admin operations

    def assign_table_to_existing_user(self, user_id=None, phone=None) -> AssignmentResult:
        participant = self._find_verified(user_id, phone)
        if participant.assigned_table_id:
            raise TableAlreadyAssigned(debug=participant.assigned_table.code)

        table = assign_table(participant.pk)
        try:
            self._send_table(participant, table)
        except TransportError as e:
            logger.warning("assign_table_to_existing_user: table not sent user_id=%s: %s", participant.pk, e.debug)
            return AssignmentResult(participant.pk, table, artifact_sent=False, warning=e.detail)
        return AssignmentResult(participant.pk, table, artifact_sent=True)

    def resend_table(self, identifier) -> BingoTable:
        """Resend the assigned table to the user found by id card or phone."""
        participant = self._find_verified(None, identifier, match_id_card=True)
        if participant.assigned_table is None:
            raise ParticipantNotFound("User has no table assigned")
        self._send_table(participant, participant.assigned_table)
        return participant.assigned_table

    def _find_verified(self, user_id, phone, match_id_card=False) -> Participant:
        qs = Participant.objects.select_related("assigned_table")
        value = str(phone).strip() if phone is not None else ""
        if user_id:
            participant = qs.filter(pk=user_id).first()
        elif value:
            lookup = (Q(phone=value) | Q(id_card=value)) if match_id_card else Q(phone=value)
            participant = qs.filter(lookup).order_by("-phone_verified", "-id").first()
        else:
            raise ParticipantNotFound("A user id or phone number is required")
        if participant is None:
            raise ParticipantNotFound()
        if not participant.phone_verified:
            raise ParticipantNotFound("User has not completed registration")
        return participant


def purge_incomplete_registrations(now=None) -> int:
    """Delete every expired zombie row. Returns the number of participants removed."""
    _, per_model = Participant.objects.expired_incomplete(now).delete()
    return per_model.get(Participant._meta.label, 0)


def registration_stats() -> dict:
    agg = Participant.objects.aggregate(
        verified=Count("id", filter=Q(phone_verified=True)),
        with_table=Count("id", filter=Q(phone_verified=True, assigned_table__isnull=False)),
    )
    verified = agg["verified"] or 0
    with_table = agg["with_table"] or 0
    return {
        "verified": verified,
        "incomplete": Participant.objects.incomplete().count(),
        "with_table": with_table,
        "without_table": verified - with_table,
    }
