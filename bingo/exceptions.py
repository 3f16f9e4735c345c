"""
Registro: domain errors.

Every error has a stable `kind` (for callers to branch on) and a human-readable `detail`.
Low-level store/transport messages only travel in `debug`.
"""


class BingoError(Exception):
    """Base exception for registration, inventory and campaign errors."""

    kind = "error"
    default_detail = "Unexpected error"

    def __init__(self, detail: str | None = None, *, fields: dict | None = None, debug: str | None = None):
        self.detail = detail or self.default_detail
        self.fields = fields or {}
        self.debug = debug
        super().__init__(self.detail)

    def to_dict(self, include_debug: bool = False) -> dict:
        data = {"kind": self.kind, "detail": self.detail}
        if self.fields:
            data["fields"] = self.fields
        if include_debug and self.debug:
            data["debug"] = self.debug
        return data


# Validation

class ValidationFailed(BingoError):
    kind = "validation_failed"
    default_detail = "Invalid input"


# Conflicts

class AlreadyRegistered(BingoError):
    kind = "already_registered"

    DETAILS = {
        "phone": "This phone number is already registered",
        "id_card": "This id card is already registered",
        "cross_user": "Phone number and id card belong to different registered users",
    }

    def __init__(self, conflict: str, detail: str | None = None, **kwargs):
        self.conflict = conflict
        super().__init__(detail or self.DETAILS.get(conflict, "Already registered"), **kwargs)

    def to_dict(self, include_debug: bool = False) -> dict:
        data = super().to_dict(include_debug)
        data["conflict"] = self.conflict
        return data


class DuplicateIdCard(BingoError):
    kind = "duplicate_id_card"
    default_detail = "This id card is already registered by another user"


class PendingConflict(BingoError):
    kind = "pending_conflict"
    default_detail = "Another registration is in progress for this phone number or id card"


class TableRangeTaken(BingoError):
    kind = "table_range_taken"
    default_detail = "This table range is already registered"


class TableAlreadyAssigned(BingoError):
    kind = "table_already_assigned"
    default_detail = "User already has a table assigned"


# OTP

class InvalidOrExpiredOtp(BingoError):
    kind = "invalid_or_expired_otp"
    default_detail = "Invalid or expired verification code"


# Inventory

class NoInventoryAvailable(BingoError):
    kind = "no_inventory_available"
    default_detail = "No bingo tables available"


class TransactionError(BingoError):
    kind = "transaction_error"
    default_detail = "Could not complete the operation atomically"


# Transport

class TransportError(BingoError):
    kind = "transport_error"
    default_detail = "Message could not be sent"


class RecipientNotRegistered(TransportError):
    kind = "recipient_not_registered"
    default_detail = "The phone number is not registered on WhatsApp"


class TransportUnavailable(BingoError):
    kind = "transport_unavailable"
    default_detail = "Messaging service is not available, try again in a few minutes"


# Classifier

class InvalidTableArtifact(BingoError):
    kind = "invalid_table_artifact"
    default_detail = "The image is not a valid bingo table"

    def __init__(self, detail: str | None = None, *, matched=None, missing=None, confidence: float = 0.0, **kwargs):
        self.matched = list(matched or [])
        self.missing = list(missing or [])
        self.confidence = confidence
        super().__init__(detail, **kwargs)

    def to_dict(self, include_debug: bool = False) -> dict:
        data = super().to_dict(include_debug)
        data.update({
            "matched_keywords": self.matched,
            "missing_keywords": self.missing,
            "confidence": self.confidence,
        })
        return data


# Lookups and campaigns

class ParticipantNotFound(BingoError):
    kind = "participant_not_found"
    default_detail = "User not found"


class CampaignNotFound(BingoError):
    kind = "campaign_not_found"
    default_detail = "Campaign not found"


class CampaignStateError(BingoError):
    kind = "campaign_state_conflict"
    default_detail = "Operation not allowed in the campaign's current state"


class EmptyCohort(BingoError):
    kind = "empty_cohort"
    default_detail = "No recipients match the selected filters"


class ClassifierError(BingoError):
    kind = "classifier_error"
    default_detail = "The image could not be processed"
