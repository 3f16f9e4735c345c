"""
Registro: OTP generation and verification (hashed codes).
Codes live on the Participant row; expiry is checked lazily at verification time.
"""

import hashlib
import secrets
from datetime import datetime, timedelta

from bingo.conf import OTP_LENGTH, otp_ttl_minutes
from bingo.models import Participant


def hash_code(plain: str) -> str:
    """Hash code for storage. Never store plain."""
    return hashlib.sha256(plain.encode()).hexdigest()


def generate_code(length: int = OTP_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def expiry_from(now: datetime) -> datetime:
    return now + timedelta(minutes=otp_ttl_minutes())


def verify_code(participant: Participant | None, plain: str | None, now: datetime) -> bool:
    """
    True when the code matches and now <= otp_expires_at.
    A mismatch and an expired code are indistinguishable to the caller.
    """
    if participant is None or not participant.otp_code or not participant.otp_expires_at:
        return False
    candidate = hash_code((plain or "").strip())
    matches = secrets.compare_digest(candidate, participant.otp_code)
    return matches and now <= participant.otp_expires_at
