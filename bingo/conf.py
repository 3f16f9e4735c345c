"""
Registro: runtime knobs for registration and campaigns.
Values come from Django settings (BINGO_*) with the defaults below.
"""

import time
from dataclasses import dataclass, field
from typing import Callable

from django.conf import settings

OTP_LENGTH = 6
OTP_TTL_MINUTES = 5

OTP_SEND_ATTEMPTS = 3
OTP_RETRY_DELAY_SECONDS = 3
OTP_NOT_READY_EXTRA_DELAY_SECONDS = 5

TABLE_ARTIFACT_DELAY_SECONDS = 8
CONFIRMATION_DELAY_SECONDS = 3

# Random pause between two messages of the same batch (seconds).
CAMPAIGN_JITTER_RANGE = (5, 10)

DEFAULT_INTERVAL_MINUTES = 1
DEFAULT_MAX_MESSAGES_PER_HOUR = 60

ADDRESS_DETAIL_MIN_LENGTH = 10
TABLE_CODE_PAD = 5


def get_setting(name: str, default=None):
    return getattr(settings, f"BINGO_{name}", default)


def otp_ttl_minutes() -> int:
    return int(get_setting("OTP_TTL_MINUTES", OTP_TTL_MINUTES))


def table_artifact_delay() -> float:
    return float(get_setting("TABLE_ARTIFACT_DELAY_SECONDS", TABLE_ARTIFACT_DELAY_SECONDS))


def expose_debug_otp() -> bool:
    return bool(get_setting("EXPOSE_DEBUG_OTP", False))


@dataclass
class RetryPolicy:
    """
    Bounded retry for the OTP send. Between attempts waits `delay` seconds, plus
    `not_ready_delay` more when the transport still reports not ready.
    """

    max_attempts: int = OTP_SEND_ATTEMPTS
    delay: float = OTP_RETRY_DELAY_SECONDS
    not_ready_delay: float = OTP_NOT_READY_EXTRA_DELAY_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def backoff(self, attempt: int) -> float:
        return self.delay

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=int(get_setting("OTP_SEND_ATTEMPTS", OTP_SEND_ATTEMPTS)),
            delay=float(get_setting("OTP_RETRY_DELAY_SECONDS", OTP_RETRY_DELAY_SECONDS)),
            not_ready_delay=float(
                get_setting("OTP_NOT_READY_EXTRA_DELAY_SECONDS", OTP_NOT_READY_EXTRA_DELAY_SECONDS)
            ),
        )
