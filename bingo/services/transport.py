"""
Registro: WhatsApp message transport.

GatewayTransport talks to the REST gateway that owns the WhatsApp Web session.
The session lifecycle (QR pairing, reconnects) lives in the gateway, not here.

Features:
- requests.Session with explicit certifi certificate bundle
- urllib3 Retry on gateway 5xx responses
- Ecuador phone formatting (593 prefix) into WhatsApp chat ids
- Phone and token masking in logs
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import certifi
import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectionError, RequestException, SSLError, Timeout
from urllib3.util.retry import Retry

from bingo.exceptions import RecipientNotRegistered, TransportError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_READ_TIMEOUT = 30

MAX_RETRIES = 2
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = [502, 503, 504]

COUNTRY_PREFIX = "593"
MIN_PHONE_DIGITS = 9

NOT_REGISTERED_MARKERS = ("not registered", "no está registrado", "not_registered")


@dataclass(frozen=True)
class TransportStatus:
    ready: bool
    diagnostic: str = ""


def mask_phone(phone: str) -> str:
    """Show only the last 4 digits in logs."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


def _mask_token(token: str) -> str:
    if not token or len(token) < 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def format_chat_id(phone: str) -> str:
    """
    Normalize a local or international Ecuador number into a WhatsApp chat id.
    0991234567 -> 593991234567@c.us; 991234567 -> 593991234567@c.us.
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) < MIN_PHONE_DIGITS:
        raise TransportError("Phone number too short", debug=f"digits={len(cleaned)}")
    if cleaned.startswith(COUNTRY_PREFIX):
        return f"{cleaned}@c.us"
    if cleaned.startswith("0"):
        return f"{COUNTRY_PREFIX}{cleaned[1:]}@c.us"
    if len(cleaned) == MIN_PHONE_DIGITS:
        return f"{COUNTRY_PREFIX}{cleaned}@c.us"
    return f"{cleaned}@c.us"


class MessageTransport:
    """Outbound chat transport contract used by registration and campaigns."""

    def get_status(self) -> TransportStatus:
        raise NotImplementedError

    def send_text(self, phone: str, body: str) -> None:
        raise NotImplementedError

    def send_media_with_caption(
        self,
        phone: str,
        media: bytes,
        mime_type: str,
        file_name: str,
        caption: str,
    ) -> None:
        raise NotImplementedError


def create_session() -> requests.Session:
    session = requests.Session()
    session.verify = certifi.where()
    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=BACKOFF_FACTOR,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class GatewayTransport(MessageTransport):
    """
    HTTP client for the WhatsApp gateway.

    Endpoints:
        GET  /status          -> {"ready": bool, "status": str}
        POST /messages/text   -> {"ok": bool, "error": str, "code": str}
        POST /messages/media  -> same shape as /messages/text
    Sends are not retried here (a POST may already have reached WhatsApp);
    callers decide whether to retry.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: int | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = (base_url or getattr(settings, "BINGO_GATEWAY_URL", "")).rstrip("/")
        self.token = token if token is not None else getattr(settings, "BINGO_GATEWAY_TOKEN", "")
        read_timeout = timeout or getattr(settings, "BINGO_GATEWAY_TIMEOUT", DEFAULT_READ_TIMEOUT)
        self.timeout = (DEFAULT_CONNECT_TIMEOUT, read_timeout)
        self.session = session or create_session()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, Optional[Dict[str, Any]], Optional[str]]:
        """
        Call the gateway.

        Returns:
            (success: bool, response_data: dict or None, error_message: str or None)
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        masked = _mask_token(self.token)
        try:
            response = self.session.request(
                method,
                url,
                json=json_data,
                headers=self._headers(),
                timeout=self.timeout,
            )
            try:
                data = response.json()
            except ValueError:
                data = {}
            if not isinstance(data, dict):
                data = {}
            if response.status_code == 200 and data.get("ok", True):
                return True, data, None
            error = data.get("error") or data.get("code") or f"HTTP {response.status_code}: {(response.text or '')[:200]}"
            if data.get("code") == "not_registered":
                error = f"not_registered: {error}"
            logger.warning(
                "Gateway error endpoint=%s token=%s status=%s: %s",
                endpoint,
                masked,
                response.status_code,
                error,
            )
            return False, data, str(error)
        except SSLError as e:
            logger.error("Gateway SSL error endpoint=%s: %s", endpoint, e)
            return False, None, f"SSL error: {e}"
        except ConnectionError as e:
            logger.error("Gateway connection error endpoint=%s: %s", endpoint, e)
            return False, None, f"Connection error: {e}"
        except Timeout as e:
            logger.error("Gateway timeout endpoint=%s: %s", endpoint, e)
            return False, None, f"Timeout: {e}"
        except RequestException as e:
            logger.error("Gateway request error endpoint=%s: %s", endpoint, e)
            return False, None, f"Request error: {e}"

    def _raise_for_send(self, error: str | None) -> None:
        lowered = (error or "").lower()
        if any(marker in lowered for marker in NOT_REGISTERED_MARKERS):
            raise RecipientNotRegistered(debug=error)
        raise TransportError(debug=error or "Unknown gateway error")

    def get_status(self) -> TransportStatus:
        success, data, error = self._request("GET", "status")
        if not success or data is None:
            return TransportStatus(ready=False, diagnostic=error or "Gateway unreachable")
        ready = bool(data.get("ready"))
        return TransportStatus(ready=ready, diagnostic=str(data.get("status") or ("ready" if ready else "not ready")))

    def send_text(self, phone: str, body: str) -> None:
        chat_id = format_chat_id(phone)
        success, _, error = self._request("POST", "messages/text", {"chatId": chat_id, "message": body})
        if not success:
            self._raise_for_send(error)
        logger.info("send_text ok phone=%s", mask_phone(phone))

    def send_media_with_caption(
        self,
        phone: str,
        media: bytes,
        mime_type: str,
        file_name: str,
        caption: str,
    ) -> None:
        chat_id = format_chat_id(phone)
        payload = {
            "chatId": chat_id,
            "caption": caption,
            "media": {
                "mimetype": mime_type,
                "data": base64.b64encode(media).decode("ascii"),
                "filename": file_name,
            },
        }
        success, _, error = self._request("POST", "messages/media", payload)
        if not success:
            self._raise_for_send(error)
        logger.info("send_media ok phone=%s file=%s", mask_phone(phone), file_name)


def get_transport() -> MessageTransport:
    """Default transport built from settings."""
    return GatewayTransport()
