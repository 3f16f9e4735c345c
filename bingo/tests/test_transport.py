"""
Registro: Tests for the WhatsApp gateway client. The HTTP session is mocked.
"""

import base64
from unittest.mock import MagicMock

from django.test import SimpleTestCase
from requests.exceptions import ConnectionError

from bingo.exceptions import RecipientNotRegistered, TransportError
from bingo.services.transport import GatewayTransport, format_chat_id, mask_phone


def _response(status=200, data=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = data if data is not None else {}
    resp.text = ""
    return resp


class FormatChatIdTests(SimpleTestCase):
    def test_local_numbers(self):
        self.assertEqual(format_chat_id("0991234567"), "593991234567@c.us")
        self.assertEqual(format_chat_id("991234567"), "593991234567@c.us")
        self.assertEqual(format_chat_id("+593 99 123 4567"), "593991234567@c.us")

    def test_too_short(self):
        with self.assertRaises(TransportError):
            format_chat_id("12345")

    def test_mask_phone(self):
        self.assertEqual(mask_phone("0991234567"), "***4567")
        self.assertEqual(mask_phone("12"), "***")


class GatewayTransportTests(SimpleTestCase):
    def setUp(self):
        self.session = MagicMock()
        self.transport = GatewayTransport(base_url="http://gw.local/", token="secret-token", session=self.session)

    def test_status_ready(self):
        self.session.request.return_value = _response(200, {"ready": True, "status": "CONNECTED"})
        status = self.transport.get_status()
        self.assertTrue(status.ready)
        self.assertEqual(status.diagnostic, "CONNECTED")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "http://gw.local/status"))
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer secret-token"})

    def test_status_unreachable(self):
        self.session.request.side_effect = ConnectionError("refused")
        status = self.transport.get_status()
        self.assertFalse(status.ready)
        self.assertIn("Connection error", status.diagnostic)

    def test_send_text_payload(self):
        self.session.request.return_value = _response(200, {"ok": True})
        self.transport.send_text("0991234567", "hola")
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["json"], {"chatId": "593991234567@c.us", "message": "hola"})

    def test_send_media_payload(self):
        self.session.request.return_value = _response(200, {"ok": True})
        self.transport.send_media_with_caption("0991234567", b"%PDF", "application/pdf", "t.pdf", "tu tabla")
        payload = self.session.request.call_args.kwargs["json"]
        self.assertEqual(payload["media"]["data"], base64.b64encode(b"%PDF").decode())
        self.assertEqual(payload["media"]["mimetype"], "application/pdf")
        self.assertEqual(payload["caption"], "tu tabla")

    def test_not_registered(self):
        self.session.request.return_value = _response(404, {"ok": False, "code": "not_registered"})
        with self.assertRaises(RecipientNotRegistered):
            self.transport.send_text("0991234567", "hola")

    def test_gateway_error(self):
        self.session.request.return_value = _response(500, {"ok": False, "error": "session closed"})
        with self.assertRaises(TransportError) as cm:
            self.transport.send_text("0991234567", "hola")
        self.assertNotIsInstance(cm.exception, RecipientNotRegistered)
        self.assertEqual(cm.exception.debug, "session closed")
