# services/email_service.py
"""
Delivery channels for QR tickets.

Both channels implement `async send(recipient, display_name, artifact)`
returning a delivery id and raising DeliveryError on failure:
- SmtpDeliveryChannel sends the ticket email directly over SMTP
- HttpDeliveryChannel posts the ticket to a send endpoint (see api_server)
"""
from __future__ import annotations

import asyncio
import base64
import datetime
import html
import logging
import re
import textwrap
from zoneinfo import ZoneInfo

import httpx

from utils.email_utils import send_email_with_inline_qr
from services.qr_service import generate_ticket_number
from domain.errors import DeliveryError
from domain.models import ImageArtifact
from config import (
    APP_TZ,
    EVENT_NAME,
    EVENT_DATES,
    EVENT_VENUE,
    EVENT_TIME,
    EVENT_LOGO_URL,
    SEND_ENDPOINT_URL,
    SEND_ENDPOINT_TIMEOUT,
)

logger = logging.getLogger(__name__)

QR_CID = "ticket-qrcode"


def ticket_subject() -> str:
    return f"Your {EVENT_NAME} Event Ticket"


def build_ticket_email(
    *,
    name: str,
    email: str,
    ticket_number: str,
    issued_at: datetime.datetime,
    qr_cid: str = QR_CID,
) -> str:
    safe_name = html.escape(name or "Attendee")
    safe_email = html.escape(email)
    issued = issued_at.strftime("%d %b %Y at %I:%M %p")
    logo = (
        f'<div style="background:#111;padding:20px;text-align:center;">'
        f'<img src="{html.escape(EVENT_LOGO_URL)}" alt="{html.escape(EVENT_NAME)}" style="max-width:250px;"/></div>'
        if EVENT_LOGO_URL else ""
    )

    return textwrap.dedent(f"""\
        <div style="font-family:'Segoe UI',Arial,sans-serif;max-width:600px;margin:0 auto;color:#333;line-height:1.6;">
          {logo}
          <div style="padding:28px;background:#fff;border:1px solid #ddd;border-radius:12px;">
            <h2 style="color:#2b2d42;border-bottom:2px solid #3498db;padding-bottom:10px;">
              Your Event Ticket
              <span style="background:#28a745;color:#fff;padding:4px 10px;border-radius:50px;font-size:14px;">CONFIRMED</span>
            </h2>
            <p>Dear <strong>{safe_name}</strong>,</p>
            <p>Thank you for registering for {html.escape(EVENT_NAME)}! Your e-ticket is below.
               This ticket confirms your participation in the event.</p>

            <table style="width:100%;border-collapse:collapse;margin:18px 0;">
              <tr><td style="font-weight:bold;width:40%;">Name</td><td><strong>{safe_name}</strong></td></tr>
              <tr><td style="font-weight:bold;">Email</td><td>{safe_email}</td></tr>
              <tr><td style="font-weight:bold;">Ticket Number</td><td><strong>{html.escape(ticket_number)}</strong></td></tr>
              <tr><td style="font-weight:bold;">Issue Date</td><td>{issued}</td></tr>
              <tr><td style="font-weight:bold;">Ticket Status</td><td><strong style="color:#28a745">CONFIRMED</strong></td></tr>
            </table>

            <div style="text-align:center;margin:16px 0;">
              <img src="cid:{qr_cid}" alt="Ticket QR Code" style="max-width:200px;border:1px solid #ddd;padding:10px;border-radius:8px;"/>
              <div style="font-size:18px;font-weight:bold;">{html.escape(ticket_number)}</div>
            </div>

            <div style="background:#fff8e6;border-left:4px solid #f59e0b;padding:12px 15px;margin:20px 0;">
              <p><strong>Event:</strong> {html.escape(EVENT_NAME)}</p>
              <p><strong>Date:</strong> {html.escape(EVENT_DATES)}</p>
              <p><strong>Venue:</strong> {html.escape(EVENT_VENUE)}</p>
              <p><strong>Time:</strong> {html.escape(EVENT_TIME)}</p>
            </div>

            <h4 style="margin:18px 0 8px;">Instructions</h4>
            <ul style="padding-left:20px;margin:0;">
              <li>Please arrive at least 30 minutes before the event starts.</li>
              <li>Keep this ticket (digital or printed) with you for entry.</li>
              <li>Present the QR code at the registration desk for check-in.</li>
              <li>College ID card is MANDATORY for entry.</li>
              <li>This ticket is non-transferable and valid for one person only.</li>
            </ul>

            <p style="margin-top:16px;">Warm regards,<br/><b>{html.escape(EVENT_NAME)} Team</b></p>
          </div>
        </div>
    """)


class SmtpDeliveryChannel:
    """Emails the ticket with the QR embedded inline."""

    def __init__(self, *, bcc: str | None = None):
        self.bcc = bcc

    def send_png(self, recipient: str, display_name: str, qr_png: bytes) -> str:
        """Blocking send of an already rendered QR; returns the Message-ID."""
        issued_at = datetime.datetime.now(tz=ZoneInfo(APP_TZ))
        body = build_ticket_email(
            name=display_name,
            email=recipient,
            ticket_number=generate_ticket_number(),
            issued_at=issued_at,
        )
        logger.info("Sending ticket email to: %s <%s>", display_name, recipient)
        return send_email_with_inline_qr(
            recipient=recipient,
            subject=ticket_subject(),
            body_html=body,
            qr_bytes=qr_png,
            qr_cid=QR_CID,
            bcc=self.bcc,
        )

    async def send(self, recipient: str, display_name: str, artifact: ImageArtifact) -> str:
        return await asyncio.to_thread(self.send_png, recipient, display_name, artifact.png)


class HttpDeliveryChannel:
    """
    Posts {email, name, qrCode} to a send endpoint. qrCode is a
    data:image/png;base64 URL. The endpoint answers {"success": true,
    "emailId": ...} or an error body with an "error" message.
    """

    def __init__(self, url: str = SEND_ENDPOINT_URL, *, timeout: float = SEND_ENDPOINT_TIMEOUT,
                 client: httpx.AsyncClient | None = None, api_key: str | None = None):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self._client = client

    async def send(self, recipient: str, display_name: str, artifact: ImageArtifact) -> str:
        body = {"email": recipient, "name": display_name, "qrCode": artifact.data_url}
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Network error: no response from {self.url} ({e})", "server") from e

        data = _json_or_text(resp)
        if resp.status_code >= 400:
            message = data.get("error") or data.get("detail") or resp.reason_phrase or "Unknown error"
            status_class = "client" if resp.status_code < 500 else "server"
            raise DeliveryError(str(message), status_class, resp.status_code)

        delivery_id = data.get("emailId") or data.get("messageId")
        if not delivery_id:
            raise DeliveryError("Invalid server response: no delivery id", "server", resp.status_code)
        return str(delivery_id)


_DATA_URL_RE = re.compile(r"^data:([A-Za-z0-9.+/-]+);base64,(.+)$", re.S)


def decode_qr_code_field(qr_code: str) -> bytes:
    """qrCode request field (data URL or bare base64) → image bytes."""
    m = _DATA_URL_RE.match(qr_code.strip())
    raw = m.group(2) if m else qr_code.strip()
    try:
        return base64.b64decode(raw, validate=True)
    except ValueError as e:
        raise DeliveryError("qrCode is not valid base64 image data", "client", 400) from e


def _json_or_text(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {"error": resp.text.strip()} if resp.text.strip() else {}
    return data if isinstance(data, dict) else {}


def make_channel(mode: str, **kwargs):
    """Channel factory for config.DELIVERY_MODE."""
    if mode == "http":
        return HttpDeliveryChannel(**kwargs)
    if mode == "smtp":
        return SmtpDeliveryChannel(**kwargs)
    raise ValueError(f"Unknown delivery mode: {mode}")
