# utils/email_utils.py
"""
Low-level SMTP sending for ticket emails.

Everything here raises DeliveryError; callers never see smtplib exceptions.
Sending is skipped (and logged) when EMAIL_DRY_RUN is on.
"""
from __future__ import annotations

import html as html_lib
import logging
import re
import smtplib
import unicodedata
from email.header import Header
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import List, Optional

from domain.errors import DeliveryError
from config import (
    SMTP_HOST,
    SMTP_PORT,
    SMTP_SECURITY,       # "ssl" | "starttls" | "none"
    SMTP_USERNAME,
    SMTP_PASSWORD,
    SENDER_EMAIL,
    SENDER_NAME,
    REPLY_TO,
    DEFAULT_BCC,
    EMAIL_SUBJECT_PREFIX,
    EMAIL_DRY_RUN,
    EMAIL_ALLOWLIST_REGEX,
    ORG_LIST_UNSUBSCRIBE,
)

logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 30


# ---------- text helpers ----------
def _nfc(value) -> str:
    if value is None:
        return ""
    return unicodedata.normalize("NFC", str(value).replace("\xa0", " "))

def _address(value) -> str:
    """Email address with every whitespace character removed."""
    return re.sub(r"\s+", "", _nfc(value))

def _address_list(*csv_values: Optional[str]) -> List[str]:
    """Split comma lists, normalise, dedupe keeping first occurrence."""
    out: List[str] = []
    for csv in csv_values:
        for part in (csv or "").split(","):
            addr = _address(part)
            if addr and addr not in out:
                out.append(addr)
    return out

def strip_html_to_text(html: str) -> str:
    """Plain-text rendition of the HTML body for multipart/alternative."""
    if not html:
        return ""
    txt = re.sub(r"<(style|head)[^>]*>.*?</\1>", "", html, flags=re.I | re.S)
    txt = re.sub(r"<br\s*/?>|</p>|</tr>|</li>|</h\d>", "\n", txt, flags=re.I)
    txt = re.sub(r"<[/!]?[a-zA-Z][^>]*>", "", txt)
    txt = html_lib.unescape(txt)
    txt = re.sub(r"[ \t]+", " ", txt)
    txt = re.sub(r" *\n *", "\n", txt)
    txt = re.sub(r"\n{3,}", "\n\n", txt)
    return txt.strip()


# ---------- policy ----------
def _load_allowlist() -> Optional[re.Pattern]:
    if not EMAIL_ALLOWLIST_REGEX:
        return None
    try:
        return re.compile(EMAIL_ALLOWLIST_REGEX, re.I)
    except re.error as e:
        raise RuntimeError(f"Bad EMAIL_ALLOWLIST_REGEX: {EMAIL_ALLOWLIST_REGEX}") from e

_ALLOWLIST_RE = _load_allowlist()

def _enforce_allowlist(addresses: List[str]) -> None:
    if _ALLOWLIST_RE is None:
        return
    blocked = [a for a in addresses if not _ALLOWLIST_RE.search(a)]
    if blocked:
        raise DeliveryError(f"Email blocked by allowlist: {', '.join(blocked)}", "client")

def _require_smtp_settings() -> None:
    if EMAIL_DRY_RUN:
        return
    problem = None
    if not (SMTP_HOST and SMTP_PORT is not None and SENDER_EMAIL):
        problem = "SMTP host/port/sender missing"
    elif SMTP_SECURITY not in {"ssl", "starttls", "none"}:
        problem = "SMTP_SECURITY must be 'ssl', 'starttls', or 'none'"
    elif bool(SMTP_USERNAME) != bool(SMTP_PASSWORD):
        problem = "SMTP username/password must be provided together"
    if problem:
        raise DeliveryError(f"Email configuration error: {problem}", "server")


# ---------- transport ----------
def _connect() -> smtplib.SMTP:
    if SMTP_SECURITY == "ssl":
        server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT)
    else:
        server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT)
        if SMTP_SECURITY == "starttls":
            server.starttls()
    if SMTP_USERNAME:
        server.login(SMTP_USERNAME, SMTP_PASSWORD)
    return server

def _to_delivery_error(e: Exception) -> DeliveryError:
    """Refusals and 5xx replies are client errors; everything else is worth retrying."""
    if isinstance(e, smtplib.SMTPRecipientsRefused):
        return DeliveryError(
            f"Failed to send email: recipient refused ({', '.join(e.recipients)})", "client"
        )
    if isinstance(e, smtplib.SMTPAuthenticationError):
        return DeliveryError(f"Email configuration error: {e.smtp_error!r}", "server", e.smtp_code)
    if isinstance(e, smtplib.SMTPResponseException):
        reply = e.smtp_error
        if isinstance(reply, bytes):
            reply = reply.decode("utf-8", "replace")
        status_class = "client" if 500 <= e.smtp_code < 600 else "server"
        return DeliveryError(f"Failed to send email: {reply}", status_class, e.smtp_code)
    return DeliveryError(f"Failed to send email: {e}", "server")

def _transmit(msg: MIMEMultipart) -> None:
    if EMAIL_DRY_RUN:
        logger.info(
            "[DRY-RUN] Would send email → TO=%s BCC=%s SUBJ=%s",
            msg.get("To", ""), msg.get("Bcc", ""), msg.get("Subject", ""),
        )
        return
    try:
        server = _connect()
        try:
            server.send_message(msg)
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        raise _to_delivery_error(e) from e


# ---------- message ----------
def _subject(subject: str) -> str:
    subject = _nfc(subject)
    if EMAIL_SUBJECT_PREFIX and not subject.startswith(EMAIL_SUBJECT_PREFIX):
        subject = EMAIL_SUBJECT_PREFIX + subject
    return subject

def send_email_with_inline_qr(
    recipient: str,
    subject: str,
    body_html: str,
    *,
    qr_bytes: bytes,
    qr_cid: str = "ticket-qrcode",
    attachment_filename: str = "qrcode.png",
    sender_name: str = SENDER_NAME,
    reply_to: str | None = REPLY_TO,
    bcc: str | None = None,
) -> str:
    """
    Send an HTML email with the QR embedded inline; body_html refers to it
    as <img src="cid:{qr_cid}">. DEFAULT_BCC is always added.

    Returns the Message-ID.
    """
    _require_smtp_settings()

    to_addr = _address(recipient)
    if not to_addr:
        raise DeliveryError("Missing required parameters: recipient email", "client")
    bcc_addrs = _address_list(bcc, DEFAULT_BCC)
    _enforce_allowlist([to_addr, *bcc_addrs])

    body_html = _nfc(body_html)
    domain = SENDER_EMAIL.split("@")[-1] if SENDER_EMAIL else None
    message_id = make_msgid(domain=domain)

    msg = MIMEMultipart("related")
    msg["From"] = formataddr((str(Header(_nfc(sender_name), "utf-8")), SENDER_EMAIL))
    msg["To"] = to_addr
    if bcc_addrs:
        msg["Bcc"] = ",".join(bcc_addrs)
    msg["Subject"] = Header(_subject(subject), "utf-8")
    msg["Message-ID"] = message_id
    if reply_to:
        msg["Reply-To"] = _address(reply_to)
    if ORG_LIST_UNSUBSCRIBE:
        msg["List-Unsubscribe"] = ORG_LIST_UNSUBSCRIBE

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(strip_html_to_text(body_html), "plain", "utf-8"))
    alt.attach(MIMEText(body_html, "html", "utf-8"))
    msg.attach(alt)

    qr_part = MIMEImage(qr_bytes, _subtype="png")
    qr_part.add_header("Content-ID", f"<{qr_cid}>")
    qr_part.add_header("Content-Disposition", "inline", filename=("utf-8", "", attachment_filename))
    msg.attach(qr_part)

    _transmit(msg)
    return message_id
