# utils/qr_utils.py
from __future__ import annotations

import io
import json
from typing import Any, Dict, Optional

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_H

# All knobs come from config (no env reads, no magic strings)
from config import QR_IMAGE_OPTS, QR_UNKNOWN_PLACEHOLDER
from domain.errors import InvalidPayload
from domain.models import AttendeeRecord, TicketPayload


# ──────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────
def _text_or_unknown(val: Any, placeholder: str = QR_UNKNOWN_PLACEHOLDER) -> str:
    if val is None:
        return placeholder
    s = str(val).strip()
    if not s or s.lower() in {"nan", "none", "null"}:
        return placeholder
    return s


def _qr_matrix_image(text: str, opts: Dict[str, Any]) -> Image.Image:
    """Render the QR matrix with config-driven options."""
    qr = qrcode.QRCode(
        version=opts.get("version", None),
        error_correction=opts.get("error_correction", ERROR_CORRECT_H),
        box_size=opts.get("box_size", 10),
        border=opts.get("border", 2),
    )
    qr.add_data(text)
    qr.make(fit=True)

    # pick the largest whole-pixel module size that still fits the target
    size_px = opts.get("size_px")
    if size_px:
        modules = qr.modules_count + 2 * qr.border
        qr.box_size = max(1, size_px // modules)
    return qr.make_image(fill_color="black", back_color="white").get_image()


# ──────────────────────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────────────────────
def build_ticket_payload(record: AttendeeRecord) -> TicketPayload:
    """Pick the identity fields that go into the ticket; blanks become the placeholder."""
    has_id = _text_or_unknown(record.id, "") != ""
    has_email = _text_or_unknown(record.email, "") != ""
    if not has_id and not has_email:
        raise InvalidPayload("Ticket needs at least an attendee id or an email address")

    return TicketPayload(
        id=_text_or_unknown(record.id),
        name=_text_or_unknown(record.name),
        email=_text_or_unknown(record.email),
        institutional_id=_text_or_unknown(record.institutional_id),
    )


def encode_payload_text(payload: TicketPayload) -> str:
    """Compact JSON string that the scanner reads back."""
    return json.dumps(payload.as_dict(), ensure_ascii=False, separators=(",", ":"))


def render_qr_png(text: str, opts: Optional[Dict[str, Any]] = None) -> bytes:
    """PNG bytes of a QR code for `text`, scaled to opts["size_px"] square."""
    opts = {**QR_IMAGE_OPTS, **(opts or {})}
    img = _qr_matrix_image(text, opts).convert("L")

    size_px = opts.get("size_px")
    if size_px and img.size != (size_px, size_px):
        # pad with white quiet zone rather than stretching the modules
        canvas = Image.new("L", (max(size_px, img.width), max(size_px, img.height)), 255)
        canvas.paste(img, ((canvas.width - img.width) // 2, (canvas.height - img.height) // 2))
        img = canvas
        if img.size != (size_px, size_px):
            img = img.resize((size_px, size_px), Image.NEAREST)

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
