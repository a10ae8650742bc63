# services/qr_service.py
from __future__ import annotations

import random

from utils.qr_utils import build_ticket_payload, encode_payload_text, render_qr_png
from domain.models import AttendeeRecord, ImageArtifact
from config import TICKET_ID_PREFIX

__all__ = ["encode", "generate_ticket_number"]


def encode(record: AttendeeRecord) -> ImageArtifact:
    """
    Build the ticket payload for this record and render it as a QR PNG.

    Pure: the same record always yields the same payload text and image bytes.
    Raises InvalidPayload when the record has neither an id nor an email.
    """
    payload = build_ticket_payload(record)
    text = encode_payload_text(payload)
    return ImageArtifact(payload=payload, payload_text=text, png=render_qr_png(text))


def generate_ticket_number() -> str:
    """Human-facing ticket number printed in the email, e.g. MJ25-483920."""
    return f"{TICKET_ID_PREFIX}{random.randint(100000, 999999)}"
