# utils/qr_scan_utils.py
import base64
import json
import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse, parse_qs, unquote

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Keys that may carry the attendee id (case-insensitive)
ID_KEYS_LOWER = {"id", "attendee_id", "registration_id", "ticket_id"}

def _b64_try(s: str) -> Optional[str]:
    """Base64/URL-safe base64 decode; return None on failure."""
    s = (s or "").strip()
    if not s:
        return None
    s2 = s.replace("-", "+").replace("_", "/")
    pad = "=" * ((4 - len(s2) % 4) % 4)
    try:
        return base64.b64decode(s2 + pad, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None

def _json_obj(text: Optional[str]) -> Optional[dict]:
    if not text:
        return None
    try:
        obj = json.loads(text)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None

def _find_id_in_obj(obj: Any) -> Optional[str]:
    """Recursively search dict/list for an attendee id by key name."""
    if isinstance(obj, dict):
        for k, v in obj.items():
            if str(k).strip().lower() in ID_KEYS_LOWER and v not in (None, ""):
                return str(v)
        for v in obj.values():
            sub = _find_id_in_obj(v)
            if sub:
                return sub
    elif isinstance(obj, list):
        for v in obj:
            sub = _find_id_in_obj(v)
            if sub:
                return sub
    return None

def _payload_from_url(url: str) -> Optional[dict]:
    """Ticket JSON carried in a URL query (?data=/payload/qr/p), plain or base64url."""
    q = parse_qs(urlparse(url).query or "")
    for k in ("data", "payload", "qr", "p"):
        if k in q and q[k]:
            raw = unquote(q[k][0])
            obj = _json_obj(_b64_try(raw)) or _json_obj(raw)
            if obj is not None:
                return obj
    return None

def parse_ticket_text(text: str) -> Optional[dict]:
    """
    Accept raw QR text and return the ticket payload dict.
    - JSON object (what the encoder writes)
    - URL with ?data=/payload/qr/p params (possibly base64url)
    - raw base64-encoded JSON
    """
    if not text:
        return None
    s = text.strip()

    if s.startswith("{") and s.endswith("}"):
        return _json_obj(s)

    if s.startswith(("http://", "https://")):
        return _payload_from_url(s)

    return _json_obj(_b64_try(s))

def parse_scanned_text_to_id(text: str) -> Optional[str]:
    """Attendee id from scanned text; falls back to treating a bare token as the id."""
    obj = parse_ticket_text(text)
    if obj is not None:
        return _find_id_in_obj(obj)
    s = (text or "").strip()
    if re.fullmatch(r"[A-Za-z0-9\-_=]{1,64}", s):
        return s
    return None

def _decode_candidates(img: np.ndarray):
    """The image as given, with a wider quiet zone, and upscaled."""
    yield img
    padded = cv2.copyMakeBorder(img, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=255)
    yield padded
    yield cv2.resize(padded, None, fx=2, fy=2, interpolation=cv2.INTER_NEAREST)

def decode_qr_image(png_bytes: bytes) -> Optional[str]:
    """Decode the first QR code found in an encoded image; None when nothing is readable."""
    buf = np.frombuffer(png_bytes, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_GRAYSCALE)
    if img is None:
        logger.warning("Could not decode image bytes (%d bytes)", len(png_bytes))
        return None
    # the classic detector misses dense codes the aruco-based one reads
    detectors = (cv2.QRCodeDetector(), cv2.QRCodeDetectorAruco())
    for candidate in _decode_candidates(img):
        for detector in detectors:
            data, points, _ = detector.detectAndDecode(candidate)
            if data and points is not None:
                return data
    return None
