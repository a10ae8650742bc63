# api_server.py
import asyncio
import dataclasses
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ──────────────────────────────────────────────
# Load env BEFORE importing config-backed services
# ──────────────────────────────────────────────
HERE = Path(__file__).resolve().parent
load_dotenv(HERE / ".env")

from fastapi import FastAPI, HTTPException, Depends, Header, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import DELIVERY_MODE, QR_UNKNOWN_PLACEHOLDER, TICKET_API_KEY, validate_config
from domain.errors import DeliveryError, InvalidTransition, MissingRecipient, PersistenceError, UnknownRow
from domain.models import AttendeeRecord
from services.email_service import SmtpDeliveryChannel, decode_qr_code_field, make_channel
from services.registration_service import RegistrationGateway
from services.ticket_pipeline import TicketPipeline, payment_confirmed
from services.upload_service import parse_attendee_file
from utils.logging_config import setup_logging
from utils.qr_scan_utils import decode_qr_image, parse_scanned_text_to_id, parse_ticket_text

setup_logging()
validate_config()

app = FastAPI(title="Event Ticket Desk API")

ALLOWED_ORIGINS = [
    "http://localhost:5173",            # vite dev server
    "http://localhost:4173",            # vite preview
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


# ──────────────────────────────────────────────
# Simple API-key auth (env driven)
#   - Set TICKET_API_KEY in .env to enable
#   - Clients send X-API-Key: <key>  OR  Authorization: Bearer <key>
# ──────────────────────────────────────────────
def require_api_key(
    x_api_key: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    expected = os.getenv("TICKET_API_KEY") or TICKET_API_KEY
    if not expected:
        # auth disabled (e.g., local dev)
        return
    token = None
    if x_api_key:
        token = x_api_key.strip()
    elif authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    if not token or token != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


# ──────────────────────────────────────────────
# Shared collaborators (overridable in tests)
# ──────────────────────────────────────────────
_gateway: Optional[RegistrationGateway] = None
_pipeline: Optional[TicketPipeline] = None

def get_gateway() -> RegistrationGateway:
    global _gateway
    if _gateway is None:
        _gateway = RegistrationGateway()
    return _gateway

def get_pipeline() -> TicketPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = TicketPipeline(make_channel(DELIVERY_MODE), get_gateway())
    return _pipeline

def get_mailer() -> SmtpDeliveryChannel:
    return SmtpDeliveryChannel()


# ──────────────────────────────────────────────
# Models
# ──────────────────────────────────────────────
class SendQrEmailReq(BaseModel):
    email: str | None = None
    name: str | None = None
    qrCode: str | None = None

class UpdateTicketStatusReq(BaseModel):
    id: str
    registrationType: str = "student"

class VerifyTicketReq(BaseModel):
    qrText: str | None = None   # raw text from a scanner
    qrCode: str | None = None   # or the ticket image as a data URL / base64

def _record_json(rec: AttendeeRecord) -> dict:
    data = dataclasses.asdict(rec)
    data["registration_type"] = rec.category
    return data

def _row_json(row_id: str, rec: AttendeeRecord, status) -> dict:
    return {
        "row_id": row_id,
        "record": _record_json(rec),
        "status": status.status.value,
        "error": status.error,
    }

def _outcome_json(outcome) -> dict:
    return {
        "row_id": outcome.row_id,
        "status": outcome.status.value,
        "attempted": outcome.attempted,
        "error": outcome.error,
        "delivery_id": outcome.delivery_id,
        "persistence_error": outcome.persistence_error,
    }


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────
@app.get("/api/health")
def health():
    return {"ok": True}

@app.get("/api/test")
def api_test():
    return {"success": True, "message": "API server is running"}

@app.get("/api/dbinfo", dependencies=[Depends(require_api_key)])
def db_info(gateway: RegistrationGateway = Depends(get_gateway)):
    return gateway.check_connection()


# ──────────────────────────────────────────────
# Send endpoint (target of HttpDeliveryChannel)
# ──────────────────────────────────────────────
@app.post("/api/send-qr-email", dependencies=[Depends(require_api_key)])
async def send_qr_email(payload: SendQrEmailReq, mailer: SmtpDeliveryChannel = Depends(get_mailer)):
    if not payload.email or not payload.name or not payload.qrCode:
        return JSONResponse(status_code=400, content={"success": False, "error": "Missing required parameters"})
    try:
        png = decode_qr_code_field(payload.qrCode)
        email_id = await asyncio.to_thread(mailer.send_png, payload.email, payload.name, png)
    except DeliveryError as e:
        code = e.status_code if e.status_code and 400 <= e.status_code < 600 else (400 if e.status_class == "client" else 500)
        return JSONResponse(status_code=code, content={"success": False, "error": e.message})
    return {"success": True, "message": "Ticket email sent successfully", "emailId": email_id}


# ──────────────────────────────────────────────
# Registrations (persistence gateway)
# ──────────────────────────────────────────────
@app.get("/api/registrations", dependencies=[Depends(require_api_key)])
def list_registrations(gateway: RegistrationGateway = Depends(get_gateway)):
    try:
        return [_record_json(r) for r in gateway.fetch_registrations()]
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))

@app.post("/api/update-ticket-status", dependencies=[Depends(require_api_key)])
def update_ticket_status(payload: UpdateTicketStatusReq, gateway: RegistrationGateway = Depends(get_gateway)):
    try:
        gateway.mark_ticket_generated(payload.id, payload.registrationType)
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True}


# ──────────────────────────────────────────────
# Ticket pipeline
# ──────────────────────────────────────────────
@app.post("/api/tickets/import", dependencies=[Depends(require_api_key)])
async def import_tickets(file: UploadFile = File(...), pipeline: TicketPipeline = Depends(get_pipeline)):
    summary = parse_attendee_file(file.file, file.filename or "upload.csv")
    if not summary.records and summary.errors:
        raise HTTPException(status_code=400, detail="; ".join(summary.errors))
    row_ids = pipeline.load(summary.records)
    return {
        "imported": summary.imported,
        "skipped": summary.skipped,
        "duplicates": summary.duplicates,
        "errors": summary.errors,
        "row_ids": row_ids,
    }

@app.post("/api/tickets/load", dependencies=[Depends(require_api_key)])
def load_tickets(
    pipeline: TicketPipeline = Depends(get_pipeline),
    gateway: RegistrationGateway = Depends(get_gateway),
):
    try:
        records = gateway.fetch_registrations()
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    pipeline.load(records, replace=True)
    return {"loaded": len(records), "counts": pipeline.tracker.counts()}

@app.get("/api/tickets", dependencies=[Depends(require_api_key)])
def list_tickets(pipeline: TicketPipeline = Depends(get_pipeline)):
    return {
        "counts": pipeline.tracker.counts(),
        "rows": [_row_json(rid, rec, st) for rid, rec, st in pipeline.rows()],
    }

@app.post("/api/tickets/send-pending", dependencies=[Depends(require_api_key)])
async def send_pending(paid_only: bool = True, pipeline: TicketPipeline = Depends(get_pipeline)):
    summary = await pipeline.send_all_pending(eligible=payment_confirmed if paid_only else None)
    return {**summary.counts(), "outcomes": [_outcome_json(o) for o in summary.outcomes]}

@app.post("/api/tickets/verify", dependencies=[Depends(require_api_key)])
async def verify_ticket(payload: VerifyTicketReq, pipeline: TicketPipeline = Depends(get_pipeline)):
    text = payload.qrText
    if payload.qrCode:
        try:
            png = decode_qr_code_field(payload.qrCode)
        except DeliveryError as e:
            raise HTTPException(status_code=400, detail=e.message)
        text = await asyncio.to_thread(decode_qr_image, png)
        if not text:
            raise HTTPException(status_code=422, detail="No QR code found in image")
    if not text:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    ticket_id = parse_scanned_text_to_id(text)
    if not ticket_id:
        raise HTTPException(status_code=422, detail="Unreadable ticket")
    ticket = parse_ticket_text(text) or {}
    email = str(ticket.get("email") or "")
    if email == QR_UNKNOWN_PLACEHOLDER:
        email = ""

    matches = []
    for rid in pipeline.lookup(ticket_id, email):
        matches.append(_row_json(rid, pipeline.record(rid), pipeline.status(rid)))
    return {
        "ticket_id": ticket_id,
        "valid": any(m["status"] == "sent" for m in matches),
        "rows": matches,
    }

async def _row_op(op, row_id: str) -> dict:
    try:
        outcome = await op(row_id)
    except UnknownRow as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MissingRecipient as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _outcome_json(outcome)

@app.post("/api/tickets/{row_id}/send", dependencies=[Depends(require_api_key)])
async def send_ticket(row_id: str, pipeline: TicketPipeline = Depends(get_pipeline)):
    return await _row_op(pipeline.send_one, row_id)

@app.post("/api/tickets/{row_id}/retry", dependencies=[Depends(require_api_key)])
async def retry_ticket(row_id: str, pipeline: TicketPipeline = Depends(get_pipeline)):
    return await _row_op(pipeline.retry, row_id)

@app.post("/api/tickets/{row_id}/resend", dependencies=[Depends(require_api_key)])
async def resend_ticket(row_id: str, pipeline: TicketPipeline = Depends(get_pipeline)):
    return await _row_op(pipeline.resend, row_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host=os.getenv("API_HOST", "0.0.0.0"), port=int(os.getenv("API_PORT", "8000")))
