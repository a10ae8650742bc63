from __future__ import annotations

import base64
import enum
from dataclasses import dataclass, field
from typing import Optional, ClassVar


@dataclass
class AttendeeRecord:
    """Fields shared by every registration category."""
    id: str
    name: str
    email: str
    institutional_id: Optional[str] = None
    department: Optional[str] = None
    mobile: Optional[str] = None
    payment_status: Optional[str] = None
    ticket_generated: bool = False

    category: ClassVar[str] = "student"

    @property
    def payment_confirmed(self) -> bool:
        return (self.payment_status or "").strip().lower() == "paid"


@dataclass
class StudentRegistration(AttendeeRecord):
    gender: Optional[str] = None

    category: ClassVar[str] = "student"


@dataclass
class AlumniRegistration(AttendeeRecord):
    passout_year: Optional[str] = None
    current_organization: Optional[str] = None

    category: ClassVar[str] = "alumni"


RECORD_TYPES = {
    StudentRegistration.category: StudentRegistration,
    AlumniRegistration.category: AlumniRegistration,
}


@dataclass(frozen=True)
class TicketPayload:
    id: str
    name: str
    email: str
    institutional_id: str

    def as_dict(self) -> dict:
        # key order is part of the encoded ticket; keep it fixed
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "jis_id": self.institutional_id,
        }


@dataclass(frozen=True)
class ImageArtifact:
    payload: TicketPayload
    payload_text: str
    png: bytes
    mime_type: str = "image/png"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.png).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class RowStatus:
    status: DeliveryStatus
    error: Optional[str] = None


@dataclass
class SendOutcome:
    row_id: str
    status: DeliveryStatus
    attempted: bool = True
    error: Optional[str] = None
    delivery_id: Optional[str] = None
    persistence_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.SENT


@dataclass
class BatchSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    outcomes: list[SendOutcome] = field(default_factory=list)

    def counts(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class ImportSummary:
    records: list[AttendeeRecord] = field(default_factory=list)
    skipped: int = 0
    duplicates: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return len(self.records)
