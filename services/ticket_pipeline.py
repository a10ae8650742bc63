# services/ticket_pipeline.py
"""
Ticket generation-and-delivery pipeline.

Rows come in from an import or from the registration tables, each row is
tracked in a StatusTracker, and sends go through a delivery channel one at a
time. Per-row failures land in the tracker instead of being raised, so a bad
row never stops a batch.

Delivery happens before the database flag is written. A crash between the two
leaves an emailed attendee still flagged as not ticketed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from config import TICKET_SEND_DELAY_SECONDS
from domain.errors import (
    DeliveryError,
    InvalidPayload,
    InvalidTransition,
    MissingRecipient,
    PersistenceError,
    UnknownRow,
)
from domain.models import (
    AttendeeRecord,
    BatchSummary,
    DeliveryStatus,
    ImageArtifact,
    RowStatus,
    SendOutcome,
)
from services.qr_service import encode
from services.status_tracker import StatusTracker

logger = logging.getLogger(__name__)

PENDING = DeliveryStatus.PENDING
SENDING = DeliveryStatus.SENDING
SENT = DeliveryStatus.SENT
FAILED = DeliveryStatus.FAILED


class DeliveryChannel(Protocol):
    async def send(self, recipient: str, display_name: str, artifact: ImageArtifact) -> str: ...


class TicketStore(Protocol):
    def mark_ticket_generated(self, record_id: str, category: str) -> None: ...


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


def row_key(record: AttendeeRecord) -> str:
    """Row identity; ids are only unique within a registration category."""
    return f"{record.category}:{record.id}"


def payment_confirmed(record: AttendeeRecord) -> bool:
    return record.payment_confirmed


class TicketPipeline:
    def __init__(
        self,
        channel: DeliveryChannel,
        store: Optional[TicketStore] = None,
        *,
        encoder: Callable[[AttendeeRecord], ImageArtifact] = encode,
        tracker: Optional[StatusTracker] = None,
        send_delay: float = TICKET_SEND_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.channel = channel
        self.store = store
        self.tracker = tracker or StatusTracker()
        self.send_delay = max(0.0, float(send_delay))
        self._encoder = encoder
        self._sleep = sleep
        self._records: Dict[str, AttendeeRecord] = {}

    # ──────────────────────────────────────────────────────
    # Rows
    # ──────────────────────────────────────────────────────
    def load(self, records: Iterable[AttendeeRecord], *, replace: bool = False) -> List[str]:
        """
        Register records in order. New rows flagged ticket_generated start as
        sent, the rest as pending. A row that is already tracked keeps its
        status and only has its fields refreshed; it moves to sent when the
        incoming record is flagged and the row is not mid-send.

        replace=True drops tracked rows missing from `records`, except rows
        that are mid-send.
        """
        records = list(records)
        if replace:
            incoming = {row_key(rec) for rec in records}
            for key, _ in self.tracker.items():
                if key not in incoming and self.tracker.discard(key, keep=(SENDING,)):
                    self._records.pop(key, None)

        keys = []
        for rec in records:
            key = row_key(rec)
            self._records[key] = rec
            keys.append(key)
            if key not in self.tracker:
                self.tracker.add(key, SENT if rec.ticket_generated else PENDING)
            elif rec.ticket_generated:
                self.tracker.settle(key, SENT, allowed_from=(PENDING, FAILED))
        logger.info("Loaded %d attendee row(s); %s", len(keys), self.tracker.counts())
        return keys

    def record(self, row_id: str) -> AttendeeRecord:
        try:
            return self._records[row_id]
        except KeyError:
            raise UnknownRow(row_id) from None

    def status(self, row_id: str) -> RowStatus:
        return self.tracker.get(row_id)

    def rows(self) -> List[Tuple[str, AttendeeRecord, RowStatus]]:
        return [(rid, self._records[rid], st) for rid, st in self.tracker.items() if rid in self._records]

    def lookup(self, record_id: str, email: Optional[str] = None) -> List[str]:
        """Row ids whose record carries this id (and this email, when given)."""
        email = (email or "").strip().lower()
        return [
            rid for rid, rec, _ in self.rows()
            if rec.id == record_id and (not email or (rec.email or "").strip().lower() == email)
        ]

    # ──────────────────────────────────────────────────────
    # Single-row operations
    # ──────────────────────────────────────────────────────
    async def send_one(self, row_id: str) -> SendOutcome:
        """First-time send from pending (or failed). No-op while the row is already sending."""
        return await self._deliver(row_id, allowed_from=(PENDING, FAILED), action="send")

    async def retry(self, row_id: str) -> SendOutcome:
        return await self._deliver(row_id, allowed_from=(FAILED,), action="retry")

    async def resend(self, row_id: str) -> SendOutcome:
        """Explicit re-delivery of a ticket that already went out."""
        return await self._deliver(row_id, allowed_from=(SENT,), action="resend")

    # ──────────────────────────────────────────────────────
    # Batch
    # ──────────────────────────────────────────────────────
    async def send_all_pending(
        self,
        eligible: Optional[Callable[[AttendeeRecord], bool]] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> BatchSummary:
        """
        Send every pending row (optionally filtered by `eligible`) strictly one
        after another, in load order, waiting send_delay seconds between rows.
        `cancel` is checked before each row.
        """
        selected = [
            rid for rid in self.tracker.ids_with(PENDING)
            if eligible is None or eligible(self._records[rid])
        ]
        summary = BatchSummary()
        logger.info("Sending tickets to %d pending row(s)", len(selected))

        for i, rid in enumerate(selected):
            if i and self.send_delay:
                await self._sleep(self.send_delay)
            if cancel is not None and cancel.is_set():
                summary.cancelled = True
                logger.info("Batch cancelled after %d of %d row(s)", i, len(selected))
                break

            try:
                outcome = await self.send_one(rid)
            except UnknownRow as e:
                # dropped by a reload after the batch started
                logger.warning("Skipping %s: %s", rid, e)
                summary.skipped += 1
                summary.outcomes.append(SendOutcome(row_id=rid, status=PENDING, attempted=False, error=str(e)))
                continue
            except (MissingRecipient, InvalidTransition) as e:
                logger.warning("Skipping %s: %s", rid, e)
                summary.skipped += 1
                summary.outcomes.append(
                    SendOutcome(row_id=rid, status=self.tracker.get(rid).status, attempted=False, error=str(e))
                )
                continue

            summary.outcomes.append(outcome)
            if not outcome.attempted:
                summary.skipped += 1
                continue
            summary.attempted += 1
            if outcome.ok:
                summary.succeeded += 1
            else:
                summary.failed += 1

        logger.info("Finished batch: %s", summary.counts())
        return summary

    # ──────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────
    async def _deliver(self, row_id: str, *, allowed_from: Tuple[DeliveryStatus, ...], action: str) -> SendOutcome:
        record = self.record(row_id)
        current = self.tracker.get(row_id)

        if current.status == SENDING:
            logger.info("%s ignored for %s: already sending", action, row_id)
            return SendOutcome(row_id=row_id, status=SENDING, attempted=False)
        if current.status not in allowed_from:
            raise InvalidTransition(row_id, current.status.value, SENDING.value)

        recipient = (record.email or "").strip()
        if not recipient:
            raise MissingRecipient(row_id)

        if not self.tracker.begin(row_id, allowed_from):
            # another caller got there between the check and the claim
            return SendOutcome(row_id=row_id, status=self.tracker.get(row_id).status, attempted=False)

        logger.info("%s ticket for %s <%s>", action.capitalize(), record.name, recipient)
        try:
            artifact = await asyncio.to_thread(self._encoder, record)
            delivery_id = await self.channel.send(recipient, record.name, artifact)
        except DeliveryError as e:
            return self._fail(row_id, e.detail())
        except InvalidPayload as e:
            return self._fail(row_id, f"InvalidPayload: {e}")
        except asyncio.CancelledError:
            self.tracker.set(row_id, FAILED, "Send cancelled before the channel answered")
            raise
        except Exception as e:
            logger.exception("Unexpected error delivering ticket for %s", row_id)
            return self._fail(row_id, f"Unexpected error: {e}")

        self.tracker.set(row_id, SENT)
        logger.info("Ticket delivered to %s (delivery id %s)", recipient, delivery_id)

        outcome = SendOutcome(row_id=row_id, status=SENT, delivery_id=delivery_id)
        outcome.persistence_error = await self._persist(record)
        return outcome

    def _fail(self, row_id: str, detail: str) -> SendOutcome:
        self.tracker.set(row_id, FAILED, detail)
        logger.error("Ticket send failed for %s: %s", row_id, detail)
        return SendOutcome(row_id=row_id, status=FAILED, error=detail)

    async def _persist(self, record: AttendeeRecord) -> Optional[str]:
        """Flag the record as ticketed. Failure is reported, never rolled into the row status."""
        if self.store is None:
            return None
        try:
            await asyncio.to_thread(self.store.mark_ticket_generated, record.id, record.category)
        except PersistenceError as e:
            logger.warning("Ticket sent to %s but not recorded: %s", record.email, e)
            return str(e)
        record.ticket_generated = True
        return None
