# services/status_tracker.py
"""
Per-row delivery state, keyed by attendee row id.

Every write replaces the (status, error) pair in one step under a lock,
so readers never see a status paired with another status's error.
"""
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from domain.errors import InvalidTransition, UnknownRow
from domain.models import DeliveryStatus, RowStatus

PENDING = DeliveryStatus.PENDING
SENDING = DeliveryStatus.SENDING
SENT = DeliveryStatus.SENT
FAILED = DeliveryStatus.FAILED

ALLOWED_TRANSITIONS = {
    PENDING: {SENDING},
    SENDING: {SENT, FAILED},
    FAILED: {SENDING},
    SENT: {SENDING},  # explicit resend only
}


class StatusTracker:
    def __init__(self):
        self._rows: Dict[str, RowStatus] = {}
        self._lock = threading.Lock()

    # ── reads ──────────────────────────────────────────────
    def get(self, row_id: str) -> RowStatus:
        with self._lock:
            try:
                return self._rows[row_id]
            except KeyError:
                raise UnknownRow(row_id) from None

    def __contains__(self, row_id: str) -> bool:
        with self._lock:
            return row_id in self._rows

    def items(self) -> List[Tuple[str, RowStatus]]:
        return list(self.snapshot().items())

    def snapshot(self) -> Dict[str, RowStatus]:
        """Copy of all rows, in insertion order."""
        with self._lock:
            return dict(self._rows)

    def ids_with(self, *statuses: DeliveryStatus) -> List[str]:
        wanted = set(statuses)
        return [rid for rid, st in self.snapshot().items() if st.status in wanted]

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in DeliveryStatus}
        for st in self.snapshot().values():
            out[st.status.value] += 1
        return out

    # ── writes ─────────────────────────────────────────────
    def add(self, row_id: str, status: DeliveryStatus = PENDING) -> RowStatus:
        """Register a row (or reset an existing one) outside the transition rules."""
        if status == SENDING:
            raise ValueError("Rows cannot be registered mid-send")
        entry = RowStatus(status=status)
        with self._lock:
            self._rows[row_id] = entry
        return entry

    def set(self, row_id: str, status: DeliveryStatus, error: Optional[str] = None) -> RowStatus:
        status = DeliveryStatus(status)
        if status == FAILED and not (error or "").strip():
            raise ValueError("A failed row must carry an error message")
        # only failures keep an error; anything else starts clean
        entry = RowStatus(status=status, error=error if status == FAILED else None)
        with self._lock:
            current = self._current(row_id)
            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransition(row_id, current.status.value, status.value)
            self._rows[row_id] = entry
        return entry

    def begin(self, row_id: str, allowed_from: Iterable[DeliveryStatus]) -> bool:
        """
        Atomically move a row into SENDING if it is currently in one of
        allowed_from. Returns False (and changes nothing) otherwise.
        """
        allowed = set(allowed_from)
        with self._lock:
            current = self._current(row_id)
            if current.status not in allowed or SENDING not in ALLOWED_TRANSITIONS[current.status]:
                return False
            self._rows[row_id] = RowStatus(status=SENDING)
            return True

    def settle(self, row_id: str, status: DeliveryStatus, allowed_from: Iterable[DeliveryStatus]) -> bool:
        """
        Put a row straight into a non-failed status, outside the transition
        rules, if it is currently in one of allowed_from. Used when the
        durable record says the ticket already went out.
        """
        if status in (SENDING, FAILED):
            raise ValueError(f"Rows cannot be settled as {status.value}")
        allowed = set(allowed_from)
        with self._lock:
            current = self._current(row_id)
            if current.status not in allowed:
                return False
            self._rows[row_id] = RowStatus(status=status)
            return True

    def discard(self, row_id: str, keep: Iterable[DeliveryStatus] = ()) -> bool:
        """Drop a row unless its status is in `keep`. Returns True if it was dropped."""
        keep = set(keep)
        with self._lock:
            entry = self._rows.get(row_id)
            if entry is None or entry.status in keep:
                return False
            del self._rows[row_id]
            return True

    def _current(self, row_id: str) -> RowStatus:
        try:
            return self._rows[row_id]
        except KeyError:
            raise UnknownRow(row_id) from None
