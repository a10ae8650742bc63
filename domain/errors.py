"""Failure taxonomy for the ticket pipeline."""


class TicketError(Exception):
    """Base class for ticket pipeline errors."""


class InvalidPayload(TicketError):
    """Record cannot be turned into a ticket (no id and no email)."""


class MissingRecipient(TicketError):
    """Record has no email address to deliver to."""

    def __init__(self, row_id: str):
        super().__init__(f"MissingRecipient: no email address on record {row_id}")
        self.row_id = row_id


class DeliveryError(TicketError):
    """Delivery channel rejected the message or could not be reached.

    status_class is "client" (4xx-style, the request itself was refused)
    or "server" (5xx-style / network, worth retrying later).
    """

    def __init__(self, message: str, status_class: str = "server", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_class = status_class
        self.status_code = status_code

    def detail(self) -> str:
        code = f" {self.status_code}" if self.status_code else ""
        return f"{self.status_class} error{code}: {self.message}"


class PersistenceError(TicketError):
    """Post-send bookkeeping failed; the ticket was still delivered."""


class InvalidTransition(TicketError):
    def __init__(self, row_id: str, current: str, target: str):
        super().__init__(f"Row {row_id}: cannot move from {current} to {target}")
        self.row_id = row_id
        self.current = current
        self.target = target


class UnknownRow(TicketError, KeyError):
    def __init__(self, row_id: str):
        super().__init__(f"Unknown row: {row_id}")
        self.row_id = row_id

    def __str__(self) -> str:
        return self.args[0]
