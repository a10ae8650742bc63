# services/registration_service.py
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from config import REGISTRATION_TABLES
from domain.errors import PersistenceError
from domain.models import AlumniRegistration, AttendeeRecord, StudentRegistration
from utils.db import get_engine
from utils.field_utils import as_bool, clean_field, optional_field

logger = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _first(row: Mapping[str, Any], *keys: str) -> str:
    for k in keys:
        v = clean_field(row.get(k))
        if v:
            return v
    return ""

def _row_to_record(row: Mapping[str, Any], category: str) -> AttendeeRecord:
    """Registration row → record variant; both tables share the core columns."""
    common = dict(
        id=clean_field(row.get("id")),
        email=_first(row, "email"),
        institutional_id=optional_field(row.get("jis_id")),
        department=optional_field(row.get("department")),
        mobile=optional_field(row.get("mobile")),
        payment_status=optional_field(row.get("payment_status")),
        ticket_generated=as_bool(row.get("ticket_generated")),
    )
    if category == "alumni":
        return AlumniRegistration(
            name=_first(row, "alumni_name", "student_name", "name"),
            passout_year=optional_field(row.get("passout_year")),
            current_organization=optional_field(row.get("current_organization")),
            **common,
        )
    return StudentRegistration(
        name=_first(row, "student_name", "name"),
        gender=optional_field(row.get("gender")),
        **common,
    )

# ─────────────────────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────────────────────

class RegistrationGateway:
    """Reads registrations and records issued tickets in the relational store."""

    def __init__(self, engine: Optional[Engine] = None, tables: Optional[Dict[str, str]] = None):
        self.engine = engine if engine is not None else get_engine()
        self.tables = dict(tables or REGISTRATION_TABLES)
        for category, table in self.tables.items():
            if not _IDENT_RE.match(table):
                raise ValueError(f"Bad table name for {category}: {table!r}")

    def _table(self, category: str) -> str:
        try:
            return self.tables[category]
        except KeyError:
            raise PersistenceError(f"Unknown registration category: {category}") from None

    def fetch_registrations(self) -> List[AttendeeRecord]:
        """All registrations from every category table, students first, each ordered by id."""
        records: List[AttendeeRecord] = []
        try:
            with self.engine.connect() as conn:
                for category, table in self.tables.items():
                    rows = conn.execute(text(f"SELECT * FROM {table} ORDER BY id")).mappings().all()
                    records.extend(_row_to_record(dict(r), category) for r in rows)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to fetch registrations: {e}") from e

        by_cat = {c: sum(1 for r in records if r.category == c) for c in self.tables}
        logger.info("Fetched %d registration(s): %s", len(records), by_cat)
        return records

    def mark_ticket_generated(self, record_id: str, category: str) -> None:
        """Set ticket_generated = 'Yes'. Repeating it for a flagged row is harmless."""
        table = self._table(category)
        try:
            with self.engine.begin() as conn:  # BEGIN … COMMIT
                result = conn.execute(
                    text(f"""
                        UPDATE {table}
                           SET ticket_generated = 'Yes'
                         WHERE CAST(id AS VARCHAR(64)) = :id
                    """),
                    {"id": str(record_id)},
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update ticket status for {category} {record_id}: {e}") from e
        if result.rowcount == 0:
            raise PersistenceError(f"No {category} registration with id {record_id}")
        logger.info("Marked ticket generated for %s %s", category, record_id)

    def check_connection(self) -> Dict[str, Any]:
        """Connection diagnostics: which registration tables exist and their columns."""
        try:
            insp = inspect(self.engine)
            present = set(insp.get_table_names())
            info: Dict[str, Any] = {"ok": True, "tables": sorted(present)}
            for category, table in self.tables.items():
                info[category] = {
                    "table": table,
                    "exists": table in present,
                    "columns": [c["name"] for c in insp.get_columns(table)] if table in present else [],
                }
            return info
        except SQLAlchemyError as e:
            logger.error("Database connection error: %s", e)
            return {"ok": False, "error": str(e)}
