# services/upload_service.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import pandas as pd

from domain.models import AttendeeRecord, ImportSummary, RECORD_TYPES
from utils.field_utils import optional_field
from utils.upload_utils import normalize_upload_df, validate_rows, dedup_rows

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


def read_table(file_like, filename: str = "upload.csv") -> pd.DataFrame:
    """CSV or Excel sheet as an all-string DataFrame."""
    if Path(filename).suffix.lower() in EXCEL_SUFFIXES:
        return pd.read_excel(file_like, dtype=str).fillna("")
    return pd.read_csv(file_like, dtype=str, keep_default_na=False, skip_blank_lines=True)


def rows_to_records(df: pd.DataFrame) -> List[AttendeeRecord]:
    records: List[AttendeeRecord] = []
    for row in df.to_dict(orient="records"):
        cls = RECORD_TYPES.get(row.get("category") or "student", RECORD_TYPES["student"])
        common = dict(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            institutional_id=optional_field(row.get("institutional_id")),
            department=optional_field(row.get("department")),
            mobile=optional_field(row.get("mobile")),
            payment_status=optional_field(row.get("payment_status")),
            ticket_generated=bool(row.get("ticket_generated", False)),
        )
        if cls.category == "alumni":
            rec = cls(
                **common,
                passout_year=optional_field(row.get("passout_year")),
                current_organization=optional_field(row.get("current_organization")),
            )
        else:
            rec = cls(**common, gender=optional_field(row.get("gender")))
        records.append(rec)
    return records


def parse_attendee_file(file_like, filename: str = "upload.csv") -> ImportSummary:
    """
    Orchestrates: read → normalize → validate → dedup → records.
    Rows without a name or a valid email are dropped and counted in `skipped`.
    """
    summary = ImportSummary()

    try:
        df_raw = read_table(file_like, filename)
    except (ValueError, UnicodeDecodeError) as e:
        summary.errors.append(f"Error parsing file: {e}")
        return summary
    if df_raw.empty:
        summary.errors.append("Uploaded file is empty.")
        return summary

    df_norm = normalize_upload_df(df_raw)
    df_valid, errs, dropped = validate_rows(df_norm)
    summary.errors.extend(errs)
    summary.skipped = dropped
    if df_valid.empty:
        logger.warning("Import of %s produced no usable rows: %s", filename, "; ".join(errs))
        return summary

    df_unique, dupes = dedup_rows(df_valid)
    summary.duplicates = dupes
    if dupes:
        summary.errors.append(f"{dupes} duplicate row(s) ignored")

    summary.records = rows_to_records(df_unique)
    logger.info(
        "Imported %d attendee(s) from %s (%d skipped, %d duplicate)",
        summary.imported, filename, summary.skipped, summary.duplicates,
    )
    return summary
