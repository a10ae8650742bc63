# utils/upload_utils.py
from __future__ import annotations

import uuid
from typing import List, Tuple

import pandas as pd

from config import (
    UPLOAD_COLUMN_ALIASES,
    UPLOAD_REQUIRED_COLS,
    UPLOAD_TEXT_COLS,
    UPLOAD_DEFAULTS,
    UPLOAD_EMAIL_REGEX,
)
from utils.field_utils import clean_field, as_bool

# Stable ids for imported rows that carry none of their own
_IMPORT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "event-ticket-desk/import")


def _canon_cols(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [str(c).strip().lower().replace(" ", "_").replace("-", "_") for c in df.columns]
    for c in list(df.columns):
        if c in UPLOAD_COLUMN_ALIASES and UPLOAD_COLUMN_ALIASES[c] not in df.columns:
            df = df.rename(columns={c: UPLOAD_COLUMN_ALIASES[c]})
    return df


def import_row_id(email: str, name: str) -> str:
    return uuid.uuid5(_IMPORT_NAMESPACE, f"{email.lower()}|{name.lower()}").hex


def normalize_upload_df(df_raw: pd.DataFrame) -> pd.DataFrame:
    df = _canon_cols(df_raw)

    # Text columns (required ones are left missing so validation can report them)
    for c in UPLOAD_TEXT_COLS:
        if c not in df.columns:
            if c in UPLOAD_REQUIRED_COLS or c == "id":
                continue
            df[c] = UPLOAD_DEFAULTS.get(c, "")
        df[c] = df[c].map(clean_field)

    if "category" in df.columns:
        df["category"] = df["category"].str.lower().where(df["category"].str.lower() == "alumni", "student")

    if "ticket_generated" in df.columns:
        df["ticket_generated"] = df["ticket_generated"].map(as_bool)
    else:
        df["ticket_generated"] = bool(UPLOAD_DEFAULTS.get("ticket_generated", False))

    if "email" in df.columns:
        df["email"] = df["email"].str.replace(r"\s+", "", regex=True)

    if "name" in df.columns and "email" in df.columns:
        ids = df["id"] if "id" in df.columns else pd.Series("", index=df.index)
        df["id"] = [
            rid or import_row_id(email, name)
            for rid, email, name in zip(ids, df["email"], df["name"])
        ]
    return df


def validate_rows(df: pd.DataFrame) -> Tuple[pd.DataFrame, List[str], int]:
    """Returns (valid rows, error messages, number of rows dropped)."""
    errors: List[str] = []
    missing_required = [c for c in UPLOAD_REQUIRED_COLS if c not in df.columns]
    if missing_required:
        errors.append(f"Missing required column(s): {', '.join(missing_required)}")
        return df.iloc[0:0].copy(), errors, len(df)

    valid_mask = pd.Series(True, index=df.index)

    # name required
    empty_name = df["name"] == ""
    if empty_name.any():
        errors.append(f"{empty_name.sum()} row(s) missing name")
        valid_mask &= ~empty_name

    # email required + format
    empty_email = df["email"] == ""
    if empty_email.any():
        errors.append(f"{empty_email.sum()} row(s) missing email")
        valid_mask &= ~empty_email
    invalid_email_mask = ~df["email"].str.match(UPLOAD_EMAIL_REGEX, na=False)
    invalid_email_mask &= ~empty_email
    if invalid_email_mask.any():
        errors.append(f"{invalid_email_mask.sum()} row(s) have invalid email format")
        valid_mask &= ~invalid_email_mask

    return df.loc[valid_mask].copy(), errors, int((~valid_mask).sum())


def dedup_rows(df: pd.DataFrame) -> Tuple[pd.DataFrame, int]:
    """Keep the first row for each (category, id)."""
    keys = ["category", "id"] if "category" in df.columns else ["id"]
    dup = df.duplicated(subset=keys, keep="first")
    return df.loc[~dup].copy(), int(dup.sum())
