# utils/field_utils.py
import datetime
import decimal
from typing import Any, Optional

import numpy as np
import pandas as pd

_TRUE_STRINGS = {"yes", "y", "true", "t", "1", "sent", "generated"}


def clean_field(val: Any) -> str:
    """Cell/column value as a trimmed string; NaN/None/'null' become ''."""
    if val is None:
        return ""
    if isinstance(val, float) and np.isnan(val):
        return ""
    if isinstance(val, pd.Timestamp):
        return val.tz_localize(None).isoformat() if val.tzinfo else val.isoformat()
    if isinstance(val, (datetime.datetime, datetime.date)):
        return val.isoformat()
    if isinstance(val, decimal.Decimal):
        return str(val)
    if isinstance(val, np.integer):
        return str(val.item())
    s = str(val).replace("\xa0", " ").strip()
    if s.lower() in {"nan", "none", "null", "nat"}:
        return ""
    return s


def optional_field(val: Any) -> Optional[str]:
    s = clean_field(val)
    return s or None


def as_bool(val: Any) -> bool:
    """Accepts real booleans and the 'Yes'/'No' strings the registration tables use."""
    if isinstance(val, (bool, np.bool_)):
        return bool(val)
    if isinstance(val, (int, np.integer)):
        return int(val) != 0
    return clean_field(val).lower() in _TRUE_STRINGS
