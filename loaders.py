import json
import logging
import os
from typing import Dict, Iterable, List, Tuple

import pandas as pd

OUTREACH_COLUMNS = ["shop", "product", "date", "trigger"]
SALES_COLUMNS = ["shop", "product", "date_of_sell", "units_sold", "location"]


class SchemaValidationError(ValueError):
    """Input table is missing required columns or has unusable rows."""


def clean_column_name(col: str) -> str:
    return str(col).strip().lower().replace(" ", "_").replace("-", "_")


def append_dead_letters(records: List[Dict], dlq_path: str):
    if not records:
        return
    dlq_dir = os.path.dirname(dlq_path)
    if dlq_dir:
        os.makedirs(dlq_dir, exist_ok=True)
    with open(dlq_path, "a") as dlq:
        for rec in records:
            dlq.write(json.dumps(rec, default=str) + "\n")


def _require_columns(df: pd.DataFrame, required: Iterable[str], table: str):
    missing = sorted(set(required) - set(df.columns))
    if missing:
        raise SchemaValidationError(f"{table}: missing required columns {missing}")


def _collect_bad_rows(
    df: pd.DataFrame, row_errors: Dict[int, List[str]], table: str
) -> List[Dict]:
    bad = []
    for idx, errors in row_errors.items():
        row = df.loc[idx]
        bad.append(
            {
                "stage": "validate",
                "table": table,
                "row": int(idx),
                "error": ",".join(errors),
                "flat_record": {k: row.get(k, None) for k in df.columns},
            }
        )
    return bad


def _flag(row_errors: Dict[int, List[str]], mask: pd.Series, error: str):
    for idx in mask[mask].index:
        row_errors.setdefault(idx, []).append(error)


def validate_and_coerce(
    df: pd.DataFrame, table: str, logger: logging.Logger, trigger_levels=None
) -> Tuple[pd.DataFrame, List[Dict]]:
    """
    Normalise columns and types of a raw outreach or sales frame.

    Return (coerced_df, bad_records). bad_records contain
    {'stage':'validate','table':...,'row':...,'error':...,'flat_record':...}.
    Raises SchemaValidationError when a required column is absent; row-level
    problems are reported through bad_records so the caller can dead-letter
    them before failing the run.
    """
    df = df.rename(columns=clean_column_name)
    if table == "sales":
        df = df.rename(columns={"date": "date_of_sell"})
        required = SALES_COLUMNS
        date_col = "date_of_sell"
    else:
        required = OUTREACH_COLUMNS
        date_col = "date"
    _require_columns(df, required, table)

    df = df.copy()
    row_errors: Dict[int, List[str]] = {}

    for col in ("shop", "product"):
        _flag(row_errors, df[col].isna(), f"missing_required:{col}")
        df[col] = df[col].where(df[col].isna(), df[col].astype(str).str.strip())

    parsed = pd.to_datetime(df[date_col], errors="coerce").dt.normalize()
    _flag(row_errors, df[date_col].isna(), f"missing_required:{date_col}")
    _flag(row_errors, parsed.isna() & df[date_col].notna(), f"invalid:{date_col}")
    df[date_col] = parsed

    if table == "sales":
        units = pd.to_numeric(df["units_sold"], errors="coerce")
        not_positive_int = units.isna() | (units <= 0) | (units % 1 != 0)
        _flag(row_errors, not_positive_int, "invalid:units_sold")
        df["units_sold"] = units
    else:
        _flag(row_errors, df["trigger"].isna(), "missing_required:trigger")
        if trigger_levels:
            unknown = df["trigger"].notna() & ~df["trigger"].isin(trigger_levels)
            _flag(row_errors, unknown, "invalid:trigger")

    bad = _collect_bad_rows(df, row_errors, table)
    if not bad:
        if table == "sales":
            df["units_sold"] = df["units_sold"].astype("int64")
        id_col = "sale_id" if table == "sales" else "contact_id"
        if id_col in df.columns:
            raise SchemaValidationError(f"{table}: reserved column '{id_col}' already present")
        df.insert(0, id_col, range(len(df)))

    logger.info(
        f"Validation result ({table}): rows={len(df)}, bad_rows={len(bad)}"
    )
    return df, bad


def _load_table(
    path: str,
    table: str,
    logger: logging.Logger,
    dlq_path: str = None,
    trigger_levels=None,
) -> pd.DataFrame:
    logger.info(f"Loading {table} from {path}")
    raw = pd.read_csv(path)
    df, bad = validate_and_coerce(raw, table, logger, trigger_levels=trigger_levels)
    if bad:
        if dlq_path:
            append_dead_letters(bad, dlq_path)
            logger.error(f"{len(bad)} invalid {table} rows written to {dlq_path}")
        raise SchemaValidationError(
            f"{table}: {len(bad)} rows failed validation (first: row {bad[0]['row']} "
            f"{bad[0]['error']})"
        )
    return df


def load_outreach(
    path: str, logger: logging.Logger, dlq_path: str = None, trigger_levels=None
) -> pd.DataFrame:
    """Load the outreach contact log (columns shop, date, Product, trigger)."""
    df = _load_table(path, "outreach", logger, dlq_path, trigger_levels)
    extra = [c for c in df.columns if c not in ["contact_id"] + OUTREACH_COLUMNS]
    return df[["contact_id"] + OUTREACH_COLUMNS + extra]


def load_sales(path: str, logger: logging.Logger, dlq_path: str = None) -> pd.DataFrame:
    """Load the sales log (columns shop, Product, date, units_sold, location)."""
    df = _load_table(path, "sales", logger, dlq_path)
    extra = [c for c in df.columns if c not in ["sale_id"] + SALES_COLUMNS]
    return df[["sale_id"] + SALES_COLUMNS + extra]
