import io
import logging
from typing import Any, Dict, List, Sequence

import pandas as pd

from merge_engine import DatasetParseError, Row, TabularDataset, UnsupportedFormat

logger = logging.getLogger(__name__)

MAX_ROWS = 100000

DELIMITED = "csv"
SPREADSHEET = "spreadsheet"

FORMAT_BY_EXTENSION = {
    ".csv": DELIMITED,
    ".xlsx": SPREADSHEET,
    ".xls": SPREADSHEET,
}


def detect_format(filename: str) -> str:
    """Map a filename to DELIMITED or SPREADSHEET by its extension"""
    lowered = (filename or "").lower()
    for extension, fmt in FORMAT_BY_EXTENSION.items():
        if lowered.endswith(extension):
            return fmt
    raise UnsupportedFormat(f"File {filename} must be a CSV or Excel file (.csv, .xlsx or .xls)")


def _read_csv(content: bytes, filename: str) -> pd.DataFrame:
    """Read every cell as text so keys keep their exact spelling"""
    read_kwargs = dict(dtype=str, keep_default_na=False)
    try:
        return pd.read_csv(io.BytesIO(content), encoding="utf-8", **read_kwargs)
    except UnicodeDecodeError:
        logger.warning("UTF-8 failed for %s, using latin-1", filename)
        return pd.read_csv(io.BytesIO(content), encoding="latin-1", **read_kwargs)


def _clean_cell(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _sheet_records(df: pd.DataFrame) -> List[Row]:
    """Turn a sheet into sparse rows: empty cells are left out of the row"""
    records = []
    for record in df.to_dict("records"):
        records.append({str(col): _clean_cell(val) for col, val in record.items() if not pd.isna(val)})
    return records


def parse_table(content: bytes, filename: str, max_rows: int = MAX_ROWS) -> TabularDataset:
    """
    Parse uploaded file bytes into a TabularDataset.

    CSV files keep every value as a string, empty cells become ''.
    Spreadsheets use the first sheet only; empty cells are omitted.
    """
    fmt = detect_format(filename)

    if fmt == DELIMITED:
        if not content.strip():
            return TabularDataset([], name=filename)
        try:
            df = _read_csv(content, filename)
        except pd.errors.EmptyDataError:
            return TabularDataset([], name=filename)
        except (pd.errors.ParserError, ValueError) as e:
            raise DatasetParseError(f"Could not parse {filename}: {e}") from e
        df.columns = [str(col) for col in df.columns]
        records = df.to_dict("records")
    else:
        try:
            df = pd.read_excel(io.BytesIO(content), sheet_name=0)
        except Exception as e:
            raise DatasetParseError(f"Could not parse {filename}: {e}") from e
        records = _sheet_records(df)

    if len(records) > max_rows:
        raise DatasetParseError(f"{filename} exceeds maximum row limit of {max_rows:,} rows")

    logger.info("Parsed %s as %s: %d rows", filename, fmt, len(records))
    return TabularDataset(records, name=filename)


def _frame_for_export(rows: Sequence[Row]) -> pd.DataFrame:
    """Header comes from the first row; later rows' missing fields stay blank"""
    if not rows:
        return pd.DataFrame()
    header = list(rows[0].keys())
    return pd.DataFrame(list(rows), columns=header, dtype=object)


def serialize_delimited(rows: Sequence[Row]) -> bytes:
    if not rows:
        return b""
    return _frame_for_export(rows).to_csv(index=False).encode("utf-8")


def serialize_spreadsheet(rows: Sequence[Row], sheet_name: str = "Sheet1") -> bytes:
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        _frame_for_export(rows).to_excel(writer, sheet_name=sheet_name, index=False)
    return buffer.getvalue()


EXPORTERS: Dict[str, Any] = {
    "csv": (serialize_delimited, "text/csv"),
    "xlsx": (serialize_spreadsheet, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
}
