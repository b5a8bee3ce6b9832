from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Official TRD template: one row per CCD node; support and disposition columns
# may carry either an explicit code or an "X" mark.
HEADER_ALIASES = {
    "code": ("Codigo", "Código", "Code", "codigo"),
    "ag_years": ("AG", "Archivo Gestion", "Archivo de Gestión", "ag_years", "retencion_gestion"),
    "ac_years": ("AC", "Archivo Central", "ac_years", "retencion_central"),
    "disposition": ("Disposicion", "Disposición", "Disposicion Final", "Disposición Final", "disposition"),
    "procedure": ("Procedimiento", "Procedure", "procedimiento"),
    "fisico": ("Soporte Fisico", "Soporte Físico", "fisico"),
    "electronico": ("Soporte Electronico", "Soporte Electrónico", "electronico"),
    "hibrido": ("Soporte Hibrido", "Soporte Híbrido", "hibrido"),
    "observations": ("Observaciones", "observations"),
}

DISPOSITION_MARK_COLUMNS = ("CT", "E", "D", "S", "M")


@dataclass(frozen=True)
class RowError:
    row_number: int
    message: str


def _has_x(value) -> bool:
    v = str(value if value is not None else "").strip().upper()
    return v in ("X", "SI", "SÍ", "1", "TRUE", "YES")


def _get(row: dict[str, str], key: str) -> str:
    for name in HEADER_ALIASES[key]:
        if name in row and row[name] is not None:
            return str(row[name]).strip()
    return ""


def _row_to_payload(row: dict[str, str]) -> dict:
    """Map one template row to set_retention() keyword arguments (validation happens there)."""
    disposition = _get(row, "disposition").upper()
    if not disposition:
        marked = [c for c in DISPOSITION_MARK_COLUMNS if _has_x(row.get(c))]
        if len(marked) > 1:
            raise ValueError(f"More than one disposition marked: {', '.join(marked)}")
        disposition = marked[0] if marked else ""

    supports = [k for k in ("fisico", "electronico", "hibrido") if _has_x(_get(row, k))]
    return {
        "code": _get(row, "code"),
        "ag_years": _get(row, "ag_years"),
        "ac_years": _get(row, "ac_years"),
        "disposition": disposition,
        "supports": supports,
        "procedure": _get(row, "procedure") or None,
        "observations": _get(row, "observations") or None,
    }


def _parse_numbered_rows(records) -> tuple[list[dict], list[RowError]]:
    """records yields (row_number, dict) pairs; row_number is the line or worksheet row the record starts on."""
    rows: list[dict] = []
    errors: list[RowError] = []
    for row_number, raw in records:
        if not raw or all(str(v or "").strip() == "" for v in raw.values()):
            continue
        try:
            payload = _row_to_payload(raw)
        except ValueError as e:
            errors.append(RowError(row_number, str(e)))
            continue
        if not payload["code"]:
            errors.append(RowError(row_number, "Missing node code."))
            continue
        payload["row_number"] = row_number
        rows.append(payload)
    return rows, errors


def _csv_records(reader, header: list[str]):
    while True:
        start_line = reader.line_num + 1
        try:
            values = next(reader)
        except StopIteration:
            return
        if not values:
            continue
        yield start_line, dict(zip(header, values))


def parse_retention_csv(file_bytes: bytes) -> tuple[list[dict], list[RowError]]:
    """
    Parse a TRD CSV export.

    Returns (rows, errors). Each row is a dict with code, ag_years, ac_years,
    disposition, supports, procedure, observations and row_number, the file
    line the record starts on.
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    sample = text[:2048]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    reader = csv.reader(io.StringIO(text), dialect=dialect)
    header = next(reader, None)
    if not header:
        raise ValueError("CSV has no header row.")
    header = [(h or "").strip() for h in header]
    return _parse_numbered_rows(_csv_records(reader, header))


def parse_retention_xlsx(file_bytes: bytes) -> tuple[list[dict], list[RowError]]:
    """Parse the first worksheet of a TRD workbook; the first non-empty row is the header."""
    from openpyxl import load_workbook

    wb = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        header: list[str] | None = None
        header_row = 0
        records: list[tuple[int, dict[str, str]]] = []
        for row_number, values in enumerate(ws.iter_rows(values_only=True), start=1):
            cells = ["" if v is None else str(v).strip() for v in values]
            if header is None:
                if any(cells):
                    header = cells
                    header_row = row_number
                continue
            records.append((row_number, dict(zip(header, cells))))
    finally:
        wb.close()

    if header is None:
        raise ValueError("Workbook has no header row.")
    logger.debug("TRD workbook header at row %s: %s", header_row, header)
    return _parse_numbered_rows(records)


def parse_retention_file(filename: str, file_bytes: bytes) -> tuple[list[dict], list[RowError]]:
    name = (filename or "").lower()
    if name.endswith((".xlsx", ".xlsm")):
        return parse_retention_xlsx(file_bytes)
    if name.endswith((".csv", ".txt")):
        return parse_retention_csv(file_bytes)
    raise ValueError("Unsupported file type. Upload a .csv or .xlsx file.")
