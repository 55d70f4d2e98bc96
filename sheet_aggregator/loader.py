"""
loader.py: open spreadsheet inputs as a WorkbookHandle

Supports: .xlsx .xlsm (openpyxl) and .csv .tsv .txt (pandas, one sheet)

Public API:
    handle = open_workbook("path/to/file.xlsx")
    handle = open_workbook_bytes(uploaded.getvalue(), "file.csv")
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from pathlib import Path
from typing import Union

import chardet
import pandas as pd
from openpyxl import load_workbook

from sheet_aggregator.errors import UnsupportedFormatError, WorkbookReadError
from sheet_aggregator.grid import WorkbookHandle, sanitize_sheet_name

logger = logging.getLogger(__name__)

EXCEL_FORMATS = {".xlsx", ".xlsm"}
TEXT_FORMATS = {".csv", ".tsv", ".txt"}
ALL_FORMATS = EXCEL_FORMATS | TEXT_FORMATS
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def is_encrypted_ooxml(raw: bytes) -> bool:
    """Password-protected OOXML is an OLE container holding EncryptedPackage, not a zip."""
    if raw.startswith(OLE_SIGNATURE):
        return b"E\x00n\x00c\x00r\x00y\x00p\x00t\x00e\x00d\x00P\x00a\x00c\x00k\x00a\x00g\x00e" in raw
    try:
        with zipfile.ZipFile(io.BytesIO(raw)) as archive:
            names = set(archive.namelist())
    except zipfile.BadZipFile:
        return False
    return {"EncryptedPackage", "EncryptionInfo"}.issubset(names)


def detect_encoding(raw: bytes) -> str:
    detected = chardet.detect(raw).get("encoding")
    return detected or "utf-8"


def decode_text(raw: bytes) -> str:
    """Decode with the detected encoding, then UTF-8, then latin-1 which never fails."""
    for encoding in (detect_encoding(raw), "utf-8", "latin-1"):
        try:
            return raw.decode(encoding).replace("\x00", "")
        except (LookupError, UnicodeDecodeError):
            continue
    return raw.decode("latin-1")


def detect_delimiter(text: str, suffix: str) -> str:
    if suffix == ".tsv":
        return "\t"
    sample = "\n".join([line for line in text.splitlines() if line.strip()][:25])
    if not sample:
        return ","
    try:
        return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _load_excel(raw: bytes, name: str, suffix: str) -> WorkbookHandle:
    if is_encrypted_ooxml(raw):
        raise WorkbookReadError("Password-protected / encrypted OOXML workbooks are not supported")
    keep_vba = suffix == ".xlsm"
    try:
        workbook = load_workbook(io.BytesIO(raw), keep_vba=keep_vba)
        cached = load_workbook(io.BytesIO(raw), data_only=True)
    except Exception as exc:
        raise WorkbookReadError(f"Could not read workbook: {exc}") from exc
    logger.info("Loaded %s with %d sheets", name, len(workbook.sheetnames))
    return WorkbookHandle(workbook, cached, source_path=Path(name), keep_vba=keep_vba)


def _load_text(raw: bytes, name: str, suffix: str) -> WorkbookHandle:
    text = decode_text(raw)
    delimiter = detect_delimiter(text, suffix)
    sep = r"\|" if delimiter == "|" else delimiter
    try:
        frame = pd.read_csv(
            io.StringIO(text),
            header=None,
            dtype=str,
            sep=sep,
            engine="python",
            skip_blank_lines=False,
            keep_default_na=False,
        )
    except pd.errors.EmptyDataError:
        frame = pd.DataFrame()
    except Exception as exc:
        raise WorkbookReadError(f"Could not parse {suffix} file: {exc}") from exc

    handle = WorkbookHandle.new(source_path=Path(name))
    rows = [
        [value if isinstance(value, str) and value != "" else None for value in record]
        for record in frame.itertuples(index=False, name=None)
    ]
    handle.append_sheet(sanitize_sheet_name(Path(name).stem), rows)
    logger.info("Loaded %s as one sheet with %d rows (delimiter %r)", name, len(rows), delimiter)
    return handle


def open_workbook_bytes(raw: bytes, name: str) -> WorkbookHandle:
    """Open an uploaded file's bytes; ``name`` supplies the extension and the CSV sheet name."""
    suffix = Path(name).suffix.lower()
    if suffix in EXCEL_FORMATS:
        return _load_excel(raw, name, suffix)
    if suffix in TEXT_FORMATS:
        return _load_text(raw, name, suffix)
    raise UnsupportedFormatError(
        f"Unsupported file type {suffix or '(none)'!r}. Supported: {', '.join(sorted(ALL_FORMATS))}"
    )


def open_workbook(path: Union[str, Path]) -> WorkbookHandle:
    path = Path(path)
    if path.suffix.lower() not in ALL_FORMATS:
        raise UnsupportedFormatError(
            f"Unsupported file type {path.suffix or '(none)'!r}. Supported: {', '.join(sorted(ALL_FORMATS))}"
        )
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise WorkbookReadError(f"Could not read workbook: {exc}") from exc
    handle = open_workbook_bytes(raw, path.name)
    handle.source_path = path
    return handle
