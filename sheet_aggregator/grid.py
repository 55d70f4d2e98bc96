"""openpyxl-backed grid accessor, grid writer and workbook container."""

from __future__ import annotations

import io
import logging
import os
import re
import tempfile
from copy import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.cell.cell import MergedCell
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.hyperlink import Hyperlink

from sheet_aggregator.config import CellStyle, TableStyle

logger = logging.getLogger(__name__)

MAX_SHEET_NAME_LENGTH = 31
INVALID_SHEET_NAME_CHARS_RE = re.compile(r"[\\/?*\[\]:]")
FORMULA_QUOTE_RE = re.compile(r"[ \-!@#$%^&*()+={}|\[\]\\:\";<>,.?/']")
NUMBER_RE = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$")


def sanitize_sheet_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        return "Sheet"
    cleaned = INVALID_SHEET_NAME_CHARS_RE.sub("", name)[:MAX_SHEET_NAME_LENGTH]
    return cleaned if cleaned.strip() else "Sheet"


def unique_sheet_name(existing: Iterable[str], desired: str) -> str:
    """Sanitise ``desired`` and add ``_N`` until it clashes with no existing name (case-insensitive)."""
    base = sanitize_sheet_name(desired)
    taken = {name.lower() for name in existing}
    if base.lower() not in taken:
        return base
    counter = 1
    while True:
        suffix = f"_{counter}"
        candidate = base[: MAX_SHEET_NAME_LENGTH - len(suffix)] + suffix
        if candidate.lower() not in taken:
            return candidate
        counter += 1


def quote_sheet_name(name: str) -> str:
    """Sheet name as it must appear in a formula reference."""
    if FORMULA_QUOTE_RE.search(name) or NUMBER_RE.match(name):
        return "'" + name.replace("'", "''") + "'"
    return name


def column_letter(index: int) -> str:
    return get_column_letter(index + 1)


def is_formula_cell(cell) -> bool:
    return cell.data_type == "f"


@dataclass
class CellSpec:
    """One cell to write. ``formula`` is given without the leading ``=``."""

    value: Any = None
    formula: Optional[str] = None
    style: Optional[CellStyle] = None
    hyperlink: Optional[str] = None

    def display_text(self) -> str:
        if self.value is not None:
            return str(self.value)
        return self.formula or ""


@dataclass(frozen=True)
class SheetRange:
    first_row: int
    first_col: int
    last_row: int
    last_col: int


class WorkbookHandle:
    """An in-memory workbook that mutators write through.

    ``cached`` is the same file opened with ``data_only=True`` so formula
    cells can be read as their last calculated value.
    """

    def __init__(
        self,
        workbook: Workbook,
        cached: Optional[Workbook] = None,
        *,
        source_path: Optional[Path] = None,
        keep_vba: bool = False,
    ) -> None:
        self.workbook = workbook
        self.cached = cached
        self.source_path = source_path
        self.keep_vba = keep_vba

    @classmethod
    def new(cls, *, source_path: Optional[Path] = None) -> "WorkbookHandle":
        workbook = Workbook()
        workbook.remove(workbook.active)
        return cls(workbook, source_path=source_path)

    def clone(self) -> "WorkbookHandle":
        workbook = _reload(self.workbook, keep_vba=self.keep_vba)
        cached = _reload(self.cached, keep_vba=False) if self.cached is not None else None
        return WorkbookHandle(workbook, cached, source_path=self.source_path, keep_vba=self.keep_vba)

    # container

    def list_sheet_names(self) -> list[str]:
        return list(self.workbook.sheetnames)

    def has_sheet(self, name: str) -> bool:
        return name in self.workbook.sheetnames

    def worksheet(self, name: str):
        return self.workbook[name]

    def append_sheet(self, desired_name: str, rows: Optional[Sequence[Sequence[Any]]] = None) -> str:
        name = unique_sheet_name(self.workbook.sheetnames, desired_name)
        self.workbook.create_sheet(name)
        if rows:
            self.write_cells(name, 0, 0, rows)
        return name

    def remove_sheet(self, name: str) -> None:
        self.workbook.remove(self.workbook[name])

    def reorder_sheets(self, order: Sequence[str]) -> None:
        for target, name in enumerate(order):
            current = self.workbook.sheetnames.index(name)
            if current != target:
                self.workbook.move_sheet(name, offset=target - current)
        visible = [i for i, ws in enumerate(self.workbook.worksheets) if ws.sheet_state == "visible"]
        if visible:
            self.workbook.active = visible[0]

    def mark_sheet_hidden(self, name: str) -> None:
        self.workbook[name].sheet_state = "hidden"

    # accessor

    def read_rows(self, name: str) -> list[list[Any]]:
        """Every row from spreadsheet row 1 to the last used row, padded to the used width."""
        ws = self.workbook[name]
        if ws.max_row == 1 and ws.max_column == 1 and ws.cell(row=1, column=1).value is None:
            return []
        cached_ws = self._cached_sheet(name)
        rows: list[list[Any]] = []
        for row in ws.iter_rows(min_row=1, min_col=1, max_row=ws.max_row, max_col=ws.max_column):
            rows.append([self._resolve(cell, cached_ws) for cell in row])
        return rows

    def decode_range(self, name: str) -> SheetRange:
        ws = self.workbook[name]
        return SheetRange(ws.min_row - 1, ws.min_column - 1, ws.max_row - 1, ws.max_column - 1)

    def cell_value(self, name: str, coordinate: str) -> Any:
        ws = self.workbook[name]
        return self._resolve(ws[coordinate], self._cached_sheet(name))

    def cached_value(self, name: str, row: int, col: int) -> Any:
        cached_ws = self._cached_sheet(name)
        if cached_ws is None:
            return None
        return cached_ws.cell(row=row + 1, column=col + 1).value

    def _cached_sheet(self, name: str):
        if self.cached is None or name not in self.cached.sheetnames:
            return None
        return self.cached[name]

    @staticmethod
    def _resolve(cell, cached_ws) -> Any:
        if isinstance(cell, MergedCell):
            return None
        if is_formula_cell(cell):
            if cached_ws is None:
                return None
            return cached_ws.cell(row=cell.row, column=cell.column).value
        return cell.value

    # writer

    def write_cells(self, name: str, origin_row: int, origin_col: int, grid: Sequence[Sequence[Any]]) -> None:
        """Write a 2-D block at a 0-indexed origin. ``None`` entries leave the cell untouched."""
        ws = self.workbook[name]
        for r_offset, row in enumerate(grid):
            for c_offset, entry in enumerate(row):
                if entry is None:
                    continue
                cell = self._writable_cell(ws, origin_row + r_offset + 1, origin_col + c_offset + 1)
                if isinstance(entry, CellSpec):
                    cell.value = f"={entry.formula}" if entry.formula is not None else entry.value
                    if entry.hyperlink:
                        cell.hyperlink = _hyperlink(entry.hyperlink)
                    if entry.style is not None:
                        style_cell(cell, entry.style)
                else:
                    cell.value = entry

    def set_value(self, name: str, row: int, col: int, value: Any, style: Optional[CellStyle] = None) -> None:
        cell = self._writable_cell(self.workbook[name], row + 1, col + 1)
        cell.value = value
        if style is not None:
            style_cell(cell, style)

    def apply_style(self, name: str, row: int, col: int, style: CellStyle) -> None:
        style_cell(self._writable_cell(self.workbook[name], row + 1, col + 1), style)

    def apply_table_style(
        self, name: str, first_row: int, last_row: int, first_col: int, last_col: int, style: TableStyle
    ) -> None:
        """Border every cell of the block and fill the cells that have no fill yet."""
        if last_row < first_row or last_col < first_col:
            return
        ws = self.workbook[name]
        side = Side(style=style.border_style, color=_rgb(style.border_color) if style.border_color else None)
        for row in range(first_row + 1, last_row + 2):
            for col in range(first_col + 1, last_col + 2):
                cell = ws.cell(row=row, column=col)
                if isinstance(cell, MergedCell):
                    continue
                if style.fill_color and cell.fill.fill_type is None:
                    cell.fill = PatternFill("solid", fgColor=_rgb(style.fill_color))
                cell.border = Border(left=side, right=side, top=side, bottom=side)

    def declare_merge(self, name: str, first_row: int, last_row: int, first_col: int, last_col: int) -> None:
        if first_row == last_row and first_col == last_col:
            return
        self.workbook[name].merge_cells(
            start_row=first_row + 1, start_column=first_col + 1, end_row=last_row + 1, end_column=last_col + 1
        )

    def unmerge_anchored_at(self, name: str, row: int, col: int) -> None:
        ws = self.workbook[name]
        for merged in list(ws.merged_cells.ranges):
            if merged.min_row == row + 1 and merged.min_col == col + 1:
                ws.unmerge_cells(str(merged))

    def clear_cells(self, name: str, first_row: int, last_row: int, first_col: int, last_col: int) -> None:
        ws = self.workbook[name]
        for row in range(first_row + 1, last_row + 2):
            for col in range(first_col + 1, last_col + 2):
                cell = ws.cell(row=row, column=col)
                if isinstance(cell, MergedCell):
                    continue
                cell.value = None
                cell.hyperlink = None
                cell.font = Font()
                cell.fill = PatternFill()
                cell.border = Border()
                cell.alignment = Alignment()

    def set_column_width(self, name: str, col: int, width: float) -> None:
        self.workbook[name].column_dimensions[column_letter(col)].width = width

    def set_auto_filter(self, name: str, first_row: int, first_col: int, last_row: int, last_col: int) -> None:
        self.workbook[name].auto_filter.ref = (
            f"{column_letter(first_col)}{first_row + 1}:{column_letter(last_col)}{last_row + 1}"
        )

    def save(self, output_path: Path) -> None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.stem}.", suffix=output_path.suffix, dir=str(output_path.parent))
        os.close(fd)
        temp_path = Path(tmp_name)
        try:
            self.workbook.save(temp_path)
            os.replace(temp_path, output_path)
        finally:
            if temp_path.exists():
                temp_path.unlink()
        logger.info("Workbook saved: %s", output_path)

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.workbook.save(buffer)
        return buffer.getvalue()

    @staticmethod
    def _writable_cell(ws, row: int, col: int):
        cell = ws.cell(row=row, column=col)
        if isinstance(cell, MergedCell):
            for merged in list(ws.merged_cells.ranges):
                if cell.coordinate in merged:
                    ws.unmerge_cells(str(merged))
                    break
            cell = ws.cell(row=row, column=col)
        return cell


def _reload(workbook: Workbook, *, keep_vba: bool) -> Workbook:
    buffer = io.BytesIO()
    workbook.save(buffer)
    buffer.seek(0)
    return load_workbook(buffer, keep_vba=keep_vba)


def _rgb(color: str) -> str:
    return color.lstrip("#").upper()


def _hyperlink(target: str) -> Hyperlink:
    if target.startswith("#"):
        return Hyperlink(ref="", location=target[1:])
    return Hyperlink(ref="", target=target)


def style_cell(cell, style: CellStyle) -> None:
    """Merge ``style`` onto the cell's current font, alignment and fill."""
    font = copy(cell.font)
    if style.bold is not None:
        font.bold = style.bold
    if style.italic is not None:
        font.italic = style.italic
    if style.underline is not None:
        font.underline = "single" if style.underline else None
    if style.font_name:
        font.name = style.font_name
    if style.font_size:
        font.size = style.font_size
    if style.font_color:
        font.color = _rgb(style.font_color)
    cell.font = font

    if style.horizontal or style.vertical:
        alignment = copy(cell.alignment)
        if style.horizontal:
            alignment.horizontal = style.horizontal
        if style.vertical:
            alignment.vertical = style.vertical
        cell.alignment = alignment

    if style.fill_color and style.fill_color.strip():
        cell.fill = PatternFill("solid", fgColor=_rgb(style.fill_color))
