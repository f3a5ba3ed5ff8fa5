"""
Cell primitives on top of openpyxl worksheets.

:class:`SheetView` wraps a worksheet and answers the questions the field
processors ask: the value and formatted text of a cell, the merged region
covering it, borders, and where a label sits. It also performs the
structural edits used when writing tables (inserting, deleting and
styling rows or columns, and merging cells).
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from copy import copy
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from openpyxl.cell.cell import Cell, MergedCell
from openpyxl.comments import Comment
from openpyxl.styles.numbers import is_date_format
from openpyxl.worksheet.cell_range import CellRange
from openpyxl.worksheet.worksheet import Worksheet

from .xlsx_address import CellPosition, Direction
from .xlsx_errors import AmbiguousLabelError
from .xlsx_textformatter import NumberPattern, native_to_datetime

logger = logging.getLogger(__name__)

GENERAL_FORMAT = "General"

# Tokens of date number formats, longest first
_DATE_TOKENS = (
    "yyyy",
    "yy",
    "mmmmm",
    "mmmm",
    "mmm",
    "mm",
    "m",
    "dddd",
    "ddd",
    "dd",
    "d",
    "hh",
    "h",
    "ss",
    "s",
    "am/pm",
    "a/p",
)
_MONTH_NAMES = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]
_DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _tokenize_date_format(number_format: str) -> list[tuple[str, str]]:
    """Split a date number format into ``(kind, text)`` tokens.

    ``kind`` is ``"lit"`` for literal text, otherwise the lower-cased token.
    """
    section = NumberPattern._first_section(number_format)
    tokens: list[tuple[str, str]] = []
    i = 0
    lowered = section.lower()
    while i < len(section):
        ch = section[i]
        if ch == '"':
            end = section.find('"', i + 1)
            end = len(section) if end < 0 else end
            tokens.append(("lit", section[i + 1 : end]))
            i = end + 1
            continue
        if ch == "\\" and i + 1 < len(section):
            tokens.append(("lit", section[i + 1]))
            i += 2
            continue
        if ch == "[":
            end = section.find("]", i)
            i = len(section) if end < 0 else end + 1
            continue
        if ch in ("_", "*") and i + 1 < len(section):
            i += 2
            continue
        if ch == "@":
            i += 1
            continue
        for token in _DATE_TOKENS:
            if lowered.startswith(token, i):
                tokens.append((token, section[i : i + len(token)]))
                i += len(token)
                break
        else:
            tokens.append(("lit", ch))
            i += 1
    # "m" and "mm" next to hours or seconds are minutes
    for idx, (kind, text) in enumerate(tokens):
        if kind not in ("m", "mm"):
            continue
        before = [k for k, _ in tokens[:idx] if k != "lit"]
        after = [k for k, _ in tokens[idx + 1 :] if k != "lit"]
        if (before and before[-1] in ("h", "hh")) or (after and after[0] in ("s", "ss")):
            tokens[idx] = ("min" if kind == "m" else "mmin", text)
    return tokens


def format_date_value(value: Any, number_format: str) -> str:
    """Render a date/time value the way a spreadsheet shows it."""
    dt = native_to_datetime(value)
    tokens = _tokenize_date_format(number_format)
    twelve_hour = any(kind in ("am/pm", "a/p") for kind, _ in tokens)
    hour = (dt.hour % 12 or 12) if twelve_hour else dt.hour
    rendered = {
        "yyyy": f"{dt.year:04d}",
        "yy": f"{dt.year % 100:02d}",
        "mmmmm": _MONTH_NAMES[dt.month - 1][0],
        "mmmm": _MONTH_NAMES[dt.month - 1],
        "mmm": _MONTH_NAMES[dt.month - 1][:3],
        "mm": f"{dt.month:02d}",
        "m": str(dt.month),
        "dddd": _DAY_NAMES[dt.weekday()],
        "ddd": _DAY_NAMES[dt.weekday()][:3],
        "dd": f"{dt.day:02d}",
        "d": str(dt.day),
        "hh": f"{hour:02d}",
        "h": str(hour),
        "mmin": f"{dt.minute:02d}",
        "min": str(dt.minute),
        "ss": f"{dt.second:02d}",
        "s": str(dt.second),
        "am/pm": "AM" if dt.hour < 12 else "PM",
        "a/p": "A" if dt.hour < 12 else "P",
    }
    return "".join(text if kind == "lit" else rendered[kind] for kind, text in tokens)


def format_general_number(value: int | float) -> str:
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return f"{value:.15g}"
    return str(value)


def format_cell_text(value: Any, number_format: str | None = GENERAL_FORMAT) -> str:
    """The text of a cell value as rendered with its number format."""
    number_format = number_format or GENERAL_FORMAT
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (datetime, date, time, timedelta)):
        if number_format == GENERAL_FORMAT or not is_date_format(number_format):
            return str(value)
        return format_date_value(value, number_format)
    if isinstance(value, (int, float)) or hasattr(value, "is_finite"):
        if number_format in (GENERAL_FORMAT, "@"):
            return format_general_number(value)
        try:
            return NumberPattern(number_format).format(value)
        except ValueError:
            logger.debug("Unsupported number format '%s'", number_format)
            return format_general_number(value)
    return str(value)


def cell_kind(value: Any) -> str:
    """Classify a native cell value: blank, boolean, numeric, date or string."""
    if value is None or value == "":
        return "blank"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (datetime, date, time, timedelta)):
        return "date"
    if isinstance(value, (int, float)) or hasattr(value, "is_finite"):
        return "numeric"
    return "string"


@dataclass(frozen=True)
class CellView:
    """A read-only snapshot of one cell."""

    position: CellPosition
    value: Any
    number_format: str = GENERAL_FORMAT
    merged_range: CellRange | None = None
    comment: str | None = None

    @property
    def text(self) -> str:
        return format_cell_text(self.value, self.number_format)

    @property
    def kind(self) -> str:
        return cell_kind(self.value)

    @property
    def is_blank(self) -> bool:
        return self.kind == "blank" or (
            isinstance(self.value, str) and not self.value.strip()
        )


class SheetView:
    """Zero-based, merge-aware access to a worksheet."""

    def __init__(self, worksheet: Worksheet):
        self.worksheet = worksheet
        self._merged_index: dict[tuple[int, int], CellRange] | None = None

    @property
    def title(self) -> str:
        return self.worksheet.title

    @property
    def max_row(self) -> int:
        """Zero-based index of the last used row."""
        return self.worksheet.max_row - 1

    @property
    def max_column(self) -> int:
        return self.worksheet.max_column - 1

    def in_used_range(self, position: CellPosition) -> bool:
        return position.row <= self.max_row and position.column <= self.max_column

    # merged regions
    def _build_merged_index(self) -> dict[tuple[int, int], CellRange]:
        index = {}
        for merged in self.worksheet.merged_cells.ranges:
            for row, column in merged.cells:
                index[(row - 1, column - 1)] = merged
        return index

    def invalidate(self) -> None:
        """Forget cached merged regions after a structural edit."""
        self._merged_index = None

    def merged_range(self, position: CellPosition) -> CellRange | None:
        if self._merged_index is None:
            self._merged_index = self._build_merged_index()
        return self._merged_index.get((position.row, position.column))

    def is_covered(self, position: CellPosition) -> bool:
        """True for a cell inside a merged region other than its top-left."""
        merged = self.merged_range(position)
        if merged is None:
            return False
        return (merged.min_row - 1, merged.min_col - 1) != (position.row, position.column)

    def unmerge(self, position: CellPosition) -> None:
        """Split the merged region covering ``position`` unless it is its top-left."""
        if not self.is_covered(position):
            return
        merged = self.merged_range(position)
        logger.debug("Unmerge %s to write into %s", merged.coord, position)
        self.worksheet.unmerge_cells(merged.coord)
        self.invalidate()

    def merged_span(self, position: CellPosition, direction: Direction) -> int:
        """Cells from ``position`` to the end of its merged region along ``direction``."""
        merged = self.merged_range(position)
        if merged is None:
            return 1
        if direction is Direction.HORIZONTAL:
            return merged.max_col - position.column
        return merged.max_row - position.row

    # reading
    def get(self, position: CellPosition, follow_merged: bool = True) -> CellView:
        """Snapshot of a cell.

        With ``follow_merged`` a cell covered by a merged region reports the
        value of the region's top-left cell.
        """
        merged = self.merged_range(position)
        source = position
        if merged is not None and follow_merged:
            source = CellPosition.from_openpyxl(merged.min_row, merged.min_col)
        if not self.in_used_range(source):
            return CellView(position, None, merged_range=merged)
        cell = self.worksheet.cell(*source.to_openpyxl())
        if isinstance(cell, MergedCell):
            return CellView(position, None, merged_range=merged)
        comment = cell.comment.text if cell.comment is not None else None
        return CellView(
            position,
            cell.value,
            number_format=cell.number_format,
            merged_range=merged,
            comment=comment,
        )

    def text(self, position: CellPosition, follow_merged: bool = False) -> str:
        return self.get(position, follow_merged).text

    def is_blank(self, position: CellPosition, follow_merged: bool = True) -> bool:
        return self.get(position, follow_merged).is_blank

    def iter_cells(self) -> Iterator[CellView]:
        """All non-blank cells, row by row."""
        for row in self.worksheet.iter_rows():
            for cell in row:
                if isinstance(cell, MergedCell) or cell.value in (None, ""):
                    continue
                position = CellPosition.from_cell(cell)
                yield CellView(
                    position,
                    cell.value,
                    number_format=cell.number_format,
                    merged_range=self.merged_range(position),
                )

    def find_label(
        self,
        label: str,
        matches: Callable[[str, str], bool],
        after: CellPosition | None = None,
        error_on_multiple: bool = False,
    ) -> CellPosition | None:
        """Position of the first cell (row-major) whose text matches ``label``.

        ``after`` restricts the search to cells following that position in
        row-major order.
        """
        found: list[CellPosition] = []
        for view in self.iter_cells():
            if after is not None and (view.position.row, view.position.column) <= (
                after.row,
                after.column,
            ):
                continue
            if matches(view.text, label):
                if not error_on_multiple:
                    return view.position
                found.append(view.position)
        if len(found) > 1:
            raise AmbiguousLabelError(self.title, label, found)
        return found[0] if found else None

    def has_border(self, position: CellPosition, side: str) -> bool:
        """Whether the edge ``side`` (left, right, top, bottom) of a cell is drawn.

        The facing edge of the neighbouring cell counts as well.
        """
        cell = self.worksheet.cell(*position.to_openpyxl())
        if getattr(cell.border, side).style is not None:
            return True
        neighbours = {
            "left": ("right", position.row, position.column - 1),
            "right": ("left", position.row, position.column + 1),
            "top": ("bottom", position.row - 1, position.column),
            "bottom": ("top", position.row + 1, position.column),
        }
        facing, row, column = neighbours[side]
        if row < 0 or column < 0:
            return False
        other = self.worksheet.cell(row + 1, column + 1)
        return getattr(other.border, facing).style is not None

    # writing
    def write(self, position: CellPosition, value: Any):
        cell = self.worksheet.cell(*position.to_openpyxl())
        if isinstance(cell, MergedCell):
            logger.debug("Skip writing into merged cell %s", position)
            return cell
        cell.value = value
        if isinstance(value, str) and value.startswith("="):
            # keep text, openpyxl would take it for a formula
            cell.data_type = "s"
        return cell

    def write_formula(self, position: CellPosition, formula: str):
        cell = self.worksheet.cell(*position.to_openpyxl())
        if isinstance(cell, MergedCell):
            return cell
        cell.value = formula if formula.startswith("=") else f"={formula}"
        return cell

    def set_number_format(self, position: CellPosition, number_format: str) -> None:
        cell = self.worksheet.cell(*position.to_openpyxl())
        if not isinstance(cell, MergedCell):
            cell.number_format = number_format

    def number_format(self, position: CellPosition) -> str:
        return self.worksheet.cell(*position.to_openpyxl()).number_format

    def set_comment(self, position: CellPosition, text: str | None, author: str = "") -> None:
        cell = self.worksheet.cell(*position.to_openpyxl())
        if isinstance(cell, MergedCell):
            return
        cell.comment = Comment(text, author) if text else None

    def copy_style(self, source: CellPosition, target: CellPosition) -> None:
        src = self.worksheet.cell(*source.to_openpyxl())
        dst = self.worksheet.cell(*target.to_openpyxl())
        if src.has_style:
            dst._style = copy(src._style)

    def merge(self, first: CellPosition, last: CellPosition) -> None:
        if first == last:
            return
        self.worksheet.merge_cells(
            start_row=first.row + 1,
            start_column=first.column + 1,
            end_row=last.row + 1,
            end_column=last.column + 1,
        )
        self.invalidate()

    def merge_equal_runs(
        self, positions: list[CellPosition], values: list[Any], direction: Direction
    ) -> None:
        """Merge adjacent cells holding equal non-empty values."""
        start = 0
        for i in range(1, len(positions) + 1):
            run_ends = (
                i == len(positions)
                or values[i] is None
                or values[i] != values[start]
                or direction.index_of(positions[i]) != direction.index_of(positions[i - 1]) + 1
            )
            if run_ends:
                if values[start] is not None and i - 1 > start:
                    for pos in positions[start + 1 : i]:
                        self.write(pos, None)
                    self.merge(positions[start], positions[i - 1])
                start = i

    # structural edits
    def _lines_of(self, direction: Direction):
        if direction is Direction.VERTICAL:
            return self.worksheet.row_dimensions
        return self.worksheet.column_dimensions

    def insert_lines(
        self, index: int, amount: int, direction: Direction, template: int | None = None
    ) -> None:
        """Insert rows (``VERTICAL``) or columns (``HORIZONTAL``) before ``index``.

        Merged regions below/right of the insertion move along; regions
        spanning it grow. When ``template`` is given, the inserted lines copy
        its styles, height and single-line merged regions.
        """
        if amount <= 0:
            return
        if direction is Direction.VERTICAL:
            self.worksheet.insert_rows(index + 1, amount)
        else:
            self.worksheet.insert_cols(index + 1, amount)
        self._shift_merged(index, amount, direction)
        if template is not None:
            if template >= index:
                template += amount
            for line in range(index, index + amount):
                self.copy_line(template, line, direction)
        self.invalidate()

    def delete_lines(self, index: int, amount: int, direction: Direction) -> None:
        if amount <= 0:
            return
        anchors = self._shift_merged(index, -amount, direction)
        if direction is Direction.VERTICAL:
            self.worksheet.delete_rows(index + 1, amount)
        else:
            self.worksheet.delete_cols(index + 1, amount)
        for merged, value, style in anchors:
            # the covered cell moved into the top-left corner
            cell = Cell(self.worksheet, row=merged.min_row, column=merged.min_col, value=value)
            cell._style = style
            self.worksheet._cells[(merged.min_row, merged.min_col)] = cell
        self.invalidate()

    def _shift_merged(
        self, index: int, amount: int, direction: Direction
    ) -> list[tuple[CellRange, Any, Any]]:
        """Move merged regions along an insertion (``amount`` > 0) or deletion.

        Returns the regions whose top-left cell is deleted, with the value
        and style of that cell.
        """
        vertical = direction is Direction.VERTICAL
        first = index + 1  # openpyxl coordinates
        last_deleted = first - amount - 1
        merged_cells = self.worksheet.merged_cells

        def bounds(merged):
            if vertical:
                return merged.min_row, merged.max_row
            return merged.min_col, merged.max_col

        anchors = []
        if amount < 0:
            for merged in list(merged_cells.ranges):
                low, high = bounds(merged)
                if low >= first and high <= last_deleted:
                    merged_cells.remove(merged)
        for merged in list(merged_cells.ranges):
            low, high = bounds(merged)
            if amount < 0:
                if low > last_deleted:
                    merged.shift(*((0, amount) if vertical else (amount, 0)))
                elif low >= first:
                    # starts in the deleted lines: the rest moves up to ``first``
                    top_left = self.worksheet.cell(merged.min_row, merged.min_col)
                    if vertical:
                        merged.min_row, merged.max_row = first, high + amount
                    else:
                        merged.min_col, merged.max_col = first, high + amount
                    anchors.append((merged, top_left.value, copy(top_left._style)))
                elif high >= first:
                    shrink = min(high, last_deleted) - max(low, first) + 1
                    if vertical:
                        merged.expand(down=-shrink)
                    else:
                        merged.expand(right=-shrink)
                continue
            if low >= first:
                merged.shift(*((0, amount) if vertical else (amount, 0)))
            elif high >= first:
                if vertical:
                    merged.expand(down=amount)
                else:
                    merged.expand(right=amount)
        # the ranges are hashed by their bounds
        merged_cells.ranges = set(merged_cells.ranges)
        return anchors

    def copy_line(
        self,
        source: int,
        target: int,
        direction: Direction,
        span: tuple[int, int] | None = None,
    ) -> None:
        """Copy styles and single-line merged regions of one row/column to another.

        ``span`` limits the copy to the cells ``first..last`` along the line.
        """
        vertical = direction is Direction.VERTICAL
        if span is None:
            last = (self.worksheet.max_column if vertical else self.worksheet.max_row) - 1
            span = (0, last)
        first, last = span
        for other in range(first, last + 1):
            if vertical:
                self.copy_style(CellPosition(source, other), CellPosition(target, other))
            else:
                self.copy_style(CellPosition(other, source), CellPosition(other, target))
        dimensions = self._lines_of(direction)
        key = source + 1 if vertical else CellPosition(0, source).column_letter
        target_key = target + 1 if vertical else CellPosition(0, target).column_letter
        if key in dimensions:
            src_dim = dimensions[key]
            if vertical and src_dim.height is not None:
                dimensions[target_key].height = src_dim.height
            elif not vertical and src_dim.width:
                dimensions[target_key].width = src_dim.width
        existing = {merged.coord for merged in self.worksheet.merged_cells.ranges}
        for merged in list(self.worksheet.merged_cells.ranges):
            low = merged.min_row if vertical else merged.min_col
            high = merged.max_row if vertical else merged.max_col
            along_low = merged.min_col if vertical else merged.min_row
            along_high = merged.max_col if vertical else merged.max_row
            if low != source + 1 or high != source + 1:
                continue
            if along_low < first + 1 or along_high > last + 1:
                continue
            if vertical:
                copied = CellRange(
                    min_col=along_low, min_row=target + 1, max_col=along_high, max_row=target + 1
                )
            else:
                copied = CellRange(
                    min_col=target + 1, min_row=along_low, max_col=target + 1, max_row=along_high
                )
            if copied.coord not in existing:
                self.worksheet.merge_cells(copied.coord)
        self.invalidate()

    def clear(self, positions: Iterable[CellPosition]) -> None:
        for position in positions:
            self.write(position, None)
