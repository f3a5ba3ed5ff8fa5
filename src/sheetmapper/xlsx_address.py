"""
Cell addresses and sheet geometry.

All positions are zero-based ``(row, column)`` pairs. Conversions to the
A1 notation, to openpyxl's 1-based coordinates and to a graphical
``(x, y)`` point are lossless.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

from openpyxl.utils import column_index_from_string, get_column_letter

# Excel 2007+ limits
MAX_ROWS = 1048576
MAX_COLUMNS = 16384

ADDRESS_PATTERN = re.compile(r"^\$?([A-Za-z]+)\$?([0-9]+)$")


class BadAddressError(ValueError):
    """Raised when a cell address cannot be parsed."""

    def __init__(self, address, reason: str = "invalid cell address"):
        self.address = address
        super().__init__(f"{reason}: '{address}'")


class Point(NamedTuple):
    """Graphical view of a position: ``x`` is the column, ``y`` the row."""

    x: int
    y: int


@dataclass(frozen=True, order=True)
class CellPosition:
    """Zero-based position of a cell in a sheet."""

    row: int
    column: int

    def __post_init__(self):
        if self.row < 0 or self.column < 0:
            raise BadAddressError(
                (self.row, self.column), "row and column must be zero or positive"
            )

    @classmethod
    def of(cls, address_or_column: "str | int", row: int | None = None):
        """Create a position from ``"B24"`` or from ``(column, row)`` integers."""
        if isinstance(address_or_column, str):
            if row is not None:
                msg = "row must not be given together with an address"
                raise TypeError(msg)
            return cls.parse(address_or_column)
        if row is None:
            msg = "row is required when the column is given as integer"
            raise TypeError(msg)
        return cls(row=row, column=address_or_column)

    @classmethod
    def parse(cls, address: str) -> "CellPosition":
        if not address or not address.strip():
            raise BadAddressError(address, "empty cell address")
        match = ADDRESS_PATTERN.match(address.strip())
        if not match:
            raise BadAddressError(address)
        letters, digits = match.groups()
        row = int(digits)
        if row < 1 or row > MAX_ROWS:
            raise BadAddressError(address, "row out of range")
        try:
            column = column_index_from_string(letters.upper())
        except ValueError as e:
            raise BadAddressError(address, "column out of range") from e
        return cls(row=row - 1, column=column - 1)

    @classmethod
    def from_openpyxl(cls, row: int, column: int) -> "CellPosition":
        """Create from openpyxl's 1-based ``(row, column)``."""
        return cls(row=row - 1, column=column - 1)

    @classmethod
    def from_cell(cls, cell) -> "CellPosition":
        return cls(row=cell.row - 1, column=cell.column - 1)

    @classmethod
    def from_point(cls, point: Point) -> "CellPosition":
        return cls(row=point.y, column=point.x)

    @property
    def column_letter(self) -> str:
        return get_column_letter(self.column + 1)

    def to_address(self) -> str:
        return f"{self.column_letter}{self.row + 1}"

    def to_openpyxl(self) -> tuple[int, int]:
        """1-based ``(row, column)`` as used by ``Worksheet.cell``."""
        return self.row + 1, self.column + 1

    def to_point(self) -> Point:
        return Point(x=self.column, y=self.row)

    def offset(self, rows: int = 0, columns: int = 0) -> "CellPosition":
        return CellPosition(row=self.row + rows, column=self.column + columns)

    def __str__(self) -> str:
        return self.to_address()


class Direction(Enum):
    """Direction in which consecutive cells are laid out."""

    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"

    def step(self, position: CellPosition, count: int = 1) -> CellPosition:
        if self is Direction.HORIZONTAL:
            return position.offset(columns=count)
        return position.offset(rows=count)

    def index_of(self, position: CellPosition) -> int:
        """The coordinate that changes along this direction."""
        return position.column if self is Direction.HORIZONTAL else position.row
