"""
Descriptors that pin record fields to regions of a sheet.

Descriptors are frozen dataclasses attached to pydantic fields with
``typing.Annotated``; the sheet of a record class is declared with a
``ClassVar``::

    class Invoice(BaseModel):
        xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Invoice")

        positions: dict[str, CellPosition] | None = None

        number: Annotated[str | None, XlsLabelledCell(label="No.")] = None
        items: Annotated[
            list[Item] | None, XlsHorizontalRecords(table_label="Items")
        ] = None

Each *mapping* descriptor (the ``XlsMappingAnnotation`` subclasses) selects
the field processor. The remaining descriptors modify conversion and write
behavior.
"""

from dataclasses import dataclass
from enum import Enum

from .xlsx_address import Direction


class LabelledCellType(Enum):
    """Where the value cell lies relative to its label."""

    LEFT = "left"
    RIGHT = "right"
    ABOVE = "above"
    BELOW = "below"


class RecordTerminal(Enum):
    """How the end of a table is detected."""

    BORDER = "border"
    EMPTY = "empty"
    COUNT = "count"


class OverOperate(Enum):
    BREAK = "break"
    ERROR = "error"


class RemainedOperate(Enum):
    NONE = "none"
    CLEAR = "clear"


class OverOperation(Enum):
    """What to do with records that do not fit the template table."""

    BREAK = "break"
    COPY = "copy"
    INSERT = "insert"


class RemainedOperation(Enum):
    """What to do with template rows that receive no record."""

    NONE = "none"
    CLEAR = "clear"
    DELETE = "delete"


# Sheet level
@dataclass(frozen=True)
class XlsSheet:
    """Selects the sheet of a record class by name, zero-based number or regex."""

    name: str | None = None
    number: int = -1
    regex: str | None = None


@dataclass(frozen=True)
class XlsMappingAnnotation:
    """Base of the descriptors that select a field processor."""


@dataclass(frozen=True)
class XlsSheetName(XlsMappingAnnotation):
    pass


@dataclass(frozen=True)
class XlsCell(XlsMappingAnnotation):
    address: str | None = None
    row: int = -1
    column: int = -1


@dataclass(frozen=True)
class XlsLabelledCell(XlsMappingAnnotation):
    label: str
    type: LabelledCellType = LabelledCellType.RIGHT
    optional: bool = False
    range: int = 1
    skip: int = 0
    header_label: str | None = None
    label_merged: bool = True


@dataclass(frozen=True)
class XlsArrayCell(XlsMappingAnnotation):
    address: str | None = None
    row: int = -1
    column: int = -1
    size: int = 1
    direction: Direction = Direction.HORIZONTAL
    item_merged: bool = False


@dataclass(frozen=True)
class XlsLabelledArrayCell(XlsMappingAnnotation):
    label: str
    size: int = 1
    type: LabelledCellType = LabelledCellType.RIGHT
    direction: Direction = Direction.HORIZONTAL
    item_merged: bool = False
    optional: bool = False
    range: int = 1
    skip: int = 0
    header_label: str | None = None
    label_merged: bool = True


@dataclass(frozen=True)
class XlsRecords(XlsMappingAnnotation):
    """Common attributes of horizontal and vertical tables.

    The header starts at ``table_address`` (or ``header_row``/``header_column``)
    or a few cells after the ``table_label`` cell.
    """

    table_label: str | None = None
    table_address: str | None = None
    header_row: int = -1
    header_column: int = -1
    terminal: RecordTerminal = RecordTerminal.EMPTY
    range: int = -1
    header_limit: int = 0
    terminate_label: str | None = None
    optional: bool = False
    ignore_empty_record: bool = False


@dataclass(frozen=True)
class XlsHorizontalRecords(XlsRecords):
    """A table whose header is a row; each following row is one record.

    With ``table_label`` the header starts ``bottom`` cells below the label.
    """

    bottom: int = 1


@dataclass(frozen=True)
class XlsVerticalRecords(XlsRecords):
    """A table whose header is a column; each following column is one record.

    With ``table_label`` the header starts ``right`` cells right of the label.
    """

    right: int = 1


# Record level (inside a table)
@dataclass(frozen=True)
class XlsColumn(XlsMappingAnnotation):
    column_name: str
    merged: bool = False
    header_merged: int = 0
    optional: bool = False


@dataclass(frozen=True)
class XlsMapColumns(XlsMappingAnnotation):
    previous_column_name: str
    next_column_name: str | None = None
    optional: bool = False


@dataclass(frozen=True)
class XlsArrayColumns(XlsMappingAnnotation):
    column_name: str
    size: int = 1
    item_merged: bool = False
    optional: bool = False


# Write behavior
@dataclass(frozen=True)
class XlsArrayOperator:
    over_case: OverOperate = OverOperate.BREAK
    remained_case: RemainedOperate = RemainedOperate.NONE


@dataclass(frozen=True)
class XlsRecordOption:
    over_operation: OverOperation = OverOperation.INSERT
    remained_operation: RemainedOperation = RemainedOperation.NONE


# Conversion
@dataclass(frozen=True)
class XlsDefaultValue:
    value: str


@dataclass(frozen=True)
class XlsTrim:
    pass


@dataclass(frozen=True)
class XlsFormula:
    """Write a formula instead of the value.

    ``value`` may contain ``{rowNumber}``, ``{columnNumber}`` and
    ``{columnAlpha}``; ``method`` names a method of the record returning the
    formula for a :class:`CellPosition`. With ``primary=False`` the formula is
    only written when the value is ``None``.
    """

    value: str | None = None
    method: str | None = None
    primary: bool = True


@dataclass(frozen=True)
class XlsNumberConverter:
    pattern: str | None = None
    excel_pattern: str | None = None


@dataclass(frozen=True)
class XlsBooleanConverter:
    load_for_true: tuple[str, ...] = ("true", "1", "yes", "on", "y", "t", "○")
    load_for_false: tuple[str, ...] = ("false", "0", "no", "off", "n", "f", "×")
    save_as_true: str | None = None
    save_as_false: str | None = None
    ignore_case: bool = True
    fail_to_false: bool = False


@dataclass(frozen=True)
class XlsDateConverter:
    pattern: str | None = None
    excel_pattern: str | None = None
    lenient: bool = False


@dataclass(frozen=True)
class XlsEnumConverter:
    ignore_case: bool = False
    selector: str | None = None


@dataclass(frozen=True)
class XlsArrayConverter:
    separator: str = ","
    ignore_empty_element: bool = False
    element_trim: bool = False
