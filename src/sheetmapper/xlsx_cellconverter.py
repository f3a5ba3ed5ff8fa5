"""
Cell converters: move one value between a cell and a field.

Reading first tries the native cell value (a number cell into a number
field, a date cell into a date field, ...) through :data:`NATIVE_COERCIONS`;
everything else goes through the cell's formatted text and the field's
:class:`~sheetmapper.xlsx_textformatter.TextFormatter`. Default values,
trimming and formulas are applied here for every field kind.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, get_origin

from openpyxl.styles.numbers import is_date_format
from openpyxl.utils.datetime import from_excel

from .xlsx_address import CellPosition
from .xlsx_annotations import (
    XlsArrayConverter,
    XlsBooleanConverter,
    XlsDateConverter,
    XlsDefaultValue,
    XlsFormula,
    XlsNumberConverter,
    XlsTrim,
)
from .xlsx_cells import CellView, SheetView
from .xlsx_errors import AnnotationInvalidError, TypeBindError
from .xlsx_fieldaccessor import FieldAccessor, container_kind, unwrap_optional, zero_value
from .xlsx_formula import expand_formula
from .xlsx_textformatter import (
    TextFormatter,
    TextFormatterRegistry,
    TextParseError,
    convert_decimal,
)

logger = logging.getLogger(__name__)


def _number_from_numeric(value, converter: "CellConverter"):
    return convert_decimal(Decimal(str(value)), converter.target_type)


def _date_from_date(value, converter: "CellConverter"):
    return converter.formatter.from_native(value)


def _date_from_numeric(value, converter: "CellConverter"):
    return converter.formatter.from_native(from_excel(value))


def _bool_from_boolean(value, converter: "CellConverter"):
    return value


# (converter family, cell kind) -> coercion of the native cell value
NATIVE_COERCIONS: dict[tuple[str, str], Callable[[Any, "CellConverter"], Any]] = {
    ("number", "numeric"): _number_from_numeric,
    ("boolean", "boolean"): _bool_from_boolean,
    ("date", "date"): _date_from_date,
    ("date", "numeric"): _date_from_numeric,
}


def type_family(target_type: Any) -> str:
    """Group a target type: number, boolean, date, string, enum or other."""
    if target_type is bool:
        return "boolean"
    if target_type in (int, float, Decimal):
        return "number"
    if target_type in (datetime, date, time):
        return "date"
    if target_type is str:
        return "string"
    if isinstance(target_type, type) and issubclass(target_type, Enum):
        return "enum"
    return "other"


class CellConverter:
    """Converts between a cell and a field value (or one array element)."""

    def __init__(
        self,
        field: FieldAccessor,
        target_type: Any,
        formatter: TextFormatter,
        family: str,
        nullable: bool,
    ):
        self.field = field
        self.target_type = target_type
        self.formatter = formatter
        self.family = family
        self.nullable = nullable
        self.default_value = field.get_annotation(XlsDefaultValue)
        self.trim = field.has_annotation(XlsTrim)
        self.formula = field.get_annotation(XlsFormula)
        self.excel_pattern = self._find_excel_pattern()
        self.save_as_text = self._saves_boolean_as_text()

    def _find_excel_pattern(self) -> str | None:
        if self.family == "number":
            anno = self.field.get_annotation(XlsNumberConverter)
            return anno.excel_pattern if anno else None
        if self.family == "date":
            anno = self.field.get_annotation(XlsDateConverter)
            return anno.excel_pattern if anno else None
        return None

    def _saves_boolean_as_text(self) -> bool:
        anno = self.field.get_annotation(XlsBooleanConverter)
        return anno is not None and (
            anno.save_as_true is not None or anno.save_as_false is not None
        )

    @property
    def zero_value(self) -> Any:
        return zero_value(self.target_type, self.nullable)

    # loading
    def to_object(self, cell: CellView) -> Any:
        """Convert a cell; raises TypeBindError when the content does not fit."""
        coerce = NATIVE_COERCIONS.get((self.family, cell.kind))
        if coerce is not None:
            try:
                return coerce(cell.value, self)
            except (ArithmeticError, InvalidOperation, ValueError, TypeError) as e:
                raise TypeBindError(
                    self.field.name, self.target_type, cell.value, e, cell.position
                ) from e

        text = cell.text
        if self.trim:
            text = text.strip()
        if text == "" and self.default_value is not None:
            text = self.default_value.value
            if self.trim:
                text = text.strip()
        return self.parse_text(text, cell.position)

    def parse_text(self, text: str, position: CellPosition | None = None) -> Any:
        if text == "":
            if self.family == "string":
                return "" if self.trim else None
            if self.family == "list":
                return self._as_container([])
            return self.zero_value
        try:
            value = self.formatter.parse(text)
        except TextParseError as e:
            raise TypeBindError(
                self.field.name, self.target_type, text, e, position, e.context
            ) from e
        if self.family == "list":
            value = self._as_container(value)
        return value

    def _as_container(self, items: list):
        origin = get_origin(self.target_type) or self.target_type
        if origin in (tuple, set, frozenset):
            return origin(items)
        return items

    # saving
    def to_cell(
        self, sheet: SheetView, position: CellPosition, value: Any, bean: Any = None
    ) -> None:
        """Write a value (or the field's formula) into the cell at ``position``."""
        template_format = sheet.number_format(position)
        if self.formula is not None and (self.formula.primary or value is None):
            formula = self._build_formula(position, bean)
            if formula:
                sheet.write_formula(position, formula)
                self._apply_number_format(sheet, position, template_format)
                return
        if value is None and self.default_value is not None:
            value = self.parse_text(self.default_value.value, position)
        native = self.to_native(value)
        sheet.write(position, native)
        if native is not None:
            self._apply_number_format(sheet, position, template_format)

    def to_native(self, value: Any) -> Any:
        """The value to store in a cell; None leaves the cell blank."""
        if value is None:
            return None
        try:
            if self.family == "number":
                if isinstance(value, (int, float, Decimal)):
                    return value
                return convert_decimal(Decimal(str(value)), self.target_type)
            if self.family == "boolean":
                return self.formatter.format(value) if self.save_as_text else bool(value)
            if self.family == "date":
                return self.formatter.adapter.from_datetime(
                    self.formatter.adapter.to_datetime(value)
                )
            if self.family == "string":
                text = str(value).strip() if self.trim else str(value)
                return text or None
            text = self.formatter.format(value)
        except (ArithmeticError, InvalidOperation, ValueError, TypeError, AttributeError) as e:
            raise TypeBindError(self.field.name, self.target_type, value, e) from e
        return text or None

    def _apply_number_format(
        self, sheet: SheetView, position: CellPosition, template_format: str
    ) -> None:
        if self.excel_pattern:
            sheet.set_number_format(position, self.excel_pattern)
        elif self.family == "date" and not is_date_format(template_format):
            sheet.set_number_format(
                position, self.formatter.adapter.default_excel_pattern
            )
        elif template_format != sheet.number_format(position):
            # keep the formatting of the template
            sheet.set_number_format(position, template_format)

    def _build_formula(self, position: CellPosition, bean: Any) -> str | None:
        if self.formula.method:
            method = getattr(bean, self.formula.method, None)
            if not callable(method):
                raise AnnotationInvalidError(
                    self.field.name,
                    self.formula,
                    f"formula method '{self.formula.method}' not found",
                )
            return method(position)
        if self.formula.value:
            return expand_formula(self.formula.value, position)
        raise AnnotationInvalidError(
            self.field.name, self.formula, "either value or method is required"
        )


class CellConverterRegistry:
    """Creates cell converters from the field type and its descriptors.

    New target types are supported by registering a text formatter factory;
    their values are then read and written as text.
    """

    def __init__(self, formatters: TextFormatterRegistry | None = None):
        self.formatters = formatters or TextFormatterRegistry.default()

    def register(self, target_type: type, factory) -> None:
        self.formatters.register(target_type, factory)

    def create(
        self,
        field: FieldAccessor,
        target_type: Any = None,
        nullable: bool | None = None,
    ) -> CellConverter:
        """Converter for a field, or for its elements when ``target_type`` is given."""
        if target_type is None:
            target_type = field.value_type
            nullable = field.is_optional
        elif nullable is None:
            target_type, nullable = unwrap_optional(target_type)

        try:
            if container_kind(target_type) == "list":
                if not field.has_annotation(XlsArrayConverter):
                    raise AnnotationInvalidError(
                        field.name,
                        field.mapping,
                        f"type {target_type} needs @XlsArrayConverter for a single cell",
                    )
                element_type, _ = unwrap_optional(
                    target_type.__args__[0] if hasattr(target_type, "__args__") else str
                )
                formatter = self.formatters.create_list(element_type, field)
                return CellConverter(field, target_type, formatter, "list", nullable)
            formatter = self.formatters.create(target_type, field)
        except LookupError as e:
            raise AnnotationInvalidError(
                field.name, field.mapping, f"type {target_type} is not supported"
            ) from e
        except (ValueError, KeyError) as e:
            raise AnnotationInvalidError(field.name, field.mapping, str(e)) from e
        return CellConverter(field, target_type, formatter, type_family(target_type), nullable)
