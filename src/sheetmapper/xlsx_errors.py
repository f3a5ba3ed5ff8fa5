"""
Exceptions and the binding-error collector.

Fatal problems (misconfigured descriptors, missing sheets or cells) are
raised as exceptions. Conversion problems can instead be accumulated in a
:class:`SheetBindingErrors` so that a partially valid sheet is still loaded.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from .xlsx_address import CellPosition

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    ANNOTATION_INVALID = "annotation_invalid"
    SHEET_NOT_FOUND = "sheet_not_found"
    CELL_NOT_FOUND = "cell_not_found"
    CONVERSION = "conversion"
    FORMULA = "formula"


class XlsMapperError(Exception):
    """Base class of all mapping errors."""

    kind: ErrorKind


class AnnotationInvalidError(XlsMapperError):
    """A descriptor is misconfigured or not applicable to the field type."""

    kind = ErrorKind.ANNOTATION_INVALID

    def __init__(self, field_name: str, annotation: Any, reason: str):
        self.field_name = field_name
        self.annotation = annotation
        self.reason = reason
        if annotation is None:
            super().__init__(f"'{field_name}': {reason}")
            return
        anno_name = getattr(annotation, "__name__", type(annotation).__name__)
        super().__init__(f"'{field_name}': annotation @{anno_name}: {reason}")


class SheetNotFoundError(XlsMapperError):
    kind = ErrorKind.SHEET_NOT_FOUND

    def __init__(self, sheet: str, reason: str = "sheet not found"):
        self.sheet = sheet
        super().__init__(f"{reason}: '{sheet}'")


class CellNotFoundError(XlsMapperError):
    """A required region could not be resolved in the sheet."""

    kind = ErrorKind.CELL_NOT_FOUND

    def __init__(self, sheet_name: str, label: str, reason: str = "cell not found"):
        self.sheet_name = sheet_name
        self.label = label
        super().__init__(f"{reason}: sheet '{sheet_name}', label '{label}'")


class AmbiguousLabelError(CellNotFoundError):
    """More than one cell matched a label while ambiguous matches are forbidden."""

    def __init__(self, sheet_name: str, label: str, positions: list[CellPosition]):
        self.positions = positions
        found = ", ".join(p.to_address() for p in positions)
        super().__init__(sheet_name, label, f"label matches several cells ({found})")


class TypeBindError(XlsMapperError, ValueError):
    """Cell content could not be converted to the field type (or back)."""

    kind = ErrorKind.CONVERSION

    def __init__(
        self,
        field_name: str,
        target_type: Any,
        value: Any,
        original_error: Exception | None = None,
        position: CellPosition | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.field_name = field_name
        self.target_type = target_type
        self.value = value
        self.original_error = original_error
        self.position = position
        self.context = dict(context or {})
        type_name = getattr(target_type, "__name__", str(target_type))
        where = f" at {position}" if position is not None else ""
        detail = f": {original_error}" if original_error else ""
        super().__init__(
            f"Cannot convert '{value}'{where} of field '{field_name}' "
            f"to {type_name}{detail}"
        )


class FormulaError(XlsMapperError, ValueError):
    """The formula template of a field is malformed."""

    kind = ErrorKind.FORMULA

    def __init__(self, formula: str, reason: str):
        self.formula = formula
        self.reason = reason
        super().__init__(f"Invalid formula '{formula}': {reason}")


@dataclass
class FieldError:
    """One accumulated error, scoped to sheet, field path and cell."""

    sheet_name: str | None
    field_path: str
    kind: ErrorKind
    message: str
    position: CellPosition | None = None
    label: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        where = f"!{self.position}" if self.position is not None else ""
        return f"[{self.sheet_name}{where}] {self.field_path}: {self.message}"


class SheetBindingErrors(Generic[T]):
    """The record of one sheet together with the errors found while binding it.

    Nested processors push a path segment (for example ``rows[2]``) so that
    errors of record fields are reported as ``rows[2].price``.
    """

    def __init__(self, target: T | None = None, sheet_name: str | None = None):
        self.target = target
        self.sheet_name = sheet_name
        self.errors: list[FieldError] = []
        self._path: list[str] = []

    def push_path(self, segment: str) -> None:
        self._path.append(segment)

    def pop_path(self) -> None:
        self._path.pop()

    def build_field_path(self, key: str) -> str:
        return ".".join([*self._path, key])

    def add_field_error(
        self,
        key: str,
        kind: ErrorKind,
        message: str,
        position: CellPosition | None = None,
        label: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> FieldError:
        error = FieldError(
            sheet_name=self.sheet_name,
            field_path=self.build_field_path(key),
            kind=kind,
            message=message,
            position=position,
            label=label,
            context=dict(context or {}),
        )
        self.errors.append(error)
        return error

    def add_type_bind_error(
        self, key: str, error: TypeBindError, label: str | None = None
    ) -> FieldError:
        context = {
            "type": error.target_type,
            "observed_text": error.value,
            **error.context,
        }
        field_error = self.add_field_error(
            key,
            ErrorKind.CONVERSION,
            str(error),
            position=error.position,
            label=label,
            context=context,
        )
        logger.warning("Type bind failure: %s", field_error)
        return field_error

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def get_field_errors(self, field_path: str) -> list[FieldError]:
        """Errors of a field path; a trailing ``*`` matches a path prefix."""
        if field_path.endswith("*"):
            prefix = field_path[:-1]
            return [e for e in self.errors if e.field_path.startswith(prefix)]
        return [e for e in self.errors if e.field_path == field_path]

    def get_cell_field_error(self, position: CellPosition | str) -> FieldError | None:
        if isinstance(position, str):
            position = CellPosition.parse(position)
        for error in self.errors:
            if error.position == position:
                return error
        return None

    def __iter__(self):
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __repr__(self) -> str:
        return (
            f"SheetBindingErrors(sheet_name={self.sheet_name!r}, "
            f"errors={len(self.errors)})"
        )


class MultipleSheetBindingErrors(Generic[T]):
    """Results of loading several sheets at once."""

    def __init__(self):
        self.sheets: list[SheetBindingErrors[T]] = []

    def add(self, errors: SheetBindingErrors[T]) -> None:
        self.sheets.append(errors)

    @property
    def targets(self) -> list[T]:
        return [s.target for s in self.sheets if s.target is not None]

    @property
    def has_errors(self) -> bool:
        return any(s.has_errors for s in self.sheets)

    def __iter__(self):
        return iter(self.sheets)

    def __len__(self) -> int:
        return len(self.sheets)
