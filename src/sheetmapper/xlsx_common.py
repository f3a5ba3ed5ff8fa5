"""
Common functionality shared by the cell and table processors.

This module contains the shared infrastructure:
- Mapper configuration and label matching
- The per-sheet processing context (converters, errors, failure policy)
- The base class of all field processors
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from .xlsx_address import CellPosition
from .xlsx_annotations import XlsMappingAnnotation
from .xlsx_cellconverter import CellConverter, CellConverterRegistry
from .xlsx_cells import CellView, SheetView
from .xlsx_errors import (
    AnnotationInvalidError,
    CellNotFoundError,
    SheetBindingErrors,
    TypeBindError,
)
from .xlsx_fieldaccessor import FieldAccessor

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_label(text: str) -> str:
    """Remove all whitespace, including line breaks and tabs."""
    return _WHITESPACE.sub("", text)


# Configuration
@dataclass
class MapperConfig:
    """Switches of a mapper; not modified once a mapper uses it."""

    normalize_label_text: bool = False
    regex_label_text: bool = False
    merge_cell_on_save: bool = False
    ignore_sheet_not_found: bool = False
    continue_type_bind_failure: bool = False
    skip_type_bind_failure: bool = False
    error_on_multiple_label_match: bool = False
    formula_recalculation_on_save: bool = True
    converter_registry: CellConverterRegistry = field(
        default_factory=CellConverterRegistry
    )

    def matches_label(self, text: str | None, label: str) -> bool:
        """Compare a cell text with a label under the configured mode.

        With ``regex_label_text`` a label written as ``/pattern/`` must match
        the whole (normalized) text.
        """
        if text is None or label is None:
            return False
        if self.regex_label_text and len(label) > 2 and label[0] == label[-1] == "/":  # noqa: PLR2004
            target = normalize_label(text) if self.normalize_label_text else text
            try:
                return re.fullmatch(label[1:-1], target) is not None
            except re.error as e:
                raise AnnotationInvalidError(
                    label, None, f"invalid regular expression: {e}"
                ) from e
        if self.normalize_label_text:
            return normalize_label(text) == normalize_label(label)
        return text == label


# Processing context
class ProcessContext:
    """State of processing one sheet: configuration, sheet, errors, converters."""

    def __init__(
        self,
        config: MapperConfig,
        sheet: SheetView,
        errors: SheetBindingErrors,
    ):
        self.config = config
        self.sheet = sheet
        self.errors = errors
        self._converters: dict[tuple, CellConverter] = {}

    def converter(
        self,
        field: FieldAccessor,
        target_type: Any = None,
        nullable: bool | None = None,
    ) -> CellConverter:
        key = (field.model_class, field.name, target_type, nullable)
        if key not in self._converters:
            self._converters[key] = self.config.converter_registry.create(
                field, target_type, nullable
            )
        return self._converters[key]

    def find_label(
        self, label: str, after: CellPosition | None = None
    ) -> CellPosition | None:
        position = self.sheet.find_label(
            label,
            self.config.matches_label,
            after=after,
            error_on_multiple=self.config.error_on_multiple_label_match,
        )
        logger.debug("Label '%s' in '%s' found at %s", label, self.sheet.title, position)
        return position

    def bind_failed(self, key: str, error: TypeBindError, label: str | None = None) -> None:
        """Apply the failure policy to a conversion error."""
        if self.config.skip_type_bind_failure:
            logger.debug("Skipped type bind failure: %s", error)
            return
        if self.config.continue_type_bind_failure:
            self.errors.add_type_bind_error(key, error, label)
            return
        raise error


# Base processor class
class FieldProcessor(ABC):
    """Base processor interface: one subclass per mapping descriptor."""

    annotation_type: type[XlsMappingAnnotation] = XlsMappingAnnotation

    @abstractmethod
    def load_process(
        self,
        bean: BaseModel,
        field: FieldAccessor,
        annotation: XlsMappingAnnotation,
        ctx: ProcessContext,
    ) -> None:
        """Read the field's region from the sheet into the bean."""

    @abstractmethod
    def save_process(
        self,
        bean: BaseModel,
        field: FieldAccessor,
        annotation: XlsMappingAnnotation,
        ctx: ProcessContext,
    ) -> None:
        """Write the field's value into its region of the sheet."""

    def read_cell(
        self,
        bean: BaseModel,
        field: FieldAccessor,
        converter: CellConverter,
        cell: CellView,
        ctx: ProcessContext,
        key: str | None = None,
        label: str | None = None,
    ) -> Any:
        """Convert one cell and record its position, label and comment.

        A failed conversion leaves the zero value unless the failure policy
        raises.
        """
        path_key = field.name if key is None else f"{field.name}[{key}]"
        field.set_position(bean, cell.position, key)
        if label is not None:
            field.set_label(bean, label, key)
        if cell.comment:
            field.set_comment(bean, cell.comment, key)
        try:
            return converter.to_object(cell)
        except TypeBindError as e:
            ctx.bind_failed(path_key, e, label)
            return converter.zero_value

    def write_cell(
        self,
        bean: BaseModel,
        field: FieldAccessor,
        converter: CellConverter,
        position: CellPosition,
        value: Any,
        ctx: ProcessContext,
        key: str | None = None,
        label: str | None = None,
    ) -> None:
        path_key = field.name if key is None else f"{field.name}[{key}]"
        try:
            converter.to_cell(ctx.sheet, position, value, bean)
        except TypeBindError as e:
            e.position = e.position or position
            ctx.bind_failed(path_key, e, label)
        field.set_position(bean, position, key)
        if label is not None:
            field.set_label(bean, label, key)
        comment = field.get_comment(bean, key)
        if comment:
            ctx.sheet.set_comment(position, comment)

    def not_found(
        self, ctx: ProcessContext, field: FieldAccessor, label: str, optional: bool
    ) -> None:
        """Raise for a missing required region; optional regions are skipped."""
        if optional:
            logger.debug("Optional region '%s' of '%s' not found", label, field.name)
            return
        raise CellNotFoundError(ctx.sheet.title, label)
