"""
Processors for single cells, labelled cells, arrays of cells and the sheet name.
"""

import logging
from typing import Any

from pydantic import BaseModel

from .xlsx_address import BadAddressError, CellPosition, Direction
from .xlsx_annotations import (
    LabelledCellType,
    OverOperate,
    RemainedOperate,
    XlsArrayCell,
    XlsArrayOperator,
    XlsCell,
    XlsFormula,
    XlsLabelledArrayCell,
    XlsLabelledCell,
    XlsSheetName,
)
from .xlsx_cells import SheetView
from .xlsx_common import FieldProcessor, ProcessContext
from .xlsx_errors import AnnotationInvalidError
from .xlsx_fieldaccessor import FieldAccessor

logger = logging.getLogger(__name__)

# (rows, columns) from a label to its value cell
_LABEL_OFFSETS = {
    LabelledCellType.RIGHT: (0, 1),
    LabelledCellType.LEFT: (0, -1),
    LabelledCellType.BELOW: (1, 0),
    LabelledCellType.ABOVE: (-1, 0),
}


def resolve_address(field: FieldAccessor, annotation: Any) -> CellPosition:
    """The anchor of an address based descriptor (``address`` or ``row``/``column``)."""
    if annotation.address:
        try:
            return CellPosition.parse(annotation.address)
        except BadAddressError as e:
            raise AnnotationInvalidError(field.name, annotation, str(e)) from e
    if annotation.row < 0 or annotation.column < 0:
        raise AnnotationInvalidError(
            field.name,
            annotation,
            "address or zero or positive row and column are required",
        )
    return CellPosition(row=annotation.row, column=annotation.column)


def item_positions(
    sheet: SheetView,
    start: CellPosition,
    size: int,
    direction: Direction,
    item_merged: bool,
) -> list[CellPosition]:
    """Positions of the items of an array spanning ``size`` cells.

    With ``item_merged`` the cells of a merged region count as one item.
    """
    positions = []
    offset = 0
    while offset < size:
        position = direction.step(start, offset)
        positions.append(position)
        offset += max(1, sheet.merged_span(position, direction)) if item_merged else 1
    return positions


def as_container(field: FieldAccessor, items: list):
    origin = getattr(field.value_type, "__origin__", field.value_type)
    if origin in (tuple, set, frozenset):
        return origin(items)
    return items


class SheetNameProcessor(FieldProcessor):
    annotation_type = XlsSheetName

    def load_process(self, bean, field, annotation, ctx):
        field.set(bean, ctx.sheet.title)

    def save_process(self, bean, field, annotation, ctx):
        # the sheet was already chosen with the field value
        pass


class CellProcessor(FieldProcessor):
    annotation_type = XlsCell

    def load_process(self, bean, field, annotation, ctx):
        position = resolve_address(field, annotation)
        converter = ctx.converter(field)
        value = self.read_cell(bean, field, converter, ctx.sheet.get(position), ctx)
        field.set(bean, value)

    def save_process(self, bean, field, annotation, ctx):
        position = resolve_address(field, annotation)
        converter = ctx.converter(field)
        self.write_cell(bean, field, converter, position, field.get(bean), ctx)


class LabelledCellProcessor(FieldProcessor):
    annotation_type = XlsLabelledCell

    def find_value_position(
        self,
        field: FieldAccessor,
        annotation: XlsLabelledCell | XlsLabelledArrayCell,
        ctx: ProcessContext,
        probe: bool,
    ) -> tuple[CellPosition, str] | None:
        """Locate the label and step to its value cell.

        Returns ``None`` when an optional label is missing. With ``probe``
        blank cells are skipped up to ``range`` cells.
        """
        if annotation.skip < 0 or annotation.range < 1:
            raise AnnotationInvalidError(
                field.name, annotation, "skip must be >= 0 and range >= 1"
            )
        after = None
        if annotation.header_label:
            after = ctx.find_label(annotation.header_label)
            if after is None:
                self.not_found(ctx, field, annotation.header_label, annotation.optional)
                return None
        label_position = ctx.find_label(annotation.label, after)
        if label_position is None:
            self.not_found(ctx, field, annotation.label, annotation.optional)
            return None
        label_text = ctx.sheet.text(label_position)

        d_row, d_col = _LABEL_OFFSETS[annotation.type]
        edge_row, edge_col = label_position.row, label_position.column
        merged = ctx.sheet.merged_range(label_position)
        if merged is not None and annotation.label_merged:
            if d_row:
                edge_row = merged.max_row - 1 if d_row > 0 else merged.min_row - 1
            if d_col:
                edge_col = merged.max_col - 1 if d_col > 0 else merged.min_col - 1

        distance = annotation.skip + 1
        first_row = edge_row + d_row * distance
        first_col = edge_col + d_col * distance
        if first_row < 0 or first_col < 0:
            self.not_found(ctx, field, annotation.label, annotation.optional)
            return None
        if probe:
            for step in range(annotation.range):
                row, column = first_row + d_row * step, first_col + d_col * step
                if row < 0 or column < 0:
                    break
                position = CellPosition(row, column)
                if not ctx.sheet.is_blank(position, follow_merged=False):
                    return position, label_text
        # all probed cells are blank; the value belongs to the first one
        return CellPosition(first_row, first_col), label_text

    def load_process(self, bean, field, annotation, ctx):
        found = self.find_value_position(field, annotation, ctx, probe=True)
        if found is None:
            return
        position, label = found
        converter = ctx.converter(field)
        value = self.read_cell(
            bean, field, converter, ctx.sheet.get(position), ctx, label=label
        )
        field.set(bean, value)

    def save_process(self, bean, field, annotation, ctx):
        found = self.find_value_position(field, annotation, ctx, probe=False)
        if found is None:
            return
        position, label = found
        converter = ctx.converter(field)
        self.write_cell(bean, field, converter, position, field.get(bean), ctx, label=label)


class ArrayCellProcessor(FieldProcessor):
    annotation_type = XlsArrayCell

    def check_array(self, field: FieldAccessor, annotation) -> None:
        if annotation.size < 1:
            raise AnnotationInvalidError(
                field.name, annotation, f"size must be 1 or more, got {annotation.size}"
            )
        if field.container != "list":
            raise AnnotationInvalidError(
                field.name,
                annotation,
                f"field type {field.field_type} must be a list, tuple or set",
            )

    def start_position(
        self, bean, field, annotation, ctx
    ) -> tuple[CellPosition, str | None] | None:
        return resolve_address(field, annotation), None

    def load_process(self, bean, field, annotation, ctx):
        self.check_array(field, annotation)
        found = self.start_position(bean, field, annotation, ctx)
        if found is None:
            return
        start, label = found
        converter = ctx.converter(field, field.component_type, field.component_optional)
        positions = item_positions(
            ctx.sheet, start, annotation.size, annotation.direction, annotation.item_merged
        )
        values = [
            self.read_cell(
                bean, field, converter, ctx.sheet.get(position), ctx, key=i, label=label
            )
            for i, position in enumerate(positions)
        ]
        field.set(bean, as_container(field, values))

    def save_process(self, bean, field, annotation, ctx):
        self.check_array(field, annotation)
        found = self.start_position(bean, field, annotation, ctx)
        if found is None:
            return
        start, label = found
        converter = ctx.converter(field, field.component_type, field.component_optional)
        positions = item_positions(
            ctx.sheet, start, annotation.size, annotation.direction, annotation.item_merged
        )
        values = write_array(
            self, bean, field, annotation, converter, positions, ctx, label=label
        )
        if ctx.config.merge_cell_on_save and annotation.item_merged:
            ctx.sheet.merge_equal_runs(
                positions[: len(values)], values, annotation.direction
            )


class LabelledArrayCellProcessor(ArrayCellProcessor):
    annotation_type = XlsLabelledArrayCell

    def start_position(self, bean, field, annotation, ctx):
        return LabelledCellProcessor().find_value_position(
            field, annotation, ctx, probe=False
        )


def write_array(
    processor: FieldProcessor,
    bean: BaseModel,
    field: FieldAccessor,
    annotation: Any,
    converter,
    positions: list[CellPosition],
    ctx: ProcessContext,
    label: str | None = None,
) -> list:
    """Write the items of an array field; returns the written values.

    ``XlsArrayOperator`` decides what happens with items beyond the
    positions and with positions left without an item. A formula field
    fills all positions.
    """
    operator = field.get_annotation(XlsArrayOperator) or XlsArrayOperator()
    values = list(field.get(bean) or [])
    if len(values) > len(positions):
        if operator.over_case is OverOperate.ERROR:
            raise AnnotationInvalidError(
                field.name,
                annotation,
                f"size ({annotation.size}) exceeded by data size ({len(values)})",
            )
        logger.debug(
            "'%s': %d items written, %d dropped",
            field.name,
            len(positions),
            len(values) - len(positions),
        )
        values = values[: len(positions)]
    if field.has_annotation(XlsFormula):
        values.extend([None] * (len(positions) - len(values)))

    for i, position in enumerate(positions):
        if i < len(values):
            if not annotation.item_merged:
                ctx.sheet.unmerge(position)
            processor.write_cell(
                bean, field, converter, position, values[i], ctx, key=i, label=label
            )
        elif operator.remained_case is RemainedOperate.CLEAR:
            ctx.sheet.write(position, None)
    return values
