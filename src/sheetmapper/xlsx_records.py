"""
Processors for tables of records.

A horizontal table has a header row and one record per following row; a
vertical table has a header column and one record per following column.
Both are handled by :class:`RecordsProcessor` through a :class:`TableLayout`
that maps table coordinates onto the sheet:

- a *record line* is the row (column) holding one record,
- a *header line* is the column (row) below (right of) one header.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from .xlsx_address import BadAddressError, CellPosition, Direction
from .xlsx_annotations import (
    OverOperation,
    RecordTerminal,
    RemainedOperation,
    XlsArrayColumns,
    XlsColumn,
    XlsHorizontalRecords,
    XlsMapColumns,
    XlsRecordOption,
    XlsRecords,
    XlsVerticalRecords,
)
from .xlsx_cells import SheetView
from .xlsx_cells_processor import as_container, item_positions, write_array
from .xlsx_common import FieldProcessor, ProcessContext
from .xlsx_errors import AnnotationInvalidError
from .xlsx_fieldaccessor import (
    FieldAccessor,
    RecordDescriptor,
    analyze_record,
    is_record_class,
    new_record,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableLayout:
    """Orientation of a table."""

    horizontal: bool

    def cell(self, record_line: int, header_line: int) -> CellPosition:
        if self.horizontal:
            return CellPosition(record_line, header_line)
        return CellPosition(header_line, record_line)

    def record_line(self, position: CellPosition) -> int:
        return position.row if self.horizontal else position.column

    def header_line(self, position: CellPosition) -> int:
        return position.column if self.horizontal else position.row

    @property
    def header_direction(self) -> Direction:
        """Direction along the headers."""
        return Direction.HORIZONTAL if self.horizontal else Direction.VERTICAL

    @property
    def record_direction(self) -> Direction:
        """Direction in which records follow each other."""
        return Direction.VERTICAL if self.horizontal else Direction.HORIZONTAL

    @property
    def border_side(self) -> str:
        return "left" if self.horizontal else "top"

    def max_record_line(self, sheet: SheetView) -> int:
        return sheet.max_row if self.horizontal else sheet.max_column

    def max_header_line(self, sheet: SheetView) -> int:
        return sheet.max_column if self.horizontal else sheet.max_row


@dataclass(frozen=True)
class RecordHeader:
    label: str
    line: int


@dataclass
class ColumnBinding:
    """A record field bound to header lines of the table.

    ``entries`` holds ``(key, label, header_line)``; the key is ``None`` for
    a plain column and the header label for map columns.
    """

    field: FieldAccessor
    annotation: Any
    entries: list[tuple[Any, str, int]] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.entries[0][1]


class RecordsProcessor(FieldProcessor):
    """Loads and saves a list of records laid out as a table."""

    annotation_type = XlsRecords
    layout = TableLayout(horizontal=True)

    # region resolution
    def label_distance(self, annotation: XlsRecords) -> int:
        return annotation.bottom

    def check_annotation(self, field: FieldAccessor, annotation: XlsRecords) -> type:
        if annotation.terminal is RecordTerminal.COUNT and annotation.range < 1:
            raise AnnotationInvalidError(
                field.name, annotation, "range must be 1 or more with terminal COUNT"
            )
        if self.label_distance(annotation) < 1:
            raise AnnotationInvalidError(
                field.name, annotation, "distance to the table label must be 1 or more"
            )
        if annotation.header_limit < 0:
            raise AnnotationInvalidError(
                field.name, annotation, "header_limit must be zero or positive"
            )
        if field.container != "list" or not is_record_class(field.component_type):
            raise AnnotationInvalidError(
                field.name,
                annotation,
                f"field type {field.field_type} must be a list of pydantic models",
            )
        return field.component_type

    def find_header_start(
        self, field: FieldAccessor, annotation: XlsRecords, ctx: ProcessContext
    ) -> CellPosition | None:
        if annotation.table_address:
            try:
                return CellPosition.parse(annotation.table_address)
            except BadAddressError as e:
                raise AnnotationInvalidError(field.name, annotation, str(e)) from e
        if annotation.header_row >= 0 and annotation.header_column >= 0:
            return CellPosition(annotation.header_row, annotation.header_column)
        if not annotation.table_label:
            raise AnnotationInvalidError(
                field.name,
                annotation,
                "table_label, table_address or header_row/header_column is required",
            )
        label_position = ctx.find_label(annotation.table_label)
        if label_position is None:
            self.not_found(ctx, field, annotation.table_label, annotation.optional)
            return None
        # the header starts after the label, below it or right of it
        merged = ctx.sheet.merged_range(label_position)
        distance = self.label_distance(annotation)
        if self.layout.horizontal:
            edge = merged.max_row - 1 if merged is not None else label_position.row
            return CellPosition(edge + distance, label_position.column)
        edge = merged.max_col - 1 if merged is not None else label_position.column
        return CellPosition(label_position.row, edge + distance)

    def read_headers(
        self, annotation: XlsRecords, start: CellPosition, ctx: ProcessContext
    ) -> list[RecordHeader]:
        """Headers from ``start`` up to the first blank one or ``header_limit``."""
        headers = []
        record_line = self.layout.record_line(start)
        line = self.layout.header_line(start)
        max_line = self.layout.max_header_line(ctx.sheet)
        while line <= max_line:
            position = self.layout.cell(record_line, line)
            text = ctx.sheet.text(position)
            if not text.strip():
                if ctx.sheet.is_covered(position):
                    line += 1
                    continue
                break
            headers.append(RecordHeader(text, line))
            if annotation.header_limit and len(headers) >= annotation.header_limit:
                break
            line += 1
        logger.debug(
            "Table headers at %s in '%s': %s",
            start,
            ctx.sheet.title,
            [h.label for h in headers],
        )
        return headers

    def _match_header(
        self, headers: list[RecordHeader], name: str, ctx: ProcessContext
    ) -> int | None:
        for index, header in enumerate(headers):
            if ctx.config.matches_label(header.label, name):
                return index
        return None

    def bind_columns(
        self,
        descriptor: RecordDescriptor,
        headers: list[RecordHeader],
        ctx: ProcessContext,
    ) -> list[ColumnBinding]:
        bindings = []
        for record_field in descriptor.fields:
            annotation = record_field.mapping
            if isinstance(annotation, (XlsColumn, XlsArrayColumns)):
                index = self._match_header(headers, annotation.column_name, ctx)
                if index is None:
                    self.not_found(
                        ctx, record_field, annotation.column_name, annotation.optional
                    )
                    continue
                header = headers[index]
                line = header.line
                if isinstance(annotation, XlsColumn):
                    line += annotation.header_merged
                elif annotation.size < 1 or record_field.container != "list":
                    raise AnnotationInvalidError(
                        record_field.name,
                        annotation,
                        "size must be 1 or more and the field a list",
                    )
                bindings.append(
                    ColumnBinding(record_field, annotation, [(None, header.label, line)])
                )
            elif isinstance(annotation, XlsMapColumns):
                if record_field.container != "dict":
                    raise AnnotationInvalidError(
                        record_field.name,
                        annotation,
                        f"field type {record_field.field_type} must be a dict",
                    )
                index = self._match_header(headers, annotation.previous_column_name, ctx)
                if index is None:
                    self.not_found(
                        ctx,
                        record_field,
                        annotation.previous_column_name,
                        annotation.optional,
                    )
                    continue
                entries = []
                for header in headers[index + 1 :]:
                    if annotation.next_column_name and ctx.config.matches_label(
                        header.label, annotation.next_column_name
                    ):
                        break
                    entries.append((header.label, header.label, header.line))
                bindings.append(ColumnBinding(record_field, annotation, entries))
            else:
                raise AnnotationInvalidError(
                    record_field.name,
                    annotation,
                    "only column annotations are allowed in a record of a table",
                )
        return bindings

    def binding_positions(
        self, binding: ColumnBinding, record_line: int, ctx: ProcessContext
    ) -> list[tuple[Any, CellPosition]]:
        """``(key, position)`` of the cells a binding occupies on one record line."""
        if isinstance(binding.annotation, XlsArrayColumns):
            _, _, header_line = binding.entries[0]
            positions = item_positions(
                ctx.sheet,
                self.layout.cell(record_line, header_line),
                binding.annotation.size,
                self.layout.header_direction,
                binding.annotation.item_merged,
            )
            return list(enumerate(positions))
        return [
            (key, self.layout.cell(record_line, header_line))
            for key, _, header_line in binding.entries
        ]

    # termination
    def is_blank_line(
        self,
        bindings: list[ColumnBinding],
        record_line: int,
        first_header_line: int,
        ctx: ProcessContext,
    ) -> bool:
        positions = [
            position
            for binding in bindings
            for _, position in self.binding_positions(binding, record_line, ctx)
        ]
        if not positions:
            positions = [self.layout.cell(record_line, first_header_line)]
        return all(ctx.sheet.is_blank(position) for position in positions)

    def is_terminated(
        self,
        annotation: XlsRecords,
        bindings: list[ColumnBinding],
        record_line: int,
        first_header_line: int,
        ctx: ProcessContext,
    ) -> bool:
        first_cell = self.layout.cell(record_line, first_header_line)
        if annotation.terminate_label and ctx.config.matches_label(
            ctx.sheet.text(first_cell), annotation.terminate_label
        ):
            return True
        if annotation.terminal is RecordTerminal.BORDER:
            return not ctx.sheet.has_border(first_cell, self.layout.border_side)
        if annotation.terminal is RecordTerminal.EMPTY:
            return self.is_blank_line(bindings, record_line, first_header_line, ctx)
        return False

    def data_start(self, start: CellPosition, ctx: ProcessContext) -> int:
        """First record line: right after the (possibly merged) header."""
        span = ctx.sheet.merged_span(start, self.layout.record_direction)
        return self.layout.record_line(start) + span

    # loading
    def load_process(self, bean, field, annotation, ctx):
        record_class = self.check_annotation(field, annotation)
        start = self.find_header_start(field, annotation, ctx)
        if start is None:
            return
        headers = self.read_headers(annotation, start, ctx)
        bindings = self.bind_columns(analyze_record(record_class), headers, ctx)
        first_header_line = self.layout.header_line(start)
        max_line = self.layout.max_record_line(ctx.sheet)

        records = []
        line = self.data_start(start, ctx)
        count = 0
        while line <= max_line:
            if annotation.terminal is RecordTerminal.COUNT and count >= annotation.range:
                break
            if self.is_terminated(annotation, bindings, line, first_header_line, ctx):
                break
            record = new_record(record_class)
            ctx.errors.push_path(f"{field.name}[{len(records)}]")
            try:
                self.load_record(record, bindings, line, ctx)
            finally:
                ctx.errors.pop_path()
            count += 1
            line += 1
            if annotation.ignore_empty_record and self.is_empty_record(record, bindings):
                logger.debug("Dropped empty record of '%s'", field.name)
                continue
            records.append(record)
        logger.debug("Loaded %d records into '%s'", len(records), field.name)
        field.set(bean, as_container(field, records))

    def load_record(
        self,
        record: BaseModel,
        bindings: list[ColumnBinding],
        record_line: int,
        ctx: ProcessContext,
    ) -> None:
        for binding in bindings:
            record_field = binding.field
            annotation = binding.annotation
            if isinstance(annotation, XlsColumn):
                _, position = self.binding_positions(binding, record_line, ctx)[0]
                cell = ctx.sheet.get(position, follow_merged=annotation.merged)
                value = self.read_cell(
                    record,
                    record_field,
                    ctx.converter(record_field),
                    cell,
                    ctx,
                    label=binding.label,
                )
                record_field.set(record, value)
                continue

            converter = ctx.converter(
                record_field,
                record_field.component_type,
                record_field.component_optional,
            )
            values = {}
            for key, position in self.binding_positions(binding, record_line, ctx):
                values[key] = self.read_cell(
                    record,
                    record_field,
                    converter,
                    ctx.sheet.get(position),
                    ctx,
                    key=key,
                    label=key if isinstance(annotation, XlsMapColumns) else binding.label,
                )
            if isinstance(annotation, XlsMapColumns):
                record_field.set(record, values)
            else:
                record_field.set(record, as_container(record_field, list(values.values())))

    def is_empty_record(self, record: BaseModel, bindings: list[ColumnBinding]) -> bool:
        for binding in bindings:
            value = binding.field.get(record)
            if isinstance(value, dict):
                value = [v for v in value.values() if v not in (None, "")]
            elif isinstance(value, (list, tuple, set)):
                value = [v for v in value if v not in (None, "")]
            if value not in (None, "", []):
                return False
        return True

    # saving
    def count_template_lines(
        self,
        annotation: XlsRecords,
        bindings: list[ColumnBinding],
        first_line: int,
        first_header_line: int,
        ctx: ProcessContext,
    ) -> int:
        """Record lines the template provides; at least one."""
        if annotation.terminal is RecordTerminal.COUNT:
            return annotation.range
        max_line = self.layout.max_record_line(ctx.sheet)
        count = 0
        line = first_line
        while line <= max_line:
            if self.is_terminated(annotation, bindings, line, first_header_line, ctx):
                break
            count += 1
            line += 1
        return max(count, 1)

    def table_span(
        self, start: CellPosition, headers: list[RecordHeader], ctx: ProcessContext
    ) -> tuple[int, int]:
        first = self.layout.header_line(start)
        if not headers:
            return first, first
        last_header = headers[-1]
        position = self.layout.cell(self.layout.record_line(start), last_header.line)
        last = last_header.line + ctx.sheet.merged_span(position, self.layout.header_direction) - 1
        return first, last

    def save_process(self, bean, field, annotation, ctx):
        record_class = self.check_annotation(field, annotation)
        start = self.find_header_start(field, annotation, ctx)
        if start is None:
            return
        headers = self.read_headers(annotation, start, ctx)
        bindings = self.bind_columns(analyze_record(record_class), headers, ctx)
        first_header_line = self.layout.header_line(start)
        option = field.get_annotation(XlsRecordOption) or XlsRecordOption()
        records = list(field.get(bean) or [])

        first_line = self.data_start(start, ctx)
        template_count = self.count_template_lines(
            annotation, bindings, first_line, first_header_line, ctx
        )
        span = self.table_span(start, headers, ctx)
        direction = self.layout.record_direction

        written = 0
        for index, record in enumerate(records):
            line = first_line + index
            if index >= template_count:
                if option.over_operation is OverOperation.BREAK:
                    logger.debug(
                        "'%s': %d records do not fit the table",
                        field.name,
                        len(records) - index,
                    )
                    break
                if option.over_operation is OverOperation.INSERT:
                    ctx.sheet.insert_lines(line, 1, direction, template=line - 1)
                else:
                    ctx.sheet.copy_line(line - 1, line, direction, span)
            ctx.errors.push_path(f"{field.name}[{index}]")
            try:
                self.save_record(record, bindings, line, ctx)
            finally:
                ctx.errors.pop_path()
            written += 1

        remained = template_count - written
        if remained > 0:
            if option.remained_operation is RemainedOperation.CLEAR:
                for line in range(first_line + written, first_line + template_count):
                    for binding in bindings:
                        ctx.sheet.clear(
                            p for _, p in self.binding_positions(binding, line, ctx)
                        )
            elif option.remained_operation is RemainedOperation.DELETE:
                ctx.sheet.delete_lines(first_line + written, remained, direction)

        if ctx.config.merge_cell_on_save:
            self.merge_columns(records[:written], bindings, first_line, ctx)

    def save_record(
        self,
        record: BaseModel,
        bindings: list[ColumnBinding],
        record_line: int,
        ctx: ProcessContext,
    ) -> None:
        for binding in bindings:
            record_field = binding.field
            annotation = binding.annotation
            if isinstance(annotation, XlsColumn):
                _, position = self.binding_positions(binding, record_line, ctx)[0]
                if not annotation.merged:
                    ctx.sheet.unmerge(position)
                self.write_cell(
                    record,
                    record_field,
                    ctx.converter(record_field),
                    position,
                    record_field.get(record),
                    ctx,
                    label=binding.label,
                )
                continue

            converter = ctx.converter(
                record_field,
                record_field.component_type,
                record_field.component_optional,
            )
            positions = self.binding_positions(binding, record_line, ctx)
            if isinstance(annotation, XlsArrayColumns):
                write_array(
                    self,
                    record,
                    record_field,
                    annotation,
                    converter,
                    [p for _, p in positions],
                    ctx,
                    label=binding.label,
                )
                continue
            values = record_field.get(record) or {}
            for key, position in positions:
                self.write_cell(
                    record,
                    record_field,
                    converter,
                    position,
                    values.get(key),
                    ctx,
                    key=key,
                    label=key,
                )

    def merge_columns(
        self,
        records: list[BaseModel],
        bindings: list[ColumnBinding],
        first_line: int,
        ctx: ProcessContext,
    ) -> None:
        """Merge equal neighbouring values of ``merged`` columns."""
        for binding in bindings:
            if not isinstance(binding.annotation, XlsColumn) or not binding.annotation.merged:
                continue
            _, _, header_line = binding.entries[0]
            positions = [
                self.layout.cell(first_line + i, header_line) for i in range(len(records))
            ]
            values = [binding.field.get(record) for record in records]
            ctx.sheet.merge_equal_runs(positions, values, self.layout.record_direction)


class HorizontalRecordsProcessor(RecordsProcessor):
    annotation_type = XlsHorizontalRecords
    layout = TableLayout(horizontal=True)


class VerticalRecordsProcessor(RecordsProcessor):
    annotation_type = XlsVerticalRecords
    layout = TableLayout(horizontal=False)

    def label_distance(self, annotation: XlsVerticalRecords) -> int:
        return annotation.right
