"""
Public API: the workbook driver.

This module provides the entry points for mapping workbooks:
- :class:`XlsMapper` selecting sheets and dispatching fields to processors
- ``load`` / ``save`` convenience functions with a default configuration
"""

import logging
import re
from collections.abc import Sequence
from io import BytesIO
from pathlib import Path
from typing import IO, Any

from openpyxl import load_workbook
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
from pydantic import BaseModel

from .xlsx_annotations import (
    XlsArrayCell,
    XlsCell,
    XlsHorizontalRecords,
    XlsLabelledArrayCell,
    XlsLabelledCell,
    XlsSheet,
    XlsSheetName,
    XlsVerticalRecords,
)
from .xlsx_cells import SheetView
from .xlsx_cells_processor import (
    ArrayCellProcessor,
    CellProcessor,
    LabelledArrayCellProcessor,
    LabelledCellProcessor,
    SheetNameProcessor,
)
from .xlsx_common import FieldProcessor, MapperConfig, ProcessContext
from .xlsx_errors import (
    AnnotationInvalidError,
    CellNotFoundError,
    MultipleSheetBindingErrors,
    SheetBindingErrors,
    SheetNotFoundError,
    TypeBindError,
)
from .xlsx_fieldaccessor import FieldAccessor, RecordDescriptor, analyze_record, new_record
from .xlsx_records import HorizontalRecordsProcessor, VerticalRecordsProcessor

logger = logging.getLogger(__name__)

Source = str | Path | IO[bytes]

# One processor per mapping descriptor
FIELD_PROCESSORS: dict[type, FieldProcessor] = {
    XlsSheetName: SheetNameProcessor(),
    XlsCell: CellProcessor(),
    XlsLabelledCell: LabelledCellProcessor(),
    XlsArrayCell: ArrayCellProcessor(),
    XlsLabelledArrayCell: LabelledArrayCellProcessor(),
    XlsHorizontalRecords: HorizontalRecordsProcessor(),
    XlsVerticalRecords: VerticalRecordsProcessor(),
}


def get_processor(field: FieldAccessor) -> FieldProcessor:
    processor = FIELD_PROCESSORS.get(type(field.mapping))
    if processor is None:
        raise AnnotationInvalidError(
            field.name, field.mapping, "annotation is only allowed inside a record of a table"
        )
    return processor


class XlsMapper:
    """Loads records from workbooks and saves records into template workbooks.

    A mapper holds no state between calls; one instance may be shared.
    """

    def __init__(self, config: MapperConfig | None = None):
        self.config = config or MapperConfig()

    # workbook handling
    @staticmethod
    def _open_workbook(source: Source, data_only: bool) -> Workbook:
        keep_vba = isinstance(source, (str, Path)) and str(source).lower().endswith(".xlsm")
        if isinstance(source, str):
            source = Path(source)
        return load_workbook(source, data_only=data_only, keep_vba=keep_vba)

    def _write_workbook(self, workbook: Workbook, output: Source) -> None:
        """Serialize completely before touching the output."""
        if self.config.formula_recalculation_on_save:
            workbook.calculation.fullCalcOnLoad = True
        buffer = BytesIO()
        workbook.save(buffer)
        data = buffer.getvalue()
        if isinstance(output, (str, Path)):
            Path(output).write_bytes(data)
        else:
            output.write(data)
        logger.debug("Saved workbook (%d bytes)", len(data))

    # sheet selection
    def find_sheets(
        self, workbook: Workbook, descriptor: RecordDescriptor
    ) -> list[Worksheet]:
        """All sheets selected by the record class' ``xls_sheet``."""
        sheet = descriptor.sheet
        class_name = descriptor.model_class.__name__
        if sheet is None:
            raise AnnotationInvalidError(
                class_name, XlsSheet, "class variable xls_sheet is required"
            )
        if sheet.name:
            if sheet.name in workbook.sheetnames:
                return [workbook[sheet.name]]
            raise SheetNotFoundError(sheet.name)
        if sheet.number >= 0:
            if sheet.number < len(workbook.worksheets):
                return [workbook.worksheets[sheet.number]]
            raise SheetNotFoundError(f"#{sheet.number}", "sheet number out of range")
        if sheet.regex:
            pattern = re.compile(sheet.regex)
            found = [ws for ws in workbook.worksheets if pattern.fullmatch(ws.title)]
            if not found:
                raise SheetNotFoundError(f"/{sheet.regex}/")
            logger.debug("Sheets matching /%s/: %s", sheet.regex, [ws.title for ws in found])
            return found
        raise AnnotationInvalidError(
            class_name, sheet, "one of name, number or regex is required"
        )

    def _find_single_sheet(
        self, workbook: Workbook, descriptor: RecordDescriptor, record: Any = None
    ) -> Worksheet:
        sheets = self.find_sheets(workbook, descriptor)
        if len(sheets) == 1:
            return sheets[0]
        name = self._sheet_name_of(descriptor, record)
        for worksheet in sheets:
            if name is not None and worksheet.title == name:
                return worksheet
        raise SheetNotFoundError(
            f"/{descriptor.sheet.regex}/", f"{len(sheets)} sheets match"
        )

    @staticmethod
    def _sheet_name_of(descriptor: RecordDescriptor, record: Any) -> str | None:
        if record is None:
            return None
        for field in descriptor.fields_with(XlsSheetName):
            value = field.get(record)
            if value:
                return value
        return None

    # per sheet processing
    def _load_sheet(
        self, worksheet: Worksheet, descriptor: RecordDescriptor
    ) -> SheetBindingErrors:
        logger.debug("Loading '%s' from sheet '%s'", descriptor.model_class.__name__, worksheet.title)
        bean = new_record(descriptor.model_class)
        errors = SheetBindingErrors(bean, worksheet.title)
        ctx = ProcessContext(self.config, SheetView(worksheet), errors)
        for field in descriptor.fields:
            get_processor(field).load_process(bean, field, field.mapping, ctx)
        return errors

    def _save_sheet(
        self, worksheet: Worksheet, descriptor: RecordDescriptor, record: BaseModel
    ) -> SheetBindingErrors:
        logger.debug("Saving '%s' into sheet '%s'", descriptor.model_class.__name__, worksheet.title)
        errors = SheetBindingErrors(record, worksheet.title)
        ctx = ProcessContext(self.config, SheetView(worksheet), errors)
        for field in descriptor.fields:
            get_processor(field).save_process(record, field, field.mapping, ctx)
        return errors

    # loading
    def load_detail(
        self, source: Source, model_class: type[BaseModel]
    ) -> SheetBindingErrors | None:
        """Load one sheet; returns the record bundled with its binding errors.

        Returns ``None`` when the sheet is missing and
        ``ignore_sheet_not_found`` is set.
        """
        descriptor = analyze_record(model_class)
        workbook = self._open_workbook(source, data_only=True)
        try:
            try:
                worksheet = self._find_single_sheet(workbook, descriptor)
            except SheetNotFoundError as e:
                if self.config.ignore_sheet_not_found:
                    logger.info("Skip %s: %s", model_class.__name__, e)
                    return None
                raise
            errors = self._load_sheet(worksheet, descriptor)
        finally:
            workbook.close()
        for error in errors:
            logger.debug("Binding error: %s", error)
        return errors

    def load(self, source: Source, model_class: type[BaseModel]) -> BaseModel | None:
        """Load one record; conversion errors raise unless they are accumulated."""
        errors = self.load_detail(source, model_class)
        return errors.target if errors is not None else None

    def load_multiple_detail(
        self, source: Source, model_classes: Sequence[type[BaseModel]]
    ) -> MultipleSheetBindingErrors:
        """Load every sheet selected by each class (all regex matches).

        A missing cell or failed conversion ends that sheet only; the error
        is recorded in its binding errors.
        """
        results = MultipleSheetBindingErrors()
        workbook = self._open_workbook(source, data_only=True)
        try:
            for model_class in model_classes:
                descriptor = analyze_record(model_class)
                try:
                    worksheets = self.find_sheets(workbook, descriptor)
                except SheetNotFoundError as e:
                    if self.config.ignore_sheet_not_found:
                        logger.info("Skip %s: %s", model_class.__name__, e)
                        continue
                    raise
                for worksheet in worksheets:
                    results.add(self._load_sheet_guarded(worksheet, descriptor))
        finally:
            workbook.close()
        return results

    def _load_sheet_guarded(
        self, worksheet: Worksheet, descriptor: RecordDescriptor
    ) -> SheetBindingErrors:
        try:
            return self._load_sheet(worksheet, descriptor)
        except (CellNotFoundError, TypeBindError) as e:
            logger.warning("Sheet '%s' aborted: %s", worksheet.title, e)
            errors = SheetBindingErrors(None, worksheet.title)
            key = e.label if isinstance(e, CellNotFoundError) else e.field_name
            errors.add_field_error(
                key,
                e.kind,
                str(e),
                position=getattr(e, "position", None),
            )
            return errors

    def load_multiple(
        self, source: Source, model_classes: Sequence[type[BaseModel]]
    ) -> list[BaseModel]:
        return self.load_multiple_detail(source, model_classes).targets

    # saving
    def save_detail(
        self, template: Source, output: Source, record: BaseModel
    ) -> SheetBindingErrors | None:
        """Write one record into a copy of the template and save it to ``output``.

        Nothing is written to ``output`` when saving fails.
        """
        descriptor = analyze_record(type(record))
        workbook = self._open_workbook(template, data_only=False)
        try:
            errors = None
            try:
                worksheet = self._find_single_sheet(workbook, descriptor, record)
            except SheetNotFoundError as e:
                if not self.config.ignore_sheet_not_found:
                    raise
                logger.info("Skip %s: %s", type(record).__name__, e)
            else:
                errors = self._save_sheet(worksheet, descriptor, record)
            self._write_workbook(workbook, output)
        finally:
            workbook.close()
        return errors

    def save(self, template: Source, output: Source, record: BaseModel) -> None:
        self.save_detail(template, output, record)

    def save_multiple(
        self, template: Source, output: Source, records: Sequence[BaseModel]
    ) -> MultipleSheetBindingErrors:
        """Write several records, each into its own sheet of the template.

        When a regex selects several sheets, the ``XlsSheetName`` field picks
        one; otherwise the first sheet not yet written is used.
        """
        results = MultipleSheetBindingErrors()
        workbook = self._open_workbook(template, data_only=False)
        try:
            used: set[str] = set()
            for record in records:
                descriptor = analyze_record(type(record))
                try:
                    worksheet = self._pick_sheet(workbook, descriptor, record, used)
                except SheetNotFoundError as e:
                    if self.config.ignore_sheet_not_found:
                        logger.info("Skip %s: %s", type(record).__name__, e)
                        continue
                    raise
                used.add(worksheet.title)
                results.add(self._save_sheet(worksheet, descriptor, record))
            self._write_workbook(workbook, output)
        finally:
            workbook.close()
        return results

    def _pick_sheet(
        self,
        workbook: Workbook,
        descriptor: RecordDescriptor,
        record: BaseModel,
        used: set[str],
    ) -> Worksheet:
        sheets = self.find_sheets(workbook, descriptor)
        name = self._sheet_name_of(descriptor, record)
        if name is not None:
            for worksheet in sheets:
                if worksheet.title == name:
                    return worksheet
            raise SheetNotFoundError(name)
        for worksheet in sheets:
            if worksheet.title not in used:
                return worksheet
        raise SheetNotFoundError(
            descriptor.model_class.__name__, "no unused sheet left for record"
        )


def load(
    source: Source, model_class: type[BaseModel], config: MapperConfig | None = None
) -> BaseModel | None:
    """Load a record from a workbook.

    Args:
        source: Path or binary stream of the workbook
        model_class: Pydantic model class annotated with sheet descriptors
        config: Optional mapper configuration

    Returns:
        The populated record, or None for an ignored missing sheet
    """
    return XlsMapper(config).load(source, model_class)


def save(
    template: Source,
    output: Source,
    record: BaseModel,
    config: MapperConfig | None = None,
) -> None:
    """Save a record into a copy of a template workbook.

    Args:
        template: Path or binary stream of the template workbook
        output: Path or writable binary stream receiving the result
        record: The record to write
        config: Optional mapper configuration
    """
    XlsMapper(config).save(template, output, record)
