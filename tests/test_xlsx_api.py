"""
Tests for the xlsx_api module.

This module tests the public API: sheet selection, loading and saving of
single and multiple sheets, streams and the module level functions.
"""

import logging
from io import BytesIO
from typing import Annotated, ClassVar

import pytest
from openpyxl import load_workbook
from pydantic import BaseModel

from sheetmapper import xlsx_api
from sheetmapper.xlsx_annotations import (
    XlsCell,
    XlsColumn,
    XlsLabelledCell,
    XlsSheet,
    XlsSheetName,
)
from sheetmapper.xlsx_api import XlsMapper
from sheetmapper.xlsx_common import MapperConfig
from sheetmapper.xlsx_errors import (
    AnnotationInvalidError,
    ErrorKind,
    SheetNotFoundError,
)


# Test Models
class Summary(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Summary")

    title: Annotated[str | None, XlsCell(address="A1")] = None


class SecondSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(number=1)

    sheet_name: Annotated[str | None, XlsSheetName()] = None
    title: Annotated[str | None, XlsCell(address="A1")] = None


class FarSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(number=9)

    title: Annotated[str | None, XlsCell(address="A1")] = None


class Monthly(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(regex=r"Month\d+")

    sheet_name: Annotated[str | None, XlsSheetName()] = None
    total: Annotated[int | None, XlsCell(address="B1")] = None


class MonthlyTotal(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(regex=r"Month\d+")

    total: Annotated[int | None, XlsLabelledCell(label="Total")] = None


class Missing(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Missing")

    title: Annotated[str | None, XlsCell(address="A1")] = None


class NoSheet(BaseModel):
    title: Annotated[str | None, XlsCell(address="A1")] = None


class ColumnAtSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Summary")

    title: Annotated[str | None, XlsColumn(column_name="Title")] = None


@pytest.fixture
def report_xlsx(xlsx_factory):
    """Summary sheet followed by two monthly sheets and an unrelated one."""
    return xlsx_factory(
        {
            "Summary": {"A1": "Report"},
            "Month1": {"A1": "January", "B1": 10, "A2": "Total", "B2": 10},
            "Month2": {"A1": "February", "B1": 20},
            "Notes": {"A1": "n/a"},
        },
        name="report.xlsx",
    )


class TestSheetSelection:
    """Tests for selecting sheets by name, number and regex."""

    def test_by_name(self, report_xlsx):
        assert XlsMapper().load(report_xlsx, Summary).title == "Report"

    def test_by_number(self, report_xlsx):
        record = XlsMapper().load(report_xlsx, SecondSheet)
        assert record.sheet_name == "Month1"
        assert record.title == "January"

    def test_by_number_out_of_range(self, report_xlsx):
        with pytest.raises(SheetNotFoundError, match="out of range"):
            XlsMapper().load(report_xlsx, FarSheet)

    def test_regex_selects_several(self, report_xlsx):
        with pytest.raises(SheetNotFoundError, match="2 sheets match"):
            XlsMapper().load(report_xlsx, Monthly)

    def test_load_multiple(self, report_xlsx):
        records = XlsMapper().load_multiple(report_xlsx, [Summary, Monthly])
        assert [type(r) for r in records] == [Summary, Monthly, Monthly]
        assert [(r.sheet_name, r.total) for r in records[1:]] == [
            ("Month1", 10),
            ("Month2", 20),
        ]

    def test_missing_sheet(self, report_xlsx, caplog):
        with pytest.raises(SheetNotFoundError, match="Missing"):
            XlsMapper().load(report_xlsx, Missing)

        mapper = XlsMapper(MapperConfig(ignore_sheet_not_found=True))
        with caplog.at_level(logging.INFO):
            assert mapper.load(report_xlsx, Missing) is None
        assert "Skip Missing" in caplog.text
        assert mapper.load_multiple(report_xlsx, [Missing, Summary])[0].title == "Report"

    def test_sheet_descriptor_required(self, report_xlsx):
        with pytest.raises(AnnotationInvalidError, match="xls_sheet is required"):
            XlsMapper().load(report_xlsx, NoSheet)

    def test_column_outside_table(self, report_xlsx):
        with pytest.raises(AnnotationInvalidError, match="only allowed inside a record"):
            XlsMapper().load(report_xlsx, ColumnAtSheet)


class TestLoadDetail:
    """Tests for loading with binding errors."""

    def test_missing_label_ends_one_sheet(self, report_xlsx):
        """A sheet without its label is reported; the other sheets still load."""
        results = XlsMapper().load_multiple_detail(report_xlsx, [MonthlyTotal])

        assert len(results) == 2
        assert results.has_errors
        first, second = results.sheets
        assert first.target.total == 10
        assert not first.has_errors
        assert second.target is None
        assert second.sheet_name == "Month2"
        [error] = second.errors
        assert error.kind is ErrorKind.CELL_NOT_FOUND
        assert error.field_path == "Total"
        assert [r.total for r in results.targets] == [10]

    def test_load_detail_returns_target(self, report_xlsx):
        errors = XlsMapper().load_detail(report_xlsx, Summary)
        assert errors.sheet_name == "Summary"
        assert errors.target.title == "Report"
        assert not errors.has_errors


class TestSaving:
    """Tests for writing records into templates."""

    def test_template_untouched(self, report_xlsx, tmp_path):
        original = report_xlsx.read_bytes()
        output = tmp_path / "out.xlsx"

        XlsMapper().save(report_xlsx, output, Summary(title="Changed"))

        assert report_xlsx.read_bytes() == original
        wb = load_workbook(output)
        assert wb["Summary"]["A1"].value == "Changed"
        assert wb.sheetnames == ["Summary", "Month1", "Month2", "Notes"]
        assert wb["Month1"]["A1"].value == "January"

    def test_sheet_name_picks_regex_match(self, report_xlsx, tmp_path):
        output = tmp_path / "out.xlsx"

        XlsMapper().save(report_xlsx, output, Monthly(sheet_name="Month2", total=99))

        wb = load_workbook(output)
        assert wb["Month2"]["B1"].value == 99
        assert wb["Month1"]["B1"].value == 10

    def test_regex_without_sheet_name(self, report_xlsx, tmp_path):
        with pytest.raises(SheetNotFoundError, match="2 sheets match"):
            XlsMapper().save(report_xlsx, tmp_path / "out.xlsx", Monthly(total=1))

    def test_failed_save_keeps_output(self, report_xlsx, tmp_path):
        output = tmp_path / "out.xlsx"
        output.write_bytes(b"previous")

        with pytest.raises(SheetNotFoundError):
            XlsMapper().save(report_xlsx, output, Missing(title="x"))

        assert output.read_bytes() == b"previous"

    def test_save_multiple(self, report_xlsx, tmp_path):
        """Records take the sheet of their name field, else the first unused one."""
        output = tmp_path / "out.xlsx"
        records = [
            Monthly(sheet_name="Month2", total=5),
            Monthly(total=6),
            Summary(title="Both months"),
        ]

        results = XlsMapper().save_multiple(report_xlsx, output, records)

        assert len(results) == 3
        wb = load_workbook(output)
        assert wb["Month2"]["B1"].value == 5
        assert wb["Month1"]["B1"].value == 6
        assert wb["Summary"]["A1"].value == "Both months"

    def test_save_multiple_no_sheet_left(self, report_xlsx, tmp_path):
        records = [Monthly(total=1), Monthly(total=2), Monthly(total=3)]
        with pytest.raises(SheetNotFoundError, match="no unused sheet"):
            XlsMapper().save_multiple(report_xlsx, tmp_path / "out.xlsx", records)


class TestStreamsAndFunctions:
    """Tests for binary streams and the module level functions."""

    def test_streams(self, report_xlsx):
        template = BytesIO(report_xlsx.read_bytes())
        output = BytesIO()

        XlsMapper().save(template, output, Summary(title="In memory"))

        record = XlsMapper().load(BytesIO(output.getvalue()), Summary)
        assert record.title == "In memory"

    def test_module_functions(self, report_xlsx, temp_file):
        xlsx_api.save(str(report_xlsx), str(temp_file), Summary(title="Saved"))

        assert xlsx_api.load(str(temp_file), Summary).title == "Saved"
        config = MapperConfig(ignore_sheet_not_found=True)
        assert xlsx_api.load(temp_file, Missing, config=config) is None
