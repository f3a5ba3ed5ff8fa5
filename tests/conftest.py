# Common pytest fixtures for all test modules
import itertools
import tempfile
from datetime import date
from pathlib import Path
from typing import Annotated, ClassVar

import pytest
from openpyxl import Workbook
from pydantic import BaseModel

from sheetmapper.xlsx_address import CellPosition
from sheetmapper.xlsx_annotations import (
    XlsColumn,
    XlsDateConverter,
    XlsHorizontalRecords,
    XlsLabelledCell,
    XlsSheet,
    XlsSheetName,
)


# Test Models
class Person(BaseModel):
    """One row of the members table."""

    positions: dict[str, CellPosition] | None = None
    labels: dict[str, str] | None = None

    no: Annotated[int | None, XlsColumn(column_name="No.")] = None
    name: Annotated[str | None, XlsColumn(column_name="Name")] = None
    birthday: Annotated[
        date | None,
        XlsColumn(column_name="Birthday"),
        XlsDateConverter(excel_pattern="yyyy-mm-dd"),
    ] = None
    email: Annotated[str | None, XlsColumn(column_name="E-mail", optional=True)] = None


class MemberSheet(BaseModel):
    """Sheet with a title cell and a members table."""

    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Members")

    positions: dict[str, CellPosition] | None = None

    sheet_name: Annotated[str | None, XlsSheetName()] = None
    title: Annotated[str | None, XlsLabelledCell(label="Title")] = None
    members: Annotated[
        list[Person] | None,
        XlsHorizontalRecords(table_label="Member list", terminate_label="Total"),
    ] = None


def build_workbook(
    sheets: dict[str, dict[str, object]],
    merged: dict[str, list[str]] | None = None,
) -> Workbook:
    """Create a workbook from ``{sheet title: {address: value}}``."""
    wb = Workbook()
    wb.remove(wb.active)
    for title, cells in sheets.items():
        ws = wb.create_sheet(title)
        for address, value in cells.items():
            ws[address] = value
        for cell_range in (merged or {}).get(title, []):
            ws.merge_cells(cell_range)
    return wb


def members_cells(rows: int = 3) -> dict[str, object]:
    """The members sheet with ``rows`` table rows followed by a total line.

    Without rows one blank table row is left above the total line.
    """
    cells: dict[str, object] = {
        "A1": "Title",
        "B1": "Club members",
        "A3": "Member list",
        "A4": "No.",
        "B4": "Name",
        "C4": "Birthday",
        "D4": "E-mail",
    }
    people = [
        (1, "Alice", date(1990, 1, 15), "alice@example.org"),
        (2, "Bob", date(1985, 6, 30), None),
        (3, "Carol", date(2000, 12, 1), "carol@example.org"),
    ]
    for i, (no, name, birthday, email) in enumerate(people[:rows]):
        row = 5 + i
        cells[f"A{row}"] = no
        cells[f"B{row}"] = name
        cells[f"C{row}"] = birthday
        if email:
            cells[f"D{row}"] = email
    cells[f"A{5 + max(rows, 1)}"] = "Total"
    return cells


@pytest.fixture
def temp_file():
    """Create a temporary file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as tmp:
        temp_path = Path(tmp.name)
    yield temp_path
    # Cleanup
    temp_path.unlink(missing_ok=True)


@pytest.fixture
def xlsx_factory(tmp_path):
    """Factory writing workbooks given as ``{sheet: {address: value}}``."""
    counter = itertools.count()

    def _create(sheets, merged=None, name=None) -> Path:
        wb = build_workbook(sheets, merged)
        path = tmp_path / (name or f"book{next(counter)}.xlsx")
        wb.save(path)
        return path

    return _create


@pytest.fixture
def members_xlsx(xlsx_factory):
    """A workbook with the members sheet and three people."""
    return xlsx_factory({"Members": members_cells()})


@pytest.fixture
def members_template(xlsx_factory):
    """The members sheet without table rows."""
    return xlsx_factory({"Members": members_cells(rows=0)}, name="template.xlsx")
