"""
Tests for the xlsx_records module.

This module tests horizontal and vertical tables of records: header
resolution, termination, and the row/column operations used on save.
"""

from datetime import date
from typing import Annotated, ClassVar

import pytest
from openpyxl import load_workbook
from openpyxl.styles import Border, Font, Side
from pydantic import BaseModel

from sheetmapper.xlsx_address import CellPosition
from sheetmapper.xlsx_annotations import (
    OverOperation,
    RecordTerminal,
    RemainedOperation,
    XlsArrayColumns,
    XlsCell,
    XlsColumn,
    XlsHorizontalRecords,
    XlsMapColumns,
    XlsRecordOption,
    XlsSheet,
    XlsVerticalRecords,
)
from sheetmapper.xlsx_api import XlsMapper
from sheetmapper.xlsx_common import MapperConfig
from sheetmapper.xlsx_errors import AnnotationInvalidError, CellNotFoundError, ErrorKind

from .conftest import MemberSheet, Person, build_workbook


def pos(address: str) -> CellPosition:
    return CellPosition.parse(address)


def dump(records):
    return [r.model_dump(exclude={"positions", "labels"}) for r in records]


# Test Models
class Item(BaseModel):
    positions: dict[str, CellPosition] | None = None

    name: Annotated[str | None, XlsColumn(column_name="Name")] = None
    price: Annotated[int | None, XlsColumn(column_name="Price")] = None


def items_sheet(records_annotation, *options):
    """A sheet class with an ``items`` table declared by the given descriptors."""

    class ItemSheet(BaseModel):
        xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Items")

        items: Annotated[(list[Item] | None, records_annotation, *options)] = None

    return ItemSheet


EmptyItems = items_sheet(XlsHorizontalRecords(table_address="A1"))
CountedItems = items_sheet(
    XlsHorizontalRecords(table_address="A1", terminal=RecordTerminal.COUNT, range=2)
)
BreakItems = items_sheet(
    XlsHorizontalRecords(table_address="A1", terminal=RecordTerminal.COUNT, range=2),
    XlsRecordOption(over_operation=OverOperation.BREAK),
)
CopyItems = items_sheet(
    XlsHorizontalRecords(table_address="A1", terminal=RecordTerminal.COUNT, range=1),
    XlsRecordOption(over_operation=OverOperation.COPY),
)
ClearItems = items_sheet(
    XlsHorizontalRecords(table_address="A1", terminal=RecordTerminal.COUNT, range=3),
    XlsRecordOption(remained_operation=RemainedOperation.CLEAR),
)
DeleteItems = items_sheet(
    XlsHorizontalRecords(table_address="A1", terminate_label="Total"),
    XlsRecordOption(remained_operation=RemainedOperation.DELETE),
)
BorderItems = items_sheet(
    XlsHorizontalRecords(table_address="A1", terminal=RecordTerminal.BORDER)
)
SparseItems = items_sheet(
    XlsHorizontalRecords(
        table_address="A1",
        terminal=RecordTerminal.COUNT,
        range=3,
        ignore_empty_record=True,
    )
)
OptionalItems = items_sheet(XlsHorizontalRecords(table_label="Nowhere", optional=True))
MissingItems = items_sheet(XlsHorizontalRecords(table_label="Nowhere"))
BadCount = items_sheet(XlsHorizontalRecords(table_address="A1", terminal=RecordTerminal.COUNT))
BelowLabel = items_sheet(XlsHorizontalRecords(table_label="Price list", bottom=2))


def items_cells(rows, total: str | None = None) -> dict[str, object]:
    cells: dict[str, object] = {"A1": "Name", "B1": "Price"}
    for i, (name, price) in enumerate(rows, start=2):
        if name is not None:
            cells[f"A{i}"] = name
        if price is not None:
            cells[f"B{i}"] = price
    if total:
        cells[f"A{len(rows) + 2}"] = total
    return cells


THREE_ITEMS = [("apple", 100), ("banana", 200), ("cherry", 300)]


class Member(BaseModel):
    positions: dict[str, CellPosition] | None = None

    id: Annotated[int | None, XlsColumn(column_name="ID")] = None
    name: Annotated[str | None, XlsColumn(column_name="Name")] = None


class MemberTable(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Vertical")

    members: Annotated[
        list[Member] | None, XlsVerticalRecords(table_label="氏名")
    ] = None


class SpacedTable(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Vertical")

    members: Annotated[
        list[Member] | None, XlsVerticalRecords(table_label="氏名", right=2)
    ] = None


class Attendance(BaseModel):
    positions: dict[str, CellPosition] | None = None
    labels: dict[str, str] | None = None

    id: Annotated[int | None, XlsColumn(column_name="ID")] = None
    days: Annotated[
        dict[str, int] | None,
        XlsMapColumns(previous_column_name="ID", next_column_name="Note"),
    ] = None
    note: Annotated[str | None, XlsColumn(column_name="Note")] = None
    scores: Annotated[
        list[int] | None, XlsArrayColumns(column_name="Score", size=3)
    ] = None


class AttendanceSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Attendance")

    rows: Annotated[
        list[Attendance] | None, XlsHorizontalRecords(table_address="A1")
    ] = None


ATTENDANCE_HEADER = {
    "A1": "ID",
    "B1": "Mon",
    "C1": "Tue",
    "D1": "Wed",
    "E1": "Note",
    "F1": "Score",
}


class Grouped(BaseModel):
    group: Annotated[str | None, XlsColumn(column_name="Group", merged=True)] = None
    raw_group: Annotated[str | None, XlsColumn(column_name="Group")] = None
    name: Annotated[str | None, XlsColumn(column_name="Name")] = None


class GroupedSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Groups")

    rows: Annotated[list[Grouped] | None, XlsHorizontalRecords(table_address="A1")] = None


class Assignment(BaseModel):
    group: Annotated[str | None, XlsColumn(column_name="Group", merged=True)] = None
    name: Annotated[str | None, XlsColumn(column_name="Name")] = None


class AssignmentSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Groups")

    rows: Annotated[
        list[Assignment] | None, XlsHorizontalRecords(table_address="A1")
    ] = None


class Address(BaseModel):
    city: Annotated[str | None, XlsColumn(column_name="Address")] = None
    street: Annotated[
        str | None, XlsColumn(column_name="Address", header_merged=1)
    ] = None


class AddressSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Addresses")

    rows: Annotated[list[Address] | None, XlsHorizontalRecords(table_address="A1")] = None


class Priced(BaseModel):
    name: Annotated[str | None, XlsColumn(column_name="Name")] = None
    code: Annotated[str | None, XlsColumn(column_name="Code")] = None


class PricedSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Items")

    items: Annotated[list[Priced] | None, XlsHorizontalRecords(table_address="A1")] = None


class CellInRecord(BaseModel):
    name: Annotated[str | None, XlsCell(address="A1")] = None


class CellInRecordSheet(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Items")

    items: Annotated[
        list[CellInRecord] | None, XlsHorizontalRecords(table_address="A1")
    ] = None


class ScalarTable(BaseModel):
    xls_sheet: ClassVar[XlsSheet] = XlsSheet(name="Items")

    items: Annotated[list[str] | None, XlsHorizontalRecords(table_address="A1")] = None


# Horizontal tables
class TestHorizontalRecords:
    """Tests for tables with a header row."""

    def test_load_members(self, members_xlsx):
        record = XlsMapper().load(members_xlsx, MemberSheet)

        assert record.sheet_name == "Members"
        assert record.title == "Club members"
        assert [m.name for m in record.members] == ["Alice", "Bob", "Carol"]
        assert record.members[0].no == 1
        assert record.members[0].birthday == date(1990, 1, 15)
        assert record.members[1].email is None
        assert record.members[1].positions["name"] == pos("B6")
        assert record.members[1].labels["birthday"] == "Birthday"
        assert record.positions["title"] == pos("B1")

    def test_save_and_load_members(self, members_template, tmp_path):
        """Saved records load back unchanged; rows are inserted above the total."""
        people = [
            Person(no=1, name="Alice", birthday=date(1990, 1, 15), email="a@example.org"),
            Person(no=2, name="Bob", birthday=date(1985, 6, 30)),
            Person(no=3, name="Carol", birthday=date(2000, 12, 1)),
        ]
        output = tmp_path / "members.xlsx"

        XlsMapper().save(
            members_template, output, MemberSheet(title="Club members", members=people)
        )

        ws = load_workbook(output)["Members"]
        assert [ws[f"B{row}"].value for row in (5, 6, 7)] == ["Alice", "Bob", "Carol"]
        assert ws["A8"].value == "Total"
        assert ws["C5"].number_format == "yyyy-mm-dd"
        assert people[2].positions["name"] == pos("B7")

        loaded = XlsMapper().load(output, MemberSheet)
        assert dump(loaded.members) == dump(people)

    def test_terminal_empty(self, xlsx_factory):
        path = xlsx_factory({"Items": {**items_cells(THREE_ITEMS[:2]), "A5": "after gap"}})
        record = XlsMapper().load(path, EmptyItems)
        assert [i.name for i in record.items] == ["apple", "banana"]

    def test_terminal_count(self, xlsx_factory):
        path = xlsx_factory({"Items": items_cells(THREE_ITEMS)})
        record = XlsMapper().load(path, CountedItems)
        assert [i.name for i in record.items] == ["apple", "banana"]

    def test_terminal_border(self, tmp_path):
        wb = build_workbook({"Items": items_cells(THREE_ITEMS)})
        ws = wb["Items"]
        for row in (2, 3):
            ws[f"A{row}"].border = Border(left=Side(style="thin"))
        path = tmp_path / "border.xlsx"
        wb.save(path)

        record = XlsMapper().load(path, BorderItems)
        assert [i.name for i in record.items] == ["apple", "banana"]

    def test_ignore_empty_record(self, xlsx_factory):
        path = xlsx_factory(
            {"Items": items_cells([("apple", 100), (None, None), ("cherry", 300)])}
        )
        record = XlsMapper().load(path, SparseItems)
        assert [i.name for i in record.items] == ["apple", "cherry"]

    def test_header_below_label(self, xlsx_factory):
        cells = {"A1": "Price list", "A3": "Name", "B3": "Price", "A4": "apple", "B4": 1}
        path = xlsx_factory({"Items": cells})
        record = XlsMapper().load(path, BelowLabel)
        assert record.items[0].positions == {"name": pos("A4"), "price": pos("B4")}

    def test_optional_table(self, xlsx_factory):
        path = xlsx_factory({"Items": items_cells(THREE_ITEMS)})
        assert XlsMapper().load(path, OptionalItems).items is None
        with pytest.raises(CellNotFoundError, match="Nowhere"):
            XlsMapper().load(path, MissingItems)

    def test_missing_column(self, xlsx_factory):
        path = xlsx_factory({"Items": items_cells(THREE_ITEMS)})
        with pytest.raises(CellNotFoundError, match="Code"):
            XlsMapper().load(path, PricedSheet)

    def test_invalid_annotations(self, xlsx_factory):
        path = xlsx_factory({"Items": items_cells(THREE_ITEMS)})
        with pytest.raises(AnnotationInvalidError, match="range must be 1 or more"):
            XlsMapper().load(path, BadCount)
        with pytest.raises(AnnotationInvalidError, match="list of pydantic models"):
            XlsMapper().load(path, ScalarTable)
        with pytest.raises(AnnotationInvalidError, match="only column annotations"):
            XlsMapper().load(path, CellInRecordSheet)

    def test_conversion_error_path(self, xlsx_factory):
        """Errors inside records are reported with the record index."""
        rows = [("apple", 100), ("banana", "cheap"), ("cherry", 300)]
        path = xlsx_factory({"Items": items_cells(rows)})
        mapper = XlsMapper(MapperConfig(continue_type_bind_failure=True))

        errors = mapper.load_detail(path, EmptyItems)

        assert len(errors.target.items) == 3
        assert errors.target.items[1].price is None
        [error] = errors.get_field_errors("items[1].price")
        assert error.kind is ErrorKind.CONVERSION
        assert error.position == pos("B3")
        assert error.label == "Price"
        assert errors.get_field_errors("items*") == [error]


class TestMergedColumns:
    """Tests for merged cells inside tables."""

    def test_load_merged_column(self, xlsx_factory):
        cells = {
            "A1": "Group",
            "B1": "Name",
            "A2": "G1",
            "B2": "x",
            "B3": "y",
            "A4": "G2",
            "B4": "z",
        }
        path = xlsx_factory({"Groups": cells}, merged={"Groups": ["A2:A3"]})
        rows = XlsMapper().load(path, GroupedSheet).rows

        assert [r.group for r in rows] == ["G1", "G1", "G2"]
        assert [r.raw_group for r in rows] == ["G1", None, "G2"]

    def test_merge_on_save(self, xlsx_factory, tmp_path):
        template = xlsx_factory({"Groups": {"A1": "Group", "B1": "Name"}})
        output = tmp_path / "groups.xlsx"
        rows = [
            Assignment(group="G1", name="x"),
            Assignment(group="G1", name="y"),
            Assignment(group="G2", name="z"),
        ]
        config = MapperConfig(merge_cell_on_save=True)

        XlsMapper(config).save(template, output, AssignmentSheet(rows=rows))

        ws = load_workbook(output)["Groups"]
        assert {str(r) for r in ws.merged_cells.ranges} == {"A2:A3"}
        assert XlsMapper().load(output, AssignmentSheet).rows[1].group == "G1"

    def test_save_splits_merged_cells(self, xlsx_factory, tmp_path):
        """A column without ``merged`` writes every record into its own cell."""
        template = xlsx_factory(
            {"Items": items_cells(THREE_ITEMS)}, merged={"Items": ["B2:B3"]}
        )
        output = tmp_path / "out.xlsx"
        items = [Item(name=n, price=p) for n, p in [("a", 1), ("b", 2), ("c", 3)]]

        XlsMapper().save(template, output, EmptyItems(items=items))

        assert not load_workbook(output)["Items"].merged_cells.ranges
        rows = XlsMapper().load(output, EmptyItems).items
        assert [(r.name, r.price) for r in rows] == [("a", 1), ("b", 2), ("c", 3)]

    def test_header_merged(self, xlsx_factory):
        cells = {"A1": "Address", "A2": "Tokyo", "B2": "Chiyoda"}
        path = xlsx_factory({"Addresses": cells}, merged={"Addresses": ["A1:B1"]})
        [row] = XlsMapper().load(path, AddressSheet).rows
        assert (row.city, row.street) == ("Tokyo", "Chiyoda")


class TestMapAndArrayColumns:
    """Tests for map columns and array columns."""

    @pytest.fixture
    def attendance(self, xlsx_factory):
        cells = {
            **ATTENDANCE_HEADER,
            "A2": 1, "B2": 1, "C2": 0, "D2": 1, "E2": "ok", "F2": 10, "G2": 20, "H2": 30,
            "A3": 2, "B3": 0, "C3": 1, "D3": 1, "F3": 5, "G3": 6, "H3": 7,
        }  # fmt: skip
        return xlsx_factory({"Attendance": cells}, merged={"Attendance": ["F1:H1"]})

    def test_load(self, attendance):
        rows = XlsMapper().load(attendance, AttendanceSheet).rows

        assert len(rows) == 2
        assert rows[0].days == {"Mon": 1, "Tue": 0, "Wed": 1}
        assert rows[0].scores == [10, 20, 30]
        assert rows[1].note is None
        assert rows[0].positions["days[Tue]"] == pos("C2")
        assert rows[0].labels["days[Tue]"] == "Tue"
        assert rows[1].positions["scores[2]"] == pos("H3")

    def test_save_and_load(self, xlsx_factory, tmp_path):
        template = xlsx_factory(
            {"Attendance": ATTENDANCE_HEADER}, merged={"Attendance": ["F1:H1"]}
        )
        output = tmp_path / "attendance.xlsx"
        rows = [
            Attendance(id=1, days={"Mon": 1, "Tue": 1, "Wed": 0}, note="a", scores=[1, 2, 3]),
            Attendance(id=2, days={"Mon": 0, "Tue": 1, "Wed": 1}, scores=[4, 5, 6]),
        ]

        XlsMapper().save(template, output, AttendanceSheet(rows=rows))

        ws = load_workbook(output)["Attendance"]
        assert [ws[a].value for a in ("B3", "C3", "D3", "F3", "G3", "H3")] == [0, 1, 1, 4, 5, 6]
        loaded = XlsMapper().load(output, AttendanceSheet).rows
        assert dump(loaded) == dump(rows)


class TestRecordOptions:
    """Tests for records exceeding or not filling the template table."""

    def test_over_break(self, xlsx_factory, tmp_path):
        template = xlsx_factory({"Items": items_cells([])})
        output = tmp_path / "out.xlsx"
        items = [Item(name=n, price=p) for n, p in THREE_ITEMS]

        XlsMapper().save(template, output, BreakItems(items=items))

        ws = load_workbook(output)["Items"]
        assert [ws[f"A{row}"].value for row in (2, 3, 4)] == ["apple", "banana", None]

    def test_over_copy(self, tmp_path):
        wb = build_workbook({"Items": {**items_cells([]), "E3": "keep"}})
        wb["Items"]["A2"].font = Font(bold=True)
        template = tmp_path / "template.xlsx"
        wb.save(template)
        output = tmp_path / "out.xlsx"
        items = [Item(name="apple", price=1), Item(name="banana", price=2)]

        XlsMapper().save(template, output, CopyItems(items=items))

        ws = load_workbook(output)["Items"]
        assert ws["A3"].value == "banana"
        assert ws["A3"].font.bold
        # copying does not shift the cells beside the table
        assert ws["E3"].value == "keep"

    def test_over_insert(self, xlsx_factory, tmp_path):
        template = xlsx_factory({"Items": {**items_cells([]), "A3": "Total", "E3": "side"}})
        output = tmp_path / "out.xlsx"
        items = [Item(name=n, price=p) for n, p in THREE_ITEMS]

        XlsMapper().save(template, output, DeleteItems(items=items))

        ws = load_workbook(output)["Items"]
        assert [ws[f"A{row}"].value for row in (2, 3, 4, 5)] == [
            "apple",
            "banana",
            "cherry",
            "Total",
        ]
        # inserting moves whole rows
        assert ws["E5"].value == "side"

    def test_remained_clear(self, xlsx_factory, tmp_path):
        template = xlsx_factory({"Items": items_cells(THREE_ITEMS)})
        output = tmp_path / "out.xlsx"

        XlsMapper().save(template, output, ClearItems(items=[Item(name="kiwi", price=5)]))

        ws = load_workbook(output)["Items"]
        assert [ws[f"A{row}"].value for row in (2, 3, 4)] == ["kiwi", None, None]
        assert [ws[f"B{row}"].value for row in (2, 3, 4)] == [5, None, None]

    def test_remained_delete(self, xlsx_factory, tmp_path):
        template = xlsx_factory({"Items": items_cells(THREE_ITEMS, total="Total")})
        output = tmp_path / "out.xlsx"

        XlsMapper().save(template, output, DeleteItems(items=[Item(name="kiwi", price=5)]))

        ws = load_workbook(output)["Items"]
        assert ws["A2"].value == "kiwi"
        assert ws["A3"].value == "Total"
        assert ws["A4"].value is None

    def test_remained_delete_moves_merged_region(self, xlsx_factory, tmp_path):
        """A region starting in a deleted row keeps the rows below the table."""
        cells = {**items_cells(THREE_ITEMS, total="Total"), "D3": "note"}
        template = xlsx_factory({"Items": cells}, merged={"Items": ["D3:D6"]})
        output = tmp_path / "out.xlsx"

        XlsMapper().save(template, output, DeleteItems(items=[Item(name="kiwi", price=5)]))

        ws = load_workbook(output)["Items"]
        assert ws["A3"].value == "Total"
        assert {str(r) for r in ws.merged_cells.ranges} == {"D3:D4"}
        assert ws["D3"].value == "note"


# Vertical tables
class TestVerticalRecords:
    """Tests for tables with a header column."""

    def test_load_vertical(self, xlsx_factory):
        cells = {
            "A3": "氏名",
            "B3": "ID",
            "B4": "Name",
            "C3": 1,
            "C4": "Alice",
            "D3": 2,
            "D4": "Bob",
            "E3": 3,
            "E4": "Carol",
            "H3": "unrelated",
        }
        path = xlsx_factory({"Vertical": cells})
        members = XlsMapper().load(path, MemberTable).members

        assert len(members) == 3
        assert [m.name for m in members] == ["Alice", "Bob", "Carol"]
        assert members[0].positions == {"id": pos("C3"), "name": pos("C4")}
        assert members[2].positions == {"id": pos("E3"), "name": pos("E4")}

    def test_save_vertical(self, xlsx_factory, tmp_path):
        template = xlsx_factory(
            {"Vertical": {"A3": "氏名", "B3": "ID", "B4": "Name", "D1": "kept"}}
        )
        output = tmp_path / "out.xlsx"
        members = [Member(id=i, name=n) for i, n in ((1, "Alice"), (2, "Bob"), (3, "Carol"))]

        XlsMapper().save(template, output, MemberTable(members=members))

        ws = load_workbook(output)["Vertical"]
        assert [ws[f"{c}3"].value for c in "CDE"] == [1, 2, 3]
        assert [ws[f"{c}4"].value for c in "CDE"] == ["Alice", "Bob", "Carol"]
        # two columns were inserted before D
        assert ws["F1"].value == "kept"
        loaded = XlsMapper().load(output, MemberTable).members
        assert dump(loaded) == dump(members)

    def test_header_right_of_label(self, xlsx_factory):
        cells = {"A1": "氏名", "C1": "ID", "C2": "Name", "D1": 7, "D2": "Dan"}
        path = xlsx_factory({"Vertical": cells})
        [member] = XlsMapper().load(path, SpacedTable).members
        assert (member.id, member.name) == (7, "Dan")
        assert member.positions["id"] == pos("D1")
