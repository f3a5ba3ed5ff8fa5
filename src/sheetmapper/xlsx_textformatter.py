"""
Text formatters: per-type conversion between a value and its text form.

A formatter is used whenever a value has to travel through text: cells
holding text instead of a native value, default values given as strings,
and values written as text (enums, lists, textual booleans).
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Generic, TypeVar

from .xlsx_annotations import (
    XlsArrayConverter,
    XlsBooleanConverter,
    XlsDateConverter,
    XlsEnumConverter,
    XlsNumberConverter,
    XlsTrim,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TextParseError(ValueError):
    """Raised when a text cannot be parsed into the target type."""

    def __init__(self, text: str, target_type: Any, context: dict | None = None):
        self.text = text
        self.target_type = target_type
        self.context = dict(context or {})
        type_name = getattr(target_type, "__name__", str(target_type))
        super().__init__(f"Cannot parse '{text}' as {type_name}")


class TextFormatter(ABC, Generic[T]):
    """Converts between values of one type and their text representation."""

    target_type: Any = object

    @abstractmethod
    def parse(self, text: str) -> T:
        """Parse text; raises TextParseError."""

    @abstractmethod
    def format(self, value: T) -> str:
        """Format a value as text."""


# Numbers
class NumberPattern:
    """A decimal number pattern such as ``#,##0.00``, ``0.0%`` or ``¥#,##0``.

    Understands the subset shared by spreadsheet number formats and
    DecimalFormat patterns: grouping, minimum integer digits, minimum and
    maximum fraction digits, percent, and literal prefix/suffix text.
    Only the first section of a ``positive;negative`` pattern is used.
    """

    _CORE = re.compile(r"[#0?,]*[#0?](?:\.[#0?]*)?|\.[#0?]+")

    def __init__(self, pattern: str):
        self.pattern = pattern
        section = self._first_section(pattern)
        literal, core_start, core_end = self._split_literals(section)
        if core_start < 0:
            msg = f"Number pattern '{pattern}' has no digit placeholder"
            raise ValueError(msg)
        core = section[core_start:core_end]
        self.prefix = literal[:core_start].replace("\x00", "")
        self.suffix = literal[core_end:].replace("\x00", "")
        self.percent = "%" in self.prefix or "%" in self.suffix
        int_part, _, frac_part = core.partition(".")
        self.grouping = "," in int_part
        self.min_int_digits = int_part.count("0")
        self.min_frac_digits = frac_part.count("0")
        self.max_frac_digits = len(frac_part.replace(",", ""))

    @staticmethod
    def _first_section(pattern: str) -> str:
        in_quote = False
        for i, ch in enumerate(pattern):
            if ch == '"':
                in_quote = not in_quote
            elif ch == ";" and not in_quote:
                return pattern[:i]
        return pattern

    def _split_literals(self, section: str) -> tuple[str, int, int]:
        """Resolve quoting and return the literal text with the core span.

        Quoted characters are kept as literals; placeholder characters inside
        quotes are masked so that the core search ignores them.
        """
        out: list[str] = []
        mask: list[str] = []
        i = 0
        while i < len(section):
            ch = section[i]
            if ch == '"':
                end = section.find('"', i + 1)
                end = len(section) if end < 0 else end
                quoted = section[i + 1 : end]
                out.append(quoted)
                mask.append("\x01" * len(quoted))
                i = end + 1
                continue
            if ch in ("\\", "'") and i + 1 < len(section):
                out.append(section[i + 1])
                mask.append("\x01")
                i += 2
                continue
            if ch == "[":
                # colors and locale tags like [Red] or [$-409]
                end = section.find("]", i)
                i = len(section) if end < 0 else end + 1
                continue
            if ch in ("_", "*") and i + 1 < len(section):
                i += 2
                continue
            out.append(ch)
            mask.append(ch)
            i += 1
        literal = "".join(out)
        match = self._CORE.search("".join(mask))
        if not match:
            return literal, -1, -1
        return literal, match.start(), match.end()

    def format(self, number: Any) -> str:
        value = Decimal(str(number))
        if self.percent:
            value = value * 100
        quantum = Decimal(1).scaleb(-self.max_frac_digits)
        value = value.quantize(quantum, rounding=ROUND_HALF_UP)
        negative = value < 0
        text = f"{abs(value):f}"
        int_part, _, frac_part = text.partition(".")
        frac_part = frac_part.rstrip("0")
        if len(frac_part) < self.min_frac_digits:
            frac_part = frac_part.ljust(self.min_frac_digits, "0")
        int_part = int_part.lstrip("0")
        if len(int_part) < self.min_int_digits:
            int_part = int_part.rjust(self.min_int_digits, "0")
        if self.grouping and int_part:
            int_part = f"{int(int_part):,}"
        body = int_part + (f".{frac_part}" if frac_part else "")
        if not body:
            body = "0"
        sign = "-" if negative and value != 0 else ""
        return f"{sign}{self.prefix}{body}{self.suffix}"

    def parse(self, text: str) -> Decimal:
        body = text.strip()
        negative = False
        if body.startswith("-"):
            negative = True
            body = body[1:].strip()
        elif body.startswith("(") and body.endswith(")"):
            negative = True
            body = body[1:-1].strip()
        if self.prefix.strip() and body.startswith(self.prefix.strip()):
            body = body[len(self.prefix.strip()) :]
        if self.suffix.strip() and body.endswith(self.suffix.strip()):
            body = body[: -len(self.suffix.strip())]
        body = body.strip()
        if self.grouping:
            body = body.replace(",", "")
        value = Decimal(body)
        if self.percent:
            value = value / 100
        return -value if negative else value


class NumberFormatter(TextFormatter):
    """Formatter for int, float and Decimal with an optional number pattern."""

    def __init__(self, target_type: type, pattern: str | None = None):
        self.target_type = target_type
        self.pattern = NumberPattern(pattern) if pattern else None

    def parse(self, text: str):
        try:
            if self.pattern is not None:
                number = self.pattern.parse(text)
            else:
                number = Decimal(text.strip())
        except (InvalidOperation, ValueError) as e:
            context = {"pattern": self.pattern.pattern if self.pattern else None}
            raise TextParseError(text, self.target_type, context) from e
        if not number.is_finite():
            raise TextParseError(text, self.target_type)
        return convert_decimal(number, self.target_type)

    def format(self, value) -> str:
        if self.pattern is not None:
            return self.pattern.format(value)
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)


def convert_decimal(number: Decimal, target_type: type):
    """Project a Decimal onto int (rounded half-up), float or Decimal."""
    if target_type is int:
        return int(number.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if target_type is float:
        return float(number)
    return number


# Booleans
class BooleanFormatter(TextFormatter):
    target_type = bool

    def __init__(
        self,
        load_for_true: Sequence[str] = XlsBooleanConverter.load_for_true,
        load_for_false: Sequence[str] = XlsBooleanConverter.load_for_false,
        save_as_true: str = "true",
        save_as_false: str = "false",
        ignore_case: bool = True,
        fail_to_false: bool = False,
    ):
        self.ignore_case = ignore_case
        self.fail_to_false = fail_to_false
        self.load_for_true = [self._key(v) for v in load_for_true]
        self.load_for_false = [self._key(v) for v in load_for_false]
        self.save_as_true = save_as_true
        self.save_as_false = save_as_false

    def _key(self, text: str) -> str:
        return text.lower() if self.ignore_case else text

    def parse(self, text: str) -> bool:
        key = self._key(text.strip())
        if key in self.load_for_true:
            return True
        if key in self.load_for_false:
            return False
        if self.fail_to_false:
            return False
        raise TextParseError(
            text,
            bool,
            {
                "load_for_true": self.load_for_true,
                "load_for_false": self.load_for_false,
                "ignore_case": self.ignore_case,
            },
        )

    def format(self, value: bool) -> str:
        return self.save_as_true if value else self.save_as_false


# Dates and times
@dataclass(frozen=True)
class DateTypeAdapter:
    """Projects the common naive ``datetime`` representation onto a type."""

    target_type: type
    default_pattern: str
    default_excel_pattern: str
    from_datetime: Callable[[datetime], Any]
    to_datetime: Callable[[Any], datetime]


# Spreadsheet serial day zero
EXCEL_BASE_DATE = date(1899, 12, 30)


def _datetime_to_datetime(value: datetime) -> datetime:
    # spreadsheets know no time zones
    return value.replace(tzinfo=None)


def _date_to_datetime(value: date) -> datetime:
    if isinstance(value, datetime):
        return _datetime_to_datetime(value)
    return datetime.combine(value, time())


def _time_to_datetime(value: time) -> datetime:
    return datetime.combine(EXCEL_BASE_DATE, value.replace(tzinfo=None))


DATE_TYPE_ADAPTERS: dict[type, DateTypeAdapter] = {
    datetime: DateTypeAdapter(
        datetime,
        "%Y-%m-%d %H:%M:%S",
        "yyyy-mm-dd hh:mm:ss",
        lambda dt: dt,
        _datetime_to_datetime,
    ),
    date: DateTypeAdapter(
        date, "%Y-%m-%d", "yyyy-mm-dd", lambda dt: dt.date(), _date_to_datetime
    ),
    time: DateTypeAdapter(
        time, "%H:%M:%S", "hh:mm:ss", lambda dt: dt.time(), _time_to_datetime
    ),
}


def native_to_datetime(value: Any) -> datetime:
    """Bring any native date-like cell value into the common representation."""
    if isinstance(value, datetime):
        return _datetime_to_datetime(value)
    if isinstance(value, date):
        return _date_to_datetime(value)
    if isinstance(value, time):
        return _time_to_datetime(value)
    if isinstance(value, timedelta):
        return datetime.combine(EXCEL_BASE_DATE, time()) + value
    msg = f"Not a date value: {value!r}"
    raise TypeError(msg)


class DateFormatter(TextFormatter):
    """One formatter for the whole date/time family.

    ``pattern`` is a ``strftime`` pattern. With ``lenient=True`` ISO 8601
    text is accepted as well.
    """

    def __init__(
        self,
        adapter: DateTypeAdapter,
        pattern: str | None = None,
        lenient: bool = False,
    ):
        self.adapter = adapter
        self.target_type = adapter.target_type
        self.pattern = pattern or adapter.default_pattern
        self.lenient = lenient

    def parse(self, text: str):
        text = text.strip()
        try:
            parsed = datetime.strptime(text, self.pattern)
        except ValueError as e:
            if self.lenient:
                try:
                    parsed = self._parse_iso(text)
                except ValueError:
                    pass
                else:
                    return self.adapter.from_datetime(parsed)
            raise TextParseError(
                text, self.target_type, {"pattern": self.pattern}
            ) from e
        return self.adapter.from_datetime(parsed)

    def _parse_iso(self, text: str) -> datetime:
        if self.target_type is time:
            return datetime.combine(EXCEL_BASE_DATE, time.fromisoformat(text))
        return datetime.fromisoformat(text).replace(tzinfo=None)

    def from_native(self, value: Any):
        """Project a native cell value (datetime, date, time) onto the type."""
        return self.adapter.from_datetime(native_to_datetime(value))

    def format(self, value) -> str:
        return self.adapter.to_datetime(value).strftime(self.pattern)


# Enums
class EnumFormatter(TextFormatter):
    """Maps enum members by name or by a selector attribute/method."""

    def __init__(
        self, enum_type: type[Enum], ignore_case: bool = False, selector: str | None = None
    ):
        self.target_type = enum_type
        self.ignore_case = ignore_case
        self.selector = selector
        self.to_text: dict[Enum, str] = {}
        self.to_member: dict[str, Enum] = {}
        for member in enum_type:
            text = self._select(member)
            self.to_text[member] = text
            self.to_member.setdefault(self._key(text), member)

    def _select(self, member: Enum) -> str:
        if self.selector is None:
            return member.name
        try:
            selected = getattr(member, self.selector)
        except AttributeError as e:
            msg = f"Enum {self.target_type.__name__} has no selector '{self.selector}'"
            raise ValueError(msg) from e
        if callable(selected):
            selected = selected()
        return str(selected)

    def _key(self, text: str) -> str:
        return text.lower() if self.ignore_case else text

    def parse(self, text: str) -> Enum:
        member = self.to_member.get(self._key(text))
        if member is None:
            raise TextParseError(
                text,
                self.target_type,
                {
                    "ignore_case": self.ignore_case,
                    "selector": self.selector,
                    "enums": list(self.to_text.values()),
                },
            )
        return member

    def format(self, value: Enum) -> str:
        return self.to_text.get(value, str(value))


# Strings
class StringFormatter(TextFormatter):
    target_type = str

    def __init__(self, trim: bool = False):
        self.trim = trim

    def parse(self, text: str) -> str:
        return text.strip() if self.trim else text

    def format(self, value) -> str:
        return str(value)


# Lists in one cell
class ListFormatter(TextFormatter):
    """A list joined with a separator into a single cell."""

    target_type = list

    def __init__(
        self,
        element_formatter: TextFormatter,
        separator: str = ",",
        ignore_empty_element: bool = False,
        element_trim: bool = False,
    ):
        if not separator:
            msg = "separator must not be empty"
            raise ValueError(msg)
        self.element_formatter = element_formatter
        self.separator = separator
        self.ignore_empty_element = ignore_empty_element
        self.element_trim = element_trim

    def parse(self, text: str) -> list:
        if not text:
            return []
        items = []
        for part in text.split(self.separator):
            if self.element_trim:
                part = part.strip()
            if part == "" and self.ignore_empty_element:
                continue
            items.append(self.element_formatter.parse(part))
        return items

    def format(self, value) -> str:
        parts = []
        for item in value or []:
            if item is None:
                if self.ignore_empty_element:
                    continue
                parts.append("")
                continue
            parts.append(self.element_formatter.format(item))
        return self.separator.join(parts)


# Registry
FormatterFactory = Callable[[type, Any], TextFormatter]


def _number_factory(target_type: type, field) -> TextFormatter:
    anno = field.get_annotation(XlsNumberConverter) if field is not None else None
    return NumberFormatter(target_type, anno.pattern if anno else None)


def _boolean_factory(target_type: type, field) -> TextFormatter:
    anno = field.get_annotation(XlsBooleanConverter) if field is not None else None
    anno = anno or XlsBooleanConverter()
    return BooleanFormatter(
        load_for_true=anno.load_for_true,
        load_for_false=anno.load_for_false,
        save_as_true=anno.save_as_true or "true",
        save_as_false=anno.save_as_false or "false",
        ignore_case=anno.ignore_case,
        fail_to_false=anno.fail_to_false,
    )


def _date_factory(target_type: type, field) -> TextFormatter:
    anno = field.get_annotation(XlsDateConverter) if field is not None else None
    return DateFormatter(
        DATE_TYPE_ADAPTERS[target_type],
        pattern=anno.pattern if anno else None,
        lenient=anno.lenient if anno else False,
    )


def _enum_factory(target_type: type, field) -> TextFormatter:
    anno = field.get_annotation(XlsEnumConverter) if field is not None else None
    anno = anno or XlsEnumConverter()
    return EnumFormatter(target_type, anno.ignore_case, anno.selector)


def _string_factory(target_type: type, field) -> TextFormatter:
    trim = field is not None and field.has_annotation(XlsTrim)
    return StringFormatter(trim=trim)


class TextFormatterRegistry:
    """Maps target types to formatter factories."""

    def __init__(self, factories: dict[type, FormatterFactory] | None = None):
        self._factories: dict[type, FormatterFactory] = dict(factories or {})

    @classmethod
    def default(cls) -> "TextFormatterRegistry":
        registry = cls()
        for number_type in (int, float, Decimal):
            registry.register(number_type, _number_factory)
        registry.register(bool, _boolean_factory)
        for date_type in DATE_TYPE_ADAPTERS:
            registry.register(date_type, _date_factory)
        registry.register(Enum, _enum_factory)
        registry.register(str, _string_factory)
        return registry

    def register(self, target_type: type, factory: FormatterFactory) -> None:
        self._factories[target_type] = factory

    def find_factory(self, target_type: Any) -> FormatterFactory | None:
        if target_type in self._factories:
            return self._factories[target_type]
        if isinstance(target_type, type):
            for base in target_type.__mro__[1:]:
                if base in self._factories:
                    return self._factories[base]
        return None

    def supports(self, target_type: Any) -> bool:
        return self.find_factory(target_type) is not None

    def create(self, target_type: Any, field=None) -> TextFormatter:
        """Create the formatter for a type, configured from the field's descriptors."""
        factory = self.find_factory(target_type)
        if factory is None:
            msg = f"No text formatter registered for {target_type}"
            raise LookupError(msg)
        return factory(target_type, field)

    def create_list(self, element_type: Any, field) -> ListFormatter:
        anno = field.get_annotation(XlsArrayConverter) or XlsArrayConverter()
        return ListFormatter(
            self.create(element_type, field),
            separator=anno.separator,
            ignore_empty_element=anno.ignore_empty_element,
            element_trim=anno.element_trim,
        )

    def copy(self) -> "TextFormatterRegistry":
        return TextFormatterRegistry(self._factories)
