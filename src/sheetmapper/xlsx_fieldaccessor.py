"""
Field access for record classes.

:func:`analyze_record` inspects a pydantic model once and returns a
:class:`RecordDescriptor` listing the fields carrying a mapping descriptor.
Each :class:`FieldAccessor` reads and writes the field value and its side
channels: the cell position, the label text and the cell comment.

A side channel is resolved in this order:

1. a map field ``positions`` / ``labels`` / ``comments`` keyed by field
   name (``name[key]`` for entries of arrays and map columns),
2. methods ``set_<field>_position`` / ``get_<field>_position`` (taking the
   key first for keyed entries),
3. a field ``<field>_position`` (a dict for keyed entries).
"""

import logging
import types
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Annotated, Any, ClassVar, Union, get_args, get_origin

from pydantic import BaseModel

from .xlsx_address import CellPosition, Point
from .xlsx_annotations import XlsMappingAnnotation, XlsSheet
from .xlsx_errors import AnnotationInvalidError

logger = logging.getLogger(__name__)

SIDE_CHANNEL_KINDS = ("position", "label", "comment")
_MAP_FIELD_NAMES = {"position": "positions", "label": "labels", "comment": "comments"}

_ZERO_VALUES = {int: 0, float: 0.0, bool: False}
_POSITION_TYPES = (CellPosition, Point, str, Any)


# Type helpers
def is_optional_type(field_type: Any) -> bool:
    """Check if a type is Optional (Union with None)."""
    origin = get_origin(field_type)
    if origin is Union or origin is types.UnionType:
        return type(None) in get_args(field_type)
    return False


def unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    """Strip ``None`` from a union; returns the remaining type and optionality."""
    if get_origin(field_type) is Annotated:
        field_type = get_args(field_type)[0]
    if not is_optional_type(field_type):
        return field_type, False
    non_none_args = [arg for arg in get_args(field_type) if arg is not type(None)]
    if len(non_none_args) == 1:
        return non_none_args[0], True
    return Union[tuple(non_none_args)], True  # noqa: UP007


def container_kind(field_type: Any) -> str | None:
    """``"list"`` for sequences and sets, ``"dict"`` for mappings, else None."""
    origin = get_origin(field_type) or field_type
    if origin in (list, tuple, set, frozenset, Sequence):
        return "list"
    if origin is dict:
        return "dict"
    return None


def component_type(field_type: Any) -> Any:
    """Element type of a list, value type of a dict; ``str`` when unparameterized."""
    args = get_args(field_type)
    if not args:
        return str
    if get_origin(field_type) is dict:
        return args[1] if len(args) > 1 else str
    return args[0]


def zero_value(field_type: Any, optional: bool) -> Any:
    """The value a blank cell or failed conversion leaves in a field."""
    if optional:
        return None
    return _ZERO_VALUES.get(field_type)


def is_record_class(field_type: Any) -> bool:
    return isinstance(field_type, type) and issubclass(field_type, BaseModel)


# Side channels
class SideChannel(ABC):
    """Stores one kind of side information (position, label, comment) of a field."""

    def __init__(self, kind: str):
        self.kind = kind

    @abstractmethod
    def set(self, bean: BaseModel, value: Any, key: str | None = None) -> None:
        """Store ``value`` for the field, or for its entry ``key``."""

    @abstractmethod
    def get(self, bean: BaseModel, key: str | None = None) -> Any:
        """The stored value, or None."""


def _to_position_type(value: CellPosition, declared: Any) -> Any:
    if declared is Point:
        return value.to_point()
    if declared is str:
        return value.to_address()
    return value


def _from_position_type(value: Any) -> CellPosition | None:
    if value is None or isinstance(value, CellPosition):
        return value
    if isinstance(value, Point):
        return CellPosition.from_point(value)
    if isinstance(value, str):
        return CellPosition.parse(value)
    if isinstance(value, tuple) and len(value) == 2:  # noqa: PLR2004
        return CellPosition.from_point(Point(*value))
    msg = f"Cannot interpret {value!r} as a cell position"
    raise TypeError(msg)


class MapFieldChannel(SideChannel):
    """Entries of a ``positions``/``labels``/``comments`` dict field."""

    def __init__(self, kind: str, map_name: str, field_name: str, value_type: Any):
        super().__init__(kind)
        self.map_name = map_name
        self.field_name = field_name
        self.value_type = value_type

    def _key(self, key: str | None) -> str:
        return self.field_name if key is None else f"{self.field_name}[{key}]"

    def set(self, bean, value, key=None):
        mapping = getattr(bean, self.map_name, None)
        if mapping is None:
            mapping = {}
            setattr(bean, self.map_name, mapping)
        if self.kind == "position":
            value = _to_position_type(value, self.value_type)
        mapping[self._key(key)] = value

    def get(self, bean, key=None):
        mapping = getattr(bean, self.map_name, None) or {}
        value = mapping.get(self._key(key))
        return _from_position_type(value) if self.kind == "position" else value


class MethodChannel(SideChannel):
    """``set_<field>_<kind>`` / ``get_<field>_<kind>`` methods of the record."""

    def __init__(self, kind: str, setter: str | None, getter: str | None):
        super().__init__(kind)
        self.setter = setter
        self.getter = getter

    def set(self, bean, value, key=None):
        if self.setter is None:
            return
        method = getattr(bean, self.setter)
        if key is None:
            method(value)
        else:
            method(key, value)

    def get(self, bean, key=None):
        if self.getter is None:
            return None
        method = getattr(bean, self.getter)
        value = method() if key is None else method(key)
        return _from_position_type(value) if self.kind == "position" else value


class FieldChannel(SideChannel):
    """A ``<field>_<kind>`` field; a dict field holds keyed entries."""

    def __init__(self, kind: str, name: str, declared_type: Any):
        super().__init__(kind)
        self.name = name
        self.keyed = container_kind(declared_type) == "dict"
        self.value_type = component_type(declared_type) if self.keyed else declared_type

    def set(self, bean, value, key=None):
        if self.kind == "position":
            value = _to_position_type(value, self.value_type)
        if not self.keyed:
            if key is None:
                setattr(bean, self.name, value)
            return
        mapping = getattr(bean, self.name, None)
        if mapping is None:
            mapping = {}
            setattr(bean, self.name, mapping)
        mapping[key] = value

    def get(self, bean, key=None):
        if self.keyed:
            value = (getattr(bean, self.name, None) or {}).get(key)
        else:
            value = getattr(bean, self.name, None)
        return _from_position_type(value) if self.kind == "position" else value


def resolve_side_channel(
    model_class: type[BaseModel], field_name: str, kind: str
) -> SideChannel | None:
    fields = model_class.model_fields
    map_name = _MAP_FIELD_NAMES[kind]
    if map_name in fields:
        map_type, _ = unwrap_optional(fields[map_name].annotation)
        if container_kind(map_type) == "dict":
            value_type = component_type(map_type)
            if kind != "position" or value_type in _POSITION_TYPES:
                return MapFieldChannel(kind, map_name, field_name, value_type)
            logger.warning(
                "Ignoring '%s' of %s: unsupported value type %s",
                map_name,
                model_class.__name__,
                value_type,
            )

    setter = f"set_{field_name}_{kind}"
    getter = f"get_{field_name}_{kind}"
    has_setter = callable(getattr(model_class, setter, None))
    has_getter = callable(getattr(model_class, getter, None))
    if has_setter or has_getter:
        return MethodChannel(
            kind, setter if has_setter else None, getter if has_getter else None
        )

    channel_field = f"{field_name}_{kind}"
    if channel_field in fields:
        declared, _ = unwrap_optional(fields[channel_field].annotation)
        return FieldChannel(kind, channel_field, declared)
    return None


# Field accessor
@dataclass
class FieldAccessor:
    """Reads and writes one field of a record class and its side channels."""

    model_class: type[BaseModel]
    name: str
    field_type: Any
    value_type: Any
    is_optional: bool
    annotations: tuple = ()
    mapping: XlsMappingAnnotation | None = None
    channels: dict[str, SideChannel] = field(default_factory=dict)

    @classmethod
    def from_field(
        cls, model_class: type[BaseModel], field_name: str, field_info: Any
    ) -> "FieldAccessor":
        field_type = field_info.annotation
        value_type, is_optional = unwrap_optional(field_type)
        annotations = tuple(cls.extract_annotations(field_info))
        mappings = [a for a in annotations if isinstance(a, XlsMappingAnnotation)]
        if len(mappings) > 1:
            raise AnnotationInvalidError(
                field_name,
                mappings[1],
                f"only one mapping annotation allowed, found {len(mappings)}",
            )
        channels = {}
        for kind in SIDE_CHANNEL_KINDS:
            channel = resolve_side_channel(model_class, field_name, kind)
            if channel is not None:
                channels[kind] = channel
        return cls(
            model_class=model_class,
            name=field_name,
            field_type=field_type,
            value_type=value_type,
            is_optional=is_optional,
            annotations=annotations,
            mapping=mappings[0] if mappings else None,
            channels=channels,
        )

    @staticmethod
    def extract_annotations(field_info: Any) -> list:
        """Descriptor objects attached to a field with ``Annotated``."""
        if hasattr(field_info, "metadata") and field_info.metadata:
            return list(field_info.metadata)
        if get_origin(getattr(field_info, "annotation", None)) is Annotated:
            return list(get_args(field_info.annotation)[1:])
        return []

    def get_annotation(self, annotation_type: type):
        for annotation in self.annotations:
            if isinstance(annotation, annotation_type):
                return annotation
        return None

    def has_annotation(self, annotation_type: type) -> bool:
        return self.get_annotation(annotation_type) is not None

    @property
    def container(self) -> str | None:
        return container_kind(self.value_type)

    @property
    def component_type(self) -> Any:
        """Element type of a container field with ``None`` stripped."""
        return unwrap_optional(component_type(self.value_type))[0]

    @property
    def component_optional(self) -> bool:
        return unwrap_optional(component_type(self.value_type))[1]

    @property
    def zero_value(self) -> Any:
        return zero_value(self.value_type, self.is_optional)

    def get(self, bean: BaseModel) -> Any:
        return getattr(bean, self.name, None)

    def set(self, bean: BaseModel, value: Any) -> None:
        setattr(bean, self.name, value)

    # side channels
    def set_position(self, bean, position: CellPosition, key: str | None = None) -> None:
        if "position" in self.channels:
            self.channels["position"].set(bean, position, key)

    def get_position(self, bean, key: str | None = None) -> CellPosition | None:
        if "position" in self.channels:
            return self.channels["position"].get(bean, key)
        return None

    def set_label(self, bean, label: str, key: str | None = None) -> None:
        if "label" in self.channels:
            self.channels["label"].set(bean, label, key)

    def get_label(self, bean, key: str | None = None) -> str | None:
        if "label" in self.channels:
            return self.channels["label"].get(bean, key)
        return None

    def set_comment(self, bean, comment: str, key: str | None = None) -> None:
        if "comment" in self.channels:
            self.channels["comment"].set(bean, comment, key)

    def get_comment(self, bean, key: str | None = None) -> str | None:
        if "comment" in self.channels:
            return self.channels["comment"].get(bean, key)
        return None

    def __repr__(self) -> str:
        return f"FieldAccessor({self.model_class.__name__}.{self.name})"


# Record analysis
@dataclass(frozen=True)
class RecordDescriptor:
    model_class: type[BaseModel]
    sheet: XlsSheet | None
    fields: tuple[FieldAccessor, ...]

    def get_field(self, name: str) -> FieldAccessor | None:
        for accessor in self.fields:
            if accessor.name == name:
                return accessor
        return None

    def fields_with(self, annotation_type: type) -> list[FieldAccessor]:
        return [f for f in self.fields if isinstance(f.mapping, annotation_type)]


def _find_sheet_annotation(model_class: type[BaseModel]) -> XlsSheet | None:
    sheet = getattr(model_class, "xls_sheet", None)
    if isinstance(sheet, XlsSheet):
        return sheet
    # ClassVar[Annotated[..., XlsSheet(...)]] without assignment
    hint = model_class.__annotations__.get("xls_sheet")
    if get_origin(hint) is ClassVar:
        hint = get_args(hint)[0] if get_args(hint) else None
    if get_origin(hint) is Annotated:
        for metadata in get_args(hint)[1:]:
            if isinstance(metadata, XlsSheet):
                return metadata
    return None


@lru_cache(maxsize=256)
def analyze_record(model_class: type[BaseModel]) -> RecordDescriptor:
    """Analyze a record class once; the result is cached per class."""
    if not is_record_class(model_class):
        msg = f"Expected Pydantic BaseModel, got {model_class!r}"
        raise TypeError(msg)
    accessors = []
    for field_name, field_info in model_class.model_fields.items():
        accessor = FieldAccessor.from_field(model_class, field_name, field_info)
        if accessor.mapping is not None:
            accessors.append(accessor)
    logger.debug(
        "Analyzed %s: %d mapped fields", model_class.__name__, len(accessors)
    )
    return RecordDescriptor(
        model_class=model_class,
        sheet=_find_sheet_annotation(model_class),
        fields=tuple(accessors),
    )


def new_record(model_class: type[BaseModel]) -> BaseModel:
    """An instance without validation; required fields start at their zero value."""
    record = model_class.model_construct()
    for field_name, field_info in model_class.model_fields.items():
        if field_name not in record.__dict__:
            value_type, optional = unwrap_optional(field_info.annotation)
            setattr(record, field_name, zero_value(value_type, optional))
    return record
