"""Descriptors mapping record attributes onto the byte layouts of each dialect.

A :py:class:`Record` is a handle onto a slice of its lump's buffer. Each attribute
is a :py:class:`Field`, listing the positions it occupies in each group of dialects.
Reading a field missing from the current dialect gives a sentinel default, and
writing to one does nothing.
"""
from typing import (
    TYPE_CHECKING, AbstractSet, Any, ClassVar, Dict, FrozenSet, Generic, Iterable, Mapping,
    Optional, Sequence, Tuple, Type, TypeVar, Union, overload,
)
from struct import Struct
import functools
import math
import struct

import attrs

from bsptools.binformat import read_nullstr, write_fixedstr
from bsptools.const import MapType, UnsupportedMapTypeError
from bsptools.math import NAN_VEC2, NAN_VEC3, Color, Vec2, Vec3

if TYPE_CHECKING:
    from typing_extensions import Self
    from bsptools.bsp import BSP
    from bsptools.lump import Lump


__all__ = [
    'At', 'Sized', 'Field', 'IntField', 'FloatField', 'BoolField', 'VecField', 'Vec2Field',
    'ColorField', 'ArrayField', 'StrField', 'Record', 'register_reference', 'lookup_reference',
]

ValueT = TypeVar('ValueT')
MapTypes = Union[MapType, AbstractSet[MapType]]
_cached_struct = functools.lru_cache()(Struct)
_INT_CODES = frozenset('bBhHiIqQ')


def _to_maps(maps: MapTypes) -> FrozenSet[MapType]:
    if isinstance(maps, MapType):
        return frozenset({maps})
    return frozenset(maps)


def _to_optional_set(values: Optional[Iterable[int]]) -> Optional[FrozenSet[int]]:
    return None if values is None else frozenset(values)


@attrs.frozen
class At:
    """One position of a field: the dialects it applies to, the struct format and offset.

    ``versions`` and ``lengths`` optionally restrict this to lumps with those versions,
    or records of those sizes.
    """
    maps: FrozenSet[MapType] = attrs.field(converter=_to_maps)
    fmt: str
    offset: int
    versions: Optional[FrozenSet[int]] = attrs.field(default=None, converter=_to_optional_set)
    lengths: Optional[FrozenSet[int]] = attrs.field(default=None, converter=_to_optional_set)

    def matches(self, map_type: MapType, version: int, length: int) -> bool:
        """Check if this applies to the specified record."""
        return (
            map_type in self.maps
            and (self.versions is None or version in self.versions)
            and (self.lengths is None or length in self.lengths)
        )


@attrs.frozen
class Sized:
    """The size of a record in some dialects, optionally restricted to lump versions."""
    maps: FrozenSet[MapType] = attrs.field(converter=_to_maps)
    length: int
    versions: Optional[FrozenSet[int]] = attrs.field(default=None, converter=_to_optional_set)


class Field(Generic[ValueT]):
    """An attribute of a record, stored at a dialect-dependent position.

    The first matching layout is used, so more specific dialects should come first.
    """
    name: str
    default: ValueT
    layouts: Tuple[At, ...]

    def __init__(self, default: ValueT, *layouts: At) -> None:
        self.name = '<unbound>'
        self.default = default
        self.layouts = layouts
        self._cache: Dict[Tuple[MapType, int, int], Optional[Tuple[Struct, int]]] = {}

    def __set_name__(self, owner: Type['Record'], name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f'<Field {self.name!r}, {len(self.layouts)} layouts>'

    def layout(self, map_type: MapType, version: int = 0, length: int = 0) -> Optional[Tuple[Struct, int]]:
        """Find the struct and offset used for this dialect, or None if absent."""
        key = (map_type, version, length)
        try:
            return self._cache[key]
        except KeyError:
            pass
        result: Optional[Tuple[Struct, int]] = None
        for at in self.layouts:
            if at.matches(map_type, version, length):
                result = (_cached_struct('<' + at.fmt), at.offset)
                break
        self._cache[key] = result
        return result

    def is_present(self, record: 'Record') -> bool:
        """Check if this field is stored in the record's dialect."""
        return self.layout(record.map_type, record.version, record.struct_length) is not None

    def decode(self, values: Tuple[Any, ...]) -> ValueT:
        """Convert the unpacked values into the attribute value."""
        return values[0]  # type: ignore[no-any-return]

    def encode(self, value: ValueT, integral: bool) -> Tuple[Any, ...]:
        """Convert an attribute value to the values to pack."""
        return (value, )

    @overload
    def __get__(self, record: None, owner: Optional[type] = None) -> 'Field[ValueT]': ...
    @overload
    def __get__(self, record: 'Record', owner: Optional[type] = None) -> ValueT: ...

    def __get__(self, record: Optional['Record'], owner: Optional[type] = None) -> Union['Field[ValueT]', ValueT]:
        if record is None:
            return self
        found = self.layout(record.map_type, record.version, record.struct_length)
        if found is None:
            return self.default
        st, offset = found
        return self.decode(st.unpack_from(record.lump.data, record.offset + offset))

    def __set__(self, record: 'Record', value: ValueT) -> None:
        found = self.layout(record.map_type, record.version, record.struct_length)
        if found is None:
            return
        st, offset = found
        try:
            st.pack_into(
                record.lump.data, record.offset + offset,
                *self.encode(value, st.format[-1] in _INT_CODES),
            )
        except struct.error as exc:
            raise ValueError(
                f'Cannot store {value!r} in {type(record).__name__}.{self.name} '
                f'for {record.map_type.name} maps: {exc}'
            ) from exc


class IntField(Field[int]):
    """An integer field, which is ``-1`` when not present."""
    def __init__(self, *layouts: At, default: int = -1) -> None:
        super().__init__(default, *layouts)

    def encode(self, value: int, integral: bool) -> Tuple[Any, ...]:
        return (int(value), )


class FloatField(Field[float]):
    """A float field, which is NaN when not present."""
    def __init__(self, *layouts: At, default: float = math.nan) -> None:
        super().__init__(default, *layouts)

    def encode(self, value: float, integral: bool) -> Tuple[Any, ...]:
        return (float(value), )


class BoolField(Field[bool]):
    """A byte used as a boolean, False when not present."""
    def __init__(self, *layouts: At) -> None:
        super().__init__(False, *layouts)

    def decode(self, values: Tuple[Any, ...]) -> bool:
        return values[0] != 0

    def encode(self, value: bool, integral: bool) -> Tuple[Any, ...]:
        return (1 if value else 0, )


class VecField(Field[Vec3]):
    """Three floats or integers, NaN when not present."""
    def __init__(self, *layouts: At, default: Vec3 = NAN_VEC3) -> None:
        super().__init__(default, *layouts)

    def decode(self, values: Tuple[Any, ...]) -> Vec3:
        return Vec3(*map(float, values))

    def encode(self, value: Vec3, integral: bool) -> Tuple[Any, ...]:
        if integral:
            return tuple(int(round(v)) for v in value)
        return tuple(value)


class Vec2Field(Field[Vec2]):
    """Two floats or integers, NaN when not present."""
    def __init__(self, *layouts: At) -> None:
        super().__init__(NAN_VEC2, *layouts)

    def decode(self, values: Tuple[Any, ...]) -> Vec2:
        return Vec2(*map(float, values))

    def encode(self, value: Vec2, integral: bool) -> Tuple[Any, ...]:
        if integral:
            return tuple(int(round(v)) for v in value)
        return tuple(value)


class ColorField(Field[Color]):
    """Four RGBA bytes, black when not present."""
    def __init__(self, *layouts: At) -> None:
        super().__init__(Color(0, 0, 0, 0), *layouts)

    def decode(self, values: Tuple[Any, ...]) -> Color:
        return Color(*values)

    def encode(self, value: Color, integral: bool) -> Tuple[Any, ...]:
        return value.as_tuple()


class ArrayField(Field[Tuple[Any, ...]]):
    """A fixed-length run of values, empty when not present."""
    def __init__(self, *layouts: At) -> None:
        super().__init__((), *layouts)

    def decode(self, values: Tuple[Any, ...]) -> Tuple[Any, ...]:
        return values

    def encode(self, value: Tuple[Any, ...], integral: bool) -> Tuple[Any, ...]:
        return tuple(value)


class StrField(Field[str]):
    """A null-padded string of fixed size, empty when not present."""
    def __init__(self, *layouts: At, default: str = '', encoding: str = 'ascii') -> None:
        super().__init__(default, *layouts)
        self.encoding = encoding

    def decode(self, values: Tuple[Any, ...]) -> str:
        return read_nullstr(values[0], 0, self.encoding)

    def __set__(self, record: 'Record', value: str) -> None:
        found = self.layout(record.map_type, record.version, record.struct_length)
        if found is None:
            return
        st, offset = found
        st.pack_into(
            record.lump.data, record.offset + offset,
            write_fixedstr(value, st.size, self.encoding),
        )


# (record type, lump name) -> (first index field, count field)
_REFERENCES: Dict[Tuple[type, str], Tuple[str, str]] = {}


def register_reference(record_type: Type['Record'], lump_name: str, first: str, count: str) -> None:
    """Record that a pair of fields on a record type refer to a range in a lump."""
    for name in (first, count):
        if getattr(record_type, name, None) is None:
            raise TypeError(f'{record_type.__name__} has no "{name}" attribute!')
    _REFERENCES[record_type, lump_name] = (first, count)


def lookup_reference(record_type: Type['Record'], lump_name: str) -> Tuple[str, str]:
    """Find the fields of a record type referring to the named lump.

    :raises ValueError: if the record has no reference to this lump.
    """
    for klass in record_type.__mro__:
        try:
            return _REFERENCES[klass, lump_name]
        except KeyError:
            pass
    raise ValueError(f'{record_type.__name__} does not refer to the "{lump_name}" lump!')


class Record:
    """A handle on one record inside a lump's buffer.

    Modifying a field writes straight into the lump. Subclasses define:

    * ``LUMP_INDEX``: ``(dialects, index)`` pairs for where the lump is stored.
    * ``LENGTHS``: :py:class:`Sized` entries giving the size of a record.
    * ``REFERENCES``: lump name -> ``(first, count)`` field names, for
      :py:meth:`BSP.get_referenced_objects`.
    """
    __slots__ = ('lump', 'offset')
    lump: 'Lump[Any]'
    offset: int

    LUMP_INDEX: ClassVar[Sequence[Tuple[FrozenSet[MapType], int]]] = ()
    LENGTHS: ClassVar[Sequence[Sized]] = ()
    REFERENCES: ClassVar[Mapping[str, Tuple[str, str]]] = {}
    _fields: ClassVar[Dict[str, Field[Any]]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        fields: Dict[str, Field[Any]] = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if isinstance(value, Field):
                    fields[name] = value
        cls._fields = fields
        for lump_name, (first, count) in vars(cls).get('REFERENCES', {}).items():
            register_reference(cls, lump_name, first, count)

    def __init__(self, lump: 'Lump[Any]', offset: int) -> None:
        self.lump = lump
        self.offset = offset

    @classmethod
    def lump_index(cls, map_type: MapType) -> Optional[int]:
        """Return the lump index this kind of record is stored in, or None if absent."""
        for maps, index in cls.LUMP_INDEX:
            if map_type in maps:
                return index
        return None

    @classmethod
    def length_for(cls, map_type: MapType, version: int = 0) -> int:
        """Return the size of a record.

        :raises UnsupportedMapTypeError: if this dialect does not have this record.
        """
        versioned = False
        for sized in cls.LENGTHS:
            if map_type in sized.maps:
                if sized.versions is None or version in sized.versions:
                    return sized.length
                versioned = True
        raise UnsupportedMapTypeError(map_type, cls.__name__, version if versioned else None)

    @classmethod
    def blank(cls, map_type: MapType, version: int = 0) -> 'Self':
        """Create a zero-filled record, not part of any map."""
        from bsptools.lump import Lump
        return Lump(cls, map_type, bytes(cls.length_for(map_type, version)), version)[0]

    @classmethod
    def from_bytes(cls, data: bytes, map_type: MapType, version: int = 0) -> 'Self':
        """Wrap the raw bytes of a single record, not part of any map."""
        from bsptools.lump import Lump
        lump = Lump(cls, map_type, data, version)
        if len(lump) != 1:
            raise ValueError(
                f'Expected {lump.struct_length} bytes for {cls.__name__}, got {len(data)}!'
            )
        return lump[0]

    @property
    def map_type(self) -> MapType:
        """The dialect of the lump this is stored in."""
        return self.lump.map_type

    @property
    def version(self) -> int:
        """The version of the lump this is stored in."""
        return self.lump.version

    @property
    def struct_length(self) -> int:
        """The size of this record."""
        return self.lump.struct_length

    @property
    def data(self) -> bytes:
        """A copy of the bytes for this record."""
        return bytes(self.lump.data[self.offset:self.offset + self.lump.struct_length])

    def fields(self) -> Dict[str, Any]:
        """Return the values of all public fields present in this dialect."""
        return {
            name: getattr(self, name)
            for name, field in self._fields.items()
            if not name.startswith('_') and field.is_present(self)
        }

    def copy(self) -> 'Self':
        """Duplicate this record, detaching it from the lump."""
        from bsptools.lump import Lump
        return Lump(
            type(self), self.map_type, self.data, self.version,
            struct_length=self.struct_length,
        )[0]

    def convert(self, map_type: MapType, version: int = 0) -> 'Self':
        """Produce a detached copy of this record in another dialect.

        Fields present in both dialects are copied, others are left zeroed.
        """
        if map_type is self.map_type and version == self.version:
            return self.copy()
        new = type(self).blank(map_type, version)
        for name, field in self._fields.items():
            if field.is_present(self) and field.is_present(new):
                setattr(new, name, getattr(self, name))
        return new

    def get_referenced(self, lump_name: str) -> Sequence[Any]:
        """Fetch the objects this record refers to in another lump of the same map."""
        bsp = self.lump.bsp
        if bsp is None:
            raise ValueError(f'{type(self).__name__} is not part of a map!')
        return bsp.get_referenced_objects(self, lump_name)

    def __eq__(self, other: object) -> bool:
        if type(other) is type(self):
            assert isinstance(other, Record)
            return (
                self.map_type is other.map_type
                and self.version == other.version
                and self.data == other.data
            )
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        values = ', '.join(f'{name}={value!r}' for name, value in self.fields().items())
        return f'<{type(self).__name__} {self.map_type.name}: {values}>'
