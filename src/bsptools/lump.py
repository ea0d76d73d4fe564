"""Containers for the decoded contents of a single lump.

:py:class:`Lump` holds fixed-size records in one buffer, handing out
:py:class:`~bsptools.fields.Record` handles into it. :py:class:`NumList` does the
same for plain integer tables, and :py:class:`GameLump` decodes the nested
directory Source maps store in lump 35.
"""
from typing import (
    TYPE_CHECKING, Dict, Iterable, Iterator, List, Mapping, MutableSequence, Optional,
    Tuple, Type, TypeVar, Union, overload,
)
from typing_extensions import Self
from enum import Enum
from struct import Struct
import struct
import weakref

from bsptools import logger
from bsptools.binformat import decompress_lzma
from bsptools.const import MapType, SOURCE, UnsupportedMapTypeError
from bsptools.fields import Record
from bsptools.header import LumpInfo

if TYPE_CHECKING:
    from bsptools.bsp import BSP


__all__ = ['Lump', 'NumType', 'NumList', 'GameLump', 'RawLump', 'GAME_LUMP_INDEX']

LOGGER = logger.get_logger(__name__)
RecordT = TypeVar('RecordT', bound=Record)
#: The index of the game lump in every Source dialect.
GAME_LUMP_INDEX = 35


def _check_data(data: object, kind: str) -> None:
    if data is None:
        raise TypeError(f'{kind} data cannot be None!')


def _bsp_ref(bsp: Optional['BSP']) -> Optional['weakref.ReferenceType[BSP]']:
    return weakref.ref(bsp) if bsp is not None else None


class Lump(MutableSequence[RecordT]):
    """A lump made of fixed-size records, stored contiguously in one buffer.

    Indexing produces :py:class:`Record` handles, which read and write the buffer
    directly. A handle refers to a position, so inserting or deleting records
    shifts which record earlier handles point to.

    Assigning or inserting a record copies its bytes. If it comes from a
    different dialect or lump version, it is converted field by field.
    """
    record_type: Type[RecordT]
    map_type: MapType
    version: int
    struct_length: int
    data: bytearray

    def __init__(
        self,
        record_type: Type[RecordT],
        map_type: MapType,
        data: Union[bytes, bytearray, memoryview] = b'',
        version: int = 0,
        *,
        struct_length: Optional[int] = None,
        bsp: Optional['BSP'] = None,
    ) -> None:
        _check_data(data, record_type.__name__)
        self.record_type = record_type
        self.map_type = map_type
        self.version = version
        if struct_length is None:
            struct_length = record_type.length_for(map_type, version)
        if struct_length <= 0:
            raise ValueError(f'Invalid record size {struct_length} for {record_type.__name__}!')
        self.struct_length = struct_length
        self.data = bytearray(data)
        extra = len(self.data) % struct_length
        if extra:
            LOGGER.warning(
                '{} lump has {} trailing bytes after {} records, discarding.',
                record_type.__name__, extra, len(self.data) // struct_length,
            )
            del self.data[-extra:]
        self._bsp = _bsp_ref(bsp)

    @property
    def bsp(self) -> Optional['BSP']:
        """The map this lump belongs to, if any."""
        return self._bsp() if self._bsp is not None else None

    def __repr__(self) -> str:
        return (
            f'<{type(self).__name__} {self.record_type.__name__}, {self.map_type.name}, '
            f'v{self.version}, {len(self)} records>'
        )

    def __len__(self) -> int:
        return len(self.data) // self.struct_length

    def _norm_index(self, index: int) -> int:
        count = len(self)
        if index < 0:
            index += count
        if not 0 <= index < count:
            raise IndexError(
                f'{self.record_type.__name__} index {index} is out of range '
                f'for lump with {count} records!'
            )
        return index

    @overload
    def __getitem__(self, index: int) -> RecordT: ...
    @overload
    def __getitem__(self, index: slice) -> List[RecordT]: ...

    def __getitem__(self, index: Union[int, slice]) -> Union[RecordT, List[RecordT]]:
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self)))]
        return self.record_type(self, self._norm_index(index) * self.struct_length)

    def __iter__(self) -> Iterator[RecordT]:
        for i in range(len(self)):
            yield self.record_type(self, i * self.struct_length)

    def _record_bytes(self, record: RecordT) -> bytes:
        """Get the bytes for a record in this lump's layout, converting if required."""
        if not isinstance(record, self.record_type):
            raise TypeError(
                f'Expected {self.record_type.__name__}, got {type(record).__name__}!'
            )
        if (
            record.map_type is self.map_type
            and record.version == self.version
            and record.struct_length == self.struct_length
        ):
            return record.data
        # Converting via a blank record with our exact length handles lumps with a
        # computed struct length.
        target = Lump(
            self.record_type, self.map_type,
            bytes(self.struct_length), self.version,
            struct_length=self.struct_length,
        )[0]
        for name, field in self.record_type._fields.items():
            if field.is_present(record) and field.is_present(target):
                setattr(target, name, getattr(record, name))
        return target.data

    def __setitem__(self, index: int, record: RecordT) -> None:
        index = self._norm_index(index)
        pos = index * self.struct_length
        self.data[pos:pos + self.struct_length] = self._record_bytes(record)

    def __delitem__(self, index: Union[int, slice]) -> None:
        if isinstance(index, slice):
            for i in sorted(range(*index.indices(len(self))), reverse=True):
                del self[i]
            return
        pos = self._norm_index(index) * self.struct_length
        del self.data[pos:pos + self.struct_length]

    def insert(self, index: int, record: RecordT) -> None:
        """Insert a copy of a record before the specified index."""
        count = len(self)
        if index < 0:
            index = max(0, index + count)
        index = min(index, count)
        pos = index * self.struct_length
        self.data[pos:pos] = self._record_bytes(record)

    def append(self, record: RecordT) -> None:
        """Add a copy of a record to the end."""
        self.insert(len(self), record)

    def extend(self, records: Iterable[RecordT]) -> None:
        """Add copies of several records to the end."""
        for record in list(records):
            self.append(record)

    def add_blank(self) -> RecordT:
        """Append a zero-filled record, and return it."""
        self.data += bytes(self.struct_length)
        return self[-1]

    def to_bytes(self) -> bytes:
        """Return the lump data."""
        return bytes(self.data)


class NumType(Enum):
    """The integer formats used by index tables."""
    SBYTE = 'b'
    BYTE = 'B'
    INT16 = 'h'
    UINT16 = 'H'
    INT32 = 'i'
    UINT32 = 'I'
    INT64 = 'q'

    @property
    def size(self) -> int:
        """The number of bytes per integer."""
        return struct.calcsize('<' + self.value)


class NumList(MutableSequence[int]):
    """A lump of integers, like the surface-edge or leaf-face tables.

    Values are always read as Python ints. Writing a value which does not fit
    in the storage format raises :external:py:class:`OverflowError`.
    """
    num_type: NumType
    data: bytearray

    def __init__(
        self,
        data: Union[bytes, bytearray, memoryview] = b'',
        num_type: NumType = NumType.INT32,
        *,
        bsp: Optional['BSP'] = None,
    ) -> None:
        _check_data(data, 'NumList')
        self.num_type = num_type
        self._struct = Struct('<' + num_type.value)
        self.data = bytearray(data)
        extra = len(self.data) % self._struct.size
        if extra:
            LOGGER.warning('{} list has {} trailing bytes, discarding.', num_type.name, extra)
            del self.data[-extra:]
        self._bsp = _bsp_ref(bsp)

    @classmethod
    def from_values(cls, values: Iterable[int], num_type: NumType = NumType.INT32) -> Self:
        """Build a list from existing values."""
        result = cls(b'', num_type)
        result.extend(values)
        return result

    @property
    def bsp(self) -> Optional['BSP']:
        """The map this lump belongs to, if any."""
        return self._bsp() if self._bsp is not None else None

    def __repr__(self) -> str:
        return f'NumList.from_values({list(self)!r}, NumType.{self.num_type.name})'

    def __len__(self) -> int:
        return len(self.data) // self._struct.size

    def __eq__(self, other: object) -> bool:
        if isinstance(other, NumList):
            return list(self) == list(other)
        if isinstance(other, (list, tuple)):
            return list(self) == list(other)
        return NotImplemented

    def _norm_index(self, index: int) -> int:
        count = len(self)
        if index < 0:
            index += count
        if not 0 <= index < count:
            raise IndexError(f'{self.num_type.name} list index {index} out of range (length {count})!')
        return index

    def _pack(self, value: int) -> bytes:
        try:
            return self._struct.pack(value)
        except struct.error:
            raise OverflowError(f'{value!r} cannot be stored as {self.num_type.name}!') from None

    @overload
    def __getitem__(self, index: int) -> int: ...
    @overload
    def __getitem__(self, index: slice) -> List[int]: ...

    def __getitem__(self, index: Union[int, slice]) -> Union[int, List[int]]:
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self)))]
        [value] = self._struct.unpack_from(self.data, self._norm_index(index) * self._struct.size)
        return value  # type: ignore[no-any-return]

    def __iter__(self) -> Iterator[int]:
        for [value] in self._struct.iter_unpack(self.data):
            yield value

    def __setitem__(self, index: int, value: int) -> None:
        pos = self._norm_index(index) * self._struct.size
        self.data[pos:pos + self._struct.size] = self._pack(value)

    def __delitem__(self, index: int) -> None:
        pos = self._norm_index(index) * self._struct.size
        del self.data[pos:pos + self._struct.size]

    def insert(self, index: int, value: int) -> None:
        """Insert a value before the specified index."""
        count = len(self)
        if index < 0:
            index = max(0, index + count)
        index = min(index, count)
        pos = index * self._struct.size
        self.data[pos:pos] = self._pack(value)

    def append(self, value: int) -> None:
        """Add a value to the end."""
        self.data += self._pack(value)

    def extend(self, values: Iterable[int]) -> None:
        """Add several values to the end."""
        for value in values:
            self.append(value)

    def to_bytes(self) -> bytes:
        """Return the lump data."""
        return bytes(self.data)


def _tag_from_ident(ident: int) -> str:
    """Game lump tags are stored as a little-endian int, so ``sprp`` reads as ``prps``."""
    return struct.pack('<i', ident)[::-1].decode('ascii', 'surrogateescape')


def _ident_from_tag(tag: str) -> int:
    [ident] = struct.unpack('<i', tag.encode('ascii', 'surrogateescape')[::-1])
    return ident  # type: ignore[no-any-return]


class GameLump(Mapping[str, LumpInfo]):
    """The directory of game-specific lumps stored inside lump 35 of Source maps.

    Sub-lump offsets are usually relative to the start of the file, but some maps
    store them relative to the game lump. :py:attr:`game_lump_offset` is the amount
    to subtract from an offset to find the data inside this lump, found by assuming
    the lowest offset points directly after the directory.
    """
    map_type: MapType
    version: int
    data: bytes
    game_lump_offset: int

    def __init__(
        self,
        data: Union[bytes, bytearray],
        map_type: MapType,
        version: int = 0,
    ) -> None:
        _check_data(data, 'GameLump')
        self.map_type = map_type
        self.version = version
        self.data = bytes(data)
        self.stride = self.entry_size(map_type)
        self._entries: Dict[str, LumpInfo] = {}
        self.game_lump_offset = 0

        if len(self.data) < 4:
            return
        [count] = struct.unpack_from('<i', self.data, 0)
        if count <= 0:
            return
        header_length = 4 + count * self.stride
        if header_length > len(self.data):
            raise ValueError(
                f'Game lump directory has {count} entries, '
                f'but the lump is only {len(self.data)} bytes long!'
            )
        lowest = None
        for i in range(count):
            pos = i * self.stride
            [ident] = struct.unpack_from('<i', self.data, pos + 4)
            if map_type is MapType.VINDICTUS:
                flags, lmp_ver, offset, length = struct.unpack_from('<4i', self.data, pos + 8)
            else:
                flags, lmp_ver = struct.unpack_from('<HH', self.data, pos + 8)
                offset, length = struct.unpack_from('<ii', self.data, pos + 12)
            info = LumpInfo(offset, length, lmp_ver, ident, flags)
            self._entries[_tag_from_ident(ident)] = info
            if lowest is None or offset < lowest:
                lowest = offset
        assert lowest is not None
        self.game_lump_offset = lowest - header_length
        LOGGER.debug(
            'Game lump: {} entries, offset base {}', count, self.game_lump_offset,
        )

    @staticmethod
    def entry_size(map_type: MapType) -> int:
        """The size of each directory entry.

        :raises UnsupportedMapTypeError: if this dialect has no game lump.
        """
        if map_type is MapType.VINDICTUS or map_type is MapType.DMOMAM:
            return 20
        elif map_type in SOURCE:
            return 16
        raise UnsupportedMapTypeError(map_type, 'GameLump')

    @staticmethod
    def lump_index(map_type: MapType) -> Optional[int]:
        """Return the index of the game lump, or None if this dialect has none."""
        return GAME_LUMP_INDEX if map_type in SOURCE else None

    def __repr__(self) -> str:
        return f'<GameLump {self.map_type.name}: {", ".join(self._entries)}>'

    def __getitem__(self, tag: str) -> LumpInfo:
        return self._entries[tag]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def raw_data(self, tag: str) -> bytes:
        """Return the data for a sub-lump exactly as stored."""
        info = self._entries[tag]
        start = info.offset - self.game_lump_offset
        return self.data[start:start + info.length]

    def lump_data(self, tag: str) -> bytes:
        """Return the data for a sub-lump, decompressing it if required."""
        data = self.raw_data(tag)
        if self._entries[tag].flags & 1:
            return decompress_lzma(data)
        return data

    def rebased(self, file_offset: int) -> bytes:
        """Return this lump, with offsets adjusted for it being written at a new position.

        Offsets relative to the game lump itself are left untouched.
        """
        if self.game_lump_offset == 0 or not self._entries:
            return self.data
        LOGGER.debug('Moved game lump from {} to {}', self.game_lump_offset, file_offset)
        return self._shift(self.data, file_offset - self.game_lump_offset)

    @classmethod
    def build(
        cls,
        map_type: MapType,
        lumps: Mapping[str, Union[bytes, Tuple[int, int, bytes]]],
        version: int = 0,
    ) -> Self:
        """Construct a game lump from sub-lump data, using offsets relative to the game lump.

        Values may be raw data, or a ``(version, flags, data)`` tuple.
        """
        stride = cls.entry_size(map_type)
        header = bytearray(struct.pack('<i', len(lumps)))
        header += bytes(stride * len(lumps))
        body = bytearray()
        offset = len(header)
        for i, (tag, value) in enumerate(lumps.items()):
            if isinstance(value, tuple):
                lmp_ver, flags, data = value
            else:
                data = bytes(value)
                flags = lmp_ver = 0
            pos = 4 + i * stride
            struct.pack_into('<i', header, pos, _ident_from_tag(tag))
            if map_type is MapType.VINDICTUS:
                struct.pack_into('<4i', header, pos + 4, flags, lmp_ver, offset + len(body), len(data))
            else:
                struct.pack_into('<HHii', header, pos + 4, flags, lmp_ver, offset + len(body), len(data))
            body += data
        return cls(bytes(header + body), map_type, version)

    def with_lump(self, tag: str, data: bytes, version: int) -> Self:
        """Return a copy of this game lump, with one sub-lump added or replaced.

        The new data is stored uncompressed. If the offsets were relative to the
        file, the copy keeps them that way.
        """
        lumps: Dict[str, Union[bytes, Tuple[int, int, bytes]]] = {
            existing: (info.version, info.flags, self.raw_data(existing))
            for existing, info in self._entries.items()
        }
        lumps[tag] = (version, 0, bytes(data))
        built = self.build(self.map_type, lumps, self.version)
        if self.game_lump_offset != 0:
            return type(self)(
                self._shift(built.data, self.game_lump_offset),
                self.map_type, self.version,
            )
        return built

    def _shift(self, data: bytes, amount: int) -> bytes:
        result = bytearray(data)
        [count] = struct.unpack_from('<i', result, 0)
        field_pos = 16 if self.map_type is MapType.VINDICTUS else 12
        for i in range(count):
            pos = i * self.stride + field_pos
            [offset] = struct.unpack_from('<i', result, pos)
            struct.pack_into('<i', result, pos, offset + amount)
        return bytes(result)

    def to_bytes(self) -> bytes:
        """Return the lump data."""
        return self.data


class RawLump:
    """A lump which is kept as bytes, like lightmaps or lumps with no known structure."""
    data: bytearray
    version: int

    def __init__(self, data: Union[bytes, bytearray] = b'', version: int = 0) -> None:
        _check_data(data, 'Lump')
        self.data = bytearray(data)
        self.version = version

    def __repr__(self) -> str:
        return f'<RawLump v{self.version}, {len(self.data)} bytes>'

    def __len__(self) -> int:
        return len(self.data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RawLump):
            return self.data == other.data and self.version == other.version
        return NotImplemented

    def to_bytes(self) -> bytes:
        """Return the lump data."""
        return bytes(self.data)
