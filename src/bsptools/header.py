"""Decoding and regenerating the header and lump directory of every dialect.

The directory layouts fall into a few families:

* Quake and Nightfire store a bare version, followed by ``(offset, length)`` pairs.
* The Quake 2 and Quake 3 families store a magic and version, then ``(offset, length)`` pairs.
  Call of Duty 1 and 2 swap these to ``(length, offset)``.
* Ritual's UberTools games (STEF2, MoHAA, FAKK2) add a revision number before the directory.
* Source stores ``(offset, length, version, ident)``, or ``(version, offset, length, ident)``
  for Left 4 Dead 2 and version 27.
* Call of Duty 4 stores a list of ``(id, length)`` pairs, with the data packed after the
  directory in that order, each lump aligned to 4 bytes.
* Titanfall uses 16-byte Source-style entries starting after a 16-byte prefix.
"""
from typing import Callable, Dict, Final, Mapping, Optional, Tuple
from pathlib import Path
from struct import Struct

import attrs

from bsptools import logger
from bsptools.binformat import xor_crypt
from bsptools.const import (
    COD4, COD12, ID_TECH3, MapType, NIGHTFIRE, QUAKE1, QUAKE2, SOURCE, TITANFALL,
    UBERTOOLS, lump_count,
)


__all__ = [
    'LumpInfo', 'Header', 'InvalidBSPError', 'detect_map_type', 'magic_for',
    'TI_KEY_OFFSET', 'TI_KEY_LENGTH',
]

LOGGER = logger.get_logger(__name__)

MAGIC_IBSP: Final = b'IBSP'
MAGIC_RBSP: Final = b'RBSP'
MAGIC_VBSP: Final = b'VBSP'
MAGIC_EALA: Final = b'EALA'  # MoHAA Spearhead/Breakthrough.
MAGIC_2015: Final = b'2015'  # The studio which developed MoHAA.
MAGIC_EF2: Final = b'EF2!'
MAGIC_FAKK: Final = b'FAKK'
MAGIC_TITANFALL: Final = b'rBSP'

#: Tactical Intervention stores a 32-byte XOR key in two unused directory slots.
TI_KEY_OFFSET: Final = 384
TI_KEY_LENGTH: Final = 32
# Enough bytes to identify any dialect.
DETECT_SIZE: Final = TI_KEY_OFFSET + TI_KEY_LENGTH

ST_INT: Final = Struct('<i')
ST_USHORT: Final = Struct('<H')
ST_PAIR: Final = Struct('<ii')
ST_SOURCE: Final = Struct('<iiii')

# Offsets of the first lump in Quake 3 and SoF/SiN maps, used to tell them apart.
SOF_FIRST_OFFSET: Final = 184
Q3_FIRST_OFFSET: Final = 144
SIN_FIRST_OFFSET: Final = 168
RAVEN_FIRST_OFFSET: Final = 152
# L4D2 entries start with the version, so this is small where it would be an offset.
L4D2_OFFSET_LIMIT: Final = 1032

_MAGICS: Dict[MapType, Tuple[bytes, int]] = {
    MapType.QUAKE: (b'', 29),
    MapType.GOLDSRC: (b'', 30),
    MapType.BLUESHIFT: (b'', 30),
    MapType.NIGHTFIRE: (b'', 42),
    MapType.QUAKE2: (MAGIC_IBSP, 38),
    MapType.DAIKATANA: (MAGIC_IBSP, 41),
    MapType.SOF: (MAGIC_IBSP, 46),
    MapType.QUAKE3: (MAGIC_IBSP, 46),
    MapType.ET: (MAGIC_IBSP, 47),
    MapType.SIN: (MAGIC_RBSP, 1),
    MapType.RAVEN: (MAGIC_RBSP, 1),
    MapType.COD: (MAGIC_IBSP, 59),
    MapType.COD_DEMO: (MAGIC_IBSP, 58),
    MapType.COD2: (MAGIC_IBSP, 4),
    MapType.COD4: (MAGIC_IBSP, 22),
    MapType.STEF2: (MAGIC_EF2, 20),
    MapType.STEF2_DEMO: (MAGIC_FAKK, 19),
    MapType.MOHAA: (MAGIC_2015, 19),
    MapType.MOHAA_DEMO: (MAGIC_2015, 18),
    MapType.MOHAA_BT: (MAGIC_EALA, 21),
    MapType.FAKK2: (MAGIC_FAKK, 12),
    MapType.ALICE: (MAGIC_FAKK, 42),
    MapType.SOURCE17: (MAGIC_VBSP, 17),
    MapType.SOURCE18: (MAGIC_VBSP, 18),
    MapType.SOURCE19: (MAGIC_VBSP, 19),
    MapType.SOURCE20: (MAGIC_VBSP, 20),
    MapType.SOURCE21: (MAGIC_VBSP, 21),
    MapType.SOURCE22: (MAGIC_VBSP, 22),
    MapType.SOURCE23: (MAGIC_VBSP, 23),
    MapType.SOURCE27: (MAGIC_VBSP, 27),
    MapType.L4D2: (MAGIC_VBSP, 21),
    MapType.VINDICTUS: (MAGIC_VBSP, 20),
    # Read as two shorts, 20 then 4.
    MapType.DMOMAM: (MAGIC_VBSP, 20 | (4 << 16)),
    MapType.TACTICAL_INTERVENTION: (MAGIC_VBSP, 20),
    MapType.TITANFALL: (MAGIC_TITANFALL, 29),
}


class InvalidBSPError(ValueError):
    """Raised when a file is not a BSP in any known dialect, or is truncated."""


@attrs.define(eq=True, repr=False)
class LumpInfo:
    """A directory entry describing where a lump is stored."""
    offset: int = 0
    length: int = 0
    version: int = 0
    #: For Source, the uncompressed size if LZMA compressed. For game lumps, the tag.
    ident: int = 0
    flags: int = 0
    #: If set, the data is stored in this separate file instead.
    lump_file: Optional[Path] = None
    #: The position of the data inside ``lump_file``.
    file_offset: int = 0

    def __repr__(self) -> str:
        extra = f', file={self.lump_file.name!r}' if self.lump_file is not None else ''
        return (
            f'<LumpInfo offset={self.offset}, length={self.length}, '
            f'v{self.version}, ident={self.ident}{extra}>'
        )


def _int_at(data: bytes, offset: int) -> int:
    """Read an int, treating data past the end as zero."""
    if offset + 4 > len(data):
        return 0
    return ST_INT.unpack_from(data, offset)[0]


def _scan_first_offset(data: bytes, found: int, stop: int) -> bool:
    """Look through the first directory entries for a specific first-lump offset."""
    for i in range(17):
        value = _int_at(data, (i + 1) * 8)
        if value == found:
            return True
        elif value == stop:
            return False
    return False


def detect_map_type(data: bytes) -> Tuple[MapType, bytes]:
    """Identify the dialect from the start of a file.

    This should be given at least the first 416 bytes. The Tactical Intervention
    decryption key is also returned, or an empty bytestring for other dialects.

    :raises InvalidBSPError: if no dialect matches.
    """
    if len(data) < 8:
        raise InvalidBSPError('File is too short to be a BSP file!')
    magic = bytes(data[:4])
    version = _int_at(data, 4)
    if magic == MAGIC_IBSP:
        if version == 46:
            if _scan_first_offset(data, SOF_FIRST_OFFSET, Q3_FIRST_OFFSET):
                return MapType.SOF, b''
            return MapType.QUAKE3, b''
        try:
            return {
                4: MapType.COD2,
                22: MapType.COD4,
                38: MapType.QUAKE2,
                41: MapType.DAIKATANA,
                47: MapType.ET,
                58: MapType.COD_DEMO,
                59: MapType.COD,
            }[version], b''
        except KeyError:
            raise InvalidBSPError(f'Unknown IBSP version {version}!') from None
    elif magic == MAGIC_RBSP:
        if _scan_first_offset(data, SIN_FIRST_OFFSET, RAVEN_FIRST_OFFSET):
            return MapType.SIN, b''
        return MapType.RAVEN, b''
    elif magic == MAGIC_VBSP:
        [version] = ST_USHORT.unpack_from(data, 4)
        if version == 20:
            [version2] = ST_USHORT.unpack_from(data, 6)
            return (MapType.DMOMAM if version2 == 4 else MapType.SOURCE20), b''
        elif version == 21:
            if _int_at(data, 8) < L4D2_OFFSET_LIMIT:
                return MapType.L4D2, b''
            return MapType.SOURCE21, b''
        try:
            return {
                17: MapType.SOURCE17,
                18: MapType.SOURCE18,
                19: MapType.SOURCE19,
                22: MapType.SOURCE22,
                23: MapType.SOURCE23,
                27: MapType.SOURCE27,
            }[version], b''
        except KeyError:
            raise InvalidBSPError(f'Unknown VBSP version {version}!') from None
    elif magic == MAGIC_2015:
        return (MapType.MOHAA_DEMO if version == 18 else MapType.MOHAA), b''
    elif magic == MAGIC_EALA:
        return MapType.MOHAA_BT, b''
    elif magic == MAGIC_EF2:
        return MapType.STEF2, b''
    elif magic == MAGIC_FAKK:
        try:
            return {
                19: MapType.STEF2_DEMO,
                12: MapType.FAKK2,
                42: MapType.ALICE,
            }[version], b''
        except KeyError:
            raise InvalidBSPError(f'Unknown FAKK version {version}!') from None
    elif magic == MAGIC_TITANFALL:
        return MapType.TITANFALL, b''

    bare_version = _int_at(data, 0)
    if bare_version == 29:
        return MapType.QUAKE, b''
    elif bare_version == 30:
        return MapType.GOLDSRC, b''
    elif bare_version == 42:
        return MapType.NIGHTFIRE, b''

    key = bytes(data[TI_KEY_OFFSET:TI_KEY_OFFSET + TI_KEY_LENGTH])
    if len(key) == TI_KEY_LENGTH and xor_crypt(data[:4], key) == MAGIC_VBSP:
        return MapType.TACTICAL_INTERVENTION, key
    raise InvalidBSPError('File is not a BSP file!')


def magic_for(map_type: MapType) -> bytes:
    """Return the identifying bytes a file of this dialect starts with."""
    try:
        magic, version = _MAGICS[map_type]
    except KeyError:
        raise InvalidBSPError(f'No header is defined for {map_type.name} maps!') from None
    return magic + ST_INT.pack(version)


def _prefix_size(map_type: MapType) -> int:
    """The number of bytes before the first directory entry."""
    if map_type in QUAKE1 or map_type in NIGHTFIRE:
        return 4
    elif map_type in UBERTOOLS or map_type in COD4:
        return 12
    elif map_type in TITANFALL:
        return 16
    else:
        return 8


def _entry_size(map_type: MapType) -> int:
    if map_type in SOURCE or map_type in TITANFALL:
        return 16
    return 8


@attrs.define(eq=False)
class Header:
    """The decoded header of a BSP file, holding the lump directory.

    ``data`` is always the decrypted header. Use :py:meth:`to_bytes` for the form stored on disk.
    """
    map_type: MapType
    data: bytes
    #: For Tactical Intervention maps, the key used to encrypt the file.
    key: bytes = b''

    @classmethod
    def read(
        cls,
        read: Callable[[int, int], bytes],
        map_type: Optional[MapType] = None,
    ) -> 'Header':
        """Read the header, using a function which returns a range of the file.

        If the map type is not specified, it is detected.
        """
        start = read(0, DETECT_SIZE)
        if map_type is None:
            map_type, key = detect_map_type(start)
            LOGGER.info('Detected {} map', map_type.name)
        elif map_type is MapType.TACTICAL_INTERVENTION:
            key = bytes(start[TI_KEY_OFFSET:TI_KEY_OFFSET + TI_KEY_LENGTH])
        else:
            key = b''

        if map_type in COD4:
            size = 12 + 8 * _int_at(start, 8)
        elif map_type in SOURCE:
            # Includes the map revision after the directory.
            size = 8 + 16 * lump_count(map_type) + 4
        else:
            size = _prefix_size(map_type) + _entry_size(map_type) * lump_count(map_type)
        data = read(0, size)
        if len(data) < size:
            raise InvalidBSPError(
                f'Header is truncated, expected {size} bytes, got {len(data)}!'
            )
        if key:
            data = xor_crypt(data, key, 0)
        return cls(map_type, bytes(data), key)

    @property
    def prefix(self) -> bytes:
        """The magic and version at the start of the file."""
        return self.data[:4 if self.map_type in QUAKE1 or self.map_type in NIGHTFIRE else 8]

    @property
    def revision(self) -> int:
        """The revision count, only present in UberTools maps."""
        if self.map_type in UBERTOOLS:
            return _int_at(self.data, 8)
        return 0

    @property
    def map_revision(self) -> int:
        """The map revision, as saved by Source and Titanfall compilers."""
        if self.map_type in SOURCE:
            return _int_at(self.data, 8 + 16 * lump_count(self.map_type))
        elif self.map_type in TITANFALL:
            return _int_at(self.data, 8)
        return 0

    def __len__(self) -> int:
        return len(self.data)

    def to_bytes(self) -> bytes:
        """Return the header as stored on disk."""
        if self.key:
            return xor_crypt(self.data, self.key, 0)
        return self.data

    def lump_info(self, index: int) -> LumpInfo:
        """Return the directory entry for a lump.

        :raises IndexError: if the index is past the number of lumps in this dialect.
        """
        count = lump_count(self.map_type)
        if not 0 <= index < count:
            raise IndexError(
                f'Lump {index} is out of range for {self.map_type.name} maps, '
                f'which have {count} lumps!'
            )
        map_type = self.map_type
        if map_type in COD4:
            return self._cod4_entries().get(index, LumpInfo())

        pos = _prefix_size(map_type) + _entry_size(map_type) * index
        if pos + _entry_size(map_type) > len(self.data):
            return LumpInfo()
        if map_type is MapType.L4D2 or map_type is MapType.SOURCE27:
            version, offset, length, ident = ST_SOURCE.unpack_from(self.data, pos)
            return LumpInfo(offset, length, version, ident)
        elif map_type in SOURCE or map_type in TITANFALL:
            offset, length, version, ident = ST_SOURCE.unpack_from(self.data, pos)
            return LumpInfo(offset, length, version, ident)
        elif map_type in COD12:
            length, offset = ST_PAIR.unpack_from(self.data, pos)
            return LumpInfo(offset, length)
        else:
            offset, length = ST_PAIR.unpack_from(self.data, pos)
            return LumpInfo(offset, length)

    def _cod4_entries(self) -> Dict[int, LumpInfo]:
        """Walk the CoD4 directory, computing each offset."""
        count = _int_at(self.data, 8)
        pos = 12
        offset = 12 + 8 * count
        entries: Dict[int, LumpInfo] = {}
        for _ in range(count):
            lump_id, length = ST_PAIR.unpack_from(self.data, pos)
            pos += 8
            # The first occurrence of an id is the one used.
            entries.setdefault(lump_id, LumpInfo(offset, length))
            offset += length
            offset += -offset % 4
        return entries

    def indices(self) -> Tuple[int, ...]:
        """Return the lump indices present in this header, in directory order."""
        if self.map_type in COD4:
            count = _int_at(self.data, 8)
            return tuple(
                ST_PAIR.unpack_from(self.data, 12 + 8 * i)[0]
                for i in range(count)
            )
        return tuple(range(lump_count(self.map_type)))

    @classmethod
    def build(
        cls,
        map_type: MapType,
        entries: Mapping[int, LumpInfo],
        *,
        prefix: Optional[bytes] = None,
        revision: int = 0,
        map_revision: int = 0,
        key: bytes = b'',
    ) -> 'Header':
        """Generate a header for lumps with the given lengths, versions and idents.

        Offsets in ``entries`` are ignored. Lumps are packed back-to-back directly after the
        header, in directory order. For CoD4 only the lumps in ``entries`` are written,
        in iteration order, otherwise missing lumps are empty. UberTools maps have their
        revision incremented.
        """
        if prefix is None:
            prefix = magic_for(map_type)

        if map_type in COD4:
            data = bytearray(prefix)
            data += ST_INT.pack(len(entries))
            for lump_id, info in entries.items():
                data += ST_PAIR.pack(lump_id, info.length)
            return cls(map_type, bytes(data), key)

        count = lump_count(map_type)
        data = bytearray(prefix)
        if map_type in UBERTOOLS:
            data += ST_INT.pack(revision + 1)
        elif map_type in TITANFALL:
            data += ST_INT.pack(map_revision)
            data += ST_INT.pack(count - 1)
        entry_pos = len(data)
        data += bytes(_entry_size(map_type) * count)
        if map_type in SOURCE:
            data += ST_INT.pack(map_revision)

        offset = len(data)
        for index in range(count):
            info = entries.get(index, LumpInfo())
            length = info.length
            pos = entry_pos + _entry_size(map_type) * index
            # Encrypted maps need empty entries to be zero, so the key survives.
            lump_off = 0 if length == 0 and key else offset
            if map_type is MapType.L4D2 or map_type is MapType.SOURCE27:
                ST_SOURCE.pack_into(data, pos, info.version, lump_off, length, info.ident)
            elif map_type in SOURCE or map_type in TITANFALL:
                ST_SOURCE.pack_into(data, pos, lump_off, length, info.version, info.ident)
            elif map_type in COD12:
                ST_PAIR.pack_into(data, pos, length, lump_off)
            elif map_type in QUAKE1 or map_type in NIGHTFIRE or map_type in QUAKE2 or map_type in ID_TECH3:
                ST_PAIR.pack_into(data, pos, lump_off, length)
            else:
                raise InvalidBSPError(f'No header is defined for {map_type.name} maps!')
            offset += length
        return cls(map_type, bytes(data), key)
