"""Byte sources which supply the raw data for a BSP.

A source hands out byte ranges of the main file, and can also locate lumps
which were moved into separate files next to the map.
"""
from typing import BinaryIO, Optional
from typing_extensions import Protocol
from pathlib import Path
import re
import struct

import attrs

from bsptools import StringPath
from bsptools.binformat import struct_read
from bsptools.const import MapType, SOURCE, TITANFALL
from bsptools.header import LumpInfo


__all__ = ['ByteSource', 'BytesSource', 'FileSource', 'LMP_HEADER', 'parse_lump_filename']

#: Header of Source ``.lmp`` files: data offset, lump index, version, length, map revision.
LMP_HEADER = struct.Struct('<5i')


class ByteSource(Protocol):
    """The interface a BSP reads its data through."""
    def read(self, offset: int, length: int) -> bytes:
        """Return ``length`` bytes from the main file, starting at ``offset``.

        Reads past the end of the file return fewer bytes.
        """
        raise NotImplementedError

    def find_lump_file(self, index: int, map_type: MapType) -> Optional[LumpInfo]:
        """If this lump is stored in a separate file, return the entry describing it."""
        raise NotImplementedError

    def read_lump(self, info: LumpInfo) -> bytes:
        """Return the bytes described by a directory entry."""
        raise NotImplementedError


@attrs.define(eq=False)
class BytesSource:
    """A BSP held entirely in memory. External lump files are never used."""
    data: bytes

    def read(self, offset: int, length: int) -> bytes:
        """Slice the buffer."""
        if offset < 0 or length <= 0:
            return b''
        return bytes(self.data[offset:offset + length])

    def find_lump_file(self, index: int, map_type: MapType) -> Optional[LumpInfo]:
        """In-memory maps have no lump files."""
        return None

    def read_lump(self, info: LumpInfo) -> bytes:
        """Read the data for a lump."""
        if info.lump_file is not None:
            return Path(info.lump_file).read_bytes()[info.file_offset:info.file_offset + info.length]
        return self.read(info.offset, info.length)


class FileSource:
    """A BSP on disk. Lumps are read on demand, and lump files next to the map are detected.

    Source maps may have ``<mapname>_l_<n>.lmp`` files, Titanfall maps use
    ``<mapname>.bsp.<nnnn>.bsp_lump``.
    """
    path: Path
    _file: Optional[BinaryIO]

    def __init__(self, path: StringPath) -> None:
        self.path = Path(path)
        self._file = None

    def __repr__(self) -> str:
        return f'<FileSource {str(self.path)!r}>'

    def _handle(self) -> BinaryIO:
        if self._file is None or self._file.closed:
            self._file = self.path.open('rb')
        return self._file

    def close(self) -> None:
        """Close the underlying file, it will be reopened if required."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> 'FileSource':
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def read(self, offset: int, length: int) -> bytes:
        """Read a section of the main file."""
        if offset < 0 or length <= 0:
            return b''
        file = self._handle()
        file.seek(offset)
        return file.read(length)

    def lump_file_path(self, index: int, map_type: MapType) -> Optional[Path]:
        """Compute the filename a lump file would have, if this dialect supports them."""
        if map_type in TITANFALL:
            return self.path.with_name(f'{self.path.name}.{index:04x}.bsp_lump')
        elif map_type in SOURCE:
            return self.path.with_name(f'{self.path.stem}_l_{index}.lmp')
        return None

    def find_lump_file(self, index: int, map_type: MapType) -> Optional[LumpInfo]:
        """Check for a lump file next to the map."""
        lmp_path = self.lump_file_path(index, map_type)
        if lmp_path is None or not lmp_path.is_file():
            return None
        if map_type in TITANFALL:
            return LumpInfo(length=lmp_path.stat().st_size, lump_file=lmp_path)
        with lmp_path.open('rb') as file:
            data_off, lump_id, version, length, revision = struct_read(LMP_HEADER, file)
        if lump_id != index:
            raise ValueError(
                f'Lump file "{lmp_path}" is for lump {lump_id}, not {index}!'
            )
        return LumpInfo(
            version=version, length=length,
            lump_file=lmp_path, file_offset=data_off,
        )

    def read_lump(self, info: LumpInfo) -> bytes:
        """Read the data for a lump, from the map or its lump file."""
        if info.lump_file is not None:
            with Path(info.lump_file).open('rb') as file:
                file.seek(info.file_offset)
                return file.read(info.length)
        return self.read(info.offset, info.length)


def parse_lump_filename(name: str) -> Optional[int]:
    """Given the filename of a lump file, return the lump index it contains."""
    match = re.fullmatch(r'.+_l_(\d+)\.lmp', name, re.IGNORECASE)
    if match is not None:
        return int(match.group(1))
    match = re.fullmatch(r'.+\.bsp\.([0-9a-f]{4})\.bsp_lump', name, re.IGNORECASE)
    if match is not None:
        return int(match.group(1), 16)
    return None

