"""Test the byte sources."""
from pathlib import Path

import pytest

from bsptools.const import MapType
from bsptools.header import LumpInfo
from bsptools.source import LMP_HEADER, BytesSource, FileSource, parse_lump_filename


@pytest.mark.parametrize('name, index', [
    ('d1_trainstation_01_l_0.lmp', 0),
    ('MAP_L_35.LMP', 35),
    ('mp_angel_city.bsp.0002.bsp_lump', 2),
    ('mp_angel_city.bsp.007f.bsp_lump', 127),
    ('map.bsp', None),
    ('_l_3.lmp', None),
    ('map_l_x.lmp', None),
])
def test_parse_lump_filename(name: str, index: 'int | None') -> None:
    """The lump index can be found from the filename."""
    assert parse_lump_filename(name) == index


def test_bytes_source() -> None:
    """Reads outside the buffer are truncated."""
    source = BytesSource(b'0123456789')
    assert source.read(2, 3) == b'234'
    assert source.read(8, 10) == b'89'
    assert source.read(20, 4) == b''
    assert source.read(-1, 4) == b''
    assert source.read(0, 0) == b''
    assert source.find_lump_file(0, MapType.SOURCE20) is None
    assert source.read_lump(LumpInfo(offset=4, length=2)) == b'45'


def test_lump_file_paths(tmp_path: Path) -> None:
    """Lump file names depend on the dialect."""
    source = FileSource(tmp_path / 'test.bsp')
    assert source.lump_file_path(12, MapType.SOURCE20) == tmp_path / 'test_l_12.lmp'
    assert source.lump_file_path(12, MapType.TITANFALL) == tmp_path / 'test.bsp.000c.bsp_lump'
    assert source.lump_file_path(12, MapType.QUAKE2) is None
    assert source.find_lump_file(12, MapType.SOURCE20) is None


def test_file_source(tmp_path: Path) -> None:
    """Files are read on demand, and lump files are detected."""
    path = tmp_path / 'test.bsp'
    path.write_bytes(b'VBSP' + bytes(range(16)))
    lmp = LMP_HEADER.pack(LMP_HEADER.size, 3, 2, 4, 1) + b'data'
    (tmp_path / 'test_l_3.lmp').write_bytes(lmp)

    with FileSource(path) as source:
        assert source.read(0, 4) == b'VBSP'
        assert source.read(6, 2) == b'\x02\x03'
        info = source.find_lump_file(3, MapType.SOURCE20)
        assert info == LumpInfo(
            version=2, length=4,
            lump_file=tmp_path / 'test_l_3.lmp', file_offset=LMP_HEADER.size,
        )
        assert source.read_lump(info) == b'data'
    # Closing doesn't prevent further reads.
    assert source.read(4, 1) == b'\x00'
    source.close()
