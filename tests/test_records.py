"""Test record kinds with computed values, and the specially-structured lumps."""
from typing import Type
import struct

import pytest

from bsptools.binformat import write_fixedstr
from bsptools.const import MapType, UnsupportedMapTypeError
from bsptools.fields import Record
from bsptools.math import Vec3, Vec4
from bsptools.records import (
    CornerNeighbors, Cubemap, Displacement, DisplacementVertex, Face, Leaf, Model, Patch,
    QuakeTextures, StaticProp, StaticProps, SubNeighbor, Texture, TextureInfo, TextureStrings,
)


@pytest.mark.parametrize('power, verts, tris', [
    (2, 25, 32),
    (3, 81, 128),
    (4, 289, 512),
])
def test_displacement_counts(power: int, verts: int, tris: int) -> None:
    """Vertex and triangle counts are derived from the power."""
    disp = Displacement.blank(MapType.SOURCE20)
    disp.power = power
    assert struct.unpack_from('<i', disp.data, 20) == (power, )
    assert disp.num_vertices == verts
    assert disp.num_triangles == tris


def test_displacement_lengths() -> None:
    """Displacement records vary in size between branches."""
    assert Displacement.length_for(MapType.SOURCE20) == 176
    assert Displacement.length_for(MapType.SOURCE22) == 180
    assert Displacement.length_for(MapType.SOURCE23) == 184
    assert Displacement.length_for(MapType.VINDICTUS) == 232


def test_displacement_neighbors() -> None:
    """Edge and corner neighbours are packed after the fixed fields."""
    disp = Displacement.blank(MapType.SOURCE20)
    disp.first_vertex = 50
    disp.first_triangle = 64
    disp.set_neighbor(1, 0, SubNeighbor(12, 1, 2, 3))
    assert struct.unpack_from('<hBBB', disp.data, 48 + 2 * 6) == (12, 1, 2, 3)
    assert disp.neighbors[1][0] == SubNeighbor(12, 1, 2, 3)
    assert disp.neighbors[0][0] == SubNeighbor(0, 0, 0, 0)

    disp.set_corner_neighbors(2, CornerNeighbors((4, 5, 0, 0), 2))
    assert struct.unpack_from('<4hB', disp.data, 48 + 8 * 6 + 2 * 10) == (4, 5, 0, 0, 2)
    corner = disp.corner_neighbors[2]
    assert corner.neighbors == (4, 5)

    assert disp.first_vertex == 50
    assert disp.first_triangle == 64

    with pytest.raises(IndexError):
        disp.set_neighbor(4, 0, SubNeighbor(0, 0, 0, 0))
    with pytest.raises(IndexError):
        disp.set_corner_neighbors(-1, CornerNeighbors((0, 0, 0, 0), 0))
    with pytest.raises(ValueError):
        disp.set_corner_neighbors(0, CornerNeighbors((1, 2), 2))


def test_displacement_neighbors_vindictus() -> None:
    """Vindictus widens the neighbour values."""
    disp = Displacement.blank(MapType.VINDICTUS)
    disp.set_neighbor(3, 1, SubNeighbor(-1, 300, 2, 1))
    assert disp.neighbors[3][1] == SubNeighbor(-1, 300, 2, 1)
    disp.set_corner_neighbors(3, CornerNeighbors((100_000, 1, 2, 3), 4))
    assert disp.corner_neighbors[3].neighbors == (100_000, 1, 2, 3)


def test_displacement_vertex() -> None:
    """The offset vector is the scaled normal."""
    vert = DisplacementVertex.blank(MapType.SOURCE20)
    vert.normal = Vec3(0, 0, 1)
    vert.distance = 16.0
    vert.alpha = 0.5
    assert vert.offset_vector == Vec3(0, 0, 16)
    assert vert.alpha == 0.5


def test_cubemap() -> None:
    """Cubemap origins are integers."""
    cube = Cubemap.blank(MapType.SOURCE20)
    cube.origin = Vec3(128, -256, 64)
    cube.size = 0
    assert struct.unpack('<4i', cube.data) == (128, -256, 64, 0)


def test_texture_info_vectors() -> None:
    """Texture axes can be accessed together with their shift."""
    info = TextureInfo.blank(MapType.QUAKE)
    info.s_vector = Vec4(1, 0, 0, 16)
    info.t_vector = Vec4(0, -1, 0, 0.5)
    assert struct.unpack_from('<8f', info.data) == (1, 0, 0, 16, 0, -1, 0, 0.5)
    assert info.s_axis == Vec3(1, 0, 0)
    assert info.t_vector == Vec4(0, -1, 0, 0.5)


def test_patch_grid() -> None:
    """Call of Duty grid patches compute the vertex count from the dimensions."""
    patch = Patch.from_bytes(struct.pack('<hhhhii', 3, 0, 3, 5, 8, 100), MapType.COD)
    assert patch.shader == 3
    assert patch.dimensions == (3, 5)
    assert patch.num_vertices == 15
    assert patch.flags == 8
    assert patch.first_vertex == 100
    assert patch.first_index == -1
    assert patch.num_indices == -1

    patch.first_vertex = 200
    patch.dimensions = (2, 2)
    assert struct.unpack('<hhhhii', patch.data) == (3, 0, 2, 2, 8, 200)


def test_patch_soup() -> None:
    """Call of Duty triangle soups store explicit counts."""
    patch = Patch.from_bytes(struct.pack('<hhhhii', 1, 1, 6, 9, 40, 80), MapType.COD)
    assert patch.dimensions == (-1, -1)
    assert patch.num_vertices == 6
    assert patch.num_indices == 9
    assert patch.first_vertex == 40
    assert patch.first_index == 80
    assert patch.flags == 0

    patch.num_vertices = 7
    patch.first_index = 81
    patch.flags = 5  # Not stored for soups.
    assert struct.unpack('<hhhhii', patch.data) == (1, 1, 7, 9, 40, 81)


@pytest.mark.parametrize('record_type, map_type, field, fmt, offset', [
    (Leaf, MapType.QUAKE3, 'area', 'i', 4),
    (Leaf, MapType.RAVEN, 'area', 'i', 4),
    (Leaf, MapType.MOHAA, 'area', 'i', 4),
    (Leaf, MapType.FAKK2, 'area', 'i', 4),
    (Leaf, MapType.STEF2, 'area', 'i', 4),
    (Leaf, MapType.COD, 'area', 'i', 4),
    (Leaf, MapType.COD2, 'area', 'i', 4),
    (Leaf, MapType.QUAKE2, 'area', 'h', 6),
    (Leaf, MapType.SOF, 'area', 'h', 6),
    (Leaf, MapType.QUAKE, 'cluster', 'i', 4),
    (Leaf, MapType.SOURCE20, 'cluster', 'h', 4),
    (Leaf, MapType.COD4, 'cluster', 'i', 0),
    (Leaf, MapType.MOHAA, 'cluster', 'i', 0),
    (Leaf, MapType.COD4, 'first_mark_brush', 'i', 12),
    (Leaf, MapType.COD2, 'first_mark_brush', 'i', 16),
    (Leaf, MapType.SOF, 'first_mark_brush', 'H', 26),
    (Leaf, MapType.VINDICTUS, 'first_mark_brush', 'i', 44),
    (Leaf, MapType.SOURCE20, 'num_mark_brushes', 'H', 26),
    (Leaf, MapType.NIGHTFIRE, 'num_mark_brushes', 'i', 44),
    (Leaf, MapType.QUAKE, 'first_mark_face', 'H', 20),
    (Leaf, MapType.RAVEN, 'first_mark_face', 'i', 32),
    (Leaf, MapType.SOF, 'num_mark_faces', 'H', 24),
    (Face, MapType.QUAKE, 'first_edge', 'i', 4),
    (Face, MapType.SOURCE20, 'first_edge', 'i', 4),
    (Face, MapType.SOURCE17, 'first_edge', 'i', 36),
    (Face, MapType.VINDICTUS, 'first_edge', 'i', 8),
    (Face, MapType.SOURCE17, 'plane', 'H', 32),
    (Face, MapType.NIGHTFIRE, 'plane', 'i', 0),
    (Face, MapType.QUAKE2, 'texture', 'H', 10),
    (Face, MapType.COD, 'texture', 'h', 0),
    (Face, MapType.MOHAA, 'texture', 'i', 0),
    (Face, MapType.COD, 'first_vertex', 'i', 4),
    (Face, MapType.COD2, 'num_vertices', 'h', 8),
    (Face, MapType.STEF2, 'first_vertex', 'i', 12),
    (Face, MapType.RAVEN, 'num_vertices', 'i', 16),
    (Face, MapType.NIGHTFIRE, 'texture_info', 'i', 32),
    (Face, MapType.SOURCE20, 'texture_info', 'H', 10),
    (Face, MapType.VINDICTUS, 'displacement', 'i', 20),
    (Face, MapType.SOURCE20, 'original', 'i', 44),
    (Face, MapType.FAKK2, 'num_indices', 'i', 24),
    (Face, MapType.COD, 'num_indices', 'h', 10),
    (Model, MapType.QUAKE, 'first_face', 'i', 56),
    (Model, MapType.QUAKE2, 'first_face', 'i', 40),
    (Model, MapType.SOURCE20, 'num_faces', 'i', 44),
    (Model, MapType.DMOMAM, 'first_face', 'i', 44),
    (Model, MapType.NIGHTFIRE, 'first_leaf', 'i', 40),
    (Model, MapType.QUAKE3, 'first_face', 'i', 24),
    (Model, MapType.STEF2, 'num_brushes', 'i', 36),
    (Model, MapType.COD, 'first_leaf_patch', 'i', 32),
    (Model, MapType.COD, 'num_brushes', 'i', 44),
    (Model, MapType.COD4, 'first_brush', 'i', 40),
], ids=lambda val: val if isinstance(val, str) else getattr(val, '__name__', None))
def test_field_offsets(
    record_type: Type[Record], map_type: MapType, field: str, fmt: str, offset: int,
) -> None:
    """Fields are found at the offset each dialect stores them at."""
    data = bytearray(record_type.length_for(map_type))
    struct.pack_into('<' + fmt, data, offset, 23)
    record = record_type.from_bytes(bytes(data), map_type)
    assert getattr(record, field) == 23

    blank = record_type.blank(map_type)
    setattr(blank, field, 23)
    assert blank.data == bytes(data)


@pytest.mark.parametrize('map_type', [
    MapType.COD4, MapType.QUAKE, MapType.NIGHTFIRE, MapType.VINDICTUS,
], ids=lambda map_type: map_type.name.lower())
def test_leaf_area_absent(map_type: MapType) -> None:
    """Some dialects have no area for leaves."""
    leaf = Leaf.from_bytes(b'\xff' * Leaf.length_for(map_type), map_type)
    assert leaf.area == -1


def test_from_bytes_length() -> None:
    """from_bytes() requires exactly one record."""
    with pytest.raises(ValueError):
        Patch.from_bytes(bytes(32), MapType.COD)


def test_texture_strings() -> None:
    """Texture strings are looked up by byte offset."""
    strings = TextureStrings.from_bytes(b'TOOLS/TOOLSNODRAW\0brick/wall01\0dev/dev_measuregeneric01\0')
    assert strings == ['TOOLS/TOOLSNODRAW', 'brick/wall01', 'dev/dev_measuregeneric01']
    assert list(strings.offsets()) == [0, 18, 31]
    assert strings.get_texture_at_offset(0) == 'TOOLS/TOOLSNODRAW'
    assert strings.get_texture_at_offset(18) == 'brick/wall01'
    # Offsets in the middle of a name skip to the next.
    assert strings.get_texture_at_offset(5) == 'brick/wall01'
    assert strings.get_texture_at_offset(56) is None
    assert strings.offset_of('Brick/Wall01') == 18
    assert strings.offset_of('missing') == -1

    strings.append('metal/floor')
    assert strings.to_bytes() == (
        b'TOOLS/TOOLSNODRAW\0brick/wall01\0dev/dev_measuregeneric01\0metal/floor\0'
    )


def test_texture_strings_unterminated() -> None:
    """Trailing bytes without a terminator are ignored."""
    assert TextureStrings.from_bytes(b'a\0bc') == ['a']
    assert TextureStrings.from_bytes(b'') == []
    with pytest.raises(TypeError):
        TextureStrings.from_bytes(None)  # type: ignore


def make_miptex(name: str, width: int, height: int, pixels: bytes) -> bytes:
    """Build a Quake texture header followed by its pixel data."""
    return write_fixedstr(name, 16) + struct.pack('<2I4I', width, height, 40, 0, 0, 0) + pixels


def test_quake_textures() -> None:
    """The Quake texture lump keeps pixel data alongside each header."""
    first = make_miptex('+0button', 16, 16, b'\x01' * 8)
    second = make_miptex('sky4', 32, 8, b'\x02' * 4)
    header = struct.pack('<4i', 3, 16, -1, 16 + len(first))
    data = header + first + second

    textures = QuakeTextures(data, MapType.QUAKE)
    assert len(textures) == 3
    assert textures[0].name == '+0button'
    assert textures[0].width == 16
    assert textures[0].mip_offsets == (40, 0, 0, 0)
    assert textures.mip_data[0] == b'\x01' * 8
    assert textures.mip_data[1] is None
    assert textures[2].name == 'sky4'
    assert textures[2].height == 8
    assert textures.mip_data[2] == b'\x02' * 4
    assert textures.to_bytes() == data

    textures[2].name = 'sky5'
    del textures[1]
    assert textures.mip_data == [b'\x01' * 8, b'\x02' * 4]
    rebuilt = QuakeTextures(textures.to_bytes(), MapType.QUAKE)
    assert [tex.name for tex in rebuilt] == ['+0button', 'sky5']
    assert rebuilt.mip_data == textures.mip_data

    blank = rebuilt.add_blank()
    blank.name = 'new'
    assert rebuilt.mip_data[-1] == b''
    tex = Texture.blank(MapType.QUAKE)
    tex.name = 'first'
    rebuilt.insert(0, tex)
    assert [tex.name for tex in rebuilt] == ['first', '+0button', 'sky5', 'new']
    assert rebuilt.mip_data[0] == b''


def make_props(version: int, count: int, map_type: MapType = MapType.SOURCE20) -> bytes:
    """Build a static prop game lump."""
    data = struct.pack('<i', 2)
    data += write_fixedstr('models/props/crate.mdl', 128)
    data += write_fixedstr('models/props/barrel.mdl', 128)
    data += struct.pack('<i3H', 3, 1, 5, 9)
    if map_type is MapType.VINDICTUS and version == 6:
        data += struct.pack('<i', 1) + bytes(range(16))
    data += struct.pack('<i', count)
    length = StaticProp.length_for(map_type, version)
    for i in range(count):
        prop = bytearray(length)
        struct.pack_into('<3f3fh', prop, 0, 64.0 * i, 0.0, 8.0, 0.0, 90.0, 0.0, i % 2)
        struct.pack_into('<ff', prop, 36, 512.0, 1024.0)
        data += prop
    return data


@pytest.mark.parametrize('version', [4, 5, 6, 7, 8, 9, 10])
def test_static_props(version: int) -> None:
    """Static props are parsed from the game lump."""
    data = make_props(version, 3)
    props = StaticProps(data, MapType.SOURCE20, version)
    assert props.dictionary == ['models/props/crate.mdl', 'models/props/barrel.mdl']
    assert props.leaves == [1, 5, 9]
    assert props.struct_length == StaticProp.length_for(MapType.SOURCE20, version)
    assert len(props) == 3
    assert props[1].origin == Vec3(64, 0, 8)
    assert props[2].angles == Vec3(0, 90, 0)
    assert props.model_name(props[1]) == 'models/props/barrel.mdl'
    assert props[0].max_fade == 1024.0
    assert props.to_bytes() == data


def test_static_props_computed_length() -> None:
    """Records with unusual sizes are handled by dividing the remaining data."""
    data = struct.pack('<i', 0) + struct.pack('<i', 0) + struct.pack('<i', 2) + bytes(2 * 188)
    props = StaticProps(data, MapType.SOURCE20, 5)
    assert props.struct_length == 188
    assert len(props) == 2
    props[0].targetname = 'prop_door'
    assert props[0].targetname == 'prop_door'
    assert props.to_bytes() == data[:12] + props.data


def test_static_props_vindictus() -> None:
    """Vindictus version 6 stores scales as well."""
    data = make_props(6, 1, MapType.VINDICTUS)
    props = StaticProps(data, MapType.VINDICTUS, 6)
    assert props.scales == [bytes(range(16))]
    assert len(props) == 1
    assert props.to_bytes() == data


def test_static_props_modify() -> None:
    """Props can be added and the dictionary extended."""
    props = StaticProps(b'', MapType.SOURCE20, 10)
    assert len(props) == 0
    props.dictionary.append('models/props/chair.mdl')
    prop = props.add_blank()
    prop.origin = Vec3(1, 2, 3)
    prop.dictionary_entry = 0
    prop.forced_fade_scale = 1.0
    rebuilt = StaticProps(props.to_bytes(), MapType.SOURCE20, 10)
    assert rebuilt.dictionary == ['models/props/chair.mdl']
    assert rebuilt[0].origin == Vec3(1, 2, 3)
    assert rebuilt[0].forced_fade_scale == 1.0
    assert rebuilt.model_name(rebuilt[0]) == 'models/props/chair.mdl'


def test_static_props_dialect() -> None:
    """Only Source maps have static props."""
    with pytest.raises(UnsupportedMapTypeError):
        StaticProps(b'', MapType.QUAKE3, 0)
    assert StaticProp.blank(MapType.SOURCE20, 4).forced_fade_scale == 1.0
