"""Test the BSP container."""
from pathlib import Path
from typing import List
import struct

import dirty_equals
import pytest

from bsptools import BSP, Entity, EntityConnection
from bsptools.binformat import compress_lzma, write_fixedstr
from bsptools.const import GAME_LUMP_DETAIL_PROPS, UBERTOOLS, MapType, UnsupportedMapTypeError
from bsptools.header import Header, LumpInfo
from bsptools.lump import GameLump, Lump, NumList, RawLump
from bsptools.math import Vec3
from bsptools.records import Face, Model, Plane, QuakeTextures, StaticProps, TextureStrings
from bsptools.source import LMP_HEADER, BytesSource

from bsp_helpers import build_map, make_dummy


ENT_DATA = b'{\n"classname" "worldspawn"\n"skyname" "sky_day01_01"\n}\n\x00'
#: The size of a Source 20 header.
SOURCE_HEADER = 8 + 16 * 64 + 4


def source_planes(*dists: float) -> bytes:
    """Build the data for a Source plane lump."""
    return b''.join(struct.pack('<4fi', 0.0, 0.0, 1.0, dist, 2) for dist in dists)


class CountingSource(BytesSource):
    """Records which lumps are read."""
    reads: List[LumpInfo]

    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.reads = []

    def read_lump(self, info: LumpInfo) -> bytes:
        self.reads.append(info)
        return super().read_lump(info)


def test_lumps_are_cached() -> None:
    """Lumps are decoded once, then the same object is returned."""
    source = CountingSource(build_map(MapType.SOURCE20, {0: ENT_DATA, 1: source_planes(64, 128)}))
    bsp = BSP(source)
    assert bsp.map_type is MapType.SOURCE20
    assert source.reads == []
    assert not bsp.is_loaded(1)

    planes = bsp.planes
    assert planes is not None
    assert bsp.is_loaded(1)
    assert len(planes) == 2
    assert planes[1].distance == 128.0
    assert bsp.planes is planes
    assert bsp.get(1) is planes
    assert len(source.reads) == 1

    ents = bsp.entities
    assert bsp.entities is ents
    assert ents[0]['skyname'] == 'sky_day01_01'
    assert len(source.reads) == 2


def test_absent_and_empty() -> None:
    """Lumps missing from the dialect are None, lumps with no data are empty."""
    bsp = make_dummy(MapType.SOURCE20)
    assert bsp.lod_terrains is None
    assert bsp.patches is None
    assert bsp.indices is None
    assert bsp.static_props is None

    assert bsp.planes is not None and len(bsp.planes) == 0
    assert bsp.entities == []
    assert bsp.surf_edges == []
    assert isinstance(bsp.textures, TextureStrings)
    assert bsp.game_lump is not None and len(bsp.game_lump) == 0

    quake = make_dummy(MapType.QUAKE)
    assert quake.texture_info is not None
    assert quake.displacements is None
    assert quake.game_lump is None
    assert isinstance(quake.textures, QuakeTextures)


def test_lump_widths() -> None:
    """Index tables use the dialect's integer width."""
    data = struct.pack('<3H', 1, 2, 3)
    assert make_dummy(MapType.SOURCE20, {16: data}).mark_surfaces == [1, 2, 3]
    assert make_dummy(MapType.QUAKE2, {9: data}).mark_surfaces == [1, 2, 3]
    vindictus = BSP(build_map(MapType.VINDICTUS, {16: struct.pack('<2I', 100_000, 7)}), MapType.VINDICTUS)
    assert vindictus.mark_surfaces == [100_000, 7]


def test_get_raw() -> None:
    """Lumps with no known structure are returned raw."""
    bsp = make_dummy(MapType.SOURCE20, {20: b'areas'}, versions={20: 3})
    raw = bsp.get(20)
    assert isinstance(raw, RawLump)
    assert raw == RawLump(b'areas', 3)
    assert bsp.get(20) is raw
    assert bsp.lump_data(20) == b'areas'
    with pytest.raises(IndexError):
        bsp.get(64)


def test_replace_lump() -> None:
    """Lumps can be replaced entirely, if the dialect has them."""
    bsp = make_dummy(MapType.SOURCE20)
    planes = Lump(Plane, MapType.SOURCE20, source_planes(32))
    bsp.planes = planes
    assert bsp.planes is planes
    with pytest.raises(UnsupportedMapTypeError):
        bsp.lod_terrains = Lump(Plane, MapType.SOURCE20)  # type: ignore
    quake3 = make_dummy(MapType.QUAKE3)
    with pytest.raises(UnsupportedMapTypeError):
        quake3.static_props = StaticProps(b'', MapType.SOURCE20)

    reread = BSP(bsp.to_bytes())
    assert reread.planes is not None
    assert reread.planes[0].distance == 32.0


def test_map_type_override() -> None:
    """Dialects which can't be detected can be specified."""
    data = build_map(MapType.VINDICTUS, {7: bytes(72)})
    assert BSP(data).map_type is MapType.SOURCE20
    bsp = BSP(data, MapType.VINDICTUS)
    assert bsp.map_type is MapType.VINDICTUS
    assert bsp.faces is not None
    assert bsp.faces.struct_length == 72
    assert len(bsp.faces) == 1


def test_invalid_sources() -> None:
    """Sources must be provided."""
    with pytest.raises(TypeError):
        BSP(None)  # type: ignore


def test_referenced_objects() -> None:
    """Records refer to ranges of other lumps."""
    face = Face.blank(MapType.SOURCE20)
    face.first_edge = 1
    face.num_edges = 2
    model = Model.blank(MapType.SOURCE20)
    model.first_face = 0
    model.num_faces = 1
    bsp = make_dummy(MapType.SOURCE20, {
        7: face.data,
        13: struct.pack('<4i', 10, -20, 30, 40),
        14: model.data,
    })
    assert bsp.faces is not None and bsp.models is not None
    map_face = bsp.faces[0]
    assert bsp.get_referenced_objects(map_face, 'surf_edges') == [-20, 30]
    assert map_face.get_referenced('surf_edges') == [-20, 30]

    [found] = bsp.get_referenced_objects(bsp.models[0], 'faces')
    assert found == map_face
    # The result is detached.
    found.num_edges = 3
    assert map_face.num_edges == 2

    map_face.num_edges = 0
    assert bsp.get_referenced_objects(map_face, 'surf_edges') == []
    map_face.num_edges = 10
    with pytest.raises(IndexError):
        bsp.get_referenced_objects(map_face, 'surf_edges')

    with pytest.raises(ValueError):
        bsp.get_referenced_objects(map_face, 'not_a_lump')
    with pytest.raises(ValueError):
        bsp.get_referenced_objects(map_face, 'brushes')
    with pytest.raises(TypeError):
        bsp.get_referenced_objects(None, 'faces')  # type: ignore
    with pytest.raises(ValueError):
        Face.blank(MapType.SOURCE20).get_referenced('surf_edges')


def test_referenced_unsupported() -> None:
    """Referring to a lump the dialect lacks is an error."""
    bsp = make_dummy(MapType.QUAKE3)
    with pytest.raises(UnsupportedMapTypeError):
        bsp.get_referenced_objects(Face.blank(MapType.QUAKE3), 'surf_edges')

    # CoD models index leaf patches, which have no lump of their own here.
    model = Model.blank(MapType.COD)
    model.first_leaf_patch = 2
    model.num_leaf_patches = 3
    with pytest.raises(UnsupportedMapTypeError):
        make_dummy(MapType.COD).get_referenced_objects(model, 'mark_surfaces')


def test_texture_names() -> None:
    """Source texture names are found via the texture table."""
    bsp = make_dummy(MapType.SOURCE20, {
        2: struct.pack('<3fi4i', 1, 1, 1, 1, 64, 64, 64, 64),
        43: b'TOOLS/TOOLSNODRAW\0brick/wall01\0',
        44: struct.pack('<2i', 0, 18),
    })
    assert bsp.texture_data is not None
    assert bsp.texture_name(bsp.texture_data[0]) == 'brick/wall01'
    with pytest.raises(UnsupportedMapTypeError):
        make_dummy(MapType.QUAKE2).texture_name(bsp.texture_data[0])


@pytest.mark.parametrize('map_type', [
    MapType.QUAKE, MapType.QUAKE2, MapType.QUAKE3, MapType.MOHAA, MapType.COD,
    MapType.SOURCE20, MapType.L4D2,
], ids=lambda map_type: map_type.name.lower())
def test_unmodified_roundtrip(map_type: MapType) -> None:
    """Writing an unmodified map reproduces it, apart from the revision count."""
    ent_index = BSP.entities.locate(map_type)
    assert ent_index is not None
    data = build_map(map_type, {ent_index: ENT_DATA, 1: bytes(40), 3: b'\x01\x02\x03'})
    bsp = BSP(data)
    if map_type in UBERTOOLS:
        expected = data[:8] + struct.pack('<i', bsp.header.revision + 1) + data[12:]
    else:
        expected = data
    assert bsp.to_bytes() == expected
    # Decoding without changes doesn't alter anything either.
    assert bsp.entities is not None
    assert bsp.to_bytes() == expected
    if map_type in UBERTOOLS:
        assert BSP(expected).header.revision == bsp.header.revision + 1


def test_cod4_roundtrip() -> None:
    """CoD4 maps keep their directory order."""
    data = build_map(MapType.COD4, {39: ENT_DATA, 0: b'shader', 4: bytes(16)})
    bsp = BSP(data)
    assert bsp.map_type is MapType.COD4
    assert bsp.to_bytes() == data
    assert bsp.entities is not None
    bsp.entities[0]['skyname'] = 'sky_night'
    reread = BSP(bsp.to_bytes())
    assert reread.header.indices() == (39, 0, 4)
    assert reread.entities is not None
    assert reread.entities[0]['skyname'] == 'sky_night'
    assert reread.lump_data(0) == b'shader'


def test_encrypted_roundtrip() -> None:
    """Tactical Intervention maps are re-encrypted with the same key."""
    key = bytes(range(100, 132))
    data = build_map(MapType.TACTICAL_INTERVENTION, {0: ENT_DATA, 1: source_planes(16)}, key=key)
    bsp = BSP(data)
    assert bsp.map_type is MapType.TACTICAL_INTERVENTION
    assert bsp.header.key == key
    assert bsp.planes is not None
    assert bsp.planes[0].distance == 16.0
    assert bsp.to_bytes() == data

    assert bsp.entities is not None
    bsp.entities.append(Entity({'classname': 'info_player_start', 'origin': '0 0 64'}))
    reread = BSP(bsp.to_bytes())
    assert reread.header.key == key
    assert reread.entities is not None
    assert [ent.classname for ent in reread.entities] == ['worldspawn', 'info_player_start']
    assert reread.planes is not None
    assert reread.planes[0].distance == 16.0


def test_modify_entities() -> None:
    """Modified lumps are written, moving the following lumps."""
    bsp = make_dummy(MapType.SOURCE20, {0: ENT_DATA, 1: source_planes(8, 16)})
    assert bsp.entities is not None
    relay = Entity({'classname': 'logic_relay', 'targetname': 'relay'})
    relay.connections.append(EntityConnection('OnTrigger', 'door', 'Open', '', 1.0))
    bsp.entities.append(relay)
    data = bsp.to_bytes()
    assert b'"OnTrigger" "door,Open,,1,-1"' in data

    reread = BSP(data)
    assert reread.entities is not None
    assert reread.entities[1].connections == relay.connections
    assert reread.planes is not None
    assert [plane.distance for plane in reread.planes] == [8.0, 16.0]
    assert reread.header.lump_info(1).offset == SOURCE_HEADER + reread.header.lump_info(0).length


def test_compressed_lump() -> None:
    """LZMA compressed lumps are decompressed when read, and compressed again when saved."""
    raw = source_planes(1, 2, 3)
    comp = compress_lzma(raw)
    header = Header.build(MapType.SOURCE20, {1: LumpInfo(length=len(comp), ident=len(raw))})
    data = header.data + comp
    bsp = BSP(data)
    assert bsp.lump_data(1) == raw
    # Not decoded, so kept as is.
    assert bsp.to_bytes() == data

    assert bsp.planes is not None
    assert len(bsp.planes) == 3
    bsp.planes[2].distance = 64.0
    modified = source_planes(1, 2, 64)
    reread = BSP(bsp.to_bytes())
    info = reread.header.lump_info(1)
    assert info == dirty_equals.HasAttributes(ident=len(modified))
    assert reread.source.read(info.offset, 4) == b'LZMA'
    assert reread.lump_data(1) == modified
    assert reread.planes is not None
    assert reread.planes[2].distance == 64.0

    # Uncompressed lumps are left uncompressed.
    plain = make_dummy(MapType.SOURCE20, {1: raw})
    assert plain.planes is not None
    plain.planes[0].distance = 8.0
    assert BSP(plain.to_bytes()).header.lump_info(1) == dirty_equals.HasAttributes(
        length=len(raw), ident=0,
    )


def build_props(*origins: Vec3) -> bytes:
    """Build a version 10 static prop lump."""
    data = struct.pack('<i', 1) + write_fixedstr('models/props/crate.mdl', 128)
    data += struct.pack('<i', 0)
    data += struct.pack('<i', len(origins))
    for origin in origins:
        prop = bytearray(76)
        struct.pack_into('<3f', prop, 0, *origin)
        data += prop
    return data


@pytest.mark.parametrize('file_relative', [False, True], ids=['relative', 'absolute'])
def test_static_props(file_relative: bool) -> None:
    """Static props are decoded from the game lump, and written back."""
    game = GameLump.build(MapType.SOURCE20, {
        'sprp': (10, 0, build_props(Vec3(1, 2, 3))),
        GAME_LUMP_DETAIL_PROPS: (4, 0, b'detail'),
    })
    game_data = game.data
    if file_relative:
        game_data = game._shift(game_data, SOURCE_HEADER + len(ENT_DATA))
    bsp = make_dummy(MapType.SOURCE20, {0: ENT_DATA, 35: game_data})
    assert bsp.game_lump is not None
    assert bsp.game_lump.game_lump_offset == (SOURCE_HEADER + len(ENT_DATA) if file_relative else 0)

    props = bsp.static_props
    assert props is not None
    assert bsp.static_props is props
    assert props.version == 10
    assert props.dictionary == ['models/props/crate.mdl']
    assert props[0].origin == Vec3(1, 2, 3)
    props[0].origin = Vec3(4, 5, 6)
    new_prop = props.add_blank()
    new_prop.origin = Vec3(7, 8, 9)

    assert bsp.entities is not None
    bsp.entities.append(Entity({'classname': 'info_target'}))
    reread = BSP(bsp.to_bytes())
    assert reread.game_lump is not None
    if file_relative:
        assert reread.game_lump.game_lump_offset == reread.header.lump_info(35).offset
    else:
        assert reread.game_lump.game_lump_offset == 0
    assert reread.game_lump.lump_data(GAME_LUMP_DETAIL_PROPS) == b'detail'
    assert reread.static_props is not None
    assert [prop.origin for prop in reread.static_props] == [Vec3(4, 5, 6), Vec3(7, 8, 9)]


def test_add_static_props() -> None:
    """Maps without a game lump can have static props added."""
    bsp = make_dummy(MapType.SOURCE20)
    props = StaticProps(b'', MapType.SOURCE20, 10)
    props.dictionary.append('models/props/barrel.mdl')
    props.add_blank().origin = Vec3(0, 0, 32)
    bsp.static_props = props
    reread = BSP(bsp.to_bytes())
    assert reread.static_props is not None
    assert reread.static_props.dictionary == ['models/props/barrel.mdl']
    assert reread.static_props[0].origin == Vec3(0, 0, 32)


def test_save(tmp_path: Path) -> None:
    """Maps are saved back to their file, or a new one."""
    path = tmp_path / 'test.bsp'
    path.write_bytes(build_map(MapType.SOURCE20, {0: ENT_DATA, 1: source_planes(4)}))
    with BSP(path) as bsp:
        assert repr(bsp) == f'<BSP SOURCE20 {str(path)!r}>'
        assert bsp.entities is not None
        bsp.entities[0]['skyname'] = 'sky_night'
        bsp.save()
        # Unloaded lumps now come from the new file.
        assert bsp.planes is not None
        assert bsp.planes[0].distance == 4.0

        copy = tmp_path / 'copy.bsp'
        bsp.save(copy)
        assert bsp.filename == copy

    for filename in [path, copy]:
        with BSP(filename) as reread:
            assert reread.entities is not None
            assert reread.entities[0]['skyname'] == 'sky_night'
    assert sorted(file.name for file in tmp_path.iterdir()) == ['copy.bsp', 'test.bsp']

    memory = make_dummy(MapType.SOURCE20)
    assert repr(memory) == '<BSP SOURCE20>'
    with pytest.raises(ValueError):
        memory.save()


def test_lump_files(tmp_path: Path) -> None:
    """Lump files next to the map override the lump in the map."""
    path = tmp_path / 'test.bsp'
    path.write_bytes(build_map(MapType.SOURCE20, {0: ENT_DATA}))
    lmp_data = b'{\n"classname" "worldspawn"\n"message" "from the lump file"\n}\n\x00'
    lmp_path = tmp_path / 'test_l_0.lmp'
    lmp_path.write_bytes(LMP_HEADER.pack(LMP_HEADER.size, 0, 0, len(lmp_data), 1) + lmp_data)

    with BSP(path) as bsp:
        assert bsp.lump_entry(0).lump_file == lmp_path
        assert bsp.lump_data(0) == lmp_data
        # The data is written into the map.
        embedded = BSP(bsp.to_bytes())
        assert embedded.lump_data(0) == lmp_data
        assert bsp.entities is not None
        assert bsp.entities[0]['message'] == 'from the lump file'

    (tmp_path / 'test_l_1.lmp').write_bytes(LMP_HEADER.pack(LMP_HEADER.size, 5, 0, 0, 1))
    with BSP(path) as bsp, pytest.raises(ValueError):
        bsp.lump_entry(1)


def test_titanfall_lump_files(tmp_path: Path) -> None:
    """Titanfall lump files hold just the data."""
    path = tmp_path / 'mp_test.bsp'
    path.write_bytes(build_map(MapType.TITANFALL, {}))
    (tmp_path / 'mp_test.bsp.0002.bsp_lump').write_bytes(b'raw lump data')
    with BSP(path) as bsp:
        assert bsp.map_type is MapType.TITANFALL
        assert bsp.lump_data(2) == b'raw lump data'
        assert bsp.lump_data(3) == b''


def test_quake_textures() -> None:
    """Quake textures are decoded with their pixel data."""
    tex = write_fixedstr('wall', 16) + struct.pack('<6I', 16, 16, 40, 0, 0, 0) + b'\x07' * 4
    data = struct.pack('<2i', 1, 8) + tex
    bsp = make_dummy(MapType.QUAKE, {2: data})
    textures = bsp.textures
    assert isinstance(textures, QuakeTextures)
    assert textures[0].name == 'wall'
    textures[0].name = 'wall2'
    reread = BSP(bsp.to_bytes())
    assert isinstance(reread.textures, QuakeTextures)
    assert reread.textures[0].name == 'wall2'
    assert reread.textures.mip_data == [b'\x07' * 4]


def test_numlist_lump_replace() -> None:
    """Index tables can be modified and saved."""
    bsp = make_dummy(MapType.QUAKE2, {12: struct.pack('<2i', 5, -6)})
    assert bsp.surf_edges == [5, -6]
    assert isinstance(bsp.surf_edges, NumList)
    bsp.surf_edges.append(7)
    reread = BSP(bsp.to_bytes())
    assert reread.surf_edges == [5, -6, 7]
