"""The record kinds stored in BSP lumps, with their layout in each dialect.

Each field lists the dialect groups which store it, most specific first.
Fields a dialect lacks read as ``-1`` (indices and counts), NaN (geometry),
or ``False``/``0``/``''`` (flags and names).
"""
from typing import FrozenSet, Iterator, List, Optional, Tuple, Union
from struct import Struct
import struct

import attrs

from bsptools import logger
from bsptools.binformat import read_array, read_fixedstr, write_fixedstr
from bsptools.const import (
    COD, COD2, COD4, COD12, COD_ALL, FAKK, ID_TECH3, MOHAA, NIGHTFIRE, QUAKE1, QUAKE2,
    QUAKE3, RAVEN, SOURCE, SOURCE_BASE, STEF2, TITANFALL, UBERTOOLS, VINDICTUS, MapType,
    UnsupportedMapTypeError,
)
from bsptools.fields import (
    ArrayField, At, BoolField, ColorField, FloatField, IntField, Record, Sized, StrField,
    Vec2Field, VecField,
)
from bsptools.lump import Lump, NumList, NumType
from bsptools.math import Plane as PlaneValue, Vec3, Vec4


__all__ = [
    'Face', 'Leaf', 'Node', 'Brush', 'BrushSide', 'Model', 'Edge', 'Plane', 'Vertex',
    'TextureInfo', 'TextureData', 'Texture', 'Displacement', 'DisplacementVertex',
    'SubNeighbor', 'CornerNeighbors', 'Cubemap', 'StaticProp', 'StaticModel', 'Patch',
    'LODTerrain', 'TextureStrings', 'QuakeTextures', 'StaticProps',
]

LOGGER = logger.get_logger(__name__)


def _only(*map_types: MapType) -> FrozenSet[MapType]:
    return frozenset(map_types)


ALL_MAPS: FrozenSet[MapType] = frozenset(MapType) - {MapType.UNDEFINED, *TITANFALL}
SOURCE17 = _only(MapType.SOURCE17)
SOF = _only(MapType.SOF)
DMOMAM = _only(MapType.DMOMAM)


class Face(Record):
    """A face of the world geometry."""
    LUMP_INDEX = [
        (FAKK | MOHAA, 3), (STEF2, 5), (QUAKE2 | COD, 6), (COD2, 7), (QUAKE1 | SOURCE, 7),
        (NIGHTFIRE, 9), (RAVEN | QUAKE3, 13),
    ]
    LENGTHS = [
        Sized(COD12, 16), Sized(QUAKE1 | {MapType.QUAKE2, MapType.DAIKATANA}, 20),
        Sized(MapType.SIN, 36), Sized(SOF, 40), Sized(NIGHTFIRE, 48),
        Sized(SOURCE17, 104), Sized(VINDICTUS, 76, versions={2}), Sized(VINDICTUS, 72),
        Sized(SOURCE_BASE, 56), Sized(QUAKE3, 104), Sized(FAKK | MOHAA, 108),
        Sized(STEF2, 132), Sized(RAVEN, 148),
    ]
    REFERENCES = {
        'surf_edges': ('first_edge', 'num_edges'),
        'vertices': ('first_vertex', 'num_vertices'),
        'indices': ('first_index', 'num_indices'),
    }

    plane = IntField(
        At(SOURCE17, 'H', 32),
        At(NIGHTFIRE | VINDICTUS, 'i', 0),
        At(QUAKE1 | QUAKE2 | SOURCE, 'H', 0),
    )
    side = IntField(
        At(QUAKE1 | QUAKE2, 'H', 2),
        At(VINDICTUS, 'B', 4),
        At(SOURCE17, 'B', 34),
        At(SOURCE, 'B', 2),
    )
    first_edge = IntField(
        At(VINDICTUS, 'i', 8),
        At(SOURCE17, 'i', 36),
        At(QUAKE1 | QUAKE2 | SOURCE, 'i', 4),
    )
    num_edges = IntField(
        At(VINDICTUS, 'i', 12),
        At(SOURCE17, 'H', 40),
        At(QUAKE1 | QUAKE2 | SOURCE, 'H', 8),
    )
    texture = IntField(
        At(COD12, 'h', 0),
        At(ID_TECH3, 'i', 0),
        At(QUAKE1 | QUAKE2, 'H', 10),
        At(NIGHTFIRE, 'i', 24),
    )
    first_vertex = IntField(
        At(COD12 | NIGHTFIRE, 'i', 4),
        At(ID_TECH3, 'i', 12),
    )
    num_vertices = IntField(
        At(COD12, 'h', 8),
        At(NIGHTFIRE, 'i', 8),
        At(ID_TECH3, 'i', 16),
    )
    material = IntField(At(NIGHTFIRE, 'i', 28))
    texture_info = IntField(
        At(VINDICTUS, 'i', 16),
        At(SOURCE17, 'H', 42),
        At(NIGHTFIRE, 'i', 32),
        At(SOURCE, 'H', 10),
    )
    displacement = IntField(
        At(VINDICTUS, 'i', 20),
        At(SOURCE17, 'h', 44),
        At(SOURCE, 'h', 12),
    )
    #: For split faces, the index of the face in the original faces lump.
    original = IntField(
        At(VINDICTUS, 'i', 60, versions={2}),
        At(VINDICTUS, 'i', 56),
        At(SOURCE17, 'i', 96),
        At(SOURCE, 'i', 44),
    )
    flags = IntField(
        At(ID_TECH3, 'i', 8),
        At(NIGHTFIRE, 'i', 20),
        default=0,
    )
    first_index = IntField(
        At(COD12 | NIGHTFIRE, 'i', 12),
        At(ID_TECH3, 'i', 20),
    )
    num_indices = IntField(
        At(COD12, 'h', 10),
        At(NIGHTFIRE, 'i', 16),
        At(ID_TECH3, 'i', 24),
    )
    unknown = IntField(At(NIGHTFIRE, 'i', 36))
    light_styles = IntField(At(NIGHTFIRE, 'i', 40))
    light_maps = IntField(At(NIGHTFIRE, 'i', 44))
    patch_size = Vec2Field(At(ID_TECH3, '2i', 96))


class Leaf(Record):
    """A convex region of space at the bottom of the BSP tree."""
    LUMP_INDEX = [
        (RAVEN | QUAKE3, 4), (MOHAA | FAKK | QUAKE2, 8), (STEF2 | QUAKE1 | SOURCE, 10),
        (NIGHTFIRE, 11), (COD, 21), (COD2, 26), (COD4, 28),
    ]
    LENGTHS = [
        Sized(COD4, 24),
        Sized(_only(MapType.SOURCE18, MapType.SOURCE19, MapType.VINDICTUS), 56),
        Sized(QUAKE1 | {MapType.QUAKE2, MapType.SIN}, 28),
        Sized(SOURCE_BASE | {MapType.SOF, MapType.DAIKATANA}, 32),
        Sized(COD12, 36),
        Sized(NIGHTFIRE | QUAKE3 | FAKK | STEF2 | RAVEN, 48),
        Sized(MOHAA, 64),
    ]
    REFERENCES = {
        'mark_brushes': ('first_mark_brush', 'num_mark_brushes'),
        'mark_surfaces': ('first_mark_face', 'num_mark_faces'),
        'static_models': ('first_static_model', 'num_static_models'),
    }

    contents = IntField(At(QUAKE1 | QUAKE2 | SOURCE | NIGHTFIRE, 'i', 0), default=0)
    #: The cluster this leaf is in. For Quake, this is the offset into the visibility lump.
    cluster = IntField(
        At(ID_TECH3 | COD_ALL, 'i', 0),
        At(QUAKE1 | NIGHTFIRE | VINDICTUS, 'i', 4),
        At(QUAKE2 | SOURCE, 'h', 4),
    )
    area = IntField(
        At(ID_TECH3 | COD12, 'i', 4),
        At(QUAKE2, 'h', 6),
        At(SOURCE_BASE, 'B', 6),
    )
    flags = IntField(
        At(VINDICTUS, 'i', 8),
        At(SOURCE_BASE, 'B', 7),
        default=0,
    )
    mins = VecField(
        At(ID_TECH3, '3i', 8),
        At(SOF, '3h', 10),
        At(VINDICTUS, '3i', 12),
        At(NIGHTFIRE, '3f', 8),
        At(QUAKE1 | QUAKE2 | SOURCE, '3h', 8),
    )
    maxs = VecField(
        At(ID_TECH3, '3i', 20),
        At(SOF, '3h', 16),
        At(VINDICTUS, '3i', 24),
        At(NIGHTFIRE, '3f', 20),
        At(QUAKE1 | QUAKE2 | SOURCE, '3h', 14),
    )
    first_mark_brush = IntField(
        At(COD4, 'i', 12),
        At(COD12, 'i', 16),
        At(SOF, 'H', 26),
        At(VINDICTUS, 'i', 44),
        At(QUAKE2 | SOURCE, 'H', 24),
        At(ID_TECH3 | NIGHTFIRE, 'i', 40),
    )
    num_mark_brushes = IntField(
        At(COD4, 'i', 16),
        At(COD12, 'i', 20),
        At(SOF, 'H', 28),
        At(VINDICTUS, 'i', 48),
        At(QUAKE2 | SOURCE, 'H', 26),
        At(ID_TECH3 | NIGHTFIRE, 'i', 44),
    )
    first_mark_face = IntField(
        At(SOF, 'H', 22),
        At(VINDICTUS, 'i', 36),
        At(ID_TECH3 | NIGHTFIRE, 'i', 32),
        At(QUAKE1 | QUAKE2 | SOURCE, 'H', 20),
    )
    num_mark_faces = IntField(
        At(SOF, 'H', 24),
        At(VINDICTUS, 'i', 40),
        At(ID_TECH3 | NIGHTFIRE, 'i', 36),
        At(QUAKE1 | QUAKE2 | SOURCE, 'H', 22),
    )
    ambient_water = IntField(At(QUAKE1, 'B', 24))
    ambient_sky = IntField(At(QUAKE1, 'B', 25))
    ambient_slime = IntField(At(QUAKE1, 'B', 26))
    ambient_lava = IntField(At(QUAKE1, 'B', 27))
    first_static_model = IntField(At(MOHAA, 'i', 56))
    num_static_models = IntField(At(MOHAA, 'i', 60))
    first_patch_index = IntField(At(COD, 'i', 8))
    num_patch_indices = IntField(At(COD, 'i', 12))


class Node(Record):
    """A node of the BSP tree.

    Negative children refer to leaves, with ``-1 - child`` being the leaf index.
    """
    LUMP_INDEX = [
        (RAVEN | QUAKE3, 3), (QUAKE2, 4), (QUAKE1 | SOURCE, 5), (NIGHTFIRE, 8),
        (FAKK | MOHAA, 9), (STEF2, 11), (COD, 20), (COD2, 25),
    ]
    LENGTHS = [
        Sized(QUAKE1, 24), Sized(QUAKE2, 28), Sized(SOURCE_BASE, 32), Sized(VINDICTUS, 48),
        Sized(ID_TECH3 | COD12 | NIGHTFIRE, 36),
    ]
    REFERENCES = {
        'faces': ('first_face', 'num_faces'),
    }

    plane = IntField(At(ALL_MAPS, 'i', 0))
    child1 = IntField(
        At(QUAKE1, 'h', 4),
        At(ALL_MAPS, 'i', 4),
    )
    child2 = IntField(
        At(QUAKE1, 'h', 6),
        At(ALL_MAPS, 'i', 8),
    )
    mins = VecField(
        At(QUAKE1, '3h', 8),
        At(NIGHTFIRE, '3f', 12),
        At(QUAKE2 | SOURCE_BASE, '3h', 12),
        At(ID_TECH3 | COD_ALL | VINDICTUS, '3i', 12),
    )
    maxs = VecField(
        At(QUAKE1, '3h', 14),
        At(NIGHTFIRE, '3f', 24),
        At(QUAKE2 | SOURCE_BASE, '3h', 18),
        At(ID_TECH3 | COD_ALL | VINDICTUS, '3i', 24),
    )
    first_face = IntField(
        At(QUAKE1, 'H', 20),
        At(VINDICTUS, 'i', 36),
        At(QUAKE2 | SOURCE_BASE, 'H', 24),
    )
    num_faces = IntField(
        At(QUAKE1, 'H', 22),
        At(VINDICTUS, 'i', 40),
        At(QUAKE2 | SOURCE_BASE, 'H', 26),
    )
    area = IntField(At(SOURCE_BASE, 'h', 28))

    @staticmethod
    def leaf_index(child: int) -> Optional[int]:
        """If a child refers to a leaf, return the leaf index. Otherwise return None."""
        return -1 - child if child < 0 else None


_BRUSH_Q3 = MOHAA | RAVEN | QUAKE3 | FAKK | {MapType.STEF2_DEMO}


class Brush(Record):
    """A convex solid, defined by a set of brush sides."""
    LUMP_INDEX = [
        (COD, 4), (COD2, 6), (COD4 | RAVEN | QUAKE3, 8), (FAKK, 11), (MOHAA, 12),
        (STEF2, 13), (QUAKE2, 14), (NIGHTFIRE, 15), (SOURCE, 18),
    ]
    LENGTHS = [
        Sized(COD_ALL, 4),
        Sized(QUAKE2 | SOURCE | NIGHTFIRE | ID_TECH3, 12),
    ]
    REFERENCES = {
        'brush_sides': ('first_side', 'num_sides'),
    }

    first_side = IntField(
        At(_only(MapType.STEF2) | NIGHTFIRE, 'i', 4),
        At(QUAKE2 | SOURCE | _BRUSH_Q3, 'i', 0),
    )
    num_sides = IntField(
        At(COD_ALL, 'h', 0),
        At(MapType.STEF2, 'i', 0),
        At(NIGHTFIRE, 'i', 8),
        At(QUAKE2 | SOURCE | _BRUSH_Q3, 'i', 4),
    )
    contents = IntField(
        At(QUAKE2 | SOURCE, 'i', 8),
        At(NIGHTFIRE, 'i', 0),
        default=0,
    )
    texture = IntField(
        At(COD_ALL, 'h', 2),
        At(_BRUSH_Q3 | {MapType.STEF2}, 'i', 8),
    )


class BrushSide(Record):
    """One of the planes bounding a brush."""
    LUMP_INDEX = [
        (COD, 3), (COD2 | COD4, 5), (RAVEN | QUAKE3, 9), (FAKK, 10), (MOHAA, 11),
        (STEF2, 12), (QUAKE2, 15), (NIGHTFIRE, 16), (SOURCE, 19),
    ]
    LENGTHS = [
        Sized(_only(MapType.QUAKE2, MapType.DAIKATANA, MapType.SOF), 4),
        Sized(COD_ALL | NIGHTFIRE | QUAKE3 | STEF2 | SOURCE_BASE | FAKK | {MapType.SIN}, 8),
        Sized(MOHAA | RAVEN, 12),
        Sized(VINDICTUS, 16),
    ]

    plane = IntField(
        At(_only(MapType.STEF2) | NIGHTFIRE, 'i', 4),
        At(QUAKE2 | SOURCE_BASE, 'H', 0),
        At(_BRUSH_Q3 | COD_ALL | VINDICTUS, 'i', 0),
    )
    #: Call of Duty stores the plane distance directly.
    distance = FloatField(At(COD_ALL, 'f', 0))
    texture = IntField(
        At(MapType.STEF2, 'i', 0),
        At(QUAKE2 | SOURCE_BASE, 'h', 2),
        At(_BRUSH_Q3 | COD_ALL | VINDICTUS, 'i', 4),
    )
    face = IntField(
        At(NIGHTFIRE, 'i', 0),
        At(RAVEN, 'i', 8),
    )
    displacement = IntField(
        At(VINDICTUS, 'i', 8),
        At(SOURCE_BASE, 'h', 4),
    )
    bevel = BoolField(
        At(VINDICTUS, 'B', 12),
        At(SOURCE_BASE, 'B', 6),
    )
    thin = BoolField(At(SOURCE_BASE, 'B', 7))


_MODEL_Q2 = QUAKE2 | (SOURCE - DMOMAM)


class Model(Record):
    """A brush model. Model 0 is the world, the others are brush entities."""
    LUMP_INDEX = [
        (RAVEN | QUAKE3, 7), (MOHAA | FAKK | QUAKE2, 13), (QUAKE1 | NIGHTFIRE | SOURCE, 14),
        (STEF2, 15), (COD, 27), (COD2, 35), (COD4, 37),
    ]
    LENGTHS = [
        Sized(ID_TECH3, 40),
        Sized(DMOMAM, 52),
        Sized(_MODEL_Q2 | COD_ALL, 48),
        Sized(NIGHTFIRE, 56),
        Sized(QUAKE1, 64),
    ]
    REFERENCES = {
        'leaves': ('first_leaf', 'num_leaves'),
        'brushes': ('first_brush', 'num_brushes'),
        'faces': ('first_face', 'num_faces'),
        'mark_surfaces': ('first_leaf_patch', 'num_leaf_patches'),
    }

    mins = VecField(At(ALL_MAPS, '3f', 0))
    maxs = VecField(At(ALL_MAPS, '3f', 12))
    origin = VecField(At(QUAKE1 | QUAKE2 | SOURCE, '3f', 24))
    head_node = IntField(
        At(DMOMAM, 'i', 40),
        At(QUAKE1 | _MODEL_Q2, 'i', 36),
    )
    first_leaf = IntField(At(NIGHTFIRE, 'i', 40))
    num_leaves = IntField(At(NIGHTFIRE, 'i', 44))
    first_face = IntField(
        At(DMOMAM, 'i', 44),
        At(QUAKE1, 'i', 56),
        At(_MODEL_Q2, 'i', 40),
        At(NIGHTFIRE, 'i', 48),
        At(ID_TECH3 | COD, 'i', 24),
    )
    num_faces = IntField(
        At(DMOMAM, 'i', 48),
        At(QUAKE1, 'i', 60),
        At(_MODEL_Q2, 'i', 44),
        At(NIGHTFIRE, 'i', 52),
        At(ID_TECH3 | COD, 'i', 28),
    )
    first_brush = IntField(
        At(ID_TECH3, 'i', 32),
        At(COD_ALL, 'i', 40),
    )
    num_brushes = IntField(
        At(ID_TECH3, 'i', 36),
        At(COD_ALL, 'i', 44),
    )
    first_leaf_patch = IntField(At(COD, 'i', 32))
    num_leaf_patches = IntField(At(COD, 'i', 36))


class Edge(Record):
    """A pair of vertex indices."""
    LUMP_INDEX = [(QUAKE2, 11), (QUAKE1 | SOURCE, 12)]
    LENGTHS = [
        Sized(VINDICTUS, 8),
        Sized(QUAKE1 | QUAKE2 | SOURCE_BASE, 4),
    ]

    first_vertex = IntField(
        At(VINDICTUS, 'i', 0),
        At(QUAKE1 | QUAKE2 | SOURCE_BASE, 'H', 0),
    )
    second_vertex = IntField(
        At(VINDICTUS, 'i', 4),
        At(QUAKE1 | QUAKE2 | SOURCE_BASE, 'H', 2),
    )


_PLANE_TYPED = QUAKE1 | NIGHTFIRE | QUAKE2 | SOURCE


class Plane(Record):
    """A plane, used by nodes, faces and brush sides."""
    LUMP_INDEX = [
        (COD | RAVEN | QUAKE3, 2), (COD2 | COD4, 4), (_PLANE_TYPED | UBERTOOLS, 1),
    ]
    LENGTHS = [
        Sized(_PLANE_TYPED, 20),
        Sized(ID_TECH3 | COD_ALL, 16),
    ]

    normal = VecField(At(ALL_MAPS, '3f', 0))
    distance = FloatField(At(ALL_MAPS, 'f', 12))
    #: The axis the plane is closest to.
    type = IntField(At(_PLANE_TYPED, 'i', 16))

    def as_plane(self) -> PlaneValue:
        """Return the plane as a plain value."""
        return PlaneValue(self.normal, self.distance)


_VERT_Q3 = QUAKE3 | MOHAA | FAKK | COD_ALL


class Vertex(Record):
    """A vertex of the world geometry."""
    LUMP_INDEX = [
        (QUAKE2, 2), (QUAKE1 | SOURCE, 3), (MOHAA | FAKK | NIGHTFIRE, 4), (STEF2, 6),
        (COD, 7), (RAVEN | QUAKE3, 10),
    ]
    LENGTHS = [
        Sized(QUAKE1 | NIGHTFIRE | QUAKE2 | SOURCE, 12),
        Sized(_VERT_Q3, 44),
        Sized(STEF2, 48),
        Sized(RAVEN, 80),
    ]

    position = VecField(At(ALL_MAPS, '3f', 0))
    uv0 = Vec2Field(At(_VERT_Q3 | STEF2 | RAVEN, '2f', 12))
    #: The lightmap coordinates. Raven stores four, this is the first.
    uv1 = Vec2Field(At(_VERT_Q3 | STEF2 | RAVEN, '2f', 20))
    normal = VecField(
        At(RAVEN, '3f', 52),
        At(STEF2, '3f', 36),
        At(_VERT_Q3, '3f', 28),
    )
    color = ColorField(
        At(RAVEN, '4B', 64),
        At(STEF2, '4B', 32),
        At(_VERT_Q3, '4B', 40),
    )


class TextureInfo(Record):
    """Texture projection axes for a face."""
    LUMP_INDEX = [(QUAKE1 | SOURCE, 6), (NIGHTFIRE, 17)]
    LENGTHS = [
        Sized(NIGHTFIRE, 32), Sized(QUAKE1, 40), Sized(DMOMAM, 96), Sized(SOURCE, 72),
    ]

    s_axis = VecField(At(QUAKE1 | NIGHTFIRE | SOURCE, '3f', 0))
    s_shift = FloatField(At(QUAKE1 | NIGHTFIRE | SOURCE, 'f', 12))
    t_axis = VecField(At(QUAKE1 | NIGHTFIRE | SOURCE, '3f', 16))
    t_shift = FloatField(At(QUAKE1 | NIGHTFIRE | SOURCE, 'f', 28))
    lightmap_s_axis = VecField(At(SOURCE, '3f', 32))
    lightmap_s_shift = FloatField(At(SOURCE, 'f', 44))
    lightmap_t_axis = VecField(At(SOURCE, '3f', 48))
    lightmap_t_shift = FloatField(At(SOURCE, 'f', 60))
    flags = IntField(
        At(DMOMAM, 'i', 88),
        At(SOURCE, 'i', 64),
        At(QUAKE1, 'i', 36),
        default=0,
    )
    #: For Source, the index into the texture data lump.
    texture = IntField(
        At(DMOMAM, 'i', 92),
        At(SOURCE, 'i', 68),
        At(QUAKE1, 'i', 32),
    )

    @property
    def s_vector(self) -> Vec4:
        """The S axis with its shift as the fourth component."""
        axis = self.s_axis
        return Vec4(axis.x, axis.y, axis.z, self.s_shift)

    @s_vector.setter
    def s_vector(self, value: Vec4) -> None:
        self.s_axis = Vec3(value.x, value.y, value.z)
        self.s_shift = value.w

    @property
    def t_vector(self) -> Vec4:
        """The T axis with its shift as the fourth component."""
        axis = self.t_axis
        return Vec4(axis.x, axis.y, axis.z, self.t_shift)

    @t_vector.setter
    def t_vector(self, value: Vec4) -> None:
        self.t_axis = Vec3(value.x, value.y, value.z)
        self.t_shift = value.w


class TextureData(Record):
    """Source material information, referring to the texture string table."""
    LUMP_INDEX = [(SOURCE, 2)]
    LENGTHS = [Sized(SOURCE, 32)]

    reflectivity = VecField(At(SOURCE, '3f', 0))
    #: Index into the texture table, which gives the offset in the texture strings.
    name_index = IntField(At(SOURCE, 'i', 12))
    width = IntField(At(SOURCE, 'i', 16))
    height = IntField(At(SOURCE, 'i', 20))
    view_width = IntField(At(SOURCE, 'i', 24))
    view_height = IntField(At(SOURCE, 'i', 28))


_TEX_Q3 = ID_TECH3 | COD_ALL


class Texture(Record):
    """A texture or shader definition.

    Source maps store only names, see :py:class:`TextureStrings`.
    """
    LUMP_INDEX = [
        (COD_ALL | FAKK | MOHAA | STEF2, 0), (RAVEN | QUAKE3, 1), (QUAKE1 | NIGHTFIRE, 2),
        (QUAKE2, 5),
    ]
    LENGTHS = [
        Sized(QUAKE1, 40),
        Sized(NIGHTFIRE, 64),
        Sized(QUAKE3 | RAVEN | COD_ALL, 72),
        Sized(_only(MapType.QUAKE2, MapType.DAIKATANA, MapType.SOF) | STEF2 | FAKK, 76),
        Sized(MOHAA, 140),
        Sized(MapType.SIN, 180),
    ]

    name = StrField(
        At(QUAKE1, '16s', 0),
        At(NIGHTFIRE, '64s', 0),
        At(MapType.SIN, '64s', 36),
        At(QUAKE2, '32s', 40),
        At(_TEX_Q3, '64s', 0),
    )
    mask = StrField(At(MOHAA, '64s', 76), default='ignore')
    flags = IntField(
        At(QUAKE2, 'i', 32),
        At(_TEX_Q3, 'i', 64),
        default=0,
    )
    contents = IntField(At(_TEX_Q3, 'i', 68), default=0)
    s_axis = VecField(At(QUAKE2, '3f', 0))
    s_shift = FloatField(At(QUAKE2, 'f', 12))
    t_axis = VecField(At(QUAKE2, '3f', 16))
    t_shift = FloatField(At(QUAKE2, 'f', 28))
    width = IntField(At(QUAKE1, 'I', 16))
    height = IntField(At(QUAKE1, 'I', 20))
    #: The offsets of the 4 mip levels, relative to the start of this texture.
    mip_offsets = ArrayField(At(QUAKE1, '4I', 24))


@attrs.frozen
class SubNeighbor:
    """One half of the displacement bordering one edge of a displacement."""
    index: int  # -1 if none.
    orientation: int
    span: int
    neighbor_span: int


@attrs.frozen
class CornerNeighbors:
    """The displacements touching one corner of a displacement."""
    indices: Tuple[int, ...]
    count: int

    @property
    def neighbors(self) -> Tuple[int, ...]:
        """The valid indices."""
        return self.indices[:self.count]


_SUB_SOURCE = Struct('<hBBBx')
_SUB_VINDICTUS = Struct('<hhhh')
_CORNER_SOURCE = Struct('<4hBx')
_CORNER_VINDICTUS = Struct('<4ii')
_NEIGHBOR_START = 48


class Displacement(Record):
    """A Source displacement, subdividing a face into a heightmap."""
    LUMP_INDEX = [(SOURCE, 26)]
    LENGTHS = [
        Sized(VINDICTUS, 232),
        Sized(MapType.SOURCE22, 180),
        Sized(MapType.SOURCE23, 184),
        Sized(SOURCE_BASE, 176),
    ]
    REFERENCES = {
        'disp_verts': ('first_vertex', 'num_vertices'),
        'displacement_triangles': ('first_triangle', 'num_triangles'),
    }

    start_position = VecField(At(SOURCE, '3f', 0))
    first_vertex = IntField(At(SOURCE, 'i', 12))
    first_triangle = IntField(At(SOURCE, 'i', 16))
    power = IntField(At(SOURCE, 'i', 20))
    min_tesselation = IntField(At(SOURCE, 'i', 24))
    smoothing_angle = FloatField(At(SOURCE, 'f', 28))
    contents = IntField(At(SOURCE, 'i', 32), default=0)
    face = IntField(
        At(VINDICTUS, 'i', 36),
        At(SOURCE_BASE, 'H', 36),
    )
    lightmap_alpha_start = IntField(At(SOURCE, 'i', 40))
    lightmap_sample_position_start = IntField(At(SOURCE, 'i', 44))
    allowed_vertices = ArrayField(
        At(VINDICTUS, '10I', 192),
        At(MapType.SOURCE22, '10I', 140),
        At(MapType.SOURCE23, '10I', 144),
        At(SOURCE_BASE, '10I', 136),
    )

    @property
    def num_vertices(self) -> int:
        """The number of displacement vertices, computed from the power."""
        return (2 ** self.power + 1) ** 2

    @property
    def num_triangles(self) -> int:
        """The number of triangles, computed from the power."""
        return 2 * (2 ** self.power) ** 2

    def _neighbor_structs(self) -> Tuple[Struct, Struct]:
        if self.map_type is MapType.VINDICTUS:
            return _SUB_VINDICTUS, _CORNER_VINDICTUS
        return _SUB_SOURCE, _CORNER_SOURCE

    def _neighbor_pos(self, side: int, sub: int) -> int:
        if not (0 <= side < 4 and 0 <= sub < 2):
            raise IndexError(f'Invalid neighbor ({side}, {sub})!')
        st_sub, st_corner = self._neighbor_structs()
        return self.offset + _NEIGHBOR_START + (side * 2 + sub) * st_sub.size

    def _corner_pos(self, corner: int) -> int:
        if not 0 <= corner < 4:
            raise IndexError(f'Invalid corner {corner}!')
        st_sub, st_corner = self._neighbor_structs()
        return self.offset + _NEIGHBOR_START + 8 * st_sub.size + corner * st_corner.size

    @property
    def neighbors(self) -> List[Tuple[SubNeighbor, SubNeighbor]]:
        """The neighbours along each of the four edges, each split into two halves."""
        st_sub, _ = self._neighbor_structs()
        return [
            (
                SubNeighbor(*st_sub.unpack_from(self.lump.data, self._neighbor_pos(side, 0))),
                SubNeighbor(*st_sub.unpack_from(self.lump.data, self._neighbor_pos(side, 1))),
            )
            for side in range(4)
        ]

    def set_neighbor(self, side: int, sub: int, neighbor: SubNeighbor) -> None:
        """Replace one edge neighbour."""
        st_sub, _ = self._neighbor_structs()
        st_sub.pack_into(
            self.lump.data, self._neighbor_pos(side, sub),
            neighbor.index, neighbor.orientation, neighbor.span, neighbor.neighbor_span,
        )

    @property
    def corner_neighbors(self) -> List[CornerNeighbors]:
        """The neighbours touching each corner."""
        _, st_corner = self._neighbor_structs()
        result = []
        for corner in range(4):
            *indices, count = st_corner.unpack_from(self.lump.data, self._corner_pos(corner))
            result.append(CornerNeighbors(tuple(indices), count))
        return result

    def set_corner_neighbors(self, corner: int, neighbors: CornerNeighbors) -> None:
        """Replace the neighbours for one corner."""
        if len(neighbors.indices) != 4:
            raise ValueError(f'Corners have 4 neighbor slots, not {len(neighbors.indices)}!')
        _, st_corner = self._neighbor_structs()
        st_corner.pack_into(
            self.lump.data, self._corner_pos(corner),
            *neighbors.indices, neighbors.count,
        )


class DisplacementVertex(Record):
    """An offset of a displacement vertex from the base face."""
    LUMP_INDEX = [(SOURCE, 33)]
    LENGTHS = [Sized(SOURCE, 20)]

    normal = VecField(At(SOURCE, '3f', 0))
    distance = FloatField(At(SOURCE, 'f', 12))
    alpha = FloatField(At(SOURCE, 'f', 16))

    @property
    def offset_vector(self) -> Vec3:
        """The normal scaled by the distance."""
        normal = self.normal
        return Vec3(normal.x * self.distance, normal.y * self.distance, normal.z * self.distance)


class Cubemap(Record):
    """A cubemap sample position."""
    LUMP_INDEX = [(SOURCE, 42)]
    LENGTHS = [Sized(SOURCE, 16)]

    origin = VecField(At(SOURCE, '3i', 0))
    size = IntField(At(SOURCE, 'i', 12))


_PROP_LENGTHS = {4: 56, 5: 60, 6: 64, 7: 68, 8: 68, 9: 72, 10: 76}


class StaticProp(Record):
    """A static prop, stored in the ``sprp`` game lump."""
    LENGTHS = [
        Sized(SOURCE, length, versions={version})
        for version, length in _PROP_LENGTHS.items()
    ]

    origin = VecField(At(SOURCE, '3f', 0))
    angles = VecField(At(SOURCE, '3f', 12))
    dictionary_entry = IntField(At(SOURCE, 'h', 24))
    solidity = IntField(At(SOURCE, 'B', 30), default=0)
    flags = IntField(At(SOURCE, 'B', 31), default=0)
    skin = IntField(At(SOURCE, 'i', 32), default=0)
    min_fade = FloatField(At(SOURCE, 'f', 36))
    max_fade = FloatField(At(SOURCE, 'f', 40))
    forced_fade_scale = FloatField(At(SOURCE, 'f', 56, versions=range(5, 11)), default=1.0)
    #: Only present in The Ship and Bloody Good Time.
    targetname = StrField(At(SOURCE, '128s', 60, versions={5}, lengths={188}))


class StaticModel(Record):
    """A MoHAA static model."""
    LUMP_INDEX = [(MOHAA, 25)]
    LENGTHS = [Sized(MOHAA, 164)]
    REFERENCES = {
        'vertices': ('first_vertex', 'num_vertices'),
    }

    name = StrField(At(MOHAA, '128s', 0))
    origin = VecField(At(MOHAA, '3f', 128))
    angles = VecField(At(MOHAA, '3f', 140))
    scale = FloatField(At(MOHAA, 'f', 152))
    first_vertex = IntField(At(MOHAA, 'i', 156))
    num_vertices = IntField(At(MOHAA, 'h', 160))


class Patch(Record):
    """A Call of Duty curved surface or triangle soup.

    The meaning of most fields depends on :py:attr:`patch_type`: ``0`` is a grid of
    control points, ``1`` is a list of vertices and indices.
    """
    LUMP_INDEX = [(COD, 24)]
    LENGTHS = [Sized(COD, 16)]
    REFERENCES = {
        'patch_verts': ('first_vertex', 'num_vertices'),
    }

    shader = IntField(At(COD, 'h', 0))
    patch_type = IntField(At(COD, 'h', 2))
    _word4 = IntField(At(COD, 'h', 4))
    _word6 = IntField(At(COD, 'h', 6))
    _int8 = IntField(At(COD, 'i', 8))
    _int12 = IntField(At(COD, 'i', 12))

    @property
    def dimensions(self) -> Tuple[int, int]:
        """For grids, the number of control points on each axis."""
        if self.patch_type == 0:
            return self._word4, self._word6
        return -1, -1

    @dimensions.setter
    def dimensions(self, value: Tuple[int, int]) -> None:
        if self.patch_type == 0:
            self._word4, self._word6 = value

    @property
    def flags(self) -> int:
        """For grids, the patch flags."""
        return self._int8 if self.patch_type == 0 else 0

    @flags.setter
    def flags(self, value: int) -> None:
        if self.patch_type == 0:
            self._int8 = value

    @property
    def first_vertex(self) -> int:
        """The first vertex in the patch vertices lump."""
        return self._int12 if self.patch_type == 0 else self._int8

    @first_vertex.setter
    def first_vertex(self, value: int) -> None:
        if self.patch_type == 0:
            self._int12 = value
        else:
            self._int8 = value

    @property
    def num_vertices(self) -> int:
        """The number of vertices. For grids this is computed from the dimensions."""
        if self.patch_type == 0:
            return self._word4 * self._word6
        return self._word4

    @num_vertices.setter
    def num_vertices(self, value: int) -> None:
        if self.patch_type != 0:
            self._word4 = value

    @property
    def first_index(self) -> int:
        """For triangle soups, the first index."""
        return -1 if self.patch_type == 0 else self._int12

    @first_index.setter
    def first_index(self, value: int) -> None:
        if self.patch_type != 0:
            self._int12 = value

    @property
    def num_indices(self) -> int:
        """For triangle soups, the number of indices."""
        return -1 if self.patch_type == 0 else self._word6

    @num_indices.setter
    def num_indices(self, value: int) -> None:
        if self.patch_type != 0:
            self._word6 = value


class LODTerrain(Record):
    """A MoHAA terrain patch."""
    LUMP_INDEX = [(MOHAA, 22)]
    LENGTHS = [Sized(MOHAA, 388)]

    flags = IntField(At(MOHAA, 'B', 0), default=0)
    scale = IntField(At(MOHAA, 'B', 1))
    lightmap_coords = ArrayField(At(MOHAA, '2B', 2))
    tex_coords = ArrayField(At(MOHAA, '8f', 4))
    x = IntField(At(MOHAA, 'b', 36))
    y = IntField(At(MOHAA, 'b', 37))
    base_z = IntField(At(MOHAA, 'h', 38))
    texture = IntField(At(MOHAA, 'H', 40))
    lightmap = IntField(At(MOHAA, 'h', 42))
    vertex_flags = ArrayField(At(MOHAA, '126h', 52))
    height_map = ArrayField(At(MOHAA, '81B', 304))


class TextureStrings(List[str]):
    """The Source texture string data lump: null-terminated names, packed back to back.

    Texture data records refer to names by byte offset, via the texture table.
    """
    @classmethod
    def from_bytes(cls, data: bytes) -> 'TextureStrings':
        """Split the lump into names. Bytes after the last terminator are ignored."""
        if data is None:
            raise TypeError('Texture string data cannot be None!')
        result = cls()
        start = 0
        while True:
            end = data.find(b'\0', start)
            if end == -1:
                break
            result.append(bytes(data[start:end]).decode('ascii', 'surrogateescape'))
            start = end + 1
        return result

    def get_texture_at_offset(self, offset: int) -> Optional[str]:
        """Return the first name starting at or after this byte offset.

        If the offset is past the end, None is returned.
        """
        current = 0
        for name in self:
            if current >= offset:
                return name
            current += len(name.encode('ascii', 'surrogateescape')) + 1
        return None

    def offset_of(self, name: str) -> int:
        """Return the byte offset of a name, compared case-insensitively. If not found, return -1."""
        folded = name.casefold()
        current = 0
        for existing in self:
            if existing.casefold() == folded:
                return current
            current += len(existing.encode('ascii', 'surrogateescape')) + 1
        return -1

    def offsets(self) -> Iterator[int]:
        """Yield the offset of every name."""
        current = 0
        for name in self:
            yield current
            current += len(name.encode('ascii', 'surrogateescape')) + 1

    def to_bytes(self) -> bytes:
        """Return the lump data."""
        return b''.join(name.encode('ascii', 'surrogateescape') + b'\0' for name in self)


QUAKE_MIPTEX_SIZE = 40


class QuakeTextures(Lump[Texture]):
    """The Quake miptex lump, an offset table followed by textures and their pixel data.

    The texture headers are records in this lump. The pixel data following each
    is kept alongside and written back after its header. Missing textures
    (offset ``-1``) have None for their pixel data.
    """
    mip_data: List[Optional[bytes]]

    def __init__(self, data: bytes, map_type: MapType, version: int = 0, **kwargs: object) -> None:
        if data is None:
            raise TypeError('Texture data cannot be None!')
        count = struct.unpack_from('<i', data, 0)[0] if len(data) >= 4 else 0
        offsets = read_array('<i', data[4:4 + 4 * max(count, 0)])
        ends = sorted({off for off in offsets if off >= 0} | {len(data)})
        headers = bytearray()
        self.mip_data = []
        for off in offsets:
            if off < 0:
                headers += bytes(QUAKE_MIPTEX_SIZE)
                self.mip_data.append(None)
                continue
            end = next(pos for pos in ends if pos > off) if off < len(data) else off
            header = bytes(data[off:off + QUAKE_MIPTEX_SIZE])
            headers += header + bytes(QUAKE_MIPTEX_SIZE - len(header))
            self.mip_data.append(bytes(data[off + QUAKE_MIPTEX_SIZE:end]))
        super().__init__(Texture, map_type, headers, version, **kwargs)  # type: ignore[arg-type]

    def __delitem__(self, index: Union[int, slice]) -> None:
        if isinstance(index, slice):
            for i in sorted(range(*index.indices(len(self))), reverse=True):
                del self[i]
            return
        index = self._norm_index(index)
        super().__delitem__(index)
        del self.mip_data[index]

    def insert(self, index: int, record: Texture) -> None:
        """Insert a texture header, with no pixel data."""
        count = len(self)
        super().insert(index, record)
        if index < 0:
            index = max(0, index + count)
        self.mip_data.insert(min(index, count), b'')

    def add_blank(self) -> Texture:
        """Append a blank texture, with no pixel data."""
        self.mip_data.append(b'')
        return super().add_blank()

    def to_bytes(self) -> bytes:
        """Rebuild the offset table and texture data."""
        count = len(self)
        table = bytearray(struct.pack('<i', count))
        body = bytearray()
        base = 4 + 4 * count
        for i, mips in enumerate(self.mip_data):
            if mips is None:
                table += struct.pack('<i', -1)
                continue
            table += struct.pack('<i', base + len(body))
            pos = i * self.struct_length
            body += self.data[pos:pos + self.struct_length]
            body += mips
        return bytes(table + body)


class StaticProps(Lump[StaticProp]):
    """The static prop game lump: a model dictionary, the leaves each prop is in, then the props."""
    dictionary: List[str]
    leaves: NumList
    #: Vindictus version 6 stores scales for each prop, kept as raw 16-byte entries.
    scales: List[bytes]

    def __init__(
        self,
        data: bytes,
        map_type: MapType,
        version: int = 0,
        **kwargs: object,
    ) -> None:
        if data is None:
            raise TypeError('Static prop data cannot be None!')
        if map_type not in SOURCE:
            raise UnsupportedMapTypeError(map_type, 'StaticProps')
        self.dictionary = []
        self.leaves = NumList(b'', NumType.UINT16)
        self.scales = []
        struct_length: Optional[int] = None
        props = b''
        if len(data) > 0:
            [dict_count] = struct.unpack_from('<i', data, 0)
            offset = 4
            for _ in range(dict_count):
                self.dictionary.append(read_fixedstr(data, offset, 128))
                offset += 128
            [leaf_count] = struct.unpack_from('<i', data, offset)
            offset += 4
            self.leaves = NumList(data[offset:offset + 2 * leaf_count], NumType.UINT16)
            offset += 2 * leaf_count
            if map_type is MapType.VINDICTUS and version == 6:
                [scale_count] = struct.unpack_from('<i', data, offset)
                offset += 4
                for _ in range(scale_count):
                    self.scales.append(bytes(data[offset:offset + 16]))
                    offset += 16
            [prop_count] = struct.unpack_from('<i', data, offset)
            offset += 4
            props = data[offset:]
            if prop_count > 0:
                struct_length = len(props) // prop_count
                LOGGER.debug(
                    'Static props v{}: {} props of {} bytes', version, prop_count, struct_length,
                )
        if struct_length is None:
            struct_length = StaticProp.length_for(map_type, version)
        super().__init__(
            StaticProp, map_type, props, version,
            struct_length=struct_length, **kwargs,  # type: ignore[arg-type]
        )

    def model_name(self, prop: StaticProp) -> str:
        """Look up the model used by a prop."""
        return self.dictionary[prop.dictionary_entry]

    def to_bytes(self) -> bytes:
        """Rebuild the lump."""
        out = bytearray(struct.pack('<i', len(self.dictionary)))
        for name in self.dictionary:
            out += write_fixedstr(name, 128)
        out += struct.pack('<i', len(self.leaves))
        out += self.leaves.to_bytes()
        if self.map_type is MapType.VINDICTUS and self.version == 6:
            out += struct.pack('<i', len(self.scales))
            for scale in self.scales:
                out += scale
        out += struct.pack('<i', len(self))
        out += self.data
        return bytes(out)
