"""The BSP container, which reads the directory and decodes lumps on demand.

Each lump is exposed as an attribute. The first access reads and decodes the
lump, and later accesses return the same object, so modifications are kept until
the map is saved. Lumps which do not exist in the map's dialect are ``None``.
"""
from typing import (
    Any, Callable, ClassVar, Dict, Generic, List, Optional, Tuple, Type, TypeVar, Union,
    overload,
)
from pathlib import Path
import os

from bsptools import AtomicWriter, StringPath, logger
from bsptools.binformat import compress_lzma, decompress_lzma, xor_crypt
from bsptools.const import (
    COD, COD2, COD4, FAKK, GAME_LUMP_STATIC_PROPS, MOHAA, NIGHTFIRE, QUAKE1, QUAKE2, QUAKE3,
    RAVEN, SOURCE, SOURCE_BASE, STEF2, VINDICTUS, MapType, UnsupportedMapTypeError,
    lump_count,
)
from bsptools.entities import Entities
from bsptools.fields import Record, lookup_reference
from bsptools.header import Header, LumpInfo
from bsptools.lump import GameLump, Lump, NumList, NumType, RawLump
from bsptools.records import (
    Brush, BrushSide, Cubemap, Displacement, DisplacementVertex, Edge, Face, Leaf,
    LODTerrain, Model, Node, Patch, Plane, QuakeTextures, StaticModel, StaticProps,
    Texture, TextureData, TextureInfo, TextureStrings, Vertex,
)
from bsptools.source import ByteSource, BytesSource, FileSource
from bsptools.visibility import Visibility


__all__ = ['BSP', 'ParsedLump', 'RecordLump', 'NumListLump']

LOGGER = logger.get_logger(__name__)
T = TypeVar('T')
RecordT = TypeVar('RecordT', bound=Record)
Locator = Callable[[MapType], Optional[int]]


def _table(*entries: Tuple[frozenset, int]) -> Locator:
    """Build a function which finds a lump index from ``(dialects, index)`` pairs."""
    def locate(map_type: MapType) -> Optional[int]:
        """Return the index of this lump, or None if absent."""
        for maps, index in entries:
            if map_type in maps:
                return index
        return None
    return locate


class ParsedLump(Generic[T]):
    """Allows access to decoded versions of lumps.

    When accessed, the lump is located in the directory, read from the byte
    source and decoded, then cached. The owning class defines
    ``_lmp_read_<name>(data, version)`` to do the decoding.
    """
    __name__: str

    def __init__(self, locate: Locator) -> None:
        self.locate = locate
        self.__name__ = ''
        self._read: Optional[Callable[..., T]] = None

    def __set_name__(self, owner: Type['BSP'], name: str) -> None:
        self.__name__ = name
        self.__objclass__ = owner
        self._read = getattr(owner, '_lmp_read_' + name, None)
        # noinspection PyProtectedMember
        owner._descriptors[name] = self

    def __repr__(self) -> str:
        return f'<bsptools.BSP.{self.__name__} member>'

    @overload
    def __get__(self, instance: None, owner: Optional[type] = None) -> 'ParsedLump[T]': ...
    @overload
    def __get__(self, instance: 'BSP', owner: Optional[type] = None) -> Optional[T]: ...

    def __get__(
        self, instance: Optional['BSP'], owner: Optional[type] = None,
    ) -> Union['ParsedLump[T]', Optional[T]]:
        """Decode the lump, or return the cached version."""
        if instance is None:  # Accessed on the class.
            return self
        index = self.locate(instance.map_type)
        if index is None:
            return None
        # noinspection PyProtectedMember
        return instance._load(index, self)  # type: ignore[no-any-return]

    def __set__(self, instance: 'BSP', value: T) -> None:
        """Replace the decoded lump."""
        index = self.locate(instance.map_type)
        if index is None:
            raise UnsupportedMapTypeError(instance.map_type, self.__name__)
        # noinspection PyProtectedMember
        instance._lumps[index] = value

    def read(self, bsp: 'BSP', data: bytes, version: int) -> T:
        """Decode the data for this lump."""
        if self._read is None:
            raise TypeError(f'No reader defined for the "{self.__name__}" lump!')
        return self._read(bsp, data, version)


class RecordLump(ParsedLump[Lump[RecordT]]):
    """A lump made of fixed-size records. By default the record kind gives the lump index."""
    def __init__(self, record_type: Type[RecordT], locate: Optional[Locator] = None) -> None:
        super().__init__(locate if locate is not None else record_type.lump_index)
        self.record_type = record_type

    def read(self, bsp: 'BSP', data: bytes, version: int) -> Lump[RecordT]:
        """Slice the data into records."""
        return Lump(self.record_type, bsp.map_type, data, version, bsp=bsp)


class NumListLump(ParsedLump[NumList]):
    """An index table, whose integer width varies by dialect."""
    def __init__(self, *entries: Tuple[frozenset, int, NumType]) -> None:
        super().__init__(_table(*[(maps, index) for maps, index, _ in entries]))
        self.entries = entries

    def num_type(self, map_type: MapType) -> NumType:
        """Return the integer format used by this dialect."""
        for maps, _, num_type in self.entries:
            if map_type in maps:
                return num_type
        raise UnsupportedMapTypeError(map_type, self.__name__)

    def read(self, bsp: 'BSP', data: bytes, version: int) -> NumList:
        """Decode the integers."""
        return NumList(data, self.num_type(bsp.map_type), bsp=bsp)


_ALL_QUAKE2 = QUAKE1 | QUAKE2 | QUAKE3 | RAVEN | NIGHTFIRE | SOURCE


# noinspection PyMethodMayBeStatic
class BSP:
    """A BSP file, in any supported dialect.

    The source may be a filename, the bytes of the file, or any object
    implementing :py:class:`~bsptools.source.ByteSource`. If the map type is
    not provided, it is detected from the header.
    """
    # Lump name -> descriptor, filled in as the descriptors are defined.
    _descriptors: ClassVar[Dict[str, ParsedLump[Any]]] = {}

    map_type: MapType
    header: Header
    source: ByteSource
    filename: Optional[StringPath]

    def __init__(
        self,
        source: Union[StringPath, bytes, bytearray, ByteSource],
        map_type: Optional[MapType] = None,
    ) -> None:
        self.filename = None
        if source is None:
            raise TypeError('A BSP requires a filename, bytes, or byte source!')
        elif isinstance(source, (bytes, bytearray)):
            self.source = BytesSource(bytes(source))
        elif isinstance(source, (str, os.PathLike)):
            self.filename = source
            self.source = FileSource(source)
        else:
            self.source = source
        self.header = Header.read(self.source.read, map_type)
        self.map_type = self.header.map_type
        # Index -> decoded lump.
        self._lumps: Dict[int, Any] = {}
        self._static_props: Optional[StaticProps] = None
        # Index -> the descriptor which decodes it in this dialect.
        self._parsers: Dict[int, ParsedLump[Any]] = {}
        for parser in self._descriptors.values():
            index = parser.locate(self.map_type)
            if index is not None:
                self._parsers[index] = parser

    def __repr__(self) -> str:
        if self.filename is not None:
            return f'<BSP {self.map_type.name} {os.fspath(self.filename)!r}>'
        return f'<BSP {self.map_type.name}>'

    def close(self) -> None:
        """Close the underlying file, if any. It is reopened if lumps are read later."""
        if isinstance(self.source, FileSource):
            self.source.close()

    def __enter__(self) -> 'BSP':
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def lump_entry(self, index: int) -> LumpInfo:
        """Return the directory entry for a lump.

        Lump files next to the map take precedence over the entry in the header.

        :raises IndexError: if the index is past the number of lumps in this dialect.
        """
        info = self.header.lump_info(index)
        external = self.source.find_lump_file(index, self.map_type)
        if external is not None:
            LOGGER.debug('Lump {} is stored in "{}"', index, external.lump_file)
            return external
        return info

    def _stored_data(self, index: int) -> Tuple[LumpInfo, bytes]:
        """Read a lump as it is stored, only removing the encryption."""
        info = self.lump_entry(index)
        data = self.source.read_lump(info)
        if self.header.key and info.lump_file is None:
            data = xor_crypt(data, self.header.key, info.offset)
        return info, data

    def _decoded_data(self, index: int) -> Tuple[LumpInfo, bytes]:
        info, data = self._stored_data(index)
        if self.map_type in SOURCE and info.ident != 0:
            data = decompress_lzma(data)
        return info, data

    def lump_data(self, index: int) -> bytes:
        """Return the decrypted and decompressed bytes of a lump."""
        return self._decoded_data(index)[1]

    def _load(self, index: int, parser: ParsedLump[T]) -> T:
        """Return the cached lump, or decode it with this descriptor."""
        try:
            return self._lumps[index]  # type: ignore[no-any-return]
        except KeyError:
            pass
        info, data = self._decoded_data(index)
        LOGGER.debug('Load lump {} ({} bytes)', parser.__name__ or index, len(data))
        with logger.context(f'{self.map_type.name} lump {index}'):
            result = parser.read(self, data, info.version)
        self._lumps[index] = result
        return result

    def get(self, index: int) -> Any:
        """Return the decoded lump at an index.

        Lumps with no known structure in this dialect are returned as
        :py:class:`~bsptools.lump.RawLump`.

        :raises IndexError: if the index is past the number of lumps in this dialect.
        """
        try:
            return self._lumps[index]
        except KeyError:
            pass
        try:
            parser = self._parsers[index]
        except KeyError:
            info, data = self._decoded_data(index)
            result = RawLump(data, info.version)
            self._lumps[index] = result
            return result
        return self._load(index, parser)

    def is_loaded(self, index: int) -> bool:
        """Check whether a lump has already been decoded."""
        return index in self._lumps

    # Decoders for the more complex lumps.

    def _lmp_read_entities(self, data: bytes, version: int) -> Entities:
        return Entities.parse(data)

    def _lmp_read_textures(self, data: bytes, version: int) -> Any:
        if self.map_type in SOURCE:
            return TextureStrings.from_bytes(data)
        elif self.map_type in QUAKE1:
            return QuakeTextures(data, self.map_type, version, bsp=self)
        else:
            return Lump(Texture, self.map_type, data, version, bsp=self)

    def _lmp_read_visibility(self, data: bytes, version: int) -> Visibility:
        return Visibility(data, self.map_type, version, bsp=self)

    def _lmp_read_lightmaps(self, data: bytes, version: int) -> RawLump:
        return RawLump(data, version)

    def _lmp_read_game_lump(self, data: bytes, version: int) -> GameLump:
        return GameLump(data, self.map_type, version)

    entities: ParsedLump[Entities] = ParsedLump(_table(
        (_ALL_QUAKE2, 0), (FAKK | MOHAA, 14), (STEF2, 16),
        (COD, 29), (COD2, 37), (COD4, 39),
    ))
    planes = RecordLump(Plane)
    #: Texture names. For Source this is the texture string data, for Quake the miptex lump.
    textures: ParsedLump[Any] = ParsedLump(
        lambda map_type: 43 if map_type in SOURCE else Texture.lump_index(map_type)
    )
    #: Nightfire stores shader names in a second texture lump.
    materials = RecordLump(Texture, _table((NIGHTFIRE, 3)))
    vertices = RecordLump(Vertex)
    visibility: ParsedLump[Visibility] = ParsedLump(_table(
        (QUAKE2, 3), (QUAKE1 | SOURCE, 4), (NIGHTFIRE, 7), (FAKK | MOHAA, 15),
        (QUAKE3 | RAVEN, 16), (STEF2, 17), (COD, 28), (COD2, 36),
    ))
    nodes = RecordLump(Node)
    texture_info = RecordLump(TextureInfo)
    faces = RecordLump(Face)
    original_faces = RecordLump(Face, _table((SOURCE, 27)))
    lightmaps: ParsedLump[RawLump] = ParsedLump(_table(
        (COD | COD2 | COD4, 1), (MOHAA | STEF2 | FAKK, 2), (QUAKE2, 7),
        (QUAKE1 | SOURCE, 8), (NIGHTFIRE, 10), (QUAKE3 | RAVEN, 14),
    ))
    leaves = RecordLump(Leaf)
    edges = RecordLump(Edge)
    surf_edges = NumListLump(
        (QUAKE2, 12, NumType.INT32),
        (QUAKE1 | SOURCE, 13, NumType.INT32),
    )
    mark_surfaces = NumListLump(
        (QUAKE3 | RAVEN, 5, NumType.INT32),
        (FAKK | MOHAA, 7, NumType.INT32),
        (QUAKE2, 9, NumType.UINT16),
        (STEF2, 9, NumType.UINT32),
        (QUAKE1, 11, NumType.UINT16),
        (NIGHTFIRE, 12, NumType.UINT32),
        (VINDICTUS, 16, NumType.UINT32),
        (SOURCE_BASE, 16, NumType.UINT16),
    )
    mark_brushes = NumListLump(
        (QUAKE3 | RAVEN | MOHAA | FAKK, 6, NumType.UINT32),
        (STEF2, 8, NumType.UINT32),
        (QUAKE2, 10, NumType.UINT16),
        (NIGHTFIRE, 13, NumType.UINT32),
        (VINDICTUS, 17, NumType.UINT32),
        (SOURCE_BASE, 17, NumType.UINT16),
    )
    indices = NumListLump(
        (FAKK | MOHAA, 5, NumType.UINT32),
        (NIGHTFIRE, 6, NumType.UINT32),
        (STEF2, 7, NumType.UINT32),
        (QUAKE3 | RAVEN, 11, NumType.UINT32),
    )
    models = RecordLump(Model)
    brushes = RecordLump(Brush)
    brush_sides = RecordLump(BrushSide)
    texture_data = RecordLump(TextureData)
    displacements = RecordLump(Displacement)
    disp_verts = RecordLump(DisplacementVertex)
    cubemaps = RecordLump(Cubemap)
    #: Offsets into the texture strings, indexed by :py:attr:`TextureData.name_index`.
    texture_table = NumListLump((SOURCE, 44, NumType.INT32))
    displacement_triangles = NumListLump((SOURCE, 48, NumType.UINT16))
    static_models = RecordLump(StaticModel)
    lod_terrains = RecordLump(LODTerrain)
    patches = RecordLump(Patch)
    patch_verts = RecordLump(Vertex, _table((COD, 25)))
    game_lump: ParsedLump[GameLump] = ParsedLump(GameLump.lump_index)

    @property
    def static_props(self) -> Optional[StaticProps]:
        """The static props stored in the game lump, or None if the map has none."""
        if self._static_props is not None:
            return self._static_props
        game_lump = self.game_lump
        if game_lump is None or GAME_LUMP_STATIC_PROPS not in game_lump:
            return None
        info = game_lump[GAME_LUMP_STATIC_PROPS]
        data = game_lump.lump_data(GAME_LUMP_STATIC_PROPS)
        LOGGER.debug('Load static props v{} ({} bytes)', info.version, len(data))
        self._static_props = StaticProps(data, self.map_type, info.version, bsp=self)
        return self._static_props

    @static_props.setter
    def static_props(self, value: StaticProps) -> None:
        if GameLump.lump_index(self.map_type) is None:
            raise UnsupportedMapTypeError(self.map_type, 'StaticProps')
        self._static_props = value

    def texture_name(self, texture_data: TextureData) -> Optional[str]:
        """Look up the name of the texture used by a texture data record, via the texture table."""
        table = self.texture_table
        strings = self.textures
        if table is None or not isinstance(strings, TextureStrings):
            raise UnsupportedMapTypeError(self.map_type, 'Texture table')
        return strings.get_texture_at_offset(table[texture_data.name_index])

    def get_referenced_objects(self, record: Record, lump_name: str) -> List[Any]:
        """Fetch the range of objects a record refers to in another lump.

        The record must have a registered index and count for that lump. Records
        are returned as detached copies. Ranges are not checked ahead of time, an
        index past the end of the lump raises :external:py:class:`IndexError`.
        """
        if record is None or lump_name is None:
            raise TypeError('A record and lump name are required!')
        try:
            parser = self._descriptors[lump_name]
        except KeyError:
            raise ValueError(f'There is no "{lump_name}" lump!') from None
        first_name, count_name = lookup_reference(type(record), lump_name)
        first = getattr(record, first_name)
        count = getattr(record, count_name)
        target = parser.__get__(self, type(self))
        if target is None:
            raise UnsupportedMapTypeError(self.map_type, lump_name)
        if first < 0 or count <= 0:
            return []
        result = []
        for i in range(first, first + count):
            item = target[i]
            result.append(item.copy() if isinstance(item, Record) else item)
        return result

    def _encode(self, lump: Any) -> bytes:
        """Produce the data for a decoded lump."""
        if isinstance(lump, Entities):
            # Source keeps outputs as regular keyvalues.
            return lump.to_bytes(self.map_type in SOURCE)
        return bytes(lump.to_bytes())

    def to_bytes(self) -> bytes:
        """Regenerate the file, with modified lumps re-encoded.

        Lumps which were never decoded are copied as stored. Source lumps which
        were LZMA compressed are compressed again. Lumps in external files are
        written into the map.
        """
        map_type = self.map_type
        if map_type in COD4:
            indices: Tuple[int, ...] = tuple(dict.fromkeys(self.header.indices()))
        else:
            indices = tuple(range(lump_count(map_type)))

        game_index = GameLump.lump_index(map_type)
        game_lump: Optional[GameLump] = None
        if game_index is not None:
            game_lump = self._lumps.get(game_index)
            if game_lump is None and self.lump_entry(game_index).length > 0:
                game_lump = self.game_lump
            if self._static_props is not None:
                props = self._static_props
                if game_lump is None:
                    game_lump = GameLump.build(map_type, {})
                game_lump = game_lump.with_lump(
                    GAME_LUMP_STATIC_PROPS, props.to_bytes(), props.version,
                )

        entries: Dict[int, LumpInfo] = {}
        contents: Dict[int, bytes] = {}
        for index in indices:
            if index == game_index and game_lump is not None:
                data = game_lump.to_bytes()
                entries[index] = LumpInfo(length=len(data), version=game_lump.version)
            elif index in self._lumps:
                lump = self._lumps[index]
                info = self.lump_entry(index)
                data = self._encode(lump)
                ident = 0
                # Compressed lumps stay compressed, with the ident holding the full size.
                if map_type in SOURCE and info.ident != 0 and data:
                    ident = len(data)
                    data = compress_lzma(data)
                entries[index] = LumpInfo(
                    length=len(data),
                    version=getattr(lump, 'version', info.version),
                    ident=ident,
                )
            else:
                info, data = self._stored_data(index)
                entries[index] = LumpInfo(
                    length=len(data), version=info.version, ident=info.ident,
                )
            contents[index] = data

        header = Header.build(
            map_type, entries,
            prefix=self.header.prefix,
            revision=self.header.revision,
            map_revision=self.header.map_revision,
            key=self.header.key,
        )
        if game_index is not None and game_lump is not None:
            contents[game_index] = game_lump.rebased(header.lump_info(game_index).offset)

        body = bytearray()
        for index in indices:
            body += contents[index]
            if map_type in COD4:
                body += bytes(-len(body) % 4)
        LOGGER.debug('Built {} map, {} lumps, {} bytes', map_type.name, len(indices), len(header) + len(body))
        if header.key:
            return xor_crypt(header.data + bytes(body), header.key, 0)
        return header.data + bytes(body)

    def save(self, filename: Optional[StringPath] = None) -> None:
        """Write the BSP back into the given file, or the file it was read from.

        The file is written atomically. Afterwards, lumps which were not loaded
        are read from the new file.
        """
        if filename is None:
            filename = self.filename
        if filename is None:
            raise ValueError('No filename provided for a BSP read from memory!')
        data = self.to_bytes()
        self.close()
        with AtomicWriter(filename, is_bytes=True) as file:
            file.write(data)
        LOGGER.info('Saved "{}" ({} bytes)', os.fspath(filename), len(data))
        self.filename = filename
        self.source = FileSource(Path(filename))
        self.header = Header.read(self.source.read, self.map_type)
