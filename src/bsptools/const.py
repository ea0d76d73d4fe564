"""Map dialects, the layout families they belong to, and related constants."""
from typing import Dict, Final, FrozenSet, Optional
from enum import Enum


__all__ = [
    'MapType', 'UnsupportedMapTypeError', 'lump_count',
    'QUAKE1', 'QUAKE2', 'QUAKE3', 'RAVEN', 'COD', 'COD2', 'COD4', 'COD12', 'COD_ALL',
    'STEF2', 'MOHAA', 'FAKK', 'UBERTOOLS', 'ID_TECH3', 'NIGHTFIRE',
    'SOURCE', 'SOURCE_BASE', 'VINDICTUS', 'TITANFALL',
]


class MapType(Enum):
    """The dialect a BSP file was written in.

    This selects every byte layout decision, in combination with the
    per-lump version numbers.
    """
    UNDEFINED = 'undefined'

    QUAKE = 'quake'
    GOLDSRC = 'goldsrc'  #: Half-Life 1, same structures as Quake.
    BLUESHIFT = 'blueshift'  #: Half-Life: Blue Shift.
    NIGHTFIRE = 'nightfire'  #: James Bond 007: Nightfire.

    QUAKE2 = 'quake2'
    DAIKATANA = 'daikatana'
    SIN = 'sin'
    SOF = 'sof'  #: Soldier of Fortune.

    QUAKE3 = 'quake3'
    ET = 'et'  #: Wolfenstein: Enemy Territory.
    RAVEN = 'raven'  #: Jedi Outcast, Jedi Academy, Soldier of Fortune 2.

    STEF2 = 'stef2'  #: Star Trek Elite Force 2.
    STEF2_DEMO = 'stef2_demo'
    MOHAA = 'mohaa'  #: Medal of Honor: Allied Assault.
    MOHAA_DEMO = 'mohaa_demo'
    MOHAA_BT = 'mohaa_bt'  #: Medal of Honor: Spearhead / Breakthrough.
    FAKK2 = 'fakk2'  #: Heavy Metal: FAKK2.
    ALICE = 'alice'  #: American McGee's Alice.

    COD = 'cod'  #: Call of Duty.
    COD_DEMO = 'cod_demo'
    COD2 = 'cod2'
    COD4 = 'cod4'

    SOURCE17 = 'source17'
    SOURCE18 = 'source18'
    SOURCE19 = 'source19'
    SOURCE20 = 'source20'
    SOURCE21 = 'source21'
    SOURCE22 = 'source22'
    SOURCE23 = 'source23'
    SOURCE27 = 'source27'
    L4D2 = 'l4d2'  #: Left 4 Dead 2, which reorders directory entries.
    VINDICTUS = 'vindictus'
    DMOMAM = 'dmomam'  #: Dark Messiah of Might and Magic.
    TACTICAL_INTERVENTION = 'tactical_intervention'  #: Encrypted Source maps.

    TITANFALL = 'titanfall'

    @property
    def is_source(self) -> bool:
        """Check if this is any of the Source engine dialects."""
        return self in SOURCE


QUAKE1: FrozenSet[MapType] = frozenset({MapType.QUAKE, MapType.GOLDSRC, MapType.BLUESHIFT})
NIGHTFIRE: FrozenSet[MapType] = frozenset({MapType.NIGHTFIRE})
QUAKE2: FrozenSet[MapType] = frozenset({
    MapType.QUAKE2, MapType.DAIKATANA, MapType.SIN, MapType.SOF,
})
QUAKE3: FrozenSet[MapType] = frozenset({MapType.QUAKE3, MapType.ET})
RAVEN: FrozenSet[MapType] = frozenset({MapType.RAVEN})
STEF2: FrozenSet[MapType] = frozenset({MapType.STEF2, MapType.STEF2_DEMO})
MOHAA: FrozenSet[MapType] = frozenset({MapType.MOHAA, MapType.MOHAA_DEMO, MapType.MOHAA_BT})
FAKK: FrozenSet[MapType] = frozenset({MapType.FAKK2, MapType.ALICE})
#: Ritual's engine branch, which adds a revision number to the header.
UBERTOOLS: FrozenSet[MapType] = STEF2 | MOHAA | FAKK
#: Formats sharing the Quake 3 face/vertex structures.
ID_TECH3: FrozenSet[MapType] = QUAKE3 | RAVEN | UBERTOOLS
COD: FrozenSet[MapType] = frozenset({MapType.COD, MapType.COD_DEMO})
COD2: FrozenSet[MapType] = frozenset({MapType.COD2})
COD4: FrozenSet[MapType] = frozenset({MapType.COD4})
COD12: FrozenSet[MapType] = COD | COD2
COD_ALL: FrozenSet[MapType] = COD | COD2 | COD4
VINDICTUS: FrozenSet[MapType] = frozenset({MapType.VINDICTUS})
#: Source dialects using the standard Valve structures, excluding Vindictus.
SOURCE_BASE: FrozenSet[MapType] = frozenset({
    MapType.SOURCE17, MapType.SOURCE18, MapType.SOURCE19, MapType.SOURCE20,
    MapType.SOURCE21, MapType.SOURCE22, MapType.SOURCE23, MapType.SOURCE27,
    MapType.L4D2, MapType.DMOMAM, MapType.TACTICAL_INTERVENTION,
})
SOURCE: FrozenSet[MapType] = SOURCE_BASE | VINDICTUS
TITANFALL: FrozenSet[MapType] = frozenset({MapType.TITANFALL})

_LUMP_COUNTS: Dict[MapType, int] = {
    **dict.fromkeys(QUAKE1, 15),
    MapType.QUAKE2: 16,
    MapType.DAIKATANA: 16,
    MapType.SIN: 20,
    MapType.SOF: 22,
    **dict.fromkeys(QUAKE3, 17),
    MapType.RAVEN: 18,
    MapType.NIGHTFIRE: 18,
    **dict.fromkeys(FAKK, 20),
    **dict.fromkeys(MOHAA, 28),
    **dict.fromkeys(STEF2, 30),
    **dict.fromkeys(COD, 31),
    MapType.COD2: 39,
    MapType.COD4: 55,
    **dict.fromkeys(SOURCE, 64),
    MapType.TITANFALL: 128,
}


class UnsupportedMapTypeError(ValueError):
    """Raised when a lump or record kind has no layout in a dialect (or lump version)."""
    map_type: MapType
    kind: str
    version: Optional[int]

    def __init__(self, map_type: MapType, kind: str, version: Optional[int] = None) -> None:
        self.map_type = map_type
        self.kind = kind
        self.version = version
        if version is None:
            super().__init__(f'{kind} is not supported for {map_type.name} maps!')
        else:
            super().__init__(f'{kind} version {version} is not supported for {map_type.name} maps!')


def lump_count(map_type: MapType) -> int:
    """Return the number of lumps in the directory of a dialect."""
    try:
        return _LUMP_COUNTS[map_type]
    except KeyError:
        raise UnsupportedMapTypeError(map_type, 'Lump directory') from None


# Tags used in the Source game lump directory, stored as little-endian ints.
GAME_LUMP_STATIC_PROPS: Final = 'sprp'
GAME_LUMP_DETAIL_PROPS: Final = 'dprp'
