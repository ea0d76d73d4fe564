"""Helpers for building synthetic maps in tests."""
from typing import Mapping, Optional

from bsptools.binformat import xor_crypt
from bsptools.bsp import BSP
from bsptools.const import COD4, MapType, lump_count
from bsptools.header import Header, LumpInfo


def build_map(
    map_type: MapType,
    lumps: Mapping[int, bytes],
    *,
    versions: Optional[Mapping[int, int]] = None,
    key: bytes = b'',
) -> bytes:
    """Produce the bytes of a file holding these lumps, all others empty."""
    if versions is None:
        versions = {}
    if map_type in COD4:
        order = list(lumps)
    else:
        order = list(range(lump_count(map_type)))
    entries = {
        index: LumpInfo(length=len(lumps.get(index, b'')), version=versions.get(index, 0))
        for index in order
    }
    header = Header.build(map_type, entries, key=key)
    body = bytearray()
    for index in order:
        body += lumps.get(index, b'')
        if map_type in COD4:
            body += bytes(-len(body) % 4)
    if key:
        return xor_crypt(header.data + bytes(body), key, 0)
    return header.data + bytes(body)


def make_dummy(
    map_type: MapType = MapType.SOURCE20,
    lumps: Optional[Mapping[int, bytes]] = None,
    **kwargs: object,
) -> BSP:
    """Create a BSP from synthetic data, so lumps can be decoded."""
    return BSP(build_map(map_type, lumps or {}, **kwargs))  # type: ignore[arg-type]
