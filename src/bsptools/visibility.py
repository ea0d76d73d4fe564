"""The potentially visible set, recording which clusters of a map can see each other.

Each cluster has a row of bits, one per cluster. Most dialects run-length encode
these rows, with a zero byte followed by the number of zero bytes it represents.
"""
from typing import TYPE_CHECKING, FrozenSet, Optional, Set, Union
import math
import struct
import weakref

from bsptools.const import COD12, QUAKE2, QUAKE3, RAVEN, SOURCE, UBERTOOLS, MapType
from bsptools.records import Leaf

if TYPE_CHECKING:
    from bsptools.bsp import BSP


__all__ = ['Visibility', 'runlength_decode', 'runlength_encode']

#: Dialects with a cluster count and offset table at the start.
OFFSET_TABLE: FrozenSet[MapType] = QUAKE2 | SOURCE
#: Dialects storing uncompressed rows of a fixed size, after a count and row size.
FIXED_ROWS: FrozenSet[MapType] = QUAKE3 | UBERTOOLS | COD12 | RAVEN


def runlength_decode(
    data: Union[bytes, bytearray],
    start: int = 0, max_clusters: int = -1,
) -> bytearray:
    """Decode a run-length encoded visibility row.

    If ``max_clusters`` is not given, this decodes until the end of the data.
    """
    result = bytearray()
    pos = start
    size = len(data)
    view = memoryview(data)
    if max_clusters == -1:
        ret_bytes = math.inf
    else:
        ret_bytes = math.ceil(max_clusters / 8)
    while pos < size and len(result) < ret_bytes:
        try:
            zero_ind = data.index(0x00, pos)
        except ValueError:
            result += view[pos:]
            break
        result += view[pos:zero_ind]
        # The byte afterward is how many zeros to insert.
        if zero_ind + 1 < size:
            result += bytes(data[zero_ind + 1])
        pos = zero_ind + 2

    if max_clusters == -1:
        return result
    # The last bulk copy may have gone past the row.
    return result[:int(ret_bytes)]


def runlength_encode(data: Union[bytes, bytearray]) -> bytearray:
    """Run-length encode a visibility row."""
    result = bytearray()
    pos = 0
    size = len(data)
    view = memoryview(data)
    while pos < size:
        try:
            zero_ind = data.index(0x00, pos)
        except ValueError:
            result += view[pos:]
            break
        result += view[pos:zero_ind]
        zero_end = zero_ind
        while zero_end < size and data[zero_end] == 0x00:
            zero_end += 1
        # Runs longer than 255 need multiple sections.
        dist = zero_end - zero_ind
        while dist > 0:
            result.append(0x00)
            result.append(min(255, dist))
            dist -= 255
        pos = zero_end

    return result


class Visibility:
    """The visibility lump, queried in place.

    Rows are found differently depending on the dialect:

    * Quake and Nightfire leaves store the row offset directly, in place of a cluster.
    * Quake 2 and Source have a cluster count, followed by PVS and PAS row
      offsets for each cluster.
    * Quake 3 derived formats have a cluster count and the size of each row,
      then uncompressed rows.
    """
    map_type: MapType
    version: int
    data: bytearray

    def __init__(
        self,
        data: Union[bytes, bytearray],
        map_type: MapType,
        version: int = 0,
        *,
        bsp: Optional['BSP'] = None,
    ) -> None:
        if data is None:
            raise TypeError('Visibility data cannot be None!')
        self.data = bytearray(data)
        self.map_type = map_type
        self.version = version
        self._bsp = weakref.ref(bsp) if bsp is not None else None

    @property
    def bsp(self) -> Optional['BSP']:
        """The map this lump belongs to, if any."""
        return self._bsp() if self._bsp is not None else None

    def __repr__(self) -> str:
        return f'<Visibility {self.map_type.name}, {len(self.data)} bytes>'

    def _int_at(self, offset: int) -> int:
        if offset + 4 > len(self.data):
            return -1
        [value] = struct.unpack_from('<i', self.data, offset)
        return value  # type: ignore[no-any-return]

    @property
    def num_clusters(self) -> int:
        """The number of clusters, or -1 if this dialect does not store it."""
        if self.map_type in OFFSET_TABLE or self.map_type in FIXED_ROWS:
            return self._int_at(0)
        return -1

    @property
    def cluster_size(self) -> int:
        """For uncompressed rows, the number of bytes in each. Otherwise -1."""
        if self.map_type in FIXED_ROWS:
            return self._int_at(4)
        return -1

    @property
    def compressed(self) -> bool:
        """Whether rows are run-length encoded."""
        return self.map_type not in FIXED_ROWS and self.map_type is not MapType.NIGHTFIRE

    def pvs_offset(self, cluster: int) -> int:
        """The offset of the visibility row for a cluster, for dialects with an offset table."""
        if self.map_type in OFFSET_TABLE and cluster >= 0:
            return self._int_at(4 + cluster * 8)
        return -1

    def pas_offset(self, cluster: int) -> int:
        """The offset of the audibility row for a cluster, for dialects with an offset table."""
        if self.map_type in OFFSET_TABLE and cluster >= 0:
            return self._int_at(8 + cluster * 8)
        return -1

    def row_offset(self, leaf_or_cluster: Union[Leaf, int]) -> int:
        """Find the start of the visibility row for a leaf or cluster.

        For Quake and Nightfire the value itself is the offset. Returns -1 if the
        leaf has no visibility data.
        """
        if isinstance(leaf_or_cluster, Leaf):
            cluster = leaf_or_cluster.cluster
        else:
            cluster = leaf_or_cluster
        if cluster < 0:
            return -1
        if self.map_type in OFFSET_TABLE:
            return self.pvs_offset(cluster)
        elif self.map_type in FIXED_ROWS:
            return 8 + cluster * self.cluster_size
        else:
            return cluster

    def row_clusters(self) -> int:
        """The number of clusters in each row, or -1 if that is not known.

        Quake and Nightfire do not store this, but have a row for every leaf
        after the first if the lump belongs to a map.
        """
        count = self.num_clusters
        if count >= 0 or self.map_type in OFFSET_TABLE or self.map_type in FIXED_ROWS:
            return count
        bsp = self.bsp
        if bsp is None or bsp.leaves is None:
            return -1
        # Leaf 0 is the shared solid leaf, which has no row.
        return max(0, len(bsp.leaves) - 1)

    def can_see(self, leaf_or_cluster: Union[Leaf, int], other: int, count: int = -1) -> bool:
        """Check if the cluster at ``other`` is potentially visible from a leaf or cluster.

        Bit 0 of the row is the first cluster. Decoding stops at the end of the
        row, which holds ``count`` clusters. This defaults to :py:meth:`row_clusters`.
        """
        if other < 0:
            return False
        offset = self.row_offset(leaf_or_cluster)
        if offset < 0:
            return False
        if count < 0:
            count = self.row_clusters()
        if count >= 0 and other >= count:
            return False
        data = self.data
        if self.map_type in FIXED_ROWS:
            end = min(len(data), offset + self.cluster_size)
        else:
            end = len(data)
        compressed = self.compressed
        bit = 0
        pos = offset
        while pos < end:
            byte = data[pos]
            if byte == 0 and compressed:
                if pos + 1 >= len(data):
                    break
                bit += 8 * data[pos + 1]
                pos += 2
                if bit > other:
                    return False
                continue
            if other < bit + 8:
                return (byte >> (other - bit)) & 1 != 0
            bit += 8
            pos += 1
        return False

    def visible_clusters(self, leaf_or_cluster: Union[Leaf, int], count: int = -1) -> Set[int]:
        """Return every cluster potentially visible from a leaf or cluster.

        The count defaults to :py:meth:`row_clusters`. If the lump is not part of
        a map, dialects which do not store it require the count to be passed.
        """
        if count < 0:
            count = self.row_clusters()
        if count < 0:
            raise ValueError(f'The cluster count must be provided for {self.map_type.name} maps!')
        offset = self.row_offset(leaf_or_cluster)
        if offset < 0:
            return set()
        if self.compressed:
            row = runlength_decode(self.data, offset, count)
        else:
            row = self.data[offset:offset + math.ceil(count / 8)]
        return {
            cluster for cluster in range(min(count, 8 * len(row)))
            if row[cluster >> 3] & (1 << (cluster & 7))
        }

    def to_bytes(self) -> bytes:
        """Return the lump data."""
        return bytes(self.data)
