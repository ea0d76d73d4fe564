"""
Helpers for binary layouts, expanding on :external:mod:`struct`'s functionality.

Everything in a BSP is little-endian, so the helpers here default to that.
"""
from typing import (
    IO, Any, Final, List, Mapping, Tuple, Union,
)
from struct import Struct
import functools
import lzma

from bsptools import logger


__all__ = [
    'SIZES', 'struct_read', 'read_nullstr', 'read_fixedstr', 'write_fixedstr',
    'read_array', 'xor_crypt',
    'compress_lzma', 'decompress_lzma',
]

LOGGER = logger.get_logger(__name__)

SIZES: Final[Mapping[str, int]] = {
    fmt: Struct('<' + fmt).size
    for fmt in 'bBhHiIqQfd'
}
LZMA_DIC_MIN: Final = (1 << 12)
ST_LZMA_SOURCE: Final = Struct('<4sIIbI')
# The options Source uses for compressed lumps.
LZMA_FILT: Final = {
    'id': lzma.FILTER_LZMA1,
    'dict_size': 1 << 24,
    'lc': 3,
    'lp': 0,
    'pb': 2,
}
_cached_struct = functools.lru_cache()(Struct)


def struct_read(fmt: Union[Struct, str], file: IO[bytes]) -> Tuple[Any, ...]:
    """Read a structure from the file, automatically computing the required number of bytes."""
    if not isinstance(fmt, Struct):
        fmt = _cached_struct(fmt)
    return fmt.unpack(file.read(fmt.size))


def read_nullstr(data: bytes, pos: int = 0, encoding: str = 'ascii') -> str:
    """Read a null-terminated string from a buffer, starting at ``pos``.

    If no terminator is present the rest of the buffer is used.
    """
    end = data.find(b'\0', pos)
    if end == -1:
        end = len(data)
    return bytes(data[pos:end]).decode(encoding, 'replace')


def read_fixedstr(data: bytes, pos: int, size: int, encoding: str = 'ascii') -> str:
    """Read a string stored in a fixed-size, null-padded field."""
    return read_nullstr(bytes(data[pos:pos + size]), 0, encoding)


def write_fixedstr(text: str, size: int, encoding: str = 'ascii') -> bytes:
    """Encode a string into a fixed-size null-padded field, truncating if required.

    The last byte is always kept as a terminator.
    """
    raw = text.encode(encoding)[:size - 1]
    return raw + bytes(size - len(raw))


def read_array(fmt: Union[str, Struct], data: bytes) -> List[int]:
    """Read a buffer containing a stream of integers.

    The format string should be one of the integer format characters, optionally prefixed by an
    endianness indicator. As many integers as possible will then be read from the data.
    """
    if isinstance(fmt, Struct):
        fmt = fmt.format

    if len(fmt) == 2:
        endianness = fmt[0]
        fmt = fmt[1]
    else:
        endianness = '<'
    try:
        item_size = SIZES[fmt]
    except KeyError:
        raise ValueError(f'Unknown format character {fmt!r}!') from None
    count = len(data) // item_size
    return list(Struct(endianness + fmt * count).unpack_from(data))


def xor_crypt(data: bytes, key: bytes, start: int = 0) -> bytes:
    """XOR data with a repeating key, where ``start`` is the file position of ``data[0]``.

    Applying this twice with the same arguments gives back the original data.
    An empty key leaves the data untouched.
    """
    if not key or not data:
        return bytes(data)
    key_len = len(key)
    return bytes(
        byte ^ key[(i + start) % key_len]
        for i, byte in enumerate(data)
    )


def decompress_lzma(data: bytes) -> bytes:
    """Decompress a Source ``LZMA`` lump, or return the data unchanged if it is not compressed."""
    if data[:4] != b'LZMA':
        return data
    (sig, uncomp_size, comp_size, props, dict_size) = ST_LZMA_SOURCE.unpack_from(data)

    if props >= (9 * 5 * 5):
        raise ValueError("Incorrect LZMA properties")
    lc = props % 9
    props //= 9
    pb = props // 5
    lp = props % 5
    if dict_size < LZMA_DIC_MIN:
        dict_size = LZMA_DIC_MIN

    filt = {
        'id': lzma.FILTER_LZMA1,
        'dict_size': dict_size,
        'lc': lc,
        'lp': lp,
        'pb': pb,
    }
    decomp = lzma.LZMADecompressor(lzma.FORMAT_RAW, None, filters=[filt])
    # Valve omits the end marker, so the decompressor is left incomplete.
    res = decomp.decompress(memoryview(data)[ST_LZMA_SOURCE.size:])

    if len(res) > uncomp_size:
        return res[:uncomp_size]
    elif len(res) < uncomp_size:
        LOGGER.warning(
            'Incorrect decompressed size. Got {:,} bytes, expected {:,} bytes.',
            len(res), uncomp_size,
        )
    return res


def compress_lzma(data: bytes) -> bytes:
    """Compress data with the header and settings Source uses for BSP lumps."""
    comp_data = lzma.compress(data, lzma.FORMAT_RAW, filters=[LZMA_FILT])
    props = (LZMA_FILT['pb'] * 5 + LZMA_FILT['lp']) * 9 + LZMA_FILT['lc']
    return ST_LZMA_SOURCE.pack(
        b'LZMA',
        len(data),
        len(comp_data),
        props, LZMA_FILT['dict_size'],
    ) + comp_data
