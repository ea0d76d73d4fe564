"""Read and write BSP map files from Quake, Source, Call of Duty and related engines."""
from typing import TYPE_CHECKING, Generic, Optional, Type, TypeVar, Union, overload
from typing_extensions import Literal, TypeAlias
from pathlib import Path
from types import TracebackType
import io
import itertools as _itertools
import os as _os


__version__: str
if not TYPE_CHECKING:
    try:
        from ._version import __version__
    except ImportError:
        __version__ = '<unknown>'

__all__ = [
    '__version__',
    'BSP', 'MapType', 'Entity', 'Entities', 'EntityConnection',
    'UnsupportedMapTypeError', 'InvalidBSPError', 'EntityParseError',
    'conv_int', 'StringPath', 'AtomicWriter',

    # Submodules:
    'binformat', 'bsp', 'const', 'entities', 'fields', 'header',  # pyright: ignore
    'logger', 'lump', 'math', 'records', 'source', 'visibility',  # pyright: ignore
]

ValT = TypeVar('ValT')
# Pathlike can only be subscripted in 3.9+
StringPath: TypeAlias = Union[str, '_os.PathLike[str]']


@overload
def conv_int(val: Union[int, float, str]) -> int: ...
@overload
def conv_int(val: Union[int, float, str], default: ValT) -> Union[ValT, int]: ...
def conv_int(val: Union[int, float, str], default: Union[ValT, int] = 0) -> Union[ValT, int]:
    """Converts a string to an integer, using a default if it fails."""
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


IOKindT = TypeVar('IOKindT', io.BufferedWriter, io.TextIOWrapper)


class AtomicWriter(Generic[IOKindT]):
    """Write to a temporary file, then replace the destination once complete.

    If an exception occurs inside the block the original file is untouched.
    Used by :py:meth:`BSP.save`.
    """
    filename: Path
    encoding: str
    _temp_name: Optional[Path]
    is_bytes: bool
    temp: Optional[IOKindT]

    @overload
    def __init__(
        self: 'AtomicWriter[io.BufferedWriter]', filename: StringPath,
        is_bytes: Literal[True],
    ) -> None: ...

    @overload
    def __init__(
        self: 'AtomicWriter[io.TextIOWrapper]', filename: StringPath,
        is_bytes: Literal[False] = False, encoding: str = 'utf8',
    ) -> None: ...

    def __init__(
        self,
        filename: StringPath,
        is_bytes: bool = False,
        encoding: str = 'utf8',
    ) -> None:
        self.filename = Path(filename)
        self.encoding = encoding
        self._temp_name = None
        self.is_bytes = is_bytes
        self.temp = None

    def _open_temp(self) -> IOKindT:
        self.filename.parent.mkdir(parents=True, exist_ok=True)
        for i in _itertools.count(start=1):
            self._temp_name = self.filename.with_name(f'{self.filename.name}.tmp_{i}')
            try:
                if self.is_bytes:
                    return self._temp_name.open('xb')  # type: ignore
                else:
                    return self._temp_name.open('xt', encoding=self.encoding)  # type: ignore
            except FileExistsError:
                pass
        raise AssertionError('unreachable')

    def __enter__(self) -> IOKindT:
        self.temp = self._open_temp()
        return self.temp.__enter__()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        tback: Optional[TracebackType],
    ) -> None:
        if self.temp is not None:
            self.temp.__exit__(exc_type, exc_value, tback)
            self.temp = None
        if self._temp_name is None:
            return None
        if exc_type is not None:
            try:
                self._temp_name.unlink()
            except FileNotFoundError:
                pass
        else:
            self._temp_name.replace(self.filename)
        return None


# Shortcuts for the most-used classes. These are imported last, so the
# helpers above are defined before submodules import them.
# isort: off
from bsptools.const import MapType, UnsupportedMapTypeError
from bsptools.header import InvalidBSPError
from bsptools.entities import Entity, Entities, EntityConnection, EntityParseError
from bsptools.bsp import BSP
