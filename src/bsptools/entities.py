"""Parse and write the entity lump.

The lump is text: a sequence of ``{ }`` blocks, each holding ``"key" "value"``
lines. Some formats add nested blocks for brushes (kept as raw lines) or a
``connections`` block for entity I/O. Source maps store I/O inline, as values
with 4 or 6 separators.
"""
from typing import (
    Dict, Final, Iterable, Iterator, List, MutableMapping, Optional, Tuple, TypeVar,
    Union, overload,
)

from useful_types import SupportsKeysAndGetItem
import attrs

from bsptools import conv_int, logger
from bsptools.math import Vec3


__all__ = ['Entity', 'Entities', 'EntityConnection', 'EntityParseError', 'OUTPUT_SEP']

LOGGER = logger.get_logger(__name__)
T = TypeVar('T')
#: The separator used for connections after Left 4 Dead. Before then commas were used.
OUTPUT_SEP: Final = chr(27)
_BRACE_PREFIX: Final = ' \t\r\n'


class EntityParseError(ValueError):
    """Raised when the braces in an entity lump do not match."""
    ordinal: int
    depth: int

    def __init__(self, ordinal: int, depth: int) -> None:
        self.ordinal = ordinal
        self.depth = depth
        if depth < 0:
            super().__init__(f'Unexpected closing brace after entity #{ordinal}!')
        else:
            super().__init__(
                f'Brace mismatch in entity #{ordinal}: still {depth} levels deep '
                'at the end of the lump!'
            )


@attrs.define
class EntityConnection:
    """An I/O connection, firing an input on a target when an output occurs.

    The last two values only appear in Dark Messiah of Might and Magic.
    """
    name: str
    target: str
    action: str
    param: str = ''
    delay: float = 0.0
    fire_once: int = -1
    unknown0: str = ''
    unknown1: str = ''
    #: The separator the value was stored with, used when writing it inline.
    separator: str = attrs.field(default=',', eq=False)

    @classmethod
    def parse(cls, name: str, value: str) -> Optional['EntityConnection']:
        """Parse the value of a keyvalue as a connection.

        If it is not a valid connection, None is returned.
        """
        separator = OUTPUT_SEP if OUTPUT_SEP in value else ','
        parts = value.split(separator)
        if len(parts) not in (5, 7):
            return None
        try:
            delay = float(parts[3])
            fire_once = int(parts[4])
        except ValueError:
            return None
        return cls(
            name, parts[0], parts[1], parts[2],
            delay, fire_once,
            parts[5] if len(parts) > 5 else '',
            parts[6] if len(parts) > 6 else '',
            separator=separator,
        )

    def value_text(self, separator: Optional[str] = None, full: bool = False) -> str:
        """Produce the keyvalue form of this connection.

        The unknown values are only included if set, or ``full`` is true.
        """
        if separator is None:
            separator = self.separator
        parts = [self.target, self.action, self.param, f'{self.delay:g}', str(self.fire_once)]
        if full or self.unknown0 or self.unknown1:
            parts += [self.unknown0, self.unknown1]
        return separator.join(parts)


class Entity(MutableMapping[str, str]):
    """An entity: keyvalues, plus connections and brush blocks.

    Keys are case-insensitive, but keep the case they were first given with.
    Reading a missing key produces ``''``, or a default with ``ent[key, default]``.
    """
    connections: List[EntityConnection]
    brushes: List[List[str]]

    def __init__(
        self,
        keys: SupportsKeysAndGetItem[str, str] = {},  # noqa: B006
        connections: Iterable[EntityConnection] = (),
        brushes: Iterable[List[str]] = (),
    ) -> None:
        # Folded key -> (real key, value)
        self._keys: Dict[str, Tuple[str, str]] = {}
        self.connections = list(connections)
        self.brushes = [list(brush) for brush in brushes]
        for key in keys.keys():
            self[key] = keys[key]

    def __repr__(self) -> str:
        return f'<Entity {self.classname!r} {self.name!r}: {len(self)} keys>'

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        for key, value in self._keys.values():
            yield key

    def __contains__(self, key: object) -> bool:
        if isinstance(key, str):
            return key.casefold() in self._keys
        return False

    @overload
    def __getitem__(self, key: str) -> str: ...
    @overload
    def __getitem__(self, key: Tuple[str, T]) -> Union[str, T]: ...

    def __getitem__(self, key: Union[str, Tuple[str, T]]) -> Union[str, T]:
        """Look up a keyvalue.

        - This will return '' if the value is not present.
        - A tuple can be passed to specify a different default.
        """
        default: Union[str, T]
        if isinstance(key, tuple):
            key, default = key
        else:
            default = ''
        try:
            return self._keys[key.casefold()][1]
        except KeyError:
            return default

    @overload
    def get(self, key: str) -> str: ...
    @overload
    def get(self, key: str, default: Union[str, T]) -> Union[str, T]: ...

    def get(self, key: str, default: Union[str, T] = '') -> Union[str, T]:
        """Look up a keyvalue, returning a default if not present."""
        try:
            return self._keys[key.casefold()][1]
        except KeyError:
            return default

    def __setitem__(self, key: str, value: str) -> None:
        """Set a keyvalue. If a key differing only by case exists, it is overwritten."""
        folded = key.casefold()
        try:
            real_key = self._keys[folded][0]
        except KeyError:
            real_key = key
        self._keys[folded] = (real_key, str(value))

    def __delitem__(self, key: str) -> None:
        """Remove a keyvalue. Missing keys are ignored."""
        self._keys.pop(key.casefold(), None)

    def copy(self) -> 'Entity':
        """Duplicate this entity."""
        return Entity(
            dict(self.items()),
            [attrs.evolve(conn) for conn in self.connections],
            self.brushes,
        )

    @property
    def classname(self) -> str:
        """The entity's classname."""
        return self['classname']

    @classname.setter
    def classname(self, value: str) -> None:
        self['classname'] = value

    @property
    def name(self) -> str:
        """The ``targetname``, or ``name`` for games which use that instead."""
        if 'targetname' in self:
            return self['targetname']
        return self['name']

    @name.setter
    def name(self, value: str) -> None:
        self['targetname'] = value

    @property
    def spawnflags(self) -> int:
        """The spawnflags value, or 0 if not a valid number."""
        value = conv_int(self['spawnflags'], 0)
        return value if value >= 0 else 0

    @spawnflags.setter
    def spawnflags(self, value: int) -> None:
        self['spawnflags'] = str(value)

    @property
    def origin(self) -> Vec3:
        """The origin of the entity."""
        return Vec3.parse(self['origin'])

    @origin.setter
    def origin(self, value: Vec3) -> None:
        self['origin'] = str(value)

    @property
    def angles(self) -> Vec3:
        """The rotation of the entity."""
        return Vec3.parse(self['angles'])

    @angles.setter
    def angles(self, value: Vec3) -> None:
        self['angles'] = str(value)

    @property
    def model_number(self) -> int:
        """The brush model this entity uses.

        The world is model 0. Entities with a ``*N`` model use that model. Others
        produce -1.
        """
        if self.classname.casefold() == 'worldspawn':
            return 0
        model = self['model']
        if model.startswith('*'):
            return conv_int(model[1:], -1)
        return -1

    @property
    def is_brush_based(self) -> bool:
        """Check if this entity has brushes or a brush model."""
        return bool(self.brushes) or self.model_number >= 0

    def value_is(self, key: str, value: str) -> bool:
        """Check if a keyvalue matches a value, ignoring case."""
        return self[key].casefold() == value.casefold()

    def rename_key(self, old: str, new: str) -> None:
        """Rename a key, replacing any existing value for the new name."""
        if old not in self:
            return
        value = self[old]
        del self[old]
        del self[new]
        self[new] = value

    def has_spawnflags(self, bits: int) -> bool:
        """Check if all the specified spawnflags are set."""
        return self.spawnflags & bits == bits

    def set_spawnflags(self, bits: int) -> None:
        """Turn on the specified spawnflags."""
        self.spawnflags = self.spawnflags | bits

    def clear_spawnflags(self, bits: int) -> None:
        """Turn off the specified spawnflags."""
        self.spawnflags = self.spawnflags & ~bits

    def toggle_spawnflags(self, bits: int) -> None:
        """Flip the specified spawnflags."""
        self.spawnflags = self.spawnflags ^ bits

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Parse a keyvalue as a float.

        :raises ValueError: If the value is not a number, and no default was provided.
        """
        try:
            return float(self[key])
        except ValueError:
            if default is None:
                raise
            return default

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Parse a keyvalue as an integer.

        :raises ValueError: If the value is not an integer, and no default was provided.
        """
        try:
            return int(self[key])
        except ValueError:
            if default is None:
                raise
            return default

    def get_vector(self, key: str, default: Vec3 = Vec3()) -> Vec3:
        """Parse a keyvalue as a vector, returning the default if it is missing or blank."""
        value = self[key]
        if not value.strip():
            return default
        return Vec3.parse(value)

    def to_text(self, inline_connections: bool = False) -> str:
        """Produce the text for this entity.

        Connections are either written as a ``connections`` block, or inline
        as regular keyvalues as Source expects.
        """
        lines = ['{']
        for key, value in self.items():
            lines.append(f'"{key}" "{value}"')
        if inline_connections:
            for conn in self.connections:
                lines.append(f'"{conn.name}" "{conn.value_text()}"')
        elif self.connections:
            lines.append('connections')
            lines.append('{')
            for conn in self.connections:
                lines.append(f'"{conn.name}" "{conn.value_text(",", full=True)}"')
            lines.append('}')
        for brush in self.brushes:
            lines.extend(brush)
        lines.append('}')
        return '\n'.join(lines)


class Entities(List[Entity]):
    """All the entities in a map, with search helpers. Comparisons ignore case."""

    @classmethod
    def parse(cls, data: Union[bytes, bytearray, str]) -> 'Entities':
        """Parse the contents of an entity lump.

        :raises EntityParseError: If the braces do not match.
        """
        if data is None:
            raise TypeError('Entity data cannot be None!')
        if isinstance(data, (bytes, bytearray)):
            text = bytes(data).decode('ascii', 'surrogateescape')
        else:
            text = data
        parser = _Parser(cls())
        for line in text.rstrip('\x00').split('\n'):
            parser.feed_line(line)
        return parser.finish()

    def get_all_with_attribute(self, key: str, value: str) -> List[Entity]:
        """Find all entities with a keyvalue set to this value."""
        return [ent for ent in self if ent.value_is(key, value)]

    def get_with_attribute(self, key: str, value: str) -> Optional[Entity]:
        """Find the first entity with a keyvalue set to this value."""
        for ent in self:
            if ent.value_is(key, value):
                return ent
        return None

    def get_all_with_name(self, name: str) -> List[Entity]:
        """Find all entities with this name."""
        folded = name.casefold()
        return [ent for ent in self if ent.name.casefold() == folded]

    def get_with_name(self, name: str) -> Optional[Entity]:
        """Find the first entity with this name."""
        folded = name.casefold()
        for ent in self:
            if ent.name.casefold() == folded:
                return ent
        return None

    def remove_all_with_attribute(self, key: str, value: str) -> None:
        """Remove every entity with a keyvalue set to this value."""
        self[:] = [ent for ent in self if not ent.value_is(key, value)]

    def to_text(self, inline_connections: bool = False) -> str:
        """Produce the text for all entities."""
        return ''.join(ent.to_text(inline_connections) + '\n' for ent in self)

    def to_bytes(self, inline_connections: bool = False) -> bytes:
        """Produce the lump data, which is null-terminated."""
        return self.to_text(inline_connections).encode('ascii', 'surrogateescape') + b'\x00'


# Tokens produced while scanning a line.
_OPEN: Final = 0
_CLOSE: Final = 1
_STRING: Final = 2


def _scan_line(line: str) -> List[Tuple[int, str]]:
    """Find the braces and quoted strings in a line, stopping at comments."""
    tokens: List[Tuple[int, str]] = []
    in_quotes = False
    start = 0
    last = len(line) - 1
    for i, char in enumerate(line):
        if char == '"':
            # Escaped quotes do not count, unless it's the end of the line.
            if i == 0 or line[i - 1] != '\\' or (in_quotes and i == last):
                if in_quotes:
                    tokens.append((_STRING, line[start:i]))
                else:
                    start = i + 1
                in_quotes = not in_quotes
        elif in_quotes:
            continue
        elif char == '/' and i < last and line[i + 1] == '/':
            break
        elif char in '{}' and (i == 0 or line[i - 1] in _BRACE_PREFIX):
            tokens.append((_OPEN if char == '{' else _CLOSE, char))
    return tokens


class _Parser:
    """The state machine for parsing entities, fed one line at a time."""
    def __init__(self, result: Entities) -> None:
        self.result = result
        self.depth = 0
        self.entity: Optional[Entity] = None
        self.pending_connections = False
        self.in_connections = False
        self.brush: Optional[List[str]] = None

    def feed_line(self, line: str) -> None:
        line = line.strip(' \t\r')
        if not line:
            return
        if self.depth == 1:
            # The keyword may share a line with the block's opening brace.
            if line.startswith('solid'):
                line = line[len('solid'):].lstrip(' \t')
            elif line.startswith(('connections', '"connections"')):
                self.pending_connections = True
                line = line.partition('connections')[2].lstrip('" \t')
            if not line:
                return

        # Brushes are kept verbatim, including the lines with their braces.
        line_brush = self.brush
        key: Optional[str] = None
        for kind, value in _scan_line(line):
            if kind == _OPEN:
                if self.depth == 0:
                    self.entity = Entity()
                elif self.depth == 1:
                    assert self.entity is not None
                    if self.pending_connections:
                        self.in_connections = True
                    else:
                        self.brush = line_brush = []
                        self.entity.brushes.append(self.brush)
                    self.pending_connections = False
                self.depth += 1
            elif kind == _CLOSE:
                self.depth -= 1
                if self.depth < 0:
                    raise EntityParseError(len(self.result), -1)
                if self.depth == 0:
                    assert self.entity is not None
                    self.result.append(self.entity)
                    self.entity = None
                    self.pending_connections = False
                elif self.depth == 1:
                    self.brush = None
                    self.in_connections = False
            elif self.brush is None and self.entity is not None and (
                self.depth == 1 or self.in_connections
            ):
                if key is None:
                    key = value
                else:
                    self._add_pair(self.entity, key, value)
                    key = None
        if line_brush is not None:
            line_brush.append(line)

    def _add_pair(self, entity: Entity, key: str, value: str) -> None:
        if not key:
            return
        conn = EntityConnection.parse(key, value)
        if conn is not None:
            entity.connections.append(conn)
        elif self.in_connections:
            LOGGER.warning('Skipping invalid connection "{}" "{}"', key, value)
        elif key not in entity:
            entity[key] = value

    def finish(self) -> Entities:
        if self.depth != 0:
            raise EntityParseError(len(self.result), self.depth)
        LOGGER.debug('Parsed {} entities', len(self.result))
        return self.result
