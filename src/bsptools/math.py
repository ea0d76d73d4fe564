"""Plain geometric value types used by record fields.

These only hold components, they do not implement vector arithmetic.
"""
from typing import Iterator, Tuple
import math

import attrs


__all__ = ['Vec2', 'Vec3', 'Vec4', 'Plane', 'Color', 'NAN_VEC2', 'NAN_VEC3']


@attrs.frozen
class Vec2:
    """A 2D vector, used for texture coordinates and patch sizes."""
    x: float = 0.0
    y: float = 0.0

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y

    def is_nan(self) -> bool:
        """Check if any component is NaN, as used for missing fields."""
        return math.isnan(self.x) or math.isnan(self.y)


@attrs.frozen
class Vec3:
    """A 3D vector."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z

    def is_nan(self) -> bool:
        """Check if any component is NaN, as used for missing fields."""
        return any(math.isnan(v) for v in self)

    @classmethod
    def parse(cls, text: str) -> 'Vec3':
        """Parse a space-separated ``'x y z'`` string. Missing or invalid components are zero."""
        parts = text.split()
        values = []
        for i in range(3):
            try:
                values.append(float(parts[i]))
            except (IndexError, ValueError):
                values.append(0.0)
        return cls(*values)

    def __str__(self) -> str:
        return ' '.join(_fmt(v) for v in self)


@attrs.frozen
class Vec4:
    """A 4D vector, used for texture axes with a shift component."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 0.0

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z
        yield self.w


@attrs.frozen
class Plane:
    """A plane defined by its normal and distance from the origin."""
    normal: Vec3
    distance: float


@attrs.frozen
class Color:
    """A 32-bit RGBA colour."""
    r: int = 0
    g: int = 0
    b: int = 0
    a: int = 255

    def __iter__(self) -> Iterator[int]:
        yield self.r
        yield self.g
        yield self.b
        yield self.a

    def as_tuple(self) -> Tuple[int, int, int, int]:
        """Return the components as ``(r, g, b, a)``."""
        return (self.r, self.g, self.b, self.a)


def _fmt(value: float) -> str:
    """Format a float, dropping a trailing ``.0``."""
    if float(value).is_integer():
        return str(int(value))
    return repr(value)


NAN_VEC2 = Vec2(math.nan, math.nan)
NAN_VEC3 = Vec3(math.nan, math.nan, math.nan)
