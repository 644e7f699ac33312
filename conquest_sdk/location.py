"""
Conquest SDK - Location Codec

Packs signed (x, y) coordinates into a single 256-bit location id and
derives the coarse spatial buckets used to batch queries.

Layout:
  - low 128 bits:  x (two's complement)
  - high 128 bits: y (two's complement)

Areas are 24x24 tiles, zones are 64x64 tiles. Both are identified by the
location id of their centre index.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

AXIS_BITS = 128
AXIS_MOD = 1 << AXIS_BITS
AXIS_MAX = (1 << (AXIS_BITS - 1)) - 1
AXIS_MIN = -(1 << (AXIS_BITS - 1))

AREA_SIZE = 24
AREA_OFFSET = 12
ZONE_SIZE = 64
ZONE_OFFSET = 32


def _from_twos(value: int) -> int:
    value &= AXIS_MOD - 1
    if value > AXIS_MAX:
        return value - AXIS_MOD
    return value


def pack(x: int, y: int) -> int:
    """Pack (x, y) into a location id."""
    return (x % AXIS_MOD) + ((y % AXIS_MOD) << AXIS_BITS)


def unpack(location: int) -> Tuple[int, int]:
    """Unpack a location id into (x, y)."""
    return _from_twos(location), _from_twos(location >> AXIS_BITS)


def parse_location(value: Union[int, str]) -> int:
    """
    Accept a location id as int, decimal string or 0x-hex string.

    Raises:
        ValueError: if the value is not a valid 256-bit unsigned id
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid location id: {value!r}")
    if isinstance(value, int):
        location = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            location = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"Invalid location id: {value!r}")
    else:
        raise ValueError(f"Invalid location id: {value!r}")
    if location < 0 or location >= 1 << (2 * AXIS_BITS):
        raise ValueError(f"Location id out of range: {value!r}")
    return location


def location_hex(location: int) -> str:
    """0x-prefixed, 64 hex digit rendering of a location id."""
    return "0x" + format(location, "064x")


# =============================================================================
# AREAS / ZONES
# =============================================================================

def _center(value: int, offset: int, size: int) -> int:
    sign = -1 if value < -offset else 1
    return sign * ((abs(value) + offset) // size)


def area_center(x: int, y: int) -> Tuple[int, int]:
    return _center(x, AREA_OFFSET, AREA_SIZE), _center(y, AREA_OFFSET, AREA_SIZE)


def zone_center(x: int, y: int) -> Tuple[int, int]:
    return _center(x, ZONE_OFFSET, ZONE_SIZE), _center(y, ZONE_OFFSET, ZONE_SIZE)


def area_of(x: int, y: int) -> int:
    """Area id containing coordinate (x, y)."""
    return pack(*area_center(x, y))


def zone_of(x: int, y: int) -> int:
    """Zone id containing coordinate (x, y)."""
    return pack(*zone_center(x, y))


# centre, inner ring, then outer ring starting top-left going clockwise
_AREA_NEIGHBOURS = [
    (0, 0),
    (1, 0), (-1, 0), (1, 1), (-1, 1), (1, -1), (-1, -1), (0, 1), (0, -1),
    (-2, -2), (-1, -2), (0, -2), (1, -2), (2, -2),
    (2, -1), (2, 0), (2, 1), (2, 2),
    (1, 2), (0, 2), (-1, 2), (-2, 2),
    (-2, 1), (-2, 0), (-2, -1),
]

_ZONE_NEIGHBOURS = _AREA_NEIGHBOURS[:9]


def areas_around(x: int, y: int) -> List[int]:
    """The 25 area ids surrounding (x, y), centre first."""
    cx, cy = area_center(x, y)
    return [pack(cx + dx, cy + dy) for dx, dy in _AREA_NEIGHBOURS]


def zones_around(x: int, y: int) -> List[int]:
    """The 9 zone ids surrounding (x, y), centre first."""
    cx, cy = zone_center(x, y)
    return [pack(cx + dx, cy + dy) for dx, dy in _ZONE_NEIGHBOURS]


def topleft_from_area(area: int) -> Tuple[int, int]:
    """Top-left coordinate of an area id."""
    area_x, area_y = unpack(area)
    return area_x * AREA_SIZE - AREA_OFFSET, area_y * AREA_SIZE - AREA_OFFSET


# =============================================================================
# SPIRAL
# =============================================================================

@dataclass(frozen=True)
class LocationPointer:
    """Position in the outward square spiral."""
    x: int
    y: int
    dx: int
    dy: int
    index: int

    @property
    def location(self) -> int:
        return pack(self.x, self.y)


def spiral_next(pointer: Optional[LocationPointer] = None) -> LocationPointer:
    """
    Advance one step in the outward spiral.

    Without a pointer, returns the origin heading (0, -1). The direction
    turns 90 degrees at each ring corner, so coordinates come out in
    increasing Chebyshev ring order.
    """
    if pointer is None:
        return LocationPointer(x=0, y=0, dx=0, dy=-1, index=0)

    dx, dy = pointer.dx, pointer.dy
    x = pointer.x + dx
    y = pointer.y + dy

    if (x == 0 and y == -1) or x == y or (x < 0 and x == -y) or (x > 0 and -x - 1 == y):
        dx, dy = dy, -dx

    return LocationPointer(x=x, y=y, dx=dx, dy=dy, index=pointer.index + 1)


def spiral(start: Optional[LocationPointer] = None) -> Iterator[LocationPointer]:
    """Infinite spiral from `start` (exclusive) or from the origin (inclusive)."""
    pointer = start
    if pointer is None:
        pointer = spiral_next()
        yield pointer
    while True:
        pointer = spiral_next(pointer)
        yield pointer
