"""Rectangle selection type — validation and drag normalisation."""

import math
from dataclasses import dataclass

from engine.errors import InvalidRegion

# Selections must exceed this many pixels on both sides to be processed
MIN_SELECTION_SIDE = 10


def _as_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRegion(f"region {name} must be a number, got {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidRegion(f"region {name} must be finite")
        return int(round(value))
    return int(value)


@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned region in pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: dict) -> "Rectangle":
        """Build from ``{"x", "y", "width", "height"}``. Floats are rounded."""
        if not isinstance(data, dict):
            raise InvalidRegion("region must be an object")
        missing = [k for k in ("x", "y", "width", "height") if k not in data]
        if missing:
            raise InvalidRegion(f"region missing fields: {', '.join(missing)}")
        return cls(
            x=_as_int(data["x"], "x"),
            y=_as_int(data["y"], "y"),
            width=_as_int(data["width"], "width"),
            height=_as_int(data["height"], "height"),
        )

    @classmethod
    def from_drag(
        cls, start: tuple[float, float], end: tuple[float, float]
    ) -> "Rectangle":
        """Normalise two drag corners into a rectangle (any drag direction)."""
        sx, sy = start
        ex, ey = end
        return cls.from_dict(
            {
                "x": min(sx, ex),
                "y": min(sy, ey),
                "width": abs(ex - sx),
                "height": abs(ey - sy),
            }
        )

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    def fits(self, width: int, height: int) -> bool:
        return (
            self.x >= 0
            and self.y >= 0
            and self.width > 0
            and self.height > 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )

    def validate(self, width: int, height: int) -> None:
        """Raise InvalidRegion unless the rectangle lies inside a width x height image."""
        if not self.fits(width, height):
            raise InvalidRegion(
                f"Region {self.to_dict()} is invalid or outside image "
                f"boundaries ({width}x{height})"
            )

    def is_usable_selection(self, min_side: int = MIN_SELECTION_SIDE) -> bool:
        return self.width > min_side and self.height > min_side
